import subprocess
import sys
import os

# --- Script Configuration ---

# Ensure the project root is on the path so 'savings340b' imports resolve
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

HOST = os.environ.get("SAVINGS340B_HOST", "0.0.0.0")
PORT = os.environ.get("SAVINGS340B_PORT", "8000")

# Command for the FastAPI/Uvicorn API server
uvicorn_command = [
    sys.executable,
    "-m", "uvicorn",
    "savings340b.api.main:app",
    "--host", HOST,
    "--port", PORT,
]

if os.environ.get("SAVINGS340B_RELOAD", "").lower() in ("1", "true", "yes"):
    uvicorn_command.append("--reload")


def run_services():
    """Starts the API server and waits for it, terminating it on Ctrl+C."""
    print("--- Starting 340B Savings Portal API ---")
    api_process = None
    try:
        api_process = subprocess.Popen(uvicorn_command)
        print(f"FastAPI server process started with PID: {api_process.pid} on {HOST}:{PORT}")
        print("Press Ctrl+C to stop.")
        return api_process.wait()
    except KeyboardInterrupt:
        print("\nShutdown signal received. Terminating API server...")
    finally:
        if api_process and api_process.poll() is None:
            api_process.terminate()
            print("FastAPI server terminated.")
        print("--- API has been shut down. ---")


if __name__ == "__main__":
    sys.exit(run_services() or 0)
