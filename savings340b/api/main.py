# savings340b/api/main.py
"""
Main FastAPI application setup for the 340B Savings Portal API.
Serves workbook ingestion for administrators and the read/export paths
used by the dashboards.
"""
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware

from savings340b.api import endpoints as api_endpoints
from savings340b.utils.logging_config import setup_logging, get_logger, set_correlation_id, get_correlation_id
from savings340b.utils.error_handler import APIError, AppException, ErrorSeverity
from savings340b.database.connection_manager import init_database_connections, dispose_engines, get_app_config

# Setup logging first
setup_logging()
logger = get_logger('savings340b.api.main')


# --- FastAPI App Initialization ---
app = FastAPI(
    title="340B Savings Portal API",
    description="Quarterly 340B workbook ingestion, hospital and pharmacy data, and exports.",
    version="1.0.0",
)

# --- Middleware ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_app_config().get('api', {}).get('cors_origins', ["*"]),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    """Adds a correlation ID to each request for logging and tracing."""
    cid = set_correlation_id(request.headers.get("X-Correlation-ID"))
    logger.info(f"Incoming request: {request.method} {request.url.path} (CID: {cid})")

    response = await call_next(request)
    response.headers["X-Correlation-ID"] = cid
    logger.info(f"Outgoing response: {response.status_code} for {request.url.path} (CID: {cid})")
    return response


# --- Event Handlers (Startup and Shutdown) ---
@app.on_event("startup")
async def startup_event():
    """Application startup event: Initialize database connections."""
    set_correlation_id("API_STARTUP")
    logger.info("FastAPI application startup...")
    try:
        init_database_connections()
        logger.info("Database connections initialized for API.")
    except AppException as e:
        # Requests needing the database will answer 503 until this is fixed
        logger.critical(f"Failed to initialize database connections during API startup: {e}", exc_info=True)
    logger.info("FastAPI application startup complete.")


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event: Dispose of database engine pools."""
    set_correlation_id("API_SHUTDOWN")
    logger.info("FastAPI application shutdown...")
    dispose_engines()
    logger.info("Database engines disposed. FastAPI application shutdown complete.")


# --- Custom Exception Handlers ---
def _error_body(code: str, message: str, category: str, details) -> dict:
    return {
        "error": {
            "code": code,
            "message": message,
            "category": category,
            "details": jsonable_encoder(details),
            "correlation_id": get_correlation_id()
        }
    }


@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    log = logger.error if exc.severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL) else logger.warning
    log(
        f"AppException caught by API: {exc.message} (Code: {exc.error_code}, "
        f"Category: {exc.category.value}, CID: {get_correlation_id()})",
        extra={"error_details": exc.details}
    )
    status_code = exc.status_code if isinstance(exc, APIError) else status.HTTP_500_INTERNAL_SERVER_ERROR
    headers = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(
        status_code=status_code,
        content=_error_body(exc.error_code, exc.message, exc.category.value, exc.details),
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Request validation error: {exc.errors()} (CID: {get_correlation_id()})")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_body("REQUEST_VALIDATION_ERROR", "Invalid request parameters.", "Validation",
                            exc.errors()),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    cid = get_correlation_id()
    logger.critical(f"Unhandled generic exception caught by API: {str(exc)} (CID: {cid})", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body("INTERNAL_ERROR", "An unexpected internal server error occurred.", "API",
                            {"exception_type": type(exc).__name__}),
    )


# --- Include API Routers ---
app.include_router(api_endpoints.router, prefix="/api/v1")


@app.get("/", tags=["Root"])
async def read_root():
    """Root endpoint providing basic API information."""
    return {
        "message": "Welcome to the 340B Savings Portal API!",
        "version": app.version,
        "docs": app.docs_url,
        "redoc": app.redoc_url,
        "correlation_id": get_correlation_id()
    }
