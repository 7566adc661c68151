# savings340b/main.py
"""
Command-line entry point for the 340B Savings Portal.
Creates the schema, runs offline workbook ingestion through the same
orchestrator the API uses, and issues development access tokens.
The API itself is started with run.py or uvicorn.
"""
import argparse
import sys

from savings340b.utils.logging_config import setup_logging, get_logger, set_correlation_id
from savings340b.utils.error_handler import AppException
from savings340b.database.connection_manager import (
    init_database_connections, dispose_engines, get_portal_session, create_schema, get_app_config
)
from savings340b.database import portal_handler
from savings340b.processing.upload_orchestrator import UploadOrchestrator
from savings340b.utils.security import get_auth_handler

setup_logging()
logger = get_logger('savings340b.main')


def init_database(start_year: int, end_year: int, admin_user: str = None) -> int:
    """Creates missing tables and seeds quarters rows for the year range."""
    cid = set_correlation_id("INIT_DB")
    init_database_connections()
    create_schema()
    session = get_portal_session()
    try:
        created = portal_handler.seed_periods(session, start_year, end_year)
        if admin_user:
            portal_handler.upsert_user(session, admin_user, role=get_auth_handler().admin_role)
        session.commit()
        logger.info(f"[{cid}] Schema ready; {created} periods seeded for {start_year}-{end_year}.")
        return created
    except AppException:
        session.rollback()
        raise
    finally:
        session.close()


def ingest_file(path: str, quarter: str, year: int, uploader: str):
    """Runs one workbook through the upload orchestrator outside the API."""
    cid = set_correlation_id(f"CLI_INGEST_{quarter}_{year}")
    init_database_connections()
    with open(path, 'rb') as fh:
        content = fh.read()
    session = get_portal_session()
    try:
        orchestrator = UploadOrchestrator(config=get_app_config())
        result = orchestrator.ingest_workbook(session, uploader, quarter, year, path, content)
        logger.info(f"[{cid}] Upload {result.upload_id}: {result.records_processed} records processed.")
        return result
    finally:
        session.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="340B Savings Portal")
    parser.add_argument("--init-db", action="store_true", help="Create tables and seed periods.")
    parser.add_argument("--start-year", type=int, default=2020)
    parser.add_argument("--end-year", type=int, default=2030)
    parser.add_argument("--admin-user", help="With --init-db: grant this identity-provider subject the admin role.")
    parser.add_argument("--ingest", metavar="FILE", help="Ingest a workbook without going through the API.")
    parser.add_argument("--quarter", help="Quarter token for --ingest, e.g. Q1.")
    parser.add_argument("--year", type=int, help="Year for --ingest.")
    parser.add_argument("--uploader", default="cli", help="User id recorded on the upload.")
    parser.add_argument("--issue-token", metavar="USER_ID", help="Print a signed access token for USER_ID.")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not (args.init_db or args.ingest or args.issue_token):
        logger.info("No action specified. Use --init-db, --ingest or --issue-token.")
        logger.info("To run the API, use: uvicorn savings340b.api.main:app --reload")
        return 0
    if args.ingest and (not args.quarter or not args.year):
        parser.error("--ingest requires --quarter and --year")

    try:
        if args.init_db:
            init_database(args.start_year, args.end_year, args.admin_user)
        if args.ingest:
            result = ingest_file(args.ingest, args.quarter, args.year, args.uploader)
            print(f"recordsProcessed={result.records_processed} uploadId={result.upload_id}")
        if args.issue_token:
            print(get_auth_handler().create_access_token(args.issue_token))
    except AppException as e:
        logger.critical(f"Command failed: {e}", exc_info=True)
        return 1
    finally:
        dispose_engines()
    return 0


if __name__ == "__main__":
    sys.exit(main())
