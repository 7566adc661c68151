"""Pytest configuration and shared fixtures: in-memory database, workbooks and tokens."""

import os
import tempfile
from io import BytesIO
from typing import Dict, List

# Must be in place before savings340b reads config.yaml or configures logging
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="savings340b-logs-"))
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("SAVINGS340B_DATABASE_URL", "sqlite://")

import pytest
import xlwt
from openpyxl import Workbook

from savings340b.database.connection_manager import (
    init_database_connections, dispose_engines, create_schema, get_portal_session
)
from savings340b.database.models.portal_models import User
from savings340b.processing.upload_orchestrator import UploadOrchestrator
from savings340b.utils.error_handler import metrics_collector
from savings340b.utils.security import reset_auth_handler


TEST_CONFIG = {
    "database": {"url": "sqlite://", "health_check_query": "SELECT 1"},
    "security": {"jwt_secret_key": "test-jwt-secret-key", "jwt_algorithm": "HS256", "admin_role": "admin"},
    "ingestion": {"max_upload_bytes": 5 * 1024 * 1024, "header_guard_enabled": True},
    "export": {"sheet_name": "Data"},
}

HOSPITAL_HEADER = [
    "Hospital", "Pharmacy PID", "Qualified", "Inpatient", "Medicaid", "Orphan", "Non-340B Drug",
    "Drug Exclude", "Disqualified", "Savings", "Drug Spend", "Savings to Spend %", "Eligible %",
    "Medicaid %", "Macro Savings",
]
QUALIFICATION_HEADER = [
    "Hospital", "PID", "Qualified", "Inpatient", "Medicaid", "Orphan", "Non-340B Drug",
    "Drug Exclude", "Disqualified",
]
PROFIT_HEADER = [
    "Hospital", "Pharmacy PID", "Scripts", "Dispensing Fee", "CE Revenue", "Drug Cost", "Current Profit",
    "Current Profit Median", "Brand Profit", "Brand Profit Avg", "Generic Profit", "Generic Profit Avg",
    "EP Added 340B Benefit", "EP 340B Bucket Split",
]

GENHOSP_ROW = ["GenHosp", "P100", 80, 40, 30, 5, 2, 1, 2, 1000000, 4000000, 25, 70, 30, 500]
GENHOSP_RETAIL_QUAL_ROW = ["GenHosp", "RX1", 90, 50, 20, 3, 1, 1, 1]


def build_workbook(sheets: Dict[str, List[list]]) -> bytes:
    """Serializes {sheet name: rows} to xlsx bytes; rows include the header row."""
    workbook = Workbook()
    workbook.remove(workbook.active)
    for name, rows in sheets.items():
        worksheet = workbook.create_sheet(title=name)
        for row in rows:
            worksheet.append(row)
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def build_xls_workbook(sheets: Dict[str, List[list]]) -> bytes:
    """Same as build_workbook but in the legacy .xls (BIFF) format."""
    workbook = xlwt.Workbook()
    for name, rows in sheets.items():
        worksheet = workbook.add_sheet(name)
        for r, row in enumerate(rows):
            for c, value in enumerate(row):
                worksheet.write(r, c, value)
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


@pytest.fixture
def portal_db():
    """Fresh in-memory database wired into the connection manager."""
    metrics_collector.reset()
    init_database_connections(TEST_CONFIG)
    create_schema()
    reset_auth_handler(TEST_CONFIG)
    yield
    dispose_engines()


@pytest.fixture
def db_session(portal_db):
    session = get_portal_session()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def orchestrator():
    return UploadOrchestrator(config=TEST_CONFIG)


@pytest.fixture
def make_workbook():
    return build_workbook


@pytest.fixture
def hospital_workbook():
    """Scenario workbook: one hospital row plus a retail qualification for the same hospital."""
    return build_workbook({
        "Data - Hospital": [HOSPITAL_HEADER, GENHOSP_ROW],
        "Data - Retail Qualifications": [QUALIFICATION_HEADER, GENHOSP_RETAIL_QUAL_ROW],
    })


@pytest.fixture
def users(db_session):
    db_session.add_all([
        User(id="admin-1", email="admin@example.org", role="admin"),
        User(id="viewer-1", email="viewer@example.org", role="viewer"),
    ])
    db_session.commit()
    return {"admin": "admin-1", "viewer": "viewer-1"}


@pytest.fixture
def token_for():
    def _token_for(user_id: str) -> Dict[str, str]:
        handler = reset_auth_handler(TEST_CONFIG)
        return {"Authorization": f"Bearer {handler.create_access_token(user_id)}"}
    return _token_for
