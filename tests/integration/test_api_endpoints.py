"""Integration tests for the portal API endpoints."""

from io import BytesIO

import pytest
from fastapi.testclient import TestClient
from openpyxl import load_workbook

from savings340b.api.main import app
from savings340b.database import portal_handler
from savings340b.database.models.portal_models import DataUpload, Hospital, QuarterlyHospitalData
from savings340b.processing.workbook_parser import SHEET_HOSPITAL, SHEET_RETAIL_QUALIFICATIONS, SHEET_RETAIL_PROFIT

from conftest import (
    build_workbook, build_xls_workbook, HOSPITAL_HEADER, QUALIFICATION_HEADER, PROFIT_HEADER, GENHOSP_ROW,
    GENHOSP_RETAIL_QUAL_ROW
)

XLSX = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@pytest.fixture
def client(portal_db):
    return TestClient(app)


@pytest.fixture
def admin_headers(users, token_for):
    return token_for(users["admin"])


@pytest.fixture
def viewer_headers(users, token_for):
    return token_for(users["viewer"])


@pytest.fixture
def uploaded(client, admin_headers, hospital_workbook):
    """Uploads the GenHosp workbook for Q1 2024 and returns the response body."""
    response = client.post(
        "/api/v1/upload",
        headers=admin_headers,
        files={"file": ("q1_2024.xlsx", hospital_workbook, XLSX)},
        data={"quarter": "Q1", "year": "2024"},
    )
    assert response.status_code == 200, response.text
    return response.json()


@pytest.fixture
def quarter_id(uploaded, db_session):
    db_session.expire_all()
    return db_session.query(QuarterlyHospitalData).one().quarter_id


@pytest.mark.integration
class TestUploadEndpoint:

    def test_requires_token(self, client, hospital_workbook):
        response = client.post(
            "/api/v1/upload",
            files={"file": ("q1.xlsx", hospital_workbook, XLSX)},
            data={"quarter": "Q1", "year": "2024"},
        )
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Unauthorized"
        assert response.headers.get("WWW-Authenticate") == "Bearer"

    def test_rejects_invalid_token(self, client, hospital_workbook):
        response = client.post(
            "/api/v1/upload",
            headers={"Authorization": "Bearer not-a-jwt"},
            files={"file": ("q1.xlsx", hospital_workbook, XLSX)},
            data={"quarter": "Q1", "year": "2024"},
        )
        assert response.status_code == 401

    def test_non_admin_is_forbidden_and_nothing_is_written(self, client, viewer_headers, hospital_workbook,
                                                            db_session):
        response = client.post(
            "/api/v1/upload",
            headers=viewer_headers,
            files={"file": ("q1.xlsx", hospital_workbook, XLSX)},
            data={"quarter": "Q1", "year": "2024"},
        )

        assert response.status_code == 403
        assert response.json()["error"]["message"] == "Admin access required"
        db_session.expire_all()
        assert db_session.query(DataUpload).count() == 0
        assert db_session.query(Hospital).count() == 0

    def test_user_without_role_row_is_forbidden(self, client, portal_db, token_for, hospital_workbook):
        response = client.post(
            "/api/v1/upload",
            headers=token_for("stranger"),
            files={"file": ("q1.xlsx", hospital_workbook, XLSX)},
            data={"quarter": "Q1", "year": "2024"},
        )
        assert response.status_code == 403

    @pytest.mark.parametrize("data, with_file", [
        ({"quarter": "Q1", "year": "2024"}, False),
        ({"year": "2024"}, True),
        ({"quarter": "Q1"}, True),
        ({"quarter": "Q1", "year": "0"}, True),
        ({"quarter": "Q1", "year": "soon"}, True),
    ])
    def test_missing_fields(self, client, admin_headers, hospital_workbook, data, with_file):
        files = {"file": ("q1.xlsx", hospital_workbook, XLSX)} if with_file else None
        response = client.post("/api/v1/upload", headers=admin_headers, files=files, data=data)

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Missing required fields"

    def test_successful_upload(self, uploaded, db_session):
        assert uploaded["success"] is True
        assert uploaded["recordsProcessed"] == 2
        db_session.expire_all()
        upload = db_session.get(DataUpload, uploaded["uploadId"])
        assert upload.status == "approved"
        assert upload.uploaded_by == "admin-1"
        assert upload.filename == "q1_2024.xlsx"

    def test_corrupt_workbook(self, client, admin_headers, db_session):
        response = client.post(
            "/api/v1/upload",
            headers=admin_headers,
            files={"file": ("broken.xlsx", b"this is not a workbook", XLSX)},
            data={"quarter": "Q1", "year": "2024"},
        )

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "WORKBOOK_PARSE_ERROR"
        db_session.expire_all()
        assert db_session.query(DataUpload).count() == 0

    @pytest.mark.parametrize("year", ["2024.0", "2024 Q1", " 2024"])
    def test_year_reads_leading_integer(self, client, admin_headers, hospital_workbook, db_session, year):
        response = client.post(
            "/api/v1/upload",
            headers=admin_headers,
            files={"file": ("q1.xlsx", hospital_workbook, XLSX)},
            data={"quarter": "Q1", "year": year},
        )

        assert response.status_code == 200, response.text
        db_session.expire_all()
        assert db_session.query(DataUpload).one().year == 2024

    def test_legacy_xls_workbook(self, client, admin_headers, db_session):
        content = build_xls_workbook({SHEET_HOSPITAL: [HOSPITAL_HEADER, GENHOSP_ROW]})

        response = client.post(
            "/api/v1/upload",
            headers=admin_headers,
            files={"file": ("q1_2024.xls", content, "application/vnd.ms-excel")},
            data={"quarter": "Q1", "year": "2024"},
        )

        assert response.status_code == 200, response.text
        assert response.json()["recordsProcessed"] == 1
        db_session.expire_all()
        assert db_session.query(Hospital).one().pid == "P100"


@pytest.mark.integration
class TestExportEndpoint:

    def test_requires_token(self, client):
        response = client.post("/api/v1/export", json={"type": "hospital_data", "quarters": [1]})
        assert response.status_code == 401

    def test_viewer_can_export_csv(self, client, viewer_headers, quarter_id):
        response = client.post(
            "/api/v1/export",
            headers=viewer_headers,
            json={"type": "hospital_data", "quarters": [quarter_id], "format": "csv"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert response.headers["content-disposition"] == 'attachment; filename="hospital_data_export.csv"'
        lines = response.text.splitlines()
        assert lines[0].startswith('"Hospital","PID","Quarter"')
        assert '"GenHosp"' in lines[1]

    def test_xlsx_by_default(self, client, admin_headers, quarter_id):
        response = client.post(
            "/api/v1/export",
            headers=admin_headers,
            json={"type": "summary_report", "quarters": [quarter_id]},
        )

        assert response.status_code == 200
        assert response.headers["content-disposition"] == 'attachment; filename="summary_report_export.xlsx"'
        rows = list(load_workbook(BytesIO(response.content))["Data"].iter_rows(values_only=True))
        assert rows[0][0] == "Quarter"
        assert rows[1][0] == "Q1 2024"
        assert rows[1][5] == "GenHosp"

    def test_pharmacy_html(self, client, admin_headers, db_session):
        content = build_workbook({
            SHEET_HOSPITAL: [HOSPITAL_HEADER, GENHOSP_ROW],
            SHEET_RETAIL_QUALIFICATIONS: [QUALIFICATION_HEADER, GENHOSP_RETAIL_QUAL_ROW],
            SHEET_RETAIL_PROFIT: [PROFIT_HEADER, ["GenHosp", "RX1", 120, 1.5, 2000, 800, 400, 350, 300, 30,
                                                  100, 10, 75, 0.4]],
        })
        upload = client.post(
            "/api/v1/upload",
            headers=admin_headers,
            files={"file": ("q1_2024.xlsx", content, XLSX)},
            data={"quarter": "Q1", "year": "2024"},
        )
        assert upload.status_code == 200, upload.text
        db_session.expire_all()
        period_id = db_session.query(QuarterlyHospitalData).one().quarter_id

        response = client.post(
            "/api/v1/export",
            headers=admin_headers,
            json={"type": "pharmacy_data", "quarters": [period_id], "format": "html"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert "GenHosp Pharmacy" in response.text

    def test_pharmacy_export_needs_profit_rows(self, client, admin_headers, quarter_id):
        response = client.post(
            "/api/v1/export",
            headers=admin_headers,
            json={"type": "pharmacy_data", "quarters": [quarter_id], "format": "html"},
        )
        assert response.status_code == 404

    def test_no_data(self, client, admin_headers, quarter_id):
        response = client.post(
            "/api/v1/export",
            headers=admin_headers,
            json={"type": "hospital_data", "quarters": [quarter_id + 100], "format": "csv"},
        )
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "No data found for export"

    @pytest.mark.parametrize("body, message", [
        ({"type": "hospital_data"}, "Missing required parameters"),
        ({"type": "hospital_data", "quarters": []}, "Missing required parameters"),
        ({"quarters": [1]}, "Missing required parameters"),
        ({"type": "claims", "quarters": [1]}, "Invalid export type"),
    ])
    def test_bad_requests(self, client, admin_headers, body, message):
        response = client.post("/api/v1/export", headers=admin_headers, json=body)

        assert response.status_code == 400
        assert response.json()["error"]["message"] == message


@pytest.mark.integration
class TestQuartersEndpoint:

    def test_lists_periods_newest_first(self, client, viewer_headers, db_session):
        portal_handler.seed_periods(db_session, 2024, 2024)
        db_session.commit()

        response = client.get("/api/v1/quarters", headers=viewer_headers)

        assert response.status_code == 200
        labels = [q["label"] for q in response.json()]
        assert labels == ["Q4 2024", "Q3 2024", "Q2 2024", "Q1 2024"]

    def test_period_ids_drive_exports(self, client, viewer_headers, quarter_id):
        periods = client.get("/api/v1/quarters", headers=viewer_headers).json()
        assert [(q["id"], q["quarter"], q["year"]) for q in periods] == [(quarter_id, 1, 2024)]


@pytest.mark.integration
class TestHospitalsEndpoint:

    def test_lists_hospitals_with_quarterly_data(self, client, viewer_headers, uploaded):
        response = client.get("/api/v1/hospitals", headers=viewer_headers)

        assert response.status_code == 200
        hospitals = response.json()["hospitals"]
        assert len(hospitals) == 1
        hospital = hospitals[0]
        assert (hospital["pid"], hospital["name"]) == ("P100", "GenHosp")
        assert hospital["quarterly_hospital_data"][0]["savings_to_spend_percent"] == 25
        assert hospital["pharmacies"][0]["name"] == "GenHosp Pharmacy"

    @pytest.mark.parametrize("params, expected", [
        ({"search": "genh"}, 1),
        ({"search": "mercy"}, 0),
        ({"quarter": "Q1", "year": 2024}, 1),
        ({"quarter": "Q2"}, 0),
        ({"year": 2023}, 0),
        ({"minSavings": 20, "maxSavings": 30}, 1),
        ({"minSavings": 30}, 0),
        ({"maxSavings": 10}, 0),
    ])
    def test_filters(self, client, viewer_headers, uploaded, params, expected):
        response = client.get("/api/v1/hospitals", headers=viewer_headers, params=params)

        assert response.status_code == 200
        assert len(response.json()["hospitals"]) == expected

    def test_requires_token(self, client):
        assert client.get("/api/v1/hospitals").status_code == 401


@pytest.mark.integration
class TestUploadReviewEndpoints:

    def test_list_uploads(self, client, admin_headers, uploaded):
        response = client.get("/api/v1/uploads", headers=admin_headers)

        assert response.status_code == 200
        body = response.json()
        assert [u["id"] for u in body] == [uploaded["uploadId"]]
        assert body[0]["status"] == "approved"
        assert body[0]["records_processed"] == 2

    def test_viewer_cannot_list_uploads(self, client, viewer_headers):
        assert client.get("/api/v1/uploads", headers=viewer_headers).status_code == 403

    def test_read_upload(self, client, admin_headers, uploaded):
        response = client.get(f"/api/v1/uploads/{uploaded['uploadId']}", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["quarter"] == "Q1"
        assert response.json()["year"] == 2024

    def test_read_missing_upload(self, client, admin_headers):
        response = client.get("/api/v1/uploads/999", headers=admin_headers)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_reject_upload(self, client, admin_headers, uploaded):
        response = client.put(
            f"/api/v1/uploads/{uploaded['uploadId']}/status",
            headers=admin_headers,
            json={"status": "rejected"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "rejected"
        assert body["reviewed_by"] == "admin-1"
        assert body["reviewed_date"] is not None

    def test_invalid_review_status(self, client, admin_headers, uploaded):
        response = client.put(
            f"/api/v1/uploads/{uploaded['uploadId']}/status",
            headers=admin_headers,
            json={"status": "pending"},
        )
        assert response.status_code == 422

    def test_review_missing_upload(self, client, admin_headers):
        response = client.put("/api/v1/uploads/999/status", headers=admin_headers, json={"status": "approved"})
        assert response.status_code == 404


@pytest.mark.integration
class TestSystemEndpoints:

    def test_root(self, client):
        response = client.get("/", headers={"X-Correlation-ID": "test-cid-123"})

        assert response.status_code == 200
        assert response.json()["message"] == "Welcome to the 340B Savings Portal API!"
        assert response.headers["X-Correlation-ID"] == "test-cid-123"

    def test_status(self, client):
        response = client.get("/api/v1/status")

        assert response.status_code == 200
        body = response.json()
        assert body["database_healthy"] is True
        assert body["system_health"] == "OK"
        assert "portal_primary" in body["connections"]
        assert "total_errors" in body["error_metrics"]

    def test_upload_against_fresh_period_via_api(self, client, admin_headers, db_session):
        content = build_workbook({SHEET_HOSPITAL: [HOSPITAL_HEADER, GENHOSP_ROW]})
        response = client.post(
            "/api/v1/upload",
            headers=admin_headers,
            files={"file": ("q3.xlsx", content, XLSX)},
            data={"quarter": "q3", "year": "2025"},
        )

        assert response.status_code == 200
        assert response.json()["recordsProcessed"] == 1
        db_session.expire_all()
        assert db_session.query(QuarterlyHospitalData).one().quarter == "q3"
