"""Unit tests for the command-line entry point."""

import pytest

from savings340b import main as cli
from savings340b.database.models.portal_models import DataUpload, Quarter, User
from savings340b.utils.security import get_auth_handler

from conftest import build_workbook, HOSPITAL_HEADER, QUALIFICATION_HEADER, GENHOSP_ROW, GENHOSP_RETAIL_QUAL_ROW


@pytest.fixture
def workbook_file(tmp_path):
    path = tmp_path / "q1_2024.xlsx"
    path.write_bytes(build_workbook({
        "Data - Hospital": [HOSPITAL_HEADER, GENHOSP_ROW],
        "Data - Retail Qualifications": [QUALIFICATION_HEADER, GENHOSP_RETAIL_QUAL_ROW],
    }))
    return path


class TestInitDatabase:

    def test_seeds_periods_and_admin(self, db_session):
        created = cli.init_database(2023, 2024, admin_user="boss")

        assert created == 8
        assert db_session.query(Quarter).count() == 8
        assert db_session.get(User, "boss").role == "admin"

    def test_is_repeatable(self, db_session):
        cli.init_database(2024, 2024)
        assert cli.init_database(2024, 2024) == 0


class TestIngestFile:

    def test_ingests_through_orchestrator(self, db_session, workbook_file):
        result = cli.ingest_file(str(workbook_file), "Q1", 2024, "cli")

        assert result.records_processed == 2
        upload = db_session.get(DataUpload, result.upload_id)
        assert upload.uploaded_by == "cli"
        assert upload.status == "approved"


class TestMain:

    def test_no_action(self):
        assert cli.main([]) == 0

    def test_ingest_requires_period(self, workbook_file):
        with pytest.raises(SystemExit):
            cli.main(["--ingest", str(workbook_file)])

    def test_ingest_prints_summary(self, portal_db, workbook_file, capsys):
        assert cli.main(["--ingest", str(workbook_file), "--quarter", "Q1", "--year", "2024"]) == 0
        assert "recordsProcessed=2" in capsys.readouterr().out

    def test_issue_token(self, portal_db, capsys):
        assert cli.main(["--issue-token", "user-7"]) == 0
        tokens = [line for line in capsys.readouterr().out.splitlines() if line.count(".") == 2 and " " not in line]
        token = tokens[-1]
        assert get_auth_handler().user_id_from_token(token) == "user-7"

    def test_corrupt_file_returns_error_code(self, portal_db, tmp_path):
        path = tmp_path / "broken.xlsx"
        path.write_bytes(b"not a workbook")
        assert cli.main(["--ingest", str(path), "--quarter", "Q1", "--year", "2024"]) == 1
