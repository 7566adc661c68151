# savings340b/processing/upload_orchestrator.py
"""
Persists a parsed workbook for one (quarter, year) period.

The upload record is created first and committed, so an ingestion that dies
part way leaves a visible `pending` row. Each data record then commits on its
own: there is no transaction around the whole upload, and a record whose
parent entity cannot be resolved is dropped without being reported to the
caller. Once every collection has been walked the upload is marked
`approved` with the number of records written, even when that number is 0.
"""
from dataclasses import dataclass, field
from typing import Dict, Optional

from sqlalchemy.orm import Session

from savings340b.utils.logging_config import get_logger, get_correlation_id, log_audit_event, PerformanceLogger
from savings340b.utils.error_handler import PortalDBError
from savings340b.processing.workbook_parser import ParsedWorkbook, parse_workbook, to_name
from savings340b.database import portal_handler

logger = get_logger('savings340b.processing.upload_orchestrator')


@dataclass
class UploadResult:
    records_processed: int
    upload_id: int
    quarter_id: Optional[int] = None
    skipped: Dict[str, int] = field(default_factory=dict)


class UploadOrchestrator:
    """Runs the four ingestion steps sequentially against one session."""

    def __init__(self, config: dict = None):
        self.config = (config or {}).get('ingestion', {})
        self.header_guard = bool(self.config.get('header_guard_enabled', True))

    def ingest_workbook(self, session: Session, uploader_id: str, quarter: str, year: int,
                        filename: str, content: bytes) -> UploadResult:
        """Parses `content` and persists it. A workbook that cannot be opened creates no upload record."""
        parsed = parse_workbook(content, filename, header_guard=self.header_guard)
        return self.process_upload(session, uploader_id, quarter, year, filename, parsed)

    def process_upload(self, session: Session, uploader_id: str, quarter: str, year: int,
                       filename: str, parsed: ParsedWorkbook) -> UploadResult:
        cid = get_correlation_id()
        upload = portal_handler.create_upload_record(session, uploader_id, quarter, year, filename)
        session.commit()
        upload_id = upload.id
        logger.info(f"[{cid}] Upload {upload_id} created for {quarter} {year} by {uploader_id} ('{filename}').",
                    extra={'upload_id': upload_id})

        skipped: Dict[str, int] = {}
        try:
            with PerformanceLogger("process_upload", upload_id=upload_id, records_in=parsed.total_records):
                quarter_id = portal_handler.resolve_period(session, quarter, year)
                session.commit()

                processed = 0
                processed += self._ingest_hospital_data(session, parsed, quarter, year, quarter_id, skipped)
                processed += self._ingest_hospital_qualifications(session, parsed, quarter, year, quarter_id, skipped)
                processed += self._ingest_pharmacy_qualifications(session, parsed, quarter, year, quarter_id, skipped)
                processed += self._ingest_pharmacy_profit(session, parsed, quarter, year, quarter_id, skipped)

                portal_handler.complete_upload_record(session, upload_id, processed)
                session.commit()
        except Exception:
            # Only the in-flight record is lost; earlier commits stay and the upload stays pending
            session.rollback()
            logger.error(f"[{cid}] Upload {upload_id} aborted; record left pending.", exc_info=True,
                         extra={'upload_id': upload_id})
            log_audit_event("upload_ingest", f"data_uploads/{upload_id}", outcome="failure",
                            user_id=uploader_id, quarter=quarter, year=year, filename=filename)
            raise

        logger.info(f"[{cid}] Upload {upload_id} approved: {processed} records processed, skipped {skipped}.",
                    extra={'upload_id': upload_id})
        log_audit_event("upload_ingest", f"data_uploads/{upload_id}", outcome="success",
                        user_id=uploader_id, quarter=quarter, year=year, filename=filename,
                        records_processed=processed)
        return UploadResult(records_processed=processed, upload_id=upload_id,
                            quarter_id=quarter_id, skipped=skipped)

    @staticmethod
    def _skip(skipped: Dict[str, int], step: str, reason: str):
        skipped[step] = skipped.get(step, 0) + 1
        logger.debug(f"[{get_correlation_id()}] Skipped {step} record: {reason}")

    def _ingest_hospital_data(self, session, parsed, quarter, year, quarter_id, skipped) -> int:
        count = 0
        for record in parsed.hospital_data:
            if not record.pharmacy_pid:
                self._skip(skipped, 'hospital_data', f"no PID for '{record.hospital}'")
                continue
            try:
                hospital = portal_handler.upsert_hospital(session, record.pharmacy_pid, to_name(record.hospital))
            except PortalDBError as e:
                session.rollback()
                self._skip(skipped, 'hospital_data', f"hospital PID {record.pharmacy_pid} not resolved: {e.message}")
                continue
            portal_handler.upsert_hospital_metrics(session, hospital.id, quarter, year, quarter_id, record.metrics())
            session.commit()
            count += 1
        return count

    def _ingest_hospital_qualifications(self, session, parsed, quarter, year, quarter_id, skipped) -> int:
        count = 0
        for record in parsed.hospital_qualifications:
            hospital = portal_handler.find_hospital_by_pid(session, record.pid) if record.pid else None
            if hospital is None:
                self._skip(skipped, 'hospital_qualifications', f"unknown hospital PID {record.pid}")
                continue
            portal_handler.upsert_hospital_qualification(session, hospital.id, quarter, year, quarter_id,
                                                         record.percentages())
            session.commit()
            count += 1
        return count

    def _ingest_pharmacy_qualifications(self, session, parsed, quarter, year, quarter_id, skipped) -> int:
        count = 0
        for record in parsed.pharmacy_qualifications:
            hospital_name = to_name(record.hospital)
            # Owning hospital is matched by name here, not PID
            hospital = portal_handler.find_hospital_by_name(session, hospital_name)
            if hospital is None:
                self._skip(skipped, 'pharmacy_qualifications', f"unknown hospital '{hospital_name}'")
                continue
            if not record.pid:
                self._skip(skipped, 'pharmacy_qualifications', f"no pharmacy PID under '{hospital_name}'")
                continue
            try:
                pharmacy = portal_handler.upsert_pharmacy(session, record.pid, f"{hospital_name} Pharmacy",
                                                          hospital.id)
            except PortalDBError as e:
                session.rollback()
                self._skip(skipped, 'pharmacy_qualifications', f"pharmacy PID {record.pid} not resolved: {e.message}")
                continue
            portal_handler.upsert_pharmacy_qualification(session, pharmacy.id, quarter, year, quarter_id,
                                                         record.percentages())
            session.commit()
            count += 1
        return count

    def _ingest_pharmacy_profit(self, session, parsed, quarter, year, quarter_id, skipped) -> int:
        count = 0
        for record in parsed.pharmacy_profit_data:
            pharmacy = portal_handler.find_pharmacy_by_pid(session, record.pharmacy_pid) if record.pharmacy_pid else None
            if pharmacy is None:
                self._skip(skipped, 'pharmacy_profit_data', f"unknown pharmacy PID {record.pharmacy_pid}")
                continue
            portal_handler.upsert_pharmacy_metrics(session, pharmacy.id, quarter, year, quarter_id, record.metrics())
            session.commit()
            count += 1
        return count
