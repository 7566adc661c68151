# savings340b/database/portal_handler.py
"""
Handles all database interactions with the portal database: entity lookups,
period resolution, (entity, quarter, year) upserts, upload records and the
read paths behind the listing and export endpoints.
Every function takes the session first and raises PortalDBError on
SQLAlchemy failures; callers decide about commits.
"""
import re
from typing import List, Optional, Dict, Any, Iterable
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.exc import SQLAlchemyError, MultipleResultsFound

from savings340b.utils.logging_config import get_logger, get_correlation_id
from savings340b.utils.error_handler import PortalDBError
from savings340b.database.models.portal_models import (
    User, Hospital, Pharmacy, Quarter, QuarterlyHospitalData, HospitalQualification,
    PharmacyQualification, QuarterlyPharmacyData, DataUpload, UPLOAD_STATUSES
)

logger = get_logger('savings340b.database.portal_handler')

_QUARTER_TOKEN = re.compile(r'^\s*[Qq]?\s*([1-4])\s*$')


# --- Users ---

def get_user_role(session: Session, user_id: str) -> Optional[str]:
    """Returns the role stored for `user_id`, or None when no users row exists."""
    try:
        user = session.get(User, user_id)
        return user.role if user else None
    except SQLAlchemyError as e:
        logger.error(f"[{get_correlation_id()}] DB error reading role for user {user_id}: {e}", exc_info=True)
        raise PortalDBError(f"Failed to read user {user_id}", original_exception=e)


def upsert_user(session: Session, user_id: str, role: str, email: str = None) -> User:
    try:
        user = session.get(User, user_id)
        if user is None:
            user = User(id=user_id, role=role, email=email)
            session.add(user)
        else:
            user.role = role
            if email:
                user.email = email
        session.flush()
        return user
    except SQLAlchemyError as e:
        raise PortalDBError(f"Failed to save user {user_id}", original_exception=e)


# --- Periods ---

def parse_quarter_token(quarter: Any) -> Optional[int]:
    """'Q1', 'q2', '3' or 4 -> quarter number; anything else -> None."""
    if quarter is None or isinstance(quarter, bool):
        return None
    match = _QUARTER_TOKEN.match(str(quarter))
    return int(match.group(1)) if match else None


def resolve_period(session: Session, quarter: Any, year: int) -> Optional[int]:
    """
    Maps an uploaded (quarter token, year) to the id of its quarters row,
    creating the row on first use. Returns None for tokens that do not name
    a quarter; metrics rows are still written, just without a period link.
    """
    quarter_number = parse_quarter_token(quarter)
    if quarter_number is None:
        logger.warning(f"[{get_correlation_id()}] Quarter token '{quarter}' is not Q1-Q4; period link left empty.")
        return None
    try:
        period = session.query(Quarter).filter_by(quarter=quarter_number, year=year).one_or_none()
        if period is None:
            period = Quarter(quarter=quarter_number, year=year)
            session.add(period)
            session.flush()
            logger.info(f"[{get_correlation_id()}] Created period Q{quarter_number} {year} (id={period.id}).")
        return period.id
    except SQLAlchemyError as e:
        raise PortalDBError(f"Failed to resolve period {quarter} {year}", original_exception=e)


def seed_periods(session: Session, start_year: int, end_year: int) -> int:
    """Ensures quarters rows exist for every quarter in [start_year, end_year]."""
    created = 0
    try:
        existing = {(q.quarter, q.year) for q in session.query(Quarter).filter(
            Quarter.year >= start_year, Quarter.year <= end_year)}
        for year in range(start_year, end_year + 1):
            for quarter_number in range(1, 5):
                if (quarter_number, year) not in existing:
                    session.add(Quarter(quarter=quarter_number, year=year))
                    created += 1
        session.flush()
        return created
    except SQLAlchemyError as e:
        raise PortalDBError(f"Failed to seed periods {start_year}-{end_year}", original_exception=e)


def list_periods(session: Session) -> List[Quarter]:
    try:
        return session.query(Quarter).order_by(Quarter.year.desc(), Quarter.quarter.desc()).all()
    except SQLAlchemyError as e:
        raise PortalDBError("Failed to list periods", original_exception=e)


# --- Entities ---

def find_hospital_by_pid(session: Session, pid: str) -> Optional[Hospital]:
    try:
        return session.query(Hospital).filter_by(pid=pid).one_or_none()
    except SQLAlchemyError as e:
        raise PortalDBError(f"Failed to look up hospital PID {pid}", original_exception=e)


def find_hospital_by_name(session: Session, name: str) -> Optional[Hospital]:
    """Exact-name lookup. An ambiguous name resolves to nothing."""
    try:
        return session.query(Hospital).filter_by(name=name).one_or_none()
    except MultipleResultsFound:
        logger.debug(f"[{get_correlation_id()}] Hospital name '{name}' matches more than one row.")
        return None
    except SQLAlchemyError as e:
        raise PortalDBError(f"Failed to look up hospital '{name}'", original_exception=e)


def find_pharmacy_by_pid(session: Session, pid: str) -> Optional[Pharmacy]:
    try:
        return session.query(Pharmacy).filter_by(pid=pid).one_or_none()
    except SQLAlchemyError as e:
        raise PortalDBError(f"Failed to look up pharmacy PID {pid}", original_exception=e)


def upsert_hospital(session: Session, pid: str, name: str) -> Hospital:
    """Creates the hospital for `pid` or refreshes its name."""
    try:
        hospital = session.query(Hospital).filter_by(pid=pid).one_or_none()
        if hospital is None:
            hospital = Hospital(pid=pid, name=name)
            session.add(hospital)
        else:
            hospital.name = name
        session.flush()
        return hospital
    except SQLAlchemyError as e:
        raise PortalDBError(f"Failed to upsert hospital PID {pid}", original_exception=e)


def upsert_pharmacy(session: Session, pid: str, name: str, hospital_id: int) -> Pharmacy:
    """Creates the pharmacy for `pid` or refreshes its name and owning hospital."""
    try:
        pharmacy = session.query(Pharmacy).filter_by(pid=pid).one_or_none()
        if pharmacy is None:
            pharmacy = Pharmacy(pid=pid, name=name, hospital_id=hospital_id)
            session.add(pharmacy)
        else:
            pharmacy.name = name
            pharmacy.hospital_id = hospital_id
        session.flush()
        return pharmacy
    except SQLAlchemyError as e:
        raise PortalDBError(f"Failed to upsert pharmacy PID {pid}", original_exception=e)


# --- Period-keyed upserts ---

def _upsert_period_row(session: Session, model, key_column: str, entity_id: int,
                       quarter: str, year: int, quarter_id: Optional[int], values: Dict[str, Any]):
    try:
        row = session.query(model).filter(
            getattr(model, key_column) == entity_id,
            model.quarter == quarter,
            model.year == year,
        ).one_or_none()
        if row is None:
            row = model(**{key_column: entity_id}, quarter=quarter, year=year)
            session.add(row)
        row.quarter_id = quarter_id
        for column, value in values.items():
            setattr(row, column, value)
        session.flush()
        return row
    except SQLAlchemyError as e:
        raise PortalDBError(
            f"Failed to upsert {model.__tablename__} for {key_column}={entity_id} {quarter} {year}",
            original_exception=e,
            details={'table': model.__tablename__, key_column: entity_id, 'quarter': quarter, 'year': year}
        )


def upsert_hospital_metrics(session: Session, hospital_id: int, quarter: str, year: int,
                            quarter_id: Optional[int], values: Dict[str, Any]) -> QuarterlyHospitalData:
    return _upsert_period_row(session, QuarterlyHospitalData, 'hospital_id', hospital_id,
                              quarter, year, quarter_id, values)


def upsert_hospital_qualification(session: Session, hospital_id: int, quarter: str, year: int,
                                  quarter_id: Optional[int], values: Dict[str, Any]) -> HospitalQualification:
    return _upsert_period_row(session, HospitalQualification, 'hospital_id', hospital_id,
                              quarter, year, quarter_id, values)


def upsert_pharmacy_qualification(session: Session, pharmacy_id: int, quarter: str, year: int,
                                  quarter_id: Optional[int], values: Dict[str, Any]) -> PharmacyQualification:
    return _upsert_period_row(session, PharmacyQualification, 'pharmacy_id', pharmacy_id,
                              quarter, year, quarter_id, values)


def upsert_pharmacy_metrics(session: Session, pharmacy_id: int, quarter: str, year: int,
                            quarter_id: Optional[int], values: Dict[str, Any]) -> QuarterlyPharmacyData:
    return _upsert_period_row(session, QuarterlyPharmacyData, 'pharmacy_id', pharmacy_id,
                              quarter, year, quarter_id, values)


# --- Upload records ---

def create_upload_record(session: Session, uploaded_by: str, quarter: str, year: int,
                         filename: Optional[str]) -> DataUpload:
    try:
        upload = DataUpload(uploaded_by=uploaded_by, quarter=quarter, year=year,
                            filename=filename, status='pending', records_processed=0)
        session.add(upload)
        session.flush()
        return upload
    except SQLAlchemyError as e:
        raise PortalDBError("Failed to create upload record", original_exception=e,
                            details={'filename': filename, 'quarter': quarter, 'year': year})


def complete_upload_record(session: Session, upload_id: int, records_processed: int) -> DataUpload:
    """Marks an ingestion as finished: status approved with the final record count."""
    try:
        upload = session.get(DataUpload, upload_id)
        if upload is None:
            raise PortalDBError(f"Upload record {upload_id} disappeared during ingestion")
        upload.status = 'approved'
        upload.records_processed = records_processed
        session.flush()
        return upload
    except SQLAlchemyError as e:
        raise PortalDBError(f"Failed to complete upload record {upload_id}", original_exception=e)


def set_upload_status(session: Session, upload_id: int, status: str, reviewed_by: str) -> Optional[DataUpload]:
    """Review decision from an administrator. Returns None when the upload does not exist."""
    if status not in UPLOAD_STATUSES:
        raise ValueError(f"Unknown upload status '{status}'")
    try:
        upload = session.get(DataUpload, upload_id)
        if upload is None:
            return None
        upload.status = status
        upload.reviewed_by = reviewed_by
        upload.reviewed_date = datetime.utcnow()
        session.flush()
        return upload
    except SQLAlchemyError as e:
        raise PortalDBError(f"Failed to update status of upload {upload_id}", original_exception=e)


def get_upload(session: Session, upload_id: int) -> Optional[DataUpload]:
    try:
        return session.get(DataUpload, upload_id)
    except SQLAlchemyError as e:
        raise PortalDBError(f"Failed to read upload {upload_id}", original_exception=e)


def list_uploads(session: Session, status: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[DataUpload]:
    try:
        query = session.query(DataUpload)
        if status:
            query = query.filter(DataUpload.status == status)
        return query.order_by(DataUpload.created_date.desc(), DataUpload.id.desc()).offset(offset).limit(limit).all()
    except SQLAlchemyError as e:
        raise PortalDBError("Failed to list uploads", original_exception=e)


# --- Read paths ---

def search_hospitals(session: Session, quarter: Optional[str] = None, year: Optional[int] = None,
                     search: Optional[str] = None, min_savings: Optional[float] = None,
                     max_savings: Optional[float] = None) -> List[Hospital]:
    """
    Hospitals with their quarterly data and pharmacies. With any of the
    quarterly filters set, a hospital is kept only when at least one of its
    quarterly rows satisfies all of them.
    """
    try:
        query = session.query(Hospital).options(
            selectinload(Hospital.quarterly_data), selectinload(Hospital.pharmacies))
        if search:
            query = query.filter(func.lower(Hospital.name).contains(search.lower(), autoescape=True))
        hospitals = query.order_by(Hospital.name).all()
    except SQLAlchemyError as e:
        raise PortalDBError("Failed to search hospitals", original_exception=e)

    if quarter is None and year is None and min_savings is None and max_savings is None:
        return hospitals

    def matches(row: QuarterlyHospitalData) -> bool:
        if quarter is not None and row.quarter != quarter:
            return False
        if year is not None and row.year != year:
            return False
        if min_savings is not None and row.savings_to_spend_percent < min_savings:
            return False
        if max_savings is not None and row.savings_to_spend_percent > max_savings:
            return False
        return True

    return [h for h in hospitals if any(matches(row) for row in h.quarterly_data)]


def fetch_hospital_export_rows(session: Session, quarter_ids: Iterable[int],
                               hospital_ids: Optional[Iterable[int]] = None) -> List[tuple]:
    """(Hospital, QuarterlyHospitalData, Quarter, HospitalQualification|None) for the selected periods."""
    try:
        query = (
            session.query(Hospital, QuarterlyHospitalData, Quarter, HospitalQualification)
            .join(QuarterlyHospitalData, QuarterlyHospitalData.hospital_id == Hospital.id)
            .join(Quarter, Quarter.id == QuarterlyHospitalData.quarter_id)
            .outerjoin(HospitalQualification,
                       (HospitalQualification.hospital_id == Hospital.id)
                       & (HospitalQualification.quarter == QuarterlyHospitalData.quarter)
                       & (HospitalQualification.year == QuarterlyHospitalData.year))
            .filter(QuarterlyHospitalData.quarter_id.in_(list(quarter_ids)))
        )
        if hospital_ids:
            query = query.filter(Hospital.id.in_(list(hospital_ids)))
        return query.order_by(Quarter.year, Quarter.quarter, Hospital.name).all()
    except SQLAlchemyError as e:
        raise PortalDBError("Failed to read hospital export rows", original_exception=e)


def fetch_pharmacy_export_rows(session: Session, quarter_ids: Iterable[int],
                               pharmacy_ids: Optional[Iterable[int]] = None) -> List[tuple]:
    """(Pharmacy, Hospital|None, QuarterlyPharmacyData, Quarter, PharmacyQualification|None)."""
    try:
        query = (
            session.query(Pharmacy, Hospital, QuarterlyPharmacyData, Quarter, PharmacyQualification)
            .join(QuarterlyPharmacyData, QuarterlyPharmacyData.pharmacy_id == Pharmacy.id)
            .join(Quarter, Quarter.id == QuarterlyPharmacyData.quarter_id)
            .outerjoin(Hospital, Hospital.id == Pharmacy.hospital_id)
            .outerjoin(PharmacyQualification,
                       (PharmacyQualification.pharmacy_id == Pharmacy.id)
                       & (PharmacyQualification.quarter == QuarterlyPharmacyData.quarter)
                       & (PharmacyQualification.year == QuarterlyPharmacyData.year))
            .filter(QuarterlyPharmacyData.quarter_id.in_(list(quarter_ids)))
        )
        if pharmacy_ids:
            query = query.filter(Pharmacy.id.in_(list(pharmacy_ids)))
        return query.order_by(Quarter.year, Quarter.quarter, Pharmacy.name).all()
    except SQLAlchemyError as e:
        raise PortalDBError("Failed to read pharmacy export rows", original_exception=e)


def fetch_summary_rows(session: Session, quarter_ids: Iterable[int]) -> List[tuple]:
    """(Quarter, QuarterlyHospitalData|None, Hospital|None) for each selected period."""
    try:
        return (
            session.query(Quarter, QuarterlyHospitalData, Hospital)
            .outerjoin(QuarterlyHospitalData, QuarterlyHospitalData.quarter_id == Quarter.id)
            .outerjoin(Hospital, Hospital.id == QuarterlyHospitalData.hospital_id)
            .filter(Quarter.id.in_(list(quarter_ids)))
            .order_by(Quarter.year, Quarter.quarter, QuarterlyHospitalData.id)
            .all()
        )
    except SQLAlchemyError as e:
        raise PortalDBError("Failed to read summary rows", original_exception=e)
