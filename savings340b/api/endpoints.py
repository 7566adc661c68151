# savings340b/api/endpoints.py
"""
FastAPI endpoints for the 340B savings portal: workbook upload, exports,
hospital listing, upload review and system status.
"""
from fastapi import APIRouter, Depends, File, Form, Path, Query, Body, UploadFile, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session
from typing import List, Optional

from savings340b.api import schemas
from savings340b.database.connection_manager import get_portal_session, get_app_config, db_manager
from savings340b.database import portal_handler
from savings340b.processing.upload_orchestrator import UploadOrchestrator
from savings340b.processing.workbook_parser import to_int
from savings340b.services.export_service import ExportService
from savings340b.utils.logging_config import get_logger, get_correlation_id, set_user_id, log_audit_event
from savings340b.utils.error_handler import (
    APIError, AppException, PortalDBError, AuthorizationError, BadRequestError, NotFoundError,
    metrics_collector
)
from savings340b.utils.security import CurrentUser, get_auth_handler

logger = get_logger('savings340b.api.endpoints')
router = APIRouter()

APP_CONFIG = get_app_config()
upload_orchestrator = UploadOrchestrator(config=APP_CONFIG)
export_service = ExportService(config=APP_CONFIG)
MAX_UPLOAD_BYTES = int(APP_CONFIG.get('ingestion', {}).get('max_upload_bytes', 50 * 1024 * 1024))

bearer_scheme = HTTPBearer(auto_error=False)


# --- Dependencies ---
def get_db_session():
    """FastAPI dependency yielding a portal database session."""
    db = None
    try:
        db = get_portal_session()
    except Exception as e:
        logger.error(f"API: Could not get portal session: {e}", exc_info=True)
        raise APIError("Database service unavailable.", status_code=503, error_code="DB_UNAVAILABLE")
    try:
        yield db
    finally:
        db.close()


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
                     db: Session = Depends(get_db_session)) -> CurrentUser:
    """Verifies the bearer token and loads the caller's role. Raises 401 without a valid token."""
    token = credentials.credentials if credentials else None
    user_id = get_auth_handler().user_id_from_token(token)
    set_user_id(user_id)
    role = portal_handler.get_user_role(db, user_id)
    return CurrentUser(user_id=user_id, role=role)


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """403 unless the caller's users row carries the admin role."""
    if user.role != get_auth_handler().admin_role:
        logger.warning(f"[{get_correlation_id()}] User {user.user_id} (role={user.role}) denied admin access.")
        log_audit_event("admin_access", "api", outcome="denied", user_id=user.user_id, role=user.role)
        raise AuthorizationError()
    return user


def _parse_year(year: Optional[str]) -> int:
    """Leading integer of the year form field ("2024 Q1" -> 2024); 0 when absent or not numeric."""
    return to_int(year)


# --- Upload ---

@router.post("/upload", response_model=schemas.UploadResponse, tags=["Upload"])
async def upload_workbook(
    file: Optional[UploadFile] = File(None, description="Quarterly .xlsx workbook"),
    quarter: Optional[str] = Form(None, description="Quarter token, e.g. Q1"),
    year: Optional[str] = Form(None, description="Four-digit year"),
    user: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db_session)
):
    """
    Ingests a workbook for one (quarter, year) period. Rows whose parent
    entity cannot be resolved are dropped silently; the response only
    reports how many records were written.
    """
    cid = get_correlation_id()
    year_number = _parse_year(year)
    if file is None or not quarter or not year_number:
        raise BadRequestError("Missing required fields",
                              details={'file': file is not None, 'quarter': quarter, 'year': year})

    filename = file.filename
    logger.info(f"[{cid}] POST /upload by {user.user_id}: '{filename}' for {quarter} {year_number}")
    try:
        content = await file.read()
        if len(content) > MAX_UPLOAD_BYTES:
            raise BadRequestError("Uploaded file is too large",
                                  details={'size_bytes': len(content), 'max_bytes': MAX_UPLOAD_BYTES})
        result = upload_orchestrator.ingest_workbook(db, user.user_id, quarter, year_number, filename, content)
        return schemas.UploadResponse(success=True, recordsProcessed=result.records_processed,
                                      uploadId=result.upload_id)
    except AppException:
        db.rollback()
        raise
    except Exception as e:
        db.rollback()
        logger.error(f"[{cid}] Unexpected error ingesting '{filename}': {e}", exc_info=True)
        raise APIError("Upload failed", status_code=500, details={'filename': filename})


# --- Export ---

@router.post("/export", tags=["Export"])
async def export_data(
    request: schemas.ExportRequest = Body(...),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db_session)
):
    """Builds a CSV, HTML or XLSX download for the selected periods."""
    cid = get_correlation_id()
    logger.info(f"[{cid}] POST /export type={request.type} quarters={request.quarters} format={request.format}")
    try:
        export_file = export_service.export(db, request.type, request.quarters or [],
                                            hospital_ids=request.hospitals, pharmacy_ids=request.pharmacies,
                                            fmt=request.format)
    except AppException:
        raise
    except Exception as e:
        logger.error(f"[{cid}] Unexpected error building export: {e}", exc_info=True)
        raise APIError("Internal server error", status_code=500)

    log_audit_event("export", request.type, user_id=user.user_id, quarters=request.quarters,
                    format=request.format, rows=export_file.row_count)
    return Response(
        content=export_file.content,
        media_type=export_file.media_type,
        headers={"Content-Disposition": f'attachment; filename="{export_file.filename}"'},
    )


# --- Periods ---

@router.get("/quarters", response_model=List[schemas.QuarterSchema], tags=["Periods"])
async def list_quarters(
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db_session)
):
    """Known reporting periods, newest first. Their ids are what /export selects by."""
    try:
        return portal_handler.list_periods(db)
    except PortalDBError as e:
        logger.error(f"[{get_correlation_id()}] Database error listing periods: {e.message}", exc_info=True)
        raise APIError(f"Database error: {e.message}", status_code=500)


# --- Hospitals ---

@router.get("/hospitals", response_model=schemas.HospitalListResponse, tags=["Hospitals"])
async def list_hospitals(
    quarter: Optional[str] = Query(None, description="Raw quarter token, e.g. Q1"),
    year: Optional[int] = Query(None),
    search: Optional[str] = Query(None, description="Case-insensitive hospital name substring"),
    minSavings: Optional[float] = Query(None, description="Lower bound on savings-to-spend %"),
    maxSavings: Optional[float] = Query(None, description="Upper bound on savings-to-spend %"),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db_session)
):
    cid = get_correlation_id()
    logger.info(f"[{cid}] GET /hospitals quarter={quarter} year={year} search={search}")
    try:
        hospitals = portal_handler.search_hospitals(db, quarter=quarter, year=year, search=search,
                                                    min_savings=minSavings, max_savings=maxSavings)
        return schemas.HospitalListResponse(
            hospitals=[schemas.HospitalSchema.model_validate(h) for h in hospitals])
    except PortalDBError as e:
        logger.error(f"[{cid}] Database error listing hospitals: {e.message}", exc_info=True)
        raise APIError(f"Database error: {e.message}", status_code=500)


# --- Upload history and review ---

@router.get("/uploads", response_model=List[schemas.DataUploadSchema], tags=["Uploads"])
async def list_uploads(
    status: Optional[str] = Query(None, description="pending, approved or rejected"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    user: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db_session)
):
    """Upload history, newest first."""
    try:
        return portal_handler.list_uploads(db, status=status, limit=limit, offset=skip)
    except PortalDBError as e:
        logger.error(f"[{get_correlation_id()}] Database error listing uploads: {e.message}", exc_info=True)
        raise APIError(f"Database error: {e.message}", status_code=500)


@router.get("/uploads/{upload_id}", response_model=schemas.DataUploadSchema, tags=["Uploads"])
async def read_upload(
    upload_id: int = Path(..., ge=1),
    user: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db_session)
):
    upload = portal_handler.get_upload(db, upload_id)
    if upload is None:
        raise NotFoundError("Upload not found.", details={'upload_id': upload_id})
    return upload


@router.put("/uploads/{upload_id}/status", response_model=schemas.DataUploadSchema, tags=["Uploads"])
async def review_upload(
    upload_id: int = Path(..., ge=1),
    update: schemas.UploadStatusUpdateSchema = Body(...),
    user: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db_session)
):
    """Records an administrator's approve/reject decision on an upload."""
    cid = get_correlation_id()
    logger.info(f"[{cid}] PUT /uploads/{upload_id}/status -> {update.status} by {user.user_id}")
    try:
        upload = portal_handler.set_upload_status(db, upload_id, update.status, reviewed_by=user.user_id)
        if upload is None:
            raise NotFoundError("Upload not found.", details={'upload_id': upload_id})
        db.commit()
    except PortalDBError as e:
        db.rollback()
        logger.error(f"[{cid}] Database error reviewing upload {upload_id}: {e.message}", exc_info=True)
        raise APIError(f"Database error: {e.message}", status_code=500)

    log_audit_event("upload_review", f"data_uploads/{upload_id}", user_id=user.user_id, status=update.status)
    return upload


# --- Status ---

@router.get("/status", response_model=schemas.SystemStatus, tags=["System Status"])
async def get_system_status():
    """Database health plus a summary of recent application errors."""
    health = db_manager.run_all_health_checks()
    healthy = bool(health) and all(health.values())
    return schemas.SystemStatus(
        database_healthy=healthy,
        connections=db_manager.get_all_connection_metrics_details(),
        error_metrics=metrics_collector.get_error_patterns(),
        system_health="OK" if healthy else "DEGRADED",
    )
