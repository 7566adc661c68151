# savings340b/api/schemas.py
"""
Pydantic schemas for API request/response validation and serialization.
Used by FastAPI.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, Dict, Any
from datetime import datetime


# --- Upload Schemas ---
class UploadResponse(BaseModel):
    success: bool = True
    recordsProcessed: int = Field(..., description="Records written across all four sheets.")
    uploadId: int


class DataUploadSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    uploaded_by: str
    quarter: str
    year: int
    filename: Optional[str] = None
    status: str
    records_processed: int
    reviewed_by: Optional[str] = None
    reviewed_date: Optional[datetime] = None
    created_date: Optional[datetime] = None
    updated_date: Optional[datetime] = None


class UploadStatusUpdateSchema(BaseModel):
    status: str = Field(..., pattern="^(approved|rejected)$", description="Review decision for the upload.")


# --- Period Schemas ---
class QuarterSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    quarter: int
    year: int
    label: str


# --- Hospital Schemas ---
class QuarterlyHospitalDataSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    quarter: str
    year: int
    savings: float = 0
    drug_spend: float = 0
    savings_to_spend_percent: float = 0
    eligible_percent: float = 0
    medicaid_percent: float = 0


class PharmacySummarySchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str


class HospitalSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    pid: str
    name: str
    quarterly_hospital_data: List[QuarterlyHospitalDataSchema] = Field(default_factory=list,
                                                                       validation_alias="quarterly_data")
    pharmacies: List[PharmacySummarySchema] = Field(default_factory=list)


class HospitalListResponse(BaseModel):
    hospitals: List[HospitalSchema]


# --- Export Schemas ---
class ExportRequest(BaseModel):
    type: Optional[str] = Field(None, description="hospital_data, pharmacy_data or summary_report")
    quarters: Optional[List[int]] = Field(None, description="Ids of the periods to include.")
    hospitals: Optional[List[int]] = None
    pharmacies: Optional[List[int]] = None
    format: Optional[str] = Field(None, description="csv, html; anything else produces xlsx")


# --- Status Schemas ---
class SystemStatus(BaseModel):
    database_healthy: bool
    connections: Dict[str, Any] = Field(default_factory=dict)
    error_metrics: Dict[str, Any] = Field(default_factory=dict)
    system_health: str = Field("OK", description="Overall system health indicator.")
