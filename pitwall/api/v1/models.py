"""
Request and response models for API v1.

Trigger payloads use the camelCase field names the web client sends
(``uploadId``); snake_case is accepted too.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class ErrorResponse(BaseModel):
    """
    Standard error response model for API errors.

    Attributes:
        error: Error category or type
        detail: Detailed error message
        timestamp: When the error occurred
    """
    error: str
    detail: str
    timestamp: datetime = Field(default_factory=datetime.now)


class UploadRef(BaseModel):
    """Body of the analyze/enqueue triggers."""
    upload_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("uploadId", "upload_id"),
    )


class AnalyzeResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    upload_id: uuid.UUID = Field(alias="uploadId")


class EnqueueResponse(BaseModel):
    ok: bool = True


class StatusResponse(BaseModel):
    status: str
    report: Optional[Dict[str, Any]] = None


class WorkerResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    upload_id: Optional[uuid.UUID] = Field(default=None, alias="uploadId")


class UploadSummary(BaseModel):
    """One row of the owner's upload list."""
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    filename: str
    size_bytes: int
    sim: str
    track: Optional[str] = None
    car: Optional[str] = None
    session_date: Optional[str] = None
    lap_count: Optional[int] = None
    status: str
    error_message: Optional[str] = None
    created_at: datetime
    has_report: bool = False


class UploadListResponse(BaseModel):
    uploads: List[UploadSummary]


class PreviewResponse(BaseModel):
    upload: UploadSummary
    preview: Dict[str, Any]


class HealthStatus(BaseModel):
    """
    System health status.

    Attributes:
        status: "healthy" when the database and storage answer, else "degraded"
        timestamp: Current timestamp
        version: API version
        database: Database health details
        llm_connected: Whether the model API answered
        llm: Model API connection details
        storage_available: Whether the telemetry bucket is reachable
    """
    status: str
    timestamp: datetime
    version: str
    database: Dict[str, Any]
    llm_connected: bool
    llm: Dict[str, Any]
    storage_available: bool
