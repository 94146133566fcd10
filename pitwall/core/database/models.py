# pitwall/core/database/models.py
"""
SQLAlchemy ORM models for Pitwall telemetry analysis persistence.

Models:
    - Upload: One row per ingested telemetry file
    - AnalysisJob: Analysis lifecycle for an upload (1:1 with Upload)
    - Report: Normalized AI report for an upload (1:1 with Upload)

AnalysisJob and Report are owned by the job orchestrator on behalf of their
upload; neither has a lifetime of its own. Jobs are never deleted so the
attempt counter doubles as an audit trail.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from .base import Base


# UUID type that works with both SQLite and PostgreSQL
class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise uses String(36).
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


class UploadStatus(str, Enum):
    """Upload lifecycle. Only moves forward except through an explicit retry."""
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    METRICS_READY = "metrics_ready"
    REPORTED = "reported"
    ERROR = "error"


class JobStatus(str, Enum):
    """Analysis job lifecycle: pending → processing → succeeded | failed."""
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Upload(Base):
    """
    Uploaded telemetry file.

    Attributes:
        id: Upload identifier
        user_id: Owner identity as supplied by the auth gateway
        filename: Original file name
        size_bytes: Size of the stored artifact
        storage_path: Opaque artifact store key
        sim: Sim title the session was recorded in (iRacing, ACC, ...)
        track: Track name, if declared
        car: Car label, if declared
        session_date: Declared session date/time string
        lap_count: Optional lap count supplied by the uploader
        status: UploadStatus value
        error_message: Last orchestrator error, if any
        created_at: When the upload was stored
    """

    __tablename__ = "uploads"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), nullable=False, index=True)
    filename = Column(String(500), nullable=False)
    size_bytes = Column(Integer, nullable=False, default=0)
    storage_path = Column(Text, nullable=False)

    sim = Column(String(50), nullable=False, default="Other")
    track = Column(String(255), nullable=True)
    car = Column(String(255), nullable=True)
    session_date = Column(String(64), nullable=True)
    lap_count = Column(Integer, nullable=True)

    status = Column(String(50), nullable=False, default=UploadStatus.UPLOADED.value, index=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    job = relationship("AnalysisJob", back_populates="upload", uselist=False)
    report = relationship("Report", back_populates="upload", uselist=False)

    __table_args__ = (
        Index("ix_uploads_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Upload(id={self.id}, filename={self.filename}, status={self.status})>"


class AnalysisJob(Base):
    """
    Analysis job for one upload.

    ``updated_at`` is the heartbeat: it advances every time a worker claims
    the job, and a ``processing`` row whose heartbeat is older than the
    staleness window is presumed to belong to a dead worker. ``attempts``
    increments on every claim and is used as the compare-and-swap version
    when moving the job into ``processing``.

    Status Transitions:
        pending → processing → succeeded
        pending → processing → failed → processing → ...
    """

    __tablename__ = "analysis_jobs"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    upload_id = Column(
        UUID(), ForeignKey("uploads.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    status = Column(String(50), nullable=False, default=JobStatus.PENDING.value, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    upload = relationship("Upload", back_populates="job")

    __table_args__ = (
        Index("ix_analysis_jobs_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<AnalysisJob(id={self.id}, upload_id={self.upload_id}, status={self.status}, attempts={self.attempts})>"


class Report(Base):
    """
    Normalized analysis report for one upload.

    Derived artifact: overwritten on every execution of the upload's job.
    """

    __tablename__ = "reports"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    upload_id = Column(
        UUID(), ForeignKey("uploads.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    model = Column(String(255), nullable=True)
    report = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    upload = relationship("Upload", back_populates="report")

    def __repr__(self) -> str:
        return f"<Report(upload_id={self.upload_id}, model={self.model})>"
