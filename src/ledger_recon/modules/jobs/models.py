from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ledger_recon.core.models import Base, OrganizationScoped, Timestamped, UUIDPrimaryKey


class JobKind(str, enum.Enum):
    INGEST_DOCUMENT = "ingest_document"
    RECONCILE = "reconcile"


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Job(UUIDPrimaryKey, OrganizationScoped, Timestamped, Base):
    __tablename__ = "jobs_job"

    kind: Mapped[JobKind] = mapped_column(Enum(JobKind, native_enum=False), index=True)
    status: Mapped[JobStatus] = mapped_column(Enum(JobStatus, native_enum=False), index=True)
    idempotency_key: Mapped[str] = mapped_column(String(200), unique=True)

    document_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("documents_raw_document.id"), nullable=True, index=True
    )
    params_json: Mapped[dict] = mapped_column(JSON, default=dict)
    result_json: Mapped[dict] = mapped_column(JSON, default=dict)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    celery_task_id: Mapped[str | None] = mapped_column(String(200), nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
