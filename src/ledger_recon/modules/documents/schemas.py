from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel

from ledger_recon.modules.documents.models import DocumentStatus, DocumentType


class DocumentOut(BaseModel):
    id: uuid.UUID
    organization_id: uuid.UUID
    filename: str
    content_type: str | None
    byte_size: int
    sha256: str
    declared_type: DocumentType
    status: DocumentStatus
    extraction_confidence: float | None
    summary: str | None
    error_message: str | None
    row_count: int | None
    skip_counts: dict[str, int] | None
    processed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class DocumentUploadOut(BaseModel):
    document: DocumentOut
    job_id: uuid.UUID
