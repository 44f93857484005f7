from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel

from ledger_recon.modules.jobs.models import JobKind, JobStatus


class JobOut(BaseModel):
    id: uuid.UUID
    organization_id: uuid.UUID
    kind: JobKind
    status: JobStatus
    idempotency_key: str
    document_id: uuid.UUID | None
    params_json: dict
    result_json: dict
    error_message: str | None
    celery_task_id: str | None
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime
