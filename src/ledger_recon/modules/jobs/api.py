from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ledger_recon.core.db import db_session
from ledger_recon.modules.jobs.schemas import JobOut
from ledger_recon.modules.jobs.service import get_job

router = APIRouter(tags=["jobs"])


@router.get("/jobs/{job_id}", response_model=JobOut)
def read_job(job_id: uuid.UUID, session: Session = Depends(db_session)) -> JobOut:
    job = get_job(session, job_id=job_id)
    return JobOut.model_validate(job, from_attributes=True)
