"""
Tracked background jobs.

Every ingestion or reconciliation run is a Job row with an idempotency key;
submitting the same key twice returns the existing job. A failed job, or one
left ``running`` for longer than ``PROCESSING_STALE_MINUTES`` by a worker that
died, is put back to ``queued`` when it is submitted again.
"""

from __future__ import annotations

import datetime as dt
import time
import uuid

from fastapi import HTTPException, status
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_recon.core.config import settings
from ledger_recon.core.db import SessionLocal
from ledger_recon.core.errors import ProviderError
from ledger_recon.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    reset_organization_context,
    set_organization_context,
)
from ledger_recon.core.models import utcnow
from ledger_recon.modules.jobs.models import Job, JobKind, JobStatus

logger = get_logger(__name__)


def ingest_idempotency_key(document_id: uuid.UUID) -> str:
    return f"ingest:{document_id}"


def _stale_running():
    stale_before = utcnow() - dt.timedelta(minutes=int(settings.processing_stale_minutes))
    return (Job.status == JobStatus.RUNNING) & (Job.started_at < stale_before)


def submit_job(
    session: Session,
    *,
    organization_id: uuid.UUID,
    kind: JobKind,
    idempotency_key: str,
    document_id: uuid.UUID | None = None,
    params: dict | None = None,
) -> tuple[Job, bool]:
    """Returns ``(job, should_enqueue)``."""
    key = (idempotency_key or "").strip()[:200]
    if not key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Idempotency key is required"
        )

    def _lookup() -> Job | None:
        return session.scalar(select(Job).where(Job.idempotency_key == key))

    existing = _lookup()
    if existing is None:
        job = Job(
            organization_id=organization_id,
            kind=kind,
            status=JobStatus.QUEUED,
            idempotency_key=key,
            document_id=document_id,
            params_json=dict(params or {}),
            result_json={},
        )
        try:
            with session.begin_nested():
                session.add(job)
                session.flush()
            session.commit()
            session.refresh(job)
            log_event(
                logger,
                "job.submitted",
                job_id=str(job.id),
                kind=kind.value,
                idempotency_key=key,
                document_id=str(document_id) if document_id else None,
            )
            return job, True
        except IntegrityError:
            existing = _lookup()
            if existing is None:
                raise

    if existing.organization_id != organization_id or existing.kind != kind:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Idempotency key already used for a different job",
        )

    if existing.status in (JobStatus.FAILED, JobStatus.RUNNING):
        previous = existing.status.value
        result = session.execute(
            update(Job)
            .where(Job.id == existing.id, (Job.status == JobStatus.FAILED) | _stale_running())
            .values(
                status=JobStatus.QUEUED,
                error_message=None,
                started_at=None,
                finished_at=None,
            )
        )
        session.commit()
        session.refresh(existing)
        if result.rowcount:
            log_event(
                logger,
                "job.requeued",
                job_id=str(existing.id),
                idempotency_key=key,
                previous_status=previous,
            )
            return existing, True

    log_event(
        logger,
        "job.submit.deduplicated",
        job_id=str(existing.id),
        idempotency_key=key,
        status=existing.status.value,
    )
    return existing, False


def record_celery_task(session: Session, *, job: Job, celery_task_id: str | None) -> Job:
    job.celery_task_id = celery_task_id
    session.add(job)
    session.commit()
    session.refresh(job)
    return job


def get_job(session: Session, *, job_id: uuid.UUID) -> Job:
    job = session.scalar(select(Job).where(Job.id == job_id))
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job


def try_start_job(session: Session, *, job: Job) -> bool:
    """Claims a queued job, or a running one whose worker has been gone too long."""
    reclaiming = job.status == JobStatus.RUNNING
    result = session.execute(
        update(Job)
        .where(Job.id == job.id, (Job.status == JobStatus.QUEUED) | _stale_running())
        .values(status=JobStatus.RUNNING, started_at=utcnow(), error_message=None)
    )
    if not result.rowcount:
        return False
    session.commit()
    session.refresh(job)
    if reclaiming:
        log_event(logger, "job.reclaimed", job_id=str(job.id), kind=job.kind.value)
    return True


def finish_job(
    session: Session,
    *,
    job: Job,
    to_status: JobStatus,
    result: dict | None = None,
    error_message: str | None = None,
) -> Job:
    job.status = to_status
    job.result_json = dict(result or {})
    job.error_message = error_message
    job.finished_at = utcnow()
    session.add(job)
    session.commit()
    session.refresh(job)
    log_event(
        logger,
        "job.finished",
        job_id=str(job.id),
        kind=job.kind.value,
        status=job.status.value,
        error_message=error_message,
    )
    return job


def _load_and_start(session: Session, job_id: str) -> Job | None:
    job = session.scalar(select(Job).where(Job.id == uuid.UUID(job_id)))
    if not job:
        return None
    if not try_start_job(session, job=job):
        log_event(logger, "job.skip.not_queued", job_id=job_id, status=job.status.value)
        return None
    return job


def run_ingestion_job(*, job_id: str, pipeline=None) -> Job | None:
    from ledger_recon.modules.ingestion.service import IngestionPipeline

    with SessionLocal() as session:
        job = _load_and_start(session, job_id)
        if job is None:
            return None

        token = set_organization_context(str(job.organization_id))
        start = time.monotonic()
        try:
            if job.document_id is None:
                return finish_job(
                    session,
                    job=job,
                    to_status=JobStatus.FAILED,
                    error_message="Ingestion job has no document",
                )
            outcome = (pipeline or IngestionPipeline()).ingest_document(
                document_id=job.document_id
            )
            if outcome is None:
                return finish_job(
                    session,
                    job=job,
                    to_status=JobStatus.FAILED,
                    error_message="Document is missing or already being processed",
                )
            if outcome.status != "processed":
                return finish_job(
                    session,
                    job=job,
                    to_status=JobStatus.FAILED,
                    result=outcome.as_dict(),
                    error_message=outcome.error_message or "Document could not be ingested",
                )
            return finish_job(
                session, job=job, to_status=JobStatus.SUCCEEDED, result=outcome.as_dict()
            )
        except Exception as e:
            session.rollback()
            finish_job(session, job=job, to_status=JobStatus.FAILED, error_message=str(e))
            log_exception(
                logger,
                "job.error",
                job_id=job_id,
                kind=job.kind.value,
                duration_ms=monotonic_ms(start),
            )
            raise
        finally:
            reset_organization_context(token)


def run_reconciliation_job(*, job_id: str, feed=None) -> Job | None:
    from ledger_recon.modules.reconciliation.feeds import HttpInvoiceFeed
    from ledger_recon.modules.reconciliation.service import run_reconciliation

    with SessionLocal() as session:
        job = _load_and_start(session, job_id)
        if job is None:
            return None

        token = set_organization_context(str(job.organization_id))
        start = time.monotonic()
        params = job.params_json or {}
        try:
            outcome = run_reconciliation(
                session,
                organization_id=job.organization_id,
                start=_param_date(params.get("start")),
                end=_param_date(params.get("end")),
                feed=feed or HttpInvoiceFeed.from_settings(),
            )
            return finish_job(
                session, job=job, to_status=JobStatus.SUCCEEDED, result=outcome.as_dict()
            )
        except (ProviderError, ValueError) as e:
            session.rollback()
            log_event(
                logger,
                "job.failed",
                job_id=job_id,
                kind=job.kind.value,
                error=str(e),
                duration_ms=monotonic_ms(start),
            )
            return finish_job(session, job=job, to_status=JobStatus.FAILED, error_message=str(e))
        except Exception as e:
            session.rollback()
            finish_job(session, job=job, to_status=JobStatus.FAILED, error_message=str(e))
            log_exception(
                logger,
                "job.error",
                job_id=job_id,
                kind=job.kind.value,
                duration_ms=monotonic_ms(start),
            )
            raise
        finally:
            reset_organization_context(token)


def _param_date(value: object) -> dt.date | None:
    if not value:
        return None
    return dt.date.fromisoformat(str(value))
