from __future__ import annotations

# Models must be registered before any task touches the database
# isort: off
import ledger_recon.models  # noqa: F401
# isort: on

import time
from collections.abc import Callable

from ledger_recon.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    reset_task_context,
    set_task_context,
)
from ledger_recon.worker.celery_app import celery_app

logger = get_logger(__name__)


def _run_tracked(task, task_name: str, job_id: str, run: Callable[[], object]) -> None:
    task_id = getattr(task.request, "id", None)
    token = set_task_context(task_id)
    start = time.monotonic()
    log_event(
        logger, "celery.task.start", task_name=task_name, celery_task_id=task_id, job_id=job_id
    )
    try:
        run()
        log_event(
            logger,
            "celery.task.finish",
            task_name=task_name,
            celery_task_id=task_id,
            job_id=job_id,
            duration_ms=monotonic_ms(start),
        )
    except Exception:
        log_exception(
            logger,
            "celery.task.error",
            task_name=task_name,
            celery_task_id=task_id,
            job_id=job_id,
            duration_ms=monotonic_ms(start),
        )
        raise
    finally:
        reset_task_context(token)


@celery_app.task(name="ingest_document", bind=True)
def ingest_document_task(self, job_id: str) -> None:
    from ledger_recon.modules.jobs.service import run_ingestion_job

    _run_tracked(self, "ingest_document", job_id, lambda: run_ingestion_job(job_id=job_id))


@celery_app.task(name="run_reconciliation", bind=True)
def run_reconciliation_task(self, job_id: str) -> None:
    from ledger_recon.modules.jobs.service import run_reconciliation_job

    _run_tracked(
        self, "run_reconciliation", job_id, lambda: run_reconciliation_job(job_id=job_id)
    )
