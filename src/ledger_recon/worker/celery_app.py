from __future__ import annotations

from celery import Celery

from ledger_recon.core.config import settings

INGEST_QUEUE = "ingest"
RECONCILE_QUEUE = "reconcile"


def make_celery() -> Celery:
    app = Celery("ledger_recon", broker=settings.redis_url, backend=settings.redis_url)
    app.conf.update(
        task_always_eager=settings.environment == "dev",
        task_eager_propagates=True,
        task_track_started=True,
        # A redelivered message only restarts a job whose last run went stale.
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        task_soft_time_limit=settings.task_soft_time_limit_seconds,
        task_time_limit=settings.task_soft_time_limit_seconds + 60,
        task_routes={
            "ingest_document": {"queue": INGEST_QUEUE},
            "run_reconciliation": {"queue": RECONCILE_QUEUE},
        },
        result_expires=24 * 3600,
    )
    app.autodiscover_tasks(["ledger_recon.worker.tasks"])
    return app


celery_app = make_celery()
