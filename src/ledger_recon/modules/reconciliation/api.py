from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_recon.api.deps import current_organization, reviewer_name
from ledger_recon.core.db import db_session
from ledger_recon.core.errors import ConsistencyError
from ledger_recon.core.logging import get_logger, log_event
from ledger_recon.modules.jobs.models import JobKind
from ledger_recon.modules.jobs.schemas import JobOut
from ledger_recon.modules.jobs.service import record_celery_task, submit_job
from ledger_recon.modules.organizations.models import Organization
from ledger_recon.modules.reconciliation.feeds import FeedInvoice, StaticInvoiceFeed, sync_invoices
from ledger_recon.modules.reconciliation.models import (
    DiscrepancyState,
    ExternalInvoice,
    MatchState,
)
from ledger_recon.modules.reconciliation.review import (
    confirm_match,
    list_discrepancies,
    list_matches,
    reconciliation_summary,
    reject_match,
    resolve_discrepancy,
)
from ledger_recon.modules.reconciliation.schemas import (
    DiscrepancyOut,
    DiscrepancyResolveIn,
    InvoiceOut,
    InvoicePushIn,
    InvoiceSyncOut,
    MatchDecisionIn,
    MatchOut,
    ReconciliationRunIn,
    ReconciliationSummaryOut,
)
from ledger_recon.worker.tasks import run_reconciliation_task

router = APIRouter(tags=["reconciliation"])
logger = get_logger(__name__)


@router.post("/organizations/{organization_id}/invoices", response_model=InvoiceSyncOut)
def push_invoices(
    payload: InvoicePushIn,
    org: Organization = Depends(current_organization),
    session: Session = Depends(db_session),
) -> InvoiceSyncOut:
    if not payload.invoices:
        return InvoiceSyncOut(fetched=0, created=0, updated=0)
    feed = StaticInvoiceFeed(
        [
            FeedInvoice(
                external_id=i.external_id,
                number=i.number,
                kind=i.kind,
                amount=i.amount,
                currency=i.currency.upper()[:3],
                date=i.date,
                due_date=i.due_date,
                vendor_name=i.vendor_name,
                status=i.status,
            )
            for i in payload.invoices
        ],
        source=payload.source,
    )
    dates = [i.date for i in payload.invoices]
    result = sync_invoices(
        session, organization_id=org.id, feed=feed, start=min(dates), end=max(dates)
    )
    return InvoiceSyncOut(fetched=result.fetched, created=result.created, updated=result.updated)


@router.get("/organizations/{organization_id}/invoices", response_model=list[InvoiceOut])
def list_invoices(
    org: Organization = Depends(current_organization),
    session: Session = Depends(db_session),
) -> list[InvoiceOut]:
    rows = session.scalars(
        select(ExternalInvoice)
        .where(ExternalInvoice.organization_id == org.id)
        .order_by(ExternalInvoice.date.desc())
    )
    return [InvoiceOut.model_validate(i, from_attributes=True) for i in rows]


@router.post("/organizations/{organization_id}/reconciliation/runs", response_model=JobOut)
def start_reconciliation(
    payload: ReconciliationRunIn,
    org: Organization = Depends(current_organization),
    session: Session = Depends(db_session),
) -> JobOut:
    if payload.start and payload.end and payload.start > payload.end:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="start must not be after end"
        )
    key = payload.idempotency_key or f"reconcile:{org.id}:{uuid.uuid4()}"
    job, should_enqueue = submit_job(
        session,
        organization_id=org.id,
        kind=JobKind.RECONCILE,
        idempotency_key=key,
        params={
            "start": payload.start.isoformat() if payload.start else None,
            "end": payload.end.isoformat() if payload.end else None,
        },
    )
    if should_enqueue:
        async_result = run_reconciliation_task.delay(str(job.id))
        log_event(
            logger,
            "celery.task.enqueued",
            task_name="run_reconciliation",
            celery_task_id=async_result.id,
            job_id=str(job.id),
        )
        session.expire_all()
        job = record_celery_task(session, job=job, celery_task_id=async_result.id)
    return JobOut.model_validate(job, from_attributes=True)


@router.get(
    "/organizations/{organization_id}/reconciliation/summary",
    response_model=ReconciliationSummaryOut,
)
def read_summary(
    org: Organization = Depends(current_organization),
    session: Session = Depends(db_session),
) -> ReconciliationSummaryOut:
    return ReconciliationSummaryOut(**reconciliation_summary(session, organization_id=org.id))


@router.get("/organizations/{organization_id}/matches", response_model=list[MatchOut])
def read_matches(
    state: MatchState | None = MatchState.PENDING,
    org: Organization = Depends(current_organization),
    session: Session = Depends(db_session),
) -> list[MatchOut]:
    rows = list_matches(session, organization_id=org.id, state=state)
    return [MatchOut.model_validate(m, from_attributes=True) for m in rows]


@router.post("/matches/{match_id}/confirm", response_model=MatchOut)
def confirm(
    match_id: uuid.UUID,
    payload: MatchDecisionIn | None = None,
    reviewer: str = Depends(reviewer_name),
    session: Session = Depends(db_session),
) -> MatchOut:
    try:
        match = confirm_match(
            session,
            match_id=match_id,
            reviewer=reviewer,
            notes=payload.notes if payload else None,
        )
    except ConsistencyError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    return MatchOut.model_validate(match, from_attributes=True)


@router.post("/matches/{match_id}/reject", response_model=MatchOut)
def reject(
    match_id: uuid.UUID,
    payload: MatchDecisionIn | None = None,
    reviewer: str = Depends(reviewer_name),
    session: Session = Depends(db_session),
) -> MatchOut:
    match = reject_match(
        session, match_id=match_id, reviewer=reviewer, notes=payload.notes if payload else None
    )
    return MatchOut.model_validate(match, from_attributes=True)


@router.get("/organizations/{organization_id}/discrepancies", response_model=list[DiscrepancyOut])
def read_discrepancies(
    state: DiscrepancyState | None = DiscrepancyState.OPEN,
    org: Organization = Depends(current_organization),
    session: Session = Depends(db_session),
) -> list[DiscrepancyOut]:
    rows = list_discrepancies(session, organization_id=org.id, state=state)
    return [DiscrepancyOut.model_validate(d, from_attributes=True) for d in rows]


@router.post("/discrepancies/{discrepancy_id}/resolve", response_model=DiscrepancyOut)
def resolve(
    discrepancy_id: uuid.UUID,
    payload: DiscrepancyResolveIn,
    reviewer: str = Depends(reviewer_name),
    session: Session = Depends(db_session),
) -> DiscrepancyOut:
    discrepancy = resolve_discrepancy(
        session,
        discrepancy_id=discrepancy_id,
        outcome=payload.outcome,
        reviewer=reviewer,
        notes=payload.notes,
    )
    return DiscrepancyOut.model_validate(discrepancy, from_attributes=True)
