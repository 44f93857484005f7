from __future__ import annotations

import uuid

from fastapi import HTTPException, status
from sqlalchemy import case, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_recon.core.errors import ConsistencyError
from ledger_recon.core.logging import get_logger, log_event
from ledger_recon.core.models import utcnow
from ledger_recon.modules.reconciliation.models import (
    Discrepancy,
    DiscrepancySeverity,
    DiscrepancyState,
    ExternalInvoice,
    InvoiceStatus,
    Match,
    MatchState,
)

logger = get_logger(__name__)


def _locked_match(session: Session, match_id: uuid.UUID) -> Match:
    match = session.scalar(select(Match).where(Match.id == match_id).with_for_update())
    if not match:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Match not found")
    return match


def _clean_notes(notes: str | None) -> str | None:
    return (notes or "").strip() or None


def confirm_match(
    session: Session, *, match_id: uuid.UUID, reviewer: str, notes: str | None = None
) -> Match:
    """pending -> confirmed.

    Raises ConsistencyError when another confirmed match already claims the
    transaction or the invoice; neither match changes in that case.
    """
    match = _locked_match(session, match_id)
    if match.state != MatchState.PENDING:
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Match is {match.state.value}, not pending",
        )

    conflicting = session.scalar(
        select(Match.id).where(
            Match.id != match.id,
            Match.state == MatchState.CONFIRMED,
            or_(Match.transaction_id == match.transaction_id, Match.invoice_id == match.invoice_id),
        )
    )
    if conflicting:
        session.rollback()
        log_event(
            logger,
            "review.match.conflict",
            match_id=str(match_id),
            conflicting_match_id=str(conflicting),
        )
        raise ConsistencyError(
            f"Match {conflicting} is already confirmed for this transaction or invoice"
        )

    try:
        result = session.execute(
            update(Match)
            .where(Match.id == match_id, Match.state == MatchState.PENDING)
            .values(
                state=MatchState.CONFIRMED,
                decided_by=reviewer,
                decided_at=utcnow(),
                notes=_clean_notes(notes),
            )
        )
        if not result.rowcount:
            session.rollback()
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT, detail="Match was decided concurrently"
            )
        session.commit()
    except IntegrityError as e:
        session.rollback()
        log_event(logger, "review.match.conflict", match_id=str(match_id), reason="unique_index")
        raise ConsistencyError("Another confirmed match claims this transaction or invoice") from e

    session.refresh(match)
    log_event(
        logger,
        "review.match.confirmed",
        match_id=str(match.id),
        transaction_id=str(match.transaction_id),
        invoice_id=str(match.invoice_id),
        reviewer=reviewer,
    )
    return match


def reject_match(
    session: Session, *, match_id: uuid.UUID, reviewer: str, notes: str | None = None
) -> Match:
    match = _locked_match(session, match_id)
    if match.state != MatchState.PENDING:
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Match is {match.state.value}, not pending",
        )
    result = session.execute(
        update(Match)
        .where(Match.id == match_id, Match.state == MatchState.PENDING)
        .values(
            state=MatchState.REJECTED,
            decided_by=reviewer,
            decided_at=utcnow(),
            notes=_clean_notes(notes),
        )
    )
    if not result.rowcount:
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Match was decided concurrently"
        )
    session.commit()
    session.refresh(match)
    log_event(logger, "review.match.rejected", match_id=str(match.id), reviewer=reviewer)
    return match


def resolve_discrepancy(
    session: Session,
    *,
    discrepancy_id: uuid.UUID,
    outcome: DiscrepancyState,
    reviewer: str,
    notes: str | None = None,
) -> Discrepancy:
    if outcome not in {DiscrepancyState.RESOLVED, DiscrepancyState.IGNORED}:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Outcome must be resolved or ignored.",
        )
    discrepancy = session.scalar(
        select(Discrepancy).where(Discrepancy.id == discrepancy_id).with_for_update()
    )
    if not discrepancy:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Discrepancy not found")

    result = session.execute(
        update(Discrepancy)
        .where(Discrepancy.id == discrepancy_id, Discrepancy.state == DiscrepancyState.OPEN)
        .values(
            state=outcome,
            resolved_by=reviewer,
            resolved_at=utcnow(),
            resolution_notes=_clean_notes(notes),
        )
    )
    if not result.rowcount:
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="This discrepancy is not open."
        )
    session.commit()
    session.refresh(discrepancy)
    log_event(
        logger,
        "review.discrepancy.resolved",
        discrepancy_id=str(discrepancy.id),
        kind=discrepancy.kind.value,
        outcome=outcome.value,
        reviewer=reviewer,
    )
    return discrepancy


def list_matches(
    session: Session, *, organization_id: uuid.UUID, state: MatchState | None = MatchState.PENDING
) -> list[Match]:
    stmt = select(Match).where(Match.organization_id == organization_id)
    if state is not None:
        stmt = stmt.where(Match.state == state)
    return list(session.scalars(stmt.order_by(Match.confidence.desc(), Match.created_at)))


def list_discrepancies(
    session: Session,
    *,
    organization_id: uuid.UUID,
    state: DiscrepancyState | None = DiscrepancyState.OPEN,
) -> list[Discrepancy]:
    severity_rank = case(
        (Discrepancy.severity == DiscrepancySeverity.CRITICAL, 1),
        (Discrepancy.severity == DiscrepancySeverity.WARNING, 2),
        else_=3,
    )
    stmt = select(Discrepancy).where(Discrepancy.organization_id == organization_id)
    if state is not None:
        stmt = stmt.where(Discrepancy.state == state)
    stmt = stmt.order_by(
        severity_rank,
        func.abs(func.coalesce(Discrepancy.amount_delta, 0)).desc(),
        Discrepancy.created_at.desc(),
    )
    return list(session.scalars(stmt))


def reconciliation_summary(session: Session, *, organization_id: uuid.UUID) -> dict:
    invoice_ids = select(ExternalInvoice.id).where(
        ExternalInvoice.organization_id == organization_id,
        ExternalInvoice.status != InvoiceStatus.VOID,
    )
    total_invoices = session.scalar(select(func.count()).select_from(invoice_ids.subquery())) or 0

    def _count_matches(state: MatchState) -> int:
        return (
            session.scalar(
                select(func.count(Match.id)).where(
                    Match.organization_id == organization_id,
                    Match.state == state,
                    Match.invoice_id.in_(invoice_ids),
                )
            )
            or 0
        )

    matched = _count_matches(MatchState.CONFIRMED)
    suggested = _count_matches(MatchState.PENDING)
    open_discrepancies = (
        session.scalar(
            select(func.count(Discrepancy.id)).where(
                Discrepancy.organization_id == organization_id,
                Discrepancy.state == DiscrepancyState.OPEN,
            )
        )
        or 0
    )
    return {
        "total_invoices": total_invoices,
        "matched": matched,
        "suggested": suggested,
        "unmatched_invoices": max(0, total_invoices - matched - suggested),
        "open_discrepancies": open_discrepancies,
        "match_rate": round(matched / total_invoices, 4) if total_invoices else 0.0,
    }
