"""
Insert-if-new persistence for reconciliation results.

Existing matches and discrepancies are never modified here; only human review
(see review.py) changes their state.
"""

from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_recon.core.logging import get_logger, log_event
from ledger_recon.core.models import utcnow
from ledger_recon.modules.reconciliation.engine import PlannedDiscrepancy, PlannedMatch
from ledger_recon.modules.reconciliation.models import (
    Discrepancy,
    DiscrepancyKind,
    DiscrepancySeverity,
    DiscrepancyState,
    Match,
    MatchState,
)

logger = get_logger(__name__)


def upsert_match(
    session: Session, *, organization_id: uuid.UUID, planned: PlannedMatch
) -> tuple[Match | None, bool]:
    """Returns ``(match, created)``; ``match`` is None when a confirmed match won a race."""

    def _lookup() -> Match | None:
        return session.scalar(
            select(Match).where(
                Match.transaction_id == planned.transaction_id,
                Match.invoice_id == planned.invoice_id,
            )
        )

    existing = _lookup()
    if existing:
        return existing, False

    state = MatchState(planned.state)
    match = Match(
        organization_id=organization_id,
        transaction_id=planned.transaction_id,
        invoice_id=planned.invoice_id,
        confidence=planned.confidence,
        state=state,
        amount_delta=planned.amount_delta,
        date_delta_days=planned.date_delta_days,
        matched_on=list(planned.matched_on),
        decided_by="auto" if state == MatchState.CONFIRMED else None,
        decided_at=utcnow() if state == MatchState.CONFIRMED else None,
    )
    try:
        with session.begin_nested():
            session.add(match)
            session.flush()
        return match, True
    except IntegrityError:
        existing = _lookup()
        if existing:
            return existing, False
        log_event(
            logger,
            "reconcile.match.conflict",
            transaction_id=str(planned.transaction_id),
            invoice_id=str(planned.invoice_id),
            state=planned.state,
        )
        return None, False


def upsert_discrepancy(
    session: Session, *, organization_id: uuid.UUID, planned: PlannedDiscrepancy
) -> tuple[Discrepancy, bool]:
    key = planned.dedupe_key

    def _lookup() -> Discrepancy | None:
        return session.scalar(
            select(Discrepancy).where(
                Discrepancy.organization_id == organization_id,
                Discrepancy.dedupe_key == key,
            )
        )

    existing = _lookup()
    if existing:
        return existing, False

    row = Discrepancy(
        organization_id=organization_id,
        kind=DiscrepancyKind(planned.kind),
        transaction_id=planned.transaction_id,
        invoice_id=planned.invoice_id,
        amount_delta=planned.amount_delta,
        severity=DiscrepancySeverity(planned.severity),
        state=DiscrepancyState.OPEN,
        title=planned.title[:300],
        description=planned.description,
        suggested_action=planned.suggested_action,
        data_json=dict(planned.data),
        dedupe_key=key,
    )
    try:
        with session.begin_nested():
            session.add(row)
            session.flush()
        return row, True
    except IntegrityError:
        existing = _lookup()
        if existing is None:
            raise
        return existing, False
