from __future__ import annotations

import datetime as dt
import time
import uuid
from collections import Counter
from dataclasses import asdict, dataclass, field

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ledger_recon.core.logging import get_logger, log_event, monotonic_ms
from ledger_recon.modules.ledger.models import Transaction, Vendor
from ledger_recon.modules.reconciliation.engine import (
    ExistingMatch,
    InvoiceEntry,
    LedgerEntry,
    ReconciliationConfig,
    plan_reconciliation,
)
from ledger_recon.modules.reconciliation.feeds import InvoiceFeedProvider, sync_invoices
from ledger_recon.modules.reconciliation.models import ExternalInvoice, InvoiceStatus, Match
from ledger_recon.modules.reconciliation.store import upsert_discrepancy, upsert_match

logger = get_logger(__name__)


@dataclass
class ReconciliationRunResult:
    organization_id: str
    start: str
    end: str
    transactions: int = 0
    invoices: int = 0
    candidates: int = 0
    invoices_synced: int = 0
    matches_created: int = 0
    confirmed: int = 0
    pending: int = 0
    discrepancies_created: int = 0
    discrepancies_by_kind: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return asdict(self)


def resolve_window(
    *, start: dt.date | None, end: dt.date | None, config: ReconciliationConfig
) -> tuple[dt.date, dt.date]:
    end = end or dt.date.today()
    start = start or end - dt.timedelta(days=config.window_days)
    if start > end:
        raise ValueError("start must not be after end")
    return start, end


def run_reconciliation(
    session: Session,
    *,
    organization_id: uuid.UUID,
    start: dt.date | None = None,
    end: dt.date | None = None,
    config: ReconciliationConfig | None = None,
    feed: InvoiceFeedProvider | None = None,
) -> ReconciliationRunResult:
    config = config or ReconciliationConfig.from_settings()
    start, end = resolve_window(start=start, end=end, config=config)
    t0 = time.monotonic()
    log_event(
        logger,
        "reconcile.start",
        organization_id=str(organization_id),
        start=start.isoformat(),
        end=end.isoformat(),
        feed=getattr(feed, "source", None),
    )
    result = ReconciliationRunResult(
        organization_id=str(organization_id), start=start.isoformat(), end=end.isoformat()
    )

    if feed is not None:
        synced = sync_invoices(
            session, organization_id=organization_id, feed=feed, start=start, end=end
        )
        result.invoices_synced = synced.created + synced.updated

    transactions = [
        LedgerEntry(
            id=txn.id,
            date=txn.date,
            amount=txn.amount,
            vendor_name=vendor_name,
            description=txn.description,
            raw_vendor=txn.raw_vendor,
        )
        for txn, vendor_name in session.execute(
            select(Transaction, Vendor.name)
            .join(Vendor, Vendor.id == Transaction.vendor_id)
            .where(
                Transaction.organization_id == organization_id,
                Transaction.date >= start,
                Transaction.date <= end,
            )
            .order_by(Transaction.date, Transaction.id)
        )
    ]
    invoices = [
        InvoiceEntry(
            id=inv.id,
            date=inv.date,
            amount=inv.amount,
            vendor_name=inv.vendor_name,
            kind=inv.kind.value,
            number=inv.number,
        )
        for inv in session.scalars(
            select(ExternalInvoice)
            .where(
                ExternalInvoice.organization_id == organization_id,
                ExternalInvoice.status != InvoiceStatus.VOID,
                ExternalInvoice.date >= start,
                ExternalInvoice.date <= end,
            )
            .order_by(ExternalInvoice.date, ExternalInvoice.id)
        )
    ]
    result.transactions = len(transactions)
    result.invoices = len(invoices)

    txn_ids = [t.id for t in transactions]
    inv_ids = [i.id for i in invoices]
    existing: list[ExistingMatch] = []
    if txn_ids or inv_ids:
        existing = [
            ExistingMatch(
                transaction_id=m.transaction_id, invoice_id=m.invoice_id, state=m.state.value
            )
            for m in session.scalars(
                select(Match).where(
                    Match.organization_id == organization_id,
                    or_(Match.transaction_id.in_(txn_ids), Match.invoice_id.in_(inv_ids)),
                )
            )
        ]

    plan = plan_reconciliation(transactions, invoices, existing, config)
    result.candidates = plan.candidates
    log_event(
        logger,
        "reconcile.plan",
        organization_id=str(organization_id),
        transactions=len(transactions),
        invoices=len(invoices),
        existing_matches=len(existing),
        candidates=plan.candidates,
        planned_matches=len(plan.matches),
        planned_discrepancies=len(plan.discrepancies),
    )

    dropped: set[tuple[uuid.UUID, uuid.UUID]] = set()
    for planned in plan.matches:
        match, created = upsert_match(session, organization_id=organization_id, planned=planned)
        if match is None:
            dropped.add((planned.transaction_id, planned.invoice_id))
            continue
        if not created:
            continue
        result.matches_created += 1
        if planned.state == "confirmed":
            result.confirmed += 1
        else:
            result.pending += 1

    kinds: Counter[str] = Counter()
    for planned in plan.discrepancies:
        # A mismatch note only makes sense next to the match it describes.
        if (planned.transaction_id, planned.invoice_id) in dropped:
            continue
        _, created = upsert_discrepancy(session, organization_id=organization_id, planned=planned)
        if created:
            result.discrepancies_created += 1
            kinds[planned.kind] += 1
    result.discrepancies_by_kind = dict(kinds)
    session.commit()

    log_event(
        logger,
        "reconcile.finish",
        organization_id=str(organization_id),
        matches_created=result.matches_created,
        confirmed=result.confirmed,
        pending=result.pending,
        discrepancies_created=result.discrepancies_created,
        duration_ms=monotonic_ms(t0),
    )
    return result
