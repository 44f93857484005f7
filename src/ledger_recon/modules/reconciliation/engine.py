"""
Matching of ledger transactions against external invoices.

Everything here is pure: the service loads rows, converts them to the plain
entries below and persists whatever plan comes back. Running the planner twice
over the same input gives the same plan.
"""

from __future__ import annotations

import datetime as dt
import uuid
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal

from rapidfuzz import fuzz
from rapidfuzz.distance import JaroWinkler

from ledger_recon.core.config import settings
from ledger_recon.core.errors import MatchingAmbiguity

CONFIRMED = "confirmed"
PENDING = "pending"
REJECTED = "rejected"

INVOICE_WITHOUT_TRANSACTION = "invoice_without_transaction"
TRANSACTION_WITHOUT_INVOICE = "transaction_without_invoice"
AMOUNT_MISMATCH = "amount_mismatch"
MATCHING_AMBIGUITY = "matching_ambiguity"

BILL = "bill"


@dataclass(frozen=True)
class ReconciliationConfig:
    window_days: int = 90
    date_tolerance_days: int = 5
    amount_tolerance_pct: float = 0.05
    amount_exact_tolerance: Decimal = Decimal("0.01")
    auto_confirm_threshold: float = 0.95
    review_threshold: float = 0.6
    weight_amount: float = 0.5
    weight_date: float = 0.2
    weight_text: float = 0.3

    @classmethod
    def from_settings(cls) -> ReconciliationConfig:
        return cls(
            window_days=int(settings.reconcile_window_days),
            date_tolerance_days=int(settings.reconcile_date_tolerance_days),
            amount_tolerance_pct=float(settings.reconcile_amount_tolerance_pct),
            amount_exact_tolerance=Decimal(str(settings.reconcile_amount_exact_tolerance)),
            auto_confirm_threshold=float(settings.reconcile_auto_confirm_threshold),
            review_threshold=float(settings.reconcile_review_threshold),
            weight_amount=float(settings.reconcile_weight_amount),
            weight_date=float(settings.reconcile_weight_date),
            weight_text=float(settings.reconcile_weight_text),
        )


@dataclass(frozen=True)
class LedgerEntry:
    id: uuid.UUID
    date: dt.date
    amount: Decimal
    vendor_name: str | None = None
    description: str | None = None
    raw_vendor: str | None = None


@dataclass(frozen=True)
class InvoiceEntry:
    id: uuid.UUID
    date: dt.date
    amount: Decimal
    vendor_name: str
    kind: str
    number: str | None = None


@dataclass(frozen=True)
class ExistingMatch:
    transaction_id: uuid.UUID
    invoice_id: uuid.UUID
    state: str


@dataclass(frozen=True)
class ScoredCandidate:
    transaction_id: uuid.UUID
    invoice_id: uuid.UUID
    score: float
    amount_score: float
    date_score: float
    text_score: float
    date_delta_days: int
    amount_delta: Decimal
    matched_on: tuple[str, ...]

    @property
    def rank_key(self) -> tuple[float, int, Decimal]:
        # Higher score first, then closer date, then closer amount.
        return (-round(self.score, 6), self.date_delta_days, abs(self.amount_delta))


@dataclass(frozen=True)
class PlannedMatch:
    transaction_id: uuid.UUID
    invoice_id: uuid.UUID
    confidence: float
    state: str
    amount_delta: Decimal
    date_delta_days: int
    matched_on: tuple[str, ...]


@dataclass(frozen=True)
class PlannedDiscrepancy:
    kind: str
    severity: str
    title: str
    description: str
    suggested_action: str
    transaction_id: uuid.UUID | None = None
    invoice_id: uuid.UUID | None = None
    amount_delta: Decimal | None = None
    data: dict = field(default_factory=dict)

    @property
    def dedupe_key(self) -> str:
        return dedupe_key(self.kind, self.transaction_id, self.invoice_id)


@dataclass
class ReconciliationPlan:
    matches: list[PlannedMatch] = field(default_factory=list)
    discrepancies: list[PlannedDiscrepancy] = field(default_factory=list)
    candidates: int = 0
    locked_transactions: int = 0
    locked_invoices: int = 0


def dedupe_key(kind: str, transaction_id: uuid.UUID | None, invoice_id: uuid.UUID | None) -> str:
    return f"{kind}:{transaction_id or '-'}:{invoice_id or '-'}"


def severity_for(amount: Decimal | None) -> str:
    value = abs(amount or Decimal("0"))
    if value > 1000:
        return "critical"
    if value > 100:
        return "warning"
    return "info"


def amount_score(delta: Decimal, invoice_amount: Decimal, config: ReconciliationConfig) -> float:
    """1.0 for an exact amount, then linear from 0.9 down to 0 at the percentage tolerance."""
    delta = abs(delta)
    if delta <= config.amount_exact_tolerance:
        return 1.0
    if invoice_amount <= 0 or config.amount_tolerance_pct <= 0:
        return 0.0
    ratio = float(delta / abs(invoice_amount))
    return max(0.0, 0.9 * (1.0 - ratio / config.amount_tolerance_pct))


def date_score(days: int, config: ReconciliationConfig) -> float:
    days = abs(days)
    if config.date_tolerance_days <= 0:
        return 1.0 if days == 0 else 0.0
    return max(0.0, 1.0 - days / config.date_tolerance_days)


def text_score(invoice_vendor: str | None, candidates: Iterable[str | None]) -> float:
    """Best of token-set ratio and Jaro-Winkler between the invoice vendor and any text."""
    a = (invoice_vendor or "").strip().lower()
    if not a:
        return 0.0
    best = 0.0
    for text in candidates:
        b = (text or "").strip().lower()
        if not b:
            continue
        best = max(
            best,
            fuzz.token_set_ratio(a, b) / 100.0,
            JaroWinkler.normalized_similarity(a, b),
        )
    return min(1.0, best)


def same_direction(txn: LedgerEntry, inv: InvoiceEntry) -> bool:
    # Money out settles a vendor bill; money in settles a customer invoice.
    return (txn.amount < 0) == (inv.kind == BILL)


def within_tolerance(txn: LedgerEntry, inv: InvoiceEntry, config: ReconciliationConfig) -> bool:
    if not same_direction(txn, inv):
        return False
    if abs((txn.date - inv.date).days) > config.date_tolerance_days:
        return False
    delta = abs(abs(txn.amount) - inv.amount)
    if delta <= config.amount_exact_tolerance:
        return True
    if inv.amount <= 0:
        return False
    return float(delta / inv.amount) <= config.amount_tolerance_pct


def score_candidate(
    txn: LedgerEntry, inv: InvoiceEntry, config: ReconciliationConfig
) -> ScoredCandidate | None:
    if not within_tolerance(txn, inv, config):
        return None

    days = abs((txn.date - inv.date).days)
    delta = abs(txn.amount) - inv.amount
    s_amount = amount_score(delta, inv.amount, config)
    s_date = date_score(days, config)
    s_text = text_score(inv.vendor_name, (txn.vendor_name, txn.description, txn.raw_vendor))
    score = (
        config.weight_amount * s_amount
        + config.weight_date * s_date
        + config.weight_text * s_text
    )

    reasons = ["exact_amount" if s_amount == 1.0 else "approximate_amount"]
    reasons.append("same_day" if days == 0 else f"within_{days}_days")
    if s_text >= 0.8:
        reasons.append("vendor_similarity")
    return ScoredCandidate(
        transaction_id=txn.id,
        invoice_id=inv.id,
        score=max(0.0, min(1.0, score)),
        amount_score=s_amount,
        date_score=s_date,
        text_score=s_text,
        date_delta_days=days,
        amount_delta=delta,
        matched_on=tuple(reasons),
    )


def _check_unique_best(anchor: uuid.UUID, ranked: Sequence[ScoredCandidate], side: str) -> None:
    if len(ranked) < 2 or ranked[0].rank_key != ranked[1].rank_key:
        return
    tied = [c for c in ranked if c.rank_key == ranked[0].rank_key]
    other = "transaction_id" if side == "invoice" else "invoice_id"
    raise MatchingAmbiguity(
        f"{len(tied)} candidates tie for {side} {anchor}",
        candidate_ids=[str(getattr(c, other)) for c in tied],
    )


def plan_reconciliation(
    transactions: Sequence[LedgerEntry],
    invoices: Sequence[InvoiceEntry],
    existing_matches: Sequence[ExistingMatch],
    config: ReconciliationConfig,
) -> ReconciliationPlan:
    """Score candidate pairs and decide matches and discrepancies.

    Sides already in a pending or confirmed match are left alone; rejected pairs
    are never proposed again. Assignment is one-to-one, greedy over the ranked
    candidates. Pairs tied for the best score all come back as pending matches.
    """
    locked_txns = {m.transaction_id for m in existing_matches if m.state in {PENDING, CONFIRMED}}
    locked_invs = {m.invoice_id for m in existing_matches if m.state in {PENDING, CONFIRMED}}
    rejected = {(m.transaction_id, m.invoice_id) for m in existing_matches if m.state == REJECTED}

    free_txns = sorted(
        (t for t in transactions if t.id not in locked_txns), key=lambda t: (t.date, str(t.id))
    )
    free_invs = sorted(
        (i for i in invoices if i.id not in locked_invs), key=lambda i: (i.date, str(i.id))
    )
    plan = ReconciliationPlan(
        locked_transactions=len(transactions) - len(free_txns),
        locked_invoices=len(invoices) - len(free_invs),
    )

    candidates: list[ScoredCandidate] = []
    for inv in free_invs:
        for txn in free_txns:
            if (txn.id, inv.id) in rejected:
                continue
            cand = score_candidate(txn, inv, config)
            if cand is not None and cand.score >= config.review_threshold:
                candidates.append(cand)
    plan.candidates = len(candidates)

    by_invoice: dict[uuid.UUID, list[ScoredCandidate]] = defaultdict(list)
    by_txn: dict[uuid.UUID, list[ScoredCandidate]] = defaultdict(list)
    for cand in candidates:
        by_invoice[cand.invoice_id].append(cand)
        by_txn[cand.transaction_id].append(cand)

    txn_by_id = {t.id: t for t in free_txns}
    inv_by_id = {i.id: i for i in free_invs}
    blocked_invs: set[uuid.UUID] = set()
    blocked_txns: set[uuid.UUID] = set()
    ambiguous_pairs: set[tuple[uuid.UUID, uuid.UUID]] = set()
    in_ambiguity: set[uuid.UUID] = set()

    for side, groups in (("invoice", by_invoice), ("transaction", by_txn)):
        for anchor in sorted(groups, key=str):
            ranked = sorted(groups[anchor], key=lambda c: c.rank_key)
            try:
                _check_unique_best(anchor, ranked, side)
            except MatchingAmbiguity as e:
                tied = [c for c in ranked if c.rank_key == ranked[0].rank_key]
                ambiguous_pairs.update((c.transaction_id, c.invoice_id) for c in tied)
                in_ambiguity.update(c.transaction_id for c in tied)
                in_ambiguity.update(c.invoice_id for c in tied)
                if side == "invoice":
                    blocked_invs.add(anchor)
                    amount = inv_by_id[anchor].amount
                else:
                    blocked_txns.add(anchor)
                    amount = txn_by_id[anchor].amount
                plan.discrepancies.append(
                    PlannedDiscrepancy(
                        kind=MATCHING_AMBIGUITY,
                        severity=severity_for(amount),
                        title=f"{len(tied)} equally likely matches for one {side}",
                        description=str(e),
                        suggested_action="Confirm the right suggested match, reject the rest.",
                        invoice_id=anchor if side == "invoice" else None,
                        transaction_id=anchor if side == "transaction" else None,
                        data={
                            "candidate_ids": e.candidate_ids,
                            "score": round(tied[0].score, 4),
                        },
                    )
                )

    ordered = sorted(
        (c for c in candidates if (c.transaction_id, c.invoice_id) not in ambiguous_pairs),
        key=lambda c: (c.rank_key, str(c.transaction_id), str(c.invoice_id)),
    )
    used_txns: set[uuid.UUID] = set()
    used_invs: set[uuid.UUID] = set()
    for cand in ordered:
        if cand.invoice_id in blocked_invs or cand.transaction_id in blocked_txns:
            continue
        if cand.invoice_id in used_invs or cand.transaction_id in used_txns:
            continue
        used_txns.add(cand.transaction_id)
        used_invs.add(cand.invoice_id)
        state = CONFIRMED if cand.score >= config.auto_confirm_threshold else PENDING
        plan.matches.append(
            PlannedMatch(
                transaction_id=cand.transaction_id,
                invoice_id=cand.invoice_id,
                confidence=round(cand.score, 4),
                state=state,
                amount_delta=cand.amount_delta,
                date_delta_days=cand.date_delta_days,
                matched_on=cand.matched_on,
            )
        )
        if abs(cand.amount_delta) > config.amount_exact_tolerance:
            inv = inv_by_id[cand.invoice_id]
            plan.discrepancies.append(
                PlannedDiscrepancy(
                    kind=AMOUNT_MISMATCH,
                    severity=severity_for(cand.amount_delta),
                    title=f"Amount differs by {abs(cand.amount_delta)} from invoice",
                    description=(
                        f"The matched payment for {inv.vendor_name} differs from the invoice "
                        f"amount {inv.amount} by {cand.amount_delta}."
                    ),
                    suggested_action="Check for fees, partial payments or currency rounding.",
                    transaction_id=cand.transaction_id,
                    invoice_id=cand.invoice_id,
                    amount_delta=cand.amount_delta,
                )
            )

    # Every tied pair is offered for review; none is confirmed automatically.
    by_pair = {(c.transaction_id, c.invoice_id): c for c in candidates}
    for pair in sorted(ambiguous_pairs, key=lambda p: (str(p[0]), str(p[1]))):
        cand = by_pair[pair]
        plan.matches.append(
            PlannedMatch(
                transaction_id=cand.transaction_id,
                invoice_id=cand.invoice_id,
                confidence=round(cand.score, 4),
                state=PENDING,
                amount_delta=cand.amount_delta,
                date_delta_days=cand.date_delta_days,
                matched_on=(*cand.matched_on, "tied_candidate"),
            )
        )

    for inv in free_invs:
        if inv.id in used_invs or inv.id in in_ambiguity:
            continue
        plan.discrepancies.append(
            PlannedDiscrepancy(
                kind=INVOICE_WITHOUT_TRANSACTION,
                severity=severity_for(inv.amount),
                title=f"No payment found for {inv.vendor_name} invoice",
                description=(
                    f"Invoice {inv.number or inv.id} for {inv.amount} dated {inv.date.isoformat()} "
                    "has no matching ledger transaction."
                ),
                suggested_action="Confirm whether the invoice was paid or is still outstanding.",
                invoice_id=inv.id,
                amount_delta=inv.amount,
            )
        )
    for txn in free_txns:
        if txn.id in used_txns or txn.id in in_ambiguity:
            continue
        plan.discrepancies.append(
            PlannedDiscrepancy(
                kind=TRANSACTION_WITHOUT_INVOICE,
                severity=severity_for(txn.amount),
                title=f"No invoice found for {txn.vendor_name or 'transaction'}",
                description=(
                    f"Transaction of {txn.amount} on {txn.date.isoformat()} has no matching "
                    "invoice in the accounting system."
                ),
                suggested_action="Record the invoice or mark the transaction as expected.",
                transaction_id=txn.id,
                amount_delta=txn.amount,
            )
        )
    return plan
