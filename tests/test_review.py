from __future__ import annotations

import datetime as dt
import uuid
from decimal import Decimal

import pytest
from fastapi import HTTPException
from sqlalchemy import select

from ledger_recon.core.db import SessionLocal
from ledger_recon.core.errors import ConsistencyError
from ledger_recon.modules.ledger.repository import (
    create_transaction,
    find_or_create_category,
    find_or_create_vendor,
)
from ledger_recon.modules.organizations.service import create_organization
from ledger_recon.modules.reconciliation.models import (
    Discrepancy,
    DiscrepancyKind,
    DiscrepancySeverity,
    DiscrepancyState,
    ExternalInvoice,
    InvoiceKind,
    Match,
    MatchState,
)
from ledger_recon.modules.reconciliation.review import (
    confirm_match,
    list_discrepancies,
    list_matches,
    reject_match,
    resolve_discrepancy,
)


def _seed(session):
    org = create_organization(session, name="Acme Holdings")
    vendor = find_or_create_vendor(session, organization_id=org.id, name="Acme Corp")
    category = find_or_create_category(session, organization_id=org.id, name="Revenue")
    txn, _ = create_transaction(
        session,
        organization_id=org.id,
        document_id=None,
        row_number=1,
        date=dt.date(2024, 3, 2),
        amount=Decimal("-500.00"),
        vendor=vendor,
        category=category,
        description="ACME CORP PAYMENT",
        raw_vendor="ACME CORP PAYMENT",
        is_recurring=False,
    )
    invoices = []
    for n in (1, 2):
        inv = ExternalInvoice(
            organization_id=org.id,
            source="manual",
            external_id=f"INV-{n}",
            kind=InvoiceKind.BILL,
            amount=Decimal("500.00"),
            date=dt.date(2024, 3, n),
            vendor_name="Acme Corp",
        )
        session.add(inv)
        invoices.append(inv)
    session.commit()
    return org, txn, invoices


def _match(session, org, txn, inv, state: MatchState, confidence: float = 0.8) -> Match:
    match = Match(
        organization_id=org.id,
        transaction_id=txn.id,
        invoice_id=inv.id,
        confidence=confidence,
        state=state,
    )
    session.add(match)
    session.commit()
    return match


def test_confirming_a_second_match_for_a_transaction_fails_cleanly():
    with SessionLocal() as session:
        org, txn, (inv_1, inv_2) = _seed(session)
        confirmed = _match(session, org, txn, inv_1, MatchState.CONFIRMED, 0.96)
        pending = _match(session, org, txn, inv_2, MatchState.PENDING, 0.7)
        confirmed_id, pending_id = confirmed.id, pending.id

        with pytest.raises(ConsistencyError):
            confirm_match(session, match_id=pending_id, reviewer="dana")

    with SessionLocal() as session:
        assert session.get(Match, confirmed_id).state == MatchState.CONFIRMED
        still_pending = session.get(Match, pending_id)
        assert still_pending.state == MatchState.PENDING
        assert still_pending.decided_by is None


def test_confirm_records_reviewer():
    with SessionLocal() as session:
        org, txn, (inv_1, _) = _seed(session)
        pending = _match(session, org, txn, inv_1, MatchState.PENDING)

        match = confirm_match(session, match_id=pending.id, reviewer="dana", notes=" looks right ")

        assert match.state == MatchState.CONFIRMED
        assert match.decided_by == "dana"
        assert match.decided_at is not None
        assert match.notes == "looks right"

        with pytest.raises(HTTPException) as exc:
            confirm_match(session, match_id=pending.id, reviewer="dana")
        assert exc.value.status_code == 409


def test_reject_frees_the_pair_for_review_only_once():
    with SessionLocal() as session:
        org, txn, (inv_1, _) = _seed(session)
        pending = _match(session, org, txn, inv_1, MatchState.PENDING)

        rejected = reject_match(session, match_id=pending.id, reviewer="lee")
        assert rejected.state == MatchState.REJECTED

        with pytest.raises(HTTPException) as exc:
            reject_match(session, match_id=pending.id, reviewer="lee")
        assert exc.value.status_code == 409
        assert list_matches(session, organization_id=org.id) == []
        assert len(list_matches(session, organization_id=org.id, state=None)) == 1


def test_missing_match_is_not_found():
    with SessionLocal() as session:
        with pytest.raises(HTTPException) as exc:
            confirm_match(session, match_id=uuid.uuid4(), reviewer="dana")
        assert exc.value.status_code == 404


def test_resolve_discrepancy_moves_out_of_open_once():
    with SessionLocal() as session:
        org, _, (inv_1, _) = _seed(session)
        row = Discrepancy(
            organization_id=org.id,
            kind=DiscrepancyKind.INVOICE_WITHOUT_TRANSACTION,
            invoice_id=inv_1.id,
            amount_delta=Decimal("500.00"),
            severity=DiscrepancySeverity.WARNING,
            state=DiscrepancyState.OPEN,
            title="No payment found",
            dedupe_key=f"invoice_without_transaction:-:{inv_1.id}",
        )
        session.add(row)
        session.commit()

        with pytest.raises(HTTPException) as bad:
            resolve_discrepancy(
                session, discrepancy_id=row.id, outcome=DiscrepancyState.OPEN, reviewer="lee"
            )
        assert bad.value.status_code == 400

        resolved = resolve_discrepancy(
            session,
            discrepancy_id=row.id,
            outcome=DiscrepancyState.IGNORED,
            reviewer="lee",
            notes="Paid by card outside the bank feed",
        )
        assert resolved.state == DiscrepancyState.IGNORED
        assert resolved.resolved_by == "lee"
        assert list_discrepancies(session, organization_id=org.id) == []

        with pytest.raises(HTTPException) as again:
            resolve_discrepancy(
                session, discrepancy_id=row.id, outcome=DiscrepancyState.RESOLVED, reviewer="lee"
            )
        assert again.value.status_code == 409


def test_discrepancies_are_listed_by_severity_then_size():
    with SessionLocal() as session:
        org, _, _ = _seed(session)
        for key, severity, amount in (
            ("a", DiscrepancySeverity.INFO, "50"),
            ("b", DiscrepancySeverity.CRITICAL, "1500"),
            ("c", DiscrepancySeverity.WARNING, "200"),
            ("d", DiscrepancySeverity.CRITICAL, "-4000"),
        ):
            session.add(
                Discrepancy(
                    organization_id=org.id,
                    kind=DiscrepancyKind.TRANSACTION_WITHOUT_INVOICE,
                    amount_delta=Decimal(amount),
                    severity=severity,
                    state=DiscrepancyState.OPEN,
                    title=key,
                    dedupe_key=key,
                )
            )
        session.commit()

        titles = [d.title for d in list_discrepancies(session, organization_id=org.id)]
        assert titles == ["d", "b", "c", "a"]
        open_rows = session.scalars(
            select(Discrepancy).where(Discrepancy.state == DiscrepancyState.OPEN)
        ).all()
        assert len(open_rows) == 4
