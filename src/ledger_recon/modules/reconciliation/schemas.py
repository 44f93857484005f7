from __future__ import annotations

import datetime as dt
import uuid
from decimal import Decimal

from pydantic import BaseModel, Field

from ledger_recon.modules.reconciliation.models import (
    DiscrepancyKind,
    DiscrepancySeverity,
    DiscrepancyState,
    InvoiceKind,
    InvoiceStatus,
    MatchState,
)


class InvoiceIn(BaseModel):
    external_id: str = Field(min_length=1, max_length=200)
    number: str | None = None
    kind: InvoiceKind = InvoiceKind.INVOICE
    amount: Decimal = Field(gt=0)
    currency: str = "USD"
    date: dt.date
    due_date: dt.date | None = None
    vendor_name: str = Field(min_length=1, max_length=200)
    status: InvoiceStatus = InvoiceStatus.OPEN


class InvoicePushIn(BaseModel):
    source: str = Field(default="manual", min_length=1, max_length=50)
    invoices: list[InvoiceIn]


class InvoiceOut(BaseModel):
    id: uuid.UUID
    source: str
    external_id: str
    number: str | None
    kind: InvoiceKind
    amount: Decimal
    currency: str
    date: dt.date
    due_date: dt.date | None
    vendor_name: str
    status: InvoiceStatus


class InvoiceSyncOut(BaseModel):
    fetched: int
    created: int
    updated: int


class ReconciliationRunIn(BaseModel):
    start: dt.date | None = None
    end: dt.date | None = None
    idempotency_key: str | None = Field(default=None, max_length=200)


class ReconciliationSummaryOut(BaseModel):
    total_invoices: int
    matched: int
    suggested: int
    unmatched_invoices: int
    open_discrepancies: int
    match_rate: float


class MatchOut(BaseModel):
    id: uuid.UUID
    transaction_id: uuid.UUID
    invoice_id: uuid.UUID
    confidence: float
    state: MatchState
    amount_delta: Decimal
    date_delta_days: int
    matched_on: list[str]
    decided_by: str | None
    decided_at: dt.datetime | None
    notes: str | None
    created_at: dt.datetime


class MatchDecisionIn(BaseModel):
    notes: str | None = None


class DiscrepancyOut(BaseModel):
    id: uuid.UUID
    kind: DiscrepancyKind
    transaction_id: uuid.UUID | None
    invoice_id: uuid.UUID | None
    amount_delta: Decimal | None
    severity: DiscrepancySeverity
    state: DiscrepancyState
    title: str
    description: str | None
    suggested_action: str | None
    data_json: dict
    resolved_by: str | None
    resolved_at: dt.datetime | None
    resolution_notes: str | None
    created_at: dt.datetime


class DiscrepancyResolveIn(BaseModel):
    outcome: DiscrepancyState = DiscrepancyState.RESOLVED
    notes: str | None = None
