from __future__ import annotations

import datetime as dt
import enum
import uuid
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_recon.core.models import Base, OrganizationScoped, Timestamped, UUIDPrimaryKey


class InvoiceKind(str, enum.Enum):
    INVOICE = "invoice"
    BILL = "bill"


class InvoiceStatus(str, enum.Enum):
    OPEN = "open"
    PAID = "paid"
    PARTIAL = "partial"
    VOID = "void"


class MatchState(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class DiscrepancyKind(str, enum.Enum):
    INVOICE_WITHOUT_TRANSACTION = "invoice_without_transaction"
    TRANSACTION_WITHOUT_INVOICE = "transaction_without_invoice"
    AMOUNT_MISMATCH = "amount_mismatch"
    MATCHING_AMBIGUITY = "matching_ambiguity"


class DiscrepancySeverity(str, enum.Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class DiscrepancyState(str, enum.Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class ExternalInvoice(UUIDPrimaryKey, OrganizationScoped, Timestamped, Base):
    __tablename__ = "reconciliation_external_invoice"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "source", "external_id", name="uq_reconciliation_invoice_external"
        ),
    )

    source: Mapped[str] = mapped_column(String(50))
    external_id: Mapped[str] = mapped_column(String(200))
    number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    kind: Mapped[InvoiceKind] = mapped_column(
        Enum(InvoiceKind, native_enum=False), default=InvoiceKind.INVOICE
    )
    # Always positive; the kind says which direction the money moves.
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    date: Mapped[dt.date] = mapped_column(Date, index=True)
    due_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    vendor_name: Mapped[str] = mapped_column(String(200))
    status: Mapped[InvoiceStatus] = mapped_column(
        Enum(InvoiceStatus, native_enum=False), default=InvoiceStatus.OPEN
    )


class Match(UUIDPrimaryKey, OrganizationScoped, Timestamped, Base):
    __tablename__ = "reconciliation_match"
    # Enum columns store member names, hence 'CONFIRMED' in the partial indexes.
    __table_args__ = (
        UniqueConstraint("transaction_id", "invoice_id", name="uq_reconciliation_match_pair"),
        Index(
            "uq_reconciliation_match_confirmed_transaction",
            "transaction_id",
            unique=True,
            sqlite_where=text("state = 'CONFIRMED'"),
            postgresql_where=text("state = 'CONFIRMED'"),
        ),
        Index(
            "uq_reconciliation_match_confirmed_invoice",
            "invoice_id",
            unique=True,
            sqlite_where=text("state = 'CONFIRMED'"),
            postgresql_where=text("state = 'CONFIRMED'"),
        ),
    )

    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("ledger_transaction.id"), index=True
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("reconciliation_external_invoice.id"), index=True
    )
    confidence: Mapped[float] = mapped_column(Float)
    state: Mapped[MatchState] = mapped_column(Enum(MatchState, native_enum=False), index=True)
    amount_delta: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    date_delta_days: Mapped[int] = mapped_column(Integer, default=0)
    matched_on: Mapped[list] = mapped_column(JSON, default=list)

    decided_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    decided_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    transaction = relationship("Transaction")
    invoice = relationship("ExternalInvoice")


class Discrepancy(UUIDPrimaryKey, OrganizationScoped, Timestamped, Base):
    __tablename__ = "reconciliation_discrepancy"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "dedupe_key", name="uq_reconciliation_discrepancy_dedupe"
        ),
    )

    kind: Mapped[DiscrepancyKind] = mapped_column(
        Enum(DiscrepancyKind, native_enum=False), index=True
    )
    transaction_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("ledger_transaction.id"), nullable=True, index=True
    )
    invoice_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("reconciliation_external_invoice.id"),
        nullable=True,
        index=True,
    )
    amount_delta: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    severity: Mapped[DiscrepancySeverity] = mapped_column(
        Enum(DiscrepancySeverity, native_enum=False)
    )
    state: Mapped[DiscrepancyState] = mapped_column(
        Enum(DiscrepancyState, native_enum=False), index=True
    )
    title: Mapped[str] = mapped_column(String(300))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    suggested_action: Mapped[str | None] = mapped_column(Text, nullable=True)
    data_json: Mapped[dict] = mapped_column(JSON, default=dict)
    dedupe_key: Mapped[str] = mapped_column(String(200))

    resolved_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    resolved_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
