from __future__ import annotations

import datetime as dt
import uuid
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_recon.core.models import Base, OrganizationScoped, Timestamped, UUIDPrimaryKey


class Vendor(UUIDPrimaryKey, OrganizationScoped, Timestamped, Base):
    __tablename__ = "ledger_vendor"
    __table_args__ = (
        UniqueConstraint("organization_id", "normalized_name", name="uq_ledger_vendor_name"),
    )

    name: Mapped[str] = mapped_column(String(200))
    normalized_name: Mapped[str] = mapped_column(String(200))
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False)


class Category(UUIDPrimaryKey, OrganizationScoped, Timestamped, Base):
    __tablename__ = "ledger_category"
    __table_args__ = (
        UniqueConstraint("organization_id", "normalized_name", name="uq_ledger_category_name"),
    )

    name: Mapped[str] = mapped_column(String(100))
    normalized_name: Mapped[str] = mapped_column(String(100))


class Department(UUIDPrimaryKey, OrganizationScoped, Timestamped, Base):
    __tablename__ = "ledger_department"
    __table_args__ = (
        UniqueConstraint("organization_id", "normalized_name", name="uq_ledger_department_name"),
    )

    name: Mapped[str] = mapped_column(String(100))
    normalized_name: Mapped[str] = mapped_column(String(100))


class Transaction(UUIDPrimaryKey, OrganizationScoped, Timestamped, Base):
    __tablename__ = "ledger_transaction"
    __table_args__ = (
        UniqueConstraint("document_id", "row_number", name="uq_ledger_transaction_document_row"),
    )

    document_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("documents_raw_document.id"), nullable=True, index=True
    )
    row_number: Mapped[int] = mapped_column(Integer)

    date: Mapped[dt.date] = mapped_column(Date, index=True)
    # Signed: positive is an inflow (credit), negative an outflow (debit).
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_vendor: Mapped[str | None] = mapped_column(String(500), nullable=True)

    vendor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("ledger_vendor.id"), index=True
    )
    category_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("ledger_category.id"), index=True
    )
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False)
    classification_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)

    vendor = relationship("Vendor")
    category = relationship("Category")
    document = relationship("RawDocument")


class MonthlyMetric(UUIDPrimaryKey, OrganizationScoped, Timestamped, Base):
    __tablename__ = "ledger_monthly_metric"
    __table_args__ = (
        UniqueConstraint(
            "document_id", "row_number", name="uq_ledger_monthly_metric_document_row"
        ),
    )

    document_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("documents_raw_document.id"), nullable=True, index=True
    )
    row_number: Mapped[int] = mapped_column(Integer)
    department_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("ledger_department.id"), nullable=True, index=True
    )
    vendor_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("ledger_vendor.id"), nullable=True
    )
    month: Mapped[dt.date] = mapped_column(Date, index=True)
    revenue: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    expenses: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    profit: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    headcount: Mapped[int | None] = mapped_column(Integer, nullable=True)

    department = relationship("Department")
    vendor = relationship("Vendor")
