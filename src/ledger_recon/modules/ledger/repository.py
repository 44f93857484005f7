"""
Persistence operations used by the ingestion pipeline.

Find-or-create never takes a table lock: it inserts inside a savepoint and, on a
unique-constraint conflict, re-reads the row another writer committed first.
"""

from __future__ import annotations

import datetime as dt
import re
import uuid
from decimal import Decimal
from typing import TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ledger_recon.core.errors import PersistenceFailure
from ledger_recon.core.logging import get_logger, log_event
from ledger_recon.core.models import utcnow
from ledger_recon.modules.documents.models import DocumentStatus, RawDocument
from ledger_recon.modules.ledger.models import (
    Category,
    Department,
    MonthlyMetric,
    Transaction,
    Vendor,
)

logger = get_logger(__name__)

_Named = TypeVar("_Named", Vendor, Category, Department)


def normalize_name(name: str) -> str:
    return re.sub(r"\s+", " ", (name or "").strip()).casefold()


def _find_or_create_named(
    session: Session,
    model: type[_Named],
    *,
    organization_id: uuid.UUID,
    name: str,
    max_len: int,
    **extra,
) -> _Named:
    clean = re.sub(r"\s+", " ", (name or "").strip())[:max_len]
    if not clean:
        raise PersistenceFailure(f"Empty {model.__name__.lower()} name")
    key = normalize_name(clean)

    def _lookup() -> _Named | None:
        return session.scalar(
            select(model).where(
                model.organization_id == organization_id,
                model.normalized_name == key,
            )
        )

    try:
        existing = _lookup()
        if existing:
            return existing

        candidate = model(organization_id=organization_id, name=clean, normalized_name=key, **extra)
        try:
            with session.begin_nested():
                session.add(candidate)
                session.flush()
            session.commit()
            return candidate
        except IntegrityError:
            existing = _lookup()
            if existing:
                log_event(
                    logger,
                    "ledger.find_or_create.race",
                    entity=model.__tablename__,
                    name=clean,
                )
                return existing
            raise
    except SQLAlchemyError as e:
        raise PersistenceFailure(f"Could not find or create {model.__name__} {clean!r}") from e


def find_or_create_vendor(
    session: Session, *, organization_id: uuid.UUID, name: str, is_recurring: bool = False
) -> Vendor:
    return _find_or_create_named(
        session,
        Vendor,
        organization_id=organization_id,
        name=name,
        max_len=200,
        is_recurring=is_recurring,
    )


def find_or_create_category(
    session: Session, *, organization_id: uuid.UUID, name: str
) -> Category:
    return _find_or_create_named(
        session, Category, organization_id=organization_id, name=name, max_len=100
    )


def find_or_create_department(
    session: Session, *, organization_id: uuid.UUID, name: str
) -> Department:
    return _find_or_create_named(
        session, Department, organization_id=organization_id, name=name, max_len=100
    )


def create_transaction(
    session: Session,
    *,
    organization_id: uuid.UUID,
    document_id: uuid.UUID | None,
    row_number: int,
    date: dt.date,
    amount: Decimal,
    vendor: Vendor,
    category: Category,
    description: str | None,
    raw_vendor: str | None,
    is_recurring: bool,
    classification_confidence: float | None = None,
) -> tuple[Transaction, bool]:
    """Insert one ledger row; returns ``(row, created)``.

    A row already stored for ``(document_id, row_number)`` is returned unchanged.
    """

    def _existing() -> Transaction | None:
        if document_id is None:
            return None
        return session.scalar(
            select(Transaction).where(
                Transaction.document_id == document_id,
                Transaction.row_number == row_number,
            )
        )

    try:
        existing = _existing()
        if existing:
            return existing, False
        txn = Transaction(
            organization_id=organization_id,
            document_id=document_id,
            row_number=row_number,
            date=date,
            amount=amount,
            vendor_id=vendor.id,
            category_id=category.id,
            description=description,
            raw_vendor=(raw_vendor or "")[:500] or None,
            is_recurring=is_recurring,
            classification_confidence=classification_confidence,
        )
        try:
            with session.begin_nested():
                session.add(txn)
                session.flush()
        except IntegrityError:
            existing = _existing()
            if existing:
                return existing, False
            raise
        session.commit()
        return txn, True
    except SQLAlchemyError as e:
        raise PersistenceFailure(
            f"Could not insert transaction row {row_number}", reason="insert_failed"
        ) from e


def create_monthly_metric(
    session: Session,
    *,
    organization_id: uuid.UUID,
    document_id: uuid.UUID | None,
    row_number: int,
    month: dt.date,
    department: Department | None,
    vendor: Vendor | None,
    revenue: Decimal,
    expenses: Decimal,
    headcount: int | None,
) -> tuple[MonthlyMetric, bool]:
    """Insert one summary row; returns ``(row, created)`` like ``create_transaction``."""

    def _existing() -> MonthlyMetric | None:
        if document_id is None:
            return None
        return session.scalar(
            select(MonthlyMetric).where(
                MonthlyMetric.document_id == document_id,
                MonthlyMetric.row_number == row_number,
            )
        )

    try:
        existing = _existing()
        if existing:
            return existing, False
        metric = MonthlyMetric(
            organization_id=organization_id,
            document_id=document_id,
            row_number=row_number,
            month=month.replace(day=1),
            department_id=department.id if department else None,
            vendor_id=vendor.id if vendor else None,
            revenue=revenue,
            expenses=expenses,
            profit=revenue - expenses,
            headcount=headcount,
        )
        try:
            with session.begin_nested():
                session.add(metric)
                session.flush()
        except IntegrityError:
            existing = _existing()
            if existing:
                return existing, False
            raise
        session.commit()
        return metric, True
    except SQLAlchemyError as e:
        raise PersistenceFailure(
            f"Could not insert monthly metric row {row_number}", reason="insert_failed"
        ) from e


def update_document_status(
    session: Session,
    *,
    document: RawDocument,
    status: DocumentStatus,
    summary: str | None = None,
    extraction_confidence: float | None = None,
    error_message: str | None = None,
    row_count: int | None = None,
    skip_counts: dict[str, int] | None = None,
) -> RawDocument:
    values: dict = {"status": status, "error_message": error_message}
    if summary is not None:
        values["summary"] = summary
    if extraction_confidence is not None:
        values["extraction_confidence"] = round(float(extraction_confidence), 4)
    if row_count is not None:
        values["row_count"] = row_count
    if skip_counts is not None:
        values["skip_counts"] = dict(skip_counts)
    if status in {DocumentStatus.PROCESSED, DocumentStatus.ERROR}:
        values["processed_at"] = utcnow()
    session.execute(update(RawDocument).where(RawDocument.id == document.id).values(**values))
    session.commit()
    session.refresh(document)
    log_event(
        logger,
        "document.status.changed",
        document_id=str(document.id),
        to_status=status.value,
        extraction_confidence=document.extraction_confidence,
    )
    return document
