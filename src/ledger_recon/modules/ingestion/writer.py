from __future__ import annotations

import uuid
from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy.orm import Session

from ledger_recon.core.errors import PersistenceFailure
from ledger_recon.core.logging import get_logger, log_event
from ledger_recon.modules.ingestion.classification import ClassificationStage
from ledger_recon.modules.ingestion.context import BatchContext
from ledger_recon.modules.ingestion.parsing import SummaryRow, TransactionRow
from ledger_recon.modules.ingestion.vendors import known_vendor_name, vendor_key
from ledger_recon.modules.ledger.models import Category, Department, Vendor
from ledger_recon.modules.ledger.repository import (
    create_monthly_metric,
    create_transaction,
    find_or_create_category,
    find_or_create_department,
    find_or_create_vendor,
)

logger = get_logger(__name__)


@dataclass
class WriteResult:
    created: int = 0
    reused: int = 0

    @property
    def usable(self) -> int:
        return self.created + self.reused


class LedgerWriter:
    """Turns resolved rows into ledger records, one committed row at a time.

    A failing row is skipped with a reason code; rows already written stay written.
    """

    def __init__(self, session: Session, *, stage: ClassificationStage) -> None:
        self.session = session
        self.stage = stage
        self._vendors: dict[str, Vendor] = {}
        self._categories: dict[str, Category] = {}
        self._departments: dict[str, Department] = {}

    def write_transactions(
        self, ctx: BatchContext, rows: Sequence[TransactionRow]
    ) -> WriteResult:
        result = WriteResult()
        for row in rows:
            vendor_res = self.stage.vendor_for(ctx, row)
            category_res = self.stage.category_for(ctx, row)
            if vendor_res is None or category_res is None:
                self._skip(ctx, row.row_number, "no_vendor_cache")
                continue

            try:
                vendor = self._vendor(
                    ctx.organization_id, vendor_res.clean_name, is_recurring=vendor_res.is_recurring
                )
                category = self._category(ctx.organization_id, category_res.name)
            except PersistenceFailure as e:
                self._recover(ctx, row.row_number, "no_db_record", e)
                continue

            try:
                _, created = create_transaction(
                    self.session,
                    organization_id=ctx.organization_id,
                    document_id=ctx.document_id,
                    row_number=row.row_number,
                    date=row.date,
                    amount=row.amount,
                    vendor=vendor,
                    category=category,
                    description=row.description or None,
                    raw_vendor=row.raw_vendor,
                    is_recurring=vendor_res.is_recurring,
                    classification_confidence=category_res.confidence,
                )
            except PersistenceFailure as e:
                self._recover(ctx, row.row_number, e.reason or "insert_failed", e)
                continue

            if created:
                result.created += 1
            else:
                result.reused += 1
                ctx.skip("already_imported")
        return result

    def write_summaries(self, ctx: BatchContext, rows: Sequence[SummaryRow]) -> WriteResult:
        result = WriteResult()
        for row in rows:
            try:
                department = (
                    self._department(ctx.organization_id, row.department)
                    if row.department
                    else None
                )
                vendor = None
                if row.vendor:
                    name = known_vendor_name(vendor_key(row.vendor)) or row.vendor
                    vendor = self._vendor(ctx.organization_id, name, is_recurring=False)
            except PersistenceFailure as e:
                self._recover(ctx, row.row_number, "no_db_record", e)
                continue

            try:
                _, created = create_monthly_metric(
                    self.session,
                    organization_id=ctx.organization_id,
                    document_id=ctx.document_id,
                    row_number=row.row_number,
                    month=row.month,
                    department=department,
                    vendor=vendor,
                    revenue=row.revenue,
                    expenses=row.expenses,
                    headcount=row.headcount,
                )
            except PersistenceFailure as e:
                self._recover(ctx, row.row_number, e.reason or "insert_failed", e)
                continue
            if created:
                result.created += 1
            else:
                result.reused += 1
                ctx.skip("already_imported")
        return result

    def _vendor(self, organization_id: uuid.UUID, name: str, *, is_recurring: bool) -> Vendor:
        vendor = self._vendors.get(name)
        if vendor is None:
            vendor = find_or_create_vendor(
                self.session,
                organization_id=organization_id,
                name=name,
                is_recurring=is_recurring,
            )
            self._vendors[name] = vendor
        return vendor

    def _category(self, organization_id: uuid.UUID, name: str) -> Category:
        category = self._categories.get(name)
        if category is None:
            category = find_or_create_category(
                self.session, organization_id=organization_id, name=name
            )
            self._categories[name] = category
        return category

    def _department(self, organization_id: uuid.UUID, name: str) -> Department:
        department = self._departments.get(name)
        if department is None:
            department = find_or_create_department(
                self.session, organization_id=organization_id, name=name
            )
            self._departments[name] = department
        return department

    def _recover(
        self, ctx: BatchContext, row_number: int, reason: str, error: PersistenceFailure
    ) -> None:
        self.session.rollback()
        self._skip(ctx, row_number, reason, error=str(error))

    def _skip(self, ctx: BatchContext, row_number: int, reason: str, **fields) -> None:
        ctx.skip(reason)
        log_event(
            logger,
            "ingest.row.skipped",
            document_id=str(ctx.document_id) if ctx.document_id else None,
            row_number=row_number,
            reason=reason,
            **fields,
        )
