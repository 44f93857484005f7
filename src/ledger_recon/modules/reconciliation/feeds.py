from __future__ import annotations

import datetime as dt
import time
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_recon.core.config import settings
from ledger_recon.core.errors import ProviderError
from ledger_recon.core.logging import get_logger, log_event, monotonic_ms
from ledger_recon.modules.reconciliation.models import ExternalInvoice, InvoiceKind, InvoiceStatus

logger = get_logger(__name__)

_STATUS_ALIASES = {
    "open": InvoiceStatus.OPEN,
    "authorised": InvoiceStatus.OPEN,
    "authorized": InvoiceStatus.OPEN,
    "submitted": InvoiceStatus.OPEN,
    "draft": InvoiceStatus.OPEN,
    "overdue": InvoiceStatus.OPEN,
    "paid": InvoiceStatus.PAID,
    "partial": InvoiceStatus.PARTIAL,
    "partially_paid": InvoiceStatus.PARTIAL,
    "void": InvoiceStatus.VOID,
    "voided": InvoiceStatus.VOID,
    "deleted": InvoiceStatus.VOID,
}


@dataclass(frozen=True)
class FeedInvoice:
    external_id: str
    amount: Decimal
    date: dt.date
    vendor_name: str
    number: str | None = None
    kind: InvoiceKind = InvoiceKind.INVOICE
    currency: str = "USD"
    due_date: dt.date | None = None
    status: InvoiceStatus = InvoiceStatus.OPEN


class InvoiceFeedProvider(Protocol):
    source: str

    def list_invoices(
        self, organization_id: uuid.UUID, start: dt.date, end: dt.date
    ) -> list[FeedInvoice]: ...


class StaticInvoiceFeed:
    """Invoices handed over directly, e.g. pushed through the API or built in tests."""

    def __init__(self, invoices: Iterable[FeedInvoice], *, source: str = "manual") -> None:
        self.source = source
        self._invoices = list(invoices)

    def list_invoices(
        self, organization_id: uuid.UUID, start: dt.date, end: dt.date
    ) -> list[FeedInvoice]:
        return [i for i in self._invoices if start <= i.date <= end]


class HttpInvoiceFeed:
    """Reads invoices already normalized by an accounting-system adapter."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None = None,
        source: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.source = source or settings.invoice_feed_source
        self.timeout = float(timeout or settings.invoice_feed_timeout_seconds or 30.0)

    @classmethod
    def from_settings(cls) -> HttpInvoiceFeed | None:
        if not settings.invoice_feed_url:
            return None
        return cls(base_url=settings.invoice_feed_url, api_key=settings.invoice_feed_api_key)

    def list_invoices(
        self, organization_id: uuid.UUID, start: dt.date, end: dt.date
    ) -> list[FeedInvoice]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        params = {
            "organization_id": str(organization_id),
            "start": start.isoformat(),
            "end": end.isoformat(),
        }
        try:
            resp = httpx.get(
                f"{self.base_url}/invoices",
                headers=headers,
                params=params,
                timeout=self.timeout,
                follow_redirects=True,
            )
            resp.raise_for_status()
            payload = resp.json()
        except httpx.TimeoutException as e:
            raise ProviderError(
                "invoice feed timed out", provider=self.source, retryable=True
            ) from e
        except httpx.HTTPStatusError as e:
            code = e.response.status_code if e.response is not None else None
            raise ProviderError(
                f"invoice feed returned HTTP {code}", provider=self.source, retryable=code == 429
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError(f"invoice feed failed: {e}", provider=self.source) from e

        items = payload.get("invoices") if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise ProviderError("invoice feed: missing invoices list", provider=self.source)

        out: list[FeedInvoice] = []
        for item in items:
            invoice = parse_feed_invoice(item) if isinstance(item, dict) else None
            if invoice is None:
                log_event(logger, "invoice.feed.item_skipped", source=self.source)
                continue
            out.append(invoice)
        return out


def parse_feed_invoice(item: dict[str, Any]) -> FeedInvoice | None:
    external_id = str(item.get("external_id") or item.get("id") or "").strip()
    vendor = str(item.get("vendor_name") or item.get("contact") or "").strip()
    date = _parse_iso_date(item.get("date"))
    try:
        amount = abs(Decimal(str(item.get("amount")))).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return None
    if not external_id or not vendor or date is None:
        return None

    kind_raw = str(item.get("kind") or item.get("type") or "invoice").lower()
    kind = InvoiceKind.BILL if kind_raw in {"bill", "accpay", "payable"} else InvoiceKind.INVOICE
    status = _STATUS_ALIASES.get(str(item.get("status") or "open").lower(), InvoiceStatus.OPEN)
    return FeedInvoice(
        external_id=external_id[:200],
        number=(str(item["number"])[:100] if item.get("number") else None),
        kind=kind,
        amount=amount,
        currency=str(item.get("currency") or "USD").upper()[:3],
        date=date,
        due_date=_parse_iso_date(item.get("due_date")),
        vendor_name=vendor[:200],
        status=status,
    )


def _parse_iso_date(value: object) -> dt.date | None:
    if isinstance(value, dt.date):
        return value
    try:
        return dt.date.fromisoformat(str(value or "")[:10])
    except ValueError:
        return None


@dataclass
class SyncResult:
    fetched: int = 0
    created: int = 0
    updated: int = 0


def sync_invoices(
    session: Session,
    *,
    organization_id: uuid.UUID,
    feed: InvoiceFeedProvider,
    start: dt.date,
    end: dt.date,
) -> SyncResult:
    """Upsert the feed's invoices by ``(organization_id, source, external_id)``."""
    t0 = time.monotonic()
    invoices = feed.list_invoices(organization_id, start, end)
    result = SyncResult(fetched=len(invoices))

    for item in invoices:
        row, created = _upsert_invoice(
            session, organization_id=organization_id, source=feed.source, item=item
        )
        if created:
            result.created += 1
        elif row is not None:
            result.updated += 1
    session.commit()

    log_event(
        logger,
        "invoice.sync.finish",
        organization_id=str(organization_id),
        source=feed.source,
        fetched=result.fetched,
        created=result.created,
        updated=result.updated,
        duration_ms=monotonic_ms(t0),
    )
    return result


def _upsert_invoice(
    session: Session, *, organization_id: uuid.UUID, source: str, item: FeedInvoice
) -> tuple[ExternalInvoice, bool]:
    def _lookup() -> ExternalInvoice | None:
        return session.scalar(
            select(ExternalInvoice).where(
                ExternalInvoice.organization_id == organization_id,
                ExternalInvoice.source == source,
                ExternalInvoice.external_id == item.external_id,
            )
        )

    fields = {
        "number": item.number,
        "kind": item.kind,
        "amount": item.amount,
        "currency": item.currency,
        "date": item.date,
        "due_date": item.due_date,
        "vendor_name": item.vendor_name,
        "status": item.status,
    }
    existing = _lookup()
    if existing is None:
        row = ExternalInvoice(
            organization_id=organization_id,
            source=source,
            external_id=item.external_id,
            **fields,
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

    for key, value in fields.items():
        setattr(existing, key, value)
    session.add(existing)
    return existing, False
