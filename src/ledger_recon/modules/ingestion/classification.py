"""
Vendor resolution and category classification for one ingestion batch.

Both waves fan out over unique keys only, share one CallLimiter and wait for
every call to settle before returning. A provider failure never fails the
batch: the key gets a deterministic fallback and the failure is recorded on
the BatchContext.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from decimal import Decimal

from ledger_recon.core.concurrency import CallLimiter, fan_out
from ledger_recon.core.config import settings
from ledger_recon.core.errors import ClassificationFailure, NormalizationFailure, ProviderError
from ledger_recon.core.logging import get_logger, log_event, log_exception, monotonic_ms
from ledger_recon.modules.ingestion.categories import canonical_category, match_category_rules
from ledger_recon.modules.ingestion.context import (
    BatchContext,
    CategoryKey,
    CategoryResolution,
    VendorResolution,
)
from ledger_recon.modules.ingestion.parsing import TransactionRow
from ledger_recon.modules.ingestion.providers import (
    CategoryClassificationProvider,
    VendorNormalizationProvider,
)
from ledger_recon.modules.ingestion.vendors import (
    fallback_vendor_name,
    known_vendor_name,
    looks_recurring,
    vendor_key,
)

logger = get_logger(__name__)


class ClassificationStage:
    def __init__(
        self,
        *,
        normalizer: VendorNormalizationProvider,
        classifier: CategoryClassificationProvider,
        limiter: CallLimiter | None = None,
        fallback_category: str | None = None,
        rule_short_circuit: float | None = None,
        vendor_fallback_max_length: int | None = None,
    ) -> None:
        self.normalizer = normalizer
        self.classifier = classifier
        self.limiter = limiter or CallLimiter(int(settings.provider_max_concurrency or 5))
        self.fallback_category = fallback_category or settings.fallback_category
        self.rule_short_circuit = (
            rule_short_circuit
            if rule_short_circuit is not None
            else float(settings.category_rule_short_circuit)
        )
        self.vendor_fallback_max_length = int(
            vendor_fallback_max_length or settings.vendor_fallback_max_length
        )

    def run(self, ctx: BatchContext, rows: Sequence[TransactionRow]) -> None:
        start = time.monotonic()
        self.resolve_vendors(ctx, rows)
        self.classify(ctx, rows)
        log_event(
            logger,
            "ingest.classify.summary",
            document_id=str(ctx.document_id) if ctx.document_id else None,
            rows=len(rows),
            vendors=len(ctx.vendors),
            categories=len(ctx.categories),
            peak_in_flight=self.limiter.peak,
            duration_ms=monotonic_ms(start),
            **ctx.stats.as_dict(),
        )

    # Vendors

    def resolve_vendors(self, ctx: BatchContext, rows: Sequence[TransactionRow]) -> None:
        representatives: dict[str, str] = {}
        for row in rows:
            key = vendor_key(row.raw_vendor)
            if key in ctx.vendors or key in representatives:
                continue
            representatives[key] = row.raw_vendor

        pending: list[str] = []
        for key, raw in representatives.items():
            known = known_vendor_name(key) if key else None
            if known:
                ctx.vendors[key] = VendorResolution(
                    clean_name=known,
                    is_recurring=looks_recurring(known, raw),
                    source="rule",
                )
                ctx.count("vendor_rule_hits")
            elif not key:
                ctx.vendors[key] = self._vendor_fallback(raw)
                ctx.count("vendor_fallbacks")
            else:
                pending.append(key)

        def _call(key: str) -> VendorResolution:
            ctx.count("vendor_calls")
            raw = representatives[key]
            try:
                suggestion = self.normalizer.normalize_vendor(raw)
            except ProviderError as e:
                raise NormalizationFailure(f"Vendor normalization failed for {key!r}: {e}") from e
            recurring = suggestion.is_recurring
            if recurring is None:
                recurring = looks_recurring(suggestion.clean_name, raw)
            return VendorResolution(clean_name=suggestion.clean_name, is_recurring=recurring)

        for key, future in fan_out(pending, _call, limiter=self.limiter).items():
            error = future.exception()
            if error is None:
                ctx.vendors[key] = future.result()
                continue
            if not isinstance(error, NormalizationFailure):
                log_exception(
                    logger,
                    "ingest.vendor.unexpected_error",
                    vendor_key=key,
                    error_type=type(error).__name__,
                )
                error = NormalizationFailure(f"Vendor normalization crashed for {key!r}")
            ctx.record_failure(error)
            ctx.vendors[key] = self._vendor_fallback(representatives[key])
            ctx.count("vendor_fallbacks")
            log_event(
                logger,
                "ingest.vendor.fallback",
                vendor_key=key,
                clean_name=ctx.vendors[key].clean_name,
                reason=str(error),
            )

    def _vendor_fallback(self, raw: str) -> VendorResolution:
        name = fallback_vendor_name(raw, max_length=self.vendor_fallback_max_length)
        return VendorResolution(
            clean_name=name,
            is_recurring=looks_recurring(raw),
            fallback=True,
            source="fallback",
        )

    def vendor_for(self, ctx: BatchContext, row: TransactionRow) -> VendorResolution | None:
        return ctx.vendors.get(vendor_key(row.raw_vendor))

    # Categories

    @staticmethod
    def category_key(vendor: VendorResolution, row: TransactionRow) -> CategoryKey:
        return (vendor.clean_name, (row.description or "").strip())

    def classify(self, ctx: BatchContext, rows: Sequence[TransactionRow]) -> None:
        amounts: dict[CategoryKey, Decimal] = {}
        for row in rows:
            vendor = self.vendor_for(ctx, row)
            if vendor is None:
                continue
            key = self.category_key(vendor, row)
            if key in ctx.categories or key in amounts:
                continue
            amounts[key] = row.amount

        pending: list[CategoryKey] = []
        for key, amount in amounts.items():
            rule = match_category_rules(key[0], key[1], amount)
            if rule and rule.confidence >= self.rule_short_circuit:
                ctx.categories[key] = CategoryResolution(
                    name=rule.category, confidence=rule.confidence, source="rule"
                )
                ctx.count("category_rule_hits")
            else:
                pending.append(key)

        def _call(key: CategoryKey) -> CategoryResolution:
            ctx.count("category_calls")
            vendor, description = key
            try:
                suggestion = self.classifier.classify(vendor, description, amounts[key])
            except ProviderError as e:
                raise ClassificationFailure(f"Classification failed for {vendor!r}: {e}") from e
            name = canonical_category(suggestion.category)
            if not name:
                raise ClassificationFailure(
                    f"Classifier answered an unknown category {suggestion.category!r}"
                )
            return CategoryResolution(name=name, confidence=suggestion.confidence)

        for key, future in fan_out(pending, _call, limiter=self.limiter).items():
            error = future.exception()
            if error is None:
                ctx.categories[key] = future.result()
                continue
            if not isinstance(error, ClassificationFailure):
                log_exception(
                    logger,
                    "ingest.classify.unexpected_error",
                    vendor=key[0],
                    error_type=type(error).__name__,
                )
                error = ClassificationFailure(f"Classification crashed for {key[0]!r}")
            ctx.record_failure(error)
            ctx.categories[key] = self._category_fallback(key, amounts[key])
            ctx.count("category_fallbacks")
            log_event(
                logger,
                "ingest.classify.fallback",
                vendor=key[0],
                category=ctx.categories[key].name,
                reason=str(error),
            )

    def _category_fallback(self, key: CategoryKey, amount: Decimal) -> CategoryResolution:
        # A weak rule hit still beats the fixed default.
        rule = match_category_rules(key[0], key[1], amount)
        if rule:
            return CategoryResolution(
                name=rule.category, confidence=rule.confidence, fallback=True, source="rule"
            )
        return CategoryResolution(
            name=self.fallback_category, confidence=0.0, fallback=True, source="fallback"
        )

    def category_for(self, ctx: BatchContext, row: TransactionRow) -> CategoryResolution | None:
        vendor = self.vendor_for(ctx, row)
        if vendor is None:
            return None
        return ctx.categories.get(self.category_key(vendor, row))
