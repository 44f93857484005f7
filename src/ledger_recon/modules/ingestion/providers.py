"""
External providers used by the ingestion pipeline.

Every provider raises ProviderError on timeout, rate limiting or a malformed
answer; callers fall back deterministically.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol

from ledger_recon.core.config import settings
from ledger_recon.core.errors import ProviderError
from ledger_recon.modules.ingestion import ai
from ledger_recon.modules.ingestion.categories import CATEGORIES, canonical_category
from ledger_recon.modules.ingestion.vendors import is_valid_vendor_name


@dataclass(frozen=True)
class VendorSuggestion:
    clean_name: str
    is_recurring: bool | None = None


@dataclass(frozen=True)
class CategorySuggestion:
    category: str
    confidence: float = 0.8


@dataclass(frozen=True)
class ExtractedTransaction:
    date: str | None
    amount: str | None
    description: str | None
    vendor: str | None


@dataclass
class ExtractedTransactions:
    transactions: list[ExtractedTransaction] = field(default_factory=list)
    confidence: float = 0.0


class VendorNormalizationProvider(Protocol):
    def normalize_vendor(self, raw_name: str) -> VendorSuggestion: ...


class CategoryClassificationProvider(Protocol):
    def classify(self, vendor: str, description: str, amount: Decimal) -> CategorySuggestion: ...


class TransactionExtractionProvider(Protocol):
    def extract_transactions(self, text: str, declared_type: str) -> ExtractedTransactions: ...


class OpenAIVendorNormalizer:
    def normalize_vendor(self, raw_name: str) -> VendorSuggestion:
        obj = ai.chat_json(
            purpose="vendor_normalization",
            system=(
                "You clean up merchant names from bank statements. "
                "Return the common brand or business name only. Return JSON only."
            ),
            user=(
                'Return {"clean_name": string, "is_subscription": boolean} for this raw '
                "merchant string. Drop store numbers, locations, payment processor prefixes "
                "and reference codes.\n\n"
                f"Raw merchant: {raw_name[:300]}"
            ),
            max_tokens=60,
        )
        name = str(obj.get("clean_name") or "").strip()
        if not is_valid_vendor_name(name):
            raise ProviderError("vendor_normalization: unusable vendor name", provider="openai")
        recurring = obj.get("is_subscription")
        return VendorSuggestion(
            clean_name=name,
            is_recurring=recurring if isinstance(recurring, bool) else None,
        )


class OpenAICategoryClassifier:
    def classify(self, vendor: str, description: str, amount: Decimal) -> CategorySuggestion:
        direction = "inflow" if amount > 0 else "outflow"
        obj = ai.chat_json(
            purpose="category_classification",
            system=(
                "You categorize business transactions for a small company's books. "
                "Answer with one category from the allowed list. Return JSON only."
            ),
            user=(
                'Return {"category": string, "confidence": number between 0 and 1}.\n'
                f"Allowed categories: {', '.join(CATEGORIES)}\n\n"
                f"Vendor: {vendor[:200]}\n"
                f"Description: {(description or '')[:300]}\n"
                f"Amount: {abs(amount)} ({direction})"
            ),
            max_tokens=60,
        )
        category = canonical_category(str(obj.get("category") or ""))
        if not category:
            raise ProviderError("category_classification: category not allowed", provider="openai")
        try:
            confidence = float(obj.get("confidence", 0.8))
        except (TypeError, ValueError):
            confidence = 0.8
        return CategorySuggestion(category=category, confidence=max(0.0, min(1.0, confidence)))


class OpenAITransactionExtractor:
    def extract_transactions(self, text: str, declared_type: str) -> ExtractedTransactions:
        cleaned = ai.truncate_text(text, max_chars=int(settings.ai_max_chars or 0) or 12000)
        if not cleaned:
            raise ProviderError("transaction_extraction: empty document text", provider="openai")
        obj = ai.chat_json(
            purpose="transaction_extraction",
            system=(
                "You extract financial transactions from document text. "
                "Only use information explicitly present in the text. Never guess. "
                "Return JSON only."
            ),
            user=(
                "Return JSON with this exact shape:\n"
                '{"transactions": [{"date": "YYYY-MM-DD", "amount": string, '
                '"description": string, "vendor": string|null}], "confidence": number}\n\n'
                "Rules:\n"
                "- amount is signed: money received is positive, money paid out is negative.\n"
                "- Skip running balances, subtotals and totals.\n"
                f"- The document is a {declared_type.replace('_', ' ')}.\n\n"
                "Document text:\n" + cleaned
            ),
            timeout=max(float(settings.ai_timeout_seconds or 20.0), 60.0),
        )
        items = obj.get("transactions")
        if not isinstance(items, list):
            raise ProviderError("transaction_extraction: missing transactions", provider="openai")

        out: list[ExtractedTransaction] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            out.append(
                ExtractedTransaction(
                    date=_str_or_none(item.get("date")),
                    amount=_str_or_none(item.get("amount")),
                    description=_str_or_none(item.get("description")),
                    vendor=_str_or_none(item.get("vendor")),
                )
            )
        try:
            confidence = float(obj.get("confidence", 0.7))
        except (TypeError, ValueError):
            confidence = 0.7
        return ExtractedTransactions(transactions=out, confidence=max(0.0, min(1.0, confidence)))


def _str_or_none(value: object) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None
