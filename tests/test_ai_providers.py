from __future__ import annotations

import json
from decimal import Decimal

import httpx
import pytest

from ledger_recon.core.errors import ProviderError
from ledger_recon.modules.ingestion import ai
from ledger_recon.modules.ingestion.providers import (
    OpenAICategoryClassifier,
    OpenAITransactionExtractor,
    OpenAIVendorNormalizer,
)

_URL = "https://api.test/v1/chat/completions"


@pytest.fixture
def ai_enabled(monkeypatch):
    monkeypatch.setattr(ai.settings, "ai_enabled", True)
    monkeypatch.setattr(ai.settings, "openai_api_key", "test-key")
    monkeypatch.setattr(ai.settings, "openai_base_url", "https://api.test/v1/")


def _respond(monkeypatch, *, content: str | None = None, status_code: int = 200, calls=None):
    def fake_post(url, **kwargs):
        if calls is not None:
            calls.append({"url": url, **kwargs})
        body = {"choices": [{"message": {"content": content}}]}
        return httpx.Response(status_code, json=body, request=httpx.Request("POST", url))

    monkeypatch.setattr(ai.httpx, "post", fake_post)


def test_chat_json_requires_configuration(monkeypatch):
    monkeypatch.setattr(ai.settings, "ai_enabled", False)
    with pytest.raises(ProviderError):
        ai.chat_json(purpose="vendor_normalization", system="s", user="u")


def test_chat_json_reads_object_wrapped_in_a_code_fence(monkeypatch, ai_enabled):
    calls: list[dict] = []
    _respond(monkeypatch, content='```json\n{"clean_name": "Acme"}\n```', calls=calls)

    obj = ai.chat_json(purpose="vendor_normalization", system="s", user="u", max_tokens=60)

    assert obj == {"clean_name": "Acme"}
    assert calls[0]["url"] == _URL
    assert calls[0]["json"]["max_tokens"] == 60
    assert calls[0]["json"]["temperature"] == 0
    assert calls[0]["headers"]["Authorization"] == "Bearer test-key"


def test_rate_limit_is_retryable(monkeypatch, ai_enabled):
    _respond(monkeypatch, content="{}", status_code=429)
    with pytest.raises(ProviderError) as exc:
        ai.chat_json(purpose="category_classification", system="s", user="u")
    assert exc.value.retryable is True


def test_timeout_is_retryable(monkeypatch, ai_enabled):
    def fake_post(url, **kwargs):
        raise httpx.ReadTimeout("slow", request=httpx.Request("POST", url))

    monkeypatch.setattr(ai.httpx, "post", fake_post)
    with pytest.raises(ProviderError) as exc:
        ai.chat_json(purpose="category_classification", system="s", user="u")
    assert exc.value.retryable is True


def test_non_object_content_is_rejected(monkeypatch, ai_enabled):
    _respond(monkeypatch, content="Sorry, I cannot help with that.")
    with pytest.raises(ProviderError) as exc:
        ai.chat_json(purpose="vendor_normalization", system="s", user="u")
    assert exc.value.retryable is False


def test_vendor_normalizer_returns_clean_name(monkeypatch, ai_enabled):
    _respond(monkeypatch, content=json.dumps({"clean_name": "Netflix", "is_subscription": True}))
    suggestion = OpenAIVendorNormalizer().normalize_vendor("NETFLIX.COM 866-579-7172")
    assert suggestion.clean_name == "Netflix"
    assert suggestion.is_recurring is True


def test_vendor_normalizer_rejects_empty_name(monkeypatch, ai_enabled):
    _respond(monkeypatch, content=json.dumps({"clean_name": ""}))
    with pytest.raises(ProviderError):
        OpenAIVendorNormalizer().normalize_vendor("XX 1234")


def test_classifier_maps_answer_onto_allowed_categories(monkeypatch, ai_enabled):
    _respond(monkeypatch, content=json.dumps({"category": "software  & saas", "confidence": 3}))
    suggestion = OpenAICategoryClassifier().classify("GitHub", "", Decimal("-21.00"))
    assert suggestion.category == "Software & SaaS"
    assert suggestion.confidence == 1.0


def test_classifier_rejects_unknown_category(monkeypatch, ai_enabled):
    _respond(monkeypatch, content=json.dumps({"category": "Snacks"}))
    with pytest.raises(ProviderError):
        OpenAICategoryClassifier().classify("Corner Deli", "", Decimal("-8.00"))


def test_extractor_returns_signed_rows(monkeypatch, ai_enabled):
    content = {
        "transactions": [
            {"date": "2024-03-01", "amount": "-49.00", "description": "Hosting", "vendor": None},
            "not a row",
        ],
        "confidence": 0.9,
    }
    _respond(monkeypatch, content=json.dumps(content))

    result = OpenAITransactionExtractor().extract_transactions("Statement text", "invoice")

    assert len(result.transactions) == 1
    assert result.transactions[0].amount == "-49.00"
    assert result.transactions[0].vendor is None
    assert result.confidence == 0.9


def test_truncate_text_marks_cut_documents():
    text = ai.truncate_text("a" * 200, max_chars=100)
    assert len(text) <= 100
    assert text.endswith("[TRUNCATED]")
    assert ai.truncate_text(" short ", max_chars=100) == "short"
