from __future__ import annotations

import pytest

from ledger_recon.modules.ingestion.vendors import (
    fallback_vendor_name,
    is_valid_vendor_name,
    known_vendor_name,
    looks_recurring,
    vendor_key,
)


@pytest.mark.parametrize(
    "raw",
    [
        "ACME CORP *4821",
        "SQ *BLUE BOTTLE COFFEE #0042",
        "sq * sq *  joe's   diner ref: 88812",
        "AMZN Mktp US*2K4LL1PQ2",
        "  ",
        "",
        "1234567 5678",
        "Uber   *Trip  HELP.UBER.COM",
    ],
)
def test_vendor_key_is_idempotent(raw):
    once = vendor_key(raw)
    assert vendor_key(once) == once
    assert vendor_key(raw) == once


def test_vendor_key_drops_transaction_code_suffixes():
    assert vendor_key("ACME CORP *4821") == "ACME CORP"
    assert vendor_key("ACME CORP *9053") == "ACME CORP"
    assert vendor_key("acme corp") == "ACME CORP"


def test_vendor_key_strips_processor_prefix_and_store_numbers():
    assert vendor_key("SQ *BLUE BOTTLE COFFEE #0042") == "BLUE BOTTLE COFFEE"
    assert vendor_key("POS * Corner Deli 55512") == "CORNER DELI"


def test_vendor_key_handles_missing_vendor():
    assert vendor_key(None) == ""
    assert vendor_key("   ") == ""


def test_known_vendor_rules_prefer_specific_patterns():
    assert known_vendor_name(vendor_key("AWS EMEA aws.amazon.co")) == "Amazon Web Services"
    assert known_vendor_name(vendor_key("AMZN Mktp US*2K4LL1PQ2")) == "Amazon"
    assert known_vendor_name(vendor_key("UBER *EATS PENDING")) == "Uber Eats"
    assert known_vendor_name(vendor_key("Local Bakery")) is None


def test_fallback_vendor_name_truncates_and_never_returns_empty():
    assert fallback_vendor_name("A" * 80, max_length=50) == "A" * 50
    assert fallback_vendor_name("  Corner   Deli ", max_length=50) == "Corner Deli"
    assert fallback_vendor_name("", max_length=50) == "Unknown Vendor"


def test_vendor_name_validation_rejects_provider_apologies():
    assert is_valid_vendor_name("Acme Corp")
    assert not is_valid_vendor_name("")
    assert not is_valid_vendor_name("Sorry, I cannot determine the merchant")
    assert not is_valid_vendor_name("x" * 101)


def test_looks_recurring_matches_subscription_vendors():
    assert looks_recurring("Slack", "SLACK T123")
    assert looks_recurring("Monthly plan")
    assert not looks_recurring("Corner Deli")
