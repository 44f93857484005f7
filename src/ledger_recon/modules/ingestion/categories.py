from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal

CATEGORIES: tuple[str, ...] = (
    "Software & SaaS",
    "Marketing & Advertising",
    "Payroll & Benefits",
    "Office & Equipment",
    "Professional Services",
    "Travel & Meals",
    "Rent & Utilities",
    "Revenue",
    "Operations & Misc",
    "Uncategorized",
)

DEFAULT_ORGANIZATION_CATEGORIES: tuple[str, ...] = CATEGORIES


@dataclass(frozen=True)
class CategoryRule:
    category: str
    confidence: float
    keywords: tuple[str, ...]
    inflow_only: bool = False


CATEGORY_RULES: tuple[CategoryRule, ...] = (
    CategoryRule(
        "Payroll & Benefits",
        0.9,
        ("payroll", "gusto", "adp", "rippling", "justworks", "salary", "wages", "401k", "benefits"),
    ),
    CategoryRule(
        "Software & SaaS",
        0.9,
        (
            "amazon web services",
            "aws",
            "github",
            "slack",
            "notion",
            "figma",
            "atlassian",
            "vercel",
            "heroku",
            "digitalocean",
            "google workspace",
            "microsoft",
            "adobe",
            "zoom",
            "saas",
            "software",
        ),
    ),
    CategoryRule(
        "Marketing & Advertising",
        0.9,
        ("google ads", "meta", "linkedin", "advertising", "marketing", "hubspot", "mailchimp"),
    ),
    CategoryRule(
        "Revenue",
        0.85,
        ("stripe", "payout", "invoice payment", "customer payment"),
        inflow_only=True,
    ),
    CategoryRule(
        "Travel & Meals",
        0.75,
        ("uber", "lyft", "airline", "airbnb", "hotel", "restaurant", "doordash", "coffee"),
    ),
    CategoryRule(
        "Rent & Utilities",
        0.75,
        ("rent", "wework", "lease", "electric", "utility", "utilities", "internet", "comcast"),
    ),
    CategoryRule(
        "Office & Equipment",
        0.75,
        ("office", "staples", "apple store", "best buy", "equipment", "furniture", "amazon"),
    ),
    CategoryRule(
        "Professional Services",
        0.75,
        ("legal", "attorney", "accounting", "bookkeeping", "consulting", "cpa"),
    ),
)


@dataclass(frozen=True)
class RuleMatch:
    category: str
    confidence: float


def _contains(blob: str, keyword: str) -> bool:
    return re.search(rf"\b{re.escape(keyword)}\b", blob) is not None


def match_category_rules(
    vendor: str, description: str | None, amount: Decimal | None = None
) -> RuleMatch | None:
    """Keyword rules over vendor and description.

    A vendor hit carries the rule's confidence; a hit only in the description is
    capped at 0.5 so it never short-circuits the provider.
    """
    vendor_blob = (vendor or "").lower()
    desc_blob = (description or "").lower()
    best: RuleMatch | None = None
    for rule in CATEGORY_RULES:
        if rule.inflow_only and (amount is None or amount <= 0):
            continue
        if any(_contains(vendor_blob, k) for k in rule.keywords):
            confidence = rule.confidence
        elif any(_contains(desc_blob, k) for k in rule.keywords):
            confidence = min(rule.confidence, 0.5)
        else:
            continue
        if best is None or confidence > best.confidence:
            best = RuleMatch(category=rule.category, confidence=confidence)
    return best


def canonical_category(name: str | None) -> str | None:
    """Map a provider answer onto the allowed list, case-insensitively."""
    s = re.sub(r"\s+", " ", (name or "").strip()).casefold()
    for category in CATEGORIES:
        if category.casefold() == s:
            return category
    return None
