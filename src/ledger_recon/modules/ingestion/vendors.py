from __future__ import annotations

import re

_AUTH_CODE_RE = re.compile(r"\*\s*[A-Z0-9]*\d[A-Z0-9]*")
_PROCESSOR_PREFIX_RE = re.compile(r"^(?:SQ|TST|SP|PP|PAYPAL|POS|CHECKCARD)\s*\*\s*")
_STORE_NUMBER_RE = re.compile(r"#\s*\d+")
_REFERENCE_RE = re.compile(r"\b(?:REF|AUTH|CONF|TRACE|TXN|ID)\b[\s:#.-]*[A-Z0-9-]*\d[A-Z0-9-]*")
_LONG_DIGITS_RE = re.compile(r"\d{4,}")
_PUNCT_RE = re.compile(r"[^A-Z0-9&' ]+")
_SPACES_RE = re.compile(r"\s+")


def _normalize_once(s: str) -> str:
    s = s.upper()
    s = _AUTH_CODE_RE.sub(" ", s)
    s = _PROCESSOR_PREFIX_RE.sub("", s.strip())
    s = _STORE_NUMBER_RE.sub(" ", s)
    s = _REFERENCE_RE.sub(" ", s)
    s = _LONG_DIGITS_RE.sub(" ", s)
    s = _PUNCT_RE.sub(" ", s)
    return _SPACES_RE.sub(" ", s).strip()


def vendor_key(raw_vendor: str | None) -> str:
    """Deterministic lookup key for a raw vendor string.

    Strips authorization-code suffixes (``*4821``), processor prefixes (``SQ *``),
    store and reference numbers and digit runs of four or more, then collapses
    whitespace and uppercases. The rewrite is applied until it stops changing the
    string, so ``vendor_key(vendor_key(x)) == vendor_key(x)``.
    """
    s = str(raw_vendor or "")
    while True:
        out = _normalize_once(s)
        if out == s:
            return out
        s = out


# Checked in order against the vendor key; first hit wins.
KNOWN_VENDORS: tuple[tuple[re.Pattern[str], str], ...] = tuple(
    (re.compile(pattern), name)
    for pattern, name in (
        (r"\bAWS\b|\bAMAZON WEB SERVICES\b", "Amazon Web Services"),
        (r"\bAMZN\b|\bAMAZON\b", "Amazon"),
        (r"\bGSUITE\b|\bGOOGLE\s+(?:GSUITE|WORKSPACE)\b", "Google Workspace"),
        (r"\bGOOGLE\s+ADS\b|\bADWORDS\b", "Google Ads"),
        (r"\bGOOGLE\b", "Google"),
        (r"\bSLACK\b", "Slack"),
        (r"\bGITHUB\b", "GitHub"),
        (r"\bGUSTO\b", "Gusto"),
        (r"\bUBER\s*EATS\b", "Uber Eats"),
        (r"\bUBER\b", "Uber"),
        (r"\bLYFT\b", "Lyft"),
        (r"\bZOOM\b", "Zoom"),
        (r"\bNOTION\b", "Notion"),
        (r"\bFIGMA\b", "Figma"),
        (r"\bATLASSIAN\b|\bJIRA\b", "Atlassian"),
        (r"\bADOBE\b", "Adobe"),
        (r"\bMICROSOFT\b|\bMSFT\b", "Microsoft"),
        (r"\bSTRIPE\b", "Stripe"),
        (r"\bVERCEL\b", "Vercel"),
        (r"\bHEROKU\b", "Heroku"),
        (r"\bDIGITALOCEAN\b", "DigitalOcean"),
        (r"\bWEWORK\b", "WeWork"),
        (r"\bLINKEDIN\b", "LinkedIn"),
        (r"\bFACEBK\b|\bFACEBOOK\b|\bMETA\s+ADS\b", "Meta"),
        (r"\bNETFLIX\b", "Netflix"),
        (r"\bSPOTIFY\b", "Spotify"),
    )
)

_SUBSCRIPTION_KEYWORDS = (
    "subscription",
    "monthly",
    "netflix",
    "spotify",
    "adobe",
    "microsoft",
    "google workspace",
    "github",
    "aws",
    "amazon web services",
    "vercel",
    "saas",
    "slack",
    "zoom",
    "notion",
    "figma",
    "atlassian",
)

_REJECT_PHRASES = ("sorry", "cannot", "can't", "unknown", "unable", "as an ai", "n/a")


def known_vendor_name(key: str) -> str | None:
    for pattern, name in KNOWN_VENDORS:
        if pattern.search(key):
            return name
    return None


def looks_recurring(*texts: str | None) -> bool:
    blob = " ".join(t for t in texts if t).lower()
    return any(re.search(rf"\b{re.escape(k)}\b", blob) for k in _SUBSCRIPTION_KEYWORDS)


def is_valid_vendor_name(name: str | None) -> bool:
    s = (name or "").strip()
    if not s or len(s) > 100:
        return False
    if len(s.split()) > 10:
        return False
    lower = s.lower()
    return not any(p in lower for p in _REJECT_PHRASES)


def fallback_vendor_name(raw_vendor: str | None, *, max_length: int) -> str:
    s = _SPACES_RE.sub(" ", str(raw_vendor or "")).strip()
    return s[:max_length].rstrip() or "Unknown Vendor"
