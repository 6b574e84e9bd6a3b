"""
Text canonicalisation shared by matching, dataset keys and road lookups.

All helpers are pure and total: None and empty input produce "".
"""

import math
import re

# Anything that is not a letter, digit, whitespace, "." or "-".
# \w also admits "_", so underscores are stripped separately.
_NON_TEXT_RE = re.compile(r"[^\w\s.\-]|_", re.UNICODE)
_SPACE_RE = re.compile(r"\s+", re.UNICODE)

_KEY_LOCALE_RE = re.compile(r"\b(?:province|provincia)\b", re.IGNORECASE)
_KEY_SEPARATOR_RE = re.compile(r"[\s._-]+")

_APOSTROPHE_RE = re.compile(r"[’']")
_PARENS_RE = re.compile(r"\s*\(.*?\)\s*")

# Longest phrases first so "city of" wins over "city".
_ADMIN_WORDS_RE = re.compile(
    r"\b(?:city of|municipality of|province of|city|municipality|province)\b"
)

_OVERPASS_REGEX_SPECIALS_RE = re.compile(r"([.*+?^${}()|\[\]\\])")


def normalize(s) -> str:
    """Lower-case, strip punctuation other than "." and "-", collapse spaces."""
    if not s:
        return ""
    out = _NON_TEXT_RE.sub(" ", str(s).lower())
    return _SPACE_RE.sub(" ", out).strip()


def normalize_key(s) -> str:
    """Dataset key form: locale words, separators and case removed."""
    if not s:
        return ""
    out = _KEY_LOCALE_RE.sub("", str(s).strip())
    return _KEY_SEPARATOR_RE.sub("", out).upper()


def admin_name(s) -> str:
    """Normalized administrative name without "City", "Province" etc.

    "Baguio City", "City of Baguio" and "baguio" all map to "baguio".
    Falls back to the plain normalized form when stripping leaves nothing.
    """
    base = normalize(s)
    stripped = _SPACE_RE.sub(" ", _ADMIN_WORDS_RE.sub(" ", base)).strip()
    return stripped or base


def clean_road_name(s) -> str:
    """Road name as written in vicinity text, minus parentheticals."""
    if not s:
        return ""
    out = _APOSTROPHE_RE.sub("'", str(s))
    out = _SPACE_RE.sub(" ", out)
    out = _PARENS_RE.sub(" ", out)
    return _SPACE_RE.sub(" ", out).strip()


def escape_overpass_regex(s) -> str:
    """Escape regex metacharacters for an Overpass ``~"..."`` filter."""
    escaped = _OVERPASS_REGEX_SPECIALS_RE.sub(r"\\\1", s or "")
    # Double quotes would terminate the QL string literal.
    return escaped.replace('"', '\\"')


def format_money(value: float) -> str:
    """Two-decimal peso amount with separators; "—" when not finite."""
    if value is None or not math.isfinite(value):
        return "—"
    return f"{value:,.2f}"
