"""
Weighted fuzzy matching of free text against zonal value records.

score = sum over fields (vicinity 6, street 4, barangay 3, municipality 2,
province 2, classification 1) of:

  +120 * w  field equals the query
  + 55 * w  field contains the query, or the query contains the field
            as a whole-word phrase
  +  6 * w  per shared token of 3+ characters

Text is compared in normalized form with common road abbreviations
expanded ("Session Rd" == "session road").  Municipality and province are
also compared in their bare administrative form ("Baguio City" ->
"baguio") and the better score is kept.  Location hints add a flat bonus;
rows with an unparseable zonal value take a penalty so they rank last.

The constants are product-tuned (see zonal_config.MatchConfig) and the
confidence cut-offs are a consumer-facing contract.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Set

from records import Record
from text_normalize import admin_name, normalize
from zonal_config import ZONAL_MODEL, ConfidenceThresholds, MatchConfig

logger = logging.getLogger(__name__)

# Abbreviation -> expansion, applied per token after trimming dots.
ROAD_ABBREVIATIONS = {
    "rd": "road",
    "st": "street",
    "str": "street",
    "ave": "avenue",
    "av": "avenue",
    "blvd": "boulevard",
    "hwy": "highway",
    "brgy": "barangay",
    "bgy": "barangay",
    "ext": "extension",
    "sts": "streets",
}

_ADMIN_FIELDS = ("municipality", "province")


class MatchConfidence(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class MatchHints:
    """Locality of the searched place, from the geocoder's address.

    Compared with admin_name() rather than plain normalize(): the geocoder
    says "Baguio" where the dataset says "Baguio City", and an exact
    comparison would never award the bonus for such places.
    """
    municipality: Optional[str] = None
    province: Optional[str] = None


@dataclass(frozen=True)
class ScoredRecord:
    record: Record
    score: float
    index: int   # position in the input sequence

    def to_dict(self) -> dict:
        return {"record": self.record.to_dict(), "score": self.score}


# =============================================================================
# Text helpers
# =============================================================================

def match_form(text: str) -> str:
    """Normalized text with road abbreviations expanded."""
    tokens = []
    for tok in normalize(text).split(" "):
        bare = tok.strip(".")
        tokens.append(ROAD_ABBREVIATIONS.get(bare, tok))
    return " ".join(t for t in tokens if t)


def token_set(text: str, min_len: int = 3) -> Set[str]:
    return {t for t in (tok.strip(".") for tok in text.split(" ")) if len(t) >= min_len}


def _contains_phrase(haystack: str, needle: str) -> bool:
    return f" {needle} " in f" {haystack} "


def _field_score(value: str, query: str, query_tokens: Set[str], weight: int, cfg: MatchConfig) -> float:
    if not value:
        return 0.0
    score = 0.0
    if value == query:
        score += cfg.exact_points * weight
    if query in value or _contains_phrase(query, value):
        score += cfg.contains_points * weight
    shared = query_tokens & token_set(value, cfg.min_token_len)
    score += len(shared) * cfg.token_points * weight
    return score


# =============================================================================
# Scoring
# =============================================================================

def score_record(
    record: Record,
    query: str,
    hints: Optional[MatchHints] = None,
    config: MatchConfig = ZONAL_MODEL.match,
) -> float:
    """Match score of *record* against *query* (higher is better).

    Non-negative unless the record's zonal value is unparseable.  Each
    matching hint adds hint_points; hints match on the bare administrative
    name, so "City of Baguio", "Baguio City" and "Baguio" are equal.
    """
    q = match_form(query)
    score = 0.0
    if q:
        q_tokens = token_set(q, config.min_token_len)
        for fw in config.fields:
            raw = getattr(record, fw.name)
            best = _field_score(match_form(raw), q, q_tokens, fw.weight, config)
            if fw.name in _ADMIN_FIELDS:
                bare = admin_name(raw)
                best = max(best, _field_score(match_form(bare), q, q_tokens, fw.weight, config))
            score += best

    if hints is not None:
        if hints.municipality and admin_name(hints.municipality) == admin_name(record.municipality):
            score += config.hint_points
        if hints.province and admin_name(hints.province) == admin_name(record.province):
            score += config.hint_points

    if not record.has_value:
        score -= config.nan_penalty
    return score


def rank_records(
    records: Iterable[Record],
    query: str,
    hints: Optional[MatchHints] = None,
    limit: Optional[int] = None,
    config: MatchConfig = ZONAL_MODEL.match,
) -> List[ScoredRecord]:
    """Top records by score, descending; ties keep input order."""
    if limit is None:
        limit = config.top_n
    scored = [
        ScoredRecord(record=r, score=score_record(r, query, hints, config), index=i)
        for i, r in enumerate(records)
    ]
    # sorted() is stable, so equal scores stay in input order
    scored = sorted(scored, key=lambda s: -s.score)
    return scored[:limit]


def derive_confidence(
    top_score: Optional[float],
    thresholds: ConfidenceThresholds = ZONAL_MODEL.confidence,
) -> MatchConfidence:
    """Consumer-facing confidence label for the best score."""
    if top_score is None or top_score <= 0:
        return MatchConfidence.UNKNOWN
    if top_score > thresholds.high:
        return MatchConfidence.HIGH
    if top_score > thresholds.medium:
        return MatchConfidence.MEDIUM
    return MatchConfidence.LOW


def confidence_for(ranked: Sequence[ScoredRecord]) -> MatchConfidence:
    return derive_confidence(ranked[0].score if ranked else None)
