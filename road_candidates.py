"""
Road names from free-form vicinity text.

Vicinity strings in zonal value schedules look like:

    "Upper Bonifacio St. - Junction Magsaysay Ave. to Junction Gen Luna Rd"
    "Upper Bonifacio St. - Junction Magsaysay Ave. to Dr Cuesta's Property"
    "Session Rd"

These parsers are best-effort pattern matchers, not a grammar.  They will
miss valid descriptions written in other styles and are only verified
against known fixture strings.  Malformed input yields an empty result,
never an exception.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from text_normalize import clean_road_name

logger = logging.getLogger(__name__)

SEGMENT_SEPARATOR = " - "
MIN_ROAD_NAME_LEN = 4
MAX_CANDIDATES = 3

_APOSTROPHE_RE = re.compile(r"[’']")
_JUNCTION_PHRASE_RE = re.compile(r"junction\s+([^,]+?)(?:\s+to\b|\s+-|,|$)", re.IGNORECASE)
_JUNCTION_TO_JUNCTION_RE = re.compile(r"junction\s+(.+?)\s+to\s+junction\s+(.+)$", re.IGNORECASE)
_JUNCTION_TO_ANY_RE = re.compile(r"junction\s+(.+?)\s+to\s+(.+)$", re.IGNORECASE)

# Bounds that name a parcel or building rather than a road.
_NON_ROAD_RE = re.compile(r"\b(?:property|lot|house|compound)\b", re.IGNORECASE)


@dataclass(frozen=True)
class JunctionClip:
    """A stretch of *main* between its junctions with roads *a* and *b*."""
    main: str
    a: str
    b: str


def extract_road_candidates(vicinity: str) -> List[str]:
    """Up to 3 road names: the leading segment plus every "junction X".

    Names shorter than 4 characters after cleaning are dropped; duplicates
    are removed case-insensitively, keeping the first spelling.
    """
    v = _APOSTROPHE_RE.sub("'", str(vicinity or ""))
    raw: List[str] = []

    first = v.split(SEGMENT_SEPARATOR)[0]
    if first:
        raw.append(first)
    for m in _JUNCTION_PHRASE_RE.finditer(v):
        candidate = m.group(1).strip()
        if candidate:
            raw.append(candidate)

    seen = set()
    roads: List[str] = []
    for name in raw:
        cleaned = clean_road_name(name)
        if len(cleaned) < MIN_ROAD_NAME_LEN or cleaned.lower() in seen:
            continue
        seen.add(cleaned.lower())
        roads.append(cleaned)
    return roads[:MAX_CANDIDATES]


def is_non_road(name: str) -> bool:
    return bool(_NON_ROAD_RE.search(name or ""))


def parse_junction_clip(vicinity: str) -> Optional[JunctionClip]:
    """Parse "<main> - Junction <A> to [Junction] <B>", or return None.

    Both bounds must look like roads: anything mentioning a property,
    lot, house or compound is rejected.
    """
    v = clean_road_name(vicinity)
    if SEGMENT_SEPARATOR not in v:
        return None

    main_raw, rest = (part.strip() for part in v.split(SEGMENT_SEPARATOR)[:2])
    main = clean_road_name(main_raw)
    if len(main) < MIN_ROAD_NAME_LEN:
        return None

    m = _JUNCTION_TO_JUNCTION_RE.search(rest) or _JUNCTION_TO_ANY_RE.search(rest)
    if m is None:
        return None

    a = clean_road_name(m.group(1))
    b = clean_road_name(m.group(2))
    if not a or not b or is_non_road(a) or is_non_road(b):
        logger.debug("Junction clip rejected for %r (a=%r, b=%r)", vicinity, a, b)
        return None
    return JunctionClip(main=main, a=a, b=b)
