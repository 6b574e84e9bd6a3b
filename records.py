"""
Zonal value records and the dataset file format.

A dataset is a CSV or TSV file with 8 positional columns:

    region, province, municipality, barangay, street, vicinity,
    classification, zonal value

The delimiter is a tab when the first non-empty line contains one, else a
comma.  A header row is recognised by well-known column names.  Missing
trailing columns default to "" (an empty zonal value reads as 0).
Unparseable zonal values are kept as NaN so the row still loads; the
matcher ranks such rows last.
"""

import csv
import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Tuple

from text_normalize import normalize

HEADER_TOKENS = ("province", "municipality", "barangay", "zonal_value", "revenue region no.")

RECORD_FIELDS = (
    "region",
    "province",
    "municipality",
    "barangay",
    "street",
    "vicinity",
    "classification",
    "zonal_value",
)


@dataclass(frozen=True)
class Record:
    """One zonal valuation row.  Identity is the field tuple."""
    region: str = ""
    province: str = ""
    municipality: str = ""
    barangay: str = ""
    street: str = ""
    vicinity: str = ""
    classification: str = ""
    zonal_value: float = 0.0

    @property
    def has_value(self) -> bool:
        return math.isfinite(self.zonal_value)

    def key(self) -> str:
        """Normalized composite key used by the record-point cache."""
        return "|".join(
            normalize(x)
            for x in (self.province, self.municipality, self.barangay, self.vicinity, self.classification)
        )

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        # JSON has no NaN
        d["zonal_value"] = self.zonal_value if self.has_value else None
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Record":
        raw_value = d.get("zonal_value")
        # to_dict() writes NaN as null
        zonal_value = math.nan if raw_value is None and "zonal_value" in d else parse_money(raw_value)
        return cls(
            region=str(d.get("region") or ""),
            province=str(d.get("province") or ""),
            municipality=str(d.get("municipality") or ""),
            barangay=str(d.get("barangay") or ""),
            street=str(d.get("street") or ""),
            vicinity=str(d.get("vicinity") or ""),
            classification=str(d.get("classification") or ""),
            zonal_value=zonal_value,
        )


def parse_money(value) -> float:
    """Peso amount from text like '"25,000.00"'; NaN when unparseable.

    None and blank text read as 0, matching an absent trailing column.
    """
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else math.nan
    cleaned = str(value).replace('"', "").replace(",", "").strip()
    if not cleaned:
        return 0.0
    try:
        n = float(cleaned)
    except ValueError:
        return math.nan
    return n if math.isfinite(n) else math.nan


def value_tier(zonal_value: float) -> str:
    """Coarse price band for summaries."""
    if not math.isfinite(zonal_value) or zonal_value <= 0:
        return "Unknown"
    if zonal_value >= 20000:
        return "Premium"
    if zonal_value >= 10000:
        return "Upper-mid"
    if zonal_value >= 5000:
        return "Mid"
    return "Entry"


def _split_rows(text: str) -> List[List[str]]:
    lines = [line for line in text.replace("\r", "").split("\n") if line.strip()]
    if not lines:
        return []
    if "\t" in lines[0]:
        return [[cell.strip() for cell in line.split("\t")] for line in lines]
    return [[cell.strip() for cell in row] for row in csv.reader(lines)]


def _has_header(first_row: List[str]) -> bool:
    lowered = [cell.lower() for cell in first_row]
    return any(token in lowered for token in HEADER_TOKENS)


def parse_zonal_file(text: str) -> Tuple[Record, ...]:
    """Parse dataset text into records, in file order."""
    grid = _split_rows(text or "")
    if not grid:
        return ()
    data = grid[1:] if _has_header(grid[0]) else grid

    records = []
    for cells in data:
        padded = (cells + [""] * len(RECORD_FIELDS))[: len(RECORD_FIELDS)]
        *text_fields, zonal_raw = padded
        records.append(Record(*text_fields, zonal_value=parse_money(zonal_raw)))
    return tuple(records)
