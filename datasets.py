"""
Dataset manifest and per-area record loading.

The manifest maps a DatasetKey (e.g. "BENGUET", "BAGUIOCITY") to a CSV/TSV
path.  It is configuration, so it is always fetched fresh (no HTTP cache);
dataset files are loaded once per key and kept for the process lifetime.

The manifest location may be an http(s) URL or a local file path.
Relative dataset paths resolve against the manifest location.
"""

import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urljoin

import requests

from caches import KeyedCache
from cancellation import CancelToken, check_cancelled
from geocoder import GeoPoint
from records import Record, parse_zonal_file
from text_normalize import normalize_key
from zv_trace import get_trace

logger = logging.getLogger(__name__)

# Municipalities whose dataset file is not keyed by the province.
CITY_OVERRIDES = {
    "BAGUIO": "BAGUIOCITY",
    "TARLACCITY": "TARLACCITY",
}

_CITY_FIELDS = ("city", "town", "municipality", "city_district", "suburb")
_PROVINCE_FIELDS = ("province", "state", "county", "region")

_NO_CACHE_HEADERS = {"Cache-Control": "no-cache", "Pragma": "no-cache"}


class NoDatasetMappingError(Exception):
    """The detected administrative key has no configured dataset.

    Carries the detected key and raw address fields so the manifest can
    be fixed.
    """

    def __init__(self, key: str, city: str, province: str, address: Mapping[str, Any]):
        self.key = key
        self.city = city
        self.province = province
        self.address = dict(address or {})
        if key:
            msg = (
                f'No dataset mapped for detected area. city="{city}" '
                f'province="{province}" -> key="{key}". Add it to the manifest.'
            )
        else:
            msg = "Could not detect province/city from this location."
        super().__init__(msg)


class DatasetLoadError(Exception):
    """The manifest or a dataset file could not be loaded."""

    pass


# =============================================================================
# Key detection
# =============================================================================

def detect_city_name(address: Optional[Mapping[str, Any]]) -> str:
    if not address:
        return ""
    for name in _CITY_FIELDS:
        if address.get(name):
            return str(address[name])
    return ""


def detect_province_name(address: Optional[Mapping[str, Any]]) -> str:
    if not address:
        return ""
    for name in _PROVINCE_FIELDS:
        if address.get(name):
            return str(address[name])
    return ""


def detect_dataset_key(address: Optional[Mapping[str, Any]]) -> str:
    """City override when one exists, else the normalized province key."""
    city_key = normalize_key(detect_city_name(address))
    if city_key in CITY_OVERRIDES:
        return CITY_OVERRIDES[city_key]
    return normalize_key(detect_province_name(address))


# =============================================================================
# Store
# =============================================================================

@dataclass
class DatasetSelection:
    key: str
    records: Tuple[Record, ...]


def _is_url(location: str) -> bool:
    return location.startswith(("http://", "https://"))


class DatasetStore:
    """Manifest lookup plus a per-key record cache."""

    DEFAULT_TIMEOUT = 25

    def __init__(self, manifest_location: str, cache: KeyedCache, timeout: Optional[float] = None):
        self.manifest_location = manifest_location
        self.cache = cache
        self.timeout = timeout if timeout is not None else self.DEFAULT_TIMEOUT
        self._manifest: Optional[Dict[str, str]] = None

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    def _read(self, location: str, fresh: bool) -> str:
        if not _is_url(location):
            with open(location, encoding="utf-8-sig") as f:
                return f.read()
        session = requests.Session()
        session.trust_env = False
        start = time.monotonic()
        try:
            resp = session.get(
                location,
                headers=_NO_CACHE_HEADERS if fresh else None,
                timeout=self.timeout,
            )
        finally:
            session.close()
        trace = get_trace()
        if trace:
            trace.record_attempt(
                service="manifest" if fresh else "dataset",
                endpoint=location, caller="datasets", attempt=0,
                elapsed_ms=int((time.monotonic() - start) * 1000),
                status_code=resp.status_code,
            )
        if not resp.ok:
            raise DatasetLoadError(f"Failed to load {location} (HTTP {resp.status_code})")
        return resp.text

    def _resolve(self, path: str) -> str:
        if _is_url(path) or os.path.isabs(path):
            return path
        if _is_url(self.manifest_location):
            return urljoin(self.manifest_location, path)
        return os.path.join(os.path.dirname(self.manifest_location), path)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def manifest(self, refresh: bool = False) -> Dict[str, str]:
        """DatasetKey -> path.  Fetched once per store unless *refresh*."""
        if self._manifest is None or refresh:
            try:
                raw = json.loads(self._read(self.manifest_location, fresh=True))
            except (OSError, ValueError, requests.exceptions.RequestException) as e:
                raise DatasetLoadError(f"Failed to load manifest {self.manifest_location}: {e}") from e
            if not isinstance(raw, dict):
                raise DatasetLoadError("Manifest must be a JSON object of key -> path")
            self._manifest = {str(k): str(v) for k, v in raw.items()}
            logger.info("Loaded dataset manifest with %d keys", len(self._manifest))
        return self._manifest

    def load(self, key: str, cancel: Optional[CancelToken] = None) -> Tuple[Record, ...]:
        """Records for *key*, loading and caching them on first use."""
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        path = self.manifest().get(key)
        if not path:
            raise NoDatasetMappingError(key, "", "", {})

        check_cancelled(cancel)
        location = self._resolve(path)
        try:
            text = self._read(location, fresh=False)
        except (OSError, requests.exceptions.RequestException) as e:
            raise DatasetLoadError(f"Failed to load dataset {location}: {e}") from e
        check_cancelled(cancel)

        records = parse_zonal_file(text)
        if not records:
            raise DatasetLoadError(f"Loaded {location} but got 0 rows")
        self.cache.set(key, records)
        logger.info("Loaded dataset %s: %d rows from %s", key, len(records), location)
        return records

    def ensure_for(self, geo: GeoPoint, cancel: Optional[CancelToken] = None) -> DatasetSelection:
        """Detect the dataset key for *geo* and return its records.

        Raises:
            NoDatasetMappingError: No key detected, or the key is not in the manifest.
            DatasetLoadError: The manifest or dataset could not be read.
        """
        key = detect_dataset_key(geo.address)
        if not key or key not in self.manifest():
            raise NoDatasetMappingError(
                key,
                detect_city_name(geo.address),
                detect_province_name(geo.address),
                geo.address,
            )
        return DatasetSelection(key=key, records=self.load(key, cancel))
