"""Shared fixtures for the zonal locator test suite.

Provides a small on-disk dataset manifest, a lookup service wired to
mocked geocoder / Overpass clients, and a Flask test client using it.
"""

import os
from unittest.mock import MagicMock

import pytest

# Configure the app BEFORE importing it (rate limiting is read at import time)
os.environ["RATELIMIT_ENABLED"] = "false"
os.environ.setdefault("OVERPASS_ENDPOINTS", "https://op-a.test/api/interpreter,https://op-b.test/api/interpreter")
os.environ.setdefault("NOMINATIM_ENDPOINTS", "https://geo.test")

from app import app, reset_sessions  # noqa: E402
from caches import ZonalCaches  # noqa: E402
from datasets import DatasetStore  # noqa: E402
from geocoder import Geocoder, GeoPoint  # noqa: E402
from overpass_client import OverpassClient  # noqa: E402
from records import Record, parse_zonal_file  # noqa: E402
from zonal_lookup import ZonalLookupService  # noqa: E402


BAGUIO_CSV = """Revenue Region No.,Province,Municipality,Barangay,Street,Vicinity,Classification,Zonal Value
RR2,Benguet,Baguio City,Session Road,,Session Rd,CR,"25,000.00"
RR2,Benguet,Baguio City,Burnham-Legarda,,Harrison Rd,CR,"18,500.00"
RR2,Benguet,Baguio City,Camp 7,,Kennon Rd,RR,"4,200.00"
RR2,Benguet,Baguio City,Upper Bonifacio,,Upper Bonifacio St. - Junction Magsaysay Ave. to Junction Gen Luna Rd,CR,"21,000.00"
"""

BENGUET_TSV = (
    "RR2\tBenguet\tLa Trinidad\tPoblacion\t\tHalsema Highway\tCR\t9,000.00\n"
    "RR2\tBenguet\tLa Trinidad\tBetag\t\tKm 5\tRR\t\n"
)

BAGUIO_ADDRESS = {"road": "Session Road", "city": "Baguio", "state": "Benguet", "country": "Philippines"}


@pytest.fixture()
def session_road_record():
    return Record(
        region="RR2",
        province="Benguet",
        municipality="Baguio City",
        barangay="Session Road",
        vicinity="Session Rd",
        classification="CR",
        zonal_value=25000.0,
    )


@pytest.fixture()
def bonifacio_record():
    return Record(
        region="RR2",
        province="Benguet",
        municipality="Baguio City",
        barangay="Upper Bonifacio",
        vicinity="Upper Bonifacio St. - Junction Magsaysay Ave. to Junction Gen Luna Rd",
        classification="CR",
        zonal_value=21000.0,
    )


@pytest.fixture()
def baguio_records():
    return parse_zonal_file(BAGUIO_CSV)


@pytest.fixture()
def baguio_geo():
    return GeoPoint("Session Road, Baguio, Benguet, Philippines", 16.4119, 120.5960, dict(BAGUIO_ADDRESS))


@pytest.fixture()
def manifest_path(tmp_path):
    (tmp_path / "baguio.csv").write_text(BAGUIO_CSV, encoding="utf-8")
    (tmp_path / "benguet.tsv").write_text(BENGUET_TSV, encoding="utf-8")
    path = tmp_path / "manifest.json"
    path.write_text('{"BAGUIOCITY": "baguio.csv", "BENGUET": "benguet.tsv"}', encoding="utf-8")
    return str(path)


@pytest.fixture()
def caches():
    return ZonalCaches()


@pytest.fixture()
def mock_geocoder():
    return MagicMock(spec=Geocoder)


@pytest.fixture()
def mock_overpass():
    overpass = MagicMock(spec=OverpassClient)
    overpass.query.return_value = []
    return overpass


@pytest.fixture()
def lookup_service(manifest_path, caches, mock_geocoder, mock_overpass):
    datasets = DatasetStore(manifest_path, caches.datasets)
    return ZonalLookupService(mock_geocoder, mock_overpass, datasets, caches)


@pytest.fixture()
def client(lookup_service):
    """Flask test client backed by the mocked lookup service."""
    app.config["TESTING"] = True
    app.extensions["zonal_service"] = lookup_service
    with app.test_client() as c:
        yield c
    reset_sessions()
    app.extensions.pop("zonal_service", None)
