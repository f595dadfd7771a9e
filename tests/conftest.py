import asyncio
import os
import socket
import sys
import urllib.request
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
SRC = REPO_ROOT / "src"

# Prefer repo sources over any installed package.
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from property_selection.config import DataSourceRegistry, PipelineConfig  # noqa: E402
from property_selection.errors import QueryError  # noqa: E402
from property_selection.models import OwnerRecord, ParcelFeature  # noqa: E402


PARCEL_LAYER_URL = "https://services.example.se/arcgis/rest/services/Fastighet/MapServer/0"
OWNER_LAYER_URL = "https://services.example.se/arcgis/rest/services/Fastighet/MapServer/1"


@pytest.fixture(autouse=True)
def block_network(monkeypatch):
    if os.getenv("LIVE") == "1":
        return

    real_connect = socket.socket.connect

    def guarded_connect(sock, address):
        host = address[0]
        if host not in ("127.0.0.1", "localhost"):
            raise RuntimeError("Network access blocked in tests")
        return real_connect(sock, address)

    monkeypatch.setattr(socket.socket, "connect", guarded_connect)
    monkeypatch.setattr(
        urllib.request,
        "urlopen",
        lambda *args, **kwargs: (_ for _ in ()).throw(
            RuntimeError("Network access blocked in tests")
        ),
    )


def make_parcel(fnr, object_id=1, label=None, uuid=None, geometry=True):
    return ParcelFeature(
        fnr=fnr,
        uuid=uuid or f"uuid-{fnr}",
        label=label or f"Fastighet {fnr}",
        object_id=object_id,
        geometry=(
            {"type": "polygon", "coordinates": [[[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 0.0]]]}
            if geometry
            else None
        ),
        geometry_type="polygon" if geometry else None,
        attributes={"FNR": fnr, "OBJECTID": object_id},
    )


class FakeQueries:
    """Stands in for ArcGISQueryService and records what was asked."""

    def __init__(self, parcels=(), owners=None, failing=(), relationship_error=None):
        self.parcels = list(parcels)
        self.owners = owners or {}
        self.failing = {str(f) for f in failing}
        self.relationship_error = relationship_error
        self.parcel_calls = 0
        self.owner_calls = []
        self.relationship_calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    def _records(self, fnr):
        return [OwnerRecord.from_attributes(a) for a in self.owners.get(str(fnr), [])]

    async def parcels_at_point(self, point, data_source_id, token=None):
        self.parcel_calls += 1
        await asyncio.sleep(0)
        return list(self.parcels)

    async def owners_by_fnr(self, fnr, data_source_id, token=None):
        self.owner_calls.append(str(fnr))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if str(fnr) in self.failing:
                raise QueryError(f"owner layer unavailable for {fnr}")
            return self._records(fnr)
        finally:
            self.in_flight -= 1

    async def owners_by_relationship(
        self, fnrs, property_data_source_id, relationship_id, token=None, gate=None
    ):
        # Object id resolution happens before the relationship query goes out.
        await asyncio.sleep(0)
        if gate is not None:
            gate()
        self.relationship_calls.append((list(fnrs), relationship_id))
        if self.relationship_error is not None:
            raise self.relationship_error
        return {str(f): self._records(f) for f in fnrs if self.owners.get(str(f))}

    async def extent_for_parcels(self, fnrs, data_source_id, token=None):
        return {"type": "extent", "fnrs": sorted(str(f) for f in fnrs)}


@pytest.fixture
def registry():
    return DataSourceRegistry.from_mapping({"parcels": PARCEL_LAYER_URL, "owners": OWNER_LAYER_URL})


@pytest.fixture
def config():
    return PipelineConfig(
        property_data_source_id="parcels",
        owner_data_source_id="owners",
        max_results=5,
    )


@pytest.fixture
def fake_queries():
    return FakeQueries


@pytest.fixture
def parcel_factory():
    return make_parcel
