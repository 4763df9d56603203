# Shared fixtures: in-memory graph store, writers and record helpers

import os
import sys
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Set test environment
os.environ["ENV"] = "test"
os.environ.setdefault("NEO4J_PASSWORD", "testpassword123")

from osmgraph.ingestion.graph_writer import TransactionalGraphWriter  # noqa: E402
from osmgraph.ingestion.records import AttributeRecord  # noqa: E402
from osmgraph.ingestion.run_stats import ImportRunStats  # noqa: E402
from osmgraph.neo.memory_store import MemoryGraphStore  # noqa: E402
from osmgraph.query.reconstruction import GraphReconstructor  # noqa: E402


@pytest.fixture
def store():
    return MemoryGraphStore()


@pytest.fixture
def make_writer(store):
    """Factory for a writer with an open dataset on the shared store."""

    def _make(commit_interval=1000, max_pending_operations=None, dataset="test", source=None):
        writer = TransactionalGraphWriter(
            store,
            commit_interval=commit_interval,
            max_pending_operations=max_pending_operations,
            stats=ImportRunStats.start_new(max_logged_misses=10),
        )
        writer.begin_dataset(dataset, source)
        return writer

    return _make


@pytest.fixture
def writer(make_writer):
    return make_writer()


@pytest.fixture
def reader(store):
    """Factory for a reconstructor over a fresh read transaction."""
    transactions = []

    def _reader():
        tx = store.begin_transaction()
        transactions.append(tx)
        return GraphReconstructor(tx)

    yield _reader
    for tx in transactions:
        tx.rollback()


@pytest.fixture
def point_props():
    """Decoded point properties with provenance attributes."""

    def _props(osm_id, lon, lat, changeset="100", uid="1", user="mapper"):
        props = {"node_osm_id": osm_id, "lon": float(lon), "lat": float(lat)}
        if changeset is not None:
            props["changeset"] = changeset
        if uid is not None:
            props["uid"] = uid
        if user is not None:
            props["user"] = user
        return props

    return _props


@pytest.fixture
def way_props():
    def _props(osm_id, changeset="100", uid="1", user="mapper"):
        return {"way_osm_id": osm_id, "changeset": changeset, "uid": uid, "user": user}

    return _props


@pytest.fixture
def node_record():
    def _record(osm_id, lon, lat, tags=None, **attributes):
        attrs = {
            "id": str(osm_id),
            "lat": str(lat),
            "lon": str(lon),
            "user": "mapper",
            "uid": "1",
            "changeset": "100",
            "timestamp": "2010-05-15T15:39:57Z",
        }
        attrs.update(attributes)
        return AttributeRecord("node", attrs, tags=dict(tags or {}))

    return _record


@pytest.fixture
def way_record():
    def _record(osm_id, refs, tags=None, **attributes):
        attrs = {"id": str(osm_id), "user": "mapper", "uid": "1", "changeset": "100"}
        attrs.update(attributes)
        return AttributeRecord(
            "way", attrs, tags=dict(tags or {}), node_refs=[str(r) for r in refs]
        )

    return _record
