# Prometheus metrics for the OSM graph importer

from prometheus_client import Counter, Histogram, generate_latest

from .logging import get_logger

logger = get_logger(__name__)

# ===== Entity metrics =====
osm_entities_created_total = Counter(
    "osm_entities_created_total",
    "Total graph entities created during import",
    ["kind"],
)

osm_missing_references_total = Counter(
    "osm_missing_references_total",
    "Total unresolved references and rejected records absorbed during import",
    ["category"],
)

osm_import_records_total = Counter(
    "osm_import_records_total",
    "Total input records seen by the importer",
    ["kind", "outcome"],
)

# ===== Transaction metrics =====
osm_batches_committed_total = Counter(
    "osm_batches_committed_total",
    "Total write batches committed to the graph store",
)

osm_batch_commit_duration_seconds = Histogram(
    "osm_batch_commit_duration_seconds",
    "Graph store commit duration in seconds",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)


def get_metrics() -> bytes:
    """Render all registered metrics in the Prometheus text format."""
    return generate_latest()
