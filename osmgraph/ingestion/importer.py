"""
OSM import driver.

Feeds an ordered stream of ``AttributeRecord`` values through an
``EntityBuilder``: decodes attributes, applies the optional bounding filter
to points, dispatches by record kind and finishes (or aborts) the import.

Per-record anomalies never stop the import. Malformed records are skipped and
counted; anything raised by the builder or the store aborts the open batch
and propagates.
"""

from typing import Any, Callable, Dict, Iterable, Optional

from osmgraph.ingestion.builder import EntityBuilder
from osmgraph.ingestion.geometry import Envelope
from osmgraph.ingestion.graph_writer import TransactionalGraphWriter
from osmgraph.ingestion.records import (
    AttributeRecord,
    MalformedRecordError,
    decode_attributes,
    parse_ref,
)
from osmgraph.ingestion.run_stats import INVALID_TIMESTAMP, MALFORMED_RECORD, ImportSummary
from osmgraph.neo.store import GraphStore
from osmgraph.shared.config import Config, ImporterConfig, get_config
from osmgraph.shared.connections import get_connection_manager
from osmgraph.shared.observability import get_logger, set_correlation_id

logger = get_logger(__name__)

IMPORTED = "imported"
FILTERED = "filtered"
MALFORMED = "malformed"


class OSMImporter:
    def __init__(self, config: Optional[ImporterConfig] = None):
        self.config = config or get_config().importer
        envelope = self.config.filter_envelope
        self.filter_envelope: Optional[Envelope] = (
            Envelope(envelope.min_lon, envelope.max_lon, envelope.min_lat, envelope.max_lat)
            if envelope is not None
            else None
        )
        self._handlers: Dict[str, Callable[[EntityBuilder, AttributeRecord], str]] = {
            "osm": self._import_header,
            "bounds": self._import_bounds,
            "node": self._import_node,
            "way": self._import_way,
            "relation": self._import_relation,
        }

    def import_records(
        self,
        records: Iterable[AttributeRecord],
        builder: EntityBuilder,
        dataset_name: Optional[str] = None,
        source: Optional[str] = None,
    ) -> ImportSummary:
        """
        Import a record stream into ``builder``.

        Returns:
            The run summary (entity counts, anomaly counts, tag and geometry
            statistics)

        Raises:
            DatasetConflictError: the dataset name belongs to another source
        """
        name = dataset_name or self.config.dataset_name
        source = source if source is not None else self.config.dataset_source
        set_correlation_id(builder.stats.run_id)
        logger.info(
            "import_started",
            run_id=builder.stats.run_id,
            dataset=name,
            source=source,
            filtered=self.filter_envelope is not None,
            all_points=self.config.all_points,
        )

        try:
            builder.begin_dataset(name, source)
            for record in records:
                self._dispatch(builder, record)
            builder.finish()
        except Exception as e:
            logger.error(
                "import_failed",
                run_id=builder.stats.run_id,
                dataset=name,
                error=str(e),
                error_type=type(e).__name__,
            )
            builder.abort()
            builder.stats.emit_summary(builder.tag_stats, status="aborted")
            raise

        return builder.stats.emit_summary(builder.tag_stats)

    def _dispatch(self, builder: EntityBuilder, record: AttributeRecord) -> None:
        try:
            outcome = self._handlers[record.kind](builder, record)
        except MalformedRecordError as e:
            builder.stats.record_anomaly(
                MALFORMED_RECORD,
                kind=record.kind,
                id=record.attributes.get("id"),
                error=str(e),
            )
            outcome = MALFORMED
        builder.stats.record_record(record.kind, outcome)

    def _decode(
        self, builder: EntityBuilder, kind: Optional[str], record: AttributeRecord
    ) -> Dict[str, Any]:
        props = decode_attributes(kind, record.attributes)
        if "timestamp" in record.attributes and "timestamp" not in props:
            builder.stats.record_anomaly(
                INVALID_TIMESTAMP,
                kind=record.kind,
                id=record.attributes.get("id"),
                timestamp=record.attributes["timestamp"],
            )
        if kind is not None and f"{kind}_osm_id" not in props:
            raise MalformedRecordError(f"{kind} record has no id")
        return props

    def _import_header(self, builder: EntityBuilder, record: AttributeRecord) -> str:
        builder.set_dataset_properties(self._decode(builder, None, record))
        return IMPORTED

    def _import_bounds(self, builder: EntityBuilder, record: AttributeRecord) -> str:
        props = self._decode(builder, None, record)
        props.setdefault("name", "bbox")
        builder.add_bounds(props)
        return IMPORTED

    def _import_node(self, builder: EntityBuilder, record: AttributeRecord) -> str:
        props = self._decode(builder, "node", record)
        if "lat" not in props or "lon" not in props:
            raise MalformedRecordError("node record has no coordinate")
        if self.filter_envelope is not None and not self.filter_envelope.contains(
            props["lon"], props["lat"]
        ):
            return FILTERED
        builder.build_point(props, record.tags, all_points=self.config.all_points)
        return IMPORTED

    def _import_way(self, builder: EntityBuilder, record: AttributeRecord) -> str:
        props = self._decode(builder, "way", record)
        refs = [parse_ref(ref) for ref in record.node_refs]
        builder.build_way(props, refs, record.tags)
        return IMPORTED

    def _import_relation(self, builder: EntityBuilder, record: AttributeRecord) -> str:
        props = self._decode(builder, "relation", record)
        builder.build_relation(props, record.members, record.tags)
        return IMPORTED


def import_extract(
    records: Iterable[AttributeRecord],
    config: Optional[Config] = None,
    store: Optional[GraphStore] = None,
) -> ImportSummary:
    """
    Import a record stream with the configured store and importer settings.

    ``store`` defaults to the one selected by ``store.backend``.
    """
    config = config or get_config()
    if store is None:
        store = get_connection_manager().get_graph_store(config)
    writer = TransactionalGraphWriter.from_config(store, config.importer)
    return OSMImporter(config.importer).import_records(records, writer)
