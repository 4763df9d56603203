"""
Import run statistics accumulator.

Collects everything a single import run reports: entities created per kind,
absorbed anomalies per category (dangling references, unparsable provenance,
malformed records, repeated ids), where way points were resolved from,
records seen per kind and outcome, and commit counts. Anomalies are logged
individually only up to ``max_logged_misses`` per category; the totals are
always reported in the summary.

Usage:
    stats = ImportRunStats.start_new(max_logged_misses=10)
    stats.record_created("node")
    stats.record_anomaly(MISSING_POINT, ref=999, way_osm_id=7)
    summary = stats.emit_summary(tag_stats)
"""

import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from osmgraph.ingestion.tag_stats import TagStatsCollector
from osmgraph.shared.observability.metrics import (
    osm_batch_commit_duration_seconds,
    osm_batches_committed_total,
    osm_entities_created_total,
    osm_import_records_total,
    osm_missing_references_total,
)

logger = structlog.get_logger(__name__)

# Anomaly categories
MISSING_POINT = "missing_point"
MISSING_MEMBER = "missing_member"
MISSING_USER = "missing_user"
MISSING_CHANGESET = "missing_changeset"
INVALID_TIMESTAMP = "invalid_timestamp"
MALFORMED_RECORD = "malformed_record"
DUPLICATE_POINT = "duplicate_point"
DUPLICATE_WAY = "duplicate_way"
DUPLICATE_RELATION = "duplicate_relation"

_ANOMALY_EVENTS = {
    MISSING_POINT: "missing_point_reference",
    MISSING_MEMBER: "missing_member_reference",
    MISSING_USER: "missing_user",
    MISSING_CHANGESET: "missing_changeset",
    INVALID_TIMESTAMP: "invalid_timestamp",
    MALFORMED_RECORD: "malformed_record_skipped",
    DUPLICATE_POINT: "duplicate_point",
    DUPLICATE_WAY: "duplicate_way",
    DUPLICATE_RELATION: "duplicate_relation",
}

# Point lookup sources
LOOKUP_CHANGESET = "changeset"
LOOKUP_NODE_INDEX = "node-index"


@dataclass
class ImportSummary:
    """Outcome of one import run."""

    run_id: str
    dataset: Optional[str]
    status: str
    duration_seconds: float
    created: Dict[str, int]
    anomalies: Dict[str, int]
    point_lookups: Dict[str, int]
    records: Dict[str, Dict[str, int]]
    commits: int
    significant_keys: Dict[str, List[str]]
    geometry_counts: Dict[str, int]

    def count(self, kind: str) -> int:
        return self.created.get(kind, 0)

    def anomaly(self, category: str) -> int:
        return self.anomalies.get(category, 0)


@dataclass
class ImportRunStats:
    run_id: str
    start_time: float
    max_logged_misses: int = 10
    progress_log_seconds: float = 1.432
    dataset: Optional[str] = None
    end_time: Optional[float] = None
    status: str = "running"

    created: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    anomalies: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    point_lookups: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    records: Dict[str, Dict[str, int]] = field(
        default_factory=lambda: defaultdict(lambda: defaultdict(int))
    )
    commits: int = 0

    _last_progress: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def start_new(
        cls, max_logged_misses: int = 10, progress_log_seconds: float = 1.432
    ) -> "ImportRunStats":
        return cls(
            run_id=f"import_{datetime.now().strftime('%Y%m%d_%H%M%S')}",
            start_time=time.monotonic(),
            max_logged_misses=max_logged_misses,
            progress_log_seconds=progress_log_seconds,
        )

    def record_created(self, kind: str) -> None:
        self.created[kind] += 1
        osm_entities_created_total.labels(kind=kind).inc()

    def record_anomaly(self, category: str, **context: Any) -> bool:
        """
        Count an absorbed anomaly; log it while under the per-category cap.

        Returns:
            True if the occurrence was logged
        """
        self.anomalies[category] += 1
        osm_missing_references_total.labels(category=category).inc()
        occurrence = self.anomalies[category]
        if occurrence > self.max_logged_misses:
            return False
        logger.warning(
            _ANOMALY_EVENTS.get(category, category),
            category=category,
            occurrence=occurrence,
            **context,
        )
        if occurrence == self.max_logged_misses:
            logger.warning(
                "anomaly_logging_suppressed", category=category, cap=self.max_logged_misses
            )
        return True

    def record_lookup(self, source: str) -> None:
        self.point_lookups[source] += 1
        self._maybe_log_progress(
            "point_lookups",
            found=sum(self.point_lookups.values()),
            sources=dict(self.point_lookups),
        )

    def record_record(self, kind: str, outcome: str) -> None:
        self.records[kind][outcome] += 1
        osm_import_records_total.labels(kind=kind, outcome=outcome).inc()
        self._maybe_log_progress(kind, processed=dict(self.records[kind]))

    def record_commit(self, duration_seconds: float) -> None:
        self.commits += 1
        osm_batches_committed_total.inc()
        osm_batch_commit_duration_seconds.observe(duration_seconds)

    def _maybe_log_progress(self, stream: str, **fields: Any) -> None:
        now = time.monotonic()
        last = self._last_progress.get(stream)
        if last is None:
            self._last_progress[stream] = now
            return
        if now - last >= self.progress_log_seconds:
            self._last_progress[stream] = now
            logger.info(
                "import_progress",
                stream=stream,
                elapsed_seconds=round(now - self.start_time, 1),
                **fields,
            )

    def finalize(
        self, tag_stats: Optional[TagStatsCollector] = None, status: str = "completed"
    ) -> ImportSummary:
        self.end_time = time.monotonic()
        self.status = status
        tag_stats = tag_stats or TagStatsCollector()
        return ImportSummary(
            run_id=self.run_id,
            dataset=self.dataset,
            status=status,
            duration_seconds=round(self.end_time - self.start_time, 2),
            created=dict(self.created),
            anomalies=dict(self.anomalies),
            point_lookups=dict(self.point_lookups),
            records={kind: dict(outcomes) for kind, outcomes in self.records.items()},
            commits=self.commits,
            significant_keys={
                kind: tag_stats.significant_keys(kind) for kind in tag_stats.kinds()
            },
            geometry_counts=tag_stats.geometry_counts(),
        )

    def emit_summary(
        self, tag_stats: Optional[TagStatsCollector] = None, status: str = "completed"
    ) -> ImportSummary:
        """
        Emit the run summary as a structured log event.

        Returns:
            The summary that was logged
        """
        summary = self.finalize(tag_stats, status)

        logger.info(
            "import_run_summary",
            run_id=summary.run_id,
            dataset=summary.dataset,
            status=summary.status,
            duration_seconds=summary.duration_seconds,
            created=summary.created,
            commits=summary.commits,
            point_lookups=summary.point_lookups,
            geometry_counts=summary.geometry_counts,
        )

        if summary.anomalies:
            logger.warning(
                "import_run_had_anomalies",
                run_id=summary.run_id,
                anomaly_count=sum(summary.anomalies.values()),
                anomalies=summary.anomalies,
            )

        return summary
