"""
Tag-key frequency statistics.

Counts how often each tag key is seen per element kind and across all kinds
(the ``all`` bucket), and how many geometries of each kind were produced.
``significant_keys`` filters out long-tail keys: a key is significant when
its count exceeds ``total // (distinct_keys * 20)``.
"""

from collections import Counter
from typing import Dict, Iterable, List

from osmgraph.ingestion.geometry import GeometryKind
from osmgraph.shared.observability import get_logger

logger = get_logger(__name__)

ALL_KINDS = "all"
SIGNIFICANCE_DIVISOR = 20


class TagStats:
    """Key counts for one bucket."""

    def __init__(self, name: str):
        self.name = name
        self.count = 0
        self.keys: Counter = Counter()

    def add(self, key: str) -> int:
        self.count += 1
        self.keys[key] += 1
        return self.keys[key]

    def significant_keys(self) -> List[str]:
        if not self.keys:
            return []
        threshold = self.count // (len(self.keys) * SIGNIFICANCE_DIVISOR)
        return sorted(key for key, n in self.keys.items() if n > threshold)

    def __repr__(self) -> str:
        return f"TagStats[{self.name}]: {self.significant_keys()}"


class TagStatsCollector:
    def __init__(self):
        self._tag_stats: Dict[str, TagStats] = {}
        self._geometry_stats: Counter = Counter()

    def stats_for(self, kind: str) -> TagStats:
        if kind not in self._tag_stats:
            self._tag_stats[kind] = TagStats(kind)
        return self._tag_stats[kind]

    def add(self, kind: str, keys: Iterable[str]) -> int:
        """Count every key for ``kind`` and for the ``all`` bucket."""
        total = 0
        for key in keys:
            self.stats_for(ALL_KINDS).add(key)
            total += self.stats_for(kind).add(key)
        return total

    def significant_keys(self, kind: str = ALL_KINDS) -> List[str]:
        stats = self._tag_stats.get(kind)
        return stats.significant_keys() if stats else []

    def kinds(self) -> List[str]:
        return sorted(self._tag_stats)

    def add_geometry(self, kind: GeometryKind) -> None:
        self._geometry_stats[GeometryKind(kind)] += 1

    def geometry_counts(self) -> Dict[str, int]:
        return {kind.label: n for kind, n in sorted(self._geometry_stats.items())}

    def describe(self) -> None:
        """Log the significant keys per kind and the geometry counts."""
        logger.info(
            "tag_statistics",
            kinds=len(self._tag_stats),
            significant_keys={kind: self.significant_keys(kind) for kind in self.kinds()},
        )
        logger.info(
            "geometry_statistics",
            kinds=len(self._geometry_stats),
            counts=self.geometry_counts(),
        )
