"""
Geometry metadata computed during import.

No geometry objects are built here: ways and relations only carry a geometry
kind, a vertex count and a bounding box, which is what the ``OSMGeometry``
vertices persist (``gtype``, ``vertices``, ``bbox``).
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Sequence

from pyproj import Geod

_GEOD = Geod(ellps="WGS84")


class GeometryKind(IntEnum):
    INVALID = -1
    GEOMETRY = 0  # unresolved; point or multi-point depending on vertex count
    POINT = 1
    LINE = 2
    POLYGON = 3
    MULTI_POINT = 4
    MULTI_LINE = 5

    @property
    def label(self) -> str:
        return self.name.lower().replace("_", "-")


# Member geometry kinds a relation can be assembled from.
SUPPORTED_MEMBER_KINDS = frozenset({GeometryKind.LINE, GeometryKind.POLYGON})


@dataclass(frozen=True)
class Envelope:
    """Axis-aligned lon/lat bounding box."""

    min_x: float
    max_x: float
    min_y: float
    max_y: float

    @classmethod
    def of_point(cls, lon: float, lat: float) -> "Envelope":
        return cls(lon, lon, lat, lat)

    @classmethod
    def from_bbox(cls, bbox: Sequence[float]) -> "Envelope":
        """Inverse of ``as_bbox``: ``[min_x, max_x, min_y, max_y]``."""
        min_x, max_x, min_y, max_y = (float(v) for v in bbox)
        return cls(min_x, max_x, min_y, max_y)

    def expanded(self, lon: float, lat: float) -> "Envelope":
        return Envelope(
            min(self.min_x, lon),
            max(self.max_x, lon),
            min(self.min_y, lat),
            max(self.max_y, lat),
        )

    def merged(self, other: "Envelope") -> "Envelope":
        return Envelope(
            min(self.min_x, other.min_x),
            max(self.max_x, other.max_x),
            min(self.min_y, other.min_y),
            max(self.max_y, other.max_y),
        )

    def contains(self, lon: float, lat: float) -> bool:
        return self.min_x <= lon <= self.max_x and self.min_y <= lat <= self.max_y

    def as_bbox(self) -> List[float]:
        return [self.min_x, self.max_x, self.min_y, self.max_y]


def expand(envelope: Optional[Envelope], lon: float, lat: float) -> Envelope:
    """Grow an optional envelope by one coordinate."""
    if envelope is None:
        return Envelope.of_point(lon, lat)
    return envelope.expanded(lon, lat)


@dataclass(frozen=True)
class GeometryRecord:
    """Geometry metadata as stored on an ``OSMGeometry`` vertex."""

    kind: GeometryKind
    vertices: int
    bbox: Optional[Envelope]

    @classmethod
    def from_properties(cls, props: Dict[str, Any]) -> "GeometryRecord":
        try:
            kind = GeometryKind(int(props.get("gtype", GeometryKind.INVALID)))
        except ValueError:
            kind = GeometryKind.INVALID
        bbox = props.get("bbox")
        return cls(
            kind=kind,
            vertices=int(props.get("vertices", 0)),
            bbox=Envelope.from_bbox(bbox) if bbox is not None else None,
        )

    def to_properties(self) -> Dict[str, Any]:
        props: Dict[str, Any] = {"gtype": int(self.kind), "vertices": self.vertices}
        if self.bbox is not None:
            props["bbox"] = self.bbox.as_bbox()
        return props


def resolve_kind(kind: GeometryKind, vertices: int) -> GeometryKind:
    """Resolve the generic ``GEOMETRY`` kind by vertex count."""
    if kind == GeometryKind.GEOMETRY:
        return GeometryKind.MULTI_POINT if vertices > 1 else GeometryKind.POINT
    return kind


def classify_way(surviving: int, closed: bool) -> GeometryKind:
    """Geometry kind of a way with ``surviving`` distinct consecutive points."""
    if surviving < 2:
        return GeometryKind.POINT
    if closed:
        return GeometryKind.POLYGON
    return GeometryKind.LINE


class GeometryAccumulator:
    """
    Incremental bounding box and kind of a relation under construction.

    Starts at ``MULTI_LINE``. Point members only grow the box. Any other member
    is merged from its stored geometry and downgrades the kind to ``INVALID``
    unless it is a line or polygon. An ``outer`` role makes the relation a
    polygon, and a polygon is never downgraded afterwards.
    """

    def __init__(self, kind: GeometryKind = GeometryKind.MULTI_LINE):
        self.kind = kind
        self.bbox: Optional[Envelope] = None
        self.vertices = 0

    def add_point(self, lon: float, lat: float) -> None:
        self.bbox = expand(self.bbox, lon, lat)
        self.vertices += 1

    def add_member_geometry(self, geometry: Optional[GeometryRecord]) -> None:
        if geometry is None or geometry.kind not in SUPPORTED_MEMBER_KINDS:
            self._downgrade()
        if geometry is None:
            return
        if geometry.bbox is not None:
            self.bbox = (
                geometry.bbox if self.bbox is None else self.bbox.merged(geometry.bbox)
            )
        self.vertices += geometry.vertices

    def mark_outer(self) -> None:
        self.kind = GeometryKind.POLYGON

    def _downgrade(self) -> None:
        if self.kind != GeometryKind.POLYGON:
            self.kind = GeometryKind.INVALID

    @property
    def valid(self) -> bool:
        return self.kind > GeometryKind.GEOMETRY


class RoadDirection(str, Enum):
    FORWARD = "FORWARD"
    BACKWARD = "BACKWARD"
    BOTH = "BOTH"


def road_direction(tags: Dict[str, Any]) -> RoadDirection:
    """Travel direction from a way's ``oneway`` tag."""
    oneway = tags.get("oneway")
    if oneway is not None:
        value = str(oneway)
        if value == "-1":
            return RoadDirection.BACKWARD
        if value == "1" or value.lower() in ("yes", "true"):
            return RoadDirection.FORWARD
    return RoadDirection.BOTH


def distance(lon1: float, lat1: float, lon2: float, lat2: float) -> float:
    """Geodesic distance in metres on the WGS84 ellipsoid."""
    _, _, metres = _GEOD.inv(lon1, lat1, lon2, lat2)
    return metres
