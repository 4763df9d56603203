"""
Read-side traversal over an imported OSM graph.

Ways are reconstructed by walking their proxy chain: ``FIRST_NODE`` to the
first proxy, then ``NEXT`` to the next unvisited proxy in either direction
(one-way roads tagged ``oneway=-1`` store their chain reversed), resolving
each proxy's ``NODE``. Walks stop quietly at the end of a chain or where a
chain is broken; readers never raise on partial data.
"""

import math
from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from osmgraph.ingestion.builder import DATASET_COUNTERS, coordinate_of
from osmgraph.ingestion.geometry import GeometryRecord
from osmgraph.neo.schema import KEY_PROPERTIES, WAY_ID_PROPERTY, OSMRelation
from osmgraph.neo.store import BOTH, INCOMING, OUTGOING, EntityHandle, GraphTransaction, Neighbor
from osmgraph.shared.observability import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class WayPoint:
    point: EntityHandle
    coordinate: Tuple[float, float]  # (lon, lat)


class WayPoints:
    """
    Points of one way in way order.

    Iterable any number of times; every iteration walks the stored chain
    again.
    """

    def __init__(self, reconstructor: "GraphReconstructor", way: EntityHandle):
        self._reconstructor = reconstructor
        self.way = way

    def __iter__(self) -> Iterator[WayPoint]:
        return self._reconstructor._walk_way(self.way)

    def coordinates(self) -> List[Tuple[float, float]]:
        return [wp.coordinate for wp in self]


class GraphReconstructor:
    def __init__(self, tx: GraphTransaction):
        self.tx = tx

    def _first(
        self, handle: EntityHandle, rel: OSMRelation, direction: str = OUTGOING
    ) -> Optional[Neighbor]:
        neighbors = self.tx.neighbors(handle, rel, direction)
        return neighbors[0] if neighbors else None

    # ---- ways --------------------------------------------------------------

    def way_points(self, way: EntityHandle) -> WayPoints:
        return WayPoints(self, way)

    def _walk_way(self, way: EntityHandle) -> Iterator[WayPoint]:
        first = self._first(way, OSMRelation.FIRST_NODE)
        if first is None:
            return
        proxy: Optional[EntityHandle] = first.node
        visited: Set[Any] = set()
        while proxy is not None:
            visited.add(proxy.node_id)
            point = self._first(proxy, OSMRelation.NODE)
            if point is not None:
                coordinate = coordinate_of(point.node_properties)
                if coordinate is not None:
                    yield WayPoint(point.node, coordinate)
            proxy = next(
                (
                    n.node
                    for n in self.tx.neighbors(proxy, OSMRelation.NEXT, BOTH)
                    if n.node.kind == "proxy" and n.node.node_id not in visited
                ),
                None,
            )

    def point_at(
        self, way: EntityHandle, lon: float, lat: float, tolerance: float = 1e-9
    ) -> Optional[WayPoint]:
        """First point of ``way`` at the given coordinate."""
        for way_point in self.way_points(way):
            x, y = way_point.coordinate
            if math.isclose(x, lon, abs_tol=tolerance) and math.isclose(
                y, lat, abs_tol=tolerance
            ):
                return way_point
        return None

    def way_from(self, entity: EntityHandle) -> Optional[EntityHandle]:
        """
        Find a way containing ``entity`` (a point, proxy, geometry or way).

        Walks backwards over incoming ``NODE``, ``NEXT`` between proxies,
        incoming ``FIRST_NODE`` and incoming ``GEOM`` edges, and stops at the
        first entity that carries a way id. For a point shared by several
        ways the first way reached is returned.
        """
        if WAY_ID_PROPERTY in self.tx.get_properties(entity):
            return entity
        frontier = deque([entity])
        visited: Set[Any] = {entity.node_id}
        while frontier:
            current = frontier.popleft()
            for neighbor in self._backwards(current):
                candidate = neighbor.node
                if candidate.node_id in visited:
                    continue
                if WAY_ID_PROPERTY in neighbor.node_properties:
                    return candidate
                visited.add(candidate.node_id)
                frontier.append(candidate)
        return None

    def _backwards(self, handle: EntityHandle) -> Iterator[Neighbor]:
        yield from self.tx.neighbors(handle, OSMRelation.NODE, INCOMING)
        if handle.kind == "proxy":
            yield from self.tx.neighbors(handle, OSMRelation.FIRST_NODE, INCOMING)
            for neighbor in self.tx.neighbors(handle, OSMRelation.NEXT, BOTH):
                if neighbor.node.kind == "proxy":
                    yield neighbor
        yield from self.tx.neighbors(handle, OSMRelation.GEOM, INCOMING)

    # ---- lookups -------------------------------------------------------------

    def find(self, kind: str, external_id: Any) -> Optional[EntityHandle]:
        key = KEY_PROPERTIES.get(kind)
        if key is None:
            raise ValueError(f"{kind!r} entities have no external id")
        return self.tx.find_node(kind, key, external_id)

    def dataset(self, name: str) -> Optional[EntityHandle]:
        return self.find("dataset", name)

    def _chain(self, dataset: EntityHandle, head: OSMRelation, kind: str) -> Iterator[EntityHandle]:
        first = self._first(dataset, head)
        current = first.node if first is not None else None
        visited: Set[Any] = set()
        while current is not None and current.node_id not in visited:
            visited.add(current.node_id)
            yield current
            current = next(
                (
                    n.node
                    for n in self.tx.neighbors(current, OSMRelation.NEXT, OUTGOING)
                    if n.node.kind == kind
                ),
                None,
            )

    def ways(self, dataset: EntityHandle) -> Iterator[EntityHandle]:
        """Ways of a dataset in import order."""
        return self._chain(dataset, OSMRelation.WAYS, "way")

    def relations(self, dataset: EntityHandle) -> Iterator[EntityHandle]:
        """Relations of a dataset in import order."""
        return self._chain(dataset, OSMRelation.RELATIONS, "relation")

    def users(self, dataset: EntityHandle) -> List[EntityHandle]:
        root = self._first(dataset, OSMRelation.USERS)
        if root is None:
            return []
        return [n.node for n in self.tx.neighbors(root.node, OSMRelation.OSM_USER, OUTGOING)]

    def changesets(self, dataset: EntityHandle) -> List[EntityHandle]:
        """Changesets attributed to the dataset's users."""
        result: List[EntityHandle] = []
        seen: Set[Any] = set()
        for user in self.users(dataset):
            for neighbor in self.tx.neighbors(user, OSMRelation.USER, INCOMING):
                if neighbor.node.node_id not in seen:
                    seen.add(neighbor.node.node_id)
                    result.append(neighbor.node)
        return result

    def changeset_of(self, entity: EntityHandle) -> Optional[EntityHandle]:
        neighbor = self._first(entity, OSMRelation.CHANGESET)
        return neighbor.node if neighbor is not None else None

    def user_of(self, entity: EntityHandle) -> Optional[EntityHandle]:
        changeset = entity if entity.kind == "changeset" else self.changeset_of(entity)
        if changeset is None:
            return None
        neighbor = self._first(changeset, OSMRelation.USER)
        return neighbor.node if neighbor is not None else None

    def geometry_of(self, entity: EntityHandle) -> Optional[GeometryRecord]:
        neighbor = self._first(entity, OSMRelation.GEOM)
        if neighbor is None:
            return None
        return GeometryRecord.from_properties(neighbor.node_properties)

    def tags_of(self, entity: EntityHandle) -> Dict[str, Any]:
        neighbor = self._first(entity, OSMRelation.TAGS)
        return dict(neighbor.node_properties) if neighbor is not None else {}

    def members_of(self, relation: EntityHandle) -> List[Tuple[EntityHandle, Optional[str]]]:
        """Members of a relation with their role, in insertion order."""
        return [
            (n.node, n.properties.get("role"))
            for n in self.tx.neighbors(relation, OSMRelation.MEMBER, OUTGOING)
        ]

    def dataset_counts(self, dataset: EntityHandle) -> Dict[str, int]:
        props = self.tx.get_properties(dataset)
        return {name: int(props.get(name, 0)) for name in DATASET_COUNTERS}
