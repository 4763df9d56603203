"""
Entity build protocol.

``EntityBuilder`` turns decoded OSM elements into graph entities through a
small set of storage-agnostic primitives (create, link, resolve, refresh,
provenance lookup). The three composite operations ``build_point``,
``build_way`` and ``build_relation`` are implemented once here; a concrete
builder only supplies the primitives and decides where and when writes become
durable (see ``TransactionalGraphWriter``).

Any primitive may cross a commit boundary, after which previously obtained
handles belong to an older generation. Composite operations therefore keep
their cross-call state in ``WayInProgress`` / ``RelationInProgress`` values
and revalidate them before each step.
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, Optional, Tuple

from osmgraph.ingestion.geometry import (
    Envelope,
    GeometryAccumulator,
    GeometryKind,
    GeometryRecord,
    RoadDirection,
    classify_way,
    distance,
    expand,
    resolve_kind,
    road_direction,
)
from osmgraph.ingestion.records import MalformedRecordError, parse_ref
from osmgraph.ingestion.run_stats import (
    DUPLICATE_POINT,
    DUPLICATE_RELATION,
    DUPLICATE_WAY,
    LOOKUP_NODE_INDEX,
    MISSING_MEMBER,
    MISSING_POINT,
    ImportRunStats,
)
from osmgraph.ingestion.tag_stats import TagStatsCollector
from osmgraph.neo.schema import KEY_PROPERTIES, MEMBER_KINDS, OSMRelation
from osmgraph.neo.store import EntityHandle
from osmgraph.shared.observability import get_logger

logger = get_logger(__name__)

# Free-text attribution, never persisted and never counted as a real tag.
REDUNDANT_TAG_KEYS = ("created_by",)

# Counters accumulated on the dataset entity.
DATASET_COUNTERS = (
    "nodeCount",
    "poiCount",
    "wayCount",
    "relationCount",
    "changesetCount",
    "userCount",
)

Coordinate = Tuple[float, float]


class DatasetConflictError(RuntimeError):
    """The dataset name is already bound to a different dataset root."""


def strip_redundant_tags(tags: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in tags.items() if k not in REDUNDANT_TAG_KEYS}


def coordinate_of(props: Dict[str, Any]) -> Optional[Coordinate]:
    """``(lon, lat)`` of a point's properties, or None if incomplete."""
    lon, lat = props.get("lon"), props.get("lat")
    if lon is None or lat is None:
        return None
    return float(lon), float(lat)


def _refreshed(builder: "EntityBuilder", handle: Optional[EntityHandle]):
    return builder.refresh(handle) if handle is not None else None


@dataclass(frozen=True)
class WayInProgress:
    """State of one way between point steps."""

    way: EntityHandle
    direction: RoadDirection
    generation: int
    changeset: Optional[EntityHandle] = None
    first_point: Optional[EntityHandle] = None
    previous_point: Optional[EntityHandle] = None
    previous_proxy: Optional[EntityHandle] = None
    previous_coordinate: Optional[Coordinate] = None
    bbox: Optional[Envelope] = None
    proxies: int = 0

    def revalidate(self, builder: "EntityBuilder") -> "WayInProgress":
        if self.generation == builder.generation:
            return self
        return replace(
            self,
            way=builder.refresh(self.way),
            changeset=_refreshed(builder, self.changeset),
            first_point=_refreshed(builder, self.first_point),
            previous_point=_refreshed(builder, self.previous_point),
            previous_proxy=_refreshed(builder, self.previous_proxy),
            generation=builder.generation,
        )

    def advanced(
        self, point: EntityHandle, proxy: EntityHandle, coordinate: Coordinate
    ) -> "WayInProgress":
        return replace(
            self,
            first_point=self.first_point or point,
            previous_point=point,
            previous_proxy=proxy,
            previous_coordinate=coordinate,
            bbox=expand(self.bbox, *coordinate),
            proxies=self.proxies + 1,
        )

    @property
    def closed(self) -> bool:
        return self.first_point is not None and self.first_point.same_entity(
            self.previous_point
        )

    @property
    def kind(self) -> GeometryKind:
        return classify_way(self.proxies, self.closed)


@dataclass(frozen=True)
class RelationInProgress:
    """State of one relation between member steps."""

    relation: EntityHandle
    generation: int
    previous_member: Optional[EntityHandle] = None

    def revalidate(self, builder: "EntityBuilder") -> "RelationInProgress":
        if self.generation == builder.generation:
            return self
        return replace(
            self,
            relation=builder.refresh(self.relation),
            previous_member=_refreshed(builder, self.previous_member),
            generation=builder.generation,
        )

    def advanced(self, member: EntityHandle) -> "RelationInProgress":
        return replace(self, previous_member=member)


class EntityBuilder(ABC):
    """Builds OSM entities in document order."""

    def __init__(
        self,
        stats: Optional[ImportRunStats] = None,
        tag_stats: Optional[TagStatsCollector] = None,
    ):
        self.stats = stats or ImportRunStats.start_new()
        self.tag_stats = tag_stats or TagStatsCollector()
        self.dataset: Optional[EntityHandle] = None
        self.previous_way: Optional[EntityHandle] = None
        self.previous_relation: Optional[EntityHandle] = None
        self._pending_counts: Dict[str, int] = defaultdict(int)

    # ---- primitives ------------------------------------------------------

    @property
    @abstractmethod
    def generation(self) -> int:
        """Generation of the handles this builder currently hands out."""

    @abstractmethod
    def create_entity(
        self,
        kind: str,
        properties: Dict[str, Any],
        dedup_key: Optional[str] = None,
    ) -> EntityHandle:
        """Create an entity; with ``dedup_key``, return the existing one instead."""

    @abstractmethod
    def link(
        self,
        start: EntityHandle,
        end: EntityHandle,
        edge_type: OSMRelation,
        edge_props: Optional[Dict[str, Any]] = None,
    ) -> None: ...

    @abstractmethod
    def resolve_by_external_id(self, kind: str, external_id: Any) -> Optional[EntityHandle]: ...

    @abstractmethod
    def refresh(self, handle: EntityHandle) -> EntityHandle:
        """Re-acquire a handle in the current generation."""

    @abstractmethod
    def properties(self, handle: EntityHandle) -> Dict[str, Any]: ...

    @abstractmethod
    def set_properties(self, handle: EntityHandle, properties: Dict[str, Any]) -> None: ...

    @abstractmethod
    def geometry_of(self, handle: EntityHandle) -> Optional[GeometryRecord]: ...

    @abstractmethod
    def user_for(self, props: Dict[str, Any]) -> Optional[EntityHandle]:
        """Pop ``uid``/``user`` from ``props`` and return the user entity."""

    @abstractmethod
    def changeset_for(
        self, props: Dict[str, Any], user: Optional[EntityHandle]
    ) -> Optional[EntityHandle]:
        """Pop ``changeset`` from ``props`` and return the changeset entity."""

    @abstractmethod
    def begin_dataset(self, name: str, source: Optional[str] = None) -> EntityHandle: ...

    @abstractmethod
    def add_bounds(self, props: Dict[str, Any]) -> EntityHandle: ...

    @abstractmethod
    def finish(self) -> None: ...

    @abstractmethod
    def abort(self) -> None: ...

    # ---- storage-agnostic helpers ----------------------------------------

    def point_for_way(
        self, osm_id: int, changeset: Optional[EntityHandle]
    ) -> Optional[EntityHandle]:
        point = self.resolve_by_external_id("node", osm_id)
        if point is not None:
            self.stats.record_lookup(LOOKUP_NODE_INDEX)
        return point

    def set_dataset_properties(self, props: Dict[str, Any]) -> None:
        props = {k: v for k, v in props.items() if k not in ("name", "type")}
        if props:
            self.set_properties(self._require_dataset(), props)

    def add_tags(
        self, handle: EntityHandle, tags: Dict[str, Any], kind: str
    ) -> Optional[EntityHandle]:
        tags = strip_redundant_tags(tags)
        if not tags:
            return None
        self.tag_stats.add(kind, tags.keys())
        tag_set = self.create_entity("tags", tags)
        self.link(handle, tag_set, OSMRelation.TAGS)
        return tag_set

    def add_geometry(
        self,
        handle: EntityHandle,
        kind: GeometryKind,
        bbox: Optional[Envelope],
        vertex_count: int,
    ) -> Optional[EntityHandle]:
        if bbox is None or vertex_count <= 0:
            return None
        kind = resolve_kind(GeometryKind(kind), vertex_count)
        record = GeometryRecord(kind=kind, vertices=vertex_count, bbox=bbox)
        geometry = self.create_entity("geometry", record.to_properties())
        self.link(handle, geometry, OSMRelation.GEOM)
        self.tag_stats.add_geometry(kind)
        return geometry

    def count(self, counter: str, amount: int = 1) -> None:
        self._pending_counts[counter] += amount

    def _require_dataset(self) -> EntityHandle:
        if self.dataset is None:
            raise RuntimeError("begin_dataset() must be called before building entities")
        return self.dataset

    def _chain(self, kind: str, handle: EntityHandle) -> None:
        """Append a way or relation to its dataset-rooted chain."""
        if kind == "way":
            previous, head = self.previous_way, OSMRelation.WAYS
        else:
            previous, head = self.previous_relation, OSMRelation.RELATIONS
        if previous is None:
            self.link(self._require_dataset(), handle, head)
        else:
            self.link(previous, handle, OSMRelation.NEXT)
        if kind == "way":
            self.previous_way = handle
        else:
            self.previous_relation = handle

    def _existing(
        self, kind: str, props: Dict[str, Any], category: str
    ) -> Optional[EntityHandle]:
        """Return the entity already imported under this id, counting the repeat."""
        key = KEY_PROPERTIES[kind]
        osm_id = props.get(key)
        existing = self.resolve_by_external_id(kind, osm_id)
        if existing is not None:
            self.stats.record_anomaly(category, **{key: osm_id})
        return existing

    def _provenance(self, props: Dict[str, Any]) -> Optional[EntityHandle]:
        user = self.user_for(props)
        return self.changeset_for(props, user)

    # ---- composite operations --------------------------------------------

    def build_point(
        self,
        props: Dict[str, Any],
        tags: Optional[Dict[str, Any]] = None,
        all_points: bool = False,
    ) -> EntityHandle:
        """
        Create a point unless its id was already imported.

        A point that still has tags after stripping redundant keys (or every
        point, with ``all_points``) also gets a single-vertex point geometry
        and counts as a POI.
        """
        self._require_dataset()
        props = dict(props)
        existing = self._existing("node", props, DUPLICATE_POINT)
        if existing is not None:
            return existing

        changeset = self._provenance(props)
        point = self.create_entity("node", props)
        if changeset is not None:
            self.link(point, changeset, OSMRelation.CHANGESET)
        self.count("nodeCount")

        tags = strip_redundant_tags(tags or {})
        coordinate = coordinate_of(props)
        if (tags or all_points) and coordinate is not None:
            self.add_geometry(point, GeometryKind.POINT, Envelope.of_point(*coordinate), 1)
            self.count("poiCount")
        self.add_tags(point, tags, "node")
        return self.refresh(point)

    def build_way(
        self,
        props: Dict[str, Any],
        point_refs: Iterable[int],
        tags: Optional[Dict[str, Any]] = None,
    ) -> EntityHandle:
        """
        Create a way and its proxy chain.

        A way id seen before returns the existing way and counts a duplicate.

        Missing points are counted and skipped; a point equal to the
        previously resolved one is skipped without allocating a proxy. The
        geometry kind is ``point`` below two proxies, ``polygon`` when the
        first and last resolved points coincide and ``line`` otherwise.
        """
        self._require_dataset()
        props = dict(props)
        existing = self._existing("way", props, DUPLICATE_WAY)
        if existing is not None:
            return existing

        tags = dict(tags or {})
        direction = road_direction(tags)
        if "highway" in tags:
            props["oneway"] = direction.value
            props["highway"] = tags["highway"]
        if tags.get("name") is not None:
            props["name"] = tags["name"]

        changeset = self._provenance(props)
        way = self.create_entity("way", props)
        if changeset is not None:
            self.link(way, changeset, OSMRelation.CHANGESET)
        self._chain("way", way)
        self.add_tags(way, tags, "way")

        state = WayInProgress(
            way=self.refresh(way),
            direction=direction,
            generation=self.generation,
            changeset=_refreshed(self, changeset),
        )
        for ref in point_refs:
            state = self._add_way_point(state, ref)

        state = state.revalidate(self)
        self.add_geometry(state.way, state.kind, state.bbox, state.proxies)
        self.count("wayCount")
        return state.way

    def _add_way_point(self, state: WayInProgress, ref: int) -> WayInProgress:
        state = state.revalidate(self)
        point = self.point_for_way(ref, state.changeset)
        if point is None:
            self.stats.record_anomaly(
                MISSING_POINT, ref=ref, way_osm_id=state.way.external_id
            )
            return state
        if point.same_entity(state.previous_point):
            return state
        coordinate = coordinate_of(self.properties(point))
        if coordinate is None:
            self.stats.record_anomaly(
                MISSING_POINT,
                ref=ref,
                way_osm_id=state.way.external_id,
                reason="no_coordinate",
            )
            return state

        proxy = self.create_entity("proxy", {})
        state = state.revalidate(self)
        point = self.refresh(point)
        self.link(proxy, point, OSMRelation.NODE)
        if state.previous_proxy is None:
            self.link(state.way, proxy, OSMRelation.FIRST_NODE)
        else:
            length = {"length": distance(*state.previous_coordinate, *coordinate)}
            if state.direction == RoadDirection.BACKWARD:
                self.link(proxy, state.previous_proxy, OSMRelation.NEXT, length)
            else:
                self.link(state.previous_proxy, proxy, OSMRelation.NEXT, length)
        return state.advanced(point, proxy, coordinate)

    def build_relation(
        self,
        props: Dict[str, Any],
        members: Iterable[Dict[str, Any]],
        tags: Optional[Dict[str, Any]] = None,
    ) -> EntityHandle:
        """
        Create a relation, link its members and derive its geometry.

        The geometry is attached only when the accumulated kind is valid.
        A relation id seen before returns the existing relation and counts a
        duplicate.
        """
        self._require_dataset()
        props = dict(props)
        existing = self._existing("relation", props, DUPLICATE_RELATION)
        if existing is not None:
            return existing

        tags = dict(tags or {})
        if tags.get("name") is not None:
            props["name"] = tags["name"]

        changeset = self._provenance(props)
        relation = self.create_entity("relation", props)
        if changeset is not None:
            self.link(relation, changeset, OSMRelation.CHANGESET)
        self._chain("relation", relation)
        self.add_tags(relation, tags, "relation")

        geometry = GeometryAccumulator(GeometryKind.MULTI_LINE)
        state = RelationInProgress(relation=self.refresh(relation), generation=self.generation)
        for member in members:
            state = self._add_member(state, member, geometry)

        state = state.revalidate(self)
        if geometry.valid:
            self.add_geometry(state.relation, geometry.kind, geometry.bbox, geometry.vertices)
        self.count("relationCount")
        return state.relation

    def _add_member(
        self,
        state: RelationInProgress,
        member: Dict[str, Any],
        geometry: GeometryAccumulator,
    ) -> RelationInProgress:
        state = state.revalidate(self)
        member_type = member.get("type")
        relation_id = state.relation.external_id

        def missing(reason: str) -> RelationInProgress:
            self.stats.record_anomaly(
                MISSING_MEMBER,
                relation_osm_id=relation_id,
                member=dict(member),
                reason=reason,
            )
            return state

        if member_type not in MEMBER_KINDS:
            return missing("unsupported_type")
        try:
            ref = parse_ref(member.get("ref"))
        except MalformedRecordError:
            return missing("malformed_ref")

        target = self.resolve_by_external_id(member_type, ref)
        if target is None:
            return missing("not_found")
        if target.same_entity(state.previous_member):
            return missing("duplicate")
        if target.same_entity(state.relation):
            return missing("self_reference")

        if member_type == "node":
            coordinate = coordinate_of(self.properties(target))
            if coordinate is not None:
                geometry.add_point(*coordinate)
        else:
            geometry.add_member_geometry(self.geometry_of(target))

        edge_props: Dict[str, Any] = {}
        role = member.get("role")
        if role:
            edge_props["role"] = role
            if role == "outer":
                geometry.mark_outer()
        self.link(state.relation, target, OSMRelation.MEMBER, edge_props)
        return state.advanced(target)

    def pending_counts(self) -> Dict[str, int]:
        return {name: n for name, n in self._pending_counts.items() if n}

    def _take_pending_counts(self) -> Dict[str, int]:
        counts = self.pending_counts()
        self._pending_counts.clear()
        return counts
