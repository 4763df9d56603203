"""
Transactional graph writer.

The production ``EntityBuilder``. Writes go into one open store transaction
which is committed every ``commit_interval`` entity creations, or earlier once
``max_pending_operations`` writes of any kind have accumulated. Each commit:

1. adds the dataset counters accumulated since the previous commit onto the
   dataset entity (inside the committing transaction),
2. commits and opens a fresh transaction (the generation increments),
3. re-acquires every long-lived handle: dataset root, users root, the way and
   relation chain tails and the cached changeset/user.

Keyed entities are re-acquired through their external id, the rest through
their store identity. Every primitive refreshes the handles it is given, so a
handle from an earlier generation is never dereferenced.

Provenance lookups exploit stream locality: the current changeset and user
each sit in a ``SingleSlotCache``; points for a way are looked up first among
the points already linked to the way's changeset, then in the id index.
"""

import time
from typing import Any, Dict, Optional

from osmgraph.ingestion.builder import DatasetConflictError, EntityBuilder
from osmgraph.ingestion.geometry import GeometryRecord
from osmgraph.ingestion.run_stats import (
    LOOKUP_CHANGESET,
    LOOKUP_NODE_INDEX,
    MISSING_CHANGESET,
    MISSING_USER,
    ImportRunStats,
)
from osmgraph.ingestion.tag_stats import TagStatsCollector
from osmgraph.neo.schema import KEY_PROPERTIES, OSMRelation
from osmgraph.neo.store import INCOMING, OUTGOING, EntityHandle, GraphStore, StaleHandleError
from osmgraph.shared.config import RECOMMENDED_MIN_COMMIT_INTERVAL, ImporterConfig
from osmgraph.shared.observability import get_logger

logger = get_logger(__name__)

REFERENCE_ROOT_NAME = "osm_root"


class SingleSlotCache:
    """
    Remembers the entity of the most recently seen external id.

    Consecutive records of an extract usually share changeset and user, so one
    slot is enough; a miss always falls back to the id index.
    """

    def __init__(self, name: str):
        self.name = name
        self.key: Any = None
        self.handle: Optional[EntityHandle] = None
        self.hits = 0
        self.misses = 0

    def get(self, key: Any) -> Optional[EntityHandle]:
        if key is not None and key == self.key and self.handle is not None:
            self.hits += 1
            return self.handle
        self.misses += 1
        return None

    def put(self, key: Any, handle: EntityHandle) -> None:
        self.key = key
        self.handle = handle

    def clear(self) -> None:
        self.key = None
        self.handle = None

    def refresh(self, builder: EntityBuilder) -> None:
        if self.handle is not None:
            self.handle = builder.refresh(self.handle)


class TransactionalGraphWriter(EntityBuilder):
    def __init__(
        self,
        store: GraphStore,
        commit_interval: int = 5000,
        max_pending_operations: Optional[int] = None,
        stats: Optional[ImportRunStats] = None,
        tag_stats: Optional[TagStatsCollector] = None,
    ):
        super().__init__(stats=stats, tag_stats=tag_stats)
        if commit_interval < 1:
            raise ValueError("commit_interval must be >= 1")
        if commit_interval < RECOMMENDED_MIN_COMMIT_INTERVAL:
            logger.warning(
                "short_commit_interval",
                commit_interval=commit_interval,
                note="expect bad insert performance",
            )
        if max_pending_operations is not None and max_pending_operations < 1:
            raise ValueError("max_pending_operations must be >= 1 when set")

        self.store = store
        self.commit_interval = commit_interval
        self.max_pending_operations = max_pending_operations
        self.tx = store.begin_transaction()
        self.users_root: Optional[EntityHandle] = None
        self.changesets = SingleSlotCache("changeset")
        self.users = SingleSlotCache("user")

        self._created_since_commit = 0
        self._operations_since_commit = 0
        self._changeset_points: Dict[Any, EntityHandle] = {}
        self._changeset_points_key: Optional[tuple] = None

    @classmethod
    def from_config(
        cls,
        store: GraphStore,
        config: ImporterConfig,
        stats: Optional[ImportRunStats] = None,
    ) -> "TransactionalGraphWriter":
        stats = stats or ImportRunStats.start_new(
            max_logged_misses=config.max_logged_misses,
            progress_log_seconds=config.progress_log_seconds,
        )
        return cls(
            store,
            commit_interval=config.commit_interval,
            max_pending_operations=config.max_pending_operations,
            stats=stats,
        )

    @property
    def generation(self) -> int:
        return self.tx.generation

    # ---- batching --------------------------------------------------------

    def _after_write(self, created: bool = False) -> None:
        self._operations_since_commit += 1
        if created:
            self._created_since_commit += 1
        if self._created_since_commit >= self.commit_interval or (
            self.max_pending_operations is not None
            and self._operations_since_commit >= self.max_pending_operations
        ):
            self._renew()

    def _commit(self) -> None:
        self._flush_counts()
        started = time.monotonic()
        self.tx.commit()
        duration = time.monotonic() - started
        self.stats.record_commit(duration)
        logger.info(
            "batch_committed",
            generation=self.tx.generation,
            created=self._created_since_commit,
            operations=self._operations_since_commit,
            duration_seconds=round(duration, 4),
        )
        self._created_since_commit = 0
        self._operations_since_commit = 0

    def _renew(self) -> None:
        """Commit the open batch and continue in a fresh transaction."""
        self._commit()
        self.tx = self.store.begin_transaction()
        self.dataset = self.refresh(self.dataset) if self.dataset else None
        self.users_root = self.refresh(self.users_root) if self.users_root else None
        self.previous_way = self.refresh(self.previous_way) if self.previous_way else None
        self.previous_relation = (
            self.refresh(self.previous_relation) if self.previous_relation else None
        )
        self.changesets.refresh(self)
        self.users.refresh(self)
        self._changeset_points.clear()
        self._changeset_points_key = None

    def _flush_counts(self) -> None:
        if self.dataset is None:
            return
        counts = self._take_pending_counts()
        if not counts:
            return
        dataset = self.refresh(self.dataset)
        current = self.tx.get_properties(dataset)
        self.tx.set_properties(
            dataset,
            {name: int(current.get(name, 0)) + n for name, n in counts.items()},
        )

    # ---- primitives ------------------------------------------------------

    def refresh(self, handle: EntityHandle) -> EntityHandle:
        if handle.generation == self.generation:
            return handle
        fresh = None
        key = KEY_PROPERTIES.get(handle.kind)
        if key is not None and handle.external_id is not None:
            fresh = self.tx.find_node(handle.kind, key, handle.external_id)
        if fresh is None:
            fresh = self.tx.node_by_id(handle.kind, handle.node_id)
        if fresh is None:
            raise StaleHandleError(
                f"{handle.kind} {handle.external_id or handle.node_id!r} "
                f"no longer exists in generation {self.generation}"
            )
        return fresh

    def create_entity(
        self,
        kind: str,
        properties: Dict[str, Any],
        dedup_key: Optional[str] = None,
    ) -> EntityHandle:
        if dedup_key is not None:
            existing = self.tx.find_node(kind, dedup_key, properties.get(dedup_key))
            if existing is not None:
                return existing
        handle = self.tx.create_node(kind, properties)
        self.stats.record_created(kind)
        self._after_write(created=True)
        return self.refresh(handle)

    def link(
        self,
        start: EntityHandle,
        end: EntityHandle,
        edge_type: OSMRelation,
        edge_props: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.tx.create_relationship(
            self.refresh(start), self.refresh(end), edge_type, edge_props
        )
        self._after_write()

    def set_properties(self, handle: EntityHandle, properties: Dict[str, Any]) -> None:
        self.tx.set_properties(self.refresh(handle), properties)
        self._after_write()

    def properties(self, handle: EntityHandle) -> Dict[str, Any]:
        return self.tx.get_properties(self.refresh(handle))

    def resolve_by_external_id(self, kind: str, external_id: Any) -> Optional[EntityHandle]:
        key = KEY_PROPERTIES.get(kind)
        if key is None:
            raise ValueError(f"{kind!r} entities have no external id")
        return self.tx.find_node(kind, key, external_id)

    def geometry_of(self, handle: EntityHandle) -> Optional[GeometryRecord]:
        for neighbor in self.tx.neighbors(self.refresh(handle), OSMRelation.GEOM, OUTGOING):
            return GeometryRecord.from_properties(neighbor.node_properties)
        return None

    # ---- provenance ------------------------------------------------------

    def user_for(self, props: Dict[str, Any]) -> Optional[EntityHandle]:
        raw_uid = props.pop("uid", None)
        name = props.pop("user", None)
        try:
            uid = int(raw_uid)
        except (TypeError, ValueError):
            uid = None
        if uid is None or name is None:
            self.users.clear()
            self.stats.record_anomaly(MISSING_USER, uid=raw_uid, user=name)
            return None

        cached = self.users.get(uid)
        if cached is not None:
            return self.refresh(cached)

        user = self.resolve_by_external_id("user", uid)
        if user is None:
            user_props: Dict[str, Any] = {"uid": uid, "name": name}
            if props.get("timestamp") is not None:
                user_props["timestamp"] = props["timestamp"]
            user = self.create_entity("user", user_props)
            self.count("userCount")
            self.link(self._users_root(), user, OSMRelation.OSM_USER)
            user = self.refresh(user)
        self.users.put(uid, user)
        return user

    def _users_root(self) -> EntityHandle:
        if self.users_root is None:
            dataset = self.refresh(self._require_dataset())
            existing = self.tx.neighbors(dataset, OSMRelation.USERS, OUTGOING)
            if existing:
                self.users_root = existing[0].node
            else:
                root = self.create_entity("users", {})
                self.link(self._require_dataset(), root, OSMRelation.USERS)
                self.users_root = self.refresh(root)
        return self.refresh(self.users_root)

    def changeset_for(
        self, props: Dict[str, Any], user: Optional[EntityHandle]
    ) -> Optional[EntityHandle]:
        raw = props.pop("changeset", None)
        try:
            changeset_id = int(raw)
        except (TypeError, ValueError):
            self.changesets.clear()
            self.stats.record_anomaly(MISSING_CHANGESET, changeset=raw)
            return None

        cached = self.changesets.get(changeset_id)
        if cached is not None:
            return self.refresh(cached)

        changeset = self.resolve_by_external_id("changeset", changeset_id)
        if changeset is None:
            changeset_props: Dict[str, Any] = {"changeset": changeset_id}
            if props.get("timestamp") is not None:
                changeset_props["timestamp"] = props["timestamp"]
            changeset = self.create_entity("changeset", changeset_props)
            self.count("changesetCount")
            if user is not None:
                self.link(changeset, user, OSMRelation.USER)
            changeset = self.refresh(changeset)
        self.changesets.put(changeset_id, changeset)
        return changeset

    def point_for_way(
        self, osm_id: int, changeset: Optional[EntityHandle]
    ) -> Optional[EntityHandle]:
        if changeset is not None:
            point = self._points_of_changeset(changeset).get(osm_id)
            if point is not None:
                self.stats.record_lookup(LOOKUP_CHANGESET)
                return self.refresh(point)
        point = self.resolve_by_external_id("node", osm_id)
        if point is not None:
            self.stats.record_lookup(LOOKUP_NODE_INDEX)
        return point

    def _points_of_changeset(self, changeset: EntityHandle) -> Dict[Any, EntityHandle]:
        key = (changeset.node_id, self.generation)
        if key != self._changeset_points_key:
            self._changeset_points = {
                neighbor.node.external_id: neighbor.node
                for neighbor in self.tx.neighbors(
                    self.refresh(changeset), OSMRelation.CHANGESET, INCOMING
                )
                if neighbor.node.kind == "node" and neighbor.node.external_id is not None
            }
            self._changeset_points_key = key
        return self._changeset_points

    # ---- dataset lifecycle -----------------------------------------------

    def begin_dataset(self, name: str, source: Optional[str] = None) -> EntityHandle:
        """
        Get or create the dataset ``name`` under the ``osm_root`` reference.

        Raises:
            DatasetConflictError: a dataset of that name exists with another source
        """
        reference = self.create_entity(
            "reference", {"name": REFERENCE_ROOT_NAME}, dedup_key="name"
        )
        dataset = self.resolve_by_external_id("dataset", name)
        if dataset is not None:
            existing_source = self.tx.get_properties(dataset).get("source")
            if existing_source != source:
                self.abort()
                raise DatasetConflictError(
                    f"Dataset {name!r} is already bound to source {existing_source!r}, "
                    f"refusing to import {source!r} into it"
                )
            logger.info("dataset_reused", dataset=name, source=source)
        else:
            dataset_props: Dict[str, Any] = {"name": name, "type": "osm"}
            if source is not None:
                dataset_props["source"] = source
            dataset = self.create_entity("dataset", dataset_props)
            self.link(reference, dataset, OSMRelation.OSM)
            logger.info("dataset_created", dataset=name, source=source)
        self.dataset = self.refresh(dataset)
        self.stats.dataset = name
        return self.dataset

    def add_bounds(self, props: Dict[str, Any]) -> EntityHandle:
        bbox = self.create_entity("bbox", props)
        self.link(self._require_dataset(), bbox, OSMRelation.BBOX)
        return self.refresh(bbox)

    def finish(self) -> None:
        """Flush the dataset counters and commit the final batch."""
        self._commit()
        logger.info(
            "import_finished",
            dataset=self.stats.dataset,
            commits=self.stats.commits,
            changeset_cache_hits=self.changesets.hits,
            user_cache_hits=self.users.hits,
        )
        self.tag_stats.describe()

    def abort(self) -> None:
        """Roll back the open batch; the last commit stays the recovery point."""
        if self.tx.closed:
            return
        self.tx.rollback()
        self._take_pending_counts()
        logger.warning(
            "import_batch_rolled_back",
            dataset=self.stats.dataset,
            generation=self.generation,
            discarded_operations=self._operations_since_commit,
        )
