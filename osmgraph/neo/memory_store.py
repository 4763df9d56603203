"""
In-process graph store.

Keeps committed nodes and relationships in dictionaries and buffers every write
of an open transaction until commit, so a rolled back or abandoned batch
leaves no trace. Key properties of keyed kinds are indexed the way the Neo4j
schema indexes them (unique per kind).

Used for dry runs of an import and by the test-suite; it enforces the same
handle-generation contract as the Neo4j store.
"""

import itertools
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from osmgraph.neo.schema import KEY_PROPERTIES, label_for
from osmgraph.neo.store import (
    BOTH,
    INCOMING,
    OUTGOING,
    EntityHandle,
    GraphStore,
    GraphStoreError,
    GraphTransaction,
    Neighbor,
)

IndexKey = Tuple[str, str, Any]


@dataclass
class _Node:
    kind: str
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class _Relationship:
    rel_type: str
    start: int
    end: int
    properties: Dict[str, Any] = field(default_factory=dict)


class MemoryGraphStore(GraphStore):
    """Dictionary-backed graph with transactional writes."""

    def __init__(self):
        self._nodes: Dict[int, _Node] = {}
        self._relationships: List[_Relationship] = []
        self._outgoing: Dict[int, List[int]] = {}
        self._incoming: Dict[int, List[int]] = {}
        self._index: Dict[IndexKey, int] = {}
        self._node_ids = itertools.count(1)
        self._generations = itertools.count(1)
        self._lock = threading.RLock()
        self.commits = 0

    def begin_transaction(self) -> "MemoryTransaction":
        with self._lock:
            return MemoryTransaction(self, next(self._generations))

    def _allocate_id(self) -> int:
        with self._lock:
            return next(self._node_ids)

    def _apply(
        self,
        nodes: Dict[int, _Node],
        updates: Dict[int, Dict[str, Any]],
        relationships: List[_Relationship],
        index: Dict[IndexKey, int],
    ) -> None:
        with self._lock:
            for key, node_id in index.items():
                existing = self._index.get(key)
                if existing is not None and existing != node_id:
                    kind, prop, value = key
                    raise GraphStoreError(
                        f"Unique constraint violated: {label_for(kind)}.{prop} = {value!r}"
                    )
            self._nodes.update(nodes)
            for node_id, props in updates.items():
                self._nodes[node_id].properties.update(props)
            for rel in relationships:
                position = len(self._relationships)
                self._relationships.append(rel)
                self._outgoing.setdefault(rel.start, []).append(position)
                self._incoming.setdefault(rel.end, []).append(position)
            self._index.update(index)
            self.commits += 1

    # ---- inspection helpers (committed state only) -----------------------

    def node_count(self, kind: Optional[str] = None) -> int:
        with self._lock:
            if kind is None:
                return len(self._nodes)
            return sum(1 for node in self._nodes.values() if node.kind == kind)

    def relationship_count(self, rel_type: Optional[str] = None) -> int:
        with self._lock:
            if rel_type is None:
                return len(self._relationships)
            name = getattr(rel_type, "value", rel_type)
            return sum(1 for rel in self._relationships if rel.rel_type == name)

    def nodes(self, kind: str) -> List[Tuple[int, Dict[str, Any]]]:
        with self._lock:
            return [
                (node_id, dict(node.properties))
                for node_id, node in self._nodes.items()
                if node.kind == kind
            ]


class MemoryTransaction(GraphTransaction):
    """Buffers writes until commit; reads see committed state plus own writes."""

    def __init__(self, store: MemoryGraphStore, generation: int):
        super().__init__(generation)
        self._store = store
        self._new_nodes: Dict[int, _Node] = {}
        self._updates: Dict[int, Dict[str, Any]] = {}
        self._new_relationships: List[_Relationship] = []
        self._new_index: Dict[IndexKey, int] = {}

    def _do_commit(self) -> None:
        self._store._apply(
            self._new_nodes, self._updates, self._new_relationships, self._new_index
        )

    def _do_rollback(self) -> None:
        self._new_nodes.clear()
        self._updates.clear()
        self._new_relationships.clear()
        self._new_index.clear()

    def _lookup(self, node_id: Any) -> Optional[_Node]:
        node = self._new_nodes.get(node_id)
        if node is not None:
            return node
        committed = self._store._nodes.get(node_id)
        if committed is None:
            return None
        pending = self._updates.get(node_id)
        if not pending:
            return committed
        return _Node(committed.kind, {**committed.properties, **pending})

    def _create_node(self, kind: str, properties: Dict[str, Any]) -> EntityHandle:
        label_for(kind)
        node_id = self._store._allocate_id()
        self._new_nodes[node_id] = _Node(kind, properties)
        key = KEY_PROPERTIES.get(kind)
        if key is not None and properties.get(key) is not None:
            index_key = (kind, key, properties[key])
            if index_key in self._new_index or index_key in self._store._index:
                raise GraphStoreError(
                    f"Unique constraint violated: {label_for(kind)}.{key} = {properties[key]!r}"
                )
            self._new_index[index_key] = node_id
        return self._handle(kind, node_id, properties)

    def _set_properties(self, handle: EntityHandle, properties: Dict[str, Any]) -> None:
        if handle.node_id in self._new_nodes:
            self._new_nodes[handle.node_id].properties.update(properties)
        elif handle.node_id in self._store._nodes:
            self._updates.setdefault(handle.node_id, {}).update(properties)
        else:
            raise GraphStoreError(f"Node {handle.node_id!r} does not exist")

    def _get_properties(self, handle: EntityHandle) -> Dict[str, Any]:
        node = self._lookup(handle.node_id)
        if node is None:
            raise GraphStoreError(f"Node {handle.node_id!r} does not exist")
        return dict(node.properties)

    def _create_relationship(
        self,
        start: EntityHandle,
        end: EntityHandle,
        rel_type: str,
        properties: Dict[str, Any],
    ) -> None:
        if self._lookup(start.node_id) is None or self._lookup(end.node_id) is None:
            raise GraphStoreError(
                f"Cannot link missing nodes {start.node_id!r} -[{rel_type}]-> {end.node_id!r}"
            )
        self._new_relationships.append(
            _Relationship(rel_type, start.node_id, end.node_id, properties)
        )

    def _find_node(self, kind: str, key: str, value: Any) -> Optional[EntityHandle]:
        if KEY_PROPERTIES.get(kind) == key:
            node_id = self._new_index.get((kind, key, value))
            if node_id is None:
                node_id = self._store._index.get((kind, key, value))
            if node_id is None:
                return None
            return self._handle(kind, node_id, self._lookup(node_id).properties)
        for node_id in itertools.chain(list(self._store._nodes), list(self._new_nodes)):
            node = self._lookup(node_id)
            if node.kind == kind and node.properties.get(key) == value:
                return self._handle(kind, node_id, node.properties)
        return None

    def _node_by_id(self, kind: str, node_id: Any) -> Optional[EntityHandle]:
        node = self._lookup(node_id)
        if node is None or node.kind != kind:
            return None
        return self._handle(kind, node_id, node.properties)

    def _relationships_of(self, node_id: Any, direction: str) -> Iterator[_Relationship]:
        committed = self._store._relationships
        if direction in (OUTGOING, BOTH):
            for position in self._store._outgoing.get(node_id, ()):
                yield committed[position]
        if direction in (INCOMING, BOTH):
            for position in self._store._incoming.get(node_id, ()):
                yield committed[position]
        for rel in self._new_relationships:
            if direction in (OUTGOING, BOTH) and rel.start == node_id:
                yield rel
            elif direction in (INCOMING, BOTH) and rel.end == node_id:
                yield rel

    def _neighbors(
        self, handle: EntityHandle, rel_type: str, direction: str
    ) -> List[Neighbor]:
        result = []
        for rel in self._relationships_of(handle.node_id, direction):
            if rel.rel_type != rel_type:
                continue
            outgoing = rel.start == handle.node_id
            other_id = rel.end if outgoing else rel.start
            other = self._lookup(other_id)
            if other is None:
                continue
            result.append(
                Neighbor(
                    rel_type=rel_type,
                    node=self._handle(other.kind, other_id, other.properties),
                    outgoing=outgoing,
                    properties=dict(rel.properties),
                    node_properties=dict(other.properties),
                )
            )
        return result
