"""
Graph store seam used by the importer and the read-side traversal.

A store hands out transactions. Entities are addressed through
``EntityHandle`` values that record the transaction generation they were
obtained in; a transaction refuses handles from any other generation, so a
handle that crossed a commit boundary must be re-acquired (see
``TransactionalGraphWriter.refresh``) before it can be used again.

Two implementations exist:

- ``Neo4jGraphStore`` (``osmgraph.neo.neo4j_store``): production store over the
  official neo4j driver.
- ``MemoryGraphStore`` (``osmgraph.neo.memory_store``): in-process store with
  the same commit/rollback semantics, for dry runs and tests.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from osmgraph.neo.schema import KEY_PROPERTIES, relationship_type

OUTGOING = "out"
INCOMING = "in"
BOTH = "both"
DIRECTIONS = (OUTGOING, INCOMING, BOTH)


class GraphStoreError(RuntimeError):
    """Base class for graph store failures."""


class StaleHandleError(GraphStoreError):
    """A handle from an earlier transaction generation was dereferenced."""


class TransactionClosedError(GraphStoreError):
    """An operation was attempted on a committed or rolled back transaction."""


@dataclass(frozen=True)
class EntityHandle:
    """
    Reference to a stored entity.

    ``node_id`` is the store identity (Neo4j element id, or an integer for the
    memory store). ``external_id`` is set for keyed kinds (see
    ``KEY_PROPERTIES``) and is the identity used to re-acquire the entity in a
    later transaction.
    """

    kind: str
    node_id: Any
    generation: int
    external_id: Any = None

    def same_entity(self, other: Optional["EntityHandle"]) -> bool:
        """Identity comparison that ignores the generation."""
        return other is not None and self.node_id == other.node_id


@dataclass
class Neighbor:
    """One relationship seen from a node, with the entity at the other end."""

    rel_type: str
    node: EntityHandle
    outgoing: bool
    properties: Dict[str, Any] = field(default_factory=dict)
    node_properties: Dict[str, Any] = field(default_factory=dict)


class GraphTransaction(ABC):
    """A unit of work against a graph store."""

    def __init__(self, generation: int):
        self.generation = generation
        self._closed = False

    # ---- lifecycle -------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def commit(self) -> None:
        self._ensure_open()
        try:
            self._do_commit()
        finally:
            self._closed = True

    def rollback(self) -> None:
        if self._closed:
            return
        try:
            self._do_rollback()
        finally:
            self._closed = True

    def __enter__(self) -> "GraphTransaction":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._closed:
            self.rollback()

    # ---- handle helpers --------------------------------------------------

    def _ensure_open(self) -> None:
        if self._closed:
            raise TransactionClosedError(
                f"Transaction generation {self.generation} is already closed"
            )

    def _check(self, handle: EntityHandle) -> None:
        self._ensure_open()
        if handle.generation != self.generation:
            raise StaleHandleError(
                f"{handle.kind} handle {handle.node_id!r} belongs to generation "
                f"{handle.generation}, transaction is generation {self.generation}"
            )

    def _handle(
        self, kind: str, node_id: Any, properties: Optional[Dict[str, Any]] = None
    ) -> EntityHandle:
        key = KEY_PROPERTIES.get(kind)
        external_id = properties.get(key) if key and properties else None
        return EntityHandle(
            kind=kind,
            node_id=node_id,
            generation=self.generation,
            external_id=external_id,
        )

    # ---- operations ------------------------------------------------------

    def create_node(self, kind: str, properties: Dict[str, Any]) -> EntityHandle:
        self._ensure_open()
        return self._create_node(kind, dict(properties))

    def set_properties(self, handle: EntityHandle, properties: Dict[str, Any]) -> None:
        self._check(handle)
        if properties:
            self._set_properties(handle, dict(properties))

    def get_properties(self, handle: EntityHandle) -> Dict[str, Any]:
        self._check(handle)
        return self._get_properties(handle)

    def create_relationship(
        self,
        start: EntityHandle,
        end: EntityHandle,
        rel_type,
        properties: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._check(start)
        self._check(end)
        self._create_relationship(
            start, end, relationship_type(rel_type), dict(properties or {})
        )

    def find_node(self, kind: str, key: str, value: Any) -> Optional[EntityHandle]:
        self._ensure_open()
        if value is None:
            return None
        return self._find_node(kind, key, value)

    def node_by_id(self, kind: str, node_id: Any) -> Optional[EntityHandle]:
        self._ensure_open()
        return self._node_by_id(kind, node_id)

    def neighbors(
        self, handle: EntityHandle, rel_type, direction: str = OUTGOING
    ) -> List[Neighbor]:
        self._check(handle)
        if direction not in DIRECTIONS:
            raise ValueError(f"direction must be one of {DIRECTIONS}, got {direction!r}")
        return self._neighbors(handle, relationship_type(rel_type), direction)

    # ---- backend hooks ---------------------------------------------------

    @abstractmethod
    def _do_commit(self) -> None: ...

    @abstractmethod
    def _do_rollback(self) -> None: ...

    @abstractmethod
    def _create_node(self, kind: str, properties: Dict[str, Any]) -> EntityHandle: ...

    @abstractmethod
    def _set_properties(self, handle: EntityHandle, properties: Dict[str, Any]) -> None: ...

    @abstractmethod
    def _get_properties(self, handle: EntityHandle) -> Dict[str, Any]: ...

    @abstractmethod
    def _create_relationship(
        self,
        start: EntityHandle,
        end: EntityHandle,
        rel_type: str,
        properties: Dict[str, Any],
    ) -> None: ...

    @abstractmethod
    def _find_node(self, kind: str, key: str, value: Any) -> Optional[EntityHandle]: ...

    @abstractmethod
    def _node_by_id(self, kind: str, node_id: Any) -> Optional[EntityHandle]: ...

    @abstractmethod
    def _neighbors(
        self, handle: EntityHandle, rel_type: str, direction: str
    ) -> List[Neighbor]: ...


class GraphStore(ABC):
    """Factory of transactions over one graph."""

    @abstractmethod
    def begin_transaction(self) -> GraphTransaction: ...

    def close(self) -> None:
        """Release store resources. Stores without resources do nothing."""
