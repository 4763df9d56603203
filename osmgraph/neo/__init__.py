"""
Graph store layer: schema tables, the transaction seam and its Neo4j and
in-memory implementations.
"""

from .memory_store import MemoryGraphStore
from .neo4j_store import Neo4jGraphStore
from .schema import KEY_PROPERTIES, NODE_LABELS, OSMRelation
from .store import (
    EntityHandle,
    GraphStore,
    GraphStoreError,
    GraphTransaction,
    Neighbor,
    StaleHandleError,
    TransactionClosedError,
)

__all__ = [
    "EntityHandle",
    "GraphStore",
    "GraphStoreError",
    "GraphTransaction",
    "KEY_PROPERTIES",
    "MemoryGraphStore",
    "Neighbor",
    "Neo4jGraphStore",
    "NODE_LABELS",
    "OSMRelation",
    "StaleHandleError",
    "TransactionClosedError",
]
