"""
Neo4j-backed graph store.

Each ``Neo4jTransaction`` owns one driver session and one explicit transaction
(``session.begin_transaction()``); ``commit``/``rollback`` end both. Entities
are addressed by ``elementId``. Labels and relationship types are interpolated
only from the allow-lists in ``osmgraph.neo.schema``; every value goes through
query parameters.
"""

import re
from typing import Any, Dict, List, Optional

from neo4j import Driver

from osmgraph.neo.schema import KIND_BY_LABEL, label_for, relationship_type
from osmgraph.neo.store import (
    INCOMING,
    OUTGOING,
    EntityHandle,
    GraphStore,
    GraphTransaction,
    Neighbor,
)
from osmgraph.shared.observability import get_logger

logger = get_logger(__name__)

_PROPERTY_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_NEIGHBOR_PATTERNS = {
    OUTGOING: "(n)-[r:{rel}]->(m)",
    INCOMING: "(n)<-[r:{rel}]-(m)",
}


class Neo4jGraphStore(GraphStore):
    """Hands out explicit transactions on a shared neo4j ``Driver``."""

    def __init__(self, driver: Driver, database: Optional[str] = None):
        self.driver = driver
        self.database = database
        self._generation = 0

    def begin_transaction(self) -> "Neo4jTransaction":
        self._generation += 1
        if self.database:
            session = self.driver.session(database=self.database)
        else:
            session = self.driver.session()
        tx = session.begin_transaction()
        logger.debug(
            "neo4j_transaction_started",
            generation=self._generation,
            database=self.database,
        )
        return Neo4jTransaction(session, tx, self._generation)


class Neo4jTransaction(GraphTransaction):
    def __init__(self, session, tx, generation: int):
        super().__init__(generation)
        self._session = session
        self._tx = tx

    def _do_commit(self) -> None:
        try:
            self._tx.commit()
        finally:
            self._session.close()

    def _do_rollback(self) -> None:
        try:
            if not self._tx.closed():
                self._tx.rollback()
        finally:
            self._session.close()

    def _single(self, query: str, **params) -> Optional[Any]:
        return self._tx.run(query, **params).single()

    def _create_node(self, kind: str, properties: Dict[str, Any]) -> EntityHandle:
        query = f"CREATE (n:{label_for(kind)}) SET n = $props RETURN elementId(n) AS id"
        record = self._single(query, props=properties)
        return self._handle(kind, record["id"], properties)

    def _set_properties(self, handle: EntityHandle, properties: Dict[str, Any]) -> None:
        self._tx.run(
            "MATCH (n) WHERE elementId(n) = $id SET n += $props",
            id=handle.node_id,
            props=properties,
        )

    def _get_properties(self, handle: EntityHandle) -> Dict[str, Any]:
        record = self._single(
            "MATCH (n) WHERE elementId(n) = $id RETURN properties(n) AS props",
            id=handle.node_id,
        )
        return dict(record["props"]) if record else {}

    def _create_relationship(
        self,
        start: EntityHandle,
        end: EntityHandle,
        rel_type: str,
        properties: Dict[str, Any],
    ) -> None:
        query = (
            "MATCH (a), (b) WHERE elementId(a) = $a AND elementId(b) = $b "
            f"CREATE (a)-[r:{rel_type}]->(b) SET r = $props"
        )
        self._tx.run(query, a=start.node_id, b=end.node_id, props=properties)

    def _find_node(self, kind: str, key: str, value: Any) -> Optional[EntityHandle]:
        if not _PROPERTY_KEY.match(key):
            raise ValueError(f"Invalid property key: {key!r}")
        query = (
            f"MATCH (n:{label_for(kind)} {{{key}: $value}}) "
            "RETURN elementId(n) AS id, properties(n) AS props LIMIT 1"
        )
        record = self._single(query, value=value)
        if record is None:
            return None
        return self._handle(kind, record["id"], record["props"])

    def _node_by_id(self, kind: str, node_id: Any) -> Optional[EntityHandle]:
        query = (
            f"MATCH (n:{label_for(kind)}) WHERE elementId(n) = $id "
            "RETURN elementId(n) AS id, properties(n) AS props"
        )
        record = self._single(query, id=node_id)
        if record is None:
            return None
        return self._handle(kind, record["id"], record["props"])

    def _neighbors(
        self, handle: EntityHandle, rel_type: str, direction: str
    ) -> List[Neighbor]:
        rel = relationship_type(rel_type)
        directions = (OUTGOING, INCOMING) if direction not in _NEIGHBOR_PATTERNS else (direction,)
        result: List[Neighbor] = []
        for current in directions:
            pattern = _NEIGHBOR_PATTERNS[current].format(rel=rel)
            query = (
                f"MATCH {pattern} WHERE elementId(n) = $id "
                "RETURN elementId(m) AS id, labels(m) AS labels, "
                "properties(m) AS props, properties(r) AS rel_props "
                "ORDER BY id(r)"
            )
            for record in self._tx.run(query, id=handle.node_id):
                kind = _kind_of(record["labels"])
                if kind is None:
                    continue
                result.append(
                    Neighbor(
                        rel_type=rel,
                        node=self._handle(kind, record["id"], record["props"]),
                        outgoing=current == OUTGOING,
                        properties=dict(record["rel_props"] or {}),
                        node_properties=dict(record["props"] or {}),
                    )
                )
        return result


def _kind_of(labels) -> Optional[str]:
    for label in labels:
        kind = KIND_BY_LABEL.get(label)
        if kind is not None:
            return kind
    return None
