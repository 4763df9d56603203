# Connection management for the Neo4j graph store

from typing import Optional

from neo4j import Driver, GraphDatabase

from osmgraph.neo.memory_store import MemoryGraphStore
from osmgraph.neo.neo4j_store import Neo4jGraphStore
from osmgraph.neo.store import GraphStore

from .config import Config, Settings, get_config, get_settings
from .observability import get_logger

logger = get_logger(__name__)


class ConnectionManager:
    """Owns the Neo4j driver and builds graph stores on top of it."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._neo4j_driver: Optional[Driver] = None

    def get_neo4j_driver(self) -> Driver:
        """Get or create Neo4j driver"""
        if self._neo4j_driver is None:
            logger.info(
                "Initializing Neo4j driver",
                uri=self.settings.neo4j_uri,
                user=self.settings.neo4j_user,
            )
            self._neo4j_driver = GraphDatabase.driver(
                self.settings.neo4j_uri,
                auth=(self.settings.neo4j_user, self.settings.neo4j_password),
                max_connection_lifetime=3600,
                max_connection_pool_size=50,
                connection_acquisition_timeout=60,
                connection_timeout=1.5,
            )
            self._neo4j_driver.verify_connectivity()
            logger.info("Neo4j driver initialized successfully")
        return self._neo4j_driver

    def get_graph_store(self, config: Optional[Config] = None) -> GraphStore:
        """Build the store selected by ``store.backend``."""
        config = config or get_config()
        if config.store.backend == "memory":
            logger.info("Using in-memory graph store")
            return MemoryGraphStore()
        return Neo4jGraphStore(self.get_neo4j_driver(), database=config.store.database)

    def close(self) -> None:
        """Close Neo4j driver"""
        if self._neo4j_driver:
            logger.info("Closing Neo4j driver")
            self._neo4j_driver.close()
            self._neo4j_driver = None


# Global connection manager instance
_connection_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    """Get the global ConnectionManager instance"""
    global _connection_manager
    if _connection_manager is None:
        _connection_manager = ConnectionManager()
    return _connection_manager


def close_connections() -> None:
    """Close the global ConnectionManager"""
    global _connection_manager
    if _connection_manager:
        _connection_manager.close()
        _connection_manager = None
