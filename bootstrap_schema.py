#!/usr/bin/env python3
"""Create the OSM graph constraints and indexes in Neo4j"""

import sys

from osmgraph.shared.config import get_config, get_settings
from osmgraph.shared.connections import close_connections, get_connection_manager
from osmgraph.shared.observability import setup_logging
from osmgraph.shared.schema import create_schema


def main():
    settings = get_settings()
    setup_logging(settings.log_level)
    config = get_config()

    manager = get_connection_manager()
    driver = manager.get_neo4j_driver()

    print("Creating OSM graph schema...")
    print(f"  Database: {config.store.database or '(default)'}")

    try:
        result = create_schema(driver, database=config.store.database)
    finally:
        close_connections()

    if result["success"]:
        print("✓ Schema created successfully")
        print(f"  Constraints: {result['constraints_created']}")
        print(f"  Indexes: {result['indexes_created']}")
    else:
        print("✗ Schema creation failed")
        for error in result["errors"]:
            print(f"  Statement {error['statement_num']}: {error['error']}")
        sys.exit(1)


if __name__ == "__main__":
    main()
