# Neo4j schema bootstrap for the OSM graph
# Constraints and indexes live in scripts/neo4j/create_osm_schema.cypher;
# this module parses and applies them idempotently.

from pathlib import Path
from typing import Any, Dict, Optional

from neo4j import Driver

from .observability import get_logger

logger = get_logger(__name__)

SCHEMA_SCRIPT_PATH = (
    Path(__file__).parent.parent.parent / "scripts" / "neo4j" / "create_osm_schema.cypher"
)


def parse_cypher_statements(script: str) -> list[str]:
    """
    Parse Cypher script handling multi-line statements and comments.

    Properly handles:
    - Multi-line statements (accumulated until semicolon)
    - Comment lines (// and -- style)
    - Empty lines and whitespace

    Args:
        script: Cypher script text

    Returns:
        List of executable Cypher statements
    """
    statements = []
    current_stmt = []

    for line in script.split("\n"):
        stripped = line.strip()

        if not stripped or stripped.startswith("//") or stripped.startswith("--"):
            continue

        current_stmt.append(line)

        if stripped.endswith(";"):
            stmt = "\n".join(current_stmt).strip()
            if stmt:
                statements.append(stmt)
            current_stmt = []

    return statements


def create_schema(
    driver: Driver,
    database: Optional[str] = None,
    script_path: Optional[Path] = None,
) -> Dict[str, Any]:
    """
    Apply the OSM constraints and indexes.

    Idempotent; statements reporting an existing equivalent object count as
    executed.

    Returns:
        Dict with status, per-type counts and any statement errors
    """
    results: Dict[str, Any] = {
        "success": False,
        "total_statements": 0,
        "executed": 0,
        "constraints_created": 0,
        "indexes_created": 0,
        "errors": [],
    }

    path = script_path or SCHEMA_SCRIPT_PATH
    if not path.exists():
        raise FileNotFoundError(f"OSM schema script not found: {path}")

    statements = parse_cypher_statements(path.read_text())
    results["total_statements"] = len(statements)
    logger.info("osm_schema_parsed", statements=len(statements), path=str(path))

    session_kwargs = {"database": database} if database else {}
    with driver.session(**session_kwargs) as session:
        for idx, stmt in enumerate(statements, 1):
            try:
                session.run(stmt).consume()
            except Exception as e:
                error_msg = str(e)
                if "already exists" in error_msg.lower() or "equivalent" in error_msg.lower():
                    logger.debug("osm_schema_statement_exists", statement=idx)
                    results["executed"] += 1
                else:
                    logger.warning(
                        "osm_schema_statement_failed",
                        statement=idx,
                        error=error_msg[:200],
                    )
                    results["errors"].append({"statement_num": idx, "error": error_msg[:200]})
                continue

            results["executed"] += 1
            if "CREATE CONSTRAINT" in stmt:
                results["constraints_created"] += 1
            elif "CREATE INDEX" in stmt:
                results["indexes_created"] += 1

        results["success"] = results["executed"] == results["total_statements"]
        results["verification"] = verify_schema(session)

    logger.info(
        "osm_schema_applied",
        success=results["success"],
        executed=results["executed"],
        total=results["total_statements"],
        constraints=results["constraints_created"],
        indexes=results["indexes_created"],
        errors=len(results["errors"]),
    )
    return results


def verify_schema(session) -> Dict[str, Any]:
    """List the constraints and indexes currently defined."""
    verification: Dict[str, Any] = {"constraints": [], "indexes": []}

    verification["constraints"] = [
        {"name": record["name"], "type": record["type"]}
        for record in session.run("SHOW CONSTRAINTS")
    ]
    verification["indexes"] = [
        {
            "name": record["name"],
            "type": record["type"],
            "labels": record["labelsOrTypes"],
            "properties": record["properties"],
        }
        for record in session.run(
            "SHOW INDEXES YIELD name, type, labelsOrTypes, properties WHERE type <> 'LOOKUP'"
        )
    ]
    return verification
