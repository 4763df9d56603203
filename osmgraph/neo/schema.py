"""
Shared graph schema metadata for the OSM import.

Centralizes the entity kinds, their Neo4j labels, the external-id key of each
keyed kind and the relationship-type allow-list. Cypher text is built from
these tables only, so label and relationship names never come from input data.
"""

from enum import Enum


class OSMRelation(str, Enum):
    """Relationship types materialized by the importer."""

    OSM = "OSM"  # reference root -> dataset
    WAYS = "WAYS"  # dataset -> first way
    RELATIONS = "RELATIONS"  # dataset -> first relation
    NEXT = "NEXT"  # way->way, relation->relation, proxy->proxy
    FIRST_NODE = "FIRST_NODE"  # way -> first proxy
    NODE = "NODE"  # proxy -> point
    GEOM = "GEOM"  # entity -> geometry
    TAGS = "TAGS"  # entity -> tag bag
    CHANGESET = "CHANGESET"  # entity -> changeset
    USER = "USER"  # changeset -> user
    USERS = "USERS"  # dataset -> users root
    OSM_USER = "OSM_USER"  # users root -> user
    MEMBER = "MEMBER"  # relation -> member, carries optional role
    BBOX = "BBOX"  # dataset -> bbox record


RELATIONSHIP_TYPES = frozenset(rel.value for rel in OSMRelation)

# Entity kind -> Neo4j label. Keep sorted by kind for readability.
NODE_LABELS = {
    "bbox": "OSMBBox",
    "changeset": "OSMChangeset",
    "dataset": "OSMDataset",
    "geometry": "OSMGeometry",
    "node": "OSMNode",
    "proxy": "OSMWayNode",
    "reference": "ReferenceNode",
    "relation": "OSMRelation",
    "tags": "OSMTags",
    "user": "OSMUser",
    "users": "OSMUsers",
    "way": "OSMWay",
}

KIND_BY_LABEL = {label: kind for kind, label in NODE_LABELS.items()}

# Kinds addressable by a stable external identity. Handles of these kinds are
# re-acquired through the key index after a commit boundary; every other kind
# is re-acquired through its store identity.
KEY_PROPERTIES = {
    "changeset": "changeset",
    "dataset": "name",
    "node": "node_osm_id",
    "reference": "name",
    "relation": "relation_osm_id",
    "user": "uid",
    "way": "way_osm_id",
}

# Relation member types accepted in member lists.
MEMBER_KINDS = frozenset({"node", "way", "relation"})

# Property marking an entity as a way; used by the reverse "which way" walk.
WAY_ID_PROPERTY = KEY_PROPERTIES["way"]


def label_for(kind: str) -> str:
    """Return the Neo4j label of an entity kind, rejecting unknown kinds."""
    try:
        return NODE_LABELS[kind]
    except KeyError:
        raise ValueError(f"Unknown entity kind: {kind!r}") from None


def relationship_type(rel_type) -> str:
    """Normalize an OSMRelation or string to a validated relationship name."""
    name = rel_type.value if isinstance(rel_type, OSMRelation) else str(rel_type)
    if name not in RELATIONSHIP_TYPES:
        raise ValueError(f"Unknown relationship type: {name!r}")
    return name
