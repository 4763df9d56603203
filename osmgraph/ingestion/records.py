"""
Typed attribute records fed to the importer, and attribute decoding.

A record is one element of the extract as produced by an upstream decoder:
its kind (``osm``, ``bounds``, ``node``, ``way`` or ``relation``), its raw
string attributes in document order, and the element's children (tags,
ordered point refs, members).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from osmgraph.shared.observability import get_logger

logger = get_logger(__name__)

RECORD_KINDS = ("osm", "bounds", "node", "way", "relation")

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
_COORDINATE_KEYS = ("lat", "lon")


class MalformedRecordError(ValueError):
    """An attribute that must be numeric could not be parsed."""


@dataclass
class AttributeRecord:
    kind: str
    attributes: Dict[str, str] = field(default_factory=dict)
    tags: Dict[str, str] = field(default_factory=dict)
    node_refs: List[Any] = field(default_factory=list)
    members: List[Dict[str, Any]] = field(default_factory=list)

    def __post_init__(self):
        if self.kind not in RECORD_KINDS:
            raise ValueError(f"Unknown record kind: {self.kind!r}")


def parse_timestamp(value: str) -> Optional[int]:
    """Convert an ISO-8601 UTC timestamp to epoch milliseconds, or None."""
    try:
        parsed = datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except (TypeError, ValueError) as e:
        logger.debug("timestamp_parse_failed", value=value, error=str(e))
        return None
    return int(parsed.timestamp() * 1000)


def decode_attributes(kind: Optional[str], attributes: Dict[str, Any]) -> Dict[str, Any]:
    """
    Decode raw element attributes into graph properties.

    ``id`` becomes ``<kind>_osm_id`` (int) when ``kind`` is given, coordinates
    become floats, ``version`` an int, ``visible`` is kept only when false and
    ``timestamp`` is converted to epoch milliseconds (dropped when it cannot
    be parsed). Everything else is kept as-is.

    Raises:
        MalformedRecordError: non-integer id/version or non-numeric coordinate
    """
    properties: Dict[str, Any] = {}
    for key, value in attributes.items():
        if kind and key == "id":
            properties[f"{kind}_osm_id"] = _as_int(key, value)
        elif key in _COORDINATE_KEYS:
            try:
                properties[key] = float(value)
            except (TypeError, ValueError):
                raise MalformedRecordError(f"{key}={value!r} is not a number") from None
        elif kind and key == "version":
            properties[key] = _as_int(key, value)
        elif key == "visible":
            if str(value).lower() not in ("true", "1"):
                properties[key] = False
        elif key == "timestamp":
            millis = parse_timestamp(value)
            if millis is not None:
                properties[key] = millis
        else:
            properties[key] = value
    return properties


def parse_ref(value: Any) -> int:
    """Parse a point or member reference."""
    return _as_int("ref", value)


def _as_int(key: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MalformedRecordError(f"{key}={value!r} is not an integer") from None
