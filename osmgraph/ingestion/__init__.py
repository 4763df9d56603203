"""
OSM ingestion: record decoding, the entity build protocol, the transactional
graph writer and the import driver.
"""

from .builder import DatasetConflictError, EntityBuilder
from .graph_writer import SingleSlotCache, TransactionalGraphWriter
from .importer import OSMImporter, import_extract
from .records import AttributeRecord, MalformedRecordError, decode_attributes
from .run_stats import ImportRunStats, ImportSummary

__all__ = [
    "AttributeRecord",
    "DatasetConflictError",
    "EntityBuilder",
    "ImportRunStats",
    "ImportSummary",
    "MalformedRecordError",
    "OSMImporter",
    "SingleSlotCache",
    "TransactionalGraphWriter",
    "decode_attributes",
    "import_extract",
]
