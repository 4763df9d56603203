"""Streaming OpenStreetMap extract to property-graph importer."""

__version__ = "0.1.0"
