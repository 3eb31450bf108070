"""Graphite/Carbon-compatible metric receivers, parsers, storage configuration, whisper persister and tag queue."""

__version__ = "0.1.0"