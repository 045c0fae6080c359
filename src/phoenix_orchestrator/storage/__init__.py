"""
Storage module for Phoenix Orchestrator.

Stage markers live either in a directory of marker files (default) or in
PostgreSQL alongside the stage event log.
"""

from __future__ import annotations

from phoenix_orchestrator.storage.marker_store import (
    FileMarkerStore,
    MarkerStore,
    container_marker_key,
    container_marker_prefix,
    host_marker_key,
)
from phoenix_orchestrator.storage.postgres_store import PostgresStore

__all__ = [
    "MarkerStore",
    "FileMarkerStore",
    "PostgresStore",
    "host_marker_key",
    "container_marker_key",
    "container_marker_prefix",
]
