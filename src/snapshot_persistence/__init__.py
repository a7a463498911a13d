"""
This module exports the snapshot service, its components and the SQLite factory.
"""
from .models import (
    DATASET_GROUPS,
    Compression,
    ErrorKind,
    ExportResult,
    RestoreOptions,
    RestoreResult,
    SnapshotConfig,
    SnapshotKind,
    SnapshotMetadata,
    SnapshotResult,
    SnapshotStats,
    VerifyReport,
)
from .catalog import SnapshotCatalog
from .scheduler import SnapshotScheduler
from .service import MAX_RETAINED, SnapshotService
from .sinks import DirectorySink
from .state import KeyValueStateProvider
from .store import MemoryKeyValueStore, SnapshotStore
from .transforms import TransformPipeline, generate_key
from .adaptors.sqlite import sqlite_snapshot_service

__all__ = [
    "DATASET_GROUPS",
    "Compression",
    "ErrorKind",
    "ExportResult",
    "RestoreOptions",
    "RestoreResult",
    "SnapshotConfig",
    "SnapshotKind",
    "SnapshotMetadata",
    "SnapshotResult",
    "SnapshotStats",
    "VerifyReport",
    "SnapshotCatalog",
    "SnapshotScheduler",
    "MAX_RETAINED",
    "SnapshotService",
    "DirectorySink",
    "KeyValueStateProvider",
    "MemoryKeyValueStore",
    "SnapshotStore",
    "TransformPipeline",
    "generate_key",
    "sqlite_snapshot_service",
]
