from .factory import sqlite_snapshot_service
from .handle import SQLiteKeyValueStore

__all__ = ["sqlite_snapshot_service", "SQLiteKeyValueStore"]
