import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from snapshot_persistence.adaptors.sqlite.handle import SQLiteKeyValueStore
from snapshot_persistence.catalog import SnapshotCatalog
from snapshot_persistence.scheduler import SnapshotScheduler
from snapshot_persistence.service import MAX_RETAINED, MAX_SNAPSHOT_BYTES, SnapshotService
from snapshot_persistence.sinks import DirectorySink
from snapshot_persistence.state import KeyValueStateProvider
from snapshot_persistence.store import SnapshotStore
from snapshot_persistence.transforms import TransformPipeline


@asynccontextmanager
async def sqlite_snapshot_service(
    db_path: str,
    *,
    encryption_key: bytes | str | None = None,
    max_retained: int = MAX_RETAINED,
    max_snapshot_bytes: int = MAX_SNAPSHOT_BYTES,
    sink_dir: str | Path | None = None,
    sink_timeout: float = 5.0,
    seconds_per_minute: float = 60.0,
) -> AsyncIterator[SnapshotService]:
    """
    A factory for a `SnapshotService` backed by a single SQLite database.
    Application state, snapshot blobs, the catalog and the configuration each
    live in their own table on one shared connection. The service is yielded
    inert; call `start()` to begin scheduling. On exit the scheduler is
    stopped and the connection closed.
    """
    if not db_path:
        raise ValueError("`db_path` must be provided.")

    conn = await aiosqlite.connect(db_path)
    try:
        if db_path != ":memory:":
            await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA synchronous = NORMAL;")
        await conn.execute("PRAGMA busy_timeout = 5000;")

        write_lock = asyncio.Lock()
        state_backend = SQLiteKeyValueStore(conn, "app_state", write_lock)
        snapshot_backend = SQLiteKeyValueStore(conn, "snapshot_store", write_lock)
        for backend in (state_backend, snapshot_backend):
            await backend.create_schema()

        service = SnapshotService(
            state=KeyValueStateProvider(state_backend),
            store=SnapshotStore(
                snapshot_backend,
                sink=DirectorySink(sink_dir) if sink_dir else None,
                sink_timeout=sink_timeout,
            ),
            catalog=SnapshotCatalog(snapshot_backend),
            scheduler=SnapshotScheduler(seconds_per_minute=seconds_per_minute),
            pipeline=TransformPipeline(encryption_key),
            settings_store=snapshot_backend,
            max_retained=max_retained,
            max_snapshot_bytes=max_snapshot_bytes,
        )
        try:
            yield service
        finally:
            await service.stop()
    finally:
        await conn.close()
