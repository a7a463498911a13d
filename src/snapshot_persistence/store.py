"""
This module provides the blob storage primitive for snapshots.

`SnapshotStore` writes encoded snapshot blobs into any `KeyValueStore` under a
`snapshot_blob_<id>` key and, optionally, hands a readable copy of each snapshot to
a secondary `DurableSink`. The store performs no validation: callers verify
integrity before calling `put`.
"""
import asyncio
import logging
from typing import Dict, List

from .protocols import DurableSink, KeyValueStore

BLOB_PREFIX = "snapshot_blob_"


class MemoryKeyValueStore:
    """A `KeyValueStore` backed by a dict. Used for tests and ephemeral state."""

    def __init__(self, initial: Dict[str, str] | None = None):
        self.items: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self.items.get(key)

    async def set(self, key: str, value: str):
        self.items[key] = value

    async def delete(self, key: str) -> bool:
        return self.items.pop(key, None) is not None

    async def keys(self, prefix: str = "") -> List[str]:
        return [key for key in self.items if key.startswith(prefix)]


class SnapshotStore:
    def __init__(
        self,
        backend: KeyValueStore,
        sink: DurableSink | None = None,
        sink_timeout: float = 5.0,
        prefix: str = BLOB_PREFIX,
    ):
        self.backend = backend
        self.sink = sink
        self.sink_timeout = sink_timeout
        self.prefix = prefix

    def _key(self, snapshot_id: str) -> str:
        return f"{self.prefix}{snapshot_id}"

    async def put(self, snapshot_id: str, blob: str, document: str | None = None) -> List[str]:
        """
        Writes the blob to the primary backend. If a sink is configured and a
        readable `document` is given, it is exported best-effort afterwards.
        Returns advisory messages for any non-fatal sink failure.
        """
        await self.backend.set(self._key(snapshot_id), blob)
        if self.sink is None or document is None:
            return []
        return await self._export(snapshot_id, document)

    async def _export(self, snapshot_id: str, document: str) -> List[str]:
        try:
            await asyncio.wait_for(self.sink.save(snapshot_id, document), timeout=self.sink_timeout)
        except asyncio.TimeoutError:
            message = f"Secondary export of {snapshot_id} timed out after {self.sink_timeout}s"
            logging.warning(message)
            return [message]
        except Exception as e:
            message = f"Secondary export of {snapshot_id} failed (non-fatal): {e}"
            logging.warning(message)
            return [message]
        return []

    async def get(self, snapshot_id: str) -> str | None:
        return await self.backend.get(self._key(snapshot_id))

    async def delete(self, snapshot_id: str) -> bool:
        return await self.backend.delete(self._key(snapshot_id))

    async def ids(self) -> List[str]:
        keys = await self.backend.keys(self.prefix)
        return [key[len(self.prefix):] for key in keys]
