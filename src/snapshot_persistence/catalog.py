"""
The snapshot catalog: the durable index of `SnapshotMetadata`.

The whole catalog lives under a single key of a `KeyValueStore`, which has no
partial-update primitive, so every mutation is a load-modify-store cycle. The
catalog is not safe for concurrent mutators; the service serializes them.
"""
import json
import logging
from typing import Iterable, List

from pydantic import ValidationError

from .models import SnapshotMetadata
from .protocols import KeyValueStore

CATALOG_KEY = "snapshot_catalog"


class SnapshotCatalog:
    def __init__(self, backend: KeyValueStore, key: str = CATALOG_KEY):
        self.backend = backend
        self.key = key

    async def _load(self) -> List[SnapshotMetadata]:
        raw = await self.backend.get(self.key)
        if not raw:
            return []
        entries = []
        for item in json.loads(raw):
            try:
                entries.append(SnapshotMetadata.model_validate(item))
            except ValidationError as e:
                logging.warning(f"Skipping malformed catalog entry {item.get('id')!r}: {e}")
        return entries

    async def _store(self, entries: List[SnapshotMetadata]):
        await self.backend.set(
            self.key, json.dumps([entry.model_dump(mode="json") for entry in entries])
        )

    @staticmethod
    def _ordered(entries: List[SnapshotMetadata]) -> List[SnapshotMetadata]:
        # Newest first; for equal timestamps the later insertion is newer.
        indexed = sorted(
            enumerate(entries), key=lambda pair: (pair[1].created_at, pair[0]), reverse=True
        )
        return [entry for _, entry in indexed]

    async def add(self, metadata: SnapshotMetadata):
        entries = await self._load()
        if any(entry.id == metadata.id for entry in entries):
            raise ValueError(f"Snapshot id '{metadata.id}' is already in the catalog")
        entries.append(metadata)
        await self._store(entries)

    async def remove(self, snapshot_id: str) -> bool:
        entries = await self._load()
        remaining = [entry for entry in entries if entry.id != snapshot_id]
        if len(remaining) == len(entries):
            return False
        await self._store(remaining)
        return True

    async def list(self) -> List[SnapshotMetadata]:
        return self._ordered(await self._load())

    async def get(self, snapshot_id: str) -> SnapshotMetadata | None:
        for entry in await self._load():
            if entry.id == snapshot_id:
                return entry
        return None

    async def evict_excess(self, limit: int, protected: Iterable[str] = ()) -> List[str]:
        """
        Drops the oldest entries until at most `limit` remain and returns their
        ids, oldest first. Ids in `protected` are never evicted. Blobs are
        left for the caller to delete.
        """
        entries = await self._load()
        excess = len(entries) - limit
        if excess <= 0:
            return []
        protected = set(protected)
        candidates = [entry.id for entry in reversed(self._ordered(entries)) if entry.id not in protected]
        evicted = candidates[:excess]
        evicted_ids = set(evicted)
        await self._store([entry for entry in entries if entry.id not in evicted_ids])
        return evicted
