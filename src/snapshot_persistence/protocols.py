"""
This module defines the abstract protocols for storage and external collaborators.

By using `Protocol`-based interfaces, the snapshot service is decoupled from
the concrete backend holding application state, snapshot blobs and the catalog.
Any object with the right async methods (a SQLite table, an in-memory dict, a
remote key-value API) can be plugged in without changing the service.
"""
from typing import Protocol, Any, List


class KeyValueStore(Protocol):
    """
    The contract for a flat string key-value backend, the equivalent of
    browser `localStorage`. Values are opaque text.
    """

    async def get(self, key: str) -> str | None:
        ...

    async def set(self, key: str, value: str):
        ...

    async def delete(self, key: str) -> bool:
        ...

    async def keys(self, prefix: str = "") -> List[str]:
        ...


class StateProvider(Protocol):
    """
    The application state that snapshots are taken from and restored into.
    Values are JSON-serializable and treated opaquely.
    """

    async def read(self, key: str) -> Any | None:
        ...

    async def write(self, key: str, value: Any):
        ...


class DurableSink(Protocol):
    """
    An optional secondary destination for snapshot documents, e.g. a backup
    directory on disk. Failures here are never fatal to the primary write.
    """

    async def save(self, snapshot_id: str, pretty_json: str):
        ...
