import json
from typing import Any

from .protocols import KeyValueStore


class KeyValueStateProvider:
    """
    Exposes a `KeyValueStore` holding JSON text as a `StateProvider`, the same
    convention the application uses for `localStorage` entries.
    """

    def __init__(self, backend: KeyValueStore):
        self.backend = backend

    async def read(self, key: str) -> Any | None:
        raw = await self.backend.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def write(self, key: str, value: Any):
        await self.backend.set(key, json.dumps(value, ensure_ascii=False))
