import hashlib
import json
from typing import Any


def canonical_json(value: Any) -> str:
    """Serializes a value with stable key order so equal payloads hash equally."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def digest(serialized: str) -> str:
    """Returns the SHA-256 hex digest of the UTF-8 encoded string."""
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def byte_length(serialized: str) -> int:
    return len(serialized.encode("utf-8"))
