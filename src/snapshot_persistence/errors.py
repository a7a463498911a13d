"""
Exception types raised inside the snapshot components.

Each exception carries the `ErrorKind` it is reported as. The `SnapshotService`
catches these at its public boundary and turns them into typed result objects,
so callers only ever see `ErrorKind` values.
"""
from .models import ErrorKind


class SnapshotError(Exception):
    kind: ErrorKind = ErrorKind.STORAGE


class SnapshotNotFound(SnapshotError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, snapshot_id: str):
        super().__init__(f"Snapshot '{snapshot_id}' not found")
        self.snapshot_id = snapshot_id


class IntegrityError(SnapshotError):
    """Checksum mismatch: the snapshot is corrupted or has been tampered with."""

    kind = ErrorKind.INTEGRITY


class TransformError(SnapshotError):
    """The encoded input is not well-formed for the configured transforms."""

    kind = ErrorKind.TRANSFORM


class InvalidSnapshot(SnapshotError):
    kind = ErrorKind.INVALID_SNAPSHOT


class PartialRestoreFailure(SnapshotError):
    kind = ErrorKind.PARTIAL_RESTORE

    def __init__(self, key: str, cause: Exception):
        super().__init__(f"{key}: {cause}")
        self.key = key
        self.cause = cause


class SnapshotTooLarge(SnapshotError):
    kind = ErrorKind.TOO_LARGE

    def __init__(self, size_bytes: int, limit: int):
        super().__init__(
            f"Snapshot is too large ({size_bytes} bytes). The limit is {limit} bytes."
        )
        self.size_bytes = size_bytes
        self.limit = limit
