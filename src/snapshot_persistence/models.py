"""
This module defines the core data models for the snapshot service using Pydantic.
These models serve as the data transfer objects (DTOs) for configuration,
snapshot metadata and the typed results returned by the public service API.
"""
from enum import Enum
from datetime import datetime
from typing import Dict, Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

FORMAT_VERSION = "1.0.0"

# Group selectors expand to the dataset keys below. Any selector that is not
# a group name is treated as a literal dataset key.
DATASET_GROUPS: Dict[str, List[str]] = {
    "data": [
        "products",
        "salesInvoices",
        "purchaseInvoices",
        "customers",
        "suppliers",
        "employees",
        "cashFlowTransactions",
        "inventoryMovements",
    ],
    "settings": ["appSettings", "userPreferences", "systemConfig"],
    "integrations": ["health_checks"],
    "plugins": ["plugins"],
    "analytics": ["analytics"],
}


def expand_selectors(selectors: List[str]) -> List[str]:
    """Expands group selectors into dataset keys, preserving order and dropping duplicates."""
    keys: List[str] = []
    for selector in selectors:
        for key in DATASET_GROUPS.get(selector, [selector]):
            if key not in keys:
                keys.append(key)
    return keys


class Compression(str, Enum):
    NONE = "none"
    BASIC = "basic"
    HIGH = "high"


class SnapshotKind(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    AUTO = "auto"
    IMPORTED = "imported"


class ErrorKind(str, Enum):
    NOT_FOUND = "snapshot_not_found"
    INTEGRITY = "integrity_error"
    TRANSFORM = "transform_error"
    INVALID_SNAPSHOT = "invalid_snapshot"
    PARTIAL_RESTORE = "partial_restore_failure"
    TOO_LARGE = "snapshot_too_large"
    STORAGE = "storage_error"


class SnapshotConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    dataset_selectors: List[str] = Field(
        default_factory=lambda: ["data", "settings", "integrations", "plugins"]
    )
    compression: Compression = Compression.BASIC
    encryption: bool = False
    schedule_enabled: bool = True
    schedule_interval_minutes: int = Field(default=5, ge=1)


class SnapshotMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: Optional[str] = None
    created_at: datetime
    kind: SnapshotKind
    size_bytes: int
    checksum: str
    config: SnapshotConfig
    format_version: str = FORMAT_VERSION
    # Id of the snapshot an imported snapshot was created from.
    source_id: Optional[str] = None


class RestoreOptions(BaseModel):
    dataset_selectors: Optional[List[str]] = None
    overwrite: bool = False
    safety_snapshot: bool = False


class SnapshotResult(BaseModel):
    success: bool
    message: str
    metadata: Optional[SnapshotMetadata] = None
    error: Optional[ErrorKind] = None
    advisories: List[str] = Field(default_factory=list)


class RestoreResult(BaseModel):
    success: bool
    message: str
    restored: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    error: Optional[ErrorKind] = None
    safety_snapshot_id: Optional[str] = None


class ExportResult(BaseModel):
    success: bool
    message: str
    content: Optional[bytes] = None
    filename: Optional[str] = None
    error: Optional[ErrorKind] = None


class SnapshotStats(BaseModel):
    total: int = 0
    by_kind: Dict[str, int] = Field(default_factory=dict)
    total_size: int = 0
    average_size: float = 0.0
    latest: Optional[datetime] = None
    oldest: Optional[datetime] = None


class VerifyReport(BaseModel):
    message: str = ""
    error: Optional[ErrorKind] = None
    checked: int = 0
    missing: List[str] = Field(default_factory=list)
    corrupted: List[str] = Field(default_factory=list)
    orphaned: List[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None and not (self.missing or self.corrupted or self.orphaned)


def snapshot_document(metadata: SnapshotMetadata, data: Dict[str, Any]) -> Dict[str, Any]:
    """Builds the on-wire snapshot document: exactly `metadata` and `data`."""
    return {"metadata": metadata.model_dump(mode="json"), "data": data}
