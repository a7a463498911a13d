"""
This module implements `SnapshotService`, the public API of the library.

The service coordinates the checksum, transform, store, catalog and scheduler
components. It is constructed inert with all of its collaborators injected and
only begins scheduling once `start()` is awaited, so tests can drive it with
in-memory fakes and control timing explicitly.

Every public operation returns a typed result object instead of raising: the
component exceptions from `errors.py` are caught at this boundary and reported
as an `ErrorKind` plus a human-readable message.
"""
import asyncio
import json
import logging
import re
import time
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

from pydantic import ValidationError

from .catalog import SnapshotCatalog
from .checksum import byte_length, canonical_json, digest
from .errors import (
    IntegrityError,
    InvalidSnapshot,
    PartialRestoreFailure,
    SnapshotError,
    SnapshotNotFound,
    SnapshotTooLarge,
    TransformError,
)
from .models import (
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
    expand_selectors,
    snapshot_document,
)
from .protocols import KeyValueStore, StateProvider
from .scheduler import SnapshotScheduler
from .store import SnapshotStore
from .transforms import TransformPipeline

MAX_RETAINED = 20
MAX_SNAPSHOT_BYTES = 50 * 1024 * 1024
CONFIG_KEY = "snapshot_config"


def new_snapshot_id(prefix: str = "snapshot") -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:12]}"


def _timestamp_label(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%d %H:%M:%S")


class SnapshotService:
    def __init__(
        self,
        state: StateProvider,
        store: SnapshotStore,
        catalog: SnapshotCatalog,
        *,
        scheduler: SnapshotScheduler | None = None,
        pipeline: TransformPipeline | None = None,
        settings_store: KeyValueStore | None = None,
        config: SnapshotConfig | None = None,
        max_retained: int = MAX_RETAINED,
        max_snapshot_bytes: int = MAX_SNAPSHOT_BYTES,
    ):
        self.state = state
        self.store = store
        self.catalog = catalog
        self.scheduler = scheduler or SnapshotScheduler()
        self.pipeline = pipeline or TransformPipeline()
        self.settings_store = settings_store
        self.config = config or SnapshotConfig()
        self.max_retained = max_retained
        self.max_snapshot_bytes = max_snapshot_bytes
        # Serializes every mutation of the catalog/store pair.
        self._lock = asyncio.Lock()
        self._started = False

    # -- lifecycle -----------------------------------------------------------

    async def start(self):
        """
        Loads the persisted configuration and starts scheduling if enabled.
        Raises `ValueError` if the configuration asks for encryption but the
        pipeline has no key.
        """
        config = await self._load_config()
        self._check_encryption_key(config)
        self.config = config
        self._started = True
        if self.config.schedule_enabled:
            self.scheduler.start(self.config.schedule_interval_minutes, self._scheduled_tick)

    async def stop(self):
        self._started = False
        await self.scheduler.stop()

    async def _scheduled_tick(self):
        now = datetime.now(timezone.utc)
        result = await self.create(
            SnapshotKind.SCHEDULED, name=f"Scheduled snapshot - {_timestamp_label(now)}"
        )
        if not result.success:
            logging.warning(f"Scheduled snapshot failed: {result.message}")

    # -- configuration -------------------------------------------------------

    async def _load_config(self) -> SnapshotConfig:
        if self.settings_store is None:
            return self.config
        raw = await self.settings_store.get(CONFIG_KEY)
        if not raw:
            return self.config
        try:
            return SnapshotConfig.model_validate({**self.config.model_dump(), **json.loads(raw)})
        except (json.JSONDecodeError, ValidationError) as e:
            logging.error(f"Failed to load snapshot config, keeping defaults: {e}")
            return self.config

    def _check_encryption_key(self, config: SnapshotConfig):
        if config.encryption and self.pipeline.fernet is None:
            raise ValueError("Encryption cannot be enabled without an encryption key")

    def get_config(self) -> SnapshotConfig:
        return self.config.model_copy(deep=True)

    async def update_config(self, **changes: Any) -> SnapshotConfig:
        """
        Merges `changes` into the configuration and persists it. When the
        schedule settings change, the scheduler is restarted or stopped before
        this returns. Invalid settings raise `ValueError`.
        """
        unknown = set(changes) - set(SnapshotConfig.model_fields)
        if unknown:
            raise ValueError(f"Unknown snapshot config fields: {', '.join(sorted(unknown))}")
        new_config = SnapshotConfig.model_validate({**self.config.model_dump(), **changes})
        self._check_encryption_key(new_config)

        old_config, self.config = self.config, new_config
        if self.settings_store is not None:
            await self.settings_store.set(CONFIG_KEY, new_config.model_dump_json())

        schedule_changed = (
            old_config.schedule_enabled != new_config.schedule_enabled
            or old_config.schedule_interval_minutes != new_config.schedule_interval_minutes
        )
        if self._started and schedule_changed:
            if new_config.schedule_enabled:
                self.scheduler.start(new_config.schedule_interval_minutes, self._scheduled_tick)
            else:
                await self.scheduler.stop()
        logging.info(f"Snapshot config updated: {new_config.model_dump_json()}")
        return self.get_config()

    # -- create --------------------------------------------------------------

    async def create(
        self,
        kind: SnapshotKind = SnapshotKind.MANUAL,
        name: str | None = None,
        description: str | None = None,
    ) -> SnapshotResult:
        async with self._lock:
            return await self._create_locked(SnapshotKind(kind), name, description)

    async def _create_locked(
        self,
        kind: SnapshotKind,
        name: str | None,
        description: str | None,
        protected: Tuple[str, ...] = (),
    ) -> SnapshotResult:
        try:
            metadata, advisories = await self._create(kind, name, description, protected)
        except SnapshotError as e:
            logging.error(f"Failed to create snapshot: {e}")
            return SnapshotResult(success=False, message=str(e), error=e.kind)
        except Exception as e:
            logging.error(f"Failed to create snapshot: {e}", exc_info=True)
            return SnapshotResult(
                success=False, message=f"Failed to create snapshot: {e}", error=ErrorKind.STORAGE
            )
        return SnapshotResult(
            success=True,
            message=f"Snapshot '{metadata.name}' created",
            metadata=metadata,
            advisories=advisories,
        )

    async def _gather(self, config: SnapshotConfig) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for key in expand_selectors(config.dataset_selectors):
            value = await self.state.read(key)
            if value is not None:
                data[key] = value
        return data

    def _serialize(self, data: Dict[str, Any]) -> str:
        try:
            serialized = canonical_json(data)
        except (TypeError, ValueError) as e:
            raise InvalidSnapshot(f"Dataset values are not JSON-serializable: {e}") from e
        size = byte_length(serialized)
        if size > self.max_snapshot_bytes:
            raise SnapshotTooLarge(size, self.max_snapshot_bytes)
        return serialized

    async def _create(
        self,
        kind: SnapshotKind,
        name: str | None,
        description: str | None,
        protected: Tuple[str, ...] = (),
    ) -> Tuple[SnapshotMetadata, List[str]]:
        config = self.config.model_copy(deep=True)
        data = await self._gather(config)
        serialized = self._serialize(data)
        now = datetime.now(timezone.utc)
        metadata = SnapshotMetadata(
            id=new_snapshot_id(),
            name=name or f"Snapshot - {_timestamp_label(now)}",
            description=description,
            created_at=now,
            kind=kind,
            size_bytes=byte_length(serialized),
            checksum=digest(serialized),
            config=config,
        )
        return await self._commit(metadata, data, protected)

    @staticmethod
    def _parse_document(plain: str, metadata: SnapshotMetadata) -> Dict[str, Any]:
        """
        Parses a decoded snapshot document. Its `data` must match the checksum
        and its embedded `metadata` must equal the catalog entry.
        """
        try:
            document = json.loads(plain)
        except json.JSONDecodeError as e:
            raise IntegrityError(f"Snapshot is corrupted or has been tampered with: {e}") from e
        data = document.get("data") if isinstance(document, dict) else None
        if not isinstance(data, dict):
            raise IntegrityError("Snapshot is corrupted or has been tampered with: no data section")
        if digest(canonical_json(data)) != metadata.checksum:
            raise IntegrityError("Snapshot is corrupted or has been tampered with: checksum mismatch")
        if document.get("metadata") != metadata.model_dump(mode="json"):
            raise IntegrityError("Snapshot is corrupted or has been tampered with: metadata mismatch")
        return data

    async def _commit(
        self, metadata: SnapshotMetadata, data: Dict[str, Any], protected: Tuple[str, ...] = ()
    ) -> Tuple[SnapshotMetadata, List[str]]:
        """
        Validates and persists a snapshot. Nothing is visible in the catalog
        until the blob has been written, and a failed catalog write removes
        the blob again.
        """
        document = json.dumps(snapshot_document(metadata, data), ensure_ascii=False)
        self._parse_document(document, metadata)

        encoded = self.pipeline.encode(document, metadata.config)
        if self.pipeline.decode(encoded, metadata.config) != document:
            raise IntegrityError("Encoded snapshot does not decode to the original; not saved")

        pretty = None
        if self.store.sink is not None:
            pretty = json.dumps(snapshot_document(metadata, data), ensure_ascii=False, indent=2)
        advisories = await self.store.put(metadata.id, encoded, pretty)
        try:
            await self.catalog.add(metadata)
        except Exception:
            await self.store.delete(metadata.id)
            raise

        logging.info(f"Snapshot created: {metadata.id} ({metadata.kind.value}, {metadata.size_bytes} bytes)")
        advisories.extend(await self._enforce_retention(protected))
        return metadata, advisories

    async def _enforce_retention(self, protected: Tuple[str, ...] = ()) -> List[str]:
        try:
            evicted = await self.catalog.evict_excess(self.max_retained, protected)
        except Exception as e:
            message = f"Retention cleanup failed (non-fatal): {e}"
            logging.warning(message)
            return [message]

        advisories = []
        for snapshot_id in evicted:
            try:
                await self.store.delete(snapshot_id)
            except Exception as e:
                message = f"Could not delete blob of evicted snapshot {snapshot_id}: {e}"
                logging.warning(message)
                advisories.append(message)
        if evicted:
            logging.info(f"Cleaned up {len(evicted)} old snapshots")
        return advisories

    # -- restore -------------------------------------------------------------

    async def _load_verified(self, snapshot_id: str) -> Tuple[SnapshotMetadata, Dict[str, Any]]:
        metadata = await self.catalog.get(snapshot_id)
        blob = await self.store.get(snapshot_id)
        if metadata is None or blob is None:
            if metadata is not None:
                logging.error(f"Catalog entry {snapshot_id} has no stored blob")
            raise SnapshotNotFound(snapshot_id)
        return metadata, self._open_blob(blob, metadata)

    def _open_blob(self, blob: str, metadata: SnapshotMetadata) -> Dict[str, Any]:
        """Decodes and verifies a stored blob. Any damage is an `IntegrityError`."""
        try:
            plain = self.pipeline.decode(blob, metadata.config)
        except TransformError as e:
            if metadata.config.encryption and self.pipeline.fernet is None:
                raise
            raise IntegrityError(f"Snapshot is corrupted or has been tampered with: {e}") from e
        return self._parse_document(plain, metadata)

    async def restore(
        self, snapshot_id: str, options: RestoreOptions | None = None, **kwargs: Any
    ) -> RestoreResult:
        """
        Restores datasets from a snapshot into the state provider. Existing
        datasets are skipped unless `overwrite` is set. A failing dataset
        write is reported in `errors` and the remaining datasets still restore.
        """
        if options is not None and kwargs:
            raise TypeError("Pass either a RestoreOptions instance or keyword options, not both")
        options = options or RestoreOptions(**kwargs)
        async with self._lock:
            try:
                metadata, data = await self._load_verified(snapshot_id)
            except SnapshotError as e:
                logging.error(f"Failed to restore snapshot {snapshot_id}: {e}")
                return RestoreResult(success=False, message=str(e), errors=[e.kind.value], error=e.kind)
            except Exception as e:
                logging.error(f"Failed to restore snapshot {snapshot_id}: {e}", exc_info=True)
                return RestoreResult(
                    success=False,
                    message=f"Restore failed: {e}",
                    errors=[ErrorKind.STORAGE.value],
                    error=ErrorKind.STORAGE,
                )

            result = RestoreResult(success=True, message=f"Snapshot '{metadata.name}' restored")
            if options.safety_snapshot:
                safety = await self._create_locked(
                    SnapshotKind.AUTO,
                    f"Pre-restore snapshot - {_timestamp_label(datetime.now(timezone.utc))}",
                    f"Automatic snapshot taken before restoring {snapshot_id}",
                    protected=(snapshot_id,),
                )
                if not safety.success:
                    return RestoreResult(
                        success=False,
                        message=f"Safety snapshot failed, nothing was restored: {safety.message}",
                        errors=[safety.error.value],
                        error=safety.error,
                    )
                result.safety_snapshot_id = safety.metadata.id

            wanted = None
            if options.dataset_selectors is not None:
                wanted = set(expand_selectors(options.dataset_selectors))
            for key, value in data.items():
                if wanted is not None and key not in wanted:
                    continue
                try:
                    if not options.overwrite and await self.state.read(key) is not None:
                        logging.info(f"Skipping {key}: already exists and overwrite is false")
                        result.skipped.append(key)
                        continue
                    await self.state.write(key, value)
                    result.restored.append(key)
                except Exception as e:
                    failure = PartialRestoreFailure(key, e)
                    logging.error(f"Failed to restore {failure}")
                    result.errors.append(str(failure))

            if result.errors:
                result.error = ErrorKind.PARTIAL_RESTORE
                result.message = (
                    f"Snapshot '{metadata.name}' partially restored: "
                    f"{len(result.errors)} dataset(s) failed"
                )
            logging.info(
                f"Restored snapshot {snapshot_id}: restored={result.restored} "
                f"skipped={result.skipped} errors={len(result.errors)}"
            )
            return result

    # -- delete --------------------------------------------------------------

    async def delete(self, snapshot_id: str) -> bool:
        """Removes a snapshot's blob and catalog entry. Returns False if neither existed."""
        async with self._lock:
            try:
                removed_blob = await self.store.delete(snapshot_id)
                removed_entry = await self.catalog.remove(snapshot_id)
            except Exception as e:
                logging.error(f"Failed to delete snapshot {snapshot_id}: {e}", exc_info=True)
                return False
        removed = removed_blob or removed_entry
        if removed:
            logging.info(f"Snapshot deleted: {snapshot_id}")
        return removed

    # -- export / import -----------------------------------------------------

    async def export_blob(self, snapshot_id: str) -> ExportResult:
        """Returns the stored, still-encoded snapshot exactly as persisted."""
        try:
            blob = await self.store.get(snapshot_id)
        except Exception as e:
            logging.error(f"Failed to export snapshot {snapshot_id}: {e}", exc_info=True)
            return ExportResult(success=False, message=f"Export failed: {e}", error=ErrorKind.STORAGE)
        if blob is None:
            error = SnapshotNotFound(snapshot_id)
            return ExportResult(success=False, message=str(error), error=error.kind)
        return ExportResult(
            success=True,
            message=f"Snapshot {snapshot_id} exported",
            content=blob.encode("utf-8"),
            filename=f"{snapshot_id}.snapshot",
        )

    async def export_document(self, snapshot_id: str) -> ExportResult:
        """Returns the decoded, verified snapshot as pretty-printed JSON."""
        try:
            metadata, data = await self._load_verified(snapshot_id)
        except SnapshotError as e:
            logging.error(f"Failed to export snapshot {snapshot_id}: {e}")
            return ExportResult(success=False, message=str(e), error=e.kind)
        except Exception as e:
            logging.error(f"Failed to export snapshot {snapshot_id}: {e}", exc_info=True)
            return ExportResult(success=False, message=f"Export failed: {e}", error=ErrorKind.STORAGE)
        pretty = json.dumps(snapshot_document(metadata, data), ensure_ascii=False, indent=2)
        safe_name = re.sub(r"[^\w\s-]", "_", metadata.name).strip() or metadata.id
        return ExportResult(
            success=True,
            message=f"Snapshot {snapshot_id} exported",
            content=pretty.encode("utf-8"),
            filename=f"{safe_name}_{metadata.created_at:%Y-%m-%d}.json",
        )

    async def import_blob(self, content: bytes | str) -> SnapshotResult:
        """
        Imports a snapshot file: either a plain JSON document or a blob produced
        by `export_blob`. The imported snapshot always receives a new id.
        """
        async with self._lock:
            try:
                metadata, advisories = await self._import(content)
            except SnapshotError as e:
                logging.error(f"Failed to import snapshot: {e}")
                return SnapshotResult(success=False, message=str(e), error=e.kind)
            except Exception as e:
                logging.error(f"Failed to import snapshot: {e}", exc_info=True)
                return SnapshotResult(
                    success=False, message=f"Failed to import snapshot: {e}", error=ErrorKind.STORAGE
                )
        return SnapshotResult(
            success=True,
            message=f"Snapshot imported as {metadata.id}",
            metadata=metadata,
            advisories=advisories,
        )

    async def _import(self, content: bytes | str) -> Tuple[SnapshotMetadata, List[str]]:
        if isinstance(content, bytes):
            try:
                content = content.decode("utf-8-sig")
            except UnicodeDecodeError as e:
                raise InvalidSnapshot("Snapshot file is not UTF-8 text") from e
        try:
            plain = self.pipeline.decode_any(content.strip())
        except TransformError as e:
            raise InvalidSnapshot(f"Snapshot file could not be decoded: {e}") from e
        try:
            document = json.loads(plain)
        except json.JSONDecodeError as e:
            raise InvalidSnapshot(f"Snapshot file is not valid JSON: {e}") from e

        if not isinstance(document, dict):
            raise InvalidSnapshot("Snapshot file must be a JSON object")
        source, data = document.get("metadata"), document.get("data")
        if not isinstance(source, dict) or not isinstance(data, dict):
            raise InvalidSnapshot("Snapshot file must contain 'metadata' and 'data' objects")
        checksum = source.get("checksum")
        if not isinstance(checksum, str) or not checksum:
            raise InvalidSnapshot("Snapshot metadata has no checksum")

        serialized = self._serialize(data)
        if digest(serialized) != checksum:
            raise InvalidSnapshot("Snapshot checksum does not match its data")

        now = datetime.now(timezone.utc)
        original_name = source.get("name")
        description = source.get("description")
        source_id = source.get("id")
        metadata = SnapshotMetadata(
            id=new_snapshot_id("imported"),
            name=f"{original_name} (imported)" if original_name else f"Imported snapshot - {_timestamp_label(now)}",
            description=str(description) if description is not None else None,
            created_at=now,
            kind=SnapshotKind.IMPORTED,
            size_bytes=byte_length(serialized),
            checksum=checksum,
            config=self.config.model_copy(deep=True),
            source_id=str(source_id) if source_id is not None else None,
        )
        return await self._commit(metadata, data)

    # -- queries -------------------------------------------------------------

    async def list_snapshots(self) -> List[SnapshotMetadata]:
        return await self.catalog.list()

    async def get_info(self, snapshot_id: str) -> SnapshotMetadata | None:
        return await self.catalog.get(snapshot_id)

    async def stats(self) -> SnapshotStats:
        entries = await self.catalog.list()
        if not entries:
            return SnapshotStats()
        total_size = sum(entry.size_bytes for entry in entries)
        return SnapshotStats(
            total=len(entries),
            by_kind=dict(Counter(entry.kind.value for entry in entries)),
            total_size=total_size,
            average_size=total_size / len(entries),
            latest=entries[0].created_at,
            oldest=entries[-1].created_at,
        )

    async def verify(self) -> VerifyReport:
        """
        Scans the catalog and the blob store for inconsistencies: catalog
        entries without a blob, blobs that fail decoding or their checksum,
        and blobs that no catalog entry references.
        """
        async with self._lock:
            try:
                entries = await self.catalog.list()
                blob_ids = set(await self.store.ids())
                report = VerifyReport(checked=len(entries))
                for metadata in entries:
                    if metadata.id not in blob_ids:
                        report.missing.append(metadata.id)
                        continue
                    blob = await self.store.get(metadata.id)
                    try:
                        self._open_blob(blob, metadata)
                    except SnapshotError as e:
                        logging.warning(f"Snapshot {metadata.id} failed verification: {e}")
                        report.corrupted.append(metadata.id)
                report.orphaned = sorted(blob_ids - {entry.id for entry in entries})
            except Exception as e:
                logging.error(f"Snapshot verification failed: {e}", exc_info=True)
                return VerifyReport(message=f"Verification failed: {e}", error=ErrorKind.STORAGE)

        if report.ok:
            report.message = f"All {report.checked} snapshots verified"
        else:
            report.message = (
                f"{len(report.missing)} missing, {len(report.corrupted)} corrupted, "
                f"{len(report.orphaned)} orphaned"
            )
            logging.warning(f"Snapshot verification found problems: {report.message}")
        return report
