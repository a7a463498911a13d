import json
import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest
from pytest_asyncio import fixture

from snapshot_persistence import (
    DirectorySink,
    MemoryKeyValueStore,
    SnapshotCatalog,
    SnapshotConfig,
    SnapshotKind,
    SnapshotMetadata,
    SnapshotStore,
    TransformPipeline,
    generate_key,
)
from snapshot_persistence.checksum import byte_length, canonical_json, digest
from snapshot_persistence.errors import TransformError
from snapshot_persistence.models import expand_selectors

DOCUMENT = json.dumps({"metadata": {"id": "s1"}, "data": {"products": [{"id": 1, "name": "Ürün"}]}})


def make_metadata(snapshot_id: str, created_at: datetime) -> SnapshotMetadata:
    return SnapshotMetadata(
        id=snapshot_id,
        name=f"Snapshot {snapshot_id}",
        created_at=created_at,
        kind=SnapshotKind.MANUAL,
        size_bytes=10,
        checksum="0" * 64,
        config=SnapshotConfig(),
    )


@fixture
async def catalog():
    return SnapshotCatalog(MemoryKeyValueStore())


# Checksum


def test_canonical_json_ignores_key_order():
    assert canonical_json({"b": 1, "a": [1, 2]}) == canonical_json({"a": [1, 2], "b": 1})
    assert digest(canonical_json({"b": 1, "a": 2})) == digest(canonical_json({"a": 2, "b": 1}))


def test_digest_is_sha256_hex():
    assert digest("") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    assert digest('{"a":1}') != digest('{"a":2}')


def test_byte_length_counts_utf8_bytes():
    assert byte_length("abc") == 3
    assert byte_length("ü") == 2


def test_expand_selectors():
    assert expand_selectors(["settings", "products"]) == [
        "appSettings",
        "userPreferences",
        "systemConfig",
        "products",
    ]
    assert expand_selectors(["data", "products"]).count("products") == 1
    assert expand_selectors(["customDataset"]) == ["customDataset"]


# Transforms


@pytest.mark.parametrize(
    "compression,encryption",
    [("none", False), ("basic", False), ("high", False), ("basic", True), ("none", True)],
)
def test_transform_round_trip(compression, encryption):
    pipeline = TransformPipeline(generate_key())
    config = SnapshotConfig(compression=compression, encryption=encryption)
    encoded = pipeline.encode(DOCUMENT, config)
    assert pipeline.decode(encoded, config) == DOCUMENT


def test_no_transform_is_identity():
    config = SnapshotConfig(compression="none", encryption=False)
    assert TransformPipeline().encode(DOCUMENT, config) == DOCUMENT


def test_encoded_forms_are_text():
    pipeline = TransformPipeline(generate_key())
    for config in [
        SnapshotConfig(compression="basic"),
        SnapshotConfig(compression="high", encryption=True),
    ]:
        encoded = pipeline.encode(DOCUMENT, config)
        assert encoded.isascii()
        assert "Ürün" not in encoded


def test_compression_shrinks_repetitive_documents():
    pipeline = TransformPipeline()
    document = json.dumps({"data": {"rows": [{"id": i, "name": "row"} for i in range(500)]}})
    for level in ["basic", "high"]:
        encoded = pipeline.encode(document, SnapshotConfig(compression=level))
        assert len(encoded) < len(document) / 2


def test_decode_rejects_malformed_input():
    pipeline = TransformPipeline()
    with pytest.raises(TransformError):
        pipeline.decode("not base64!!", SnapshotConfig(compression="basic"))
    with pytest.raises(TransformError):
        # Valid base64, but not zlib data.
        pipeline.decode("aGVsbG8=", SnapshotConfig(compression="basic"))


def test_encryption_without_key_fails():
    config = SnapshotConfig(encryption=True)
    with pytest.raises(TransformError, match="no encryption key"):
        TransformPipeline().encode(DOCUMENT, config)


def test_decrypt_with_wrong_key_fails():
    config = SnapshotConfig(encryption=True)
    encoded = TransformPipeline(generate_key()).encode(DOCUMENT, config)
    with pytest.raises(TransformError):
        TransformPipeline(generate_key()).decode(encoded, config)


def test_decode_any_detects_transforms():
    pipeline = TransformPipeline(generate_key())
    for config in [
        SnapshotConfig(compression="none"),
        SnapshotConfig(compression="basic"),
        SnapshotConfig(compression="high", encryption=True),
        SnapshotConfig(compression="none", encryption=True),
    ]:
        assert pipeline.decode_any(pipeline.encode(DOCUMENT, config)) == DOCUMENT

    with pytest.raises(TransformError):
        pipeline.decode_any("definitely not a snapshot")


# Catalog


@pytest.mark.asyncio
async def test_catalog_lists_newest_first(catalog):
    now = datetime.now(timezone.utc)
    await catalog.add(make_metadata("old", now - timedelta(hours=2)))
    await catalog.add(make_metadata("new", now))
    await catalog.add(make_metadata("middle", now - timedelta(hours=1)))

    assert [m.id for m in await catalog.list()] == ["new", "middle", "old"]
    assert (await catalog.get("middle")).name == "Snapshot middle"
    assert await catalog.get("missing") is None


@pytest.mark.asyncio
async def test_catalog_orders_equal_timestamps_by_insertion(catalog):
    now = datetime.now(timezone.utc)
    for snapshot_id in ["a", "b", "c"]:
        await catalog.add(make_metadata(snapshot_id, now))
    assert [m.id for m in await catalog.list()] == ["c", "b", "a"]


@pytest.mark.asyncio
async def test_catalog_rejects_duplicate_ids(catalog):
    now = datetime.now(timezone.utc)
    await catalog.add(make_metadata("a", now))
    with pytest.raises(ValueError):
        await catalog.add(make_metadata("a", now))


@pytest.mark.asyncio
async def test_catalog_remove(catalog):
    await catalog.add(make_metadata("a", datetime.now(timezone.utc)))
    assert await catalog.remove("a") is True
    assert await catalog.remove("a") is False
    assert await catalog.list() == []


@pytest.mark.asyncio
async def test_catalog_evict_excess(catalog):
    start = datetime.now(timezone.utc)
    for i in range(5):
        await catalog.add(make_metadata(f"s{i}", start + timedelta(seconds=i)))

    assert await catalog.evict_excess(10) == []
    evicted = await catalog.evict_excess(3)
    assert sorted(evicted) == ["s0", "s1"]
    assert [m.id for m in await catalog.list()] == ["s4", "s3", "s2"]


@pytest.mark.asyncio
async def test_catalog_evict_excess_skips_protected_ids(catalog):
    start = datetime.now(timezone.utc)
    for i in range(4):
        await catalog.add(make_metadata(f"s{i}", start + timedelta(seconds=i)))

    evicted = await catalog.evict_excess(2, protected=["s0"])
    assert evicted == ["s1", "s2"]
    assert [m.id for m in await catalog.list()] == ["s3", "s0"]


@pytest.mark.asyncio
async def test_catalog_skips_malformed_entries():
    backend = MemoryKeyValueStore()
    good = make_metadata("good", datetime.now(timezone.utc)).model_dump(mode="json")
    await backend.set("snapshot_catalog", json.dumps([{"id": "broken"}, good]))

    entries = await SnapshotCatalog(backend).list()
    assert [m.id for m in entries] == ["good"]


# Store


@pytest.mark.asyncio
async def test_store_put_get_delete():
    backend = MemoryKeyValueStore({"snapshot_catalog": "[]"})
    store = SnapshotStore(backend)

    assert await store.put("s1", "blob-1") == []
    await store.put("s2", "blob-2")
    assert await store.get("s1") == "blob-1"
    assert sorted(await store.ids()) == ["s1", "s2"]

    assert await store.delete("s1") is True
    assert await store.delete("s1") is False
    assert await store.get("s1") is None
    assert await backend.get("snapshot_catalog") == "[]"


@pytest.mark.asyncio
async def test_store_exports_to_directory_sink():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = SnapshotStore(MemoryKeyValueStore(), sink=DirectorySink(tmpdir))
        advisories = await store.put("s1", "encoded", '{\n  "data": {}\n}')

        assert advisories == []
        path = os.path.join(tmpdir, "s1.json")
        with open(path, encoding="utf-8") as f:
            assert json.load(f) == {"data": {}}
        assert not os.path.exists(path + ".tmp")


@pytest.mark.asyncio
async def test_store_skips_sink_without_document():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = SnapshotStore(MemoryKeyValueStore(), sink=DirectorySink(tmpdir))
        await store.put("s1", "encoded")
        assert os.listdir(tmpdir) == []
