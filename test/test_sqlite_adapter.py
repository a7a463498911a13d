import pytest
from pytest_asyncio import fixture
import asyncio
import json
import os
import tempfile

import aiosqlite

from snapshot_persistence import ErrorKind, generate_key, sqlite_snapshot_service
from snapshot_persistence.adaptors.sqlite import SQLiteKeyValueStore

PRODUCTS = [{"id": 1, "name": "Alpha"}, {"id": 2, "name": "Beta"}]


@fixture
async def kv_store():
    """
    Provides a SQLiteKeyValueStore on a clean in-memory database for each test function.
    """
    async with aiosqlite.connect(":memory:") as conn:
        store = SQLiteKeyValueStore(conn, "test_kv")
        await store.create_schema()
        yield store


@fixture
async def service():
    async with sqlite_snapshot_service(":memory:") as svc:
        await svc.update_config(dataset_selectors=["products"], schedule_enabled=False)
        await svc.state.write("products", PRODUCTS)
        yield svc


@pytest.mark.asyncio
async def test_set_get_and_overwrite(kv_store):
    assert await kv_store.get("missing") is None

    await kv_store.set("a", "1")
    assert await kv_store.get("a") == "1"

    # Upsert replaces the existing value.
    await kv_store.set("a", "2")
    assert await kv_store.get("a") == "2"


@pytest.mark.asyncio
async def test_delete_reports_whether_a_row_existed(kv_store):
    await kv_store.set("a", "1")
    assert await kv_store.delete("a") is True
    assert await kv_store.delete("a") is False
    assert await kv_store.get("a") is None


@pytest.mark.asyncio
async def test_keys_by_prefix(kv_store):
    for key in ["snapshot_blob_1", "snapshot_blob_2", "snapshot_catalog", "snapshot_%_x"]:
        await kv_store.set(key, "{}")

    assert await kv_store.keys("snapshot_blob_") == ["snapshot_blob_1", "snapshot_blob_2"]
    # Prefixes are matched literally, not as LIKE patterns.
    assert await kv_store.keys("snapshot_%") == ["snapshot_%_x"]
    assert len(await kv_store.keys()) == 4


def test_invalid_table_name_is_rejected():
    with pytest.raises(ValueError):
        SQLiteKeyValueStore(None, "kv; DROP TABLE x")


@pytest.mark.asyncio
async def test_factory_requires_db_path():
    with pytest.raises(ValueError):
        async with sqlite_snapshot_service(""):
            pass


@pytest.mark.asyncio
async def test_create_and_restore(service):
    created = await service.create(name="First")
    assert created.success

    await service.state.write("products", [])
    result = await service.restore(created.metadata.id, overwrite=True)
    assert result.success
    assert result.restored == ["products"]
    assert await service.state.read("products") == PRODUCTS


@pytest.mark.asyncio
async def test_delete_and_verify(service):
    first = await service.create()
    await service.create()

    assert await service.delete(first.metadata.id)
    assert not await service.delete(first.metadata.id)

    report = await service.verify()
    assert report.ok
    assert report.checked == 1


@pytest.mark.asyncio
async def test_snapshots_and_config_survive_reopen():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = os.path.join(tmpdir, "app.db")

        async with sqlite_snapshot_service(db_path) as svc:
            await svc.update_config(
                dataset_selectors=["products"], compression="high", schedule_enabled=False
            )
            await svc.state.write("products", PRODUCTS)
            created = await svc.create(name="Persisted")

        async with sqlite_snapshot_service(db_path) as svc:
            await svc.start()
            config = svc.get_config()
            assert config.compression == "high"
            assert not config.schedule_enabled
            assert not svc.scheduler.running

            snapshots = await svc.list_snapshots()
            assert [s.id for s in snapshots] == [created.metadata.id]

            await svc.state.write("products", [])
            result = await svc.restore(created.metadata.id, overwrite=True)
            assert result.success
            assert await svc.state.read("products") == PRODUCTS


@pytest.mark.asyncio
async def test_encrypted_snapshots_need_the_same_key():
    key = generate_key()
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = os.path.join(tmpdir, "app.db")

        async with sqlite_snapshot_service(db_path, encryption_key=key) as svc:
            await svc.update_config(
                dataset_selectors=["products"], encryption=True, schedule_enabled=False
            )
            await svc.state.write("products", PRODUCTS)
            created = await svc.create()
            blob = await svc.store.get(created.metadata.id)
            assert "Alpha" not in blob

        async with sqlite_snapshot_service(db_path, encryption_key=generate_key()) as svc:
            await svc.start()
            result = await svc.restore(created.metadata.id, overwrite=True)
            assert not result.success
            assert result.error == ErrorKind.INTEGRITY

        async with sqlite_snapshot_service(db_path, encryption_key=key) as svc:
            await svc.start()
            result = await svc.restore(created.metadata.id, overwrite=True)
            assert result.success


@pytest.mark.asyncio
async def test_directory_sink_receives_readable_copy():
    with tempfile.TemporaryDirectory() as tmpdir:
        sink_dir = os.path.join(tmpdir, "exports")
        async with sqlite_snapshot_service(":memory:", sink_dir=sink_dir) as svc:
            await svc.update_config(dataset_selectors=["products"], schedule_enabled=False)
            await svc.state.write("products", PRODUCTS)
            created = await svc.create()
            assert created.advisories == []

        with open(os.path.join(sink_dir, f"{created.metadata.id}.json"), encoding="utf-8") as f:
            document = json.load(f)
        assert document["metadata"]["id"] == created.metadata.id
        assert document["data"] == {"products": PRODUCTS}


@pytest.mark.asyncio
async def test_scheduled_snapshots_with_sqlite():
    async with sqlite_snapshot_service(":memory:", seconds_per_minute=0.02) as svc:
        await svc.update_config(dataset_selectors=["products"], schedule_interval_minutes=1)
        await svc.state.write("products", PRODUCTS)
        await svc.start()
        await asyncio.sleep(0.15)
        await svc.stop()

        stats = await svc.stats()
        assert stats.total >= 2
        assert set(stats.by_kind) == {"scheduled"}
