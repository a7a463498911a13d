import argparse
import asyncio
import time
from snapshot_persistence import generate_key, sqlite_snapshot_service
import os
import tempfile

async def benchmark(num_records: int):
    print(f"Benchmarking snapshots of {num_records} records...")

    async def run_mode(db_path: str, key: bytes, compression: str, encryption: bool):
        async with sqlite_snapshot_service(db_path, encryption_key=key) as service:
            await service.update_config(
                dataset_selectors=["products", "customers"],
                compression=compression,
                encryption=encryption,
                schedule_enabled=False,
            )
            await service.state.write(
                "products", [{"id": i, "name": f"product {i}", "price": i * 1.5} for i in range(num_records)]
            )
            await service.state.write(
                "customers", [{"id": i, "name": f"customer {i}"} for i in range(num_records // 10)]
            )

            # --- Create benchmark ---
            start_create = time.perf_counter()
            created = await service.create(name="bench")
            create_time = time.perf_counter() - start_create
            assert created.success, created.message

            # --- Restore benchmark ---
            start_restore = time.perf_counter()
            restored = await service.restore(created.metadata.id, overwrite=True)
            restore_time = time.perf_counter() - start_restore
            assert restored.success, restored.message

            blob = await service.store.get(created.metadata.id)
        return create_time, restore_time, created.metadata.size_bytes, len(blob)

    key = generate_key()
    modes = [
        ("plain", "none", False),
        ("compressed", "basic", False),
        ("high+encrypted", "high", True),
    ]
    results = []
    for label, compression, encryption in modes:
        # In-memory SQLite mode
        results.append((f"In-memory {label}", await run_mode(":memory:", key, compression, encryption)))

        # File-based SQLite mode
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = os.path.join(tmpdir, "bench.db")
            results.append((f"File-based {label}", await run_mode(db_path, key, compression, encryption)))

    print(f"\n--- Results for {num_records} records ---")
    for label, (create_time, restore_time, size, stored) in results:
        print(f"{label:<28} - Create: {create_time:.4f}s, Restore: {restore_time:.4f}s, Size: {size:,} bytes, Stored: {stored:,} bytes")

async def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--num-records", type=int, default=10_000)
    args = parser.parse_args()
    await benchmark(args.num_records)

if __name__ == "__main__":
    asyncio.run(main())
