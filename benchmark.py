import asyncio
import time

from snapshot_persistence import sqlite_snapshot_service


def make_products(count: int):
    return [{"id": i, "name": f"product {i}", "stock": i % 50} for i in range(count)]


async def create_snapshot(service, index: int):
    result = await service.create(name=f"bench {index}")
    if not result.success:
        raise RuntimeError(result.message)
    return result.metadata.id


async def run_benchmark(num_snapshots, num_records):
    async with sqlite_snapshot_service(":memory:", max_retained=num_snapshots) as service:
        await service.update_config(dataset_selectors=["products"], schedule_enabled=False)
        await service.state.write("products", make_products(num_records))

        # Concurrent callers are serialized by the service lock.
        tasks = [create_snapshot(service, i) for i in range(num_snapshots)]
        start_time = time.time()
        ids = await asyncio.gather(*tasks)
        end_time = time.time()

        duration = end_time - start_time
        print(f"Total time for {num_snapshots} snapshots of {num_records} records: {duration:.2f} seconds")
        print(f"Snapshots per second: {num_snapshots / duration:.2f}")

        start_time = time.time()
        report = await service.verify()
        print(f"Verified {report.checked} snapshots in {time.time() - start_time:.2f} seconds: {report.message}")
        assert len(ids) == report.checked


if __name__ == "__main__":
    asyncio.run(run_benchmark(num_snapshots=50, num_records=5_000))
