"""
Unit tests for the shared accumulator under concurrent workers.
"""

import asyncio

import pytest

from stats import SharedStats, WorkerResult


def _result(label: str, frames: int, elapsed_ms: float) -> WorkerResult:
    return WorkerResult(
        worker_label=label,
        pool="primary",
        worker_index=0,
        stream_num=1,
        elapsed_ms=elapsed_ms,
        frames=frames,
        iterations=1,
        failed_iterations=0,
        job_handle=0,
        cpu_utilization_pct=None,
        gpu_utilization_pct=None,
    )


@pytest.mark.asyncio
async def test_concurrent_updates_are_not_lost():
    stats = SharedStats()

    async def worker(index: int) -> None:
        for _ in range(100):
            await stats.add_latency(1.0)
            await asyncio.sleep(0)
        await stats.record_worker(_result(f"primary {index}", frames=100, elapsed_ms=10.0 * index))

    await asyncio.gather(*(worker(index) for index in range(50)))

    snapshot = await stats.snapshot()
    assert snapshot.latency_count == 5000
    assert snapshot.latency_sum == pytest.approx(5000.0)
    assert len(snapshot.elapsed_ms) == 50
    assert len(snapshot.frame_counts) == 50
    assert sum(snapshot.frame_counts) == 5000
    assert sorted(snapshot.elapsed_ms) == [10.0 * index for index in range(50)]


@pytest.mark.asyncio
async def test_snapshot_is_a_copy():
    stats = SharedStats()
    await stats.record_worker(_result("primary 0", frames=3, elapsed_ms=1.0))

    snapshot = await stats.snapshot()
    snapshot.frame_counts.append(99)
    await stats.add_latency(2.5)

    again = await stats.snapshot()
    assert again.frame_counts == [3]
    assert again.latency_sum == 2.5
    assert again.worker_results[0].to_dict()["worker_label"] == "primary 0"
