from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from typing import Any, Optional


@dataclass
class WorkerResult:
    worker_label: str
    pool: str
    worker_index: int
    stream_num: int
    elapsed_ms: float
    frames: int
    iterations: int
    failed_iterations: int
    job_handle: int
    cpu_utilization_pct: Optional[float]
    gpu_utilization_pct: Optional[float]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class StatsSnapshot:
    elapsed_ms: list[float] = field(default_factory=list)
    frame_counts: list[int] = field(default_factory=list)
    latency_sum: float = 0.0
    latency_count: int = 0
    worker_results: list[WorkerResult] = field(default_factory=list)


class SharedStats:
    """Accumulator shared by every worker.

    One lock covers the latency pair and the per-worker totals; the final
    snapshot is read under the same lock once every worker has finished.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._elapsed_ms: list[float] = []
        self._frame_counts: list[int] = []
        self._latency_sum = 0.0
        self._latency_count = 0
        self._worker_results: list[WorkerResult] = []

    async def add_latency(self, latency: float) -> None:
        async with self._lock:
            self._latency_sum += latency
            self._latency_count += 1

    async def record_worker(self, result: WorkerResult) -> None:
        async with self._lock:
            self._elapsed_ms.append(result.elapsed_ms)
            self._frame_counts.append(result.frames)
            self._worker_results.append(result)

    async def snapshot(self) -> StatsSnapshot:
        async with self._lock:
            return StatsSnapshot(
                elapsed_ms=list(self._elapsed_ms),
                frame_counts=list(self._frame_counts),
                latency_sum=self._latency_sum,
                latency_count=self._latency_count,
                worker_results=list(self._worker_results),
            )
