from __future__ import annotations

import asyncio
import time
from typing import Any, Optional

import psutil

from logger import logger

# process name of the inference service
DEFAULT_PROCESS_NAME = "HceAILLInfServe"


def cpu_threads() -> int:
    return psutil.cpu_count(logical=True) or 1


class CPUMetricsProbe:
    """Polls CPU utilization summed over cores.

    With ``process_name`` set, the value is the sum of ``cpu_percent`` over
    every process of that name; otherwise (or when no such process runs) it
    is the sum of the per-CPU percentages. Either way the scale is
    ``0..100 * cpu_threads()``.
    """

    def __init__(self, process_name: Optional[str] = DEFAULT_PROCESS_NAME, poll_interval_s: float = 1.0) -> None:
        self.process_name = process_name
        self.poll_interval_s = poll_interval_s
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._rows: list[dict[str, Any]] = []
        self._lock = asyncio.Lock()
        self._processes: dict[int, psutil.Process] = {}
        self._latest: Optional[float] = None
        self._warned_missing = False

    @property
    def available(self) -> bool:
        return self._task is not None

    def sample(self) -> Optional[float]:
        return self._latest

    async def start(self) -> None:
        if self._task is not None:
            return
        # first cpu_percent() call only primes the counters
        psutil.cpu_percent(interval=None, percpu=True)
        self._matching_processes()
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "CPU metrics sampled for %s every %.1fs (%d threads)",
            self.process_name or "the whole system",
            self.poll_interval_s,
            cpu_threads(),
        )

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    def _matching_processes(self) -> list[psutil.Process]:
        if not self.process_name:
            return []
        seen: set[int] = set()
        for process in psutil.process_iter(["name"]):
            if process.info.get("name") != self.process_name:
                continue
            seen.add(process.pid)
            if process.pid not in self._processes:
                self._processes[process.pid] = process
                try:
                    process.cpu_percent(interval=None)
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    seen.discard(process.pid)
        for pid in list(self._processes):
            if pid not in seen:
                del self._processes[pid]
        return list(self._processes.values())

    def read_once(self) -> dict[str, Any]:
        timestamp_unix_ms = int(time.time() * 1000)
        processes = self._matching_processes()
        total = 0.0
        matched = 0
        for process in processes:
            try:
                total += process.cpu_percent(interval=None)
                matched += 1
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue

        scope = "process"
        if matched == 0:
            if self.process_name and not self._warned_missing:
                logger.warning(
                    "No process named %s found; sampling system-wide CPU", self.process_name
                )
                self._warned_missing = True
            scope = "system"
            total = float(sum(psutil.cpu_percent(interval=None, percpu=True)))

        return {
            "timestamp_unix_ms": timestamp_unix_ms,
            "scope": scope,
            "matched_processes": matched,
            "cpu_utilization_pct": total,
        }

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            started = time.monotonic()
            # process_iter() walks /proc; keep it off the event loop
            row = await asyncio.to_thread(self.read_once)
            self._latest = row["cpu_utilization_pct"]
            async with self._lock:
                self._rows.append(row)
            elapsed = time.monotonic() - started
            sleep_for = max(0.0, self.poll_interval_s - elapsed)
            if sleep_for <= 0:
                await asyncio.sleep(0)
                continue
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_for)
            except asyncio.TimeoutError:
                pass

    async def rows(self) -> list[dict[str, Any]]:
        async with self._lock:
            return list(self._rows)
