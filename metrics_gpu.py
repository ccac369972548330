from __future__ import annotations

import asyncio
import csv
import io
import json
import shutil
import statistics
import time
from typing import Any, Optional

from logger import logger

GPU_BACKENDS = ("auto", "nvidia-smi", "intel_gpu_top", "none")

NVIDIA_QUERY_FIELDS = [
    "timestamp",
    "index",
    "name",
    "utilization.gpu",
    "utilization.memory",
    "memory.used",
    "memory.total",
]

# exit status of coreutils `timeout` when it stops intel_gpu_top
TIMEOUT_EXIT_STATUS = 124


class MetricsProbeError(RuntimeError):
    pass


def _to_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    normalized = str(value).strip()
    if not normalized:
        return None
    if normalized.upper() in {"N/A", "NA", "[N/A]"}:
        return None
    try:
        return float(normalized)
    except ValueError:
        return None


def _error_row(timestamp_unix_ms: int, backend: str, error: str) -> dict[str, Any]:
    return {
        "timestamp_unix_ms": timestamp_unix_ms,
        "backend": backend,
        "scrape_ok": False,
        "scrape_error": error,
        "gpu_index": None,
        "gpu_name": None,
        "utilization_gpu_pct": None,
        "utilization_memory_pct": None,
        "memory_used_mib": None,
        "memory_total_mib": None,
    }


def resolve_backend(backend: str) -> str:
    if backend not in GPU_BACKENDS:
        raise ValueError(f"Unsupported GPU backend: {backend}")
    if backend != "auto":
        return backend
    for candidate in ("nvidia-smi", "intel_gpu_top"):
        if shutil.which(candidate):
            return candidate
    raise MetricsProbeError("no GPU utilization tool found (tried nvidia-smi, intel_gpu_top)")


def parse_nvidia_smi(output: str, timestamp_unix_ms: int) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for parsed in csv.reader(io.StringIO(output.strip())):
        if not parsed:
            continue
        parsed = [value.strip() for value in parsed]
        if len(parsed) < len(NVIDIA_QUERY_FIELDS):
            rows.append(
                _error_row(
                    timestamp_unix_ms,
                    "nvidia-smi",
                    f"Unexpected nvidia-smi row with {len(parsed)} fields",
                )
            )
            continue

        # GPU names may contain commas
        if len(parsed) > len(NVIDIA_QUERY_FIELDS):
            extra = len(parsed) - len(NVIDIA_QUERY_FIELDS)
            merged_name = ",".join(parsed[2 : 2 + extra + 1]).strip()
            parsed = parsed[:2] + [merged_name] + parsed[2 + extra + 1 :]

        rows.append(
            {
                "timestamp_unix_ms": timestamp_unix_ms,
                "backend": "nvidia-smi",
                "scrape_ok": True,
                "scrape_error": None,
                "gpu_index": parsed[1],
                "gpu_name": parsed[2],
                "utilization_gpu_pct": _to_float(parsed[3]),
                "utilization_memory_pct": _to_float(parsed[4]),
                "memory_used_mib": _to_float(parsed[5]),
                "memory_total_mib": _to_float(parsed[6]),
            }
        )
    if not rows:
        rows.append(_error_row(timestamp_unix_ms, "nvidia-smi", "No GPU rows parsed"))
    return rows


def _iter_json_objects(text: str) -> list[dict[str, Any]]:
    # intel_gpu_top -J streams objects separated by commas, with or without
    # an enclosing array, and the last one may be cut off by `timeout`.
    decoder = json.JSONDecoder()
    objects: list[dict[str, Any]] = []
    index = 0
    while index < len(text):
        char = text[index]
        if char in " \t\r\n,[]":
            index += 1
            continue
        try:
            obj, index = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            break
        if isinstance(obj, dict):
            objects.append(obj)
    return objects


def parse_intel_gpu_top(output: str, timestamp_unix_ms: int) -> list[dict[str, Any]]:
    samples = _iter_json_objects(output)
    if not samples:
        return [_error_row(timestamp_unix_ms, "intel_gpu_top", "intel_gpu_top returned no samples")]

    engines = samples[-1].get("engines")
    if not isinstance(engines, dict):
        return [_error_row(timestamp_unix_ms, "intel_gpu_top", "sample has no engines")]

    render_busy = [
        value
        for value in (
            _to_float(engine.get("busy"))
            for name, engine in engines.items()
            if name.startswith("Render/3D") and isinstance(engine, dict)
        )
        if value is not None
    ]
    if not render_busy:
        return [_error_row(timestamp_unix_ms, "intel_gpu_top", "no Render/3D engine busy value")]

    return [
        {
            "timestamp_unix_ms": timestamp_unix_ms,
            "backend": "intel_gpu_top",
            "scrape_ok": True,
            "scrape_error": None,
            "gpu_index": "0",
            "gpu_name": "intel",
            "utilization_gpu_pct": max(render_busy),
            "utilization_memory_pct": None,
            "memory_used_mib": None,
            "memory_total_mib": None,
        }
    ]


class GPUMetricsProbe:
    """Polls a GPU utilization tool and keeps the latest busy percentage."""

    def __init__(self, backend: str = "auto", poll_interval_s: float = 1.0) -> None:
        if backend not in GPU_BACKENDS:
            raise ValueError(f"Unsupported GPU backend: {backend}")
        self.requested_backend = backend
        self.backend: Optional[str] = None
        self.poll_interval_s = poll_interval_s
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._rows: list[dict[str, Any]] = []
        self._lock = asyncio.Lock()
        self._latest: Optional[float] = None

    @property
    def available(self) -> bool:
        return self._task is not None

    def sample(self) -> Optional[float]:
        return self._latest

    async def start(self) -> None:
        if self._task is not None:
            return
        if self.requested_backend == "none":
            logger.info("GPU metrics disabled")
            return
        backend = resolve_backend(self.requested_backend)
        if not shutil.which(backend):
            raise MetricsProbeError(f"{backend} command not found")
        self.backend = backend
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("GPU metrics sampled with %s every %.1fs", backend, self.poll_interval_s)

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            started = time.monotonic()
            rows = await self._scrape_once()
            self._update_latest(rows)
            async with self._lock:
                self._rows.extend(rows)
            elapsed = time.monotonic() - started
            sleep_for = max(0.0, self.poll_interval_s - elapsed)
            if sleep_for <= 0:
                await asyncio.sleep(0)
                continue
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_for)
            except asyncio.TimeoutError:
                pass

    def _update_latest(self, rows: list[dict[str, Any]]) -> None:
        values = [
            float(row["utilization_gpu_pct"])
            for row in rows
            if row["scrape_ok"] and row["utilization_gpu_pct"] is not None
        ]
        if values:
            self._latest = float(statistics.fmean(values))

    def _command(self) -> list[str]:
        if self.backend == "nvidia-smi":
            return [
                "nvidia-smi",
                f"--query-gpu={','.join(NVIDIA_QUERY_FIELDS)}",
                "--format=csv,noheader,nounits",
            ]
        interval_ms = max(100, int(self.poll_interval_s * 500))
        return ["timeout", "1", "intel_gpu_top", "-J", "-s", str(interval_ms)]

    async def _scrape_once(self) -> list[dict[str, Any]]:
        timestamp_unix_ms = int(time.time() * 1000)
        backend = self.backend or "none"
        try:
            process = await asyncio.create_subprocess_exec(
                *self._command(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await process.communicate()
        except FileNotFoundError:
            return [_error_row(timestamp_unix_ms, backend, f"{backend} command not found")]
        except Exception as exc:  # noqa: BLE001
            return [_error_row(timestamp_unix_ms, backend, str(exc))]

        accepted = {0, TIMEOUT_EXIT_STATUS} if backend == "intel_gpu_top" else {0}
        if process.returncode not in accepted:
            stderr_text = stderr.decode("utf-8", errors="replace").strip()
            return [
                _error_row(
                    timestamp_unix_ms,
                    backend,
                    f"{backend} exited with {process.returncode}: {stderr_text}",
                )
            ]

        output = stdout.decode("utf-8", errors="replace").strip()
        if not output:
            return [_error_row(timestamp_unix_ms, backend, f"{backend} returned empty output")]
        if backend == "nvidia-smi":
            return parse_nvidia_smi(output, timestamp_unix_ms)
        return parse_intel_gpu_top(output, timestamp_unix_ms)

    async def rows(self) -> list[dict[str, Any]]:
        async with self._lock:
            return list(self._rows)
