from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from logger import logger
from metrics_cpu import CPUMetricsProbe, cpu_threads
from metrics_gpu import GPUMetricsProbe
from protocol import (
    BinaryReply,
    LoadPipelineRequest,
    PerformanceReport,
    ResponseEnvelope,
    RunRequest,
    decode_handle,
    decode_latency,
)
from session import RPCSession
from stats import SharedStats, WorkerResult

SENSOR_SUBDIR = "bgr"
INPUT_SUFFIX = ".bin"
PROGRESS_EVERY_FRAMES = 100


class ConfigurationError(ValueError):
    pass


def discover_inputs(data_path: Path) -> list[str]:
    """Return the sorted absolute paths of ``<data_path>/bgr/*.bin``."""
    if not data_path.exists():
        raise ConfigurationError(f"File not exists: {data_path}")
    if not data_path.is_dir():
        raise ConfigurationError(
            f"Unknown data_path is specified: {data_path}, it's not a directory"
        )
    sensor_dir = data_path / SENSOR_SUBDIR
    if not sensor_dir.is_dir():
        raise ConfigurationError(
            f"path should be valid folder with a '{SENSOR_SUBDIR}' subfolder: {data_path}"
        )
    inputs = sorted(
        str(path.resolve())
        for path in sensor_dir.iterdir()
        if path.is_file() and path.suffix == INPUT_SUFFIX
    )
    if not inputs:
        raise ConfigurationError(f"No {INPUT_SUFFIX} files found in {sensor_dir}")
    logger.info(
        "Load %d files from folder: %s, mark media type as: multisensor",
        len(inputs),
        data_path,
    )
    return inputs


def expand_inputs(base: list[str], repeats: int, stream_num: int) -> list[str]:
    if repeats < 0 or stream_num < 0:
        raise ValueError(f"repeats and stream_num must be >= 0, got {repeats}, {stream_num}")
    repeated = base * repeats
    return repeated * stream_num


@dataclass
class WorkerSettings:
    label: str
    pool: str
    worker_index: int
    stream_num: int
    pipeline_config: str
    repeats: int
    pipeline_repeats: int
    warmup: bool
    report_path: Path


@dataclass
class _IterationState:
    first_response_at: Optional[float] = None


class Worker:
    """Drives one stream-group through ``pipeline_repeats`` sessions.

    Every iteration opens a fresh session, optionally performs the
    ``load_pipeline`` handshake (first iteration only), sends one ``run``
    request and drains the replies in a reader task that is joined before
    the session is closed. Frame counters, utilization sums and the job
    handle belong to this worker alone; only latency and the final totals go
    to ``SharedStats``.
    """

    def __init__(
        self,
        settings: WorkerSettings,
        base_inputs: list[str],
        stats: SharedStats,
        session_factory: Callable[[], RPCSession],
        cpu_probe: Optional[CPUMetricsProbe] = None,
        gpu_probe: Optional[GPUMetricsProbe] = None,
        cpu_thread_count: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.base_inputs = base_inputs
        self.stats = stats
        self.session_factory = session_factory
        self.cpu_probe = cpu_probe
        self.gpu_probe = gpu_probe
        self.cpu_thread_count = cpu_thread_count or cpu_threads()
        self.clock = clock

        self.job_handle = 0
        self.frames = 0
        self.iterations = 0
        self.failed_iterations = 0
        self._first_frame_index = 0
        self._elapsed_s = 0.0
        self._cpu_sum = 0.0
        self._gpu_sum = 0.0

    @property
    def label(self) -> str:
        return self.settings.label

    async def run(self) -> WorkerResult:
        inputs = expand_inputs(self.base_inputs, self.settings.repeats, self.settings.stream_num)
        logger.info("[%s] Input media size is: %d", self.label, len(inputs))

        for iteration in range(self.settings.pipeline_repeats):
            await self._run_iteration(iteration, inputs)

        result = self._result()
        logger.info(
            "[%s] cpuUtilizationVal: %s%%; gpuAllUtilizationVal: %s%%",
            self.label,
            _fmt_pct(result.cpu_utilization_pct),
            _fmt_pct(result.gpu_utilization_pct),
        )
        await self.stats.record_worker(result)
        return result

    async def _run_iteration(self, iteration: int, inputs: list[str]) -> None:
        session = self.session_factory()
        session.open()
        state = _IterationState()
        logger.debug(
            "[%s] iteration %d: stream num %d",
            self.label,
            iteration,
            self.settings.stream_num,
        )

        if iteration == 0 and self.settings.warmup and self.job_handle == 0:
            await self._load_pipeline(session)

        request = RunRequest.for_worker(
            stream_num=self.settings.stream_num,
            media_uris=inputs,
            job_handle=self.job_handle,
            config=self.settings.pipeline_config,
        )
        if request.job_handle:
            logger.info(
                "[%s] sending request ====> run on job handle %d", self.label, request.job_handle
            )
        else:
            logger.info("[%s] sending request ====> run", self.label)

        if await session.write(request):
            reader = asyncio.create_task(self._drain(session, state))
            await reader

        status = await session.close()
        self.iterations += 1
        if not status.ok:
            self.failed_iterations += 1
            logger.error("[%s] %s: %s", self.label, status.code, status.details)

        if state.first_response_at is not None:
            self._elapsed_s += self.clock() - state.first_response_at
        logger.info("[%s] request done with %d frames", self.label, self.frames)
        self._first_frame_index = self.frames

    async def _load_pipeline(self, session: RPCSession) -> None:
        logger.info("[%s] sending request ====> load_pipeline", self.label)
        request = LoadPipelineRequest(
            config=self.settings.pipeline_config,
            stream_num=self.settings.stream_num,
        )
        if not await session.write(request):
            return

        reply = await session.receive()
        if reply is None:
            logger.warning("[%s] stream ended before the load_pipeline reply", self.label)
            return
        logger.info("[%s] reply: %s, reply_status: %d", self.label, reply.message, reply.code)
        if not reply.succeeded:
            return

        handle = decode_handle(reply.payload)
        if not handle.ok:
            logger.warning(
                "[%s] no job handle in load_pipeline reply (%s); sending the full config on every run",
                self.label,
                handle.error,
            )
            return
        self.job_handle = handle.value
        logger.info("[%s] pipeline has been loaded, job handle: %d", self.label, self.job_handle)

    async def _drain(self, session: RPCSession, state: _IterationState) -> None:
        while True:
            envelope = await session.receive()
            if envelope is None:
                return
            received_at = self.clock()
            if state.first_response_at is None:
                state.first_response_at = received_at
            await self._handle_response(envelope, received_at, state.first_response_at)

    async def _handle_response(
        self, envelope: ResponseEnvelope, received_at: float, first_response_at: float
    ) -> None:
        if isinstance(envelope, PerformanceReport):
            await self._save_report(envelope)
            return

        if not envelope.payload.ok:
            logger.debug("[%s] no structured data in reply: %s", self.label, envelope.payload.error)
        elif envelope.succeeded:
            latency = decode_latency(envelope.payload)
            if latency.ok:
                await self.stats.add_latency(latency.value)
            else:
                logger.debug("[%s] %s", self.label, latency.error)

        if isinstance(envelope, BinaryReply):
            for frame in envelope.frames:
                metadata = frame.metadata.value if frame.metadata.ok else {}
                logger.debug(
                    "[%s] received binary data, frameId: %s, color: %s, height: %s, width: %s, content size: %d",
                    self.label,
                    frame.frame_id,
                    metadata.get("format"),
                    metadata.get("height"),
                    metadata.get("width"),
                    frame.size,
                )

        logger.debug(
            "[%s] frame index: %d, reply_status: %d", self.label, self.frames, envelope.code
        )
        self._sample_utilization()

        fps_count = self.frames - self._first_frame_index
        self.frames += 1
        elapsed_s = received_at - first_response_at
        cur_fps = fps_count / elapsed_s if fps_count and elapsed_s > 0 else 0.0
        logger.debug("[%s] curFPS: %.2f, frames: %d", self.label, cur_fps, self.frames)
        logger.debug("[%s] %.2f %s", self.label, cur_fps, envelope.message)

        if self.frames % PROGRESS_EVERY_FRAMES == 0:
            logger.info("[%s] %d frames have been processed.", self.label, self.frames)

    async def _save_report(self, envelope: PerformanceReport) -> None:
        path = self.settings.report_path
        logger.info("[%s] save report to %s", self.label, path)
        try:
            await asyncio.to_thread(
                path.write_text, json.dumps(envelope.payload.value, indent=4), encoding="utf-8"
            )
        except OSError as exc:
            logger.error("[%s] could not write %s: %s", self.label, path, exc)

    def _sample_utilization(self) -> None:
        if self.cpu_probe is not None:
            self._cpu_sum += self.cpu_probe.sample() or 0.0
        if self.gpu_probe is not None:
            self._gpu_sum += self.gpu_probe.sample() or 0.0

    def _result(self) -> WorkerResult:
        cpu_pct: Optional[float] = None
        gpu_pct: Optional[float] = None
        if self.frames > 0:
            if self.cpu_probe is not None and self.cpu_probe.available:
                cpu_pct = self._cpu_sum / (self.frames * self.cpu_thread_count)
            if self.gpu_probe is not None and self.gpu_probe.available:
                gpu_pct = self._gpu_sum / self.frames
        return WorkerResult(
            worker_label=self.label,
            pool=self.settings.pool,
            worker_index=self.settings.worker_index,
            stream_num=self.settings.stream_num,
            elapsed_ms=self._elapsed_s * 1000.0,
            frames=self.frames,
            iterations=self.iterations,
            failed_iterations=self.failed_iterations,
            job_handle=self.job_handle,
            cpu_utilization_pct=cpu_pct,
            gpu_utilization_pct=gpu_pct,
        )


def _fmt_pct(value: Optional[float]) -> str:
    return "n/a" if value is None else f"{value:.2f}"
