from __future__ import annotations

import asyncio
import csv
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from loadgen import ConfigurationError, Worker, WorkerSettings, discover_inputs
from logger import logger
from metrics_cpu import DEFAULT_PROCESS_NAME, CPUMetricsProbe
from metrics_gpu import GPUMetricsProbe, MetricsProbeError
from report import (
    compute_run_summary,
    log_run_summary,
    write_summary_json,
    write_summary_markdown,
)
from session import RPCSession, open_channel, run_call_factory
from stats import SharedStats, WorkerResult

PRIMARY_POOL = "primary"
ADDITIONAL_POOL = "additional"
ADDITIONAL_STREAM_NUM = 1


@dataclass
class RunConfig:
    host: str = "127.0.0.1"
    port: str = "50052"
    pipeline_config: str = ""
    additional_config: str = ""
    total_stream_num: int = 1
    repeats: int = 1
    data_path: Path = Path(".")
    pipeline_repeats: int = 1
    cross_stream_num: int = 1
    warmup: bool = True
    output_dir: Path = Path("runs")
    run_name: Optional[str] = None
    stream_timeout_s: Optional[float] = None
    gpu_backend: str = "auto"
    gpu_poll_interval_s: float = 1.0
    cpu_poll_interval_s: float = 1.0
    cpu_process_name: Optional[str] = DEFAULT_PROCESS_NAME
    require_metrics: bool = False
    config_paths: dict[str, str] = field(default_factory=dict)

    @property
    def target(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class WorkerPlan:
    pool: str
    index: int
    stream_num: int
    report_name: str

    @property
    def label(self) -> str:
        return f"{self.pool} {self.index}"


def plan_worker_pools(total_stream_num: int, cross_stream_num: int) -> list[WorkerPlan]:
    """Split the streams into full stream-groups plus single-stream leftovers."""
    if cross_stream_num <= 0:
        raise ConfigurationError(f"cross-stream-number must be > 0, got {cross_stream_num}")
    if total_stream_num <= 0:
        raise ConfigurationError(f"total-stream-number must be > 0, got {total_stream_num}")
    if total_stream_num < cross_stream_num:
        raise ConfigurationError(
            "total-stream-number should be no less than cross-stream-number!"
        )

    primary_count, additional_count = divmod(total_stream_num, cross_stream_num)
    plans = [
        WorkerPlan(
            pool=PRIMARY_POOL,
            index=index,
            stream_num=cross_stream_num,
            report_name=f"performance_data_{index}.json",
        )
        for index in range(primary_count)
    ]
    plans.extend(
        WorkerPlan(
            pool=ADDITIONAL_POOL,
            index=index,
            stream_num=ADDITIONAL_STREAM_NUM,
            report_name="performance_data_additional.json",
        )
        for index in range(additional_count)
    )
    return plans


def _ensure_output_dir(base_output_dir: Path, run_name: Optional[str]) -> Path:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    normalized_run_name = (run_name or "run").strip().replace(" ", "_")
    output_dir = base_output_dir / f"{normalized_run_name}_{timestamp}"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


def _write_json(path: Path, payload: Any) -> None:
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _write_csv(path: Path, rows: list[dict[str, Any]]) -> None:
    if not rows:
        path.write_text("", encoding="utf-8")
        return
    fieldnames: list[str] = []
    for row in rows:
        for key in row.keys():
            if key not in fieldnames:
                fieldnames.append(key)
    with path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)


def _resolved_config_dict(config: RunConfig, output_dir: Path) -> dict[str, Any]:
    payload = asdict(config)
    # payload texts can be large; record where they came from instead
    payload.pop("pipeline_config")
    payload.pop("additional_config")
    payload["data_path"] = str(config.data_path)
    payload["output_dir"] = str(config.output_dir)
    payload["resolved_run_dir"] = str(output_dir)
    payload["started_at_utc"] = datetime.now(timezone.utc).isoformat()
    return payload


async def _start_probe(probe: Any, name: str, require_metrics: bool) -> None:
    try:
        await probe.start()
    except MetricsProbeError as exc:
        if require_metrics:
            raise
        logger.warning("%s metrics unavailable: %s", name, exc)


def _worker_settings(plan: WorkerPlan, config: RunConfig, output_dir: Path) -> WorkerSettings:
    return WorkerSettings(
        label=plan.label,
        pool=plan.pool,
        worker_index=plan.index,
        stream_num=plan.stream_num,
        pipeline_config=(
            config.pipeline_config if plan.pool == PRIMARY_POOL else config.additional_config
        ),
        repeats=config.repeats,
        pipeline_repeats=config.pipeline_repeats,
        warmup=config.warmup,
        report_path=output_dir / plan.report_name,
    )


async def _run_worker(
    plan: WorkerPlan,
    config: RunConfig,
    base_inputs: list[str],
    stats: SharedStats,
    output_dir: Path,
    cpu_probe: CPUMetricsProbe,
    gpu_probe: GPUMetricsProbe,
) -> WorkerResult:
    settings = _worker_settings(plan, config, output_dir)
    async with open_channel(config.target) as channel:
        call_factory = run_call_factory(channel, timeout_s=config.stream_timeout_s)
        worker = Worker(
            settings=settings,
            base_inputs=base_inputs,
            stats=stats,
            session_factory=lambda: RPCSession(call_factory, label=f"[{plan.label}]"),
            cpu_probe=cpu_probe,
            gpu_probe=gpu_probe,
        )
        return await worker.run()


WorkerRunner = Callable[..., Any]


async def run_load_test(config: RunConfig, worker_runner: WorkerRunner = _run_worker) -> Path:
    plans = plan_worker_pools(config.total_stream_num, config.cross_stream_num)
    base_inputs = discover_inputs(config.data_path)

    primary_workers = sum(1 for plan in plans if plan.pool == PRIMARY_POOL)
    additional_workers = len(plans) - primary_workers
    if config.warmup:
        logger.info("Warmup workloads with %d threads...", len(plans))

    output_dir = _ensure_output_dir(config.output_dir, config.run_name)
    resolved_config = _resolved_config_dict(config, output_dir)
    _write_json(output_dir / "config.json", resolved_config)

    stats = SharedStats()
    cpu_probe = CPUMetricsProbe(
        process_name=config.cpu_process_name, poll_interval_s=config.cpu_poll_interval_s
    )
    gpu_probe = GPUMetricsProbe(
        backend=config.gpu_backend, poll_interval_s=config.gpu_poll_interval_s
    )

    logger.info("Initialize system metrics for cpu and gpu...")
    try:
        await _start_probe(cpu_probe, "CPU", config.require_metrics)
        await _start_probe(gpu_probe, "GPU", config.require_metrics)

        logger.info(
            "Start processing with %d threads: total-stream = %d, each thread will process %d streams",
            len(plans),
            config.total_stream_num,
            config.cross_stream_num,
        )
        outcomes = await asyncio.gather(
            *(
                worker_runner(plan, config, base_inputs, stats, output_dir, cpu_probe, gpu_probe)
                for plan in plans
            ),
            return_exceptions=True,
        )
    finally:
        await cpu_probe.stop()
        await gpu_probe.stop()

    for plan, outcome in zip(plans, outcomes):
        if isinstance(outcome, BaseException):
            logger.error(
                "[%s] worker aborted: %s", plan.label, outcome, exc_info=outcome
            )

    snapshot = await stats.snapshot()
    summary = compute_run_summary(
        snapshot=snapshot,
        total_stream_num=config.total_stream_num,
        cross_stream_num=config.cross_stream_num,
        pipeline_repeats=config.pipeline_repeats,
        primary_workers=primary_workers,
        additional_workers=additional_workers,
        warmup=config.warmup,
    )
    log_run_summary(summary)

    write_summary_json(output_dir / "summary.json", summary)
    write_summary_markdown(
        output_path=output_dir / "summary.md",
        run_name=config.run_name or "run",
        resolved_config=resolved_config,
        summary=summary,
    )
    _write_csv(output_dir / "workers.csv", summary["workers"])
    _write_csv(output_dir / "cpu_metrics.csv", await cpu_probe.rows())
    _write_csv(output_dir / "gpu_metrics.csv", await gpu_probe.rows())
    return output_dir
