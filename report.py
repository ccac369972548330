from __future__ import annotations

import json
import math
import statistics
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from logger import logger
from stats import StatsSnapshot

BANNER = "=" * 49


def compute_fps(
    total_frames: int,
    pipeline_repeats: int,
    total_stream_num: int,
    mean_time_ms: Optional[float],
) -> Optional[float]:
    """Frames per second per stream; one frame per repeat is attributed to warmup."""
    if mean_time_ms is None or mean_time_ms <= 0 or total_stream_num <= 0:
        return None
    return float((total_frames - pipeline_repeats) / total_stream_num / (mean_time_ms / 1000.0))


def compute_average_latency(latency_sum: float, latency_count: int) -> Optional[float]:
    if latency_count <= 0:
        return None
    return float(latency_sum / latency_count)


def _mean_or_none(values: list[float]) -> Optional[float]:
    if not values:
        return None
    return float(statistics.fmean(values))


def _fmt(value: Optional[float], digits: int = 2) -> str:
    if value is None or math.isnan(value):
        return "-"
    return f"{value:.{digits}f}"


def compute_run_summary(
    *,
    snapshot: StatsSnapshot,
    total_stream_num: int,
    cross_stream_num: int,
    pipeline_repeats: int,
    primary_workers: int,
    additional_workers: int,
    warmup: bool,
) -> dict[str, Any]:
    total_time_ms = float(sum(snapshot.elapsed_ms))
    total_frames = int(sum(snapshot.frame_counts))
    mean_time_ms = _mean_or_none(snapshot.elapsed_ms)
    fps = compute_fps(total_frames, pipeline_repeats, total_stream_num, mean_time_ms)
    average_latency = compute_average_latency(snapshot.latency_sum, snapshot.latency_count)

    cpu_values = [
        result.cpu_utilization_pct
        for result in snapshot.worker_results
        if result.cpu_utilization_pct is not None
    ]
    gpu_values = [
        result.gpu_utilization_pct
        for result in snapshot.worker_results
        if result.gpu_utilization_pct is not None
    ]

    return {
        "warmup": warmup,
        "total_stream_num": total_stream_num,
        "cross_stream_num": cross_stream_num,
        "pipeline_repeats": pipeline_repeats,
        "primary_workers": primary_workers,
        "additional_workers": additional_workers,
        "worker_count": primary_workers + additional_workers,
        "workers_reported": len(snapshot.elapsed_ms),
        "total_time_ms": total_time_ms,
        "total_frames": total_frames,
        "mean_time_ms": mean_time_ms,
        "fps": fps,
        "latency_sum": snapshot.latency_sum,
        "latency_count": snapshot.latency_count,
        "average_latency": average_latency,
        "mean_cpu_utilization_pct": _mean_or_none(cpu_values),
        "mean_gpu_utilization_pct": _mean_or_none(gpu_values),
        "per_worker": [
            {"frames": frames, "time_ms": elapsed_ms}
            for frames, elapsed_ms in zip(snapshot.frame_counts, snapshot.elapsed_ms)
        ],
        "workers": [result.to_dict() for result in snapshot.worker_results],
    }


def log_run_summary(summary: dict[str, Any]) -> None:
    logger.info("Time used by each thread: ")
    for entry in summary["per_worker"]:
        logger.info("%d frames, %s ms", entry["frames"], _fmt(entry["time_ms"]))
    logger.info("Total time: %s ms", _fmt(summary["total_time_ms"]))
    logger.info("Mean time: %s ms", _fmt(summary["mean_time_ms"]))

    fps = summary["fps"]
    average_latency = summary["average_latency"]
    logger.info(BANNER)
    logger.info("WARMUP: %d", int(summary["warmup"]))
    logger.info("fps: %s", "unavailable" if fps is None else _fmt(fps))
    logger.info(
        "average latency %s",
        "unavailable (no latency samples)" if average_latency is None else _fmt(average_latency),
    )
    logger.info(
        "For each repeat: %d threads have been processed, total-stream = %d, "
        "each thread processed %d streams",
        summary["worker_count"],
        summary["total_stream_num"],
        summary["cross_stream_num"],
    )
    logger.info(
        "fps per stream: %s, including %d frames",
        "unavailable" if fps is None else _fmt(fps),
        summary["total_frames"],
    )
    logger.info(BANNER)


def write_summary_json(output_path: Path, summary: dict[str, Any]) -> None:
    output_path.write_text(json.dumps(summary, indent=2), encoding="utf-8")


def write_summary_markdown(
    output_path: Path,
    run_name: str,
    resolved_config: dict[str, Any],
    summary: dict[str, Any],
) -> None:
    generated_at = datetime.now(timezone.utc).isoformat()
    lines: list[str] = []
    lines.append(f"# Pipeline Load Test Summary - {run_name}")
    lines.append("")
    lines.append(f"Generated at (UTC): `{generated_at}`")
    lines.append("")
    lines.append("## Configuration")
    lines.append("")
    lines.append("```json")
    lines.append(json.dumps(resolved_config, indent=2))
    lines.append("```")
    lines.append("")
    lines.append("## Results")
    lines.append("")
    lines.append(
        "| Workers | Total streams | Streams/worker | Repeats | Warmup | Frames | "
        "Mean time ms | FPS/stream | Avg latency | Mean CPU % | Mean GPU % |"
    )
    lines.append("|---:|---:|---:|---:|---:|---:|---:|---:|---:|---:|---:|")
    lines.append(
        "| "
        f"{summary['worker_count']} | "
        f"{summary['total_stream_num']} | "
        f"{summary['cross_stream_num']} | "
        f"{summary['pipeline_repeats']} | "
        f"{'yes' if summary['warmup'] else 'no'} | "
        f"{summary['total_frames']} | "
        f"{_fmt(summary['mean_time_ms'])} | "
        f"{_fmt(summary['fps'])} | "
        f"{_fmt(summary['average_latency'])} | "
        f"{_fmt(summary['mean_cpu_utilization_pct'])} | "
        f"{_fmt(summary['mean_gpu_utilization_pct'])} |"
    )

    lines.append("")
    lines.append("## Workers")
    lines.append("")
    lines.append(
        "| Worker | Pool | Streams | Frames | Time ms | Iterations | Failed | Job handle | CPU % | GPU % |"
    )
    lines.append("|---|---|---:|---:|---:|---:|---:|---:|---:|---:|")
    for worker in summary["workers"]:
        lines.append(
            "| "
            f"{worker['worker_label']} | "
            f"{worker['pool']} | "
            f"{worker['stream_num']} | "
            f"{worker['frames']} | "
            f"{_fmt(worker['elapsed_ms'])} | "
            f"{worker['iterations']} | "
            f"{worker['failed_iterations']} | "
            f"{worker['job_handle'] or '-'} | "
            f"{_fmt(worker['cpu_utilization_pct'])} | "
            f"{_fmt(worker['gpu_utilization_pct'])} |"
        )

    output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
