#!/usr/bin/env python3
"""Cross-stream load test for a streaming AI inference pipeline service.

Example:
    pipeline-loadtest 127.0.0.1 50052 configs/localFusionPipeline.json \\
        configs/localFusionPipeline_npu.json 4 1 /path-to-dataset 1 4 1

Unset http_proxy/https_proxy before running against a local service.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from loadgen import ConfigurationError
from logger import logger, set_log_level
from metrics_cpu import DEFAULT_PROCESS_NAME
from metrics_gpu import GPU_BACKENDS, MetricsProbeError
from runner import RunConfig, run_load_test

DATA_REPEATS_PLACEHOLDER = "data_repeats_placeholder"


def load_pipeline_config(path: Path, data_repeats: int) -> str:
    try:
        contents = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Cannot read pipeline config {path}: {exc}") from exc
    if DATA_REPEATS_PLACEHOLDER in contents:
        logger.info("%s supports data repeats", path)
        contents = contents.replace(DATA_REPEATS_PLACEHOLDER, str(data_repeats))
    logger.debug("%s:\n%s", path, contents)
    return contents


def _non_negative_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got '{value}'") from exc
    if parsed < 0:
        raise argparse.ArgumentTypeError(f"expected a value >= 0, got {parsed}")
    return parsed


def _warmup_flag(value: str) -> bool:
    if value not in {"0", "1"}:
        raise argparse.ArgumentTypeError(f"warmup flag must be 0 or 1, got '{value}'")
    return value == "1"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Drive an AI inference pipeline service with concurrent cross-stream workloads.",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument("host")
    parser.add_argument("port")
    parser.add_argument("json_file", type=Path, help="Pipeline config for the primary workers.")
    parser.add_argument(
        "additional_json_file",
        type=Path,
        help="Pipeline config for the single-stream remainder workers.",
    )
    parser.add_argument("total_stream_num", type=_non_negative_int)
    parser.add_argument("repeats", type=_non_negative_int, help="Times the input set is repeated.")
    parser.add_argument("data_path", type=Path, help="Dataset root holding a bgr/ folder of .bin files.")
    parser.add_argument("pipeline_repeats", type=_non_negative_int, nargs="?", default=1)
    parser.add_argument("cross_stream_num", type=_non_negative_int, nargs="?", default=1)
    parser.add_argument("warmup_flag", type=_warmup_flag, nargs="?", default=True, metavar="{0,1}")

    parser.add_argument("--output-dir", type=Path, default=Path("runs"))
    parser.add_argument("--run-name", default=None)
    parser.add_argument(
        "--stream-timeout-s",
        type=float,
        default=None,
        help="Deadline for each Run stream; unset waits indefinitely.",
    )
    parser.add_argument("--gpu-backend", choices=GPU_BACKENDS, default="auto")
    parser.add_argument("--gpu-poll-interval-s", type=float, default=1.0)
    parser.add_argument("--cpu-poll-interval-s", type=float, default=1.0)
    parser.add_argument(
        "--cpu-process-name",
        default=DEFAULT_PROCESS_NAME,
        help="Process whose CPU usage is sampled; empty string samples the whole system.",
    )
    parser.add_argument(
        "--require-metrics",
        action="store_true",
        help="Fail instead of continuing when a metrics probe cannot start.",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
    )
    return parser


def _validate_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if args.total_stream_num < args.cross_stream_num:
        parser.error("total-stream-number should be no less than cross-stream-number!")
    if args.cross_stream_num <= 0:
        parser.error("cross_stream_num must be > 0")
    if args.pipeline_repeats <= 0:
        parser.error("pipeline_repeats must be > 0")
    if args.gpu_poll_interval_s <= 0 or args.cpu_poll_interval_s <= 0:
        parser.error("--gpu-poll-interval-s and --cpu-poll-interval-s must be > 0")
    if args.stream_timeout_s is not None and args.stream_timeout_s <= 0:
        parser.error("--stream-timeout-s must be > 0 when set")


def build_config(args: argparse.Namespace) -> RunConfig:
    return RunConfig(
        host=args.host,
        port=args.port,
        pipeline_config=load_pipeline_config(args.json_file, args.repeats),
        additional_config=load_pipeline_config(args.additional_json_file, args.repeats),
        total_stream_num=args.total_stream_num,
        repeats=args.repeats,
        data_path=args.data_path,
        pipeline_repeats=args.pipeline_repeats,
        cross_stream_num=args.cross_stream_num,
        warmup=args.warmup_flag,
        output_dir=args.output_dir,
        run_name=args.run_name,
        stream_timeout_s=args.stream_timeout_s,
        gpu_backend=args.gpu_backend,
        gpu_poll_interval_s=args.gpu_poll_interval_s,
        cpu_poll_interval_s=args.cpu_poll_interval_s,
        cpu_process_name=args.cpu_process_name or None,
        require_metrics=args.require_metrics,
        config_paths={
            "json_file": str(args.json_file),
            "additional_json_file": str(args.additional_json_file),
        },
    )


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _validate_args(parser, args)
    set_log_level(args.log_level)

    try:
        config = build_config(args)
        output_dir = asyncio.run(run_load_test(config))
    except ConfigurationError as exc:
        logger.error("%s", exc)
        return 1
    except MetricsProbeError as exc:
        logger.error("Error: metrics probe failed to start: %s", exc)
        return 1
    except Exception:  # noqa: BLE001
        logger.exception("Error: load test failed")
        return 1

    logger.info("Run complete. Outputs written to: %s", output_dir)
    return 0


if __name__ == "__main__":
    sys.exit(main())
