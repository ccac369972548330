"""
Unit tests for the CPU and GPU utilization probes.
"""

import asyncio
import time

import pytest

import metrics_gpu
from metrics_cpu import CPUMetricsProbe
from metrics_gpu import (
    GPUMetricsProbe,
    MetricsProbeError,
    parse_intel_gpu_top,
    parse_nvidia_smi,
    resolve_backend,
)


class TestNvidiaSmi:
    def test_rows(self):
        output = (
            "2026/01/02 10:00:00.000, 0, NVIDIA A100-SXM4-80GB, 87, 41, 30512, 81920\n"
            "2026/01/02 10:00:00.000, 1, NVIDIA, Inc. Custom, 13, [N/A], 1024, 81920\n"
        )

        rows = parse_nvidia_smi(output, 1000)

        assert [row["utilization_gpu_pct"] for row in rows] == [87.0, 13.0]
        assert rows[1]["gpu_name"] == "NVIDIA,Inc. Custom"
        assert rows[1]["utilization_memory_pct"] is None
        assert all(row["scrape_ok"] for row in rows)

    def test_short_row(self):
        rows = parse_nvidia_smi("garbage, 1", 1000)

        assert not rows[0]["scrape_ok"]


class TestIntelGpuTop:
    def test_last_sample_wins(self):
        output = (
            '[\n{"period": {"duration": 500}, "engines": {"Render/3D/0": {"busy": 12.5}}},\n'
            '{"period": {"duration": 500}, "engines": {"Render/3D/0": {"busy": 64.0}, '
            '"Video/0": {"busy": 99.0}}},\n{"period": {"dura'
        )

        rows = parse_intel_gpu_top(output, 1000)

        assert rows[0]["scrape_ok"]
        assert rows[0]["utilization_gpu_pct"] == 64.0

    def test_no_samples(self):
        assert not parse_intel_gpu_top("", 1000)[0]["scrape_ok"]
        assert not parse_intel_gpu_top('{"engines": {"Video/0": {"busy": 3}}}', 1000)[0]["scrape_ok"]


class TestGpuProbe:
    def test_auto_without_tools(self, monkeypatch):
        monkeypatch.setattr(metrics_gpu.shutil, "which", lambda name: None)

        with pytest.raises(MetricsProbeError):
            resolve_backend("auto")

    def test_explicit_backend(self):
        assert resolve_backend("intel_gpu_top") == "intel_gpu_top"
        with pytest.raises(ValueError):
            resolve_backend("rocm-smi")

    @pytest.mark.asyncio
    async def test_disabled_backend(self):
        probe = GPUMetricsProbe(backend="none")

        await probe.start()
        await probe.stop()

        assert not probe.available
        assert probe.sample() is None
        assert await probe.rows() == []

    def test_latest_sample_is_mean_of_ok_rows(self):
        probe = GPUMetricsProbe(backend="nvidia-smi")

        probe._update_latest(
            parse_nvidia_smi(
                "t, 0, A, 20, 1, 1, 2\nt, 1, B, 60, 1, 1, 2\n",
                1000,
            )
        )

        assert probe.sample() == 40.0


class TestCpuProbe:
    def test_system_scope_without_process_name(self):
        probe = CPUMetricsProbe(process_name=None)

        row = probe.read_once()

        assert row["scope"] == "system"
        assert row["matched_processes"] == 0
        assert row["cpu_utilization_pct"] >= 0.0

    def test_missing_process_falls_back_to_system(self):
        probe = CPUMetricsProbe(process_name="no-such-process-for-loadtest")

        row = probe.read_once()

        assert row["scope"] == "system"

    @pytest.mark.asyncio
    async def test_slow_polls_do_not_starve_other_tasks(self, monkeypatch):
        probe = CPUMetricsProbe(process_name="HceAILLInfServe", poll_interval_s=0.001)

        def slow_read():
            time.sleep(0.02)
            return {
                "timestamp_unix_ms": 0,
                "scope": "system",
                "matched_processes": 0,
                "cpu_utilization_pct": 12.0,
            }

        monkeypatch.setattr(probe, "read_once", slow_read)
        done = asyncio.Event()

        async def other_work():
            await asyncio.sleep(0.05)
            done.set()

        await probe.start()
        task = asyncio.create_task(other_work())
        await asyncio.wait_for(done.wait(), timeout=2.0)
        await asyncio.wait_for(probe.stop(), timeout=2.0)
        await task

        assert not probe.available
        assert probe.sample() == 12.0

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        probe = CPUMetricsProbe(process_name=None, poll_interval_s=0.01)

        await probe.start()
        assert probe.available
        await asyncio.sleep(0.05)
        await probe.stop()

        assert not probe.available
        rows = await probe.rows()
        assert rows
        assert probe.sample() == rows[-1]["cpu_utilization_pct"]
