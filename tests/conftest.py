"""
Shared fakes for the load-test harness tests.

The fake call object mimics the ``grpc.aio`` stream-stream call surface used
by ``RPCSession`` so sessions and workers run against scripted replies.
"""

import json
from pathlib import Path
from typing import Any, Optional

import grpc
import pytest

from protocol import AIResponse
from session import RPCSession


def make_reply(status: int = 0, message: str = "", binaries: Optional[dict] = None) -> Any:
    reply = AIResponse(status=status, message=message)
    for frame_id, (json_messages, payload) in (binaries or {}).items():
        reply.responses[frame_id].jsonMessages = json_messages
        reply.responses[frame_id].binary = payload
    return reply


def run_reply(latency: float, status: int = 0) -> Any:
    return make_reply(status, json.dumps({"status_code": "0", "latency": latency, "roi_info": []}))


def handle_reply(handle: Any, status: int = 0) -> Any:
    return make_reply(
        status,
        json.dumps({"description": "Success", "request": "load_pipeline", "handle": handle}),
    )


def performance_reply(extra: Optional[dict] = None) -> Any:
    payload = {"Type": "PerformanceData", "fps": 29.5}
    payload.update(extra or {})
    return make_reply(0, json.dumps(payload))


def rpc_error(code: grpc.StatusCode = grpc.StatusCode.UNAVAILABLE, details: str = "connection refused"):
    return grpc.aio.AioRpcError(
        code=code,
        initial_metadata=grpc.aio.Metadata(),
        trailing_metadata=grpc.aio.Metadata(),
        details=details,
    )


class FakeCall:
    """Scripted stand-in for a grpc.aio bidirectional call."""

    def __init__(self, replies=(), code=grpc.StatusCode.OK, details="", write_error=None):
        self.replies = list(replies)
        self.written = []
        self.done_writing_called = False
        self.code_requested = False
        self._code = code
        self._details = details
        self._write_error = write_error

    async def write(self, message):
        if self._write_error is not None:
            raise self._write_error
        self.written.append(message)

    async def read(self):
        if not self.replies:
            return grpc.aio.EOF
        item = self.replies.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def done_writing(self):
        self.done_writing_called = True

    async def code(self):
        self.code_requested = True
        return self._code

    async def details(self):
        return self._details


class SessionFactory:
    """Hands out one RPCSession per scripted FakeCall, in order."""

    def __init__(self, calls):
        self.calls = list(calls)
        self.used = []

    def _open_call(self):
        call = self.calls.pop(0)
        self.used.append(call)
        return call

    def __call__(self) -> RPCSession:
        return RPCSession(self._open_call, label="[test]")


class FakeProbe:
    def __init__(self, value: Optional[float], available: bool = True):
        self.value = value
        self.available = available

    def sample(self):
        return self.value


class StepClock:
    """Monotonic clock that advances one second per reading."""

    def __init__(self, start: float = 0.0, step: float = 1.0):
        self.now = start
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


@pytest.fixture
def dataset(tmp_path) -> Path:
    root = tmp_path / "dataset"
    sensor = root / "bgr"
    sensor.mkdir(parents=True)
    for name in ("000002.bin", "000000.bin", "000001.bin"):
        (sensor / name).write_bytes(b"\x00" * 16)
    (sensor / "notes.txt").write_text("ignored", encoding="utf-8")
    return root
