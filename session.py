from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Optional

import grpc

from logger import logger
from protocol import (
    RUN_METHOD,
    AIRequest,
    AIResponse,
    RequestEnvelope,
    ResponseEnvelope,
    classify_response,
)

MAX_MESSAGE_BYTES = 64 * 1024 * 1024

CallFactory = Callable[[], Any]


@dataclass(frozen=True)
class SessionStatus:
    code: str
    details: str

    @property
    def ok(self) -> bool:
        return self.code == grpc.StatusCode.OK.name


def open_channel(target: str) -> grpc.aio.Channel:
    return grpc.aio.insecure_channel(
        target,
        options=[
            ("grpc.max_send_message_length", MAX_MESSAGE_BYTES),
            ("grpc.max_receive_message_length", MAX_MESSAGE_BYTES),
        ],
    )


def run_call_factory(channel: grpc.aio.Channel, timeout_s: Optional[float] = None) -> CallFactory:
    """Bind the bidirectional ``Run`` method; each call of the result starts a new stream."""
    multicallable = channel.stream_stream(
        RUN_METHOD,
        request_serializer=AIRequest.SerializeToString,
        response_deserializer=AIResponse.FromString,
    )

    def _open_call() -> Any:
        return multicallable(timeout=timeout_s)

    return _open_call


class RPCSession:
    """One bidirectional ``Run`` stream.

    Only one task may call ``write`` at a time. ``receive`` returns ``None``
    once the server half-closes or the transport fails; the failure is kept
    and surfaces from ``close`` as a non-ok ``SessionStatus``.
    """

    def __init__(self, open_call: CallFactory, label: str = "") -> None:
        self._open_call = open_call
        self.label = label
        self._call: Any = None
        self._error: Optional[grpc.aio.AioRpcError] = None
        self._closed = False

    def open(self) -> None:
        if self._call is not None:
            raise RuntimeError("session is already open")
        self._call = self._open_call()

    @property
    def failed(self) -> bool:
        return self._error is not None

    async def write(self, request: RequestEnvelope) -> bool:
        if self._call is None:
            raise RuntimeError("session is not open")
        if self._error is not None:
            return False
        try:
            await self._call.write(request.to_message())
        except grpc.aio.AioRpcError as exc:
            self._record_error(exc, f"write {request.kind}")
            return False
        except asyncio.InvalidStateError as exc:
            logger.warning("%s write %s after stream end: %s", self.label, request.kind, exc)
            return False
        return True

    async def receive(self) -> Optional[ResponseEnvelope]:
        if self._call is None:
            raise RuntimeError("session is not open")
        if self._error is not None:
            return None
        try:
            reply = await self._call.read()
        except grpc.aio.AioRpcError as exc:
            self._record_error(exc, "read")
            return None
        if reply is grpc.aio.EOF:
            return None
        return classify_response(reply)

    async def close(self) -> SessionStatus:
        if self._call is None:
            raise RuntimeError("session is not open")
        if not self._closed:
            self._closed = True
            try:
                await self._call.done_writing()
            except grpc.aio.AioRpcError as exc:
                self._record_error(exc, "done_writing")
            except asyncio.InvalidStateError:
                pass

        if self._error is not None:
            return SessionStatus(code=self._error.code().name, details=self._error.details() or "")
        code = await self._call.code()
        details = await self._call.details()
        return SessionStatus(code=code.name, details=details or "")

    def _record_error(self, exc: grpc.aio.AioRpcError, action: str) -> None:
        if self._error is None:
            self._error = exc
        logger.error(
            "%s stream %s failed: %s: %s",
            self.label,
            action,
            exc.code().name,
            exc.details(),
        )
