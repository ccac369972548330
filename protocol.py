from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

PROTO_PACKAGE = "hce_ai"
RUN_METHOD = f"/{PROTO_PACKAGE}.ai_inference/Run"

TARGET_LOAD_PIPELINE = "load_pipeline"
TARGET_RUN = "run"
PERFORMANCE_DATA_TYPE = "PerformanceData"
STATUS_SUCCESS = 0
# jobHandle is a uint64 on the wire
MAX_JOB_HANDLE = 2**64 - 1

_F = descriptor_pb2.FieldDescriptorProto


def _add_field(
    message: descriptor_pb2.DescriptorProto,
    name: str,
    number: int,
    field_type: int,
    label: int = _F.LABEL_OPTIONAL,
    type_name: Optional[str] = None,
) -> None:
    proto_field = message.field.add()
    proto_field.name = name
    proto_field.number = number
    proto_field.type = field_type
    proto_field.label = label
    if type_name:
        proto_field.type_name = type_name


def _build_file_descriptor() -> descriptor_pb2.FileDescriptorProto:
    file_proto = descriptor_pb2.FileDescriptorProto()
    file_proto.name = "hce_ai/ai_inference.proto"
    file_proto.package = PROTO_PACKAGE
    file_proto.syntax = "proto3"

    request = file_proto.message_type.add()
    request.name = "AI_Request"
    _add_field(request, "target", 1, _F.TYPE_STRING)
    _add_field(request, "pipelineConfig", 2, _F.TYPE_STRING)
    _add_field(request, "mediaUri", 3, _F.TYPE_STRING, label=_F.LABEL_REPEATED)
    _add_field(request, "suggestedWeight", 4, _F.TYPE_UINT32)
    _add_field(request, "streamNum", 5, _F.TYPE_UINT32)
    _add_field(request, "jobHandle", 6, _F.TYPE_UINT64)

    stream_response = file_proto.message_type.add()
    stream_response.name = "Stream_Response"
    _add_field(stream_response, "jsonMessages", 1, _F.TYPE_STRING)
    _add_field(stream_response, "binary", 2, _F.TYPE_BYTES)

    response = file_proto.message_type.add()
    response.name = "AI_Response"
    _add_field(response, "status", 1, _F.TYPE_INT32)
    _add_field(response, "message", 2, _F.TYPE_STRING)
    entry = response.nested_type.add()
    entry.name = "ResponsesEntry"
    entry.options.map_entry = True
    _add_field(entry, "key", 1, _F.TYPE_STRING)
    _add_field(
        entry, "value", 2, _F.TYPE_MESSAGE, type_name=f".{PROTO_PACKAGE}.Stream_Response"
    )
    _add_field(
        response,
        "responses",
        3,
        _F.TYPE_MESSAGE,
        label=_F.LABEL_REPEATED,
        type_name=f".{PROTO_PACKAGE}.AI_Response.ResponsesEntry",
    )

    service = file_proto.service.add()
    service.name = "ai_inference"
    method = service.method.add()
    method.name = "Run"
    method.input_type = f".{PROTO_PACKAGE}.AI_Request"
    method.output_type = f".{PROTO_PACKAGE}.AI_Response"
    method.client_streaming = True
    method.server_streaming = True
    return file_proto


_POOL = descriptor_pool.DescriptorPool()
_POOL.AddSerializedFile(_build_file_descriptor().SerializeToString())

AIRequest = message_factory.GetMessageClass(
    _POOL.FindMessageTypeByName(f"{PROTO_PACKAGE}.AI_Request")
)
AIResponse = message_factory.GetMessageClass(
    _POOL.FindMessageTypeByName(f"{PROTO_PACKAGE}.AI_Response")
)
StreamResponse = message_factory.GetMessageClass(
    _POOL.FindMessageTypeByName(f"{PROTO_PACKAGE}.Stream_Response")
)


# ---- typed JSON decoding ----


@dataclass(frozen=True)
class Decoded:
    """Outcome of one decode attempt: either ``value`` or ``error`` is set."""

    value: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def decode_json(text: str) -> Decoded:
    if not text:
        return Decoded(error="empty message")
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        return Decoded(error=f"invalid JSON: {exc.msg} at position {exc.pos}")
    if not isinstance(parsed, dict):
        return Decoded(error=f"expected a JSON object, got {type(parsed).__name__}")
    return Decoded(value=parsed)


def decode_handle(payload: Decoded) -> Decoded:
    if not payload.ok:
        return payload
    raw = payload.value.get("handle")
    if raw is None:
        return Decoded(error="field 'handle' is absent")
    # The service serializes the handle as a decimal string
    if isinstance(raw, bool) or (isinstance(raw, float) and not raw.is_integer()):
        return Decoded(error=f"field 'handle' is not an integer: {raw!r}")
    try:
        handle = int(raw)
    except (TypeError, ValueError):
        return Decoded(error=f"field 'handle' is not an integer: {raw!r}")
    if handle < 0:
        return Decoded(error=f"field 'handle' is negative: {handle}")
    if handle > MAX_JOB_HANDLE:
        return Decoded(error=f"field 'handle' does not fit in uint64: {handle}")
    return Decoded(value=handle)


def decode_latency(payload: Decoded) -> Decoded:
    if not payload.ok:
        return payload
    raw = payload.value.get("latency")
    if raw is None:
        return Decoded(error="field 'latency' is absent")
    if isinstance(raw, bool):
        return Decoded(error=f"field 'latency' is not a number: {raw!r}")
    try:
        return Decoded(value=float(raw))
    except (TypeError, ValueError):
        return Decoded(error=f"field 'latency' is not a number: {raw!r}")


def payload_type(payload: Decoded) -> Optional[str]:
    if not payload.ok:
        return None
    value = payload.value.get("Type")
    return value if isinstance(value, str) else None


# ---- request envelope ----


@dataclass(frozen=True)
class LoadPipelineRequest:
    config: str
    stream_num: int
    suggested_weight: int = 0

    kind = TARGET_LOAD_PIPELINE

    def to_message(self) -> Any:
        return AIRequest(
            target=TARGET_LOAD_PIPELINE,
            pipelineConfig=self.config,
            suggestedWeight=self.suggested_weight,
            streamNum=self.stream_num,
        )


@dataclass(frozen=True)
class RunRequest:
    stream_num: int
    media_uris: tuple[str, ...]
    job_handle: int = 0
    config: Optional[str] = None
    suggested_weight: int = 0

    kind = TARGET_RUN

    def __post_init__(self) -> None:
        if (self.job_handle > 0) == (self.config is not None):
            raise ValueError("run request needs exactly one of job_handle or config")

    @classmethod
    def for_worker(
        cls, stream_num: int, media_uris: list[str], job_handle: int, config: str
    ) -> "RunRequest":
        if job_handle > 0:
            return cls(stream_num=stream_num, media_uris=tuple(media_uris), job_handle=job_handle)
        return cls(stream_num=stream_num, media_uris=tuple(media_uris), config=config)

    def to_message(self) -> Any:
        message = AIRequest(
            target=TARGET_RUN,
            suggestedWeight=self.suggested_weight,
            streamNum=self.stream_num,
        )
        message.mediaUri.extend(self.media_uris)
        if self.job_handle > 0:
            message.jobHandle = self.job_handle
        else:
            message.pipelineConfig = self.config or ""
        return message


RequestEnvelope = Union[LoadPipelineRequest, RunRequest]


# ---- response envelope ----


@dataclass(frozen=True)
class BinaryFrame:
    frame_id: str
    metadata: Decoded
    size: int


@dataclass(frozen=True)
class StatusReply:
    code: int
    message: str
    payload: Decoded

    kind = "status"

    @property
    def succeeded(self) -> bool:
        return self.code == STATUS_SUCCESS


@dataclass(frozen=True)
class BinaryReply:
    code: int
    message: str
    payload: Decoded
    frames: list[BinaryFrame] = field(default_factory=list)

    kind = "binary"

    @property
    def succeeded(self) -> bool:
        return self.code == STATUS_SUCCESS


@dataclass(frozen=True)
class PerformanceReport:
    code: int
    message: str
    payload: Decoded

    kind = "performance"

    @property
    def succeeded(self) -> bool:
        return self.code == STATUS_SUCCESS


ResponseEnvelope = Union[StatusReply, BinaryReply, PerformanceReport]


def classify_response(reply: Any) -> ResponseEnvelope:
    code = int(reply.status)
    message = str(reply.message)
    payload = decode_json(message)

    if payload_type(payload) == PERFORMANCE_DATA_TYPE:
        return PerformanceReport(code=code, message=message, payload=payload)

    frames = [
        BinaryFrame(
            frame_id=frame_id,
            metadata=decode_json(entry.jsonMessages),
            size=len(entry.binary),
        )
        for frame_id, entry in sorted(reply.responses.items(), key=lambda item: item[0])
        if entry.binary
    ]
    if frames:
        return BinaryReply(code=code, message=message, payload=payload, frames=frames)
    return StatusReply(code=code, message=message, payload=payload)
