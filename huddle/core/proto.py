from __future__ import annotations

import base64
import time
from typing import Any, Dict, Optional, Type, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import MalformedFrame, UnknownType


# ---------------------------------------------------------------------------
# Frame kinds
# ---------------------------------------------------------------------------

# client -> relay
T_JOIN_ROOM = "join-room"
T_LEAVE_ROOM = "leave-room"
T_OFFER = "offer"
T_ANSWER = "answer"
T_ICE_CANDIDATE = "ice-candidate"
T_HEARTBEAT = "heartbeat"
T_CAPTURE_START = "capture-start"
T_CAPTURE_CHUNK = "capture-chunk"
T_CAPTURE_END = "capture-end"

# relay -> client
T_WELCOME = "welcome"
T_JOINED = "joined"
T_GUEST_JOINED = "guest-joined"
T_PEER_LEFT = "peer-left"
T_DELIVERY_FAILED = "delivery-failed"
T_CAPTURE_STORED = "capture-stored"
T_ERROR = "error"

RELAY_ID = "relay"

# addressed kind -> name of its opaque payload field
ADDRESSED_KINDS = {
    T_OFFER: "offer",
    T_ANSWER: "answer",
    T_ICE_CANDIDATE: "candidate",
}

# delivery-failed reasons
R_RECIPIENT_UNKNOWN = "RECIPIENT_UNKNOWN"
R_RECIPIENT_NOT_IN_SESSION = "RECIPIENT_NOT_IN_SESSION"


# ---------------------------------------------------------------------------
# Inbound models
# ---------------------------------------------------------------------------

class Frame(BaseModel):
    """Inbound frame as sent by a client.

    A client-supplied ``from`` is accepted on the wire but never read; the
    relay stamps the sender from its own records.
    """

    type: str = Field(min_length=1)
    to: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")


class JoinRoomPayload(BaseModel):
    """Room ids are opaque: kept byte-for-byte, only the empty string is refused."""

    room_id: str = Field(min_length=1)


class _OpaquePayload(BaseModel):
    model_config = ConfigDict(extra="allow")


class OfferPayload(_OpaquePayload):
    offer: Any


class AnswerPayload(_OpaquePayload):
    answer: Any


class IceCandidatePayload(_OpaquePayload):
    candidate: Any


class CaptureStartPayload(BaseModel):
    capture_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    size: int = Field(ge=0)
    sha256: str = Field(min_length=64, max_length=64)


class CaptureChunkPayload(BaseModel):
    capture_id: str = Field(min_length=1)
    index: int = Field(ge=0)
    data: str


class CaptureEndPayload(BaseModel):
    capture_id: str = Field(min_length=1)


class EmptyPayload(BaseModel):
    model_config = ConfigDict(extra="allow")


PAYLOAD_MODELS: Dict[str, Type[BaseModel]] = {
    T_JOIN_ROOM: JoinRoomPayload,
    T_LEAVE_ROOM: EmptyPayload,
    T_HEARTBEAT: EmptyPayload,
    T_OFFER: OfferPayload,
    T_ANSWER: AnswerPayload,
    T_ICE_CANDIDATE: IceCandidatePayload,
    T_CAPTURE_START: CaptureStartPayload,
    T_CAPTURE_CHUNK: CaptureChunkPayload,
    T_CAPTURE_END: CaptureEndPayload,
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def now_ms() -> int:
    """Milliseconds since the Unix epoch."""

    return int(time.time() * 1000)


def parse_frame(raw: Union[str, bytes]) -> Frame:
    """Decode one inbound websocket message into a :class:`Frame`."""

    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise MalformedFrame(f"invalid json: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedFrame("frame must be an object")
    try:
        return Frame.model_validate(data)
    except ValidationError as exc:
        raise MalformedFrame(_summarize(exc)) from exc


def validate_payload(frame: Frame) -> BaseModel:
    """Check the payload against the model registered for the frame kind."""

    model = PAYLOAD_MODELS.get(frame.type)
    if model is None:
        raise UnknownType(f"unsupported type {frame.type}")
    if frame.type in ADDRESSED_KINDS and not frame.to:
        raise MalformedFrame(f"{frame.type} requires 'to'")
    try:
        payload = model.model_validate(frame.payload)
    except ValidationError as exc:
        raise MalformedFrame(f"{frame.type}: {_summarize(exc)}") from exc
    field = ADDRESSED_KINDS.get(frame.type)
    if field is not None and getattr(payload, field) is None:
        raise MalformedFrame(f"{frame.type}: '{field}' must not be null")
    return payload


def build_frame(
    type: str,
    from_: str,
    to: str,
    payload: Dict[str, Any],
    *,
    ts: int | None = None,
) -> Dict[str, Any]:
    """Create an outbound envelope dict."""

    return {
        "type": type,
        "from": from_,
        "to": to,
        "ts": now_ms() if ts is None else ts,
        "payload": payload,
    }


def encode_frame(frame: Dict[str, Any]) -> str:
    return orjson.dumps(frame).decode("utf-8")


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.b64decode(value + padding, altchars=b"-_", validate=True)


def _summarize(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "frame"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


__all__ = [
    "Frame",
    "ADDRESSED_KINDS",
    "PAYLOAD_MODELS",
    "RELAY_ID",
    "now_ms",
    "parse_frame",
    "validate_payload",
    "build_frame",
    "encode_frame",
    "b64url",
    "b64url_decode",
]
