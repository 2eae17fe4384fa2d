from __future__ import annotations


class RelayError(Exception):
    """Base for failures reported back to the sending connection."""

    code = "RELAY_ERROR"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class MalformedFrame(RelayError):
    code = "MALFORMED"


class UnknownType(RelayError):
    code = "UNKNOWN_TYPE"


class NotJoined(RelayError):
    code = "NOT_JOINED"


class AlreadyJoined(RelayError):
    code = "ALREADY_JOINED"


class CaptureRejected(RelayError):
    code = "CAPTURE_REJECTED"


class ConnectionGone(RelayError):
    code = "DETACHED"


ERROR_CODES = {
    cls.code for cls in (MalformedFrame, UnknownType, NotJoined, AlreadyJoined, CaptureRejected, ConnectionGone)
}

__all__ = [
    "RelayError",
    "MalformedFrame",
    "UnknownType",
    "NotJoined",
    "AlreadyJoined",
    "CaptureRejected",
    "ConnectionGone",
    "ERROR_CODES",
]
