"""WebSocket protocol constants and the close error."""

from __future__ import annotations

import enum
from typing import Optional, Union


class _OpenIntEnum(enum.IntEnum):
    """An IntEnum that accepts any integer, not only the named ones."""

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, int) and not isinstance(value, bool):
            pseudo = int.__new__(cls, value)
            pseudo._name_ = f"{cls.__name__}({value})"
            pseudo._value_ = value
            return pseudo
        return None


_OPCODE_NAMES = {
    0: "opContinuation",
    1: "opText",
    2: "opBinary",
    8: "opClose",
    9: "opPing",
    10: "opPong",
}


class Opcode(_OpenIntEnum):
    """A frame opcode; 3-7 and 11-15 are reserved."""

    CONTINUATION = 0
    TEXT = 1
    BINARY = 2
    CLOSE = 8
    PING = 9
    PONG = 10

    def __str__(self) -> str:
        return _OPCODE_NAMES.get(int(self), f"opcode({int(self)})")


_MESSAGE_TYPE_NAMES = {1: "MessageText", 2: "MessageBinary"}


class MessageType(_OpenIntEnum):
    """The type of a data message."""

    TEXT = 1
    BINARY = 2

    def __str__(self) -> str:
        return _MESSAGE_TYPE_NAMES.get(int(self), f"MessageType({int(self)})")


_STATUS_NAMES = {
    1000: "StatusNormalClosure",
    1001: "StatusGoingAway",
    1002: "StatusProtocolError",
    1003: "StatusUnsupportedData",
    1004: "statusReserved",
    1005: "StatusNoStatusRcvd",
    1006: "StatusAbnormalClosure",
    1007: "StatusInvalidFramePayloadData",
    1008: "StatusPolicyViolation",
    1009: "StatusMessageTooBig",
    1010: "StatusMandatoryExtension",
    1011: "StatusInternalError",
    1012: "StatusServiceRestart",
    1013: "StatusTryAgainLater",
    1014: "StatusBadGateway",
    1015: "StatusTLSHandshake",
}


class StatusCode(_OpenIntEnum):
    """A close status code; 3000-4999 may be used for custom codes."""

    NORMAL_CLOSURE = 1000
    GOING_AWAY = 1001
    PROTOCOL_ERROR = 1002
    UNSUPPORTED_DATA = 1003
    RESERVED = 1004
    NO_STATUS_RCVD = 1005
    ABNORMAL_CLOSURE = 1006
    INVALID_FRAME_PAYLOAD_DATA = 1007
    POLICY_VIOLATION = 1008
    MESSAGE_TOO_BIG = 1009
    MANDATORY_EXTENSION = 1010
    INTERNAL_ERROR = 1011
    SERVICE_RESTART = 1012
    TRY_AGAIN_LATER = 1013
    BAD_GATEWAY = 1014
    TLS_HANDSHAKE = 1015

    def __str__(self) -> str:
        return _STATUS_NAMES.get(int(self), f"StatusCode({int(self)})")


class CompressionMode(enum.IntEnum):
    """Modes of the permessage-deflate extension."""

    NO_CONTEXT_TAKEOVER = 0
    CONTEXT_TAKEOVER = 1
    DISABLED = 2


def _quote(text: str) -> str:
    out = ['"']
    for ch in text:
        if ch == "\\":
            out.append("\\\\")
        elif ch == '"':
            out.append('\\"')
        elif ch == "\n":
            out.append("\\n")
        elif ch == "\t":
            out.append("\\t")
        elif ch == "\r":
            out.append("\\r")
        elif ord(ch) < 0x20 or ord(ch) == 0x7F:
            out.append(f"\\x{ord(ch):02x}")
        else:
            out.append(ch)
    out.append('"')
    return "".join(out)


class CloseError(Exception):
    """The connection was closed with a status code and reason."""

    def __init__(self, code: Union[StatusCode, int], reason: str = "") -> None:
        super().__init__(code, reason)
        self.code = StatusCode(code)
        self.reason = reason

    def __str__(self) -> str:
        return f"status = {str(self.code)} and reason = {_quote(self.reason)}"


def close_status(err: Optional[BaseException]) -> Union[StatusCode, int]:
    """Return the status code of the CloseError in err's chain, or -1."""
    seen = set()
    pending = [err]
    while pending:
        current = pending.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, CloseError):
            return current.code
        nested = getattr(current, "exceptions", None)
        if isinstance(nested, (list, tuple)):
            pending.extend(reversed(nested))
        if current.__cause__ is not None:
            pending.append(current.__cause__)
        elif not current.__suppress_context__:
            pending.append(current.__context__)
    return -1