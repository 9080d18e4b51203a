"""WRP messages, locators, message normalisation and msgpack encoding."""

from __future__ import annotations

import enum
import re
import uuid
from dataclasses import dataclass, field
from dataclasses import replace as _replace
from typing import Callable, Dict, Iterator, List, Optional, Union

import msgpack
from msgpack.exceptions import UnpackException

SCHEME_MAC = "mac"
SCHEME_UUID = "uuid"
SCHEME_SERIAL = "serial"
SCHEME_DNS = "dns"
SCHEME_EVENT = "event"
SCHEME_SELF = "self"

_SCHEMES = frozenset(
    {SCHEME_MAC, SCHEME_UUID, SCHEME_SERIAL, SCHEME_DNS, SCHEME_EVENT, SCHEME_SELF}
)
_DEVICE_SCHEMES = frozenset({SCHEME_MAC, SCHEME_UUID, SCHEME_SERIAL, SCHEME_DNS})

_QOS_MIN = 0
_QOS_MAX = 99


class MessageType(enum.IntEnum):
    """The WRP message types."""

    INVALID0 = 0
    INVALID1 = 1
    AUTHORIZATION = 2
    SIMPLE_REQUEST_RESPONSE = 3
    SIMPLE_EVENT = 4
    CREATE = 5
    RETRIEVE = 6
    UPDATE = 7
    DELETE = 8
    SERVICE_REGISTRATION = 9
    SERVICE_ALIVE = 10
    UNKNOWN = 11


class WrpError(ValueError):
    """A WRP message, locator or device id is not acceptable."""


class InvalidLocatorError(WrpError):
    """A locator could not be parsed."""


class InvalidMessageTypeError(WrpError):
    """A message carries a type that is not allowed."""


class NotUTF8Error(WrpError):
    """A string field of a message is not valid UTF-8."""


class NotHandledError(WrpError):
    """No handler accepted the message."""


@dataclass
class Message:
    """A WRP message."""

    type: Union[MessageType, int] = MessageType.INVALID0
    source: str = ""
    destination: str = ""
    transaction_uuid: str = ""
    content_type: str = ""
    accept: str = ""
    status: Optional[int] = None
    request_delivery_response: Optional[int] = None
    headers: List[str] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)
    path: str = ""
    payload: bytes = b""
    service_name: str = ""
    url: str = ""
    partner_ids: List[str] = field(default_factory=list)
    session_id: str = ""
    quality_of_service: int = 0


@dataclass(frozen=True)
class Locator:
    """A parsed WRP locator: scheme:authority/service/ignored."""

    scheme: str
    authority: str
    service: str = ""
    ignored: str = ""
    id: str = ""

    def __str__(self) -> str:
        text = f"{self.scheme}:{self.authority}"
        if self.service:
            text += "/" + self.service
        return text + self.ignored


_ID_PATTERN = re.compile(
    r"^(?P<prefix>mac|uuid|dns|serial):(?P<id>[^/]+)(?P<service>/[^/]+)?",
    re.IGNORECASE,
)
_MAC_SEPARATORS = re.compile(r"[:\-.,]")
_MAC_DIGITS = re.compile(r"[0-9a-f]{12}")


def parse_device_id(text: str) -> str:
    """Return the canonical device id for text, e.g. mac:112233445566."""
    match = _ID_PATTERN.match(text)
    if match is None:
        raise WrpError(f"invalid device id: {text!r}")
    prefix = match["prefix"].lower()
    ident = match["id"]
    if prefix == SCHEME_MAC:
        ident = _MAC_SEPARATORS.sub("", ident).lower()
        if not _MAC_DIGITS.fullmatch(ident):
            raise WrpError(f"invalid mac address in device id: {text!r}")
    return f"{prefix}:{ident}"


def parse_locator(text: str) -> Locator:
    """Parse a locator string; raise InvalidLocatorError when it is malformed."""
    scheme, sep, rest = text.partition(":")
    if not sep or not scheme:
        raise InvalidLocatorError(f"invalid locator: {text!r}")
    scheme = scheme.lower()
    if scheme not in _SCHEMES:
        raise InvalidLocatorError(f"invalid locator scheme: {text!r}")

    authority, slash, rest = rest.partition("/")
    if not authority and scheme != SCHEME_SELF:
        raise InvalidLocatorError(f"invalid locator authority: {text!r}")

    service = ignored = ""
    if slash:
        if scheme == SCHEME_EVENT:
            ignored = "/" + rest
        else:
            service, more, tail = rest.partition("/")
            if more:
                ignored = "/" + tail

    ident = ""
    if scheme in _DEVICE_SCHEMES:
        try:
            ident = parse_device_id(f"{scheme}:{authority}")
        except WrpError as exc:
            raise InvalidLocatorError(f"invalid locator: {text!r}") from exc

    return Locator(scheme, authority, service, ignored, ident)


Normalizer = Callable[[Message], None]


class Normifier:
    """Applies a sequence of normalizers to a message, in order."""

    def __init__(self, *args: Optional[Normalizer]) -> None:
        self._normalizers = tuple(n for n in args if n is not None)

    def __len__(self) -> int:
        return len(self._normalizers)

    def normify(self, msg: Message) -> None:
        """Normalise msg in place; raise the first error a normalizer raises."""
        for normalizer in self._normalizers:
            normalizer(msg)


def validate_destination() -> Normalizer:
    """Require a parseable destination locator."""

    def check(msg: Message) -> None:
        parse_locator(msg.destination)

    return check


def validate_source() -> Normalizer:
    """Require a parseable source locator."""

    def check(msg: Message) -> None:
        parse_locator(msg.source)

    return check


def replace_any_self_locator(me: str) -> Normalizer:
    """Replace self: locators in source and destination with the device id me."""

    def rewrite(msg: Message) -> None:
        device = parse_device_id(me)
        scheme, _, authority = device.partition(":")
        for name in ("source", "destination"):
            loc = parse_locator(getattr(msg, name))
            if loc.scheme == SCHEME_SELF:
                updated = _replace(loc, scheme=scheme, authority=authority, id=device)
                setattr(msg, name, str(updated))

    return rewrite


def clamp_quality_of_service() -> Normalizer:
    """Clamp the quality of service into its allowed range."""

    def clamp(msg: Message) -> None:
        msg.quality_of_service = min(max(msg.quality_of_service, _QOS_MIN), _QOS_MAX)

    return clamp


def validate_message_type() -> Normalizer:
    """Reject messages whose type is one of the invalid values."""

    def check(msg: Message) -> None:
        if not MessageType.INVALID1 < msg.type <= MessageType.UNKNOWN:
            raise InvalidMessageTypeError(f"invalid message type: {msg.type!r}")

    return check


def ensure_transaction_uuid() -> Normalizer:
    """Give a message without a transaction uuid a fresh one."""

    def ensure(msg: Message) -> None:
        if not msg.transaction_uuid:
            msg.transaction_uuid = str(uuid.uuid4())

    return ensure


def _strings(msg: Message) -> Iterator[str]:
    yield msg.source
    yield msg.destination
    yield msg.transaction_uuid
    yield msg.content_type
    yield msg.accept
    yield from msg.headers
    for key, value in msg.metadata.items():
        yield key
        yield value
    yield msg.path
    yield msg.service_name
    yield msg.url
    yield from msg.partner_ids
    yield msg.session_id


def validate_only_utf8_strings() -> Normalizer:
    """Reject messages holding a string that is not valid UTF-8."""

    def check(msg: Message) -> None:
        for text in _strings(msg):
            try:
                text.encode("utf-8")
            except UnicodeEncodeError as exc:
                raise NotUTF8Error(f"field is not valid UTF-8: {text!r}") from exc

    return check


_WIRE = (
    ("type", "msg_type"),
    ("source", "source"),
    ("destination", "dest"),
    ("transaction_uuid", "transaction_uuid"),
    ("content_type", "content_type"),
    ("accept", "accept"),
    ("status", "status"),
    ("request_delivery_response", "rdr"),
    ("headers", "headers"),
    ("metadata", "metadata"),
    ("path", "path"),
    ("payload", "payload"),
    ("service_name", "service_name"),
    ("url", "url"),
    ("partner_ids", "partner_ids"),
    ("session_id", "session_id"),
    ("quality_of_service", "qos"),
)
_STRING_FIELDS = frozenset(
    {
        "source",
        "destination",
        "transaction_uuid",
        "content_type",
        "accept",
        "path",
        "service_name",
        "url",
        "session_id",
    }
)
_INT_FIELDS = frozenset({"status", "request_delivery_response", "quality_of_service"})
_LIST_FIELDS = frozenset({"headers", "partner_ids"})


def encode_msgpack(msg: Message) -> bytes:
    """Encode msg in the WRP msgpack form, leaving out empty fields."""
    body = {}
    for attr, key in _WIRE:
        value = getattr(msg, attr)
        if attr == "type":
            body[key] = int(value)
            continue
        if value is None:
            continue
        if isinstance(value, (str, bytes, list, dict)) and not value:
            continue
        if attr == "quality_of_service" and not value:
            continue
        if isinstance(value, list):
            value = list(value)
        elif isinstance(value, dict):
            value = dict(value)
        body[key] = value
    return msgpack.packb(body, use_bin_type=True)


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _convert(attr: str, value: object) -> object:
    if attr in _STRING_FIELDS:
        if isinstance(value, str):
            return value
    elif attr in _INT_FIELDS:
        if _is_int(value):
            return value
    elif attr in _LIST_FIELDS:
        if isinstance(value, list) and all(isinstance(v, str) for v in value):
            return list(value)
    elif attr == "metadata":
        if isinstance(value, dict) and all(
            isinstance(k, str) and isinstance(v, str) for k, v in value.items()
        ):
            return dict(value)
    elif attr == "payload":
        if isinstance(value, bytes):
            return value
        if isinstance(value, str):
            return value.encode("utf-8")
    raise WrpError(f"field {attr} has an unexpected value: {value!r}")


def decode_msgpack(data: bytes) -> Message:
    """Decode a WRP message from its msgpack form."""
    try:
        body = msgpack.unpackb(data, raw=False, strict_map_key=False)
    except (ValueError, TypeError, UnpackException) as exc:
        raise WrpError("message could not be decoded") from exc
    if not isinstance(body, dict):
        raise WrpError("message is not a map")

    raw_type = body.get("msg_type", 0)
    if not _is_int(raw_type):
        raise WrpError(f"message type is not an integer: {raw_type!r}")
    try:
        msg_type: Union[MessageType, int] = MessageType(raw_type)
    except ValueError:
        msg_type = raw_type

    fields = {"type": msg_type}
    for attr, key in _WIRE[1:]:
        if key in body and body[key] is not None:
            fields[attr] = _convert(attr, body[key])
    return Message(**fields)