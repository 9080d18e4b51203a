"""A self-maintaining websocket connection that carries WRP messages."""

from __future__ import annotations

import enum
import itertools
import logging
import socket
import ssl
import struct
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union
from urllib.parse import urlsplit, urlunsplit

import websocket as wsclient

from .events import CancelFunc, Connect, Disconnect, Heartbeat, HeartbeatType, IPMode
from .wrp import Message, decode_msgpack, encode_msgpack
from .wsproto import CloseError, StatusCode

_log = logging.getLogger(__name__)

Headers = Dict[str, List[str]]


class MisconfiguredError(ValueError):
    """The websocket was given an unusable configuration."""


class ClosedError(ConnectionError):
    """There is no open connection to send on."""


class InvalidMessageTypeError(ValueError):
    """A data message that is not binary was received."""


class IPNetwork(str, enum.Enum):
    """The network family a connection attempt dials over."""

    IPV4 = "tcp4"
    IPV6 = "tcp6"

    def to_event(self) -> IPMode:
        return IPMode.IPV4 if self is IPNetwork.IPV4 else IPMode.IPV6


def empty_decorator(headers: Headers) -> None:
    """A header decorator that changes nothing."""
    return None


def limit(text: str) -> str:
    """Trim text to the 125 bytes a close reason may hold."""
    return text[:125] if len(text) > 125 else text


def _canonical(key: str) -> str:
    return "-".join(part[:1].upper() + part[1:].lower() for part in key.split("-"))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Listeners:
    def __init__(self, method: str) -> None:
        self._method = method
        self._lock = threading.Lock()
        self._items: Dict[int, Callable[[Any], Any]] = {}
        self._tokens = itertools.count()

    def add(self, listener: Any) -> CancelFunc:
        if listener is None:
            raise MisconfiguredError("listener may not be None")
        call = getattr(listener, self._method, None)
        if not callable(call):
            if not callable(listener):
                raise MisconfiguredError(f"listener must be callable or have {self._method}")
            call = listener
        with self._lock:
            token = next(self._tokens)
            self._items[token] = call

        def cancel() -> None:
            with self._lock:
                self._items.pop(token, None)

        return cancel

    def emit(self, value: Any) -> None:
        with self._lock:
            calls = list(self._items.values())
        for call in calls:
            try:
                call(value)
            except Exception:
                _log.debug("listener raised", exc_info=True)


_UNSET: Any = object()


class Websocket:
    """Keeps a websocket connection open, redialling with back-off.

    Durations are in seconds.  A zero ``send_timeout`` means no timeout and a
    zero ``max_message_bytes`` means no size limit.
    """

    def __init__(
        self,
        device_id: str = "",
        url: Optional[str] = None,
        fetch_url: Optional[Callable[[float], str]] = None,
        fetch_url_timeout: float = 30.0,
        credentials_decorator: Optional[Callable[[Headers], Any]] = empty_decorator,
        convey_decorator: Optional[Callable[[Headers], Any]] = empty_decorator,
        inactivity_timeout: float = 60.0,
        ping_write_timeout: float = 0.0,
        keep_alive_interval: float = 0.0,
        with_ipv4: bool = True,
        with_ipv6: bool = True,
        send_timeout: float = 0.0,
        additional_headers: Optional[Mapping[str, Union[str, Iterable[str]]]] = None,
        once: bool = False,
        now: Optional[Callable[[], datetime]] = _UNSET,
        retry_policy: Any = None,
        max_message_bytes: int = 0,
    ) -> None:
        for name, value in (
            ("FetchURLTimeout", fetch_url_timeout),
            ("InactivityTimeout", inactivity_timeout),
            ("PingWriteTimeout", ping_write_timeout),
            ("KeepAliveInterval", keep_alive_interval),
            ("SendTimeout", send_timeout),
            ("MaxMessageBytes", max_message_bytes),
        ):
            if value < 0:
                raise MisconfiguredError(f"negative {name}")
        if not device_id:
            raise MisconfiguredError("missing DeviceID")
        if url is not None and fetch_url is not None:
            raise MisconfiguredError("give either url or fetch_url, not both")
        if url is not None:
            if not url:
                raise MisconfiguredError("empty URL")
            fixed = url
            fetch_url = lambda timeout: fixed  # noqa: E731
        if fetch_url is None:
            raise MisconfiguredError("missing URL fetcher")
        if not with_ipv4 and not with_ipv6:
            raise MisconfiguredError("at least one IP mode must be allowed")
        if credentials_decorator is None:
            raise MisconfiguredError("nil CredentialsDecorator")
        if convey_decorator is None:
            raise MisconfiguredError("nil ConveyDecorator")
        if now is _UNSET:
            now = _utcnow
        if now is None:
            raise MisconfiguredError("nil NowFunc")
        if retry_policy is None:
            raise MisconfiguredError("nil RetryPolicy")

        self.device_id = device_id
        self.additional_headers: Headers = {"X-Webpa-Device-Name": [device_id]}
        for key, values in (additional_headers or {}).items():
            if isinstance(values, str):
                values = [values]
            self.additional_headers.setdefault(_canonical(key), []).extend(values)

        self.fetch_url = fetch_url
        self.fetch_url_timeout = fetch_url_timeout
        self.credentials_decorator = credentials_decorator
        self.convey_decorator = convey_decorator
        self.inactivity_timeout = inactivity_timeout
        self.ping_write_timeout = ping_write_timeout
        self.keep_alive_interval = keep_alive_interval
        self.with_ipv4 = with_ipv4
        self.with_ipv6 = with_ipv6
        self.send_timeout = send_timeout
        self.once = once
        self.now = now
        self.retry_policy = retry_policy
        self.max_message_bytes = max_message_bytes

        self._connect = _Listeners("on_connect")
        self._disconnect = _Listeners("on_disconnect")
        self._heartbeat = _Listeners("on_heartbeat")
        self._message = _Listeners("on_message")

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._conn: Optional[wsclient.WebSocket] = None

    # listeners -----------------------------------------------------------

    def add_message_listener(self, listener: Any) -> CancelFunc:
        """Be told of every WRP message received."""
        return self._message.add(listener)

    def add_connect_listener(self, listener: Any) -> CancelFunc:
        """Be told of every connection attempt."""
        return self._connect.add(listener)

    def add_disconnect_listener(self, listener: Any) -> CancelFunc:
        """Be told when a connection is lost."""
        return self._disconnect.add(listener)

    def add_heartbeat_listener(self, listener: Any) -> CancelFunc:
        """Be told of pings and pongs."""
        return self._heartbeat.add(listener)

    # lifecycle -----------------------------------------------------------

    def start(self) -> None:
        """Start maintaining the connection; further calls do nothing."""
        with self._lock:
            if self._thread is not None:
                return
            self._thread = threading.Thread(target=self._run, daemon=True)
            self._thread.start()

    def stop(self) -> None:
        """Close the connection and wait for the background work to end."""
        with self._lock:
            conn = self._conn
            thread = self._thread
            self._stop.set()
        if conn is not None:
            try:
                conn.send_close(int(StatusCode.NORMAL_CLOSURE))
            except Exception:
                pass
            try:
                conn.abort()
            except Exception:
                pass
        if thread is not None:
            thread.join()

    def handle_wrp(self, msg: Message) -> None:
        """Send msg over the connection."""
        self.send(msg)

    def send(self, msg: Message) -> None:
        """Send msg as a binary frame; raise ClosedError if not connected."""
        data = encode_msgpack(msg)
        with self._lock:
            if self._conn is None:
                raise ClosedError("websocket closed")
            self._conn.send(data, opcode=wsclient.ABNF.OPCODE_BINARY)

    def next_mode(self, mode: IPNetwork) -> IPNetwork:
        """Return the network to try after mode."""
        if mode is IPNetwork.IPV4 and self.with_ipv6:
            return IPNetwork.IPV6
        if mode is IPNetwork.IPV6 and self.with_ipv4:
            return IPNetwork.IPV4
        return mode

    # internals -----------------------------------------------------------

    def _decorate(self) -> None:
        for decorate in (self.credentials_decorator, self.convey_decorator):
            try:
                decorate(self.additional_headers)
            except Exception:
                _log.debug("header decorator failed", exc_info=True)

    def _run(self) -> None:
        policy = self.retry_policy.new_policy()
        mode = self.next_mode(IPNetwork.IPV4)
        while not self._stop.is_set():
            mode = self.next_mode(mode)
            started = self.now()
            self._decorate()
            dial_err: Optional[BaseException] = None
            conn = None
            try:
                conn = self._dial(mode)
            except Exception as exc:
                dial_err = exc
            at = self.now()

            if conn is not None:
                self._connect.emit(Connect(started=started, at=at, mode=mode.to_event()))
                policy = self.retry_policy.new_policy()
                self._read_loop(conn)

            if self.once or self._stop.is_set():
                return

            delay, _ = policy.next()
            if dial_err is not None:
                self._connect.emit(
                    Connect(
                        started=started,
                        at=at,
                        mode=mode.to_event(),
                        retrying_at=self.now() + timedelta(seconds=delay),
                        err=dial_err,
                    )
                )
            if self._stop.wait(delay):
                return

    def _dial(self, mode: IPNetwork) -> wsclient.WebSocket:
        url = self.fetch_url(self.fetch_url_timeout)
        parts = urlsplit(url)
        scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
        if scheme not in ("ws", "wss"):
            raise ValueError(f"unsupported URL scheme: {parts.scheme!r}")
        host = parts.hostname or ""
        port = parts.port or (443 if scheme == "wss" else 80)
        family = socket.AF_INET if mode is IPNetwork.IPV4 else socket.AF_INET6

        last: Optional[BaseException] = None
        sock = None
        for fam, kind, proto, _, addr in socket.getaddrinfo(
            host, port, family, socket.SOCK_STREAM
        ):
            candidate = socket.socket(fam, kind, proto)
            candidate.settimeout(30.0)
            try:
                candidate.connect(addr)
            except OSError as exc:
                candidate.close()
                last = exc
                continue
            sock = candidate
            break
        if sock is None:
            raise last or OSError(f"no {mode.value} address for {host}")

        if self.keep_alive_interval > 0:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        if scheme == "wss":
            sock = ssl.create_default_context().wrap_socket(sock, server_hostname=host)

        headers = [f"{k}: {v}" for k, values in self.additional_headers.items() for v in values]
        conn = wsclient.WebSocket()
        try:
            conn.connect(
                urlunsplit((scheme, parts.netloc, parts.path or "/", parts.query, "")),
                socket=sock,
                header=headers,
                timeout=30.0,
            )
        except Exception:
            sock.close()
            raise
        return conn

    def _read_loop(self, conn: wsclient.WebSocket) -> None:
        with self._lock:
            if self._stop.is_set():
                conn.abort()
                return
            self._conn = conn
        ABNF = wsclient.ABNF
        deadline = time.monotonic() + self.inactivity_timeout

        while True:
            err: Optional[BaseException] = None
            msg: Optional[Message] = None
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                err = TimeoutError("inactivity timeout")
            else:
                try:
                    conn.settimeout(remaining)
                    opcode, data = conn.recv_data(control_frame=True)
                except wsclient.WebSocketTimeoutException:
                    err = TimeoutError("inactivity timeout")
                except Exception as exc:
                    err = exc
                if self._stop.is_set():
                    break

            if err is None:
                if opcode == ABNF.OPCODE_PING:
                    self._heartbeat.emit(Heartbeat(at=self.now(), type=HeartbeatType.PING))
                    deadline = time.monotonic() + self.inactivity_timeout
                    continue
                if opcode == ABNF.OPCODE_PONG:
                    self._heartbeat.emit(Heartbeat(at=self.now(), type=HeartbeatType.PONG))
                    continue
                if opcode == ABNF.OPCODE_CLOSE:
                    code = int(StatusCode.NO_STATUS_RCVD)
                    reason = ""
                    if len(data) >= 2:
                        code = struct.unpack("!H", data[:2])[0]
                        reason = data[2:].decode("utf-8", "replace")
                    err = CloseError(code, reason)
                elif opcode != ABNF.OPCODE_BINARY:
                    err = InvalidMessageTypeError("invalid message type")
                elif self.max_message_bytes and len(data) > self.max_message_bytes:
                    err = ValueError(f"read limited at {self.max_message_bytes + 1} bytes")
                else:
                    try:
                        msg = decode_msgpack(data)
                    except Exception as exc:
                        err = exc

            if err is not None:
                with self._lock:
                    self._conn = None
                try:
                    conn.close(
                        status=int(StatusCode.UNSUPPORTED_DATA),
                        reason=limit(str(err)).encode("utf-8"),
                        timeout=0.1,
                    )
                except Exception:
                    pass
                self._disconnect.emit(Disconnect(at=self.now(), err=err))
                return

            deadline = time.monotonic() + self.inactivity_timeout
            self._message.emit(msg)

        with self._lock:
            self._conn = None