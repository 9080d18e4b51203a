import base64
import hashlib
import socket
import struct
import threading
import time
from datetime import datetime

import pytest

from wrpagent.events import IPMode
from wrpagent.retry import RetryConfig
from wrpagent.websocket import (
    ClosedError,
    InvalidMessageTypeError,
    IPNetwork,
    MisconfiguredError,
    Websocket,
    empty_decorator,
    limit,
)
from wrpagent.wrp import Message, MessageType, decode_msgpack, encode_msgpack

DEVICE = "mac:112233445566"


def fetcher(timeout):
    return "http://example.com/url"


def make(**kwargs):
    base = dict(device_id=DEVICE, url="http://example.com", retry_policy=RetryConfig())
    base.update(kwargs)
    return Websocket(**base)


@pytest.mark.parametrize(
    "mode,want", [(IPNetwork.IPV4, IPMode.IPV4), (IPNetwork.IPV6, IPMode.IPV6)]
)
def test_to_event(mode, want):
    assert mode.to_event() is want


def test_common_config():
    def cred(h):
        h.setdefault("Credentials-Decorator", []).append("some value")

    def convey(h):
        h.setdefault("Convey-Decorator", []).append("some value")

    ws = Websocket(
        device_id=DEVICE,
        fetch_url=fetcher,
        additional_headers={"some-other-header": ["vAlUE"]},
        credentials_decorator=cred,
        convey_decorator=convey,
        retry_policy=RetryConfig(),
    )
    assert ws.device_id == DEVICE
    assert ws.fetch_url(1.0) == "http://example.com/url"
    ws.credentials_decorator(ws.additional_headers)
    ws.convey_decorator(ws.additional_headers)
    h = ws.additional_headers
    assert h["X-Webpa-Device-Name"] == [DEVICE]
    assert h["Some-Other-Header"] == ["vAlUE"]
    assert h["Credentials-Decorator"] == ["some value"]
    assert h["Convey-Decorator"] == ["some value"]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"device_id": ""},
        {"url": None},
        {"url": ""},
        {"with_ipv4": False, "with_ipv6": False},
        {"fetch_url_timeout": -1},
        {"inactivity_timeout": -1},
        {"ping_write_timeout": -1},
        {"send_timeout": -1},
        {"max_message_bytes": -1},
        {"now": None},
        {"retry_policy": None},
        {"credentials_decorator": None},
        {"convey_decorator": None},
    ],
)
def test_misconfigured(kwargs):
    with pytest.raises(MisconfiguredError):
        make(**kwargs)


def test_custom_now():
    ws = make(now=lambda: datetime.fromtimestamp(1234))
    assert ws.now() == datetime.fromtimestamp(1234)


def test_listeners_are_called_and_cancelled():
    ws = make()
    got = []
    cancel = ws.add_message_listener(got.append)
    ws._message.emit(Message())
    cancel()
    cancel()
    ws._message.emit(Message())
    assert got == [Message()]


def test_listener_object_methods():
    class L:
        def __init__(self):
            self.seen = []

        def on_connect(self, e):
            self.seen.append(("c", e))

        def on_heartbeat(self, e):
            self.seen.append(("h", e))

    listener = L()
    ws = make()
    ws.add_connect_listener(listener)
    ws.add_heartbeat_listener(listener)
    ws._connect.emit(1)
    ws._heartbeat.emit(2)
    assert listener.seen == [("c", 1), ("h", 2)]


@pytest.mark.parametrize(
    "v4,v6,mode,want",
    [
        (True, True, IPNetwork.IPV4, IPNetwork.IPV6),
        (True, True, IPNetwork.IPV6, IPNetwork.IPV4),
        (True, False, IPNetwork.IPV4, IPNetwork.IPV4),
        (False, True, IPNetwork.IPV6, IPNetwork.IPV6),
    ],
)
def test_next_mode(v4, v6, mode, want):
    assert make(with_ipv4=v4, with_ipv6=v6).next_mode(mode) is want


def test_limit():
    assert limit("short") == "short"
    assert limit("-" * 130) == "-" * 125


def test_empty_decorator():
    headers = {"A": ["b"]}
    assert empty_decorator(headers) is None
    assert headers == {"A": ["b"]}


def test_send_without_connection():
    with pytest.raises(ClosedError):
        make().send(Message(type=MessageType.SIMPLE_EVENT, source="client"))


# --- a tiny websocket server -------------------------------------------------

def _recv_exact(conn, n):
    buf = b""
    while len(buf) < n:
        chunk = conn.recv(n - len(buf))
        if not chunk:
            raise ConnectionError("closed")
        buf += chunk
    return buf


def _frame(opcode, payload):
    return bytes([0x80 | opcode, len(payload)]) + payload


def _read_frame(conn):
    b0, b1 = _recv_exact(conn, 2)
    n = b1 & 0x7F
    if n == 126:
        n = struct.unpack("!H", _recv_exact(conn, 2))[0]
    elif n == 127:
        n = struct.unpack("!Q", _recv_exact(conn, 8))[0]
    key = _recv_exact(conn, 4) if b1 & 0x80 else b"\0\0\0\0"
    data = bytes(c ^ key[i % 4] for i, c in enumerate(_recv_exact(conn, n)))
    return b0 & 0x0F, data


def _serve(behaviour):
    srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    srv.bind(("127.0.0.1", 0))
    srv.listen(1)
    state = {}

    def run():
        conn, _ = srv.accept()
        conn.settimeout(3)
        req = b""
        while b"\r\n\r\n" not in req:
            req += conn.recv(1024)
        lines = req.decode().split("\r\n")
        headers = {k.lower(): v.strip() for k, _, v in (l.partition(":") for l in lines[1:] if l)}
        state["headers"] = headers
        accept = base64.b64encode(
            hashlib.sha1(
                (headers["sec-websocket-key"] + "258EAFA5-E914-47DA-95CA-C5AB0DC85B11").encode()
            ).digest()
        ).decode()
        conn.sendall(
            (
                "HTTP/1.1 101 Switching Protocols\r\nUpgrade: websocket\r\n"
                f"Connection: Upgrade\r\nSec-WebSocket-Accept: {accept}\r\n\r\n"
            ).encode()
        )
        try:
            behaviour(conn, state)
        finally:
            conn.close()
            srv.close()

    threading.Thread(target=run, daemon=True).start()
    return f"http://127.0.0.1:{srv.getsockname()[1]}", state


def _wait(cond, timeout=3.0):
    end = time.monotonic() + timeout
    while time.monotonic() < end:
        if cond():
            return True
        time.sleep(0.01)
    return False


def test_end_to_end():
    def behaviour(conn, state):
        out = Message(type=MessageType.SIMPLE_EVENT, source="server")
        conn.sendall(_frame(2, encode_msgpack(out)))
        op, data = _read_frame(conn)
        state["got"] = (op, decode_msgpack(data))
        conn.sendall(_frame(8, struct.pack("!H", 1000)))

    url, state = _serve(behaviour)
    msgs, connects, disconnects = [], [], []
    ws = Websocket(
        device_id=DEVICE,
        url=url,
        with_ipv6=False,
        once=True,
        retry_policy=RetryConfig(interval=1.0, multiplier=2.0),
    )
    ws.add_message_listener(msgs.append)
    ws.add_connect_listener(connects.append)
    ws.add_disconnect_listener(disconnects.append)
    ws.start()
    ws.start()
    assert _wait(lambda: msgs)
    assert msgs[0].source == "server"
    assert msgs[0].type == MessageType.SIMPLE_EVENT
    ws.send(Message(type=MessageType.SIMPLE_EVENT, source="client"))
    assert _wait(lambda: disconnects)
    ws.stop()
    op, got = state["got"]
    assert op == 2
    assert got.source == "client"
    assert state["headers"]["x-webpa-device-name"] == DEVICE
    assert connects[0].mode is IPMode.IPV4
    assert connects[0].err is None


@pytest.mark.parametrize("opcode,expected", [(2, Exception), (1, InvalidMessageTypeError)])
def test_end_to_end_bad_data(opcode, expected):
    def behaviour(conn, state):
        conn.sendall(_frame(opcode, b"\x99\x86"))
        try:
            _read_frame(conn)
        except Exception:
            pass

    url, _ = _serve(behaviour)
    msgs, disconnects = [], []
    ws = Websocket(
        device_id=DEVICE,
        url=url,
        with_ipv6=False,
        once=True,
        retry_policy=RetryConfig(interval=0.05, multiplier=2.0),
    )
    ws.add_message_listener(msgs.append)
    ws.add_disconnect_listener(disconnects.append)
    ws.start()
    assert _wait(lambda: disconnects)
    ws.stop()
    assert msgs == []
    assert isinstance(disconnects[0].err, expected)


def test_connection_failures_report_retries():
    calls = []

    def failing(timeout):
        calls.append(timeout)
        raise RuntimeError("no url")

    connects = []
    ws = Websocket(
        device_id=DEVICE,
        fetch_url=failing,
        retry_policy=RetryConfig(interval=0.01),
    )
    ws.add_connect_listener(connects.append)
    ws.start()
    assert _wait(lambda: len(connects) >= 3)
    ws.stop()
    assert all(isinstance(c.err, RuntimeError) for c in connects)
    assert all(c.retrying_at is not None for c in connects)
    assert {c.mode for c in connects[:2]} == {IPMode.IPV4, IPMode.IPV6}


def test_inactivity_timeout_disconnects():
    def behaviour(conn, state):
        try:
            _read_frame(conn)
        except Exception:
            pass

    url, _ = _serve(behaviour)
    disconnects = []
    ws = Websocket(
        device_id=DEVICE,
        url=url,
        with_ipv6=False,
        once=True,
        inactivity_timeout=0.05,
        retry_policy=RetryConfig(interval=1.0),
    )
    ws.add_disconnect_listener(disconnects.append)
    ws.start()
    assert _wait(lambda: disconnects)
    ws.stop()
    assert len(disconnects) == 1
    assert isinstance(disconnects[0].err, TimeoutError)
    with pytest.raises(ClosedError):
        ws.send(Message(type=MessageType.SIMPLE_EVENT, source="client"))