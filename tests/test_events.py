from datetime import datetime, timedelta, timezone

import pytest

from wrpagent.events import Connect, Disconnect, Heartbeat, HeartbeatType, IPMode

START = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def test_connect_str_basic():
    c = Connect(started=START, at=START + timedelta(seconds=1, milliseconds=500), mode=IPMode.IPV4)
    assert str(c) == (
        "Connect{\n"
        "  Started:    2024-01-02T03:04:05Z\n"
        "  At:         2024-01-02T03:04:06.5Z (1.5s)\n"
        "  Mode:       IPv4\n"
        "}"
    )


def test_connect_str_sub_second_duration():
    c = Connect(started=START, at=START + timedelta(milliseconds=250), mode=IPMode.IPV6)
    assert "(250ms)" in str(c)


def test_connect_str_offset_timezone():
    tz = timezone(timedelta(hours=5, minutes=30))
    moment = datetime(2024, 1, 2, 3, 4, 5, tzinfo=tz)
    c = Connect(started=moment, at=moment, mode=IPMode.IPV4)
    assert "T03:04:05+05:30" in str(c)


def test_connect_str_retry_and_error_lines():
    err = RuntimeError("dial failed")
    c = Connect(
        started=START,
        at=START,
        mode=IPMode.IPV6,
        retrying_at=START + timedelta(seconds=3),
        err=err,
    )
    lines = str(c).splitlines()
    assert lines[0] == "Connect{"
    assert lines[-1] == "}"
    assert lines[3] == "  Mode:       IPv6"
    assert lines[4].startswith("  RetryingAt: ")
    assert lines[5] == f"  Err:        {err}"
    assert len(lines) == 7


def test_connect_str_omits_optional_lines():
    text = str(Connect(started=START, at=START, mode=IPMode.IPV4))
    assert "RetryingAt" not in text
    assert "Err:" not in text
    assert len(text.splitlines()) == 5


def test_connect_str_started_line_matches_input():
    c = Connect(started=START, at=START + timedelta(minutes=2), mode=IPMode.IPV4)
    started_line = str(c).splitlines()[1]
    assert started_line.endswith(START.strftime("%Y-%m-%dT%H:%M:%SZ"))


def test_naive_times_are_treated_as_utc():
    naive = START.replace(tzinfo=None)
    assert str(Connect(started=naive, at=naive, mode=IPMode.IPV4)) == str(
        Connect(started=START, at=START, mode=IPMode.IPV4)
    )


@pytest.mark.parametrize("mode, text", [(IPMode.IPV4, "IPv4"), (IPMode.IPV6, "IPv6")])
def test_ip_mode_values(mode, text):
    assert mode.value == text
    assert str(mode) == text
    assert IPMode(text) is mode


@pytest.mark.parametrize("value, expected", [(0, HeartbeatType.PING), (1, HeartbeatType.PONG)])
def test_heartbeat_type_order(value, expected):
    hb = Heartbeat(at=START, type=HeartbeatType(value))
    assert hb.type is expected


def test_heartbeat_and_disconnect_hold_values():
    err = ValueError("gone")
    hb = Heartbeat(at=START, type=HeartbeatType.PONG)
    d = Disconnect(at=START, err=err)
    assert hb.type is HeartbeatType.PONG
    assert hb.at == START
    assert d.err is err
    assert Disconnect(at=START).err is None