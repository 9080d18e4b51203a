"""Events reported by the websocket connection to its listeners."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

CancelFunc = Callable[[], None]
"""Removes a listener; calling it more than once has no further effect."""


class HeartbeatType(enum.IntEnum):
    """The kind of heartbeat that was seen on the connection."""

    PING = 0
    PONG = 1


class IPMode(str, enum.Enum):
    """The IP family used for a connection attempt."""

    IPV4 = "IPv4"
    IPV6 = "IPv6"

    def __str__(self) -> str:
        return self.value


def _fraction(value: int, digits: int) -> str:
    if not value:
        return ""
    return "." + f"{value:0{digits}d}".rstrip("0")


def _decimal(value: int, digits: int) -> str:
    whole, frac = divmod(value, 10**digits)
    return f"{whole}{_fraction(frac, digits)}"


def _format_duration(delta: timedelta) -> str:
    """Format a duration the compact way: 1h2m3.5s, 250ms, 12µs, 0s."""
    ns = (delta.days * 86400 + delta.seconds) * 1_000_000_000 + delta.microseconds * 1000
    if ns == 0:
        return "0s"
    sign = "-" if ns < 0 else ""
    ns = abs(ns)
    if ns < 1_000:
        return f"{sign}{ns}ns"
    if ns < 1_000_000:
        return f"{sign}{_decimal(ns, 3)}µs"
    if ns < 1_000_000_000:
        return f"{sign}{_decimal(ns, 6)}ms"

    secs, frac = divmod(ns, 1_000_000_000)
    text = f"{secs % 60}{_fraction(frac, 9)}s"
    minutes = secs // 60
    if minutes:
        text = f"{minutes % 60}m{text}"
        hours = minutes // 60
        if hours:
            text = f"{hours}h{text}"
    return sign + text


def _format_timestamp(moment: datetime) -> str:
    """Format a time as RFC 3339 with trailing fractional zeros removed."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d}"
        f"T{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )
    if moment.microsecond:
        text += "." + f"{moment.microsecond:06d}".rstrip("0")
    offset = moment.utcoffset()
    if not offset:
        return text + "Z"
    minutes = int(offset.total_seconds() // 60)
    sign = "+" if minutes >= 0 else "-"
    minutes = abs(minutes)
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


@dataclass
class Connect:
    """The outcome of one connection attempt."""

    started: datetime
    at: datetime
    mode: IPMode
    retrying_at: Optional[datetime] = None
    err: Optional[BaseException] = None

    def __str__(self) -> str:
        lines = [
            "Connect{",
            f"  Started:    {_format_timestamp(self.started)}",
            f"  At:         {_format_timestamp(self.at)} "
            f"({_format_duration(self.at - self.started)})",
            f"  Mode:       {IPMode(self.mode).value}",
        ]
        if self.retrying_at is not None:
            lines.append(f"  RetryingAt: {_format_timestamp(self.retrying_at)}")
        if self.err is not None:
            lines.append(f"  Err:        {self.err}")
        lines.append("}")
        return "\n".join(lines)


@dataclass
class Heartbeat:
    """A PING received or a PONG sent."""

    at: datetime
    type: HeartbeatType


@dataclass
class Disconnect:
    """The connection was closed."""

    at: datetime
    err: Optional[BaseException] = None