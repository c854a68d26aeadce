"""Timing traces recording the stores a blob passed through."""

from __future__ import annotations

import json
import socket
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

_host_name: str | None = None

_NANOS_PER_SECOND = 1_000_000_000


def get_host_name() -> str:
    """Return this machine's host name, looked up once and then cached."""
    global _host_name
    if _host_name is None:
        try:
            _host_name = socket.gethostname()
        except OSError:
            _host_name = "unknown"
    return _host_name


def _to_nanoseconds(value: timedelta) -> int:
    seconds = value.days * 86_400 + value.seconds
    return seconds * _NANOS_PER_SECOND + value.microseconds * 1_000


def _from_nanoseconds(nanoseconds: int) -> timedelta:
    return timedelta(microseconds=nanoseconds // 1_000)


def _decimal(value: int, scale: int) -> str:
    whole, frac = divmod(value, scale)
    if scale == 1 or frac == 0:
        return str(whole)
    digits = len(str(scale)) - 1
    return f"{whole}.{str(frac).zfill(digits).rstrip('0')}"


def _format_duration(nanoseconds: int) -> str:
    """Render a duration the compact way: 1h2m3.5s, 250ms, 0s."""
    if nanoseconds == 0:
        return "0s"
    sign = "-" if nanoseconds < 0 else ""
    value = abs(nanoseconds)
    if value < _NANOS_PER_SECOND:
        if value < 1_000:
            return f"{sign}{value}ns"
        if value < 1_000_000:
            return f"{sign}{_decimal(value, 1_000)}µs"
        return f"{sign}{_decimal(value, 1_000_000)}ms"

    total_seconds, frac = divmod(value, _NANOS_PER_SECOND)
    total_minutes, seconds = divmod(total_seconds, 60)
    hours, minutes = divmod(total_minutes, 60)
    seconds_text = _decimal(seconds * _NANOS_PER_SECOND + frac, _NANOS_PER_SECOND) + "s"
    if total_minutes == 0:
        return sign + seconds_text
    if hours == 0:
        return f"{sign}{minutes}m{seconds_text}"
    return f"{sign}{hours}h{minutes}m{seconds_text}"


@dataclass(frozen=True)
class BlobStack:
    """One hop of a trace: how long it took and where it happened."""

    timing: timedelta
    origin_name: str
    host_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "timing": _to_nanoseconds(self.timing),
            "origin_name": self.origin_name,
            "host_name": self.host_name,
        }

    @classmethod
    def from_dict(cls, data: Any) -> BlobStack:
        if data is None:
            return cls(timedelta(0), "", "")
        if not isinstance(data, dict):
            raise ValueError(f"invalid trace entry: {data!r}")
        timing = data.get("timing", 0)
        origin_name = data.get("origin_name", "")
        host_name = data.get("host_name", "")
        if isinstance(timing, bool) or not isinstance(timing, int):
            raise ValueError(f"invalid timing in trace entry: {timing!r}")
        if not isinstance(origin_name, str) or not isinstance(host_name, str):
            raise ValueError(f"invalid names in trace entry: {data!r}")
        return cls(_from_nanoseconds(timing), origin_name, host_name)


@dataclass
class BlobTrace:
    """An ordered list of hops a blob took before reaching the caller."""

    stacks: list[BlobStack] = field(default_factory=list)

    def stack(self, timing: timedelta, origin_name: str) -> BlobTrace:
        """Append a hop recorded on this host and return the trace."""
        self.stacks.append(BlobStack(timing, origin_name, get_host_name()))
        return self

    def merge(self, other: BlobTrace) -> BlobTrace:
        """Append every hop of another trace and return this one."""
        self.stacks.extend(other.stacks)
        return self

    def serialize(self) -> str:
        """Encode the trace as compact JSON."""
        payload = {"stacks": [entry.to_dict() for entry in self.stacks]}
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)

    def __str__(self) -> str:
        lines = []
        previous: BlobStack | None = None
        for index, entry in enumerate(self.stacks):
            delta = timedelta(0) if previous is None else entry.timing - previous.timing
            lines.append(
                f"[{index}]({entry.host_name}) origin: {entry.origin_name} - "
                f"timing: {_format_duration(_to_nanoseconds(entry.timing))} - "
                f"delta: {_format_duration(_to_nanoseconds(delta))}\n"
            )
            previous = entry
        return "".join(lines)


def new_blob_trace(timing: timedelta, origin_name: str) -> BlobTrace:
    """Start a trace with a single hop recorded on this host."""
    return BlobTrace().stack(timing, origin_name)


def deserialize(serialized: str) -> BlobTrace:
    """Decode a trace produced by BlobTrace.serialize."""
    try:
        data = json.loads(serialized)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid trace: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"invalid trace: {serialized!r}")
    raw = data.get("stacks")
    if raw is None:
        return BlobTrace()
    if not isinstance(raw, list):
        raise ValueError(f"invalid trace stacks: {raw!r}")
    return BlobTrace([BlobStack.from_dict(entry) for entry in raw])