#!/usr/bin/env python3
"""
📜 Access Log Timeline Builder
==============================
Turns nginx access log lines into an ordered list of replay events.

The decoder compiles an nginx ``log_format`` string into a regular
expression, so any format built from ``$variables`` works as long as it
carries ``$time_local``, ``$request`` and ``$status``.

Usage:
    from access_log import read_timeline
    timeline = read_timeline("access.log")
"""

import calendar
import gzip
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

DEFAULT_LOG_FORMAT = (
    '$remote_addr - $remote_user [$time_local] "$request" '
    '$status $body_bytes_sent "$http_referer" "$http_user_agent"'
)

REQUIRED_FIELDS = ("time_local", "request", "status")

TIME_LOCAL_FORMAT = "%d/%b/%Y:%H:%M:%S"

_VARIABLE = re.compile(r"\$\{(\w+)\}|\$(\w+)")


class LogFormatError(ValueError):
    """Raised when a log_format string cannot be used to build a timeline."""


@dataclass(frozen=True)
class ReplayEvent:
    """One recorded request, ready to be fired again."""
    timestamp_ms: int
    method: str
    path: str
    user_agent: str = ""
    recorded_status: str = ""


@dataclass
class Timeline:
    """Events in replay order plus bookkeeping about rejected lines."""
    events: List[ReplayEvent] = field(default_factory=list)
    skipped_lines: int = 0

    def __len__(self) -> int:
        return len(self.events)

    def __iter__(self):
        return iter(self.events)

    @property
    def original_duration_ms(self) -> int:
        """Time between the first and last recorded request."""
        if not self.events:
            return 0
        return self.events[-1].timestamp_ms - self.events[0].timestamp_ms

    @property
    def original_rps(self) -> float:
        """Requests per second of the recorded traffic."""
        duration = self.original_duration_ms
        return 1000 * len(self.events) / duration if duration > 0 else 0


# =============================================================================
# LOG FORMAT DECODER
# =============================================================================

class LogFormatParser:
    """
    Compiles an nginx log_format into a line decoder.

    Each ``$name`` becomes a non-greedy named group, the rest of the format
    is matched literally. A repeated variable is captured only the first time.
    """

    def __init__(self, log_format: str = DEFAULT_LOG_FORMAT):
        self.log_format = log_format
        self.fields: List[str] = []
        self.pattern = self._compile(log_format)

        missing = [name for name in REQUIRED_FIELDS if name not in self.fields]
        if missing:
            raise LogFormatError(
                f"Log format is missing required variable(s): {', '.join('$' + m for m in missing)}"
            )

    def _compile(self, log_format: str) -> "re.Pattern":
        parts = ["^"]
        position = 0
        for match in _VARIABLE.finditer(log_format):
            parts.append(re.escape(log_format[position:match.start()]))
            name = match.group(1) or match.group(2)
            if name in self.fields:
                parts.append(".*?")
            else:
                self.fields.append(name)
                parts.append(f"(?P<{name}>.*?)")
            position = match.end()
        parts.append(re.escape(log_format[position:]))
        parts.append("$")
        return re.compile("".join(parts))

    def parse_line(self, line: str) -> Optional[Dict[str, str]]:
        """Decode one raw line into a field dict, or None if it does not match."""
        match = self.pattern.match(line.rstrip("\r\n"))
        if not match:
            return None
        return match.groupdict()


# =============================================================================
# FIELD HELPERS
# =============================================================================

def parse_time_local(value: str) -> int:
    """
    Convert ``10/Oct/2000:13:55:36 -0700`` into epoch milliseconds.

    The zone suffix is ignored and the wall-clock value is taken literally,
    so deltas between lines never shift across DST changes.
    """
    stamp = value.strip().split(" ")[0]
    parsed = datetime.strptime(stamp, TIME_LOCAL_FORMAT)
    return calendar.timegm(parsed.timetuple()) * 1000


def split_request_line(request: str) -> Optional[Tuple[str, str]]:
    """Return (method, path) from ``GET /path HTTP/1.1``; None when malformed."""
    tokens = request.split()
    if len(tokens) < 2:
        return None
    return tokens[0], tokens[1]


def normalize_user_agent(value: Optional[str]) -> str:
    # nginx writes "-" when the client sent no header
    if not value or value == "-":
        return ""
    return value


# =============================================================================
# TIMELINE BUILDER
# =============================================================================

def build_timeline(
    lines: Iterable[str],
    parser: Optional[LogFormatParser] = None,
    sort: bool = False,
    on_skip=None,
) -> Timeline:
    """
    Build the replay timeline from raw log lines.

    Lines that do not decode, carry an unreadable time or a request line
    with fewer than two tokens are skipped and counted. ``on_skip`` is
    called with (line_number, reason) for each of them.

    With ``sort=True`` events are stably sorted by timestamp; otherwise the
    file order is trusted as-is.
    """
    parser = parser or LogFormatParser()
    timeline = Timeline()

    def skip(line_number: int, reason: str):
        timeline.skipped_lines += 1
        if on_skip:
            on_skip(line_number, reason)

    for line_number, line in enumerate(lines, start=1):
        if not line.strip():
            continue

        row = parser.parse_line(line)
        if row is None:
            skip(line_number, "line does not match log format")
            continue

        try:
            timestamp_ms = parse_time_local(row["time_local"])
        except ValueError:
            skip(line_number, f"unreadable time_local {row['time_local']!r}")
            continue

        request = split_request_line(row["request"])
        if request is None:
            skip(line_number, f"malformed request line {row['request']!r}")
            continue

        method, path = request
        timeline.events.append(ReplayEvent(
            timestamp_ms=timestamp_ms,
            method=method,
            path=path,
            user_agent=normalize_user_agent(row.get("http_user_agent")),
            recorded_status=row["status"].strip(),
        ))

    if sort:
        timeline.events.sort(key=lambda event: event.timestamp_ms)

    return timeline


def open_log(path) -> Iterable[str]:
    """Open a plain or gzip-compressed log for text reading."""
    path = Path(path)
    if path.suffix == ".gz":
        return gzip.open(path, "rt", encoding="utf-8", errors="replace")
    return open(path, "r", encoding="utf-8", errors="replace")


def read_timeline(
    path,
    log_format: str = DEFAULT_LOG_FORMAT,
    sort: bool = False,
    on_skip=None,
) -> Timeline:
    """Read a whole access log into memory as a Timeline."""
    parser = LogFormatParser(log_format)
    with open_log(path) as f:
        return build_timeline(f, parser, sort=sort, on_skip=on_skip)
