#!/usr/bin/env python3
"""
📊 Replay Metrics
=================
Outcome classification, global counters and per-endpoint hit statistics
for a log replay run.
"""

import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode


class Outcome(Enum):
    SUCCESS = "success"
    STATUS_MISMATCH = "status_mismatch"
    TRANSPORT_ERROR = "transport_error"


@dataclass
class DispatchResult:
    """What happened to one replayed request."""
    method: str
    path: str
    recorded_status: str
    event_timestamp_ms: int
    sent_at_ms: int
    elapsed_ms: float = 0
    status: Optional[int] = None
    error: Optional[str] = None
    timed_out: bool = False

    @property
    def outcome(self) -> Outcome:
        return classify(self.status, self.recorded_status)

    @property
    def result_line(self) -> str:
        """``<replayed>  <recorded>  <event ts>  <sent ts>  <elapsed s>  <path>``"""
        return (
            f"{self.status}  {self.recorded_status}  {self.event_timestamp_ms}  "
            f"{self.sent_at_ms}  {self.elapsed_ms / 1000:.2f}  {self.path}"
        )


def classify(status: Optional[int], recorded_status: str) -> Outcome:
    """Same status as recorded is a success; no response at all is a transport error."""
    if status is None:
        return Outcome.TRANSPORT_ERROR
    if str(status) == recorded_status:
        return Outcome.SUCCESS
    return Outcome.STATUS_MISMATCH


# =============================================================================
# OUTCOME TALLY
# =============================================================================

@dataclass
class OutcomeTally:
    """
    Running counters for the whole replay.

    Every update is additive and happens on the event loop thread, so the
    order in which responses arrive does not change the totals.
    """
    expected: int = 0
    success_count: int = 0
    fail_count: int = 0
    transport_errors: int = 0
    timeouts: int = 0
    total_response_time_ms: float = 0
    latencies: List[float] = field(default_factory=list)
    status_codes: Dict[int, int] = field(default_factory=lambda: defaultdict(int))

    # Pacing loop bounds, epoch milliseconds
    start_time_ms: int = 0
    finish_time_ms: int = 0
    total_sleep_ms: float = 0

    def record(self, result: DispatchResult) -> bool:
        """
        Count one resolved dispatch.

        Returns True for the call that makes the tally complete, and only
        for that one.
        """
        if self.is_complete:
            raise RuntimeError("received more results than dispatched events")

        outcome = result.outcome
        if outcome == Outcome.SUCCESS:
            self.success_count += 1
        else:
            self.fail_count += 1

        if outcome == Outcome.TRANSPORT_ERROR:
            self.transport_errors += 1
            if result.timed_out:
                self.timeouts += 1
        else:
            self.status_codes[result.status] += 1
            self.total_response_time_ms += result.elapsed_ms
            self.latencies.append(result.elapsed_ms)

        return self.is_complete

    @property
    def resolved(self) -> int:
        return self.success_count + self.fail_count

    @property
    def is_complete(self) -> bool:
        return self.resolved == self.expected

    @property
    def success_rate(self) -> float:
        return (100 * self.success_count / self.expected) if self.expected > 0 else 0

    @property
    def duration_ms(self) -> int:
        """Wall clock time of the pacing loop."""
        return self.finish_time_ms - self.start_time_ms

    @property
    def replay_rps(self) -> float:
        return 1000 * self.expected / self.duration_ms if self.duration_ms > 0 else 0

    # =========================================================================
    # Latency figures
    # =========================================================================
    def percentile(self, p: float) -> float:
        if not self.latencies:
            return 0
        ordered = sorted(self.latencies)
        idx = int(len(ordered) * p / 100)
        return ordered[min(idx, len(ordered) - 1)]

    @property
    def avg_latency(self) -> float:
        return statistics.mean(self.latencies) if self.latencies else 0

    @property
    def min_latency(self) -> float:
        return min(self.latencies) if self.latencies else 0

    @property
    def max_latency(self) -> float:
        return max(self.latencies) if self.latencies else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": {
                "total_events": self.expected,
                "successful_events": self.success_count,
                "failed_events": self.fail_count,
                "transport_errors": self.transport_errors,
                "timeouts": self.timeouts,
                "success_rate_percent": round(self.success_rate, 2),
            },
            "timing_seconds": {
                "total_response_time": round(self.total_response_time_ms / 1000, 2),
                "total_requests_time": self.duration_ms / 1000,
                "total_sleep_time": round(self.total_sleep_ms / 1000, 2),
                "replay_rps": round(self.replay_rps, 4),
            },
            "latency_ms": {
                "min": round(self.min_latency, 2),
                "average": round(self.avg_latency, 2),
                "p50": round(self.percentile(50), 2),
                "p95": round(self.percentile(95), 2),
                "p99": round(self.percentile(99), 2),
                "max": round(self.max_latency, 2),
            },
            "status_codes": {str(code): count for code, count in sorted(self.status_codes.items())},
        }


# =============================================================================
# ENDPOINT STATS
# =============================================================================

def parse_query_names(value: str) -> List[str]:
    """``"page, limit,,size"`` -> ``["page", "limit", "size"]``"""
    return [name.strip() for name in value.split(",") if name.strip()]


def stats_key(path: str, delete_query: Iterable[str] = (), only_path: bool = False) -> str:
    """
    Normalized endpoint key for a request path.

    ``only_path`` drops the whole query string. Otherwise the named query
    parameters are removed and the rest is kept in its original order.
    """
    # A request target is never split as a URL: "//v1/users" has no host part
    base, _, query = path.partition("?")
    if only_path:
        return base

    names = set(delete_query)
    if not names or not query:
        return path

    kept = [(k, v) for k, v in parse_qsl(query, keep_blank_values=True) if k not in names]
    return f"{base}?{urlencode(kept)}" if kept else base


class EndpointStats:
    """Hit counts per endpoint key, counted when a request is attempted."""

    def __init__(self, delete_query: Iterable[str] = (), only_path: bool = False, hide_limit: int = 0):
        self.delete_query = list(delete_query)
        self.only_path = only_path
        self.hide_limit = hide_limit
        self.hits: Dict[str, int] = defaultdict(int)

    def add(self, path: str) -> str:
        key = stats_key(path, self.delete_query, self.only_path)
        self.hits[key] += 1
        return key

    @property
    def total(self) -> int:
        return sum(self.hits.values())

    def ranked(self) -> List[Tuple[str, int]]:
        """Keys by descending hit count; ties keep first-seen order."""
        return sorted(self.hits.items(), key=lambda item: item[1], reverse=True)

    def visible(self) -> List[Tuple[str, int]]:
        return [(key, count) for key, count in self.ranked() if count > self.hide_limit]

    def hidden_histogram(self) -> Dict[int, int]:
        """For keys at or below the hide limit: hit count -> number of keys."""
        histogram: Dict[int, int] = defaultdict(int)
        for _, count in self.ranked():
            if count <= self.hide_limit:
                histogram[count] += 1
        return dict(histogram)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "endpoints": dict(self.visible()),
            "hidden": {str(count): keys for count, keys in self.hidden_histogram().items()},
        }
