#!/usr/bin/env python3
"""
🔁 Log Replay Engine
====================
Fires recorded requests at a target server with the original traffic shape.

Features:
- Pacing loop that never waits on responses, so slow answers cannot
  distort the replay cadence
- One asyncio task per event, optional semaphore bound on in-flight requests
- Status comparison against the recorded status, latency tracking
- Per-endpoint hit statistics with query stripping and long-tail compaction
- Console and JSON summary reports

Requirements:
    pip install aiohttp rich
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from yarl import URL

from access_log import ReplayEvent, Timeline
from pacing import Pacer, PacingMode
from replay_stats import DispatchResult, EndpointStats, Outcome, OutcomeTally


class ReportFormat(Enum):
    CONSOLE = "console"
    JSON = "json"


class ConfigError(ValueError):
    """Invalid replay settings, detected before anything is sent."""


@dataclass
class ReplayConfig:
    """Everything the engine needs to know about a run."""
    prefix: str
    ratio: float = 1.0
    scale_mode: bool = False
    skip_sleep: bool = False
    skip_ssl: bool = False
    timeout: Optional[float] = None
    username: Optional[str] = None
    password: Optional[str] = None
    stats: bool = False
    delete_query_stats: List[str] = field(default_factory=list)
    stats_only_path: bool = False
    hide_stats_limit: int = 0
    concurrency: int = 0
    follow_redirects: bool = False
    report_format: ReportFormat = ReportFormat.CONSOLE
    report_output: Optional[str] = None

    def validate(self):
        if not self.prefix:
            raise ConfigError("target prefix is required")
        prefix = URL(self.prefix)
        if prefix.scheme not in ("http", "https") or not prefix.host:
            raise ConfigError(f"target prefix must be an http(s) URL, got {self.prefix!r}")
        if self.ratio <= 0:
            raise ConfigError(f"ratio must be greater than 0, got {self.ratio}")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigError(f"timeout must be greater than 0, got {self.timeout}")
        if self.concurrency < 0:
            raise ConfigError(f"concurrency can not be negative, got {self.concurrency}")
        if self.hide_stats_limit < 0:
            raise ConfigError(f"hide stats limit can not be negative, got {self.hide_stats_limit}")
        if self.password and not self.username:
            raise ConfigError("password given without username")

    @property
    def pacing_mode(self) -> PacingMode:
        if self.skip_sleep:
            return PacingMode.SKIP
        if self.scale_mode:
            return PacingMode.SCALE
        return PacingMode.LITERAL


class ReplayOutput:
    """
    Console sinks for a run.

    ``console`` gets the summary, ``error_console`` transport failures,
    ``debug_console`` stays quiet unless debugging. Result lines go to the
    console and, when given, to a plain-text results file.
    """

    def __init__(
        self,
        console: Optional[Console] = None,
        error_console: Optional[Console] = None,
        debug_console: Optional[Console] = None,
        debug: bool = False,
        results_file=None,
    ):
        self.console = console or Console()
        self.error_console = error_console or Console(stderr=True)
        self.debug_console = debug_console or Console(quiet=not debug)
        self.result_consoles = [self.console]
        if results_file is not None:
            self.result_consoles.append(
                Console(file=results_file, color_system=None, soft_wrap=True)
            )

    def debug(self, message: str):
        self.debug_console.print(f"[dim]{escape(message)}[/dim]")

    def warning(self, message: str):
        self.console.print(f"[yellow]⚠ {escape(message)}[/yellow]")

    def error(self, message: str):
        self.error_console.print(f"[red]{escape(message)}[/red]")

    def result(self, result: DispatchResult):
        style = "green" if result.outcome == Outcome.SUCCESS else "red"
        for console in self.result_consoles:
            console.print(Text(result.result_line, style=style), soft_wrap=True)


def now_ms() -> int:
    return int(time.time() * 1000)


class LogReplayEngine:
    """
    Replays a timeline against ``config.prefix``.

    The pacing loop starts one task per event and only ever waits on the
    computed pacing delay. Tasks report back through ``_complete``, which
    runs on the event loop thread and is the only place results are counted.
    """

    def __init__(
        self,
        config: ReplayConfig,
        output: Optional[ReplayOutput] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        config.validate()
        self.config = config
        self.output = output or ReplayOutput()
        self._sleep = sleep
        self.timeline = Timeline()
        self.tally = OutcomeTally()
        self.endpoint_stats: Optional[EndpointStats] = None
        if config.stats:
            self.endpoint_stats = EndpointStats(
                delete_query=config.delete_query_stats,
                only_path=config.stats_only_path,
                hide_limit=config.hide_stats_limit,
            )
        self.reports_emitted = 0
        self.report: Optional[Dict[str, Any]] = None

        self.timeout = aiohttp.ClientTimeout(total=config.timeout)
        self.auth = None
        if config.username:
            self.auth = aiohttp.BasicAuth(config.username, config.password or "")

    def _url(self, path: str) -> URL:
        # Logged paths are already percent-encoded, send them verbatim
        return URL(self.config.prefix.rstrip("/") + path, encoded=True)

    async def _dispatch(
        self,
        session: aiohttp.ClientSession,
        event: ReplayEvent,
        semaphore: Optional[asyncio.Semaphore],
    ) -> DispatchResult:
        if semaphore is not None:
            async with semaphore:
                result = await self._send(session, event)
        else:
            result = await self._send(session, event)
        self._complete(result)
        return result

    async def _send(self, session: aiohttp.ClientSession, event: ReplayEvent) -> DispatchResult:
        """Make one request; transport failures become results, not exceptions."""
        headers = {"User-Agent": event.user_agent} if event.user_agent else None
        result = DispatchResult(
            method=event.method,
            path=event.path,
            recorded_status=event.recorded_status,
            event_timestamp_ms=event.timestamp_ms,
            sent_at_ms=now_ms(),
        )
        start = time.perf_counter()

        try:
            async with session.request(
                event.method,
                self._url(event.path),
                headers=headers,
                auth=self.auth,
                ssl=not self.config.skip_ssl,
                allow_redirects=self.config.follow_redirects,
            ) as response:
                await response.read()
                result.status = response.status
        except asyncio.TimeoutError:
            result.error = "Timeout"
            result.timed_out = True
        except aiohttp.ClientConnectorError as e:
            result.error = f"ConnectionError: {e}"
        except aiohttp.ClientError as e:
            result.error = f"{type(e).__name__}: {e}"
        except ValueError as e:
            # yarl/aiohttp reject some logged request targets
            result.error = f"InvalidRequest: {e}"

        result.elapsed_ms = (time.perf_counter() - start) * 1000
        return result

    def _complete(self, result: DispatchResult):
        """Count a resolved dispatch and fire the report on the last one."""
        outcome = result.outcome
        if outcome == Outcome.TRANSPORT_ERROR:
            self.output.error(f"Invalid request to {result.path} : {result.error}")
        else:
            self.output.debug(
                f"Response for {result.path} with status code {result.status} "
                f"done with {result.elapsed_ms:.0f} ms"
            )
            if outcome == Outcome.STATUS_MISMATCH:
                self.output.debug(
                    f"Response for {result.path} has different status code: "
                    f"{result.status} and {result.recorded_status}"
                )
            self.output.result(result)

        if self.tally.record(result):
            self._emit_report()

    # =========================================================================
    # Pacing loop
    # =========================================================================
    async def replay(self, timeline: Timeline) -> OutcomeTally:
        """Replay every event once, then return the final tally."""
        self.timeline = timeline
        self.tally = OutcomeTally(expected=len(timeline))
        if not len(timeline):
            self.output.warning("No events to replay")
            return self.tally

        pacer = Pacer(timeline.events, ratio=self.config.ratio, mode=self.config.pacing_mode)
        semaphore = asyncio.Semaphore(self.config.concurrency) if self.config.concurrency else None
        connector = aiohttp.TCPConnector(limit=self.config.concurrency)
        last_index = len(timeline) - 1

        async with aiohttp.ClientSession(timeout=self.timeout, connector=connector) as session:
            tasks = []
            self.tally.start_time_ms = now_ms()

            for index, event in enumerate(timeline):
                dispatched_at = now_ms()
                if index == last_index:
                    self.tally.finish_time_ms = dispatched_at

                self.output.debug(f"Sending {event.method} request to {event.path} at {dispatched_at}")
                if self.endpoint_stats is not None:
                    self.endpoint_stats.add(event.path)
                tasks.append(asyncio.create_task(self._dispatch(session, event, semaphore)))

                delay = pacer.delay_after(index)
                if delay:
                    self.tally.total_sleep_ms += delay
                    self.output.debug(f"Sleeping {delay} ms")
                    await self._sleep(delay / 1000)

            await asyncio.gather(*tasks)

        return self.tally

    # =========================================================================
    # Report Generation
    # =========================================================================
    def _emit_report(self):
        self.reports_emitted += 1
        self.report = self.build_report()
        if self.config.report_format == ReportFormat.JSON:
            self._write_json_report()
        else:
            self._print_console_report()

    def build_report(self) -> Dict[str, Any]:
        t = self.tally
        report = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "target_prefix": self.config.prefix,
            "pacing_mode": self.config.pacing_mode.value,
            "ratio": self.config.ratio,
            "original": {
                "duration_seconds": self.timeline.original_duration_ms / 1000,
                "rps": round(self.timeline.original_rps, 4),
                "skipped_lines": self.timeline.skipped_lines,
            },
            "metrics": t.to_dict(),
        }
        if self.endpoint_stats is not None:
            report["stats"] = self.endpoint_stats.to_dict()
        return report

    def _write_json_report(self):
        json_str = json.dumps(self.report, indent=2)
        if self.config.report_output:
            Path(self.config.report_output).write_text(json_str)
            self.output.console.print(f"[green]JSON report saved to: {escape(self.config.report_output)}[/green]")
        else:
            self.output.console.print_json(json_str)

    def _print_console_report(self):
        t = self.tally
        console = self.output.console

        console.print("\n")
        console.print(Panel(
            f"""[bold]Replay Summary[/bold]

[cyan]Total number of events:[/cyan]  {t.expected:,}
[red]Number of failed events:[/red] {t.fail_count:,} ([dim]{t.transport_errors:,} without response, {t.timeouts:,} timeouts[/dim])
[green]Successful events:[/green]       {t.success_rate:.2f}%

[cyan]Total response time:[/cyan]     {t.total_response_time_ms / 1000:.2f} seconds
[cyan]Total requests time:[/cyan]     {t.duration_ms / 1000} seconds
[cyan]Total sleep time:[/cyan]        {t.total_sleep_ms / 1000:.2f} seconds

[cyan]Original time:[/cyan]           {self.timeline.original_duration_ms / 1000} seconds
[cyan]Original rps:[/cyan]            {self.timeline.original_rps:.4f}
[cyan]Replay rps:[/cyan]              {t.replay_rps:.4f}

[bold]Latency (ms):[/bold] Min={t.min_latency:.2f}, Avg={t.avg_latency:.2f}, P50={t.percentile(50):.2f}, P95={t.percentile(95):.2f}, P99={t.percentile(99):.2f}, Max={t.max_latency:.2f}

[bold]Status Code Distribution:[/bold]
{self._format_status_codes()}""",
            title="📊 Replay Results",
            border_style="green" if t.fail_count == 0 else "red",
        ))

        if self.endpoint_stats is not None:
            self._print_stats()

    def _format_status_codes(self) -> str:
        if not self.tally.status_codes:
            return "  No responses recorded"
        lines = []
        for code, count in sorted(self.tally.status_codes.items()):
            color = "green" if 200 <= code < 300 else "yellow" if 300 <= code < 400 else "red"
            lines.append(f"  [{color}]{code}[/{color}]: {count:,}")
        return "\n".join(lines)

    def _print_stats(self):
        stats = self.endpoint_stats
        console = self.output.console

        table = Table(title="Stats results", expand=True)
        table.add_column("Endpoint", style="cyan", overflow="fold")
        table.add_column("Hits", style="green", justify="right")
        for key, count in stats.visible():
            table.add_row(escape(key), f"{count:,}")
        console.print(table)

        hidden = stats.hidden_histogram()
        if hidden:
            summary = ", ".join(
                f"{keys} endpoint(s) x {count} hit(s)" for count, keys in sorted(hidden.items(), reverse=True)
            )
            console.print(f"[dim]Hidden stats: {summary}[/dim]")
