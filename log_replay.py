#!/usr/bin/env python3
"""
🔁 Nginx Access Log Replay
==========================
Replays requests from an nginx access log against another server, keeping
(or scaling) the original timing, and reports how the responses compare
with the recorded status codes.

Requirements:
    pip install aiohttp rich uvloop (optional: uvloop for faster event loop on Linux)

Usage:
    python log_replay.py -f access.log -p http://staging.local
    python log_replay.py -f access.log -p http://staging.local --ratio 2 --scale-mode
    python log_replay.py -f access.log -p https://staging.local --skip-ssl -s --delete-query-stats page,limit
    python log_replay.py -f access.log.gz -p http://staging.local -l results.log --report json -o report.json
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.markup import escape

from access_log import DEFAULT_LOG_FORMAT, LogFormatError, Timeline, read_timeline
from pacing import Pacer
from replay_engine import ConfigError, LogReplayEngine, ReplayConfig, ReplayOutput, ReportFormat
from replay_stats import parse_query_names

# Try to use uvloop for better performance on Linux
try:
    import uvloop
    UVLOOP_AVAILABLE = True
except ImportError:
    UVLOOP_AVAILABLE = False

console = Console()
error_console = Console(stderr=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="🔁 Replay nginx access logs against a target server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument("--file", "-f", required=True, help="Path of the nginx logs file")
    parser.add_argument("--prefix", "-p", required=True, help="URL prefix for sending requests")
    parser.add_argument("--ratio", "-r", type=float, default=1.0,
                        help="Acceleration / deceleration rate of sending requests, eg: 2, 0.5")
    parser.add_argument("--format", default=DEFAULT_LOG_FORMAT, help="Format of the nginx log")
    parser.add_argument("--debug", "-d", action="store_true", help="Show debug messages in console")
    parser.add_argument("--log-file", "-l", default="", help="Save results to this file")
    parser.add_argument("--timeout", "-t", type=float, help="Request timeout in seconds")
    parser.add_argument("--username", help="Username for basic auth")
    parser.add_argument("--password", help="Password for basic auth")
    parser.add_argument("--scale-mode", action="store_true",
                        help="Spread requests logged in the same second evenly across that second")
    parser.add_argument("--skip-sleep", action="store_true",
                        help="Remove pauses between requests. Attention: will hammer your server")
    parser.add_argument("--skip-ssl", action="store_true", help="Skip ssl certificate errors")
    parser.add_argument("--stats", "-s", action="store_true", help="Show stats of the requests")
    parser.add_argument("--delete-query-stats", default="",
                        help='Query parameters ignored when calculating stats, eg: "page,limit,size"')
    parser.add_argument("--stats-only-path", action="store_true", help="Keep only endpoints for showing stats")
    parser.add_argument("--hide-stats-limit", type=int, default=0,
                        help="Summarize endpoints with at most this many hits")
    parser.add_argument("--concurrency", "-c", type=int, default=0,
                        help="Max requests in flight (0 = unbounded)")
    parser.add_argument("--sort", action="store_true", help="Sort log lines by time before replaying")
    parser.add_argument("--follow-redirects", action="store_true",
                        help="Follow redirects instead of comparing the 3xx status")
    parser.add_argument("--report", choices=["console", "json"], default="console")
    parser.add_argument("--output", "-o", type=str, help="Output file path for the json report")

    return parser


def config_from_args(args: argparse.Namespace) -> ReplayConfig:
    config = ReplayConfig(
        prefix=args.prefix,
        ratio=args.ratio,
        scale_mode=args.scale_mode,
        skip_sleep=args.skip_sleep,
        skip_ssl=args.skip_ssl,
        timeout=args.timeout,
        username=args.username,
        password=args.password,
        stats=args.stats,
        delete_query_stats=parse_query_names(args.delete_query_stats),
        stats_only_path=args.stats_only_path,
        hide_stats_limit=args.hide_stats_limit,
        concurrency=args.concurrency,
        follow_redirects=args.follow_redirects,
        report_format=ReportFormat(args.report),
        report_output=args.output,
    )
    config.validate()
    return config


def check_paths(log_path: Path, results_path: Optional[Path]):
    """Fatal checks on input and output files, before anything is read or sent."""
    if not log_path.is_file():
        raise ConfigError(f"Cannot find file {log_path}")
    if results_path is not None and results_path.resolve() == log_path.resolve():
        raise ConfigError("log file can not be equal to the input file")


def run(coro):
    if UVLOOP_AVAILABLE:
        return uvloop.run(coro)
    return asyncio.run(coro)


def fail(message: str):
    error_console.print(f"[red]{escape(message)}[/red]")
    sys.exit(1)


async def run_replay(config: ReplayConfig, timeline: Timeline, debug_console: Console, results_file=None):
    output = ReplayOutput(console=console, error_console=error_console, debug_console=debug_console,
                          results_file=results_file)

    if timeline.skipped_lines:
        output.warning(f"Skipped {timeline.skipped_lines:,} unreadable log line(s)")

    console.print(f"\n[bold]Target:[/bold] {escape(config.prefix)}")
    console.print(f"[bold]Events:[/bold] {len(timeline):,}")
    console.print(f"[bold]Pacing:[/bold] {config.pacing_mode.value} (ratio {config.ratio})")
    planned_sleep_ms = Pacer(timeline.events, ratio=config.ratio, mode=config.pacing_mode).planned_sleep_ms
    console.print(f"[bold]Planned sleep:[/bold] {planned_sleep_ms / 1000:.2f} seconds")
    console.print(f"[dim]uvloop: {'enabled ✓' if UVLOOP_AVAILABLE else 'not available'}[/dim]\n")

    engine = LogReplayEngine(config, output=output)
    return await engine.replay(timeline)


def main(argv: Optional[List[str]] = None):
    args = build_parser().parse_args(argv)
    debug_console = Console(quiet=not args.debug)

    def on_skip(line_number: int, reason: str):
        debug_console.print(f"[dim]Skipping line {line_number}: {escape(reason)}[/dim]")

    try:
        config = config_from_args(args)
        results_path = Path(args.log_file) if args.log_file else None
        check_paths(Path(args.file), results_path)
        timeline = read_timeline(args.file, log_format=args.format, sort=args.sort, on_skip=on_skip)
    except (ConfigError, LogFormatError) as e:
        fail(str(e))
    except (OSError, EOFError) as e:
        fail(f"Cannot read file {args.file}: {e}")

    if results_path is not None:
        # Truncates a previous results file
        with open(results_path, "w", encoding="utf-8") as results_file:
            run(run_replay(config, timeline, debug_console, results_file))
    else:
        run(run_replay(config, timeline, debug_console))


if __name__ == "__main__":
    main()
