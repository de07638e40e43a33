from io import StringIO

import pytest
from rich.console import Console

import access_log
import log_replay
from conftest import make_timeline
from log_replay import build_parser, check_paths, config_from_args, main, run_replay
from pacing import PacingMode
from replay_engine import ConfigError, ReplayConfig, ReportFormat


def test_config_from_args_defaults(tmp_path):
    args = build_parser().parse_args(["-f", str(tmp_path / "access.log"), "-p", "http://staging.local"])

    config = config_from_args(args)

    assert config.ratio == 1.0
    assert config.pacing_mode == PacingMode.LITERAL
    assert config.delete_query_stats == []
    assert config.hide_stats_limit == 0
    assert config.concurrency == 0
    assert config.report_format == ReportFormat.CONSOLE


def test_config_from_args_all_options():
    args = build_parser().parse_args([
        "-f", "access.log", "-p", "https://staging.local", "-r", "0.5", "--scale-mode",
        "--skip-ssl", "-t", "2.5", "--username", "admin", "--password", "secret", "-s",
        "--delete-query-stats", "page,limit", "--stats-only-path", "--hide-stats-limit", "3",
        "-c", "50", "--report", "json", "-o", "report.json",
    ])

    config = config_from_args(args)

    assert config.ratio == 0.5
    assert config.pacing_mode == PacingMode.SCALE
    assert config.skip_ssl is True
    assert config.timeout == 2.5
    assert config.delete_query_stats == ["page", "limit"]
    assert config.stats_only_path is True
    assert config.hide_stats_limit == 3
    assert config.concurrency == 50
    assert config.report_format == ReportFormat.JSON
    assert config.report_output == "report.json"


def test_skip_sleep_wins_over_scale_mode():
    args = build_parser().parse_args(["-f", "a.log", "-p", "http://x.local", "--scale-mode", "--skip-sleep"])

    assert config_from_args(args).pacing_mode == PacingMode.SKIP


def test_check_paths_missing_input(tmp_path):
    with pytest.raises(ConfigError, match="Cannot find file"):
        check_paths(tmp_path / "missing.log", None)


def test_check_paths_results_equal_to_input(tmp_path):
    log_path = tmp_path / "access.log"
    log_path.write_text("")

    with pytest.raises(ConfigError):
        check_paths(log_path, tmp_path / "." / "access.log")


def test_main_exits_on_missing_file(tmp_path, capsys):
    with pytest.raises(SystemExit) as exc:
        main(["-f", str(tmp_path / "missing.log"), "-p", "http://staging.local"])

    assert exc.value.code == 1


def test_main_exits_on_bad_format_without_touching_results(tmp_path):
    log_path = tmp_path / "access.log"
    log_path.write_text("")
    results_path = tmp_path / "results.log"
    results_path.write_text("previous run\n")

    with pytest.raises(SystemExit) as exc:
        main(["-f", str(log_path), "-p", "http://staging.local", "-l", str(results_path),
              "--format", "$remote_addr $request"])

    assert exc.value.code == 1
    assert results_path.read_text() == "previous run\n"


def test_main_truncates_results_file_for_empty_log(tmp_path):
    log_path = tmp_path / "access.log"
    log_path.write_text("")
    results_path = tmp_path / "results.log"
    results_path.write_text("previous run\n")

    main(["-f", str(log_path), "-p", "http://staging.local", "-l", str(results_path)])

    assert results_path.read_text() == ""


def test_main_exits_on_corrupt_gzip_without_touching_results(tmp_path):
    """Test an unreadable input is a startup error reported before the results file is emptied."""
    log_path = tmp_path / "access.log.gz"
    log_path.write_text("plain text, not gzip\n")
    results_path = tmp_path / "results.log"
    results_path.write_text("previous run\n")

    with pytest.raises(SystemExit) as exc:
        main(["-f", str(log_path), "-p", "http://staging.local", "-l", str(results_path)])

    assert exc.value.code == 1
    assert results_path.read_text() == "previous run\n"


def test_main_exits_on_permission_denied(tmp_path, monkeypatch, capsys):
    log_path = tmp_path / "access.log"
    log_path.write_text("")
    results_path = tmp_path / "results.log"
    results_path.write_text("previous run\n")

    def deny(path):
        raise PermissionError(13, "Permission denied", str(path))

    monkeypatch.setattr(access_log, "open_log", deny)

    with pytest.raises(SystemExit) as exc:
        main(["-f", str(log_path), "-p", "http://staging.local", "-l", str(results_path)])

    assert exc.value.code == 1
    assert results_path.read_text() == "previous run\n"
    assert "Permission denied" in capsys.readouterr().err


async def test_banner_shows_planned_sleep(target, monkeypatch):
    banner = StringIO()
    monkeypatch.setattr(log_replay, "console", Console(file=banner, width=200))
    timeline = make_timeline((0, "GET", "/a", "200"), (1000, "GET", "/b", "200"))

    tally = await run_replay(ReplayConfig(prefix=target.prefix, ratio=4.0), timeline, Console(quiet=True))

    assert "Planned sleep: 0.25 seconds" in banner.getvalue()
    assert tally.success_count == 2
