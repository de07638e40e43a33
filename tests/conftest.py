import asyncio
import io

import pytest
from aiohttp import web
from rich.console import Console

from access_log import ReplayEvent, Timeline
from replay_engine import ReplayOutput

TARGET_STATE = web.AppKey("target_state", dict)


class RecordingSleep:
    """Stands in for asyncio.sleep and remembers every requested delay."""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)
        await asyncio.sleep(0)


class CapturedOutput(ReplayOutput):
    def __init__(self, results_file=None):
        self.main_buffer = io.StringIO()
        self.error_buffer = io.StringIO()
        self.debug_buffer = io.StringIO()
        super().__init__(
            console=Console(file=self.main_buffer, width=200, color_system=None),
            error_console=Console(file=self.error_buffer, width=200, color_system=None),
            debug_console=Console(file=self.debug_buffer, width=200, color_system=None),
            results_file=results_file,
        )

    @property
    def main(self) -> str:
        return self.main_buffer.getvalue()

    @property
    def errors(self) -> str:
        return self.error_buffer.getvalue()

    @property
    def debug_text(self) -> str:
        return self.debug_buffer.getvalue()


def make_timeline(*rows) -> Timeline:
    """Rows of (timestamp_ms, method, path, recorded_status[, user_agent])."""
    events = []
    for row in rows:
        timestamp_ms, method, path, status = row[:4]
        user_agent = row[4] if len(row) > 4 else ""
        events.append(ReplayEvent(timestamp_ms, method, path, user_agent, status))
    return Timeline(events=events)


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def output():
    return CapturedOutput()


@pytest.fixture
def make_log_line(faker):
    def _make(time_local="10/Oct/2020:13:55:36 +0000", request=None, status="200", user_agent=None):
        request = request or f"GET /{faker.uri_path()} HTTP/1.1"
        user_agent = faker.user_agent() if user_agent is None else user_agent
        return (
            f'{faker.ipv4()} - - [{time_local}] "{request}" {status} '
            f'{faker.random_int(0, 5000)} "-" "{user_agent}"'
        )
    return _make


def build_target_app() -> web.Application:
    """Target server: answers ?status=N with N and remembers what it saw."""
    app = web.Application()
    state = {"seen": [], "inflight": 0, "max_inflight": 0}
    app[TARGET_STATE] = state

    async def handler(request: web.Request) -> web.Response:
        state["seen"].append({
            "method": request.method,
            "path": request.path_qs,
            "user_agent": request.headers.get("User-Agent", ""),
            "authorization": request.headers.get("Authorization", ""),
        })
        state["inflight"] += 1
        state["max_inflight"] = max(state["max_inflight"], state["inflight"])
        try:
            delay = float(request.query.get("delay", 0))
            if delay:
                await asyncio.sleep(delay)
        finally:
            state["inflight"] -= 1
        return web.Response(status=int(request.query.get("status", 200)), text="ok")

    async def redirect(request: web.Request) -> web.Response:
        raise web.HTTPFound("/landing")

    app.router.add_route("*", "/redirect", redirect)
    app.router.add_route("*", "/{tail:.*}", handler)
    return app


@pytest.fixture
async def target(aiohttp_server):
    server = await aiohttp_server(build_target_app())
    server.prefix = f"http://{server.host}:{server.port}"
    server.state = server.app[TARGET_STATE]
    return server
