"""Shared fixtures: a mock TMS target, a recording sink and clean configuration."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, List, Sequence, Tuple

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

# Ensure the project root is importable without an install
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

import tms_load  # noqa: E402

CREDS = {
    tms_load.TENANT: "test",
    tms_load.CLIENT_ID: "testclient1",
    tms_load.CLIENT_SECRET: "secret1",
}


class RecordingSink:
    """Collects sink calls as (level, message) pairs."""

    def __init__(self) -> None:
        self.lines: List[Tuple[str, str]] = []

    def info(self, msg: str) -> None:
        self.lines.append(("info", msg))

    def warn(self, msg: str) -> None:
        self.lines.append(("warn", msg))

    def error(self, msg: str) -> None:
        self.lines.append(("error", msg))

    def verbose(self, msg: str) -> None:
        self.lines.append(("verbose", msg))

    def table(self, title: str, rows: Sequence[Sequence[Any]], headers: Sequence[str] = ()) -> None:
        self.lines.append(("table", title))

    def of(self, level: str) -> List[str]:
        return [m for lvl, m in self.lines if lvl == level]


class MockTarget:
    """aiohttp app standing in for the TMS service; records every hit."""

    def __init__(self, status: int = 200) -> None:
        self.status = status
        self.hits: List[Tuple[str, dict]] = []
        self.base_url = ""

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/v1/tms/client/{client_id}", self._client)
        app.router.add_get("/v1/tms/version", self._version)
        return app

    async def _client(self, request: web.Request) -> web.Response:
        self.hits.append((request.path, dict(request.headers)))
        return web.json_response({"client_id": request.match_info["client_id"]}, status=self.status)

    async def _version(self, request: web.Request) -> web.Response:
        self.hits.append((request.path, dict(request.headers)))
        return web.Response(text="tms 1.4.2", status=self.status)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def config() -> tms_load.RuntimeConfig:
    return tms_load.RuntimeConfig.from_env(CREDS)


@pytest.fixture(autouse=True)
def clean_runtime_config(monkeypatch):
    for key in tms_load.CREDENTIAL_KEYS + (tms_load.VERBOSE, tms_load.PARSE_RESPONSE):
        monkeypatch.delenv(key, raising=False)
    tms_load.reset_runtime_config()
    yield
    tms_load.reset_runtime_config()


@pytest_asyncio.fixture
async def target_factory():
    servers = []

    async def factory(status: int = 200) -> MockTarget:
        target = MockTarget(status)
        server = TestServer(target.app())
        await server.start_server()
        target.base_url = str(server.make_url("/"))
        servers.append(server)
        return target

    yield factory
    for server in servers:
        await server.close()
