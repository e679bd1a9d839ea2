"""Shared pytest configuration for the project test suite."""
from __future__ import annotations

import asyncio
import sys
import threading
from pathlib import Path
from typing import Generator

import pytest
from aiohttp import web


# Ensure the repository root (which contains the ``penguin_bank`` package) is importable.
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from penguin_bank.config import DEFAULT_DEMO_USER_ID, Settings  # noqa: E402
from penguin_bank.datastore import InMemoryDataStore  # noqa: E402
from penguin_bank.dispatcher import ProtocolDispatcher  # noqa: E402
from penguin_bank.logger import StructuredLogger  # noqa: E402
from penguin_bank.metrics import MetricsCollector  # noqa: E402
from penguin_bank.sessions import SessionRegistry  # noqa: E402
from penguin_bank.tools import BankingTools  # noqa: E402

USER_ID = DEFAULT_DEMO_USER_ID


@pytest.fixture
def settings() -> Settings:
    return Settings(data_backend="memory", log_level="debug", tool_timeout_seconds=1.0)


@pytest.fixture
def store() -> InMemoryDataStore:
    return InMemoryDataStore(USER_ID)


@pytest.fixture
def tools(store: InMemoryDataStore) -> BankingTools:
    return BankingTools(store, USER_ID)


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def sessions() -> SessionRegistry:
    return SessionRegistry(capacity=5)


@pytest.fixture
def logger() -> StructuredLogger:
    return StructuredLogger("penguin_bank.tests", level="debug")


@pytest.fixture
def dispatcher(tools, sessions, metrics, logger) -> ProtocolDispatcher:
    return ProtocolDispatcher(tools, sessions, metrics, logger, tool_timeout=1.0)


@pytest.fixture(scope="session")
def live_server_url() -> Generator[str, None, None]:
    """Boot ``create_app`` on ``127.0.0.1`` with the in-memory backend.

    The server runs on its own event loop in a daemon thread so synchronous
    ``requests`` based tests can talk to it over a real socket.
    """

    from penguin_bank.server import create_app

    loop = asyncio.new_event_loop()
    ready = threading.Event()
    state = {}

    def _run() -> None:
        asyncio.set_event_loop(loop)
        app = create_app(Settings(data_backend="memory", log_level="info"))
        runner = web.AppRunner(app)
        loop.run_until_complete(runner.setup())
        site = web.TCPSite(runner, host="127.0.0.1", port=0)
        loop.run_until_complete(site.start())
        sockets = site._server.sockets  # type: ignore[attr-defined]
        assert sockets, "aiohttp site did not expose any sockets"
        port = sockets[0].getsockname()[1]
        state["base_url"] = f"http://127.0.0.1:{port}"
        ready.set()
        try:
            loop.run_forever()
        finally:
            loop.run_until_complete(runner.cleanup())
            loop.close()

    thread = threading.Thread(target=_run, name="penguin-bank-test-server", daemon=True)
    thread.start()
    if not ready.wait(timeout=10):
        raise RuntimeError("Timed out starting MCP test server")

    try:
        yield state["base_url"]
    finally:
        if loop.is_running():
            loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout=5)
