"""Pytest fixtures for pomodoro-jam tests."""

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import websockets

from pomodoro_jam.config import JamConfig

_CLOSE = object()


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self, url: str = "") -> None:
        self.url = url
        self.sent: list[str] = []
        self.closed = False
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.closed:
            raise websockets.ConnectionClosed(None, None)
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(_CLOSE)

    def feed(self, data: str | dict[str, Any]) -> None:
        """Queue an inbound frame from the relay."""
        if isinstance(data, dict):
            data = json.dumps(data)
        self._inbox.put_nowait(data)

    def drop(self) -> None:
        """Simulate the relay closing the connection."""
        self._inbox.put_nowait(_CLOSE)

    def sent_messages(self, type_: str | None = None) -> list[dict[str, Any]]:
        messages = [json.loads(raw) for raw in self.sent]
        if type_ is not None:
            messages = [m for m in messages if m["type"] == type_]
        return messages

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is _CLOSE:
            self.closed = True
            raise StopAsyncIteration
        return item


async def settle(rounds: int = 10) -> None:
    """Let background tasks process queued frames."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def relay():
    """Patch websockets.connect; every successful connect yields a new FakeWebSocket.

    ``relay.sockets`` lists the sockets handed out, newest last.
    """
    sockets: list[FakeWebSocket] = []

    async def connect(url: str, **kwargs: Any) -> FakeWebSocket:
        ws = FakeWebSocket(url)
        sockets.append(ws)
        return ws

    with patch("websockets.connect", new_callable=AsyncMock) as mock_connect:
        mock_connect.side_effect = connect
        mock_connect.sockets = sockets
        yield mock_connect


@pytest.fixture
def fast_config():
    """Config with short intervals for timing-based tests."""
    return JamConfig(
        server="relay.test",
        state_sync_interval_ms=100,
        max_reconnect_attempts=3,
        reconnect_delay_base_ms=1,
    )


@pytest.fixture
def mock_timer():
    """Timer collaborator with a fixed snapshot."""
    timer = MagicMock()
    timer.get_state.return_value = {"phase": "work", "remaining": 1500, "running": True}
    return timer


@pytest.fixture
def cli_runner():
    """Click CLI test runner."""
    from click.testing import CliRunner

    return CliRunner()


@pytest.fixture
def temp_config_file(tmp_path):
    """Create temporary TOML config file."""
    config_file = tmp_path / "config.toml"
    config_file.write_text(
        """[jam]
server = "localhost:1999"
state_sync_interval_ms = 500
max_reconnect_attempts = 3
participant_name = "Ada"
"""
    )
    return config_file


@pytest.fixture
def mock_sentry_sdk():
    """Mock Sentry SDK."""
    with (
        patch("sentry_sdk.init") as mock_init,
        patch("sentry_sdk.set_tag") as mock_tag,
        patch("sentry_sdk.flush") as mock_flush,
    ):
        yield {"init": mock_init, "set_tag": mock_tag, "flush": mock_flush}
