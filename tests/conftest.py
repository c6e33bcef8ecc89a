"""Shared fixtures for caption tests.

Logs go to a throwaway directory so test runs never touch ~/.matilda.
"""

import asyncio
import json
import os
import tempfile

import pytest

os.environ.setdefault("MATILDA_LOG_DIR", tempfile.mkdtemp(prefix="matilda-captions-logs-"))

from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK  # noqa: E402

_CAPTIONS_ENV = (
    "CAPTIONS_BACKEND_URL",
    "CAPTIONS_BACKEND_WS_URL",
    "CAPTIONS_RECOGNITION_URL",
    "CAPTIONS_OPERATING_POINT",
    "CAPTIONS_MAX_DELAY",
    "CAPTIONS_SESSION_DIR",
)


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self, incoming=None):
        self.sent = []
        self.close_code = None
        self._incoming: asyncio.Queue = asyncio.Queue()
        for message in incoming or []:
            self.feed(message)

    def feed(self, message):
        """Queue an inbound message; dicts are sent as JSON text."""
        if isinstance(message, dict):
            message = json.dumps(message)
        self._incoming.put_nowait(message)

    def drop(self):
        """Simulate the peer going away."""
        self._incoming.put_nowait(ConnectionClosedError(None, None))

    async def recv(self):
        item = await self._incoming.get()
        if isinstance(item, Exception):
            if self.close_code is None:
                self.close_code = 1006
            raise item
        return item

    async def send(self, data):
        if self.close_code is not None:
            raise ConnectionClosedOK(None, None)
        self.sent.append(data)

    async def close(self):
        if self.close_code is None:
            self.close_code = 1000
            self._incoming.put_nowait(ConnectionClosedOK(None, None))

    def sent_json(self):
        return [json.loads(item) for item in self.sent if isinstance(item, str)]


@pytest.fixture
def fake_websocket():
    """Factory for FakeWebSocket instances."""
    return FakeWebSocket


@pytest.fixture
def wait_until():
    """Poll a predicate on the event loop until it holds."""

    async def _wait_until(predicate, timeout=2.0, interval=0.005):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)

    return _wait_until


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep user config and CAPTIONS_* overrides out of the tests."""
    for name in _CAPTIONS_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("MATILDA_CONFIG", str(tmp_path / "no-config.toml"))


@pytest.fixture
def config(tmp_path):
    """ConfigLoader with defaults and a temporary session directory."""
    from matilda_captions.core.config import ConfigLoader

    loader = ConfigLoader(tmp_path / "config.toml")
    loader.set("persistence.dir", str(tmp_path / "sessions"))
    return loader
