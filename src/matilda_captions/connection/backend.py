#!/usr/bin/env python3
"""WebSocket connection to the caption backend.

The backend stream receives finalized transcript metadata as a side
channel. Delivery is best effort: nothing is queued while the stream is
down, and reconnects follow the Backoff policy until it gives up.
"""

import asyncio
import json
import random
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import websockets

from ..core.logging import setup_logging
from .backoff import Backoff, ReconnectPolicy

logger = setup_logging(__name__)


class ConnectionState(Enum):
    """States of the backend connection."""

    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"
    ERROR = "error"  # Retry budget spent; only connect() leaves this state


Connector = Callable[[str], Awaitable[Any]]
StateCallback = Callable[["ConnectionState", "BackendConnection"], None]
MessageCallback = Callable[[Any], None]


async def _default_connector(url: str):
    return await websockets.connect(url)


class BackendConnection:
    """Self-healing backend stream.

    State machine::

        CLOSED --connect()--> CONNECTING --open--> OPEN
        OPEN --lost--> CLOSED --backoff--> CONNECTING ...
        CLOSED --budget spent--> ERROR

    disconnect() forces CLOSED from any state and cancels a pending retry.
    """

    def __init__(
        self,
        url: str,
        policy: ReconnectPolicy | None = None,
        connector: Connector | None = None,
        on_state_change: StateCallback | None = None,
        on_message: MessageCallback | None = None,
        rng: Callable[[], float] | None = None,
    ):
        """Initialize backend connection.

        Args:
            url: Backend stream URL
            policy: Reconnect policy (uses defaults if not provided)
            connector: Coroutine function opening a websocket, injectable for tests
            on_state_change: Called after every state transition
            on_message: Called with each decoded inbound message
            rng: Jitter source for the backoff

        """
        self.url = url
        self.connector = connector or _default_connector
        self.on_state_change = on_state_change
        self.on_message = on_message
        self.backoff = Backoff(policy, rng or random.random)

        self.websocket = None
        self._state = ConnectionState.CLOSED
        self._manual_close = False
        self._connect_task: asyncio.Task | None = None
        self._reader_task: asyncio.Task | None = None
        self._retry_handle: asyncio.TimerHandle | None = None
        self._send_tasks: set[asyncio.Task] = set()

        self.sent_messages = 0
        self.dropped_messages = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == ConnectionState.OPEN

    @property
    def retry_scheduled(self) -> bool:
        return self._retry_handle is not None

    def _set_state(self, state: ConnectionState):
        if state == self._state:
            return
        previous, self._state = self._state, state
        logger.debug(f"Backend connection {previous.value} -> {state.value}")
        if self.on_state_change:
            try:
                self.on_state_change(state, self)
            except Exception as e:
                logger.error(f"Error in state change callback: {e}")

    def connect(self):
        """Start connecting. No-op while already connecting or open."""
        if self._state in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            return
        if self._state == ConnectionState.ERROR:
            self.backoff.reset()

        self._manual_close = False
        self._cancel_retry()
        self._start_attempt()

    def _start_attempt(self):
        self._set_state(ConnectionState.CONNECTING)
        self._connect_task = asyncio.get_running_loop().create_task(self._open())

    async def _open(self):
        try:
            websocket = await self.connector(self.url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Backend connection to {self.url} failed: {e}")
            self._handle_closed()
            return

        if self._manual_close:
            # disconnect() raced the handshake
            await websocket.close()
            return

        self.websocket = websocket
        self.backoff.record_success()
        logger.info(f"Connected to backend stream {self.url}")
        self._set_state(ConnectionState.OPEN)
        self._reader_task = asyncio.get_running_loop().create_task(self._read_loop(websocket))

    async def _read_loop(self, websocket):
        try:
            while True:
                message = await websocket.recv()
                self._dispatch(message)
        except websockets.exceptions.ConnectionClosed as e:
            logger.debug(f"Backend stream closed: {e}")
        except OSError as e:
            logger.warning(f"Backend stream error: {e}")

        if websocket is self.websocket:
            self.websocket = None
            self._handle_closed()

    def _dispatch(self, message):
        try:
            data = json.loads(message)
        except (TypeError, json.JSONDecodeError):
            data = message
        logger.debug(f"Received message from backend: {str(data)[:200]}")
        if self.on_message:
            try:
                self.on_message(data)
            except Exception as e:
                logger.error(f"Error in backend message callback: {e}")

    def _handle_closed(self):
        if self._manual_close:
            self._set_state(ConnectionState.CLOSED)
            return

        delay = self.backoff.next_delay()
        if delay is None:
            logger.error(f"Backend reconnect gave up after {self.backoff.policy.max_retries} attempts")
            self._set_state(ConnectionState.CLOSED)
            self._set_state(ConnectionState.ERROR)
            return

        logger.info(
            f"Backend reconnect attempt {self.backoff.attempt}/{self.backoff.policy.max_retries} in {delay:.2f}s"
        )
        # Listeners of the CLOSED transition see the pending retry
        self._retry_handle = asyncio.get_running_loop().call_later(delay, self._retry)
        self._set_state(ConnectionState.CLOSED)

    def _retry(self):
        self._retry_handle = None
        if self._manual_close:
            return
        self._start_attempt()

    def _cancel_retry(self):
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    def send(self, message: Any) -> bool:
        """Send without waiting.

        Args:
            message: String, or anything JSON-serializable

        Returns:
            False if the stream is not open and the message was dropped

        """
        if self._state != ConnectionState.OPEN or self.websocket is None:
            self.dropped_messages += 1
            logger.warning(f"Backend stream is not open (state: {self._state.value}), dropping message")
            return False

        payload = message if isinstance(message, str) else json.dumps(message)
        task = asyncio.get_running_loop().create_task(self._send(self.websocket, payload))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)
        self.sent_messages += 1
        return True

    async def _send(self, websocket, payload: str):
        try:
            await websocket.send(payload)
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(f"Backend stream closed while sending: {e}")
        except OSError as e:
            logger.warning(f"Failed to send to backend: {e}")

    async def disconnect(self):
        """Close for good. Cancels any pending retry and in-flight attempt."""
        self._manual_close = True
        self._cancel_retry()

        current = asyncio.current_task()
        for task in (self._connect_task, self._reader_task, *self._send_tasks):
            if task is not None and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._connect_task = None
        self._reader_task = None
        self._send_tasks.clear()

        websocket, self.websocket = self.websocket, None
        if websocket is not None:
            try:
                await websocket.close()
            except (websockets.exceptions.WebSocketException, OSError) as e:
                logger.debug(f"Error closing backend stream: {e}")
            logger.info("Disconnected from backend stream")

        self._set_state(ConnectionState.CLOSED)

    def get_status(self) -> dict:
        return {
            "state": self._state.value,
            "url": self.url,
            "retry_scheduled": self.retry_scheduled,
            "sent_messages": self.sent_messages,
            "dropped_messages": self.dropped_messages,
            "backoff": self.backoff.get_status(),
        }
