#!/usr/bin/env python3
"""WebSocket client for the realtime recognition service.

This module provides the RecognitionClient class: it opens an
authenticated session, streams raw float32 audio frames, and hands every
decoded inbound message to a callback while a background listener runs.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urlencode

import websockets

from ..core.errors import RecognitionError, TransportError
from ..core.logging import setup_logging
from ..schemas.recognition import ErrorMessage, RecognitionStarted
from ..schemas.requests import EndOfStream, StartRecognition

logger = setup_logging(__name__)

MessageCallback = Callable[[dict], None]
LostCallback = Callable[[Exception | None], None]
Connector = Callable[[str], Awaitable[Any]]

# One pcm_f32le sample
FRAME_BYTES = 4


def validate_audio_frame(frame: bytes, frame_bytes: int = FRAME_BYTES) -> bool:
    """Check that a buffer holds whole samples.

    The service rejects streams with torn samples, so misaligned buffers
    are dropped before they reach the wire.
    """
    if not frame:
        return False
    if len(frame) % frame_bytes != 0:
        logger.warning(f"Rejecting audio buffer of {len(frame)} bytes: not a multiple of {frame_bytes}")
        return False
    return True


async def _default_connector(url: str):
    return await websockets.connect(url, max_size=None)


class RecognitionClient:
    """Realtime recognition session over one websocket.

    The client does not reconnect by itself; when the stream is lost
    while running, ``on_lost`` fires once and the owner decides what to do.
    """

    def __init__(
        self,
        url: str,
        on_message: MessageCallback | None = None,
        on_lost: LostCallback | None = None,
        connector: Connector | None = None,
        frame_bytes: int = FRAME_BYTES,
    ):
        """Initialize recognition client.

        Args:
            url: Realtime endpoint, without credentials
            on_message: Called with every decoded inbound message
            on_lost: Called once if the stream closes while not stopping
            connector: Coroutine function opening a websocket, injectable for tests
            frame_bytes: Size of one audio sample; buffers must be a multiple of it

        """
        self.url = url
        self.on_message = on_message
        self.on_lost = on_lost
        self.connector = connector or _default_connector
        self.frame_bytes = frame_bytes
        self.rejected_frames = 0

        self.websocket = None
        self.session_id: str | None = None
        self.seq_no = 0
        self.total_audio_bytes = 0

        self._listener_task: asyncio.Task | None = None
        self._stop_listener = asyncio.Event()
        self._end_of_transcript = asyncio.Event()
        self._stopping = False
        self._lost_reported = False

    @property
    def running(self) -> bool:
        return self.session_id is not None and not self._is_websocket_closed()

    def _is_websocket_closed(self) -> bool:
        """Check if WebSocket connection is closed.

        Returns:
            True if WebSocket is closed or invalid

        """
        if not self.websocket:
            return True

        if hasattr(self.websocket, "close_code") and self.websocket.close_code is not None:
            return True
        if hasattr(self.websocket, "state") and hasattr(self.websocket.state, "CLOSED"):
            return self.websocket.state == self.websocket.state.CLOSED

        return False

    def _session_url(self, token: str) -> str:
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{urlencode({'jwt': token})}"

    async def start(self, token: str, request: StartRecognition, timeout_s: float = 10.0) -> str:
        """Open the stream and start recognition.

        Args:
            token: Short-lived realtime token
            request: StartRecognition message to send
            timeout_s: How long to wait for RecognitionStarted

        Returns:
            Recognition session id reported by the service

        Raises:
            TransportError: If the stream cannot be opened or times out
            RecognitionError: If the service answers with an Error message

        """
        # Restart after a lost stream: drop the dead socket first
        await self._stop_listener_task()
        await self._close_websocket()

        self._stopping = False
        self._lost_reported = False
        self._end_of_transcript.clear()
        self.seq_no = 0
        self.total_audio_bytes = 0

        try:
            self.websocket = await self.connector(self._session_url(token))
        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.error(f"Failed to connect to recognition service: {e}")
            raise TransportError(f"Failed to connect to recognition service: {e}") from e

        logger.info("Connected to recognition service")

        try:
            await self.websocket.send(request.model_dump_json(exclude_none=True))
            started = await asyncio.wait_for(self._wait_for_started(), timeout=timeout_s)
        except TimeoutError as e:
            await self._close_websocket()
            raise TransportError(f"Recognition did not start within {timeout_s:.0f}s") from e
        except websockets.exceptions.ConnectionClosed as e:
            await self._close_websocket()
            raise TransportError(f"Recognition stream closed during start: {e}") from e
        except RecognitionError:
            await self._close_websocket()
            raise

        self.session_id = started.id or "unknown"
        logger.info(f"Recognition started: {self.session_id}")
        self._start_listener()
        return self.session_id

    async def _wait_for_started(self) -> RecognitionStarted:
        while True:
            raw = await self.websocket.recv()
            data = self._decode(raw)
            if data is None:
                continue

            tag = data.get("message")
            if tag == "RecognitionStarted":
                return RecognitionStarted.model_validate(data)
            if tag == "Error":
                error = ErrorMessage.model_validate(data)
                logger.error(f"Recognition refused to start: {error.type}: {error.reason}")
                raise RecognitionError(error.reason or "", error.type)
            logger.debug(f"Ignoring {tag} before RecognitionStarted")

    def _decode(self, raw) -> dict | None:
        if isinstance(raw, bytes):
            logger.debug(f"Ignoring {len(raw)} byte binary frame")
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON received: {e}")
            return None
        if not isinstance(data, dict):
            return None
        return data

    async def _listen(self):
        """Background task dispatching inbound messages until stopped."""
        logger.debug("Starting recognition listener")
        lost_error: Exception | None = None
        try:
            while not self._stop_listener.is_set():
                if self._is_websocket_closed():
                    logger.debug("WebSocket closed, stopping listener")
                    break

                try:
                    # Use wait_for to allow periodic checking of stop flag
                    raw = await asyncio.wait_for(self.websocket.recv(), timeout=0.5)
                except TimeoutError:
                    continue
                except websockets.exceptions.ConnectionClosed as e:
                    logger.debug(f"Connection closed during listen: {e}")
                    lost_error = e
                    break

                data = self._decode(raw)
                if data is None:
                    continue
                self._handle(data)
        finally:
            logger.debug("Recognition listener stopped")

        if not self._stopping:
            self._report_lost(lost_error)

    def _handle(self, data: dict):
        tag = data.get("message")
        if tag == "EndOfTranscript":
            self._end_of_transcript.set()
        elif tag == "AudioAdded":
            # Acknowledgements are only useful for flow-control diagnostics
            return
        elif tag in ("Info", "Warning"):
            logger.info(f"Recognition {tag}: {data.get('type')}: {data.get('reason')}")

        if self.on_message:
            try:
                self.on_message(data)
            except Exception as e:
                logger.error(f"Error in recognition message callback: {e}")

    def _report_lost(self, error: Exception | None):
        if self._lost_reported:
            return
        self._lost_reported = True
        logger.warning(f"Recognition stream lost: {error or 'closed by server'}")
        if self.on_lost:
            try:
                self.on_lost(error)
            except Exception as e:
                logger.error(f"Error in recognition lost callback: {e}")

    def _start_listener(self):
        self._stop_listener.clear()
        self._listener_task = asyncio.get_running_loop().create_task(self._listen())

    async def _stop_listener_task(self):
        self._stop_listener.set()
        task, self._listener_task = self._listener_task, None
        if task is None or task is asyncio.current_task():
            return
        try:
            await asyncio.wait_for(task, timeout=2.0)
        except TimeoutError:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def send_audio(self, frame: bytes) -> bool:
        """Send one raw audio frame.

        Returns:
            False if the frame was misaligned or the stream is not running

        """
        if not validate_audio_frame(frame, self.frame_bytes):
            self.rejected_frames += 1
            return False
        if not self.running:
            logger.debug("Recognition stream is not running, dropping audio frame")
            return False

        try:
            await self.websocket.send(frame)
        except websockets.exceptions.ConnectionClosed as e:
            logger.error(f"Connection closed while sending audio: {e}")
            self._report_lost(e)
            return False

        self.seq_no += 1
        self.total_audio_bytes += len(frame)
        return True

    async def stop(self, drain_timeout_s: float = 2.0):
        """End the stream, waiting briefly for the final transcript."""
        self._stopping = True

        if self.running:
            try:
                await self.websocket.send(EndOfStream(last_seq_no=self.seq_no).model_dump_json())
                await asyncio.wait_for(self._end_of_transcript.wait(), timeout=drain_timeout_s)
            except TimeoutError:
                logger.debug("No EndOfTranscript before timeout")
            except websockets.exceptions.ConnectionClosed as e:
                logger.debug(f"Connection closed while ending stream: {e}")

        # Closing first wakes a listener blocked in recv
        await self._close_websocket()
        await self._stop_listener_task()
        if self.session_id:
            logger.info(f"Recognition stopped: {self.session_id} ({self.seq_no} frames)")
        self.session_id = None

    async def _close_websocket(self):
        websocket, self.websocket = self.websocket, None
        if websocket is None:
            return
        try:
            await websocket.close()
        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.debug(f"Error closing recognition stream: {e}")

    def get_status(self) -> dict:
        return {
            "session_id": self.session_id,
            "running": self.running,
            "seq_no": self.seq_no,
            "total_audio_bytes": self.total_audio_bytes,
        }
