"""Tests for the self-healing backend connection."""

import asyncio
import json
from unittest.mock import AsyncMock, Mock

import pytest

from matilda_captions.connection.backend import BackendConnection, ConnectionState
from matilda_captions.connection.backoff import ReconnectPolicy

FAST = ReconnectPolicy(max_retries=3, base_delay_ms=1, max_delay_ms=10, jitter_ms=0)
SLOW = ReconnectPolicy(max_retries=3, base_delay_ms=10_000, max_delay_ms=30_000, jitter_ms=0)


class TestConnect:
    """Opening the stream and delivering messages."""

    @pytest.mark.asyncio
    async def test_connect_opens(self, fake_websocket, wait_until):
        ws = fake_websocket()
        states = []
        connection = BackendConnection(
            "ws://backend/ws/translate",
            FAST,
            connector=AsyncMock(return_value=ws),
            on_state_change=lambda state, conn: states.append(state),
        )

        connection.connect()
        assert connection.state == ConnectionState.CONNECTING
        await wait_until(lambda: connection.is_open)

        assert states == [ConnectionState.CONNECTING, ConnectionState.OPEN]
        connection.connector.assert_awaited_once_with("ws://backend/ws/translate")
        await connection.disconnect()

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self, fake_websocket, wait_until):
        connector = AsyncMock(return_value=fake_websocket())
        connection = BackendConnection("ws://backend", FAST, connector=connector)

        connection.connect()
        connection.connect()
        await wait_until(lambda: connection.is_open)
        connection.connect()

        assert connector.await_count == 1
        await connection.disconnect()

    @pytest.mark.asyncio
    async def test_send_serializes_json(self, fake_websocket, wait_until):
        ws = fake_websocket()
        connection = BackendConnection("ws://backend", FAST, connector=AsyncMock(return_value=ws))
        connection.connect()
        await wait_until(lambda: connection.is_open)

        metadata = {"transcript": "hello", "start_time": 0.0, "end_time": 1.0}
        assert connection.send(metadata) is True
        assert connection.send("raw text") is True
        await wait_until(lambda: len(ws.sent) == 2)

        assert json.loads(ws.sent[0]) == metadata
        assert ws.sent[1] == "raw text"
        await connection.disconnect()

    @pytest.mark.asyncio
    async def test_inbound_messages_reach_callback(self, fake_websocket, wait_until):
        ws = fake_websocket()
        on_message = Mock()
        connection = BackendConnection("ws://backend", FAST, connector=AsyncMock(return_value=ws), on_message=on_message)
        connection.connect()
        await wait_until(lambda: connection.is_open)

        ws.feed({"status": "ok"})
        await wait_until(lambda: on_message.called)

        on_message.assert_called_once_with({"status": "ok"})
        await connection.disconnect()


class TestSendWhenNotOpen:
    """Sends are dropped, never queued."""

    @pytest.mark.asyncio
    async def test_send_before_connect_is_dropped(self):
        connection = BackendConnection("ws://backend", FAST, connector=AsyncMock())

        assert connection.send({"transcript": "lost"}) is False
        assert connection.dropped_messages == 1
        assert connection.sent_messages == 0

    @pytest.mark.asyncio
    async def test_dropped_message_is_not_replayed(self, fake_websocket, wait_until):
        ws = fake_websocket()
        connection = BackendConnection("ws://backend", FAST, connector=AsyncMock(return_value=ws))

        connection.send({"n": 1})
        connection.connect()
        await wait_until(lambda: connection.is_open)
        connection.send({"n": 2})
        await wait_until(lambda: len(ws.sent) == 1)
        await asyncio.sleep(0.01)

        assert [json.loads(m) for m in ws.sent] == [{"n": 2}]
        await connection.disconnect()


class TestReconnect:
    """Backoff after losing the stream."""

    @pytest.mark.asyncio
    async def test_reconnects_after_loss_and_resets_attempts(self, fake_websocket, wait_until):
        first, second = fake_websocket(), fake_websocket()
        connector = AsyncMock(side_effect=[first, second])
        connection = BackendConnection("ws://backend", FAST, connector=connector)
        connection.connect()
        await wait_until(lambda: connection.is_open)

        first.drop()
        await wait_until(lambda: connection.websocket is second and connection.is_open)

        assert connector.await_count == 2
        assert connection.backoff.attempt == 0
        await connection.disconnect()

    @pytest.mark.asyncio
    async def test_closed_listener_sees_pending_retry(self, fake_websocket, wait_until):
        ws = fake_websocket()
        seen = []
        connection = BackendConnection(
            "ws://backend",
            SLOW,
            connector=AsyncMock(return_value=ws),
            on_state_change=lambda state, conn: seen.append((state, conn.retry_scheduled)),
        )
        connection.connect()
        await wait_until(lambda: connection.is_open)

        ws.drop()
        await wait_until(lambda: connection.state == ConnectionState.CLOSED)

        assert seen[-1] == (ConnectionState.CLOSED, True)
        assert connection.backoff.attempt == 1
        await connection.disconnect()

    @pytest.mark.asyncio
    async def test_exhausted_retries_end_in_error(self, wait_until):
        connector = AsyncMock(side_effect=OSError("connection refused"))
        states = []
        connection = BackendConnection(
            "ws://backend",
            FAST,
            connector=connector,
            on_state_change=lambda state, conn: states.append(state),
        )

        connection.connect()
        await wait_until(lambda: connection.state == ConnectionState.ERROR)

        assert not connection.retry_scheduled
        assert connector.await_count == 1 + FAST.max_retries
        assert states[-1] == ConnectionState.ERROR

        await asyncio.sleep(0.05)
        assert connector.await_count == 1 + FAST.max_retries
        assert connection.send({"x": 1}) is False

    @pytest.mark.asyncio
    async def test_connect_after_error_starts_over(self, fake_websocket, wait_until):
        connector = AsyncMock(side_effect=[OSError("down")] * 4 + [fake_websocket()])
        connection = BackendConnection("ws://backend", FAST, connector=connector)
        connection.connect()
        await wait_until(lambda: connection.state == ConnectionState.ERROR)

        connection.connect()
        await wait_until(lambda: connection.is_open)

        assert connection.backoff.attempt == 0
        await connection.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_cancels_pending_retry(self, wait_until):
        connector = AsyncMock(side_effect=OSError("connection refused"))
        connection = BackendConnection("ws://backend", SLOW, connector=connector)

        connection.connect()
        await wait_until(lambda: connection.retry_scheduled)

        await connection.disconnect()

        assert not connection.retry_scheduled
        assert connection.state == ConnectionState.CLOSED
        await asyncio.sleep(0.02)
        assert connector.await_count == 1

    @pytest.mark.asyncio
    async def test_disconnect_closes_without_retry(self, fake_websocket, wait_until):
        ws = fake_websocket()
        connector = AsyncMock(return_value=ws)
        connection = BackendConnection("ws://backend", FAST, connector=connector)
        connection.connect()
        await wait_until(lambda: connection.is_open)

        await connection.disconnect()
        await asyncio.sleep(0.02)

        assert ws.close_code == 1000
        assert connection.state == ConnectionState.CLOSED
        assert not connection.retry_scheduled
        assert connector.await_count == 1

    @pytest.mark.asyncio
    async def test_status(self, fake_websocket, wait_until):
        connection = BackendConnection("ws://backend", FAST, connector=AsyncMock(return_value=fake_websocket()))
        connection.connect()
        await wait_until(lambda: connection.is_open)

        status = connection.get_status()

        assert status["state"] == "open"
        assert status["backoff"]["attempt"] == 0
        await connection.disconnect()
