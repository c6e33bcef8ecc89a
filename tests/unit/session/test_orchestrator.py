"""Tests for the caption session orchestrator.

Real connection, scheduler and persistence objects run against in-memory
websockets; only credentials and audio capture are faked.
"""

import struct
from unittest.mock import AsyncMock

import pytest

from matilda_captions.connection.backend import BackendConnection, ConnectionState
from matilda_captions.connection.backoff import ReconnectPolicy
from matilda_captions.connection.recognition import RecognitionClient
from matilda_captions.core.errors import (
    CapabilityError,
    CaptionsError,
    CredentialError,
    ReconnectExhaustedError,
    RecognitionError,
)
from matilda_captions.session import SessionOrchestrator, SessionStatus
from matilda_captions.session.audio import s16le_to_f32le
from matilda_captions.session.persistence import MemorySnapshotStore, SessionSnapshot
from matilda_captions.transcript import Paragraph, Segment

BACKEND_POLICY = ReconnectPolicy(max_retries=2, base_delay_ms=1, max_delay_ms=5, jitter_ms=0)
SLOW_BACKEND_POLICY = ReconnectPolicy(max_retries=2, base_delay_ms=10_000, max_delay_ms=30_000, jitter_ms=0)


def started(session_id="rec-1"):
    return {"message": "RecognitionStarted", "id": session_id}


def transcript(text, start, end, speaker="S1", final=True):
    return {
        "message": "AddTranscript" if final else "AddPartialTranscript",
        "metadata": {"transcript": text, "start_time": start, "end_time": end},
        "results": [
            {"alternatives": [{"content": text, "speaker": speaker}], "start_time": start, "end_time": end}
        ],
    }


def translation(text, start, speaker="S1", final=True):
    return {
        "message": "AddTranslation" if final else "AddPartialTranslation",
        "language": "es",
        "results": [{"content": text, "start_time": start, "end_time": start + 1.0, "speaker": speaker}],
    }


class FakeAudioSource:
    """Capture stand-in fed by the test."""

    def __init__(self, error=None):
        self.error = error
        self.on_frame = None
        self.started = False
        self._recorded = bytearray()

    async def start(self, on_frame):
        if self.error:
            raise self.error
        self.on_frame = on_frame
        self.started = True

    async def stop(self):
        self.started = False

    @property
    def recorded_audio(self):
        return bytes(self._recorded)

    def load_recording(self, data):
        self._recorded = bytearray(data)

    async def push(self, pcm: bytes):
        self._recorded.extend(pcm)
        await self.on_frame(s16le_to_f32le(pcm))


@pytest.fixture
def service_socket(fake_websocket):
    """Recognition websocket that answers EndOfStream like the service does."""

    class ServiceSocket(fake_websocket):
        async def send(self, data):
            await super().send(data)
            if isinstance(data, str) and '"EndOfStream"' in data:
                self.feed({"message": "EndOfTranscript"})

    return ServiceSocket


@pytest.fixture
def session_config(config):
    config.set("rendering.typewriter", False)
    config.set("persistence.interval_s", 0.01)
    config.set(
        "recognition.reconnect",
        {"max_retries": 3, "base_delay_ms": 1, "max_delay_ms": 5, "jitter_ms": 0},
    )
    return config


@pytest.fixture
def make_session(session_config, service_socket, fake_websocket):
    """Build an orchestrator wired to in-memory transports."""

    def _make(
        recognition_sockets=None,
        backend_connector=None,
        credentials=None,
        audio=None,
        store=None,
        backend_policy=BACKEND_POLICY,
    ):
        if recognition_sockets is None:
            recognition_sockets = [service_socket([started()])]
        recognition = RecognitionClient(
            session_config.recognition_url,
            connector=AsyncMock(side_effect=recognition_sockets),
        )
        backend = BackendConnection(
            session_config.backend_stream_url,
            backend_policy,
            connector=backend_connector or AsyncMock(return_value=fake_websocket()),
        )
        return SessionOrchestrator(
            config=session_config,
            session_id="test-session",
            credentials=credentials or AsyncMock(return_value="tok"),
            recognition=recognition,
            backend=backend,
            audio_source=audio or FakeAudioSource(),
            store=store if store is not None else MemorySnapshotStore(),
        )

    return _make


class TestLifecycle:
    """Start, stop and failed initialization."""

    @pytest.mark.asyncio
    async def test_start_reaches_active(self, make_session, service_socket, wait_until):
        rec_ws = service_socket([started()])
        audio = FakeAudioSource()
        session = make_session(recognition_sockets=[rec_ws], audio=audio)

        await session.start()

        assert session.status == SessionStatus.ACTIVE
        assert session.recognition_session_id == "rec-1"
        assert audio.started
        assert rec_ws.sent_json()[0]["message"] == "StartRecognition"
        session.recognition.connector.assert_awaited_once_with(f"{session.config.recognition_url}?jwt=tok")
        await wait_until(lambda: session.backend.is_open)

        await session.stop()

        assert session.status == SessionStatus.IDLE
        assert not audio.started
        assert rec_ws.close_code == 1000
        assert not session.backend.is_open

    @pytest.mark.asyncio
    async def test_start_twice_is_ignored(self, make_session):
        session = make_session()
        await session.start()

        await session.start()

        assert session.recognition.connector.await_count == 1
        await session.stop()

    @pytest.mark.asyncio
    async def test_credential_failure_returns_to_idle(self, make_session):
        session = make_session(credentials=AsyncMock(side_effect=CredentialError("Failed to get token: HTTP 500")))

        with pytest.raises(CredentialError):
            await session.start()

        assert session.status == SessionStatus.IDLE
        assert isinstance(session.last_error, CredentialError)
        assert session.banner.kind == "error"
        session.recognition.connector.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_capture_tool_tears_down_recognition(self, make_session, service_socket):
        rec_ws = service_socket([started()])
        session = make_session(
            recognition_sockets=[rec_ws],
            audio=FakeAudioSource(error=CapabilityError("Audio capture tool 'arecord' not found.")),
        )

        with pytest.raises(CapabilityError):
            await session.start()

        assert session.status == SessionStatus.IDLE
        assert rec_ws.close_code == 1000
        assert not session.recognition.running
        assert "arecord" in session.banner.message

    @pytest.mark.asyncio
    async def test_refused_recognition_is_fatal(self, make_session, service_socket):
        rec_ws = service_socket([{"message": "Error", "type": "quota_exceeded", "reason": "Quota exceeded"}])
        session = make_session(recognition_sockets=[rec_ws])

        with pytest.raises(RecognitionError):
            await session.start()

        assert session.status == SessionStatus.IDLE
        assert session.banner.is_fatal
        assert "quota" in session.banner.message.lower()

    @pytest.mark.asyncio
    async def test_stop_persists_snapshot_with_audio(self, make_session, service_socket):
        rec_ws = service_socket([started()])
        audio = FakeAudioSource()
        store = MemorySnapshotStore()
        session = make_session(recognition_sockets=[rec_ws], audio=audio, store=store)
        await session.start()

        pcm = struct.pack("<4h", 0, 1000, -1000, 32767)
        await audio.push(pcm)
        session.handle_message(transcript("hello", 0.0, 1.0))
        await session.stop()

        snapshot = store.get("test-session")
        assert snapshot.audio == pcm
        assert snapshot.paragraphs[0].segments[0].text == "hello"
        assert rec_ws.sent[1] == s16le_to_f32le(pcm)
        assert rec_ws.sent_json()[-1] == {"message": "EndOfStream", "last_seq_no": 1}

    @pytest.mark.asyncio
    async def test_stop_when_idle_is_noop(self, make_session):
        session = make_session()
        await session.stop()
        assert "test-session" not in session.store


class TestMessages:
    """Recognition messages flowing into the transcript and display."""

    @pytest.mark.asyncio
    async def test_final_transcript_metadata_goes_to_backend(self, make_session, fake_websocket, wait_until):
        backend_ws = fake_websocket()
        session = make_session(backend_connector=AsyncMock(return_value=backend_ws))
        await session.start()
        await wait_until(lambda: session.backend.is_open)

        session.handle_message(transcript("hel", 0.0, 0.3, final=False))
        session.handle_message(transcript("hello", 0.0, 1.0))
        await wait_until(lambda: len(backend_ws.sent) == 1)

        assert backend_ws.sent_json() == [{"transcript": "hello", "start_time": 0.0, "end_time": 1.0}]
        await session.stop()

    @pytest.mark.asyncio
    async def test_messages_arrive_through_recognition_stream(self, make_session, service_socket, wait_until):
        rec_ws = service_socket([started()])
        session = make_session(recognition_sockets=[rec_ws])
        await session.start()

        rec_ws.feed(transcript("hello", 0.0, 1.0, speaker="Alice"))
        await wait_until(lambda: len(session.state.paragraphs) == 1)

        assert session.state.paragraphs[0].speaker == "Alice"
        await session.stop()

    @pytest.mark.asyncio
    async def test_speakers_and_silence_shape_paragraphs(self, make_session):
        session = make_session()

        for message in [
            transcript("Hello", 0.0, 1.0, speaker="Alice"),
            transcript(" world.", 1.2, 2.0, speaker="Alice"),
            transcript("Hi", 2.1, 2.5, speaker="Bob"),
            transcript("Again.", 5.0, 5.8, speaker="Alice"),
            # Re-delivered final
            transcript("Again.", 5.0, 5.8, speaker="Alice"),
        ]:
            session.handle_message(message)
        session.writer.cancel()

        assert [(p.id, p.speaker) for p in session.state.paragraphs] == [(0, "Alice"), (1, "Bob"), (2, "Alice")]
        assert session.export_text() == "Alice: Hello world.\n\nBob: Hi\n\nAlice: Again."

    @pytest.mark.asyncio
    async def test_partial_tail_is_displayed_until_final(self, make_session):
        session = make_session()

        session.handle_message(transcript("Hello", 0.0, 1.0))
        session.handle_message(transcript("Hello there", 0.0, 1.5, final=False))
        assert session.scheduler.displayed()["paragraph:0"] == " there"

        session.handle_message(transcript(" there", 1.1, 1.5))
        session.writer.cancel()

        assert session.scheduler.displayed()["paragraph:0"] == ""
        assert session.state.paragraphs[0].partial_text == ""

    @pytest.mark.asyncio
    async def test_translation_partial_then_final(self, make_session):
        session = make_session()

        session.handle_message(translation("hola", 0.0, final=False))
        assert session.scheduler.displayed()["translation:S1-0.0"] == "hola"

        session.handle_message(translation("hola a todos", 0.0))
        session.handle_message(translation("adiós", 3.0, final=False))
        session.writer.cancel()

        assert [(e.content, e.is_partial) for e in session.state.translations] == [
            ("hola a todos", False),
            ("adiós", True),
        ]
        assert session.scheduler.displayed()["translation:S1-0.0"] == "hola a todos"

    @pytest.mark.asyncio
    async def test_partial_slot_takeover_discards_old_display(self, make_session):
        session = make_session()

        session.handle_message(translation("hola", 0.0, speaker="Alice", final=False))
        session.handle_message(translation("salut", 0.5, speaker="Bob", final=False))
        session.writer.cancel()

        assert list(session.scheduler.displayed()) == ["translation:Bob-0.5"]

    @pytest.mark.asyncio
    async def test_updates_are_persisted_in_the_background(self, make_session, wait_until):
        store = MemorySnapshotStore()
        session = make_session(store=store)

        session.handle_message(transcript("hello", 0.0, 1.0))
        await wait_until(lambda: "test-session" in store)

        assert store.get("test-session").audio is None
        assert store.get("test-session").paragraphs[0].segments[0].text == "hello"

    @pytest.mark.asyncio
    async def test_upstream_error_ends_session(self, make_session, service_socket, wait_until):
        rec_ws = service_socket([started()])
        session = make_session(recognition_sockets=[rec_ws])
        await session.start()

        rec_ws.feed({"message": "Error", "type": "quota_exceeded", "reason": "Quota exceeded"})
        await wait_until(lambda: session._shutdown_task is not None)
        await session.wait_closed()

        assert session.status == SessionStatus.IDLE
        assert isinstance(session.last_error, RecognitionError)
        assert session.banner.is_fatal
        assert "quota" in session.banner.message.lower()
        assert "test-session" in session.store


class TestReconnect:
    """Transport loss while active."""

    @pytest.mark.asyncio
    async def test_lost_recognition_reconnects_and_keeps_transcript(self, make_session, service_socket, wait_until):
        first = service_socket([started("rec-1")])
        second = service_socket([started("rec-2")])
        credentials = AsyncMock(return_value="tok")
        session = make_session(recognition_sockets=[first, second], credentials=credentials)
        await session.start()
        session.handle_message(transcript("before", 0.0, 1.0))

        first.drop()
        await wait_until(lambda: session.recognition_session_id == "rec-2" and session.banner is None)

        assert credentials.await_count == 2
        assert second.sent_json()[0]["message"] == "StartRecognition"
        assert session.status == SessionStatus.ACTIVE

        second.feed(transcript(" after", 1.2, 2.0))
        await wait_until(lambda: len(session.state.paragraphs[0].segments) == 2)
        assert session.export_text() == "S1: before after"
        await session.stop()

    @pytest.mark.asyncio
    async def test_reconnect_budget_exhausted_is_fatal(self, make_session, service_socket, wait_until):
        sockets = [service_socket([started()])] + [OSError("unreachable")] * 3
        session = make_session(recognition_sockets=sockets)
        await session.start()

        session.recognition.websocket.drop()
        await wait_until(lambda: session._shutdown_task is not None)
        await session.wait_closed()

        assert session.recognition.connector.await_count == 4
        assert session.status == SessionStatus.IDLE
        assert isinstance(session.last_error, ReconnectExhaustedError)
        assert session.banner.is_fatal

    @pytest.mark.asyncio
    async def test_backend_exhaustion_shows_fatal_banner(self, make_session, wait_until):
        session = make_session(backend_connector=AsyncMock(side_effect=OSError("refused")))
        await session.start()

        await wait_until(lambda: session.banner is not None and session.banner.is_fatal)

        assert "backend" in session.banner.message
        assert session.status == SessionStatus.ACTIVE
        await session.stop()

    @pytest.mark.asyncio
    async def test_backend_loss_shows_reconnecting_during_first_wait(self, make_session, fake_websocket, wait_until):
        backend_ws = fake_websocket()
        session = make_session(
            backend_connector=AsyncMock(return_value=backend_ws),
            backend_policy=SLOW_BACKEND_POLICY,
        )
        await session.start()
        await wait_until(lambda: session.backend.is_open)

        backend_ws.drop()
        await wait_until(lambda: session.banner is not None)

        assert session.backend.state == ConnectionState.CLOSED
        assert session.backend.retry_scheduled
        assert session.banner.kind == "reconnecting"
        assert session.banner.message == "Backend connection lost. Reconnecting (attempt 1/2)..."
        await session.stop()


class TestResume:
    """Restoring a stored session."""

    def _stored(self):
        store = MemorySnapshotStore()
        store.put(
            "test-session",
            SessionSnapshot(
                session_id="test-session",
                paragraphs=[Paragraph(4, "Alice", (Segment("Earlier.", 0.0, 1.0),), "", 1.0)],
                audio=b"\x01\x00",
                next_paragraph_id=5,
            ),
        )
        return store

    @pytest.mark.asyncio
    async def test_resume_restores_state_and_counter(self, make_session):
        audio = FakeAudioSource()
        session = make_session(store=self._stored(), audio=audio)

        assert session.resume() is True

        assert session.export_text() == "Alice: Earlier."
        assert audio.recorded_audio == b"\x01\x00"
        session.handle_message(transcript("New.", 0.0, 1.0, speaker="Bob"))
        session.writer.cancel()
        assert session.state.paragraphs[-1].id == 5

    @pytest.mark.asyncio
    async def test_resume_missing_session(self, make_session):
        session = make_session()
        assert session.resume("nope") is False
        assert session.state.is_empty

    @pytest.mark.asyncio
    async def test_resume_while_active_raises(self, make_session):
        session = make_session()
        await session.start()

        with pytest.raises(CaptionsError):
            session.resume()
        await session.stop()

    @pytest.mark.asyncio
    async def test_clear_forgets_stored_session(self, make_session):
        store = self._stored()
        session = make_session(store=store)
        session.resume()

        session.clear()

        assert "test-session" not in store
        assert session.state.is_empty


class TestStartRequest:
    def test_diarization_and_translation(self, make_session, session_config):
        session_config.set("recognition.language", "de")
        session_config.set("recognition.max_delay", 1.5)
        session_config.set("recognition.translation.target_language", "en")
        session = make_session()

        request = session.build_start_request().model_dump(exclude_none=True)

        assert request["audio_format"]["encoding"] == "pcm_f32le"
        assert request["transcription_config"]["language"] == "de"
        assert request["transcription_config"]["max_delay"] == 1.5
        assert request["transcription_config"]["speaker_diarization_config"] == {"max_speakers": 10}
        assert request["translation_config"] == {"target_languages": ["en"], "enable_partials": True}

    def test_without_diarization_or_translation(self, make_session, session_config):
        session_config.set("recognition.diarization", "none")
        session = make_session()

        request = session.build_start_request().model_dump(exclude_none=True)

        assert "speaker_diarization_config" not in request["transcription_config"]
        assert "max_delay" not in request["transcription_config"]
        assert "translation_config" not in request
