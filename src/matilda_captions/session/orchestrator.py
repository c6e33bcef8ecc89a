#!/usr/bin/env python3
"""Caption session orchestrator.

Owns the caption state and wires the collaborators together::

    IDLE --start()--> INITIALIZING --token + recognition + capture--> ACTIVE --stop()--> IDLE

Any failure while initializing returns to IDLE and re-raises. While
ACTIVE, a lost recognition stream is re-established with a fresh token
and the same configuration; the transcript carries on where it was.
"""

import asyncio
import platform
import time
import uuid
from collections.abc import Awaitable, Callable
from enum import Enum

from ..connection.backend import BackendConnection, ConnectionState
from ..connection.backoff import Backoff, ReconnectPolicy
from ..connection.recognition import RecognitionClient
from ..core.auth import CredentialProvider
from ..core.config import ConfigLoader, get_config
from ..core.errors import (
    CaptionsError,
    CredentialError,
    ReconnectExhaustedError,
    RecognitionError,
    StatusBanner,
    TransportError,
)
from ..core.logging import setup_logging
from ..rendering.scheduler import FrameScheduler
from ..schemas.requests import AudioFormat, StartRecognition, TranscriptionConfig, TranslationConfig
from ..transcript.events import (
    TRANSCRIPT_MESSAGES,
    TRANSLATION_MESSAGES,
    message_type,
    parse_recognition_event,
    parse_translation_event,
)
from ..transcript.reconcile import partial_display_text
from ..transcript.types import Paragraph, TranslationEntry
from .audio import PipeAudioSource
from .persistence import FileSnapshotStore, SessionSnapshot, SnapshotStore, ThrottledSnapshotWriter
from .state import SessionState

logger = setup_logging(__name__)

# Banner precedence when several sources report at once
_BANNER_RANK = {"fatal": 0, "error": 1, "reconnecting": 2}


class SessionStatus(Enum):
    """Lifecycle of a caption session."""

    IDLE = "idle"
    INITIALIZING = "initializing"
    ACTIVE = "active"


def paragraph_key(paragraph: Paragraph) -> str:
    return f"paragraph:{paragraph.id}"


def translation_key(entry: TranslationEntry) -> str:
    return f"translation:{entry.id}"


class SessionOrchestrator:
    """Run one live caption session.

    Collaborators default to the real implementations built from the
    config; tests pass fakes.
    """

    def __init__(
        self,
        config: ConfigLoader | None = None,
        session_id: str | None = None,
        credentials: Callable[[], Awaitable[str]] | None = None,
        recognition: RecognitionClient | None = None,
        backend: BackendConnection | None = None,
        audio_source: PipeAudioSource | None = None,
        store: SnapshotStore | None = None,
        scheduler: FrameScheduler | None = None,
        on_update: Callable[["SessionOrchestrator"], None] | None = None,
    ):
        self.config = config or get_config()
        self.session_id = session_id or f"session_{uuid.uuid4().hex[:8]}"
        self.on_update = on_update

        self.credentials = credentials or CredentialProvider(self.config.token_url, self.config.request_timeout_s)

        self.recognition = recognition or RecognitionClient(
            self.config.recognition_url, frame_bytes=self.config.audio_frame_bytes
        )
        self.recognition.on_message = self.handle_message
        self.recognition.on_lost = self._on_recognition_lost

        self.backend = backend or BackendConnection(
            self.config.backend_stream_url,
            ReconnectPolicy.from_settings(self.config.reconnect_settings("backend")),
        )
        self.backend.on_state_change = self._on_backend_state

        self.audio_source = audio_source or PipeAudioSource(
            self.config.get_audio_tool(),
            sample_rate=self.config.audio_sample_rate,
            channels=self.config.audio_channels,
            chunk_ms=self.config.audio_chunk_ms,
            keep_audio=self.config.keep_audio,
            platform_name=platform.system().lower(),
        )

        self.scheduler = scheduler or FrameScheduler(
            frame_interval=self.config.frame_interval_s,
            delete_batch=self.config.delete_batch,
            insert_batch=self.config.insert_batch,
            animate=self.config.typewriter_enabled,
        )
        self.scheduler.on_frame = self._on_frame

        self.store = store or FileSnapshotStore(self.config.session_dir)
        self.writer = ThrottledSnapshotWriter(self.store, self.snapshot, self.config.persistence_interval_s)

        self.state = SessionState(self.session_id, gap_s=self.config.paragraph_gap_s)
        self.status = SessionStatus.IDLE
        self.last_error: CaptionsError | None = None
        self.recognition_session_id: str | None = None

        self._banners: dict[str, StatusBanner] = {}
        self._recognition_backoff = Backoff(
            ReconnectPolicy.from_settings(self.config.reconnect_settings("recognition"), immediate_first=True)
        )
        self._reconnect_task: asyncio.Task | None = None
        self._shutdown_task: asyncio.Task | None = None
        self._stopping = False

    # Status

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    @property
    def banner(self) -> StatusBanner | None:
        """Most severe status across the transports."""
        if not self._banners:
            return None
        return min(self._banners.values(), key=lambda b: _BANNER_RANK.get(b.kind, len(_BANNER_RANK)))

    def _set_banner(self, source: str, banner: StatusBanner | None):
        if banner is None:
            self._banners.pop(source, None)
        else:
            self._banners[source] = banner
        self._notify()

    def _notify(self):
        if self.on_update:
            try:
                self.on_update(self)
            except Exception as e:
                logger.error(f"Error in update callback: {e}")

    def _on_frame(self, _displayed: dict[str, str]):
        self._notify()

    # Lifecycle

    def build_start_request(self) -> StartRecognition:
        """StartRecognition for the configured language, diarization and translation."""
        extra = {}
        if self.config.diarization == "speaker":
            extra["speaker_diarization_config"] = {"max_speakers": self.config.max_speakers}

        transcription = TranscriptionConfig(
            language=self.config.language,
            operating_point=self.config.operating_point,
            enable_partials=self.config.enable_partials,
            diarization=self.config.diarization,
            max_delay=self.config.max_delay,
            **extra,
        )

        translation = None
        if self.config.translation_target:
            translation = TranslationConfig(
                target_languages=[self.config.translation_target],
                enable_partials=self.config.translation_partials,
            )

        return StartRecognition(
            audio_format=AudioFormat(sample_rate=self.config.audio_sample_rate),
            transcription_config=transcription,
            translation_config=translation,
        )

    async def start(self):
        """Start captioning.

        Raises:
            CaptionsError: If credentials, the recognition stream or audio
                capture cannot be set up; the session is back in IDLE

        """
        if self.status != SessionStatus.IDLE:
            logger.warning(f"Session {self.session_id} already {self.status.value}, ignoring start")
            return

        self.status = SessionStatus.INITIALIZING
        self.last_error = None
        self._banners.clear()
        self._stopping = False
        self._recognition_backoff.reset()
        self._notify()
        logger.info(f"Starting caption session {self.session_id}")

        try:
            token = await self.credentials()
            self.recognition_session_id = await self.recognition.start(
                token, self.build_start_request(), self.config.start_timeout_s
            )
            self.scheduler.resume()
            self.backend.connect()
            await self.audio_source.start(self._on_audio_frame)
        except CaptionsError as e:
            logger.error(f"Failed to start caption session: {e}")
            await self._teardown()
            self._fail(e)
            raise

        self.status = SessionStatus.ACTIVE
        self._notify()
        logger.info(f"Caption session {self.session_id} active (recognition {self.recognition_session_id})")

    async def stop(self):
        """Stop captioning and persist the final snapshot."""
        if self.status == SessionStatus.IDLE and not self._stopping:
            return

        self._stopping = True
        logger.info(f"Stopping caption session {self.session_id}")
        await self._teardown()
        await self.writer.flush(self.snapshot(include_audio=True))

        self.status = SessionStatus.IDLE
        self._stopping = False
        self._notify()
        logger.info(f"Caption session {self.session_id} stopped ({len(self.state.paragraphs)} paragraphs)")

    async def _teardown(self):
        """Cancel every source of callbacks: reconnects, capture, transports, animation."""
        self._stopping = True
        current = asyncio.current_task()
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not current and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self.audio_source.stop()
        await self.recognition.stop()
        await self.backend.disconnect()
        self.scheduler.settle()
        await self.scheduler.stop()
        self.writer.cancel()

    def _fail(self, error: CaptionsError):
        self.last_error = error
        self.status = SessionStatus.IDLE
        self._stopping = False
        message = error.user_message if isinstance(error, RecognitionError) else str(error)
        kind = "fatal" if isinstance(error, (RecognitionError, ReconnectExhaustedError)) else "error"
        self._set_banner("session", StatusBanner(kind, message))

    async def _shutdown_after(self, error: CaptionsError):
        logger.error(f"Caption session {self.session_id} ended: {error}")
        await self.stop()
        self._fail(error)

    def _schedule_shutdown(self, error: CaptionsError):
        if self._stopping:
            return
        self._stopping = True
        self._shutdown_task = asyncio.get_running_loop().create_task(self._shutdown_after(error))

    async def wait_closed(self):
        """Wait for a shutdown triggered by a fatal error, if any."""
        if self._shutdown_task is not None:
            await self._shutdown_task

    # Resume / persistence

    def snapshot(self, include_audio: bool = False) -> SessionSnapshot:
        audio = None
        if include_audio and self.config.keep_audio:
            audio = self.audio_source.recorded_audio or None
        return SessionSnapshot(
            session_id=self.session_id,
            paragraphs=list(self.state.paragraphs),
            translations=list(self.state.translations),
            audio=audio,
            timestamp=time.time(),
            next_paragraph_id=self.state.next_paragraph_id,
        )

    def resume(self, session_id: str | None = None) -> bool:
        """Load a stored snapshot into this session before start().

        Returns:
            True if a snapshot was found

        """
        if self.status != SessionStatus.IDLE:
            raise CaptionsError("Cannot resume while a session is running")

        session_id = session_id or self.session_id
        snapshot = self.store.get(session_id)
        if snapshot is None:
            logger.info(f"No stored session {session_id}")
            return False

        self.session_id = session_id
        self.state = SessionState(
            session_id,
            paragraphs=list(snapshot.paragraphs),
            translations=list(snapshot.translations),
            next_paragraph_id=snapshot.next_paragraph_id,
            gap_s=self.config.paragraph_gap_s,
        )
        if snapshot.audio:
            self.audio_source.load_recording(snapshot.audio)

        self.scheduler.clear()
        for paragraph in self.state.paragraphs:
            self.scheduler.typewriter(paragraph_key(paragraph)).snap(partial_display_text(paragraph))
        for entry in self.state.translations:
            self.scheduler.typewriter(translation_key(entry)).snap(entry.content)

        logger.info(f"Resumed session {session_id}: {len(self.state.paragraphs)} paragraphs")
        self._notify()
        return True

    def clear(self):
        """Forget the transcript and its stored snapshot."""
        if self.status != SessionStatus.IDLE:
            raise CaptionsError("Cannot clear while a session is running")
        self.store.delete(self.session_id)
        self.state.clear()
        self.audio_source.load_recording(b"")
        self.scheduler.clear()
        self._notify()

    def export_text(self) -> str:
        return self.state.export_text()

    # Inbound

    def handle_message(self, data: dict):
        """Apply one recognition message to the session state."""
        tag = message_type(data)

        if tag in TRANSCRIPT_MESSAGES:
            self._handle_transcript(data)
        elif tag in TRANSLATION_MESSAGES:
            self._handle_translation(data)
        elif tag == "Error":
            error = RecognitionError(str(data.get("reason") or ""), data.get("type"))
            logger.error(f"Recognition error: {data.get('type')}: {data.get('reason')}")
            self._set_banner("recognition", StatusBanner("fatal", error.user_message))
            self._schedule_shutdown(error)
        elif tag == "RecognitionStarted":
            logger.debug(f"Recognition started: {data.get('id')}")
        else:
            logger.debug(f"Ignoring recognition message: {tag}")

    def _handle_transcript(self, data: dict):
        event = parse_recognition_event(data)
        if event is None:
            return

        paragraph = self.state.apply_recognition(event)
        if event.is_final:
            self.backend.send(data["metadata"])

        if paragraph is not None:
            tail = partial_display_text(paragraph)
            self.scheduler.set_target(paragraph_key(paragraph), tail, complete=not tail)
        self.writer.schedule()
        self._notify()

    def _handle_translation(self, data: dict):
        event = parse_translation_event(data)
        if event is None:
            return

        entry = self.state.apply_translation(event)
        live = {translation_key(e) for e in self.state.translations}
        for key in list(self.scheduler.displayed()):
            if key.startswith("translation:") and key not in live:
                self.scheduler.discard(key)

        if entry is not None:
            self.scheduler.set_target(translation_key(entry), entry.content, complete=not entry.is_partial)
        self.writer.schedule()
        self._notify()

    async def _on_audio_frame(self, frame: bytes):
        await self.recognition.send_audio(frame)

    # Transport events

    def _on_backend_state(self, state: ConnectionState, connection: BackendConnection):
        policy = connection.backoff.policy
        if state == ConnectionState.OPEN:
            self._set_banner("backend", None)
        elif (state == ConnectionState.CONNECTING and connection.backoff.attempt > 0) or (
            state == ConnectionState.CLOSED and connection.retry_scheduled
        ):
            self._set_banner(
                "backend",
                StatusBanner(
                    "reconnecting",
                    f"Backend connection lost. Reconnecting (attempt {connection.backoff.attempt}/{policy.max_retries})...",
                ),
            )
        elif state == ConnectionState.ERROR:
            error = ReconnectExhaustedError("backend", policy.max_retries)
            self._set_banner("backend", StatusBanner("fatal", str(error)))

    def _on_recognition_lost(self, error: Exception | None):
        if self.status != SessionStatus.ACTIVE or self._stopping:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._set_banner("recognition", StatusBanner("reconnecting", "Recognition connection lost. Reconnecting..."))
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_recognition())

    async def _reconnect_recognition(self):
        backoff = self._recognition_backoff
        while self.status == SessionStatus.ACTIVE and not self._stopping:
            delay = backoff.next_delay()
            if delay is None:
                error = ReconnectExhaustedError("recognition", backoff.policy.max_retries)
                logger.error(str(error))
                self._set_banner("recognition", StatusBanner("fatal", str(error)))
                self._schedule_shutdown(error)
                return

            logger.info(f"Recognition reconnect attempt {backoff.attempt}/{backoff.policy.max_retries} in {delay:.2f}s")
            if delay > 0:
                await asyncio.sleep(delay)

            try:
                token = await self.credentials()
                self.recognition_session_id = await self.recognition.start(
                    token, self.build_start_request(), self.config.start_timeout_s
                )
            except RecognitionError as e:
                self._set_banner("recognition", StatusBanner("fatal", e.user_message))
                self._schedule_shutdown(e)
                return
            except (TransportError, CredentialError) as e:
                logger.warning(f"Recognition reconnect failed: {e}")
                continue

            backoff.record_success()
            logger.info(f"Recognition reconnected: {self.recognition_session_id}")
            self._set_banner("recognition", None)
            return

    def get_status(self) -> dict:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "paragraphs": len(self.state.paragraphs),
            "translations": len(self.state.translations),
            "banner": self.banner.message if self.banner else None,
            "backend": self.backend.get_status(),
            "recognition": self.recognition.get_status(),
        }
