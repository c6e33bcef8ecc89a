#!/usr/bin/env python3
"""Session snapshots: whole-state put/get/delete keyed by session id.

Snapshots are written whole, never field by field. The throttled writer
serializes the live state when its timer fires, so several updates
between two writes coalesce into one snapshot of the latest state.
"""

import asyncio
import base64
import json
import os
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from ..core.logging import setup_logging
from ..transcript.types import Paragraph, TranslationEntry

logger = setup_logging(__name__)


@dataclass
class SessionSnapshot:
    """Persisted state of one caption session."""

    session_id: str
    paragraphs: list[Paragraph] = field(default_factory=list)
    translations: list[TranslationEntry] = field(default_factory=list)
    audio: bytes | None = None
    timestamp: float = field(default_factory=time.time)
    next_paragraph_id: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.session_id,
            "lines": [paragraph.to_dict() for paragraph in self.paragraphs],
            "translations": [entry.to_dict() for entry in self.translations],
            "audio": base64.b64encode(self.audio).decode("ascii") if self.audio else None,
            "timestamp": self.timestamp,
            "next_paragraph_id": self.next_paragraph_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionSnapshot":
        paragraphs = [Paragraph.from_dict(item) for item in data.get("lines", [])]
        audio = data.get("audio")
        next_id = data.get("next_paragraph_id")
        if next_id is None:
            next_id = max((p.id for p in paragraphs), default=-1) + 1
        return cls(
            session_id=str(data.get("id", "")),
            paragraphs=paragraphs,
            translations=[TranslationEntry.from_dict(item) for item in data.get("translations", [])],
            audio=base64.b64decode(audio) if audio else None,
            timestamp=float(data.get("timestamp", 0.0)),
            next_paragraph_id=int(next_id),
        )


class SnapshotStore(Protocol):
    """Key-value store of whole session snapshots."""

    def put(self, session_id: str, snapshot: SessionSnapshot) -> None: ...

    def get(self, session_id: str) -> SessionSnapshot | None: ...

    def delete(self, session_id: str) -> None: ...


class MemorySnapshotStore:
    """In-process store, mostly for tests."""

    def __init__(self):
        self._snapshots: dict[str, dict] = {}

    def put(self, session_id: str, snapshot: SessionSnapshot) -> None:
        # Stored serialized so later changes to the caller's objects cannot leak in
        self._snapshots[session_id] = snapshot.to_dict()

    def get(self, session_id: str) -> SessionSnapshot | None:
        data = self._snapshots.get(session_id)
        return SessionSnapshot.from_dict(data) if data is not None else None

    def delete(self, session_id: str) -> None:
        self._snapshots.pop(session_id, None)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._snapshots


class FileSnapshotStore:
    """One JSON document per session under a directory."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def _path(self, session_id: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in session_id) or "default"
        return self.directory / f"{safe}.json"

    def put(self, session_id: str, snapshot: SessionSnapshot) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(session_id)
        fd, temp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(snapshot.to_dict(), f, ensure_ascii=False)
            os.replace(temp_path, path)
        except BaseException:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def get(self, session_id: str) -> SessionSnapshot | None:
        path = self._path(session_id)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable session snapshot {path}: {e}")
            return None
        return SessionSnapshot.from_dict(data)

    def delete(self, session_id: str) -> None:
        try:
            self._path(session_id).unlink()
        except FileNotFoundError:
            pass


class ThrottledSnapshotWriter:
    """Write snapshots at most once per interval.

    ``snapshot_factory`` is called on the event loop when a write fires, so
    the write always carries the latest state; the file I/O itself runs in
    the default executor.
    """

    def __init__(
        self,
        store: SnapshotStore,
        snapshot_factory: Callable[[], SessionSnapshot],
        interval_s: float = 1.0,
    ):
        self.store = store
        self.snapshot_factory = snapshot_factory
        self.interval_s = interval_s

        self._handle: asyncio.TimerHandle | None = None
        self._write_tasks: set[asyncio.Task] = set()
        self._last_task: asyncio.Task | None = None
        self._last_write = 0.0
        self.writes = 0

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self):
        """Request a write. Requests made while one is pending coalesce."""
        if self._handle is not None:
            return

        loop = asyncio.get_running_loop()
        delay = max(0.0, self._last_write + self.interval_s - loop.time())
        self._handle = loop.call_later(delay, self._fire)

    def _fire(self):
        self._handle = None
        loop = asyncio.get_running_loop()
        self._last_write = loop.time()
        snapshot = self.snapshot_factory()
        task = loop.create_task(self._write(snapshot, after=self._last_task))
        self._last_task = task
        self._write_tasks.add(task)
        task.add_done_callback(self._write_tasks.discard)

    async def _write(self, snapshot: SessionSnapshot, after: asyncio.Task | None = None):
        # Writes land in fire order
        if after is not None and not after.done():
            await asyncio.wait([after])
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.store.put, snapshot.session_id, snapshot)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save session {snapshot.session_id}: {e}")
            return
        self.writes += 1
        logger.debug(f"Saved session {snapshot.session_id} ({len(snapshot.paragraphs)} paragraphs)")

    async def flush(self, snapshot: SessionSnapshot | None = None):
        """Write now and wait for outstanding writes.

        Args:
            snapshot: Snapshot to write instead of the factory's

        """
        self.cancel()
        if self._write_tasks:
            await asyncio.gather(*self._write_tasks)
        loop = asyncio.get_running_loop()
        self._last_write = loop.time()
        await self._write(snapshot or self.snapshot_factory())

    def cancel(self):
        """Drop a pending write."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
