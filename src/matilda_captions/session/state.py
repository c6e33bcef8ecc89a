"""In-memory caption state for one session.

SessionState holds the reconciled transcript and translations. Every
update swaps in a new list built by the pure reconcile functions, so a
reader holding the previous list never sees a half-applied event.
"""

import logging
from dataclasses import dataclass, field

from ..transcript.reconcile import (
    PARAGRAPH_BREAK_SILENCE_S,
    apply_recognition,
    apply_translation,
    confirmed_text,
)
from ..transcript.types import Paragraph, RecognitionEvent, TranslationEntry, TranslationEvent

logger = logging.getLogger(__name__)


@dataclass
class SessionState:
    """Transcript and translation state of a caption session."""

    session_id: str
    paragraphs: list[Paragraph] = field(default_factory=list)
    translations: list[TranslationEntry] = field(default_factory=list)
    next_paragraph_id: int = 0
    gap_s: float = PARAGRAPH_BREAK_SILENCE_S

    def apply_recognition(self, event: RecognitionEvent) -> Paragraph | None:
        """Merge a recognition event.

        Returns:
            The paragraph the event landed in, or None if it was dropped

        """
        paragraphs, next_id = apply_recognition(self.paragraphs, event, self.next_paragraph_id, self.gap_s)
        self.paragraphs = paragraphs
        self.next_paragraph_id = next_id
        for paragraph in reversed(paragraphs):
            if paragraph.speaker == event.speaker:
                return paragraph
        return None

    def apply_translation(self, event: TranslationEvent) -> TranslationEntry | None:
        """Merge a translation event, returning the entry it touched."""
        self.translations = apply_translation(self.translations, event, event.is_final)
        for entry in reversed(self.translations):
            if entry.id == event.entry_id:
                return entry
        return None

    @property
    def is_empty(self) -> bool:
        return not self.paragraphs and not self.translations

    def clear(self):
        self.paragraphs = []
        self.translations = []
        self.next_paragraph_id = 0

    def export_text(self) -> str:
        """Plain-text transcript: one ``speaker: text`` block per paragraph."""
        blocks = []
        for paragraph in self.paragraphs:
            text = confirmed_text(paragraph)
            if not text:
                continue
            blocks.append(f"{paragraph.speaker}: {text}")
        return "\n\n".join(blocks)
