"""Type definitions for transcript reconciliation.

Provides:
- EventKind: Partial or Final hypothesis
- RecognitionEvent / TranslationEvent: normalized inbound events
- Segment: one confirmed recognition result
- Paragraph: one speaker's run of speech between silences
- TranslationEntry: one translated utterance
"""

from dataclasses import dataclass, field
from enum import Enum


class EventKind(Enum):
    """Whether a hypothesis can still change."""

    PARTIAL = "partial"
    FINAL = "final"


@dataclass(frozen=True)
class RecognitionEvent:
    """A speech recognition hypothesis for one speaker."""

    kind: EventKind
    speaker: str
    text: str
    start_time: float  # Seconds from recognition session start
    end_time: float

    @property
    def is_final(self) -> bool:
        return self.kind == EventKind.FINAL


@dataclass(frozen=True)
class TranslationEvent:
    """A translation hypothesis keyed by (speaker, start_time)."""

    kind: EventKind
    speaker: str
    text: str
    start_time: float

    @property
    def is_final(self) -> bool:
        return self.kind == EventKind.FINAL

    @property
    def entry_id(self) -> str:
        return translation_id(self.speaker, self.start_time)


def translation_id(speaker: str, start_time: float) -> str:
    """Stable id for a translated utterance."""
    return f"{speaker}-{start_time}"


@dataclass(frozen=True)
class Segment:
    """One confirmed chunk of text within a Paragraph."""

    text: str
    start_time: float
    end_time: float

    def to_dict(self) -> dict:
        return {"text": self.text, "start_time": self.start_time, "end_time": self.end_time}

    @classmethod
    def from_dict(cls, data: dict) -> "Segment":
        return cls(
            text=str(data.get("text", "")),
            start_time=float(data.get("start_time", 0.0)),
            end_time=float(data.get("end_time", 0.0)),
        )


@dataclass
class Paragraph:
    """A contiguous run of one speaker's speech.

    segments only ever grow; partial_text is only ever replaced. The
    reconciliation functions copy a Paragraph before changing it, so a
    Paragraph reachable from a published transcript is never mutated.
    """

    id: int
    speaker: str
    segments: tuple[Segment, ...] = ()
    partial_text: str = ""
    last_segment_end_time: float = 0.0

    @property
    def has_segments(self) -> bool:
        return len(self.segments) > 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "speaker": self.speaker,
            "segments": [segment.to_dict() for segment in self.segments],
            "partial_text": self.partial_text,
            "last_segment_end_time": self.last_segment_end_time,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Paragraph":
        return cls(
            id=int(data["id"]),
            speaker=str(data.get("speaker", "")),
            segments=tuple(Segment.from_dict(item) for item in data.get("segments", [])),
            partial_text=str(data.get("partial_text", "")),
            last_segment_end_time=float(data.get("last_segment_end_time", 0.0)),
        )


@dataclass
class TranslationEntry:
    """A translated utterance, partial until its final result arrives."""

    id: str
    speaker: str
    start_time: float
    content: str
    is_partial: bool = field(default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "speaker": self.speaker,
            "start_time": self.start_time,
            "content": self.content,
            "is_partial": self.is_partial,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TranslationEntry":
        speaker = str(data.get("speaker", ""))
        start_time = float(data.get("start_time", 0.0))
        return cls(
            id=str(data.get("id") or translation_id(speaker, start_time)),
            speaker=speaker,
            start_time=start_time,
            content=str(data.get("content", "")),
            is_partial=bool(data.get("is_partial", False)),
        )
