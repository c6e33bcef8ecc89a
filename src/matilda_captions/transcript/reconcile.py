"""Transcript and translation reconciliation.

Merges the recognition event stream into stable per-speaker paragraphs:
- A speaker's newest paragraph is the only one ever extended
- A silence longer than the paragraph gap starts a new paragraph
- Re-delivered final results (same start time) are ignored
- Partial hypotheses replace the paragraph's tentative tail

All functions are pure: they return a new list and never change the
list or the Paragraph objects they were given.
"""

import logging
from dataclasses import replace
from typing import Sequence

from .types import (
    Paragraph,
    RecognitionEvent,
    Segment,
    TranslationEntry,
    TranslationEvent,
)

logger = logging.getLogger(__name__)

PARAGRAPH_BREAK_SILENCE_S = 2.0


def find_last_paragraph_index(paragraphs: Sequence[Paragraph], speaker: str) -> int:
    """Index of the speaker's most recent paragraph, or -1."""
    for index in range(len(paragraphs) - 1, -1, -1):
        if paragraphs[index].speaker == speaker:
            return index
    return -1


def _starts_new_paragraph(
    paragraphs: Sequence[Paragraph],
    index: int,
    start_time: float,
    gap_s: float,
) -> bool:
    if index == -1:
        return True

    paragraph = paragraphs[index]
    # Without a confirmed segment there is no reliable anchor for the gap
    if not paragraph.has_segments:
        return False

    gap = start_time - paragraph.last_segment_end_time
    if gap > gap_s:
        logger.debug(f"[{paragraph.speaker}] Starting new paragraph after {gap:.2f}s gap")
        return True
    return False


def _is_blank(text: str | None) -> bool:
    return not text or not text.strip()


def apply_final(
    paragraphs: Sequence[Paragraph],
    event: RecognitionEvent,
    next_id: int,
    gap_s: float = PARAGRAPH_BREAK_SILENCE_S,
) -> tuple[list[Paragraph], int]:
    """Merge a final recognition result.

    Args:
        paragraphs: Current transcript
        event: Final recognition event
        next_id: Id to give a newly created paragraph
        gap_s: Silence that separates two paragraphs of one speaker

    Returns:
        (paragraphs, next_id) after the merge

    """
    result = list(paragraphs)
    if _is_blank(event.text):
        return result, next_id

    index = find_last_paragraph_index(result, event.speaker)
    segment = Segment(text=event.text, start_time=event.start_time, end_time=event.end_time)

    if _starts_new_paragraph(result, index, event.start_time, gap_s):
        result.append(
            Paragraph(
                id=next_id,
                speaker=event.speaker,
                segments=(segment,),
                partial_text="",
                last_segment_end_time=event.end_time,
            )
        )
        return result, next_id + 1

    paragraph = result[index]
    if paragraph.segments and paragraph.segments[-1].start_time == event.start_time:
        logger.debug(f"[{event.speaker}] Duplicate final at {event.start_time}s skipped: {event.text!r}")
        return result, next_id

    result[index] = replace(
        paragraph,
        segments=paragraph.segments + (segment,),
        partial_text="",
        last_segment_end_time=event.end_time,
    )
    return result, next_id


def apply_partial(
    paragraphs: Sequence[Paragraph],
    event: RecognitionEvent,
    next_id: int,
    gap_s: float = PARAGRAPH_BREAK_SILENCE_S,
) -> tuple[list[Paragraph], int]:
    """Merge a partial recognition result.

    Segments are never touched; only partial_text changes, or a new
    paragraph without segments is appended.
    """
    result = list(paragraphs)
    if _is_blank(event.text):
        return result, next_id

    index = find_last_paragraph_index(result, event.speaker)

    if _starts_new_paragraph(result, index, event.start_time, gap_s):
        result.append(
            Paragraph(
                id=next_id,
                speaker=event.speaker,
                segments=(),
                partial_text=event.text,
                # start_time, not end_time: the next event is usually milliseconds away
                last_segment_end_time=event.start_time,
            )
        )
        return result, next_id + 1

    result[index] = replace(result[index], partial_text=event.text)
    return result, next_id


def apply_recognition(
    paragraphs: Sequence[Paragraph],
    event: RecognitionEvent,
    next_id: int,
    gap_s: float = PARAGRAPH_BREAK_SILENCE_S,
) -> tuple[list[Paragraph], int]:
    """Dispatch to apply_final or apply_partial by event kind."""
    if event.is_final:
        return apply_final(paragraphs, event, next_id, gap_s)
    return apply_partial(paragraphs, event, next_id, gap_s)


def apply_translation(
    entries: Sequence[TranslationEntry],
    event: TranslationEvent,
    final: bool,
) -> list[TranslationEntry]:
    """Merge a translation result.

    A final result replaces the partial entry with the same id in place,
    otherwise it is appended. There is a single partial slot across all
    speakers: a partial result overwrites whichever entry is partial.
    """
    result = list(entries)
    if _is_blank(event.text):
        return result

    entry_id = event.entry_id
    entry = TranslationEntry(
        id=entry_id,
        speaker=event.speaker,
        start_time=event.start_time,
        content=event.text,
        is_partial=not final,
    )

    if final:
        for index, existing in enumerate(result):
            if existing.id == entry_id and existing.is_partial:
                result[index] = entry
                return result
        result.append(entry)
        return result

    for index, existing in enumerate(result):
        if existing.is_partial:
            if existing.speaker != event.speaker:
                logger.debug(
                    f"Partial translation slot taken over: {existing.speaker} -> {event.speaker}"
                )
            result[index] = entry
            return result

    result.append(entry)
    return result


def confirmed_text(paragraph: Paragraph) -> str:
    """Concatenated segment texts; recognition output carries its own spacing."""
    return "".join(segment.text for segment in paragraph.segments)


def visible_partial(paragraph: Paragraph) -> str:
    """The part of the partial hypothesis not already shown as confirmed text."""
    confirmed = confirmed_text(paragraph)
    partial = paragraph.partial_text
    if partial.startswith(confirmed):
        return partial[len(confirmed):].lstrip()
    # Out-of-order delivery: show the whole hypothesis
    return partial


def partial_display_text(paragraph: Paragraph) -> str:
    """Text for a paragraph's animated tail, with a separator after confirmed text."""
    tail = visible_partial(paragraph)
    if not tail:
        return ""
    return f" {tail}" if paragraph.has_segments else tail
