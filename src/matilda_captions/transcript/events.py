"""Decode recognition transport messages into reconciliation events.

Malformed or empty messages decode to None: the upstream stream emits
heartbeats and empty hypotheses, so they are expected noise.
"""

import logging

from pydantic import ValidationError

from ..schemas.recognition import (
    AddPartialTranscript,
    AddPartialTranslation,
    AddTranscript,
    AddTranslation,
)
from .types import EventKind, RecognitionEvent, TranslationEvent

logger = logging.getLogger(__name__)

DEFAULT_SPEAKER = "Speaker"

TRANSCRIPT_MESSAGES = {
    "AddTranscript": (AddTranscript, EventKind.FINAL),
    "AddPartialTranscript": (AddPartialTranscript, EventKind.PARTIAL),
}

TRANSLATION_MESSAGES = {
    "AddTranslation": (AddTranslation, EventKind.FINAL),
    "AddPartialTranslation": (AddPartialTranslation, EventKind.PARTIAL),
}


def message_type(data: object) -> str | None:
    """The tag of a transport message, or None if it has none."""
    if isinstance(data, dict):
        tag = data.get("message")
        if isinstance(tag, str):
            return tag
    return None


def parse_recognition_event(data: dict) -> RecognitionEvent | None:
    """Decode AddTranscript / AddPartialTranscript.

    Returns:
        RecognitionEvent, or None if the message is malformed or blank

    """
    entry = TRANSCRIPT_MESSAGES.get(message_type(data) or "")
    if entry is None:
        return None
    model, kind = entry

    try:
        message = model.model_validate(data)
    except ValidationError as e:
        logger.debug(f"Dropping malformed {data.get('message')}: {e.error_count()} validation errors")
        return None

    text = message.metadata.transcript
    if not text or not text.strip():
        return None

    speaker = DEFAULT_SPEAKER
    if message.results and message.results[0].alternatives:
        speaker = message.results[0].alternatives[0].speaker or DEFAULT_SPEAKER

    return RecognitionEvent(
        kind=kind,
        speaker=speaker,
        text=text,
        start_time=message.metadata.start_time,
        end_time=message.metadata.end_time,
    )


def parse_translation_event(data: dict) -> TranslationEvent | None:
    """Decode AddTranslation / AddPartialTranslation from its first result."""
    entry = TRANSLATION_MESSAGES.get(message_type(data) or "")
    if entry is None:
        return None
    model, kind = entry

    try:
        message = model.model_validate(data)
    except ValidationError as e:
        logger.debug(f"Dropping malformed {data.get('message')}: {e.error_count()} validation errors")
        return None

    if not message.results:
        return None
    result = message.results[0]
    if not result.content or not result.content.strip():
        return None

    return TranslationEvent(
        kind=kind,
        speaker=result.speaker or DEFAULT_SPEAKER,
        text=result.content,
        start_time=result.start_time,
    )
