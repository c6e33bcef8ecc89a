"""Transcript reconciliation.

Public API:
- apply_final / apply_partial / apply_translation: pure merge functions
- parse_recognition_event / parse_translation_event: wire decoding
- Paragraph, Segment, TranslationEntry: the reconciled model
"""

from .types import (
    EventKind,
    Paragraph,
    RecognitionEvent,
    Segment,
    TranslationEntry,
    TranslationEvent,
    translation_id,
)
from .reconcile import (
    PARAGRAPH_BREAK_SILENCE_S,
    apply_final,
    apply_partial,
    apply_recognition,
    apply_translation,
    confirmed_text,
    partial_display_text,
    visible_partial,
)
from .events import parse_recognition_event, parse_translation_event

__all__ = [
    # Types
    "EventKind",
    "Paragraph",
    "RecognitionEvent",
    "Segment",
    "TranslationEntry",
    "TranslationEvent",
    "translation_id",
    # Reconciliation
    "PARAGRAPH_BREAK_SILENCE_S",
    "apply_final",
    "apply_partial",
    "apply_recognition",
    "apply_translation",
    "confirmed_text",
    "partial_display_text",
    "visible_partial",
    # Decoding
    "parse_recognition_event",
    "parse_translation_event",
]
