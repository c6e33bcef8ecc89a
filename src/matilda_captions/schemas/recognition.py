"""Inbound messages from the realtime recognition service."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class BaseMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    message: str


class Alternative(BaseModel):
    model_config = ConfigDict(extra="allow")

    content: str | None = None
    speaker: str | None = None
    confidence: float | None = None


class TranscriptResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    alternatives: list[Alternative] = Field(default_factory=list)
    start_time: float | None = None
    end_time: float | None = None


class TranscriptMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    transcript: str | None = None
    start_time: float
    end_time: float


class AddTranscript(BaseMessage):
    message: str = "AddTranscript"
    metadata: TranscriptMetadata
    results: list[TranscriptResult] = Field(default_factory=list)


class AddPartialTranscript(AddTranscript):
    message: str = "AddPartialTranscript"


class TranslationResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    content: str | None = None
    start_time: float
    end_time: float | None = None
    speaker: str | None = None


class AddTranslation(BaseMessage):
    message: str = "AddTranslation"
    language: str | None = None
    results: list[TranslationResult] = Field(default_factory=list)


class AddPartialTranslation(AddTranslation):
    message: str = "AddPartialTranslation"


class RecognitionStarted(BaseMessage):
    message: str = "RecognitionStarted"
    id: str | None = None


class ErrorMessage(BaseMessage):
    message: str = "Error"
    type: str | None = None
    reason: str | None = None
