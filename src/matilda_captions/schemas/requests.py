"""Outbound control messages for the realtime recognition service."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class AudioFormat(BaseModel):
    type: str = "raw"
    encoding: str = "pcm_f32le"
    sample_rate: int = 48000


class TranscriptionConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    language: str = "en"
    operating_point: str = "enhanced"
    enable_partials: bool = True
    diarization: str = "speaker"
    max_delay: float | None = None


class TranslationConfig(BaseModel):
    target_languages: list[str]
    enable_partials: bool = True


class StartRecognition(BaseModel):
    message: str = "StartRecognition"
    audio_format: AudioFormat
    transcription_config: TranscriptionConfig
    translation_config: TranslationConfig | None = None


class EndOfStream(BaseModel):
    message: str = "EndOfStream"
    last_seq_no: int = 0
