#!/usr/bin/env python3
"""Configuration loader that reads from config files."""
import copy
import os
import platform
from pathlib import Path
from typing import Any

import tomllib

DEFAULT_CONFIG: dict[str, Any] = {
    "backend": {
        "http_url": "http://localhost:8080",
        "ws_url": "ws://localhost:8080",
        "ws_path": "/ws/translate",
        "token_path": "/api/token/rt",
        "request_timeout_s": 10.0,
        "reconnect": {"max_retries": 5, "base_delay_ms": 1000, "max_delay_ms": 30000, "jitter_ms": 1000},
    },
    "recognition": {
        "url": "wss://eu2.rt.speechmatics.com/v2",
        "language": "en",
        "operating_point": "enhanced",
        "max_delay": None,
        "enable_partials": True,
        "diarization": "speaker",
        "max_speakers": 10,
        "start_timeout_s": 10.0,
        "translation": {"target_language": None, "enable_partials": True},
        "reconnect": {"max_retries": 10, "base_delay_ms": 1000, "max_delay_ms": 30000, "jitter_ms": 0},
    },
    "audio": {"sample_rate": 48000, "channels": 1, "chunk_ms": 100, "frame_bytes": 4},
    "tools": {"audio": {"linux": "arecord", "darwin": "ffmpeg", "windows": "ffmpeg"}},
    "transcript": {"paragraph_gap_s": 2.0},
    "rendering": {"typewriter": True, "frame_interval_ms": 16, "delete_batch": 2, "insert_batch": 3},
    "persistence": {"dir": "~/.matilda/captions/sessions", "interval_s": 1.0, "keep_audio": True},
}


class ConfigLoader:
    """Load configuration from config files."""

    def __init__(self, config_path: str | Path | None = None) -> None:
        if config_path is None:
            config_path = self._default_config_path()

        self.config_file = str(config_path)
        config_path = Path(config_path)
        if config_path.exists():
            with open(config_path, "rb") as f:
                full_config = tomllib.load(f)
            captions_config = full_config.get("captions", {})
        else:
            captions_config = {}

        self._config = self._merge_dicts(copy.deepcopy(DEFAULT_CONFIG), captions_config)
        self._apply_env_overrides()

        self._platform = platform.system().lower()

    def _default_config_path(self) -> Path:
        env_path = os.environ.get("MATILDA_CONFIG")
        if env_path:
            return Path(env_path)
        return Path.home() / ".matilda" / "config.toml"

    def _apply_env_overrides(self) -> None:
        """Environment wins over the config file for deployment-specific values."""
        overrides = {
            "CAPTIONS_BACKEND_URL": "backend.http_url",
            "CAPTIONS_BACKEND_WS_URL": "backend.ws_url",
            "CAPTIONS_RECOGNITION_URL": "recognition.url",
            "CAPTIONS_OPERATING_POINT": "recognition.operating_point",
            "CAPTIONS_MAX_DELAY": "recognition.max_delay",
            "CAPTIONS_SESSION_DIR": "persistence.dir",
        }
        for env_name, key_path in overrides.items():
            value = os.environ.get(env_name)
            if value:
                self.set(key_path, value)

    def _merge_dicts(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        merged = base.copy()
        for key, value in override.items():
            if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
                merged[key] = self._merge_dicts(merged[key], value)
            else:
                merged[key] = value
        return merged

    def get(self, key_path: str, default: Any = None) -> Any:
        """Get a value using dot notation (e.g., 'backend.reconnect.max_retries')"""
        keys = key_path.split(".")
        value = self._config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def set(self, key_path: str, value: Any) -> None:
        """Set a value using dot notation, creating intermediate tables."""
        keys = key_path.split(".")
        node = self._config
        for key in keys[:-1]:
            child = node.get(key)
            if not isinstance(child, dict):
                child = {}
                node[key] = child
            node = child
        node[keys[-1]] = value

    def _get_float(self, key_path: str, default: float) -> float:
        try:
            return float(self.get(key_path, default))
        except (TypeError, ValueError):
            return default

    def _get_int(self, key_path: str, default: int) -> int:
        try:
            return int(self.get(key_path, default))
        except (TypeError, ValueError):
            return default

    # Backend stream
    @property
    def backend_http_url(self) -> str:
        return str(self.get("backend.http_url", "http://localhost:8080")).rstrip("/")

    @property
    def backend_stream_url(self) -> str:
        base = str(self.get("backend.ws_url", "ws://localhost:8080")).rstrip("/")
        return f"{base}{self.get('backend.ws_path', '/ws/translate')}"

    @property
    def token_url(self) -> str:
        return f"{self.backend_http_url}{self.get('backend.token_path', '/api/token/rt')}"

    @property
    def request_timeout_s(self) -> float:
        return self._get_float("backend.request_timeout_s", 10.0)

    def reconnect_settings(self, section: str) -> dict[str, int]:
        """Get the backoff settings for 'backend' or 'recognition'."""
        defaults = DEFAULT_CONFIG[section]["reconnect"]
        return {name: self._get_int(f"{section}.reconnect.{name}", value) for name, value in defaults.items()}

    # Recognition session
    @property
    def recognition_url(self) -> str:
        return str(self.get("recognition.url", "wss://eu2.rt.speechmatics.com/v2"))

    @property
    def language(self) -> str:
        return str(self.get("recognition.language", "en"))

    @property
    def operating_point(self) -> str:
        value = str(self.get("recognition.operating_point", "enhanced"))
        return value if value in ("standard", "enhanced") else "enhanced"

    @property
    def max_delay(self) -> float | None:
        value = self.get("recognition.max_delay")
        if value in (None, ""):
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @property
    def enable_partials(self) -> bool:
        return bool(self.get("recognition.enable_partials", True))

    @property
    def diarization(self) -> str:
        return str(self.get("recognition.diarization", "speaker"))

    @property
    def max_speakers(self) -> int:
        return self._get_int("recognition.max_speakers", 10)

    @property
    def start_timeout_s(self) -> float:
        return self._get_float("recognition.start_timeout_s", 10.0)

    @property
    def translation_target(self) -> str | None:
        value = self.get("recognition.translation.target_language")
        return str(value) if value else None

    @property
    def translation_partials(self) -> bool:
        return bool(self.get("recognition.translation.enable_partials", True))

    # Audio
    @property
    def audio_sample_rate(self) -> int:
        return self._get_int("audio.sample_rate", 48000)

    @property
    def audio_channels(self) -> int:
        return self._get_int("audio.channels", 1)

    @property
    def audio_chunk_ms(self) -> int:
        return self._get_int("audio.chunk_ms", 100)

    @property
    def audio_frame_bytes(self) -> int:
        return self._get_int("audio.frame_bytes", 4)

    def get_audio_tool(self) -> str:
        """Get platform-specific audio tool"""
        tools = self.get(f"tools.audio.{self._platform}", "arecord")
        if isinstance(tools, list):
            return str(tools[0]) if tools else "arecord"
        return str(tools)

    # Transcript / rendering
    @property
    def paragraph_gap_s(self) -> float:
        return self._get_float("transcript.paragraph_gap_s", 2.0)

    @property
    def typewriter_enabled(self) -> bool:
        return bool(self.get("rendering.typewriter", True))

    @property
    def frame_interval_s(self) -> float:
        return max(1, self._get_int("rendering.frame_interval_ms", 16)) / 1000.0

    @property
    def delete_batch(self) -> int:
        return max(1, self._get_int("rendering.delete_batch", 2))

    @property
    def insert_batch(self) -> int:
        return max(1, self._get_int("rendering.insert_batch", 3))

    # Persistence
    @property
    def session_dir(self) -> Path:
        return Path(os.path.expanduser(str(self.get("persistence.dir", "~/.matilda/captions/sessions"))))

    @property
    def persistence_interval_s(self) -> float:
        return max(0.0, self._get_float("persistence.interval_s", 1.0))

    @property
    def keep_audio(self) -> bool:
        return bool(self.get("persistence.keep_audio", True))


# Global singleton instance
_config_loader: ConfigLoader | None = None


def get_config() -> ConfigLoader:
    """Get the global config loader instance"""
    global _config_loader
    if _config_loader is None:
        _config_loader = ConfigLoader()
    return _config_loader


def load_config(config_path: str | Path | None = None) -> ConfigLoader:
    """Replace the global config loader, e.g. when --config is given."""
    global _config_loader
    _config_loader = ConfigLoader(config_path)
    return _config_loader
