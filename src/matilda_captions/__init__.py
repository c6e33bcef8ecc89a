"""Matilda Captions - live speech captions with speaker paragraphs and translation."""

from importlib import import_module, metadata
from pathlib import Path
import tomllib
from typing import TYPE_CHECKING


def _get_version() -> str:
    try:
        return metadata.version("goobits-matilda-captions")
    except metadata.PackageNotFoundError:
        pass

    try:
        pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
        with open(pyproject_path, "rb") as f:
            data = tomllib.load(f)
        return str(data["project"]["version"])
    except (OSError, KeyError, tomllib.TOMLDecodeError):
        return "unknown"


__version__ = _get_version()

if TYPE_CHECKING:
    from .connection.backend import BackendConnection, ConnectionState
    from .core.config import ConfigLoader, get_config
    from .rendering.diff import compute_edit_script
    from .rendering.typewriter import Typewriter
    from .session.orchestrator import SessionOrchestrator, SessionStatus
    from .session.state import SessionState
    from .transcript.reconcile import apply_final, apply_partial, apply_translation

_LAZY_EXPORTS = {
    "BackendConnection": (".connection.backend", "BackendConnection"),
    "ConnectionState": (".connection.backend", "ConnectionState"),
    "ConfigLoader": (".core.config", "ConfigLoader"),
    "get_config": (".core.config", "get_config"),
    "compute_edit_script": (".rendering.diff", "compute_edit_script"),
    "Typewriter": (".rendering.typewriter", "Typewriter"),
    "SessionOrchestrator": (".session.orchestrator", "SessionOrchestrator"),
    "SessionStatus": (".session.orchestrator", "SessionStatus"),
    "SessionState": (".session.state", "SessionState"),
    "apply_final": (".transcript.reconcile", "apply_final"),
    "apply_partial": (".transcript.reconcile", "apply_partial"),
    "apply_translation": (".transcript.reconcile", "apply_translation"),
}

__all__ = ["__version__", *_LAZY_EXPORTS]


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name, __name__)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
