"""Caption rendering: diff engine, typewriter animation and frame clock."""

from .diff import EditKind, EditOp, EditScript, apply_edit_script, compute_edit_script
from .scheduler import FrameScheduler
from .typewriter import Typewriter

__all__ = [
    "EditKind",
    "EditOp",
    "EditScript",
    "FrameScheduler",
    "Typewriter",
    "apply_edit_script",
    "compute_edit_script",
]
