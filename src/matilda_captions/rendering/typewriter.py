"""Per-string typewriter animation driven by edit scripts.

A Typewriter owns the text currently on screen for one caption line.
Every new target replaces the pending queue with a script computed from
what is displayed right now, so the animation never chases a stale
hypothesis.
"""

import logging
from collections import deque

from .diff import EditKind, EditOp, compute_edit_script

logger = logging.getLogger(__name__)

DEFAULT_DELETE_BATCH = 2
DEFAULT_INSERT_BATCH = 3


class Typewriter:
    """Animated displayed text converging on the latest target."""

    def __init__(self, delete_batch: int = DEFAULT_DELETE_BATCH, insert_batch: int = DEFAULT_INSERT_BATCH):
        if delete_batch < 1 or insert_batch < 1:
            raise ValueError("Batch sizes must be positive")
        self.delete_batch = delete_batch
        self.insert_batch = insert_batch

        self.displayed_text = ""
        self.target_text = ""
        self._pending: deque[EditOp] = deque()
        self._current: EditOp | None = None
        self._progress = 0

    @property
    def is_idle(self) -> bool:
        return self._current is None and not self._pending and self.displayed_text == self.target_text

    @property
    def pending_ops(self) -> list[EditOp]:
        ops = list(self._pending)
        if self._current is not None:
            ops.insert(0, self._current)
        return ops

    def set_target(self, text: str, complete: bool = False) -> None:
        """Re-target the animation.

        Args:
            text: Latest full hypothesis
            complete: Snap to the text immediately instead of animating

        """
        if complete:
            self.snap(text)
            return

        if text == self.target_text and not self.is_idle:
            return
        if text == self.displayed_text:
            self.snap(text)
            return

        script = compute_edit_script(self.displayed_text, text)
        if script.is_noop:
            self.snap(text)
            return

        self.target_text = text
        self._pending = deque(script.ops)
        self._current = None
        self._progress = 0

    def snap(self, text: str) -> None:
        self.displayed_text = text
        self.target_text = text
        self._pending.clear()
        self._current = None
        self._progress = 0

    def tick(self) -> bool:
        """Advance one frame.

        Returns:
            True if the displayed text changed

        """
        if self._current is None:
            if not self._pending:
                return False
            self._current = self._pending.popleft()
            self._progress = 0

        op = self._current
        if op.kind == EditKind.DELETE:
            remaining = op.count - self._progress
            step = min(self.delete_batch, remaining)
            # Backspace from the end of the span towards the cursor
            end = op.position + remaining
            self.displayed_text = self.displayed_text[:end - step] + self.displayed_text[end:]
        else:
            step = min(self.insert_batch, op.count - self._progress)
            at = op.position + self._progress
            chunk = op.text[self._progress:self._progress + step]
            self.displayed_text = self.displayed_text[:at] + chunk + self.displayed_text[at:]

        self._progress += step
        if self._progress >= op.count:
            self._current = None
            self._progress = 0

        if self._current is None and not self._pending and self.displayed_text != self.target_text:
            # Should be unreachable; never leave the line diverged
            logger.warning("Typewriter diverged from target, snapping")
            self.displayed_text = self.target_text
        return True

    def run_to_completion(self) -> int:
        """Tick until idle. Returns the number of ticks taken."""
        ticks = 0
        while self.tick():
            ticks += 1
        return ticks
