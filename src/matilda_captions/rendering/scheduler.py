"""Frame clock for caption typewriters.

One asyncio task ticks every registered Typewriter at a fixed frame
interval and calls the render callback when anything moved. The task
exits on its own once every line is idle; kick() restarts it.
"""

import asyncio
import logging
from collections.abc import Callable

from .typewriter import DEFAULT_DELETE_BATCH, DEFAULT_INSERT_BATCH, Typewriter

logger = logging.getLogger(__name__)


class FrameScheduler:
    """Drive a keyed set of typewriters from a single frame loop."""

    def __init__(
        self,
        frame_interval: float = 0.016,
        on_frame: Callable[[dict[str, str]], None] | None = None,
        delete_batch: int = DEFAULT_DELETE_BATCH,
        insert_batch: int = DEFAULT_INSERT_BATCH,
        animate: bool = True,
    ):
        self.frame_interval = frame_interval
        self.on_frame = on_frame
        self.delete_batch = delete_batch
        self.insert_batch = insert_batch
        self.animate = animate

        self._typewriters: dict[str, Typewriter] = {}
        self._task: asyncio.Task | None = None
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def typewriter(self, key: str) -> Typewriter:
        """Get or create the typewriter for a caption line."""
        tw = self._typewriters.get(key)
        if tw is None:
            tw = Typewriter(self.delete_batch, self.insert_batch)
            self._typewriters[key] = tw
        return tw

    def set_target(self, key: str, text: str, complete: bool = False) -> None:
        self.typewriter(key).set_target(text, complete=complete or not self.animate)
        self.kick()

    def displayed(self) -> dict[str, str]:
        return {key: tw.displayed_text for key, tw in self._typewriters.items()}

    def discard(self, key: str) -> None:
        self._typewriters.pop(key, None)

    def clear(self) -> None:
        self._typewriters.clear()

    def tick_all(self) -> bool:
        changed = False
        for tw in self._typewriters.values():
            if tw.tick():
                changed = True
        return changed

    def kick(self) -> None:
        """Make sure the frame loop runs. Without a running loop, render once synchronously."""
        if self._stopped:
            return

        if all(tw.is_idle for tw in self._typewriters.values()):
            self._render()
            return

        if self.running:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop: finish the animation immediately
            for tw in self._typewriters.values():
                tw.run_to_completion()
            self._render()
            return

        self._task = loop.create_task(self._run())

    async def _run(self) -> None:
        try:
            while not self._stopped:
                if self.tick_all():
                    self._render()
                if all(tw.is_idle for tw in self._typewriters.values()):
                    break
                await asyncio.sleep(self.frame_interval)
        except asyncio.CancelledError:
            logger.debug("Frame loop cancelled")
            raise

    def _render(self) -> None:
        if self.on_frame is not None:
            self.on_frame(self.displayed())

    def settle(self) -> None:
        """Snap every line to its target and render once."""
        for tw in self._typewriters.values():
            tw.snap(tw.target_text)
        self._render()

    def resume(self) -> None:
        self._stopped = False

    async def stop(self) -> None:
        """Cancel the frame loop. No callbacks fire afterwards."""
        self._stopped = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
