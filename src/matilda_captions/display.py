"""Terminal rendering of a caption session with rich."""

from rich.console import Group, RenderableType
from rich.panel import Panel
from rich.text import Text

from .connection.backend import ConnectionState
from .session.orchestrator import SessionOrchestrator, SessionStatus, paragraph_key, translation_key
from .transcript.reconcile import confirmed_text

CURSOR = "▌"

_BANNER_STYLES = {
    "reconnecting": "bold yellow",
    "error": "bold red",
    "fatal": "bold white on red",
}

_BACKEND_STYLES = {
    ConnectionState.OPEN: "green",
    ConnectionState.CONNECTING: "yellow",
    ConnectionState.CLOSED: "dim",
    ConnectionState.ERROR: "red",
}


class CaptionView:
    """Rich renderable for a live session.

    Confirmed text is drawn from the session state; partial tails and
    translations are drawn from the typewriters so they animate.
    """

    def __init__(self, session: SessionOrchestrator, max_paragraphs: int = 12):
        self.session = session
        self.max_paragraphs = max_paragraphs

    def render_transcript(self) -> RenderableType:
        paragraphs = self.session.state.paragraphs[-self.max_paragraphs:]
        if not paragraphs:
            if self.session.status == SessionStatus.INITIALIZING:
                hint = "Initializing microphone and connection..."
            elif self.session.status == SessionStatus.ACTIVE:
                hint = "Listening... Speak into your microphone."
            else:
                hint = "No transcript yet."
            return Text(hint, style="dim")

        displayed = self.session.scheduler.displayed()
        lines = []
        for paragraph in paragraphs:
            line = Text()
            line.append(f"{paragraph.speaker}: ", style="bold")
            line.append(confirmed_text(paragraph))
            # Typewriters target partial_display_text, separator included
            tail = displayed.get(paragraph_key(paragraph), "")
            if tail:
                line.append(tail, style="italic grey50")
                line.append(CURSOR, style="blink")
            lines.append(line)
        return Group(*lines)

    def render_translations(self) -> RenderableType | None:
        entries = self.session.state.translations[-self.max_paragraphs:]
        if not entries:
            return None

        displayed = self.session.scheduler.displayed()
        lines = []
        for entry in entries:
            line = Text()
            line.append(f"{entry.speaker} ", style="bold")
            line.append(f"[{entry.start_time:.1f}s]: ", style="dim")
            content = displayed.get(translation_key(entry), entry.content)
            if entry.is_partial:
                line.append(content, style="italic grey50")
                line.append(CURSOR, style="blink")
            else:
                line.append(content)
            lines.append(line)
        return Group(*lines)

    def render_status(self) -> Text:
        status = Text()
        status.append(f"session {self.session.session_id} ", style="dim")
        status.append(self.session.status.value, style="bold cyan")
        backend_state = self.session.backend.state
        status.append("  backend ", style="dim")
        status.append(backend_state.value, style=_BACKEND_STYLES.get(backend_state, ""))

        banner = self.session.banner
        if banner is not None:
            status.append("\n")
            status.append(f" {banner.message} ", style=_BANNER_STYLES.get(banner.kind, "bold"))
        return status

    def __rich__(self) -> RenderableType:
        parts: list[RenderableType] = [
            Panel(self.render_transcript(), title="Transcript", border_style="cyan"),
        ]
        translations = self.render_translations()
        if translations is not None:
            parts.append(Panel(translations, title="Translation", border_style="magenta"))
        parts.append(self.render_status())
        return Group(*parts)
