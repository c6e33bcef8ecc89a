#!/usr/bin/env python3
"""matilda-captions: live speech captions in the terminal."""

import asyncio
import signal
import sys
from pathlib import Path

import rich_click as click
from rich.console import Console
from rich.live import Live

from . import __version__
from .core.config import ConfigLoader, get_config, load_config
from .core.errors import CaptionsError
from .core.logging import configure_root
from .display import CaptionView
from .session.orchestrator import SessionOrchestrator

click.rich_click.USE_RICH_MARKUP = True
click.rich_click.STYLE_OPTION = "#ff79c6"
click.rich_click.STYLE_ARGUMENT = "#8be9fd"
click.rich_click.STYLE_COMMAND = "#50fa7b"
click.rich_click.STYLE_USAGE = "#bd93f9"
click.rich_click.STYLE_HELPTEXT = "#b3b8c0"

DEFAULT_SESSION_ID = "default"


def apply_overrides(
    config: ConfigLoader,
    language: str | None = None,
    translate_to: str | None = None,
    operating_point: str | None = None,
    max_delay: float | None = None,
    backend_url: str | None = None,
    backend_ws_url: str | None = None,
    no_typewriter: bool = False,
) -> ConfigLoader:
    """Command-line options win over the config file and environment."""
    overrides = {
        "recognition.language": language,
        "recognition.translation.target_language": translate_to,
        "recognition.operating_point": operating_point,
        "recognition.max_delay": max_delay,
        "backend.http_url": backend_url,
        "backend.ws_url": backend_ws_url,
    }
    for key_path, value in overrides.items():
        if value is not None:
            config.set(key_path, value)
    if no_typewriter:
        config.set("rendering.typewriter", False)
    return config


async def run_session(
    session: SessionOrchestrator,
    console: Console,
    export_path: Path | None = None,
    audio_path: Path | None = None,
) -> int:
    """Run until Ctrl+C or until the session ends on its own.

    Returns:
        Process exit code

    """
    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except (NotImplementedError, RuntimeError):
            # Windows: KeyboardInterrupt still reaches asyncio.run
            pass

    exit_code = 0
    with Live(CaptionView(session), console=console, refresh_per_second=30, transient=False):
        try:
            await session.start()
        except CaptionsError:
            exit_code = 1
        else:
            while session.is_active and not stop_requested.is_set():
                try:
                    await asyncio.wait_for(stop_requested.wait(), timeout=0.25)
                except TimeoutError:
                    continue
            await session.stop()
            await session.wait_closed()
            if session.last_error is not None:
                exit_code = 1

    if session.last_error is not None:
        message = getattr(session.last_error, "user_message", None) or str(session.last_error)
        console.print(f"[red]Error: {message}[/red]")

    if export_path is not None:
        export_path.write_text(session.export_text(), encoding="utf-8")
        console.print(f"[green]Transcript exported to {export_path}[/green]")
    if audio_path is not None:
        session.audio_source.save_wav(audio_path)
        console.print(f"[green]Audio saved to {audio_path}[/green]")

    return exit_code


def create_cli():
    """Create the rich-click command."""

    @click.command(context_settings={"allow_extra_args": False})
    @click.version_option(version=__version__, prog_name="Matilda Captions")
    @click.option("--config", "config_path", type=click.Path(dir_okay=False), help=" ⚙️  Configuration file path")
    @click.option("--debug", is_flag=True, help=" 🐛 Enable detailed debug logging")
    @click.option("--session-id", default=DEFAULT_SESSION_ID, show_default=True, help=" 🗂️  Session to record into")
    @click.option("--resume/--fresh", default=True, show_default=True, help=" ♻️  Continue the stored transcript")
    @click.option("--language", help=" 🌍 Recognition language code (e.g., 'en', 'es')")
    @click.option("--translate-to", metavar="LANG", help=" 🔤 Translate captions into LANG")
    @click.option(
        "--operating-point",
        type=click.Choice(["standard", "enhanced"]),
        help=" 🎚️  Recognition accuracy/latency trade-off",
    )
    @click.option("--max-delay", type=float, help=" ⏱️  Maximum delay before a final result, in seconds")
    @click.option("--backend-url", help=" 🌐 Backend HTTP base URL (token endpoint)")
    @click.option("--backend-ws-url", help=" 🔌 Backend websocket base URL")
    @click.option("--no-typewriter", is_flag=True, help=" ⚡ Show updates instantly instead of animating")
    @click.option("--export", "export_path", type=click.Path(dir_okay=False), help=" 📄 Write the transcript here on exit")
    @click.option("--save-audio", "audio_path", type=click.Path(dir_okay=False), help=" 💾 Write the recording (WAV) on exit")
    @click.option("--clear", is_flag=True, help=" 🧹 Delete the stored session and exit")
    def main(
        config_path,
        debug,
        session_id,
        resume,
        language,
        translate_to,
        operating_point,
        max_delay,
        backend_url,
        backend_ws_url,
        no_typewriter,
        export_path,
        audio_path,
        clear,
    ):
        """🎙️ [bold cyan]Matilda Captions[/bold cyan] - Live speech captions with speakers and translation

        \b
        [bold yellow]🎯 Quick Start:[/bold yellow]
        \b
          [green]matilda-captions[/green]                          [italic]# Caption the microphone[/italic]
          [green]matilda-captions --translate-to=es[/green]        [italic]# With Spanish translation[/italic]
          [green]matilda-captions --fresh --export=notes.txt[/green] [italic]# New transcript, saved on exit[/italic]
          [green]matilda-captions --clear[/green]                  [italic]# Forget the stored session[/italic]
        """
        configure_root(debug)
        config = load_config(config_path) if config_path else get_config()
        apply_overrides(
            config,
            language=language,
            translate_to=translate_to,
            operating_point=operating_point,
            max_delay=max_delay,
            backend_url=backend_url,
            backend_ws_url=backend_ws_url,
            no_typewriter=no_typewriter,
        )

        console = Console()
        session = SessionOrchestrator(config, session_id=session_id)

        if clear:
            session.clear()
            console.print(f"[green]Cleared session {session_id}[/green]")
            return

        if resume:
            if session.resume(session_id):
                console.print(f"[dim]Resumed session {session_id} ({len(session.state.paragraphs)} paragraphs)[/dim]")
        else:
            session.clear()

        exit_code = asyncio.run(
            run_session(
                session,
                console,
                export_path=Path(export_path) if export_path else None,
                audio_path=Path(audio_path) if audio_path else None,
            )
        )
        if exit_code:
            sys.exit(exit_code)

    return main


def main():
    """Entry point for the matilda-captions command"""
    cli = create_cli()
    cli()


if __name__ == "__main__":
    main()
