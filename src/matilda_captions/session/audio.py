#!/usr/bin/env python3
"""Microphone capture through a platform recording tool.

The capture tool (arecord on Linux, ffmpeg elsewhere) writes raw s16le
PCM to stdout. Fixed-size chunks are converted to pcm_f32le for the
recognition stream; the s16le bytes are optionally kept for the session
recording.
"""

import asyncio
import shutil
import wave
from collections.abc import Awaitable, Callable
from pathlib import Path

import numpy as np

from ..core.errors import CapabilityError
from ..core.logging import setup_logging

logger = setup_logging(__name__)

FrameCallback = Callable[[bytes], Awaitable[None]]

S16_BYTES = 2


def s16le_to_f32le(data: bytes) -> bytes:
    """Convert s16le PCM to little-endian float32 samples in [-1, 1)."""
    usable = len(data) - (len(data) % S16_BYTES)
    samples = np.frombuffer(data[:usable], dtype="<i2").astype(np.float32) / 32768.0
    return samples.astype("<f4").tobytes()


def build_capture_command(tool: str, sample_rate: int, channels: int, platform_name: str) -> list[str]:
    """Command line producing s16le PCM on stdout."""
    name = Path(tool).name
    if name.startswith("arecord"):
        return [tool, "-q", "-t", "raw", "-f", "S16_LE", "-r", str(sample_rate), "-c", str(channels)]

    if name.startswith("ffmpeg"):
        if platform_name == "darwin":
            source = ["-f", "avfoundation", "-i", ":0"]
        elif platform_name == "windows":
            source = ["-f", "dshow", "-i", "audio=default"]
        else:
            source = ["-f", "pulse", "-i", "default"]
        return [
            tool, "-hide_banner", "-loglevel", "error", "-nostdin",
            *source,
            "-ac", str(channels), "-ar", str(sample_rate), "-f", "s16le", "-",
        ]  # fmt: skip

    raise CapabilityError(f"Unsupported audio capture tool: {tool}")


class PipeAudioSource:
    """Stream microphone audio from a capture subprocess.

    Example::

        source = PipeAudioSource("arecord", sample_rate=48000)
        await source.start(on_frame)
        ...
        await source.stop()

    """

    def __init__(
        self,
        tool: str,
        sample_rate: int = 48000,
        channels: int = 1,
        chunk_ms: int = 100,
        keep_audio: bool = True,
        platform_name: str = "linux",
    ):
        self.tool = tool
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_ms = chunk_ms
        self.keep_audio = keep_audio
        self.platform_name = platform_name

        self.chunk_bytes = max(S16_BYTES, int(sample_rate * channels * S16_BYTES * chunk_ms / 1000))
        self.chunk_bytes -= self.chunk_bytes % (S16_BYTES * channels)

        self.process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task | None = None
        self._recorded = bytearray()
        self.frames_read = 0

    @property
    def is_recording(self) -> bool:
        return self.process is not None and self.process.returncode is None

    @property
    def recorded_audio(self) -> bytes:
        """Captured s16le PCM so far."""
        return bytes(self._recorded)

    def load_recording(self, data: bytes):
        """Seed the recording, e.g. with audio from a resumed session."""
        self._recorded = bytearray(data)

    async def start(self, on_frame: FrameCallback):
        """Spawn the capture tool and start forwarding frames.

        Raises:
            CapabilityError: If the capture tool is missing or fails to start

        """
        if self.is_recording:
            return

        executable = shutil.which(self.tool)
        if executable is None:
            raise CapabilityError(f"Audio capture tool '{self.tool}' not found. Install it or set tools.audio.")

        command = build_capture_command(executable, self.sample_rate, self.channels, self.platform_name)
        logger.debug(f"Starting capture: {' '.join(command)}")
        try:
            self.process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CapabilityError(f"Failed to start audio capture: {e}") from e

        self._reader_task = asyncio.get_running_loop().create_task(self._read_loop(on_frame))
        logger.info(f"Audio capture started: {self.sample_rate}Hz, {self.channels}ch, {self.chunk_ms}ms chunks")

    async def _read_loop(self, on_frame: FrameCallback):
        process = self.process
        while True:
            try:
                chunk = await process.stdout.readexactly(self.chunk_bytes)
            except asyncio.IncompleteReadError as e:
                if e.partial:
                    await self._forward(e.partial, on_frame)
                break
            await self._forward(chunk, on_frame)

        returncode = await process.wait()
        if returncode != 0 and self.process is process:
            stderr = await process.stderr.read() if process.stderr else b""
            logger.error(f"Audio capture exited with {returncode}: {stderr.decode(errors='replace').strip()}")
        else:
            logger.debug("Audio capture stream ended")

    async def _forward(self, chunk: bytes, on_frame: FrameCallback):
        usable = len(chunk) - (len(chunk) % (S16_BYTES * self.channels))
        if usable <= 0:
            return
        chunk = chunk[:usable]
        if self.keep_audio:
            self._recorded.extend(chunk)
        self.frames_read += 1
        await on_frame(s16le_to_f32le(chunk))

    async def stop(self):
        """Stop the capture tool and the reader."""
        process, self.process = self.process, None
        if process is not None and process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=2.0)
            except TimeoutError:
                process.kill()
                await process.wait()

        task, self._reader_task = self._reader_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if process is not None:
            logger.info(f"Audio capture stopped after {self.frames_read} chunks")

    def save_wav(self, path: str | Path) -> Path:
        """Save the recording as a 16-bit WAV file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with wave.open(str(path), "wb") as wav_file:
            wav_file.setnchannels(self.channels)
            wav_file.setsampwidth(S16_BYTES)
            wav_file.setframerate(self.sample_rate)
            wav_file.writeframes(bytes(self._recorded))

        duration = len(self._recorded) / float(self.sample_rate * self.channels * S16_BYTES)
        logger.info(f"Audio saved to {path}: {duration:.2f}s")
        return path
