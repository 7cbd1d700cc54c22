"""Microphone recording for voice messages."""

from __future__ import annotations

import asyncio
import io
import logging
import time
import wave
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Callable, Optional, Protocol

import numpy as np

from ..errors import PermissionDenied

logger = logging.getLogger(__name__)

PCM_MIME_PREFIXES = ("audio/pcm", "audio/l16")
PCM_SAMPLE_RATE = 44100
STOP_GRACE_SECONDS = 2.0


class RecordingState(str, Enum):
    IDLE = "idle"
    REQUESTING_PERMISSION = "requesting_permission"
    RECORDING = "recording"
    PROCESSING = "processing"


class MediaStream(Protocol):
    """An open capture stream. ``chunks`` ends once ``stop`` has been called."""

    mime_type: str

    def chunks(self) -> AsyncIterator[bytes]: ...

    def stop(self) -> None: ...


class Microphone(Protocol):
    async def open(self) -> MediaStream:
        """Acquire the device; raise ``PermissionError`` when access is refused."""
        ...


@dataclass(frozen=True)
class AudioFile:
    name: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class RecordedAudio:
    file: AudioFile
    duration: int


def encode_wav(pcm16: bytes, sample_rate: int = PCM_SAMPLE_RATE, channels: int = 1) -> bytes:
    """Wrap little-endian 16-bit PCM samples in a WAV container."""

    samples = np.frombuffer(pcm16[: len(pcm16) - len(pcm16) % 2], dtype="<i2")
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav_file:
        wav_file.setnchannels(channels)
        wav_file.setsampwidth(2)
        wav_file.setframerate(sample_rate)
        wav_file.writeframes(samples.astype(np.int16).tobytes())
    return buffer.getvalue()


def recording_filename(extension: str, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).isoformat(timespec="milliseconds")
    stamp = stamp.replace(":", "-").replace(".", "-").replace("+", "_")
    return f"recorded_audio_{stamp}.{extension}"


class AudioRecorder:
    """Records one voice message at a time.

    ``idle -> requesting_permission -> recording -> processing -> idle``, with
    ``cancel`` going straight from ``recording`` back to ``idle``. The stream
    is stopped on every way out: stop, cancel, capture error and close.
    """

    def __init__(self, microphone: Microphone, clock: Callable[[], float] = time.monotonic) -> None:
        self._microphone = microphone
        self._clock = clock
        self._state = RecordingState.IDLE
        self._stream: Optional[MediaStream] = None
        self._chunks: list[bytes] = []
        self._pump: Optional[asyncio.Task[None]] = None
        self._started_at = 0.0
        self._duration = 0

    async def __aenter__(self) -> "AudioRecorder":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def state(self) -> RecordingState:
        return self._state

    @property
    def duration(self) -> int:
        """Whole seconds recorded so far."""
        if self._state is RecordingState.RECORDING:
            return int(self._clock() - self._started_at)
        return self._duration

    async def start(self) -> None:
        if self._state is not RecordingState.IDLE:
            raise RuntimeError(f"Cannot start recording while {self._state.value}")

        self._state = RecordingState.REQUESTING_PERMISSION
        try:
            stream = await self._microphone.open()
        except PermissionError as exc:
            self._state = RecordingState.IDLE
            logger.info("Microphone permission denied")
            raise PermissionDenied() from exc
        except BaseException:
            self._state = RecordingState.IDLE
            raise

        self._stream = stream
        self._chunks = []
        self._duration = 0
        self._started_at = self._clock()
        self._state = RecordingState.RECORDING
        self._pump = asyncio.get_running_loop().create_task(self._collect(stream))
        logger.debug("Recording started (%s)", stream.mime_type)

    async def _collect(self, stream: MediaStream) -> None:
        try:
            async for chunk in stream.chunks():
                if chunk:
                    self._chunks.append(chunk)
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            logger.exception("Audio capture failed; discarding recording")
            self._pump = None
            self._release()

    async def stop(self) -> Optional[RecordedAudio]:
        """Finish the recording and return it, or ``None`` if nothing was being recorded."""

        if self._state is not RecordingState.RECORDING or self._stream is None:
            return None

        self._duration = int(self._clock() - self._started_at)
        self._state = RecordingState.PROCESSING
        stream = self._stream
        try:
            stream.stop()
            await self._drain_pump()
            if self._stream is None:
                # Capture failed while draining.
                return None
            return RecordedAudio(file=self._build_file(stream.mime_type), duration=self._duration)
        finally:
            self._release()

    async def cancel(self) -> None:
        """Discard the current recording without producing a file."""

        if self._pump is not None:
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
        self._release()
        self._duration = 0

    async def close(self) -> None:
        await self.cancel()

    async def _drain_pump(self) -> None:
        if self._pump is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._pump), timeout=STOP_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Capture stream did not finish after stop; keeping %d chunks", len(self._chunks))
            self._pump.cancel()

    def _build_file(self, mime_type: str) -> AudioFile:
        mime = (mime_type or "audio/webm").lower()
        data = b"".join(self._chunks)
        if mime.startswith(PCM_MIME_PREFIXES):
            return AudioFile(name=recording_filename("wav"), content_type="audio/wav", data=encode_wav(data))
        extension = "webm" if "webm" in mime else "ogg"
        return AudioFile(name=recording_filename(extension), content_type=mime_type, data=data)

    def _release(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
            except Exception:  # noqa: BLE001
                logger.exception("Failed to stop microphone stream")
        if self._pump is not None and not self._pump.done():
            self._pump.cancel()
        self._pump = None
        self._chunks = []
        self._state = RecordingState.IDLE
