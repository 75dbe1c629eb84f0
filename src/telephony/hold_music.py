"""Hold music played into the telephony leg while the model is busy.

Audio goes out as fixed-size mu-law frames on a fixed cadence. The buffer
loops forever until ``stop`` or ``reset``; no frame shorter than the frame
size is ever emitted.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from collections.abc import Callable
from typing import Final

import numpy as np

from integrations.asset_store import AssetStore
from telephony.g711 import SAMPLE_RATE, ULAW_SILENCE, ulaw_encode

LOGGER = logging.getLogger(__name__)

DEFAULT_TRACK_FILE: Final[str] = "hold-music.raw"
HOLD_MUSIC_TRACKS: Final[dict[str, str]] = {
    "classical": "classical.raw",
    "jazz": "jazz.raw",
    "ambient": "ambient.raw",
    "breakaway": "breakaway.raw",
}

AudioSink = Callable[[str], None]


def synthesize_tone(
    *,
    frequency: float = 440.0,
    seconds: float = 2.0,
    amplitude: float = 0.3,
    sample_rate: int = SAMPLE_RATE,
) -> bytes:
    """Fallback hold tone: a sine wave, mu-law companded."""

    t = np.arange(int(sample_rate * seconds), dtype=np.float64) / sample_rate
    pcm = np.sin(2 * np.pi * frequency * t) * amplitude * 32767
    return ulaw_encode(pcm.astype(np.int16))


def resolve_track(track: str | None) -> str:
    if not track:
        return DEFAULT_TRACK_FILE
    # Names outside the table are treated as custom asset file names.
    return HOLD_MUSIC_TRACKS.get(track, track)


def hold_music_options() -> dict[str, str]:
    return {
        "generated": "Generated Tone (Default fallback)",
        "default": DEFAULT_TRACK_FILE,
        **HOLD_MUSIC_TRACKS,
    }


class HoldMusicScheduler:
    """Looping frame emitter owned by one session.

    ``is_playing`` is True exactly while an emission task exists. A ``stop`` or
    ``reset`` issued while ``start`` is still loading its asset wins: the
    pending start gives up instead of starting playback afterwards.
    """

    def __init__(
        self,
        store: AssetStore | None,
        *,
        frame_ms: int = 20,
        sample_rate: int = SAMPLE_RATE,
    ) -> None:
        self._store = store
        self._frame_bytes = sample_rate * frame_ms // 1000
        self._interval = frame_ms / 1000
        self._is_playing = False
        self._buffer: bytes | None = None
        self._cursor = 0
        self._sink: AudioSink | None = None
        self._task: asyncio.Task | None = None
        self._generation = 0
        self._start_lock = asyncio.Lock()
        self._pending: set[asyncio.Task] = set()

    @property
    def is_playing(self) -> bool:
        return self._is_playing

    @property
    def frame_bytes(self) -> int:
        return self._frame_bytes

    async def start(self, sink: AudioSink, track: str | None = None) -> bool:
        return await self._start(sink, track, self._generation)

    def start_soon(self, sink: AudioSink, track: str | None = None) -> asyncio.Task:
        """Start playback in the background.

        A ``stop`` issued after this call returns cancels the start, even if
        the background task has not run yet.
        """

        task = asyncio.create_task(self._start(sink, track, self._generation))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _start(self, sink: AudioSink, track: str | None, generation: int) -> bool:
        if self._is_playing:
            LOGGER.debug("Hold music is already playing")
            return True

        async with self._start_lock:
            if self._is_playing or generation != self._generation:
                return True

            buffer = await self._select_buffer(track)
            if generation != self._generation:
                LOGGER.info("Hold music stopped while loading; not starting playback")
                return True

            if len(buffer) < self._frame_bytes:
                buffer = buffer + bytes([ULAW_SILENCE]) * (self._frame_bytes - len(buffer))

            self._buffer = buffer
            self._cursor = 0
            self._sink = sink
            self._is_playing = True
            self._task = asyncio.create_task(self._run())
            LOGGER.info("Hold music started (%d bytes)", len(buffer))
            return True

    def stop(self) -> bool:
        self._generation += 1
        if not self._is_playing:
            LOGGER.debug("No hold music is currently playing")
            return True
        self._clear()
        LOGGER.info("Hold music stopped")
        return True

    def reset(self) -> None:
        """Hard stop used when a call ends, whatever the current state."""

        self._generation += 1
        self._clear()

    def tick(self) -> str | None:
        """Emit the next frame to the sink and return it (base64)."""

        if not self._is_playing or self._buffer is None or self._sink is None:
            return None

        if self._cursor + self._frame_bytes > len(self._buffer):
            self._cursor = 0
        chunk = self._buffer[self._cursor : self._cursor + self._frame_bytes]
        self._cursor += self._frame_bytes

        encoded = base64.b64encode(chunk).decode("ascii")
        self._sink(encoded)
        return encoded

    async def _run(self) -> None:
        while self._is_playing:
            try:
                self.tick()
            except Exception:
                LOGGER.exception("Hold music sink failed; stopping playback")
                self._generation += 1
                self._clear()
                return
            await asyncio.sleep(self._interval)

    def _clear(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        self._is_playing = False
        self._buffer = None
        self._cursor = 0
        self._sink = None

    async def _select_buffer(self, track: str | None) -> bytes:
        file_name = resolve_track(track)
        audio = await self._load(file_name)

        if audio is None and track and file_name != DEFAULT_TRACK_FILE:
            LOGGER.info("Hold music %s not found, trying default", file_name)
            audio = await self._load(DEFAULT_TRACK_FILE)

        if audio is None:
            LOGGER.info("No hold music asset available, using generated tone")
            audio = synthesize_tone()
        return audio

    async def _load(self, name: str) -> bytes | None:
        if self._store is None:
            return None
        try:
            return await self._store.get(name)
        except OSError as exc:
            LOGGER.warning("Error loading hold music %s: %s", name, exc)
            return None
