from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from time import perf_counter
from typing import AsyncIterable, AsyncIterator, Callable, List, Optional

from ..errors import TranscriptionError
from .stt import SpeechToText

logger = logging.getLogger("voicebot")

FLUSH_BYTES = 64 * 1024
FLUSH_EVERY_CHUNKS = 10
OVERLAP_RATIO = 0.2
MAX_OVERLAP_BYTES = 16 * 1024


class TranscriberState(str, Enum):
    ACCUMULATING = "ACCUMULATING"
    FLUSHING = "FLUSHING"
    FINAL_FLUSH = "FINAL_FLUSH"
    DONE = "DONE"


@dataclass
class WindowResult:
    """Outcome of transcribing one buffered window: text or the error that dropped it."""

    index: int
    size: int
    text: str = ""
    error: Optional[TranscriptionError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class IncrementalTranscriber:
    """
    Turns a stream of raw audio chunks into a stream of transcript fragments.

    Chunks accumulate in a byte buffer. A window is transcribed when the buffer
    reaches flush_bytes or every flush_every chunks; afterwards only a trailing
    overlap slice is kept so the next window has some acoustic context.
    Consecutive fragments therefore overlap and may repeat words.
    """

    def __init__(
        self,
        stt: SpeechToText,
        flush_bytes: int = FLUSH_BYTES,
        flush_every: Optional[int] = FLUSH_EVERY_CHUNKS,
        overlap_ratio: float = OVERLAP_RATIO,
        max_overlap: int = MAX_OVERLAP_BYTES,
        frame_width: int = 1,
        window_encoder: Optional[Callable[[bytes], bytes]] = None,
        filename: str = "window.wav",
    ):
        self.stt = stt
        self.flush_bytes = flush_bytes
        self.flush_every = flush_every
        self.overlap_ratio = overlap_ratio
        self.max_overlap = max_overlap
        self.frame_width = max(1, frame_width)
        self.window_encoder = window_encoder
        self.filename = filename

        self.state = TranscriberState.ACCUMULATING
        self.windows: List[WindowResult] = []

    def _should_flush(self, buffered: int, chunk_count: int) -> bool:
        if buffered >= self.flush_bytes:
            return True
        return bool(self.flush_every) and chunk_count % self.flush_every == 0

    def overlap_size(self, buffered: int) -> int:
        keep = min(int(buffered * self.overlap_ratio), self.max_overlap)
        return keep - (keep % self.frame_width)

    async def _transcribe_window(self, window: bytes) -> WindowResult:
        result = WindowResult(index=len(self.windows), size=len(window))
        payload = self.window_encoder(window) if self.window_encoder else window
        start = perf_counter()
        try:
            result.text = (await self.stt.transcribe(payload, filename=self.filename)).strip()
        except TranscriptionError as e:
            result.error = e
        elapsed = (perf_counter() - start) * 1000
        logger.debug(f"STT window #{result.index} bytes={result.size} took {elapsed:.0f} ms")
        self.windows.append(result)
        return result

    def _accept(self, result: WindowResult) -> bool:
        if not result.ok:
            # A dropped window costs accuracy, not the stream.
            logger.warning(f"Transcription window #{result.index} failed, continuing: {result.error}")
            return False
        return bool(result.text)

    async def transcribe(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
        """Yield one transcript fragment per successful, non-empty window."""
        buffer = bytearray()
        chunk_count = 0
        self.state = TranscriberState.ACCUMULATING

        async for chunk in chunks:
            if not chunk:
                continue
            buffer.extend(chunk)
            chunk_count += 1
            if not self._should_flush(len(buffer), chunk_count):
                continue

            self.state = TranscriberState.FLUSHING
            result = await self._transcribe_window(bytes(buffer))
            keep = self.overlap_size(len(buffer))
            del buffer[: len(buffer) - keep]
            self.state = TranscriberState.ACCUMULATING
            if self._accept(result):
                yield result.text

        if buffer:
            self.state = TranscriberState.FINAL_FLUSH
            result = await self._transcribe_window(bytes(buffer))
            buffer.clear()
            if self._accept(result):
                yield result.text
        self.state = TranscriberState.DONE
