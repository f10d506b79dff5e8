import asyncio
import io
import logging
import os
import wave
from dataclasses import dataclass
from time import perf_counter
from typing import AsyncIterator, Optional

from pydub import AudioSegment

logger = logging.getLogger("voicebot")

SAMPLE_RATE = 16000
SAMPLE_WIDTH = 2  # PCM16
CHUNK_SIZE = 8 * 1024

EXTENSIONS = {
    "audio/wav": "wav",
    "audio/mp3": "mp3",
    "audio/mpeg": "mp3",
    "audio/webm": "webm",
    "audio/ogg": "ogg",
}


@dataclass(frozen=True)
class DecodedAudio:
    pcm16: bytes  # little-endian PCM16 mono
    sample_rate: int = SAMPLE_RATE

    @property
    def duration_s(self) -> float:
        return len(self.pcm16) / float(SAMPLE_WIDTH * self.sample_rate)


def extension_for(content_type: Optional[str], filename: Optional[str] = None) -> str:
    if content_type in EXTENSIONS:
        return EXTENSIONS[content_type]
    if filename:
        ext = os.path.splitext(filename)[1].lstrip(".").lower()
        if ext:
            return ext
    return "wav"


def decode_upload(audio_bytes: bytes, fmt: Optional[str] = None) -> DecodedAudio:
    """
    Decode an uploaded container (webm/ogg/mp3/wav) to 16kHz mono PCM16.

    Raises whatever pydub/ffmpeg raises on undecodable input; the caller decides
    what a decode failure means.
    """
    decode_start = perf_counter()
    segment = AudioSegment.from_file(io.BytesIO(audio_bytes), format=fmt)
    segment = segment.set_frame_rate(SAMPLE_RATE).set_channels(1).set_sample_width(SAMPLE_WIDTH)
    decoded = DecodedAudio(pcm16=segment.raw_data, sample_rate=SAMPLE_RATE)
    decode_ms = (perf_counter() - decode_start) * 1000
    logger.debug(f"Decoded upload: duration={decoded.duration_s:.2f}s decode={decode_ms:.0f} ms")
    return decoded


def pcm16_to_wav(pcm16: bytes, sample_rate: int = SAMPLE_RATE) -> bytes:
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(SAMPLE_WIDTH)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm16)
    return buf.getvalue()


async def iter_chunks(data: bytes, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
    """Replay a complete buffer as an ordered stream of chunks."""
    for i in range(0, len(data), chunk_size):
        yield data[i : i + chunk_size]
        await asyncio.sleep(0)
