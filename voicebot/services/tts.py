import asyncio
import logging
import os
from time import perf_counter
from typing import List, Optional

from dotenv import load_dotenv
from groq import AsyncGroq, GroqError

from ..errors import SynthesisError
from . import groq_client
from .text_prep import optimize_text_for_speech

logger = logging.getLogger("voicebot")

load_dotenv()
TTS_MODEL = os.getenv("TTS_MODEL", "playai-tts")
DEFAULT_VOICE = os.getenv("TTS_VOICE", "Fritz-PlayAI")
AVAILABLE_VOICES: List[str] = [
    v.strip()
    for v in os.getenv(
        "TTS_VOICES",
        "Fritz-PlayAI,Arista-PlayAI,Atlas-PlayAI,Celeste-PlayAI,Quinn-PlayAI,Thunder-PlayAI",
    ).split(",")
    if v.strip()
]
TTS_RESPONSE_FORMAT = os.getenv("TTS_RESPONSE_FORMAT", "mp3")
TTS_SPEED = float(os.getenv("TTS_SPEED", "1.0"))

MEDIA_TYPES = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
    "flac": "audio/flac",
    "mulaw": "audio/basic",
}


def media_type(response_format: str = TTS_RESPONSE_FORMAT) -> str:
    return MEDIA_TYPES.get(response_format, "application/octet-stream")


class TextToSpeech:
    """Whole-string speech synthesis through Groq, with prosody pre-processing."""

    def __init__(
        self,
        client: Optional[AsyncGroq] = None,
        model: str = TTS_MODEL,
        default_voice: str = DEFAULT_VOICE,
        response_format: str = TTS_RESPONSE_FORMAT,
    ):
        self._client = client
        self.model = model
        self.default_voice = default_voice
        self.response_format = response_format

    @property
    def client(self) -> AsyncGroq:
        if self._client is None:
            try:
                self._client = groq_client.get_client(groq_client.GROQ_AUDIO_TIMEOUT_S)
            except GroqError as e:
                raise SynthesisError(f"Groq client unavailable: {e}") from e
        return self._client

    @property
    def media_type(self) -> str:
        return media_type(self.response_format)

    def resolve_voice(self, voice: Optional[str]) -> str:
        # Unknown voices fall back to the default rather than failing the request.
        if voice and voice in AVAILABLE_VOICES:
            return voice
        return self.default_voice

    async def synthesize(self, text: str, voice: Optional[str] = None, optimize: bool = True) -> bytes:
        """
        Synthesizes speech from text.

        The text goes through optimize_text_for_speech first unless optimize is False.
        Returns encoded audio in the configured response format.
        """
        prepared = optimize_text_for_speech(text) if optimize else (text or "").strip()
        if not prepared:
            raise SynthesisError("Nothing to synthesize")

        synth_start = perf_counter()
        use_voice = self.resolve_voice(voice)
        try:
            response = await self.client.audio.speech.create(
                model=self.model,
                voice=use_voice,
                input=prepared,
                response_format=self.response_format,
                speed=TTS_SPEED,
            )
            audio_bytes = await response.read()
        except (GroqError, asyncio.TimeoutError) as e:
            elapsed = (perf_counter() - synth_start) * 1000
            raise SynthesisError(f"Text-to-speech synthesis failed after {elapsed:.1f} ms: {e}") from e

        if not audio_bytes:
            raise SynthesisError("Text-to-speech produced no audio")

        elapsed = (perf_counter() - synth_start) * 1000
        logger.info(f"TTS [{self.model}/{use_voice}] chars={len(prepared)} took {elapsed:.1f} ms.")
        return audio_bytes
