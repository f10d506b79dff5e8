import asyncio
import logging
import os
from time import perf_counter
from typing import Optional

from dotenv import load_dotenv
from groq import AsyncGroq, GroqError

from ..errors import TranscriptionError
from . import groq_client

logger = logging.getLogger("voicebot")

# Load .env early so model env vars are picked up.
load_dotenv()

STT_MODEL = os.getenv("STT_MODEL", "whisper-large-v3-turbo")
STT_LANGUAGE = os.getenv("STT_LANGUAGE", "en")
STT_TEMPERATURE = float(os.getenv("STT_TEMPERATURE", "0.2"))
# Biases recognition towards the vocabulary the persona talks about.
STT_CONTEXT_PROMPT = os.getenv(
    "STT_CONTEXT_PROMPT",
    "Technical discussion about AI, GenAI, prompt engineering, LLMs, and software development.",
)


class SpeechToText:
    """Whole-buffer transcription through Groq Whisper. No retries; callers own the policy."""

    def __init__(self, client: Optional[AsyncGroq] = None, model: str = STT_MODEL):
        self._client = client
        self.model = model

    @property
    def client(self) -> AsyncGroq:
        if self._client is None:
            try:
                self._client = groq_client.get_client(groq_client.GROQ_AUDIO_TIMEOUT_S)
            except GroqError as e:
                raise TranscriptionError(f"Groq client unavailable: {e}") from e
        return self._client

    async def transcribe(self, audio_bytes: bytes, filename: str = "audio.wav") -> str:
        """
        Transcribes a byte string of audio into text.

        Args:
            audio_bytes: The audio data in bytes (any container Whisper accepts).
            filename: Name sent with the upload; its extension tells the provider the format.

        Returns:
            The stripped transcript, possibly empty.

        Raises:
            TranscriptionError: the provider rejected the payload or timed out.
        """
        if not audio_bytes:
            raise TranscriptionError("Empty audio payload")

        wall_start = perf_counter()
        try:
            transcription = await self.client.audio.transcriptions.create(
                file=(filename, audio_bytes),
                model=self.model,
                language=STT_LANGUAGE,
                prompt=STT_CONTEXT_PROMPT,
                temperature=STT_TEMPERATURE,
                response_format="json",
            )
        except (GroqError, asyncio.TimeoutError) as e:
            elapsed = (perf_counter() - wall_start) * 1000
            raise TranscriptionError(f"Speech-to-text conversion failed after {elapsed:.0f} ms: {e}") from e

        text = getattr(transcription, "text", None)
        if text is None:
            raise TranscriptionError("Speech-to-text response carried no text")

        total_ms = (perf_counter() - wall_start) * 1000
        logger.info(f"STT [{self.model}] bytes={len(audio_bytes)} total={total_ms:.0f} ms")
        return text.strip()
