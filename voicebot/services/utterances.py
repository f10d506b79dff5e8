"""
Utterance segmentation and speech dispatch for streamed answers.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from time import perf_counter
from typing import AsyncIterable, AsyncIterator, Optional

from dotenv import load_dotenv

from .. import records
from ..errors import SynthesisError
from ..records import StreamRecord
from .completion import COMPLETE, CompletionFragment
from .tts import TextToSpeech

logger = logging.getLogger("voicebot")

load_dotenv()
UTTERANCE_MAX_CHARS = 50
UTTERANCE_QUEUE_SIZE = int(os.getenv("UTTERANCE_QUEUE_SIZE", "16"))
RECORD_QUEUE_SIZE = int(os.getenv("RECORD_QUEUE_SIZE", "64"))

_TERMINAL_PUNCTUATION = re.compile(r"[.!?]")

_END = object()


@dataclass
class _Failure:
    error: BaseException


class UtteranceSegmenter:
    """
    Accumulates streamed text into speakable utterances.

    A flush happens after a feed when the buffer is longer than max_chars or
    the fed text contains terminal punctuation. Output depends only on the
    sequence of fed texts.
    """

    def __init__(self, max_chars: int = UTTERANCE_MAX_CHARS):
        self.max_chars = max_chars
        self.buffer = ""

    def feed(self, text: str) -> Optional[str]:
        self.buffer += text
        if len(self.buffer) > self.max_chars or _TERMINAL_PUNCTUATION.search(text):
            return self.flush()
        return None

    def flush(self) -> Optional[str]:
        utterance = self.buffer.strip()
        self.buffer = ""
        return utterance or None


class SpeechDispatcher:
    """
    Turns completion fragments into response records.

    Chat records are emitted as fragments arrive. Utterances go through a
    bounded FIFO queue to a single drain worker, which synthesizes them one at
    a time so AUDIO records keep utterance order. A failed synthesis drops that
    utterance only.
    """

    def __init__(
        self,
        tts: TextToSpeech,
        voice: Optional[str] = None,
        max_chars: int = UTTERANCE_MAX_CHARS,
        queue_size: int = UTTERANCE_QUEUE_SIZE,
        record_queue_size: int = RECORD_QUEUE_SIZE,
    ):
        self.tts = tts
        self.voice = voice
        self.segmenter = UtteranceSegmenter(max_chars)
        self.queue_size = queue_size
        self.record_queue_size = record_queue_size

        self.utterances_queued = 0
        self.audio_records = 0
        self.failed_utterances = 0
        self.first_audio_ts: Optional[float] = None

    async def _drain(self, utterances: asyncio.Queue, out: asyncio.Queue) -> None:
        while True:
            text = await utterances.get()
            if text is _END:
                return
            logger.info(f"Processing TTS for: \"{text[:30]}...\"")
            try:
                audio_bytes = await self.tts.synthesize(text, voice=self.voice)
            except SynthesisError as e:
                self.failed_utterances += 1
                logger.warning(f"TTS processing error, skipping utterance: {e}")
                continue
            except Exception as e:
                self.failed_utterances += 1
                logger.error(f"Unexpected TTS failure, skipping utterance: {type(e).__name__}: {e}")
                continue
            if self.first_audio_ts is None:
                self.first_audio_ts = perf_counter()
            self.audio_records += 1
            await out.put(records.audio(audio_bytes))

    async def _handoff(self, utterances: asyncio.Queue, item: object, drain: asyncio.Task) -> None:
        """Put on the bounded utterance queue without blocking forever on a dead worker."""
        if drain.done():
            self._worker_gone(drain)
        put = asyncio.ensure_future(utterances.put(item))
        try:
            await asyncio.wait({put, drain}, return_when=asyncio.FIRST_COMPLETED)
            delivered = put.done()
        finally:
            if not put.done():
                put.cancel()
        if not delivered:
            self._worker_gone(drain)

    @staticmethod
    def _worker_gone(drain: asyncio.Task) -> None:
        if not drain.cancelled() and drain.exception() is not None:
            raise drain.exception()
        raise RuntimeError("TTS worker stopped before the utterance queue was drained")

    async def _enqueue(self, utterances: asyncio.Queue, text: Optional[str], drain: asyncio.Task) -> None:
        if text:
            self.utterances_queued += 1
            await self._handoff(utterances, text, drain)

    async def _pump(
        self,
        fragments: AsyncIterable[CompletionFragment],
        utterances: asyncio.Queue,
        out: asyncio.Queue,
    ) -> None:
        drain = asyncio.create_task(self._drain(utterances, out))
        try:
            transcript_sent = False
            async for fragment in fragments:
                if fragment.kind == COMPLETE:
                    if not transcript_sent:
                        await out.put(records.transcript(fragment.source_input))
                        transcript_sent = True
                    await out.put(records.chat_complete(fragment.text))
                else:
                    await out.put(records.chat_partial(fragment.text, fragment.source_input))
                await self._enqueue(utterances, self.segmenter.feed(fragment.text), drain)

            await self._enqueue(utterances, self.segmenter.flush(), drain)
            await self._handoff(utterances, _END, drain)
            await asyncio.wait({drain})
            if drain.cancelled() or drain.exception() is not None:
                self._worker_gone(drain)
        except Exception as e:
            # Handed to the consumer, which re-raises it.
            await _stop(drain)
            await out.put(_Failure(e))
            return
        finally:
            await _stop(drain)
            aclose = getattr(fragments, "aclose", None)
            if aclose is not None:
                await aclose()
        await out.put(_END)

    async def run(self, fragments: AsyncIterable[CompletionFragment]) -> AsyncIterator[StreamRecord]:
        utterances: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        out: asyncio.Queue = asyncio.Queue(maxsize=self.record_queue_size)
        pump = asyncio.create_task(self._pump(fragments, utterances, out))
        try:
            while True:
                item = await out.get()
                if item is _END:
                    break
                if isinstance(item, _Failure):
                    raise item.error
                yield item
        finally:
            await _stop(pump)


async def _stop(task: asyncio.Task) -> None:
    """Cancel a helper task and wait until it has unwound."""
    if not task.done():
        task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.debug(f"Stopped task {task.get_name()} ended with {type(e).__name__}: {e}")
