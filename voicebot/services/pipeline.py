"""
Voice pipeline orchestration.

Two pipelines share the capabilities and the session history:

* traditional: whole-buffer STT -> whole-turn chat -> whole-string TTS, one JSON result;
* parallel: chunked audio -> incremental transcription -> incremental completion ->
  utterance dispatch, streamed as tagged records.

A parallel attempt that fails before its first record is replaced by the
traditional pipeline. Once a record exists the stream is committed: a later
failure ends it with an ERROR record instead of switching pipelines, so the
client never receives a mix of both outputs.
"""
from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from functools import partial
from time import perf_counter
from typing import Any, AsyncIterator, Callable, Dict, Optional

from .. import records
from ..errors import NoSpeechError, PipelineError, VoiceBotError, error_details, public_message_for
from ..records import StreamRecord
from . import llm
from .audio import CHUNK_SIZE, SAMPLE_WIDTH, DecodedAudio, decode_upload, iter_chunks, pcm16_to_wav
from .completion import IncrementalCompleter
from .history import Session
from .llm import ChatCompletion
from .metrics import MetricsStore, RequestMetrics, get_store
from .stt import SpeechToText
from .transcription import IncrementalTranscriber
from .tts import TextToSpeech
from .utterances import SpeechDispatcher

logger = logging.getLogger("voicebot")

PARALLEL = "parallel"
TRADITIONAL = "traditional"
MODES = (PARALLEL, TRADITIONAL)


@dataclass
class ParallelStart:
    """Outcome of starting a parallel attempt: a committed record stream or a fallback result."""

    session: Session
    stream: Optional[AsyncIterator[bytes]] = None
    result: Optional[Dict[str, Any]] = None

    @property
    def fallback(self) -> bool:
        return self.result is not None


class VoicePipeline:
    def __init__(
        self,
        stt: SpeechToText,
        chat: ChatCompletion,
        tts: TextToSpeech,
        metrics: Optional[MetricsStore] = None,
        decode: Callable[[bytes, Optional[str]], DecodedAudio] = decode_upload,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.stt = stt
        self.chat = chat
        self.tts = tts
        self.metrics = metrics or get_store()
        self.decode = decode
        self.chunk_size = chunk_size

    async def run_traditional(
        self,
        audio_bytes: bytes,
        session: Session,
        filename: str = "audio.wav",
        voice: Optional[str] = None,
        return_audio: bool = False,
        rm: Optional[RequestMetrics] = None,
    ) -> Dict[str, Any]:
        """Sequential processing: STT -> chat -> optional TTS."""
        logger.info("Processing voice input with traditional pipeline...")
        stt_start = perf_counter()
        text_input = await self.stt.transcribe(audio_bytes, filename=filename)
        if rm is not None:
            rm.transcribe_ms = (perf_counter() - stt_start) * 1000
        if not text_input:
            raise NoSpeechError("No speech detected")

        session.history.append("user", text_input)
        text_response = await self.chat.complete(llm.SYSTEM_PROMPT, session.history.turns())
        session.history.append("assistant", text_response)

        response: Dict[str, Any] = {
            "transcript": text_input,
            "response": text_response,
            "timestamp": records.timestamp(),
            "processingInfo": {
                "mode": TRADITIONAL,
                "voiceModel": self.tts.resolve_voice(voice),
                "textOptimized": True,
                "audioFormat": self.tts.response_format,
            },
            "sessionId": session.session_id,
        }

        if return_audio:
            audio_response = await self.tts.synthesize(text_response, voice=voice)
            response["audioResponse"] = base64.b64encode(audio_response).decode("ascii")
            response["audioFormat"] = self.tts.response_format
            if rm is not None:
                rm.audio_records = 1

        logger.info("Traditional voice processing completed")
        return response

    async def traditional(self, audio_bytes: bytes, session: Session, **kwargs: Any) -> Dict[str, Any]:
        """run_traditional with request metrics recorded."""
        rm = self.metrics.start(TRADITIONAL)
        try:
            result = await self.run_traditional(audio_bytes, session, rm=rm, **kwargs)
        except VoiceBotError as e:
            self.metrics.finish(rm, error=str(e))
            raise
        self.metrics.finish(rm)
        return result

    async def run_parallel(
        self,
        audio_bytes: bytes,
        session: Session,
        fmt: Optional[str] = None,
        voice: Optional[str] = None,
        rm: Optional[RequestMetrics] = None,
    ) -> AsyncIterator[StreamRecord]:
        """Chunked, overlapping stages; yields records ending with DONE."""
        started = perf_counter()
        loop = asyncio.get_running_loop()
        try:
            decoded = await loop.run_in_executor(None, self.decode, audio_bytes, fmt)
        except Exception as e:
            raise PipelineError(f"Could not decode audio for streaming: {e}") from e

        transcriber = IncrementalTranscriber(
            self.stt,
            frame_width=SAMPLE_WIDTH,
            window_encoder=partial(pcm16_to_wav, sample_rate=decoded.sample_rate),
            filename="window.wav",
        )
        completer = IncrementalCompleter(self.chat, session.history)
        dispatcher = SpeechDispatcher(self.tts, voice=voice)

        transcripts = transcriber.transcribe(iter_chunks(decoded.pcm16, self.chunk_size))
        stream = dispatcher.run(completer.complete(transcripts))
        try:
            async for record in stream:
                yield record
        finally:
            # Closing early (client gone, committed stream aborted) cancels the TTS worker.
            await stream.aclose()
        if not completer.accumulated_input:
            # Nothing was streamed yet, so the caller still falls back.
            raise NoSpeechError("No speech detected in any transcription window")

        total_ms = (perf_counter() - started) * 1000
        first_audio_ms = None
        if dispatcher.first_audio_ts is not None:
            first_audio_ms = round((dispatcher.first_audio_ts - started) * 1000, 1)
        if rm is not None:
            rm.first_audio_ms = first_audio_ms
        logger.info("Completed parallel voice processing")
        yield records.done(
            processingMode=PARALLEL,
            sessionId=session.session_id,
            transcriptionWindows=len(transcriber.windows),
            partialCalls=completer.partial_calls,
            utterances=dispatcher.utterances_queued,
            audioRecords=dispatcher.audio_records,
            failedUtterances=dispatcher.failed_utterances,
            firstAudioMs=first_audio_ms,
            totalMs=round(total_ms, 1),
        )

    async def start_parallel(
        self,
        audio_bytes: bytes,
        session: Session,
        filename: str = "audio.wav",
        fmt: Optional[str] = None,
        voice: Optional[str] = None,
        return_audio: bool = True,
    ) -> ParallelStart:
        """
        Run the parallel attempt up to its first record.

        Anything raised before that point discards the attempt, restores the
        session history and returns the traditional result instead.
        """
        logger.info("Attempting parallel voice processing...")
        rm = self.metrics.start(PARALLEL)
        checkpoint = session.history.turns()
        attempt = self.run_parallel(audio_bytes, session, fmt=fmt, voice=voice, rm=rm)
        try:
            first = await attempt.__anext__()
        except Exception as e:
            await attempt.aclose()
            error = e if isinstance(e, PipelineError) else PipelineError(str(e) or type(e).__name__)
            logger.warning(f"Parallel processing failed, falling back to traditional pipeline: {error}")
            session.history.restore(checkpoint)
            rm.fallback = True
            try:
                result = await self.run_traditional(
                    audio_bytes, session, filename=filename, voice=voice, return_audio=return_audio, rm=rm
                )
            except VoiceBotError as e2:
                self.metrics.finish(rm, error=str(e2))
                raise
            self.metrics.finish(rm)
            return ParallelStart(session=session, result=result)

        rm.first_record_ms = self.metrics.elapsed_ms(rm)
        return ParallelStart(session=session, stream=self._committed(first, attempt, rm))

    async def _committed(
        self,
        first: StreamRecord,
        attempt: AsyncIterator[StreamRecord],
        rm: RequestMetrics,
    ) -> AsyncIterator[bytes]:
        record = first
        finished = False
        try:
            while True:
                if record.tag == records.AUDIO:
                    rm.audio_records += 1
                yield record.encode()
                try:
                    record = await attempt.__anext__()
                except StopAsyncIteration:
                    break
        except Exception as e:
            logger.error(f"Parallel processing failed after streaming began: {e}")
            self.metrics.finish(rm, error=str(e) or type(e).__name__)
            finished = True
            yield records.error(public_message_for(e), error_details(e)).encode()
            return
        else:
            self.metrics.finish(rm)
            finished = True
        finally:
            if not finished:
                # Closed or cancelled mid-stream, usually a client disconnect.
                logger.info(f"Voice stream for request #{rm.request_id} closed before completion")
                self.metrics.finish(rm, error="client disconnected")
            await attempt.aclose()
