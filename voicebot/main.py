import json
import logging
import os
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__, records
from .errors import (
    CompletionError,
    UploadTooLargeError,
    ValidationError,
    VoiceBotError,
    error_details,
    expose_details,
)
from .middleware import RateLimitMiddleware, SecurityHeadersMiddleware
from .services import groq_client, llm, tts
from .services.audio import EXTENSIONS, extension_for
from .services.history import SessionStore, get_session_store
from .services.llm import ChatCompletion
from .services.metrics import MetricsStore, get_store, start_dashboard
from .services.pipeline import MODES, PARALLEL, TRADITIONAL, VoicePipeline
from .services.stt import SpeechToText
from .services.tts import TextToSpeech

load_dotenv()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", "3000"))
HOST = os.getenv("HOST", "0.0.0.0")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGIN", "http://localhost:3000").split(",") if o.strip()]
RATE_LIMIT_WINDOW_MS = int(os.getenv("RATE_LIMIT_WINDOW_MS", "900000"))  # 15 minutes
RATE_LIMIT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "100"))

ALLOWED_AUDIO_TYPES = tuple(EXTENSIONS)
MAX_UPLOAD_BYTES = 25 * 1024 * 1024
ENDPOINTS = {
    "chat": "/chat",
    "chatStream": "/chat/stream",
    "voice": "/voice",
    "voiceTraditional": "/voice/traditional",
    "tts": "/tts",
    "status": "/status",
    "health": "/health",
    "voiceOptions": "/voice/options",
}

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("voicebot")

app = FastAPI(title=f"{llm.PERSONA_NAME} Voice Bot Backend", version=__version__)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    RateLimitMiddleware,
    window_ms=RATE_LIMIT_WINDOW_MS,
    max_requests=RATE_LIMIT_MAX_REQUESTS,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Session-ID"],
    expose_headers=["X-Session-ID", "X-Pipeline-Fallback"],
)


@dataclass
class Services:
    stt: SpeechToText
    chat: ChatCompletion
    tts: TextToSpeech
    sessions: SessionStore
    metrics: MetricsStore
    pipeline: VoicePipeline


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        stt_service, chat_service, tts_service = SpeechToText(), ChatCompletion(), TextToSpeech()
        metrics = get_store()
        _services = Services(
            stt=stt_service,
            chat=chat_service,
            tts=tts_service,
            sessions=get_session_store(),
            metrics=metrics,
            pipeline=VoicePipeline(stt_service, chat_service, tts_service, metrics=metrics),
        )
    return _services


@app.on_event("startup")
async def on_startup():
    start_dashboard()
    logger.info(f"{llm.PERSONA_NAME} Voice Bot Backend starting (environment={os.getenv('ENVIRONMENT', 'development')})")
    if not groq_client.is_configured():
        logger.warning("GROQ_API_KEY is missing; provider calls will fail until it is set.")


# --- Error handling ---


def _error_payload(message: str, exc: BaseException) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"error": message}
    details = error_details(exc)
    if details:
        payload["details"] = details
    return payload


@app.exception_handler(VoiceBotError)
async def voicebot_error_handler(request: Request, exc: VoiceBotError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=exc.status_code, content=_error_payload(exc.public_message, exc))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return JSONResponse(
            status_code=404,
            content={
                "error": "Not Found",
                "message": f"Route {request.url.path} not found",
                "availableEndpoints": list(ENDPOINTS.values()),
            },
        )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": str(exc) if expose_details() else "Something went wrong",
        },
    )


# --- Request helpers ---


def _as_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return str(value).strip().lower() in ("1", "true", "yes", "on")


async def _read_upload(audio: Optional[UploadFile]) -> bytes:
    """Validate and read the uploaded audio before any pipeline work."""
    if audio is None:
        raise ValidationError("No audio file provided", public_message="No audio file provided")
    if audio.content_type not in ALLOWED_AUDIO_TYPES:
        raise ValidationError(
            f"Unsupported content type: {audio.content_type}", public_message="Invalid audio format"
        )
    data = await audio.read(MAX_UPLOAD_BYTES + 1)
    if len(data) > MAX_UPLOAD_BYTES:
        raise UploadTooLargeError(f"Upload exceeds {MAX_UPLOAD_BYTES} bytes", public_message="Audio file exceeds 25MB")
    if not data:
        raise ValidationError("Empty audio upload", public_message="No audio file provided")
    return data


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON body: {e}", public_message="Request body must be JSON") from e
    if not isinstance(body, dict):
        raise ValidationError("JSON body must be an object", public_message="Request body must be a JSON object")
    return body


def _session_headers(session_id: str, **extra: str) -> Dict[str, str]:
    return {"X-Session-ID": session_id, **extra}


# --- Voice ---


async def _run_traditional(
    services: Services,
    audio: Optional[UploadFile],
    voice: Optional[str],
    return_audio: bool,
    session_id: Optional[str],
) -> JSONResponse:
    data = await _read_upload(audio)
    session = services.sessions.get(session_id)
    result = await services.pipeline.traditional(
        data,
        session,
        filename=f"audio.{extension_for(audio.content_type, audio.filename)}",
        voice=voice,
        return_audio=return_audio,
    )
    return JSONResponse(result, headers=_session_headers(session.session_id))


@app.post("/voice")
async def handle_voice_input(
    request: Request,
    audio: Optional[UploadFile] = File(None),
    mode: str = Form(PARALLEL),
    voice: Optional[str] = Form(None),
    returnAudio: Optional[str] = Form(None),
    sessionId: Optional[str] = Form(None),
    services: Services = Depends(get_services),
):
    """
    Smart voice input: the parallel streaming pipeline by default, the
    traditional pipeline on request or when the parallel attempt fails early.
    """
    mode = (mode or PARALLEL).strip().lower()
    if mode not in MODES:
        raise ValidationError(f"Unknown mode: {mode}", public_message="mode must be 'parallel' or 'traditional'")
    session_id = sessionId or request.headers.get("X-Session-ID")
    return_audio = _as_bool(returnAudio, default=True)

    if mode == TRADITIONAL:
        logger.info("Using traditional voice processing as requested...")
        return await _run_traditional(services, audio, voice, return_audio, session_id)

    data = await _read_upload(audio)
    session = services.sessions.get(session_id)
    ext = extension_for(audio.content_type, audio.filename)
    start = await services.pipeline.start_parallel(
        data, session, filename=f"audio.{ext}", fmt=ext, voice=voice, return_audio=return_audio
    )
    if start.fallback:
        return JSONResponse(start.result, headers=_session_headers(session.session_id, **{"X-Pipeline-Fallback": "true"}))

    return StreamingResponse(
        start.stream,
        media_type="application/octet-stream",
        headers=_session_headers(session.session_id, **{"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}),
    )


@app.post("/voice/traditional")
async def handle_traditional_voice_processing(
    request: Request,
    audio: Optional[UploadFile] = File(None),
    voice: Optional[str] = Form(None),
    returnAudio: Optional[str] = Form(None),
    sessionId: Optional[str] = Form(None),
    services: Services = Depends(get_services),
):
    """For clients that want guaranteed sequential processing."""
    logger.info("Explicit traditional voice processing requested...")
    session_id = sessionId or request.headers.get("X-Session-ID")
    return await _run_traditional(services, audio, voice, _as_bool(returnAudio, default=False), session_id)


@app.post("/tts")
async def handle_text_to_speech(request: Request, services: Services = Depends(get_services)):
    body = await _json_body(request)
    text = body.get("text")
    if not text or not isinstance(text, str) or not text.strip():
        raise ValidationError("Missing text", public_message="Text is required and must be a string")

    audio_bytes = await services.tts.synthesize(text, voice=body.get("voice"))
    return Response(
        content=audio_bytes,
        media_type=services.tts.media_type,
        headers={"Content-Disposition": f'attachment; filename="speech.{services.tts.response_format}"'},
    )


@app.get("/voice/options")
async def get_voice_options():
    return {
        "voices": [
            {"value": v, "name": v.split("-")[0], "recommended": v == tts.DEFAULT_VOICE}
            for v in tts.AVAILABLE_VOICES
        ],
        "processingModes": [
            {
                "mode": PARALLEL,
                "name": "Parallel Processing",
                "description": "Real-time streaming with chunked processing",
                "recommended": True,
            },
            {
                "mode": TRADITIONAL,
                "name": "Traditional Processing",
                "description": "Sequential processing for maximum reliability",
            },
        ],
        "defaultVoice": tts.DEFAULT_VOICE,
        "defaultMode": PARALLEL,
        "supportedFormats": list(ALLOWED_AUDIO_TYPES),
        "maxFileSize": "25MB",
        "optimizations": {
            "textOptimization": True,
            "technicalTerms": True,
            "naturalPauses": True,
            "acronymHandling": True,
        },
        "timestamp": records.timestamp(),
    }


# --- Chat ---


@app.post("/chat")
async def handle_chat(request: Request, services: Services = Depends(get_services)):
    body = await _json_body(request)
    session = services.sessions.get(body.get("sessionId") or request.headers.get("X-Session-ID"))
    headers = _session_headers(session.session_id)

    action = body.get("action")
    if action == "getFirstMessage":
        return JSONResponse(
            {"response": llm.FIRST_MESSAGE, "isFirstMessage": True, "sessionId": session.session_id},
            headers=headers,
        )
    if action == "clearConversation":
        session.history.clear()
        return JSONResponse({"message": "Conversation cleared", "sessionId": session.session_id}, headers=headers)

    text = body.get("input")
    if not text or not isinstance(text, str) or not text.strip():
        raise ValidationError("Missing input", public_message="Input is required and must be a string.")

    session.history.append("user", text.strip())
    response = await services.chat.complete(llm.SYSTEM_PROMPT, session.history.turns())
    session.history.append("assistant", response)
    return JSONResponse(
        {
            "response": response,
            "timestamp": records.timestamp(),
            "conversationActive": True,
            "sessionId": session.session_id,
        },
        headers=headers,
    )


def _sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


@app.post("/chat/stream")
async def handle_streaming_chat(request: Request, services: Services = Depends(get_services)):
    body = await _json_body(request)
    text = body.get("input")
    if not text or not isinstance(text, str) or not text.strip():
        raise ValidationError("Missing input", public_message="Input is required and must be a string.")
    session = services.sessions.get(body.get("sessionId") or request.headers.get("X-Session-ID"))
    session.history.append("user", text.strip())

    async def event_stream() -> AsyncIterator[str]:
        answer = []
        try:
            async for chunk in services.chat.stream(llm.SYSTEM_PROMPT, session.history.turns()):
                answer.append(chunk)
                yield _sse({"chunk": chunk, "timestamp": records.timestamp()})
        except CompletionError as e:
            logger.error(f"Streaming error: {e}")
            yield _sse({"error": "Streaming failed", "timestamp": records.timestamp()})
            return
        session.history.append("assistant", "".join(answer))
        yield _sse({"done": True, "sessionId": session.session_id, "timestamp": records.timestamp()})

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers=_session_headers(session.session_id, **{"Cache-Control": "no-cache"}),
    )


# --- Metadata ---


@app.get("/status")
async def get_status(services: Services = Depends(get_services)):
    return {
        "status": "online",
        "persona": llm.PERSONA_NAME,
        "capabilities": ["text-chat", "voice-chat", "text-to-speech", "conversation-memory", "personalized-responses"],
        "providerConfigured": groq_client.is_configured(),
        "singleSessionMode": services.sessions.single_session,
        "activeSessions": len(services.sessions),
        "metrics": services.metrics.summary(),
        "timestamp": records.timestamp(),
    }


@app.get("/health")
async def get_health():
    return {
        "status": "healthy",
        "timestamp": records.timestamp(),
        "service": f"{llm.PERSONA_NAME} Voice Bot Backend",
    }


@app.get("/")
async def get_root():
    return {
        "message": f"{llm.PERSONA_NAME} Voice Bot Backend API",
        "version": __version__,
        "status": "online",
        "endpoints": ENDPOINTS,
    }


def run() -> None:
    import uvicorn

    uvicorn.run("voicebot.main:app", host=HOST, port=PORT, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
