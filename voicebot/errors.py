"""
Error taxonomy shared by the capabilities, the pipeline stages and the HTTP layer.

Every error carries an HTTP status and a generic, user-safe message. The
exception's own text is the detail string, which the HTTP layer only exposes
outside production.
"""
import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()
ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()


class VoiceBotError(Exception):
    status_code = 500
    public_message = "An error occurred while processing your request."

    def __init__(self, message: str = "", *, public_message: Optional[str] = None):
        super().__init__(message or self.public_message)
        if public_message is not None:
            self.public_message = public_message


class TranscriptionError(VoiceBotError):
    public_message = "An error occurred while transcribing your audio."


class NoSpeechError(TranscriptionError):
    status_code = 422
    public_message = "Sorry, I couldn't understand that."


class CompletionError(VoiceBotError):
    public_message = "An error occurred while generating a response."


class SynthesisError(VoiceBotError):
    public_message = "An error occurred while synthesizing speech."


class ValidationError(VoiceBotError):
    status_code = 400
    public_message = "Invalid request."


class UploadTooLargeError(ValidationError):
    status_code = 413
    public_message = "Audio file is too large."


class PipelineError(VoiceBotError):
    """Uncaught failure inside the parallel attempt; triggers the sequential fallback."""

    public_message = "An error occurred while processing your voice input."


def expose_details() -> bool:
    return ENVIRONMENT == "development"


def public_message_for(exc: BaseException) -> str:
    if isinstance(exc, VoiceBotError):
        return exc.public_message
    return VoiceBotError.public_message


def error_details(exc: BaseException) -> Optional[str]:
    """Detail string for error payloads; suppressed outside development."""
    if not expose_details():
        return None
    return str(exc) or type(exc).__name__
