"""Persona voice bot backend: text chat, voice chat and TTS over Groq."""

__version__ = "1.0.0"
