import os

# Must be set before voicebot modules read their configuration.
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("RATE_LIMIT_MAX_REQUESTS", "10000")
os.environ.setdefault("METRICS_DASHBOARD", "0")

import pytest

from voicebot.errors import CompletionError, SynthesisError, TranscriptionError
from voicebot.services import llm
from voicebot.services.audio import DecodedAudio
from voicebot.services.history import SessionStore
from voicebot.services.metrics import MetricsStore
from voicebot.services.pipeline import VoicePipeline


def split_words(text):
    words = text.split(" ")
    return [w + " " for w in words[:-1]] + [words[-1]]


class FakeSTT:
    def __init__(self, text="hello there how are you", fail_on=()):
        self.text = text
        self.fail_on = set(fail_on)
        self.calls = []

    async def transcribe(self, audio_bytes, filename="audio.wav"):
        self.calls.append((len(audio_bytes), filename))
        if len(self.calls) in self.fail_on:
            raise TranscriptionError(f"window {len(self.calls)} rejected")
        return self.text


class FakeChat:
    """Streams replies word by word; partial calls are recognised by their token budget."""

    def __init__(
        self,
        reply="Sure thing. Happy to help!",
        partial_reply="Let me think.",
        fail_partial=False,
        fail_final=False,
        fail_final_after=None,
        fail_complete=False,
    ):
        self.reply = reply
        self.partial_reply = partial_reply
        self.fail_partial = fail_partial
        self.fail_final = fail_final
        self.fail_final_after = fail_final_after
        self.fail_complete = fail_complete
        self.calls = []

    async def complete(self, system_prompt, history, **kwargs):
        self.calls.append(("complete", system_prompt, [dict(t) for t in history]))
        if self.fail_complete:
            raise CompletionError("chat provider down")
        return self.reply

    async def stream(self, system_prompt, history, max_tokens=llm.MAX_TOKENS, **kwargs):
        partial = max_tokens == llm.PARTIAL_MAX_TOKENS
        self.calls.append(("partial" if partial else "stream", system_prompt, [dict(t) for t in history]))
        if partial and self.fail_partial:
            raise CompletionError("partial call failed")
        if not partial and self.fail_final:
            raise CompletionError("final call failed")
        for i, delta in enumerate(split_words(self.partial_reply if partial else self.reply)):
            if not partial and self.fail_final_after is not None and i == self.fail_final_after:
                raise CompletionError("stream cut off")
            yield delta


class FakeTTS:
    response_format = "mp3"
    media_type = "audio/mpeg"
    default_voice = "Fritz-PlayAI"

    def __init__(self, fail_when=None):
        self.fail_when = fail_when
        self.calls = []

    def resolve_voice(self, voice):
        return voice or self.default_voice

    async def synthesize(self, text, voice=None, optimize=True):
        self.calls.append(text)
        if self.fail_when and self.fail_when in text:
            raise SynthesisError(f"could not synthesize {text!r}")
        return b"mp3:" + text.encode("utf-8")


def fake_decode(audio_bytes, fmt=None):
    return DecodedAudio(pcm16=b"\x00" * (100 * 1024))


def broken_decode(audio_bytes, fmt=None):
    raise ValueError("ffmpeg could not read the container")


@pytest.fixture
def stt():
    return FakeSTT()


@pytest.fixture
def chat():
    return FakeChat()


@pytest.fixture
def tts():
    return FakeTTS()


@pytest.fixture
def sessions():
    return SessionStore(single_session=False)


@pytest.fixture
def metrics():
    return MetricsStore()


@pytest.fixture
def pipeline(stt, chat, tts, metrics):
    return VoicePipeline(stt, chat, tts, metrics=metrics, decode=fake_decode)
