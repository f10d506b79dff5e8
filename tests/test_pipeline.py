import pytest

from conftest import FakeChat, FakeSTT, FakeTTS, broken_decode, fake_decode
from voicebot import records
from voicebot.errors import NoSpeechError
from voicebot.services.history import SessionStore
from voicebot.services.metrics import MetricsStore
from voicebot.services.pipeline import PARALLEL, TRADITIONAL, VoicePipeline


async def drain(stream):
    return list(records.parse_lines([line async for line in stream]))


def make_pipeline(chat, stt=None, tts=None, decode=fake_decode):
    return VoicePipeline(stt or FakeSTT(), chat, tts or FakeTTS(), metrics=MetricsStore(), decode=decode)


@pytest.mark.asyncio
async def test_traditional_result_shape(pipeline, sessions):
    session = sessions.get("s1")
    result = await pipeline.run_traditional(b"audio", session, return_audio=True)

    assert result["transcript"] == "hello there how are you"
    assert result["response"] == "Sure thing. Happy to help!"
    assert result["processingInfo"]["mode"] == TRADITIONAL
    assert result["audioFormat"] == "mp3"
    assert result["audioResponse"]
    assert result["sessionId"] == "s1"
    assert [t["role"] for t in session.history.turns()] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_traditional_empty_transcript(chat, sessions):
    pipeline = make_pipeline(chat, stt=FakeSTT(text=""))
    with pytest.raises(NoSpeechError) as exc_info:
        await pipeline.run_traditional(b"audio", sessions.get("s1"))
    assert exc_info.value.public_message == "Sorry, I couldn't understand that."


@pytest.mark.asyncio
async def test_parallel_stream_ends_with_done(pipeline, sessions):
    session = sessions.get("s1")
    start = await pipeline.start_parallel(b"audio", session)
    assert not start.fallback

    out = await drain(start.stream)
    tags = [r.tag for r in out]
    assert tags[-1] == records.DONE
    assert records.TRANSCRIPT in tags
    assert records.AUDIO in tags
    assert tags.index(records.TRANSCRIPT) < tags.index(records.CHAT_COMPLETE)
    assert out[-1].payload["processingMode"] == PARALLEL
    assert out[-1].payload["sessionId"] == "s1"
    assert [t["role"] for t in session.history.turns()] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_failure_before_first_record_falls_back():
    chat = FakeChat(fail_partial=True, fail_final=True)
    pipeline = make_pipeline(chat)
    session = SessionStore(single_session=False).get("s1")
    session.history.append("user", "earlier")
    session.history.append("assistant", "earlier reply")

    start = await pipeline.start_parallel(b"audio", session)

    assert start.fallback
    assert start.stream is None
    assert set(start.result) >= {"transcript", "response", "timestamp", "processingInfo", "audioResponse"}
    assert start.result["processingInfo"]["mode"] == TRADITIONAL
    # The aborted attempt's user turn is rolled back; only the fallback's turns are added.
    assert [t["content"] for t in session.history.turns()] == [
        "earlier",
        "earlier reply",
        "hello there how are you",
        "Sure thing. Happy to help!",
    ]
    assert pipeline.metrics.summary()["fallbacks"] == 1


@pytest.mark.asyncio
async def test_decode_failure_falls_back(chat, sessions):
    pipeline = make_pipeline(chat, decode=broken_decode)
    start = await pipeline.start_parallel(b"not really audio", sessions.get("s1"))
    assert start.fallback
    assert start.result["response"] == "Sure thing. Happy to help!"


@pytest.mark.asyncio
async def test_failure_after_first_record_ends_with_error():
    chat = FakeChat(fail_final_after=1)
    tts = FakeTTS()
    pipeline = make_pipeline(chat, tts=tts)

    start = await pipeline.start_parallel(b"audio", SessionStore(single_session=False).get("s1"))
    assert not start.fallback

    out = await drain(start.stream)
    tags = [r.tag for r in out]
    assert tags[0] == records.CHAT_PARTIAL
    assert tags[-1] == records.ERROR
    assert records.DONE not in tags
    assert out[-1].payload["error"] == "An error occurred while generating a response."
    assert chat.calls[-1][0] == "stream"
    assert not any(c[0] == "complete" for c in chat.calls)
    assert pipeline.metrics.summary()["errors"] == 1


@pytest.mark.asyncio
async def test_fallback_failure_propagates(sessions):
    chat = FakeChat(fail_partial=True, fail_final=True)
    pipeline = make_pipeline(chat, stt=FakeSTT(text=""))
    with pytest.raises(NoSpeechError):
        await pipeline.start_parallel(b"audio", sessions.get("s1"))


@pytest.mark.asyncio
async def test_closing_stream_early_finishes_request_metrics(pipeline, sessions):
    start = await pipeline.start_parallel(b"audio", sessions.get("s1"))
    await start.stream.__anext__()

    await start.stream.aclose()

    requests = pipeline.metrics.snapshot()
    assert len(requests) == 1
    assert requests[0].total_ms is not None
    assert pipeline.metrics.summary()["last"]["error"] == "client disconnected"
