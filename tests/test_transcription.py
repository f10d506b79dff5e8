import pytest

from conftest import FakeSTT
from voicebot.services.audio import iter_chunks
from voicebot.services.transcription import IncrementalTranscriber, TranscriberState


async def collect(agen):
    return [item async for item in agen]


@pytest.mark.asyncio
async def test_size_flushes_plus_final_flush():
    stt = FakeSTT(text="hello")
    transcriber = IncrementalTranscriber(stt, flush_every=None)

    fragments = await collect(transcriber.transcribe(iter_chunks(b"\x01" * (200 * 1024), 8 * 1024)))

    # 200 KiB with 64 KiB windows and a carried overlap: three size flushes and one final flush.
    assert fragments == ["hello"] * 4
    assert len(stt.calls) == 4
    assert transcriber.state == TranscriberState.DONE
    assert all(size >= 64 * 1024 for size, _ in stt.calls[:3])


@pytest.mark.asyncio
async def test_chunk_count_trigger():
    stt = FakeSTT(text="hi")
    transcriber = IncrementalTranscriber(stt, flush_bytes=10**9, flush_every=10)

    fragments = await collect(transcriber.transcribe(iter_chunks(b"\x01" * (25 * 100), 100)))

    # Flushes after chunks 10 and 20, then the remainder.
    assert len(fragments) == 3


@pytest.mark.asyncio
async def test_failed_window_is_skipped():
    stt = FakeSTT(text="words", fail_on={2})
    transcriber = IncrementalTranscriber(stt, flush_every=None)

    fragments = await collect(transcriber.transcribe(iter_chunks(b"\x01" * (200 * 1024), 8 * 1024)))

    assert fragments == ["words"] * 3
    assert [w.ok for w in transcriber.windows] == [True, False, True, True]


@pytest.mark.asyncio
async def test_empty_input_yields_nothing():
    stt = FakeSTT()
    transcriber = IncrementalTranscriber(stt)
    assert await collect(transcriber.transcribe(iter_chunks(b""))) == []
    assert stt.calls == []


@pytest.mark.asyncio
async def test_window_encoder_wraps_payload():
    stt = FakeSTT()
    transcriber = IncrementalTranscriber(stt, window_encoder=lambda pcm: b"RIFF" + pcm, filename="w.wav")
    await collect(transcriber.transcribe(iter_chunks(b"\x00" * 100, 50)))
    assert stt.calls == [(104, "w.wav")]


def test_overlap_size_is_capped_and_frame_aligned():
    transcriber = IncrementalTranscriber(FakeSTT(), frame_width=2)
    assert transcriber.overlap_size(65536) == 13106
    assert transcriber.overlap_size(200 * 1024) == 16 * 1024
    assert transcriber.overlap_size(0) == 0
