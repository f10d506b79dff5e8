import base64
import json

import pytest
from fastapi.testclient import TestClient

from conftest import FakeChat, FakeSTT, FakeTTS, fake_decode
from voicebot import records
from voicebot.main import MAX_UPLOAD_BYTES, Services, app, get_services
from voicebot.services import llm
from voicebot.services.history import SessionStore
from voicebot.services.metrics import MetricsStore
from voicebot.services.pipeline import VoicePipeline


def build_services(chat=None, stt=None, tts=None):
    stt, chat, tts = stt or FakeSTT(), chat or FakeChat(), tts or FakeTTS()
    metrics = MetricsStore()
    return Services(
        stt=stt,
        chat=chat,
        tts=tts,
        sessions=SessionStore(single_session=False),
        metrics=metrics,
        pipeline=VoicePipeline(stt, chat, tts, metrics=metrics, decode=fake_decode),
    )


@pytest.fixture
def services():
    return build_services()


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


def wav_upload(data=b"RIFF....WAVEfmt "):
    return {"audio": ("hello.wav", data, "audio/wav")}


def test_health_and_root(client):
    assert client.get("/health").json()["status"] == "healthy"
    root = client.get("/").json()
    assert root["status"] == "online"
    assert root["endpoints"]["voice"] == "/voice"


def test_unknown_route_lists_endpoints(client):
    response = client.get("/nope")
    assert response.status_code == 404
    body = response.json()
    assert body["error"] == "Not Found"
    assert "/voice" in body["availableEndpoints"]


def test_voice_rejects_wrong_mime_type(client, services):
    response = client.post("/voice", files={"audio": ("notes.txt", b"hello", "text/plain")})
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid audio format"
    assert services.stt.calls == []


def test_voice_requires_audio(client):
    response = client.post("/voice", data={"mode": "parallel"})
    assert response.status_code == 400
    assert response.json()["error"] == "No audio file provided"


def test_voice_rejects_oversized_upload(client, services):
    response = client.post("/voice/traditional", files=wav_upload(b"\x00" * (MAX_UPLOAD_BYTES + 1)))
    assert response.status_code == 413
    assert services.stt.calls == []


def test_voice_rejects_unknown_mode(client):
    response = client.post("/voice", files=wav_upload(), data={"mode": "turbo"})
    assert response.status_code == 400


def test_traditional_voice_json(client):
    response = client.post("/voice/traditional", files=wav_upload(), data={"sessionId": "abc"})
    assert response.status_code == 200
    body = response.json()
    assert body["transcript"] == "hello there how are you"
    assert body["response"] == "Sure thing. Happy to help!"
    assert body["processingInfo"]["mode"] == "traditional"
    assert body["sessionId"] == "abc"
    assert "audioResponse" not in body
    assert response.headers["X-Session-ID"] == "abc"


def test_traditional_voice_with_audio(client):
    response = client.post("/voice/traditional", files=wav_upload(), data={"returnAudio": "true"})
    body = response.json()
    assert base64.b64decode(body["audioResponse"]) == b"mp3:Sure thing. Happy to help!"
    assert body["audioFormat"] == "mp3"


def test_voice_mode_traditional_routes_to_traditional(client):
    response = client.post("/voice", files=wav_upload(), data={"mode": "traditional", "returnAudio": "false"})
    assert response.status_code == 200
    assert response.json()["processingInfo"]["mode"] == "traditional"


def test_parallel_voice_streams_records(client):
    response = client.post("/voice", files=wav_upload(), data={"sessionId": "s1"})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/octet-stream")
    assert response.headers["X-Session-ID"] == "s1"

    out = list(records.parse_lines(response.content.splitlines()))
    tags = [r.tag for r in out]
    assert tags[-1] == records.DONE
    assert records.TRANSCRIPT in tags and records.AUDIO in tags


def test_parallel_voice_falls_back_to_json():
    services = build_services(chat=FakeChat(fail_partial=True, fail_final=True))
    app.dependency_overrides[get_services] = lambda: services
    try:
        response = TestClient(app).post("/voice", files=wav_upload())
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    assert response.headers["X-Pipeline-Fallback"] == "true"
    body = response.json()
    assert body["processingInfo"]["mode"] == "traditional"
    assert body["audioResponse"]


def test_no_speech_is_reported(client, services):
    services.stt.text = ""
    response = client.post("/voice/traditional", files=wav_upload())
    assert response.status_code == 422
    assert response.json()["error"] == "Sorry, I couldn't understand that."


def test_tts_validation(client):
    assert client.post("/tts", json={}).status_code == 400
    assert client.post("/tts", json={"text": "   "}).status_code == 400
    assert client.post("/tts", json={"text": 42}).status_code == 400
    assert client.post("/tts", content=b"not json", headers={"Content-Type": "application/json"}).status_code == 400


def test_tts_returns_audio(client):
    response = client.post("/tts", json={"text": "Hello there", "voice": "Arista-PlayAI"})
    assert response.status_code == 200
    assert response.headers["content-type"] == "audio/mpeg"
    assert "speech.mp3" in response.headers["content-disposition"]
    assert response.content == b"mp3:Hello there"


def test_chat_actions(client, services):
    first = client.post("/chat", json={"action": "getFirstMessage", "sessionId": "s1"}).json()
    assert first["response"] == llm.FIRST_MESSAGE
    assert first["isFirstMessage"] is True

    reply = client.post("/chat", json={"input": "What do you do?", "sessionId": "s1"}).json()
    assert reply["response"] == "Sure thing. Happy to help!"
    assert len(services.sessions.get("s1").history) == 2

    cleared = client.post("/chat", json={"action": "clearConversation", "sessionId": "s1"})
    assert cleared.status_code == 200
    assert len(services.sessions.get("s1").history) == 0


def test_chat_requires_input(client):
    response = client.post("/chat", json={"input": ""})
    assert response.status_code == 400
    assert response.json()["error"] == "Input is required and must be a string."


def test_chat_sessions_are_isolated(client, services):
    client.post("/chat", json={"input": "first", "sessionId": "a"})
    client.post("/chat", json={"input": "second", "sessionId": "b"})
    _, _, history_b = services.chat.calls[-1]
    assert history_b == [{"role": "user", "content": "second"}]


def test_chat_failure_hides_details_shape(client, services):
    services.chat.fail_complete = True
    response = client.post("/chat", json={"input": "hello"})
    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "An error occurred while generating a response."
    assert "details" in body  # development environment


def test_chat_stream_sse(client):
    response = client.post("/chat/stream", json={"input": "hello", "sessionId": "s1"})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")

    events = [json.loads(line[len("data: "):]) for line in response.text.splitlines() if line.startswith("data: ")]
    assert "".join(e.get("chunk", "") for e in events) == "Sure thing. Happy to help!"
    assert events[-1]["done"] is True


def test_chat_stream_failure_event():
    services = build_services(chat=FakeChat(fail_final=True))
    app.dependency_overrides[get_services] = lambda: services
    try:
        response = TestClient(app).post("/chat/stream", json={"input": "hello"})
    finally:
        app.dependency_overrides.clear()
    events = [json.loads(line[len("data: "):]) for line in response.text.splitlines() if line.startswith("data: ")]
    assert events[-1]["error"] == "Streaming failed"


def test_voice_options_and_status(client):
    options = client.get("/voice/options").json()
    assert options["defaultMode"] == "parallel"
    assert "audio/webm" in options["supportedFormats"]

    status = client.get("/status").json()
    assert status["status"] == "online"
    assert "metrics" in status
