"""
Tagged records of the parallel voice response stream.

Each record is one line: ``TAG:<json>`` or, for audio, ``AUDIO:<base64>``.
"""
from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, Optional, Union

TRANSCRIPT = "TRANSCRIPT"
CHAT_PARTIAL = "CHAT_PARTIAL"
CHAT_COMPLETE = "CHAT_COMPLETE"
AUDIO = "AUDIO"
DONE = "DONE"
ERROR = "ERROR"

TAGS = (TRANSCRIPT, CHAT_PARTIAL, CHAT_COMPLETE, AUDIO, DONE, ERROR)


def timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class StreamRecord:
    tag: str
    payload: Union[Dict[str, Any], bytes]

    def encode(self) -> bytes:
        if self.tag == AUDIO:
            body = base64.b64encode(self.payload).decode("ascii")
        else:
            body = json.dumps(self.payload, ensure_ascii=False)
        return f"{self.tag}:{body}\n".encode("utf-8")


def transcript(text: str) -> StreamRecord:
    return StreamRecord(TRANSCRIPT, {"transcript": text, "timestamp": timestamp()})


def chat_partial(content: str, input_used: str) -> StreamRecord:
    return StreamRecord(CHAT_PARTIAL, {"content": content, "inputUsed": input_used, "timestamp": timestamp()})


def chat_complete(content: str) -> StreamRecord:
    return StreamRecord(CHAT_COMPLETE, {"content": content, "timestamp": timestamp()})


def audio(data: bytes) -> StreamRecord:
    return StreamRecord(AUDIO, data)


def done(**info: Any) -> StreamRecord:
    return StreamRecord(DONE, {"timestamp": timestamp(), **info})


def error(message: str, details: Optional[str] = None) -> StreamRecord:
    payload: Dict[str, Any] = {"error": message, "timestamp": timestamp()}
    if details:
        payload["details"] = details
    return StreamRecord(ERROR, payload)


def parse_line(line: Union[str, bytes]) -> StreamRecord:
    """Parse one encoded line back into a record. Raises ValueError on unknown tags."""
    if isinstance(line, bytes):
        line = line.decode("utf-8")
    tag, sep, body = line.rstrip("\r\n").partition(":")
    if not sep or tag not in TAGS:
        raise ValueError(f"Not a stream record: {line[:40]!r}")
    if tag == AUDIO:
        return StreamRecord(tag, base64.b64decode(body))
    return StreamRecord(tag, json.loads(body))


def parse_lines(lines: Iterable[Union[str, bytes]]) -> Iterator[StreamRecord]:
    for line in lines:
        if line and line.strip():
            yield parse_line(line)
