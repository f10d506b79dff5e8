import argparse
import asyncio
import mimetypes
import os
from pathlib import Path

import httpx

from . import records

SERVER_URL = os.getenv("VOICEBOT_URL", "http://localhost:3000")


async def main(audio_path: str, mode: str, out_dir: str, session_id: str = None):
    path = Path(audio_path)
    content_type = mimetypes.guess_type(path.name)[0] or "audio/wav"
    data = {"mode": mode}
    if session_id:
        data["sessionId"] = session_id

    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    clips = 0

    async with httpx.AsyncClient(base_url=SERVER_URL, timeout=60.0) as client:
        files = {"audio": (path.name, path.read_bytes(), content_type)}
        async with client.stream("POST", "/voice", data=data, files=files) as response:
            print(f"Connected to server (session {response.headers.get('X-Session-ID')}).")
            if response.status_code != 200 or "application/json" in response.headers.get("content-type", ""):
                await response.aread()
                print(response.json())
                return

            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                record = records.parse_line(line)
                if record.tag == records.TRANSCRIPT:
                    print(f"You: {record.payload['transcript']}")
                elif record.tag == records.CHAT_PARTIAL:
                    print(f"(partial) {record.payload['content']}", end="", flush=True)
                elif record.tag == records.CHAT_COMPLETE:
                    print(record.payload["content"], end="", flush=True)
                elif record.tag == records.AUDIO:
                    clips += 1
                    (out / f"reply_{clips:03d}.mp3").write_bytes(record.payload)
                elif record.tag == records.DONE:
                    print(f"\nDone: {record.payload}")
                elif record.tag == records.ERROR:
                    print(f"\nServer error: {record.payload.get('error')}")

    print(f"Saved {clips} audio clip(s) to {out}")


def cli():
    parser = argparse.ArgumentParser(description="Send a recording to the voice bot and save the spoken reply.")
    parser.add_argument("audio", help="path to a wav/mp3/webm/ogg recording")
    parser.add_argument("--mode", default="parallel", choices=["parallel", "traditional"])
    parser.add_argument("--out", default="replies")
    parser.add_argument("--session")
    args = parser.parse_args()
    try:
        asyncio.run(main(args.audio, args.mode, args.out, args.session))
    except KeyboardInterrupt:
        print("Client stopped by user.")


if __name__ == "__main__":
    cli()
