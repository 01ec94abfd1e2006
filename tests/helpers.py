import asyncio
import json
import os
from pathlib import Path
from typing import Optional

import httpx
from PIL import Image

from camreview.errors import ProcessingFailed
from camreview.ffmpeg import FfmpegAdapter


def write_image(root: Path, rel: str, *, size=(32, 24), color=(90, 120, 60), mtime: Optional[float] = None) -> Path:
    p = root / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    fmt = "PNG" if p.suffix.lower() == ".png" else "JPEG"
    Image.new("RGB", size, color).save(p, format=fmt)
    if mtime is not None:
        os.utime(p, (mtime, mtime))
    return p


def write_video(root: Path, rel: str, *, mtime: Optional[float] = None) -> Path:
    p = root / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"0" * 64)
    if mtime is not None:
        os.utime(p, (mtime, mtime))
    return p


class FakeFfmpeg(FfmpegAdapter):
    """Stands in for the ffmpeg binary: writes small real JPEG frames / a dummy mp4."""

    def __init__(self, *, available: bool = True, fail: bool = False, delay: float = 0.0, frames: int = 3):
        super().__init__(None)
        self._resolved = True
        self._command = "/opt/fake/ffmpeg" if available else None
        self.fail = fail
        self.delay = delay
        self.frames = frames
        self.calls: list[tuple[str, str]] = []

    async def extract_frames(self, src, dest_pattern, *, fps, max_frames):
        self.require()
        self.calls.append(("frames", Path(src).name))
        await asyncio.sleep(self.delay)
        if self.fail:
            raise ProcessingFailed("ffmpeg exited with 1: fake failure")
        dest_dir = Path(dest_pattern).parent
        for i in range(1, min(self.frames, max_frames) + 1):
            Image.new("RGB", (16, 12), (i * 40, 80, 80)).save(dest_dir / f"frame_{i:03d}.jpg", format="JPEG")

    async def transcode(self, src, dest):
        self.require()
        self.calls.append(("transcode", Path(src).name))
        await asyncio.sleep(self.delay)
        if self.fail:
            Path(dest).write_bytes(b"partial")
            raise ProcessingFailed("ffmpeg exited with 1: fake failure")
        Path(dest).write_bytes(b"transcoded-mp4")


def chat_reply(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class VisionBackend:
    """Scripted chat-completions endpoint served through httpx.MockTransport."""

    def __init__(self):
        self.replies: list[httpx.Response] = []
        self.default = '{"critter": true, "confidence": 0.9}'
        self.requests: list[dict] = []
        self.transport = httpx.MockTransport(self._handle)

    def queue(self, content: str) -> None:
        self.replies.append(httpx.Response(200, json=chat_reply(content)))

    def queue_status(self, status: int, body: str = "upstream error") -> None:
        self.replies.append(httpx.Response(status, text=body))

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(
            {
                "url": str(request.url),
                "headers": dict(request.headers),
                "json": json.loads(request.content.decode("utf-8")),
            }
        )
        if self.replies:
            return self.replies.pop(0)
        return httpx.Response(200, json=chat_reply(self.default))
