"""ffmpeg invocation for preview frames and mobile-compatible transcodes."""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
from pathlib import Path
from typing import Optional

from .errors import ProcessingFailed, ToolUnavailable
from .logs import log

logger = logging.getLogger(__name__)

PREVIEW_WIDTH = 640
TRANSCODE_WIDTH = 1280


def _common_locations() -> list[str]:
    out = ["/usr/local/bin/ffmpeg", "/opt/homebrew/bin/ffmpeg", "/usr/bin/ffmpeg"]
    program_files = os.environ.get("ProgramFiles") or "C:\\Program Files"
    out.append(os.path.join(program_files, "ffmpeg", "bin", "ffmpeg.exe"))
    program_files_x86 = os.environ.get("ProgramFiles(x86)")
    if program_files_x86:
        out.append(os.path.join(program_files_x86, "ffmpeg", "bin", "ffmpeg.exe"))
    out.append("C:\\ffmpeg\\bin\\ffmpeg.exe")
    return out


def preview_args(src: Path, dest_pattern: Path, *, fps: float, max_frames: int) -> list[str]:
    return [
        "-y", "-hide_banner", "-loglevel", "error",
        "-i", str(src),
        "-vf", f"fps={fps:g},scale={PREVIEW_WIDTH}:-1:flags=lanczos",
        "-frames:v", str(int(max_frames)),
        str(dest_pattern),
    ]


def transcode_args(src: Path, dest: Path) -> list[str]:
    return [
        "-y", "-hide_banner", "-loglevel", "error",
        "-i", str(src),
        "-vf", f"scale={TRANSCODE_WIDTH}:-2:flags=lanczos",
        "-c:v", "libx264",
        "-profile:v", "baseline",
        "-level", "3.0",
        "-pix_fmt", "yuv420p",
        "-preset", "veryfast",
        "-crf", "28",
        "-an",
        "-movflags", "+faststart",
        # Output lands on a temporary name, so the muxer cannot be inferred.
        "-f", "mp4",
        str(dest),
    ]


class FfmpegAdapter:
    """
    Locates ffmpeg once per process and runs it with a fixed, narrow argument set.

    Search order: explicit config path, FFMPEG_PATH / FFMPEG env, common install
    locations, then PATH. The lookup result (including "not found") is cached.
    """

    def __init__(self, configured_path: Optional[str] = None, *, timeout: float = 600.0):
        self.configured_path = configured_path
        self.timeout = timeout
        self._resolved = False
        self._command: Optional[str] = None

    def _candidates(self) -> list[str]:
        out: list[str] = []
        if self.configured_path:
            out.append(self.configured_path)
        for name in ("FFMPEG_PATH", "FFMPEG"):
            v = os.environ.get(name)
            if v:
                out.append(v)
        out.extend(_common_locations())
        return out

    def resolve(self) -> Optional[str]:
        if self._resolved:
            return self._command
        self._resolved = True
        for cand in self._candidates():
            if os.path.isfile(cand):
                self._command = cand
                break
        else:
            self._command = shutil.which("ffmpeg")
        if self._command:
            log("ffmpeg", "using %s", self._command)
        else:
            logger.warning("ffmpeg not found. Previews/transcodes are disabled.")
        return self._command

    def available(self) -> bool:
        return self.resolve() is not None

    def require(self) -> str:
        cmd = self.resolve()
        if not cmd:
            raise ToolUnavailable("ffmpeg is required for previews and transcodes; install ffmpeg or set ffmpegPath")
        return cmd

    async def run(self, args: list[str]) -> None:
        """Run ffmpeg; nonzero exit, spawn failure or timeout raise ProcessingFailed."""
        cmd = self.require()
        log("ffmpeg", "run %s", " ".join(args[:6]))
        try:
            proc = await asyncio.create_subprocess_exec(
                cmd, *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProcessingFailed(f"failed to start ffmpeg: {e}") from e
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise ProcessingFailed(f"ffmpeg timed out after {self.timeout:g}s") from e
        if proc.returncode != 0:
            tail = (stderr or b"").decode("utf-8", "replace").strip()[-500:]
            raise ProcessingFailed(f"ffmpeg exited with {proc.returncode}: {tail}")

    async def extract_frames(self, src: Path, dest_pattern: Path, *, fps: float, max_frames: int) -> None:
        await self.run(preview_args(src, dest_pattern, fps=fps, max_frames=max_frames))

    async def transcode(self, src: Path, dest: Path) -> None:
        await self.run(transcode_args(src, dest))


__all__ = ["FfmpegAdapter", "preview_args", "transcode_args"]
