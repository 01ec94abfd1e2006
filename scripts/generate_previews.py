#!/usr/bin/env python3
"""
CLI to generate preview frames and transcodes for every video under the media
root without running the server.

Usage:
  python scripts/generate_previews.py \
    [--config config.json] \
    [--what all|frames|transcode] \
    [--concurrency 2]

Notes:
- Reads the same config.json as the server (CAMREVIEW_CONFIG_PATH is honored).
- Existing artifacts are left alone; only missing ones are generated.
- Exit status: 0 all good, 1 any video failed, 2 ffmpeg or config unavailable.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from camreview.artifacts import ArtifactStore  # noqa: E402
from camreview.config import load_config  # noqa: E402
from camreview.errors import ConfigError, ReviewError  # noqa: E402
from camreview.ffmpeg import FfmpegAdapter  # noqa: E402
from camreview.logs import configure_logging  # noqa: E402
from camreview.scanner import scan_media  # noqa: E402


async def process_video(store: ArtifactStore, rel: str, what: str) -> Optional[str]:
    try:
        if what in ("all", "frames"):
            await store.ensure_preview_frames(rel)
        if what in ("all", "transcode"):
            await store.ensure_transcode(rel)
    except ReviewError as e:
        return f"{rel}: {e.code}: {e}"
    return None


async def run(store: ArtifactStore, videos: list[str], what: str, concurrency: int) -> list[str]:
    sem = asyncio.Semaphore(max(1, concurrency))

    async def one(rel: str) -> Optional[str]:
        async with sem:
            return await process_video(store, rel, what)

    results = await asyncio.gather(*(one(rel) for rel in videos))
    return [r for r in results if r]


def main(argv: list[str], *, ffmpeg: Optional[FfmpegAdapter] = None) -> int:
    ap = argparse.ArgumentParser(description="Generate preview frames and transcodes without running server")
    ap.add_argument("--config", default=os.environ.get("CAMREVIEW_CONFIG_PATH"), help="Path to config.json")
    ap.add_argument("--what", default="all", choices=["all", "frames", "transcode"], help="Which artifact(s) to generate")
    ap.add_argument("--concurrency", type=int, default=2, help="Max videos processed at once")
    args = ap.parse_args(argv)

    configure_logging()
    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print(f"[cli] {e}", file=sys.stderr)
        return 2

    ffmpeg = ffmpeg or FfmpegAdapter(cfg.ffmpeg_path, timeout=cfg.ffmpeg_timeout)
    if not ffmpeg.available():
        print("[cli] ffmpeg not found; install ffmpeg or set ffmpegPath in config.json", file=sys.stderr)
        return 2

    store = ArtifactStore(cfg.media_root, ffmpeg, fps=cfg.preview_fps, max_frames=cfg.preview_max_frames)
    videos = [item.path for item in scan_media(cfg.media_root) if item.type == "video"]
    if not videos:
        print("[cli] No videos found.")
        return 0

    print(f"[cli] Processing {len(videos)} video(s) with concurrency={args.concurrency}")
    errors = asyncio.run(run(store, videos, args.what, args.concurrency))
    for err in errors:
        print(f"[cli] ERROR: {err}", file=sys.stderr)
    if errors:
        print(f"[cli] Completed with {len(errors)} error(s)")
        return 1
    print("[cli] Completed successfully")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
