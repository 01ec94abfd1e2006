"""Runtime configuration: a JSON config file overlaid with environment variables."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .errors import ConfigError

DEFAULT_PREVIEW_FPS = 2.0
DEFAULT_PREVIEW_MAX_FRAMES = 24
DEFAULT_OPENROUTER_ENDPOINT = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_OPENROUTER_MODEL = "openai/gpt-4o-mini"
DEFAULT_DATA_FILENAME = "trailcam_review.json"


class AppConfig(BaseModel):  # type: ignore
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    media_root: Path
    data_path: Optional[Path] = None
    preview_fps: float = DEFAULT_PREVIEW_FPS
    preview_max_frames: int = DEFAULT_PREVIEW_MAX_FRAMES
    ffmpeg_path: Optional[str] = None
    ffmpeg_timeout: float = Field(600.0, gt=0)
    openrouter_model: str = DEFAULT_OPENROUTER_MODEL
    openrouter_endpoint: str = DEFAULT_OPENROUTER_ENDPOINT
    openrouter_referrer: str = "http://localhost:3000"
    openrouter_api_key: Optional[str] = Field(None, exclude=True)
    vision_timeout: float = Field(60.0, gt=0)
    max_image_edge: int = Field(1568, gt=0)

    @field_validator("preview_fps", mode="before")
    @classmethod
    def _fps_or_default(cls, v: Any) -> float:
        try:
            val = float(v)
        except (TypeError, ValueError):
            return DEFAULT_PREVIEW_FPS
        return val if val > 0 else DEFAULT_PREVIEW_FPS

    @field_validator("preview_max_frames", mode="before")
    @classmethod
    def _frames_or_default(cls, v: Any) -> int:
        try:
            val = int(v)
        except (TypeError, ValueError):
            return DEFAULT_PREVIEW_MAX_FRAMES
        return val if val > 0 else DEFAULT_PREVIEW_MAX_FRAMES

    @property
    def ledger_path(self) -> Path:
        return self.data_path or (self.media_root.parent / DEFAULT_DATA_FILENAME)


def _config_file(path: Optional[Union[str, Path]]) -> Path:
    raw = path or os.environ.get("CAMREVIEW_CONFIG_PATH") or "config.json"
    return Path(raw).expanduser().resolve()


def load_config(path: Optional[Union[str, Path]] = None) -> AppConfig:
    """
    Load config.json (or CAMREVIEW_CONFIG_PATH) and apply environment overrides.

    Relative mediaRoot/dataPath values resolve against the config file's directory.
    """
    cfg_path = _config_file(path)
    try:
        raw = json.loads(cfg_path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigError(f"config file not found: {cfg_path}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"config file is not valid JSON: {cfg_path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError("config file must contain a JSON object")

    env_root = os.environ.get("MEDIA_ROOT")
    if env_root:
        raw["mediaRoot"] = env_root
    if not raw.get("mediaRoot"):
        raise ConfigError("config.json must include mediaRoot")

    base = cfg_path.parent
    raw["mediaRoot"] = str((base / Path(raw["mediaRoot"]).expanduser()).resolve())
    data_env = os.environ.get("CAMREVIEW_DATA_PATH")
    if data_env:
        raw["dataPath"] = data_env
    if raw.get("dataPath"):
        raw["dataPath"] = str((base / Path(raw["dataPath"]).expanduser()).resolve())
    else:
        raw["dataPath"] = str(base / DEFAULT_DATA_FILENAME)

    for env_name, key in (
        ("OPENROUTER_MODEL", "openrouterModel"),
        ("OPENROUTER_ENDPOINT", "openrouterEndpoint"),
        ("OPENROUTER_REFERRER", "openrouterReferrer"),
    ):
        val = os.environ.get(env_name)
        if val:
            raw[key] = val
    raw["openrouterApiKey"] = os.environ.get("OPENROUTER_API_KEY") or None

    try:
        return AppConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration: {e}") from e


__all__ = ["AppConfig", "load_config"]
