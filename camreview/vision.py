"""OpenRouter-compatible multimodal client for animal detection and captions."""
from __future__ import annotations

import asyncio
import base64
import io
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from PIL import Image, UnidentifiedImageError

from .errors import InvalidRequest, InvalidResponse, MissingCredentials, ProviderError
from .logs import log

logger = logging.getLogger(__name__)

CLASSIFIER_SYSTEM = (
    'You are a vision classifier. Reply with JSON only: {"critter": true|false, "confidence": 0-1}.'
)
CLASSIFIER_PROMPT = "Detect whether a visible animal is present. Return JSON only with critter and confidence."
CAPTION_SYSTEM = "You write short, whimsical captions. Output plain text only (no quotes, no hashtags)."
CAPTION_PROMPT = (
    "Write 2-3 sentences about what's happening in the image. Focus on animals and action; "
    "avoid describing the environment unless it's obvious. You can mention time/season if it "
    "feels right. No camera references."
)
PRESENCE_KEYS = ("critter", "animalPresent", "animal_present")


@dataclass(frozen=True)
class ParseResult:
    """Tagged parse outcome: ``value`` when ok, ``reason`` otherwise."""

    ok: bool
    value: Any = None
    reason: Optional[str] = None

    @classmethod
    def success(cls, value: Any) -> "ParseResult":
        return cls(True, value, None)

    @classmethod
    def failure(cls, reason: str) -> "ParseResult":
        return cls(False, None, reason)


@dataclass(frozen=True)
class Classification:
    animal_present: bool
    confidence: Optional[float]


def first_balanced_object(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` substring, honouring JSON string quoting."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_str = False
        escape = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_str:
                if escape:
                    escape = False
                elif ch == "\\":
                    escape = True
                elif ch == '"':
                    in_str = False
                continue
            if ch == '"':
                in_str = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        start = text.find("{", start + 1)
    return None


def parse_json_payload(text: Optional[str]) -> ParseResult:
    """Strict decode of the trimmed text, then a fallback on the first balanced object."""
    if not text or not text.strip():
        return ParseResult.failure("empty")
    trimmed = text.strip()
    try:
        return ParseResult.success(json.loads(trimmed))
    except json.JSONDecodeError:
        pass
    candidate = first_balanced_object(trimmed)
    if candidate is None:
        return ParseResult.failure("no_json_object")
    try:
        return ParseResult.success(json.loads(candidate))
    except json.JSONDecodeError:
        return ParseResult.failure("malformed_json")


def coerce_presence(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value > 0
    if isinstance(value, str):
        lower = value.strip().lower()
        if lower in ("true", "yes"):
            return True
        if lower in ("false", "no"):
            return False
    return None


def coerce_confidence(value: Any) -> Optional[float]:
    """0-100 percentages become 0-1; anything else is clamped into [0, 1]."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    val = float(value)
    if math.isnan(val):
        return None
    if 1 < val <= 100:
        val = val / 100.0
    return max(0.0, min(1.0, val))


def parse_classification(text: Optional[str]) -> ParseResult:
    parsed = parse_json_payload(text)
    if not parsed.ok:
        return parsed
    if not isinstance(parsed.value, dict):
        return ParseResult.failure("not_an_object")
    present = None
    for key in PRESENCE_KEYS:
        if key in parsed.value:
            present = coerce_presence(parsed.value[key])
            break
    if present is None:
        return ParseResult.failure("missing_presence")
    return ParseResult.success(Classification(present, coerce_confidence(parsed.value.get("confidence"))))


def encode_image(data: bytes, mime: str, max_edge: int) -> str:
    """Data URL for the image, downscaled with Pillow when larger than ``max_edge``."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            if max(img.size) > max_edge:
                img.thumbnail((max_edge, max_edge))
                buf = io.BytesIO()
                img.convert("RGB").save(buf, format="JPEG", quality=85)
                data, mime = buf.getvalue(), "image/jpeg"
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
        raise InvalidRequest("file is not a readable image", code="not_image") from e
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


class VisionClassifierClient:
    """Single-turn chat completions over HTTPS with the image inlined as base64."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        *,
        endpoint: str,
        referrer: str = "http://localhost:3000",
        timeout: float = 60.0,
        max_image_edge: int = 1568,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.endpoint = endpoint
        self.referrer = referrer
        self.timeout = timeout
        self.max_image_edge = max_image_edge
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def require_credentials(self) -> None:
        if not self.api_key:
            raise MissingCredentials("OPENROUTER_API_KEY is not set")

    async def classify(self, image: bytes, mime: str = "image/jpeg", *, context: Optional[str] = None) -> Classification:
        content = await self._chat(
            CLASSIFIER_SYSTEM, CLASSIFIER_PROMPT, image, mime, temperature=0
        )
        if context:
            log("vision", "response (%s): %s", context, content)
        result = parse_classification(content)
        if not result.ok:
            raise InvalidResponse(f"unrecognized classifier output: {result.reason}", data={"reason": result.reason})
        return result.value

    async def caption(self, image: bytes, mime: str = "image/jpeg") -> str:
        content = await self._chat(
            CAPTION_SYSTEM, CAPTION_PROMPT, image, mime, temperature=0.7, max_tokens=160
        )
        text = content.strip()
        if not text:
            raise InvalidResponse("empty caption")
        return text

    async def _chat(self, system: str, prompt: str, image: bytes, mime: str, **params: Any) -> str:
        self.require_credentials()
        url = await asyncio.to_thread(encode_image, image, mime, self.max_image_edge)
        payload = {
            "model": self.model,
            **params,
            "messages": [
                {"role": "system", "content": system},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": url}},
                    ],
                },
            ],
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "HTTP-Referer": self.referrer,
            "X-Title": "CamReview",
        }
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=self._transport) as client:
                resp = await client.post(self.endpoint, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.warning("vision request failed: %s", e)
            raise ProviderError(str(e), code="network_error") from e
        if not 200 <= resp.status_code < 300:
            raise ProviderError(f"provider returned {resp.status_code}", code=f"openrouter_{resp.status_code}")
        try:
            data = resp.json()
        except json.JSONDecodeError as e:
            raise ProviderError("provider response is not JSON", code="parse_error") from e
        try:
            return str(data["choices"][0]["message"]["content"] or "")
        except (KeyError, IndexError, TypeError):
            return ""


__all__ = [
    "Classification",
    "ParseResult",
    "VisionClassifierClient",
    "coerce_confidence",
    "first_balanced_object",
    "parse_classification",
    "parse_json_payload",
]
