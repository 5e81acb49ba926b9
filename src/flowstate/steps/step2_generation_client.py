#!/usr/bin/env python3
"""
step2_generation_client.py - Step 2: Generation Client
======================================================

Thin async transport over the generative-media backend. No retries and no
validation live here; every backend outcome is mapped onto the flowstate
error taxonomy and handed to the caller.

- generate_image: reference images + instruction → one image
- create_video_job / poll_video_job: long-running Veo job lifecycle
- fetch_media: download a finished video by URI

Dependencies: google-genai requests
"""

from __future__ import annotations

import os
import abc
import asyncio
import logging
from typing import Iterable, List, Optional, Sequence

import requests
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from ..config import ModelConfig
from ..errors import (
    AuthRequired,
    GenerationBlocked,
    GenerationError,
    GenerationIncomplete,
    NoResultProduced,
    TransportError,
)
from ..models import ASPECT_RATIOS, MediaPayload, VideoPollStatus

logger = logging.getLogger("flowstate.client")

# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

_POLICY_KEYWORDS = ("violat", "usage guidelines", "safety", "content polic", "responsible ai", "prohibited")
_AUTH_KEYWORDS = ("api key not valid", "api_key_invalid", "permission_denied", "unauthenticated", "api key expired")

_BLOCKED_FINISH_REASONS = {
    "SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII", "RECITATION",
    "IMAGE_SAFETY", "IMAGE_PROHIBITED_CONTENT", "IMAGE_RECITATION",
}
_INCOMPLETE_FINISH_REASONS = {"MAX_TOKENS", "MALFORMED_FUNCTION_CALL", "OTHER", "IMAGE_OTHER"}

_TRANSPORT_MODULES = ("httpx", "httpcore", "aiohttp", "requests", "urllib3")


def _mentions(text: str, keywords: Iterable[str]) -> bool:
    text = text.lower()
    return any(kw in text for kw in keywords)


def _classify_api_error(exc: BaseException) -> GenerationError:
    """Map an SDK or network exception onto the flowstate taxonomy."""
    if isinstance(exc, GenerationError):
        return exc
    message = str(exc)
    if isinstance(exc, genai_errors.ClientError):
        code = getattr(exc, "code", 0) or 0
        if code in (401, 403) or _mentions(message, _AUTH_KEYWORDS):
            return AuthRequired(message, reason=str(code))
        if code == 429:
            return TransportError(message, reason="rate_limited")
        if _mentions(message, _POLICY_KEYWORDS):
            return GenerationBlocked(message, reason="policy")
        return GenerationError(message, reason=str(code))
    if isinstance(exc, genai_errors.APIError):
        return TransportError(message, reason=str(getattr(exc, "code", "server")))
    if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError, OSError)):
        return TransportError(message or type(exc).__name__, reason="network")
    if type(exc).__module__.split(".")[0] in _TRANSPORT_MODULES:
        return TransportError(message or type(exc).__name__, reason="network")
    raise exc


def _enum_name(value) -> str:
    if value is None:
        return ""
    return str(getattr(value, "name", value)).split(".")[-1].upper()


def _extract_image(response) -> MediaPayload:
    """Pull the first inline image out of a generate_content response."""
    feedback = getattr(response, "prompt_feedback", None)
    if feedback is not None and getattr(feedback, "block_reason", None):
        raise GenerationBlocked(
            f"Prompt blocked: {_enum_name(feedback.block_reason)}",
            reason=_enum_name(feedback.block_reason),
        )

    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        raise NoResultProduced("Backend returned no candidates")

    candidate = candidates[0]
    finish = _enum_name(getattr(candidate, "finish_reason", None))
    if finish in _BLOCKED_FINISH_REASONS:
        raise GenerationBlocked(f"Generation stopped: {finish}", reason=finish)

    content = getattr(candidate, "content", None)
    parts = getattr(content, "parts", None) or []
    for part in parts:
        inline = getattr(part, "inline_data", None)
        if inline is not None and inline.data:
            mime_type = inline.mime_type or "image/png"
            if mime_type.lower().startswith("image"):
                return MediaPayload(inline.data, mime_type)
        elif getattr(part, "text", None):
            logger.debug(f"Backend text response: {part.text[:100]}")

    if finish in _INCOMPLETE_FINISH_REASONS:
        raise GenerationIncomplete(f"Generation incomplete: {finish}", reason=finish)
    raise NoResultProduced("Response contained no image")


def _parse_operation(operation) -> VideoPollStatus:
    if not getattr(operation, "done", False):
        return VideoPollStatus(done=False)

    error = getattr(operation, "error", None)
    if error:
        text = str(error.get("message", error) if isinstance(error, dict) else error)
        return VideoPollStatus(done=True, error=text, blocked=_mentions(text, _POLICY_KEYWORDS))

    response = getattr(operation, "response", None) or getattr(operation, "result", None)
    if response is None:
        return VideoPollStatus(done=True, error="Operation finished without a response")

    filtered = getattr(response, "rai_media_filtered_count", None)
    if filtered:
        reasons = getattr(response, "rai_media_filtered_reasons", None) or []
        return VideoPollStatus(done=True, error="; ".join(reasons) or "Filtered by responsible AI", blocked=True)

    videos = getattr(response, "generated_videos", None) or []
    if not videos or getattr(videos[0], "video", None) is None:
        return VideoPollStatus(done=True)
    video = videos[0].video
    return VideoPollStatus(
        done=True,
        media_uri=getattr(video, "uri", None),
        media_bytes=getattr(video, "video_bytes", None),
    )


# ---------------------------------------------------------------------------
# Client interface
# ---------------------------------------------------------------------------

class GenerationClient(abc.ABC):
    """Backend transport used by the poller and the orchestrator."""

    @abc.abstractmethod
    async def generate_image(self, instruction_text: str, images: Sequence[MediaPayload]) -> MediaPayload:
        ...

    @abc.abstractmethod
    async def create_video_job(self, instruction_text: str, image: MediaPayload, aspect_ratio: str) -> str:
        ...

    @abc.abstractmethod
    async def poll_video_job(self, handle: str) -> VideoPollStatus:
        ...

    @abc.abstractmethod
    async def fetch_media(self, media_uri: str) -> MediaPayload:
        ...


class GeminiGenerationClient(GenerationClient):
    """Gemini image + Veo video backend over the google-genai async API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        models: Optional[ModelConfig] = None,
        client=None,
        download_timeout: float = 120.0,
    ):
        self.models = models or ModelConfig()
        self.download_timeout = download_timeout
        self.api_key = api_key or os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
        if client is not None:
            self._client = client
        elif self.api_key:
            self._client = genai.Client(api_key=self.api_key)
        else:
            self._client = None
            logger.warning("No GEMINI_API_KEY found; backend calls will require credentials")

    @property
    def ready(self) -> bool:
        return self._client is not None

    def refresh_credentials(self, api_key: str) -> None:
        if not api_key:
            raise AuthRequired("Empty API key")
        self.api_key = api_key
        self._client = genai.Client(api_key=api_key)
        logger.info("Backend credentials refreshed")

    def _require_client(self):
        if self._client is None:
            raise AuthRequired("No API key configured")
        return self._client

    async def generate_image(self, instruction_text: str, images: Sequence[MediaPayload]) -> MediaPayload:
        client = self._require_client()
        parts: List[types.Part] = [
            types.Part.from_bytes(data=img.data, mime_type=img.mime_type) for img in images
        ]
        parts.append(types.Part.from_text(text=instruction_text))
        try:
            response = await client.aio.models.generate_content(
                model=self.models.image_model,
                contents=parts,
                config=types.GenerateContentConfig(response_modalities=["IMAGE"]),
            )
        except Exception as e:
            raise _classify_api_error(e) from e
        return _extract_image(response)

    async def create_video_job(self, instruction_text: str, image: MediaPayload, aspect_ratio: str) -> str:
        if aspect_ratio not in ASPECT_RATIOS:
            raise ValueError(f"Unsupported aspect ratio '{aspect_ratio}'; expected one of {ASPECT_RATIOS}")
        client = self._require_client()
        try:
            operation = await client.aio.models.generate_videos(
                model=self.models.video_model,
                prompt=instruction_text,
                image=types.Image(image_bytes=image.data, mime_type=image.mime_type),
                config=types.GenerateVideosConfig(
                    number_of_videos=1,
                    resolution=self.models.video_resolution,
                    aspect_ratio=aspect_ratio,
                ),
            )
        except Exception as e:
            raise _classify_api_error(e) from e
        handle = getattr(operation, "name", None)
        if not handle:
            raise NoResultProduced("Video job was not accepted (no operation name)")
        logger.info(f"Submitted video job {handle} ({aspect_ratio})")
        return handle

    async def poll_video_job(self, handle: str) -> VideoPollStatus:
        client = self._require_client()
        try:
            operation = await client.aio.operations.get(operation=types.GenerateVideosOperation(name=handle))
        except Exception as e:
            raise _classify_api_error(e) from e
        return _parse_operation(operation)

    async def fetch_media(self, media_uri: str) -> MediaPayload:
        self._require_client()
        return await asyncio.to_thread(self._download, media_uri)

    def _download(self, media_uri: str) -> MediaPayload:
        headers = {"x-goog-api-key": self.api_key} if self.api_key else {}
        try:
            resp = requests.get(media_uri, headers=headers, timeout=self.download_timeout)
        except requests.RequestException as e:
            raise TransportError(f"Download failed: {e}", reason="network") from e
        if resp.status_code in (401, 403):
            raise AuthRequired(f"Download rejected ({resp.status_code})", reason=str(resp.status_code))
        if resp.status_code >= 400:
            raise TransportError(f"Download failed ({resp.status_code})", reason=str(resp.status_code))
        mime_type = resp.headers.get("Content-Type", "video/mp4").split(";")[0].strip() or "video/mp4"
        return MediaPayload(resp.content, mime_type)
