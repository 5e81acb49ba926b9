"""
Pytest configuration and fixtures for the Flowstate Generation Orchestrator tests.
"""

import io
import asyncio
import pytest
import tempfile
import numpy as np
from collections import Counter
from pathlib import Path
from PIL import Image
from typing import Callable, List, Optional

from flowstate.config import EngineConfig, PollerConfig, RetryPolicy
from flowstate.errors import AuthRequired
from flowstate.models import MediaPayload, SourceAsset, VideoPollStatus
from flowstate.steps.step1_mode_templates import ModeTemplateEngine
from flowstate.steps.step2_generation_client import GenerationClient
from flowstate.steps.step3_video_poller import VideoJobPoller, VideoValidator
from flowstate.steps.step4_batch_orchestrator import BatchOrchestrator


def make_png_bytes(size=(64, 64), color=(70, 130, 180)) -> bytes:
    """Encode a small product-like PNG."""
    pixels = np.full((size[1], size[0], 3), 255, dtype=np.uint8)
    pixels[size[1] // 4: 3 * size[1] // 4, size[0] // 4: 3 * size[0] // 4] = color
    buf = io.BytesIO()
    Image.fromarray(pixels).save(buf, format="PNG")
    return buf.getvalue()


PNG_BYTES = make_png_bytes()


def fake_probe(data: bytes, mime_type: str):
    """Decode fake video bytes of the form b'video-<height>' into 16:9 dimensions."""
    text = data.decode("ascii", errors="replace")
    if not text.startswith("video-"):
        raise ValueError("not a fake video")
    height = int(text.split("-", 1)[1])
    return height * 16 // 9, height


class FakeGenerationClient(GenerationClient):
    """
    Scriptable in-memory backend.

    image_error(text) may return an exception to raise for that instruction.
    video_attempts[i] scripts the i-th video job: a height string ("1080"),
    an exception raised on poll, or a VideoPollStatus returned as-is.
    """

    def __init__(
        self,
        image_error: Optional[Callable[[str], Optional[Exception]]] = None,
        video_attempts: Optional[List] = None,
        pending_polls: int = 0,
        auth_failures: int = 0,
    ):
        self.image_error = image_error
        self.video_attempts = list(video_attempts or [])
        self.pending_polls = pending_polls
        self.auth_failures = auth_failures
        self.image_calls = []
        self.video_jobs = []
        self.polls = Counter()
        self.fetched = []
        self._heights = {}

    async def generate_image(self, instruction_text, images):
        self.image_calls.append((instruction_text, list(images)))
        await asyncio.sleep(0)
        if self.auth_failures > 0:
            self.auth_failures -= 1
            raise AuthRequired("token expired")
        if self.image_error is not None:
            error = self.image_error(instruction_text)
            if error is not None:
                raise error
        # trailing marker keeps each generated image distinguishable
        return MediaPayload(PNG_BYTES + f"#{len(self.image_calls)}".encode(), "image/png")

    async def create_video_job(self, instruction_text, image, aspect_ratio):
        handle = f"job-{len(self.video_jobs) + 1}"
        self.video_jobs.append({"handle": handle, "text": instruction_text,
                                "image": image, "aspect_ratio": aspect_ratio})
        return handle

    async def poll_video_job(self, handle):
        self.polls[handle] += 1
        if self.polls[handle] <= self.pending_polls:
            return VideoPollStatus(done=False)
        index = int(handle.split("-")[1]) - 1
        outcome = self.video_attempts[index] if index < len(self.video_attempts) else "1080"
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, VideoPollStatus):
            return outcome
        self._heights[handle] = outcome
        return VideoPollStatus(done=True, media_uri=f"https://media.test/{handle}.mp4")

    async def fetch_media(self, media_uri):
        self.fetched.append(media_uri)
        handle = media_uri.rsplit("/", 1)[1].split(".")[0]
        return MediaPayload(f"video-{self._heights[handle]}".encode(), "video/mp4")


def build_poller(client, max_attempts=3, max_polls=None) -> VideoJobPoller:
    return VideoJobPoller(
        client,
        retry_policy=RetryPolicy(max_attempts=max_attempts),
        config=PollerConfig(poll_interval_seconds=0, max_polls_per_attempt=max_polls),
        validator=VideoValidator(min_edge=1080, probe=fake_probe),
    )


def build_orchestrator(client, **kwargs) -> BatchOrchestrator:
    config = kwargs.pop("config", None) or EngineConfig(poller=PollerConfig(poll_interval_seconds=0))
    return BatchOrchestrator(
        client,
        templates=ModeTemplateEngine(),
        poller=kwargs.pop("poller", None) or build_poller(client),
        config=config,
        **kwargs,
    )


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def png_bytes():
    return PNG_BYTES


@pytest.fixture
def sources():
    """Two uploaded product references (front and back)."""
    return [
        SourceAsset.from_bytes(make_png_bytes(color=(70, 130, 180)), "image/png", "front.png"),
        SourceAsset.from_bytes(make_png_bytes(color=(180, 70, 70)), "image/png", "back.png"),
    ]


@pytest.fixture
def fake_client():
    return FakeGenerationClient()


@pytest.fixture(autouse=True)
def setup_test_environment(monkeypatch):
    """Isolate tests from real credentials and config files."""
    for var in ("GEMINI_API_KEY", "GOOGLE_API_KEY", "FLOWSTATE_CONFIG", "FLOWSTATE_IMAGE_MODEL",
                "FLOWSTATE_VIDEO_MODEL", "FLOWSTATE_POLL_INTERVAL", "FLOWSTATE_HISTORY_DB"):
        monkeypatch.delenv(var, raising=False)
    yield
