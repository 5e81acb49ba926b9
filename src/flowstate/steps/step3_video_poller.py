#!/usr/bin/env python3
"""
step3_video_poller.py - Step 3: Video Job Poller
================================================

Drive a long-running video job to a validated result.

Per attempt:
- create a fresh backend job
- sleep, poll, repeat until the job reports done
- fetch the media and check it meets the minimum-resolution bar

A failed attempt (validation, transport fault, empty result, stalled job)
starts a brand new job, up to RetryPolicy.max_attempts. Content-policy
blocks and auth failures end the run immediately. Only a validated video
ever becomes a GeneratedAsset.

Dependencies: opencv-python (via utils.media)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from ..config import PollerConfig, RetryPolicy
from ..errors import (
    AuthRequired,
    GenerationBlocked,
    GenerationExhausted,
    NoResultProduced,
    TransportError,
    ValidationFailed,
)
from ..models import (
    AssetKind,
    GeneratedAsset,
    GenerationTask,
    JobStatus,
    MediaPayload,
    VideoJob,
    new_id,
)
from ..utils.cancellation import CancellationToken
from ..utils.media import meets_min_edge, probe_video_dimensions
from .step2_generation_client import GenerationClient

logger = logging.getLogger("flowstate.video_poller")

AttemptCallback = Callable[[int, int], None]

_RETRYABLE = (TransportError, ValidationFailed, NoResultProduced)


@dataclass
class VideoResult:
    asset: GeneratedAsset
    attempts: int


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class VideoValidator:
    """Decode a video and enforce the minimum edge length."""

    def __init__(
        self,
        min_edge: int = 1080,
        edge_policy: str = "short",
        probe: Optional[Callable[[bytes, str], Tuple[int, int]]] = None,
    ):
        self.min_edge = min_edge
        self.edge_policy = edge_policy
        self.probe = probe or probe_video_dimensions

    @classmethod
    def from_config(cls, config: PollerConfig) -> "VideoValidator":
        return cls(min_edge=config.min_video_edge, edge_policy=config.edge_policy)

    def validate(self, payload: MediaPayload) -> Tuple[int, int]:
        try:
            width, height = self.probe(payload.data, payload.mime_type)
        except ValueError as e:
            raise ValidationFailed(f"Video could not be decoded: {e}") from e
        if not meets_min_edge(width, height, self.min_edge, self.edge_policy):
            raise ValidationFailed(
                f"Video {width}x{height} below {self.min_edge}px on {self.edge_policy} edge",
                width=width,
                height=height,
            )
        return width, height


# ---------------------------------------------------------------------------
# Poller
# ---------------------------------------------------------------------------

class VideoJobPoller:
    """Bounded retry loop around create → poll → fetch → validate."""

    def __init__(
        self,
        client: GenerationClient,
        retry_policy: Optional[RetryPolicy] = None,
        config: Optional[PollerConfig] = None,
        validator: Optional[VideoValidator] = None,
    ):
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy()
        self.config = config or PollerConfig()
        self.validator = validator or VideoValidator.from_config(self.config)

    async def run(
        self,
        task: GenerationTask,
        source: MediaPayload,
        aspect_ratio: str = "16:9",
        cancel_token: Optional[CancellationToken] = None,
        on_attempt: Optional[AttemptCallback] = None,
    ) -> VideoResult:
        token = cancel_token or CancellationToken()
        max_attempts = self.retry_policy.max_attempts
        last_error: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            delay = self.retry_policy.delay_for(attempt)
            if delay:
                await token.sleep(delay)
            if on_attempt:
                on_attempt(attempt, max_attempts)
            logger.info(f"[{task.label}] video attempt {attempt}/{max_attempts}")

            try:
                payload, media_uri, job, (width, height) = await self._attempt(task, source, aspect_ratio, token, attempt)
            except (GenerationBlocked, AuthRequired):
                logger.error(f"[{task.label}] video attempt {attempt} hit a terminal error")
                raise
            except _RETRYABLE as e:
                last_error = e
                logger.warning(f"[{task.label}] video attempt {attempt}/{max_attempts} failed: {e}")
                continue

            asset = GeneratedAsset(
                id=new_id("vid"),
                kind=AssetKind.VIDEO,
                label=task.label,
                mime_type=payload.mime_type,
                source_task_id=task.task_id,
                prompt=task.instruction_text,
                data=payload.data,
                media_uri=media_uri,
                metadata={
                    "attempts": attempt,
                    "job_handle": job.handle,
                    "polls": job.polls,
                    "width": width,
                    "height": height,
                    "aspect_ratio": aspect_ratio,
                },
            )
            logger.info(f"[{task.label}] video ready after {attempt} attempt(s) ({width}x{height})")
            return VideoResult(asset=asset, attempts=attempt)

        logger.error(f"[{task.label}] video generation exhausted after {max_attempts} attempts")
        raise GenerationExhausted(max_attempts, last_error)

    async def _attempt(
        self,
        task: GenerationTask,
        source: MediaPayload,
        aspect_ratio: str,
        token: CancellationToken,
        attempt: int,
    ):
        handle = await token.run(self.client.create_video_job(task.instruction_text, source, aspect_ratio))
        job = VideoJob(handle=handle, attempt=attempt)
        cap = self.config.max_polls_per_attempt

        while True:
            if cap is not None and job.polls >= cap:
                job.status = JobStatus.FAILED
                raise TransportError(f"Video job {handle} still running after {job.polls} polls", reason="stalled")
            await token.sleep(self.config.poll_interval_seconds)
            status = await token.run(self.client.poll_video_job(handle))
            job.polls += 1
            if status.done:
                break
            logger.debug(f"[{task.label}] job {handle} pending (poll {job.polls})")

        if status.blocked:
            job.status = JobStatus.FAILED
            raise GenerationBlocked(status.error or "Video blocked by content policy", reason="policy")
        if status.error:
            job.status = JobStatus.FAILED
            raise TransportError(status.error, reason="job_failed")

        if status.media_bytes:
            payload = MediaPayload(status.media_bytes, "video/mp4")
        elif status.media_uri:
            payload = await token.run(self.client.fetch_media(status.media_uri))
        else:
            job.status = JobStatus.FAILED
            raise NoResultProduced(f"Video job {handle} finished without media")

        # decoding and probing run off the event loop
        dims = await asyncio.to_thread(self.validator.validate, payload)
        job.status = JobStatus.DONE
        return payload, status.media_uri, job, dims
