#!/usr/bin/env python3
"""
step4_batch_orchestrator.py - Step 4: Batch Orchestrator
========================================================

Run one generation round for a mode:

1. Expand the mode into task templates and bind them to source assets
2. Launch every image and video task concurrently
3. Record each failure against its task without disturbing siblings
4. Append each success to the asset store as it arrives
5. Return a BatchResult ordered by submission, with missing labels listed

Image tasks get a single attempt unless an image retry policy is set, and
then only transport faults are retried. Video tasks go through the
VideoJobPoller. An auth failure triggers one credential refresh per round
and one retry of the affected task.

Also runs the animation sub-run (static hero mockup and/or animated video)
for a selected asset.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Union

from ..asset_store import AssetStore
from ..config import EngineConfig, RetryPolicy
from ..errors import AuthRequired, GenerationError, NoSourceAssets, OperationCancelled, TransportError
from ..models import (
    ASPECT_RATIOS,
    AnimationConfig,
    AssetKind,
    BatchResult,
    GeneratedAsset,
    GenerationTask,
    MediaPayload,
    Mode,
    ProgressEvent,
    SourceAsset,
    SubjectCategory,
    TaskFailure,
    TaskTemplate,
    new_id,
)
from ..utils.cancellation import CancellationToken
from .step1_mode_templates import ModeTemplateEngine
from .step2_generation_client import GenerationClient
from .step3_video_poller import VideoJobPoller, VideoValidator

logger = logging.getLogger("flowstate.orchestrator")

CredentialRefresher = Callable[[], Awaitable[None]]
ProgressCallback = Callable[[ProgressEvent], None]
TaskOutcome = Union[GeneratedAsset, TaskFailure]


class _RoundContext:
    """Per-round state shared by all concurrently running tasks."""

    def __init__(self, token: CancellationToken, aspect_ratio: str,
                 on_progress: Optional[ProgressCallback], store: Optional[AssetStore]):
        self.token = token
        self.aspect_ratio = aspect_ratio
        self.on_progress = on_progress
        self.store = store
        self.refresh: Optional[asyncio.Future] = None

    def emit(self, task: GenerationTask, stage: str, **kwargs) -> None:
        if self.on_progress is not None:
            self.on_progress(ProgressEvent(task_id=task.task_id, label=task.label, stage=stage, **kwargs))


class BatchOrchestrator:
    """Concurrent execution of one mode's task list against a GenerationClient."""

    def __init__(
        self,
        client: GenerationClient,
        templates: Optional[ModeTemplateEngine] = None,
        poller: Optional[VideoJobPoller] = None,
        image_retry: Optional[RetryPolicy] = None,
        credential_refresher: Optional[CredentialRefresher] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.config = config or EngineConfig()
        self.client = client
        self.templates = templates or ModeTemplateEngine()
        self.poller = poller or VideoJobPoller(
            client,
            retry_policy=self.config.video_retry,
            config=self.config.poller,
            validator=VideoValidator.from_config(self.config.poller),
        )
        self.image_retry = image_retry or self.config.image_retry
        self.credential_refresher = credential_refresher

    # -- public API ---------------------------------------------------------

    def bind_tasks(self, templates: Sequence[TaskTemplate], sources: Sequence[SourceAsset], round_id: str) -> List[GenerationTask]:
        """Attach source ids to templates. Images see every source; videos see their primary."""
        tasks = []
        for index, template in enumerate(templates):
            if template.kind is AssetKind.IMAGE:
                inputs = tuple(s.id for s in sources)
            else:
                primary = min(template.primary_index, len(sources) - 1)
                inputs = (sources[primary].id,)
            tasks.append(GenerationTask(
                task_id=f"{round_id}-{index:02d}",
                kind=template.kind,
                template_id=template.template_id,
                label=template.label,
                instruction_text=template.instruction_text,
                input_asset_ids=inputs,
            ))
        return tasks

    async def run(
        self,
        sources: Sequence[SourceAsset],
        mode=Mode.DEFAULT,
        store: Optional[AssetStore] = None,
        category: SubjectCategory = SubjectCategory.AUTO,
        aspect_ratio: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchResult:
        """Run one generation round. Task failures are reported, never raised."""
        if not sources:
            raise NoSourceAssets("At least one source asset is required")
        mode = Mode.parse(mode)
        aspect_ratio = self._check_aspect_ratio(aspect_ratio)

        round_id = new_id("round")
        templates = self.templates.expand(mode, len(sources), category)
        tasks = self.bind_tasks(templates, sources, round_id)
        payloads = {s.id: s.payload for s in sources}

        images = sum(1 for t in tasks if t.kind is AssetKind.IMAGE)
        logger.info(f"Round {round_id}: mode '{mode.value}', {images} image + {len(tasks) - images} video tasks "
                    f"from {len(sources)} source(s)")

        if store is not None:
            store.begin_round()
        ctx = _RoundContext(cancel_token or CancellationToken(), aspect_ratio, on_progress, store)
        result = BatchResult(round_id=round_id, mode=mode.value)
        await self._execute(tasks, payloads, ctx, result)
        return result

    async def run_animation(
        self,
        asset: GeneratedAsset,
        animation_config: AnimationConfig,
        category: SubjectCategory = SubjectCategory.AUTO,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchResult:
        """Animate one selected asset into a static mockup and/or a video."""
        if asset.kind is not AssetKind.IMAGE or asset.data is None:
            raise ValueError(f"Asset {asset.id} is not an inline image and cannot be animated")
        templates = self.templates.build_animation_templates(animation_config, category)
        round_id = new_id("anim")
        tasks = [
            GenerationTask(
                task_id=f"{round_id}-{i:02d}",
                kind=t.kind,
                template_id=t.template_id,
                label=t.label,
                instruction_text=t.instruction_text,
                input_asset_ids=(asset.id,),
            )
            for i, t in enumerate(templates)
        ]
        logger.info(f"Animation {round_id}: '{animation_config.action}' on '{asset.label}' ({len(tasks)} tasks)")

        ctx = _RoundContext(cancel_token or CancellationToken(), animation_config.aspect_ratio, on_progress, None)
        result = BatchResult(round_id=round_id, mode="animation")
        await self._execute(tasks, {asset.id: asset.payload}, ctx, result)
        return result

    # -- execution ----------------------------------------------------------

    async def _execute(self, tasks: List[GenerationTask], payloads: Dict[str, MediaPayload],
                       ctx: _RoundContext, result: BatchResult) -> None:
        futures = [
            asyncio.ensure_future(self._run_task(task, [payloads[i] for i in task.input_asset_ids], ctx))
            for task in tasks
        ]
        try:
            outcomes = await asyncio.gather(*futures)
        except BaseException:
            for f in futures:
                f.cancel()
            await asyncio.gather(*futures, return_exceptions=True)
            logger.warning(f"Round {result.round_id} aborted")
            raise

        for task, outcome in zip(tasks, outcomes):
            if isinstance(outcome, GeneratedAsset):
                result.assets.append(outcome)
                continue
            result.failures.append(outcome)
            if outcome.error_type == AuthRequired.__name__:
                result.needs_reauth = True
            if task.kind is AssetKind.VIDEO:
                result.warnings.append(f"Video '{task.label}' unavailable: {outcome.message}")

        logger.info(f"Round {result.round_id} finished: {len(result.assets)}/{len(tasks)} assets, "
                    f"{len(result.failures)} failed")

    async def _run_task(self, task: GenerationTask, inputs: List[MediaPayload], ctx: _RoundContext) -> TaskOutcome:
        ctx.emit(task, "started")
        refreshed = False
        while True:
            try:
                asset = await self._generate(task, inputs, ctx)
                break
            except AuthRequired as e:
                if self.credential_refresher is None or refreshed or not await self._refresh_credentials(ctx):
                    return self._fail(task, e, ctx)
                refreshed = True
                logger.info(f"[{task.label}] retrying after credential refresh")
            except GenerationError as e:
                return self._fail(task, e, ctx)
            except OperationCancelled:
                raise
            except Exception as e:
                logger.exception(f"[{task.label}] unexpected error")
                return self._fail(task, e, ctx)

        ctx.token.raise_if_cancelled()
        if ctx.store is not None:
            ctx.store.append(asset)
        ctx.emit(task, "completed")
        return asset

    def _fail(self, task: GenerationTask, exc: Exception, ctx: _RoundContext) -> TaskFailure:
        logger.warning(f"[{task.label}] {task.kind.value} task failed: {type(exc).__name__}: {exc}")
        ctx.emit(task, "failed", message=str(exc))
        return TaskFailure.from_exception(task, exc)

    async def _refresh_credentials(self, ctx: _RoundContext) -> bool:
        """Refresh once per round; concurrent auth failures share the same refresh."""
        if ctx.refresh is None:
            ctx.refresh = asyncio.ensure_future(self.credential_refresher())
        try:
            await asyncio.shield(ctx.refresh)
        except GenerationError as e:
            logger.error(f"Credential refresh failed: {e}")
            return False
        return True

    async def _generate(self, task: GenerationTask, inputs: List[MediaPayload], ctx: _RoundContext) -> GeneratedAsset:
        if task.kind is AssetKind.VIDEO:
            outcome = await self.poller.run(
                task,
                inputs[0],
                aspect_ratio=ctx.aspect_ratio,
                cancel_token=ctx.token,
                on_attempt=lambda attempt, total: ctx.emit(task, "attempt", attempt=attempt, max_attempts=total),
            )
            return outcome.asset
        return await self._generate_image(task, inputs, ctx)

    async def _generate_image(self, task: GenerationTask, inputs: List[MediaPayload], ctx: _RoundContext) -> GeneratedAsset:
        policy = self.image_retry
        attempt = 1
        while True:
            delay = policy.delay_for(attempt)
            if delay:
                await ctx.token.sleep(delay)
            try:
                payload = await ctx.token.run(self.client.generate_image(task.instruction_text, inputs))
            except TransportError as e:
                if attempt >= policy.max_attempts:
                    raise
                logger.warning(f"[{task.label}] image attempt {attempt}/{policy.max_attempts} failed: {e}")
                attempt += 1
                continue
            return GeneratedAsset(
                id=new_id("img"),
                kind=AssetKind.IMAGE,
                label=task.label,
                mime_type=payload.mime_type,
                source_task_id=task.task_id,
                prompt=task.instruction_text,
                data=payload.data,
                metadata={"attempts": attempt, "template_id": task.template_id,
                          "inputs": list(task.input_asset_ids)},
            )

    def _check_aspect_ratio(self, aspect_ratio: Optional[str]) -> str:
        aspect_ratio = aspect_ratio or self.config.default_aspect_ratio
        if aspect_ratio not in ASPECT_RATIOS:
            raise ValueError(f"Unsupported aspect ratio '{aspect_ratio}'; expected one of {ASPECT_RATIOS}")
        return aspect_ratio
