#!/usr/bin/env python3
"""
step5_workflow.py - Step 5: Workflow State Machine
==================================================

Gate the actions available at each stage of a session and route assets
from one stage to the next.

Steps (forward only, except reset):
    upload → generate_pending → selecting → animating → placing

- generate runs a BatchOrchestrator round; ≥1 asset moves to selecting
- advance needs a non-empty selection
- animate runs the animation sub-run on the first selected asset; ≥1
  output moves to placing
- reset cancels in-flight work and restores the initial session

Illegal actions raise GuardViolation before touching the session. While
generate or animate is running only reset is accepted, and an animate
request on a selected video is rejected the same way. Work that completes
after a reset is discarded.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Sequence

from ..asset_store import AssetStore, SelectionMode
from ..config import EngineConfig
from ..errors import GuardViolation, NoSourceAssets, OperationCancelled
from ..models import (
    AnimationConfig,
    AssetKind,
    BatchResult,
    GeneratedAsset,
    Mode,
    SourceAsset,
    SubjectCategory,
)
from ..utils.cancellation import CancellationToken
from .step4_batch_orchestrator import BatchOrchestrator, ProgressCallback
from .step6_history import HistoryStore, record_from_result

logger = logging.getLogger("flowstate.workflow")


class WorkflowStep(str, Enum):
    UPLOAD = "upload"
    GENERATE_PENDING = "generate_pending"
    SELECTING = "selecting"
    ANIMATING = "animating"
    PLACING = "placing"


_ALL_STEPS = frozenset(WorkflowStep)

_ALLOWED: Dict[str, FrozenSet[WorkflowStep]] = {
    "upload": frozenset({WorkflowStep.UPLOAD}),
    "set_mode": frozenset({WorkflowStep.UPLOAD, WorkflowStep.GENERATE_PENDING, WorkflowStep.SELECTING}),
    "generate": frozenset({WorkflowStep.GENERATE_PENDING, WorkflowStep.SELECTING}),
    "select": frozenset({WorkflowStep.SELECTING}),
    "deselect": frozenset({WorkflowStep.SELECTING}),
    "toggle": frozenset({WorkflowStep.SELECTING}),
    "advance": frozenset({WorkflowStep.SELECTING}),
    "configure_animation": frozenset({WorkflowStep.SELECTING, WorkflowStep.ANIMATING}),
    "animate": frozenset({WorkflowStep.ANIMATING}),
    "reset": _ALL_STEPS,
}

_STEP_ORDER = {step: index for index, step in enumerate(WorkflowStep)}

# actions still accepted while generate or animate is running
_WHILE_BUSY = ("reset",)


@dataclass
class WorkflowSession:
    """The single mutable aggregate of a user session."""
    store: AssetStore
    current_step: WorkflowStep = WorkflowStep.UPLOAD
    mode: Mode = Mode.DEFAULT
    source_assets: List[SourceAsset] = field(default_factory=list)
    animation_config: AnimationConfig = field(default_factory=AnimationConfig)
    static_mockup: Optional[GeneratedAsset] = None
    animated_mockup: Optional[GeneratedAsset] = None
    last_result: Optional[BatchResult] = None

    @property
    def generated_assets(self) -> List[GeneratedAsset]:
        return self.store.all()

    @property
    def selected_assets(self) -> List[GeneratedAsset]:
        return self.store.selected()

    @property
    def placed_assets(self) -> List[GeneratedAsset]:
        return [a for a in (self.static_mockup, self.animated_mockup) if a is not None]


class WorkflowStateMachine:
    """Owns a WorkflowSession and the legal transitions over it."""

    def __init__(
        self,
        orchestrator: BatchOrchestrator,
        history: Optional[HistoryStore] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.orchestrator = orchestrator
        self.history = history
        self.config = config or orchestrator.config
        self.session = self._fresh_session()
        self._busy: Optional[str] = None
        self._token: Optional[CancellationToken] = None
        self._epoch = 0

    def _fresh_session(self) -> WorkflowSession:
        store = AssetStore(SelectionMode(self.config.selection_mode))
        return WorkflowSession(
            store=store,
            mode=Mode.parse(self.config.default_mode),
            animation_config=AnimationConfig(),
        )

    # -- introspection ------------------------------------------------------

    @property
    def step(self) -> WorkflowStep:
        return self.session.current_step

    @property
    def busy(self) -> bool:
        return self._busy is not None

    def available_actions(self) -> List[str]:
        actions = []
        for action, steps in _ALLOWED.items():
            if self.step not in steps:
                continue
            if self.busy and action not in _WHILE_BUSY:
                continue
            actions.append(action)
        return actions

    def _guard(self, action: str) -> None:
        if self.step not in _ALLOWED[action]:
            raise GuardViolation(f"'{action}' is not allowed in step '{self.step.value}'")
        if self.busy and action not in _WHILE_BUSY:
            raise GuardViolation(f"'{action}' rejected: '{self._busy}' is still running")

    def _move(self, step: WorkflowStep) -> None:
        current = self.session.current_step
        if _STEP_ORDER[step] < _STEP_ORDER[current]:
            logger.warning(f"Ignoring backward move {current.value} → {step.value}")
            return
        if step is not current:
            logger.info(f"Workflow: {current.value} → {step.value}")
            self.session.current_step = step

    # -- actions ------------------------------------------------------------

    def upload(self, sources: Sequence[SourceAsset]) -> None:
        self._guard("upload")
        if not sources:
            raise NoSourceAssets("Upload at least one source image")
        self.session.source_assets = list(sources)
        self._move(WorkflowStep.GENERATE_PENDING)

    def set_mode(self, mode) -> None:
        self._guard("set_mode")
        self.session.mode = Mode.parse(mode)

    async def generate(
        self,
        category: SubjectCategory = SubjectCategory.AUTO,
        aspect_ratio: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchResult:
        self._guard("generate")
        token, epoch = self._begin("generate")
        try:
            result = await self.orchestrator.run(
                self.session.source_assets,
                self.session.mode,
                store=self.session.store,
                category=category,
                aspect_ratio=aspect_ratio,
                cancel_token=token,
                on_progress=on_progress,
            )
        finally:
            self._end(epoch)
        self._check_current(token, epoch, "generate")

        self.session.last_result = result
        if len(self.session.store):
            self._move(WorkflowStep.SELECTING)
        else:
            logger.warning(f"Round {result.round_id} produced no assets; staying in '{self.step.value}'")
        await self._record_history(result, "generation")
        return result

    def select(self, asset_id: str) -> None:
        self._guard("select")
        self.session.store.select(asset_id)

    def deselect(self, asset_id: str) -> None:
        self._guard("deselect")
        self.session.store.deselect(asset_id)

    def toggle(self, asset_id: str) -> bool:
        self._guard("toggle")
        return self.session.store.toggle(asset_id)

    def advance(self) -> None:
        self._guard("advance")
        if not self.session.store.selected():
            raise GuardViolation("Select at least one asset before advancing")
        self._move(WorkflowStep.ANIMATING)

    def configure_animation(self, **changes) -> AnimationConfig:
        self._guard("configure_animation")
        updated = dataclasses.replace(self.session.animation_config, **changes)
        updated.validate()
        self.session.animation_config = updated
        return updated

    async def animate(
        self,
        category: SubjectCategory = SubjectCategory.AUTO,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchResult:
        self._guard("animate")
        selected = self.session.store.selected()
        if not selected:
            raise GuardViolation("No selected asset to animate")
        primary = selected[0]
        if primary.kind is not AssetKind.IMAGE or primary.data is None:
            raise GuardViolation(f"'{primary.label}' is not an image; select an image to animate")

        token, epoch = self._begin("animate")
        try:
            result = await self.orchestrator.run_animation(
                primary,
                self.session.animation_config,
                category=category,
                cancel_token=token,
                on_progress=on_progress,
            )
        finally:
            self._end(epoch)
        self._check_current(token, epoch, "animate")

        self.session.last_result = result
        for asset in result.assets:
            if asset.kind is AssetKind.VIDEO:
                self.session.animated_mockup = asset
            else:
                self.session.static_mockup = asset
        if result.assets:
            self._move(WorkflowStep.PLACING)
        else:
            logger.warning("Animation produced no output; staying in 'animating'")
        await self._record_history(result, "animation")
        return result

    def reset(self) -> None:
        self._guard("reset")
        if self._token is not None:
            self._token.cancel("session reset")
        self._epoch += 1
        self._busy = None
        self._token = None
        self.session.store.clear()
        self.session = self._fresh_session()
        logger.info("Workflow reset")

    # -- helpers ------------------------------------------------------------

    def _begin(self, action: str):
        token = CancellationToken()
        self._busy = action
        self._token = token
        return token, self._epoch

    def _end(self, epoch: int) -> None:
        if epoch == self._epoch:
            self._busy = None
            self._token = None

    def _check_current(self, token: CancellationToken, epoch: int, action: str) -> None:
        if epoch != self._epoch or token.cancelled:
            logger.info(f"Discarding '{action}' result finished after reset")
            raise OperationCancelled(token.reason or "session reset")

    async def _record_history(self, result: BatchResult, kind: str) -> None:
        if self.history is None:
            return
        summary = {
            "sources": [s.id for s in self.session.source_assets],
            "source_count": len(self.session.source_assets),
        }
        if kind == "animation":
            summary["animation"] = dataclasses.asdict(self.session.animation_config)
        try:
            record = record_from_result(result, kind, summary)
            await asyncio.to_thread(self.history.append, record)
        except Exception as e:
            logger.warning(f"History write failed (ignored): {e}")
