"""
models.py - Core data model
===========================

Value types shared by every step: source uploads, task descriptors,
generated assets, video job bookkeeping, animation settings and batch
results. Everything the backend touches is immutable; the only mutable
aggregate is the WorkflowSession in step5_workflow.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .utils.media import decode_data_url, guess_mime_type, sha256_hex, to_data_url


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class AssetKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class TaskPhase(str, Enum):
    FLAT_LAY = "flat-lay"
    MOCKUP_3D = "3d-mockup"
    STUDIO_PHOTO = "studio-photo"
    VIDEO_TURNTABLE = "video-turntable"
    VIDEO_ACTION = "video-action"

    @property
    def kind(self) -> AssetKind:
        if self in (TaskPhase.VIDEO_TURNTABLE, TaskPhase.VIDEO_ACTION):
            return AssetKind.VIDEO
        return AssetKind.IMAGE


class SubjectCategory(str, Enum):
    """Soft goods get the ghost-mannequin rule, hard goods float as rigid objects."""

    SOFT_GOODS = "soft"
    HARD_GOODS = "hard"
    AUTO = "auto"


class Mode(str, Enum):
    DEFAULT = "default"
    STRICT = "strict"
    FLEXIBLE = "flexible"
    ECOMMERCE = "ecommerce"
    LUXURY = "luxury"
    COMPLEX = "complex"
    MOCKUP_3D = "3d-mockup"

    @classmethod
    def parse(cls, value: Any) -> "Mode":
        if isinstance(value, Mode):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(m.value for m in cls)
            raise ValueError(f"Unknown generation mode '{value}'. Expected one of: {valid}") from None


class JobStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MediaPayload:
    """Raw media exchanged with the backend."""
    data: bytes
    mime_type: str

    def to_data_url(self) -> str:
        return to_data_url(self.data, self.mime_type)


@dataclass(frozen=True)
class SourceAsset:
    """User-supplied reference image. Never mutated after upload."""
    id: str
    data: bytes
    mime_type: str
    name: str = ""

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str, name: str = "") -> "SourceAsset":
        if not data:
            raise ValueError("Source asset is empty")
        return cls(id=new_id("src"), data=data, mime_type=mime_type, name=name)

    @classmethod
    def from_path(cls, path: Path) -> "SourceAsset":
        path = Path(path)
        return cls.from_bytes(path.read_bytes(), guess_mime_type(path), name=path.name)

    @classmethod
    def from_data_url(cls, data_url: str, name: str = "") -> "SourceAsset":
        data, mime_type = decode_data_url(data_url)
        return cls.from_bytes(data, mime_type, name=name)

    @property
    def payload(self) -> MediaPayload:
        return MediaPayload(self.data, self.mime_type)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TaskTemplate:
    """Asset-free task descriptor produced by mode expansion."""
    template_id: str
    phase: TaskPhase
    label: str
    instruction_text: str
    header_mode: str = "default"
    primary_index: int = 0

    @property
    def kind(self) -> AssetKind:
        return self.phase.kind


@dataclass(frozen=True)
class GenerationTask:
    """A template bound to concrete source assets for one run."""
    task_id: str
    kind: AssetKind
    template_id: str
    label: str
    instruction_text: str
    input_asset_ids: Tuple[str, ...]

    @property
    def primary_asset_id(self) -> str:
        return self.input_asset_ids[0]


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GeneratedAsset:
    """A successful generation result."""
    id: str
    kind: AssetKind
    label: str
    mime_type: str
    source_task_id: str
    prompt: str
    data: Optional[bytes] = None
    media_uri: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def payload(self) -> MediaPayload:
        if self.data is None:
            raise ValueError(f"Asset {self.id} has no inline media")
        return MediaPayload(self.data, self.mime_type)

    def to_dict(self) -> Dict[str, Any]:
        """Reference-only view, media bytes replaced by their digest."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "label": self.label,
            "mime_type": self.mime_type,
            "source_task_id": self.source_task_id,
            "media_uri": self.media_uri,
            "sha256": sha256_hex(self.data) if self.data else None,
            "bytes": len(self.data) if self.data else 0,
            "created_at": self.created_at.isoformat(),
            "metadata": dict(self.metadata),
        }


@dataclass
class VideoJob:
    """Bookkeeping for one backend video job while it is being polled."""
    handle: str
    attempt: int
    status: JobStatus = JobStatus.PENDING
    polls: int = 0


@dataclass(frozen=True)
class VideoPollStatus:
    done: bool
    media_uri: Optional[str] = None
    error: Optional[str] = None
    media_bytes: Optional[bytes] = None
    blocked: bool = False


ANIMATION_PRESETS: Tuple[str, ...] = (
    "360 Spin",
    "Walking",
    "Windy",
    "Jumping Jacks",
    "Arm Flex",
    "Sleeve in Pocket",
)

ASPECT_RATIOS: Tuple[str, ...] = ("16:9", "9:16")


@dataclass
class AnimationConfig:
    preset: str = "360 Spin"
    aspect_ratio: str = "9:16"
    custom_prompt: Optional[str] = None
    generate_static: bool = True
    generate_video: bool = True

    def validate(self) -> None:
        if self.preset not in ANIMATION_PRESETS:
            raise ValueError(f"Unknown animation preset '{self.preset}'")
        if self.aspect_ratio not in ASPECT_RATIOS:
            raise ValueError(f"Unsupported aspect ratio '{self.aspect_ratio}'")
        if not (self.generate_static or self.generate_video):
            raise ValueError("Animation must produce a static mockup, a video, or both")

    @property
    def action(self) -> str:
        custom = (self.custom_prompt or "").strip()
        return custom or self.preset


@dataclass(frozen=True)
class TaskFailure:
    task_id: str
    label: str
    kind: AssetKind
    error_type: str
    message: str

    @classmethod
    def from_exception(cls, task: GenerationTask, exc: BaseException) -> "TaskFailure":
        return cls(
            task_id=task.task_id,
            label=task.label,
            kind=task.kind,
            error_type=type(exc).__name__,
            message=str(exc),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "label": self.label,
            "kind": self.kind.value,
            "error_type": self.error_type,
            "message": self.message,
        }


@dataclass
class BatchResult:
    """Outcome of one generation round. Never raised, always returned."""
    round_id: str
    mode: str
    assets: List[GeneratedAsset] = field(default_factory=list)
    failures: List[TaskFailure] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    needs_reauth: bool = False

    @property
    def missing_labels(self) -> List[str]:
        return [f.label for f in self.failures]

    @property
    def succeeded(self) -> bool:
        return bool(self.assets)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round_id": self.round_id,
            "mode": self.mode,
            "assets": [a.to_dict() for a in self.assets],
            "failures": [f.to_dict() for f in self.failures],
            "missing_labels": self.missing_labels,
            "warnings": list(self.warnings),
            "needs_reauth": self.needs_reauth,
        }


@dataclass(frozen=True)
class ProgressEvent:
    """Progress notification emitted while a batch runs."""
    task_id: str
    label: str
    stage: str  # "started", "attempt", "completed", "failed"
    attempt: int = 0
    max_attempts: int = 0
    message: str = ""


@dataclass
class HistoryRecord:
    id: str
    timestamp: datetime
    kind: str  # "generation" or "animation"
    mode: str
    inputs_summary: Dict[str, Any] = field(default_factory=dict)
    asset_refs: List[Dict[str, Any]] = field(default_factory=list)
