"""
config.py - Engine configuration
================================

Dataclass configuration for every step, loadable from YAML with environment
overrides. A missing file yields defaults.

Environment:
- FLOWSTATE_CONFIG          path to a YAML config file
- GEMINI_API_KEY / GOOGLE_API_KEY
- FLOWSTATE_IMAGE_MODEL, FLOWSTATE_VIDEO_MODEL
- FLOWSTATE_POLL_INTERVAL   seconds between video job polls
- FLOWSTATE_HISTORY_DB      SQLAlchemy URL for generation history

Dependencies: PyYAML
"""

from __future__ import annotations

import os
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .models import ASPECT_RATIOS, Mode

logger = logging.getLogger("flowstate.config")


# ---------------------------------------------------------------------------
# Config dataclasses
# ---------------------------------------------------------------------------

@dataclass
class RetryPolicy:
    """Bounded retry with optional exponential backoff between attempts."""
    max_attempts: int = 3
    backoff_seconds: float = 0.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 60.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Delay before `attempt` (1-based). The first attempt never waits."""
        if attempt <= 1 or self.backoff_seconds <= 0:
            return 0.0
        delay = self.backoff_seconds * (self.backoff_multiplier ** (attempt - 2))
        return min(delay, self.max_backoff_seconds)


@dataclass
class ModelConfig:
    image_model: str = "gemini-3-pro-image-preview"
    video_model: str = "veo-3.1-generate-preview"
    video_resolution: str = "1080p"


@dataclass
class PollerConfig:
    poll_interval_seconds: float = 5.0
    min_video_edge: int = 1080
    edge_policy: str = "short"  # "short" or "long"
    max_polls_per_attempt: Optional[int] = None

    def __post_init__(self):
        if self.poll_interval_seconds < 0:
            raise ValueError("poll_interval_seconds must be >= 0")
        if self.edge_policy not in ("short", "long"):
            raise ValueError(f"edge_policy must be 'short' or 'long', got '{self.edge_policy}'")
        if self.max_polls_per_attempt is not None and self.max_polls_per_attempt < 1:
            raise ValueError("max_polls_per_attempt must be >= 1 or null")


@dataclass
class EngineConfig:
    models: ModelConfig = field(default_factory=ModelConfig)
    poller: PollerConfig = field(default_factory=PollerConfig)
    video_retry: RetryPolicy = field(default_factory=RetryPolicy)
    image_retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(max_attempts=1))
    default_mode: str = "default"
    default_aspect_ratio: str = "16:9"
    selection_mode: str = "multi"  # "multi" or "single"
    history_db_url: str = "sqlite:///flowstate_history.db"
    style_config_path: Optional[str] = None
    api_key: Optional[str] = None

    def __post_init__(self):
        Mode.parse(self.default_mode)
        if self.default_aspect_ratio not in ASPECT_RATIOS:
            raise ValueError(f"default_aspect_ratio must be one of {ASPECT_RATIOS}")
        if self.selection_mode not in ("multi", "single"):
            raise ValueError("selection_mode must be 'multi' or 'single'")


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_NESTED = {
    "models": ModelConfig,
    "poller": PollerConfig,
    "video_retry": RetryPolicy,
    "image_retry": RetryPolicy,
}


def _build(cls, data: Dict[str, Any], section: str):
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    for key in unknown:
        logger.warning(f"Ignoring unknown config key '{section}.{key}'")
    return cls(**{k: v for k, v in data.items() if k in known})


def config_from_dict(data: Optional[Dict[str, Any]]) -> EngineConfig:
    data = dict(data or {})
    kwargs: Dict[str, Any] = {}
    for name, cls in _NESTED.items():
        section = data.pop(name, None)
        if section is None:
            continue
        if not isinstance(section, dict):
            raise ValueError(f"Config section '{name}' must be a mapping")
        kwargs[name] = _build(cls, section, name)
    top = _build(EngineConfig, data, "engine")
    for name, value in kwargs.items():
        setattr(top, name, value)
    return top


def _apply_env(config: EngineConfig) -> EngineConfig:
    api_key = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
    if api_key and not config.api_key:
        config.api_key = api_key
    if os.getenv("FLOWSTATE_IMAGE_MODEL"):
        config.models.image_model = os.environ["FLOWSTATE_IMAGE_MODEL"]
    if os.getenv("FLOWSTATE_VIDEO_MODEL"):
        config.models.video_model = os.environ["FLOWSTATE_VIDEO_MODEL"]
    if os.getenv("FLOWSTATE_POLL_INTERVAL"):
        raw = os.environ["FLOWSTATE_POLL_INTERVAL"]
        try:
            interval = float(raw)
        except ValueError:
            raise ValueError(f"FLOWSTATE_POLL_INTERVAL must be a number, got '{raw}'") from None
        config.poller = PollerConfig(
            poll_interval_seconds=interval,
            min_video_edge=config.poller.min_video_edge,
            edge_policy=config.poller.edge_policy,
            max_polls_per_attempt=config.poller.max_polls_per_attempt,
        )
    if os.getenv("FLOWSTATE_HISTORY_DB"):
        config.history_db_url = os.environ["FLOWSTATE_HISTORY_DB"]
    return config


def load_config(path: Optional[Union[str, Path]] = None) -> EngineConfig:
    """Load YAML config (explicit path, then FLOWSTATE_CONFIG), then apply env overrides."""
    path = path or os.getenv("FLOWSTATE_CONFIG")
    data: Dict[str, Any] = {}
    if path:
        config_path = Path(path)
        if config_path.exists():
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ValueError(f"Config file {config_path} must contain a mapping")
            logger.info(f"Loaded config from {config_path}")
        else:
            logger.warning(f"Config file not found: {config_path}; using defaults")
    return _apply_env(config_from_dict(data))
