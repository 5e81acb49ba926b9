"""
Flowstate Generation Orchestrator (Steps 1–6)
=============================================

Turns one or more product images into a curated suite of flat lays, strict
3D mockups, studio photos and turntable/action videos through a
generative-media backend.

Core Steps:
1. Mode Template Engine
2. Generation Client (Gemini image + Veo video)
3. Video Job Poller
4. Batch Orchestrator
5. Workflow State Machine
6. Generation History

Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "Flowstate"

from .asset_store import AssetStore, SelectionMode
from .config import EngineConfig, PollerConfig, RetryPolicy, load_config
from .models import AnimationConfig, Mode, SourceAsset, SubjectCategory
from .steps.step1_mode_templates import ModeTemplateEngine
from .steps.step2_generation_client import GeminiGenerationClient, GenerationClient
from .steps.step3_video_poller import VideoJobPoller, VideoValidator
from .steps.step4_batch_orchestrator import BatchOrchestrator
from .steps.step5_workflow import WorkflowStateMachine, WorkflowStep
from .steps.step6_history import HistoryStore

__all__ = [
    "AssetStore",
    "SelectionMode",
    "EngineConfig",
    "PollerConfig",
    "RetryPolicy",
    "load_config",
    "AnimationConfig",
    "Mode",
    "SourceAsset",
    "SubjectCategory",
    "ModeTemplateEngine",
    "GenerationClient",
    "GeminiGenerationClient",
    "VideoJobPoller",
    "VideoValidator",
    "BatchOrchestrator",
    "WorkflowStateMachine",
    "WorkflowStep",
    "HistoryStore",
]
