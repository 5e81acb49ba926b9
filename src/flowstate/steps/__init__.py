"""
Orchestrator Steps Module
=========================

Contains the 6 orchestrator steps:
- step1_mode_templates: mode → ordered task templates with guardrail text
- step2_generation_client: async transport over Gemini image / Veo video
- step3_video_poller: create → poll → fetch → validate, with bounded retry
- step4_batch_orchestrator: concurrent rounds, failure isolation, animation sub-run
- step5_workflow: guarded workflow state machine over a session
- step6_history: SQLAlchemy-backed generation history
"""

from . import (
    step1_mode_templates,
    step2_generation_client,
    step3_video_poller,
    step4_batch_orchestrator,
    step5_workflow,
    step6_history,
)

__all__ = [
    "step1_mode_templates",
    "step2_generation_client",
    "step3_video_poller",
    "step4_batch_orchestrator",
    "step5_workflow",
    "step6_history",
]
