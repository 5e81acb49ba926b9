"""
errors.py - Error taxonomy for the generation orchestrator
==========================================================

Task-scoped failures derive from GenerationError and are recorded against
the task that produced them. Workflow failures (GuardViolation) are raised
before any state is touched. Cancellation surfaces as OperationCancelled.
"""

from __future__ import annotations

from typing import Optional


class FlowstateError(Exception):
    """Base class for every error raised by flowstate."""


# ---------------------------------------------------------------------------
# Generation failures (task scoped)
# ---------------------------------------------------------------------------

class GenerationError(FlowstateError):
    """A single generation task failed."""

    retryable = False

    def __init__(self, message: str = "", *, reason: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.reason = reason


class GenerationBlocked(GenerationError):
    """Backend refused the request on content-policy grounds. Never retried."""


class GenerationIncomplete(GenerationError):
    """Backend stopped before producing a complete result."""


class NoResultProduced(GenerationError):
    """Call succeeded but no media came back."""


class TransportError(GenerationError):
    """Network, quota or server-side fault."""

    retryable = True


class AuthRequired(GenerationError):
    """Credentials are missing, expired or rejected."""


class ValidationFailed(GenerationError):
    """Produced media did not meet the quality bar."""

    def __init__(self, message: str = "", *, width: int = 0, height: int = 0):
        super().__init__(message, reason="validation")
        self.width = width
        self.height = height


class GenerationExhausted(GenerationError):
    """A video job used every attempt without a valid result."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"Video generation failed after {attempts} attempts{detail}")
        self.attempts = attempts
        self.last_error = last_error


VideoGenerationExhausted = GenerationExhausted


# ---------------------------------------------------------------------------
# Workflow failures
# ---------------------------------------------------------------------------

class GuardViolation(FlowstateError):
    """Action is not legal in the current workflow step."""


class NoSourceAssets(GuardViolation):
    """A batch was requested with no source assets."""


class OperationCancelled(FlowstateError):
    """In-flight work was cancelled by the caller."""
