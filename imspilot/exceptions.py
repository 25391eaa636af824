"""Exception hierarchy for imspilot."""

from __future__ import annotations

from typing import Any, Optional


class ImsPilotError(Exception):
    """Base class for all imspilot exceptions."""


class ConfigError(ImsPilotError):
    """Raised when required configuration values are missing or invalid."""


class GroupSelectionError(ImsPilotError):
    """Raised when a course group selection policy cannot be satisfied."""


# -----------------------------
# Per-activity outcomes
# -----------------------------

class SkipActivity(ImsPilotError):
    """The activity was deliberately not completed. Reported as a skip."""


class ExamExhaustedError(SkipActivity):
    """The exam loop hit its retry ceiling without reaching the pass threshold."""


class UnsupportedActivityError(SkipActivity):
    """The current lane has no way to complete this kind of activity."""


class FatalActivityError(ImsPilotError):
    """Errors that end the current activity without further retries."""


class MissingAttemptTokenError(FatalActivityError):
    """The grading service did not hand out a submission id for a new attempt."""


# -----------------------------
# Grading service errors
# -----------------------------

class ExamApiError(ImsPilotError):
    """Failures talking to the grading service (HTTP errors, bad payloads)."""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class RateLimitedError(ExamApiError):
    """HTTP 429 from the grading service."""


class SubmissionRejectedError(ExamApiError, FatalActivityError):
    """HTTP 400 from the grading service. Retrying the same request is useless."""


# -----------------------------
# Answering errors
# -----------------------------

class AIInferenceError(ImsPilotError):
    """The model call failed or its output could not be parsed."""


class ResolverStateError(ImsPilotError):
    """A resolver reached a state its learned evidence should make impossible."""
