"""Error taxonomy for the tender intelligence pipeline.

``ValidationError``, ``SubjectNotFound`` and ``RetrievalUnavailable`` reach
the caller. Generation and decode failures are recovered inside the
orchestrator. A failed write is logged by the store callers so a freshly
computed result is still returned; a store that cannot be read surfaces as
``PersistenceError``.
"""
from __future__ import annotations


class PipelineError(Exception):
    """Base class for pipeline errors."""


class ValidationError(PipelineError):
    """A required identifier is missing or malformed."""


class SubjectNotFound(PipelineError):
    """The tender (or a prerequisite record) does not exist for this user."""


class RetrievalUnavailable(PipelineError):
    """Every retrieval partition failed."""

    def __init__(self, message: str, failures: dict[str, Exception] | None = None):
        super().__init__(message)
        self.failures = failures or {}


class GenerationTaskFailure(PipelineError):
    """One generation task failed or timed out."""

    def __init__(self, task_key: str, message: str):
        super().__init__(f"{task_key}: {message}")
        self.task_key = task_key


class DecodeFailure(PipelineError):
    """A decoder tier could not produce a value."""


class PersistenceError(PipelineError):
    """Reading from or writing to the store failed."""
