"""Typed errors surfaced by the pipeline engine.

Every failure that leaves the engine is a ``PipelineError`` carrying the
stage number, the task or phase name, the message, the run identifier, and
the underlying cause, so callers can diagnose a failed phase without
inspecting engine internals.

Taxonomy:
    ``ConfigurationError``: unknown task/phase key or inconsistent registry;
        a programming defect, never retryable.
    ``InputValidationError``: required prior-stage input missing; the Task
        Runner was never invoked, never retryable.
    ``TaskExecutionError``: the Task Runner failed.
    ``TaskTimeoutError``: the Task Runner exceeded its time budget; treated
        like an execution error.
    ``PhaseExecutionError``: a non-typed failure caught at the phase
        boundary.
"""

from __future__ import annotations

from typing import Any

UNKNOWN_STAGE = -1
"""Stage number used when an error is not tied to a single stage."""


class PipelineError(Exception):
    """Pipeline failure with structured context.

    Attributes:
        stage_number: Stage where the failure happened (``-1`` if none).
        name: Task or phase name.
        message: Human-readable description without the stage prefix.
        run_id: Identifier of the pipeline run, if known.
        cause: Underlying exception, if any.
        retryable: Whether re-running the phase may succeed.
        diagnostics: Extra structured context for logs.
    """

    retryable_default: bool = True

    def __init__(
        self,
        stage_number: int,
        name: str,
        message: str,
        *,
        run_id: str | None = None,
        cause: BaseException | None = None,
        retryable: bool | None = None,
        diagnostics: dict[str, Any] | None = None,
    ) -> None:
        """Initialize with stage, name, and message.

        Args:
            stage_number: Stage where the failure happened.
            name: Task or phase name.
            message: What went wrong.
            run_id: Identifier of the pipeline run.
            cause: Underlying exception.
            retryable: Explicit retryability; derived from the class default
                and the cause when omitted.
            diagnostics: Extra structured context.
        """
        super().__init__(f"Stage {stage_number} ({name}) failed: {message}")
        self.stage_number = stage_number
        self.name = name
        self.message = message
        self.run_id = run_id
        self.cause = cause
        self.diagnostics: dict[str, Any] = dict(diagnostics or {})
        if retryable is None:
            retryable = self.retryable_default
            if cause is not None and retryable:
                retryable = bool(getattr(cause, "retryable", True))
        self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable view of the error for logs."""
        return {
            "type": type(self).__name__,
            "stage_number": self.stage_number,
            "name": self.name,
            "message": self.message,
            "run_id": self.run_id,
            "cause": repr(self.cause) if self.cause is not None else None,
            "retryable": self.retryable,
            "diagnostics": self.diagnostics,
        }


class ConfigurationError(PipelineError):
    """Unknown task/phase key or an inconsistent registry."""

    retryable_default = False

    def __init__(self, name: str, message: str, **kwargs: Any) -> None:
        """Initialize a configuration error not tied to a stage.

        Args:
            name: Offending task key, phase id, or component name.
            message: What is wrong with the configuration.
            **kwargs: Forwarded to ``PipelineError``.
        """
        kwargs.setdefault("retryable", False)
        super().__init__(UNKNOWN_STAGE, name, message, **kwargs)


class InputValidationError(PipelineError):
    """A task's required prior-stage inputs are missing.

    Attributes:
        missing: Markers naming every missing stage or field.
    """

    retryable_default = False

    def __init__(
        self,
        stage_number: int,
        name: str,
        missing: list[str],
        **kwargs: Any,
    ) -> None:
        """Initialize from the validator's missing markers.

        Args:
            stage_number: Stage of the task that could not run.
            name: Task name.
            missing: Missing stage/field markers.
            **kwargs: Forwarded to ``PipelineError``.
        """
        kwargs.setdefault("retryable", False)
        super().__init__(
            stage_number,
            name,
            f"Missing required inputs: {', '.join(missing)}",
            **kwargs,
        )
        self.missing = list(missing)


class TaskExecutionError(PipelineError):
    """The Task Runner raised while executing a task."""


class TaskTimeoutError(TaskExecutionError):
    """The Task Runner exceeded the per-task time budget.

    Attributes:
        timeout_seconds: The budget that was exceeded.
    """

    def __init__(
        self,
        stage_number: int,
        name: str,
        timeout_seconds: float,
        **kwargs: Any,
    ) -> None:
        """Initialize from the exceeded budget.

        Args:
            stage_number: Stage of the task that timed out.
            name: Task name.
            timeout_seconds: The budget that was exceeded.
            **kwargs: Forwarded to ``PipelineError``.
        """
        super().__init__(
            stage_number,
            name,
            f"Task timed out after {timeout_seconds:g} seconds",
            **kwargs,
        )
        self.timeout_seconds = timeout_seconds


class PhaseExecutionError(PipelineError):
    """A non-typed failure wrapped at the phase boundary."""

    def __init__(self, name: str, message: str, **kwargs: Any) -> None:
        """Initialize a phase-scoped error.

        Args:
            name: Phase name.
            message: What went wrong.
            **kwargs: Forwarded to ``PipelineError``.
        """
        super().__init__(UNKNOWN_STAGE, name, message, **kwargs)


def is_retryable(exc: BaseException) -> bool:
    """Return whether re-running the failed phase may succeed.

    Typed errors answer with their ``retryable`` flag; anything else is
    treated as not retryable.

    Args:
        exc: The exception to classify.

    Returns:
        ``True`` if a retry is worthwhile.
    """
    if isinstance(exc, PipelineError):
        return exc.retryable
    return bool(getattr(exc, "retryable", False))
