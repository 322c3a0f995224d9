"""Core data models for the content pipeline engine.

Defines the Pydantic models and enums shared by the registry, the
dependency validator, the executors, and the checkpoint manager. Task and
phase definitions, results, and checkpoints are frozen; the processing
context and the pipeline state are the only mutable models, because the
executors update them as tasks complete.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

OUTPUT_TEXT_FIELD = "output_text"
"""Key under which a task's raw text output is stored in its stage entry."""


class ExecutionMode(StrEnum):
    """Concurrency mode of a phase."""

    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"
    GROUPED = "grouped"


class PhaseStatus(StrEnum):
    """Lifecycle of a single phase execution.

    ``PENDING -> RUNNING -> SUCCEEDED | FAILED``; both outcomes are terminal.
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Definitions (loaded once, read-only)
# ---------------------------------------------------------------------------


class RequiredInput(BaseModel):
    """Prior-stage fields a task needs before it may run.

    Attributes:
        stage_number: Stage whose merged output must be present.
        fields: Field names that must be present and non-null in that stage.
        required: When ``False`` the input is optional and never blocks.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    stage_number: int = Field(alias="stage", ge=0)
    fields: tuple[str, ...] = ()
    required: bool = True


class TaskDefinition(BaseModel):
    """Immutable definition of one pipeline task.

    Several tasks may share a ``stage_number`` when they are mutually
    exclusive variants of the same stage; ``variant_tag`` tells them apart.

    Attributes:
        key: Unique task key.
        stage_number: Slot addressing the task's output in the context.
        name: Human-readable name used in logs and errors.
        description: What the task does.
        variant_tag: Optional sub-variant tag (e.g. a platform name).
        depends_on: Keys of tasks whose output this task logically needs.
        required_inputs: Exact prior-stage fields checked before running.
    """

    model_config = ConfigDict(frozen=True)

    key: str
    stage_number: int = Field(ge=0)
    name: str | None = None
    description: str = ""
    variant_tag: str | None = None
    depends_on: frozenset[str] = frozenset()
    required_inputs: tuple[RequiredInput, ...] = ()

    @property
    def display_name(self) -> str:
        """Return the human-readable name, falling back to the key."""
        return self.name or self.key


class ExecutionGroup(BaseModel):
    """One ordered group of tasks inside a grouped phase.

    Attributes:
        tasks: Task keys in declaration order.
        parallel: Whether the group's tasks run concurrently.
    """

    model_config = ConfigDict(frozen=True)

    tasks: tuple[str, ...]
    parallel: bool = False

    @field_validator("tasks")
    @classmethod
    def _tasks_must_be_nonempty(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """Validate that the group contains at least one task."""
        if len(v) < 1:
            msg = "execution group must contain at least 1 task"
            raise ValueError(msg)
        return v


class PhaseDefinition(BaseModel):
    """Immutable definition of a pipeline phase.

    A phase with ``execution_groups`` always runs in grouped mode, whatever
    ``mode`` was declared as; grouped mode without groups is rejected.

    Attributes:
        id: Phase identifier.
        name: Human-readable name.
        description: What the phase accomplishes.
        tasks: Task keys in declaration order.
        mode: Concurrency mode.
        execution_groups: Ordered groups (grouped mode only).
        required_phases: Phases that must have completed first.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str | None = None
    description: str = ""
    tasks: tuple[str, ...]
    mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    execution_groups: tuple[ExecutionGroup, ...] | None = None
    required_phases: tuple[str, ...] = ()

    @field_validator("tasks")
    @classmethod
    def _tasks_must_be_nonempty(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """Validate that the phase contains at least one task."""
        if len(v) < 1:
            msg = "phase must contain at least 1 task"
            raise ValueError(msg)
        return v

    @model_validator(mode="before")
    @classmethod
    def _resolve_grouped_mode(cls, data: Any) -> Any:
        """Force grouped mode when execution groups are declared."""
        if isinstance(data, dict) and data.get("execution_groups"):
            data = {**data, "mode": ExecutionMode.GROUPED}
        return data

    @model_validator(mode="after")
    def _check_groups_for_grouped_mode(self) -> PhaseDefinition:
        """Reject grouped mode without any execution groups."""
        if self.mode is ExecutionMode.GROUPED and not self.execution_groups:
            msg = f"Phase {self.id!r} is grouped but declares no execution_groups"
            raise ValueError(msg)
        return self

    @property
    def display_name(self) -> str:
        """Return the human-readable name, falling back to the id."""
        return self.name or self.id


# ---------------------------------------------------------------------------
# Runtime records
# ---------------------------------------------------------------------------


class TaskRunnerOutput(BaseModel):
    """Normalized result of one Task Runner call.

    Attributes:
        output_payload: Structured output fields (merged into the stage entry).
        output_text: Raw text output.
        cost: Reported cost in USD.
        input_units: Input tokens (or other billing units) consumed.
        output_units: Output tokens (or other billing units) produced.
    """

    model_config = ConfigDict(frozen=True)

    output_payload: dict[str, Any] | None = Field(
        default=None, validation_alias=AliasChoices("output_payload", "output_data")
    )
    output_text: str | None = None
    cost: float = Field(default=0.0, ge=0.0, validation_alias=AliasChoices("cost", "cost_usd"))
    input_units: int = Field(
        default=0, ge=0, validation_alias=AliasChoices("input_units", "input_tokens")
    )
    output_units: int = Field(
        default=0, ge=0, validation_alias=AliasChoices("output_units", "output_tokens")
    )

    @field_validator("cost", "input_units", "output_units", mode="before")
    @classmethod
    def _none_as_zero(cls, v: Any) -> Any:
        """Treat usage figures reported as null as zero."""
        return 0 if v is None else v

    def stage_entry(self) -> dict[str, Any]:
        """Build the context entry for this output.

        Empty text is stored as ``None`` so that it fails required-input
        checks like a missing field.

        Returns:
            A new dict holding the payload fields plus ``output_text``.
        """
        entry: dict[str, Any] = dict(self.output_payload or {})
        entry[OUTPUT_TEXT_FIELD] = self.output_text or None
        return entry


class TaskResult(BaseModel):
    """Outcome of a single successful task execution.

    Attributes:
        task_key: Key of the task that ran.
        stage_number: Stage slot the output belongs to.
        variant_tag: Variant tag of the task, if any.
        success: Always ``True`` for a returned result; failures raise.
        output: Normalized Task Runner output.
        duration_ms: Wall-clock duration in milliseconds.
        cost: Cost reported by the Task Runner.
    """

    model_config = ConfigDict(frozen=True)

    task_key: str
    stage_number: int
    variant_tag: str | None = None
    success: bool = True
    output: TaskRunnerOutput
    duration_ms: int
    cost: float = 0.0


class GroupResult(BaseModel):
    """Aggregate of one parallel, sequential, or grouped execution.

    Attributes:
        results: Task results in declaration order.
        total_cost: Sum of the task costs.
        duration_ms: Wall-clock duration of the whole group.
    """

    model_config = ConfigDict(frozen=True)

    results: tuple[TaskResult, ...] = ()
    total_cost: float = 0.0
    duration_ms: int = 0


class PhaseResult(BaseModel):
    """Aggregated outcome of a phase.

    Attributes:
        phase_id: Identifier of the phase.
        success: Whether every task succeeded.
        task_results: Task results in execution order.
        total_cost: Sum of the task costs.
        duration_ms: Wall-clock duration of the phase.
    """

    model_config = ConfigDict(frozen=True)

    phase_id: str
    success: bool
    task_results: tuple[TaskResult, ...] = ()
    total_cost: float = 0.0
    duration_ms: int = 0


class ProcessingContext(BaseModel):
    """Mutable state shared by every phase of one pipeline run.

    Owned by the caller for the lifetime of the run and mutated in place by
    the executors. ``previous_stages`` maps a stage number to the merged
    output of the task that last wrote that slot; ``variant_outputs`` keeps
    each variant task's entry under ``[stage_number][variant_tag]`` so that
    sibling variants sharing a slot do not lose data.

    Attributes:
        run_id: Identifier of the pipeline run, included in errors.
        inputs: Free-form run inputs handed to the Task Runner.
        previous_stages: Stage number to merged stage output.
        variant_outputs: Stage number to variant tag to stage output.
    """

    run_id: str | None = None
    inputs: dict[str, Any] = Field(default_factory=dict)
    previous_stages: dict[int, dict[str, Any]] = Field(default_factory=dict)
    variant_outputs: dict[int, dict[str, dict[str, Any]]] = Field(default_factory=dict)


class Checkpoint(BaseModel):
    """Immutable snapshot of the context taken at a phase boundary.

    Attributes:
        phase_id: Phase at whose boundary the snapshot was taken.
        timestamp: UTC time of the snapshot.
        run_id: Run the snapshot belongs to.
        previous_stages: Deep copy of ``ProcessingContext.previous_stages``.
        variant_outputs: Deep copy of ``ProcessingContext.variant_outputs``.
    """

    model_config = ConfigDict(frozen=True)

    phase_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    run_id: str | None = None
    previous_stages: dict[int, dict[str, Any]] = Field(default_factory=dict)
    variant_outputs: dict[int, dict[str, dict[str, Any]]] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Configuration and run-level state
# ---------------------------------------------------------------------------


class EngineConfig(BaseModel):
    """Execution settings for the engine and the pipeline driver.

    Attributes:
        task_timeout_seconds: Per-task wall-clock budget (default 5 minutes).
        cancel_on_failure: Cancel timed-out runner calls and still-running
            parallel siblings once a task fails. Off by default, in which
            case such work is left running and its result ignored.
        max_phase_attempts: Attempts per phase in ``run_pipeline`` (1 means
            no retry).
        retry_base_delay_seconds: Base of the exponential retry backoff.
        log_level: Logging level string.
        log_file: Optional log file path.
    """

    model_config = ConfigDict(frozen=True)

    task_timeout_seconds: float = 300.0
    cancel_on_failure: bool = False
    max_phase_attempts: int = 1
    retry_base_delay_seconds: float = 1.0
    log_level: str = "INFO"
    log_file: str | None = None

    @field_validator("task_timeout_seconds")
    @classmethod
    def _timeout_must_be_positive(cls, v: float) -> float:
        """Validate that the task timeout is > 0."""
        if v <= 0:
            msg = "task_timeout_seconds must be > 0"
            raise ValueError(msg)
        return v

    @field_validator("max_phase_attempts")
    @classmethod
    def _attempts_must_be_positive(cls, v: int) -> int:
        """Validate that at least one attempt is allowed."""
        if v < 1:
            msg = "Value must be >= 1"
            raise ValueError(msg)
        return v

    @field_validator("retry_base_delay_seconds")
    @classmethod
    def _delay_must_be_non_negative(cls, v: float) -> float:
        """Validate that the retry delay is >= 0."""
        if v < 0:
            msg = "retry_base_delay_seconds must be >= 0"
            raise ValueError(msg)
        return v


class PipelineState(BaseModel):
    """Mutable runtime state for pipeline introspection.

    Attributes:
        current_phase: Phase currently executing (``None`` before start).
        phase_statuses: Status of every phase scheduled in this run.
        completed_phases: Phases that succeeded, in completion order.
        total_cost: Cost accumulated over successful phases.
        task_count: Number of successful task executions.
        elapsed_seconds: Wall-clock seconds since the run started.
    """

    current_phase: str | None = None
    phase_statuses: dict[str, PhaseStatus] = Field(default_factory=dict)
    completed_phases: list[str] = Field(default_factory=list)
    total_cost: float = 0.0
    task_count: int = 0
    elapsed_seconds: float = 0.0


class PipelineRunResult(BaseModel):
    """Result of a complete ``run_pipeline`` call.

    Attributes:
        run_id: Run identifier taken from the context.
        phase_results: One result per executed phase, in order.
        total_cost: Sum of phase costs.
        duration_ms: Wall-clock duration of the run.
        checkpoints: Checkpoint taken after each successful phase.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str | None = None
    phase_results: tuple[PhaseResult, ...] = ()
    total_cost: float = 0.0
    duration_ms: int = 0
    checkpoints: tuple[Checkpoint, ...] = ()
