"""Dependency validator: checks a task's required prior-stage inputs.

``validate_task_inputs`` is a pure function called before every task
execution. It never mutates the context and reports every missing stage or
field, not just the first one.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, computed_field

from content_pipeline.models import TaskDefinition


class InputValidationResult(BaseModel):
    """Outcome of validating a task's inputs.

    Attributes:
        task_key: Task that was validated.
        missing: Markers for every unmet required input, in declaration order.
    """

    model_config = ConfigDict(frozen=True)

    task_key: str
    missing: tuple[str, ...] = ()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def valid(self) -> bool:
        """Whether no required input is missing."""
        return not self.missing


def missing_stage_marker(stage_number: int) -> str:
    """Return the marker for an absent stage entry."""
    return f"Stage {stage_number} output"


def missing_field_marker(stage_number: int, field: str) -> str:
    """Return the marker for an absent or null field of a stage."""
    return f"Stage {stage_number}.{field}"


def validate_task_inputs(
    task: TaskDefinition,
    previous_stages: Mapping[int, Mapping[str, Any] | None],
) -> InputValidationResult:
    """Check that *task*'s required inputs exist in *previous_stages*.

    For each ``required_inputs`` entry: an absent stage yields a
    ``"Stage N output"`` marker; otherwise every listed field that is absent
    or ``None`` yields a ``"Stage N.field"`` marker. Entries declared with
    ``required=False`` never produce markers.

    Args:
        task: Definition of the task about to run.
        previous_stages: Merged stage outputs from the processing context.

    Returns:
        An ``InputValidationResult`` listing every missing marker.
    """
    missing: list[str] = []

    for requirement in task.required_inputs:
        if not requirement.required:
            continue

        stage_data = previous_stages.get(requirement.stage_number)
        if stage_data is None:
            missing.append(missing_stage_marker(requirement.stage_number))
            continue

        for field in requirement.fields:
            if stage_data.get(field) is None:
                missing.append(missing_field_marker(requirement.stage_number, field))

    return InputValidationResult(task_key=task.key, missing=tuple(missing))
