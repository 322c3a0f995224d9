"""Shared fixtures for the content_pipeline test suite."""

from __future__ import annotations

import asyncio
import copy
from typing import Any
from unittest.mock import AsyncMock

from content_pipeline.models import (
    EngineConfig,
    PhaseDefinition,
    ProcessingContext,
    TaskDefinition,
    TaskRunnerOutput,
)
from content_pipeline.registry import PipelineRegistry, _reset_registry
import pytest

# ---------------------------------------------------------------------------
# Factory functions (plain functions, importable from conftest)
# ---------------------------------------------------------------------------


def make_task_def(**overrides: Any) -> TaskDefinition:
    """Build a valid TaskDefinition with sensible defaults.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed TaskDefinition instance.
    """
    defaults: dict[str, Any] = {
        "key": "alpha",
        "stage_number": 1,
        "name": "Alpha",
    }
    defaults.update(overrides)
    return TaskDefinition(**defaults)


def make_phase_def(**overrides: Any) -> PhaseDefinition:
    """Build a valid PhaseDefinition with sensible defaults."""
    defaults: dict[str, Any] = {
        "id": "main",
        "tasks": ("alpha",),
    }
    defaults.update(overrides)
    return PhaseDefinition(**defaults)


def make_context(**overrides: Any) -> ProcessingContext:
    """Build a fresh ProcessingContext with a run id."""
    defaults: dict[str, Any] = {"run_id": "run-1"}
    defaults.update(overrides)
    return ProcessingContext(**defaults)


def make_output(**overrides: Any) -> TaskRunnerOutput:
    """Build a TaskRunnerOutput with sensible defaults."""
    defaults: dict[str, Any] = {
        "output_payload": {"value": "ok"},
        "output_text": "text",
        "cost": 0.01,
        "input_units": 100,
        "output_units": 50,
    }
    defaults.update(overrides)
    return TaskRunnerOutput(**defaults)


TEST_PIPELINE: dict[str, Any] = {
    "phase_order": ["pair", "fanout", "write", "burst", "variants"],
    "tasks": {
        "x": {"stage_number": 1, "name": "Task X"},
        "y": {"stage_number": 2, "name": "Task Y"},
        "o": {"stage_number": 3, "name": "Outline"},
        "p": {
            "stage_number": 4,
            "name": "Paragraphs",
            "depends_on": ["o"],
            "required_inputs": [{"stage": 3, "fields": ["outline"]}],
        },
        "q": {
            "stage_number": 5,
            "name": "Headlines",
            "depends_on": ["o"],
            "required_inputs": [{"stage": 3, "fields": ["outline"]}],
        },
        "d": {"stage_number": 6, "name": "Draft"},
        "r": {
            "stage_number": 7,
            "name": "Refine",
            "depends_on": ["d"],
            "required_inputs": [{"stage": 6, "fields": ["output_text"], "required": True}],
        },
        "t1": {"stage_number": 10, "name": "Burst 1"},
        "t2": {"stage_number": 11, "name": "Burst 2"},
        "t3": {"stage_number": 12, "name": "Burst 3"},
        "t4": {"stage_number": 13, "name": "Burst 4"},
        "t5": {"stage_number": 14, "name": "Burst 5"},
        "v_a": {"stage_number": 20, "variant_tag": "a", "name": "Variant A"},
        "v_b": {"stage_number": 20, "variant_tag": "b", "name": "Variant B"},
    },
    "phases": {
        "pair": {"tasks": ["x", "y"], "mode": "parallel"},
        "fanout": {
            "tasks": ["o", "p", "q"],
            "mode": "grouped",
            "required_phases": ["pair"],
            "execution_groups": [
                {"tasks": ["o"]},
                {"tasks": ["p", "q"], "parallel": True},
            ],
        },
        "write": {"tasks": ["d", "r"], "mode": "sequential"},
        "burst": {"tasks": ["t1", "t2", "t3", "t4", "t5"], "mode": "parallel"},
        "variants": {"tasks": ["v_a", "v_b"], "mode": "parallel"},
    },
}
"""Small pipeline covering every execution mode."""


def make_registry(data: dict[str, Any] | None = None) -> PipelineRegistry:
    """Build a PipelineRegistry from *data* (the test pipeline by default)."""
    return PipelineRegistry.from_mapping(copy.deepcopy(data if data is not None else TEST_PIPELINE))


def make_config(**overrides: Any) -> EngineConfig:
    """Build an EngineConfig with fast test defaults."""
    defaults: dict[str, Any] = {"task_timeout_seconds": 5.0, "retry_base_delay_seconds": 0.0}
    defaults.update(overrides)
    return EngineConfig(**defaults)


class ScriptedRunner:
    """Task Runner double driven by per-stage tables.

    Tables are keyed by ``(stage_number, variant_tag)`` or by the bare
    stage number. Every call records the key and a deep copy of the stage
    outputs visible at call time.

    Attributes:
        calls: ``(stage_number, variant_tag)`` per call, in call order.
        seen_stages: Snapshot of ``previous_stages`` at each call.
        finished: Keys of calls that returned normally, in completion order.
    """

    def __init__(
        self,
        outputs: dict[Any, TaskRunnerOutput | dict[str, Any]] | None = None,
        *,
        delays: dict[Any, float] | None = None,
        errors: dict[Any, BaseException] | None = None,
    ) -> None:
        self.outputs = outputs or {}
        self.delays = delays or {}
        self.errors = errors or {}
        self.calls: list[tuple[int, str | None]] = []
        self.seen_stages: list[dict[int, dict[str, Any]]] = []
        self.finished: list[tuple[int, str | None]] = []

    @staticmethod
    def _lookup(table: dict[Any, Any], key: tuple[int, str | None], default: Any) -> Any:
        if key in table:
            return table[key]
        return table.get(key[0], default)

    async def run(
        self,
        stage_number: int,
        context: ProcessingContext,
        *,
        variant_tag: str | None = None,
    ) -> TaskRunnerOutput | dict[str, Any]:
        key = (stage_number, variant_tag)
        self.calls.append(key)
        self.seen_stages.append(copy.deepcopy(context.previous_stages))

        delay = self._lookup(self.delays, key, 0.0)
        if delay:
            await asyncio.sleep(delay)

        error = self._lookup(self.errors, key, None)
        if error is not None:
            raise error

        self.finished.append(key)
        output = self._lookup(self.outputs, key, None)
        if output is None:
            output = make_output(
                output_payload={"stage": stage_number, "variant": variant_tag},
                output_text=f"stage {stage_number}",
            )
        return output


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _fresh_singleton_registry() -> Any:
    """Reset the packaged-registry singleton around every test."""
    _reset_registry()
    yield
    _reset_registry()


@pytest.fixture()
def registry() -> PipelineRegistry:
    """Return the small test pipeline registry."""
    return make_registry()


@pytest.fixture()
def context() -> ProcessingContext:
    """Return an empty processing context."""
    return make_context()


@pytest.fixture()
def mock_runner() -> AsyncMock:
    """Return an AsyncMock Task Runner whose ``run`` returns ``make_output()``."""
    runner = AsyncMock()
    runner.run = AsyncMock(return_value=make_output())
    return runner
