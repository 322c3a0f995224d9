"""Tests for the dependency validator.

``validate_task_inputs`` must be pure, must flag a task as invalid exactly
when some required input is unmet, and must list every missing stage and
field rather than stopping at the first.
"""

from __future__ import annotations

import copy
from typing import Any

from content_pipeline.models import RequiredInput
from content_pipeline.registry import get_registry
from content_pipeline.validation import validate_task_inputs
from hypothesis import given, settings, strategies as st
import pytest

from tests.conftest import make_task_def


@pytest.mark.unit
class TestValidateTaskInputs:
    """Behavior on concrete inputs."""

    def test_no_requirements_is_valid(self) -> None:
        """A task without required inputs always validates."""
        result = validate_task_inputs(make_task_def(), {})
        assert result.valid is True
        assert result.missing == ()

    def test_missing_stage(self) -> None:
        """An absent required stage yields one whole-stage marker."""
        task = make_task_def(
            key="r",
            required_inputs=[RequiredInput(stage_number=6, fields=("output_text",))],
        )
        result = validate_task_inputs(task, {})
        assert result.valid is False
        assert result.missing == ("Stage 6 output",)

    def test_missing_and_null_fields(self) -> None:
        """Absent and null fields are both reported, per field."""
        task = make_task_def(
            required_inputs=[RequiredInput(stage_number=2, fields=("quotes", "tips", "extra"))],
        )
        result = validate_task_inputs(task, {2: {"quotes": [], "tips": None}})
        assert result.missing == ("Stage 2.tips", "Stage 2.extra")

    def test_falsy_values_count_as_present(self) -> None:
        """Empty strings, zero and empty lists are present values."""
        task = make_task_def(
            required_inputs=[RequiredInput(stage_number=1, fields=("a", "b", "c"))],
        )
        assert validate_task_inputs(task, {1: {"a": "", "b": 0, "c": []}}).valid

    def test_empty_stage_entry_is_present(self) -> None:
        """An empty stage entry exists; only its fields are missing."""
        task = make_task_def(required_inputs=[RequiredInput(stage_number=1, fields=("a",))])
        assert validate_task_inputs(task, {1: {}}).missing == ("Stage 1.a",)

    def test_optional_requirement_never_blocks(self) -> None:
        """``required=False`` entries produce no markers."""
        task = make_task_def(
            required_inputs=[RequiredInput(stage_number=0, fields=("themes",), required=False)],
        )
        assert validate_task_inputs(task, {}).valid
        assert validate_task_inputs(task, {0: {"themes": None}}).valid

    def test_lists_every_missing_input(self) -> None:
        """Markers from every requirement are collected in order."""
        draft = get_registry().get_task("draft")
        result = validate_task_inputs(draft, {0: {"episode_name": "E"}, 2: {"quotes": []}})
        assert result.missing == (
            "Stage 0.seo_overview",
            "Stage 1 output",
            "Stage 2.tips",
            "Stage 3 output",
            "Stage 4 output",
            "Stage 5 output",
        )

    def test_does_not_mutate_context(self) -> None:
        """Validation is side-effect free."""
        stages: dict[int, dict[str, Any]] = {3: {"outline": None}}
        before = copy.deepcopy(stages)
        task = make_task_def(required_inputs=[RequiredInput(stage_number=3, fields=("outline",))])
        validate_task_inputs(task, stages)
        assert stages == before

    def test_result_names_task(self) -> None:
        """The result records which task was validated."""
        assert validate_task_inputs(make_task_def(key="zeta"), {}).task_key == "zeta"


_FIELDS = st.sampled_from(["a", "b", "c", "d"])
_STAGES = st.integers(min_value=0, max_value=4)

_requirements = st.lists(
    st.builds(
        RequiredInput,
        stage_number=_STAGES,
        fields=st.lists(_FIELDS, max_size=3, unique=True).map(tuple),
        required=st.booleans(),
    ),
    max_size=4,
)

_previous_stages = st.dictionaries(
    _STAGES,
    st.dictionaries(_FIELDS, st.one_of(st.none(), st.integers(), st.text(max_size=3)), max_size=4),
    max_size=5,
)


def _unmet(req: RequiredInput, stages: dict[int, dict[str, Any]]) -> bool:
    """Reference check: is *req* unmet in *stages*?"""
    if req.stage_number not in stages:
        return True
    return any(stages[req.stage_number].get(f) is None for f in req.fields)


@pytest.mark.unit
class TestValidationProperties:
    """Property-based checks against a reference definition."""

    @given(_requirements, _previous_stages)
    @settings(max_examples=100)
    def test_invalid_iff_some_required_input_unmet(
        self,
        requirements: list[RequiredInput],
        stages: dict[int, dict[str, Any]],
    ) -> None:
        """valid is False exactly when a required entry is unmet."""
        task = make_task_def(required_inputs=requirements)
        expected_invalid = any(req.required and _unmet(req, stages) for req in requirements)
        assert validate_task_inputs(task, stages).valid is not expected_invalid

    @given(_requirements, _previous_stages)
    @settings(max_examples=100)
    def test_marker_count_matches_unmet_inputs(
        self,
        requirements: list[RequiredInput],
        stages: dict[int, dict[str, Any]],
    ) -> None:
        """One marker per absent stage, else one per absent or null field."""
        expected = 0
        for req in requirements:
            if not req.required:
                continue
            if req.stage_number not in stages:
                expected += 1
            else:
                expected += sum(stages[req.stage_number].get(f) is None for f in req.fields)
        task = make_task_def(required_inputs=requirements)
        assert len(validate_task_inputs(task, stages).missing) == expected
