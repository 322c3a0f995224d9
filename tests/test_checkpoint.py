"""Tests for checkpoint snapshot and restore."""

from __future__ import annotations

import copy
from typing import Any

from content_pipeline.checkpoint import create_checkpoint, restore_checkpoint
from content_pipeline.models import Checkpoint
from hypothesis import given, settings, strategies as st
import pytest

from tests.conftest import make_context


@pytest.mark.unit
class TestCreateCheckpoint:
    """create_checkpoint deep-copies the stage outputs."""

    def test_records_phase_and_run(self) -> None:
        """The checkpoint names its phase and run."""
        checkpoint = create_checkpoint(make_context(run_id="r-7"), "plan")
        assert checkpoint.phase_id == "plan"
        assert checkpoint.run_id == "r-7"
        assert checkpoint.timestamp.tzinfo is not None

    def test_snapshot_is_independent(self) -> None:
        """Later mutation of the context does not reach the snapshot."""
        context = make_context()
        context.previous_stages[1] = {"summary": "s", "tags": ["a"]}
        context.variant_outputs[8] = {"twitter": {"post": "p"}}

        checkpoint = create_checkpoint(context, "extract")
        context.previous_stages[1]["tags"].append("b")
        context.previous_stages[2] = {"quotes": []}
        context.variant_outputs[8]["twitter"]["post"] = "changed"

        assert checkpoint.previous_stages == {1: {"summary": "s", "tags": ["a"]}}
        assert checkpoint.variant_outputs == {8: {"twitter": {"post": "p"}}}


@pytest.mark.unit
class TestRestoreCheckpoint:
    """restore_checkpoint discards everything since the snapshot."""

    def test_restore_discards_changes(self) -> None:
        """Added and modified stages are rolled back."""
        # Arrange
        context = make_context()
        context.previous_stages[3] = {"outline": "O"}
        checkpoint = create_checkpoint(context, "plan")
        context.previous_stages[3]["outline"] = "changed"
        context.previous_stages[4] = {"section_details": []}
        context.variant_outputs[8] = {"x": {}}

        # Act
        restore_checkpoint(context, checkpoint)

        # Assert
        assert context.previous_stages == {3: {"outline": "O"}}
        assert context.variant_outputs == {}

    def test_restore_twice(self) -> None:
        """A checkpoint survives being restored and mutated."""
        context = make_context()
        context.previous_stages[1] = {"a": [1]}
        checkpoint = create_checkpoint(context, "extract")

        restore_checkpoint(context, checkpoint)
        context.previous_stages[1]["a"].append(2)
        restore_checkpoint(context, checkpoint)

        assert context.previous_stages == {1: {"a": [1]}}

    def test_restore_keeps_run_metadata(self) -> None:
        """Only stage outputs are restored."""
        context = make_context(run_id="keep", inputs={"transcript": "t"})
        checkpoint = create_checkpoint(context, "pregate")
        restore_checkpoint(context, checkpoint)
        assert context.run_id == "keep"
        assert context.inputs == {"transcript": "t"}

    def test_restore_logs(self, caplog: pytest.LogCaptureFixture) -> None:
        """Restores are logged with the phase id."""
        context = make_context()
        checkpoint = create_checkpoint(context, "write")
        with caplog.at_level("INFO", logger="content_pipeline.checkpoint"):
            restore_checkpoint(context, checkpoint)
        assert "phase=write" in caplog.text


@pytest.mark.unit
class TestCheckpointSerialization:
    """Checkpoints serialize to JSON for callers that persist them."""

    def test_json_round_trip(self) -> None:
        """Integer stage keys survive a JSON round trip."""
        context = make_context()
        context.previous_stages = {0: {"themes": ["x"]}, 7: {"output_text": "final"}}
        checkpoint = create_checkpoint(context, "write")

        restored = Checkpoint.model_validate_json(checkpoint.model_dump_json())

        assert restored == checkpoint
        assert set(restored.previous_stages) == {0, 7}


_stage_entries = st.dictionaries(
    st.integers(min_value=0, max_value=20),
    st.dictionaries(
        st.text(min_size=1, max_size=8),
        st.one_of(st.none(), st.integers(), st.text(max_size=8), st.lists(st.integers(), max_size=3)),
        max_size=4,
    ),
    max_size=6,
)


@pytest.mark.unit
class TestCheckpointProperties:
    """Snapshot then restore is the identity on stage outputs."""

    @given(_stage_entries, _stage_entries)
    @settings(max_examples=50)
    def test_restore_undoes_any_mutation(
        self,
        before: dict[int, dict[str, Any]],
        after: dict[int, dict[str, Any]],
    ) -> None:
        """Whatever happens after the snapshot, restore brings it back."""
        context = make_context()
        context.previous_stages = copy.deepcopy(before)
        checkpoint = create_checkpoint(context, "p")

        context.previous_stages.update(copy.deepcopy(after))
        for entry in context.previous_stages.values():
            entry["mutated"] = True
        restore_checkpoint(context, checkpoint)

        assert context.previous_stages == before
