"""Checkpoint manager: snapshot and restore the context at phase boundaries.

A checkpoint is a deep copy of the context's stage outputs. Restoring it
discards every mutation made since the snapshot, which lets a caller retry
a failed phase without re-running the phases before it::

    checkpoint = create_checkpoint(context, "plan")
    try:
        await executor.run_phase("plan", context)
    except PipelineError:
        restore_checkpoint(context, checkpoint)
        await executor.run_phase("plan", context)

``Checkpoint`` is a frozen Pydantic model, so ``model_dump_json()`` and
``Checkpoint.model_validate_json()`` serialize it for callers that persist
it.
"""

from __future__ import annotations

import copy
import logging

from content_pipeline.models import Checkpoint, ProcessingContext

logger = logging.getLogger(__name__)


def create_checkpoint(context: ProcessingContext, phase_id: str) -> Checkpoint:
    """Snapshot the stage outputs of *context*.

    Args:
        context: Processing context to snapshot.
        phase_id: Phase at whose boundary the snapshot is taken.

    Returns:
        A checkpoint holding deep copies of the stage outputs.
    """
    checkpoint = Checkpoint(
        phase_id=phase_id,
        run_id=context.run_id,
        previous_stages=copy.deepcopy(context.previous_stages),
        variant_outputs=copy.deepcopy(context.variant_outputs),
    )
    logger.debug(
        "Checkpoint created at phase %s (%d stages)",
        phase_id,
        len(checkpoint.previous_stages),
    )
    return checkpoint


def restore_checkpoint(context: ProcessingContext, checkpoint: Checkpoint) -> None:
    """Replace the stage outputs of *context* with the checkpoint's.

    The checkpoint itself is copied, never shared, so it can be restored
    again later.

    Args:
        context: Processing context to restore in place.
        checkpoint: Snapshot to restore.
    """
    context.previous_stages = copy.deepcopy(checkpoint.previous_stages)
    context.variant_outputs = copy.deepcopy(checkpoint.variant_outputs)
    logger.info(
        "Restored from checkpoint: phase=%s, timestamp=%s, run=%s",
        checkpoint.phase_id,
        checkpoint.timestamp.isoformat(),
        checkpoint.run_id,
    )
