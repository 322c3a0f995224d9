"""Pipeline orchestrator: drives phases in order with checkpointed retries.

Provides ``run_pipeline()`` (async) and ``run_pipeline_sync()`` (sync
wrapper) as the top-level entry points. The orchestrator walks the phase
order, checks each phase's prerequisites, snapshots the context before
every phase, and on a retryable failure restores the snapshot and runs the
whole phase again. Also hosts environment overrides and logging setup.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
import logging
import os
import time
from typing import Any

from content_pipeline.checkpoint import create_checkpoint, restore_checkpoint
from content_pipeline.errors import ConfigurationError, PipelineError
from content_pipeline.executor import PhaseExecutor, PipelineObserver, TaskRunner
from content_pipeline.models import (
    Checkpoint,
    EngineConfig,
    PhaseResult,
    PhaseStatus,
    PipelineRunResult,
    PipelineState,
    ProcessingContext,
)
from content_pipeline.registry import PipelineRegistry, get_registry

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Environment variable support
# ---------------------------------------------------------------------------

_ENV_FIELD_MAP: dict[str, str] = {
    "CONTENT_PIPELINE_LOG_LEVEL": "log_level",
    "CONTENT_PIPELINE_TASK_TIMEOUT": "task_timeout_seconds",
    "CONTENT_PIPELINE_MAX_PHASE_ATTEMPTS": "max_phase_attempts",
}
"""Maps environment variable names to EngineConfig field names."""


def apply_env_overrides(config: EngineConfig) -> EngineConfig:
    """Apply ``CONTENT_PIPELINE_*`` env var overrides to a config.

    Environment variables override **default** field values but not values
    explicitly set on *config*; a field counts as explicitly set when it
    differs from the ``EngineConfig`` default. Unparseable or invalid values
    are ignored.

    Args:
        config: The engine configuration to apply overrides to.

    Returns:
        A new ``EngineConfig`` with overrides applied, or *config* itself.
    """
    defaults = EngineConfig()
    overrides: dict[str, Any] = {}

    for env_var, field_name in _ENV_FIELD_MAP.items():
        env_value = os.environ.get(env_var)
        if env_value is None:
            continue

        if getattr(config, field_name) != getattr(defaults, field_name):
            continue

        parsed = _parse_env_value(field_name, env_value)
        if parsed is not None:
            overrides[field_name] = parsed

    if not overrides:
        return config

    return config.model_copy(update=overrides)


def _parse_env_value(field_name: str, raw: str) -> Any:
    """Parse a raw env var string for *field_name*.

    Returns:
        The parsed value, or ``None`` if it is unparseable or out of range.
    """
    if field_name == "log_level":
        return raw

    if field_name == "task_timeout_seconds":
        try:
            timeout = float(raw)
        except ValueError:
            return None
        return timeout if timeout > 0 else None

    if field_name == "max_phase_attempts":
        try:
            attempts = int(raw)
        except ValueError:
            return None
        return attempts if attempts >= 1 else None

    return None


# ---------------------------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------------------------

_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(config: EngineConfig) -> None:
    """Configure the ``content_pipeline`` logger.

    Adds a console handler and, when ``config.log_file`` is set, a file
    handler. Idempotent: repeated calls do not duplicate handlers.

    Args:
        config: Engine configuration providing ``log_level`` and ``log_file``.
    """
    pipeline_logger = logging.getLogger("content_pipeline")
    pipeline_logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    if not any(type(h) is logging.StreamHandler for h in pipeline_logger.handlers):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(_LOG_FORMAT))
        pipeline_logger.addHandler(console)

    if config.log_file is not None:
        has_file = any(
            isinstance(h, logging.FileHandler)
            and getattr(h, "baseFilename", None) == os.path.abspath(config.log_file)
            for h in pipeline_logger.handlers
        )
        if not has_file:
            file_handler = logging.FileHandler(config.log_file)
            file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
            pipeline_logger.addHandler(file_handler)


# ---------------------------------------------------------------------------
# Phase retry
# ---------------------------------------------------------------------------


async def run_phase_with_retry(
    executor: PhaseExecutor,
    phase_id: str,
    context: ProcessingContext,
    *,
    max_attempts: int = 1,
    base_delay_seconds: float = 1.0,
) -> PhaseResult:
    """Run a phase atomically, retrying it as a whole on retryable failures.

    The context is snapshotted before the first attempt and restored after
    every failed one, so a failed phase leaves no partial merges behind.
    Delays between attempts follow ``base_delay_seconds * 2**attempt``.

    Args:
        executor: Executor to run the phase with.
        phase_id: Phase to run.
        context: Shared processing context.
        max_attempts: Total attempts, including the first.
        base_delay_seconds: Base of the exponential backoff.

    Returns:
        The result of the first successful attempt.

    Raises:
        PipelineError: The last failure, once attempts are exhausted or the
            failure is not retryable.
    """
    checkpoint = create_checkpoint(context, phase_id)

    for attempt in range(max_attempts):
        try:
            return await executor.run_phase(phase_id, context)
        except PipelineError as exc:
            restore_checkpoint(context, checkpoint)
            if not exc.retryable or attempt >= max_attempts - 1:
                raise
            delay = base_delay_seconds * 2**attempt
            logger.warning(
                "Phase %s attempt %d/%d failed (%s); retrying in %gs",
                phase_id,
                attempt + 1,
                max_attempts,
                exc,
                delay,
            )
            await asyncio.sleep(delay)

    msg = "run_phase_with_retry called with max_attempts=0"
    raise ValueError(msg)


# ---------------------------------------------------------------------------
# Phase sequencing
# ---------------------------------------------------------------------------


def _resolve_phase_ids(
    registry: PipelineRegistry,
    phases: Sequence[str] | None,
    start_phase: str | None,
) -> list[str]:
    """Return the phases to run, in order.

    Raises:
        ConfigurationError: If a phase id is unknown or *start_phase* is
            not among the phases to run.
    """
    phase_ids = list(phases) if phases is not None else list(registry.phase_order)
    for phase_id in phase_ids:
        registry.get_phase(phase_id)

    if start_phase is not None:
        if start_phase not in phase_ids:
            raise ConfigurationError(start_phase, f"start phase {start_phase} is not scheduled")
        phase_ids = phase_ids[phase_ids.index(start_phase) :]

    return phase_ids


def _check_required_phases(
    registry: PipelineRegistry,
    phase_id: str,
    state: PipelineState,
    context: ProcessingContext,
) -> None:
    """Verify that every phase *phase_id* requires has completed.

    A required phase counts as completed if it succeeded in this run, or if
    all the stages it writes are already present in the context (resumed
    run).

    Raises:
        ConfigurationError: If a required phase has not completed.
    """
    for required in registry.get_phase(phase_id).required_phases:
        if required in state.completed_phases:
            continue
        if registry.stages_for_phase(required) <= context.previous_stages.keys():
            continue
        raise ConfigurationError(
            phase_id,
            f"required phase {required} has not completed",
            run_id=context.run_id,
        )


def _log_run_summary(result: PipelineRunResult) -> None:
    """Log a one-line summary per phase."""
    for phase_result in result.phase_results:
        logger.info(
            "  %s: %d tasks, cost=$%.4f, %dms",
            phase_result.phase_id,
            len(phase_result.task_results),
            phase_result.total_cost,
            phase_result.duration_ms,
        )


# ---------------------------------------------------------------------------
# Pipeline entry points
# ---------------------------------------------------------------------------


async def run_pipeline(
    context: ProcessingContext,
    runner: TaskRunner,
    *,
    registry: PipelineRegistry | None = None,
    config: EngineConfig | None = None,
    observer: PipelineObserver | None = None,
    phases: Sequence[str] | None = None,
    start_phase: str | None = None,
    state: PipelineState | None = None,
) -> PipelineRunResult:
    """Run the pipeline's phases in order against *context*.

    Args:
        context: Processing context for this run, mutated in place.
        runner: External Task Runner.
        registry: Definitions to use. Defaults to the packaged pipeline.
        config: Engine configuration. Defaults to ``EngineConfig()``.
        observer: Progress hooks.
        phases: Phases to run. Defaults to the registry's phase order.
        start_phase: Resume from this phase, skipping those before it.
        state: Optional state object to update for live introspection.

    Returns:
        Per-phase results, total cost, duration, and post-phase checkpoints.

    Raises:
        ConfigurationError: If a phase is unknown or its prerequisites have
            not completed.
        PipelineError: If a phase fails after all attempts.
    """
    resolved_config = apply_env_overrides(config if config is not None else EngineConfig())
    configure_logging(resolved_config)
    resolved_registry = registry if registry is not None else get_registry()

    phase_ids = _resolve_phase_ids(resolved_registry, phases, start_phase)
    executor = PhaseExecutor(
        runner,
        registry=resolved_registry,
        config=resolved_config,
        observer=observer,
    )

    if state is None:
        state = PipelineState()
    state.phase_statuses.update({phase_id: PhaseStatus.PENDING for phase_id in phase_ids})

    logger.info(
        "Pipeline run %s: %d phases (%s), timeout=%gs, max_attempts=%d",
        context.run_id,
        len(phase_ids),
        ", ".join(phase_ids),
        resolved_config.task_timeout_seconds,
        resolved_config.max_phase_attempts,
    )

    pipeline_start = time.monotonic()
    phase_results: list[PhaseResult] = []
    checkpoints: list[Checkpoint] = []

    for index, phase_id in enumerate(phase_ids, start=1):
        _check_required_phases(resolved_registry, phase_id, state, context)
        state.current_phase = phase_id
        state.phase_statuses[phase_id] = PhaseStatus.RUNNING
        logger.info("Phase %s [%d/%d]", phase_id, index, len(phase_ids))

        try:
            result = await run_phase_with_retry(
                executor,
                phase_id,
                context,
                max_attempts=resolved_config.max_phase_attempts,
                base_delay_seconds=resolved_config.retry_base_delay_seconds,
            )
        except PipelineError as exc:
            state.phase_statuses[phase_id] = PhaseStatus.FAILED
            state.elapsed_seconds = time.monotonic() - pipeline_start
            exc.diagnostics.update(
                {
                    "phase_id": phase_id,
                    "completed_phases": list(state.completed_phases),
                    "elapsed_seconds": state.elapsed_seconds,
                }
            )
            logger.error("Pipeline run %s failed in phase %s: %s", context.run_id, phase_id, exc)
            raise

        state.phase_statuses[phase_id] = PhaseStatus.SUCCEEDED
        state.completed_phases.append(phase_id)
        state.total_cost += result.total_cost
        state.task_count += len(result.task_results)
        state.elapsed_seconds = time.monotonic() - pipeline_start
        phase_results.append(result)
        checkpoints.append(create_checkpoint(context, phase_id))

    state.current_phase = None
    run_result = PipelineRunResult(
        run_id=context.run_id,
        phase_results=tuple(phase_results),
        total_cost=sum(r.total_cost for r in phase_results),
        duration_ms=int((time.monotonic() - pipeline_start) * 1000),
        checkpoints=tuple(checkpoints),
    )
    logger.info(
        "Pipeline run %s completed: %d phases, cost=$%.4f, %dms",
        context.run_id,
        len(run_result.phase_results),
        run_result.total_cost,
        run_result.duration_ms,
    )
    _log_run_summary(run_result)
    return run_result


def run_pipeline_sync(
    context: ProcessingContext,
    runner: TaskRunner,
    **kwargs: Any,
) -> PipelineRunResult:
    """Synchronous wrapper for :func:`run_pipeline`.

    Args:
        context: Processing context for this run.
        runner: External Task Runner.
        **kwargs: Forwarded to :func:`run_pipeline`.

    Returns:
        The pipeline run result.
    """
    return asyncio.run(run_pipeline(context, runner, **kwargs))
