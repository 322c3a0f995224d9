"""Phase and task executors for the content pipeline.

``PhaseExecutor`` runs the tasks of a phase according to the phase's
concurrency mode and merges every task's output into the shared
``ProcessingContext``:

- ``execute_task`` validates a task's inputs, calls the external Task
  Runner under a per-task timeout, and maps failures to typed errors.
- ``run_parallel`` launches tasks concurrently, waits for all of them to
  settle, and raises the first failure in declaration order. Outputs are
  merged only when every task succeeded.
- ``run_sequential`` runs tasks one at a time, merging each output before
  the next task starts, and stops at the first failure.
- ``run_grouped`` runs ordered groups, each parallel or sequential.
- ``run_phase`` selects the strategy from the phase's mode.

Concurrency is cooperative (asyncio): tasks interleave only while awaiting
the Task Runner, and only the executor writes to the context, after a task
has settled, so no locking is needed.

By default a timed-out runner call is not cancelled: it keeps running
orphaned and its result is ignored. Likewise a failing parallel task does
not stop its siblings. ``EngineConfig.cancel_on_failure`` turns both into
real cancellations.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping, Sequence
import copy
import logging
import time
from typing import Any, Protocol, assert_never

from content_pipeline.errors import (
    InputValidationError,
    PhaseExecutionError,
    PipelineError,
    TaskExecutionError,
    TaskTimeoutError,
)
from content_pipeline.models import (
    EngineConfig,
    ExecutionGroup,
    ExecutionMode,
    GroupResult,
    PhaseDefinition,
    PhaseResult,
    PhaseStatus,
    ProcessingContext,
    TaskDefinition,
    TaskResult,
    TaskRunnerOutput,
)
from content_pipeline.registry import PipelineRegistry, get_registry
from content_pipeline.validation import validate_task_inputs

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# External contracts
# ---------------------------------------------------------------------------


class TaskRunner(Protocol):
    """Performs the actual work of a stage (e.g. a generative model call)."""

    async def run(
        self,
        stage_number: int,
        context: ProcessingContext,
        *,
        variant_tag: str | None = None,
    ) -> TaskRunnerOutput | Mapping[str, Any]:
        """Run one stage and return its output, cost and usage."""
        ...


class PipelineObserver:
    """Progress hooks fired in-line during execution.

    Every hook is a no-op here; subclass and override the ones you need.
    Exceptions raised by a hook fail the phase like any other error.
    """

    def on_task_start(self, task_key: str, definition: TaskDefinition) -> None:
        """Called before a task's inputs are validated."""

    def on_task_complete(self, task_key: str, result: TaskResult) -> None:
        """Called once after a task succeeded."""

    def on_phase_start(self, phase_id: str, definition: PhaseDefinition) -> None:
        """Called when a phase starts."""

    def on_phase_complete(
        self,
        phase_id: str,
        definition: PhaseDefinition,
        result: PhaseResult,
    ) -> None:
        """Called once after every task of a phase succeeded."""


class CallbackObserver(PipelineObserver):
    """Observer that forwards each hook to an optional plain callable."""

    def __init__(
        self,
        *,
        on_task_start: Callable[[str, TaskDefinition], Any] | None = None,
        on_task_complete: Callable[[str, TaskResult], Any] | None = None,
        on_phase_start: Callable[[str, PhaseDefinition], Any] | None = None,
        on_phase_complete: Callable[[str, PhaseDefinition, PhaseResult], Any] | None = None,
    ) -> None:
        self._on_task_start = on_task_start
        self._on_task_complete = on_task_complete
        self._on_phase_start = on_phase_start
        self._on_phase_complete = on_phase_complete

    def on_task_start(self, task_key: str, definition: TaskDefinition) -> None:
        if self._on_task_start is not None:
            self._on_task_start(task_key, definition)

    def on_task_complete(self, task_key: str, result: TaskResult) -> None:
        if self._on_task_complete is not None:
            self._on_task_complete(task_key, result)

    def on_phase_start(self, phase_id: str, definition: PhaseDefinition) -> None:
        if self._on_phase_start is not None:
            self._on_phase_start(phase_id, definition)

    def on_phase_complete(
        self,
        phase_id: str,
        definition: PhaseDefinition,
        result: PhaseResult,
    ) -> None:
        if self._on_phase_complete is not None:
            self._on_phase_complete(phase_id, definition, result)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def format_duration(ms: int | float) -> str:
    """Format a millisecond duration for log lines.

    Args:
        ms: Duration in milliseconds.

    Returns:
        ``"850ms"`` below one second, ``"2.3s"`` below one minute, else
        ``"1m 15s"``.
    """
    if ms < 1000:
        return f"{int(ms)}ms"
    if ms < 60000:
        return f"{ms / 1000:.1f}s"
    mins = int(ms // 60000)
    secs = round((ms % 60000) / 1000)
    return f"{mins}m {secs}s"


def _elapsed_ms(start: float) -> int:
    """Return whole milliseconds elapsed since monotonic *start*."""
    return int((time.monotonic() - start) * 1000)


def merge_task_result(context: ProcessingContext, result: TaskResult) -> None:
    """Write a task's output into its stage slot of *context*.

    The stage entry is replaced, so when sibling variants share a stage the
    last merged one wins the slot. Variant tasks are also recorded under
    ``context.variant_outputs[stage][variant_tag]``.

    Args:
        context: Processing context to update in place.
        result: Successful task result.
    """
    entry = result.output.stage_entry()
    context.previous_stages[result.stage_number] = entry
    if result.variant_tag is not None:
        variants = context.variant_outputs.setdefault(result.stage_number, {})
        variants[result.variant_tag] = copy.deepcopy(entry)


def _log_orphan_outcome(future: asyncio.Future[Any]) -> None:
    """Retrieve the outcome of an orphaned runner call so it is not reported as lost."""
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.debug("Orphaned task runner call failed after timeout: %s", exc)
    else:
        logger.debug("Orphaned task runner call finished after timeout; result ignored")


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class PhaseExecutor:
    """Runs tasks and phases against a Task Runner.

    Attributes:
        registry: Task and phase definitions.
        config: Engine settings (timeouts, cancellation).
        observer: Progress hooks.
    """

    def __init__(
        self,
        runner: TaskRunner,
        *,
        registry: PipelineRegistry | None = None,
        config: EngineConfig | None = None,
        observer: PipelineObserver | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            runner: External Task Runner.
            registry: Definitions to use. Defaults to the packaged pipeline.
            config: Engine settings. Defaults to ``EngineConfig()``.
            observer: Progress hooks. Defaults to a no-op observer.
        """
        self._runner = runner
        self.registry = registry if registry is not None else get_registry()
        self.config = config if config is not None else EngineConfig()
        self.observer = observer if observer is not None else PipelineObserver()
        self._phase_statuses: dict[str, PhaseStatus] = {}

    def phase_status(self, phase_id: str) -> PhaseStatus:
        """Return the status of the latest run of *phase_id*."""
        return self._phase_statuses.get(phase_id, PhaseStatus.PENDING)

    # ------------------------------------------------------------------
    # Single task
    # ------------------------------------------------------------------

    async def execute_task(self, task_key: str, context: ProcessingContext) -> TaskResult:
        """Validate and run a single task.

        The Task Runner is never invoked when required inputs are missing.
        The task's output is returned but not merged into *context*; the
        group executors do that.

        Args:
            task_key: Key of the task to run.
            context: Shared processing context (read only here).

        Returns:
            The task's result.

        Raises:
            ConfigurationError: If *task_key* is unknown.
            InputValidationError: If required inputs are missing.
            TaskTimeoutError: If the runner exceeds the time budget.
            TaskExecutionError: If the runner fails.
        """
        task = self.registry.get_task(task_key)
        start = time.monotonic()

        logger.info(
            "Starting task: %s (key=%s, stage=%d, variant=%s, run=%s)",
            task.display_name,
            task_key,
            task.stage_number,
            task.variant_tag,
            context.run_id,
        )
        self.observer.on_task_start(task_key, task)

        validation = validate_task_inputs(task, context.previous_stages)
        if not validation.valid:
            logger.error(
                "Task %s missing required inputs: %s",
                task_key,
                ", ".join(validation.missing),
            )
            raise InputValidationError(
                task.stage_number,
                task.display_name,
                list(validation.missing),
                run_id=context.run_id,
            )

        try:
            raw = await self._call_runner(task, context)
            output = (
                raw
                if isinstance(raw, TaskRunnerOutput)
                else TaskRunnerOutput.model_validate(raw)
            )
        except PipelineError as exc:
            logger.error(
                "Task failed: %s after %s: %s",
                task.display_name,
                format_duration(_elapsed_ms(start)),
                exc,
            )
            raise
        except Exception as exc:
            logger.error(
                "Task failed: %s after %s: %s: %s",
                task.display_name,
                format_duration(_elapsed_ms(start)),
                type(exc).__name__,
                exc,
            )
            raise TaskExecutionError(
                task.stage_number,
                task.display_name,
                str(exc) or type(exc).__name__,
                run_id=context.run_id,
                cause=exc,
            ) from exc

        duration_ms = _elapsed_ms(start)
        result = TaskResult(
            task_key=task_key,
            stage_number=task.stage_number,
            variant_tag=task.variant_tag,
            success=True,
            output=output,
            duration_ms=duration_ms,
            cost=output.cost,
        )

        logger.info(
            "Task completed: %s in %s (cost=$%.4f, in=%d, out=%d)",
            task.display_name,
            format_duration(duration_ms),
            output.cost,
            output.input_units,
            output.output_units,
        )
        self.observer.on_task_complete(task_key, result)
        return result

    async def _call_runner(
        self,
        task: TaskDefinition,
        context: ProcessingContext,
    ) -> TaskRunnerOutput | Mapping[str, Any]:
        """Race the Task Runner call against the per-task timeout.

        Raises:
            TaskTimeoutError: If the timeout fires first.
        """
        timeout = self.config.task_timeout_seconds
        call = asyncio.ensure_future(
            self._runner.run(task.stage_number, context, variant_tag=task.variant_tag)
        )
        try:
            if self.config.cancel_on_failure:
                return await asyncio.wait_for(call, timeout)
            return await asyncio.wait_for(asyncio.shield(call), timeout)
        except TimeoutError:
            if not call.done():
                if self.config.cancel_on_failure:
                    call.cancel()
                else:
                    logger.warning(
                        "Task %s timed out; runner call left running, its result will be ignored",
                        task.key,
                    )
                    call.add_done_callback(_log_orphan_outcome)
            raise TaskTimeoutError(
                task.stage_number,
                task.display_name,
                timeout,
                run_id=context.run_id,
            ) from None

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def run_parallel(
        self,
        task_keys: Sequence[str],
        context: ProcessingContext,
    ) -> GroupResult:
        """Run tasks concurrently with phase-level fail-fast.

        Waits for every task to settle. If any failed, raises the failure of
        the first failing task in declaration order and merges nothing.
        Otherwise merges all outputs, in declaration order, after the whole
        group has settled.

        Args:
            task_keys: Task keys in declaration order.
            context: Shared processing context.

        Returns:
            Results in declaration order, summed cost, and wall-clock duration.

        Raises:
            PipelineError: The first declared task failure.
        """
        logger.info("Executing %d tasks in PARALLEL: %s", len(task_keys), ", ".join(task_keys))
        start = time.monotonic()

        if self.config.cancel_on_failure:
            outcomes = await self._settle_cancelling(task_keys, context)
        else:
            outcomes = await asyncio.gather(
                *(self.execute_task(key, context) for key in task_keys),
                return_exceptions=True,
            )

        duration_ms = _elapsed_ms(start)
        succeeded: list[TaskResult] = []
        failed: list[tuple[str, BaseException]] = []
        for key, outcome in zip(task_keys, outcomes, strict=True):
            if isinstance(outcome, TaskResult):
                succeeded.append(outcome)
            elif isinstance(outcome, BaseException):
                failed.append((key, outcome))

        total_cost = sum(result.cost for result in succeeded)
        logger.info(
            "Parallel execution complete: %d succeeded, %d failed, cost=$%.4f, %s",
            len(succeeded),
            len(failed),
            total_cost,
            format_duration(duration_ms),
        )

        if failed:
            first_key, first_error = failed[0]
            logger.error(
                "Parallel execution had failures (%s); raising %s: %s",
                ", ".join(key for key, _ in failed),
                first_key,
                first_error,
            )
            raise first_error

        for result in succeeded:
            merge_task_result(context, result)

        return GroupResult(
            results=tuple(succeeded),
            total_cost=total_cost,
            duration_ms=duration_ms,
        )

    async def _settle_cancelling(
        self,
        task_keys: Sequence[str],
        context: ProcessingContext,
    ) -> list[TaskResult | BaseException | None]:
        """Run tasks concurrently, cancelling the rest once one fails.

        Returns:
            One outcome per task; ``None`` for siblings that were cancelled.
        """
        tasks = [asyncio.ensure_future(self.execute_task(key, context)) for key in task_keys]
        try:
            _, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        if pending:
            logger.warning("Cancelling %d running task(s) after a failure", len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        outcomes: list[TaskResult | BaseException | None] = []
        for task in tasks:
            if task.cancelled():
                outcomes.append(None)
            elif task.exception() is not None:
                outcomes.append(task.exception())
            else:
                outcomes.append(task.result())
        return outcomes

    async def run_sequential(
        self,
        task_keys: Sequence[str],
        context: ProcessingContext,
    ) -> GroupResult:
        """Run tasks one at a time in list order.

        Each output is merged into *context* before the next task starts, so
        later tasks see earlier outputs. Stops at the first failure.

        Args:
            task_keys: Task keys in execution order.
            context: Shared processing context.

        Returns:
            Results in execution order, summed cost, and duration.

        Raises:
            PipelineError: The first task failure.
        """
        logger.info("Executing %d tasks SEQUENTIALLY: %s", len(task_keys), ", ".join(task_keys))
        start = time.monotonic()
        results: list[TaskResult] = []

        for key in task_keys:
            result = await self.execute_task(key, context)
            merge_task_result(context, result)
            results.append(result)

        duration_ms = _elapsed_ms(start)
        total_cost = sum(result.cost for result in results)
        logger.info(
            "Sequential execution complete: %d tasks, cost=$%.4f, %s",
            len(results),
            total_cost,
            format_duration(duration_ms),
        )
        return GroupResult(results=tuple(results), total_cost=total_cost, duration_ms=duration_ms)

    async def run_grouped(
        self,
        groups: Sequence[ExecutionGroup],
        context: ProcessingContext,
    ) -> GroupResult:
        """Run ordered groups, each parallel or sequential.

        A group's outputs are merged before the next group starts, so a
        later group may depend on an earlier one.

        Args:
            groups: Execution groups in order.
            context: Shared processing context.

        Returns:
            All results in execution order, summed cost, and duration.

        Raises:
            PipelineError: The first failure of the first failing group.
        """
        logger.info("Executing %d task groups", len(groups))
        start = time.monotonic()
        results: list[TaskResult] = []
        total_cost = 0.0

        for i, group in enumerate(groups, start=1):
            logger.info(
                "Executing group %d/%d (%s): %s",
                i,
                len(groups),
                "parallel" if group.parallel else "sequential",
                ", ".join(group.tasks),
            )
            if group.parallel and len(group.tasks) > 1:
                group_result = await self.run_parallel(group.tasks, context)
            else:
                group_result = await self.run_sequential(group.tasks, context)
            results.extend(group_result.results)
            total_cost += group_result.total_cost

        return GroupResult(
            results=tuple(results),
            total_cost=total_cost,
            duration_ms=_elapsed_ms(start),
        )

    # ------------------------------------------------------------------
    # Phase
    # ------------------------------------------------------------------

    async def run_phase(self, phase_id: str, context: ProcessingContext) -> PhaseResult:
        """Run every task of a phase according to its mode.

        A phase either succeeds as a whole or raises. Non-typed errors are
        wrapped in ``PhaseExecutionError``. Merges already made by a failing
        sequential or grouped run are not undone; snapshot the context
        before calling if the phase must be atomic.

        Args:
            phase_id: Identifier of the phase.
            context: Shared processing context, mutated in place.

        Returns:
            The aggregated phase result.

        Raises:
            ConfigurationError: If *phase_id* is unknown.
            PipelineError: If any task of the phase fails.
            PhaseExecutionError: If a hook or the scheduler raises an
                untyped error.
        """
        phase = self.registry.get_phase(phase_id)
        start = time.monotonic()

        sep = "-" * 60
        logger.info("%s", sep)
        logger.info("Starting phase: %s (%s, mode=%s)", phase.display_name, phase_id, phase.mode)
        logger.info("%s", sep)

        self._phase_statuses[phase_id] = PhaseStatus.RUNNING
        try:
            self.observer.on_phase_start(phase_id, phase)
            group_result = await self._dispatch(phase, context)
            duration_ms = _elapsed_ms(start)
            result = PhaseResult(
                phase_id=phase_id,
                success=True,
                task_results=group_result.results,
                total_cost=group_result.total_cost,
                duration_ms=duration_ms,
            )
            self.observer.on_phase_complete(phase_id, phase, result)
        except PipelineError as exc:
            self._phase_failed(phase, start, exc)
            raise
        except Exception as exc:
            self._phase_failed(phase, start, exc)
            raise PhaseExecutionError(
                phase.display_name,
                str(exc) or type(exc).__name__,
                run_id=context.run_id,
                cause=exc,
            ) from exc

        self._phase_statuses[phase_id] = PhaseStatus.SUCCEEDED
        logger.info(
            "Phase completed: %s (%d tasks, cost=$%.4f, %s)",
            phase.display_name,
            len(result.task_results),
            result.total_cost,
            format_duration(duration_ms),
        )
        return result

    async def _dispatch(self, phase: PhaseDefinition, context: ProcessingContext) -> GroupResult:
        """Select the execution strategy for *phase* and run it."""
        match phase.mode:
            case ExecutionMode.GROUPED:
                return await self.run_grouped(phase.execution_groups or (), context)
            case ExecutionMode.PARALLEL:
                return await self.run_parallel(phase.tasks, context)
            case ExecutionMode.SEQUENTIAL:
                return await self.run_sequential(phase.tasks, context)
            case _:
                assert_never(phase.mode)

    def _phase_failed(self, phase: PhaseDefinition, start: float, exc: BaseException) -> None:
        """Record and log a phase failure."""
        self._phase_statuses[phase.id] = PhaseStatus.FAILED
        logger.error(
            "Phase failed: %s after %s: %s: %s",
            phase.display_name,
            format_duration(_elapsed_ms(start)),
            type(exc).__name__,
            exc,
        )
