"""Task and phase registry for the content pipeline.

Loads task and phase definitions from YAML (``pipeline.yaml`` in this
package directory by default) into read-only structures that are built
once and never mutated afterwards. Cross-references between tasks, phases
and stages are checked at load time, so lookups at execution time only
fail for keys that were never configured.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError
import yaml

from content_pipeline.errors import ConfigurationError
from content_pipeline.models import (
    ExecutionMode,
    PhaseDefinition,
    RequiredInput,
    TaskDefinition,
)

logger = logging.getLogger(__name__)

_REGISTRY_DIR: Path = Path(__file__).parent
DEFAULT_PIPELINE_FILE: Path = _REGISTRY_DIR / "pipeline.yaml"


class PipelineRegistry:
    """Immutable table of task and phase definitions.

    Definitions are stored in ``MappingProxyType`` views keyed by task key
    and phase id. Construction validates every cross-reference and raises
    ``ConfigurationError`` on the first inconsistency found.

    Attributes:
        tasks: Read-only mapping of task key to ``TaskDefinition``.
        phases: Read-only mapping of phase id to ``PhaseDefinition``.
    """

    def __init__(
        self,
        tasks: Iterable[TaskDefinition],
        phases: Iterable[PhaseDefinition],
        phase_order: Sequence[str] | None = None,
    ) -> None:
        """Build the registry and validate it.

        Args:
            tasks: Task definitions; keys must be unique.
            phases: Phase definitions; ids must be unique.
            phase_order: Execution order of phases. Defaults to the order
                in which *phases* are given.

        Raises:
            ConfigurationError: If the definitions are inconsistent.
        """
        task_map: dict[str, TaskDefinition] = {}
        for task in tasks:
            if task.key in task_map:
                raise ConfigurationError(task.key, f"Duplicate task key: {task.key}")
            task_map[task.key] = task

        phase_map: dict[str, PhaseDefinition] = {}
        for phase in phases:
            if phase.id in phase_map:
                raise ConfigurationError(phase.id, f"Duplicate phase id: {phase.id}")
            phase_map[phase.id] = phase

        order = tuple(phase_order) if phase_order is not None else tuple(phase_map)

        self.tasks: Mapping[str, TaskDefinition] = MappingProxyType(task_map)
        self.phases: Mapping[str, PhaseDefinition] = MappingProxyType(phase_map)
        self._phase_order = order

        stages: dict[int, list[str]] = {}
        for task in task_map.values():
            stages.setdefault(task.stage_number, []).append(task.key)
        self._stage_tasks: Mapping[int, tuple[str, ...]] = MappingProxyType(
            {stage: tuple(keys) for stage, keys in stages.items()}
        )

        self._validate()

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> PipelineRegistry:
        """Build a registry from a parsed configuration mapping.

        ``tasks`` and ``phases`` may each be a mapping keyed by task key /
        phase id, or a list of entries carrying ``key`` / ``id``.

        Args:
            data: Mapping with ``tasks``, ``phases`` and optional
                ``phase_order`` keys.

        Returns:
            The validated registry.

        Raises:
            ConfigurationError: If the mapping is malformed or inconsistent.
        """
        if not isinstance(data, Mapping):
            msg = f"pipeline configuration must be a mapping, got {type(data).__name__}"
            raise ConfigurationError("registry", msg)

        task_entries = _normalize_entries(data.get("tasks"), "key", "tasks")
        phase_entries = _normalize_entries(data.get("phases"), "id", "phases")

        try:
            tasks = [TaskDefinition.model_validate(entry) for entry in task_entries]
            phases = [PhaseDefinition.model_validate(entry) for entry in phase_entries]
        except ValidationError as exc:
            raise ConfigurationError("registry", f"Invalid definition: {exc}", cause=exc) from exc

        phase_order = data.get("phase_order")
        if phase_order is not None and not isinstance(phase_order, list):
            raise ConfigurationError("registry", "phase_order must be a list of phase ids")

        return cls(tasks, phases, phase_order)

    @classmethod
    def from_yaml(cls, path: str | Path) -> PipelineRegistry:
        """Build a registry from a YAML file.

        Args:
            path: Path to the YAML pipeline definition.

        Returns:
            The validated registry.

        Raises:
            FileNotFoundError: If the file does not exist.
            ConfigurationError: If the content is malformed or inconsistent.
        """
        file_path = Path(path)
        if not file_path.exists():
            msg = f"pipeline file not found: {path}"
            raise FileNotFoundError(msg)

        with file_path.open(encoding="utf-8") as fh:
            data = yaml.safe_load(fh)

        return cls.from_mapping(data)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate(self) -> None:
        """Check every cross-reference between tasks, phases and stages."""
        for task in self.tasks.values():
            unknown = sorted(dep for dep in task.depends_on if dep not in self.tasks)
            if unknown:
                raise ConfigurationError(
                    task.key, f"depends_on names unknown tasks: {', '.join(unknown)}"
                )

        for phase in self.phases.values():
            self._validate_phase(phase)

        seen: set[str] = set()
        for phase_id in self._phase_order:
            if phase_id not in self.phases:
                raise ConfigurationError(phase_id, f"phase_order names unknown phase: {phase_id}")
            if phase_id in seen:
                raise ConfigurationError(phase_id, f"phase_order lists {phase_id} twice")
            seen.add(phase_id)

        position = {phase_id: i for i, phase_id in enumerate(self._phase_order)}
        for phase in self.phases.values():
            for required in phase.required_phases:
                if phase.id in position and required in position:
                    if position[required] >= position[phase.id]:
                        raise ConfigurationError(
                            phase.id,
                            f"required phase {required} does not precede {phase.id} in phase_order",
                        )

    def _validate_phase(self, phase: PhaseDefinition) -> None:
        """Check a single phase's task and phase references."""
        unknown = [key for key in phase.tasks if key not in self.tasks]
        if unknown:
            raise ConfigurationError(
                phase.id, f"phase references unknown tasks: {', '.join(unknown)}"
            )
        if len(set(phase.tasks)) != len(phase.tasks):
            raise ConfigurationError(phase.id, "phase lists a task more than once")

        for required in phase.required_phases:
            if required not in self.phases:
                raise ConfigurationError(
                    phase.id, f"required_phases names unknown phase: {required}"
                )
            if required == phase.id:
                raise ConfigurationError(phase.id, "phase cannot require itself")

        if phase.mode is ExecutionMode.GROUPED and phase.execution_groups:
            grouped = [key for group in phase.execution_groups for key in group.tasks]
            if sorted(grouped) != sorted(phase.tasks):
                raise ConfigurationError(
                    phase.id,
                    "execution_groups must cover the phase's tasks exactly once",
                )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @property
    def phase_order(self) -> tuple[str, ...]:
        """Phase ids in execution order."""
        return self._phase_order

    def get_task(self, task_key: str) -> TaskDefinition:
        """Return the definition of *task_key*.

        Raises:
            ConfigurationError: If the task is not registered.
        """
        try:
            return self.tasks[task_key]
        except KeyError:
            raise ConfigurationError(task_key, f"Unknown task: {task_key}") from None

    def get_phase(self, phase_id: str) -> PhaseDefinition:
        """Return the definition of *phase_id*.

        Raises:
            ConfigurationError: If the phase is not registered.
        """
        try:
            return self.phases[phase_id]
        except KeyError:
            raise ConfigurationError("PhaseExecutor", f"Unknown phase: {phase_id}") from None

    def tasks_for_phase(self, phase_id: str) -> list[TaskDefinition]:
        """Return the task definitions of a phase in declaration order."""
        return [self.tasks[key] for key in self.get_phase(phase_id).tasks]

    def task_dependencies(self, task_key: str) -> frozenset[str]:
        """Return the keys of tasks whose output *task_key* needs."""
        return self.get_task(task_key).depends_on

    def required_inputs(self, task_key: str) -> tuple[RequiredInput, ...]:
        """Return the prior-stage inputs *task_key* requires."""
        return self.get_task(task_key).required_inputs

    def stage_number(self, task_key: str) -> int:
        """Return the stage slot of *task_key*."""
        return self.get_task(task_key).stage_number

    def tasks_for_stage(self, stage_number: int) -> tuple[str, ...]:
        """Return every task key writing to *stage_number*, in declaration order."""
        return self._stage_tasks.get(stage_number, ())

    def task_for_stage(self, stage_number: int) -> str | None:
        """Return the primary (first declared) task key of a stage, if any."""
        keys = self.tasks_for_stage(stage_number)
        return keys[0] if keys else None

    def phase_for_task(self, task_key: str) -> str | None:
        """Return the id of the first phase (in phase order) containing *task_key*."""
        for phase_id in self._ordered_phase_ids():
            if task_key in self.phases[phase_id].tasks:
                return phase_id
        return None

    def stages_for_phase(self, phase_id: str) -> set[int]:
        """Return the stage numbers written by a phase's tasks."""
        return {self.tasks[key].stage_number for key in self.get_phase(phase_id).tasks}

    def _ordered_phase_ids(self) -> list[str]:
        """Return phase ids in phase order, then any unordered phases."""
        ordered = list(self._phase_order)
        ordered.extend(pid for pid in self.phases if pid not in self._phase_order)
        return ordered

    def describe(self) -> dict[str, Any]:
        """Return a summary of the configuration for startup logging."""
        return {
            "total_phases": len(self._phase_order),
            "total_tasks": len(self.tasks),
            "phases": [
                {
                    "id": phase_id,
                    "name": self.phases[phase_id].display_name,
                    "tasks": list(self.phases[phase_id].tasks),
                    "mode": str(self.phases[phase_id].mode),
                }
                for phase_id in self._phase_order
            ],
        }

    def log_configuration(self) -> None:
        """Log the phase layout at INFO level."""
        summary = self.describe()
        logger.info(
            "Pipeline configuration: %d phases, %d tasks",
            summary["total_phases"],
            summary["total_tasks"],
        )
        for phase in summary["phases"]:
            logger.info("  %s [%s]: %s", phase["id"], phase["mode"], ", ".join(phase["tasks"]))

    def __len__(self) -> int:
        """Return the number of registered tasks."""
        return len(self.tasks)

    def __contains__(self, task_key: object) -> bool:
        """Return whether *task_key* is a registered task."""
        return task_key in self.tasks


def _normalize_entries(raw: Any, id_field: str, label: str) -> list[dict[str, Any]]:
    """Turn a mapping-or-list section into a list of entry dicts.

    Args:
        raw: The ``tasks`` or ``phases`` section of the configuration.
        id_field: Name of the identifier field (``key`` or ``id``).
        label: Section name for error messages.

    Returns:
        List of entry dicts, each carrying *id_field*.

    Raises:
        ConfigurationError: If the section is missing or malformed.
    """
    if isinstance(raw, Mapping):
        entries: list[dict[str, Any]] = []
        for ident, body in raw.items():
            if body is not None and not isinstance(body, Mapping):
                raise ConfigurationError(str(ident), f"{label} entry {ident!r} must be a mapping")
            entry = dict(body or {})
            declared = entry.setdefault(id_field, ident)
            if declared != ident:
                raise ConfigurationError(
                    str(ident), f"{label} entry {ident!r} declares {id_field}={declared!r}"
                )
            entries.append(entry)
        return entries

    if isinstance(raw, list):
        if not all(isinstance(entry, Mapping) for entry in raw):
            raise ConfigurationError("registry", f"every {label} entry must be a mapping")
        return [dict(entry) for entry in raw]

    raise ConfigurationError("registry", f"{label} must be a mapping or a list")


def load_registry(path: str | Path = DEFAULT_PIPELINE_FILE) -> PipelineRegistry:
    """Load a registry from a YAML file (the packaged pipeline by default)."""
    return PipelineRegistry.from_yaml(path)


# Module-level singleton built from the packaged pipeline definition.
_singleton_registry: PipelineRegistry | None = None


def get_registry() -> PipelineRegistry:
    """Return the singleton registry built from ``pipeline.yaml``.

    Lazily created on first call; later calls return the cached instance.
    """
    global _singleton_registry  # noqa: PLW0603
    if _singleton_registry is None:
        _singleton_registry = load_registry()
    return _singleton_registry


def _reset_registry() -> None:
    """Reset the singleton registry (for testing only)."""
    global _singleton_registry  # noqa: PLW0603
    _singleton_registry = None
