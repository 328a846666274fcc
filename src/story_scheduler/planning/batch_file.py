"""
Batch file ingestion.

A batch file is YAML (or JSON, which YAML accepts) with this shape::

    schema_version: 1
    batch_id: sprint-12
    sprint:
      sprint_goals: [checkout flow]
      available_hours: 40
      risk_tolerance: medium
    stories:
      - id: S1
        title: Payment form
        description: Validate the payment form
        dependencies: []
    simulate:
      default_duration: 0.01
      durations: {draft: 0.02}
      failures:
        - story: S1
          stage: logic
          errors: ["network timeout", null]
      actual_costs:
        - {story: S1, stage: draft, tokens: 900}

``simulate`` only drives the in-memory stage sink used by ``story-scheduler run``.
A ``null`` failure entry makes that attempt hang until the stage timeout.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Final, TypeAlias, cast

import yaml

from story_scheduler.constants import BATCH_FILE_SCHEMA_VERSION, PIPELINE_STAGES
from story_scheduler.control_plane.interfaces import SimulatedStageSink
from story_scheduler.control_plane.retry_policy import StageError
from story_scheduler.domain.models import SprintContext, Story

if TYPE_CHECKING:
    from story_scheduler.utils.concurrency import SleepFn

PathLike: TypeAlias = str | os.PathLike[str]

_ALLOWED_ROOT_FIELDS: Final[frozenset[str]] = frozenset(
    {"schema_version", "batch_id", "sprint", "stories", "simulate"}
)
_ALLOWED_SIMULATE_FIELDS: Final[frozenset[str]] = frozenset(
    {"default_duration", "durations", "failures", "actual_costs"}
)


class BatchFileError(ValueError):
    """Raised when a batch file cannot be read or fails validation."""


@dataclass(frozen=True, slots=True)
class SimulationPlan:
    default_duration: float = 0.0
    durations: Mapping[str, float] = field(default_factory=dict)
    script: Mapping[tuple[str, str], tuple[BaseException | None, ...]] = field(
        default_factory=dict
    )
    actual_costs: Mapping[tuple[str, str], int] = field(default_factory=dict)

    def build_sink(self, *, sleep: SleepFn = asyncio.sleep) -> SimulatedStageSink:
        return SimulatedStageSink(
            durations=self.durations,
            default_duration=self.default_duration,
            script=self.script,
            actual_costs=self.actual_costs,
            sleep=sleep,
        )


@dataclass(frozen=True, slots=True)
class BatchFile:
    batch_id: str
    sprint: SprintContext
    stories: tuple[Story, ...]
    simulation: SimulationPlan = field(default_factory=SimulationPlan)
    source: Path | None = None


def load_batch_file(path: PathLike) -> BatchFile:
    """Read and validate a YAML/JSON batch file."""

    resolved = Path(path).expanduser()
    if not resolved.is_file():
        raise BatchFileError(f"batch file not found: {resolved}")
    try:
        with resolved.open("r", encoding="utf-8") as handle:
            loaded = cast("object", yaml.safe_load(handle))
    except yaml.YAMLError as exc:
        raise BatchFileError(f"{resolved}: invalid YAML ({exc})") from exc
    except OSError as exc:
        raise BatchFileError(f"unable to read batch file {resolved}: {exc}") from exc

    batch = parse_batch(loaded, default_batch_id=resolved.stem, location=resolved.name)
    return BatchFile(
        batch_id=batch.batch_id,
        sprint=batch.sprint,
        stories=batch.stories,
        simulation=batch.simulation,
        source=resolved,
    )


def parse_batch(
    payload: object,
    *,
    default_batch_id: str = "batch",
    location: str = "<batch>",
) -> BatchFile:
    root = _as_mapping(payload, location)
    unknown = sorted(set(root) - _ALLOWED_ROOT_FIELDS)
    if unknown:
        raise BatchFileError(f"{location}: unexpected fields: {unknown}")

    version = root.get("schema_version", BATCH_FILE_SCHEMA_VERSION)
    if version != BATCH_FILE_SCHEMA_VERSION:
        raise BatchFileError(
            f"{location}.schema_version: unsupported version {version!r}; "
            f"expected {BATCH_FILE_SCHEMA_VERSION}"
        )

    batch_id = root.get("batch_id", default_batch_id)
    if not isinstance(batch_id, str) or not batch_id.strip():
        raise BatchFileError(f"{location}.batch_id: must be a non-empty string")

    raw_stories = root.get("stories")
    if not isinstance(raw_stories, list):
        raise BatchFileError(f"{location}.stories: expected a list of stories")

    stories: list[Story] = []
    seen: set[str] = set()
    for index, item in enumerate(raw_stories):
        item_location = f"{location}.stories[{index}]"
        try:
            story = Story.from_mapping(_as_mapping(item, item_location))
        except ValueError as exc:
            raise BatchFileError(f"{item_location}: {exc}") from exc
        if story.id in seen:
            raise BatchFileError(f"{item_location}: duplicate story id {story.id!r}")
        seen.add(story.id)
        stories.append(story)

    sprint_raw = root.get("sprint", {})
    try:
        sprint = SprintContext.from_mapping(_as_mapping(sprint_raw, f"{location}.sprint"))
    except ValueError as exc:
        raise BatchFileError(f"{location}.sprint: {exc}") from exc

    simulate_raw = root.get("simulate")
    simulation = (
        SimulationPlan()
        if simulate_raw is None
        else _parse_simulation(simulate_raw, f"{location}.simulate")
    )
    return BatchFile(
        batch_id=batch_id.strip(),
        sprint=sprint,
        stories=tuple(stories),
        simulation=simulation,
    )


def _parse_simulation(value: object, location: str) -> SimulationPlan:
    parsed = _as_mapping(value, location)
    unknown = sorted(set(parsed) - _ALLOWED_SIMULATE_FIELDS)
    if unknown:
        raise BatchFileError(f"{location}: unexpected fields: {unknown}")

    default_duration = _as_duration(
        parsed.get("default_duration", 0.0), f"{location}.default_duration"
    )

    durations: dict[str, float] = {}
    for stage, raw in _as_mapping(parsed.get("durations", {}), f"{location}.durations").items():
        _check_stage(stage, f"{location}.durations")
        durations[stage] = _as_duration(raw, f"{location}.durations.{stage}")

    script: dict[tuple[str, str], tuple[BaseException | None, ...]] = {}
    for index, entry in enumerate(_as_list(parsed.get("failures", []), f"{location}.failures")):
        entry_location = f"{location}.failures[{index}]"
        story_id, stage, fields = _story_stage_entry(entry, entry_location)
        errors = _as_list(fields.get("errors", []), f"{entry_location}.errors")
        script[(story_id, stage)] = tuple(
            _scripted_error(raw, stage, f"{entry_location}.errors[{position}]")
            for position, raw in enumerate(errors)
        )

    actual_costs: dict[tuple[str, str], int] = {}
    for index, entry in enumerate(
        _as_list(parsed.get("actual_costs", []), f"{location}.actual_costs")
    ):
        entry_location = f"{location}.actual_costs[{index}]"
        story_id, stage, fields = _story_stage_entry(entry, entry_location)
        tokens = fields.get("tokens")
        if isinstance(tokens, bool) or not isinstance(tokens, int) or tokens < 0:
            raise BatchFileError(f"{entry_location}.tokens: expected a non-negative integer")
        actual_costs[(story_id, stage)] = tokens

    return SimulationPlan(
        default_duration=default_duration,
        durations=durations,
        script=script,
        actual_costs=actual_costs,
    )


def _story_stage_entry(value: object, location: str) -> tuple[str, str, Mapping[str, object]]:
    parsed = _as_mapping(value, location)
    story_id = parsed.get("story")
    stage = parsed.get("stage")
    if not isinstance(story_id, str) or not story_id.strip():
        raise BatchFileError(f"{location}.story: must be a non-empty string")
    if not isinstance(stage, str):
        raise BatchFileError(f"{location}.stage: must be a string")
    _check_stage(stage, location)
    return story_id.strip(), stage, parsed


def _scripted_error(value: object, stage: str, location: str) -> BaseException | None:
    if value is None:
        return None
    if isinstance(value, str):
        return StageError(value, stage=stage)
    if isinstance(value, Mapping):
        message = value.get("message")
        retryable = value.get("retryable")
        if not isinstance(message, str) or not message.strip():
            raise BatchFileError(f"{location}.message: must be a non-empty string")
        if retryable is not None and not isinstance(retryable, bool):
            raise BatchFileError(f"{location}.retryable: expected boolean")
        return StageError(message, retryable=retryable, stage=stage)
    raise BatchFileError(f"{location}: expected a message, a mapping, or null")


def _check_stage(stage: str, location: str) -> None:
    if stage not in PIPELINE_STAGES:
        raise BatchFileError(
            f"{location}: unknown stage {stage!r}; expected one of: {', '.join(PIPELINE_STAGES)}"
        )


def _as_duration(value: object, location: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise BatchFileError(f"{location}: expected a non-negative number of seconds")
    return float(value)


def _as_mapping(value: object, location: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        raise BatchFileError(f"{location}: expected a mapping, got {type(value).__name__}")
    for key in value:
        if not isinstance(key, str):
            raise BatchFileError(f"{location}: keys must be strings")
    return cast("Mapping[str, object]", value)


def _as_list(value: object, location: str) -> Sequence[object]:
    if not isinstance(value, list):
        raise BatchFileError(f"{location}: expected a list, got {type(value).__name__}")
    return value


__all__ = [
    "BatchFile",
    "BatchFileError",
    "SimulationPlan",
    "load_batch_file",
    "parse_batch",
]
