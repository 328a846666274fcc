"""Core scheduler domain models with strict validation and deterministic serialization."""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import Final, TypeVar

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

E = TypeVar("E", bound=StrEnum)


class StoryPriority(StrEnum):
    """User-declared priority. An input to scoring, not the computed score."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Complexity(StrEnum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


class RiskTolerance(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class StoryStatus(StrEnum):
    """Per-story job lifecycle state."""

    PENDING = "pending"
    ADMITTED = "admitted"
    DISPATCHED = "dispatched"
    RETRY_WAIT = "retry_wait"
    SUCCEEDED = "succeeded"
    DEAD_LETTERED = "dead_lettered"
    CANCELLED = "cancelled"
    BLOCKED = "blocked"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: Final[frozenset[StoryStatus]] = frozenset(
    {
        StoryStatus.SUCCEEDED,
        StoryStatus.DEAD_LETTERED,
        StoryStatus.CANCELLED,
        StoryStatus.BLOCKED,
        StoryStatus.REJECTED,
    }
)

# Statuses that prevent every dependent story from ever running.
UNSATISFIABLE_STATUSES: Final[frozenset[StoryStatus]] = TERMINAL_STATUSES - {
    StoryStatus.SUCCEEDED
}


@dataclass(frozen=True, slots=True)
class Story:
    """A unit of work. Immutable for the lifetime of a batch."""

    id: str
    title: str
    description: str
    priority: StoryPriority = StoryPriority.MEDIUM
    estimated_hours: float | None = None
    dependencies: frozenset[str] = frozenset()
    tags: frozenset[str] = frozenset()
    related_stories: frozenset[str] = frozenset()
    complexity: Complexity | None = None
    estimated_tokens: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValueError("id must be a non-empty string")
        object.__setattr__(self, "id", self.id.strip())
        object.__setattr__(self, "priority", StoryPriority(self.priority))
        if self.complexity is not None:
            object.__setattr__(self, "complexity", Complexity(self.complexity))
        if self.estimated_hours is not None:
            hours = float(self.estimated_hours)
            if not math.isfinite(hours) or hours <= 0:
                raise ValueError("estimated_hours must be > 0")
            object.__setattr__(self, "estimated_hours", hours)
        if self.estimated_tokens is not None and self.estimated_tokens <= 0:
            raise ValueError("estimated_tokens must be > 0")

        object.__setattr__(self, "dependencies", _as_id_set(self.dependencies, "dependencies"))
        object.__setattr__(self, "tags", _as_id_set(self.tags, "tags"))
        object.__setattr__(
            self, "related_stories", _as_id_set(self.related_stories, "related_stories")
        )

    @property
    def text(self) -> str:
        """Description and tags joined, as used for keyword matching."""
        return " ".join((self.description, *sorted(self.tags)))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "estimated_hours": self.estimated_hours,
            "dependencies": sorted(self.dependencies),
            "tags": sorted(self.tags),
            "related_stories": sorted(self.related_stories),
            "complexity": None if self.complexity is None else self.complexity.value,
            "estimated_tokens": self.estimated_tokens,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> Story:
        allowed = {
            "id",
            "title",
            "description",
            "priority",
            "estimated_hours",
            "dependencies",
            "tags",
            "related_stories",
            "complexity",
            "estimated_tokens",
        }
        unknown = sorted(key for key in data if key not in allowed)
        if unknown:
            raise ValueError(f"Story: unexpected fields: {unknown}")
        if "id" not in data:
            raise ValueError("Story: missing required field 'id'")

        raw_hours = data.get("estimated_hours")
        raw_tokens = data.get("estimated_tokens")
        raw_complexity = data.get("complexity")
        return cls(
            id=_as_text(data["id"], "Story.id"),
            title=_as_text(data.get("title", ""), "Story.title", allow_empty=True),
            description=_as_text(
                data.get("description", ""), "Story.description", allow_empty=True
            ),
            priority=_as_enum(data.get("priority", "medium"), StoryPriority, "Story.priority"),
            estimated_hours=None
            if raw_hours is None
            else _as_number(raw_hours, "Story.estimated_hours"),
            dependencies=_as_text_set(data.get("dependencies", ()), "Story.dependencies"),
            tags=_as_text_set(data.get("tags", ()), "Story.tags"),
            related_stories=_as_text_set(data.get("related_stories", ()), "Story.related_stories"),
            complexity=None
            if raw_complexity is None
            else _as_enum(raw_complexity, Complexity, "Story.complexity"),
            estimated_tokens=None
            if raw_tokens is None
            else int(_as_number(raw_tokens, "Story.estimated_tokens")),
        )


@dataclass(frozen=True, slots=True)
class SprintContext:
    """Static sprint configuration supplied once per batch."""

    sprint_goals: tuple[str, ...] = ()
    available_hours: float = 40.0
    team_velocity: float = 0.0
    risk_tolerance: RiskTolerance = RiskTolerance.MEDIUM
    business_priorities: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.available_hours < 0:
            raise ValueError("available_hours must be >= 0")
        if self.team_velocity < 0:
            raise ValueError("team_velocity must be >= 0")
        object.__setattr__(self, "risk_tolerance", RiskTolerance(self.risk_tolerance))
        object.__setattr__(self, "sprint_goals", tuple(self.sprint_goals))
        object.__setattr__(self, "business_priorities", tuple(self.business_priorities))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "sprint_goals": list(self.sprint_goals),
            "available_hours": self.available_hours,
            "team_velocity": self.team_velocity,
            "risk_tolerance": self.risk_tolerance.value,
            "business_priorities": list(self.business_priorities),
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> SprintContext:
        return cls(
            sprint_goals=tuple(_as_text_list(data.get("sprint_goals", ()), "sprint_goals")),
            available_hours=_as_number(data.get("available_hours", 40.0), "available_hours"),
            team_velocity=_as_number(data.get("team_velocity", 0.0), "team_velocity"),
            risk_tolerance=_as_enum(
                data.get("risk_tolerance", "medium"), RiskTolerance, "risk_tolerance"
            ),
            business_priorities=tuple(
                _as_text_list(data.get("business_priorities", ()), "business_priorities")
            ),
        )


@dataclass(frozen=True, slots=True)
class ScoreFactors:
    complexity: float
    risk: float
    sprint_value: float
    dependency_bonus: float
    business_impact: float

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "complexity": self.complexity,
            "risk": self.risk,
            "sprint_value": self.sprint_value,
            "dependency_bonus": self.dependency_bonus,
            "business_impact": self.business_impact,
        }


@dataclass(frozen=True, slots=True)
class PriorityScore:
    """Derived per scheduling pass and never persisted as source of truth."""

    story_id: str
    score: float
    factors: ScoreFactors
    reasoning: str

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "story_id": self.story_id,
            "score": self.score,
            "factors": self.factors.to_dict(),
            "reasoning": self.reasoning,
        }


@dataclass(frozen=True, slots=True)
class ErrorRecord:
    """One failed stage attempt, kept for the dead-letter history."""

    stage: str
    attempt: int
    error_type: str
    message: str
    kind: str
    category: str | None = None
    occurred_at: float = 0.0

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "stage": self.stage,
            "attempt": self.attempt,
            "error_type": self.error_type,
            "message": self.message,
            "kind": self.kind,
            "category": self.category,
            "occurred_at": self.occurred_at,
        }


@dataclass(frozen=True, slots=True)
class RetryState:
    """Attempt tracking for the current stage of one story job."""

    attempt: int = 1
    max_attempts: int = 3
    last_error: str | None = None
    next_eligible_at: float | None = None

    def __post_init__(self) -> None:
        if self.attempt < 1:
            raise ValueError("attempt must be >= 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def next_attempt(self, *, error: str, eligible_at: float) -> RetryState:
        return replace(
            self, attempt=self.attempt + 1, last_error=error, next_eligible_at=eligible_at
        )


@dataclass(frozen=True, slots=True)
class JobHandle:
    """Opaque reference returned by a stage sink for one dispatched attempt."""

    job_id: str
    story_id: str
    stage: str
    attempt: int


@dataclass(frozen=True, slots=True)
class StageOutcome:
    """Result reported by a stage worker for one job."""

    succeeded: bool
    error: BaseException | None = None

    def __post_init__(self) -> None:
        if self.succeeded and self.error is not None:
            raise ValueError("successful outcome must not carry an error")
        if not self.succeeded and self.error is None:
            raise ValueError("failed outcome requires an error")

    @classmethod
    def success(cls) -> StageOutcome:
        return cls(succeeded=True)

    @classmethod
    def failure(cls, error: BaseException) -> StageOutcome:
        return cls(succeeded=False, error=error)


@dataclass(frozen=True, slots=True)
class StoryReport:
    """Final per-story outcome within a batch."""

    story_id: str
    status: StoryStatus
    level: int | None = None
    score: float | None = None
    completed_stages: tuple[str, ...] = ()
    attempts: int = 0
    errors: tuple[ErrorRecord, ...] = ()
    reason: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "story_id": self.story_id,
            "status": self.status.value,
            "level": self.level,
            "score": self.score,
            "completed_stages": list(self.completed_stages),
            "attempts": self.attempts,
            "errors": [item.to_dict() for item in self.errors],
            "reason": self.reason,
        }


@dataclass(frozen=True, slots=True)
class BatchReport:
    """Per-story final status for a whole batch; never a single opaque flag."""

    batch_id: str
    stories: Mapping[str, StoryReport]
    levels: tuple[tuple[str, ...], ...] = ()
    cycles: tuple[tuple[str, ...], ...] = ()
    cancelled: bool = False

    def status_of(self, story_id: str) -> StoryStatus:
        return self.stories[story_id].status

    def by_status(self) -> dict[StoryStatus, tuple[str, ...]]:
        grouped: dict[StoryStatus, list[str]] = {}
        for story_id in sorted(self.stories):
            grouped.setdefault(self.stories[story_id].status, []).append(story_id)
        return {status: tuple(ids) for status, ids in grouped.items()}

    @property
    def succeeded(self) -> tuple[str, ...]:
        return self.by_status().get(StoryStatus.SUCCEEDED, ())

    @property
    def dead_lettered(self) -> tuple[str, ...]:
        return self.by_status().get(StoryStatus.DEAD_LETTERED, ())

    @property
    def all_succeeded(self) -> bool:
        return all(
            report.status is StoryStatus.SUCCEEDED for report in self.stories.values()
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "batch_id": self.batch_id,
            "cancelled": self.cancelled,
            "levels": [list(level) for level in self.levels],
            "cycles": [list(cycle) for cycle in self.cycles],
            "stories": {
                story_id: self.stories[story_id].to_dict() for story_id in sorted(self.stories)
            },
        }


def _as_id_set(value: Iterable[str], path: str) -> frozenset[str]:
    if isinstance(value, str):
        raise ValueError(f"{path} must be a collection of strings, not a string")
    items: set[str] = set()
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ValueError(f"{path} entries must be non-empty strings")
        items.add(item.strip())
    return frozenset(items)


def _as_text(value: object, path: str, *, allow_empty: bool = False) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected string, got {type(value).__name__}")
    parsed = value.strip()
    if not parsed and not allow_empty:
        raise ValueError(f"{path}: must not be empty")
    return parsed


def _as_number(value: object, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{path}: expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        raise ValueError(f"{path}: must be finite")
    return parsed


def _as_text_list(value: object, path: str) -> list[str]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        raise ValueError(f"{path}: expected a list of strings")
    return [_as_text(item, f"{path}[{index}]") for index, item in enumerate(value)]


def _as_text_set(value: object, path: str) -> frozenset[str]:
    return frozenset(_as_text_list(value, path))


def _as_enum(value: object, enum_type: type[E], path: str) -> E:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected string, got {type(value).__name__}")
    try:
        return enum_type(value.strip().lower())
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_type)
        raise ValueError(f"{path}: invalid value {value!r}; expected one of: {allowed}") from exc


__all__ = [
    "TERMINAL_STATUSES",
    "UNSATISFIABLE_STATUSES",
    "BatchReport",
    "Complexity",
    "ErrorRecord",
    "JSONScalar",
    "JSONValue",
    "JobHandle",
    "PriorityScore",
    "RetryState",
    "RiskTolerance",
    "ScoreFactors",
    "SprintContext",
    "StageOutcome",
    "Story",
    "StoryPriority",
    "StoryReport",
    "StoryStatus",
]
