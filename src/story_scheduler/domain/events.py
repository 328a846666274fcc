"""Scheduler lifecycle events and their JSON-safe payloads."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

MAX_PAYLOAD_DEPTH = 16


class EventType(StrEnum):
    """Lifecycle events emitted by the scheduler."""

    BATCH_STARTED = "BatchStarted"
    BATCH_COMPLETED = "BatchCompleted"
    BATCH_CANCELLED = "BatchCancelled"

    CYCLE_DETECTED = "CycleDetected"

    STORY_DISPATCHED = "StoryDispatched"
    STAGE_SUCCEEDED = "StageSucceeded"
    STORY_SUCCEEDED = "StorySucceeded"
    STORY_BLOCKED = "StoryBlocked"
    STORY_DEAD_LETTERED = "StoryDeadLettered"

    RETRY_SCHEDULED = "RetryScheduled"
    RETRY_EXHAUSTED = "RetryExhausted"

    BUDGET_OVERLOAD = "BudgetOverload"
    BACKPRESSURE_ACTIVATED = "BackpressureActivated"
    BACKPRESSURE_RELEASED = "BackpressureReleased"

    @classmethod
    def parse(cls, value: object) -> EventType:
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"event_type: expected string, got {type(value).__name__}")
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(member.value for member in cls)
            raise ValueError(f"unsupported event type {value!r}; allowed: {allowed}") from None


@dataclass(frozen=True, slots=True)
class SchedulerEvent:
    """
    One entry on the event bus.

    ``sequence`` is 0 until the bus stamps the event on publish. Payload values
    are coerced to plain JSON on construction, so events can be replayed and
    serialized without touching scheduler state.
    """

    event_type: EventType
    payload: dict[str, JSONValue] = field(default_factory=dict)
    batch_id: str | None = None
    sequence: int = 0

    def __post_init__(self) -> None:
        if self.sequence < 0:
            raise ValueError("sequence must be >= 0")
        object.__setattr__(self, "event_type", EventType.parse(self.event_type))
        payload = json_safe(self.payload, "payload")
        if not isinstance(payload, dict):
            raise ValueError("payload: expected object")
        object.__setattr__(self, "payload", payload)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "event_type": self.event_type.value,
            "batch_id": self.batch_id,
            "sequence": self.sequence,
            "payload": self.payload,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def build_event(
    event_type: EventType | str,
    payload: Mapping[str, object] | None = None,
    *,
    batch_id: str | None = None,
) -> SchedulerEvent:
    return SchedulerEvent(
        event_type=EventType.parse(event_type),
        payload=dict(payload or {}),  # type: ignore[arg-type]
        batch_id=batch_id,
    )


def json_safe(value: object, path: str, depth: int = 0) -> JSONValue:
    """Coerce ``value`` to plain JSON; ``path`` names the offending spot on error."""

    if isinstance(value, str):
        # StrEnum members (statuses, stages) become their plain values.
        return str(value)
    if value is None or isinstance(value, (bool, int)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"{path}: float value must be finite")
        return value
    if isinstance(value, (set, frozenset)):
        return sorted(str(item) for item in value)

    if depth >= MAX_PAYLOAD_DEPTH:
        raise ValueError(f"{path}: JSON nesting too deep")
    if isinstance(value, (list, tuple)):
        return [json_safe(item, f"{path}[{index}]", depth + 1) for index, item in enumerate(value)]
    if isinstance(value, Mapping):
        coerced: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"{path}: object keys must be strings")
            coerced[key] = json_safe(item, f"{path}.{key}", depth + 1)
        return coerced
    raise ValueError(f"{path}: value is not JSON-serializable ({type(value).__name__})")


__all__ = [
    "EventType",
    "JSONValue",
    "MAX_PAYLOAD_DEPTH",
    "SchedulerEvent",
    "build_event",
    "json_safe",
]
