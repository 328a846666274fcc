"""Unit tests for scheduler event envelopes."""

from __future__ import annotations

import json

import pytest

from story_scheduler.domain.events import EventType, SchedulerEvent, build_event
from story_scheduler.domain.models import StoryStatus


def test_build_event_normalizes_payload() -> None:
    event = build_event(
        "StoryDispatched",
        {"story_id": "S1", "status": StoryStatus.DISPATCHED, "ids": frozenset({"b", "a"})},
        batch_id="b1",
    )

    assert event.event_type is EventType.STORY_DISPATCHED
    assert event.payload == {"story_id": "S1", "status": "dispatched", "ids": ["a", "b"]}
    assert event.sequence == 0


def test_event_to_json_is_deterministic() -> None:
    event = build_event(EventType.BATCH_STARTED, {"b": 1, "a": [1, 2]}, batch_id="b1")
    decoded = json.loads(event.to_json())

    assert decoded == {
        "event_type": "BatchStarted",
        "batch_id": "b1",
        "sequence": 0,
        "payload": {"a": [1, 2], "b": 1},
    }
    assert event.to_json() == build_event(
        EventType.BATCH_STARTED, {"a": [1, 2], "b": 1}, batch_id="b1"
    ).to_json()


@pytest.mark.parametrize(
    ("event_type", "payload", "message"),
    [
        ("NotAnEvent", {}, "unsupported event type"),
        (EventType.BATCH_STARTED, {"x": float("nan")}, "must be finite"),
        (EventType.BATCH_STARTED, {"x": object()}, "not JSON-serializable"),
    ],
)
def test_event_validation(event_type: object, payload: dict[str, object], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        build_event(event_type, payload)  # type: ignore[arg-type]


def test_negative_sequence_rejected() -> None:
    with pytest.raises(ValueError, match="sequence must be >= 0"):
        SchedulerEvent(EventType.BATCH_STARTED, sequence=-1)
