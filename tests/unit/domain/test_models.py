"""Unit tests for scheduler domain models: validation and serialization."""

from __future__ import annotations

import json

import pytest

from story_scheduler.domain.models import (
    BatchReport,
    Complexity,
    ErrorRecord,
    RetryState,
    RiskTolerance,
    SprintContext,
    StageOutcome,
    Story,
    StoryPriority,
    StoryReport,
    StoryStatus,
)


def _make_story(story_id: str = "S1", **overrides: object) -> Story:
    fields: dict[str, object] = {
        "id": story_id,
        "title": f"Story {story_id}",
        "description": "Build the payment form",
    }
    fields.update(overrides)
    return Story(**fields)  # type: ignore[arg-type]


def test_story_normalizes_collections_and_enums() -> None:
    story = _make_story(
        dependencies=["S0", " S9 "],
        tags=("ui",),
        priority="high",
        complexity="complex",
    )

    assert story.dependencies == frozenset({"S0", "S9"})
    assert story.tags == frozenset({"ui"})
    assert story.priority is StoryPriority.HIGH
    assert story.complexity is Complexity.COMPLEX


def test_story_keeps_self_dependency_for_cycle_detection() -> None:
    story = _make_story("S1", dependencies=["S1"])

    assert story.dependencies == frozenset({"S1"})


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"id": "  "}, "id must be a non-empty string"),
        ({"estimated_hours": 0}, "estimated_hours must be > 0"),
        ({"estimated_tokens": -5}, "estimated_tokens must be > 0"),
        ({"dependencies": "S2"}, "not a string"),
    ],
)
def test_story_validation_errors(overrides: dict[str, object], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        _make_story(**overrides)


def test_story_text_includes_sorted_tags() -> None:
    story = _make_story(description="Checkout", tags=["zeta", "alpha"])
    assert story.text == "Checkout alpha zeta"


def test_story_from_mapping_round_trips_to_dict() -> None:
    payload = {
        "id": "S7",
        "title": "Search page",
        "description": "Search and filter results",
        "priority": "HIGH",
        "estimated_hours": 6,
        "dependencies": ["S1"],
        "tags": ["search"],
        "complexity": "medium",
    }
    story = Story.from_mapping(payload)

    assert story.priority is StoryPriority.HIGH
    assert story.estimated_hours == 6.0
    restored = Story.from_mapping(
        {key: value for key, value in story.to_dict().items() if value is not None}
    )
    assert restored == story


def test_story_from_mapping_rejects_unknown_fields() -> None:
    with pytest.raises(ValueError, match="unexpected fields"):
        Story.from_mapping({"id": "S1", "owner": "someone"})


def test_story_from_mapping_rejects_bad_priority() -> None:
    with pytest.raises(ValueError, match="expected one of: low, medium, high"):
        Story.from_mapping({"id": "S1", "priority": "urgent"})


def test_sprint_context_defaults_and_from_mapping() -> None:
    default = SprintContext()
    assert default.available_hours == 40.0
    assert default.risk_tolerance is RiskTolerance.MEDIUM

    parsed = SprintContext.from_mapping(
        {
            "sprint_goals": ["checkout"],
            "available_hours": 24,
            "risk_tolerance": "low",
            "business_priorities": ["revenue"],
        }
    )
    assert parsed.sprint_goals == ("checkout",)
    assert parsed.available_hours == 24.0
    assert parsed.risk_tolerance is RiskTolerance.LOW
    assert parsed.to_dict()["business_priorities"] == ["revenue"]


def test_sprint_context_rejects_negative_hours() -> None:
    with pytest.raises(ValueError, match="available_hours must be >= 0"):
        SprintContext(available_hours=-1)


def test_retry_state_next_attempt_and_exhaustion() -> None:
    state = RetryState(max_attempts=2)
    assert not state.exhausted

    advanced = state.next_attempt(error="boom", eligible_at=12.5)
    assert advanced.attempt == 2
    assert advanced.last_error == "boom"
    assert advanced.next_eligible_at == 12.5
    assert advanced.exhausted


def test_stage_outcome_invariants() -> None:
    assert StageOutcome.success().succeeded
    failure = StageOutcome.failure(RuntimeError("x"))
    assert not failure.succeeded
    assert isinstance(failure.error, RuntimeError)

    with pytest.raises(ValueError, match="must not carry an error"):
        StageOutcome(succeeded=True, error=RuntimeError("x"))
    with pytest.raises(ValueError, match="requires an error"):
        StageOutcome(succeeded=False)


def test_terminal_statuses() -> None:
    assert StoryStatus.SUCCEEDED.is_terminal
    assert StoryStatus.DEAD_LETTERED.is_terminal
    assert StoryStatus.BLOCKED.is_terminal
    assert not StoryStatus.RETRY_WAIT.is_terminal
    assert not StoryStatus.DISPATCHED.is_terminal


def test_batch_report_groups_statuses_and_serializes() -> None:
    error = ErrorRecord(
        stage="logic", attempt=1, error_type="StageError", message="boom", kind="permanent"
    )
    report = BatchReport(
        batch_id="b1",
        stories={
            "S2": StoryReport("S2", StoryStatus.DEAD_LETTERED, errors=(error,)),
            "S1": StoryReport("S1", StoryStatus.SUCCEEDED, level=0, score=1.5),
            "S3": StoryReport("S3", StoryStatus.SUCCEEDED, level=1),
        },
        levels=(("S1",), ("S2", "S3")),
    )

    assert report.succeeded == ("S1", "S3")
    assert report.dead_lettered == ("S2",)
    assert not report.all_succeeded
    assert report.status_of("S2") is StoryStatus.DEAD_LETTERED

    encoded = json.loads(json.dumps(report.to_dict()))
    assert list(encoded["stories"]) == ["S1", "S2", "S3"]
    assert encoded["stories"]["S2"]["errors"][0]["kind"] == "permanent"
    assert encoded["levels"] == [["S1"], ["S2", "S3"]]
