"""Unit tests for planning.prioritizer."""

from __future__ import annotations

import pytest

from story_scheduler.domain.models import (
    Complexity,
    RiskTolerance,
    SprintContext,
    Story,
    StoryPriority,
)
from story_scheduler.planning.dependency_graph import build_levels
from story_scheduler.planning.prioritizer import (
    RISK_CAP,
    KeywordFactor,
    PriorityScorer,
    alignment,
    dependency_bonus,
)


def _make_story(story_id: str = "S1", **overrides: object) -> Story:
    fields: dict[str, object] = {
        "id": story_id,
        "title": "Rename label",
        "description": "Rename the label",
        "complexity": Complexity.SIMPLE,
    }
    fields.update(overrides)
    return Story(**fields)  # type: ignore[arg-type]


def test_plain_story_scores_one() -> None:
    score = PriorityScorer().score(_make_story(), SprintContext())

    assert score.score == 1.0
    assert score.factors.complexity == 1.0
    assert score.factors.risk == 1.0
    assert score.factors.sprint_value == 1.0
    assert score.factors.dependency_bonus == 0.0
    assert score.factors.business_impact == 1.0
    assert score.reasoning == "score 1.0: standard story"


def test_weighted_factors_combine() -> None:
    story = _make_story(
        description="Payment API integration",
        priority=StoryPriority.HIGH,
        complexity=Complexity.COMPLEX,
        estimated_hours=10,
    )
    ctx = SprintContext(sprint_goals=("payment flow",), available_hours=40)

    score = PriorityScorer().score(story, ctx)

    assert score.factors.complexity == pytest.approx(4.8)
    assert score.factors.risk == pytest.approx(2.6)
    assert score.factors.sprint_value == pytest.approx(1.6875)
    assert score.factors.business_impact == pytest.approx(1.8)
    assert score.score == pytest.approx(13.31)
    assert "high complexity (4.8)" in score.reasoning
    assert "elevated risk (2.6x)" in score.reasoning
    assert "high business impact (1.8x)" in score.reasoning


def test_risk_is_capped() -> None:
    story = _make_story(
        description="New experimental api state data auth customer",
        priority=StoryPriority.HIGH,
    )
    score = PriorityScorer().score(story, SprintContext())
    assert score.factors.risk == RISK_CAP


def test_scoring_is_deterministic() -> None:
    scorer = PriorityScorer()
    story = _make_story(description="Search results with pagination", tags=["ux"])
    ctx = SprintContext(business_priorities=("search",))

    assert scorer.score(story, ctx) == scorer.score(story, ctx)


def test_rank_orders_by_score_then_id() -> None:
    stories = [
        _make_story("B"),
        _make_story("A"),
        _make_story("C", description="Payment flow", priority=StoryPriority.HIGH),
    ]
    ranked = PriorityScorer().rank(stories, SprintContext())

    assert [item.story_id for item in ranked] == ["C", "A", "B"]


def test_rank_levels_follows_plan_levels() -> None:
    stories = [
        _make_story("S1", dependencies=["S2", "S3"]),
        _make_story("S2"),
        _make_story("S3", description="Payment checkout"),
    ]
    plan = build_levels(stories)
    ranked = PriorityScorer().rank_levels(plan, SprintContext())

    assert [[item.story_id for item in level] for level in ranked] == [["S3", "S2"], ["S1"]]


def test_dependencies_raise_bonus_and_complexity() -> None:
    story = _make_story(dependencies=["X1", "X2"], related_stories=["R1"])

    assert dependency_bonus(story) == pytest.approx(0.2)
    score = PriorityScorer().score(story, SprintContext())
    assert score.factors.complexity == pytest.approx(1.2)


@pytest.mark.parametrize(
    ("hours", "tolerance", "expected"),
    [
        (40, RiskTolerance.MEDIUM, 5),
        (40, RiskTolerance.LOW, 3),
        (40, RiskTolerance.HIGH, 6),
        (0, RiskTolerance.MEDIUM, 1),
    ],
)
def test_recommended_batch_size(hours: float, tolerance: RiskTolerance, expected: int) -> None:
    ctx = SprintContext(available_hours=hours, risk_tolerance=tolerance)
    assert PriorityScorer.recommended_batch_size(ctx) == expected


def test_alignment_ignores_short_words() -> None:
    assert alignment("improve checkout speed", ["checkout flow"]) == 0.5
    assert alignment("a b c", ["a b"]) == 0.0
    assert alignment("anything", []) == 0.0


def test_custom_factor_tables() -> None:
    scorer = PriorityScorer(
        risk_factors=(KeywordFactor("legacy", ("legacy",), 3.0),),
        impact_factors=(),
    )
    score = scorer.score(_make_story(description="Legacy cleanup"), SprintContext())
    assert score.factors.risk == 3.0
    assert score.score == 3.0


def test_validation() -> None:
    with pytest.raises(ValueError, match="multiplier must be > 0"):
        KeywordFactor("bad", ("x",), 0)
    with pytest.raises(ValueError, match="risk_cap must be >= 1.0"):
        PriorityScorer(risk_cap=0.5)
