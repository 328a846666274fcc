"""
Weighted story priority scoring.

The score combines five factors:

    score = (complexity * risk / sprint_value) * (1 + dependency_bonus) * business_impact

Risk and business impact are driven by keyword tables. Each table entry is a
:class:`KeywordFactor`; a single reducer multiplies in every entry whose
keywords appear in the story text, so adding a factor is a data change.

Scoring is a pure function of ``(story, sprint_context)``. Identical inputs
always yield an identical :class:`PriorityScore`.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

from story_scheduler.domain.models import (
    Complexity,
    PriorityScore,
    RiskTolerance,
    ScoreFactors,
    SprintContext,
    Story,
    StoryPriority,
)
from story_scheduler.planning.stages import infer_complexity

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from story_scheduler.planning.dependency_graph import LevelPlan


@dataclass(frozen=True, slots=True)
class KeywordFactor:
    """Multiplier applied when any keyword occurs in the lowercased story text.

    ``tags`` match story tags exactly and ``priorities`` match the declared
    story priority; either also triggers the factor.
    """

    name: str
    keywords: tuple[str, ...]
    multiplier: float
    tags: tuple[str, ...] = ()
    priorities: tuple[StoryPriority, ...] = ()

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("name must be non-empty")
        if self.multiplier <= 0:
            raise ValueError("multiplier must be > 0")
        object.__setattr__(self, "keywords", tuple(word.lower() for word in self.keywords))
        object.__setattr__(self, "tags", tuple(tag.lower() for tag in self.tags))

    def matches(self, story: Story, text: str) -> bool:
        if any(keyword in text for keyword in self.keywords):
            return True
        if self.tags and any(tag.lower() in self.tags for tag in story.tags):
            return True
        return story.priority in self.priorities


RISK_FACTORS: Final[tuple[KeywordFactor, ...]] = (
    KeywordFactor("new_technology", ("new", "experimental", "prototype"), 1.5),
    KeywordFactor("external_integration", ("api", "integration", "external"), 1.3),
    KeywordFactor("complex_logic", ("algorithm", "calculation", "complex logic"), 1.4),
    KeywordFactor("state_management", ("state", "redux", "context", "global"), 1.2),
    KeywordFactor(
        "critical_path", (), 2.0, tags=("critical",), priorities=(StoryPriority.HIGH,)
    ),
    KeywordFactor("customer_facing", ("user interface", "customer", "public"), 1.6),
    KeywordFactor("data_integrity", ("data", "database", "persistence"), 1.8),
    KeywordFactor("security", ("auth", "security", "permission", "access"), 1.7),
)

BUSINESS_IMPACT_FACTORS: Final[tuple[KeywordFactor, ...]] = (
    KeywordFactor("revenue", ("revenue", "sales", "conversion", "payment"), 1.8),
    KeywordFactor(
        "user_experience", ("ux", "user experience", "usability", "accessibility"), 1.4
    ),
    KeywordFactor("performance", ("performance", "speed", "optimization", "loading"), 1.3),
    KeywordFactor("compliance", ("compliance", "gdpr", "security", "audit"), 1.6),
)

COMPLEXITY_WEIGHTS: Final[dict[Complexity, float]] = {
    Complexity.SIMPLE: 1.0,
    Complexity.MEDIUM: 2.0,
    Complexity.COMPLEX: 4.0,
}

PRIORITY_MULTIPLIERS: Final[dict[StoryPriority, float]] = {
    StoryPriority.HIGH: 1.5,
    StoryPriority.MEDIUM: 1.0,
    StoryPriority.LOW: 0.7,
}

RISK_TOLERANCE_MULTIPLIERS: Final[dict[RiskTolerance, float]] = {
    RiskTolerance.LOW: 0.7,
    RiskTolerance.MEDIUM: 1.0,
    RiskTolerance.HIGH: 1.3,
}

RISK_CAP: Final[float] = 5.0
MIN_SPRINT_VALUE: Final[float] = 0.1
HOURS_PER_STORY: Final[int] = 8

_REASON_COMPLEXITY: Final[float] = 2.0
_REASON_RISK: Final[float] = 1.5
_REASON_SPRINT_VALUE: Final[float] = 1.5
_REASON_DEPENDENCIES: Final[float] = 0.3
_REASON_IMPACT: Final[float] = 1.4


class PriorityScorer:
    """Stateless scorer; safe to share across batches and tasks."""

    __slots__ = ("_risk_factors", "_impact_factors", "_risk_cap")

    def __init__(
        self,
        *,
        risk_factors: Sequence[KeywordFactor] = RISK_FACTORS,
        impact_factors: Sequence[KeywordFactor] = BUSINESS_IMPACT_FACTORS,
        risk_cap: float = RISK_CAP,
    ) -> None:
        if risk_cap < 1.0:
            raise ValueError("risk_cap must be >= 1.0")
        self._risk_factors = tuple(risk_factors)
        self._impact_factors = tuple(impact_factors)
        self._risk_cap = risk_cap

    def score(self, story: Story, sprint_context: SprintContext) -> PriorityScore:
        text = story.text.lower()
        factors = ScoreFactors(
            complexity=complexity_factor(story),
            risk=min(apply_keyword_factors(story, text, self._risk_factors), self._risk_cap),
            sprint_value=sprint_value(story, sprint_context),
            dependency_bonus=dependency_bonus(story),
            business_impact=apply_keyword_factors(story, text, self._impact_factors),
        )
        raw = (
            (factors.complexity * factors.risk / max(factors.sprint_value, MIN_SPRINT_VALUE))
            * (1 + factors.dependency_bonus)
            * factors.business_impact
        )
        final = round(raw, 2)
        return PriorityScore(
            story_id=story.id,
            score=final,
            factors=factors,
            reasoning=_reasoning(factors, final),
        )

    def rank(
        self, stories: Iterable[Story], sprint_context: SprintContext
    ) -> tuple[PriorityScore, ...]:
        """Score and sort descending by score; ties break on story id."""
        scores = [self.score(story, sprint_context) for story in stories]
        return tuple(sorted(scores, key=lambda item: (-item.score, item.story_id)))

    def rank_levels(
        self, plan: LevelPlan, sprint_context: SprintContext
    ) -> tuple[tuple[PriorityScore, ...], ...]:
        return tuple(self.rank(level, sprint_context) for level in plan.levels)

    def score_all(
        self, stories: Iterable[Story], sprint_context: SprintContext
    ) -> Mapping[str, PriorityScore]:
        return {story.id: self.score(story, sprint_context) for story in stories}

    @staticmethod
    def recommended_batch_size(sprint_context: SprintContext) -> int:
        base_size = math.floor(sprint_context.available_hours / HOURS_PER_STORY)
        multiplier = RISK_TOLERANCE_MULTIPLIERS[sprint_context.risk_tolerance]
        return max(1, math.floor(base_size * multiplier))


def apply_keyword_factors(
    story: Story,
    text: str,
    factors: Iterable[KeywordFactor],
    *,
    start: float = 1.0,
) -> float:
    """Multiply ``start`` by every factor matching ``story``/``text``."""
    value = start
    for factor in factors:
        if factor.matches(story, text):
            value *= factor.multiplier
    return value


def complexity_factor(story: Story) -> float:
    weight = COMPLEXITY_WEIGHTS[infer_complexity(story)]
    return weight * _hours_factor(story.estimated_hours) * (1 + 0.1 * len(story.dependencies))


def sprint_value(story: Story, sprint_context: SprintContext) -> float:
    text = story.text.lower()
    value = 1.0
    value *= 1 + alignment(text, sprint_context.sprint_goals)
    value *= 1 + 0.5 * alignment(text, sprint_context.business_priorities)
    value *= PRIORITY_MULTIPLIERS[story.priority]

    hours = story.estimated_hours
    if hours is not None and sprint_context.available_hours > 0:
        value *= 0.5 + min(hours / sprint_context.available_hours, 1.0)

    return max(value, MIN_SPRINT_VALUE)


def dependency_bonus(story: Story) -> float:
    return 0.1 * len(story.related_stories) + 0.05 * len(story.dependencies)


def alignment(text: str, phrases: Iterable[str]) -> float:
    """Best fraction of a phrase's words (longer than 3 chars) found in ``text``."""
    best = 0.0
    for phrase in phrases:
        words = phrase.lower().split()
        if not words:
            continue
        matching = [word for word in words if len(word) > 3 and word in text]
        best = max(best, len(matching) / len(words))
    return best


def _hours_factor(hours: float | None) -> float:
    if hours is None:
        return 1.0
    if hours > 16:
        return 1.5
    if hours > 8:
        return 1.2
    if hours < 2:
        return 0.8
    return 1.0


def _reasoning(factors: ScoreFactors, final: float) -> str:
    reasons: list[str] = []
    if factors.complexity > _REASON_COMPLEXITY:
        reasons.append(f"high complexity ({factors.complexity:.1f})")
    if factors.risk > _REASON_RISK:
        reasons.append(f"elevated risk ({factors.risk:.1f}x)")
    if factors.sprint_value > _REASON_SPRINT_VALUE:
        reasons.append(f"high sprint value ({factors.sprint_value:.1f})")
    if factors.dependency_bonus > _REASON_DEPENDENCIES:
        reasons.append(f"many dependencies (+{factors.dependency_bonus * 100:.0f}%)")
    if factors.business_impact > _REASON_IMPACT:
        reasons.append(f"high business impact ({factors.business_impact:.1f}x)")
    if not reasons:
        reasons.append("standard story")
    return f"score {final}: {', '.join(reasons)}"


__all__ = [
    "BUSINESS_IMPACT_FACTORS",
    "COMPLEXITY_WEIGHTS",
    "PRIORITY_MULTIPLIERS",
    "RISK_CAP",
    "RISK_FACTORS",
    "RISK_TOLERANCE_MULTIPLIERS",
    "KeywordFactor",
    "PriorityScorer",
    "alignment",
    "apply_keyword_factors",
    "complexity_factor",
    "dependency_bonus",
    "sprint_value",
]
