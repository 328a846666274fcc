"""Per-story pipeline stage selection, complexity inference, and token cost estimation."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

from story_scheduler.constants import (
    MAX_ESTIMATED_TOKENS,
    MIN_ESTIMATED_TOKENS,
    PIPELINE_STAGES,
    STAGE_A11Y,
    STAGE_DRAFT,
    STAGE_LOGIC,
    STAGE_REPORT,
    STAGE_STYLE,
    STAGE_TEST,
    STAGE_TYPEFIX,
)
from story_scheduler.domain.models import Complexity, Story

if TYPE_CHECKING:
    from collections.abc import Sequence

_COMPLEXITY_PATTERNS: Final[tuple[re.Pattern[str], ...]] = tuple(
    re.compile(pattern)
    for pattern in (
        r"api|backend|server",
        r"validation|form",
        r"state|redux|context",
        r"animation|transition",
        r"chart|graph|visualization",
        r"real.?time|websocket",
        r"authentication|authorization",
        r"file.?upload|download",
        r"search|filter|sort",
        r"pagination|infinite.?scroll",
        r"microservice|async",
        r"integration|complex|advanced",
    )
)

_COMPLEX_THRESHOLD: Final[int] = 7
_MEDIUM_THRESHOLD: Final[int] = 4

_TOKEN_MULTIPLIER: Final[dict[Complexity, float]] = {
    Complexity.SIMPLE: 1.2,
    Complexity.MEDIUM: 1.8,
    Complexity.COMPLEX: 2.5,
}


@dataclass(frozen=True, slots=True)
class StageRule:
    """A stage runs when ``pattern`` is ``None`` or matches the story description."""

    stage: str
    pattern: re.Pattern[str] | None = None

    def __post_init__(self) -> None:
        if self.stage not in PIPELINE_STAGES:
            raise ValueError(f"stage must be one of {', '.join(PIPELINE_STAGES)}")

    def applies_to(self, story: Story) -> bool:
        if self.pattern is None:
            return True
        return self.pattern.search(story.description.lower()) is not None


DEFAULT_STAGE_RULES: Final[tuple[StageRule, ...]] = (
    StageRule(STAGE_DRAFT),
    StageRule(STAGE_LOGIC, re.compile(r"logic|calculation|validation")),
    StageRule(STAGE_STYLE, re.compile(r"style|design|\bui\b")),
    StageRule(STAGE_TEST),
    StageRule(STAGE_A11Y, re.compile(r"accessibility|\ba11y\b|screen reader")),
    StageRule(STAGE_TYPEFIX),
    StageRule(STAGE_REPORT),
)


def select_stages(
    story: Story,
    rules: Sequence[StageRule] = DEFAULT_STAGE_RULES,
) -> tuple[str, ...]:
    """Return the stages ``story`` passes through, in pipeline order."""
    selected = {rule.stage for rule in rules if rule.applies_to(story)}
    return tuple(stage for stage in PIPELINE_STAGES if stage in selected)


def complexity_score(story: Story) -> int:
    """Keyword and hours based complexity on a 1-10 scale."""
    description = story.description.lower()
    score = sum(1 for pattern in _COMPLEXITY_PATTERNS if pattern.search(description))

    hours = story.estimated_hours
    if hours is not None:
        if hours > 8:
            score += 3
        elif hours > 4:
            score += 2
        elif hours > 2:
            score += 1

    return max(1, min(score, 10))


def infer_complexity(story: Story) -> Complexity:
    """Return the declared complexity bucket or infer one from the story text."""
    if story.complexity is not None:
        return story.complexity
    score = complexity_score(story)
    if score >= _COMPLEX_THRESHOLD:
        return Complexity.COMPLEX
    if score >= _MEDIUM_THRESHOLD:
        return Complexity.MEDIUM
    return Complexity.SIMPLE


def estimate_stage_cost(story: Story, *, base_cost: int = 0) -> int:
    """Estimate the token cost of dispatching one stage of ``story``.

    An explicit ``estimated_tokens`` on the story wins. Otherwise the text
    length (about four characters per token) plus the stage base cost is scaled
    by complexity and clamped to the supported range.
    """
    if story.estimated_tokens is not None:
        return story.estimated_tokens
    if base_cost < 0:
        raise ValueError("base_cost must be >= 0")

    tokens = math.ceil(len(story.description) / 4) + math.ceil(len(story.title) / 4) + base_cost
    scaled = tokens * _TOKEN_MULTIPLIER[infer_complexity(story)]
    return int(max(MIN_ESTIMATED_TOKENS, min(scaled, MAX_ESTIMATED_TOKENS)))


__all__ = [
    "DEFAULT_STAGE_RULES",
    "StageRule",
    "complexity_score",
    "estimate_stage_cost",
    "infer_complexity",
    "select_stages",
]
