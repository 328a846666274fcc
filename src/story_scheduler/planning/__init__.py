"""Planning plane: dependency levels, priority scoring, and stage selection."""

from story_scheduler.planning.dependency_graph import (
    CycleError,
    DependencyGraph,
    DependencyNode,
    ExternalDependencyPolicy,
    GraphStats,
    LevelPlan,
    UnknownDependencyError,
    build_levels,
)
from story_scheduler.planning.prioritizer import KeywordFactor, PriorityScorer
from story_scheduler.planning.stages import (
    DEFAULT_STAGE_RULES,
    StageRule,
    estimate_stage_cost,
    infer_complexity,
    select_stages,
)

__all__ = [
    "DEFAULT_STAGE_RULES",
    "CycleError",
    "DependencyGraph",
    "DependencyNode",
    "ExternalDependencyPolicy",
    "GraphStats",
    "KeywordFactor",
    "LevelPlan",
    "PriorityScorer",
    "StageRule",
    "UnknownDependencyError",
    "build_levels",
    "estimate_stage_cost",
    "infer_complexity",
    "select_stages",
]
