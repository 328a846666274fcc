"""
story-scheduler domain layer.

File: src/story_scheduler/domain/__init__.py

Purpose
- Domain types shared across planes: Story, SprintContext, PriorityScore, job and report types.

Functional requirements
- Domain objects must be immutable and serializable.
- Keep the domain layer free of IO side effects.
"""

from story_scheduler.domain.events import EventType, SchedulerEvent, build_event
from story_scheduler.domain.models import (
    TERMINAL_STATUSES,
    UNSATISFIABLE_STATUSES,
    BatchReport,
    Complexity,
    ErrorRecord,
    JobHandle,
    PriorityScore,
    RetryState,
    RiskTolerance,
    ScoreFactors,
    SprintContext,
    StageOutcome,
    Story,
    StoryPriority,
    StoryReport,
    StoryStatus,
)

__all__ = [
    "TERMINAL_STATUSES",
    "UNSATISFIABLE_STATUSES",
    "BatchReport",
    "Complexity",
    "ErrorRecord",
    "EventType",
    "JobHandle",
    "PriorityScore",
    "RetryState",
    "RiskTolerance",
    "SchedulerEvent",
    "ScoreFactors",
    "SprintContext",
    "StageOutcome",
    "Story",
    "StoryPriority",
    "StoryReport",
    "StoryStatus",
    "build_event",
]
