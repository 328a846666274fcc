"""Control plane: budget admission, retry classification, and batch dispatch."""

from story_scheduler.control_plane.budget_governor import (
    AdmissionDecision,
    BackpressureLevel,
    BudgetGovernor,
    BudgetLimits,
    BudgetWindow,
    WindowKind,
)
from story_scheduler.control_plane.interfaces import (
    DeadLetterSink,
    InMemoryDeadLetterSink,
    InMemoryStorySource,
    RecordingTelemetrySink,
    SimulatedStageSink,
    StageSink,
    StorySource,
    TelemetrySink,
)
from story_scheduler.control_plane.retry_policy import (
    BudgetOversizeError,
    ErrorCategory,
    ErrorKind,
    RetryAction,
    RetryClassifier,
    RetryDecision,
    RetryPolicy,
    StageError,
    StageTimeoutError,
)
from story_scheduler.control_plane.scheduler import (
    BatchScheduler,
    SchedulerConfig,
    StageSettings,
)

__all__ = [
    "AdmissionDecision",
    "BackpressureLevel",
    "BatchScheduler",
    "BudgetGovernor",
    "BudgetLimits",
    "BudgetOversizeError",
    "BudgetWindow",
    "DeadLetterSink",
    "ErrorCategory",
    "ErrorKind",
    "InMemoryDeadLetterSink",
    "InMemoryStorySource",
    "RecordingTelemetrySink",
    "RetryAction",
    "RetryClassifier",
    "RetryDecision",
    "RetryPolicy",
    "SchedulerConfig",
    "SimulatedStageSink",
    "StageError",
    "StageSettings",
    "StageSink",
    "StageTimeoutError",
    "StorySource",
    "TelemetrySink",
    "WindowKind",
]
