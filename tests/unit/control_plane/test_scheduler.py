"""Unit tests for the dependency-aware batch scheduler and stage dispatcher."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

import pytest

from story_scheduler.config import default_config
from story_scheduler.control_plane.budget_governor import BudgetGovernor, BudgetLimits
from story_scheduler.control_plane.interfaces import (
    InMemoryDeadLetterSink,
    InMemoryStorySource,
    RecordingTelemetrySink,
    SimulatedStageSink,
)
from story_scheduler.control_plane.retry_policy import RetryClassifier, RetryPolicy, StageError
from story_scheduler.control_plane.scheduler import BatchScheduler, SchedulerConfig, StageSettings
from story_scheduler.domain.events import EventType
from story_scheduler.domain.models import (
    ErrorRecord,
    JobHandle,
    SprintContext,
    StageOutcome,
    Story,
    StoryPriority,
    StoryStatus,
)
from story_scheduler.observability.events import EventBus
from story_scheduler.planning.dependency_graph import CycleError, ExternalDependencyPolicy


@dataclass
class FakeClock:
    current: float = 1_000.0
    sleep_calls: list[float] = field(default_factory=list)

    def now(self) -> float:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleep_calls.append(seconds)
        self.current += seconds
        await asyncio.sleep(0)


@dataclass
class _Harness:
    scheduler: BatchScheduler
    sink: SimulatedStageSink
    clock: FakeClock
    bus: EventBus
    dead_letters: InMemoryDeadLetterSink
    telemetry: RecordingTelemetrySink

    def event_types(self) -> list[str]:
        return [event.event_type.value for event in self.bus.replay()]

    def first_dispatch(self, story_id: str) -> int:
        return self.sink.dispatch_order().index(story_id)

    def last_dispatch(self, story_id: str) -> int:
        order = self.sink.dispatch_order()
        return len(order) - 1 - order[::-1].index(story_id)


def _make_story(story_id: str, *dependencies: str, **overrides: object) -> Story:
    fields: dict[str, object] = {
        "id": story_id,
        "title": f"Story {story_id}",
        "description": "Rename label",
        "dependencies": frozenset(dependencies),
    }
    fields.update(overrides)
    return Story(**fields)  # type: ignore[arg-type]


def _make_harness(
    *,
    sink: SimulatedStageSink | None = None,
    config: SchedulerConfig | None = None,
    limits: BudgetLimits | None = None,
    classifier: RetryClassifier | None = None,
    dead_letters: InMemoryDeadLetterSink | None = None,
) -> _Harness:
    clock = FakeClock()
    stage_sink = sink or SimulatedStageSink()
    bus = EventBus()
    dead_letters = dead_letters if dead_letters is not None else InMemoryDeadLetterSink()
    telemetry = RecordingTelemetrySink()
    scheduler = BatchScheduler(
        stage_sink=stage_sink,
        governor=BudgetGovernor(limits, clock=clock.now),
        classifier=classifier or RetryClassifier(RetryPolicy(jitter=0.0)),
        config=config,
        event_bus=bus,
        dead_letter_sink=dead_letters,
        telemetry_sink=telemetry,
        clock=clock.now,
        sleep=clock.sleep,
    )
    stage_sink.bind(scheduler.report_outcome, scheduler.report_cost)
    return _Harness(scheduler, stage_sink, clock, bus, dead_letters, telemetry)


class _StalledDispatchSink(SimulatedStageSink):
    """Never returns from the first dispatch of each listed ``(story_id, stage)``."""

    def __init__(self, stalled: set[tuple[str, str]]) -> None:
        super().__init__()
        self._stalled = set(stalled)

    async def dispatch(
        self, stage: str, story_id: str, payload: Mapping[str, object], priority: float
    ) -> JobHandle:
        if (story_id, stage) in self._stalled:
            self._stalled.discard((story_id, stage))
            await asyncio.Event().wait()
        return await super().dispatch(stage, story_id, payload, priority)


class _OfflineDeadLetterSink(InMemoryDeadLetterSink):
    def publish_dead_letter(
        self, story_id: str, stage: str, error_history: Sequence[ErrorRecord]
    ) -> None:
        raise RuntimeError("dead letter store offline")


async def test_dependent_story_waits_for_all_dependencies() -> None:
    harness = _make_harness(sink=SimulatedStageSink(default_duration=0.005))
    stories = [_make_story("S1", "S2", "S3"), _make_story("S2"), _make_story("S3")]

    report = await harness.scheduler.run_batch(stories, SprintContext(), batch_id="b1")

    assert report.batch_id == "b1"
    assert report.all_succeeded
    assert report.levels == (("S2", "S3"), ("S1",))
    assert report.stories["S1"].completed_stages == ("draft", "test", "typefix", "report")
    assert harness.first_dispatch("S1") > harness.last_dispatch("S2")
    assert harness.first_dispatch("S1") > harness.last_dispatch("S3")

    types = harness.event_types()
    assert types[0] == EventType.BATCH_STARTED.value
    assert types[-1] == EventType.BATCH_COMPLETED.value
    succeeded = harness.bus.replay(event_type=EventType.STORY_SUCCEEDED)
    assert [event.payload["story_id"] for event in succeeded][-1] == "S1"


async def test_stage_concurrency_limit_is_respected() -> None:
    harness = _make_harness(sink=SimulatedStageSink(default_duration=0.01))
    stories = [_make_story(f"S{index}") for index in range(6)]

    report = await harness.scheduler.run_batch(stories)

    assert report.all_succeeded
    assert harness.sink.peak_in_flight("draft") == 2
    assert harness.scheduler.stage_pool("draft").peak == 2
    assert harness.scheduler.stage_pool("typefix").peak == 1
    assert harness.scheduler.stage_pool("draft").in_use == 0


async def test_ready_stories_dispatch_by_score() -> None:
    config = SchedulerConfig(stages={"draft": StageSettings(concurrency=1)})
    harness = _make_harness(sink=SimulatedStageSink(default_duration=0.001), config=config)
    stories = [
        _make_story("A"),
        _make_story("B", description="Payment flow", priority=StoryPriority.HIGH),
        _make_story("C", description="Payment flow"),
    ]

    report = await harness.scheduler.run_batch(stories)

    assert harness.sink.dispatch_order("draft") == ("B", "C", "A")
    assert report.stories["B"].score == pytest.approx(2.4)


async def test_transient_failure_retries_then_succeeds() -> None:
    sink = SimulatedStageSink(
        script={("S1", "draft"): [StageError("network timeout", stage="draft")]}
    )
    harness = _make_harness(sink=sink)
    start = harness.clock.current

    report = await harness.scheduler.run_batch([_make_story("S1")])

    story = report.stories["S1"]
    assert story.status is StoryStatus.SUCCEEDED
    assert story.attempts == 5
    assert len(story.errors) == 1
    assert story.errors[0].category == "network_timeout"
    assert story.errors[0].kind == "transient"
    assert harness.clock.current >= start + 2.0
    assert EventType.RETRY_SCHEDULED.value in harness.event_types()
    assert harness.dead_letters.entries == []


async def test_permanent_failure_dead_letters_and_blocks_dependents() -> None:
    sink = SimulatedStageSink(
        script={("S1", "draft"): [StageError("invalid api key", stage="draft")]}
    )
    harness = _make_harness(sink=sink)

    report = await harness.scheduler.run_batch([_make_story("S1"), _make_story("S2", "S1")])

    assert report.status_of("S1") is StoryStatus.DEAD_LETTERED
    assert report.stories["S1"].attempts == 1
    assert report.status_of("S2") is StoryStatus.BLOCKED
    assert report.stories["S2"].reason == "dependency not satisfied: S1 (dead_lettered)"
    assert not report.all_succeeded

    assert harness.dead_letters.story_ids == ("S1",)
    entry = harness.dead_letters.entries[0]
    assert entry.stage == "draft"
    assert entry.error_history[0].category == "authentication_error"
    assert entry.error_history[0].kind == "permanent"

    types = harness.event_types()
    assert EventType.STORY_DEAD_LETTERED.value in types
    assert EventType.STORY_BLOCKED.value in types

    late = harness.sink.dispatched[0]
    assert harness.scheduler.report_outcome(late, StageOutcome.success()) is False


async def test_stage_timeout_retries_then_dead_letters() -> None:
    config = SchedulerConfig(
        stages={"draft": StageSettings(concurrency=1, timeout_seconds=0.05, max_attempts=2)}
    )
    sink = SimulatedStageSink(script={("S1", "draft"): [None, None]})
    harness = _make_harness(
        sink=sink,
        config=config,
        classifier=RetryClassifier(RetryPolicy(jitter=0.0), categories=()),
    )

    report = await harness.scheduler.run_batch([_make_story("S1")])

    story = report.stories["S1"]
    assert story.status is StoryStatus.DEAD_LETTERED
    assert story.reason == "retries exhausted"
    assert [error.error_type for error in story.errors] == [
        "StageTimeoutError",
        "StageTimeoutError",
    ]
    assert 1.0 in harness.clock.sleep_calls
    assert len(harness.bus.replay(event_type=EventType.RETRY_EXHAUSTED)) == 1


async def test_cycle_raises_without_allow_partial() -> None:
    harness = _make_harness()
    stories = [_make_story("A", "B"), _make_story("B", "A"), _make_story("C")]

    with pytest.raises(CycleError) as error:
        await harness.scheduler.run_batch(stories)

    assert error.value.story_ids == frozenset({"A", "B"})
    assert harness.sink.dispatched == []
    assert harness.event_types() == [EventType.CYCLE_DETECTED.value]


async def test_cycle_with_allow_partial_runs_remainder() -> None:
    harness = _make_harness(config=SchedulerConfig(allow_partial=True))
    stories = [
        _make_story("A", "B"),
        _make_story("B", "A"),
        _make_story("C"),
        _make_story("D", "A"),
    ]

    report = await harness.scheduler.run_batch(stories)

    assert report.status_of("A") is StoryStatus.REJECTED
    assert report.status_of("B") is StoryStatus.REJECTED
    assert report.status_of("C") is StoryStatus.SUCCEEDED
    assert report.status_of("D") is StoryStatus.BLOCKED
    assert report.cycles == (("A", "B", "A"),)
    assert set(harness.sink.dispatch_order()) == {"C"}


async def test_cancel_stops_new_admissions() -> None:
    harness = _make_harness(sink=SimulatedStageSink(default_duration=0.05))
    stories = [_make_story(f"S{index}") for index in range(1, 5)]

    run = asyncio.create_task(harness.scheduler.run_batch(stories))
    while len(harness.sink.dispatched) < 2:
        await asyncio.sleep(0.001)
    harness.scheduler.cancel("sprint closed")
    harness.scheduler.cancel("ignored second request")
    report = await run

    assert report.cancelled
    assert all(item.status is StoryStatus.CANCELLED for item in report.stories.values())
    assert {item.reason for item in report.stories.values()} == {"sprint closed"}
    assert report.stories["S1"].completed_stages == ("draft",)
    assert report.stories["S2"].completed_stages == ("draft",)
    assert report.stories["S3"].completed_stages == ()
    assert harness.sink.dispatch_order() == ("S1", "S2")
    assert EventType.BATCH_CANCELLED.value in harness.event_types()


async def test_budget_denial_delays_until_window_resets() -> None:
    harness = _make_harness(limits=BudgetLimits(tokens_per_minute=100))
    stories = [_make_story("S1", estimated_tokens=60), _make_story("S2", estimated_tokens=60)]

    report = await harness.scheduler.run_batch(stories)

    assert report.all_succeeded
    # Eight stage admissions of 60 tokens each need eight separate minute windows.
    assert harness.clock.current >= 1_380.0
    assert harness.bus.replay(event_type=EventType.BUDGET_OVERLOAD)
    assert harness.dead_letters.entries == []


async def test_oversized_cost_dead_letters() -> None:
    harness = _make_harness(limits=BudgetLimits(tokens_per_minute=100))
    stories = [_make_story("S1", estimated_tokens=500), _make_story("S2", "S1")]

    report = await harness.scheduler.run_batch(stories)

    assert report.status_of("S1") is StoryStatus.DEAD_LETTERED
    assert report.stories["S1"].reason == "estimated cost can never be admitted"
    assert report.stories["S1"].errors[0].error_type == "BudgetOversizeError"
    assert report.stories["S2"].reason == "dependency not satisfied: S1 (dead_lettered)"
    assert report.status_of("S2") is StoryStatus.BLOCKED
    assert harness.sink.dispatched == []


async def test_cost_reports_reconcile_drift() -> None:
    sink = SimulatedStageSink(actual_costs={("S1", "draft"): 150})
    harness = _make_harness(sink=sink)

    await harness.scheduler.run_batch([_make_story("S1")])

    assert harness.telemetry.total_for("S1") == 150
    assert harness.scheduler.governor.reconciled_drift == 50


async def test_external_dependencies_block_under_block_policy() -> None:
    config = SchedulerConfig(external_policy=ExternalDependencyPolicy.BLOCK)
    harness = _make_harness(config=config)

    report = await harness.scheduler.run_batch([_make_story("S1", "EXT-9"), _make_story("S2")])

    assert report.status_of("S1") is StoryStatus.BLOCKED
    assert report.stories["S1"].reason == "unsatisfiable dependencies: EXT-9"
    assert report.status_of("S2") is StoryStatus.SUCCEEDED


async def test_level_barrier_holds_next_level() -> None:
    config = SchedulerConfig(level_barrier=True)
    harness = _make_harness(sink=SimulatedStageSink(default_duration=0.002), config=config)
    stories = [_make_story("S1", "S2"), _make_story("S2"), _make_story("S3")]

    report = await harness.scheduler.run_batch(stories)

    assert report.all_succeeded
    assert harness.first_dispatch("S1") > harness.last_dispatch("S3")


async def test_submit_fetches_batch_from_source() -> None:
    harness = _make_harness()
    source = InMemoryStorySource()
    source.add_batch("nightly", [_make_story("S1")])

    report = await harness.scheduler.submit(source, "nightly")

    assert report.batch_id == "nightly"
    assert report.status_of("S1") is StoryStatus.SUCCEEDED
    with pytest.raises(LookupError, match="unknown batch: weekly"):
        source.fetch_batch("weekly")


def test_unknown_handle_is_rejected() -> None:
    harness = _make_harness()
    handle = JobHandle(job_id="job-99999", story_id="S1", stage="draft", attempt=1)

    assert harness.scheduler.report_outcome(handle, StageOutcome.success()) is False


async def test_stalled_dispatch_times_out_and_refunds_budget() -> None:
    config = SchedulerConfig(stages={"draft": StageSettings(concurrency=1, timeout_seconds=0.05)})
    harness = _make_harness(sink=_StalledDispatchSink({("S1", "draft")}), config=config)

    report = await asyncio.wait_for(
        harness.scheduler.run_batch([_make_story("S1", estimated_tokens=40)]), timeout=2.0
    )

    story = report.stories["S1"]
    assert story.status is StoryStatus.SUCCEEDED
    assert story.errors[0].error_type == "StageTimeoutError"
    assert "dispatch timed out" in story.errors[0].message
    assert harness.sink.dispatch_order("draft") == ("S1",)
    day = harness.scheduler.governor.snapshot()[2]
    assert day.consumed == 40 * len(story.completed_stages)
    assert harness.scheduler.stage_pool("draft").in_use == 0


async def test_stage_task_failure_cancels_other_stage_tasks() -> None:
    sink = SimulatedStageSink(
        script={
            ("S1", "draft"): [StageError("invalid api key", stage="draft")],
            ("S2", "draft"): [None],
        }
    )
    harness = _make_harness(sink=sink, dead_letters=_OfflineDeadLetterSink())

    with pytest.raises(RuntimeError, match="dead letter store offline"):
        await asyncio.wait_for(
            harness.scheduler.run_batch([_make_story("S1"), _make_story("S2")]), timeout=2.0
        )

    assert harness.sink.dispatch_order("draft") == ("S1", "S2")
    assert harness.scheduler.stage_pool("draft").in_use == 0
    assert harness.scheduler.status_of("S2") is StoryStatus.DISPATCHED


def test_scheduler_config_reads_satisfied_external() -> None:
    config = default_config()
    config["scheduling"]["external_dependency_policy"] = "block"
    config["scheduling"]["satisfied_external"] = ["EXT-1"]

    settings = SchedulerConfig.from_config(config)

    assert settings.external_policy is ExternalDependencyPolicy.BLOCK
    assert settings.satisfied_external == frozenset({"EXT-1"})
