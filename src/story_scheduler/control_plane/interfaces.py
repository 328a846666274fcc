"""
Narrow collaborator protocols for the scheduler, plus in-memory adapters.

The scheduler talks to the outside world only through these protocols:

- ``StorySource`` supplies a batch of stories;
- ``StageSink`` accepts a stage job; its workers later call
  ``BatchScheduler.report_outcome`` with the returned handle;
- ``TelemetrySink`` receives actual token costs;
- ``DeadLetterSink`` receives terminal failures with their error history.

The in-memory adapters back the CLI simulation and the test suite.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import defaultdict, deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from story_scheduler.domain.models import ErrorRecord, JobHandle, StageOutcome, Story

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from story_scheduler.utils.concurrency import SleepFn

OutcomeReporter = Callable[[JobHandle, StageOutcome], bool]
CostReporter = Callable[[str, str, int], None]

_SUCCEED = object()


@runtime_checkable
class StorySource(Protocol):
    def fetch_batch(self, batch_id: str) -> Sequence[Story]:
        """Return every story in ``batch_id``."""


@runtime_checkable
class StageSink(Protocol):
    async def dispatch(
        self,
        stage: str,
        story_id: str,
        payload: Mapping[str, object],
        priority: float,
    ) -> JobHandle:
        """Enqueue one stage attempt and return its handle."""


@runtime_checkable
class TelemetrySink(Protocol):
    def report_cost(self, story_id: str, stage: str, actual_cost: int) -> None: ...


@runtime_checkable
class DeadLetterSink(Protocol):
    def publish_dead_letter(
        self,
        story_id: str,
        stage: str,
        error_history: Sequence[ErrorRecord],
    ) -> None: ...


class InMemoryStorySource:
    """Serves pre-loaded batches keyed by batch id."""

    def __init__(self, batches: Mapping[str, Sequence[Story]] | None = None) -> None:
        self._batches: dict[str, tuple[Story, ...]] = {
            batch_id: tuple(stories) for batch_id, stories in (batches or {}).items()
        }

    def add_batch(self, batch_id: str, stories: Iterable[Story]) -> None:
        if not batch_id:
            raise ValueError("batch_id must be non-empty")
        self._batches[batch_id] = tuple(stories)

    def fetch_batch(self, batch_id: str) -> Sequence[Story]:
        try:
            return self._batches[batch_id]
        except KeyError:
            raise LookupError(f"unknown batch: {batch_id}") from None


@dataclass(frozen=True, slots=True)
class CostReport:
    story_id: str
    stage: str
    actual_cost: int


class RecordingTelemetrySink:
    def __init__(self) -> None:
        self.reports: list[CostReport] = []

    def report_cost(self, story_id: str, stage: str, actual_cost: int) -> None:
        self.reports.append(CostReport(story_id, stage, actual_cost))

    def total_for(self, story_id: str) -> int:
        return sum(item.actual_cost for item in self.reports if item.story_id == story_id)


@dataclass(frozen=True, slots=True)
class DeadLetterEntry:
    story_id: str
    stage: str
    error_history: tuple[ErrorRecord, ...]

    def to_dict(self) -> dict[str, object]:
        return {
            "story_id": self.story_id,
            "stage": self.stage,
            "error_history": [record.to_dict() for record in self.error_history],
        }


class InMemoryDeadLetterSink:
    """Keeps dead-lettered jobs for inspection and manual replay."""

    def __init__(self) -> None:
        self.entries: list[DeadLetterEntry] = []

    def publish_dead_letter(
        self,
        story_id: str,
        stage: str,
        error_history: Sequence[ErrorRecord],
    ) -> None:
        self.entries.append(DeadLetterEntry(story_id, stage, tuple(error_history)))

    @property
    def story_ids(self) -> tuple[str, ...]:
        return tuple(entry.story_id for entry in self.entries)


class SimulatedStageSink:
    """
    Stage sink that completes each job on the event loop after a fixed duration.

    ``script`` maps ``(story_id, stage)`` to the outcomes of successive
    attempts: an exception fails that attempt, ``None`` never reports (the
    scheduler's stage timeout fires instead). Attempts past the end of the
    script succeed. ``actual_costs`` maps ``(story_id, stage)`` to the token
    usage reported back through ``cost_reporter`` on success.
    """

    def __init__(
        self,
        *,
        durations: Mapping[str, float] | None = None,
        default_duration: float = 0.0,
        script: Mapping[tuple[str, str], Sequence[BaseException | None]] | None = None,
        actual_costs: Mapping[tuple[str, str], int] | None = None,
        reporter: OutcomeReporter | None = None,
        cost_reporter: CostReporter | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        if default_duration < 0:
            raise ValueError("default_duration must be >= 0")
        self._durations = dict(durations or {})
        self._default_duration = default_duration
        self._script: dict[tuple[str, str], deque[BaseException | None]] = {
            key: deque(outcomes) for key, outcomes in (script or {}).items()
        }
        self._actual_costs = dict(actual_costs or {})
        self._reporter = reporter
        self._cost_reporter = cost_reporter
        self._sleep = sleep
        self._ids = itertools.count(1)
        self._tasks: set[asyncio.Task[None]] = set()
        self._in_flight: dict[str, int] = defaultdict(int)
        self._peak: dict[str, int] = defaultdict(int)
        self.dispatched: list[JobHandle] = []
        self.late_reports: list[JobHandle] = []

    def bind(
        self,
        reporter: OutcomeReporter,
        cost_reporter: CostReporter | None = None,
    ) -> None:
        self._reporter = reporter
        if cost_reporter is not None:
            self._cost_reporter = cost_reporter

    def peak_in_flight(self, stage: str) -> int:
        return self._peak[stage]

    def dispatch_order(self, stage: str | None = None) -> tuple[str, ...]:
        return tuple(
            handle.story_id
            for handle in self.dispatched
            if stage is None or handle.stage == stage
        )

    async def dispatch(
        self,
        stage: str,
        story_id: str,
        payload: Mapping[str, object],
        priority: float,
    ) -> JobHandle:
        if self._reporter is None:
            raise RuntimeError("SimulatedStageSink.bind() must be called before dispatch")
        attempt = payload.get("attempt", 1)
        handle = JobHandle(
            job_id=f"job-{next(self._ids):05d}",
            story_id=story_id,
            stage=stage,
            attempt=attempt if isinstance(attempt, int) else 1,
        )
        self.dispatched.append(handle)
        self._in_flight[stage] += 1
        self._peak[stage] = max(self._peak[stage], self._in_flight[stage])

        task = asyncio.create_task(self._work(handle))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return handle

    async def aclose(self) -> None:
        """Cancel simulated workers that are still sleeping."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _work(self, handle: JobHandle) -> None:
        key = (handle.story_id, handle.stage)
        outcomes = self._script.get(key)
        scripted = outcomes.popleft() if outcomes else _SUCCEED
        try:
            await self._sleep(self._durations.get(handle.stage, self._default_duration))
        finally:
            self._in_flight[handle.stage] -= 1

        if scripted is None or self._reporter is None:
            return
        if isinstance(scripted, BaseException):
            accepted = self._reporter(handle, StageOutcome.failure(scripted))
        else:
            cost = self._actual_costs.get(key)
            if cost is not None and self._cost_reporter is not None:
                self._cost_reporter(handle.story_id, handle.stage, cost)
            accepted = self._reporter(handle, StageOutcome.success())
        if not accepted:
            self.late_reports.append(handle)


__all__ = [
    "CostReport",
    "CostReporter",
    "DeadLetterEntry",
    "DeadLetterSink",
    "InMemoryDeadLetterSink",
    "InMemoryStorySource",
    "OutcomeReporter",
    "RecordingTelemetrySink",
    "SimulatedStageSink",
    "StageSink",
    "StorySource",
    "TelemetrySink",
]
