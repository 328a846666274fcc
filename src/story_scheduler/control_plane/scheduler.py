"""
Dependency-aware batch scheduler and stage dispatcher.

One cooperative dispatch loop owns every scheduling decision. Each story job
walks its pipeline stages strictly in order::

    pending -> admitted -> dispatched -> succeeded
                                      -> retry_wait -> admitted ...
                                      -> dead_lettered

A story is admitted only when every in-batch dependency has succeeded, a
permit is free in the current stage's pool, and the budget governor accepts
the estimated cost. Among ready stories, lower dependency level goes first,
then higher score, then story id.

The loop never polls: it sleeps on an ``asyncio.Event`` raised by stage
completion and cancellation, raced against the earliest budget or retry timer
through the injected ``sleep``.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Final

import structlog

from story_scheduler.constants import (
    PIPELINE_STAGES,
    STAGE_A11Y,
    STAGE_DRAFT,
    STAGE_LOGIC,
    STAGE_REPORT,
    STAGE_STYLE,
    STAGE_TEST,
    STAGE_TYPEFIX,
)
from story_scheduler.control_plane.budget_governor import (
    AdmissionDecision,
    BackpressureLevel,
    BudgetGovernor,
)
from story_scheduler.control_plane.retry_policy import (
    BudgetOversizeError,
    RetryAction,
    RetryClassifier,
    StageTimeoutError,
    error_message,
)
from story_scheduler.domain.events import EventType, build_event
from story_scheduler.domain.models import (
    UNSATISFIABLE_STATUSES,
    BatchReport,
    ErrorRecord,
    JobHandle,
    RetryState,
    SprintContext,
    StageOutcome,
    Story,
    StoryReport,
    StoryStatus,
)
from story_scheduler.planning.dependency_graph import (
    DependencyGraph,
    ExternalDependencyPolicy,
    LevelPlan,
)
from story_scheduler.planning.prioritizer import PriorityScorer
from story_scheduler.planning.stages import (
    DEFAULT_STAGE_RULES,
    StageRule,
    estimate_stage_cost,
    select_stages,
)
from story_scheduler.utils.concurrency import (
    CancellationToken,
    PoolSnapshot,
    StagePool,
    run_with_timeout,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from story_scheduler.control_plane.interfaces import (
        DeadLetterSink,
        StageSink,
        StorySource,
        TelemetrySink,
    )
    from story_scheduler.observability.events import EventBus
    from story_scheduler.utils.concurrency import SleepFn

Clock = Callable[[], float]

DEFAULT_STAGE_CONCURRENCY: Final[dict[str, int]] = {
    STAGE_DRAFT: 2,
    STAGE_LOGIC: 2,
    STAGE_STYLE: 3,
    STAGE_TEST: 2,
    STAGE_A11Y: 3,
    STAGE_TYPEFIX: 1,
    STAGE_REPORT: 3,
}
DEFAULT_STAGE_TIMEOUT_SECONDS: Final[float] = 300.0

_WAITING_STATUSES: Final[frozenset[StoryStatus]] = frozenset(
    {StoryStatus.PENDING, StoryStatus.RETRY_WAIT}
)


@dataclass(frozen=True, slots=True)
class StageSettings:
    """Per-stage pool size, timeout, attempt limit, and cost surcharge."""

    concurrency: int = 2
    timeout_seconds: float = DEFAULT_STAGE_TIMEOUT_SECONDS
    max_attempts: int | None = None
    base_cost: int = 0

    def __post_init__(self) -> None:
        if self.concurrency <= 0:
            raise ValueError("concurrency must be > 0")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_cost < 0:
            raise ValueError("base_cost must be >= 0")

    @classmethod
    def from_config(cls, section: Mapping[str, object]) -> StageSettings:
        raw_attempts = section.get("max_attempts")
        max_attempts = None
        if raw_attempts is not None:
            max_attempts = int(raw_attempts)  # type: ignore[call-overload]
        return cls(
            concurrency=int(section["concurrency"]),  # type: ignore[call-overload]
            timeout_seconds=float(section["timeout_seconds"]),  # type: ignore[arg-type]
            max_attempts=max_attempts,
            base_cost=int(section.get("base_cost", 0)),  # type: ignore[call-overload]
        )


def default_stage_settings() -> dict[str, StageSettings]:
    return {
        stage: StageSettings(concurrency=DEFAULT_STAGE_CONCURRENCY[stage])
        for stage in PIPELINE_STAGES
    }


@dataclass(frozen=True, slots=True)
class SchedulerConfig:
    stages: Mapping[str, StageSettings] = field(default_factory=default_stage_settings)
    external_policy: ExternalDependencyPolicy = ExternalDependencyPolicy.ASSUME_SATISFIED
    satisfied_external: frozenset[str] = frozenset()
    allow_partial: bool = False
    level_barrier: bool = False
    stage_rules: tuple[StageRule, ...] = DEFAULT_STAGE_RULES

    def __post_init__(self) -> None:
        unknown = sorted(set(self.stages) - set(PIPELINE_STAGES))
        if unknown:
            raise ValueError(f"stages contains unknown stage(s): {', '.join(unknown)}")
        merged = default_stage_settings()
        merged.update(self.stages)
        object.__setattr__(self, "stages", MappingProxyType(merged))
        object.__setattr__(
            self, "external_policy", ExternalDependencyPolicy(self.external_policy)
        )
        object.__setattr__(self, "satisfied_external", frozenset(self.satisfied_external))
        object.__setattr__(self, "stage_rules", tuple(self.stage_rules))

    def settings_for(self, stage: str) -> StageSettings:
        return self.stages[stage]

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> SchedulerConfig:
        scheduling = config["scheduling"]
        return cls(
            stages={
                stage: StageSettings.from_config(section)
                for stage, section in config["stages"].items()
            },
            external_policy=ExternalDependencyPolicy(scheduling["external_dependency_policy"]),
            satisfied_external=frozenset(scheduling.get("satisfied_external", ())),
            allow_partial=bool(scheduling["allow_partial"]),
            level_barrier=bool(scheduling["level_barrier"]),
        )


class _StoryJob:
    __slots__ = (
        "story",
        "score",
        "level",
        "stages",
        "stage_index",
        "status",
        "retry",
        "errors",
        "attempts",
        "completed",
        "reason",
        "estimates",
    )

    def __init__(
        self,
        story: Story,
        *,
        score: float | None,
        level: int | None,
        stages: tuple[str, ...],
        status: StoryStatus,
        max_attempts: int,
        reason: str | None = None,
    ) -> None:
        self.story = story
        self.score = score
        self.level = level
        self.stages = stages
        self.stage_index = 0
        self.status = status
        self.retry = RetryState(max_attempts=max_attempts)
        self.errors: list[ErrorRecord] = []
        self.attempts = 0
        self.completed: list[str] = []
        self.reason = reason
        self.estimates: dict[str, int] = {}

    @property
    def stage(self) -> str:
        return self.stages[self.stage_index]

    def sort_key(self) -> tuple[int, float, str]:
        return (self.level or 0, -(self.score or 0.0), self.story.id)

    def report(self) -> StoryReport:
        return StoryReport(
            story_id=self.story.id,
            status=self.status,
            level=self.level,
            score=self.score,
            completed_stages=tuple(self.completed),
            attempts=self.attempts,
            errors=tuple(self.errors),
            reason=self.reason,
        )


@dataclass(slots=True)
class _InFlight:
    job: _StoryJob
    handle: JobHandle
    future: asyncio.Future[StageOutcome]


class BatchScheduler:
    """Runs one story batch at a time through the stage pipeline."""

    def __init__(
        self,
        *,
        stage_sink: StageSink,
        governor: BudgetGovernor | None = None,
        classifier: RetryClassifier | None = None,
        scorer: PriorityScorer | None = None,
        config: SchedulerConfig | None = None,
        event_bus: EventBus | None = None,
        dead_letter_sink: DeadLetterSink | None = None,
        telemetry_sink: TelemetrySink | None = None,
        clock: Clock = time.time,
        sleep: SleepFn = asyncio.sleep,
        logger: Any | None = None,
    ) -> None:
        self._sink = stage_sink
        self._clock = clock
        self._sleep = sleep
        self._governor = governor if governor is not None else BudgetGovernor(clock=clock)
        self._classifier = classifier or RetryClassifier()
        self._scorer = scorer or PriorityScorer()
        self._config = config or SchedulerConfig()
        self._event_bus = event_bus
        self._dead_letter_sink = dead_letter_sink
        self._telemetry_sink = telemetry_sink
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._governor.set_pressure_hook(self._on_pressure_change)

        self._log = self._logger
        self._batch_id: str | None = None
        self._running = False
        self._jobs: dict[str, _StoryJob] = {}
        self._in_flight: dict[str, _InFlight] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._task_error: BaseException | None = None
        self._pools: dict[str, StagePool] = {}
        self._wake = asyncio.Event()
        self._cancel = CancellationToken()

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    @property
    def governor(self) -> BudgetGovernor:
        return self._governor

    @property
    def batch_id(self) -> str | None:
        return self._batch_id

    def status_of(self, story_id: str) -> StoryStatus:
        return self._jobs[story_id].status

    def stage_pool(self, stage: str) -> StagePool:
        return self._pools[stage]

    def pool_snapshots(self) -> tuple[PoolSnapshot, ...]:
        return tuple(self._pools[stage].snapshot() for stage in sorted(self._pools))

    async def submit(
        self,
        source: StorySource,
        batch_id: str,
        sprint_context: SprintContext | None = None,
    ) -> BatchReport:
        """Fetch ``batch_id`` from ``source`` and run it."""
        stories = source.fetch_batch(batch_id)
        return await self.run_batch(stories, sprint_context, batch_id=batch_id)

    async def run_batch(
        self,
        stories: Iterable[Story],
        sprint_context: SprintContext | None = None,
        *,
        batch_id: str | None = None,
    ) -> BatchReport:
        """Schedule ``stories`` to completion and return per-story final status.

        Raises :class:`CycleError` when the batch contains a dependency cycle
        and ``allow_partial`` is off, and :class:`UnknownDependencyError` under
        the ``error`` external-dependency policy.
        """
        if self._running:
            raise RuntimeError("a batch is already running on this scheduler")

        batch = tuple(stories)
        context = sprint_context or SprintContext()
        graph = DependencyGraph(batch)
        plan = graph.build_levels(
            external_policy=self._config.external_policy,
            satisfied_external=self._config.satisfied_external,
        )

        self._batch_id = batch_id or f"batch-{uuid.uuid4().hex[:12]}"
        self._log = self._logger.bind(batch_id=self._batch_id)

        if plan.cycle is not None:
            self._emit(
                EventType.CYCLE_DETECTED,
                {
                    "story_ids": sorted(plan.cycle.story_ids),
                    "cycles": [list(cycle) for cycle in plan.cycle.cycles],
                    "allow_partial": self._config.allow_partial,
                },
            )
            self._log.warning(
                "dependency_cycle_detected",
                story_ids=sorted(plan.cycle.story_ids),
                allow_partial=self._config.allow_partial,
            )
            if not self._config.allow_partial:
                raise plan.cycle

        self._running = True
        try:
            self._prepare(batch, context, plan)
            self._emit(
                EventType.BATCH_STARTED,
                {"story_count": len(batch), "levels": [list(level) for level in plan.level_ids()]},
            )
            self._log.info("batch_started", story_count=len(batch), level_count=len(plan.levels))
            await self._dispatch_loop()
            report = BatchReport(
                batch_id=self._batch_id,
                stories=MappingProxyType(
                    {story_id: job.report() for story_id, job in sorted(self._jobs.items())}
                ),
                levels=plan.level_ids(),
                cycles=plan.cycle.cycles if plan.cycle is not None else (),
                cancelled=self._cancel.is_cancelled,
            )
        finally:
            self._running = False

        counts = {status.value: len(ids) for status, ids in report.by_status().items()}
        if report.cancelled:
            self._emit(EventType.BATCH_CANCELLED, {"statuses": counts})
        self._emit(EventType.BATCH_COMPLETED, {"statuses": counts})
        self._log.info("batch_completed", statuses=counts, cancelled=report.cancelled)
        return report

    def report_outcome(self, handle: JobHandle, outcome: StageOutcome) -> bool:
        """Deliver a stage worker's result.

        Returns ``False`` for unknown or stale handles: jobs that already timed
        out, were already reported, or belong to another batch. Must be called
        from the event loop thread.
        """
        entry = self._in_flight.get(handle.job_id)
        if entry is None or entry.handle != handle or entry.future.done():
            self._log.warning(
                "stale_outcome_ignored",
                job_id=handle.job_id,
                story_id=handle.story_id,
                stage=handle.stage,
                attempt=handle.attempt,
                succeeded=outcome.succeeded,
            )
            return False
        entry.future.set_result(outcome)
        return True

    def report_cost(self, story_id: str, stage: str, actual_cost: int) -> int:
        """Reconcile the admitted estimate for ``stage`` with actual usage; returns the drift."""
        job = self._jobs.get(story_id)
        estimated = job.estimates.get(stage, 0) if job is not None else 0
        drift = self._governor.reconcile(story_id, stage, estimated, actual_cost)
        if self._telemetry_sink is not None:
            self._telemetry_sink.report_cost(story_id, stage, actual_cost)
        return drift

    def cancel(self, reason: str = "batch cancelled") -> None:
        """Stop new admissions; dispatched jobs run to completion."""
        if not self._cancel.cancel(reason):
            return
        self._wake.set()
        self._log.info("batch_cancel_requested", reason=self._cancel.reason)

    def _prepare(self, batch: tuple[Story, ...], context: SprintContext, plan: LevelPlan) -> None:
        scores = self._scorer.score_all(
            (story for story in batch if story.id in plan.orderable_ids), context
        )
        rejected = plan.rejected
        self._jobs = {}
        self._in_flight = {}
        self._tasks = set()
        self._task_error = None
        self._wake = asyncio.Event()
        self._cancel = CancellationToken()
        self._pools = {
            stage: StagePool(stage, self._config.settings_for(stage).concurrency)
            for stage in PIPELINE_STAGES
        }

        for story in sorted(batch, key=lambda item: item.id):
            stages = select_stages(story, self._config.stage_rules)
            score = scores.get(story.id)
            if story.id in rejected:
                status, reason = StoryStatus.REJECTED, "member of a dependency cycle"
            elif story.id in plan.blocked:
                status = StoryStatus.BLOCKED
                reason = f"unsatisfiable dependencies: {', '.join(plan.blocked[story.id])}"
            else:
                status, reason = StoryStatus.PENDING, None
            self._jobs[story.id] = _StoryJob(
                story,
                score=score.score if score is not None else None,
                level=plan.level_of(story.id) if story.id in plan.nodes else None,
                stages=stages,
                status=status,
                max_attempts=self._max_attempts_for(stages[0]),
                reason=reason,
            )

    async def _dispatch_loop(self) -> None:
        while True:
            self._wake.clear()
            if self._task_error is not None:
                await self._abort_tasks()
                raise self._task_error

            self._propagate_blocked()
            hint: float | None = None
            if self._cancel.is_cancelled:
                self._cancel_waiting()
            else:
                hint = await self._admit_ready()

            if not self._tasks:
                self._propagate_blocked()
                if all(job.status.is_terminal for job in self._jobs.values()):
                    return
                if hint is None:
                    self._block_stuck()
                    return
            await self._wait(hint)

    async def _admit_ready(self) -> float | None:
        """Admit every ready job that fits; return seconds until the next timer."""
        now = self._clock()
        hints: list[float] = []
        candidates: list[_StoryJob] = []
        for job in self._jobs.values():
            if job.status is StoryStatus.RETRY_WAIT:
                eligible_at = job.retry.next_eligible_at or now
                if eligible_at > now:
                    hints.append(eligible_at - now)
                    continue
                candidates.append(job)
            elif job.status is StoryStatus.PENDING and self._dependencies_met(job):
                candidates.append(job)

        for job in sorted(candidates, key=_StoryJob.sort_key):
            pool = self._pools[job.stage]
            if not pool.try_acquire():
                continue
            settings = self._config.settings_for(job.stage)
            cost = estimate_stage_cost(job.story, base_cost=settings.base_cost)
            decision = self._governor.admit(cost)
            if not decision.allowed:
                pool.release()
                if decision.oversized:
                    self._record_failure(
                        job,
                        BudgetOversizeError(
                            f"estimated cost {cost} exceeds the {decision.window} budget window",
                            stage=job.stage,
                        ),
                        kind="permanent",
                    )
                    self._dead_letter(job, "estimated cost can never be admitted")
                    continue
                hints.append(decision.retry_after_ms / 1000)
                break

            job.status = StoryStatus.ADMITTED
            job.estimates[job.stage] = cost
            self._spawn(self._run_stage(job, decision))

        return min(hints) if hints else None

    async def _run_stage(self, job: _StoryJob, admission: AdmissionDecision) -> None:
        stage = job.stage
        try:
            outcome = await self._execute(job, stage, admission)
            if outcome is not None:
                self._apply_outcome(job, stage, outcome)
        finally:
            self._pools[stage].release()
            self._wake.set()

    async def _execute(
        self,
        job: _StoryJob,
        stage: str,
        admission: AdmissionDecision,
    ) -> StageOutcome | None:
        if admission.delay_ms > 0:
            await self._sleep(admission.delay_ms / 1000)
        if self._cancel.is_cancelled:
            self._governor.release(admission)
            self._finish(job, StoryStatus.CANCELLED, f"{self._cancel.reason} before dispatch")
            return None

        payload = {
            "batch_id": self._batch_id,
            "stage": stage,
            "attempt": job.retry.attempt,
            "estimated_cost": admission.cost,
            "level": job.level,
            "score": job.score,
            "story": job.story.to_dict(),
        }
        timeout = self._config.settings_for(stage).timeout_seconds
        try:
            handle = await run_with_timeout(
                self._sink.dispatch(stage, job.story.id, payload, job.score or 0.0),
                timeout,
            )
        except TimeoutError:
            self._governor.release(admission)
            self._log.warning(
                "stage_dispatch_timed_out",
                story_id=job.story.id,
                stage=stage,
                timeout_seconds=timeout,
            )
            return StageOutcome.failure(
                StageTimeoutError(f"stage dispatch timed out after {timeout} seconds", stage=stage)
            )
        except Exception as exc:  # noqa: BLE001
            self._governor.release(admission)
            self._log.warning(
                "stage_dispatch_failed",
                story_id=job.story.id,
                stage=stage,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return StageOutcome.failure(exc)

        job.status = StoryStatus.DISPATCHED
        job.attempts += 1
        future: asyncio.Future[StageOutcome] = asyncio.get_running_loop().create_future()
        self._in_flight[handle.job_id] = _InFlight(job, handle, future)
        self._emit(
            EventType.STORY_DISPATCHED,
            {
                "story_id": job.story.id,
                "stage": stage,
                "attempt": job.retry.attempt,
                "job_id": handle.job_id,
                "estimated_cost": admission.cost,
            },
        )
        self._log.info(
            "stage_dispatched",
            story_id=job.story.id,
            stage=stage,
            attempt=job.retry.attempt,
            job_id=handle.job_id,
            estimated_cost=admission.cost,
            delay_ms=admission.delay_ms,
        )

        try:
            return await run_with_timeout(future, timeout)
        except TimeoutError:
            self._log.warning(
                "stage_timed_out",
                story_id=job.story.id,
                stage=stage,
                job_id=handle.job_id,
                timeout_seconds=timeout,
            )
            return StageOutcome.failure(
                StageTimeoutError(f"stage timed out after {timeout} seconds", stage=stage)
            )
        finally:
            self._in_flight.pop(handle.job_id, None)

    def _apply_outcome(self, job: _StoryJob, stage: str, outcome: StageOutcome) -> None:
        if outcome.succeeded:
            job.completed.append(stage)
            self._emit(EventType.STAGE_SUCCEEDED, {"story_id": job.story.id, "stage": stage})
            job.stage_index += 1
            if job.stage_index >= len(job.stages):
                self._finish(job, StoryStatus.SUCCEEDED, None)
                self._emit(
                    EventType.STORY_SUCCEEDED,
                    {"story_id": job.story.id, "attempts": job.attempts},
                )
                self._log.info("story_succeeded", story_id=job.story.id, attempts=job.attempts)
                return
            job.retry = RetryState(max_attempts=self._max_attempts_for(job.stage))
            job.status = StoryStatus.PENDING
            return

        error = outcome.error
        if error is None:
            raise RuntimeError("failed outcome without error")
        decision = self._classifier.decide(error, job.retry.attempt, job.retry.max_attempts)
        self._record_failure(job, error, kind=decision.kind.value, category=decision.category)

        if decision.action is RetryAction.RETRY:
            eligible_at = self._clock() + decision.delay_ms / 1000
            job.retry = replace(
                job.retry.next_attempt(error=error_message(error), eligible_at=eligible_at),
                max_attempts=decision.max_attempts,
            )
            job.status = StoryStatus.RETRY_WAIT
            self._emit(EventType.RETRY_SCHEDULED, {"story_id": job.story.id, **decision.to_dict()})
            self._log.info(
                "retry_scheduled", story_id=job.story.id, stage=stage, **decision.to_dict()
            )
            return

        if decision.reason == "retries exhausted":
            self._emit(EventType.RETRY_EXHAUSTED, {"story_id": job.story.id, **decision.to_dict()})
        self._dead_letter(job, decision.reason)

    def _record_failure(
        self,
        job: _StoryJob,
        error: BaseException,
        *,
        kind: str,
        category: str | None = None,
    ) -> None:
        job.errors.append(
            ErrorRecord(
                stage=job.stage,
                attempt=job.retry.attempt,
                error_type=type(error).__name__,
                message=error_message(error),
                kind=kind,
                category=category,
                occurred_at=self._clock(),
            )
        )

    def _dead_letter(self, job: _StoryJob, reason: str) -> None:
        stage = job.stage
        self._finish(job, StoryStatus.DEAD_LETTERED, reason)
        self._emit(
            EventType.STORY_DEAD_LETTERED,
            {"story_id": job.story.id, "stage": stage, "reason": reason, "errors": len(job.errors)},
        )
        self._log.warning("story_dead_lettered", story_id=job.story.id, stage=stage, reason=reason)
        if self._dead_letter_sink is not None:
            self._dead_letter_sink.publish_dead_letter(job.story.id, stage, tuple(job.errors))

    def _finish(self, job: _StoryJob, status: StoryStatus, reason: str | None) -> None:
        job.status = status
        job.reason = reason

    def _dependencies_met(self, job: _StoryJob) -> bool:
        if job.stage_index > 0:
            return True
        for dependency in job.story.dependencies:
            other = self._jobs.get(dependency)
            if other is not None and other.status is not StoryStatus.SUCCEEDED:
                return False
        if self._config.level_barrier and job.level is not None:
            return all(
                other.status.is_terminal
                for other in self._jobs.values()
                if other.level is not None and other.level < job.level
            )
        return True

    def _propagate_blocked(self) -> None:
        changed = True
        while changed:
            changed = False
            for story_id in sorted(self._jobs):
                job = self._jobs[story_id]
                if job.status is not StoryStatus.PENDING or job.stage_index > 0:
                    continue
                failed = sorted(
                    dependency
                    for dependency in job.story.dependencies
                    if dependency in self._jobs
                    and self._jobs[dependency].status in UNSATISFIABLE_STATUSES
                )
                if not failed:
                    continue
                reason = "dependency not satisfied: " + ", ".join(
                    f"{dependency} ({self._jobs[dependency].status.value})"
                    for dependency in failed
                )
                self._finish(job, StoryStatus.BLOCKED, reason)
                self._emit(EventType.STORY_BLOCKED, {"story_id": story_id, "dependencies": failed})
                self._log.info("story_blocked", story_id=story_id, dependencies=failed)
                changed = True

    def _cancel_waiting(self) -> None:
        for job in self._jobs.values():
            if job.status in _WAITING_STATUSES:
                self._finish(job, StoryStatus.CANCELLED, self._cancel.reason)

    def _block_stuck(self) -> None:
        for job in self._jobs.values():
            if not job.status.is_terminal:
                self._finish(job, StoryStatus.BLOCKED, "no admissible progress")
                self._log.warning("story_unschedulable", story_id=job.story.id)

    async def _wait(self, timeout_seconds: float | None) -> None:
        waiters: set[asyncio.Task[Any]] = {asyncio.ensure_future(self._wake.wait())}
        if timeout_seconds is not None:
            waiters.add(asyncio.ensure_future(self._sleep(max(timeout_seconds, 0.0))))
        _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _spawn(self, coroutine: Any) -> None:
        task = asyncio.create_task(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    async def _abort_tasks(self) -> None:
        running = list(self._tasks)
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        self._log.warning("stage_tasks_aborted", count=len(running))

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None and self._task_error is None:
            self._task_error = task.exception()
        self._wake.set()

    def _max_attempts_for(self, stage: str) -> int:
        configured = self._config.settings_for(stage).max_attempts
        return configured if configured is not None else self._classifier.policy.max_attempts

    def _on_pressure_change(
        self,
        previous: BackpressureLevel,
        current: BackpressureLevel,
        decision: AdmissionDecision,
    ) -> None:
        payload = {"previous": previous.value, "current": current.value, **decision.to_dict()}
        if current is BackpressureLevel.EXHAUSTED:
            self._emit(EventType.BUDGET_OVERLOAD, payload)
        elif current is BackpressureLevel.NORMAL:
            self._emit(EventType.BACKPRESSURE_RELEASED, payload)
        else:
            self._emit(EventType.BACKPRESSURE_ACTIVATED, payload)
        self._log.info("budget_pressure_changed", previous=previous.value, current=current.value)

    def _emit(self, event_type: EventType, payload: Mapping[str, object]) -> None:
        if self._event_bus is None:
            return
        self._event_bus.publish(build_event(event_type, payload, batch_id=self._batch_id))


__all__ = [
    "DEFAULT_STAGE_CONCURRENCY",
    "DEFAULT_STAGE_TIMEOUT_SECONDS",
    "BatchScheduler",
    "SchedulerConfig",
    "StageSettings",
    "default_stage_settings",
]
