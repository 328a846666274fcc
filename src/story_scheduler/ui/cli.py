"""
story-scheduler command line.

``plan`` and ``config`` are read-only. ``run`` drives a full batch through
:class:`BatchScheduler` with the simulated stage sink described in the batch
file and writes a per-run JSON-lines log. Every command accepts ``--json`` for
machine-readable output; exit codes follow :class:`ExitCode`.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections import Counter
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from story_scheduler.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_redacted,
    load_config,
)
from story_scheduler.control_plane import (
    BatchScheduler,
    BudgetGovernor,
    BudgetLimits,
    InMemoryDeadLetterSink,
    RecordingTelemetrySink,
    RetryClassifier,
    RetryPolicy,
    SchedulerConfig,
)
from story_scheduler.domain.models import BatchReport
from story_scheduler.main import ExitCode
from story_scheduler.observability import (
    EventBus,
    correlation_scope,
    setup_logging,
    shutdown_logging,
)
from story_scheduler.planning import (
    CycleError,
    DependencyGraph,
    PriorityScorer,
    UnknownDependencyError,
    select_stages,
)
from story_scheduler.planning.batch_file import BatchFile, BatchFileError, load_batch_file
from story_scheduler.ui.render import CLIRenderer, create_renderer
from story_scheduler.utils.concurrency import PoolSnapshot

Handler = Callable[[argparse.Namespace], int]

PROG = "story-scheduler"


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Expected failure: printed as ``error: <message>`` and mapped to ``exit_code``."""

    message: str
    exit_code: int = ExitCode.BATCH_FAILED

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True, slots=True)
class _RunResult:
    report: BatchReport
    dead_letters: InMemoryDeadLetterSink
    telemetry: RecordingTelemetrySink
    governor: BudgetGovernor
    event_counts: Mapping[str, int]
    pools: tuple[PoolSnapshot, ...]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG,
        description=(
            f"{PROG}: dependency-aware priority scheduling for story batches.\n\n"
            "Common workflows:\n"
            f"  {PROG} plan batch.yaml     Show levels, scores and batch size\n"
            f"  {PROG} run batch.yaml      Execute against the simulated stage sink\n"
            f"  {PROG} config              Show the effective configuration\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    shared = argparse.ArgumentParser(add_help=False)
    shared.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to scheduler TOML config (default: ./scheduler.toml if present).",
    )
    shared.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a config value, e.g. --set budgets.tokens_per_minute=2000 (repeatable).",
    )
    shared.add_argument("--verbose", "-v", action="store_true", help="Show detailed output.")

    commands = parser.add_subparsers(dest="command", required=True)

    plan = _add_command(
        commands,
        shared,
        "plan",
        _cmd_plan,
        summary="Show dependency levels and priority ranking for a batch",
        about="Build dependency levels for a batch file and rank each level by priority score.",
        examples=("plan batch.yaml", "plan batch.yaml --json", "plan batch.yaml --dot"),
    )
    plan.add_argument("batch_path", help="Path to the YAML or JSON batch file")
    output = plan.add_mutually_exclusive_group()
    output.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    output.add_argument("--dot", action="store_true", help="Emit the graph as Graphviz DOT")

    run = _add_command(
        commands,
        shared,
        "run",
        _cmd_run,
        summary="Execute a batch against the simulated stage sink",
        about=(
            "Schedule every story in a batch through the stage pipeline. Stage work is\n"
            "simulated from the batch file's optional 'simulate' section."
        ),
        examples=(
            "run batch.yaml",
            "run batch.yaml --json --log-dir /tmp/logs",
            "run batch.yaml --allow-partial",
        ),
    )
    run.add_argument("batch_path", help="Path to the YAML or JSON batch file")
    run.add_argument(
        "--allow-partial",
        action="store_true",
        help="Reject cycle members and run the rest instead of failing the batch",
    )
    run.add_argument(
        "--log-dir",
        default=None,
        help="Directory for per-run JSON-lines logs (default: observability.log_dir)",
    )
    run.add_argument("--json", action="store_true", help="Emit deterministic JSON output")

    show = _add_command(
        commands,
        shared,
        "config",
        _cmd_config,
        summary="Show the effective configuration with secrets redacted",
        about="Merge defaults, scheduler.toml, STORYSCHED_* variables and --set, then print.",
        examples=("config", "config --json", "config --set retry.max_attempts=5"),
    )
    show.add_argument("--json", action="store_true", help="Emit JSON output")

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Dispatch ``argv`` to its command; :class:`CLIError` becomes its exit code."""

    args = build_parser().parse_args(None if argv is None else list(argv))
    handler: Handler = args.handler
    try:
        return int(handler(args))
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return int(exc.exit_code)


def _add_command(
    commands: argparse._SubParsersAction[argparse.ArgumentParser],
    shared: argparse.ArgumentParser,
    name: str,
    handler: Handler,
    *,
    summary: str,
    about: str,
    examples: Sequence[str],
) -> argparse.ArgumentParser:
    usage = "\n".join(f"  {PROG} {example}" for example in examples)
    command = commands.add_parser(
        name,
        parents=[shared],
        help=summary,
        description=f"{about}\n\nExamples:\n{usage}\n",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    command.set_defaults(handler=handler)
    return command


def _cmd_plan(args: argparse.Namespace) -> int:
    settings = SchedulerConfig.from_config(_effective_config(args))
    batch = _read_batch(args)
    graph = DependencyGraph(batch.stories)

    if args.dot:
        print(graph.to_dot(name=batch.batch_id))
        return ExitCode.SUCCESS

    try:
        plan = graph.build_levels(
            external_policy=settings.external_policy,
            satisfied_external=settings.satisfied_external,
        )
    except UnknownDependencyError as exc:
        raise CLIError(str(exc), exit_code=ExitCode.CONFIG_ERROR) from exc

    scorer = PriorityScorer()
    levels = scorer.rank_levels(plan, batch.sprint)
    batch_size = scorer.recommended_batch_size(batch.sprint)
    cycles = plan.cycle.cycles if plan.cycle is not None else ()
    outcome = ExitCode.BATCH_FAILED if plan.cycle is not None or plan.blocked else ExitCode.SUCCESS

    if args.json:
        _print_json(
            {
                "command": "plan",
                "batch_id": batch.batch_id,
                "recommended_batch_size": batch_size,
                "levels": [
                    [
                        {
                            "story_id": score.story_id,
                            "score": score.score,
                            "reasoning": score.reasoning,
                            "stages": list(
                                select_stages(graph.story(score.story_id), settings.stage_rules)
                            ),
                        }
                        for score in level
                    ]
                    for level in levels
                ],
                "cycles": [list(cycle) for cycle in cycles],
                "rejected": sorted(plan.rejected),
                "blocked": {story: list(plan.blocked[story]) for story in sorted(plan.blocked)},
                "stats": graph.stats().to_dict(),
            }
        )
        return outcome

    out = _renderer(args)
    out.kv("Batch", batch.batch_id)
    out.kv("Stories", len(batch.stories))
    out.kv("Levels", len(levels))
    out.kv("Recommended batch size", batch_size)
    for index, level in enumerate(levels):
        out.table(
            ["STORY", "SCORE", "REASONING"],
            [[score.story_id, f"{score.score:.2f}", _clip(score.reasoning, 60)] for score in level],
            title=f"Level {index}:",
        )
        for score in level:
            factors = score.factors
            out.detail(
                f"{score.story_id}: complexity={factors.complexity} risk={factors.risk} "
                f"sprint_value={factors.sprint_value} "
                f"dependency_bonus={factors.dependency_bonus} "
                f"business_impact={factors.business_impact}"
            )
    if cycles:
        out.section("Cycles:")
        out.items(" -> ".join(cycle) for cycle in cycles)
    if plan.blocked:
        out.section("Blocked:")
        out.items(
            f"{story} (waiting on {', '.join(plan.blocked[story])})"
            for story in sorted(plan.blocked)
        )
    return outcome


def _cmd_run(args: argparse.Namespace) -> int:
    forced = {"scheduling.allow_partial": True} if args.allow_partial else {}
    config = _effective_config(args, forced=forced)
    batch = _read_batch(args)

    handle = setup_logging(config["observability"], run_id=batch.batch_id, log_dir=args.log_dir)
    try:
        with correlation_scope(batch_id=batch.batch_id):
            result = asyncio.run(_execute_batch(batch, config))
    except CycleError as exc:
        raise CLIError(
            f"{exc} (use --allow-partial to run the rest)", exit_code=ExitCode.CONFIG_ERROR
        ) from exc
    except UnknownDependencyError as exc:
        raise CLIError(str(exc), exit_code=ExitCode.CONFIG_ERROR) from exc
    finally:
        shutdown_logging(handle)

    report = result.report
    windows = result.governor.snapshot()
    statuses = {status.value: len(ids) for status, ids in sorted(report.by_status().items())}
    outcome = ExitCode.SUCCESS if report.all_succeeded else ExitCode.BATCH_FAILED

    if args.json:
        reporters = sorted({item.story_id for item in result.telemetry.reports})
        _print_json(
            {
                "command": "run",
                "batch_id": report.batch_id,
                "cancelled": report.cancelled,
                "statuses": statuses,
                "report": report.to_dict(),
                "dead_letters": [entry.to_dict() for entry in result.dead_letters.entries],
                "budget": [window.to_dict() for window in windows],
                "stage_pools": [pool.to_dict() for pool in result.pools],
                "reconciled_drift": result.governor.reconciled_drift,
                "reported_tokens": {
                    story: result.telemetry.total_for(story) for story in reporters
                },
                "events": dict(result.event_counts),
                "log_path": handle.log_path.as_posix(),
            }
        )
        return outcome

    out = _renderer(args)
    out.kv("Batch", report.batch_id)
    out.kv("Statuses", ", ".join(f"{name}={count}" for name, count in statuses.items()))
    stories = sorted(report.stories.items())
    out.table(
        ["STORY", "STATUS", "LEVEL", "SCORE", "ATTEMPTS", "REASON"],
        [
            [
                story_id,
                story.status.value,
                "-" if story.level is None else story.level,
                "-" if story.score is None else f"{story.score:.2f}",
                story.attempts,
                _clip(story.reason or "", 50),
            ]
            for story_id, story in stories
        ],
        title="Stories:",
    )
    for story_id, story in stories:
        for error in story.errors:
            out.detail(
                f"{story_id} {error.stage} attempt {error.attempt}: "
                f"{error.kind} {error.error_type}: {error.message}"
            )
    if result.dead_letters.entries:
        out.section("Dead letters:")
        out.items(
            f"{entry.story_id} at {entry.stage} after {len(entry.error_history)} error(s)"
            for entry in result.dead_letters.entries
        )
    out.section("Budget:")
    out.items(f"{window.kind.value}: {window.consumed}/{window.limit} tokens" for window in windows)
    out.kv("\nLog file", handle.log_path.as_posix())
    return outcome


def _cmd_config(args: argparse.Namespace) -> int:
    redacted = dump_redacted(_effective_config(args))
    if args.json:
        _print_json({"command": "config", "config": redacted})
    else:
        _renderer(args).text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return ExitCode.SUCCESS


async def _execute_batch(batch: BatchFile, config: Mapping[str, Any]) -> _RunResult:
    bus = EventBus()
    dead_letters = InMemoryDeadLetterSink()
    telemetry = RecordingTelemetrySink()
    governor = BudgetGovernor(BudgetLimits.from_config(config["budgets"]))
    sink = batch.simulation.build_sink()
    scheduler = BatchScheduler(
        stage_sink=sink,
        governor=governor,
        classifier=RetryClassifier(RetryPolicy.from_config(config["retry"])),
        config=SchedulerConfig.from_config(config),
        event_bus=bus,
        dead_letter_sink=dead_letters,
        telemetry_sink=telemetry,
    )
    sink.bind(scheduler.report_outcome, scheduler.report_cost)
    try:
        report = await scheduler.run_batch(batch.stories, batch.sprint, batch_id=batch.batch_id)
    finally:
        await sink.aclose()
        await bus.drain_async()

    counts = Counter(event.event_type.value for event in bus.replay())
    return _RunResult(
        report=report,
        dead_letters=dead_letters,
        telemetry=telemetry,
        governor=governor,
        event_counts=dict(sorted(counts.items())),
        pools=scheduler.pool_snapshots(),
    )


def _effective_config(
    args: argparse.Namespace, *, forced: Mapping[str, object] | None = None
) -> dict[str, Any]:
    overrides = {**_parse_overrides(args.overrides), **(forced or {})}
    try:
        return load_config(args.config_path, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=ExitCode.CONFIG_ERROR) from exc


def _read_batch(args: argparse.Namespace) -> BatchFile:
    try:
        return load_batch_file(args.batch_path)
    except BatchFileError as exc:
        raise CLIError(str(exc), exit_code=ExitCode.CONFIG_ERROR) from exc


def _parse_overrides(items: Sequence[str]) -> dict[str, object]:
    """``KEY=VALUE`` pairs; values parse as JSON when they can, else stay text."""

    overrides: dict[str, object] = {}
    for item in items:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            raise CLIError(
                f"invalid --set value {item!r}; expected KEY=VALUE", exit_code=ExitCode.CONFIG_ERROR
            )
        try:
            overrides[key.strip()] = json.loads(raw)
        except json.JSONDecodeError:
            overrides[key.strip()] = raw.strip()
    return overrides


def _print_json(payload: Mapping[str, object]) -> None:
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(verbose=args.verbose)


def _clip(text: str, width: int) -> str:
    return text if len(text) <= width else text[: width - 3] + "..."


__all__ = ["CLIError", "build_parser", "run_cli"]
