"""Unit tests for YAML batch file ingestion."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from story_scheduler.control_plane.retry_policy import StageError
from story_scheduler.domain.models import JobHandle, RiskTolerance, StageOutcome
from story_scheduler.planning.batch_file import BatchFileError, load_batch_file, parse_batch

if TYPE_CHECKING:
    from pathlib import Path

_BATCH_YAML = """\
schema_version: 1
batch_id: sprint-12
sprint:
  sprint_goals: [checkout flow]
  available_hours: 24
  risk_tolerance: low
stories:
  - id: S1
    title: Payment form
    description: Validate the payment form
    dependencies: [S2]
  - id: S2
    title: API client
    description: Payment API client
simulate:
  default_duration: 0.01
  durations: {draft: 0.02}
  failures:
    - story: S1
      stage: logic
      errors:
        - network timeout
        - null
        - {message: syntax error, retryable: false}
  actual_costs:
    - {story: S2, stage: draft, tokens: 900}
"""


def _simulate(**section: object) -> dict[str, object]:
    return {"stories": [], "simulate": section}


def test_load_batch_file_parses_all_sections(tmp_path: Path) -> None:
    path = tmp_path / "batch.yaml"
    path.write_text(_BATCH_YAML, encoding="utf-8")

    batch = load_batch_file(path)

    assert batch.batch_id == "sprint-12"
    assert batch.source == path
    assert [story.id for story in batch.stories] == ["S1", "S2"]
    assert batch.stories[0].dependencies == frozenset({"S2"})
    assert batch.sprint.available_hours == 24.0
    assert batch.sprint.risk_tolerance is RiskTolerance.LOW

    simulation = batch.simulation
    assert simulation.default_duration == 0.01
    assert simulation.durations == {"draft": 0.02}
    assert simulation.actual_costs == {("S2", "draft"): 900}
    errors = simulation.script[("S1", "logic")]
    assert len(errors) == 3
    assert isinstance(errors[0], StageError)
    assert errors[0].stage == "logic"
    assert errors[1] is None
    assert isinstance(errors[2], StageError)
    assert errors[2].retryable is False


def test_batch_id_defaults_to_file_stem(tmp_path: Path) -> None:
    path = tmp_path / "nightly.yml"
    path.write_text("stories:\n  - id: S1\n", encoding="utf-8")

    batch = load_batch_file(path)

    assert batch.batch_id == "nightly"
    assert batch.stories[0].title == ""
    assert batch.simulation.script == {}


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(BatchFileError, match="batch file not found"):
        load_batch_file(tmp_path / "absent.yaml")


def test_invalid_yaml(tmp_path: Path) -> None:
    path = tmp_path / "broken.yaml"
    path.write_text("stories: [\n", encoding="utf-8")
    with pytest.raises(BatchFileError, match="invalid YAML"):
        load_batch_file(path)


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ([], "expected a mapping"),
        ({"stories": [], "owner": "x"}, "unexpected fields"),
        ({"stories": [], "schema_version": 2}, "unsupported version 2"),
        ({}, "expected a list of stories"),
        ({"stories": [{"id": "S1"}, {"id": "S1"}]}, "duplicate story id 'S1'"),
        ({"stories": [{"id": "S1", "priority": "urgent"}]}, r"stories\[0\]"),
        ({"stories": [], "sprint": {"available_hours": -1}}, "available_hours must be >= 0"),
        (
            _simulate(durations={"deploy": 1}),
            "unknown stage 'deploy'",
        ),
        (
            _simulate(default_duration=-1),
            "non-negative number of seconds",
        ),
        (
            _simulate(failures=[{"story": "S1", "stage": "draft", "errors": [5]}]),
            "expected a message, a mapping, or null",
        ),
        (
            _simulate(actual_costs=[{"story": "S1", "stage": "draft", "tokens": -3}]),
            "expected a non-negative integer",
        ),
    ],
)
def test_parse_batch_validation(payload: object, message: str) -> None:
    with pytest.raises(BatchFileError, match=message):
        parse_batch(payload)


async def test_simulation_builds_scripted_sink() -> None:
    batch = parse_batch(
        {
            "stories": [{"id": "S1"}],
            "simulate": {
                "failures": [{"story": "S1", "stage": "draft", "errors": ["boom"]}],
                "actual_costs": [{"story": "S1", "stage": "draft", "tokens": 50}],
            },
        }
    )
    sink = batch.simulation.build_sink()
    outcomes: list[StageOutcome] = []
    costs: list[tuple[str, str, int]] = []
    done = asyncio.Event()

    def report(handle: JobHandle, outcome: StageOutcome) -> bool:
        outcomes.append(outcome)
        if len(outcomes) == 2:
            done.set()
        return True

    sink.bind(report, lambda story_id, stage, cost: costs.append((story_id, stage, cost)))
    first = await sink.dispatch("draft", "S1", {"attempt": 1}, 1.0)
    await sink.dispatch("draft", "S1", {"attempt": 2}, 1.0)
    await asyncio.wait_for(done.wait(), timeout=1.0)
    await sink.aclose()

    assert first.attempt == 1
    assert not outcomes[0].succeeded
    assert str(outcomes[0].error) == "code=stage_failed stage=draft detail=boom"
    assert outcomes[1].succeeded
    assert costs == [("S1", "draft", 50)]
    assert sink.dispatch_order("draft") == ("S1", "S1")
