"""
story-scheduler CLI subprocess smoke contracts.

Runs `python -m story_scheduler` end to end against a small batch file and
checks exit codes, JSON output and the per-run log file.
"""

from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import yaml

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = PROJECT_ROOT / "src"


def _run_cli(cwd: Path, *args: str) -> subprocess.CompletedProcess[str]:
    env = {key: value for key, value in os.environ.items() if not key.startswith("STORYSCHED_")}
    existing_pythonpath = env.get("PYTHONPATH")
    src_pythonpath = str(SRC_PATH)
    env["PYTHONPATH"] = (
        src_pythonpath if not existing_pythonpath else f"{src_pythonpath}:{existing_pythonpath}"
    )
    return subprocess.run(
        [sys.executable, "-m", "story_scheduler", *args],
        cwd=cwd,
        text=True,
        capture_output=True,
        check=False,
        env=env,
    )


def _write_batch(path: Path) -> None:
    payload = {
        "schema_version": 1,
        "batch_id": "smoke",
        "sprint": {"sprint_goals": ["checkout"], "available_hours": 20},
        "stories": [
            {"id": "S1", "title": "Checkout form", "description": "Rename label"},
            {
                "id": "S2",
                "title": "Checkout totals",
                "description": "Validation logic for totals",
                "dependencies": ["S1"],
            },
            {
                "id": "S3",
                "title": "Release notes",
                "description": "Summarize the checkout work",
                "dependencies": ["S2"],
            },
        ],
        "simulate": {
            "failures": [{"story": "S2", "stage": "logic", "errors": ["invalid api key"]}],
        },
    }
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")


def test_plan_then_run_via_module_entrypoint(tmp_path: Path) -> None:
    batch = tmp_path / "batch.yaml"
    _write_batch(batch)

    plan = _run_cli(tmp_path, "plan", str(batch), "--json")
    assert plan.returncode == 0, plan.stderr
    plan_payload = json.loads(plan.stdout)
    assert [[item["story_id"] for item in level] for level in plan_payload["levels"]] == [
        ["S1"],
        ["S2"],
        ["S3"],
    ]

    run = _run_cli(tmp_path, "run", str(batch), "--json", "--log-dir", str(tmp_path / "logs"))
    assert run.returncode == 1, run.stderr
    run_payload = json.loads(run.stdout)
    assert run_payload["statuses"] == {"blocked": 1, "dead_lettered": 1, "succeeded": 1}
    dead_letter = run_payload["dead_letters"][0]
    assert dead_letter["story_id"] == "S2"
    assert dead_letter["stage"] == "logic"
    assert dead_letter["error_history"][0]["category"] == "authentication_error"

    log_path = tmp_path / "logs" / "smoke" / "scheduler.jsonl"
    assert Path(run_payload["log_path"]) == log_path
    events = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
    assert events
    assert all(event["run_id"] == "smoke" for event in events)


def test_config_command_exit_codes(tmp_path: Path) -> None:
    ok = _run_cli(tmp_path, "config", "--json")
    assert ok.returncode == 0, ok.stderr
    assert json.loads(ok.stdout)["config"]["meta"]["schema_version"] == 1

    bad = _run_cli(tmp_path, "config", "--set", "retry.jitter=2")
    assert bad.returncode == 2
    assert "retry.jitter" in bad.stderr
