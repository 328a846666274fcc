"""Console entrypoint for ``story-scheduler`` and ``python -m story_scheduler``."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    """Process exit codes shared by every subcommand."""

    SUCCESS = 0
    BATCH_FAILED = 1
    CONFIG_ERROR = 2
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Run the CLI and turn whatever escapes it into an :class:`ExitCode`."""

    try:
        from story_scheduler.ui.cli import run_cli

        return _as_exit_code(run_cli(argv))
    except SystemExit as exc:
        # argparse exits with 2 on usage errors and 0 for --help.
        return _as_exit_code(exc.code)
    except Exception as exc:  # noqa: BLE001
        code = _classify(exc)
        if code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(exc, file=sys.stderr)
        else:
            print(f"error: {str(exc).strip() or type(exc).__name__}", file=sys.stderr)
        return int(code)


def _as_exit_code(raw: object) -> int:
    if raw is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw, int) and raw in {code.value for code in ExitCode}:
        return int(raw)
    if isinstance(raw, str) and raw.strip():
        print(raw.strip(), file=sys.stderr)
    return int(ExitCode.INTERNAL_ERROR)


def _classify(exc: BaseException) -> ExitCode:
    """Input problems anywhere in the cause chain map to CONFIG_ERROR."""

    from story_scheduler.config import ConfigLoadError, ConfigValidationError
    from story_scheduler.planning.batch_file import BatchFileError
    from story_scheduler.planning.dependency_graph import CycleError, UnknownDependencyError

    input_errors = (
        ConfigLoadError,
        ConfigValidationError,
        BatchFileError,
        CycleError,
        UnknownDependencyError,
        FileNotFoundError,
        PermissionError,
    )
    if any(isinstance(item, input_errors) for item in _cause_chain(exc)):
        return ExitCode.CONFIG_ERROR
    return ExitCode.INTERNAL_ERROR


def _cause_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None


__all__ = ["ExitCode", "cli_entrypoint"]
