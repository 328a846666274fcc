"""Plain-text output for the story-scheduler CLI."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

INDENT = "  "


class CLIRenderer:
    """Deterministic line-oriented writer; ``verbose`` unlocks :meth:`detail` lines."""

    def __init__(self, *, verbose: bool = False, stream: TextIO | None = None) -> None:
        self.verbose = verbose
        self._stream = stream

    @property
    def stream(self) -> TextIO:
        # Looked up per write so a swapped sys.stdout (pytest capsys) is honored.
        return self._stream or sys.stdout

    def kv(self, key: str, value: object) -> None:
        self.text(f"{key}: {value}")

    def text(self, line: str) -> None:
        print(line, file=self.stream)

    def section(self, title: str) -> None:
        self.text(f"\n{title}")

    def items(self, entries: Iterable[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self.text(f"{INDENT}{prefix}{entry}")

    def detail(self, line: str) -> None:
        if self.verbose:
            self.text(f"{INDENT * 2}{line}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[object]],
        *,
        title: str | None = None,
    ) -> None:
        """Left-aligned columns sized to the widest cell; nothing is printed for no rows."""

        if not rows:
            return
        columns = len(headers)
        grid = [[str(cell) for cell in headers]]
        for row in rows:
            cells = [str(cell) for cell in row][:columns]
            grid.append(cells + [""] * (columns - len(cells)))
        widths = [max(len(cells[index]) for cells in grid) for index in range(columns)]

        if title:
            self.section(title)
        for cells in [grid[0], ["-" * width for width in widths], *grid[1:]]:
            padded = [cell.ljust(width) for cell, width in zip(cells, widths, strict=True)]
            self.text(INDENT + INDENT.join(padded).rstrip())


def create_renderer(*, verbose: bool = False, stream: TextIO | None = None) -> CLIRenderer:
    return CLIRenderer(verbose=verbose, stream=stream)


__all__ = ["CLIRenderer", "create_renderer"]
