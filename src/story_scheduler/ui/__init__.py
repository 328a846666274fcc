"""UI package exports for the command-line surface."""

from story_scheduler.ui.cli import CLIError, build_parser, run_cli
from story_scheduler.ui.render import CLIRenderer, create_renderer

__all__ = [
    "CLIError",
    "CLIRenderer",
    "build_parser",
    "create_renderer",
    "run_cli",
]
