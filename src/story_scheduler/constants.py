"""Stable constants shared across scheduler planes."""

from __future__ import annotations

from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
BATCH_FILE_SCHEMA_VERSION: Final[int] = 1

# Pipeline stages in strict per-story execution order.
STAGE_DRAFT: Final[str] = "draft"
STAGE_LOGIC: Final[str] = "logic"
STAGE_STYLE: Final[str] = "style"
STAGE_TEST: Final[str] = "test"
STAGE_A11Y: Final[str] = "a11y"
STAGE_TYPEFIX: Final[str] = "typefix"
STAGE_REPORT: Final[str] = "report"

PIPELINE_STAGES: Final[tuple[str, ...]] = (
    STAGE_DRAFT,
    STAGE_LOGIC,
    STAGE_STYLE,
    STAGE_TEST,
    STAGE_A11Y,
    STAGE_TYPEFIX,
    STAGE_REPORT,
)

# Rolling budget windows, in seconds.
BUDGET_WINDOW_SECONDS: Final[dict[str, int]] = {
    "minute": 60,
    "hour": 3_600,
    "day": 86_400,
}

# Token limits per window.
DEFAULT_TOKENS_PER_MINUTE: Final[int] = 10_000
DEFAULT_TOKENS_PER_HOUR: Final[int] = 300_000
DEFAULT_TOKENS_PER_DAY: Final[int] = 5_000_000

# Retry defaults.
DEFAULT_MAX_ATTEMPTS: Final[int] = 3
DEFAULT_RETRY_BASE_MS: Final[int] = 1_000
DEFAULT_RETRY_MAX_MS: Final[int] = 30_000
DEFAULT_RETRY_MULTIPLIER: Final[float] = 2.0
DEFAULT_RETRY_JITTER: Final[float] = 0.2

# Token estimation bounds for a single stage dispatch.
MIN_ESTIMATED_TOKENS: Final[int] = 100
MAX_ESTIMATED_TOKENS: Final[int] = 8_000

__all__ = [
    "BATCH_FILE_SCHEMA_VERSION",
    "BUDGET_WINDOW_SECONDS",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_RETRY_BASE_MS",
    "DEFAULT_RETRY_JITTER",
    "DEFAULT_RETRY_MAX_MS",
    "DEFAULT_RETRY_MULTIPLIER",
    "DEFAULT_TOKENS_PER_DAY",
    "DEFAULT_TOKENS_PER_HOUR",
    "DEFAULT_TOKENS_PER_MINUTE",
    "MAX_ESTIMATED_TOKENS",
    "MIN_ESTIMATED_TOKENS",
    "PIPELINE_STAGES",
    "STAGE_A11Y",
    "STAGE_DRAFT",
    "STAGE_LOGIC",
    "STAGE_REPORT",
    "STAGE_STYLE",
    "STAGE_TEST",
    "STAGE_TYPEFIX",
]
