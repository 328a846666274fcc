"""
Failure classification and bounded exponential backoff for stage attempts.

Classification order:

1. an explicit ``retryable`` attribute on the error (see :class:`StageError`);
2. exception type (``TimeoutError`` and ``ConnectionError`` are transient);
3. ordered regex categories over the error message.

Anything unmatched is ``unknown`` and retried up to the attempt limit. Backoff
is a pure function of the attempt number plus an injected random source.
"""

from __future__ import annotations

import random as random_module
import re
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import TYPE_CHECKING, Final

from story_scheduler.constants import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_BASE_MS,
    DEFAULT_RETRY_JITTER,
    DEFAULT_RETRY_MAX_MS,
    DEFAULT_RETRY_MULTIPLIER,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

RandomFn = Callable[[], float]

_MESSAGE_LIMIT: Final[int] = 500


class ErrorKind(StrEnum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class RetryAction(StrEnum):
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


class StageError(RuntimeError):
    """Error raised by, or on behalf of, a pipeline stage worker."""

    def __init__(
        self,
        detail: str,
        *,
        retryable: bool | None = None,
        code: str = "stage_failed",
        stage: str | None = None,
    ) -> None:
        self.detail = detail
        self.retryable = retryable
        self.code = code
        self.stage = stage
        parts = [f"code={code}"]
        if stage is not None:
            parts.append(f"stage={stage}")
        if retryable is not None:
            parts.append(f"retryable={str(retryable).lower()}")
        parts.append(f"detail={detail}")
        super().__init__(" ".join(parts))


class StageTimeoutError(StageError):
    """A stage attempt exceeded its timeout. Always transient."""

    def __init__(self, detail: str, *, stage: str | None = None) -> None:
        super().__init__(detail, retryable=True, code="timeout", stage=stage)


class BudgetOversizeError(StageError):
    """Estimated stage cost exceeds a full budget window and can never be admitted."""

    def __init__(self, detail: str, *, stage: str | None = None) -> None:
        super().__init__(detail, retryable=False, code="budget_oversize", stage=stage)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Default backoff parameters; categories may override any of them."""

    base_delay_ms: int = DEFAULT_RETRY_BASE_MS
    max_delay_ms: int = DEFAULT_RETRY_MAX_MS
    multiplier: float = DEFAULT_RETRY_MULTIPLIER
    jitter: float = DEFAULT_RETRY_JITTER
    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    def __post_init__(self) -> None:
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0")
        if self.max_delay_ms < 0:
            raise ValueError("max_delay_ms must be >= 0")
        if self.base_delay_ms > self.max_delay_ms:
            raise ValueError("base_delay_ms must be <= max_delay_ms")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if not (0.0 <= self.jitter <= 1.0):
            raise ValueError("jitter must be between 0.0 and 1.0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def from_config(cls, section: Mapping[str, object]) -> RetryPolicy:
        return cls(
            base_delay_ms=int(section["base_delay_ms"]),  # type: ignore[call-overload]
            max_delay_ms=int(section["max_delay_ms"]),  # type: ignore[call-overload]
            multiplier=float(section["multiplier"]),  # type: ignore[arg-type]
            jitter=float(section["jitter"]),  # type: ignore[arg-type]
            max_attempts=int(section["max_attempts"]),  # type: ignore[call-overload]
        )


@dataclass(frozen=True, slots=True)
class ErrorCategory:
    """Named message pattern with its error kind and optional policy overrides."""

    name: str
    pattern: re.Pattern[str]
    kind: ErrorKind
    max_attempts: int | None = None
    base_delay_ms: int | None = None
    max_delay_ms: int | None = None
    multiplier: float | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("name must be non-empty")
        if self.kind is ErrorKind.UNKNOWN:
            raise ValueError("kind must be transient or permanent")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def matches(self, message: str) -> bool:
        return self.pattern.search(message) is not None

    def apply(self, policy: RetryPolicy) -> RetryPolicy:
        base = policy.base_delay_ms if self.base_delay_ms is None else self.base_delay_ms
        cap = policy.max_delay_ms if self.max_delay_ms is None else self.max_delay_ms
        return replace(
            policy,
            base_delay_ms=base,
            max_delay_ms=max(cap, base),
            multiplier=policy.multiplier if self.multiplier is None else self.multiplier,
            max_attempts=policy.max_attempts if self.max_attempts is None else self.max_attempts,
        )


def _category(name: str, pattern: str, kind: ErrorKind, **overrides: object) -> ErrorCategory:
    compiled = re.compile(pattern, re.IGNORECASE)
    return ErrorCategory(name, compiled, kind, **overrides)  # type: ignore[arg-type]


# Evaluated in order; the first match wins.
DEFAULT_CATEGORIES: Final[tuple[ErrorCategory, ...]] = (
    _category(
        "network_timeout",
        r"timeout|timed out|econnreset|enotfound|econnrefused|socket hang up",
        ErrorKind.TRANSIENT,
        max_attempts=5,
        base_delay_ms=2_000,
        multiplier=1.5,
    ),
    _category(
        "rate_limit",
        r"rate limit|too many requests|\b429\b|quota exceeded",
        ErrorKind.TRANSIENT,
        max_attempts=10,
        base_delay_ms=5_000,
        max_delay_ms=300_000,
    ),
    _category(
        "parse_error",
        r"unexpected token|invalid json|json parse error|malformed json|unexpected end of json",
        ErrorKind.TRANSIENT,
        max_attempts=2,
        base_delay_ms=500,
    ),
    _category(
        "content_filter",
        r"content filter|safety filter|inappropriate content|content policy",
        ErrorKind.PERMANENT,
    ),
    _category(
        "authentication_error",
        r"unauthorized|invalid api key|authentication failed|\b401\b|\b403\b",
        ErrorKind.PERMANENT,
    ),
    _category(
        "server_error",
        r"internal server error|\b50[0-4]\b",
        ErrorKind.TRANSIENT,
        base_delay_ms=3_000,
    ),
    _category(
        "validation_error",
        r"validation error|validation failed|invalid input|bad request|missing required field"
        r"|syntax error in generated code|\b400\b",
        ErrorKind.PERMANENT,
    ),
    _category(
        "resource_exhausted",
        r"out of memory|resource exhausted|disk full|no space left",
        ErrorKind.TRANSIENT,
        max_attempts=2,
        base_delay_ms=10_000,
        max_delay_ms=60_000,
    ),
)


@dataclass(frozen=True, slots=True)
class RetryDecision:
    action: RetryAction
    kind: ErrorKind
    attempt: int
    max_attempts: int
    reason: str
    category: str | None = None
    delay_ms: int = 0

    @property
    def should_retry(self) -> bool:
        return self.action is RetryAction.RETRY

    def to_dict(self) -> dict[str, object]:
        return {
            "action": self.action.value,
            "kind": self.kind.value,
            "category": self.category,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            "delay_ms": self.delay_ms,
            "reason": self.reason,
        }


class RetryClassifier:
    """Classifies stage failures and computes retry delays."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        categories: Iterable[ErrorCategory] = DEFAULT_CATEGORIES,
        random_fn: RandomFn = random_module.random,
    ) -> None:
        self._policy = policy or RetryPolicy()
        self._categories = list(categories)
        self._random = random_fn

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def categories(self) -> tuple[ErrorCategory, ...]:
        return tuple(self._categories)

    def add_category(self, category: ErrorCategory, *, first: bool = False) -> None:
        if any(existing.name == category.name for existing in self._categories):
            raise ValueError(f"category {category.name!r} already registered")
        if first:
            self._categories.insert(0, category)
        else:
            self._categories.append(category)

    def categorize(self, error: BaseException) -> ErrorCategory | None:
        message = error_message(error)
        for category in self._categories:
            if category.matches(message):
                return category
        return None

    def classify(self, error: BaseException) -> ErrorKind:
        retryable = getattr(error, "retryable", None)
        if isinstance(retryable, bool):
            return ErrorKind.TRANSIENT if retryable else ErrorKind.PERMANENT
        if isinstance(error, (TimeoutError, ConnectionError)):
            return ErrorKind.TRANSIENT
        category = self.categorize(error)
        if category is None:
            return ErrorKind.UNKNOWN
        return category.kind

    def next_delay(self, attempt: int, *, category: ErrorCategory | None = None) -> int:
        """Delay in milliseconds before retrying after failed attempt ``attempt`` (1-based)."""
        if attempt <= 0:
            raise ValueError("attempt must be > 0")
        policy = self._policy if category is None else category.apply(self._policy)

        bounded = min(
            policy.base_delay_ms * (policy.multiplier ** (attempt - 1)),
            policy.max_delay_ms,
        )
        if policy.jitter == 0.0:
            return int(bounded)

        random_value = self._random()
        if not (0.0 <= random_value <= 1.0):
            raise ValueError("random_fn must return values in [0.0, 1.0]")
        spread = ((random_value * 2.0) - 1.0) * bounded * policy.jitter
        return int(max(0.0, min(policy.max_delay_ms, bounded + spread)))

    def decide(
        self,
        error: BaseException,
        attempt: int,
        max_attempts: int | None = None,
    ) -> RetryDecision:
        kind = self.classify(error)
        category = self.categorize(error)
        limit = max_attempts if max_attempts is not None else self._policy.max_attempts
        if category is not None and category.max_attempts is not None:
            limit = category.max_attempts
        category_name = category.name if category is not None else None

        if kind is ErrorKind.PERMANENT:
            label = category_name or type(error).__name__
            return RetryDecision(
                action=RetryAction.DEAD_LETTER,
                kind=kind,
                category=category_name,
                attempt=attempt,
                max_attempts=limit,
                reason=f"permanent error ({label})",
            )
        if attempt >= limit:
            return RetryDecision(
                action=RetryAction.DEAD_LETTER,
                kind=kind,
                category=category_name,
                attempt=attempt,
                max_attempts=limit,
                reason="retries exhausted",
            )
        return RetryDecision(
            action=RetryAction.RETRY,
            kind=kind,
            category=category_name,
            attempt=attempt,
            max_attempts=limit,
            delay_ms=self.next_delay(attempt, category=category),
            reason=f"retrying after {category_name or kind.value} error "
            f"(attempt {attempt + 1}/{limit})",
        )


def error_message(error: BaseException) -> str:
    detail = getattr(error, "detail", None)
    message = detail if isinstance(detail, str) and detail else str(error) or type(error).__name__
    return message[:_MESSAGE_LIMIT]


__all__ = [
    "DEFAULT_CATEGORIES",
    "BudgetOversizeError",
    "ErrorCategory",
    "ErrorKind",
    "RandomFn",
    "RetryAction",
    "RetryClassifier",
    "RetryDecision",
    "RetryPolicy",
    "StageError",
    "StageTimeoutError",
    "error_message",
]
