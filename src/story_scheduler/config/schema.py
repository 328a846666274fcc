"""
story-scheduler configuration schema and validation.

Each section is described by a table of :class:`_Field` rules. Validation walks
the tables, collects every problem as a ``path: message`` issue and only
returns a normalized config when nothing is wrong, so a bad ``scheduler.toml``
is reported in one pass.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, NotRequired, TypedDict

from story_scheduler.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_BASE_MS,
    DEFAULT_RETRY_JITTER,
    DEFAULT_RETRY_MAX_MS,
    DEFAULT_RETRY_MULTIPLIER,
    DEFAULT_TOKENS_PER_DAY,
    DEFAULT_TOKENS_PER_HOUR,
    DEFAULT_TOKENS_PER_MINUTE,
    PIPELINE_STAGES,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
EXTERNAL_DEPENDENCY_POLICIES: Final[tuple[str, ...]] = ("assume_satisfied", "block", "error")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

# Resolved against the config file's directory by the loader.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (("observability", "log_dir"),)

REDACTED_VALUE: Final[str] = "<redacted>"

_WORD_BREAK = re.compile(r"([a-z0-9])([A-Z])")
_SEPARATORS = re.compile(r"[^a-z0-9]+")
_SECRET_WORDS: Final[frozenset[str]] = frozenset(
    {
        "secret",
        "token",
        "password",
        "passwd",
        "apikey",
        "private",
        "credential",
        "credentials",
        "auth",
    }
)
_SECRET_FRAGMENTS: Final[tuple[str, ...]] = ("api_key", "password", "secret")


class MetaConfig(TypedDict):
    schema_version: int


class BudgetsConfig(TypedDict):
    tokens_per_minute: int
    tokens_per_hour: int
    tokens_per_day: int
    warning_utilization: float
    critical_utilization: float
    base_delay_ms: int


class RetryConfig(TypedDict):
    base_delay_ms: int
    max_delay_ms: int
    multiplier: float
    jitter: float
    max_attempts: int


class StageConfig(TypedDict):
    concurrency: int
    timeout_seconds: float
    base_cost: int
    max_attempts: NotRequired[int]


class SchedulingConfig(TypedDict):
    external_dependency_policy: str
    satisfied_external: list[str]
    allow_partial: bool
    level_barrier: bool


class ObservabilityConfig(TypedDict):
    log_level: str
    log_dir: str
    redact_secrets: bool


class SchedulerFileConfig(TypedDict):
    meta: MetaConfig
    budgets: BudgetsConfig
    retry: RetryConfig
    stages: dict[str, StageConfig]
    scheduling: SchedulingConfig
    observability: ObservabilityConfig


def _stage(concurrency: int) -> StageConfig:
    return {"concurrency": concurrency, "timeout_seconds": 300.0, "base_cost": 0}


DEFAULT_CONFIG: Final[SchedulerFileConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "budgets": {
        "tokens_per_minute": DEFAULT_TOKENS_PER_MINUTE,
        "tokens_per_hour": DEFAULT_TOKENS_PER_HOUR,
        "tokens_per_day": DEFAULT_TOKENS_PER_DAY,
        "warning_utilization": 0.8,
        "critical_utilization": 0.95,
        "base_delay_ms": 500,
    },
    "retry": {
        "base_delay_ms": DEFAULT_RETRY_BASE_MS,
        "max_delay_ms": DEFAULT_RETRY_MAX_MS,
        "multiplier": DEFAULT_RETRY_MULTIPLIER,
        "jitter": DEFAULT_RETRY_JITTER,
        "max_attempts": DEFAULT_MAX_ATTEMPTS,
    },
    "stages": {
        "draft": _stage(2),
        "logic": _stage(2),
        "style": _stage(3),
        "test": _stage(2),
        "a11y": _stage(3),
        "typefix": _stage(1),
        "report": _stage(3),
    },
    "scheduling": {
        "external_dependency_policy": "assume_satisfied",
        "satisfied_external": [],
        "allow_partial": False,
        "level_barrier": False,
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs",
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised by :func:`assert_valid_config`; the message lists every issue."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


FieldKind = Literal["int", "number", "ratio", "bool", "choice", "path", "ids"]


@dataclass(frozen=True, slots=True)
class _Field:
    kind: FieldKind
    minimum: float | None = None
    positive: bool = False
    choices: tuple[str, ...] = ()
    required: bool = True
    default: object = None


_Table = Mapping[str, _Field]

_META: Final[_Table] = {"schema_version": _Field("int", minimum=1)}

_BUDGETS: Final[_Table] = {
    "tokens_per_minute": _Field("int", minimum=1),
    "tokens_per_hour": _Field("int", minimum=1),
    "tokens_per_day": _Field("int", minimum=1),
    "warning_utilization": _Field("ratio", positive=True),
    "critical_utilization": _Field("ratio", positive=True),
    "base_delay_ms": _Field("int", minimum=0),
}

_RETRY: Final[_Table] = {
    "base_delay_ms": _Field("int", minimum=0),
    "max_delay_ms": _Field("int", minimum=0),
    "multiplier": _Field("number", minimum=1.0),
    "jitter": _Field("ratio"),
    "max_attempts": _Field("int", minimum=1),
}

_STAGE: Final[_Table] = {
    "concurrency": _Field("int", minimum=1),
    "timeout_seconds": _Field("number", positive=True),
    "max_attempts": _Field("int", minimum=1, required=False),
    "base_cost": _Field("int", minimum=0, required=False, default=0),
}

_SCHEDULING: Final[_Table] = {
    "external_dependency_policy": _Field("choice", choices=EXTERNAL_DEPENDENCY_POLICIES),
    "satisfied_external": _Field("ids", required=False),
    "allow_partial": _Field("bool"),
    "level_barrier": _Field("bool"),
}

_OBSERVABILITY: Final[_Table] = {
    "log_level": _Field("choice", choices=LOG_LEVELS),
    "log_dir": _Field("path"),
    "redact_secrets": _Field("bool"),
}

# (lower, upper) pairs checked after a section's fields parse.
_ORDERINGS: Final[dict[str, tuple[tuple[str, str], ...]]] = {
    "budgets": (
        ("tokens_per_minute", "tokens_per_hour"),
        ("tokens_per_hour", "tokens_per_day"),
        ("warning_utilization", "critical_utilization"),
    ),
    "retry": (("base_delay_ms", "max_delay_ms"),),
}

_SECTIONS: Final[tuple[str, ...]] = (
    "budgets",
    "meta",
    "observability",
    "retry",
    "scheduling",
    "stages",
)

_TABLES: Final[dict[str, _Table]] = {
    "meta": _META,
    "budgets": _BUDGETS,
    "retry": _RETRY,
    "scheduling": _SCHEDULING,
    "observability": _OBSERVABILITY,
}


class _Issues:
    __slots__ = ("found",)

    def __init__(self) -> None:
        self.found: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self.found.append(ConfigValidationIssue(path=path, message=message))


def default_config() -> SchedulerFileConfig:
    """Deep copy of the built-in defaults."""
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade scheduler.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the story-scheduler runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; neither input is mutated."""

    merged: dict[str, Any] = {key: copy.deepcopy(value) for key, value in base.items()}
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = merge_config(current, value)
        elif isinstance(value, Mapping):
            merged[key] = merge_config({}, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def validate_config(config: object) -> ConfigValidationResult:
    """Check ``config`` against the schema, reporting issues by dotted path."""

    issues = _Issues()
    root = _mapping(config, "<root>", issues)
    normalized: dict[str, Any] = {}
    if root is not None:
        _check_keys(root, _SECTIONS, required=_SECTIONS, path="", issues=issues)
        for name in _SECTIONS:
            if root.get(name) is None:
                continue
            section = _mapping(root[name], name, issues)
            if section is None:
                continue
            if name == "stages":
                normalized[name] = _validate_stages(section, issues)
            else:
                normalized[name] = _validate_table(section, _TABLES[name], name, issues)
                _check_orderings(normalized[name], name, issues)
        _check_schema_version(normalized.get("meta", {}), issues)

    if root is None or issues.found:
        return ConfigValidationResult(config=None, issues=tuple(issues.found))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: object) -> dict[str, Any]:
    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: object) -> dict[str, Any]:
    """Copy of ``config`` with secret-looking keys masked, safe to print or log."""

    if not isinstance(config, Mapping):
        return {}
    return _redact(config)


def dump_redacted(config: object) -> dict[str, Any]:
    return redact_config(config)


def _validate_stages(payload: Mapping[str, object], issues: _Issues) -> dict[str, Any]:
    _check_keys(payload, PIPELINE_STAGES, required=(), path="stages", issues=issues)
    stages: dict[str, Any] = {}
    for stage in PIPELINE_STAGES:
        if stage not in payload:
            continue
        path = f"stages.{stage}"
        table = _mapping(payload[stage], path, issues)
        if table is not None:
            stages[stage] = _validate_table(table, _STAGE, path, issues)
    return stages


def _validate_table(
    payload: Mapping[str, object], table: _Table, path: str, issues: _Issues
) -> dict[str, Any]:
    required = tuple(key for key, rule in table.items() if rule.required)
    _check_keys(payload, tuple(table), required=required, path=path, issues=issues)

    parsed: dict[str, Any] = {}
    for key, rule in table.items():
        if key not in payload:
            if rule.default is not None:
                parsed[key] = rule.default
            continue
        value = _coerce(payload[key], rule, f"{path}.{key}", issues)
        if value is not None:
            parsed[key] = value
    return parsed


def _coerce(value: object, rule: _Field, path: str, issues: _Issues) -> object | None:
    kind = rule.kind
    if kind == "bool":
        if isinstance(value, bool):
            return value
        issues.add(path, f"expected boolean, got {type(value).__name__}")
        return None

    if kind == "ids":
        if isinstance(value, str) or not isinstance(value, (list, tuple)):
            issues.add(path, f"expected list of strings, got {type(value).__name__}")
            return None
        ids = [item.strip() for item in value if isinstance(item, str)]
        if len(ids) != len(value) or not all(ids):
            issues.add(path, "entries must be non-empty strings")
            return None
        return sorted(set(ids))

    if kind in ("choice", "path"):
        if not isinstance(value, str):
            issues.add(path, f"expected string, got {type(value).__name__}")
            return None
        text = value.strip()
        if not text:
            issues.add(path, "must not be empty")
        elif kind == "path" and "\x00" in text:
            issues.add(path, "must not contain NUL bytes")
        elif kind == "choice" and text not in rule.choices:
            expected = ", ".join(sorted(rule.choices))
            issues.add(path, f"invalid value {text!r}; expected one of: {expected}")
        else:
            return text
        return None

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        expected_type = "integer" if kind == "int" else "number"
        issues.add(path, f"expected {expected_type}, got {type(value).__name__}")
        return None
    if kind == "int" and not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None

    number: int | float = value if kind == "int" else float(value)
    if not math.isfinite(number):
        issues.add(path, "must be finite")
    elif rule.positive and number <= 0:
        issues.add(path, "must be > 0")
    elif kind == "ratio" and number < 0:
        issues.add(path, "must be >= 0.0")
    elif kind == "ratio" and number > 1.0:
        issues.add(path, "must be <= 1.0")
    elif rule.minimum is not None and number < rule.minimum:
        issues.add(path, f"must be >= {rule.minimum}")
    else:
        return number
    return None


def _check_orderings(section: Mapping[str, Any], name: str, issues: _Issues) -> None:
    for lower, upper in _ORDERINGS.get(name, ()):
        low, high = section.get(lower), section.get(upper)
        if low is not None and high is not None and high < low:
            issues.add(f"{name}.{upper}", f"must be >= {lower}")


def _check_schema_version(meta: Mapping[str, Any], issues: _Issues) -> None:
    found = meta.get("schema_version")
    if found is not None and found != ConfigSchemaVersion:
        issues.add("meta.schema_version", migration_guidance(found))


def _check_keys(
    payload: Mapping[str, object],
    allowed: Sequence[str],
    *,
    required: Sequence[str],
    path: str,
    issues: _Issues,
) -> None:
    prefix = f"{path}." if path else ""
    for key in sorted(set(payload) - set(allowed)):
        message = (
            "embedded secret values are forbidden" if _is_secret_key(key) else "unknown field"
        )
        issues.add(prefix + key, message)
    for key in sorted(set(required) - set(payload)):
        issues.add(prefix + key, "missing required field")


def _mapping(value: object, path: str, issues: _Issues) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    table: dict[str, object] = {}
    for key, item in value.items():
        if isinstance(key, str):
            table[key] = item
        else:
            issues.add(path, f"object key must be string, got {type(key).__name__}")
    return table


def _is_secret_key(key: str) -> bool:
    snake = _SEPARATORS.sub("_", _WORD_BREAK.sub(r"\1_\2", key.strip()).lower()).strip("_")
    if any(fragment in snake for fragment in _SECRET_FRAGMENTS):
        return True
    return not _SECRET_WORDS.isdisjoint(snake.split("_"))


def _redact(value: object) -> Any:
    if isinstance(value, Mapping):
        return {
            str(key): REDACTED_VALUE if _is_secret_key(str(key)) else _redact(item)
            for key, item in sorted(value.items(), key=lambda entry: str(entry[0]))
        }
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "EXTERNAL_DEPENDENCY_POLICIES",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "REDACTED_VALUE",
    "SchedulerFileConfig",
    "StageConfig",
    "assert_valid_config",
    "default_config",
    "dump_redacted",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
