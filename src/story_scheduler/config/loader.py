"""
Layered runtime config for story-scheduler.

Layers apply in order: built-in defaults, ``scheduler.toml``, ``STORYSCHED_*``
environment variables, CLI ``--set`` overrides. Later layers win key by key.
Every layer is flattened to dotted keys (``budgets.tokens_per_minute``) before
it is nested back and merged, and env names mirror those keys:
``STORYSCHED_BUDGETS_TOKENS_PER_MINUTE``, ``STORYSCHED_STAGES_A11Y_CONCURRENCY``.
List values read from env are comma-separated.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, Final

from story_scheduler.config.schema import (
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    dump_redacted,
    merge_config,
)
from story_scheduler.constants import PIPELINE_STAGES

DEFAULT_CONFIG_FILE: Final[str] = "scheduler.toml"
ENV_PREFIX: Final[str] = "STORYSCHED_"

_TRUE_WORDS: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSE_WORDS: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

EnvParser = Callable[[str], object]


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load the effective config; CLI beats env beats file beats defaults."""

    path = _config_file(config_path)
    file_layer = _read_toml(path, required=config_path is not None)
    # File errors are reported against the file's own keys before env and CLI apply.
    config = assert_valid_config(merge_config(default_config(), file_layer))

    env_layer = _env_layer(os.environ if environ is None else environ)
    cli_layer = _cli_layer(cli_overrides or {})
    config = assert_valid_config(merge_config(merge_config(config, env_layer), cli_layer))
    return normalize_paths(config, base_dir=path.parent)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve path-valued fields against ``base_dir`` (the config file's directory)."""

    flat = _flatten(config)
    resolved: dict[str, object] = {}
    for field_path in PATH_FIELDS:
        key = ".".join(field_path)
        value = flat.get(key)
        if isinstance(value, str):
            resolved[key] = _resolve_path(value, base_dir)
    return merge_config(config, _nest(resolved))


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Deterministic JSON dump of the redacted effective config."""

    return json.dumps(
        dump_redacted(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def env_name_for_path(path: tuple[str, ...]) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in path)


def env_parsers() -> dict[str, EnvParser]:
    """Dotted key -> parser for every key an env var may override."""

    parsers: dict[str, EnvParser] = {}
    for key, value in _flatten(default_config()).items():
        parser = _PARSERS_BY_TYPE.get(type(value))
        if parser is not None:
            parsers[key] = parser
    # Stage attempt caps are optional, so the defaults carry no value to type them by.
    for stage in PIPELINE_STAGES:
        parsers.setdefault(f"stages.{stage}.max_attempts", _parse_int)
    return parsers


def _config_file(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        if required:
            raise ConfigLoadError(f"config file not found: {path}") from None
        return {}
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc

    try:
        return tomllib.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc


def _env_layer(environ: Mapping[str, str]) -> dict[str, Any]:
    flat: dict[str, object] = {}
    for key, parse in sorted(env_parsers().items()):
        name = env_name_for_path(tuple(key.split(".")))
        raw = environ.get(name)
        if raw is None:
            continue
        try:
            flat[key] = parse(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {key} {exc}") from None
    return _nest(flat)


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    flat: dict[str, object] = {}
    for key, value in overrides.items():
        parts = [part for part in key.split(".") if part]
        if not parts:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        flat[".".join(parts)] = value
    return _nest(flat)


def _flatten(payload: Mapping[str, object], prefix: str = "") -> dict[str, object]:
    flat: dict[str, object] = {}
    for key, value in payload.items():
        dotted = f"{prefix}.{key}" if prefix else key
        if isinstance(value, Mapping):
            flat.update(_flatten(value, dotted))
        else:
            flat[dotted] = value
    return flat


def _nest(flat: Mapping[str, object]) -> dict[str, Any]:
    nested: dict[str, Any] = {}
    for dotted in sorted(flat):
        *parents, leaf = dotted.split(".")
        node = nested
        for part in parents:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        node[leaf] = flat[dotted]
    return nested


def _resolve_path(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


def _parse_int(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ValueError("must be an integer") from None


def _parse_float(raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        raise ValueError("must be a number") from None


def _parse_ids(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def _parse_bool(raw: str) -> bool:
    word = raw.lower()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    raise ValueError("must be a boolean (true/false/1/0/yes/no/on/off)")


_PARSERS_BY_TYPE: Final[dict[type, EnvParser]] = {
    bool: _parse_bool,
    int: _parse_int,
    float: _parse_float,
    str: str,
    list: _parse_ids,
}


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "EnvParser",
    "dump_effective_config",
    "env_name_for_path",
    "env_parsers",
    "load_config",
    "normalize_paths",
]
