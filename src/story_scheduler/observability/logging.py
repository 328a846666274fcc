"""
Per-run JSON-lines logging for scheduler runs.

Components log through ``structlog.get_logger(__name__)``. After
:func:`setup_structured_logging`, structlog events and plain ``logging``
records share one pipeline: a non-blocking queue hands them to a listener
thread, where a :class:`structlog.stdlib.ProcessorFormatter` shapes each one
into a redacted JSON object on its own line of
``<log_dir>/<run_id>/scheduler.jsonl``.

Correlation fields (``batch_id``, ``story_id``, ``stage``, ...) live in
structlog's context variables. :func:`correlation_scope` binds them for a
block, and every record logged inside it carries them at the top level.
"""

from __future__ import annotations

import atexit
import copy
import logging
import logging.handlers
import math
import queue
import re
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from contextvars import Token
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

import structlog
from structlog.typing import EventDict, WrappedLogger

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]
CorrelationTokens = Mapping[str, Token[Any]]

REDACTED: Final[str] = "***REDACTED***"
LOG_FILENAME: Final[str] = "scheduler.jsonl"
ROOT_LOGGER: Final[str] = "story_scheduler"

CORRELATION_KEYS: Final[tuple[str, ...]] = ("run_id", "batch_id", "story_id", "stage", "job_id")

# Substrings of field names. Token counts are budget data, so only
# credential-style token names are listed.
_SECRET_KEY_PARTS: Final[tuple[str, ...]] = (
    "secret",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "access_token",
    "auth_token",
    "refresh_token",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)

_SECRET_TEXT_RULES: Final[tuple[tuple[re.Pattern[str], str], ...]] = (
    (
        re.compile(
            r"(?i)\b(api[_-]?key|access[_-]?token|password|secret|authorization)\b"
            r"(\s*[:=]\s*)[^\s,;]+"
        ),
        r"\1\2" + REDACTED,
    ),
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*"), "Bearer " + REDACTED),
    (re.compile(r"\bsk-(?:ant-)?[A-Za-z0-9_-]{12,}\b"), REDACTED),
)

# Attributes every LogRecord has; anything else on a stdlib record came from ``extra=``.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName", "correlation"}

_ACTIVE_LOCK = threading.Lock()
_ACTIVE: StructuredLoggingHandle | None = None
_ATEXIT_HOOKED = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Where and how one run writes its structured log."""

    run_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = ROOT_LOGGER
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = LOG_FILENAME
    log_to_stderr: bool = False
    redactor: LogRedactor | None = None


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    log_to_stderr: bool = False,
) -> StructuredLoggingHandle:
    """Start run logging from the ``[observability]`` config section."""

    section = dict(observability_config or {})
    level = section.get("log_level", "INFO")
    base_dir = log_dir if log_dir is not None else section.get("log_dir", "logs")
    redact = bool(section.get("redact_secrets", True))
    return setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=base_dir if isinstance(base_dir, (str, Path)) else "logs",
            level=level if isinstance(level, (int, str)) else "INFO",
            log_to_stderr=log_to_stderr,
            redactor=None if redact else _keep_value,
        )
    )


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Route structlog and stdlib output under ``logger_name`` into the run's log file."""
    global _ACTIVE

    shutdown_logging()

    run_id = _require_text(config.run_id, "run_id")
    logger_name = _require_text(config.logger_name, "logger_name")
    filename = _require_text(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must not include path separators")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _level_number(config.level)

    log_path = Path(config.base_log_dir) / run_id / filename
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            _RunRecordShaper(run_id=run_id, redactor=config.redactor or default_log_redactor),
            structlog.processors.JSONRenderer(
                sort_keys=True, separators=(",", ":"), ensure_ascii=False
            ),
        ],
    )
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stderr:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(logger_name)
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False

    log_queue: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _CorrelatingQueueHandler(log_queue)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(queue_handler)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    handle = StructuredLoggingHandle(
        run_id=run_id,
        log_path=log_path,
        logger=logger,
        queue_handler=queue_handler,
        listener=listener,
        sinks=tuple(sinks),
    )
    with _ACTIVE_LOCK:
        _ACTIVE = handle
    _hook_atexit()
    return handle


class StructuredLoggingHandle:
    """Owns the queue listener and file sink of one run."""

    def __init__(
        self,
        *,
        run_id: str,
        log_path: Path,
        logger: logging.Logger,
        queue_handler: _CorrelatingQueueHandler,
        listener: logging.handlers.QueueListener,
        sinks: tuple[logging.Handler, ...],
    ) -> None:
        self.run_id = run_id
        self.log_path = log_path
        self.logger = logger
        self._queue_handler = queue_handler
        self._listener = listener
        self._sinks = sinks
        self._lock = threading.Lock()
        self._closed = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        """Wait (bounded) for queued records to reach the sinks."""
        pending = self._queue_handler.pending
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while pending.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.close()
            structlog.reset_defaults()
            self._closed = True


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None,
    *,
    timeout_seconds: float = 2.0,
) -> None:
    """Drain and close ``handle`` (default: the active one)."""
    global _ACTIVE

    target = handle if handle is not None else get_active_logging_handle()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    with _ACTIVE_LOCK:
        if _ACTIVE is target:
            _ACTIVE = None


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _ACTIVE_LOCK:
        return _ACTIVE


def get_correlation_context() -> dict[str, str]:
    return {
        key: value
        for key, value in structlog.contextvars.get_contextvars().items()
        if isinstance(value, str)
    }


def set_correlation_fields(**fields: str) -> CorrelationTokens:
    """Bind correlation fields in the current context; pass the result to reset."""
    return structlog.contextvars.bind_contextvars(
        **{
            _require_text(key, "correlation key"): _require_text(value, "correlation value")
            for key, value in fields.items()
        }
    )


def reset_correlation_fields(tokens: CorrelationTokens) -> None:
    structlog.contextvars.reset_contextvars(**tokens)


@contextmanager
def correlation_scope(**fields: str) -> Iterator[None]:
    """Tag every record logged inside the block with ``fields``."""
    tokens = set_correlation_fields(**fields)
    try:
        yield
    finally:
        reset_correlation_fields(tokens)


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Mask credential-named fields and credential-looking substrings."""
    if isinstance(value, str):
        for pattern, replacement in _SECRET_TEXT_RULES:
            value = pattern.sub(replacement, value)
        return value
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {
            key: REDACTED if _is_secret_key(key) else default_log_redactor(item)
            for key, item in value.items()
        }
    return value


class _CorrelatingQueueHandler(logging.handlers.QueueHandler):
    """Never blocks the caller; counts records dropped on a full queue."""

    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self.pending = log_queue
        self._dropped_lock = threading.Lock()
        self._dropped = 0

    @property
    def dropped(self) -> int:
        return self._dropped

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Formatting happens on the listener thread: a structlog record's msg must
        # still be its event dict there. Correlation is read here, on the caller's thread.
        prepared = copy.copy(record)
        prepared.correlation = get_correlation_context()
        return prepared

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


class _RunRecordShaper:
    """Last ProcessorFormatter step before rendering: fixed layout plus redaction."""

    def __init__(self, *, run_id: str, redactor: LogRedactor) -> None:
        self._run_id = run_id
        self._redact = redactor

    def __call__(self, _: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
        record: logging.LogRecord = event_dict.pop("_record")
        from_structlog = bool(event_dict.pop("_from_structlog", False))
        message = event_dict.pop("event", "")
        exception = event_dict.pop("exception", None)
        exc_info = event_dict.pop("exc_info", None)
        event_dict.pop("stack_info", None)

        if from_structlog:
            extras: dict[str, Any] = dict(event_dict)
        else:
            extras = {
                key: value
                for key, value in record.__dict__.items()
                if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
            }

        correlation = {"run_id": self._run_id}
        captured = getattr(record, "correlation", None)
        if isinstance(captured, Mapping):
            correlation.update(
                {key: value for key, value in captured.items() if isinstance(value, str)}
            )
        for key in CORRELATION_KEYS:
            value = extras.pop(key, None)
            if isinstance(value, str) and value.strip():
                correlation[key] = value.strip()

        shaped: EventDict = {
            "timestamp": _utc_timestamp(record.created),
            "level": record.levelname,
            "logger": record.name,
            "event": _as_text(self._redact(str(message))),
            **correlation,
        }
        if extras:
            shaped["fields"] = self._redact(
                {str(key): _to_json(value) for key, value in extras.items()}
            )
        if exception is None and isinstance(exc_info, tuple):
            exception = logging.Formatter().formatException(exc_info)
        if exception is not None:
            shaped["exception"] = _as_text(self._redact(str(exception)))
        return shaped


def _hook_atexit() -> None:
    global _ATEXIT_HOOKED
    if not _ATEXIT_HOOKED:
        atexit.register(shutdown_logging)
        _ATEXIT_HOOKED = True


def _require_text(value: object, label: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{label} must be a string, got {type(value).__name__}")
    text = value.strip()
    if not text:
        raise ValueError(f"{label} must not be empty")
    return text


def _level_number(value: int | str) -> int:
    if isinstance(value, int):
        return value
    number = logging.getLevelName(value.strip().upper())
    if not isinstance(number, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return number


def _utc_timestamp(epoch_seconds: float) -> str:
    moment = datetime.fromtimestamp(epoch_seconds, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(part in lowered for part in _SECRET_KEY_PARTS)


def _keep_value(value: JSONValue) -> JSONValue:
    return value


def _as_text(value: JSONValue) -> str:
    return value if isinstance(value, str) else repr(value)


def _to_json(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else repr(value)
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, Mapping):
        return {str(key): _to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_to_json(item) for item in value), key=repr)
    return repr(value)


__all__ = [
    "CORRELATION_KEYS",
    "CorrelationTokens",
    "JSONScalar",
    "JSONValue",
    "LOG_FILENAME",
    "LogRedactor",
    "LoggingConfig",
    "REDACTED",
    "StructuredLoggingHandle",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "reset_correlation_fields",
    "set_correlation_fields",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
