"""Structured logging setup with JSON-lines output, correlation fields and redaction.

Component modules log through ``structlog.get_logger(__name__)``. ``configure_logging``
routes structlog events into the stdlib ``cogworks`` logger so a single queue-backed
pipeline formats, redacts and writes every record.
"""

from __future__ import annotations

import contextvars
import json
import logging
import logging.handlers
import math
import queue
import sys
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

import structlog

from cogworks.security.redaction import REDACTED_VALUE, redact_structure

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_DEFAULT_LOGGER_NAME: Final[str] = "cogworks"
_DEFAULT_LOG_FILENAME: Final[str] = "cogworks.jsonl"
_DEFAULT_QUEUE_SIZE: Final[int] = 4096

_CORRELATION_KEYS: Final[tuple[str, ...]] = (
    "run_id",
    "work_item_ref",
    "node_id",
    "trace_id",
)

_STANDARD_LOG_RECORD_FIELDS: Final[frozenset[str]] = frozenset(
    {
        "args",
        "asctime",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "message",
        "module",
        "msecs",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "thread",
        "threadName",
        "taskName",
    }
)

_CorrelationState = tuple[tuple[str, str], ...]
_CORRELATION_CONTEXT: contextvars.ContextVar[_CorrelationState] = contextvars.ContextVar(
    "cogworks_correlation", default=()
)

_ACTIVE_HANDLE_LOCK = threading.Lock()
_ACTIVE_HANDLE: LoggingHandle | None = None


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Configuration for queue-backed structured logging."""

    level: int | str = "INFO"
    log_dir: Path | str | None = None
    log_filename: str = _DEFAULT_LOG_FILENAME
    log_to_stderr: bool = True
    redact_secrets: bool = True
    logger_name: str = _DEFAULT_LOGGER_NAME
    queue_size: int = _DEFAULT_QUEUE_SIZE


class _JsonLineFormatter(logging.Formatter):
    """Formatter that emits one canonical JSON object per record."""

    def __init__(self, *, redact: bool) -> None:
        super().__init__()
        self._redact = redact

    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, JSONValue] = {
            "timestamp": _iso8601z_from_epoch(record.created),
            "level": record.levelname,
            "logger": record.name,
            "event": self._clean(record.getMessage()),
        }
        for key, value in sorted(_merge_correlation_context(record).items()):
            event[key] = value

        extras = _extract_extra_fields(record)
        if extras:
            event["fields"] = self._clean(extras)
        if record.exc_info is not None:
            event["exception"] = self._clean(self.formatException(record.exc_info))
        return json.dumps(event, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def _clean(self, value: object) -> JSONValue:
        normalized = _normalize_json_value(value)
        if not self._redact:
            return normalized
        return _normalize_json_value(redact_structure(normalized))


class LoggingHandle:
    """Runtime handle for an active logging setup."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        log_path: Path | None,
        queue_handler: logging.handlers.QueueHandler,
        listener: logging.handlers.QueueListener,
        sink_handlers: tuple[logging.Handler, ...],
    ) -> None:
        self.logger = logger
        self.log_path = log_path
        self._queue_handler = queue_handler
        self._listener = listener
        self._sink_handlers = sink_handlers
        self._lock = threading.Lock()
        self._is_shutdown = False

    @property
    def is_shutdown(self) -> bool:
        return self._is_shutdown

    def shutdown(self) -> None:
        with self._lock:
            if self._is_shutdown:
                return
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for handler in self._sink_handlers:
                handler.flush()
                handler.close()
            self._is_shutdown = True


def configure_logging(config: LoggingConfig | None = None) -> LoggingHandle:
    """Configure structlog and the stdlib ``cogworks`` logger; replaces any previous setup."""

    cfg = config or LoggingConfig()
    shutdown_logging()

    level = _parse_log_level(cfg.level)
    formatter = _JsonLineFormatter(redact=cfg.redact_secrets)

    sink_handlers: list[logging.Handler] = []
    log_path: Path | None = None
    if cfg.log_dir is not None:
        log_dir = Path(cfg.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / cfg.log_filename
        sink_handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    if cfg.log_to_stderr or not sink_handlers:
        sink_handlers.append(logging.StreamHandler(sys.stderr))
    for handler in sink_handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)

    logger = logging.getLogger(cfg.logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    log_queue: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=max(1, cfg.queue_size))
    queue_handler = _CorrelatingQueueHandler(log_queue)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(
        log_queue, *sink_handlers, respect_handler_level=True
    )
    listener.start()
    logger.addHandler(queue_handler)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    handle = LoggingHandle(
        logger=logger,
        log_path=log_path,
        queue_handler=queue_handler,
        listener=listener,
        sink_handlers=tuple(sink_handlers),
    )
    global _ACTIVE_HANDLE
    with _ACTIVE_HANDLE_LOCK:
        _ACTIVE_HANDLE = handle
    return handle


def shutdown_logging() -> None:
    """Flush and close the active logging setup, if any."""

    global _ACTIVE_HANDLE
    with _ACTIVE_HANDLE_LOCK:
        handle = _ACTIVE_HANDLE
        _ACTIVE_HANDLE = None
    if handle is not None:
        handle.shutdown()


def get_correlation_context() -> dict[str, str]:
    return dict(_CORRELATION_CONTEXT.get())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Temporarily bind correlation fields for log records emitted in scope."""

    state = get_correlation_context()
    for key, value in fields.items():
        if value is None:
            state.pop(key, None)
        else:
            state[key] = str(value)
    token = _CORRELATION_CONTEXT.set(tuple(state.items()))
    try:
        yield
    finally:
        _CORRELATION_CONTEXT.reset(token)


class _CorrelatingQueueHandler(logging.handlers.QueueHandler):
    """Queue handler that snapshots correlation fields and drops records when full."""

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        context = get_correlation_context()
        if context:
            record.correlation = context
        return super().prepare(record)

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            pass


def _merge_correlation_context(record: logging.LogRecord) -> dict[str, str]:
    merged: dict[str, str] = {}
    snapshot = getattr(record, "correlation", None)
    if isinstance(snapshot, Mapping):
        merged.update({str(k): str(v) for k, v in snapshot.items()})
    for key in _CORRELATION_KEYS:
        value = getattr(record, key, None)
        if isinstance(value, str) and value.strip():
            merged[key] = value.strip()
    return merged


def _extract_extra_fields(record: logging.LogRecord) -> dict[str, object]:
    fields: dict[str, object] = {}
    for key, value in record.__dict__.items():
        if key in _STANDARD_LOG_RECORD_FIELDS or key in _CORRELATION_KEYS:
            continue
        if key == "correlation" or key.startswith("_"):
            continue
        fields[key] = value
    return fields


def _normalize_json_value(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else REDACTED_VALUE
    if isinstance(value, datetime):
        return value.astimezone(UTC).isoformat().replace("+00:00", "Z")
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _normalize_json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_json_value(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted(str(item) for item in value)
    return repr(value)


def _parse_log_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    parsed = logging.getLevelName(value.strip().upper())
    if isinstance(parsed, int):
        return parsed
    raise ValueError(f"unsupported logging level {value!r}")


def _iso8601z_from_epoch(epoch_seconds: float) -> str:
    timestamp = datetime.fromtimestamp(epoch_seconds, tz=UTC)
    return timestamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


__all__ = [
    "LoggingConfig",
    "LoggingHandle",
    "configure_logging",
    "correlation_scope",
    "get_correlation_context",
    "shutdown_logging",
]
