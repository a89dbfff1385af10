from __future__ import annotations

import asyncio
import logging
from collections import Counter
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Iterator, List, Mapping

from pythonjsonlogger.json import JsonFormatter

__all__ = [
    "bind_log_context",
    "reset_log_context",
    "logging_context",
    "get_log_context",
    "get_correlation_id",
    "configure_logging",
    "LogSampler",
    "monitor_task",
]

# Keys accepted as keyword arguments; anything else must go through ``extra``.
CONTEXT_FIELDS = frozenset({"correlation_id", "session_id", "order_id", "instrument_key", "job"})

_EMPTY: Mapping[str, Any] = MappingProxyType({})
_LOG_CONTEXT: ContextVar[Mapping[str, Any]] = ContextVar("paper_trading_log_context", default=_EMPTY)

_configured = False


class LogSampler:
    """Let through the first and then every Nth occurrence per key."""

    def __init__(self, interval: int = 1) -> None:
        self._every = max(int(interval), 1)
        self._seen: Counter[str] = Counter()

    @property
    def interval(self) -> int:
        return self._every

    def should_log(self, key: str = "default") -> bool:
        self._seen[key] += 1
        seen = self._seen[key]
        return seen == 1 or seen % self._every == 0


class ContextFilter(logging.Filter):
    """Stamp the bound log context onto records; explicit ``extra`` values win."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        for key, value in get_log_context().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        if not hasattr(record, "correlation_id"):
            record.correlation_id = None
        return True


class StructuredJsonFormatter(JsonFormatter):
    """One JSON object per record with a UTC ISO-8601 ``timestamp``."""

    def add_fields(self, log_data: dict[str, Any], record: logging.LogRecord, message_dict: dict[str, Any]) -> None:  # noqa: D401
        super().add_fields(log_data, record, message_dict)
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        for key, value in (
            ("timestamp", created.isoformat()),
            ("level", record.levelname),
            ("logger", record.name),
            ("message", record.getMessage()),
        ):
            log_data.setdefault(key, value)


def _json_handler(handler: logging.Handler) -> logging.Handler:
    handler.setFormatter(StructuredJsonFormatter())
    handler.addFilter(ContextFilter())
    return handler


def _level(value: str | int) -> int:
    if isinstance(value, int):
        return value
    named = logging.getLevelName(str(value).upper())
    return named if isinstance(named, int) else logging.INFO


def configure_logging(level: str | int = logging.INFO, *, log_path: str | Path | None = None) -> None:
    """Route every logger through JSON handlers on the root logger.

    Handlers are installed on the first call only; later calls just adjust the
    root level so app factories can be invoked repeatedly.
    """

    global _configured

    root = logging.getLogger()
    root.setLevel(_level(level))
    if _configured:
        return

    handlers: List[logging.Handler] = [_json_handler(logging.StreamHandler())]
    file_error: OSError | None = None
    if log_path:
        path = Path(log_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(_json_handler(logging.FileHandler(path, encoding="utf-8")))
        except OSError as exc:
            file_error = exc

    root.handlers[:] = handlers
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        server_logger = logging.getLogger(name)
        server_logger.handlers.clear()
        server_logger.propagate = True
    logging.captureWarnings(True)
    _configured = True

    if file_error is not None:
        root.warning(
            "File logging disabled",
            extra={"event": "file_logging_setup_failed", "log_path": str(log_path), "error": str(file_error)},
        )


def monitor_task(
    task: asyncio.Task[Any],
    logger: logging.Logger,
    *,
    context: dict[str, Any] | None = None,
) -> None:
    """Log the exception of ``task`` once it finishes; cancellation is silent."""

    fields = dict(context or {})

    def _report(done: asyncio.Task[Any]) -> None:
        if done.cancelled():
            return
        error = done.exception()
        if error is None:
            return
        name = done.get_name()
        logger.error(
            "Background task %s failed",
            name,
            exc_info=error,
            extra={"event": "background_task_error", "task_name": name, **fields},
        )

    task.add_done_callback(_report)


def bind_log_context(**fields: Any) -> List[Token[Mapping[str, Any]]]:
    """Merge ``fields`` into the current log context.

    Only the keys in ``CONTEXT_FIELDS`` are taken from keyword arguments; a
    mapping passed as ``extra`` is merged as-is. The returned tokens must be
    passed to :func:`reset_log_context` when the scope ends.
    """

    extra = fields.pop("extra", None) or {}
    updates = {key: value for key, value in fields.items() if key in CONTEXT_FIELDS}
    updates.update(extra)
    if not updates:
        return []
    merged = {**_LOG_CONTEXT.get(), **updates}
    return [_LOG_CONTEXT.set(MappingProxyType(merged))]


def reset_log_context(tokens: Iterable[Token[Mapping[str, Any]]]) -> None:
    for token in reversed(list(tokens)):
        try:
            _LOG_CONTEXT.reset(token)
        except ValueError:
            # Token was created in a different context, e.g. a streaming response task.
            continue


@contextmanager
def logging_context(**fields: Any) -> Iterator[None]:
    tokens = bind_log_context(**fields)
    try:
        yield
    finally:
        reset_log_context(tokens)


def get_log_context() -> dict[str, Any]:
    return {key: value for key, value in _LOG_CONTEXT.get().items() if value is not None}


def get_correlation_id() -> str | None:
    return _LOG_CONTEXT.get().get("correlation_id")
