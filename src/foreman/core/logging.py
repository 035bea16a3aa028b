"""Structured logging for Foreman.

Thin layer over structlog that gives every component a named logger and
lets a task or process handle scope attach its identifiers to every event
emitted while it is active.

Example usage:
    from foreman.core.logging import configure_logging, get_logger, with_context

    configure_logging(level="DEBUG", format="console")

    logger = get_logger("supervisor")
    logger.info("supervisor.spawned", pid=1234)

    with with_context(ExecutionContext(task_id="task-1", component="queue")):
        logger.info("queue.task_started")  # includes task_id automatically
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Keys whose values must never reach a log sink
SENSITIVE_PATTERNS = frozenset({
    "api_key",
    "apikey",
    "token",
    "secret",
    "password",
    "credential",
    "authorization",
    "bearer",
})

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]
LogFormat = Literal["json", "console", "both"]


@dataclass(frozen=True)
class ExecutionContext:
    """Correlation identifiers added to every log event inside ``with_context()``.

    Attributes:
        task_id: Queue task being dispatched, if any.
        handle_id: Supervisor handle being managed, if any.
        component: Component that opened the scope.
    """

    task_id: str | None = None
    handle_id: int | None = None
    component: str = "unknown"

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"component": self.component}
        if self.task_id is not None:
            result["task_id"] = self.task_id
        if self.handle_id is not None:
            result["handle_id"] = self.handle_id
        return result


_current_context: ContextVar[ExecutionContext | None] = ContextVar(
    "foreman_context", default=None
)


def get_current_context() -> ExecutionContext | None:
    """Return the active ExecutionContext, or None outside a scope."""
    return _current_context.get()


@contextmanager
def with_context(ctx: ExecutionContext) -> Iterator[ExecutionContext]:
    """Activate ``ctx`` for the duration of the block.

    The ContextVar is task-local under asyncio, so concurrently running
    executors never see each other's identifiers.
    """
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)


def _redact(key: str, value: Any) -> Any:
    lowered = key.lower()
    if any(pattern in lowered for pattern in SENSITIVE_PATTERNS):
        return "[REDACTED]"
    return value


def _sanitize_event_dict(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that redacts secret-looking fields (one level deep)."""
    sanitized: EventDict = {}
    for key, value in event_dict.items():
        if isinstance(value, dict):
            sanitized[key] = {k: _redact(k, v) for k, v in value.items()}
        else:
            sanitized[key] = _redact(key, value)
    return sanitized


def _add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    event_dict["timestamp"] = datetime.now(UTC).isoformat()
    return event_dict


def _add_context(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that merges the active ExecutionContext.

    Fields passed explicitly on the log call take precedence.
    """
    ctx = get_current_context()
    if ctx is not None:
        for key, value in ctx.to_dict().items():
            event_dict.setdefault(key, value)
    return event_dict


class ForemanLogger:
    """Component logger wrapping structlog.

    The underlying structlog logger is fetched on every call so loggers
    created at import time still honour a later ``configure_logging()``.
    """

    def __init__(self, component: str, **initial_context: Any) -> None:
        self._component = component
        self._context: dict[str, Any] = {"component": component, **initial_context}

    def _get_logger(self) -> structlog.stdlib.BoundLogger:
        logger: structlog.stdlib.BoundLogger = structlog.get_logger().bind(**self._context)
        return logger

    def bind(self, **context: Any) -> ForemanLogger:
        """Return a new logger with extra bound fields."""
        return ForemanLogger(self._component, **{
            k: v for k, v in {**self._context, **context}.items() if k != "component"
        })

    def unbind(self, *keys: str) -> ForemanLogger:
        """Return a new logger without the given bound fields."""
        return ForemanLogger(self._component, **{
            k: v for k, v in self._context.items() if k not in keys and k != "component"
        })

    def debug(self, event: str, **kw: Any) -> None:
        self._get_logger().debug(event, **kw)

    def info(self, event: str, **kw: Any) -> None:
        self._get_logger().info(event, **kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._get_logger().warning(event, **kw)

    def error(self, event: str, **kw: Any) -> None:
        self._get_logger().error(event, **kw)

    def critical(self, event: str, **kw: Any) -> None:
        self._get_logger().critical(event, **kw)

    def exception(self, event: str, **kw: Any) -> None:
        """Log at error level with the active exception's traceback."""
        self._get_logger().exception(event, **kw)


def _build_processors(renderer: Processor, include_timestamps: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        _sanitize_event_dict,
        _add_context,
    ]
    if include_timestamps:
        processors.append(_add_timestamp)
    processors.extend([
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ])
    return processors


def configure_logging(
    level: LogLevel = "INFO",
    format: LogFormat = "console",  # noqa: A002
    file_path: Path | None = None,
    max_file_size_mb: int = 20,
    backup_count: int = 5,
    include_timestamps: bool = True,
) -> None:
    """Configure structlog and the stdlib root logger.

    Call once at startup. ``format="both"`` writes to stderr and to a rotating
    ``file_path`` with the console renderer. ``format="json"`` goes to
    ``file_path`` when given, otherwise stdout.

    Raises:
        ValueError: Unknown level, or format="both" without a file path.
    """
    if format == "both" and file_path is None:
        raise ValueError("file_path is required when format='both'")

    log_level = logging.getLevelNamesMapping().get(str(level).upper())
    if log_level is None:
        raise ValueError(f"Unknown log level: {level}")
    handlers: list[logging.Handler] = []

    if format in ("console", "both"):
        handlers.append(logging.StreamHandler(sys.stderr))

    if format in ("json", "both"):
        if file_path is not None:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(RotatingFileHandler(
                file_path,
                maxBytes=max_file_size_mb * 1024 * 1024,
                backupCount=backup_count,
                encoding="utf-8",
            ))
        else:
            handlers.append(logging.StreamHandler(sys.stdout))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setLevel(log_level)
        root_logger.addHandler(handler)

    renderer: Processor
    if format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=_build_processors(renderer, include_timestamps),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(component: str, **initial_context: Any) -> ForemanLogger:
    """Return a logger bound to ``component``."""
    return ForemanLogger(component, **initial_context)


__all__ = [
    "ExecutionContext",
    "ForemanLogger",
    "SENSITIVE_PATTERNS",
    "configure_logging",
    "get_current_context",
    "get_logger",
    "with_context",
]
