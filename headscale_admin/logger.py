from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from time import perf_counter
from types import TracebackType
from typing import Any, Dict, Iterator, Mapping, Optional

LOGGER_NAME = "headscale_admin"
_MAX_FIELD_LENGTH = 240

_LEVEL_SYMBOLS: Dict[int, str] = {
    logging.DEBUG: "(?)",
    logging.INFO: "(*)",
    logging.WARNING: "(!)",
    logging.ERROR: "(x)",
    logging.CRITICAL: "(X)",
}

_LOG_CONTEXT: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})


def _render_value(value: Any) -> str:
    text = str(value)
    if len(text) > _MAX_FIELD_LENGTH:
        return f"{text[: _MAX_FIELD_LENGTH - 3]}..."
    return text


class _ConsoleFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        stamp = f"{created.strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]}"

        symbol = getattr(record, "symbol", _LEVEL_SYMBOLS.get(record.levelno, "(?)"))
        category = getattr(record, "category", record.name)
        event = getattr(record, "event", "")
        message = record.getMessage()
        fields = dict(getattr(record, "fields", {}))

        parts = [stamp, f"{record.levelname:<8}", str(category)]
        if event == "operation.step":
            step_name = str(fields.pop("step", "step"))
            child_name = fields.pop("child", None)
            label = f"{step_name} >> {child_name}" if child_name else step_name
            parts.append(f"{symbol} >> {label}")
        elif event:
            parts.append(f"{symbol} {event}")
        elif message:
            parts.append(f"{symbol} {message}")

        if event and message:
            parts.append(message)
        parts.extend(f"{key}: {_render_value(value)}" for key, value in fields.items())

        formatted = " | ".join(parts)
        if record.exc_info:
            return f"{formatted}\n{self.formatException(record.exc_info)}"
        return formatted


@dataclass(frozen=True)
class Operation:
    """Logs the start, completion or failure of a unit of work with its duration."""

    logger: "BoundLogger"
    name: str
    message: str
    fields: Dict[str, Any]
    start_time: float = 0.0

    async def __aenter__(self) -> "Operation":
        object.__setattr__(self, "start_time", perf_counter())
        self.logger.debug("operation.start", self.message, operation=self.name, **self.fields)
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        duration_ms = round((perf_counter() - self.start_time) * 1000, 1)
        if exc_type is None:
            self.logger.info(
                "operation.complete",
                self.message,
                operation=self.name,
                duration_ms=duration_ms,
            )
            return
        self.logger.error(
            "operation.error",
            "Failed",
            operation=self.name,
            duration_ms=duration_ms,
            error_type=exc_type.__name__,
            error=str(exc),
        )

    def _step(self, severity: int, name: str, message: str, **fields: Any) -> None:
        self.logger.log(severity, "operation.step", message, operation=self.name, step=name, **fields)

    def step(self, name: str, message: str, **fields: Any) -> None:
        self._step(logging.INFO, name, message, **fields)

    def step_debug(self, name: str, message: str, **fields: Any) -> None:
        self._step(logging.DEBUG, name, message, **fields)

    def step_warning(self, name: str, message: str, **fields: Any) -> None:
        self._step(logging.WARNING, name, message, **fields)


class BoundLogger:
    def __init__(self, category: str, fields: Optional[Mapping[str, Any]] = None) -> None:
        self._category = category
        self._fields: Dict[str, Any] = dict(fields or {})

    @contextmanager
    def context(self, **fields: Any) -> Iterator[None]:
        token = _LOG_CONTEXT.set({**_LOG_CONTEXT.get(), **fields})
        try:
            yield
        finally:
            _LOG_CONTEXT.reset(token)

    def operation(self, name: str, message: str, **fields: Any) -> Operation:
        return Operation(self, name=name, message=message, fields=fields)

    def debug(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.DEBUG, event, message, **fields)

    def info(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.INFO, event, message, **fields)

    def warning(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.WARNING, event, message, **fields)

    def error(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.ERROR, event, message, **fields)

    def exception(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.ERROR, event, message, exc_info=True, **fields)

    def log(
        self,
        severity: int,
        event: str,
        message: str,
        *,
        exc_info: Any = None,
        **fields: Any,
    ) -> None:
        merged: Dict[str, Any] = {**_LOG_CONTEXT.get(), **self._fields, **fields}
        logging.getLogger(LOGGER_NAME).log(
            severity,
            message,
            extra={
                "category": self._category,
                "event": event,
                "symbol": _LEVEL_SYMBOLS.get(severity, "(?)"),
                "fields": merged,
            },
            exc_info=exc_info,
        )


def configure_logging(log_level: str, log_file: Optional[str] = None) -> None:
    formatter = _ConsoleFormatter()
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    for handler in handlers:
        handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers[:] = handlers

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)
    logger.handlers[:] = handlers
    logger.propagate = False

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True
    # httpx logs every request at INFO; upstream calls are logged by the client.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(category: str) -> BoundLogger:
    return BoundLogger(category)
