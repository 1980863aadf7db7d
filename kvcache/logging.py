"""
Structured logging for kvcache.

Components log through structlog. Callers may inject their own logger
object instead; see ``create_logger``.
"""

import sys
import structlog
import logging
import time
from typing import Any, Callable, Dict, Optional

from opentelemetry import trace


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structured JSON logging for a process embedding kvcache."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            _service_context(service_name),
            add_trace_context,
            add_timestamp,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def _service_context(service_name: str) -> Callable[[Any, str, Dict[str, Any]], Dict[str, Any]]:
    def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict

    return add_service_context


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add trace context to log events."""
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        span_context = current_span.get_span_context()
        if span_context.trace_id != 0:
            event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        if span_context.span_id != 0:
            event_dict["span_id"] = f"{span_context.span_id:016x}"

    return event_dict


def add_timestamp(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add high-precision timestamp to log events."""
    event_dict["timestamp"] = time.time()
    return event_dict


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def _noop(*args: Any, **kwargs: Any) -> None:
    return None


def render_event(event: str, fields: Dict[str, Any]) -> str:
    """Flatten structured fields into ``event key=value ...``."""
    if not fields:
        return event
    return " ".join([event] + [f"{key}={value}" for key, value in fields.items()])


def _rendering(method: Callable[..., Any]) -> Callable[..., Any]:
    def call(event: str, **fields: Any) -> Any:
        return method(render_event(event, fields))

    return call


def _accepting_fields(method: Callable[..., Any]) -> Callable[..., Any]:
    # message-only loggers reject keyword fields; retry with them rendered
    def call(event: str, **fields: Any) -> Any:
        if not fields:
            return method(event)
        try:
            return method(event, **fields)
        except TypeError:
            return method(render_event(event, fields))

    return call


class CollaboratorLogger:
    """Uniform ``debug/log/info/warn/error`` facade over an injected logger.

    The injected object may implement any subset of those methods; missing
    ones become no-ops. Methods are called structlog-style with
    ``(event, **fields)``, and with a single rendered message when they
    don't take keyword fields. ``warning`` is accepted in place of ``warn``.
    """

    def __init__(self, logger: Any):
        self._logger = logger
        self.debug = self._resolve("debug")
        self.log = self._resolve("log")
        self.info = self._resolve("info")
        self.warn = self._resolve("warn", "warning")
        self.error = self._resolve("error")

    def _resolve(self, *names: str) -> Callable[..., Any]:
        for name in names:
            method = getattr(self._logger, name, None)
            if callable(method):
                return _accepting_fields(method)
        return _noop

    # structlog spelling, used throughout kvcache
    def warning(self, event: str, **fields: Any) -> Any:
        return self.warn(event, **fields)


class _StructlogCollaborator(CollaboratorLogger):
    def __init__(self, logger: structlog.BoundLogger):
        super().__init__(logger)
        # structlog's ``log`` takes a level first
        self.debug = logger.debug
        self.log = logger.info
        self.info = logger.info
        self.warn = logger.warning
        self.error = logger.error


class _StdlibCollaborator(CollaboratorLogger):
    def __init__(self, logger: Any):
        super().__init__(logger)
        # stdlib loggers take a message only, and ``log`` takes a level first
        self.debug = _rendering(logger.debug)
        self.log = _rendering(logger.info)
        self.info = _rendering(logger.info)
        self.warn = _rendering(logger.warning)
        self.error = _rendering(logger.error)


def create_logger(logger: Optional[Any] = None, name: str = "kvcache") -> CollaboratorLogger:
    """Wrap an injected logger, or fall back to the kvcache structlog logger."""
    if logger is None:
        return _StructlogCollaborator(get_logger(name))
    if isinstance(logger, CollaboratorLogger):
        return logger
    if isinstance(logger, (logging.Logger, logging.LoggerAdapter)):
        return _StdlibCollaborator(logger)
    return CollaboratorLogger(logger)
