"""
Structured logging for TradeDesk using structlog.

Every trade transition runs inside ``trade_context`` so that the trade id and
the acting user appear on all events emitted while the transition executes,
including those from the escrow coordinator and payment providers.
"""

import logging
import sys
from typing import Any, Optional

import structlog
from structlog.typing import Processor

# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore", "aiosqlite")


def setup_logging(log_level: str = "INFO", json_logs: Optional[bool] = None) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        log_level: Minimum level name (DEBUG, INFO, ...)
        json_logs: Force JSON (True) or console (False) output. Defaults to
            console on a TTY and JSON otherwise.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    if json_logs is None:
        json_logs = not sys.stderr.isatty()

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json_logs:
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger, bound to ``module=name`` when a name is given."""
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(module=name)
    return logger


class LoggerMixin:
    """Gives a class a ``log`` property bound to its class name."""

    @property
    def log(self) -> structlog.BoundLogger:
        if not hasattr(self, "_logger"):
            self._logger = get_logger(self.__class__.__name__)
        return self._logger


def log_context(**kwargs: Any) -> structlog.contextvars.bound_contextvars:
    """Context manager to add context to all log messages in scope."""
    return structlog.contextvars.bound_contextvars(**kwargs)


def trade_context(trade_id: str, actor_id: Optional[str] = None, **extra: Any) -> structlog.contextvars.bound_contextvars:
    """Bind the trade being transitioned (and who is acting) for the scope."""
    if actor_id is not None:
        extra["actor_id"] = actor_id
    return log_context(trade_id=trade_id, **extra)
