from __future__ import annotations

import logging
import sys
from typing import Dict, List, Optional, TextIO

import structlog
from structlog import dev

from .config import Settings

# Key under which the current review run id appears on every log line.
RUN_CONTEXT_KEY = "review_run_id"

# Server loggers re-routed through our handler.
_SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "gunicorn")
# Minimum level for chatty client libraries; httpx logs each OpenAI request at INFO.
_QUIET_LOGGERS: Dict[str, int] = {
    "httpx": logging.WARNING,
    "openai": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
}

_LOGGING_CONFIGURED = False
_SENTRY_CONFIGURED = False


def bind_review_run(run_id: str) -> None:
    """Tag every later log record in this task with the review run id."""
    structlog.contextvars.bind_contextvars(**{RUN_CONTEXT_KEY: run_id})


def _pre_chain(timestamper: structlog.types.Processor) -> List[structlog.types.Processor]:
    # Runs for stdlib `logging` records, which is how the services log.
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        timestamper,
    ]


def _renderer(json_logs: bool) -> structlog.types.Processor:
    if json_logs:
        return structlog.processors.JSONRenderer(sort_keys=True)
    return dev.ConsoleRenderer(colors=False)


def configure_logging(json_logs: bool, level: str = "INFO", stream: Optional[TextIO] = None) -> None:
    """Route stdlib and structlog output through one structlog formatter.

    Safe to call repeatedly; only the first call takes effect.
    """
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    log_level = getattr(logging, level.upper(), logging.INFO)
    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=_renderer(json_logs),
            foreign_pre_chain=_pre_chain(timestamper),
        )
    )
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            timestamper,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    for name in _SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers.clear()
        server_logger.propagate = True
        server_logger.setLevel(log_level)
    for name, floor in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(max(log_level, floor))

    _LOGGING_CONFIGURED = True


def init_sentry(settings: Settings) -> None:
    """Report errors (including failed review runs logged at ERROR) to Sentry when a DSN is set."""
    global _SENTRY_CONFIGURED
    if _SENTRY_CONFIGURED or not settings.sentry_dsn:
        return

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        integrations=[
            FastApiIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        send_default_pii=False,
    )
    sentry_sdk.set_tag("service", settings.app_name)

    _SENTRY_CONFIGURED = True
