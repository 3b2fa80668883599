"""
Logging for the operator process.

structlog and the stdlib loggers used by kopf, uvicorn and the database
drivers share one root handler. Its ``ProcessorFormatter`` renders every
record as JSON in production and as console lines elsewhere, so kopf's
per-object messages and the operator's own events come out in one format.

Handlers bind the ``namespace``, ``name`` and ``uid`` of the Database they
work on, and every record emitted during that pass carries them.
"""
import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from dbuser_operator.config.settings import settings

RESOURCE_CONTEXT_KEYS = ("namespace", "name", "uid")

# stdlib loggers and the level they are held at
QUIET_LOGGERS = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "kubernetes_asyncio": logging.WARNING,
    "urllib3": logging.WARNING,
    "botocore": logging.WARNING,
    "boto3": logging.WARNING,
    "asyncpg": logging.WARNING,
    "aiomysql": logging.WARNING,
    "kopf.objects": logging.INFO,
}


def add_operator_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp records with the operator build and environment."""
    event_dict.setdefault("operator", settings.app_name)
    event_dict.setdefault("version", settings.app_version)
    event_dict.setdefault("environment", settings.environment)
    return event_dict


def _renderer() -> Processor:
    if settings.is_production:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def configure_logging() -> None:
    """Route structlog and stdlib logging through one stdout handler."""

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        add_operator_context,
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            _renderer(),
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(getattr(logging, settings.log_level))
    root.addHandler(handler)

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)


def bind_resource_context(namespace: str, name: str, uid: str) -> None:
    """Attach a Database's identity to every record logged in this context."""
    structlog.contextvars.bind_contextvars(namespace=namespace, name=name, uid=uid)


def clear_resource_context() -> None:
    structlog.contextvars.unbind_contextvars(*RESOURCE_CONTEXT_KEYS)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a configured structlog logger.

    Args:
        name: Logger name (typically __name__ of the module)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)
