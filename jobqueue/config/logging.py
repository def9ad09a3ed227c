import logging
import sys

import structlog
from structlog.types import Processor

from .settings import Settings, get_settings


def _add_app_context(settings: Settings) -> Processor:
    def processor(logger, method_name, event_dict):
        event_dict.setdefault("app", settings.app_name)
        event_dict.setdefault("environment", settings.environment.value)
        return event_dict

    return processor


def setup_logging(settings: Settings | None = None) -> None:
    """
    Configure structlog and route stdlib log records through the same renderer.

    Worker code logs through structlog bound loggers; service code logs through
    ``logging.getLogger(__name__)`` with ``extra={...}``. Both end up as the
    same JSON lines, or pretty console lines when ``debug`` is on.
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        _add_app_context(settings),
    ]
    if settings.debug:
        shared_processors.append(
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.FUNC_NAME]
            )
        )

    # Pretty printing for development, JSON lines otherwise
    if settings.debug:
        render: list[Processor] = [structlog.dev.ConsoleRenderer()]
    else:
        render = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[
                *shared_processors,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.ExtraAdder(),
            ],
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *render],
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    structlog.configure(
        processors=[*shared_processors, *render],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
