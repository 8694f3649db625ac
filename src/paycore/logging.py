"""
structlog configuration for the CLI and the billing worker.

Library modules only call ``structlog.get_logger(__name__)``; this module is
run once at process start to decide how those events are rendered.
"""

import logging
import sys

import structlog
from structlog.typing import Processor

from paycore.settings import Settings, get_settings


def _shared_processors(merge_context: bool) -> list[Processor]:
    chain: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if merge_context:
        # tick_id / subscription_id bound by the scheduler
        chain.insert(0, structlog.contextvars.merge_contextvars)
    return chain


def setup_logging(config: Settings | None = None) -> None:
    """Route structlog through stdlib logging on stdout as JSON or console lines."""
    observability = (config or get_settings()).observability

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=observability.log_level.value,
    )

    renderer: Processor
    if observability.log_format == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer(sort_keys=True)

    structlog.configure(
        processors=[*_shared_processors(observability.enable_correlation_ids), renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
