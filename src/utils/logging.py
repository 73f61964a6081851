"""
Logging setup for the arbitrage engine.
"""

import logging
import sys
from typing import Optional

import structlog
from structlog.processors import JSONRenderer, TimeStamper, add_log_level


def setup_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """
    Configure structlog for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_logs: Render JSON lines; otherwise a plain console format
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        TimeStamper(fmt="iso"),
    ]
    if json_logs:
        processors += [structlog.processors.format_exc_info, JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def bind_market(event_id: str, market_type: str, shard: Optional[int] = None) -> None:
    """
    Attach market context to every log line emitted from the current
    context. Each dispatcher worker is its own task, so the binding stays
    local to that market's worker.
    """
    context = {"event_id": event_id, "market_type": market_type}
    if shard is not None:
        context["shard"] = shard
    structlog.contextvars.bind_contextvars(**context)
