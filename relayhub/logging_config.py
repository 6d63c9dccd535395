"""
structlog setup shared by the API process and the relayer loops.

Watchers, the submission worker and the ledger clients log through the
stdlib ``logging.getLogger(__name__)``; those records go through the same
processor chain as structlog events so one stream carries both.
"""

import logging
import sys
from typing import List, Optional

import structlog

from .config import settings

# Chatty below WARNING; relayer events are what matter in the stream.
_QUIET_LOGGERS = ("uvicorn.access", "httpcore", "httpx", "asyncio")


def _stamp_service(_, __, event_dict):
    event_dict.setdefault("service", "relayhub")
    event_dict.setdefault("hub_chain", settings.hub_chain)
    return event_dict


def _pick_renderer(level: int, log_format: str):
    if log_format == "console" or (log_format == "auto" and level == logging.DEBUG):
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def setup_logging(log_level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """Install the structlog pipeline on the root logger.

    Args:
        log_level: Overrides ``settings.log_level``
        log_format: ``json``, ``console`` or ``auto`` (console at DEBUG);
            overrides ``settings.log_format``
    """
    level = getattr(logging, (log_level or settings.log_level).upper(), logging.INFO)
    renderer = _pick_renderer(level, log_format or settings.log_format)

    pre_chain: List[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _stamp_service,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if isinstance(renderer, structlog.processors.JSONRenderer):
        pre_chain.append(structlog.processors.format_exc_info)

    structlog.configure(
        processors=pre_chain + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
