from __future__ import annotations

import logging
import os

import structlog

_CONFIGURED_SERVICES: set[str] = set()


def _log_level() -> int:
    name = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def configure_logging(service_name: str) -> None:
    if service_name in _CONFIGURED_SERVICES:
        return
    logging.basicConfig(level=_log_level())
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
    _CONFIGURED_SERVICES.add(service_name)
    logger = structlog.get_logger(service=service_name)
    logger.info("logging_configured", level=logging.getLevelName(_log_level()))


def get_logger(service_name: str) -> structlog.BoundLogger:
    return structlog.get_logger(service=service_name)
