"""Structured logging for the indexer: structlog over stdlib logging.

Sync drivers (backfill, gap fill, live sync) run concurrently on one event
loop, so per-driver context is carried in structlog contextvars rather than
bound loggers passed around.
"""

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

# Libraries that log every HTTP request or SQL statement at INFO/DEBUG.
_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "uvicorn.access")

_PRE_CHAIN: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
]


def _renderer() -> structlog.types.Processor:
    """LOG_FORMAT=json for log shippers; the console renderer otherwise."""
    if os.environ.get("LOG_FORMAT", "console").lower() == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def setup_logging(log_level: str = "INFO") -> None:
    """Route structlog and stdlib records through one stderr handler."""
    structlog.configure(
        processors=[*_PRE_CHAIN, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_PRE_CHAIN,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, _renderer()],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(logging.getLevelNamesMapping().get(log_level.upper(), logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def sync_context(**values: object) -> Iterator[None]:
    """Bind key-value pairs (e.g. driver="backfill") for the enclosed block.

    Values propagate to every log line emitted from the current task and
    tasks created inside the block.
    """
    tokens = structlog.contextvars.bind_contextvars(**values)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
