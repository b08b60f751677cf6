"""Unified logger for feed_notifier.

All modules obtain their logger through ``UnifiedLogger.get_logger(__name__)``
so records share one handler, one format and the current correlation id.
"""

import asyncio
import logging
import queue
import sys
from logging.handlers import QueueHandler, QueueListener
from typing import TYPE_CHECKING, Optional, TextIO

from feed_notifier.log_system.correlation import get_correlation_id

if TYPE_CHECKING:
    from feed_notifier.config import ServerConfig


ROOT_LOGGER_NAME = "feed_notifier"
LOG_FORMAT = "%(asctime)s %(levelname)-8s [%(correlation_id)s] %(name)s: %(message)s"


class CorrelationIdFilter(logging.Filter):
    """Attach the active correlation id to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "-"
        return True


class UnifiedLogger:
    """Process-wide logging setup."""

    _handler: Optional[QueueHandler] = None
    _listener: Optional[QueueListener] = None
    _loop: Optional[asyncio.AbstractEventLoop] = None

    @classmethod
    def initialize_default(cls, config: Optional["ServerConfig"] = None, stream: Optional[TextIO] = None) -> None:
        """Route package records through a queue to a stream handler.

        Records are formatted and written on a listener thread so a slow
        stderr never blocks the event loop.

        Args:
            config: Optional server config supplying the log level
            stream: Output stream, stderr by default
        """
        root = logging.getLogger(ROOT_LOGGER_NAME)
        level = getattr(logging, (config.log_level if config else "INFO").upper(), logging.INFO)
        root.setLevel(level)

        if cls._handler is None:
            output = logging.StreamHandler(stream or sys.stderr)
            output.setFormatter(logging.Formatter(LOG_FORMAT))

            handler = QueueHandler(queue.SimpleQueue())
            handler.addFilter(CorrelationIdFilter())
            root.addHandler(handler)
            root.propagate = False

            cls._listener = QueueListener(handler.queue, output)
            cls._listener.start()
            cls._handler = handler

    @classmethod
    def set_event_loop(cls, loop: asyncio.AbstractEventLoop) -> None:
        """Send unhandled event loop errors (never-retrieved task exceptions) to the package logger."""
        logger = cls.get_logger("event_loop")

        def handle(loop: asyncio.AbstractEventLoop, context: dict) -> None:
            logger.error(context.get("message", "Unhandled event loop error"), exc_info=context.get("exception"))

        loop.set_exception_handler(handle)
        cls._loop = loop

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """Get a logger nested under the package root.

        Args:
            name: Usually the calling module's ``__name__``
        """
        if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME + "."):
            name = f"{ROOT_LOGGER_NAME}.{name}"
        return logging.getLogger(name)

    @classmethod
    async def close(cls) -> None:
        """Drain queued records and detach everything initialize_default installed."""
        if cls._loop is not None:
            if not cls._loop.is_closed():
                cls._loop.set_exception_handler(None)
            cls._loop = None

        if cls._handler is not None:
            root = logging.getLogger(ROOT_LOGGER_NAME)
            root.removeHandler(cls._handler)
            root.propagate = True
            cls._handler.close()
            cls._handler = None

        if cls._listener is not None:
            listener, cls._listener = cls._listener, None
            await asyncio.get_running_loop().run_in_executor(None, listener.stop)
            for output in listener.handlers:
                output.close()
