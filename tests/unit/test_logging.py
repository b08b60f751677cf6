"""Unit tests for the unified logger."""

import asyncio
import io

import pytest

from feed_notifier.config import ServerConfig
from feed_notifier.log_system.correlation import correlation_scope
from feed_notifier.log_system.unified_logger import UnifiedLogger


pytestmark = pytest.mark.anyio


@pytest.fixture
async def log_stream():
    stream = io.StringIO()
    UnifiedLogger.initialize_default(ServerConfig(), stream=stream)
    yield stream
    await UnifiedLogger.close()


async def test_records_carry_correlation_id(log_stream):
    logger = UnifiedLogger.get_logger("feed_notifier.core.feeder")

    with correlation_scope("feed") as correlation_id:
        logger.info("polling")
    await UnifiedLogger.close()

    output = log_stream.getvalue()
    assert f"[{correlation_id}] feed_notifier.core.feeder: polling" in output


async def test_logger_names_nested_under_package():
    assert UnifiedLogger.get_logger("tests").name == "feed_notifier.tests"
    assert UnifiedLogger.get_logger("feed_notifier.storage").name == "feed_notifier.storage"


async def test_unhandled_loop_errors_logged(log_stream):
    loop = asyncio.get_running_loop()
    UnifiedLogger.set_event_loop(loop)

    loop.call_exception_handler({"message": "Task exception was never retrieved", "exception": ValueError("boom")})
    await UnifiedLogger.close()

    output = log_stream.getvalue()
    assert "feed_notifier.event_loop: Task exception was never retrieved" in output
    assert "ValueError: boom" in output


async def test_close_is_idempotent():
    await UnifiedLogger.close()
    await UnifiedLogger.close()

    assert UnifiedLogger._handler is None
