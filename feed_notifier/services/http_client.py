"""Rate-limited HTTP client for feed polling.

Lightweight requests (feed documents) go through a token bucket with a
concurrency cap so polling cannot flood the network path that deliveries
also use. Heavy requests (media downloads) bypass the limiter.
"""

import asyncio
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Optional, TypeVar

import httpx

from feed_notifier.config import NetConfig
from feed_notifier.errors import FetchError
from feed_notifier.log_system.unified_logger import UnifiedLogger
from feed_notifier.models.schemas import FeedOptions


T = TypeVar("T")


class RequestManager:
    """Token bucket plus concurrency limit around coroutine factories.

    Waiters are served in FIFO order. A token is consumed when a request
    starts; tokens refill continuously at ``refill_rate`` per second up to
    ``bucket_size``.
    """

    def __init__(
        self,
        max_concurrent: int = 3,
        refill_rate: float = 2.0,
        bucket_size: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_concurrent = max_concurrent
        self.refill_rate = refill_rate
        self.bucket_size = bucket_size
        self._clock = clock
        self._tokens = float(bucket_size)
        self._last_refill = clock()
        self._running = 0
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def running(self) -> int:
        return self._running

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        self._tokens = min(self.bucket_size, self._tokens + elapsed * self.refill_rate)
        self._last_refill = now

    async def _acquire(self) -> None:
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self._waiters.append(waiter)
        try:
            while True:
                self._refill()
                if (
                    self._waiters[0] is waiter
                    and self._running < self.max_concurrent
                    and self._tokens >= 1
                ):
                    self._waiters.popleft()
                    self._tokens -= 1
                    self._running += 1
                    return
                if self._tokens < 1:
                    delay = (1 - self._tokens) / self.refill_rate
                else:
                    delay = 0.05
                await asyncio.sleep(delay)
        except BaseException:
            if waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    async def enqueue(self, task: Callable[[], Awaitable[T]]) -> T:
        """Run ``task()`` once a token and a concurrency slot are available."""
        await self._acquire()
        try:
            return await task()
        finally:
            self._running -= 1


class HttpFetcher:
    """Outbound GET requests with proxy support, retries and rate limiting."""

    def __init__(self, net: NetConfig, request_manager: Optional[RequestManager] = None):
        self.net = net
        self.request_manager = request_manager or RequestManager(
            max_concurrent=net.max_concurrent,
            refill_rate=net.refill_rate,
            bucket_size=net.bucket_size,
        )
        self.logger = UnifiedLogger.get_logger(__name__)

    async def _request(self, url: str, options: FeedOptions, heavy: bool) -> httpx.Response:
        proxy_url = options.proxy.url if options.proxy else None
        timeout = float(options.timeout or 60)

        if heavy:
            self.logger.debug(f"Heavy request [{proxy_url or 'direct'}]: {url}")
        else:
            self.logger.debug(f"Request: {url}")

        attempts = max(self.net.retries, 1)
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                async with httpx.AsyncClient(
                    follow_redirects=True,
                    timeout=timeout,
                    proxy=proxy_url,
                    headers={"User-Agent": self.net.user_agent},
                ) as client:
                    response = await client.get(url)
                    response.raise_for_status()
                    return response
            except httpx.HTTPError as e:
                last_error = e
                if attempt < attempts:
                    status = getattr(getattr(e, "response", None), "status_code", "Unknown")
                    self.logger.info(
                        f"Request retry ({attempts - attempt} left): {url} [Status: {status}] {e}"
                    )
                    await asyncio.sleep(self.net.retry_delay)

        status_code = None
        if isinstance(last_error, httpx.HTTPStatusError):
            status_code = last_error.response.status_code
        raise FetchError(url, str(last_error), status_code=status_code)

    async def get(self, url: str, options: FeedOptions, heavy: bool = False) -> httpx.Response:
        """Fetch a URL.

        Args:
            url: URL to fetch
            options: Effective subscription options (timeout, proxy)
            heavy: Large download (embedded videos); skips the rate limiter

        Returns:
            The successful response

        Raises:
            FetchError: If every attempt failed
        """
        if heavy:
            return await self._request(url, options, heavy=True)
        return await self.request_manager.enqueue(lambda: self._request(url, options, heavy=False))
