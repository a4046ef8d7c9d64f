"""Bounded-concurrency segment fetching with retry and cancellation."""

import asyncio
import logging
from collections import deque
from functools import partial
from typing import Awaitable, Callable, Deque, Dict, Optional, Set, Tuple

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import PoolCancelledError, SegmentFetchError, TransientFetchError
from .models import FetchTask

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {"Cache-Control": "no-cache", "Pragma": "no-cache"}

AD_CONTENT_TYPES = (
    "text/html",
    "text/javascript",
    "application/javascript",
    "application/x-javascript",
)


def looks_like_ad(content_type: str, data: bytes) -> bool:
    """True for bodies that are an interstitial page or script, not media."""
    mime = content_type.split(";")[0].strip().lower()
    if mime in AD_CONTENT_TYPES:
        return True
    if mime == "application/json" and len(data) < 4096:
        return True
    head = data[:64].lstrip().lower()
    return head.startswith((b"<!doctype html", b"<html", b"<script"))


class SegmentFetchPool:
    """Fetches segment URLs with at most ``concurrency`` requests in flight.

    Tasks start in FIFO order and may finish out of order; callers reassemble
    by index. ``fetch`` returns a future so that queued tasks can be rejected
    synchronously by ``cancel``.
    """

    def __init__(self, concurrency: int = 6, max_retries: int = 3, timeout: float = 30.0,
                 backoff_base: float = 0.5, backoff_cap: float = 16.0,
                 client: Optional[httpx.AsyncClient] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 validate_content: bool = True):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.timeout = timeout
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.validate_content = validate_content
        self._sleep = sleep
        self._client = client
        self._owns_client = client is None

        self._queue: Deque[Tuple[FetchTask, asyncio.Future]] = deque()
        self._running: Set[asyncio.Task] = set()
        self._active = 0
        self._aborted = False
        self._generation = 0
        self.completed = 0
        self.failed = 0

    @property
    def aborted(self) -> bool:
        return self._aborted

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True, timeout=httpx.Timeout(self.timeout))
        return self._client

    def stats(self) -> Dict[str, int]:
        return {
            "active": self._active,
            "queued": len(self._queue),
            "completed": self.completed,
            "failed": self.failed,
        }

    def fetch(self, url: str, index: int, headers: Optional[Dict[str, str]] = None,
              timeout: Optional[float] = None,
              byte_range: Optional[Tuple[int, int]] = None) -> "asyncio.Future[bytes]":
        """Queue a segment; the returned future resolves to its bytes.

        ``byte_range`` is ``(offset, length)`` and is sent as a Range header.
        """
        future = asyncio.get_running_loop().create_future()
        if self._aborted:
            future.set_exception(PoolCancelledError())
            return future

        task = FetchTask(url=url, index=index, headers=dict(headers or {}),
                         timeout=timeout if timeout is not None else self.timeout,
                         byte_range=byte_range)
        self._queue.append((task, future))
        self._process_queue()
        return future

    def _process_queue(self):
        while not self._aborted and self._active < self.concurrency and self._queue:
            task, future = self._queue.popleft()
            if future.done():
                continue  # abandoned by the caller
            self._active += 1
            runner = asyncio.ensure_future(self._fetch_with_retry(task))
            self._running.add(runner)
            runner.add_done_callback(partial(self._on_done, future, self._generation))

    def _on_done(self, future: asyncio.Future, generation: int, runner: asyncio.Task):
        self._running.discard(runner)
        if runner.cancelled():
            outcome = PoolCancelledError()
        else:
            outcome = runner.exception()

        # completions from before a reset() belong to a pool that no longer exists
        if generation == self._generation:
            self._active -= 1
            if outcome is None:
                self.completed += 1
            elif not isinstance(outcome, PoolCancelledError):
                self.failed += 1

        if not future.done():
            if outcome is None:
                future.set_result(runner.result())
            else:
                future.set_exception(outcome)
        if generation == self._generation:
            self._process_queue()

    def _before_retry(self, task: FetchTask, retry_state):
        task.retries += 1
        exc = retry_state.outcome.exception()
        logger.warning(
            f"Segment {task.index}: {exc}; retry {task.retries}/{self.max_retries} "
            f"in {retry_state.next_action.sleep:.2f}s"
        )

    async def _fetch_with_retry(self, task: FetchTask) -> bytes:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_cap),
            retry=retry_if_exception_type(TransientFetchError),
            sleep=self._sleep,
            before_sleep=partial(self._before_retry, task),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if self._aborted:
                        raise PoolCancelledError()
                    data = await self._fetch_once(task)
        except TransientFetchError as e:
            raise SegmentFetchError(
                task.index, f"{e.message} (after {task.retries} retries)", e.status_code, task.retries
            ) from e
        return data

    async def _fetch_once(self, task: FetchTask) -> bytes:
        headers = {**NO_CACHE_HEADERS, **task.headers}
        if task.range_header:
            headers["Range"] = task.range_header
        try:
            resp = await asyncio.wait_for(
                self._get_client().get(task.url, headers=headers, timeout=task.timeout), task.timeout)
        except asyncio.TimeoutError:
            raise TransientFetchError(f"timed out after {task.timeout}s")
        except httpx.TransportError as e:
            raise TransientFetchError(f"network error: {str(e) or type(e).__name__}")

        status = resp.status_code
        if status >= 500:
            raise TransientFetchError(f"HTTP {status}", status)
        if status >= 400:
            raise SegmentFetchError(task.index, f"HTTP {status}", status, task.retries)

        data = resp.content
        if self.validate_content and looks_like_ad(resp.headers.get("content-type", ""), data):
            raise TransientFetchError(f"ad response ({resp.headers.get('content-type', 'unknown type')})")
        logger.debug(f"Segment {task.index}: {len(data)} bytes")
        return data

    def cancel(self):
        """Abort: reject queued tasks now and stop everything in flight."""
        if self._aborted:
            return
        self._aborted = True
        rejected = 0
        while self._queue:
            _, future = self._queue.popleft()
            if not future.done():
                future.set_exception(PoolCancelledError())
                rejected += 1
        for runner in list(self._running):
            runner.cancel()
        logger.info(f"Segment pool cancelled: {rejected} queued rejected, {len(self._running)} in flight abandoned")

    def reset(self):
        """Make the pool reusable after a cancel or a finished job."""
        for runner in list(self._running):
            runner.cancel()
        while self._queue:
            _, future = self._queue.popleft()
            if not future.done():
                future.set_exception(PoolCancelledError())
        self._generation += 1
        self._running = set()
        self._aborted = False
        self._active = 0
        self.completed = 0
        self.failed = 0

    async def aclose(self):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
