"""Single-flight coordination of multi-segment merge jobs."""

import asyncio
import enum
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Union

from .downloader import SegmentFetchPool
from .errors import PoolBusyError, PoolCancelledError
from .models import MergeCompleted, MergeFailed, MergeProgress, SegmentRef

logger = logging.getLogger(__name__)

MergeEvent = Union[MergeProgress, MergeCompleted, MergeFailed]


class MergeState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"


class Keepalive:
    """Periodic heartbeat held for the lifetime of a running merge."""

    def __init__(self, interval: float = 25.0, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.interval = interval
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.pings = 0

    @property
    def active(self) -> bool:
        return self._task is not None

    async def _ping(self):
        while True:
            await self._sleep(self.interval)
            self.pings += 1
            logger.debug(f"Merge keepalive ping {self.pings}")

    async def __aenter__(self):
        self._task = asyncio.ensure_future(self._ping())
        return self

    async def __aexit__(self, *exc):
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        return False


class MergeJob:
    """Handle for one merge: iterate it for progress, or await ``wait()``."""

    def __init__(self, job_id: str, segments: List[Union[str, SegmentRef]],
                 headers: Optional[Dict[str, str]] = None):
        self.job_id = job_id
        self.segments = [s if isinstance(s, SegmentRef) else SegmentRef(s) for s in segments]
        self.headers = dict(headers or {})
        self.total = len(self.segments)
        self.completed = 0
        self.cancelled = False
        self.result: Optional[Union[MergeCompleted, MergeFailed]] = None
        self._events: "asyncio.Queue[MergeEvent]" = asyncio.Queue()
        self._done = asyncio.get_running_loop().create_future()
        self._task: Optional[asyncio.Task] = None

    def __aiter__(self):
        return self._iter_events()

    async def _iter_events(self):
        while True:
            event = await self._events.get()
            yield event
            if isinstance(event, (MergeCompleted, MergeFailed)):
                return

    def _emit(self, event: MergeEvent):
        self._events.put_nowait(event)

    def _finish(self, event: Union[MergeCompleted, MergeFailed]):
        self.result = event
        self._emit(event)
        if not self._done.done():
            self._done.set_result(event)

    async def wait(self) -> Union[MergeCompleted, MergeFailed]:
        return await asyncio.shield(self._done)


class MergeCoordinator:
    """Runs at most one merge job at a time over a shared segment pool.

    ``start_merge`` claims the slot synchronously, so a second call while a
    job is running fails immediately with PoolBusyError instead of queueing.
    The slot is released and the pool reset on every exit path.
    """

    def __init__(self, pool: Optional[SegmentFetchPool] = None, keepalive_interval: float = 25.0,
                 progress_interval: float = 0.5, clock: Callable[[], float] = time.monotonic,
                 keepalive_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.pool = pool or SegmentFetchPool()
        self.keepalive_interval = keepalive_interval
        self.progress_interval = progress_interval
        self.clock = clock
        self._keepalive_sleep = keepalive_sleep
        self._active: Optional[MergeJob] = None
        self.keepalive: Optional[Keepalive] = None

    @property
    def state(self) -> MergeState:
        return MergeState.RUNNING if self._active is not None else MergeState.IDLE

    @property
    def active_job_id(self) -> Optional[str]:
        return self._active.job_id if self._active is not None else None

    def start_merge(self, job_id: str, segments: List[Union[str, SegmentRef]],
                    headers: Optional[Dict[str, str]] = None) -> MergeJob:
        if self._active is not None:
            raise PoolBusyError(self._active.job_id)
        job = MergeJob(job_id, segments, headers)
        self._active = job
        job._task = asyncio.ensure_future(self._drive(job))
        return job

    def cancel(self, job_id: Optional[str] = None) -> bool:
        job = self._active
        if job is None or (job_id is not None and job.job_id != job_id):
            return False
        logger.info(f"Cancelling merge {job.job_id}")
        job.cancelled = True
        job._task.cancel()
        return True

    async def _drive(self, job: MergeJob):
        logger.info(f"Merge {job.job_id} started: {job.total} segments")
        futures: List[asyncio.Future] = []
        outcome: Optional[Union[MergeCompleted, MergeFailed]] = None
        try:
            async with Keepalive(self.keepalive_interval, self._keepalive_sleep) as keepalive:
                self.keepalive = keepalive
                futures = [self.pool.fetch(s.url, i, job.headers, byte_range=s.byte_range)
                           for i, s in enumerate(job.segments)]
                buffers = await self._collect(job, futures)
            outcome = MergeCompleted(job.job_id, buffers)
            logger.info(f"Merge {job.job_id} finished: {outcome.total_bytes} bytes")
        except asyncio.CancelledError:
            outcome = MergeFailed(job.job_id, PoolCancelledError("Merge cancelled"), cancelled=True)
            raise
        except Exception as e:
            logger.error(f"Merge {job.job_id} failed: {e}")
            outcome = MergeFailed(job.job_id, e)
        finally:
            if not isinstance(outcome, MergeCompleted):
                for future in futures:
                    future.cancel()
                self.pool.cancel()
            self.pool.reset()
            self.keepalive = None
            self._active = None
            job._finish(outcome or MergeFailed(job.job_id, PoolCancelledError("Merge aborted"), cancelled=True))

    async def _collect(self, job: MergeJob, futures: List[asyncio.Future]) -> List[bytes]:
        buffers: List[Optional[bytes]] = [None] * job.total
        index_of = {future: i for i, future in enumerate(futures)}
        pending = set(futures)
        last_progress = None

        job._emit(MergeProgress(job.job_id, 0, job.total))
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for future in done:
                buffers[index_of[future]] = future.result()
                job.completed += 1

            now = self.clock()
            if job.completed == job.total or last_progress is None or now - last_progress >= self.progress_interval:
                last_progress = now
                job._emit(MergeProgress(job.job_id, job.completed, job.total))
        return buffers
