import asyncio

import httpx
import pytest

from vidsolve.core.downloader import SegmentFetchPool
from vidsolve.core.errors import PoolBusyError, SegmentFetchError
from vidsolve.core.merge import Keepalive, MergeCoordinator, MergeState
from vidsolve.core.models import MergeCompleted, MergeFailed, MergeProgress, SegmentRef

BASE = "https://cdn.example.com/seg"


def segment_urls(count):
    return [f"{BASE}/{i}.ts" for i in range(count)]


def index_of(request):
    return int(request.url.path.rsplit("/", 1)[-1].split(".")[0])


async def no_sleep(delay):
    pass


def make_coordinator(handler, concurrency=4, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    pool = SegmentFetchPool(concurrency=concurrency, max_retries=1, client=client, sleep=no_sleep)
    return MergeCoordinator(pool, **kwargs)


def test_buffers_delivered_in_index_order():
    async def handler(request):
        index = index_of(request)
        # later segments finish first
        await asyncio.sleep(0.001 * (10 - index))
        return httpx.Response(200, content=f"part-{index}".encode())

    async def run():
        coordinator = make_coordinator(handler)
        job = coordinator.start_merge("job-1", segment_urls(10))
        assert coordinator.state is MergeState.RUNNING
        assert coordinator.active_job_id == "job-1"
        return coordinator, await job.wait()

    coordinator, result = asyncio.run(run())
    assert isinstance(result, MergeCompleted)
    assert result.buffers == [f"part-{i}".encode() for i in range(10)]
    assert result.total_bytes == sum(len(f"part-{i}") for i in range(10))
    assert coordinator.state is MergeState.IDLE


def test_second_merge_while_running_is_rejected():
    release = None

    async def handler(request):
        await release.wait()
        return httpx.Response(200, content=b"x")

    async def run():
        nonlocal release
        release = asyncio.Event()
        coordinator = make_coordinator(handler)
        job = coordinator.start_merge("first", segment_urls(3))
        with pytest.raises(PoolBusyError) as exc_info:
            coordinator.start_merge("second", segment_urls(3))
        assert exc_info.value.active_job_id == "first"

        release.set()
        await job.wait()
        again = coordinator.start_merge("third", segment_urls(2))
        return await again.wait()

    assert isinstance(asyncio.run(run()), MergeCompleted)


def test_progress_events_then_completion():
    def handler(request):
        return httpx.Response(200, content=b"x")

    async def run():
        coordinator = make_coordinator(handler, progress_interval=0.0)
        job = coordinator.start_merge("job", segment_urls(5))
        return [event async for event in job]

    events = asyncio.run(run())
    progress = [e for e in events if isinstance(e, MergeProgress)]
    assert progress[0].completed == 0
    assert progress[-1].completed == 5
    assert progress[-1].percent == 100.0
    assert [p.completed for p in progress] == sorted(p.completed for p in progress)
    assert isinstance(events[-1], MergeCompleted)


def test_progress_is_rate_limited():
    async def handler(request):
        await asyncio.sleep(0.001 * index_of(request))
        return httpx.Response(200, content=b"x")

    async def run():
        coordinator = make_coordinator(handler, concurrency=8, progress_interval=60.0, clock=lambda: 5.0)
        job = coordinator.start_merge("job", segment_urls(8))
        return [event async for event in job]

    events = asyncio.run(run())
    progress = [e for e in events if isinstance(e, MergeProgress)]
    # the initial event, the first batch and the final count
    assert len(progress) <= 3
    assert progress[-1].completed == 8


def test_segment_failure_fails_job_and_frees_slot():
    def handler(request):
        if index_of(request) == 3:
            return httpx.Response(404)
        return httpx.Response(200, content=b"x")

    async def run():
        coordinator = make_coordinator(handler)
        job = coordinator.start_merge("broken", segment_urls(6))
        result = await job.wait()
        return coordinator, job, result

    coordinator, job, result = asyncio.run(run())
    assert isinstance(result, MergeFailed)
    assert not result.cancelled
    assert isinstance(result.error, SegmentFetchError)
    assert result.error.index == 3
    assert coordinator.state is MergeState.IDLE
    assert coordinator.keepalive is None
    assert not coordinator.pool.aborted
    assert coordinator.pool.stats()["active"] == 0


def test_cancel_propagates_to_pool():
    release = None

    async def handler(request):
        await release.wait()
        return httpx.Response(200, content=b"x")

    async def run():
        nonlocal release
        release = asyncio.Event()
        coordinator = make_coordinator(handler)
        job = coordinator.start_merge("job", segment_urls(8))
        await asyncio.sleep(0.01)
        assert coordinator.cancel("other-job") is False
        assert coordinator.cancel() is True
        result = await job.wait()
        return coordinator, job, result

    coordinator, job, result = asyncio.run(run())
    assert isinstance(result, MergeFailed)
    assert result.cancelled
    assert job.cancelled
    assert coordinator.state is MergeState.IDLE
    assert coordinator.pool.stats() == {"active": 0, "queued": 0, "completed": 0, "failed": 0}


def test_keepalive_pings_until_released():
    async def tick(delay):
        await asyncio.sleep(0)

    async def run():
        keepalive = Keepalive(interval=25.0, sleep=tick)
        async with keepalive:
            assert keepalive.active
            for _ in range(5):
                await asyncio.sleep(0)
        pings = keepalive.pings
        await asyncio.sleep(0)
        return keepalive, pings

    keepalive, pings = asyncio.run(run())
    assert pings > 0
    assert not keepalive.active
    assert keepalive.pings == pings


def test_empty_merge_completes():
    async def run():
        coordinator = make_coordinator(lambda request: httpx.Response(200))
        return await coordinator.start_merge("empty", []).wait()

    result = asyncio.run(run())
    assert isinstance(result, MergeCompleted)
    assert result.buffers == []


def test_byte_range_segments_request_their_slice():
    resource = bytes(range(256)) * 4

    def handler(request):
        start, end = request.headers["Range"].split("=")[1].split("-")
        return httpx.Response(206, content=resource[int(start):int(end) + 1],
                              headers={"content-type": "video/mp4"})

    async def run():
        coordinator = make_coordinator(handler)
        url = f"{BASE}/media.mp4"
        segments = [SegmentRef(url, (0, 100)), SegmentRef(url, (100, 400)), SegmentRef(url, (500, 524))]
        return await coordinator.start_merge("ranged", segments).wait()

    result = asyncio.run(run())
    assert isinstance(result, MergeCompleted)
    assert b"".join(result.buffers) == resource
