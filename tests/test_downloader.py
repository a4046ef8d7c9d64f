import asyncio
from collections import Counter

import httpx
import pytest

from vidsolve.core.downloader import SegmentFetchPool, looks_like_ad
from vidsolve.core.errors import PoolCancelledError, SegmentFetchError

BASE = "https://cdn.example.com/seg"


def segment_urls(count):
    return [f"{BASE}/{i}.ts" for i in range(count)]


def index_of(request):
    return int(request.url.path.rsplit("/", 1)[-1].split(".")[0])


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def make_pool(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("sleep", RecordingSleep())
    return SegmentFetchPool(client=client, **kwargs)


def test_concurrency_never_exceeded():
    inflight = 0
    peak = 0

    async def handler(request):
        nonlocal inflight, peak
        inflight += 1
        peak = max(peak, inflight)
        await asyncio.sleep(0.01)
        inflight -= 1
        return httpx.Response(200, content=b"x")

    async def run():
        pool = make_pool(handler, concurrency=3)
        futures = [pool.fetch(url, i) for i, url in enumerate(segment_urls(12))]
        assert pool.stats()["active"] == 3
        assert pool.stats()["queued"] == 9
        await asyncio.gather(*futures)
        return pool.stats()

    stats = asyncio.run(run())
    assert peak == 3
    assert stats == {"active": 0, "queued": 0, "completed": 12, "failed": 0}


def test_retry_delays_grow_exponentially():
    attempts = Counter()

    def handler(request):
        attempts[index_of(request)] += 1
        if attempts[index_of(request)] <= 3:
            return httpx.Response(503)
        return httpx.Response(200, content=b"ok")

    sleep = RecordingSleep()

    async def run():
        pool = make_pool(handler, max_retries=3, backoff_base=0.5, sleep=sleep)
        return await pool.fetch(f"{BASE}/0.ts", 0)

    assert asyncio.run(run()) == b"ok"
    assert sleep.delays == [0.5, 1.0, 2.0]
    assert attempts[0] == 4


def test_ten_segments_with_one_flaky():
    attempts = Counter()

    def handler(request):
        index = index_of(request)
        attempts[index] += 1
        if index == 7 and attempts[index] <= 2:
            return httpx.Response(503)
        return httpx.Response(200, content=f"segment-{index}".encode())

    sleep = RecordingSleep()

    async def run():
        pool = make_pool(handler, concurrency=4, max_retries=3, sleep=sleep)
        futures = [pool.fetch(url, i) for i, url in enumerate(segment_urls(10))]
        return await asyncio.gather(*futures)

    buffers = asyncio.run(run())
    assert buffers == [f"segment-{i}".encode() for i in range(10)]
    assert attempts[7] == 3
    assert len(sleep.delays) == 2
    assert all(attempts[i] == 1 for i in range(10) if i != 7)


def test_retries_exhausted_names_index():
    def handler(request):
        return httpx.Response(502)

    async def run():
        pool = make_pool(handler, max_retries=2)
        with pytest.raises(SegmentFetchError) as exc_info:
            await pool.fetch(f"{BASE}/5.ts", 5)
        return pool, exc_info.value

    pool, error = asyncio.run(run())
    assert error.index == 5
    assert error.status_code == 502
    assert error.retries == 2
    assert pool.stats()["failed"] == 1


def test_client_error_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(403)

    sleep = RecordingSleep()

    async def run():
        pool = make_pool(handler, sleep=sleep)
        with pytest.raises(SegmentFetchError) as exc_info:
            await pool.fetch(f"{BASE}/2.ts", 2)
        return exc_info.value

    error = asyncio.run(run())
    assert error.status_code == 403
    assert error.retries == 0
    assert len(calls) == 1
    assert sleep.delays == []


def test_network_errors_and_ad_responses_are_retried():
    attempts = Counter()

    def handler(request):
        attempts["n"] += 1
        if attempts["n"] == 1:
            raise httpx.ConnectError("reset", request=request)
        if attempts["n"] == 2:
            return httpx.Response(200, content=b"<html>ad</html>", headers={"content-type": "text/html"})
        return httpx.Response(200, content=b"\x00\x00media", headers={"content-type": "video/mp4"})

    async def run():
        pool = make_pool(handler, max_retries=3)
        return await pool.fetch(f"{BASE}/0.ts", 0)

    assert asyncio.run(run()) == b"\x00\x00media"
    assert attempts["n"] == 3


def test_request_timeout_is_transient():
    async def handler(request):
        await asyncio.sleep(1)
        return httpx.Response(200, content=b"late")

    async def run():
        pool = make_pool(handler, max_retries=1, timeout=0.02)
        with pytest.raises(SegmentFetchError, match="timed out"):
            await pool.fetch(f"{BASE}/0.ts", 0)

    asyncio.run(run())


def test_requests_carry_no_cache_and_caller_headers():
    seen = []

    def handler(request):
        seen.append(request.headers)
        return httpx.Response(200, content=b"x")

    async def run():
        pool = make_pool(handler)
        await pool.fetch(f"{BASE}/0.ts", 0, headers={"Referer": "https://www.youtube.com/"})

    asyncio.run(run())
    assert seen[0]["Cache-Control"] == "no-cache"
    assert seen[0]["Referer"] == "https://www.youtube.com/"


def test_cancel_rejects_queued_synchronously():
    release = None

    async def handler(request):
        await release.wait()
        return httpx.Response(200, content=b"x")

    async def run():
        nonlocal release
        release = asyncio.Event()
        pool = make_pool(handler, concurrency=4)
        futures = [pool.fetch(url, i) for i, url in enumerate(segment_urls(7))]
        await asyncio.sleep(0)
        assert pool.stats()["active"] == 4
        assert pool.stats()["queued"] == 3

        pool.cancel()
        queued = futures[4:]
        assert all(f.done() for f in queued)
        assert all(isinstance(f.exception(), PoolCancelledError) for f in queued)
        assert str(queued[0].exception()) == "Pool cancelled"

        results = await asyncio.gather(*futures, return_exceptions=True)
        late = pool.fetch(f"{BASE}/9.ts", 9)
        return pool, results, late

    pool, results, late = asyncio.run(run())
    assert all(isinstance(r, PoolCancelledError) for r in results)
    assert pool.stats()["completed"] == 0
    assert isinstance(late.exception(), PoolCancelledError)


def test_reset_makes_pool_reusable():
    def handler(request):
        return httpx.Response(200, content=b"again")

    async def run():
        pool = make_pool(handler)
        pool.cancel()
        assert pool.aborted
        pool.reset()
        assert not pool.aborted
        data = await pool.fetch(f"{BASE}/0.ts", 0)
        return pool, data

    pool, data = asyncio.run(run())
    assert data == b"again"
    assert pool.stats() == {"active": 0, "queued": 0, "completed": 1, "failed": 0}


def test_looks_like_ad():
    assert looks_like_ad("text/html; charset=utf-8", b"anything")
    assert looks_like_ad("application/json", b'{"ad": true}')
    assert looks_like_ad("", b"<!DOCTYPE html><html>")
    assert not looks_like_ad("video/mp2t", b"\x47\x40\x00")
    assert not looks_like_ad("", b"segment-bytes")


def test_request_timeout_follows_pool_setting():
    seen = []

    def handler(request):
        seen.append(request.extensions["timeout"])
        return httpx.Response(200, content=b"x")

    async def run():
        pool = make_pool(handler, timeout=45.0)
        await pool.fetch(f"{BASE}/0.ts", 0)
        await pool.fetch(f"{BASE}/1.ts", 1, timeout=12.0)

    asyncio.run(run())
    assert seen[0]["read"] == 45.0
    assert seen[1]["read"] == 12.0
    assert seen[1]["connect"] == 12.0


def test_byte_range_sent_as_range_header():
    seen = []

    def handler(request):
        seen.append(request.headers.get("Range"))
        return httpx.Response(206, content=b"y" * 100)

    async def run():
        pool = make_pool(handler)
        ranged = await pool.fetch(f"{BASE}/0.ts", 0, byte_range=(500, 100))
        whole = await pool.fetch(f"{BASE}/1.ts", 1)
        return ranged, whole

    ranged, whole = asyncio.run(run())
    assert seen == ["bytes=500-599", None]
    assert ranged == b"y" * 100
