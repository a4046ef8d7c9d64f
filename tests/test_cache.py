from vidsolve.core.cache import FormatCache
from vidsolve.core.models import ResolvedFormat, VideoMetadata


def video(expires_at, video_id="abc", persona_id="android_vr"):
    fmt = ResolvedFormat(itag=18, url="https://h/v?expire=1", mime_type="video/mp4", codecs="avc1",
                         quality_label="360p", width=640, height=360, fps=30, bitrate=500000,
                         audio_bitrate=500000, content_length=None, persona_id=persona_id,
                         expires_at=expires_at)
    return VideoMetadata(video_id=video_id, title="t", author="a", duration=1, thumbnail_url="",
                         formats=[fmt], persona_id=persona_id)


def test_entry_never_served_past_expiry():
    now = [1000.0]
    cache = FormatCache(safety_margin=60, clock=lambda: now[0])
    cache.put(video(expires_at=2000.0))
    assert cache.get("abc", "android_vr") is not None

    now[0] = 1939.0
    assert cache.get("abc", "android_vr") is not None
    now[0] = 1940.0
    assert cache.get("abc", "android_vr") is None
    assert len(cache) == 0


def test_already_expired_video_not_stored():
    cache = FormatCache(clock=lambda: 5000.0)
    assert cache.put(video(expires_at=5030.0)) is None
    assert len(cache) == 0


def test_default_ttl_without_url_expiry():
    cache = FormatCache(default_ttl=100, clock=lambda: 0.0)
    entry = cache.put(video(expires_at=None))
    assert entry.expires_at == 100


def test_keyed_by_persona_and_lru():
    cache = FormatCache(max_entries=2, clock=lambda: 0.0)
    cache.put(video(10000, "one"))
    cache.put(video(10000, "two"))
    cache.get("one", "android_vr")
    cache.put(video(10000, "three"))
    assert cache.get("two", "android_vr") is None
    assert cache.get("one", "android_vr") is not None
    assert cache.get("one", "web") is None


def test_invalidate():
    cache = FormatCache(clock=lambda: 0.0)
    cache.put(video(10000, "one"))
    cache.put(video(10000, "one", persona_id="web"))
    cache.put(video(10000, "two"))
    cache.invalidate("one")
    assert len(cache) == 1
    cache.invalidate()
    assert len(cache) == 0
