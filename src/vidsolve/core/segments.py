"""Segment list planning and ordered assembly of fetched segments."""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import m3u8

from .models import SegmentRef
from .signature import add_query_param

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 10 * 1024 * 1024
WRITE_SLICE = 1024 * 1024


def plan_range_segments(url: str, content_length: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[str]:
    """Split a progressive stream URL into ``range=start-end`` chunk URLs."""
    if content_length <= 0:
        return [url]
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    urls = []
    for start in range(0, content_length, chunk_size):
        end = min(start + chunk_size, content_length) - 1
        urls.append(add_query_param(url, "range", f"{start}-{end}"))
    return urls


def _byte_range(value: str, next_offset: int) -> Tuple[int, int]:
    # "length[@offset]"; without an offset the range follows the previous one
    length, _, offset = value.partition("@")
    return (int(offset) if offset else next_offset), int(length)


def hls_segments(text: str, uri: Optional[str] = None) -> List[SegmentRef]:
    """Segments of an HLS media playlist, init section first.

    Segments cut from a larger resource with ``#EXT-X-BYTERANGE`` carry an
    ``(offset, length)`` byte range.
    """
    playlist = m3u8.loads(text, uri=uri)
    if playlist.is_variant:
        raise ValueError("Expected a media playlist, got a master playlist")

    refs: List[SegmentRef] = []
    next_offset: Dict[str, int] = {}
    for segment in playlist.segments:
        if segment.key is not None and segment.key.method not in (None, "NONE"):
            raise ValueError(f"Encrypted HLS segments are not supported ({segment.key.method})")
        init = segment.init_section
        if init is not None:
            init_ref = SegmentRef(init.absolute_uri if uri else init.uri,
                                  _byte_range(init.byterange, 0) if init.byterange else None)
            if init_ref not in refs:
                refs.append(init_ref)

        url = segment.absolute_uri if uri else segment.uri
        byte_range = None
        if segment.byterange:
            byte_range = _byte_range(segment.byterange, next_offset.get(url, 0))
            next_offset[url] = byte_range[0] + byte_range[1]
        refs.append(SegmentRef(url, byte_range))
    return refs


def write_segments(buffers: Iterable[bytes], output_path: Path, expected_size: Optional[int] = None) -> int:
    """Write buffers to ``output_path`` in order and return the byte count."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    written = 0
    with open(output_path, 'wb') as outfile:
        for buffer in buffers:
            view = memoryview(buffer)
            for offset in range(0, len(view), WRITE_SLICE):
                outfile.write(view[offset:offset + WRITE_SLICE])
            written += len(view)

    # Integrity Check
    actual_size = output_path.stat().st_size
    if actual_size != written or (expected_size is not None and actual_size < expected_size):
        raise ValueError(f"Assembly incomplete: Expected {expected_size or written}, got {actual_size}")
    logger.info(f"Wrote {actual_size} bytes to {output_path}")
    return actual_size
