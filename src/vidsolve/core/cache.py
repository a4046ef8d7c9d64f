"""Expiring memoization of resolved formats."""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .models import ResolvedFormat, VideoMetadata

logger = logging.getLogger(__name__)


@dataclass
class FormatCacheEntry:
    video_id: str
    persona_id: str
    video: VideoMetadata
    expires_at: float


class FormatCache:
    """LRU cache of resolved videos keyed by (video id, persona id).

    Entries expire with the earliest token lifetime embedded in their URLs,
    less a safety margin, and are never served after that.
    """

    def __init__(self, max_entries: int = 64, default_ttl: float = 3600.0,
                 safety_margin: float = 60.0, clock: Callable[[], float] = time.time):
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self.safety_margin = safety_margin
        self.clock = clock
        self._entries: "OrderedDict[Tuple[str, str], FormatCacheEntry]" = OrderedDict()

    def __len__(self):
        return len(self._entries)

    def expiry_for(self, formats: List[ResolvedFormat]) -> float:
        expiries = [f.expires_at for f in formats if f.expires_at]
        if expiries:
            return min(expiries) - self.safety_margin
        return self.clock() + self.default_ttl

    def get(self, video_id: str, persona_id: str) -> Optional[VideoMetadata]:
        key = (video_id, persona_id)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self.clock() >= entry.expires_at:
            logger.debug(f"Format cache entry expired: {video_id}/{persona_id}")
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return entry.video

    def put(self, video: VideoMetadata) -> Optional[FormatCacheEntry]:
        expires_at = self.expiry_for(video.formats)
        if expires_at <= self.clock():
            return None
        entry = FormatCacheEntry(video.video_id, video.persona_id, video, expires_at)
        key = (video.video_id, video.persona_id)
        self._entries[key] = entry
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return entry

    def invalidate(self, video_id: Optional[str] = None):
        if video_id is None:
            self._entries.clear()
            return
        for key in [k for k in self._entries if k[0] == video_id]:
            del self._entries[key]
