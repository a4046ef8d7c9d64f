"""Data models for personas, stream formats, transforms and merge jobs."""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, NamedTuple, Optional, Tuple
from urllib.parse import parse_qs, urlparse

N_SIG = "n-sig"
CIPHER = "cipher"


@dataclass(frozen=True)
class ClientPersona:
    """A simulated client identity used for player requests."""
    id: str
    display_name: str
    client: Dict[str, Any]   # innertube context.client fields
    client_id: int           # X-YouTube-Client-Name
    requires_cipher_solving: bool
    user_agent: Optional[str] = None
    embed_url: Optional[str] = None  # thirdParty.embedUrl context
    restriction_fallback: bool = False  # only tried after a playability restriction

    @property
    def client_name(self) -> str:
        return self.client.get("clientName", "")

    @property
    def client_version(self) -> str:
        return self.client.get("clientVersion", "")


@dataclass
class PageObservation:
    """Structured metadata handed over by a page observer. Any field may be missing."""
    video_id: str
    player_response: Optional[Dict[str, Any]] = None
    player_bundle_url: Optional[str] = None
    visitor_data: Optional[str] = None
    session_token: Optional[str] = None
    client_version: Optional[str] = None


@dataclass
class StreamDescriptor:
    """A raw format entry from a player response."""
    itag: int
    mime_type: str
    bitrate: int = 0
    width: int = 0
    height: int = 0
    fps: float = 0
    quality_label: str = ""
    audio_quality: str = ""
    average_bitrate: int = 0
    content_length: Optional[int] = None
    url: Optional[str] = None
    cipher: Optional[str] = None     # scrambled "s" value
    sig_param: str = "sig"           # query parameter the solved cipher goes into
    drm_families: List[str] = field(default_factory=list)
    resolve_error: Optional[Exception] = None

    @classmethod
    def from_player_format(cls, fmt: Dict[str, Any]) -> "StreamDescriptor":
        url = fmt.get("url")
        cipher = None
        sig_param = "sig"
        protected = fmt.get("signatureCipher") or fmt.get("cipher")
        if not url and protected:
            params = parse_qs(protected)
            url = params.get("url", [None])[0]
            cipher = params.get("s", [None])[0]
            sig_param = params.get("sp", ["sig"])[0]

        content_length = fmt.get("contentLength")
        return cls(
            itag=int(fmt.get("itag", 0)),
            mime_type=fmt.get("mimeType", ""),
            bitrate=fmt.get("bitrate") or 0,
            width=fmt.get("width") or 0,
            height=fmt.get("height") or 0,
            fps=fmt.get("fps") or 0,
            quality_label=fmt.get("qualityLabel") or fmt.get("quality") or "",
            audio_quality=fmt.get("audioQuality", ""),
            average_bitrate=fmt.get("averageBitrate") or 0,
            content_length=int(content_length) if content_length else None,
            url=url,
            cipher=cipher,
            sig_param=sig_param,
            drm_families=list(fmt.get("drmFamilies") or []),
        )

    @property
    def n_param(self) -> Optional[str]:
        if not self.url:
            return None
        values = parse_qs(urlparse(self.url).query).get("n")
        return values[0] if values else None

    @property
    def is_scrambled(self) -> bool:
        return bool(self.cipher) or bool(self.n_param)

    @property
    def codecs(self) -> str:
        m = re.search(r'codecs="([^"]+)"', self.mime_type)
        return m.group(1) if m else ""


@dataclass
class ResolvedFormat:
    """A format whose URL can be fetched without further transformation."""
    itag: int
    url: str
    mime_type: str
    codecs: str
    quality_label: str
    width: int
    height: int
    fps: float
    bitrate: int
    audio_bitrate: int
    content_length: Optional[int]
    persona_id: str
    expires_at: Optional[float] = None

    @property
    def is_video(self) -> bool:
        return self.mime_type.startswith("video/")

    @property
    def is_audio(self) -> bool:
        return self.mime_type.startswith("audio/")

    @property
    def is_muxed(self) -> bool:
        return self.is_video and "mp4a" in self.codecs

    @classmethod
    def from_descriptor(cls, descriptor: StreamDescriptor, url: str, persona_id: str) -> "ResolvedFormat":
        return cls(
            itag=descriptor.itag,
            url=url,
            mime_type=descriptor.mime_type,
            codecs=descriptor.codecs,
            quality_label=descriptor.quality_label,
            width=descriptor.width,
            height=descriptor.height,
            fps=descriptor.fps,
            bitrate=descriptor.bitrate,
            audio_bitrate=descriptor.average_bitrate or descriptor.bitrate,
            content_length=descriptor.content_length,
            persona_id=persona_id,
            expires_at=url_expiry(url),
        )


def with_ratebypass(url: str) -> str:
    if "ratebypass" in url:
        return url
    return url + ("&" if "?" in url else "?") + "ratebypass=yes"


def url_expiry(url: str) -> Optional[float]:
    """Return the provider token expiry embedded in a stream URL, if any."""
    values = parse_qs(urlparse(url).query).get("expire")
    try:
        return float(values[0]) if values else None
    except ValueError:
        return None


def sort_formats(formats: List[ResolvedFormat]) -> List[ResolvedFormat]:
    """Video formats first (height, fps, bitrate), then audio by bitrate."""
    def key(f: ResolvedFormat):
        if f.is_video:
            return (0, -f.height, -f.fps, -f.bitrate)
        return (1, -f.audio_bitrate, 0, 0)
    return sorted(formats, key=key)


@dataclass
class PersonaFailure:
    """Why one persona could not serve the content."""
    persona_id: str
    outcome: str   # "unplayable" or "error"
    reason: str

    def __str__(self):
        return f"{self.persona_id} [{self.outcome}]: {self.reason}"


@dataclass
class VideoMetadata:
    """Metadata and resolved formats for a single video."""
    video_id: str
    title: str
    author: str
    duration: int
    thumbnail_url: str
    formats: List[ResolvedFormat]
    persona_id: str
    failures: List[PersonaFailure] = field(default_factory=list)  # personas tried before this one


@dataclass(frozen=True)
class TransformFunction:
    """Transformation code extracted from a player bundle."""
    kind: str          # N_SIG or CIPHER
    code: str
    bundle_fingerprint: str
    arg_name: str = "a"


@dataclass
class BundleTransforms:
    """Everything extracted from one player bundle version."""
    fingerprint: str
    n_sig: Optional[TransformFunction]
    cipher: Optional[TransformFunction]
    signature_timestamp: Optional[int]
    extracted_at: float
    n_sig_error: Optional[Exception] = None
    cipher_error: Optional[Exception] = None


@dataclass
class EvaluationRequest:
    kind: str
    code: str
    inputs: List[str]
    arg_name: Optional[str] = None


@dataclass
class EvaluationResponse:
    results: List[str]
    errors: List[Exception] = field(default_factory=list)


@dataclass
class FetchTask:
    """A queued segment fetch."""
    url: str
    index: int
    headers: Dict[str, str] = field(default_factory=dict)
    timeout: float = 30.0
    retries: int = 0
    byte_range: Optional[Tuple[int, int]] = None   # (offset, length)

    @property
    def range_header(self) -> Optional[str]:
        if self.byte_range is None:
            return None
        offset, length = self.byte_range
        return f"bytes={offset}-{offset + length - 1}"


class SegmentRef(NamedTuple):
    """One piece of a merge: a URL, optionally narrowed to a byte range."""
    url: str
    byte_range: Optional[Tuple[int, int]] = None


@dataclass
class MergeProgress:
    job_id: str
    completed: int
    total: int

    @property
    def percent(self) -> float:
        return (self.completed / self.total) * 100 if self.total else 100.0


@dataclass
class MergeCompleted:
    job_id: str
    buffers: List[bytes]

    @property
    def total_bytes(self) -> int:
        return sum(len(b) for b in self.buffers)


@dataclass
class MergeFailed:
    job_id: str
    error: Exception
    cancelled: bool = False
