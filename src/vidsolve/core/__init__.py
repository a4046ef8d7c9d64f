"""Core functionality for VidSolve."""

from .models import (
    ClientPersona,
    PageObservation,
    StreamDescriptor,
    ResolvedFormat,
    VideoMetadata,
    PersonaFailure,
    MergeProgress,
    MergeCompleted,
    MergeFailed,
    SegmentRef,
)
from .errors import (
    VidSolveError,
    TransformExtractionError,
    SandboxEvalError,
    SandboxCompileError,
    BundleFetchError,
    PersonaUnplayableError,
    ContentUnplayableError,
    SegmentFetchError,
    PoolCancelledError,
    PoolBusyError,
)
from .sandbox import CodeSandbox
from .signature import SignatureResolver, RequestsBundleSource, TransformCache
from .cache import FormatCache
from .youtube_client import InnertubeClient, ClientPersonaResolver
from .downloader import SegmentFetchPool
from .merge import MergeCoordinator, MergeJob
from .segments import plan_range_segments, hls_segments, write_segments

__all__ = [
    "ClientPersona",
    "PageObservation",
    "StreamDescriptor",
    "ResolvedFormat",
    "VideoMetadata",
    "PersonaFailure",
    "MergeProgress",
    "MergeCompleted",
    "MergeFailed",
    "SegmentRef",
    "VidSolveError",
    "TransformExtractionError",
    "SandboxEvalError",
    "SandboxCompileError",
    "BundleFetchError",
    "PersonaUnplayableError",
    "ContentUnplayableError",
    "SegmentFetchError",
    "PoolCancelledError",
    "PoolBusyError",
    "CodeSandbox",
    "SignatureResolver",
    "RequestsBundleSource",
    "TransformCache",
    "FormatCache",
    "InnertubeClient",
    "ClientPersonaResolver",
    "SegmentFetchPool",
    "MergeCoordinator",
    "MergeJob",
    "plan_range_segments",
    "hls_segments",
    "write_segments",
]
