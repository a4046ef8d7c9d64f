"""Exception types raised by the resolver and retrieval engine."""

from typing import List, Optional

from .models import PersonaFailure


class VidSolveError(Exception):
    """Base class for all vidsolve errors."""


class TransformExtractionError(VidSolveError):
    """A transformation function could not be located in a player bundle."""

    def __init__(self, bundle_fingerprint: str, kind: str, message: str = ""):
        self.bundle_fingerprint = bundle_fingerprint
        self.kind = kind
        self.message = message or f"{kind} transform not found in bundle {bundle_fingerprint}"
        super().__init__(self.message)


class SandboxEvalError(VidSolveError):
    """One input (or, with index None, a whole batch) failed to transform."""

    def __init__(self, kind: str, message: str, index: Optional[int] = None):
        self.kind = kind
        self.index = index
        self.message = message
        where = "batch" if index is None else f"input {index}"
        super().__init__(f"{kind} eval failed for {where}: {message}")


class SandboxCompileError(SandboxEvalError):
    """Transformation code could not be compiled; reported once per batch."""

    def __init__(self, kind: str, message: str):
        super().__init__(kind, message)


class BundleFetchError(VidSolveError):
    """The player bundle could not be downloaded."""

    def __init__(self, url: str, message: str):
        self.url = url
        self.message = message
        super().__init__(f"Failed to load player bundle {url}: {message}")


class PersonaUnplayableError(VidSolveError):
    """A persona refused to serve the content."""

    def __init__(self, persona_id: str, status: str, reason: str = ""):
        self.persona_id = persona_id
        self.status = status
        self.reason = reason
        super().__init__(f"{persona_id}: {status}" + (f" ({reason})" if reason else ""))

    @property
    def is_restriction(self) -> bool:
        return self.status in ("LOGIN_REQUIRED", "UNPLAYABLE", "AGE_CHECK_REQUIRED")


class ContentUnplayableError(VidSolveError):
    """Every persona failed; carries the per-persona reason chain."""

    def __init__(self, video_id: str, failures: List[PersonaFailure]):
        self.video_id = video_id
        self.failures = list(failures)
        chain = "; ".join(str(f) for f in self.failures) or "no personas configured"
        super().__init__(f"Could not resolve formats for {video_id}: {chain}")


class SegmentFetchError(VidSolveError):
    """A segment failed terminally."""

    def __init__(self, index: int, message: str, status_code: Optional[int] = None, retries: int = 0):
        self.index = index
        self.status_code = status_code
        self.retries = retries
        self.message = message
        super().__init__(f"Segment {index}: {message}")


class TransientFetchError(VidSolveError):
    """A retryable segment failure (5xx, network, timeout, ad response)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


class PoolCancelledError(VidSolveError):
    """The segment pool was cancelled before the task finished."""

    def __init__(self, message: str = "Pool cancelled"):
        super().__init__(message)


class PoolBusyError(VidSolveError):
    """A merge job is already running."""

    def __init__(self, active_job_id: str):
        self.active_job_id = active_job_id
        super().__init__(f"A merge is already in progress: {active_job_id}")
