"""YouTube player requests and client-persona fallback."""

import enum
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from .cache import FormatCache
from .errors import (BundleFetchError, ContentUnplayableError, PersonaUnplayableError,
                     TransformExtractionError, VidSolveError)
from .models import ClientPersona, PageObservation, PersonaFailure, StreamDescriptor, VideoMetadata, sort_formats
from .personas import select_personas, validate_personas
from .signature import SignatureResolver

logger = logging.getLogger(__name__)

PLAYER_URL = "https://www.youtube.com/youtubei/v1/player?prettyPrint=false"
ORIGIN = "https://www.youtube.com"


class InnertubeClient:
    """Issues player requests under a given client persona."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 15.0):
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._client

    def build_body(self, persona: ClientPersona, video_id: str,
                   signature_timestamp: Optional[int] = None,
                   client_version: Optional[str] = None) -> Dict[str, Any]:
        client = dict(persona.client)
        client.update(hl="en", timeZone="UTC", utcOffsetMinutes=0)
        if client_version:
            client["clientVersion"] = client_version

        context: Dict[str, Any] = {"client": client}
        if persona.embed_url:
            context["thirdParty"] = {"embedUrl": persona.embed_url}

        playback: Dict[str, Any] = {"html5Preference": "HTML5_PREF_WANTS"}
        if persona.requires_cipher_solving and signature_timestamp:
            playback["signatureTimestamp"] = signature_timestamp

        return {
            "context": context,
            "videoId": video_id,
            "playbackContext": {"contentPlaybackContext": playback},
            "contentCheckOk": True,
            "racyCheckOk": True,
        }

    def build_headers(self, persona: ClientPersona, visitor_data: Optional[str] = None,
                      client_version: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "X-YouTube-Client-Name": str(persona.client_id),
            "X-YouTube-Client-Version": client_version or persona.client_version,
            "Origin": ORIGIN,
            "Referer": persona.embed_url or f"{ORIGIN}/",
        }
        if visitor_data:
            headers["X-Goog-Visitor-Id"] = visitor_data
        if persona.user_agent:
            headers["User-Agent"] = persona.user_agent
        return headers

    async def fetch_player(self, persona: ClientPersona, video_id: str,
                           visitor_data: Optional[str] = None,
                           signature_timestamp: Optional[int] = None,
                           client_version: Optional[str] = None) -> Dict[str, Any]:
        body = self.build_body(persona, video_id, signature_timestamp, client_version)
        headers = self.build_headers(persona, visitor_data, client_version)
        resp = await self._get_client().post(PLAYER_URL, json=body, headers=headers)
        resp.raise_for_status()
        return resp.json()

    async def aclose(self):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


def parse_player_response(persona_id: str, video_id: str,
                          data: Dict[str, Any]) -> Tuple[List[StreamDescriptor], Dict[str, Any]]:
    """Classify playability and return (descriptors, videoDetails).

    Raises PersonaUnplayableError for anything the persona cannot serve.
    """
    playability = data.get("playabilityStatus") or {}
    status = playability.get("status") or "UNKNOWN"
    if status != "OK":
        reason = playability.get("reason") or ""
        if status == "ERROR" and not reason:
            reason = "Video unavailable"
        raise PersonaUnplayableError(persona_id, status, reason)

    details = data.get("videoDetails") or {}
    returned_id = details.get("videoId")
    if returned_id and returned_id != video_id:
        raise PersonaUnplayableError(persona_id, "WRONG_VIDEO", f"got {returned_id}")

    streaming = data.get("streamingData") or {}
    if streaming.get("licenseInfos"):
        raise PersonaUnplayableError(persona_id, "DRM", "content is DRM protected")

    raw = (streaming.get("formats") or []) + (streaming.get("adaptiveFormats") or [])
    descriptors = [StreamDescriptor.from_player_format(f) for f in raw]
    clear = [d for d in descriptors if not d.drm_families]
    if descriptors and not clear:
        raise PersonaUnplayableError(persona_id, "DRM", "every format is DRM protected")
    clear = [d for d in clear if d.url]
    if not clear:
        raise PersonaUnplayableError(persona_id, "NO_FORMATS", "no streaming formats")
    return clear, details


class PersonaState(enum.Enum):
    NOT_TRIED = "not-tried"
    TRIED_OK = "ok"
    TRIED_UNPLAYABLE = "unplayable"
    TRIED_ERROR = "error"


class ClientPersonaResolver:
    """Tries each persona in order until one yields resolvable formats.

    Persona k+1 is only requested after persona k failed. A persona flagged
    as a restriction fallback is skipped unless an earlier one reported a
    playability restriction.
    """

    def __init__(self, innertube: InnertubeClient, signature_resolver: SignatureResolver,
                 personas: Optional[List[ClientPersona]] = None,
                 format_cache: Optional[FormatCache] = None,
                 bundle_locator: Optional[Callable[[], Awaitable[str]]] = None):
        self.innertube = innertube
        self.signature_resolver = signature_resolver
        self.personas = validate_personas(personas) if personas is not None else select_personas()
        self.format_cache = format_cache if format_cache is not None else FormatCache()
        self.bundle_locator = bundle_locator or signature_resolver.bundle_source.locate
        self.states: Dict[str, PersonaState] = {}

    async def resolve_formats(self, video_id: str, observation: Optional[PageObservation] = None):
        return (await self.resolve_video(video_id, observation)).formats

    async def resolve_video(self, video_id: str,
                            observation: Optional[PageObservation] = None) -> VideoMetadata:
        if observation is not None and observation.video_id != video_id:
            raise ValueError(f"Page observation is for {observation.video_id}, not {video_id}")
        observation = observation or PageObservation(video_id=video_id)
        self.states = {p.id: PersonaState.NOT_TRIED for p in self.personas}

        for persona in self.personas:
            cached = self.format_cache.get(video_id, persona.id)
            if cached is not None:
                logger.info(f"Using cached formats for {video_id} ({persona.id})")
                return cached

        failures: List[PersonaFailure] = []
        restricted = False
        bundle_url = observation.player_bundle_url

        for persona in self.personas:
            if persona.restriction_fallback and not restricted:
                logger.debug(f"Skipping {persona.id}: no restriction reported")
                continue

            logger.info(f"Trying persona {persona.id} for {video_id}")
            try:
                if persona.requires_cipher_solving and not bundle_url:
                    bundle_url = await self.bundle_locator()
                video, bundle_url = await self._try_persona(persona, observation, bundle_url)
            except PersonaUnplayableError as e:
                self.states[persona.id] = PersonaState.TRIED_UNPLAYABLE
                restricted = restricted or e.is_restriction
                failures.append(PersonaFailure(persona.id, "unplayable",
                                               e.status + (f" ({e.reason})" if e.reason else "")))
                logger.warning(f"Persona {persona.id} unplayable: {e}")
                continue
            except (VidSolveError, httpx.HTTPError, ValueError) as e:
                self.states[persona.id] = PersonaState.TRIED_ERROR
                failures.append(PersonaFailure(persona.id, "error", str(e) or type(e).__name__))
                logger.warning(f"Persona {persona.id} failed: {e}")
                continue

            self.states[persona.id] = PersonaState.TRIED_OK
            video.failures = failures
            self.format_cache.put(video)
            logger.info(f"Resolved {len(video.formats)} formats for {video_id} via {persona.id}")
            return video

        raise ContentUnplayableError(video_id, failures)

    async def _try_persona(self, persona: ClientPersona, observation: PageObservation,
                           bundle_url: Optional[str]) -> Tuple[VideoMetadata, Optional[str]]:
        video_id = observation.video_id
        is_web = persona.client_name == "WEB"

        signature_timestamp = None
        if persona.requires_cipher_solving:
            signature_timestamp = await self.signature_resolver.signature_timestamp(bundle_url)

        if is_web and observation.player_response:
            data = observation.player_response
        else:
            data = await self.innertube.fetch_player(
                persona, video_id,
                visitor_data=observation.visitor_data,
                signature_timestamp=signature_timestamp,
                client_version=observation.client_version if is_web else None,
            )

        descriptors, details = parse_player_response(persona.id, video_id, data)

        if not bundle_url and any(d.is_scrambled for d in descriptors):
            try:
                bundle_url = await self.bundle_locator()
            except BundleFetchError as e:
                logger.warning(f"Player bundle unavailable: {e}")

        resolution = await self.signature_resolver.resolve_detailed(bundle_url, descriptors, persona.id)
        if persona.requires_cipher_solving and isinstance(resolution.extraction_error, TransformExtractionError):
            raise resolution.extraction_error
        if not resolution.formats:
            reason = str(resolution.extraction_error) if resolution.extraction_error else "no resolvable formats"
            raise PersonaUnplayableError(persona.id, "NO_FORMATS", reason)

        thumbnails = (details.get("thumbnail") or {}).get("thumbnails") or [{}]
        video = VideoMetadata(
            video_id=video_id,
            title=details.get("title", "Unknown Title"),
            author=details.get("author", ""),
            duration=int(details.get("lengthSeconds") or 0),
            thumbnail_url=thumbnails[-1].get("url", ""),
            formats=sort_formats(resolution.formats),
            persona_id=persona.id,
        )
        return video, bundle_url
