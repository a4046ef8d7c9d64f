"""Descrambling of n-parameters and cipher signatures in stream URLs."""

import asyncio
import hashlib
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol
from urllib.parse import parse_qsl, quote, urlencode, urlparse, urlunparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import BundleFetchError, TransformExtractionError, VidSolveError
from .extractor import extract_signature_timestamp, extract_transform
from .models import CIPHER, N_SIG, BundleTransforms, ResolvedFormat, StreamDescriptor, with_ratebypass

logger = logging.getLogger(__name__)

IFRAME_API_URL = "https://www.youtube.com/iframe_api"
BUNDLE_URL_TEMPLATE = "https://www.youtube.com/s/player/{version}/player_ias.vflset/en_US/base.js"
MIN_BUNDLE_SIZE = 1000

_PLAYER_PATH_RE = re.compile(r'/s/player/([\w-]+)/(.+)$')


class BundleSource(Protocol):
    async def fetch(self, url: str) -> str:
        ...

    async def locate(self) -> str:
        ...


class RequestsBundleSource:
    """Downloads player bundles over a retrying requests session."""

    def __init__(self, timeout: float = 30.0, headers: Optional[Dict[str, str]] = None):
        self.timeout = timeout
        self.session = requests.Session()
        retries = Retry(total=3, backoff_factor=0.5, status_forcelist=[500, 502, 503, 504])
        self.session.mount('https://', HTTPAdapter(max_retries=retries))
        self.session.mount('http://', HTTPAdapter(max_retries=retries))
        if headers:
            self.session.headers.update(headers)

    def _get_text(self, url: str, min_size: int = 0) -> str:
        try:
            resp = self.session.get(url, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise BundleFetchError(url, str(e)) from e
        text = resp.text
        if len(text) < min_size:
            raise BundleFetchError(url, f"Response too small ({len(text)} bytes)")
        return text

    async def fetch(self, url: str) -> str:
        return await asyncio.to_thread(self._get_text, url, MIN_BUNDLE_SIZE)

    async def locate(self) -> str:
        """Find the current bundle URL from the public iframe API script."""
        text = await asyncio.to_thread(self._get_text, IFRAME_API_URL)
        m = re.search(r'player\\?/([0-9a-zA-Z_-]{8,})\\?/', text)
        if not m:
            raise BundleFetchError(IFRAME_API_URL, "player version not found")
        return BUNDLE_URL_TEMPLATE.format(version=m.group(1))

    def close(self):
        self.session.close()


def is_url(ref: str) -> bool:
    return ref.startswith(("http://", "https://", "/"))


def bundle_fingerprint(ref: str) -> str:
    """Stable identifier of a bundle version, from its URL or as given."""
    if not is_url(ref):
        return ref
    path = urlparse(ref).path
    m = _PLAYER_PATH_RE.search(path)
    if not m:
        return hashlib.sha1(ref.encode()).hexdigest()[:16]
    version, variant = m.groups()
    if variant == "player_ias.vflset/en_US/base.js":
        return version
    return f"{version}-{hashlib.sha1(variant.encode()).hexdigest()[:8]}"


def absolute_bundle_url(ref: str) -> str:
    return "https://www.youtube.com" + ref if ref.startswith("/") else ref


def replace_query_param(url: str, name: str, value: str) -> str:
    parts = urlparse(url)
    query = [(k, value if k == name else v) for k, v in parse_qsl(parts.query, keep_blank_values=True)]
    return urlunparse(parts._replace(query=urlencode(query)))


def add_query_param(url: str, name: str, value: str) -> str:
    return url + ("&" if "?" in url else "?") + f"{name}={quote(value, safe='')}"


def n_result_invalid(challenge: str, result: str) -> bool:
    # a thrown exception inside the transform comes back as "<error text><challenge>"
    return result == challenge or (result.endswith(challenge) and len(result) > len(challenge))


class TransformCache:
    """Bundle fingerprint -> extracted transforms, LRU with a lifetime."""

    def __init__(self, max_entries: int = 3, ttl: float = 43200.0, clock: Callable[[], float] = time.time):
        self.max_entries = max_entries
        self.ttl = ttl
        self.clock = clock
        self._entries: "OrderedDict[str, BundleTransforms]" = OrderedDict()

    def __contains__(self, fingerprint):
        return self.get(fingerprint) is not None

    def __len__(self):
        return len(self._entries)

    def get(self, fingerprint: str) -> Optional[BundleTransforms]:
        entry = self._entries.get(fingerprint)
        if entry is None:
            return None
        if self.clock() >= entry.extracted_at + self.ttl:
            del self._entries[fingerprint]
            return None
        self._entries.move_to_end(fingerprint)
        return entry

    def put(self, transforms: BundleTransforms):
        self._entries[transforms.fingerprint] = transforms
        self._entries.move_to_end(transforms.fingerprint)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.info(f"Transform cache: evicted bundle {evicted}")
        if len(self._entries) > 1:
            logger.debug(f"Multiple bundle versions cached: {list(self._entries)}")


@dataclass
class SignatureResolution:
    formats: List[ResolvedFormat]
    excluded: List[StreamDescriptor] = field(default_factory=list)
    eval_errors: List[Exception] = field(default_factory=list)
    extraction_error: Optional[VidSolveError] = None


class SignatureResolver:
    """Applies a bundle's n-sig and cipher transforms to stream descriptors."""

    def __init__(self, evaluator, bundle_source: Optional[BundleSource] = None,
                 cache: Optional[TransformCache] = None):
        self.evaluator = evaluator
        self.bundle_source = bundle_source or RequestsBundleSource()
        self.cache = cache or TransformCache()

    async def load_transforms(self, bundle_ref: str) -> BundleTransforms:
        """Extract (once per fingerprint) both transforms from a bundle."""
        fingerprint = bundle_fingerprint(bundle_ref)
        cached = self.cache.get(fingerprint)
        if cached is not None:
            return cached
        if not is_url(bundle_ref):
            raise TransformExtractionError(fingerprint, "bundle", f"bundle {fingerprint} is not cached and has no URL")

        url = absolute_bundle_url(bundle_ref)
        logger.info(f"Loading player bundle: {url}")
        js = await self.bundle_source.fetch(url)
        transforms = self.extract(js, fingerprint)
        self.cache.put(transforms)
        return transforms

    def extract(self, js: str, fingerprint: str) -> BundleTransforms:
        found = {}
        errors = {}
        for kind in (N_SIG, CIPHER):
            try:
                found[kind] = extract_transform(js, kind, fingerprint)
            except TransformExtractionError as e:
                logger.warning(str(e))
                found[kind] = None
                errors[kind] = e
        transforms = BundleTransforms(
            fingerprint=fingerprint,
            n_sig=found[N_SIG],
            cipher=found[CIPHER],
            signature_timestamp=extract_signature_timestamp(js),
            extracted_at=self.cache.clock(),
            n_sig_error=errors.get(N_SIG),
            cipher_error=errors.get(CIPHER),
        )
        logger.info(
            f"Bundle {fingerprint}: n-sig {'found' if transforms.n_sig else 'missing'}, "
            f"cipher {'found' if transforms.cipher else 'missing'}, sts {transforms.signature_timestamp}"
        )
        return transforms

    async def signature_timestamp(self, bundle_ref: str) -> Optional[int]:
        return (await self.load_transforms(bundle_ref)).signature_timestamp

    async def resolve(self, bundle_ref: Optional[str], descriptors: List[StreamDescriptor],
                      persona_id: str = "") -> List[ResolvedFormat]:
        return (await self.resolve_detailed(bundle_ref, descriptors, persona_id)).formats

    async def resolve_detailed(self, bundle_ref: Optional[str], descriptors: List[StreamDescriptor],
                               persona_id: str = "") -> SignatureResolution:
        """Descramble what needs it; pass everything else through untouched."""
        for descriptor in descriptors:
            descriptor.resolve_error = None
        urls = {i: d.url for i, d in enumerate(descriptors)}
        resolution = SignatureResolution(formats=[])
        scrambled = [i for i, d in enumerate(descriptors) if d.is_scrambled]

        if scrambled:
            transforms = None
            try:
                if bundle_ref is None:
                    raise TransformExtractionError("unknown", "bundle", "no player bundle available")
                transforms = await self.load_transforms(bundle_ref)
            except (TransformExtractionError, BundleFetchError) as e:
                resolution.extraction_error = e
                for i in scrambled:
                    descriptors[i].resolve_error = e

            if transforms is not None:
                await self._apply_cipher(transforms, descriptors, urls, resolution)
                await self._apply_n_sig(transforms, descriptors, urls, resolution)

        for i, descriptor in enumerate(descriptors):
            if descriptor.resolve_error is not None or not urls[i]:
                resolution.excluded.append(descriptor)
                continue
            url = urls[i]
            if url != descriptor.url:
                url = with_ratebypass(url)
            resolution.formats.append(ResolvedFormat.from_descriptor(descriptor, url, persona_id))

        if resolution.excluded:
            logger.warning(f"{len(resolution.excluded)} of {len(descriptors)} formats could not be resolved")
        return resolution

    async def _apply_cipher(self, transforms, descriptors, urls, resolution):
        pending = [i for i, d in enumerate(descriptors) if d.cipher and d.resolve_error is None]
        if not pending:
            return
        if transforms.cipher is None:
            for i in pending:
                descriptors[i].resolve_error = transforms.cipher_error
            resolution.extraction_error = resolution.extraction_error or transforms.cipher_error
            return

        challenges = list(dict.fromkeys(descriptors[i].cipher for i in pending))
        response = await self.evaluator.evaluate(
            CIPHER, transforms.cipher.code, transforms.cipher.arg_name, challenges)
        resolution.eval_errors.extend(response.errors)
        failed: Dict[str, Exception] = {}
        for e in response.errors:
            index = getattr(e, "index", None)
            if index is None:
                failed.update((c, e) for c in challenges)
            else:
                failed[challenges[index]] = e
        solved = dict(zip(challenges, response.results))

        for i in pending:
            descriptor = descriptors[i]
            if descriptor.cipher in failed:
                # an unsolved signature never yields a fetchable URL
                descriptor.resolve_error = failed[descriptor.cipher]
                continue
            urls[i] = add_query_param(urls[i], descriptor.sig_param, solved[descriptor.cipher])

    async def _apply_n_sig(self, transforms, descriptors, urls, resolution):
        pending = {}
        for i, d in enumerate(descriptors):
            if d.resolve_error is None and urls[i]:
                n = dict(parse_qsl(urlparse(urls[i]).query)).get("n")
                if n:
                    pending[i] = n
        if not pending:
            return
        if transforms.n_sig is None:
            for i in pending:
                descriptors[i].resolve_error = transforms.n_sig_error
            resolution.extraction_error = resolution.extraction_error or transforms.n_sig_error
            return

        challenges = list(dict.fromkeys(pending.values()))
        response = await self.evaluator.evaluate(N_SIG, transforms.n_sig.code, None, challenges)
        resolution.eval_errors.extend(response.errors)
        solved = {}
        for challenge, result in zip(challenges, response.results):
            if n_result_invalid(challenge, result):
                continue
            solved[challenge] = result
        if len(solved) < len(challenges):
            logger.warning(
                f"N-sig transform left {len(challenges) - len(solved)} of {len(challenges)} values unchanged; "
                "downloads may be throttled")

        for i, n in pending.items():
            if n in solved:
                urls[i] = replace_query_param(urls[i], "n", solved[n])
