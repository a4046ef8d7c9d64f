"""Main entry point for VidSolve."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .core.cache import FormatCache
from .core.downloader import SegmentFetchPool
from .core.errors import ContentUnplayableError, VidSolveError
from .core.merge import MergeCoordinator
from .core.models import MergeCompleted, MergeFailed, MergeProgress, ResolvedFormat
from .core.personas import PERSONAS, select_personas
from .core.sandbox import CodeSandbox
from .core.segments import plan_range_segments, write_segments
from .core.signature import RequestsBundleSource, SignatureResolver, TransformCache
from .core.youtube_client import ClientPersonaResolver, InnertubeClient
from .utils import Config, log_error
from .version import __version__

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    # Setup logging to console
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


class Session:
    """Wires the resolver stack together from a Config."""

    def __init__(self, config: Config):
        self.config = config
        self.bundle_source = RequestsBundleSource()
        self.innertube = InnertubeClient()
        self.sandbox = CodeSandbox(timeout=config.eval_timeout)
        self.signature_resolver = SignatureResolver(
            self.sandbox,
            self.bundle_source,
            TransformCache(max_entries=config.transform_cache_size),
        )
        self.resolver = ClientPersonaResolver(
            self.innertube,
            self.signature_resolver,
            personas=select_personas(config.persona_order),
            format_cache=FormatCache(max_entries=config.format_cache_size),
        )

    def create_pool(self) -> SegmentFetchPool:
        return SegmentFetchPool(
            concurrency=self.config.concurrency,
            max_retries=self.config.max_retries,
            timeout=self.config.segment_timeout,
            backoff_base=self.config.backoff_base,
            backoff_cap=self.config.backoff_cap,
        )

    async def close(self):
        await self.innertube.aclose()
        self.bundle_source.close()
        self.sandbox.close()


def describe_format(fmt: ResolvedFormat) -> str:
    if fmt.is_video:
        quality = fmt.quality_label or f"{fmt.height}p"
        kind = "video+audio" if fmt.is_muxed else "video"
    else:
        quality = f"{fmt.audio_bitrate // 1000}k"
        kind = "audio"
    size = f"{fmt.content_length / (1024 * 1024):.1f} MiB" if fmt.content_length else "?"
    return f"{fmt.itag:>4}  {kind:<11} {quality:<8} {fmt.codecs:<28} {size}"


def default_output(config: Config, video_id: str, fmt: ResolvedFormat) -> Path:
    ext = fmt.mime_type.split(";")[0].split("/")[-1] or "bin"
    return config.download_path / f"{video_id}-{fmt.itag}.{ext}"


async def run_formats(session: Session, video_id: str):
    video = await session.resolver.resolve_video(video_id)
    print(f"{video.title} ({video.duration}s) via {video.persona_id}")
    for failure in video.failures:
        print(f"  skipped {failure}")
    for fmt in video.formats:
        print(describe_format(fmt))


async def run_fetch(session: Session, video_id: str, itag: int, output: Optional[Path], chunk_size: int):
    video = await session.resolver.resolve_video(video_id)
    fmt = next((f for f in video.formats if f.itag == itag), None)
    if fmt is None:
        available = ", ".join(str(f.itag) for f in video.formats)
        raise VidSolveError(f"Format {itag} not available for {video_id} (available: {available})")

    output = output or default_output(session.config, video_id, fmt)
    urls = plan_range_segments(fmt.url, fmt.content_length or 0, chunk_size)
    persona = PERSONAS.get(fmt.persona_id)
    headers = {"User-Agent": persona.user_agent} if persona and persona.user_agent else {}

    pool = session.create_pool()
    coordinator = MergeCoordinator(
        pool,
        keepalive_interval=session.config.keepalive_interval,
        progress_interval=session.config.progress_interval,
    )
    try:
        job = coordinator.start_merge(f"{video_id}-{itag}", urls, headers)
        async for event in job:
            if isinstance(event, MergeProgress):
                print(f"\r{event.completed}/{event.total} segments ({event.percent:.1f}%)", end="", flush=True)
            elif isinstance(event, MergeCompleted):
                print()
                size = write_segments(event.buffers, output, fmt.content_length)
                print(f"Saved {size} bytes to {output}")
            elif isinstance(event, MergeFailed):
                print()
                raise event.error
    finally:
        await pool.aclose()


async def run(args: argparse.Namespace, config: Config):
    session = Session(config)
    try:
        if args.command == "formats":
            await run_formats(session, args.video_id)
        else:
            await run_fetch(session, args.video_id, args.itag, args.output, args.chunk_size)
    finally:
        await session.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vidsolve", description="Resolve and fetch YouTube streams.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    parser.add_argument("--config", type=Path, help="settings file (default: ~/vidsolve_settings.json)")
    sub = parser.add_subparsers(dest="command", required=True)

    formats = sub.add_parser("formats", help="list resolved formats")
    formats.add_argument("video_id")

    fetch = sub.add_parser("fetch", help="download one format")
    fetch.add_argument("video_id")
    fetch.add_argument("--itag", type=int, required=True)
    fetch.add_argument("-o", "--output", type=Path)
    fetch.add_argument("--chunk-size", type=int, default=10 * 1024 * 1024)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    try:
        logger.info(f"Starting VidSolve v{__version__}")
        asyncio.run(run(args, Config(args.config)))
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except ContentUnplayableError as e:
        logger.error(str(e))
        for failure in e.failures:
            print(f"  {failure}", file=sys.stderr)
        return 2
    except Exception as e:
        logger.error(f"Fatal error in main(): {e}", exc_info=True)
        log_error("Fatal error in main()", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
