"""Command-line entrypoints for the Venom crawler."""
from __future__ import annotations

import argparse
import asyncio
import signal
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

try:
    import uvloop
except ImportError:  # pragma: no cover - uvloop optional on some platforms
    uvloop = None

import structlog

from venom.captioning.builtin import register_builtin_providers
from venom.captioning.captioner import Captioner
from venom.captioning.provider import ProviderRegistry
from venom.config import SEED_URLS, VenomSettings, ensure_valid, load_settings
from venom.errors import ConfigError, VenomError
from venom.fetch.renderer import PageRenderer
from venom.fetch.robots import RobotsGate
from venom.fetch.urls import normalize_url
from venom.observability.log import DEFAULT_LOGGING_CONFIG, configure_logging
from venom.orchestrator.engine import CrawlOrchestrator
from venom.storage.database import CaptureStore
from venom.storage.layout import DataLayout

LOGGER = structlog.get_logger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", type=Path, help="Path to a TOML config file")
    common.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    common.add_argument("--json-logs", action="store_true", help="Render log lines as JSON")

    parser = argparse.ArgumentParser(prog="venom", description="Web crawler with screenshot captioning")
    sub = parser.add_subparsers(dest="command", required=True)

    crawl = sub.add_parser("crawl", parents=[common], help="Crawl from seed URLs")
    crawl.add_argument("-u", "--urls", nargs="+", help="Seed URLs (defaults to the built-in list)")
    crawl.add_argument("-d", "--depth", type=int, help="Maximum crawl depth")
    crawl.add_argument("-c", "--concurrency", type=int, help="Concurrent page renders")
    crawl.add_argument("-r", "--rate-limit", type=int, help="Delay between requests in ms")
    crawl.add_argument("-m", "--max-urls", type=int, help="Stop after this many crawled pages")
    crawl.add_argument("--no-caption", action="store_true", help="Skip captioning during the crawl")
    crawl.add_argument("--no-robots", action="store_true", help="Ignore robots.txt")
    _add_provider_flags(crawl)

    caption = sub.add_parser("caption", parents=[common], help="Caption stored captures that have no caption yet")
    caption.add_argument("--limit", type=int, default=100, help="Maximum captures to caption")
    caption.add_argument("--concurrency", type=int, default=2, help="Concurrent captioning requests")
    _add_provider_flags(caption)

    single = sub.add_parser("single", parents=[common], help="Capture and caption a single URL")
    single.add_argument("url", help="URL to capture")
    single.add_argument("--no-caption", action="store_true", help="Skip captioning")
    _add_provider_flags(single)

    sub.add_parser("stats", parents=[common], help="Show job and capture statistics")
    sub.add_parser("providers", parents=[common], help="List captioning providers")
    return parser


def _add_provider_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-p", "--provider", help="Captioning provider name")
    parser.add_argument("--model", help="Captioning model")


def settings_from_args(args: argparse.Namespace) -> VenomSettings:
    """Merge the config file with CLI overrides; unset flags leave file values alone."""
    overrides: Dict[str, Dict[str, Any]] = {
        "crawler": {
            "max_depth": getattr(args, "depth", None),
            "concurrency": getattr(args, "concurrency", None) if args.command == "crawl" else None,
            "rate_limit": getattr(args, "rate_limit", None),
            "respect_robots_txt": False if getattr(args, "no_robots", False) else None,
        },
        "captioning": {
            "provider": getattr(args, "provider", None),
            "model": getattr(args, "model", None),
        },
    }
    return load_settings(args.config, overrides)


def build_registry() -> ProviderRegistry:
    return register_builtin_providers(ProviderRegistry())


def _install_signal_handlers(orchestrator: CrawlOrchestrator) -> None:
    loop = asyncio.get_running_loop()

    def _request_stop(signame: str) -> None:
        LOGGER.warning("shutdown_requested", signal=signame)
        orchestrator.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop, sig.name)
        except NotImplementedError:  # pragma: no cover - Windows event loops
            pass


def _build_orchestrator(settings: VenomSettings, *, with_captioner: bool) -> CrawlOrchestrator:
    layout = DataLayout(settings.storage.data_dir)
    store = CaptureStore(settings.storage.db_path)
    robots = RobotsGate(user_agent=settings.crawler.user_agent)
    renderer = PageRenderer(
        settings.crawler,
        layout,
        robots=robots,
        max_screenshot_size=settings.storage.max_screenshot_size,
    )
    captioner = Captioner(settings.captioning, build_registry(), layout) if with_captioner else None
    return CrawlOrchestrator(
        settings,
        store=store,
        layout=layout,
        renderer=renderer,
        captioner=captioner,
        robots=robots,
    )


async def run_crawl(args: argparse.Namespace, settings: VenomSettings) -> Dict[str, Any]:
    """Execute the crawl command end-to-end."""
    caption = not args.no_caption
    ensure_valid(settings, require_captioning=caption)
    orchestrator = _build_orchestrator(settings, with_captioner=caption)
    _install_signal_handlers(orchestrator)
    try:
        await orchestrator.start()
        await orchestrator.add_seeds(args.urls or SEED_URLS)
        stats = await orchestrator.crawl(max_urls=args.max_urls, caption_on_crawl=caption)
        queue = await orchestrator.queue_stats()
    finally:
        await orchestrator.close()
    return {"stats": stats.snapshot(), "queue": queue}


async def run_caption(args: argparse.Namespace, settings: VenomSettings) -> int:
    ensure_valid(settings, require_captioning=True)
    orchestrator = _build_orchestrator(settings, with_captioner=True)
    try:
        return await orchestrator.generate_captions(limit=args.limit, concurrency=args.concurrency)
    finally:
        await orchestrator.close()


async def run_single(args: argparse.Namespace, settings: VenomSettings) -> Optional[Dict[str, Any]]:
    caption = not args.no_caption
    ensure_valid(settings, require_captioning=caption)
    orchestrator = _build_orchestrator(settings, with_captioner=caption)
    try:
        await orchestrator.start()
        capture = await orchestrator.crawl_single(args.url, generate_caption=caption)
    finally:
        await orchestrator.close()
    if capture is None:
        return None
    summary: Dict[str, Any] = {
        "url": capture.url,
        "title": capture.html.title,
        "status": capture.status_code,
        "load_time_ms": capture.load_time_ms,
        "screenshot": capture.screenshot_path,
        "links": len(capture.html.links),
    }
    if capture.caption is not None:
        summary["page_type"] = capture.caption.page_type
        summary["caption"] = capture.caption.caption
    return summary


def collect_stats(settings: VenomSettings) -> Dict[str, Any]:
    layout = DataLayout(settings.storage.data_dir)
    store = CaptureStore(settings.storage.db_path)
    try:
        return {
            "jobs": store.job_stats(),
            "captures": store.capture_count(),
            "captions": store.caption_count(),
            "storage_mb": round(layout.storage_used() / (1024 * 1024), 2),
        }
    finally:
        store.close()


def format_providers(registry: ProviderRegistry) -> List[str]:
    lines = []
    for name, aliases in registry.aliases().items():
        suffix = f" (aliases: {', '.join(aliases)})" if aliases else ""
        lines.append(f"{name}{suffix}")
    return lines


def _print_mapping(title: str, payload: Dict[str, Any]) -> None:
    print(title)
    for key, value in payload.items():
        print(f"  {key}: {value}")


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    configure_logging(DEFAULT_LOGGING_CONFIG, verbose=args.verbose, json_output=args.json_logs)

    if args.command == "providers":
        print("Available providers:")
        for line in format_providers(build_registry()):
            print(f"  {line}")
        return

    if uvloop is not None:
        uvloop.install()

    try:
        settings = settings_from_args(args)
        if args.command == "crawl":
            result = asyncio.run(run_crawl(args, settings))
            _print_mapping("Crawl statistics:", result["stats"])
            _print_mapping("Queue:", result["queue"])
        elif args.command == "caption":
            count = asyncio.run(run_caption(args, settings))
            print(f"Captioned {count} capture(s)")
        elif args.command == "single":
            summary = asyncio.run(run_single(args, settings))
            if summary is None:
                print(f"Skipped {normalize_url(args.url)} (blocked by robots.txt)")
            else:
                _print_mapping("Capture:", summary)
        elif args.command == "stats":
            _print_mapping("Statistics:", collect_stats(settings))
    except ConfigError as exc:
        for error in exc.errors:
            LOGGER.error("config_invalid", error=error)
        raise SystemExit(1) from exc
    except VenomError as exc:
        LOGGER.error("command_failed", command=args.command, error=str(exc))
        raise SystemExit(1) from exc
    except Exception as exc:
        LOGGER.exception("command_crashed", command=args.command)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
