#!/usr/bin/env python3
"""
Linkding <-> OPML converter command line.

Two subcommands drive the two directions:

  export  fetch bookmarks from Linkding, discover the feed each bookmarked
          page publishes (with a persistent discovery cache) and write an
          OPML subscription list
  import  read an OPML file, work out a web page for every feed entry and
          create or update the matching Linkding bookmarks

Exit status is 0 on success, 1 when any item failed (partial results are
still written) and 2 for configuration problems detected before any
network work starts.
"""

import argparse
import asyncio
import os
import sys
from typing import List, Optional

from cache import DiscoveryCache
from config import Config, configure_log_level, get_logger, mask_token, parse_tag_list
from errors import ConfigurationError, OPMLError
from fetcher import PageFetcher
from importer import ImportOptions, describe_error, parse_duplicate_policy
from linkding import LinkdingClient
from models import DiscoveryItem, ItemStatus, ProcessingStats
from opml import generate_opml, read_opml, write_opml
from processor import ExportOptions, process_bookmarks, process_import_items
from telemetry import init_telemetry, trace_span
from utils import validate_url

logger = get_logger("main")

EXIT_OK = 0
EXIT_ITEM_FAILURES = 1
EXIT_PRECONDITION = 2


class ConverterOrchestrator:
    """Runs one export or import with a validated configuration."""

    def __init__(self, settings: Config, quiet: bool = False) -> None:
        self.config = settings
        self.quiet = quiet

    def _echo(self, message: str = "") -> None:
        if not self.quiet:
            print(message)

    def validate_linkding(self, require_client: bool = True) -> None:
        """Fail fast when the Linkding connection settings are unusable.

        Raises:
            ConfigurationError: URL or token missing or malformed.
        """
        if not require_client:
            return
        if not self.config.LINKDING_URL:
            raise ConfigurationError("Linkding URL is required (--linkding-url or LINKDING_URL)")
        if not validate_url(self.config.LINKDING_URL):
            raise ConfigurationError(f"Linkding URL is not a valid http(s) URL: {self.config.LINKDING_URL}")
        if not self.config.LINKDING_TOKEN:
            raise ConfigurationError("Linkding API token is required (--linkding-token or LINKDING_TOKEN)")

    def _new_fetcher(self) -> PageFetcher:
        return PageFetcher(
            timeout=self.config.HTTP_TIMEOUT,
            user_agent=self.config.USER_AGENT,
            max_redirects=self.config.MAX_REDIRECTS,
        )

    def _new_client(self) -> LinkdingClient:
        return LinkdingClient(
            self.config.LINKDING_URL,
            self.config.LINKDING_TOKEN,
            timeout=self.config.LINKDING_TIMEOUT,
        )

    def _print_summary(self, heading: str, stats: ProcessingStats) -> None:
        self._echo()
        self._echo(heading)
        self._echo(stats.summary())

    @trace_span("run_export", tracer_name="main")
    async def run_export(self) -> int:
        cfg = self.config
        self.validate_linkding()
        self._echo(f"Exporting feeds from {cfg.LINKDING_URL} (token {mask_token(cfg.LINKDING_TOKEN)}) to {cfg.OUTPUT_PATH}")
        if cfg.FILTER_TAGS:
            self._echo(f"Filter tags: {', '.join(cfg.FILTER_TAGS)}")

        cache = DiscoveryCache(cfg.CACHE_FILE_PATH)
        cache.load()
        total, with_feed = cache.stats()
        logger.info(f"Loaded discovery cache {cfg.CACHE_FILE_PATH}: {total} entries, {with_feed} with feeds")

        options = ExportOptions(
            concurrency=cfg.CONCURRENCY,
            max_age_hours=cfg.CACHE_MAX_AGE_HOURS,
            user_agent=cfg.USER_AGENT,
            retry_attempts=cfg.RETRY_ATTEMPTS,
            retry_delay_base=cfg.RETRY_DELAY_BASE,
            save_failed_html=cfg.SAVE_FAILED_HTML,
            debug_output_dir=cfg.DEBUG_OUTPUT_DIR,
        )

        async with self._new_client() as client:
            bookmarks = await client.fetch_bookmarks(cfg.FILTER_TAGS)
        self._echo(f"Fetched {len(bookmarks)} bookmarks")

        async with self._new_fetcher() as fetcher:
            results, stats = await process_bookmarks(bookmarks, cache, fetcher, options)

        tree = generate_opml(results, cfg.OPML_TITLE)
        write_opml(tree, cfg.OUTPUT_PATH)

        found = sum(1 for result in results if result.is_successful)
        self._print_summary("Export summary:", stats)
        self._echo(f"Wrote {found} feeds to {cfg.OUTPUT_PATH}")
        if stats.failed:
            logger.warning(f"{stats.failed} of {stats.total} bookmarks have no discoverable feed")
            return EXIT_ITEM_FAILURES
        return EXIT_OK

    @trace_span("run_import", tracer_name="main")
    async def run_import(self, opml_path: str) -> int:
        cfg = self.config
        if not os.path.isfile(opml_path):
            raise ConfigurationError(f"OPML file does not exist: {opml_path}")
        duplicates = parse_duplicate_policy(cfg.DUPLICATE_POLICY)
        self.validate_linkding(require_client=not cfg.DRY_RUN)

        entries = read_opml(opml_path)
        items = [DiscoveryItem.from_feed_entry(entry) for entry in entries]
        self._echo(f"Found {len(items)} feed entries in {opml_path}")

        options = ImportOptions(
            duplicates=duplicates,
            tags=list(cfg.IMPORT_TAGS),
            dry_run=cfg.DRY_RUN,
            retry_attempts=cfg.RETRY_ATTEMPTS,
            retry_delay_base=cfg.RETRY_DELAY_BASE,
        )
        if cfg.DRY_RUN:
            self._echo("Dry run: no bookmarks will be created or updated")

        async with self._new_fetcher() as fetcher:
            if cfg.DRY_RUN:
                stats = await process_import_items(items, fetcher, None, options, cfg.CONCURRENCY)
            else:
                async with self._new_client() as client:
                    stats = await process_import_items(items, fetcher, client, options, cfg.CONCURRENCY)

        self._print_summary("Import summary:", stats)
        if stats.failed:
            for item in items:
                if item.status is ItemStatus.FAILED:
                    self._echo(f"  failed: {describe_error(item)}")
            return EXIT_ITEM_FAILURES
        return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="linkding-to-opml",
        description="Convert between Linkding bookmarks and OPML feed lists",
    )
    parser.add_argument("--config", type=str, help="YAML configuration file (default: ./linkding-to-opml.yaml)")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--verbose", "-v", action="store_true", help="Log progress at INFO level")
    verbosity.add_argument("--debug", action="store_true", help="Log everything at DEBUG level")
    verbosity.add_argument("--quiet", "-q", action="store_true", help="Suppress progress and summary output (warnings are still logged)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    export = subparsers.add_parser("export", help="Export Linkding bookmarks as an OPML feed list")
    export.add_argument("--tags", type=str, help="Comma-separated tags; only bookmarks with all of them are exported")
    export.add_argument("--output", "-o", type=str, help="OPML output file (default: feeds.opml)")
    export.add_argument("--cache", type=str, help="Discovery cache file (default: ./linkding-to-opml.json)")
    export.add_argument("--max-age", type=int, help="Cache max-age in hours (default: 720)")
    export.add_argument("--linkding-url", type=str, help="Linkding server URL")
    export.add_argument("--linkding-token", type=str, help="Linkding API token")
    export.add_argument("--linkding-timeout", type=float, help="Linkding API timeout in seconds (default: 30)")
    export.add_argument("--concurrency", "-c", type=int, help="Number of concurrent workers (default: 16)")
    export.add_argument("--retries", type=int, help="Attempts per network operation (default: 3)")

    importer = subparsers.add_parser("import", help="Import an OPML feed list as Linkding bookmarks")
    importer.add_argument("opml_file", help="OPML file to import")
    importer.add_argument("--dry-run", action="store_true", default=None, help="Log what would change without touching Linkding")
    importer.add_argument("--duplicates", type=str, help="What to do with existing bookmarks: skip or update (default: skip)")
    importer.add_argument("--tags", type=str, help="Comma-separated tags added to every imported bookmark")
    importer.add_argument("--linkding-url", type=str, help="Linkding server URL")
    importer.add_argument("--linkding-token", type=str, help="Linkding API token")
    importer.add_argument("--linkding-timeout", type=float, help="Linkding API timeout in seconds (default: 30)")
    importer.add_argument("--concurrency", "-c", type=int, help="Number of concurrent workers (default: 16)")
    importer.add_argument("--retries", type=int, help="Attempts per network operation (default: 3)")

    return parser


def _positive(name: str, value: Optional[int], minimum: int = 1) -> Optional[int]:
    if value is not None and value < minimum:
        raise ConfigurationError(f"--{name} must be at least {minimum}")
    return value


def _positive_timeout(value: Optional[float]) -> Optional[float]:
    if value is not None and value <= 0:
        raise ConfigurationError("--linkding-timeout must be greater than 0")
    return value


def apply_cli_overrides(settings: Config, args: argparse.Namespace) -> None:
    """Layer command-line flags over file and environment settings."""
    overrides = {
        "LINKDING_URL": getattr(args, "linkding_url", None),
        "LINKDING_TOKEN": getattr(args, "linkding_token", None),
        "LINKDING_TIMEOUT": _positive_timeout(getattr(args, "linkding_timeout", None)),
        "CONCURRENCY": _positive("concurrency", getattr(args, "concurrency", None)),
        "RETRY_ATTEMPTS": _positive("retries", getattr(args, "retries", None)),
    }
    tags = parse_tag_list(args.tags) if getattr(args, "tags", None) is not None else None
    if args.command == "export":
        overrides.update({
            "FILTER_TAGS": tags,
            "OUTPUT_PATH": args.output,
            "CACHE_FILE_PATH": args.cache,
            "CACHE_MAX_AGE_HOURS": _positive("max-age", args.max_age, 0),
        })
    else:
        overrides.update({
            "IMPORT_TAGS": tags,
            "DUPLICATE_POLICY": args.duplicates.strip().lower() if args.duplicates else None,
            "DRY_RUN": args.dry_run,
        })
    settings.apply_overrides(overrides)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_log_level(verbose=args.verbose, debug=args.debug)
    init_telemetry("linkding-opml")

    try:
        settings = Config(args.config)
        apply_cli_overrides(settings, args)
        logger.debug(f"Effective configuration: {settings.get_config_summary()}")
        orchestrator = ConverterOrchestrator(settings, quiet=args.quiet)
        if args.command == "export":
            return asyncio.run(orchestrator.run_export())
        return asyncio.run(orchestrator.run_import(args.opml_file))
    except (ConfigurationError, OPMLError) as e:
        logger.error(f"Configuration error: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_PRECONDITION
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        return EXIT_ITEM_FAILURES
    except Exception as e:
        logger.error(f"Run failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ITEM_FAILURES


if __name__ == "__main__":
    sys.exit(main())
