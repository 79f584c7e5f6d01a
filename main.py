#!/usr/bin/env python3
"""
Feed Polling Orchestrator

Runs the conditional fetcher over every feed in the catalog with a fixed
concurrency ceiling, recording one artifact per outcome. A slow or broken
origin only ever holds one slot; the run ends once every feed has produced a
verdict or a reported failure.

Supports a single polling run and a status report on the artifact store.
Scheduling runs is left to cron or whatever triggers this script.
"""

import argparse
import asyncio
import sys
import time
from asyncio import Semaphore, create_task, gather
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from aiohttp import ClientError

from artifacts import FEEDS_NAMESPACE, REDIRECTS_NAMESPACE, ArtifactStore, create_artifact_store
from config import PollerSettings, config, get_logger
from errors import ArtifactWriteError, FeedListError, FetchError
from fetcher import FeedFetcher
from models import FeedRecord, FetchOutcome, PollRunSummary, load_feeds
from telemetry import init_telemetry, trace_span

# Module-specific logger
logger = get_logger("orchestrator")
init_telemetry("feed-poller-orchestrator")


class FeedPollingOrchestrator:
    """Drives one polling run over a list of feeds."""

    def __init__(self, settings: PollerSettings, writer: ArtifactStore, fetcher=None) -> None:
        """Initialize the orchestrator.

        Args:
            settings: Limits and synthetic codes for the run.
            writer: Artifact store shared by every fetch.
            fetcher: Anything with an async ``check_feed(feed)``. If None, a
                FeedFetcher is opened for the duration of each run.
        """
        self.settings = settings
        self.writer = writer
        self.fetcher = fetcher

    @trace_span(
        "poll_feeds",
        tracer_name="orchestrator",
        attr_from_args=lambda self, feeds: {"poll.concurrency": self.settings.concurrency},
    )
    async def poll_feeds(self, feeds: Iterable[FeedRecord]) -> PollRunSummary:
        """Fetch every feed, at most ``settings.concurrency`` at a time."""
        feeds = list(feeds)
        summary = PollRunSummary(total=len(feeds))
        logger.info(f"Polling {len(feeds)} feeds with concurrency {self.settings.concurrency}")
        start_time = time.time()

        if self.fetcher is not None:
            await self._poll_all(self.fetcher, feeds, summary)
        else:
            async with FeedFetcher(self.settings, self.writer) as fetcher:
                await self._poll_all(fetcher, feeds, summary)

        elapsed = time.time() - start_time
        logger.info(
            f"Run complete in {elapsed:.1f}s: {summary.updated} updated, {summary.not_updated} not updated, "
            f"{summary.failed} failed, {summary.write_failures} artifact write failures"
        )
        return summary

    async def _poll_all(self, fetcher, feeds, summary: PollRunSummary) -> None:
        semaphore = Semaphore(self.settings.concurrency)

        async def poll_with_semaphore(feed: FeedRecord) -> None:
            async with semaphore:
                await self._poll_one(fetcher, feed, summary)

        tasks = [create_task(poll_with_semaphore(feed)) for feed in feeds]
        results = await gather(*tasks, return_exceptions=True)

        for feed, result in zip(feeds, results):
            if isinstance(result, BaseException):
                logger.error(f"Unexpected error polling feed [{feed.id}|{feed.url}]: {result!r}")
                summary.record_failure(feed.id)
                await self._record_download_failure(feed)

    async def _poll_one(self, fetcher, feed: FeedRecord, summary: PollRunSummary) -> None:
        try:
            result = await fetcher.check_feed(feed)
        except FetchError as e:
            logger.error(f"ERROR downloading: [{feed.url}], {e}")
            summary.record_failure(feed.id)
            await self._record_download_failure(feed)
            return

        summary.record(feed.id, result)
        if result.updated:
            logger.info(f"  Feed: [{feed.id}|{feed.title}|{feed.url}] is updated.")
        else:
            logger.info(f"  Feed: [{feed.id}|{feed.title}|{feed.url}] is NOT updated.")

    async def _record_download_failure(self, feed: FeedRecord) -> None:
        outcome = FetchOutcome.failure(feed.id, feed.url, self.settings.download_failure_code)
        try:
            await self.writer.write(outcome)
        except ArtifactWriteError as e:
            logger.error(f"Error writing download error feed file for feed {feed.id}: {e}")

    async def run_from_catalog(self, db_path: str) -> PollRunSummary:
        """Load the feed list and poll it.

        Raises:
            FeedListError: the catalog could not be read; nothing is fetched.
        """
        feeds = load_feeds(db_path)
        return await self.poll_feeds(feeds)


async def check_status(writer: ArtifactStore, db_path: str) -> dict:
    """Collect a status summary of the catalog and the artifact store."""
    logger.info("📊 Checking poller status")
    status = {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'checks': {},
    }

    catalog = Path(db_path)
    if catalog.is_file():
        try:
            status['checks']['catalog'] = {'status': 'ok', 'feeds': len(load_feeds(str(catalog)))}
        except FeedListError as e:
            status['checks']['catalog'] = {'status': 'error', 'message': str(e)}
    else:
        status['checks']['catalog'] = {'status': 'missing', 'message': f'{db_path} not found'}

    try:
        keys = {namespace: await writer.list_keys(namespace) for namespace in (FEEDS_NAMESPACE, REDIRECTS_NAMESPACE)}
    except (ClientError, OSError) as e:
        logger.error(f"Cannot list artifacts: {e}")
        status['checks']['artifacts'] = {'status': 'error', 'message': str(e)}
    else:
        status_codes = {}
        for key in keys[FEEDS_NAMESPACE]:
            code = key.rsplit('_', 1)[-1].removesuffix('.txt')
            status_codes[code] = status_codes.get(code, 0) + 1
        status['checks']['artifacts'] = {
            'status': 'ok',
            'feeds': len(keys[FEEDS_NAMESPACE]),
            'redirects': len(keys[REDIRECTS_NAMESPACE]),
            'by_status': dict(sorted(status_codes.items())),
        }

    all_ok = all(check.get('status') == 'ok' for check in status['checks'].values())
    status['overall_status'] = 'healthy' if all_ok else 'issues_detected'
    return status


async def run_status(db_path: str, artifact_dir: Optional[str] = None) -> dict:
    writer = create_artifact_store(config, base_dir=artifact_dir)
    try:
        return await check_status(writer, db_path)
    finally:
        await writer.close()


def print_status(status: dict) -> None:
    print("\n📊 Feed Poller Status")
    print(f"⏰ {status['timestamp']}")
    print(f"🏥 Overall: {status['overall_status'].upper()}")

    catalog = status['checks']['catalog']
    if catalog['status'] == 'ok':
        print(f"\n💾 Catalog: {catalog['feeds']} feeds")
    else:
        print(f"\n💾 Catalog: {catalog['status'].upper()} - {catalog.get('message', 'Unknown error')}")

    artifacts = status['checks']['artifacts']
    if artifacts['status'] != 'ok':
        print(f"\n📁 Artifacts: ERROR - {artifacts.get('message', 'Unknown error')}")
        return
    print("\n📁 Artifacts:")
    print(f"   📄 Feed outcomes: {artifacts['feeds']}")
    print(f"   ↪️  Redirect stubs: {artifacts['redirects']}")
    for code, count in artifacts['by_status'].items():
        print(f"      {code}: {count}")


async def run_poller(db_path: str, artifact_dir: Optional[str] = None, concurrency: Optional[int] = None) -> bool:
    """Single polling run. Returns False if the feed list could not be read."""
    settings = PollerSettings.from_config(config, concurrency=concurrency)
    logger.info(settings.user_agent)
    logger.info("-" * len(settings.user_agent))
    logger.debug(f"Configuration: {config.get_config_summary()}")

    writer = create_artifact_store(config, settings.size_exceeded_code, base_dir=artifact_dir)
    try:
        await writer.initialize()
        orchestrator = FeedPollingOrchestrator(settings, writer)
        await orchestrator.run_from_catalog(db_path)
        return True
    except FeedListError as e:
        logger.error(f"💀 {e}")
        return False
    except ArtifactWriteError as e:
        logger.error(f"💀 Artifact store unavailable: {e}")
        return False
    finally:
        await writer.close()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Conditional feed poller')
    parser.add_argument('mode', nargs='?', default='run', choices=['run', 'status'],
                        help='Operation mode')
    parser.add_argument('--database', type=str, default=config.FEED_DATABASE_PATH,
                        help='SQLite feed catalog to poll')
    parser.add_argument('--output-dir', type=str, default=None,
                        help='Directory for feed and redirect artifacts (file backend)')
    parser.add_argument('--concurrency', type=int, default=None,
                        help='Maximum number of feeds fetched at once')

    args = parser.parse_args()

    try:
        if args.mode == 'run':
            success = asyncio.run(run_poller(args.database, args.output_dir, args.concurrency))
            sys.exit(0 if success else 1)

        elif args.mode == 'status':
            status = asyncio.run(run_status(args.database, args.output_dir))
            print_status(status)

    except KeyboardInterrupt:
        logger.info("👋 Poller shutting down")


if __name__ == "__main__":
    main()
