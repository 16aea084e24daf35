"""
Artist rotation runner: picks the stalest artists, looks for their upcoming events and stores new ones
"""
import csv, sys, logging, asyncio
from pathlib import Path
from typing import List, Dict, Any, Optional

from duende.config import Settings, ConfigurationError, load_environment, configure_logging
from duende.scraper.condenser import PageFetcher
from duende.scraper.dedup import EventDeduplicator
from duende.scraper.discovery import ArtistDiscovery, DiscoverySummary
from duende.scraper.extractor import LLMExtractor
from duende.scraper.models import Artist
from duende.scraper.orchestrator import EventsOrchestrator, RunSummary
from duende.scraper.queue import open_queue, QueueError
from duende.scraper.rotation import RotationScheduler
from duende.scraper.search import GoogleSearchClient
from duende.scraper.store import open_store, StoreError

logger = logging.getLogger(__name__)


async def _close_all(*closers):
    for closer in closers:
        if closer is None:
            continue
        try:
            await closer.close()
        except Exception as cleanup_error:
            logger.error(f"Error closing {type(closer).__name__}: {cleanup_error}")


class ArtistScheduler:
    def __init__(self, settings: Settings, store_factory=open_store, queue_factory=open_queue):
        self.settings = settings
        self.store_factory = store_factory
        self.queue_factory = queue_factory

    def connect_store(self):
        self.settings.require(search=False, extraction=False)
        return self.store_factory(self.settings)

    # --------- Collaborators ----------
    def _search_client(self) -> GoogleSearchClient:
        s = self.settings
        return GoogleSearchClient(s.google_api_key, s.google_cx, timeout=s.request_timeout)

    def _fetcher(self) -> PageFetcher:
        return PageFetcher(timeout=self.settings.request_timeout, cache_dir=self.settings.html_cache_dir)

    def _extractor(self) -> LLMExtractor:
        s = self.settings
        return LLMExtractor(
            api_key=s.openai_api_key,
            model=s.openai_model,
            timeout=s.request_timeout * 4,
            rate_limit_retries=s.extraction_retries,
            rate_limit_delay=s.extraction_retry_delay,
        )

    async def _run_orchestrator(self, action: str, search: bool, extraction: bool) -> RunSummary:
        s = self.settings.require(search=search, extraction=extraction)
        store = self.store_factory(s)
        queue = search_client = fetcher = None
        try:
            queue = self.queue_factory(s)
            if search:
                search_client = self._search_client()
            extractor = discovery = None
            if extraction:
                fetcher = self._fetcher()
                extractor = self._extractor()
                if s.discover_from_events:
                    discovery = ArtistDiscovery(store, status=s.discovery_status, today=s.today)

            orchestrator = EventsOrchestrator(
                RotationScheduler(store, batch_size=s.batch_size, status=s.status_filter),
                EventDeduplicator(store, today=s.today),
                search_client, fetcher, extractor, queue,
                concurrency=s.fetch_concurrency,
                results_per_query=s.results_per_query,
                today=s.today,
                discovery=discovery,
            )
            logger.info(f"[RUN] Starting {action}")
            return await getattr(orchestrator, action)()
        finally:
            await _close_all(search_client, fetcher, queue)
            store.close()

    async def run(self) -> RunSummary:
        return await self._run_orchestrator("run", search=True, extraction=True)

    async def produce(self) -> RunSummary:
        return await self._run_orchestrator("produce", search=True, extraction=False)

    async def consume(self) -> RunSummary:
        return await self._run_orchestrator("consume", search=False, extraction=True)

    async def discover(self) -> DiscoverySummary:
        """Scout the web for flamenco artists not tracked yet; they are stored for review."""
        s = self.settings.require(search=True, extraction=True)
        store = self.store_factory(s)
        search_client = fetcher = None
        try:
            search_client = self._search_client()
            fetcher = self._fetcher()
            discovery = ArtistDiscovery(
                store, search=search_client, fetcher=fetcher, extractor=self._extractor(),
                concurrency=s.fetch_concurrency,
                results_per_query=s.discovery_results_per_query,
                status=s.discovery_status,
                today=s.today,
            )
            logger.info("[DISCOVERY] Starting discovery")
            return await discovery.discover()
        finally:
            await _close_all(search_client, fetcher)
            store.close()

    # --------- Artist seeding ----------
    def add_artist(self, name: str, status: Optional[str] = None) -> Optional[Artist]:
        store = self.connect_store()
        try:
            artist = store.add_artist(name, status=status)
        finally:
            store.close()
        if artist:
            logger.info(f"Added artist: {artist.name}")
        else:
            logger.info(f"Artist already present or empty name, skipped: {name!r}")
        return artist

    def sync_artists_from_csv(self, csv_path: str, status: Optional[str] = None) -> int:
        """Add every artist named in the CSV's "name" column; existing names are skipped."""
        path = Path(csv_path)
        if not path.exists():
            raise ConfigurationError(f"CSV file not found: {path}")
        logger.info(f"Syncing artists from {path}")

        added = 0
        store = self.connect_store()
        try:
            with open(path, newline="", encoding="utf-8") as f:
                for row in csv.DictReader(f):
                    name = (row.get("name") or row.get("artist") or "").strip()
                    if not name:
                        continue
                    if store.add_artist(name, status=(row.get("status") or "").strip() or status):
                        added += 1
        finally:
            store.close()
        logger.info(f"Artist sync complete: {added} new artist(s)")
        return added

    # --------- Read side ----------
    def list_artists(self) -> List[Dict[str, Any]]:
        store = self.connect_store()
        try:
            artists = store.list_artists()
        finally:
            store.close()
        return [
            {
                "id": str(a.id),
                "name": a.name,
                "status": a.status,
                "main_role": a.main_role,
                "last_processed_at": a.last_processed_at.isoformat() if a.last_processed_at else None,
            }
            for a in artists
        ]

    def upcoming_events(self, limit: int = 100) -> List[Dict[str, Any]]:
        store = self.connect_store()
        try:
            return store.upcoming_events(self.settings.today(), limit=limit)
        finally:
            store.close()


# -------------------- CLI Interface --------------------

async def main(argv=None) -> int:
    """Command line interface for the scheduler"""
    import argparse

    parser = argparse.ArgumentParser(description="Flamenco artist event scraper")
    parser.add_argument("--action", choices=["run", "produce", "consume", "discover", "sync-csv", "add-artist"],
                        default="run", help="Action to perform")
    parser.add_argument("--csv", default="data/artists.csv", help="Artists CSV for sync-csv (needs a 'name' column)")
    parser.add_argument("--name", help="Artist name for add-artist")
    parser.add_argument("--status", help="Status tag for new artists")
    args = parser.parse_args(argv)

    load_environment()
    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        configure_logging()
        logger.error(str(e))
        return 1
    configure_logging(settings.log_level)
    scheduler = ArtistScheduler(settings)

    try:
        if args.action == "sync-csv":
            added = scheduler.sync_artists_from_csv(args.csv, status=args.status)
            print(f"Artists synced from CSV: {added} added")

        elif args.action == "add-artist":
            if not args.name:
                print("ERROR: --name required for add-artist action")
                return 1
            artist = scheduler.add_artist(args.name, status=args.status)
            print(f"Added {artist.name}" if artist else f"{args.name} already exists")

        elif args.action == "discover":
            summary = await scheduler.discover()
            print(f"Discovery complete: {summary.message()}")

        else:
            summary = await getattr(scheduler, args.action)()
            print(f"Run complete: {summary.message()}")

    except (ConfigurationError, StoreError, QueueError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    return 0


def cli():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
