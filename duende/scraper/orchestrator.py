import time, asyncio, logging, traceback
from dataclasses import dataclass, asdict
from datetime import date
from typing import Dict, Any, Optional, List, Tuple

from duende.scraper.condenser import PageFetcher
from duende.scraper.dedup import EventDeduplicator
from duende.scraper.discovery import ArtistDiscovery
from duende.scraper.extractor import LLMExtractor, ExtractionError
from duende.scraper.models import Artist, EventCandidate, SearchResult, UrlTask
from duende.scraper.queue import TaskQueue
from duende.scraper.rotation import RotationScheduler
from duende.scraper.search import GoogleSearchClient
from duende.scraper.utils import normalize_key

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    artists_processed: int = 0
    urls_enqueued: int = 0
    urls_skipped: int = 0
    urls_processed: int = 0
    url_errors: int = 0
    candidates: int = 0
    events_inserted: int = 0
    artists_discovered: int = 0
    duration_ms: float = 0.0

    def message(self) -> str:
        msg = (f"{self.artists_processed} artist(s) processed, {self.urls_enqueued} URL(s) queued, "
               f"{self.urls_processed} URL(s) analysed ({self.url_errors} failed), "
               f"{self.events_inserted} new event(s) saved")
        if self.artists_discovered:
            msg += f", {self.artists_discovered} new artist(s) for review"
        return msg

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def mentions_artist(result: SearchResult, artist_name: str) -> bool:
    """True when the result's title or snippet names the artist."""
    needle = normalize_key(artist_name)
    return bool(needle) and needle in normalize_key(f"{result.title} {result.snippet}")


class EventsOrchestrator:
    def __init__(self, rotation: RotationScheduler, dedup: EventDeduplicator,
                 search: GoogleSearchClient, fetcher: PageFetcher, extractor: LLMExtractor,
                 queue: TaskQueue, concurrency: int = 5, results_per_query: int = 3,
                 dequeue_timeout: float = 1.0, today=None, discovery: Optional[ArtistDiscovery] = None):
        self.rotation = rotation
        self.dedup = dedup
        self.search = search
        self.fetcher = fetcher
        self.extractor = extractor
        self.queue = queue
        self.concurrency = concurrency
        self.semaphore = asyncio.Semaphore(concurrency)
        self.results_per_query = results_per_query
        self.dequeue_timeout = dequeue_timeout
        self._today = today
        self.discovery = discovery
        # artist names the extractor reported that differ from the searched artist
        self.reported_artists: List[str] = []

    def today(self) -> date:
        return self._today() if self._today else date.today()

    # --------- Search phase ----------
    async def _search_artist(self, artist: Artist, summary: RunSummary) -> List[UrlTask]:
        async with self.semaphore:
            results = await self.search.search_artist(artist.name, self.results_per_query, year=self.today().year)
        relevant = [r for r in results if mentions_artist(r, artist.name)]
        skipped = len(results) - len(relevant)
        if skipped:
            summary.urls_skipped += skipped
            logger.info(f"[SEARCH] {artist.name}: skipped {skipped} result(s) that do not mention the artist")
        return [UrlTask(url=r.url, artist_name=artist.name, artist_id=artist.id,
                        title=r.title, snippet=r.snippet, image_url=r.image_url)
                for r in relevant]

    async def search_phase(self, artists: List[Artist], summary: Optional[RunSummary] = None) -> int:
        summary = summary or RunSummary()
        per_artist = await asyncio.gather(*[self._search_artist(a, summary) for a in artists],
                                          return_exceptions=True)

        enqueued = 0
        # enqueue in batch order so the extraction order does not depend on search timing
        for artist, tasks in zip(artists, per_artist):
            if isinstance(tasks, Exception):
                logger.error(f"[SEARCH] {artist.name} raised {type(tasks).__name__}: {tasks}")
                logger.debug("".join(traceback.format_exception(type(tasks), tasks, tasks.__traceback__)))
                continue
            for task in tasks:
                await self.queue.enqueue(task)
                enqueued += 1
        summary.urls_enqueued += enqueued
        logger.info(f"[SEARCH] Queued {enqueued} URL(s) for {len(artists)} artist(s)")
        return enqueued

    # --------- Extraction phase ----------
    async def _process_task(self, task: UrlTask, summary: RunSummary) -> List[EventCandidate]:
        async with self.semaphore:
            t0 = time.perf_counter()
            text = await self.fetcher.fetch_text(task.url)
            if text is None:
                return []
            try:
                candidates = await asyncio.to_thread(
                    self.extractor.extract_events, task.artist_name, text, task.url, self.today()
                )
            except ExtractionError as e:
                summary.url_errors += 1
                logger.error(f"[DETAIL] Extraction failed for {task.url}: {e}")
                return []
            elapsed = (time.perf_counter() - t0) * 1000
            logger.debug(f"[DETAIL] {task.url} done in {elapsed:.1f}ms")

        searched = normalize_key(task.artist_name)
        for c in candidates:
            if c.artist_name and normalize_key(c.artist_name) != searched:
                self.reported_artists.append(c.artist_name)
            # the event was found while searching for this artist
            c.artist_name = task.artist_name
            c.source_url = c.source_url or task.url
            c.image_url = c.image_url or task.image_url
        return candidates

    async def _worker(self, worker_id: int, results: List[Tuple[int, List[EventCandidate]]],
                      counter: List[int], summary: RunSummary):
        while True:
            task = await self.queue.dequeue(self.dequeue_timeout)
            if task is None:
                logger.debug(f"[WORKER {worker_id}] Queue drained")
                return
            seq = counter[0]
            counter[0] += 1
            summary.urls_processed += 1
            try:
                results.append((seq, await self._process_task(task, summary)))
            except Exception as e:
                summary.url_errors += 1
                logger.error(f"[WORKER {worker_id}] Error on {task.url}: {e}")
                logger.debug(traceback.format_exc())

    async def extract_phase(self, summary: Optional[RunSummary] = None) -> List[EventCandidate]:
        summary = summary or RunSummary()
        results: List[Tuple[int, List[EventCandidate]]] = []
        counter = [0]
        self.reported_artists = []
        workers = [asyncio.create_task(self._worker(i, results, counter, summary))
                   for i in range(self.concurrency)]
        try:
            await asyncio.gather(*workers)
        finally:
            # a failing worker (queue backend gone) must not leave the others running
            for w in workers:
                if not w.done():
                    w.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
        # dequeue order, so the first-seen rule in the deduplicator follows the queue
        results.sort(key=lambda r: r[0])
        candidates = [c for _, batch in results for c in batch]
        summary.candidates += len(candidates)
        logger.info(f"[RUN] {summary.urls_processed} URL(s) analysed, {len(candidates)} candidate event(s)")
        return candidates

    def _ingest(self, candidates: List[EventCandidate], summary: RunSummary):
        result = self.dedup.ingest(candidates, today=self.today())
        summary.events_inserted = result.inserted
        if self.discovery is not None and self.reported_artists:
            summary.artists_discovered = self.discovery.ingest_names(self.reported_artists)

    # --------- Entry points ----------
    def _finish(self, artists: List[Artist], summary: RunSummary, error: Optional[BaseException]):
        """Mark every pulled artist, whatever happened downstream, then surface the first error."""
        try:
            self.rotation.mark_processed([a.id for a in artists])
            summary.artists_processed = len(artists)
        except Exception as mark_error:
            logger.error(f"[ROTATION] Could not mark artists processed: {mark_error}")
            if error is None:
                raise
        if error is not None:
            raise error

    async def run(self, batch_size: Optional[int] = None) -> RunSummary:
        """Select a batch, search, extract and ingest in one go."""
        start = time.perf_counter()
        summary = RunSummary()
        artists = self.rotation.select_batch(batch_size)
        if not artists:
            logger.info("[RUN] No artists to process")
            return summary

        error = None
        try:
            await self.search_phase(artists, summary)
            candidates = await self.extract_phase(summary)
            self._ingest(candidates, summary)
        except Exception as e:
            error = e
        self._finish(artists, summary, error)

        summary.duration_ms = round((time.perf_counter() - start) * 1000, 1)
        logger.info(f"[RUN] Finished in {summary.duration_ms:.0f}ms: {summary.message()}")
        return summary

    async def produce(self, batch_size: Optional[int] = None) -> RunSummary:
        """Search half only: queue URLs for a batch and advance the rotation."""
        start = time.perf_counter()
        summary = RunSummary()
        artists = self.rotation.select_batch(batch_size)
        if not artists:
            logger.info("[RUN] No artists to process")
            return summary

        error = None
        try:
            await self.search_phase(artists, summary)
        except Exception as e:
            error = e
        self._finish(artists, summary, error)

        summary.duration_ms = round((time.perf_counter() - start) * 1000, 1)
        logger.info(f"[RUN] Producer finished: {summary.message()}")
        return summary

    async def consume(self) -> RunSummary:
        """Extraction half only: drain the queue and ingest what it yields."""
        start = time.perf_counter()
        summary = RunSummary()
        candidates = await self.extract_phase(summary)
        self._ingest(candidates, summary)
        summary.duration_ms = round((time.perf_counter() - start) * 1000, 1)
        logger.info(f"[RUN] Consumer finished: {summary.message()}")
        return summary
