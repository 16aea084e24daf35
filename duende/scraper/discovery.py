"""
Artist discovery: finds flamenco artists the rotation does not know yet and stores them for review.

New artists get a review status (pending_review unless configured otherwise), so a rotation
restricted with ARTIST_STATUS=approved leaves them alone until someone approves them.
"""
import time, asyncio, logging
from dataclasses import dataclass, asdict
from datetime import date, datetime, UTC
from typing import Dict, Any, Iterable, List, Optional

from duende.scraper.extractor import ExtractionError
from duende.scraper.models import Artist, ArtistCandidate, SearchResult
from duende.scraper.utils import normalize_key, norm_space

logger = logging.getLogger(__name__)

DISCOVERY_STATUS = "pending_review"
# longer "names" are sentences the model mistook for artists
MAX_NAME_CHARS = 80


def discovery_queries(year: Optional[int] = None) -> List[str]:
    year = year or date.today().year
    return [
        f"artistas cartel festival flamenco Jerez {year}",
        "nuevos talentos del cante jondo",
        "programación bienal de flamenco sevilla",
        f"guitarristas flamencos gira {year}",
        "bailaoras de flamenco revelación",
    ]


@dataclass
class DiscoverySummary:
    queries: int = 0
    urls: int = 0
    url_errors: int = 0
    candidates: int = 0
    artists_inserted: int = 0
    duration_ms: float = 0.0

    def message(self) -> str:
        return (f"{self.queries} query(ies), {self.urls} URL(s) analysed ({self.url_errors} failed), "
                f"{self.candidates} name(s) found, {self.artists_inserted} new artist(s) added for review")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ArtistDiscovery:
    def __init__(self, store, search=None, fetcher=None, extractor=None, concurrency: int = 5,
                 results_per_query: int = 5, status: str = DISCOVERY_STATUS, today=None):
        self.store = store
        self.search = search
        self.fetcher = fetcher
        self.extractor = extractor
        self.semaphore = asyncio.Semaphore(concurrency)
        self.results_per_query = results_per_query
        self.status = status
        self._today = today

    def today(self) -> date:
        return self._today() if self._today else date.today()

    # --------- Ingestion ----------
    def ingest(self, candidates: Iterable[ArtistCandidate]) -> int:
        """Fold by name key, ask the store once which keys it knows, bulk insert the rest."""
        unique: Dict[str, ArtistCandidate] = {}
        for c in candidates:
            name = norm_space(c.name or "")
            key = normalize_key(name)
            if not key or len(name) > MAX_NAME_CHARS or key in unique:
                continue
            unique[key] = c.model_copy(update={"name": name})
        if not unique:
            return 0

        existing = self.store.existing_artist_keys(list(unique))
        now = datetime.now(UTC)
        new_artists = [Artist(id=None, name=c.name, status=self.status, created_at=now, main_role=c.main_role)
                       for key, c in unique.items() if key not in existing]
        inserted = self.store.insert_artists(new_artists) if new_artists else 0
        logger.info(f"[DISCOVERY] {len(unique)} distinct name(s), {len(existing)} already known, "
                    f"{inserted} added as {self.status}")
        return inserted

    def ingest_names(self, names: Iterable[str]) -> int:
        return self.ingest(ArtistCandidate(name=n) for n in names if isinstance(n, str))

    # --------- Web scouting ----------
    async def _artists_from(self, result: SearchResult, summary: DiscoverySummary) -> List[ArtistCandidate]:
        async with self.semaphore:
            text = await self.fetcher.fetch_text(result.url)
            if text is None:
                return []
            try:
                return await asyncio.to_thread(self.extractor.extract_artists, text, result.url)
            except ExtractionError as e:
                summary.url_errors += 1
                logger.error(f"[DISCOVERY] Extraction failed for {result.url}: {e}")
                return []

    async def discover(self, queries: Optional[List[str]] = None) -> DiscoverySummary:
        start = time.perf_counter()
        summary = DiscoverySummary()
        queries = queries or discovery_queries(self.today().year)
        summary.queries = len(queries)

        batches = await asyncio.gather(*[self.search.search(q, self.results_per_query) for q in queries])
        seen = set()
        results: List[SearchResult] = []
        for batch in batches:
            for r in batch:
                if r.url not in seen:
                    seen.add(r.url)
                    results.append(r)
        summary.urls = len(results)

        found = await asyncio.gather(*[self._artists_from(r, summary) for r in results], return_exceptions=True)
        candidates: List[ArtistCandidate] = []
        for result, item in zip(results, found):
            if isinstance(item, Exception):
                summary.url_errors += 1
                logger.error(f"[DISCOVERY] {result.url} raised {type(item).__name__}: {item}")
                continue
            candidates.extend(item)
        summary.candidates = len(candidates)

        summary.artists_inserted = self.ingest(candidates)
        summary.duration_ms = round((time.perf_counter() - start) * 1000, 1)
        logger.info(f"[DISCOVERY] Finished in {summary.duration_ms:.0f}ms: {summary.message()}")
        return summary
