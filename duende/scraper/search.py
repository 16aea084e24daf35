import asyncio, logging
from datetime import date
from typing import List, Optional
import httpx

from duende.scraper.models import SearchResult

logger = logging.getLogger(__name__)

GOOGLE_CSE_URL = "https://www.googleapis.com/customsearch/v1"


def queries_for(artist_name: str, year: Optional[int] = None) -> List[str]:
    year = year or date.today().year
    return [
        f'"{artist_name}" "agenda" "conciertos"',
        f'"{artist_name}" "próximos conciertos"',
        f'"{artist_name}" "fechas gira"',
        f'concierto flamenco "{artist_name}" {year}',
    ]


class GoogleSearchClient:
    """Google Custom Search JSON API. Failed queries return no results instead of raising."""

    def __init__(self, api_key: str, cx: str, timeout: float = 15.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key.strip()
        self.cx = cx.strip()
        self.timeout = timeout
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self):
        await self.client.aclose()

    async def search(self, query: str, num: int = 3) -> List[SearchResult]:
        params = {"key": self.api_key, "cx": self.cx, "q": query, "num": max(1, min(num, 10))}
        try:
            r = await self.client.get(GOOGLE_CSE_URL, params=params, timeout=self.timeout)
            if r.status_code == 429:
                logger.warning(f"[SEARCH] Quota exceeded for query {query!r}")
                return []
            r.raise_for_status()
            data = r.json()
        except httpx.TimeoutException:
            logger.warning(f"[SEARCH] Timed out for query {query!r}")
            return []
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[SEARCH] Error for query {query!r}: {e}")
            return []

        results = []
        for item in data.get("items") or []:
            link = item.get("link")
            if not link:
                continue
            images = (item.get("pagemap") or {}).get("cse_image") or []
            results.append(SearchResult(
                url=link,
                title=item.get("title") or "",
                snippet=item.get("snippet") or "",
                image_url=images[0].get("src") if images else None,
            ))
        return results

    async def search_artist(self, artist_name: str, num: int = 3, year: Optional[int] = None) -> List[SearchResult]:
        """All queries for one artist, run concurrently, merged by URL in first-seen order."""
        batches = await asyncio.gather(*[self.search(q, num) for q in queries_for(artist_name, year)])
        seen = set()
        merged = []
        for batch in batches:
            for res in batch:
                if res.url in seen:
                    continue
                seen.add(res.url)
                merged.append(res)
        logger.info(f"[SEARCH] {artist_name}: {len(merged)} unique URL(s)")
        return merged
