import time, logging
from pathlib import Path
from typing import Optional, Tuple
import httpx

from duende.scraper.interpreters import interpreter_for
from duende.scraper.utils import sha1

logger = logging.getLogger(__name__)

MIN_TEXT_CHARS = 100


class PageFetcher:
    def __init__(self, timeout: float = 15.0, cache_dir: Optional[str] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout
        self.cache_dir = Path(cache_dir) if cache_dir else None
        if self.cache_dir:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.client = client or httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                                   "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"},
            timeout=self.timeout,
        )

    async def close(self):
        await self.client.aclose()

    # --------- Networking ----------
    async def fetch_html(self, url: str) -> Tuple[str, bool]:
        """Return (html, from_cache). httpx errors propagate."""
        key = self.cache_dir / (sha1(url) + ".html") if self.cache_dir else None
        if key and key.exists():
            logger.debug(f"[FETCH] Cache hit for {url}: {key.name}")
            return key.read_text(encoding="utf-8", errors="ignore"), True

        r = await self.client.get(url, timeout=self.timeout)
        r.raise_for_status()
        html = r.text
        if key:
            key.write_text(html, encoding="utf-8")
        return html, False

    async def fetch_text(self, url: str) -> Optional[str]:
        """
        Fetch a page and reduce it to text.

        A timeout or HTTP error means "nothing from this source": it is logged and None
        is returned. Pages too short to hold an event listing also yield None.
        """
        start = time.perf_counter()
        try:
            html, cached = await self.fetch_html(url)
        except httpx.TimeoutException:
            logger.warning(f"[FETCH] Timed out after {self.timeout:.0f}s: {url}")
            return None
        except httpx.HTTPError as e:
            logger.warning(f"[FETCH] Failed for {url}: {e}")
            return None

        text = interpreter_for(url)(html)
        elapsed = (time.perf_counter() - start) * 1000
        logger.info(f"[FETCH] {url}: {len(html)} html chars -> {len(text)} text chars "
                    f"in {elapsed:.1f}ms{' (cache)' if cached else ''}")
        if len(text) < MIN_TEXT_CHARS:
            logger.info(f"[FETCH] Too little text on {url}, skipping")
            return None
        return text
