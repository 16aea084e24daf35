import time, json, logging
from datetime import date
from typing import Dict, Any, List, Optional
from pydantic import ValidationError
from openai import OpenAI, OpenAIError, RateLimitError

from duende.scraper.models import EventCandidate, ArtistCandidate

logger = logging.getLogger(__name__)


class ExtractionError(RuntimeError):
    """The extraction model could not be called (rate limit exhausted, API failure)."""


def extraction_prompt(artist_name: str, url: str, text: str, today: date) -> str:
    return f"""
You extract flamenco event listings from web pages.
Find upcoming live performances (concerts, recitals, shows) by the artist "{artist_name}" in the TEXT
taken from {url}. Today is {today.isoformat()}; ignore past events, workshops, classes, online
broadcasts, and anything that is not clearly flamenco. Only include events with a full date (day, month, year).
Do not invent data: use null for fields the text does not state.

Output JSON:
{{"events": [{{
  "artist_name": "{artist_name}",
  "name": "event name (artist name if none is given)",
  "description": "short description, at most 150 characters",
  "date": "YYYY-MM-DD",
  "time": "HH:MM or null",
  "venue": "...",
  "city": "...",
  "provincia": "Spanish province, or null outside Spain",
  "country": "...",
  "source_url": "{url}"
}}]}}
Return {{"events": []}} when there are none.

TEXT:
{text}
"""


def correction_prompt(broken: str, error: str) -> str:
    return f"""
The following text is not valid JSON. The parser error was: "{error}".
Fix it and return only the corrected JSON object, with no other text.

TEXT:
{broken}
"""


def artist_discovery_prompt(url: str, text: str) -> str:
    return f"""
You identify flamenco artists in web pages.
List every flamenco artist (singer, dancer, guitarist, percussionist or group) named in the TEXT
taken from {url}. Only artists: no event names, venues, festivals or cities.
"main_role" must be one of "Cantaor", "Bailaor", "Guitarrista", "Percusionista", "Grupo", "Otro".

Output JSON:
{{"artists": [{{"name": "Artist name", "main_role": "Cantaor"}}]}}
Return {{"artists": []}} when there are none.

TEXT:
{text}
"""


def parse_items_payload(content: str, key: str) -> List[Any]:
    """Accepts {key: [...]}, a bare list, or a single object. Raises json.JSONDecodeError."""
    data = json.loads(content)
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        if key in data:
            return data[key] if isinstance(data[key], list) else []
        return [data] if data else []
    return []


def parse_events_payload(content: str) -> List[Any]:
    return parse_items_payload(content, "events")


class LLMExtractor:
    def __init__(self, api_key: Optional[str] = None, model: str = "gpt-5-mini", timeout: float = 60.0,
                 rate_limit_retries: int = 1, rate_limit_delay: float = 60.0,
                 client=None, sleep=time.sleep):
        # retries are ours, not the SDK's
        self.client = client or OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.model = model
        self.rate_limit_retries = rate_limit_retries
        self.rate_limit_delay = rate_limit_delay
        self._sleep = sleep

    def _complete(self, prompt: str) -> str:
        attempt = 0
        while True:
            t_start = time.perf_counter()
            try:
                resp = self.client.chat.completions.create(
                    model=self.model,
                    messages=[{"role": "user", "content": prompt}],
                    response_format={"type": "json_object"},
                )
            except RateLimitError as e:
                if attempt >= self.rate_limit_retries:
                    raise ExtractionError(f"Rate limited after {attempt + 1} attempt(s)") from e
                attempt += 1
                logger.warning(f"[LLM] Rate limited, waiting {self.rate_limit_delay:.0f}s "
                               f"(retry {attempt}/{self.rate_limit_retries})")
                self._sleep(self.rate_limit_delay)
                continue
            except OpenAIError as e:
                raise ExtractionError(f"LLM call failed: {e}") from e

            elapsed = (time.perf_counter() - t_start) * 1000
            content = resp.choices[0].message.content or ""
            logger.debug(f"[LLM] {self.model} answered in {elapsed:.1f}ms ({len(content)} chars)")
            return content

    def _load_items(self, content: str, url: str, key: str = "events") -> List[Any]:
        try:
            return parse_items_payload(content, key)
        except json.JSONDecodeError as e:
            error = str(e)
            logger.warning(f"[LLM] Invalid JSON for {url} ({error}), asking for a correction")

        corrected = self._complete(correction_prompt(content, error))
        try:
            items = parse_items_payload(corrected, key)
            logger.info(f"[LLM] Correction succeeded for {url}")
            return items
        except json.JSONDecodeError as e2:
            logger.error(f"[LLM] Still invalid JSON after correction for {url}: {e2}")
            return []

    def _validate(self, model, raw_items: List[Any], url: str) -> List[Any]:
        out = []
        validation_errors = 0
        for it in raw_items:
            if not isinstance(it, dict):
                validation_errors += 1
                continue
            try:
                out.append(model.model_validate(it))
            except ValidationError as e:
                validation_errors += 1
                logger.debug(f"[LLM] Validation error for item from {url}: {e}")
        if validation_errors:
            logger.warning(f"[LLM] {validation_errors} item(s) from {url} failed validation")
        return out

    def extract_events(self, artist_name: str, text: str, url: str,
                       today: Optional[date] = None) -> List[EventCandidate]:
        prompt = extraction_prompt(artist_name, url, text, today or date.today())
        content = self._complete(prompt)
        events = self._validate(EventCandidate, self._load_items(content, url), url)
        for ev in events:
            if not ev.source_url:
                ev.source_url = url
        if events:
            logger.info(f"[LLM] {len(events)} candidate event(s) from {url}")
        return events

    def extract_artists(self, text: str, url: str) -> List[ArtistCandidate]:
        content = self._complete(artist_discovery_prompt(url, text))
        artists = [a for a in self._validate(ArtistCandidate, self._load_items(content, url, key="artists"), url)
                   if a.name]
        if artists:
            logger.info(f"[LLM] {len(artists)} artist name(s) from {url}")
        return artists
