"""Shared pytest fixtures for the duende test suite."""

from typing import Dict, List, Optional

import pytest

from duende.scraper.models import EventCandidate, SearchResult
from duende.scraper.store import SQLiteStore


@pytest.fixture
def store(tmp_path) -> SQLiteStore:
    return SQLiteStore(str(tmp_path / "duende.db"))


@pytest.fixture
def make_candidate():
    def _make(artist="Antonio Reyes", date="2099-01-01", venue="Teatro Villamarta", name=None, **extra):
        return EventCandidate(
            artist_name=artist,
            date=date,
            venue=venue,
            name=name if name is not None else f"{artist} en concierto",
            **extra,
        )
    return _make


class FakeSearch:
    """Returns canned results per artist; raises for artists listed in `failing`."""

    def __init__(self, results: Dict[str, List[SearchResult]], failing=()):
        self.results = results
        self.failing = set(failing)
        self.calls: List[str] = []

    async def search_artist(self, artist_name, num=3, year=None):
        self.calls.append(artist_name)
        if artist_name in self.failing:
            raise RuntimeError(f"search exploded for {artist_name}")
        return list(self.results.get(artist_name, []))

    async def close(self):
        pass


class FakeFetcher:
    """Page text by URL; URLs missing from `pages` behave like a timeout."""

    def __init__(self, pages: Dict[str, str]):
        self.pages = pages
        self.fetched: List[str] = []

    async def fetch_text(self, url) -> Optional[str]:
        self.fetched.append(url)
        return self.pages.get(url)

    async def close(self):
        pass


class FakeExtractor:
    """Candidate events by URL; URLs in `failing` raise the given exception."""

    def __init__(self, events: Dict[str, List[EventCandidate]], failing: Optional[Dict[str, Exception]] = None):
        self.events = events
        self.failing = failing or {}
        self.calls: List[str] = []

    def extract_events(self, artist_name, text, url, today=None):
        self.calls.append(url)
        if url in self.failing:
            raise self.failing[url]
        return [c.model_copy() for c in self.events.get(url, [])]


@pytest.fixture
def fakes():
    return FakeSearch, FakeFetcher, FakeExtractor
