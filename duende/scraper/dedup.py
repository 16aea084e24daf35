import logging
from dataclasses import dataclass
from datetime import date, datetime, UTC
from typing import Optional, List, Iterable

from duende.scraper.models import EventCandidate, PersistedEvent
from duende.scraper.utils import parse_iso_date

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    received: int = 0
    valid: int = 0
    unique: int = 0
    existing: int = 0
    inserted: int = 0


class EventDeduplicator:
    """
    Turns extracted candidates into new events with one existence query and one bulk insert.

    Existing events are never updated: finding the same event again is a no-op.
    """

    def __init__(self, store, today=None):
        self.store = store
        # callable returning the reference "today"; Settings.today in production
        self._today = today

    @staticmethod
    def validate(candidate: EventCandidate, today: date) -> bool:
        if not candidate.name or not candidate.venue or not candidate.date:
            return False
        event_date = parse_iso_date(candidate.date)
        return event_date is not None and event_date >= today

    @staticmethod
    def fold(candidates: Iterable[EventCandidate]) -> List[EventCandidate]:
        seen = set()
        out = []
        for c in candidates:
            key = c.key
            if key in seen:
                continue
            seen.add(key)
            out.append(c)
        return out

    def ingest(self, candidates: Iterable[EventCandidate], today: Optional[date] = None) -> IngestResult:
        candidates = list(candidates)
        today = today or (self._today() if self._today else date.today())
        result = IngestResult(received=len(candidates))

        valid = [c for c in candidates if self.validate(c, today)]
        result.valid = len(valid)
        dropped = result.received - result.valid
        if dropped:
            logger.info(f"[DEDUP] Dropped {dropped} incomplete or past candidate(s)")

        unique = self.fold(valid)
        result.unique = len(unique)
        if not unique:
            logger.info("[DEDUP] Nothing to ingest")
            return result

        existing = self.store.existing_event_keys([c.key for c in unique])
        result.existing = len(existing)

        now = datetime.now(UTC)
        new_events = [PersistedEvent.from_candidate(c, now) for c in unique if c.key not in existing]
        if new_events:
            result.inserted = self.store.insert_events(new_events)

        logger.info(f"[DEDUP] {result.received} received, {result.valid} valid, {result.unique} unique, "
                    f"{result.existing} already stored, {result.inserted} inserted")
        return result
