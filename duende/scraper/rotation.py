import logging
from datetime import datetime, UTC
from typing import Optional, List, Iterable, Any

from duende.scraper.models import Artist

logger = logging.getLogger(__name__)


class RotationScheduler:
    """
    Round-robin over artists by staleness.

    select_batch() is read-only; only mark_processed() advances an artist. Artists whose
    search or extraction failed are still marked, so one broken artist cannot hold the
    head of the queue forever.
    """

    def __init__(self, store, batch_size: int = 10, status: Optional[str] = None):
        self.store = store
        self.batch_size = batch_size
        self.status = status

    def select_batch(self, n: Optional[int] = None, status: Optional[str] = None) -> List[Artist]:
        n = self.batch_size if n is None else n
        status = status or self.status
        if n <= 0:
            return []
        batch = self.store.stale_artists(n, status=status)
        logger.info(f"[ROTATION] Selected {len(batch)} artist(s) (limit {n}"
                    f"{', status=' + status if status else ''})")
        return batch

    def mark_processed(self, ids: Iterable[Any], timestamp: Optional[datetime] = None) -> int:
        ids = list(ids)
        if not ids:
            return 0
        timestamp = timestamp or datetime.now(UTC)
        updated = self.store.mark_artists_processed(ids, timestamp)
        logger.info(f"[ROTATION] Marked {len(ids)} artist(s) processed at {timestamp.isoformat()} ({updated} advanced)")
        return updated
