from datetime import date, datetime, UTC

import mongomock
import pytest

from duende.scraper.dedup import EventDeduplicator
from duende.scraper.models import Artist, EventCandidate, PersistedEvent
from duende.scraper.rotation import RotationScheduler
from duende.scraper.store import MongoStore

TODAY = date(2026, 10, 19)


def _event(venue="Sala X", date_str="2099-05-01", artist="Argentina", city="Sevilla"):
    return PersistedEvent.from_candidate(EventCandidate(
        artist_name=artist, name=f"{artist} live", date=date_str, venue=venue, city=city,
    ))


@pytest.fixture
def client():
    return mongomock.MongoClient()


@pytest.fixture
def mongo(client):
    return MongoStore("mongodb://localhost", "DuendeDB", client=client)


@pytest.fixture
def legacy_client(client):
    """A DuendeDB written before nameKey/eventKey existed."""
    db = client["DuendeDB"]
    db.artists.insert_many([
        {"name": "Estrella Morente", "status": "approved", "genres": ["Flamenco"],
         "lastScrapedAt": datetime(2026, 1, 1), "createdAt": datetime(2025, 6, 1)},
        {"name": "Argentina", "status": "approved", "genres": ["Flamenco"]},
        {"name": "Israel Fernández", "status": "pending_review", "lastScrapedAt": None},
    ])
    db.events.insert_many([
        {"artist": "Argentina", "date": "2099-03-01", "venue": "Teatro Real", "name": "Argentina en Madrid",
         "verified": True, "contentStatus": "approved"},
        # same event written twice by the old importer
        {"artist": "argentina", "date": "2099-03-01", "venue": "TEATRO REAL", "name": "Argentina"},
        {"artist": {"name": "Estrella Morente", "role": "Cantaora"}, "date": datetime(2099, 4, 1),
         "venue": "Liceu", "name": "Estrella Morente"},
    ])
    return client


def test_legacy_database_opens_and_gets_derived_keys(legacy_client):
    store = MongoStore("mongodb://localhost", "DuendeDB", client=legacy_client)
    db = legacy_client["DuendeDB"]

    assert db.artists.count_documents({"nameKey": {"$exists": False}}) == 0
    assert store.get_artist("israel fernandez").name == "Israel Fernández"
    assert store.existing_event_keys(["argentina|2099-03-01|teatro real", "estrella morente|2099-04-01|liceu"]) == {
        "argentina|2099-03-01|teatro real", "estrella morente|2099-04-01|liceu"}
    # the second copy of the duplicated event keeps no key instead of failing the open
    assert db.events.count_documents({"eventKey": {"$exists": False}}) == 1

    # a new scrape of the same event is recognised
    assert store.insert_events([_event(venue="Teatro Real", date_str="2099-03-01")]) == 0
    assert store.add_artist("ARGENTINA") is None

    # reopening is a no-op
    assert MongoStore("mongodb://localhost", "DuendeDB", client=legacy_client).backfill_keys() == 0


def test_legacy_artists_without_timestamp_rotate_first(legacy_client):
    store = MongoStore("mongodb://localhost", "DuendeDB", client=legacy_client)

    assert [a.name for a in store.stale_artists(3)] == ["Argentina", "Israel Fernández", "Estrella Morente"]
    assert [a.name for a in store.stale_artists(5, status="approved")] == ["Argentina", "Estrella Morente"]
    assert store.stale_artists(0) == []
    estrella = store.get_artist("Estrella Morente")
    assert estrella.last_processed_at == datetime(2026, 1, 1, tzinfo=UTC)


def test_legacy_event_documents_are_listed(legacy_client):
    store = MongoStore("mongodb://localhost", "DuendeDB", client=legacy_client)
    events = store.upcoming_events(TODAY)

    # dates stored as BSON dates do not compare with the ISO string filter
    assert [e["artist_name"] for e in events] == ["Argentina", "argentina"]
    assert events[0]["verified"] is True
    assert events[0]["content_status"] == "approved"


def test_marking_only_moves_forward(mongo):
    a = mongo.add_artist("Argentina")
    b = mongo.add_artist("Estrella Morente")
    later = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
    earlier = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)

    assert mongo.mark_artists_processed([a.id, b.id], later) == 2
    assert mongo.mark_artists_processed([a.id], earlier) == 0
    assert mongo.mark_artists_processed([], later) == 0
    assert mongo.get_artist("Argentina").last_processed_at == later


def test_artist_names_are_unique_case_and_accent_insensitively(mongo):
    first = mongo.add_artist("José Mercé", status="approved")
    assert first is not None and first.status == "approved"
    assert mongo.add_artist("JOSE MERCE") is None
    assert mongo.add_artist("   ") is None
    assert [a.name for a in mongo.list_artists()] == ["José Mercé"]


def test_insert_artists_in_bulk_skips_known_names(mongo):
    mongo.add_artist("Estrella Morente")
    now = datetime(2026, 10, 19, tzinfo=UTC)
    inserted = mongo.insert_artists([
        Artist(id=None, name="ESTRELLA MORENTE", status="pending_review", created_at=now),
        Artist(id=None, name="Israel Fernández", status="pending_review", created_at=now, main_role="Cantaor"),
    ])

    assert inserted == 1
    israel = mongo.get_artist("israel fernandez")
    assert (israel.status, israel.main_role) == ("pending_review", "Cantaor")
    assert mongo.existing_artist_keys(["estrella morente", "israel fernandez", "nadie"]) == {
        "estrella morente", "israel fernandez"}
    assert mongo.existing_artist_keys([]) == set()


def test_unique_event_key_rejects_concurrent_duplicates(mongo):
    assert mongo.insert_events([_event()]) == 1
    # a second writer that passed its existence check before the first insert landed
    assert mongo.insert_events([_event(), _event(venue="Other")]) == 1
    assert mongo.insert_events([]) == 0
    assert len(mongo.upcoming_events(TODAY)) == 2


def test_upcoming_events_are_sorted_filtered_and_limited(mongo):
    mongo.insert_events([_event(date_str="2099-05-02", venue="B"),
                         _event(date_str="2099-05-01", venue="A", city="Jerez de la Frontera"),
                         _event(date_str="2026-01-01", venue="Old")])
    events = mongo.upcoming_events(date(2099, 1, 1), limit=10)

    assert [e["venue"] for e in events] == ["A", "B"]
    assert events[0]["provincia"] == "Cádiz"
    assert events[0]["content_status"] == "pending"
    assert [e["venue"] for e in mongo.upcoming_events(date(2099, 1, 1), limit=1)] == ["A"]


def test_second_ingest_of_the_same_candidates_inserts_nothing(mongo, make_candidate):
    dedup = EventDeduplicator(mongo, today=lambda: TODAY)
    batch = [make_candidate(venue="Villamarta"), make_candidate(artist="ANTONIO REYES", venue="villamarta"),
             make_candidate(venue="Peña")]

    assert dedup.ingest(batch, today=TODAY).inserted == 2
    assert dedup.ingest([c.model_copy() for c in batch], today=TODAY).inserted == 0
    assert len(mongo.upcoming_events(TODAY)) == 2


def test_rotation_cycles_through_every_artist(mongo):
    for name in ("A", "B", "C"):
        mongo.add_artist(name)
    rotation = RotationScheduler(mongo, batch_size=2)

    first = rotation.select_batch()
    rotation.mark_processed([a.id for a in first], timestamp=datetime(2026, 10, 19, 10, 0, tzinfo=UTC))
    second = rotation.select_batch()

    assert [a.name for a in first] == ["A", "B"]
    assert [a.name for a in second][0] == "C"
    assert {a.name for a in first + second} == {"A", "B", "C"}
