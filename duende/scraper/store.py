"""
Artist and event persistence. SQLite for local runs, MongoDB for deployments.

Both stores expose the same operations; open_store() picks one from the connection string.
"""
import json
import logging
import sqlite3
from contextlib import contextmanager, closing
from dataclasses import asdict
from datetime import date, datetime, UTC
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterable, Set

from pymongo import MongoClient, ASCENDING
from pymongo.collation import Collation
from pymongo.errors import PyMongoError, BulkWriteError, DuplicateKeyError

from duende.config import Settings
from duende.scraper.models import Artist, PersistedEvent
from duende.scraper.utils import normalize_key, event_key

logger = logging.getLogger(__name__)

DUPLICATE_KEY = 11000


class StoreError(RuntimeError):
    """The persistent store could not be reached or rejected an operation."""


def _utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# -------------------- SQLite --------------------

class SQLiteStore:
    EVENT_COLUMNS = ("event_key", "artist_name", "name", "description", "date", "time", "venue",
                     "city", "provincia", "country", "source_url", "image_url", "verified",
                     "content_status", "created_at", "updated_at")
    # columns added after the first schema; older local databases get them on open
    ADDED_COLUMNS = {
        "artists": {"main_role": "TEXT"},
        "events": {"provincia": "TEXT", "content_status": "TEXT NOT NULL DEFAULT 'pending'"},
    }

    def __init__(self, db_path: str = "data/duende.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_database()

    @contextmanager
    def _connect(self):
        try:
            with closing(sqlite3.connect(self.db_path)) as conn:
                conn.row_factory = sqlite3.Row
                with conn:
                    yield conn
        except sqlite3.Error as e:
            raise StoreError(f"SQLite error on {self.db_path}: {e}") from e

    def init_database(self):
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS artists (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    name_key TEXT NOT NULL UNIQUE,
                    status TEXT,
                    main_role TEXT,
                    last_processed_at TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            # event_key is unique so two overlapping runs cannot both insert the same event
            conn.execute("""
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_key TEXT NOT NULL UNIQUE,
                    artist_name TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    date TEXT NOT NULL,
                    time TEXT,
                    venue TEXT NOT NULL,
                    city TEXT,
                    provincia TEXT,
                    country TEXT,
                    source_url TEXT,
                    image_url TEXT,
                    verified INTEGER NOT NULL DEFAULT 0,
                    content_status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            for table, columns in self.ADDED_COLUMNS.items():
                present = {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}
                for column, decl in columns.items():
                    if column not in present:
                        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_artists_last_processed ON artists(last_processed_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_date ON events(date)")

    @staticmethod
    def _artist(row) -> Artist:
        return Artist(
            id=row["id"],
            name=row["name"],
            last_processed_at=_parse_ts(row["last_processed_at"]),
            status=row["status"],
            created_at=_parse_ts(row["created_at"]),
            main_role=row["main_role"],
        )

    def stale_artists(self, limit: int, status: Optional[str] = None) -> List[Artist]:
        if limit <= 0:
            return []
        query = "SELECT * FROM artists"
        params: List[Any] = []
        if status:
            query += " WHERE status = ?"
            params.append(status)
        # never-processed first, then oldest; id keeps ties in insertion order
        query += " ORDER BY last_processed_at IS NOT NULL, last_processed_at, id LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            return [self._artist(row) for row in conn.execute(query, params)]

    def mark_artists_processed(self, ids: Iterable[Any], ts: datetime) -> int:
        ids = list(ids)
        if not ids:
            return 0
        stamp = _utc(ts).isoformat()
        with self._connect() as conn:
            cursor = conn.execute("""
                UPDATE artists SET last_processed_at = ?
                WHERE id IN (SELECT value FROM json_each(?))
                  AND (last_processed_at IS NULL OR last_processed_at < ?)
            """, (stamp, json.dumps(ids), stamp))
            return cursor.rowcount

    def add_artist(self, name: str, status: Optional[str] = None) -> Optional[Artist]:
        name = (name or "").strip()
        key = normalize_key(name)
        if not key:
            return None
        now = datetime.now(UTC).isoformat()
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO artists (name, name_key, status, created_at) VALUES (?, ?, ?, ?)",
                (name, key, status, now),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM artists WHERE id = ?", (cursor.lastrowid,)).fetchone()
            return self._artist(row)

    def get_artist(self, name: str) -> Optional[Artist]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM artists WHERE name_key = ?", (normalize_key(name),)).fetchone()
            return self._artist(row) if row else None

    def list_artists(self) -> List[Artist]:
        with self._connect() as conn:
            return [self._artist(row) for row in conn.execute("SELECT * FROM artists ORDER BY id")]

    def existing_artist_keys(self, keys: Iterable[str]) -> Set[str]:
        keys = list(keys)
        if not keys:
            return set()
        with self._connect() as conn:
            cursor = conn.execute(
                "SELECT name_key FROM artists WHERE name_key IN (SELECT value FROM json_each(?))",
                (json.dumps(keys),),
            )
            return {row["name_key"] for row in cursor}

    def insert_artists(self, artists: List[Artist]) -> int:
        rows = []
        for a in artists:
            name = (a.name or "").strip()
            if not normalize_key(name):
                continue
            created = _utc(a.created_at or datetime.now(UTC)).isoformat()
            rows.append((name, normalize_key(name), a.status, a.main_role, created))
        if not rows:
            return 0
        with self._connect() as conn:
            before = conn.total_changes
            conn.executemany(
                "INSERT OR IGNORE INTO artists (name, name_key, status, main_role, created_at) VALUES (?, ?, ?, ?, ?)",
                rows,
            )
            return conn.total_changes - before

    def existing_event_keys(self, keys: Iterable[str]) -> Set[str]:
        keys = list(keys)
        if not keys:
            return set()
        with self._connect() as conn:
            cursor = conn.execute(
                "SELECT event_key FROM events WHERE event_key IN (SELECT value FROM json_each(?))",
                (json.dumps(keys),),
            )
            return {row["event_key"] for row in cursor}

    def insert_events(self, events: List[PersistedEvent]) -> int:
        if not events:
            return 0
        rows = []
        for ev in events:
            data = asdict(ev)
            data["verified"] = int(data["verified"])
            data["created_at"] = _utc(data["created_at"]).isoformat()
            data["updated_at"] = _utc(data["updated_at"]).isoformat()
            rows.append(tuple(data[c] for c in self.EVENT_COLUMNS))
        placeholders = ", ".join("?" for _ in self.EVENT_COLUMNS)
        with self._connect() as conn:
            before = conn.total_changes
            conn.executemany(
                f"INSERT OR IGNORE INTO events ({', '.join(self.EVENT_COLUMNS)}) VALUES ({placeholders})",
                rows,
            )
            inserted = conn.total_changes - before
        if inserted < len(rows):
            logger.info(f"[STORE] {len(rows) - inserted} event(s) already present at insert time")
        return inserted

    def upcoming_events(self, today: date, limit: int = 100) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            cursor = conn.execute(
                "SELECT * FROM events WHERE date >= ? ORDER BY date, id LIMIT ?",
                (today.isoformat(), limit),
            )
            out = []
            for row in cursor:
                d = dict(row)
                d.pop("id", None)
                d["verified"] = bool(d["verified"])
                out.append(d)
            return out

    def close(self):
        pass


# -------------------- MongoDB --------------------

# the definition the artists collection was created with; re-creating it is a no-op
ARTIST_NAME_COLLATION = Collation(locale="es", strength=2)


def _aware(ts: Optional[datetime]) -> Optional[datetime]:
    return _utc(ts) if isinstance(ts, datetime) else None


def _text(value: Any) -> Optional[str]:
    # older event documents hold the artist as {"name": ..., "role": ...}
    if isinstance(value, dict):
        value = value.get("name")
    return value if isinstance(value, str) else None


def _date_text(value: Any) -> Optional[str]:
    if isinstance(value, (datetime, date)):
        return value.strftime("%Y-%m-%d")
    return _text(value)


class MongoStore:
    """
    Works on the shared DuendeDB layout: camelCase documents, `lastScrapedAt` on artists.

    nameKey and eventKey are derived here. Documents written by other tools may lack them,
    so both unique indexes are sparse and backfill_keys() fills the gaps on open.
    """

    def __init__(self, uri: str, db_name: str = "DuendeDB", timeout: float = 15.0,
                 client: Optional[MongoClient] = None):
        try:
            self.client = client or MongoClient(uri, serverSelectionTimeoutMS=int(timeout * 1000))
            self.db = self.client[db_name]
            self.artists = self.db["artists"]
            self.events = self.db["events"]
            self.ensure_indexes()
            self.backfill_keys()
        except PyMongoError as e:
            raise StoreError(f"Could not connect to MongoDB: {e}") from e
        logger.info(f"[STORE] Connected to MongoDB database {db_name}")

    def ensure_indexes(self):
        self.artists.create_index("name", unique=True, collation=ARTIST_NAME_COLLATION)
        self.artists.create_index("nameKey", unique=True, sparse=True)
        self.artists.create_index([("lastScrapedAt", ASCENDING), ("_id", ASCENDING)])
        self.events.create_index("eventKey", unique=True, sparse=True)
        self.events.create_index("date")

    def backfill_keys(self) -> int:
        """Derive nameKey / eventKey for documents stored without them. Returns how many were set."""
        filled = 0
        for doc in list(self.artists.find({"nameKey": {"$exists": False}}, {"name": 1})):
            filled += self._fill_key(self.artists, doc["_id"], "nameKey", normalize_key(_text(doc.get("name"))))
        for doc in list(self.events.find({"eventKey": {"$exists": False}}, {"artist": 1, "date": 1, "venue": 1})):
            key = event_key(_text(doc.get("artist")), _date_text(doc.get("date")), _text(doc.get("venue")))
            filled += self._fill_key(self.events, doc["_id"], "eventKey", key)
        if filled:
            logger.info(f"[STORE] Backfilled {filled} derived key(s)")
        return filled

    @staticmethod
    def _fill_key(collection, doc_id, field: str, key: str) -> int:
        if not key.strip("|"):
            return 0
        try:
            collection.update_one({"_id": doc_id}, {"$set": {field: key}})
        except DuplicateKeyError:
            logger.warning(f"[STORE] {collection.name} {doc_id} repeats {field} {key!r}; left without one")
            return 0
        return 1

    @staticmethod
    def _artist(doc) -> Artist:
        return Artist(
            id=doc["_id"],
            name=doc["name"],
            last_processed_at=_aware(doc.get("lastScrapedAt")),
            status=doc.get("status"),
            created_at=_aware(doc.get("createdAt")),
            main_role=doc.get("mainRole"),
        )

    @staticmethod
    def _artist_doc(name: str, status: Optional[str], main_role: Optional[str] = None,
                    now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(UTC)
        return {
            "name": name,
            "nameKey": normalize_key(name),
            "mainRole": main_role,
            "genres": ["Flamenco"],
            "status": status,
            "lastScrapedAt": None,
            "createdAt": now,
            "updatedAt": now,
        }

    @staticmethod
    def _event_doc(ev: PersistedEvent) -> Dict[str, Any]:
        return {
            "eventKey": ev.event_key,
            "artist": ev.artist_name,
            "name": ev.name,
            "description": ev.description,
            "date": ev.date,
            "time": ev.time,
            "venue": ev.venue,
            "city": ev.city,
            "provincia": ev.provincia,
            "country": ev.country,
            "sourceUrl": ev.source_url,
            "imageUrl": ev.image_url,
            "verified": ev.verified,
            "contentStatus": ev.content_status,
            "createdAt": ev.created_at,
            "updatedAt": ev.updated_at,
        }

    @staticmethod
    def _event_dict(doc) -> Dict[str, Any]:
        return {
            "event_key": doc.get("eventKey"),
            "artist_name": _text(doc.get("artist")),
            "name": doc.get("name"),
            "description": doc.get("description"),
            "date": doc.get("date"),
            "time": doc.get("time"),
            "venue": doc.get("venue"),
            "city": doc.get("city"),
            "provincia": doc.get("provincia"),
            "country": doc.get("country"),
            "source_url": doc.get("sourceUrl"),
            "image_url": doc.get("imageUrl"),
            "verified": bool(doc.get("verified")),
            "content_status": doc.get("contentStatus"),
            "created_at": doc.get("createdAt"),
            "updated_at": doc.get("updatedAt"),
        }

    def _insert_unordered(self, collection, docs: List[Dict[str, Any]], what: str) -> int:
        if not docs:
            return 0
        try:
            result = collection.insert_many(docs, ordered=False)
            return len(result.inserted_ids)
        except BulkWriteError as e:
            # unordered insert: everything that could be written stays written
            details = e.details or {}
            errors = details.get("writeErrors", [])
            other = [err for err in errors if err.get("code") != DUPLICATE_KEY]
            if len(errors) > len(other):
                logger.info(f"[STORE] {len(errors) - len(other)} {what} already present at insert time")
            for err in other:
                logger.error(f"[STORE] {what} insert failed: {err.get('errmsg')}")
            return details.get("nInserted", 0)
        except PyMongoError as e:
            raise StoreError(f"Could not insert {what}: {e}") from e

    def stale_artists(self, limit: int, status: Optional[str] = None) -> List[Artist]:
        # limit(0) means "no limit" to MongoDB
        if limit <= 0:
            return []
        query = {"status": status} if status else {}
        try:
            # a missing lastScrapedAt sorts like null: first
            cursor = (self.artists.find(query)
                      .sort([("lastScrapedAt", ASCENDING), ("_id", ASCENDING)])
                      .limit(limit))
            return [self._artist(doc) for doc in cursor]
        except PyMongoError as e:
            raise StoreError(f"Could not read artists: {e}") from e

    def mark_artists_processed(self, ids: Iterable[Any], ts: datetime) -> int:
        ids = list(ids)
        if not ids:
            return 0
        ts = _utc(ts)
        try:
            result = self.artists.update_many(
                {"_id": {"$in": ids},
                 "$or": [{"lastScrapedAt": None}, {"lastScrapedAt": {"$lt": ts}}]},
                {"$set": {"lastScrapedAt": ts}},
            )
            return result.modified_count
        except PyMongoError as e:
            raise StoreError(f"Could not update artists: {e}") from e

    def add_artist(self, name: str, status: Optional[str] = None) -> Optional[Artist]:
        name = (name or "").strip()
        if not normalize_key(name):
            return None
        doc = self._artist_doc(name, status)
        try:
            result = self.artists.insert_one(doc)
        except DuplicateKeyError:
            return None
        except PyMongoError as e:
            raise StoreError(f"Could not add artist {name}: {e}") from e
        doc["_id"] = result.inserted_id
        return self._artist(doc)

    def get_artist(self, name: str) -> Optional[Artist]:
        try:
            doc = self.artists.find_one({"nameKey": normalize_key(name)})
        except PyMongoError as e:
            raise StoreError(f"Could not read artist {name}: {e}") from e
        return self._artist(doc) if doc else None

    def list_artists(self) -> List[Artist]:
        try:
            return [self._artist(doc) for doc in self.artists.find({}).sort("_id", ASCENDING)]
        except PyMongoError as e:
            raise StoreError(f"Could not read artists: {e}") from e

    def existing_artist_keys(self, keys: Iterable[str]) -> Set[str]:
        keys = list(keys)
        if not keys:
            return set()
        try:
            cursor = self.artists.find({"nameKey": {"$in": keys}}, {"nameKey": 1, "_id": 0})
            return {doc["nameKey"] for doc in cursor}
        except PyMongoError as e:
            raise StoreError(f"Could not query artists: {e}") from e

    def insert_artists(self, artists: List[Artist]) -> int:
        docs = [self._artist_doc(a.name.strip(), a.status, a.main_role, a.created_at)
                for a in artists if normalize_key(a.name)]
        return self._insert_unordered(self.artists, docs, "artist(s)")

    def existing_event_keys(self, keys: Iterable[str]) -> Set[str]:
        keys = list(keys)
        if not keys:
            return set()
        try:
            cursor = self.events.find({"eventKey": {"$in": keys}}, {"eventKey": 1, "_id": 0})
            return {doc["eventKey"] for doc in cursor}
        except PyMongoError as e:
            raise StoreError(f"Could not query events: {e}") from e

    def insert_events(self, events: List[PersistedEvent]) -> int:
        return self._insert_unordered(self.events, [self._event_doc(ev) for ev in events], "event(s)")

    def upcoming_events(self, today: date, limit: int = 100) -> List[Dict[str, Any]]:
        try:
            cursor = (self.events.find({"date": {"$gte": today.isoformat()}})
                      .sort([("date", ASCENDING), ("_id", ASCENDING)])
                      .limit(limit))
            return [self._event_dict(doc) for doc in cursor]
        except PyMongoError as e:
            raise StoreError(f"Could not read events: {e}") from e

    def close(self):
        self.client.close()
        logger.info("[STORE] MongoDB connection closed")


def open_store(settings: Settings):
    uri = settings.store_uri or ""
    if uri.startswith(("mongodb://", "mongodb+srv://")):
        return MongoStore(uri, settings.db_name, timeout=settings.request_timeout)
    if uri.startswith("sqlite:///"):
        uri = uri[len("sqlite:///"):]
    if not uri:
        raise StoreError("No store connection string configured")
    return SQLiteStore(uri)
