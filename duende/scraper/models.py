"""
Data models for artists, extracted event candidates and persisted events
"""
from datetime import datetime, UTC
from dataclasses import dataclass, asdict, field
from typing import Optional, Any, Dict
from pydantic import BaseModel, ConfigDict, Field, AliasChoices, field_validator

from duende.scraper.utils import event_key, normalize_key, norm_space, province_for

# -------------------- Data Models --------------------

@dataclass
class Artist:
    id: Any
    name: str
    last_processed_at: Optional[datetime] = None
    status: Optional[str] = None
    created_at: Optional[datetime] = None
    main_role: Optional[str] = None

@dataclass
class SearchResult:
    url: str
    title: str = ""
    snippet: str = ""
    image_url: Optional[str] = None

@dataclass
class UrlTask:
    url: str
    artist_name: str
    artist_id: Any = None
    title: str = ""
    snippet: str = ""
    image_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        # ObjectId and friends are not JSON-native
        if data["artist_id"] is not None and not isinstance(data["artist_id"], (int, str)):
            data["artist_id"] = str(data["artist_id"])
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UrlTask":
        return cls(
            url=data["url"],
            artist_name=data["artist_name"],
            artist_id=data.get("artist_id"),
            title=data.get("title") or "",
            snippet=data.get("snippet") or "",
            image_url=data.get("image_url"),
        )

class EventCandidate(BaseModel):
    """One event as returned by the extraction model. Nothing here is trusted yet."""
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    artist_name: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    venue: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    provincia: Optional[str] = None
    source_url: Optional[str] = None
    image_url: Optional[str] = None

    @field_validator("artist_name", mode="before")
    @classmethod
    def _artist_from_object(cls, v):
        # models sometimes answer {"name": "...", "role": "..."} instead of a string
        if isinstance(v, dict):
            return v.get("name")
        return v

    @field_validator("name", "date", "venue", "city", "provincia", "country", "time", mode="before")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v

    @property
    def key(self) -> str:
        return event_key(self.artist_name, self.date, self.venue)

@dataclass
class PersistedEvent:
    event_key: str
    artist_name: str
    name: str
    date: str
    venue: str
    description: Optional[str] = None
    time: Optional[str] = None
    city: Optional[str] = None
    provincia: Optional[str] = None
    country: Optional[str] = None
    source_url: Optional[str] = None
    image_url: Optional[str] = None
    verified: bool = False
    # editorial review state; new events always start as pending
    content_status: str = "pending"
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_candidate(cls, candidate: EventCandidate, now: Optional[datetime] = None) -> "PersistedEvent":
        now = now or datetime.now(UTC)
        return cls(
            event_key=candidate.key,
            artist_name=candidate.artist_name or "",
            name=candidate.name,
            date=candidate.date,
            venue=candidate.venue,
            description=candidate.description,
            time=candidate.time,
            city=candidate.city,
            provincia=candidate.provincia or province_for(candidate.city),
            country=candidate.country,
            source_url=candidate.source_url,
            image_url=candidate.image_url,
            created_at=now,
            updated_at=now,
        )

class ArtistCandidate(BaseModel):
    """An artist reported by the extraction model while scouting for new names."""
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    main_role: Optional[str] = Field(default=None, validation_alias=AliasChoices("main_role", "mainRole", "role"))

    @field_validator("name", "main_role", mode="before")
    @classmethod
    def _strip(cls, v):
        return norm_space(v) if isinstance(v, str) else v

    @property
    def key(self) -> str:
        return normalize_key(self.name)
