"""
Process configuration, read once from the environment at entry
"""
import os
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Mapping, List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv, find_dotenv


class ConfigurationError(RuntimeError):
    """Missing or malformed process configuration."""


def load_environment():
    # find .env anywhere up the tree
    load_dotenv(find_dotenv(usecwd=True))


def configure_logging(level_name: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, (level_name or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = (env.get(name) or "").strip().lower()
    if not raw:
        return default
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{name} must be true or false, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    store_uri: Optional[str] = None
    db_name: str = "DuendeDB"
    batch_size: int = 10
    status_filter: Optional[str] = None
    request_timeout: float = 15.0
    google_api_key: Optional[str] = None
    google_cx: Optional[str] = None
    results_per_query: int = 3
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-5-mini"
    extraction_retries: int = 1
    extraction_retry_delay: float = 60.0
    fetch_concurrency: int = 5
    redis_url: Optional[str] = None
    queue_name: str = "duende:urls"
    timezone: Optional[str] = None
    html_cache_dir: Optional[str] = None
    discovery_status: str = "pending_review"
    discovery_results_per_query: int = 5
    discover_from_events: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env

        def text(name: str) -> Optional[str]:
            value = (env.get(name) or "").strip()
            return value or None

        settings = cls(
            store_uri=text("MONGO_URI"),
            db_name=text("DB_NAME") or "DuendeDB",
            batch_size=_int(env, "ARTIST_BATCH_SIZE", 10),
            status_filter=text("ARTIST_STATUS"),
            request_timeout=_float(env, "REQUEST_TIMEOUT", 15.0),
            google_api_key=text("GOOGLE_API_KEY"),
            google_cx=text("GOOGLE_CX"),
            results_per_query=_int(env, "RESULTS_PER_QUERY", 3),
            openai_api_key=text("OPENAI_API_KEY"),
            openai_model=text("OPENAI_MODEL") or "gpt-5-mini",
            extraction_retries=_int(env, "EXTRACTION_RETRIES", 1),
            extraction_retry_delay=_float(env, "EXTRACTION_RETRY_DELAY", 60.0),
            fetch_concurrency=_int(env, "FETCH_CONCURRENCY", 5),
            redis_url=text("REDIS_URL"),
            queue_name=text("QUEUE_NAME") or "duende:urls",
            timezone=text("DUENDE_TIMEZONE"),
            html_cache_dir=text("HTML_CACHE_DIR"),
            discovery_status=text("DISCOVERY_STATUS") or "pending_review",
            discovery_results_per_query=_int(env, "DISCOVERY_RESULTS_PER_QUERY", 5),
            discover_from_events=_bool(env, "DISCOVER_FROM_EVENTS", True),
            log_level=text("LOG_LEVEL") or "INFO",
        )
        if settings.batch_size < 0:
            raise ConfigurationError("ARTIST_BATCH_SIZE must not be negative")
        if settings.fetch_concurrency < 1:
            raise ConfigurationError("FETCH_CONCURRENCY must be at least 1")
        if settings.extraction_retries < 0:
            raise ConfigurationError("EXTRACTION_RETRIES must not be negative")
        if settings.timezone:
            try:
                ZoneInfo(settings.timezone)
            except (ZoneInfoNotFoundError, ValueError):
                raise ConfigurationError(f"DUENDE_TIMEZONE is not a known time zone: {settings.timezone}")
        return settings

    def require(self, search: bool = True, extraction: bool = True) -> "Settings":
        """Fail fast, naming every missing variable the requested work needs."""
        missing: List[str] = []
        if not self.store_uri:
            missing.append("MONGO_URI")
        if search:
            if not self.google_api_key:
                missing.append("GOOGLE_API_KEY")
            if not self.google_cx:
                missing.append("GOOGLE_CX")
        if extraction and not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if missing:
            raise ConfigurationError("Missing required environment variables: " + ", ".join(missing))
        return self

    def today(self) -> date:
        if self.timezone:
            return datetime.now(ZoneInfo(self.timezone)).date()
        return date.today()
