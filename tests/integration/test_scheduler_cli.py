import pytest

from duende.config import ConfigurationError, Settings
from duende.scheduler import ArtistScheduler, main
from duende.scraper.models import ArtistCandidate, EventCandidate, SearchResult


@pytest.fixture
def settings(tmp_path):
    return Settings(store_uri=f"sqlite:///{tmp_path / 'cli.db'}")


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    # keep a developer's .env out of the picture
    monkeypatch.chdir(tmp_path)
    for name in ("MONGO_URI", "GOOGLE_API_KEY", "GOOGLE_CX", "OPENAI_API_KEY", "ARTIST_BATCH_SIZE",
                 "DUENDE_TIMEZONE", "REDIS_URL"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_sync_from_csv_skips_known_and_blank_names(settings, tmp_path):
    csv_path = tmp_path / "artists.csv"
    csv_path.write_text("name,status\nRocío Márquez,active\nArcángel,\n,\nROCÍO MÁRQUEZ,\n", encoding="utf-8")
    scheduler = ArtistScheduler(settings)

    assert scheduler.sync_artists_from_csv(str(csv_path), status="seed") == 2
    assert scheduler.sync_artists_from_csv(str(csv_path)) == 0

    artists = {a["name"]: a for a in scheduler.list_artists()}
    assert set(artists) == {"Rocío Márquez", "Arcángel"}
    assert artists["Rocío Márquez"]["status"] == "active"
    assert artists["Arcángel"]["status"] == "seed"
    assert artists["Arcángel"]["last_processed_at"] is None


def test_missing_csv_is_a_configuration_error(settings, tmp_path):
    with pytest.raises(ConfigurationError):
        ArtistScheduler(settings).sync_artists_from_csv(str(tmp_path / "nope.csv"))


def test_add_artist_is_idempotent(settings):
    scheduler = ArtistScheduler(settings)
    assert scheduler.add_artist("Marina Heredia") is not None
    assert scheduler.add_artist("marina heredia") is None


@pytest.mark.asyncio
async def test_run_without_credentials_fails_before_any_work(settings):
    with pytest.raises(ConfigurationError) as excinfo:
        await ArtistScheduler(settings).run()
    message = str(excinfo.value)
    assert "GOOGLE_API_KEY" in message and "OPENAI_API_KEY" in message


@pytest.mark.asyncio
async def test_cli_add_artist(clean_env, tmp_path, capsys):
    clean_env.setenv("MONGO_URI", f"sqlite:///{tmp_path / 'cli.db'}")
    assert await main(["--action", "add-artist", "--name", "Tomatito"]) == 0
    assert await main(["--action", "add-artist", "--name", "Tomatito"]) == 0
    out = capsys.readouterr().out
    assert "Added Tomatito" in out
    assert "already exists" in out


@pytest.mark.asyncio
async def test_cli_add_artist_needs_a_name(clean_env, tmp_path):
    clean_env.setenv("MONGO_URI", f"sqlite:///{tmp_path / 'cli.db'}")
    assert await main(["--action", "add-artist"]) == 1


@pytest.mark.asyncio
async def test_cli_reports_configuration_errors(clean_env):
    assert await main(["--action", "run"]) == 1
    clean_env.setenv("ARTIST_BATCH_SIZE", "ten")
    assert await main(["--action", "run"]) == 1


class ScoutSearch:
    async def search(self, query, num=3):
        return [SearchResult(url="https://cartel/1", title="Cartel")]

    async def search_artist(self, artist_name, num=3, year=None):
        return [SearchResult(url="https://agenda/1", title=f"{artist_name} en gira")]

    async def close(self):
        pass


class ScoutPages:
    async def fetch_text(self, url):
        return "texto"

    async def close(self):
        pass


class ScoutExtractor:
    def extract_artists(self, text, url):
        return [ArtistCandidate(name="Rocío Márquez", main_role="Cantaor"), ArtistCandidate(name="Tomatito")]

    def extract_events(self, artist_name, text, url, today=None):
        return [EventCandidate(artist_name="Tomatito y Rocío Márquez", name="Noche flamenca",
                               date="2099-07-01", venue="Generalife", city="Granada")]


def _offline(target):
    target.setattr(ArtistScheduler, "_search_client", lambda self: ScoutSearch())
    target.setattr(ArtistScheduler, "_fetcher", lambda self: ScoutPages())
    target.setattr(ArtistScheduler, "_extractor", lambda self: ScoutExtractor())


@pytest.mark.asyncio
async def test_discover_stores_new_artists_for_review(settings, monkeypatch):
    _offline(monkeypatch)
    scheduler = ArtistScheduler(Settings(store_uri=settings.store_uri, google_api_key="g", google_cx="cx",
                                         openai_api_key="sk"))
    scheduler.add_artist("Tomatito", status="approved")

    summary = await scheduler.discover()

    assert summary.artists_inserted == 1
    listed = {a["name"]: a for a in scheduler.list_artists()}
    assert listed["Rocío Márquez"]["status"] == "pending_review"
    assert listed["Rocío Márquez"]["main_role"] == "Cantaor"
    assert listed["Tomatito"]["status"] == "approved"


@pytest.mark.asyncio
async def test_run_adds_other_artists_named_on_event_pages(settings, monkeypatch):
    _offline(monkeypatch)
    scheduler = ArtistScheduler(Settings(store_uri=settings.store_uri, google_api_key="g", google_cx="cx",
                                         openai_api_key="sk", discovery_status="nuevo"))
    scheduler.add_artist("Tomatito")

    summary = await scheduler.run()

    assert summary.events_inserted == 1
    assert summary.artists_discovered == 1
    assert {a["name"]: a["status"] for a in scheduler.list_artists()}["Tomatito y Rocío Márquez"] == "nuevo"


@pytest.mark.asyncio
async def test_run_can_leave_artist_discovery_off(settings, monkeypatch):
    _offline(monkeypatch)
    scheduler = ArtistScheduler(Settings(store_uri=settings.store_uri, google_api_key="g", google_cx="cx",
                                         openai_api_key="sk", discover_from_events=False))
    scheduler.add_artist("Tomatito")

    summary = await scheduler.run()

    assert summary.artists_discovered == 0
    assert [a["name"] for a in scheduler.list_artists()] == ["Tomatito"]


@pytest.mark.asyncio
async def test_cli_discover(clean_env, tmp_path, capsys):
    _offline(clean_env)
    clean_env.setenv("MONGO_URI", f"sqlite:///{tmp_path / 'cli.db'}")
    assert await main(["--action", "discover"]) == 1

    for name, value in (("GOOGLE_API_KEY", "g"), ("GOOGLE_CX", "cx"), ("OPENAI_API_KEY", "sk")):
        clean_env.setenv(name, value)
    assert await main(["--action", "discover"]) == 0
    assert "Discovery complete" in capsys.readouterr().out
