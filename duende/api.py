"""
FastAPI trigger for periodic runs (cron, uptime pinger, or a manual call)
"""
import logging
from typing import List, Dict, Any

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse

from duende.config import Settings, ConfigurationError, load_environment, configure_logging
from duende.scheduler import ArtistScheduler
from duende.scraper.queue import QueueError
from duende.scraper.store import StoreError

logger = logging.getLogger(__name__)


def default_scheduler_factory() -> ArtistScheduler:
    load_environment()
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    return ArtistScheduler(settings)


app = FastAPI(title="Duende Finder")
# swapped out in tests
app.state.scheduler_factory = default_scheduler_factory

# -------------------- API Endpoints --------------------

@app.get("/")
def read_root():
    """API health check"""
    return {"status": "healthy", "service": "Duende Finder"}

@app.api_route("/api/run", methods=["GET", "POST"])
async def trigger_run():
    """
    Run one rotation batch to completion and report what it did.

    Zero new events is still a success; only configuration and store/queue
    connectivity failures answer 500.
    """
    return await _run_action("run", "[RUN]")

@app.api_route("/api/discover", methods=["GET", "POST"])
async def trigger_discovery():
    """Scout for new artists; they are stored for review and not rotated until approved."""
    return await _run_action("discover", "[DISCOVERY]")

async def _run_action(action: str, tag: str):
    try:
        scheduler = app.state.scheduler_factory()
        summary = await getattr(scheduler, action)()
    except (ConfigurationError, StoreError, QueueError) as e:
        logger.error(f"{tag} Failed: {type(e).__name__}: {e}")
        return JSONResponse(status_code=500, content={"status": "error", "message": str(e)})
    except Exception as e:
        logger.exception(f"{tag} Unexpected failure")
        return JSONResponse(status_code=500, content={"status": "error", "message": str(e)})

    return {"status": "success", "message": summary.message(), **summary.to_dict()}

@app.get("/api/artists")
def get_artists() -> List[Dict[str, Any]]:
    """All tracked artists with their last processing time"""
    try:
        return app.state.scheduler_factory().list_artists()
    except (ConfigurationError, StoreError) as e:
        raise HTTPException(status_code=500, detail=str(e))

@app.get("/api/events")
def get_events(limit: int = Query(100, ge=1, le=1000, description="Maximum number of events")) -> List[Dict[str, Any]]:
    """Upcoming events, soonest first"""
    try:
        return app.state.scheduler_factory().upcoming_events(limit=limit)
    except (ConfigurationError, StoreError) as e:
        raise HTTPException(status_code=500, detail=str(e))

# -------------------- Run the API --------------------

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
