"""
FastAPI application entry point.

On startup:
  1. Initialise the database schema.
  2. Start the APScheduler:
       - Ingestion cycle over every configured source
         (every POLL_INTERVAL_MINUTES, default 5).
       - Housekeeping purge of legs departed more than RETENTION_HOURS ago
         (hourly).
     Both jobs run with max_instances=1 / coalesce=True, so a slow cycle is
     never stacked on top of itself.

Endpoints:
  GET  /transit/board?mode=<flight|train|tram|bus|metro>
  GET  /transit/proxy?ids=<stop_id>&minutesBefore=&minutesAfter=&limit=
  GET  /health
  POST /ingest/all
  POST /ingest/{source}        (mta | aviationstack | golemio)
"""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import APIKeyHeader
from sqlalchemy import func
from sqlalchemy.orm import Session

from api.schemas import BoardResponse, HealthResponse, IngestResponse
from board.query import BoardQuery
from config import (
    API_HOST, API_PORT, CORS_ORIGINS, INGEST_API_KEY, POLL_INTERVAL_MINUTES, RETENTION_HOURS, TrackerConfig,
)
from db.models import LegRecord
from db.session import SessionLocal, get_session, init_db, session_scope
from db.store import LegStore
from ingestion.pipeline import IngestionPipeline
from legs.timewindow import to_iso, utcnow
from legs.types import Mode

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

INGEST_JOB_ID = "ingestion_cycle"
PURGE_JOB_ID = "purge_departed"

# Golemio departure-board parameters the proxy passes through; nothing else is forwarded
PROXY_ALLOWED_PARAMS = ("ids", "minutesBefore", "minutesAfter", "limit")

tracker_config = TrackerConfig.from_env()
pipeline = IngestionPipeline(tracker_config, SessionLocal)

_ingest_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def _require_ingest_key(key: str | None = Security(_ingest_key_header)) -> None:
    """
    Optional API-key guard for the ingest endpoints.

    If INGEST_API_KEY is not set the endpoints are open (local dev / testing).
    If it is set, the request must include the matching X-API-Key header.
    """
    if not INGEST_API_KEY:
        return  # no key configured → open
    if key != INGEST_API_KEY:
        raise HTTPException(status_code=401, detail="Invalid or missing X-API-Key header.")


def get_config() -> TrackerConfig:
    return tracker_config


def get_pipeline() -> IngestionPipeline:
    return pipeline


async def get_http_client() -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(timeout=tracker_config.http_timeout_seconds) as client:
        yield client


async def _scheduled_ingest() -> None:
    """
    Scheduled job: one ingestion cycle over every configured source.

    Exceptions are caught and logged so a transient failure cannot crash the
    scheduler process.
    """
    try:
        await pipeline.run_cycle()
    except Exception as exc:
        logger.error("Scheduled ingestion cycle failed: %s", exc, exc_info=True)


def _purge_departed() -> None:
    """Scheduled job: delete legs whose scheduled departure is older than RETENTION_HOURS."""
    cutoff = utcnow() - timedelta(hours=RETENTION_HOURS)
    try:
        with session_scope() as session:
            deleted = LegStore(session).delete_departed_before(cutoff)
            session.commit()
        if deleted:
            logger.info("Housekeeping: purged %d departed legs.", deleted)
    except Exception as exc:
        logger.error("Housekeeping purge failed: %s", exc, exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    init_db()
    logger.info("Database initialised.")

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        _scheduled_ingest,
        "interval",
        minutes=POLL_INTERVAL_MINUTES,
        id=INGEST_JOB_ID,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        _purge_departed,
        "interval",
        hours=1,
        id=PURGE_JOB_ID,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info(
        "Scheduler started. Ingestion every %dm, purge after %dh.",
        POLL_INTERVAL_MINUTES, RETENTION_HOURS,
    )

    yield

    # Shutdown
    if scheduler.running:
        scheduler.shutdown(wait=False)


app = FastAPI(
    title="Transit Departure Board",
    description="Merged live departures for flights, trains, trams, buses and metro.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.get("/health", response_model=HealthResponse)
async def health(
    request: Request,
    session: Session = Depends(get_session),
    config: TrackerConfig = Depends(get_config),
) -> HealthResponse:
    """
    Liveness + data-freshness check.

    Returns the stored leg count, the most recent leg update and the next
    scheduled runs so operators can tell whether ingestion is keeping up.
    """
    leg_count: int = session.query(func.count(LegRecord.id)).scalar() or 0
    last_updated = session.query(func.max(LegRecord.updated_at)).scalar()

    scheduler: AsyncIOScheduler | None = getattr(request.app.state, "scheduler", None)

    def next_run(job_id: str) -> str | None:
        job = scheduler.get_job(job_id) if scheduler else None
        if job and job.next_run_time:
            return job.next_run_time.isoformat()
        return None

    return {
        "status": "ok",
        "timestamp": to_iso(utcnow()),
        "enabled": config.enabled,
        "legs": {
            "count": leg_count,
            "last_updated_at": to_iso(last_updated),
        },
        "scheduler": {
            "running": bool(scheduler and scheduler.running),
            "next_ingest_at": next_run(INGEST_JOB_ID),
            "next_purge_at": next_run(PURGE_JOB_ID),
        },
    }


@app.get("/transit/board", response_model=BoardResponse)
async def transit_board(
    mode: Mode | None = Query(None, description="Restrict the board to one mode"),
    session: Session = Depends(get_session),
    config: TrackerConfig = Depends(get_config),
) -> BoardResponse:
    """
    The live departure board: legs within the freshness window, capped per
    route for busy modes, ordered by effective departure.
    """
    departures = BoardQuery(LegStore(session), config).query(mode.value if mode else None)
    return {"departures": departures}


@app.get("/transit/proxy")
async def transit_proxy(
    request: Request,
    config: TrackerConfig = Depends(get_config),
    client: httpx.AsyncClient = Depends(get_http_client),
) -> Any:
    """
    Pass-through to the Golemio departure boards for clients that cannot hold
    the API token.  Only PROXY_ALLOWED_PARAMS are forwarded.
    """
    if not config.enabled:
        raise HTTPException(status_code=403, detail="Not enabled")
    if not request.query_params.get("ids"):
        raise HTTPException(status_code=400, detail="Missing stop IDs")

    params = {
        name: request.query_params[name]
        for name in PROXY_ALLOWED_PARAMS
        if request.query_params.get(name)
    }
    try:
        response = await client.get(
            f"{config.golemio_base_url.rstrip('/')}/pid/departureboards",
            params=params,
            headers={"X-Access-Token": config.golemio_api_token, "Content-Type": "application/json"},
        )
        response.raise_for_status()
        return response.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.error("Proxy request failed: %s", exc)
        raise HTTPException(status_code=502, detail="API request failed")


@app.post("/ingest/all", response_model=IngestResponse)
async def trigger_ingest_all(
    ingestion: IngestionPipeline = Depends(get_pipeline),
    _: None = Depends(_require_ingest_key),
) -> IngestResponse:
    """Manually run one ingestion cycle over every configured source."""
    stats = await ingestion.run_cycle()
    return stats.as_dict()


@app.post("/ingest/{source}", response_model=IngestResponse)
async def trigger_ingest_source(
    source: str,
    ingestion: IngestionPipeline = Depends(get_pipeline),
    _: None = Depends(_require_ingest_key),
) -> IngestResponse:
    """Manually run an ingestion cycle restricted to one source."""
    try:
        stats = await ingestion.run_source(source)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return stats.as_dict()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host=API_HOST, port=API_PORT)
