from dataclasses import dataclass, field
from pathlib import Path
from dotenv import load_dotenv
import os

load_dotenv()

BASE_DIR = Path(__file__).parent

# Data directory (gitignored)
DATA_DIR = BASE_DIR / "data"
DATA_DIR.mkdir(exist_ok=True)


def _csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


# Database
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DATA_DIR}/transit_board.db")

# Master switch — when false the ingestion cycle is a no-op
TRANSIT_TRACKER_ENABLED: bool = os.getenv("TRANSIT_TRACKER_ENABLED", "true").lower() == "true"

# Golemio (Prague PID departure boards) — https://api.golemio.cz/docs/openapi/
GOLEMIO_API_TOKEN: str = os.getenv("GOLEMIO_API_TOKEN", "")
GOLEMIO_BASE_URL: str = os.getenv("GOLEMIO_BASE_URL", "https://api.golemio.cz/v2")
MONITORED_STOPS: list[str] = _csv(os.getenv("MONITORED_STOPS", ""))

# AviationStack (flight status) — appended as ?access_key= on each request
AVIATIONSTACK_API_KEY: str = os.getenv("AVIATIONSTACK_API_KEY", "")
AVIATIONSTACK_BASE_URL: str = os.getenv("AVIATIONSTACK_BASE_URL", "http://api.aviationstack.com/v1")
MONITORED_AIRPORTS: list[str] = _csv(os.getenv("MONITORED_AIRPORTS", ""))

# GTFS static (MTA subway export)
GTFS_STATIC_URL: str = os.getenv(
    "GTFS_STATIC_URL", "http://web.mta.info/developers/data/nyct/subway/google_transit.zip"
)
GTFS_WINDOW_HOURS: int = int(os.getenv("GTFS_WINDOW_HOURS", "2"))
GTFS_BATCH_SIZE: int = int(os.getenv("GTFS_BATCH_SIZE", "50"))
GTFS_CHUNK_ROWS: int = int(os.getenv("GTFS_CHUNK_ROWS", "100000"))

# Status derivation
DELAY_THRESHOLD_SECONDS: int = int(os.getenv("DELAY_THRESHOLD_SECONDS", "60"))

# Scheduling
POLL_INTERVAL_MINUTES: int = int(os.getenv("POLL_INTERVAL_MINUTES", "5"))
RETENTION_HOURS: int = int(os.getenv("RETENTION_HOURS", "48"))
HTTP_TIMEOUT_SECONDS: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "15"))

# Board
TIME_WINDOW_MINUTES: int = int(os.getenv("TIME_WINDOW_MINUTES", "120"))
BOARD_WINDOW_MODE: str = os.getenv("BOARD_WINDOW_MODE", "absolute")  # absolute | time_of_day
BOARD_WINDOW_HOURS: int = int(os.getenv("BOARD_WINDOW_HOURS", "24"))
BOARD_ROUTE_CAP: int = int(os.getenv("BOARD_ROUTE_CAP", "5"))
BOARD_FLAT_LIMIT: int = int(os.getenv("BOARD_FLAT_LIMIT", "200"))
BOARD_FAIR_MODES: list[str] = _csv(os.getenv("BOARD_FAIR_MODES", "metro"))

# Category mapping (0 = unset)
PLANES_CATEGORY_ID: int = int(os.getenv("PLANES_CATEGORY_ID", "0"))
TRAINS_CATEGORY_ID: int = int(os.getenv("TRAINS_CATEGORY_ID", "0"))
PUBLIC_TRANSIT_CATEGORY_ID: int = int(os.getenv("PUBLIC_TRANSIT_CATEGORY_ID", "0"))

# API
API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
API_PORT: int = int(os.getenv("API_PORT", "8000"))
INGEST_API_KEY: str = os.getenv("INGEST_API_KEY", "")
CORS_ORIGINS: list[str] = _csv(os.getenv("CORS_ORIGINS", "*"))

# Live board client (python -m board.live)
LIVE_BOARD_URL: str = os.getenv("LIVE_BOARD_URL", f"http://localhost:{API_PORT}")
LIVE_BOARD_MODE: str = os.getenv("LIVE_BOARD_MODE", "")  # empty = every mode


@dataclass(frozen=True)
class TrackerConfig:
    """
    Explicit configuration handed to the ingestion pipeline and board query.

    Built from the environment with TrackerConfig.from_env(); tests construct
    it directly with whatever overrides they need.
    """

    enabled: bool = True
    delay_threshold_seconds: int = 60

    golemio_api_token: str = ""
    golemio_base_url: str = "https://api.golemio.cz/v2"
    monitored_stops: tuple[str, ...] = ()

    aviationstack_api_key: str = ""
    aviationstack_base_url: str = "http://api.aviationstack.com/v1"
    monitored_airports: tuple[str, ...] = ()

    gtfs_static_url: str = ""
    gtfs_window_hours: int = 2
    gtfs_batch_size: int = 50
    gtfs_chunk_rows: int = 100_000

    time_window_minutes: int = 120
    board_window_mode: str = "absolute"
    board_window_hours: int = 24
    board_route_cap: int = 5
    board_flat_limit: int = 200
    board_fair_modes: frozenset[str] = frozenset({"metro"})

    # mode → category id; modes missing here have no category
    categories: dict[str, int] = field(default_factory=dict)

    http_timeout_seconds: float = 15.0

    @classmethod
    def from_env(cls) -> "TrackerConfig":
        public = PUBLIC_TRANSIT_CATEGORY_ID
        categories = {
            "flight": PLANES_CATEGORY_ID,
            "train": TRAINS_CATEGORY_ID,
            "tram": public,
            "bus": public,
            "metro": public,
        }
        return cls(
            enabled=TRANSIT_TRACKER_ENABLED,
            delay_threshold_seconds=DELAY_THRESHOLD_SECONDS,
            golemio_api_token=GOLEMIO_API_TOKEN,
            golemio_base_url=GOLEMIO_BASE_URL,
            monitored_stops=tuple(MONITORED_STOPS),
            aviationstack_api_key=AVIATIONSTACK_API_KEY,
            aviationstack_base_url=AVIATIONSTACK_BASE_URL,
            monitored_airports=tuple(MONITORED_AIRPORTS),
            gtfs_static_url=GTFS_STATIC_URL,
            gtfs_window_hours=GTFS_WINDOW_HOURS,
            gtfs_batch_size=GTFS_BATCH_SIZE,
            gtfs_chunk_rows=GTFS_CHUNK_ROWS,
            time_window_minutes=TIME_WINDOW_MINUTES,
            board_window_mode=BOARD_WINDOW_MODE,
            board_window_hours=BOARD_WINDOW_HOURS,
            board_route_cap=BOARD_ROUTE_CAP,
            board_flat_limit=BOARD_FLAT_LIMIT,
            board_fair_modes=frozenset(BOARD_FAIR_MODES),
            categories={mode: cid for mode, cid in categories.items() if cid},
            http_timeout_seconds=HTTP_TIMEOUT_SECONDS,
        )

    def category_for(self, mode: str) -> int | None:
        """Category id for a mode, or None when the mapping is not configured."""
        return self.categories.get(mode)

    @property
    def category_ids(self) -> list[int]:
        return sorted(set(self.categories.values()))
