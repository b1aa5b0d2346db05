"""
Live board client: polls GET /transit/board and keeps a countdown ticking.

Two timers share one AsyncIOScheduler:
  board_fetch     every 30 s — fetch the snapshot and reconcile it
  countdown_tick  every 1 s  — re-render countdowns from the rows already held

Run it against a local API with `python -m board.live` (LIVE_BOARD_URL,
LIVE_BOARD_MODE).  The countdown never touches the network.  A failed fetch
is logged and the previous rows stay on screen until the next successful poll.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from board.reconciler import BoardReconciler, ClientRow
from legs.errors import InvalidTimeFormat
from legs.timewindow import effective_departure, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

FETCH_JOB_ID = "board_fetch"
TICK_JOB_ID = "countdown_tick"

Renderer = Callable[[list[ClientRow], datetime], Any]


def format_countdown(row: ClientRow, now: datetime) -> str:
    """'12 min', 'now', or 'departed' for the row's effective departure."""
    try:
        departure = effective_departure(
            parse_timestamp(row.leg.get("dep_est_at")),
            parse_timestamp(row.leg.get("dep_sched_at")),
        )
    except InvalidTimeFormat:
        return ""
    if departure is None:
        return ""
    seconds = (departure - now).total_seconds()
    if seconds < 0:
        return "departed"
    if seconds < 60:
        return "now"
    return f"{int(seconds // 60)} min"


def log_renderer(rows: list[ClientRow], now: datetime) -> None:
    for row in rows:
        logger.info(
            "%-10s %-30s %s%s",
            row.leg.get("route") or "",
            row.leg.get("headsign") or "",
            format_countdown(row, now),
            " [+]" if row.expanded else "",
        )


class LiveBoard:
    def __init__(
        self,
        base_url: str,
        mode: str | None = None,
        render: Renderer = log_renderer,
        fetch_seconds: int = 30,
        tick_seconds: int = 1,
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.mode = mode
        self.render = render
        self.fetch_seconds = fetch_seconds
        self.tick_seconds = tick_seconds
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self.clock = clock
        self.reconciler = BoardReconciler()
        self.scheduler = AsyncIOScheduler()

    @property
    def rows(self) -> list[ClientRow]:
        return self.reconciler.rows

    async def refresh(self) -> bool:
        """Fetch one snapshot and reconcile it.  Returns False when the fetch failed or was stale."""
        seq = self.reconciler.begin_fetch()
        params = {"mode": self.mode} if self.mode else None
        try:
            response = await self.client.get("/transit/board", params=params)
            response.raise_for_status()
            departures = response.json()["departures"]
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            logger.warning("Board fetch failed; keeping %d rows: %s", len(self.rows), exc)
            return False
        applied = self.reconciler.apply(seq, departures)
        if applied:
            self.tick()
        return applied

    def tick(self) -> None:
        self.render(self.rows, self.clock())

    def toggle(self, leg_id: int) -> bool:
        expanded = self.reconciler.toggle(leg_id)
        self.tick()
        return expanded

    async def start(self) -> None:
        self.scheduler.add_job(
            self.refresh,
            "interval",
            seconds=self.fetch_seconds,
            id=FETCH_JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.tick,
            "interval",
            seconds=self.tick_seconds,
            id=TICK_JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info("Live board started (fetch every %ds).", self.fetch_seconds)
        await self.refresh()

    async def stop(self) -> None:
        for job_id in (FETCH_JOB_ID, TICK_JOB_ID):
            if self.scheduler.get_job(job_id):
                self.scheduler.remove_job(job_id)
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            # AsyncIOScheduler queues the shutdown on the loop; let it run
            await asyncio.sleep(0)
        await self.client.aclose()
        logger.info("Live board stopped.")

    async def run(self, until: asyncio.Event | None = None) -> None:
        """Start both timers and keep them running until `until` is set (or the task is cancelled)."""
        await self.start()
        try:
            await (until or asyncio.Event()).wait()
        finally:
            await self.stop()


if __name__ == "__main__":
    from config import LIVE_BOARD_MODE, LIVE_BOARD_URL

    logging.basicConfig(level=logging.INFO)
    try:
        asyncio.run(LiveBoard(LIVE_BOARD_URL, mode=LIVE_BOARD_MODE or None).run())
    except KeyboardInterrupt:
        logger.info("Interrupted.")
