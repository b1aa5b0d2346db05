"""
Ingestion cycle: fetch every configured source, then resolve and merge each
leg into the store.

Fetching is concurrent (one shared httpx client); merging is a single
sequential loop with one commit per leg, so a bad leg rolls back alone and the
rest of the batch still lands.  Only one cycle runs per process at a time; an
overlapping call is rejected rather than queued.
"""

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass
from datetime import datetime

import httpx
from sqlalchemy.orm import Session

from config import TrackerConfig
from db.store import LegStore
from ingestion.aviationstack import AviationstackSource
from ingestion.base import LegSource, ParseContext
from ingestion.golemio import GolemioSource
from ingestion.gtfs_static import GtfsStaticSource
from legs.merge import MergeEngine
from legs.timewindow import utcnow
from legs.types import NormalizedLeg

logger = logging.getLogger(__name__)

# One cycle per process; the check and the acquire happen with no await between them
_cycle_lock = asyncio.Lock()


@dataclass
class IngestStats:
    processed: int = 0
    created: int = 0
    updated: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def build_sources(config: TrackerConfig) -> list[LegSource]:
    return [GtfsStaticSource(config), AviationstackSource(config), GolemioSource(config)]


class IngestionPipeline:
    def __init__(
        self,
        config: TrackerConfig,
        session_factory: Callable[[], Session],
        sources: Iterable[LegSource] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config
        self.session_factory = session_factory
        self.sources = list(sources) if sources is not None else build_sources(config)
        self.clock = clock

    @property
    def source_names(self) -> list[str]:
        return [s.name for s in self.sources]

    async def run_source(self, name: str) -> IngestStats:
        """Run a cycle restricted to one source.  Raises ValueError for an unknown name."""
        if name not in self.source_names:
            raise ValueError(f"unknown source {name!r}; expected one of {self.source_names}")
        return await self.run_cycle([name])

    async def run_cycle(self, source_names: Iterable[str] | None = None) -> IngestStats:
        stats = IngestStats()
        if not self.config.enabled:
            logger.info("Transit tracker disabled; skipping ingestion cycle.")
            return stats
        if not self.config.categories:
            logger.warning("No leg categories configured; skipping ingestion cycle.")
            return stats

        if _cycle_lock.locked():
            logger.warning("Ingestion cycle already running; rejecting overlapping run.")
            return stats
        async with _cycle_lock:
            wanted = set(source_names) if source_names is not None else None
            sources = [
                s for s in self.sources
                if (wanted is None or s.name in wanted) and self._configured(s)
            ]
            legs = await self._fetch_all(sources, stats)
            self._merge_all(legs, stats)

        logger.info(
            "Ingestion cycle complete: %d processed, %d created, %d updated, %d errors.",
            stats.processed, stats.created, stats.updated, stats.errors,
        )
        return stats

    @staticmethod
    def _configured(source: LegSource) -> bool:
        if source.is_configured():
            return True
        logger.info("%s not configured; skipping.", source.name)
        return False

    async def _fetch_all(self, sources: list[LegSource], stats: IngestStats) -> list[NormalizedLeg]:
        if not sources:
            return []
        contexts = [ParseContext(now=self.clock()) for _ in sources]
        async with httpx.AsyncClient(timeout=self.config.http_timeout_seconds) as client:
            results = await asyncio.gather(
                *(source.fetch_legs(client, ctx) for source, ctx in zip(sources, contexts)),
                return_exceptions=True,
            )

        legs: list[NormalizedLeg] = []
        for source, ctx, result in zip(sources, contexts, results):
            stats.errors += ctx.dropped + ctx.failed_fetches
            if isinstance(result, BaseException):
                stats.errors += 1
                logger.error("%s fetch failed: %s", source.name, result, exc_info=result)
                continue
            logger.info(
                "%s: fetched %d legs (%d dropped, %d failed fetches).",
                source.name, len(result), ctx.dropped, ctx.failed_fetches,
            )
            legs.extend(result)
        return legs

    def _merge_all(self, legs: list[NormalizedLeg], stats: IngestStats) -> None:
        session = self.session_factory()
        try:
            engine = MergeEngine(LegStore(session), self.config, clock=self.clock)
            for leg in legs:
                stats.processed += 1
                try:
                    _, created = engine.create_or_update(leg)
                    session.commit()
                except Exception as exc:
                    session.rollback()
                    stats.errors += 1
                    logger.error(
                        "Failed to merge %s leg %s (%s): %s",
                        leg.mode.value, leg.trip_id, leg.service_date, exc, exc_info=True,
                    )
                    continue
                if created:
                    stats.created += 1
                else:
                    stats.updated += 1
        finally:
            session.close()
