"""
Source capability shared by every feed.

The ingestion pipeline only knows this interface: a source says whether it is
configured, and turns one fetch into a list of NormalizedLeg.  Parsing never
raises past the source boundary: unusable records are dropped and counted on
the ParseContext, and a failing monitored entity is logged and skipped.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from legs.errors import FetchError
from legs.timewindow import utcnow
from legs.types import NormalizedLeg

logger = logging.getLogger(__name__)


@dataclass
class ParseContext:
    now: datetime = field(default_factory=utcnow)
    dropped: int = 0            # records that could not be normalized
    failed_fetches: int = 0     # monitored entities (or whole feeds) that failed

    def drop(self, reason: str, *args: Any) -> None:
        self.dropped += 1
        logger.debug("Dropped record: " + reason, *args)


def block(value: Any) -> dict[str, Any]:
    """A nested JSON object, or {} when the upstream sent null/a scalar/a list instead."""
    return value if isinstance(value, dict) else {}


class LegSource(ABC):
    name: str

    @abstractmethod
    def is_configured(self) -> bool:
        """True when credentials/entities are present so fetching makes sense."""

    @abstractmethod
    async def fetch_legs(self, client: httpx.AsyncClient, context: ParseContext) -> list[NormalizedLeg]:
        """Fetch and parse one cycle's worth of legs."""


class RestPollSource(LegSource):
    """
    A source polled once per monitored entity (airport, stop) per cycle.

    A failure for one entity, whether its fetch or the shape of its payload,
    is logged and skipped; the remaining entities are still fetched.
    """

    @abstractmethod
    def entities(self) -> Iterable[str]:
        ...

    @abstractmethod
    async def fetch_entity(self, client: httpx.AsyncClient, entity: str) -> dict[str, Any]:
        """Return the decoded JSON payload for one entity. Raises FetchError."""

    @abstractmethod
    def parse(self, payload: dict[str, Any], context: ParseContext) -> list[NormalizedLeg]:
        ...

    async def fetch_legs(self, client: httpx.AsyncClient, context: ParseContext) -> list[NormalizedLeg]:
        entities = list(self.entities())
        if not entities:
            logger.warning("%s: no monitored entities configured.", self.name)
            return []

        legs: list[NormalizedLeg] = []
        for entity in entities:
            try:
                payload = await self.fetch_entity(client, entity)
            except FetchError as exc:
                context.failed_fetches += 1
                logger.error("%s", exc)
                continue
            try:
                parsed = self.parse(payload, context)
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                context.failed_fetches += 1
                logger.error("%s: unusable payload for %s: %s", self.name, entity, exc, exc_info=True)
                continue
            logger.info("%s: %d legs from %s.", self.name, len(parsed), entity)
            legs.extend(parsed)
        return legs

    async def get_json(
        self,
        client: httpx.AsyncClient,
        entity: str,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """GET a JSON document, translating transport/status/decoding failures to FetchError."""
        try:
            response = await client.get(url, params=params, headers=headers)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise FetchError(
                self.name, entity, f"HTTP {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise FetchError(self.name, entity, str(exc) or type(exc).__name__) from exc
        if not isinstance(payload, dict):
            raise FetchError(self.name, entity, f"expected a JSON object, got {type(payload).__name__}")
        return payload
