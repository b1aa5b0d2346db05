"""
Error taxonomy for ingestion and serving.

None of these are process-fatal: each is caught at the narrowest scope that
still lets the rest of the batch (or query) complete.
"""


class TransitTrackerError(Exception):
    """Base class for all tracker errors."""


class ParseError(TransitTrackerError):
    """An upstream record could not be normalized; the record is dropped."""


class InvalidTimeFormat(ParseError, ValueError):
    """A GTFS HH:MM:SS string or ISO-8601 timestamp could not be parsed."""


class FetchError(TransitTrackerError):
    """A network/API call for one source or monitored entity failed."""

    def __init__(self, source: str, entity: str, message: str) -> None:
        super().__init__(f"{source} fetch failed for {entity}: {message}")
        self.source = source
        self.entity = entity


class MergeError(TransitTrackerError):
    """Persisting one leg failed."""

    def __init__(self, trip_id: str, service_date: str, message: str) -> None:
        super().__init__(f"merge failed for trip {trip_id} on {service_date}: {message}")
        self.trip_id = trip_id
        self.service_date = service_date


class ConfigurationMissing(TransitTrackerError):
    """A whole-operation precondition (e.g. category mapping) is not configured."""
