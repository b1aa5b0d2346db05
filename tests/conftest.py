"""
Shared fixtures: an in-memory leg store, a fully-categorised TrackerConfig and
a NormalizedLeg factory.
"""

from datetime import date, datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import TrackerConfig
from db.models import Base
from db.store import LegStore
from legs.types import Mode, NormalizedLeg

CATEGORIES = {"flight": 1, "train": 2, "tram": 3, "bus": 3, "metro": 3}


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def db_engine():
    """
    StaticPool is required so that create_all and every session share the
    same single connection — otherwise each pool checkout gets a new
    in-memory DB that has no tables.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def store(db_session):
    return LegStore(db_session)


@pytest.fixture
def config():
    return TrackerConfig(categories=dict(CATEGORIES))


@pytest.fixture
def make_leg():
    def _make(**overrides) -> NormalizedLeg:
        values = dict(
            mode=Mode.FLIGHT,
            trip_id="AA100-2025-10-06T14:00:00+00:00",
            service_date=date(2025, 10, 6),
            source="aviationstack",
            origin_code="JFK",
            origin_name="John F Kennedy International",
            dest_code="LHR",
            dest_name="Heathrow",
            headsign="Heathrow",
            dep_scheduled=datetime(2025, 10, 6, 14, 0, tzinfo=timezone.utc),
            route_short_name="AA100",
        )
        values.update(overrides)
        return NormalizedLeg(**values)

    return _make
