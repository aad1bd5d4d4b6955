"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
from datetime import date
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool
from typing import Any, AsyncGenerator, Dict, List, Optional
from core.exceptions import SourceUnavailableError
from ingestion.base import SourceConnector
from models.base import Base, EntityType, EventState
from models.canonical import Event, Venue, Artist
import models.raw_record  # noqa: F401
import models.links  # noqa: F401
import models.state_transition  # noqa: F401
import models.sync_job  # noqa: F401
from models.raw_record import RawRecord
from schemas.source import compute_content_hash


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """SQLite test database in a temporary file (one per test)"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        poolclass=NullPool,  # Disable connection pooling for tests
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables after test
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    """Session factory bound to the test database (for the orchestrator)"""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# Record builders
# ============================================================================

async def add_raw(
    session: AsyncSession,
    entity_type: EntityType,
    source: str,
    source_id: str,
    data: Dict[str, Any],
    label_field: str = None,
) -> RawRecord:
    """Insert a raw record as the loader would"""
    label_field = label_field or ("title" if entity_type == EntityType.EVENT else "name")
    raw = RawRecord(
        entity_type=entity_type,
        source=source,
        source_id=source_id,
        label=data.get(label_field) or "",
        city=data.get("city"),
        data=data,
        content_hash=compute_content_hash(data),
        version=1,
    )
    session.add(raw)
    await session.flush()
    return raw


async def add_event(session: AsyncSession, **values) -> Event:
    values.setdefault("title", "Klubnacht")
    values.setdefault("date", date(2030, 6, 1))
    values.setdefault("city", "Berlin")
    values.setdefault("state", EventState.SCRAPED_DRAFT)
    event = Event(**values)
    session.add(event)
    await session.flush()
    return event


async def add_venue(session: AsyncSession, **values) -> Venue:
    values.setdefault("name", "Berghain")
    values.setdefault("city", "Berlin")
    venue = Venue(**values)
    session.add(venue)
    await session.flush()
    return venue


async def add_artist(session: AsyncSession, **values) -> Artist:
    values.setdefault("name", "Nina Kraviz")
    artist = Artist(**values)
    session.add(artist)
    await session.flush()
    return artist


# ============================================================================
# Fake connectors
# ============================================================================

class FakeConnector(SourceConnector):
    """Serves canned payloads keyed by (city, entity type)"""

    def __init__(self, source: str, payloads: Optional[Dict[str, Dict[EntityType, List[Dict[str, Any]]]]] = None):
        self.source = source
        self.payloads = payloads or {}
        self.calls: List[tuple] = []

    async def fetch(self, city: str, entity_type: EntityType) -> List[Dict[str, Any]]:
        self.calls.append((city, entity_type))
        return list(self.payloads.get(city, {}).get(entity_type, []))


class FailingConnector(SourceConnector):
    """Always unreachable"""

    def __init__(self, source: str):
        self.source = source

    async def fetch(self, city: str, entity_type: EntityType) -> List[Dict[str, Any]]:
        raise SourceUnavailableError(
            f"{self.source} is down",
            context={"source": self.source, "city": city, "status_code": 503}
        )


@pytest.fixture
def berlin_payloads():
    """Two sources listing the same night at Berghain"""
    return {
        "ra": {
            "berlin": {
                EntityType.VENUE: [
                    {"id": "v-1", "name": "Berghain", "address": "Am Wriezener Bahnhof, 10243 Berlin", "city": "Berlin"},
                ],
                EntityType.ARTIST: [
                    {"id": "a-1", "name": "Nina Kraviz", "country": "RU"},
                ],
                EntityType.EVENT: [
                    {
                        "id": "e-1",
                        "title": "Nina Kraviz at Berghain",
                        "date": "2030-06-01T23:00:00",
                        "start_time": "2030-06-01T23:00:00",
                        "venue": "Berghain",
                        "venue_city": "Berlin",
                        "lineup": [{"name": "Nina Kraviz"}],
                    },
                ],
            }
        },
        "tm": {
            "berlin": {
                EntityType.VENUE: [
                    {"id": "tm-v-9", "name": "BERGHAIN", "city": "Berlin", "lat": 52.511, "lng": 13.443},
                ],
                EntityType.ARTIST: [],
                EntityType.EVENT: [
                    {
                        "id": "tm-e-7",
                        "name": "NINA KRAVIZ AT BERGHAIN",
                        "date": "2030-06-01",
                        "venue_name": "Berghain",
                        "city": "Berlin",
                        "ticket_url": "https://tickets.example.com/e/7",
                        "artists": "Nina Kraviz",
                    },
                ],
            }
        },
    }
