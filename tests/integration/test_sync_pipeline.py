"""
Integration tests for the sync orchestrator: job lock, lease, pipeline and failure isolation
"""

import asyncio
import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch
from sqlalchemy import select, func
from conftest import FakeConnector, FailingConnector
from ingestion.orchestrator import SyncOrchestrator
from models.base import EntityType, EventState
from models.canonical import Artist, Event, Venue, event_artists
from models.raw_record import RawRecord
from models.sync_job import SourceRun, SyncJob
from reconciliation.linker import Linker


def make_orchestrator(session_factory, connectors, **kwargs):
    kwargs.setdefault("inter_city_delay", 0)
    kwargs.setdefault("parallel", False)
    return SyncOrchestrator(session_factory=session_factory, connectors=connectors, **kwargs)


async def count(session_factory, model):
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar()


async def wait_until_finished(orchestrator, job_id, attempts=200):
    for _ in range(attempts):
        job = await orchestrator.get_job(job_id)
        if job["status"] != "running":
            return job
        await asyncio.sleep(0.05)
    raise AssertionError(f"Sync job {job_id} did not finish")


async def add_stale_job(session_factory, age=timedelta(hours=2)):
    stale_at = datetime.utcnow() - age
    async with session_factory() as session:
        job = SyncJob(
            status="running",
            phase="scrape",
            cities=["berlin"],
            sources=["ra"],
            started_at=stale_at,
            heartbeat_at=stale_at,
        )
        session.add(job)
        await session.commit()
        return job.id


# ============================================================================
# Job lock
# ============================================================================

@pytest.mark.asyncio
async def test_second_trigger_returns_running_job(session_factory, berlin_payloads):
    """
    Test: Triggering a sync while one is running returns the running job and
    starts nothing new
    """
    connector = FakeConnector("ra", berlin_payloads["ra"])
    orchestrator = make_orchestrator(session_factory, {"ra": connector})

    first, started = await orchestrator.trigger_sync(cities=["berlin"])
    second, started_again = await orchestrator.trigger_sync(cities=["berlin"])

    assert started is True
    assert started_again is False
    assert second["job_id"] == first["job_id"]
    assert second["status"] == "running"
    assert await count(session_factory, SyncJob) == 1
    assert connector.calls == []


@pytest.mark.asyncio
async def test_start_sync_while_running_creates_no_task(session_factory, berlin_payloads):
    """Test: The background variant also refuses to start a second job"""
    connector = FakeConnector("ra", berlin_payloads["ra"])
    orchestrator = make_orchestrator(session_factory, {"ra": connector})
    await orchestrator.trigger_sync(cities=["berlin"])

    snapshot, started = await orchestrator.start_sync(cities=["berlin"])
    await asyncio.sleep(0.05)

    assert started is False
    assert snapshot["status"] == "running"
    assert connector.calls == []


@pytest.mark.asyncio
async def test_expired_lease_releases_the_lock(session_factory):
    """Test: A running job without heartbeat beyond the lease no longer blocks"""
    stale_id = await add_stale_job(session_factory)
    orchestrator = make_orchestrator(session_factory, {"ra": FakeConnector("ra")})

    snapshot, started = await orchestrator.trigger_sync(cities=["berlin"])

    assert started is True
    assert snapshot["job_id"] != stale_id
    stale = await orchestrator.get_job(stale_id)
    assert stale["status"] == "failed"
    assert stale["error_message"] == "Lease expired without heartbeat"


@pytest.mark.asyncio
async def test_reset_stale_jobs(session_factory):
    """Test: Startup recovery fails jobs whose lease has expired"""
    stale_id = await add_stale_job(session_factory)
    orchestrator = make_orchestrator(session_factory, {})

    assert await orchestrator.reset_stale_jobs(lease_seconds=3600) == 1
    assert await orchestrator.reset_stale_jobs(lease_seconds=3600) == 0
    assert (await orchestrator.get_job(stale_id))["status"] == "failed"


@pytest.mark.asyncio
async def test_fresh_running_job_is_not_reset(session_factory):
    """Test: A job with a recent heartbeat survives startup recovery"""
    await add_stale_job(session_factory, age=timedelta(seconds=5))
    orchestrator = make_orchestrator(session_factory, {})

    assert await orchestrator.reset_stale_jobs(lease_seconds=3600) == 0
    status = await orchestrator.get_status()
    assert status["status"] == "running"


@pytest.mark.asyncio
async def test_status_is_idle_without_jobs(session_factory):
    """Test: Status reports idle with no last job on an empty database"""
    orchestrator = make_orchestrator(session_factory, {})

    assert await orchestrator.get_status() == {"status": "idle", "last_job": None}


# ============================================================================
# Pipeline
# ============================================================================

@pytest.mark.asyncio
async def test_full_sync_links_sources_and_resolves_references(session_factory, berlin_payloads):
    """
    Integration test: Scrape → Match → Resolve references → Dedupe → Verify
    """
    connectors = {
        "ra": FakeConnector("ra", berlin_payloads["ra"]),
        "tm": FakeConnector("tm", berlin_payloads["tm"]),
    }
    orchestrator = make_orchestrator(session_factory, connectors)

    snapshot, started = await orchestrator.trigger_sync(cities=["berlin"], dedupe_after=True)
    results = await orchestrator.run_job(snapshot["job_id"])

    job = await orchestrator.get_job(snapshot["job_id"])
    assert job["status"] == "success"
    assert job["phase"] == "done"
    assert job["percent"] == 100.0
    assert job["error_message"] is None
    assert job["completed_at"] is not None

    assert [r["status"] for r in results["scrape"]] == ["success", "success"]
    assert results["match"]["event"]["created"] == 1
    assert results["match"]["event"]["linked"] == 1
    assert results["match"]["venue"]["linked"] == 1
    assert results["references"] == {"venues_resolved": 1, "artists_linked": 1}
    assert results["dedupe"]["venue"]["merged"] == 0

    async with session_factory() as session:
        venue = (await session.execute(select(Venue))).scalar_one()
        assert venue.name == "Berghain"
        assert venue.latitude == 52.511

        artist = (await session.execute(select(Artist))).scalar_one()
        event = (await session.execute(select(Event))).scalar_one()
        assert event.title == "Nina Kraviz at Berghain"
        assert event.state == EventState.SCRAPED_DRAFT
        assert event.start_time.strftime("%H:%M") == "23:00"
        assert event.content_url == "https://tickets.example.com/e/7"
        assert event.venue_id == venue.id

        lineup = (await session.execute(
            select(event_artists.c.artist_id).where(event_artists.c.event_id == event.id)
        )).scalars().all()
        assert lineup == [artist.id]

        links = await Linker(session, EntityType.EVENT).links_for(event.id)
        assert len(links) == 2
        assert sum(1 for link in links if link.is_primary) == 1

    assert await count(session_factory, RawRecord) == 5
    assert await count(session_factory, SourceRun) == 2
    assert connectors["ra"].calls == [
        ("berlin", EntityType.VENUE), ("berlin", EntityType.ARTIST), ("berlin", EntityType.EVENT)
    ]


@pytest.mark.asyncio
async def test_repeated_sync_is_idempotent(session_factory, berlin_payloads):
    """Test: A second identical sync inserts and creates nothing"""
    connectors = {
        "ra": FakeConnector("ra", berlin_payloads["ra"]),
        "tm": FakeConnector("tm", berlin_payloads["tm"]),
    }
    orchestrator = make_orchestrator(session_factory, connectors)

    for _ in range(2):
        snapshot, _ = await orchestrator.trigger_sync(cities=["berlin"])
        results = await orchestrator.run_job(snapshot["job_id"])

    assert [r["records_inserted"] for r in results["scrape"]] == [0, 0]
    assert [r["records_unchanged"] for r in results["scrape"]] == [3, 2]
    assert results["match"]["event"]["processed"] == 0
    assert await count(session_factory, Event) == 1
    assert await count(session_factory, RawRecord) == 5


@pytest.mark.asyncio
async def test_rescrape_updates_canonical_through_sync(session_factory, berlin_payloads):
    """Test: A changed description from the primary source reaches the canonical"""
    connector = FakeConnector("ra", berlin_payloads["ra"])
    orchestrator = make_orchestrator(session_factory, {"ra": connector})
    snapshot, _ = await orchestrator.trigger_sync(cities=["berlin"])
    await orchestrator.run_job(snapshot["job_id"])

    connector.payloads["berlin"][EntityType.EVENT][0]["description"] = "Closing at noon"
    snapshot, _ = await orchestrator.trigger_sync(cities=["berlin"])
    results = await orchestrator.run_job(snapshot["job_id"])

    assert results["scrape"][0]["records_updated"] == 1
    assert results["match"]["event"]["rescraped"] == 1
    async with session_factory() as session:
        event = (await session.execute(select(Event))).scalar_one()
        assert event.description == "Closing at noon"
        raw = (await session.execute(
            select(RawRecord).where(RawRecord.entity_type == EntityType.EVENT)
        )).scalar_one()
        assert raw.version == 2


@pytest.mark.asyncio
async def test_unavailable_source_degrades_job_to_partial(session_factory, berlin_payloads):
    """Test: One failing source is recorded while the other is still synced"""
    connectors = {
        "ra": FakeConnector("ra", berlin_payloads["ra"]),
        "tm": FailingConnector("tm"),
    }
    orchestrator = make_orchestrator(session_factory, connectors)

    snapshot, _ = await orchestrator.trigger_sync(cities=["berlin"])
    results = await orchestrator.run_job(snapshot["job_id"])

    job = await orchestrator.get_job(snapshot["job_id"])
    assert job["status"] == "partial"
    assert job["error_message"] == "1 source run(s) failed"
    assert {r["source"]: r["status"] for r in results["scrape"]} == {"ra": "success", "tm": "failed"}
    assert await count(session_factory, Event) == 1

    async with session_factory() as session:
        failed = (await session.execute(
            select(SourceRun).where(SourceRun.source == "tm")
        )).scalar_one()
        assert failed.status == "failed"
        assert failed.error_message == "tm is down"
        assert failed.completed_at is not None


@pytest.mark.asyncio
async def test_unconfigured_source_fails_its_run_only(session_factory, berlin_payloads):
    """Test: A source without a connector fails its run, not the job"""
    orchestrator = make_orchestrator(session_factory, {"ra": FakeConnector("ra", berlin_payloads["ra"])})

    snapshot, _ = await orchestrator.trigger_sync(cities=["berlin"], sources=["ra", "xx"])
    await orchestrator.run_job(snapshot["job_id"])

    job = await orchestrator.get_job(snapshot["job_id"])
    assert job["status"] == "partial"


@pytest.mark.asyncio
async def test_invalid_payloads_are_counted_not_fatal(session_factory):
    """Test: Records failing normalization are counted per source run"""
    connector = FakeConnector("ra", {
        "berlin": {
            EntityType.VENUE: [
                {"id": "v-1", "name": "Berghain", "city": "Berlin"},
                {"id": "v-2", "name": ""},
                {"name": "No id"},
            ],
        }
    })
    orchestrator = make_orchestrator(session_factory, {"ra": connector})

    snapshot, _ = await orchestrator.trigger_sync(cities=["berlin"])
    results = await orchestrator.run_job(snapshot["job_id"])

    run = results["scrape"][0]
    assert run["status"] == "partial"
    assert run["records_fetched"] == 3
    assert run["records_inserted"] == 1
    assert run["records_failed"] == 2
    assert (await orchestrator.get_job(snapshot["job_id"]))["status"] == "success"


@pytest.mark.asyncio
async def test_unexpected_error_fails_job_and_releases_lock(session_factory, berlin_payloads):
    """Test: A crash outside scraping fails the job and frees the lock"""
    orchestrator = make_orchestrator(session_factory, {"ra": FakeConnector("ra", berlin_payloads["ra"])})
    snapshot, _ = await orchestrator.trigger_sync(cities=["berlin"])

    with patch.object(orchestrator, "_match", AsyncMock(side_effect=RuntimeError("disk full"))):
        with pytest.raises(RuntimeError):
            await orchestrator.run_job(snapshot["job_id"])

    job = await orchestrator.get_job(snapshot["job_id"])
    assert job["status"] == "failed"
    assert job["error_message"] == "disk full"
    assert job["results"]["scrape"][0]["status"] == "success"

    _, started = await orchestrator.trigger_sync(cities=["berlin"])
    assert started is True


@pytest.mark.asyncio
async def test_start_sync_runs_in_background(session_factory, berlin_payloads):
    """Test: start_sync returns immediately and the job completes on its own"""
    connector = FakeConnector("ra", berlin_payloads["ra"])
    orchestrator = make_orchestrator(session_factory, {"ra": connector})

    snapshot, started = await orchestrator.start_sync(cities=["berlin"], requested_by="test")
    assert started is True

    job = await wait_until_finished(orchestrator, snapshot["job_id"])
    assert job["status"] == "success"
    assert len(connector.calls) == 3

    status = await orchestrator.get_status()
    assert status["status"] == "idle"
    assert status["last_job"]["job_id"] == snapshot["job_id"]
