"""
Integration tests for canonical record deduplication
"""

import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy import select
from conftest import add_raw, add_event, add_venue, add_artist
from core.exceptions import MergeConflictError
from models.base import EntityType
from models.canonical import Artist, Event, Venue, event_artists
from reconciliation.deduplicator import Deduplicator
from reconciliation.linker import Linker


@pytest.mark.asyncio
async def test_venue_with_coordinates_survives_merge(db_session):
    """
    Test: "Watergate" without coordinates and "Watergate " with coordinates
    collapse into the located venue, taking the events and links along
    """
    bare = await add_venue(db_session, name="Watergate", city="Berlin")
    located = await add_venue(
        db_session, name="Watergate ", city="Berlin", latitude=52.501, longitude=13.443
    )
    raw_bare = await add_raw(db_session, EntityType.VENUE, "ra", "v-1", {"name": "Watergate", "city": "Berlin"})
    raw_located = await add_raw(db_session, EntityType.VENUE, "tm", "v-2", {"name": "Watergate ", "city": "Berlin"})
    linker = Linker(db_session, EntityType.VENUE)
    await linker.create_link(raw_bare, bare.id, 1.0)
    await linker.create_link(raw_located, located.id, 1.0)
    event = await add_event(db_session, title="Watergate Nacht", venue_id=bare.id)
    await db_session.commit()
    bare_id, located_id, event_id = bare.id, located.id, event.id

    result = await Deduplicator(db_session, EntityType.VENUE).run()

    assert result.candidates == 1
    assert len(result.merged) == 1
    assert result.merged[0]["keeper_id"] == located_id
    assert result.merged[0]["loser_id"] == bare_id
    assert result.merged[0]["references_moved"] == 1

    venues = (await db_session.execute(select(Venue))).scalars().all()
    assert [v.id for v in venues] == [located_id]
    assert venues[0].latitude == 52.501

    event = await db_session.get(Event, event_id)
    assert event.venue_id == located_id

    links = await linker.links_for(located_id)
    assert {link.raw_record_id for link in links} == {raw_bare.id, raw_located.id}
    assert sum(1 for link in links if link.is_primary) == 1
    assert (await linker.primary_link(located_id)).raw_record_id == raw_located.id


@pytest.mark.asyncio
async def test_completeness_tie_keeps_lower_id_and_fills_nulls(db_session):
    """Test: Equal completeness keeps the older record and copies missing values"""
    first = await add_venue(db_session, name="Tresor", city="Berlin", address="Köpenicker Str. 70")
    second = await add_venue(db_session, name="TRESOR", city="Berlin", postal_code="10179")
    first.field_provenance = {"name": "ra", "address": "ra"}
    second.field_provenance = {"name": "tm", "postal_code": "tm"}
    await db_session.commit()
    first_id, second_id = first.id, second.id

    result = await Deduplicator(db_session, EntityType.VENUE).run()

    assert result.merged[0]["keeper_id"] == first_id
    keeper = await db_session.get(Venue, first_id)
    assert keeper.postal_code == "10179"
    assert keeper.address == "Köpenicker Str. 70"
    assert keeper.field_provenance["postal_code"] == "tm"
    assert await db_session.get(Venue, second_id) is None


@pytest.mark.asyncio
async def test_venues_in_other_cities_are_not_candidates(db_session):
    """Test: Deduplication is scoped to the city"""
    await add_venue(db_session, name="Tresor", city="Berlin")
    await add_venue(db_session, name="Tresor", city="Hamburg")
    await db_session.commit()

    result = await Deduplicator(db_session, EntityType.VENUE).run()

    assert result.candidates == 0
    assert len((await db_session.execute(select(Venue))).scalars().all()) == 2


@pytest.mark.asyncio
async def test_artist_dedup_merges_lineups_and_is_idempotent(db_session):
    """Test: Artist merge moves event lineups; a second run merges nothing"""
    kraviz = await add_artist(db_session, name="Nina Kraviz", country="RU")
    duplicate = await add_artist(db_session, name="NINA KRAVIZ")
    event_a = await add_event(db_session, title="Night A")
    event_b = await add_event(db_session, title="Night B", date=None)
    await db_session.execute(event_artists.insert(), [
        {"event_id": event_a.id, "artist_id": kraviz.id},
        {"event_id": event_a.id, "artist_id": duplicate.id},
        {"event_id": event_b.id, "artist_id": duplicate.id},
    ])
    await db_session.commit()
    kraviz_id = kraviz.id

    deduplicator = Deduplicator(db_session, EntityType.ARTIST)
    first = await deduplicator.run()
    second = await deduplicator.run()

    assert len(first.merged) == 1
    assert first.merged[0]["keeper_id"] == kraviz_id
    assert second.candidates == 0
    assert second.merged == []

    artists = (await db_session.execute(select(Artist))).scalars().all()
    assert [a.id for a in artists] == [kraviz_id]
    pairs = set((await db_session.execute(
        select(event_artists.c.event_id, event_artists.c.artist_id)
    )).all())
    assert pairs == {(event_a.id, kraviz_id), (event_b.id, kraviz_id)}


@pytest.mark.asyncio
async def test_events_dedupe_within_same_date_and_venue(db_session):
    """Test: Near-identical titles at one venue on one night are merged"""
    venue = await add_venue(db_session)
    await add_event(db_session, title="Klubnacht", venue_id=venue.id)
    await add_event(db_session, title="Klubnacht!", venue_id=venue.id, description="Sunday into Monday")
    await add_event(db_session, title="Klubnacht", venue_id=venue.id, date=None)
    await db_session.commit()

    result = await Deduplicator(db_session, EntityType.EVENT).run()

    assert len(result.merged) == 1
    events = (await db_session.execute(select(Event).order_by(Event.id))).scalars().all()
    assert len(events) == 2
    assert events[0].description == "Sunday into Monday"


@pytest.mark.asyncio
async def test_failed_merge_is_skipped(db_session):
    """Test: One failing merge is recorded and the run continues"""
    await add_artist(db_session, name="Ben Klock")
    await add_artist(db_session, name="BEN KLOCK")
    await db_session.commit()

    deduplicator = Deduplicator(db_session, EntityType.ARTIST)
    with patch.object(
        deduplicator.linker, "repoint", AsyncMock(side_effect=RuntimeError("deadlock detected"))
    ):
        result = await deduplicator.run()

    assert result.merged == []
    assert len(result.skipped) == 1
    assert len((await db_session.execute(select(Artist))).scalars().all()) == 2


@pytest.mark.asyncio
async def test_merge_of_missing_record_raises_conflict(db_session):
    """Test: Merging a vanished record raises MergeConflictError"""
    artist = await add_artist(db_session)
    await db_session.commit()

    with pytest.raises(MergeConflictError):
        await Deduplicator(db_session, EntityType.ARTIST).merge(artist.id, 9999)


@pytest.mark.asyncio
async def test_resolved_and_unresolved_copies_of_a_night_are_compared(db_session):
    """Test: An event still carrying only a venue name meets its resolved twin"""
    venue = await add_venue(db_session, name="Berghain", city="Berlin")
    resolved = await add_event(db_session, title="Klubnacht", venue_id=venue.id, venue_name="Berghain")
    await add_event(db_session, title="KLUBNACHT", venue_name="BERGHAIN")
    await add_event(db_session, title="Klubnacht", venue_name="Tresor")
    await db_session.commit()
    resolved_id, venue_id = resolved.id, venue.id

    result = await Deduplicator(db_session, EntityType.EVENT).run()

    assert result.candidates == 1
    assert result.merged[0]["keeper_id"] == resolved_id
    events = (await db_session.execute(select(Event).order_by(Event.id))).scalars().all()
    assert len(events) == 2
    assert events[0].venue_id == venue_id
