"""
Integration tests for matching and linking raw records to canonical records
"""

import pytest
from sqlalchemy import select
from conftest import add_raw, add_event, add_venue
from core.exceptions import DuplicateLinkError, RecordNotFoundError
from models.base import EntityType, EventState
from models.canonical import Event, Venue
from models.state_transition import StateTransition
from reconciliation.linker import Linker
from reconciliation.service import MatchService, SYNC_ACTOR


def event_data(title, **values):
    data = {"title": title, "date": "2030-06-01", "venue_name": "Berghain", "city": "Berlin"}
    data.update(values)
    return data


@pytest.mark.asyncio
async def test_same_event_from_two_sources_links_to_one_canonical(db_session):
    """
    Test: The same night listed by two sources ends up as one canonical event,
    with the first source primary and the second linked with high confidence
    """
    raw_a = await add_raw(db_session, EntityType.EVENT, "ra", "e-1", event_data("Nina Kraviz at Berghain"))
    raw_b = await add_raw(
        db_session, EntityType.EVENT, "tm", "tm-e-7",
        event_data("NINA KRAVIZ AT BERGHAIN", content_url="https://tickets.example.com/e/7")
    )
    await db_session.commit()

    stats = await MatchService(db_session, EntityType.EVENT).match_pending()

    assert stats.created == 1
    assert stats.linked == 1
    assert stats.failed == 0

    events = (await db_session.execute(select(Event))).scalars().all()
    assert len(events) == 1
    event = events[0]
    assert event.title == "Nina Kraviz at Berghain"
    assert event.state == EventState.SCRAPED_DRAFT
    # Secondary source fills what the primary lacked
    assert event.content_url == "https://tickets.example.com/e/7"
    assert event.field_provenance["title"] == "ra"
    assert event.field_provenance["content_url"] == "tm"

    linker = Linker(db_session, EntityType.EVENT)
    link_a = await linker.get_link(raw_a.id)
    link_b = await linker.get_link(raw_b.id)
    assert link_a.canonical_id == event.id
    assert link_b.canonical_id == event.id
    assert link_a.is_primary is True
    assert link_b.is_primary is False
    assert link_b.confidence >= 0.9

    history = (await db_session.execute(
        select(StateTransition).where(StateTransition.event_id == event.id)
    )).scalars().all()
    assert len(history) == 1
    assert history[0].previous_state is None
    assert history[0].new_state == "SCRAPED_DRAFT"
    assert history[0].actor == SYNC_ACTOR


@pytest.mark.asyncio
async def test_matching_is_idempotent(db_session):
    """Test: A second matching pass creates and links nothing"""
    await add_raw(db_session, EntityType.EVENT, "ra", "e-1", event_data("Nina Kraviz at Berghain"))
    await add_raw(db_session, EntityType.EVENT, "tm", "tm-e-7", event_data("NINA KRAVIZ AT BERGHAIN"))
    await db_session.commit()

    await MatchService(db_session, EntityType.EVENT).match_pending()
    second = await MatchService(db_session, EntityType.EVENT).match_pending()

    assert second.processed == 0
    assert second.created == 0
    assert len((await db_session.execute(select(Event))).scalars().all()) == 1


@pytest.mark.asyncio
async def test_same_source_never_links_twice_to_one_canonical(db_session):
    """Test: Two listings from one source stay separate canonical events"""
    await add_raw(db_session, EntityType.EVENT, "ra", "e-1", event_data("Klubnacht"))
    await add_raw(db_session, EntityType.EVENT, "ra", "e-2", event_data("Klubnacht"))
    await db_session.commit()

    stats = await MatchService(db_session, EntityType.EVENT).match_pending()

    assert stats.created == 2
    assert stats.linked == 0


@pytest.mark.asyncio
async def test_events_on_other_dates_are_not_candidates(db_session):
    """Test: Identical titles on different dates create separate events"""
    await add_raw(db_session, EntityType.EVENT, "ra", "e-1", event_data("Klubnacht"))
    await add_raw(db_session, EntityType.EVENT, "tm", "tm-1", event_data("Klubnacht", date="2030-06-08"))
    await db_session.commit()

    stats = await MatchService(db_session, EntityType.EVENT).match_pending()

    assert stats.created == 2


@pytest.mark.asyncio
async def test_dissimilar_titles_below_threshold_create_new_event(db_session):
    """Test: A different night at the same venue is not linked"""
    await add_raw(db_session, EntityType.EVENT, "ra", "e-1", event_data("Nina Kraviz at Berghain"))
    await add_raw(db_session, EntityType.EVENT, "tm", "tm-1", event_data("Ostgut Ton Label Showcase", venue_name=None))
    await db_session.commit()

    stats = await MatchService(db_session, EntityType.EVENT).match_pending()

    assert stats.created == 2
    assert stats.linked == 0


@pytest.mark.asyncio
async def test_venues_match_within_city_only(db_session):
    """Test: Same venue name in two cities stays two venues"""
    await add_raw(db_session, EntityType.VENUE, "ra", "v-1", {"name": "Tresor", "city": "Berlin"})
    await add_raw(db_session, EntityType.VENUE, "tm", "v-9", {"name": "TRESOR", "city": "Berlin"})
    await add_raw(db_session, EntityType.VENUE, "tm", "v-10", {"name": "Tresor", "city": "Hamburg"})
    await db_session.commit()

    stats = await MatchService(db_session, EntityType.VENUE).match_pending()

    assert stats.created == 2
    assert stats.linked == 1
    venues = (await db_session.execute(select(Venue).order_by(Venue.id))).scalars().all()
    assert [v.city for v in venues] == ["Berlin", "Hamburg"]


@pytest.mark.asyncio
async def test_resolve_event_references_sets_venue_id(db_session):
    """Test: Events pick up the canonical venue from their venue name"""
    venue = await add_venue(db_session, name="Berghain", city="Berlin")
    await add_raw(db_session, EntityType.EVENT, "ra", "e-1", event_data("Klubnacht"))
    await db_session.commit()

    service = MatchService(db_session, EntityType.EVENT)
    await service.match_pending()
    resolved = await service.resolve_event_references()

    event = (await db_session.execute(select(Event))).scalar_one()
    assert resolved["venues_resolved"] == 1
    assert event.venue_id == venue.id


# ============================================================================
# Linker
# ============================================================================

@pytest.mark.asyncio
async def test_create_link_refuses_already_linked_raw(db_session):
    """Test: A raw record can only be linked once"""
    event = await add_event(db_session)
    other = await add_event(db_session, title="Other night")
    raw = await add_raw(db_session, EntityType.EVENT, "ra", "e-1", event_data("Klubnacht"))
    linker = Linker(db_session, EntityType.EVENT)

    await linker.create_link(raw, event.id, confidence=1.0)

    with pytest.raises(DuplicateLinkError) as exc_info:
        await linker.create_link(raw, other.id, confidence=1.0)

    assert exc_info.value.context["canonical_id"] == event.id
    assert (await linker.get_link(raw.id)).canonical_id == event.id


@pytest.mark.asyncio
async def test_link_is_idempotent(db_session):
    """Test: Linking an already linked raw returns the existing link"""
    event = await add_event(db_session)
    raw = await add_raw(db_session, EntityType.EVENT, "ra", "e-1", event_data("Klubnacht"))
    linker = Linker(db_session, EntityType.EVENT)

    first, created = await linker.link(raw, event.id, 0.8)
    again, created_again = await linker.link(raw, event.id, 0.95)

    assert created is True
    assert created_again is False
    assert again.id == first.id
    assert again.confidence == 0.8
    assert await linker.count_links(event.id) == 1


@pytest.mark.asyncio
async def test_set_primary_demotes_previous_primary(db_session):
    """Test: Exactly one primary link per canonical after promotion"""
    event = await add_event(db_session)
    raw_a = await add_raw(db_session, EntityType.EVENT, "ra", "e-1", event_data("Klubnacht"))
    raw_b = await add_raw(db_session, EntityType.EVENT, "tm", "tm-1", event_data("Klubnacht"))
    linker = Linker(db_session, EntityType.EVENT)

    link_a = await linker.create_link(raw_a, event.id, 1.0)
    link_b = await linker.create_link(raw_b, event.id, 0.9)
    assert link_a.is_primary is True
    assert link_b.is_primary is False

    await linker.set_primary(link_b)

    primary = await linker.primary_link(event.id)
    assert primary.raw_record_id == raw_b.id
    links = await linker.links_for(event.id)
    assert sum(1 for link in links if link.is_primary) == 1


@pytest.mark.asyncio
async def test_unlink_primary_promotes_oldest_remaining(db_session):
    """Test: Removing the primary link hands primary to the next link"""
    event = await add_event(db_session)
    raw_a = await add_raw(db_session, EntityType.EVENT, "ra", "e-1", event_data("Klubnacht"))
    raw_b = await add_raw(db_session, EntityType.EVENT, "tm", "tm-1", event_data("Klubnacht"))
    linker = Linker(db_session, EntityType.EVENT)
    await linker.create_link(raw_a, event.id, 1.0)
    await linker.create_link(raw_b, event.id, 0.9)

    assert await linker.unlink(raw_a.id) is True
    assert await linker.unlink(raw_a.id) is False

    primary = await linker.primary_link(event.id)
    assert primary.raw_record_id == raw_b.id


@pytest.mark.asyncio
async def test_manual_link_by_source_key(db_session):
    """Test: Admin links a raw record by its source key"""
    event = await add_event(db_session)
    raw = await add_raw(db_session, EntityType.EVENT, "tm", "tm-1", event_data("Klubnacht"))
    linker = Linker(db_session, EntityType.EVENT)

    link, linked_raw = await linker.manual_link(event.id, "tm", "tm-1")

    assert linked_raw.id == raw.id
    assert link.canonical_id == event.id
    assert link.confidence == 1.0

    with pytest.raises(RecordNotFoundError):
        await linker.manual_link(event.id, "tm", "does-not-exist")
