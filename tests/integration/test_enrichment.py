"""
Integration tests for MusicBrainz artist enrichment
"""

import pytest
from unittest.mock import AsyncMock, MagicMock
from conftest import add_artist
from core.exceptions import SourceUnavailableError
from models.canonical import Artist
from reconciliation.enrichment import ArtistEnricher, ENRICHMENT_SOURCE, artist_fields


KRAVIZ_HIT = {
    "id": "a6cf1d3e-0c66-4b8a-9b7a-5f2d6c3f0b11",
    "name": "Nina Kraviz",
    "country": "RU",
    "tags": [
        {"name": "Techno", "count": 12},
        {"name": "house", "count": 3},
        {"name": "acid", "count": 7},
    ],
}


def mock_client(*results, side_effect=None):
    client = MagicMock()
    client.search_artist = AsyncMock(side_effect=side_effect or list(results))
    return client


def test_artist_fields_maps_search_hit():
    """Test: Tags are ordered by votes and lower-cased"""
    fields = artist_fields(KRAVIZ_HIT)

    assert fields["country"] == "RU"
    assert fields["genres"] == ["techno", "acid", "house"]
    assert fields["content_url"] == "https://musicbrainz.org/artist/a6cf1d3e-0c66-4b8a-9b7a-5f2d6c3f0b11"


def test_best_candidate_requires_similarity_above_threshold():
    """Test: Only clearly matching names are accepted"""
    enricher = ArtistEnricher(MagicMock(), client=mock_client(), threshold=0.8)

    assert enricher.best_candidate("nina kraviz", [{"name": "Nina Kraviz"}])["name"] == "Nina Kraviz"
    assert enricher.best_candidate("nina kraviz", [{"name": "Nine Inch Nails"}]) is None
    assert enricher.best_candidate("nina kraviz", []) is None


@pytest.mark.asyncio
async def test_enrichment_fills_only_empty_fields(db_session):
    """Test: Scraped values stay; empty fields are filled and tagged musicbrainz"""
    artist = await add_artist(db_session, name="Nina Kraviz", country="Russia", field_provenance={"country": "ra"})
    await db_session.commit()
    client = mock_client([KRAVIZ_HIT])

    result = await ArtistEnricher(db_session, client=client).run()

    assert result.checked == 1
    assert result.enriched == 1
    client.search_artist.assert_awaited_once_with("Nina Kraviz")

    artist = await db_session.get(Artist, artist.id)
    assert artist.country == "Russia"
    assert artist.genres == ["techno", "acid", "house"]
    assert artist.content_url.startswith("https://musicbrainz.org/artist/")
    assert artist.field_provenance == {
        "country": "ra",
        "genres": ENRICHMENT_SOURCE,
        "content_url": ENRICHMENT_SOURCE,
    }


@pytest.mark.asyncio
async def test_enriched_artists_are_not_searched_again(db_session):
    """Test: A second run skips artists MusicBrainz already touched"""
    await add_artist(db_session, name="Nina Kraviz")
    await db_session.commit()
    client = mock_client([{**KRAVIZ_HIT, "tags": []}])

    enricher = ArtistEnricher(db_session, client=client)
    first = await enricher.run()
    second = await enricher.run()

    assert first.enriched == 1
    assert second.checked == 0
    assert client.search_artist.await_count == 1


@pytest.mark.asyncio
async def test_no_confident_match_leaves_artist_untouched(db_session):
    """Test: Dissimilar search hits are ignored"""
    artist = await add_artist(db_session, name="Nina Kraviz")
    await db_session.commit()
    client = mock_client([{"id": "x", "name": "Nine Inch Nails", "country": "US"}])

    result = await ArtistEnricher(db_session, client=client).run()

    assert result.not_found == 1
    assert result.enriched == 0
    artist = await db_session.get(Artist, artist.id)
    assert artist.country is None


@pytest.mark.asyncio
async def test_unavailable_musicbrainz_is_recorded_per_artist(db_session):
    """Test: A failed lookup is counted and the next artist is still tried"""
    await add_artist(db_session, name="Ben Klock")
    await add_artist(db_session, name="Nina Kraviz")
    await db_session.commit()
    client = mock_client(side_effect=[
        SourceUnavailableError("musicbrainz returned 503", context={"status_code": 503}),
        [KRAVIZ_HIT],
    ])

    result = await ArtistEnricher(db_session, client=client).run()

    assert result.checked == 2
    assert result.failed == 1
    assert result.enriched == 1
    assert result.errors[0]["error"] == "musicbrainz returned 503"
