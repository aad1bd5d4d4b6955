"""
Artist enrichment from MusicBrainz.

Artists missing a country, genres or content URL are searched by name; a
result is only accepted when its name similarity to the canonical name is
strictly above ARTIST_ENRICH_THRESHOLD. Enrichment only fills empty fields
and tags them with the "musicbrainz" source, so it never overrides scraped
or curated values.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.exceptions import SourceUnavailableError
from ingestion.connectors.http_client import ResilientHTTPClient
from models.base import EntityType
from models.canonical import Artist
from reconciliation.normalizer import normalize_text
from reconciliation.provenance import ProvenanceUnifier
from reconciliation.similarity import Similarity, get_similarity

logger = logging.getLogger(__name__)

ENRICHMENT_SOURCE = "musicbrainz"


@dataclass
class EnrichResult:
    checked: int = 0
    enriched: int = 0
    not_found: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "enriched": self.enriched,
            "not_found": self.not_found,
            "failed": self.failed,
            "errors": self.errors[:50],
        }


class MusicBrainzClient:
    """Minimal MusicBrainz web service client (artist search)"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        http: Optional[ResilientHTTPClient] = None,
        request_interval: float = 1.1
    ):
        self.base_url = (base_url or settings.MUSICBRAINZ_URL).rstrip("/")
        self.http = http or ResilientHTTPClient(
            source_name=ENRICHMENT_SOURCE,
            headers={"User-Agent": settings.MUSICBRAINZ_USER_AGENT, "Accept": "application/json"}
        )
        # MusicBrainz allows one request per second per client
        self.request_interval = request_interval
        self._last_request = 0.0

    async def _throttle(self) -> None:
        loop = asyncio.get_running_loop()
        wait = self._last_request + self.request_interval - loop.time()
        if wait > 0:
            await asyncio.sleep(wait)
        self._last_request = loop.time()

    async def search_artist(self, name: str, limit: int = 5) -> List[Dict[str, Any]]:
        await self._throttle()
        data = await self.http.get_json(
            f"{self.base_url}/artist",
            params={"query": f'artist:"{name}"', "fmt": "json", "limit": limit},
            context={"entity_type": EntityType.ARTIST.value, "name": name}
        )
        return (data or {}).get("artists", []) if isinstance(data, dict) else []


def artist_fields(candidate: Dict[str, Any]) -> Dict[str, Any]:
    """Map a MusicBrainz artist search hit onto canonical artist fields"""
    tags = sorted(candidate.get("tags") or [], key=lambda t: -(t.get("count") or 0))
    genres = [str(t["name"]).strip().lower() for t in tags if t.get("name")][:10]
    return {
        "country": candidate.get("country") or None,
        "genres": genres or None,
        "content_url": f"https://musicbrainz.org/artist/{candidate['id']}" if candidate.get("id") else None,
    }


class ArtistEnricher:
    """Fill empty artist fields from MusicBrainz"""

    def __init__(
        self,
        db_session: AsyncSession,
        client: Optional[MusicBrainzClient] = None,
        similarity: Optional[Similarity] = None,
        threshold: Optional[float] = None
    ):
        self.db = db_session
        self.client = client or MusicBrainzClient()
        self.similarity = similarity or get_similarity(settings.SIMILARITY_STRATEGY)
        self.threshold = settings.ARTIST_ENRICH_THRESHOLD if threshold is None else threshold
        self.unifier = ProvenanceUnifier(db_session, EntityType.ARTIST)

    def best_candidate(self, name: str, candidates: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Highest-similarity hit strictly above the threshold (first wins ties)"""
        target = normalize_text(name)
        best, best_score = None, self.threshold
        for candidate in candidates:
            score = self.similarity(target, normalize_text(candidate.get("name")))
            if score > best_score:
                best, best_score = candidate, score
        return best

    async def pending_artists(self, limit: int = 100) -> List[Artist]:
        """Artists with an empty enrichable field not yet tried by MusicBrainz"""
        result = await self.db.execute(
            select(Artist)
            .where(or_(Artist.country.is_(None), Artist.genres.is_(None), Artist.content_url.is_(None)))
            .order_by(Artist.id)
            .limit(limit)
        )
        return [
            a for a in result.scalars().all()
            if not self.unifier.provenance(a).fields_owned_by(ENRICHMENT_SOURCE)
        ]

    async def enrich(self, artist: Artist) -> List[str]:
        """
        Enrich one artist; returns the names of filled fields.

        Raises:
            SourceUnavailableError: MusicBrainz could not be queried
        """
        match = self.best_candidate(artist.name, await self.client.search_artist(artist.name))
        if match is None:
            return []

        prov = self.unifier.provenance(artist)
        filled = []
        for name, value in artist_fields(match).items():
            if value is None or getattr(artist, name) not in (None, [], ""):
                continue
            setattr(artist, name, value)
            prov.set_tag(name, ENRICHMENT_SOURCE)
            filled.append(name)

        if filled:
            artist.field_provenance = prov.to_json()
            await self.db.flush()
        return filled

    async def run(self, limit: int = 100) -> EnrichResult:
        result = EnrichResult()
        artist_ids = [a.id for a in await self.pending_artists(limit)]
        for artist_id in artist_ids:
            result.checked += 1
            try:
                artist = await self.db.get(Artist, artist_id)
                filled = await self.enrich(artist)
                await self.db.commit()
            except SourceUnavailableError as e:
                await self.db.rollback()
                result.failed += 1
                result.errors.append({"artist_id": artist_id, "error": e.message})
                logger.warning(f"MusicBrainz lookup failed for artist {artist_id}: {e.message}")
                continue

            if filled:
                result.enriched += 1
                logger.info(f"Enriched artist {artist_id} from MusicBrainz: {', '.join(filled)}")
            else:
                result.not_found += 1

        return result
