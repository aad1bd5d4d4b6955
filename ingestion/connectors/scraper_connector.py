"""
HTTP connector for the scraper service.

The scraper service exposes one paginated listing per source, entity type
and city:

    GET {base_url}/sources/{source}/{entity_type}s?city={city}&page={n}

Responses are either a bare list or {"data": [...], "has_next": bool}.
"""

from typing import List, Dict, Any, Optional
from core.config import settings
from ingestion.base import SourceConnector
from ingestion.connectors.http_client import ResilientHTTPClient
from models.base import EntityType
import logging

logger = logging.getLogger(__name__)


class ScraperConnector(SourceConnector):
    """
    Fetch one source's listings from the scraper service.

    Features:
    - Bearer token authentication
    - Pagination support
    - Retry, backoff and circuit breaker via ResilientHTTPClient
    """

    page_size = 100

    def __init__(
        self,
        source: str,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        http: Optional[ResilientHTTPClient] = None
    ):
        self.source = source
        self.base_url = (base_url or settings.SCRAPER_BASE_URL).rstrip("/")
        api_key = api_key or settings.SCRAPER_API_KEY

        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.http = http or ResilientHTTPClient(source_name=source, headers=headers)

    def listing_url(self, entity_type: EntityType) -> str:
        return f"{self.base_url}/sources/{self.source}/{EntityType(entity_type).value}s"

    async def fetch(self, city: str, entity_type: EntityType) -> List[Dict[str, Any]]:
        """
        Fetch every page of a listing.

        Raises:
            SourceUnavailableError: The scraper could not be reached or refused
        """
        url = self.listing_url(entity_type)
        context = {"city": city, "entity_type": EntityType(entity_type).value}
        all_records: List[Dict[str, Any]] = []
        page = 1

        while True:
            logger.debug(f"Fetching page {page} from {url} for {city}")
            data = await self.http.get_json(
                url,
                params={"city": city, "page": page, "limit": self.page_size},
                context={**context, "page": page}
            )

            # Handle both response formats
            if isinstance(data, list):
                records = data
                has_next = len(records) >= self.page_size
            elif isinstance(data, dict):
                records = data.get("data", data.get("results", []))
                has_next = bool(data.get("has_next", False))
            else:
                records, has_next = [], False

            all_records.extend(r for r in records if isinstance(r, dict))
            if not records or not has_next:
                break
            page += 1

        return all_records

    async def close(self) -> None:
        await self.http.__aexit__(None, None, None)
