"""
Abstract base class for source connectors
"""

from abc import ABC, abstractmethod
from typing import List, Dict, Any, Sequence
from models.base import EntityType
import logging

logger = logging.getLogger(__name__)


class SourceConnector(ABC):
    """
    Abstract base class for all event sources.

    A connector fetches the current listing of one city from one external
    source and returns plain dictionaries; validation and normalization
    happen downstream in RecordNormalizer.

    Failures must surface as SourceUnavailableError (or a subclass) so the
    orchestrator can isolate them per (city, source) pair.
    """

    # Short source tag stored on raw records (e.g. "ra", "tm")
    source: str = ""

    # Entity types this source delivers, in load order
    entity_types: Sequence[EntityType] = (EntityType.VENUE, EntityType.ARTIST, EntityType.EVENT)

    @abstractmethod
    async def fetch(self, city: str, entity_type: EntityType) -> List[Dict[str, Any]]:
        """
        Fetch all current records of one type for one city.

        Args:
            city: City slug as configured for the sync
            entity_type: Which listing to fetch

        Returns:
            List of raw record dictionaries
        """
        pass

    async def fetch_all(self, city: str) -> Dict[EntityType, List[Dict[str, Any]]]:
        """Fetch every supported entity type for a city"""
        records = {}
        for entity_type in self.entity_types:
            records[entity_type] = await self.fetch(city, entity_type)
            logger.info(
                f"Fetched {len(records[entity_type])} {entity_type.value} records "
                f"from {self.source} for {city}"
            )
        return records

    async def close(self) -> None:
        """Release network resources (no-op by default)"""
        return None
