"""
Hierarchy Aggregator

Recomputes denormalized listing counts after a sync pass, strictly bottom-up:
buildings, then communities, then municipalities, then areas. Each level is a
fresh count query scoped by its foreign key, so the step is idempotent.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Set

from .listing_store import AREAS, BUILDINGS, COMMUNITIES, MUNICIPALITIES, ListingStore

logger = logging.getLogger(__name__)


@dataclass
class AggregationResult:
    """Rows whose counts were rewritten"""
    buildings: int = 0
    communities: int = 0
    municipalities: int = 0
    areas: int = 0
    errors: List[str] = field(default_factory=list)


class HierarchyAggregator:
    """
    Maintains listing_count on buildings and the geographic hierarchy
    """

    def __init__(self, store: ListingStore):
        self.store = store

    async def recompute(self, building_ids: Iterable[str],
                        community_ids: Iterable[str] = (),
                        municipality_ids: Iterable[str] = (),
                        area_ids: Iterable[str] = ()) -> AggregationResult:
        """
        Recount the given buildings and every level above them.

        Args:
            building_ids: Buildings touched by the pass
            community_ids, municipality_ids, area_ids: Extra rows to recount

        Returns:
            AggregationResult
        """
        now = datetime.now(timezone.utc)
        result = AggregationResult()

        communities: Set[str] = set(filter(None, community_ids))
        municipalities: Set[str] = set(filter(None, municipality_ids))
        areas: Set[str] = set(filter(None, area_ids))

        buildings = await self.store.get_buildings(sorted(set(filter(None, building_ids))))
        for building in buildings:
            if await self._recount(BUILDINGS, building['id'], now, result, building_id=building['id']):
                result.buildings += 1
            communities.update(filter(None, [building.get('community_id')]))
            municipalities.update(filter(None, [building.get('municipality_id')]))
            areas.update(filter(None, [building.get('area_id')]))

        for community_id in sorted(communities):
            if await self._recount(COMMUNITIES, community_id, now, result, community_id=community_id):
                result.communities += 1

        for municipality_id in sorted(municipalities):
            if await self._recount(MUNICIPALITIES, municipality_id, now, result, municipality_id=municipality_id):
                result.municipalities += 1

        for area_id in sorted(areas):
            if await self._recount(AREAS, area_id, now, result, area_id=area_id):
                result.areas += 1

        logger.info(f"Recounted {result.buildings} buildings, {result.communities} communities, "
                    f"{result.municipalities} municipalities, {result.areas} areas")
        return result

    async def recompute_municipality(self, municipality_id: str,
                                     area_id: Optional[str] = None) -> AggregationResult:
        """Recount every building in a municipality, then the levels above"""
        buildings = await self.store.list_buildings(municipality_id=municipality_id)
        return await self.recompute(
            [b['id'] for b in buildings],
            municipality_ids=[municipality_id],
            area_ids=[area_id] if area_id else [],
        )

    async def _recount(self, table: str, row_id: str, now: datetime,
                       result: AggregationResult, **scope) -> bool:
        try:
            not_null = [] if table == BUILDINGS else ['building_id']
            listing_count = await self.store.count_listings(not_null=not_null, **scope)
            await self.store.update_listing_count(table, row_id, listing_count, now)
            return True
        except Exception as e:
            message = f"Failed to recount {table} {row_id}: {e}"
            logger.error(message)
            result.errors.append(message)
            return False
