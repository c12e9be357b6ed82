"""
Geography Sync Service

Discovers the geographic hierarchy (areas, municipalities, communities) from
the CountyOrParish / City / CityRegion values in the provider feed and
inserts whatever the store does not have yet. Existing rows are never
modified.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from .listing_fetcher import ListingFetcher
from .listing_store import AREAS, COMMUNITIES, MUNICIPALITIES, ListingStore

logger = logging.getLogger(__name__)

GEO_SELECT = 'CountyOrParish,City,CityRegion'
GEO_PAGE_SIZE = 500

# "Toronto C01" -> "C01"
MUNICIPALITY_CODE = re.compile(r'([A-Z]\d{2})$')


@dataclass
class GeographyCounts:
    areas: int = 0
    municipalities: int = 0
    communities: int = 0


@dataclass
class GeographySyncResult:
    """Result of a geography discovery pass"""
    records_scanned: int = 0
    complete: bool = False
    feed: GeographyCounts = field(default_factory=GeographyCounts)
    before: GeographyCounts = field(default_factory=GeographyCounts)
    after: GeographyCounts = field(default_factory=GeographyCounts)
    inserted: GeographyCounts = field(default_factory=GeographyCounts)
    errors: List[str] = field(default_factory=list)


def municipality_code(name: str) -> Optional[str]:
    match = MUNICIPALITY_CODE.search(name)
    return match.group(1) if match else None


class GeographySyncService:
    """
    Inserts missing areas, municipalities and communities seen in the feed
    """

    def __init__(self, store: ListingStore, fetcher: ListingFetcher):
        self.store = store
        self.fetcher = fetcher

    async def sync_geography(self) -> GeographySyncResult:
        """
        Scan the feed for geography values and insert the missing ones.

        Returns:
            GeographySyncResult with before/after/inserted counts
        """
        result = GeographySyncResult()
        result.before = await self._counts()

        fetch = await self.fetcher.fetch_select(GEO_SELECT, page_size=GEO_PAGE_SIZE)
        result.records_scanned = fetch.total
        result.complete = fetch.complete
        if fetch.error:
            result.errors.append(fetch.error)

        areas, municipalities, communities = self._collect(fetch.records)
        result.feed = GeographyCounts(len(areas), len(municipalities), len(communities))
        logger.info(f"Feed geography: {len(areas)} areas, {len(municipalities)} municipalities, "
                    f"{len(communities)} communities")

        area_ids = await self._insert_areas(areas, result)
        municipality_ids = await self._insert_municipalities(municipalities, area_ids, result)
        await self._insert_communities(communities, municipality_ids, result)

        result.after = await self._counts()
        logger.info(f"Geography sync inserted {result.inserted.areas} areas, "
                    f"{result.inserted.municipalities} municipalities, "
                    f"{result.inserted.communities} communities")
        return result

    @staticmethod
    def _collect(records: List[Dict]) -> Tuple[Set[str], Dict[str, str], Set[Tuple[str, str]]]:
        areas: Set[str] = set()
        municipalities: Dict[str, str] = {}  # municipality -> area
        communities: Set[Tuple[str, str]] = set()  # (municipality, community)

        for record in records:
            area = (record.get('CountyOrParish') or '').strip()
            municipality = (record.get('City') or '').strip()
            community = (record.get('CityRegion') or '').strip()

            if not area:
                continue
            areas.add(area)
            if municipality:
                municipalities.setdefault(municipality, area)
                if community:
                    communities.add((municipality, community))

        return areas, municipalities, communities

    async def _counts(self) -> GeographyCounts:
        return GeographyCounts(
            areas=await self.store.count_rows(AREAS),
            municipalities=await self.store.count_rows(MUNICIPALITIES),
            communities=await self.store.count_rows(COMMUNITIES),
        )

    async def _insert_areas(self, areas: Set[str], result: GeographySyncResult) -> Dict[str, str]:
        existing = {row['name']: row['id'] for row in await self.store.list_table(AREAS, 'id, name')}
        for name in sorted(areas - set(existing)):
            try:
                rows = await self.store.insert_rows(AREAS, [{'name': name, 'is_active': True}])
                existing[name] = rows[0]['id']
                result.inserted.areas += 1
            except Exception as e:
                result.errors.append(f"Area insert {name}: {e}")
        return existing

    async def _insert_municipalities(self, municipalities: Dict[str, str], area_ids: Dict[str, str],
                                     result: GeographySyncResult) -> Dict[str, str]:
        existing = {row['name']: row['id'] for row in await self.store.list_municipalities()}
        for name in sorted(set(municipalities) - set(existing)):
            area_id = area_ids.get(municipalities[name])
            if not area_id:
                result.errors.append(f"Municipality {name}: area not found: {municipalities[name]}")
                continue
            try:
                rows = await self.store.insert_rows(MUNICIPALITIES, [{
                    'name': name,
                    'code': municipality_code(name),
                    'area_id': area_id,
                    'is_active': True,
                }])
                existing[name] = rows[0]['id']
                result.inserted.municipalities += 1
            except Exception as e:
                result.errors.append(f"Municipality insert {name}: {e}")
        return existing

    async def _insert_communities(self, communities: Set[Tuple[str, str]], municipality_ids: Dict[str, str],
                                  result: GeographySyncResult):
        existing = {
            (row['municipality_id'], row['name'])
            for row in await self.store.list_table(COMMUNITIES, 'id, name, municipality_id')
        }
        for municipality, name in sorted(communities):
            municipality_id = municipality_ids.get(municipality)
            if not municipality_id:
                result.errors.append(f"Community {name}: municipality not found: {municipality}")
                continue
            if (municipality_id, name) in existing:
                continue
            try:
                await self.store.insert_rows(COMMUNITIES, [{
                    'name': name,
                    'municipality_id': municipality_id,
                    'is_active': True,
                }])
                existing.add((municipality_id, name))
                result.inserted.communities += 1
            except Exception as e:
                result.errors.append(f"Community insert {name}: {e}")
