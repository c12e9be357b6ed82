"""
Building Matcher/Resolver

Finds or creates the building a listing belongs to, keyed by the canonical
address from the address normalizer. Resolution is cached per run in a
registry keyed by canonical address. Creation relies on the unique
constraint on buildings.canonical_address: when an insert loses a race the
winner's row is read back instead.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from postgrest.exceptions import APIError

from . import address_normalizer
from .listing_models import ListingRecord
from .listing_store import ListingStore

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = '23505'


class BuildingResolver:
    """
    Resolves listings to building ids; create one per run
    """

    def __init__(self, store: ListingStore):
        self.store = store
        self.registry: Dict[str, Dict] = {}
        self._hierarchy_cache: Dict[Tuple[str, str], Dict[str, Optional[str]]] = {}
        self.created = 0
        self.matched = 0
        self.unmatched = 0

    async def resolve(self, listing: ListingRecord) -> Optional[str]:
        """
        Attach the owning building to a listing.

        Args:
            listing: Listing with address fields

        Returns:
            Building id, or None when the listing has no usable address
        """
        address = listing.address
        canonical = address_normalizer.canonicalize(address) if address else None
        if not canonical or not any(ch.isdigit() for ch in canonical):
            self.unmatched += 1
            hierarchy = await self._hierarchy_for(listing)
            self._stamp_hierarchy(listing, hierarchy)
            logger.debug(f"No usable address for {listing.listing_key}: {address!r}")
            return None

        building = self.registry.get(canonical)
        if building is None:
            building = await self._find(address, canonical)
            if building is None:
                building = await self._create(listing, address, canonical)
            else:
                self.matched += 1
            self.registry[canonical] = building

        self.attach(listing, building)
        return building['id']

    @staticmethod
    def attach(listing: ListingRecord, building: Dict):
        """Stamp a known building and its hierarchy onto a listing"""
        listing.building_id = building['id']
        BuildingResolver._stamp_hierarchy(listing, building)

    @staticmethod
    def _stamp_hierarchy(listing: ListingRecord, source: Dict):
        listing.community_id = source.get('community_id')
        listing.municipality_id = source.get('municipality_id')
        listing.area_id = source.get('area_id')

    async def _find(self, address: str, canonical: str) -> Optional[Dict]:
        candidates = [canonical] + [
            v for v in address_normalizer.search_variations(address) if v != canonical
        ]
        rows = await self.store.find_buildings_by_addresses(candidates)
        by_address = {row['canonical_address']: row for row in rows}
        for candidate in candidates:
            if candidate in by_address:
                return by_address[candidate]
        return None

    async def _create(self, listing: ListingRecord, address: str, canonical: str) -> Dict:
        hierarchy = await self._hierarchy_for(listing)
        building_name = address_normalizer.extract_building_name(address)
        city = listing.fields.get('city')

        row = {
            'canonical_address': canonical,
            'building_name': building_name,
            'slug': address_normalizer.slugify(building_name or canonical, city),
            'street_number': listing.fields.get('street_number'),
            'street_name': listing.fields.get('street_name'),
            'city': city,
            'community_id': hierarchy.get('community_id'),
            'municipality_id': hierarchy.get('municipality_id'),
            'area_id': hierarchy.get('area_id'),
            'listing_count': 0,
            'created_at': datetime.now(timezone.utc).isoformat(),
        }

        try:
            building = await self.store.insert_building(row)
            self.created += 1
            logger.info(f"Created building {canonical} ({building['id']})")
            return building
        except APIError as e:
            if e.code != UNIQUE_VIOLATION:
                raise
            logger.info(f"Building {canonical} created concurrently, re-reading")
            rows = await self.store.find_buildings_by_addresses([canonical])
            if not rows:
                raise
            self.matched += 1
            return rows[0]

    async def _hierarchy_for(self, listing: ListingRecord) -> Dict[str, Optional[str]]:
        """Community, municipality and area ids for a listing's City/CityRegion"""
        city = (listing.fields.get('city') or '').strip()
        region = (listing.fields.get('city_region') or '').strip()
        cache_key = (city.lower(), region.lower())
        if cache_key in self._hierarchy_cache:
            return self._hierarchy_cache[cache_key]

        hierarchy = {'community_id': None, 'municipality_id': None, 'area_id': None}
        if city:
            municipality = await self.store.find_municipality_by_name(city)
            if municipality:
                hierarchy['municipality_id'] = municipality['id']
                hierarchy['area_id'] = municipality.get('area_id')
                if region:
                    community = await self.store.find_community(region, municipality['id'])
                    if community:
                        hierarchy['community_id'] = community['id']

        self._hierarchy_cache[cache_key] = hierarchy
        return hierarchy
