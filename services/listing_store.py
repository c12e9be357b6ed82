"""
Listing Store

Thin persistence layer over the Supabase tables used by the sync pipeline.
Every method is a simple CRUD call (upsert-by-key, count, filter-by-field);
errors are logged and re-raised for the caller to count.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from supabase import Client

from config.sync_config import SyncConfig
from .listing_models import FEED_STATUS_ACTIVE, FEED_STATUS_REMOVED

logger = logging.getLogger(__name__)

LISTINGS = 'mls_listings'
MEDIA = 'media'
ROOMS = 'property_rooms'
OPEN_HOUSES = 'open_houses'
PRICE_HISTORY = 'price_history'
BUILDINGS = 'buildings'
COMMUNITIES = 'communities'
MUNICIPALITIES = 'municipalities'
AREAS = 'treb_areas'
SYNC_HISTORY = 'sync_history'

BUILDING_COLUMNS = ('id, canonical_address, building_name, slug, street_number, street_name, city, '
                    'community_id, municipality_id, area_id, listing_count')


def _chunks(items: List[Any], size: int) -> Iterable[List[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class ListingStore:
    """
    Supabase-backed persistence for listings, buildings, hierarchy and run history
    """

    def __init__(self, supabase_client: Client, config: SyncConfig):
        self.supabase = supabase_client
        self.config = config
        self.query_batch_size = config.reconciliation.query_batch_size
        self.page_size = config.store_page_size

    async def _select_all(self, build_query: Callable[[], Any], limit: int = 0) -> List[Dict]:
        """
        Read every row of a query in pages.

        PostgREST caps each response at its max-rows setting, so an unranged
        select silently truncates large tables. Each page is a fresh query
        with a .range() window; reading stops at the first short page.

        Args:
            build_query: Returns a new ordered select query
            limit: Stop after this many rows (0 = all)
        """
        rows: List[Dict] = []
        offset = 0
        while True:
            page_size = self.page_size
            if limit:
                page_size = min(page_size, limit - len(rows))
            response = build_query().range(offset, offset + page_size - 1).execute()
            page = response.data or []
            rows.extend(page)
            if len(page) < page_size or (limit and len(rows) >= limit):
                return rows
            offset += len(page)

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    async def get_listings_by_keys(self, listing_keys: List[str]) -> Dict[str, Dict]:
        """Persisted listing rows keyed by listing_key (any scope)"""
        found = {}
        for batch in _chunks(list(listing_keys), self.query_batch_size):
            try:
                response = self.supabase.table(LISTINGS).select('*').in_('listing_key', batch).execute()
            except Exception as e:
                logger.error(f"Error loading listings by key: {e}")
                raise
            for row in response.data or []:
                found[row['listing_key']] = row
        return found

    async def get_scope_listings(self, scope_column: str, scope_id: str,
                                 property_types: Optional[List[str]] = None) -> List[Dict]:
        """Currently active listings attached to a building or municipality"""
        def build_query():
            query = self.supabase.table(LISTINGS).select(
                'id, listing_key, building_id, community_id, municipality_id, area_id, property_type, feed_status'
            ).eq(scope_column, scope_id).eq('feed_status', FEED_STATUS_ACTIVE)
            if property_types:
                query = query.in_('property_type', property_types)
            return query.order('id')

        try:
            return await self._select_all(build_query)
        except Exception as e:
            logger.error(f"Error loading listings for {scope_column}={scope_id}: {e}")
            raise

    async def upsert_listings(self, rows: List[Dict]) -> List[Dict]:
        """Upsert listing rows on listing_key; returns the written rows"""
        if not rows:
            return []
        try:
            response = self.supabase.table(LISTINGS).upsert(rows, on_conflict='listing_key').execute()
            return response.data or []
        except Exception as e:
            logger.error(f"Error upserting {len(rows)} listings: {e}")
            raise

    async def retire_listings(self, listing_ids: List[str], when: datetime) -> int:
        """Mark listings as no longer returned by the provider"""
        update_data = {
            'feed_status': FEED_STATUS_REMOVED,
            'removed_from_feed_at': when.isoformat(),
            'updated_at': when.isoformat(),
        }
        retired = 0
        for batch in _chunks(list(listing_ids), self.query_batch_size):
            try:
                self.supabase.table(LISTINGS).update(update_data).in_('id', batch).execute()
                retired += len(batch)
            except Exception as e:
                logger.error(f"Error retiring listings: {e}")
                raise
        return retired

    async def touch_listings(self, listing_ids: List[str], when: datetime):
        """Update last_seen_at for listings that came back unchanged"""
        update_data = {'last_seen_at': when.isoformat()}
        for batch in _chunks(list(listing_ids), self.query_batch_size):
            self.supabase.table(LISTINGS).update(update_data).in_('id', batch).execute()

    async def replace_children(self, table: str, listing_id: str, rows: List[Dict]) -> int:
        """Replace the child rows (media, rooms, open houses) of one listing"""
        try:
            self.supabase.table(table).delete().eq('listing_id', listing_id).execute()
            if rows:
                self.supabase.table(table).insert(rows).execute()
            return len(rows)
        except Exception as e:
            logger.error(f"Error replacing {table} for listing {listing_id}: {e}")
            raise

    async def insert_price_history(self, rows: List[Dict]):
        if not rows:
            return
        try:
            self.supabase.table(PRICE_HISTORY).insert(rows).execute()
        except Exception as e:
            logger.error(f"Error saving price history: {e}")
            raise

    async def count_listings(self, not_null: Optional[List[str]] = None, **filters) -> int:
        """Count active listings matching equality filters"""
        query = self.supabase.table(LISTINGS).select('id', count='exact', head=True).eq(
            'feed_status', FEED_STATUS_ACTIVE
        )
        for column, value in filters.items():
            query = query.eq(column, value)
        for column in not_null or []:
            query = query.not_.is_(column, 'null')
        response = query.execute()
        return response.count or 0

    async def count_rows(self, table: str, **filters) -> int:
        query = self.supabase.table(table).select('id', count='exact', head=True)
        for column, value in filters.items():
            query = query.eq(column, value)
        return query.execute().count or 0

    # ------------------------------------------------------------------
    # Buildings
    # ------------------------------------------------------------------

    async def get_building(self, building_id: str) -> Optional[Dict]:
        response = self.supabase.table(BUILDINGS).select(BUILDING_COLUMNS).eq('id', building_id).limit(1).execute()
        return response.data[0] if response.data else None

    async def get_buildings(self, building_ids: List[str]) -> List[Dict]:
        buildings = []
        for batch in _chunks(list(building_ids), self.query_batch_size):
            response = self.supabase.table(BUILDINGS).select(BUILDING_COLUMNS).in_('id', batch).execute()
            buildings.extend(response.data or [])
        return buildings

    async def list_buildings(self, municipality_id: Optional[str] = None, limit: int = 0) -> List[Dict]:
        """Buildings ordered by canonical address, optionally within a municipality"""
        def build_query():
            query = self.supabase.table(BUILDINGS).select(BUILDING_COLUMNS)
            if municipality_id:
                query = query.eq('municipality_id', municipality_id)
            return query.order('canonical_address')

        return await self._select_all(build_query, limit)

    async def find_buildings_by_addresses(self, addresses: List[str]) -> List[Dict]:
        if not addresses:
            return []
        response = self.supabase.table(BUILDINGS).select(BUILDING_COLUMNS).in_(
            'canonical_address', addresses
        ).execute()
        return response.data or []

    async def insert_building(self, row: Dict) -> Dict:
        """Insert a building; raises postgrest APIError on a canonical_address conflict"""
        response = self.supabase.table(BUILDINGS).insert(row).execute()
        return response.data[0]

    async def update_listing_count(self, table: str, row_id: str, listing_count: int, when: datetime):
        self.supabase.table(table).update({
            'listing_count': listing_count,
            'listing_count_updated_at': when.isoformat(),
        }).eq('id', row_id).execute()

    async def mark_building_synced(self, building_id: str, when: datetime):
        self.supabase.table(BUILDINGS).update({'last_synced_at': when.isoformat()}).eq('id', building_id).execute()

    # ------------------------------------------------------------------
    # Geographic hierarchy
    # ------------------------------------------------------------------

    async def get_municipality(self, municipality_id: str) -> Optional[Dict]:
        response = self.supabase.table(MUNICIPALITIES).select('id, name, code, area_id').eq(
            'id', municipality_id
        ).limit(1).execute()
        return response.data[0] if response.data else None

    async def find_municipality_by_name(self, name: str) -> Optional[Dict]:
        response = self.supabase.table(MUNICIPALITIES).select('id, name, code, area_id').ilike(
            'name', name
        ).limit(1).execute()
        return response.data[0] if response.data else None

    async def find_community(self, name: str, municipality_id: str) -> Optional[Dict]:
        response = self.supabase.table(COMMUNITIES).select('id, name, municipality_id').ilike(
            'name', name
        ).eq('municipality_id', municipality_id).limit(1).execute()
        return response.data[0] if response.data else None

    async def list_table(self, table: str, columns: str = '*') -> List[Dict]:
        return await self._select_all(lambda: self.supabase.table(table).select(columns).order('id'))

    async def list_municipalities(self) -> List[Dict]:
        return await self.list_table(MUNICIPALITIES, 'id, name, code, area_id')

    async def insert_rows(self, table: str, rows: List[Dict]) -> List[Dict]:
        if not rows:
            return []
        try:
            response = self.supabase.table(table).insert(rows).execute()
            return response.data or []
        except Exception as e:
            logger.error(f"Error inserting {len(rows)} rows into {table}: {e}")
            raise

    # ------------------------------------------------------------------
    # Sync history
    # ------------------------------------------------------------------

    async def insert_run(self, row: Dict) -> Dict:
        response = self.supabase.table(SYNC_HISTORY).insert(row).execute()
        return response.data[0]

    async def update_running_run(self, run_id: str, update_data: Dict) -> List[Dict]:
        """Update a run only while it is still running; returns the updated rows"""
        response = self.supabase.table(SYNC_HISTORY).update(update_data).eq(
            'id', run_id
        ).eq('sync_status', 'running').execute()
        return response.data or []

    async def find_stale_runs(self, cutoff: datetime, scope_type: Optional[str] = None,
                              scope_id: Optional[str] = None) -> List[Dict]:
        def build_query():
            query = self.supabase.table(SYNC_HISTORY).select('id, scope_type, scope_id, started_at').eq(
                'sync_status', 'running'
            ).lt('started_at', cutoff.isoformat())
            if scope_type:
                query = query.eq('scope_type', scope_type)
            if scope_id:
                query = query.eq('scope_id', scope_id)
            return query.order('started_at')

        return await self._select_all(build_query)

    async def find_runs(self, status: Optional[str] = None, scope_type: Optional[str] = None,
                        scope_id: Optional[str] = None, property_type: Optional[str] = None,
                        since: Optional[datetime] = None, limit: int = 0) -> List[Dict]:
        """Runs, most recent first"""
        def build_query():
            query = self.supabase.table(SYNC_HISTORY).select('*')
            if status:
                query = query.eq('sync_status', status)
            if scope_type:
                query = query.eq('scope_type', scope_type)
            if scope_id:
                query = query.eq('scope_id', scope_id)
            if property_type:
                query = query.eq('property_type', property_type)
            if since:
                query = query.gte('started_at', since.isoformat())
            return query.order('started_at', desc=True)

        return await self._select_all(build_query, limit)

    async def ping(self) -> bool:
        """Store reachability check"""
        self.supabase.table(LISTINGS).select('id').limit(1).execute()
        return True
