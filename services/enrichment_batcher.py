"""
Enrichment Batcher

Attaches rooms, media and open houses to listings. Listings are processed in
bounded batches; within a batch every listing is enriched concurrently and
each listing's three lookups run concurrently. Batches run one after another.
A failed lookup leaves that sub-resource empty for that listing only.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type

from config.sync_config import SyncConfig
from .errors import DataShapeError, SyncError
from .listing_fetcher import odata_quote
from .listing_models import ListingRecord, OpenHouseRecord, RoomRecord
from .media_deduplicator import dedupe_media
from .provider_client import MEDIA, OPEN_HOUSE, PROPERTY_ROOMS, ProviderClient
from .retry_policy import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class EnrichmentStats:
    """Counters for one enrichment pass"""
    listings: int = 0
    batches: int = 0
    rooms: int = 0
    media_raw: int = 0
    media_kept: int = 0
    open_houses: int = 0
    failed_lookups: int = 0
    skipped_records: int = 0
    errors: List[str] = field(default_factory=list)


class EnrichmentBatcher:
    """
    Fetches per-listing sub-resources with bounded concurrency
    """

    def __init__(self, client: ProviderClient, config: SyncConfig,
                 retry_policy: Optional[RetryPolicy] = None):
        self.client = client
        self.config = config
        self.batch_size = config.enrichment.batch_size
        self.retry_policy = retry_policy or RetryPolicy.from_settings(
            config.retry, max_attempts=config.enrichment.max_attempts
        )

    async def enrich(self, listings: List[ListingRecord]) -> EnrichmentStats:
        """
        Enrich listings in place.

        Args:
            listings: Listings to enrich

        Returns:
            EnrichmentStats for the pass
        """
        stats = EnrichmentStats(listings=len(listings))
        if not listings:
            return stats

        total_batches = (len(listings) + self.batch_size - 1) // self.batch_size
        for start in range(0, len(listings), self.batch_size):
            batch = listings[start:start + self.batch_size]
            stats.batches += 1

            await asyncio.gather(*(self._enrich_listing(listing, stats) for listing in batch))

            logger.info(f"Enriched batch {stats.batches}/{total_batches} ({len(batch)} listings)")

        logger.info(f"Enrichment complete: {stats.rooms} rooms, {stats.media_kept}/{stats.media_raw} media kept, "
                    f"{stats.open_houses} open houses, {stats.failed_lookups} failed lookups")
        return stats

    async def _enrich_listing(self, listing: ListingRecord, stats: EnrichmentStats):
        key = odata_quote(listing.listing_key)
        provider = self.config.provider

        rooms, media, open_houses = await asyncio.gather(
            self._lookup(PROPERTY_ROOMS, f"ListingKey eq {key}", provider.rooms_page_size, listing, stats),
            self._lookup(MEDIA, f"ResourceRecordKey eq {key}", provider.media_page_size, listing, stats),
            self._lookup(OPEN_HOUSE, f"ListingKey eq {key}", provider.open_house_page_size, listing, stats),
        )

        listing.rooms = self._parse(rooms, RoomRecord, stats)
        listing.open_houses = self._parse(open_houses, OpenHouseRecord, stats)
        listing.media = dedupe_media(media)

        stats.rooms += len(listing.rooms)
        stats.open_houses += len(listing.open_houses)
        stats.media_raw += len(media)
        stats.media_kept += len(listing.media)

    async def _lookup(self, resource: str, filter_expr: str, top: int,
                      listing: ListingRecord, stats: EnrichmentStats) -> List[Dict[str, Any]]:
        try:
            body = await self.retry_policy.run(self.client.query, resource, filter=filter_expr, top=top)
        except SyncError as e:
            stats.failed_lookups += 1
            stats.errors.append(f"{resource} lookup failed for {listing.listing_key}: {e}")
            logger.warning(f"{resource} lookup failed for {listing.listing_key}: {e}")
            return []

        value = body.get('value')
        return value if isinstance(value, list) else []

    @staticmethod
    def _parse(rows: List[Dict[str, Any]], record_type: Type, stats: EnrichmentStats) -> List:
        parsed = []
        for row in rows:
            try:
                parsed.append(record_type.from_provider(row))
            except DataShapeError as e:
                stats.skipped_records += 1
                logger.debug(f"Skipping {record_type.__name__}: {e}")
        return parsed
