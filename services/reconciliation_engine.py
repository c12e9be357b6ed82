"""
Reconciliation Engine

Classifies a fetched listing set against persisted state and applies the
result. Classification is last-write-wins on ModificationTimestamp:

- added: no persisted row has the listing key
- updated: persisted row exists, fetched timestamp is not older and at least
  one compared column differs (a retired listing coming back counts)
- unchanged: nothing differs, or the fetched timestamp is older than stored
- removed: full mode only; active rows in scope absent from a complete fetch

Removed listings are retired, never deleted. Writes are upserts keyed on
listing_key; a failing batch is retried row by row so one bad row cannot
sink the others.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from config.sync_config import SyncConfig
from .errors import DataShapeError
from .listing_models import (
    COMPARED_COLUMNS,
    FEED_STATUS_ACTIVE,
    HIERARCHY_COLUMNS,
    ListingRecord,
    parse_timestamp,
)
from .listing_store import MEDIA, OPEN_HOUSES, ROOMS, ListingStore

logger = logging.getLogger(__name__)

MODE_FULL = 'full'
MODE_INCREMENTAL = 'incremental'


@dataclass
class ReconciliationPlan:
    """Classification of one fetched set"""
    mode: str
    added: List[ListingRecord] = field(default_factory=list)
    updated: List[Tuple[ListingRecord, Dict]] = field(default_factory=list)
    unchanged: List[Dict] = field(default_factory=list)
    removed: List[Dict] = field(default_factory=list)
    stale_rejections: int = 0
    removal_skipped_reason: Optional[str] = None

    @property
    def writes(self) -> List[ListingRecord]:
        """Listings that will be written (added first, then updated)"""
        return self.added + [record for record, _ in self.updated]


@dataclass
class ReconciliationResult:
    """Outcome of applying a plan"""
    added: int = 0
    updated: int = 0
    unchanged: int = 0
    removed: int = 0
    failed: int = 0
    media_saved: int = 0
    rooms_saved: int = 0
    open_houses_saved: int = 0
    price_changes: int = 0
    touched_building_ids: Set[str] = field(default_factory=set)
    errors: List[str] = field(default_factory=list)


def _values_differ(column: str, new_value: Any, old_value: Any) -> bool:
    if column == 'modification_timestamp':
        return parse_timestamp(new_value) != parse_timestamp(old_value)
    if isinstance(new_value, (int, float)) and isinstance(old_value, (int, float)):
        return float(new_value) != float(old_value)
    if column == 'feed_status':
        return (old_value or FEED_STATUS_ACTIVE) != new_value
    return new_value != old_value


def changed_columns(record: ListingRecord, existing: Dict) -> List[str]:
    """Compared columns whose fetched value differs from the persisted row"""
    row = record.to_row()
    return [
        column for column in COMPARED_COLUMNS
        if _values_differ(column, row.get(column), existing.get(column))
    ]


class ReconciliationEngine:
    """
    Plans and applies listing changes for one sync pass
    """

    def __init__(self, store: ListingStore, config: SyncConfig):
        self.store = store
        self.config = config
        self.upsert_batch_size = config.reconciliation.upsert_batch_size

    @staticmethod
    def parse_records(raw_rows: List[Dict[str, Any]]) -> Tuple[List[ListingRecord], List[str]]:
        """
        Validate provider payloads, dropping malformed rows and repeated keys.

        Returns:
            Tuple of (records, skip reasons)
        """
        records = []
        skipped = []
        seen = set()
        for raw in raw_rows:
            try:
                record = ListingRecord.from_provider(raw)
            except DataShapeError as e:
                skipped.append(str(e))
                continue
            if record.listing_key in seen:
                skipped.append(f"Duplicate listing key {record.listing_key} in fetched set")
                continue
            seen.add(record.listing_key)
            records.append(record)
        return records, skipped

    async def plan(self, fetched: List[ListingRecord], mode: str,
                   scope_rows: Optional[List[Dict]] = None,
                   fetch_complete: bool = True) -> ReconciliationPlan:
        """
        Classify fetched listings against persisted state.

        Args:
            fetched: Validated listings from the provider
            mode: 'full' or 'incremental'
            scope_rows: Active persisted rows in the run's scope (removal candidates)
            fetch_complete: False when the fetch stopped early

        Returns:
            ReconciliationPlan
        """
        if mode not in (MODE_FULL, MODE_INCREMENTAL):
            raise ValueError(f"Unknown sync mode: {mode}")

        plan = ReconciliationPlan(mode=mode)
        existing_by_key = await self.store.get_listings_by_keys([r.listing_key for r in fetched])

        for record in fetched:
            existing = existing_by_key.get(record.listing_key)
            if existing is None:
                plan.added.append(record)
                continue

            fetched_at = record.modified_at
            stored_at = parse_timestamp(existing.get('modification_timestamp'))
            if fetched_at is not None and stored_at is not None and fetched_at < stored_at:
                plan.stale_rejections += 1
                plan.unchanged.append(existing)
                logger.debug(f"Ignoring stale data for {record.listing_key} "
                             f"({fetched_at.isoformat()} < {stored_at.isoformat()})")
                continue

            if changed_columns(record, existing):
                plan.updated.append((record, existing))
            else:
                plan.unchanged.append(existing)

        if mode == MODE_FULL:
            if not fetch_complete:
                plan.removal_skipped_reason = "Fetch incomplete; removal detection skipped"
                logger.warning(plan.removal_skipped_reason)
            elif scope_rows is not None:
                fetched_keys = {r.listing_key for r in fetched}
                plan.removed = [
                    row for row in scope_rows
                    if row['listing_key'] not in fetched_keys
                    and (row.get('feed_status') or FEED_STATUS_ACTIVE) == FEED_STATUS_ACTIVE
                ]

        logger.info(f"Plan ({mode}): {len(plan.added)} added, {len(plan.updated)} updated, "
                    f"{len(plan.unchanged)} unchanged, {len(plan.removed)} removed, "
                    f"{plan.stale_rejections} stale")
        return plan

    async def listings_needing_building(self, plan: ReconciliationPlan) -> List[ListingRecord]:
        """
        Listings to be written whose persisted row has no building yet.

        Linked listings keep their persisted building and hierarchy ids; any
        hierarchy column still empty is filled from the building row.
        """
        needing = list(plan.added)
        linked = []
        for record, existing in plan.updated:
            if existing.get('building_id'):
                linked.append((record, existing))
            else:
                needing.append(record)
        if not linked:
            return needing

        building_ids = sorted({existing['building_id'] for _, existing in linked})
        buildings = {row['id']: row for row in await self.store.get_buildings(building_ids)}
        for record, existing in linked:
            building = buildings.get(existing['building_id'], {})
            for column in HIERARCHY_COLUMNS:
                setattr(record, column, existing.get(column) or building.get(column))
        return needing

    async def apply(self, plan: ReconciliationPlan, now: Optional[datetime] = None) -> ReconciliationResult:
        """
        Persist a plan.

        Args:
            plan: Plan from plan()
            now: Timestamp written to bookkeeping columns

        Returns:
            ReconciliationResult with counts and accumulated errors
        """
        now = now or datetime.now(timezone.utc)
        result = ReconciliationResult(unchanged=len(plan.unchanged))

        written = await self._write_listings(plan, now, result)
        await self._save_children(plan, written, result)
        await self._record_price_changes(plan, written, now, result)
        await self._retire(plan, now, result)

        unchanged_ids = [row['id'] for row in plan.unchanged if row.get('id')]
        if unchanged_ids:
            try:
                await self.store.touch_listings(unchanged_ids, now)
            except Exception as e:
                result.errors.append(f"Failed to update last_seen_at for unchanged listings: {e}")

        logger.info(f"Applied: {result.added} added, {result.updated} updated, {result.removed} removed, "
                    f"{result.unchanged} unchanged, {result.failed} failed")
        return result

    def _row_for(self, record: ListingRecord, existing: Optional[Dict], now: datetime) -> Dict:
        row = record.to_row()
        row['last_seen_at'] = now.isoformat()
        row['updated_at'] = now.isoformat()
        if existing is None:
            row['created_at'] = now.isoformat()
        else:
            # Curated building and hierarchy assignments are kept
            for column in HIERARCHY_COLUMNS:
                if existing.get(column):
                    row[column] = existing[column]
        return row

    async def _write_listings(self, plan: ReconciliationPlan, now: datetime,
                              result: ReconciliationResult) -> Dict[str, Dict]:
        """Upsert added and updated listings; returns written rows by listing key"""
        existing_by_key = {record.listing_key: existing for record, existing in plan.updated}
        added_keys = {record.listing_key for record in plan.added}
        rows = [self._row_for(r, existing_by_key.get(r.listing_key), now) for r in plan.writes]

        written: Dict[str, Dict] = {}
        for i in range(0, len(rows), self.upsert_batch_size):
            batch = rows[i:i + self.upsert_batch_size]
            try:
                saved = await self.store.upsert_listings(batch)
            except Exception as e:
                logger.warning(f"Batch upsert failed ({e}), retrying {len(batch)} rows individually")
                saved = []
                for row in batch:
                    try:
                        saved.extend(await self.store.upsert_listings([row]))
                    except Exception as row_error:
                        result.failed += 1
                        result.errors.append(f"Failed to save listing {row['listing_key']}: {row_error}")
            for row in saved:
                written[row['listing_key']] = row

        for key, row in written.items():
            if key in added_keys:
                result.added += 1
            else:
                result.updated += 1
            if row.get('building_id'):
                result.touched_building_ids.add(row['building_id'])
        return written

    async def _save_children(self, plan: ReconciliationPlan, written: Dict[str, Dict],
                             result: ReconciliationResult):
        for record in plan.writes:
            row = written.get(record.listing_key)
            if not row or not row.get('id'):
                continue
            listing_id = row['id']
            try:
                result.media_saved += await self.store.replace_children(
                    MEDIA, listing_id, [m.to_row(listing_id) for m in record.media])
                result.rooms_saved += await self.store.replace_children(
                    ROOMS, listing_id, [r.to_row(listing_id) for r in record.rooms])
                result.open_houses_saved += await self.store.replace_children(
                    OPEN_HOUSES, listing_id, [o.to_row(listing_id) for o in record.open_houses])
            except Exception as e:
                result.errors.append(f"Failed to save media/rooms/open houses for {record.listing_key}: {e}")

    async def _record_price_changes(self, plan: ReconciliationPlan, written: Dict[str, Dict],
                                    now: datetime, result: ReconciliationResult):
        history = []
        for record, existing in plan.updated:
            row = written.get(record.listing_key)
            old_price, new_price = existing.get('list_price'), record.list_price
            if not row or old_price is None or new_price is None or float(old_price) == float(new_price):
                continue
            change = new_price - old_price
            history.append({
                'listing_id': row['id'],
                'price_type': 'list',
                'old_price': old_price,
                'new_price': new_price,
                'change_amount': change,
                'change_percent': round(change / old_price * 100, 2) if old_price else 0,
                'detected_at': now.isoformat(),
            })

        if not history:
            return
        try:
            await self.store.insert_price_history(history)
            result.price_changes = len(history)
        except Exception as e:
            result.errors.append(f"Failed to save {len(history)} price changes: {e}")

    async def _retire(self, plan: ReconciliationPlan, now: datetime, result: ReconciliationResult):
        if not plan.removed:
            return
        ids = [row['id'] for row in plan.removed]
        try:
            result.removed = await self.store.retire_listings(ids, now)
        except Exception as e:
            result.errors.append(f"Failed to retire {len(ids)} listings: {e}")
            return
        for row in plan.removed:
            if row.get('building_id'):
                result.touched_building_ids.add(row['building_id'])
