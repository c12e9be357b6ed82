"""
Listing Sync Orchestrator

Operational surface of the pipeline. A run targets one building, one
municipality, or every building ("all"):

    fetch -> plan -> enrich -> resolve buildings -> apply -> recount -> seal

A fleet run is a sequential loop of building runs with a fixed delay between
buildings; every building is its own audit row and its failures are caught
at the building boundary. Cancellation stops new pages and new buildings;
work already committed stands.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from supabase import Client

from config.sync_config import SyncConfig
from . import address_normalizer
from .building_resolver import BuildingResolver
from .enrichment_batcher import EnrichmentBatcher
from .errors import ScopeNotFoundError
from .hierarchy_aggregator import HierarchyAggregator
from .listing_fetcher import ListingFetcher
from .listing_models import ListingRecord
from .listing_store import ListingStore
from .provider_client import ProviderClient
from .reconciliation_engine import MODE_FULL, MODE_INCREMENTAL, ReconciliationEngine
from .retry_policy import RetryPolicy
from .sync_run_recorder import STATUS_COMPLETED, STATUS_FAILED, STATUS_PARTIAL, SyncRunRecorder, derive_status

logger = logging.getLogger(__name__)

SCOPE_ALL = 'all'
SCOPE_BUILDING = 'building'
SCOPE_MUNICIPALITY = 'municipality'

MAX_DETAILED_ERRORS = 5


@dataclass
class SyncRequest:
    """Parameters of one sync run"""
    scope: Optional[str] = SCOPE_ALL  # building id or "all"
    property_type: str = 'all'  # condo | freehold | all
    mode: str = MODE_INCREMENTAL
    triggered_by: str = 'manual'
    municipality_id: Optional[str] = None


@dataclass
class SyncReport:
    """Result of a sync run"""
    scope_type: str
    scope_id: Optional[str]
    mode: str
    status: str = STATUS_FAILED
    scope_name: Optional[str] = None
    found: int = 0
    added: int = 0
    updated: int = 0
    removed: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    media_saved: int = 0
    rooms_saved: int = 0
    open_houses_saved: int = 0
    duration_seconds: float = 0.0
    errors: List[str] = field(default_factory=list)
    run_id: Optional[str] = None
    children: List['SyncReport'] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        """Values for the sync_history count columns"""
        return {
            'listings_found': self.found,
            'listings_created': self.added,
            'listings_updated': self.updated,
            'listings_unchanged': self.unchanged,
            'listings_removed': self.removed,
            'listings_skipped': self.skipped,
            'media_saved': self.media_saved,
            'rooms_saved': self.rooms_saved,
            'open_houses_saved': self.open_houses_saved,
        }

    def absorb(self, child: 'SyncReport'):
        """Add a child run's counts to this report"""
        self.found += child.found
        self.added += child.added
        self.updated += child.updated
        self.removed += child.removed
        self.unchanged += child.unchanged
        self.skipped += child.skipped
        self.failed += child.failed
        self.media_saved += child.media_saved
        self.rooms_saved += child.rooms_saved
        self.open_houses_saved += child.open_houses_saved
        self.children.append(child)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'added': self.added,
            'updated': self.updated,
            'removed': self.removed,
            'unchanged': self.unchanged,
            'skipped': self.skipped,
            'found': self.found,
            'duration_seconds': self.duration_seconds,
            'status': self.status,
            'errors': list(self.errors),
            'run_id': self.run_id,
        }


def _summarize(errors: List[str], label: str) -> List[str]:
    """Collapse a long error list into a count plus the first few messages"""
    if len(errors) <= MAX_DETAILED_ERRORS:
        return list(errors)
    return [f"{len(errors)} {label}"] + errors[:MAX_DETAILED_ERRORS]


class ListingSyncOrchestrator:
    """
    Coordinates fetcher, enrichment, building resolution, reconciliation,
    aggregation and run recording for one process.
    """

    def __init__(
        self,
        supabase_client: Client,
        config: SyncConfig,
        provider: ProviderClient,
        store: Optional[ListingStore] = None
    ):
        self.supabase = supabase_client
        self.config = config
        self.provider = provider
        self.store = store or ListingStore(supabase_client, config)

        retry_policy = RetryPolicy.from_settings(config.retry)
        self.fetcher = ListingFetcher(provider, config, retry_policy)
        self.enricher = EnrichmentBatcher(provider, config)
        self.engine = ReconciliationEngine(self.store, config)
        self.aggregator = HierarchyAggregator(self.store)
        self.recorder = SyncRunRecorder(self.store, config)

        self._cancel_requested = False

    def cancel(self):
        """Stop starting new pages and new buildings"""
        logger.warning("Cancellation requested")
        self._cancel_requested = True

    def is_cancelled(self) -> bool:
        return self._cancel_requested

    async def run(self, request: SyncRequest) -> SyncReport:
        """
        Execute a sync request.

        Args:
            request: Scope, property type filter, mode and trigger

        Returns:
            SyncReport with counts, status and errors
        """
        if request.mode not in (MODE_FULL, MODE_INCREMENTAL):
            raise ValueError(f"Unknown sync mode: {request.mode}")
        self.config.reconciliation.resolve_property_types(request.property_type)

        self._cancel_requested = False

        if request.municipality_id:
            return await self.sync_municipality(
                request.municipality_id, request.mode, request.property_type, request.triggered_by
            )
        if not request.scope or request.scope == SCOPE_ALL:
            return await self.sync_all(request.mode, request.property_type, request.triggered_by)
        return await self.sync_building(request.scope, request.mode, request.property_type, request.triggered_by)

    # ------------------------------------------------------------------
    # Scopes
    # ------------------------------------------------------------------

    async def sync_building(self, building_id: str, mode: str, property_type: str = 'all',
                            triggered_by: str = 'manual', parent_run_id: Optional[str] = None,
                            building: Optional[Dict] = None) -> SyncReport:
        """Sync every listing of one building"""

        async def prepare() -> Dict:
            target = building or await self.store.get_building(building_id)
            if not target:
                raise ScopeNotFoundError(f"Building {building_id} not found")
            return target

        def build_filter(target: Dict, property_types: List[str], since) -> str:
            street_number, street_key = self._street_parts(target)
            return ListingFetcher.build_filter(
                property_types=property_types,
                modified_since=since,
                street_number=street_number,
                street_key=street_key,
            )

        def narrow(target: Dict, records: List[ListingRecord]) -> List[ListingRecord]:
            return [
                r for r in records
                if address_normalizer.is_same_building(r.address, target['canonical_address'])
            ]

        async def assign(target: Dict, records: List[ListingRecord], errors: List[str]):
            for record in records:
                BuildingResolver.attach(record, target)

        async def recount(target: Dict, touched: set):
            await self.store.mark_building_synced(target["id"], datetime.now(timezone.utc))
            return await self.aggregator.recompute(touched | {target['id']})

        return await self._sync_scope(
            SCOPE_BUILDING, building_id, mode, property_type, triggered_by, parent_run_id,
            prepare, build_filter, 'building_id', assign, recount, narrow=narrow,
            scope_name=building.get('canonical_address') if building else None,
        )

    async def sync_municipality(self, municipality_id: str, mode: str, property_type: str = 'all',
                                triggered_by: str = 'manual') -> SyncReport:
        """Sync every listing in one municipality, resolving buildings as it goes"""

        async def prepare() -> Dict:
            target = await self.store.get_municipality(municipality_id)
            if not target:
                raise ScopeNotFoundError(f"Municipality {municipality_id} not found")
            return target

        def build_filter(target: Dict, property_types: List[str], since) -> str:
            return ListingFetcher.build_filter(
                property_types=property_types, modified_since=since, city=target['name'],
            )

        async def assign(target: Dict, records: List[ListingRecord], errors: List[str]):
            resolver = BuildingResolver(self.store)
            for record in records:
                try:
                    await resolver.resolve(record)
                except Exception as e:
                    errors.append(f"Building resolution failed for {record.listing_key}: {e}")
            logger.info(f"Buildings: {resolver.matched} matched, {resolver.created} created, "
                        f"{resolver.unmatched} without address")

        async def recount(target: Dict, touched: set):
            return await self.aggregator.recompute(
                touched, municipality_ids=[target['id']], area_ids=[target.get('area_id')],
            )

        return await self._sync_scope(
            SCOPE_MUNICIPALITY, municipality_id, mode, property_type, triggered_by, None,
            prepare, build_filter, 'municipality_id', assign, recount,
        )

    async def sync_all(self, mode: str, property_type: str = 'all',
                       triggered_by: str = 'manual') -> SyncReport:
        """Fleet run: every building, one after another"""
        started = time.time()
        report = SyncReport(scope_type=SCOPE_ALL, scope_id=None, mode=mode, scope_name='all buildings')

        try:
            run = await self.recorder.start_run(SCOPE_ALL, None, mode, triggered_by,
                                                property_type=property_type, scope_name='all buildings')
            report.run_id = run['id']
        except Exception as e:
            report.errors.append(f"Could not record sync run: {e}")
            report.duration_seconds = time.time() - started
            return report

        try:
            buildings = await self.store.list_buildings(limit=self.config.fleet.max_buildings)
        except Exception as e:
            logger.error(f"Could not list buildings: {e}")
            report.errors.append(f"Could not list buildings: {e}")
            report.duration_seconds = time.time() - started
            await self.recorder.seal_run(run, STATUS_FAILED, report.counts(), report.errors)
            return report

        logger.info(f"Fleet {mode} sync of {len(buildings)} buildings")

        for index, building in enumerate(buildings):
            if self._cancel_requested:
                report.errors.append(f"Cancelled after {index} of {len(buildings)} buildings")
                break

            label = building.get('canonical_address') or building['id']
            try:
                child = await self.sync_building(
                    building['id'], mode, property_type, triggered_by,
                    parent_run_id=run['id'], building=building,
                )
            except Exception as e:
                logger.error(f"Building {label} failed: {e}")
                child = SyncReport(scope_type=SCOPE_BUILDING, scope_id=building['id'], mode=mode,
                                   errors=[str(e)])

            report.absorb(child)
            if child.status != STATUS_COMPLETED:
                first_error = child.errors[0] if child.errors else child.status
                report.errors.append(f"{label}: {first_error}")

            logger.info(f"[{index + 1}/{len(buildings)}] {label}: {child.status} "
                        f"(+{child.added} ~{child.updated} -{child.removed})")

            if index < len(buildings) - 1 and self.config.fleet.delay_between_buildings > 0:
                await asyncio.sleep(self.config.fleet.delay_between_buildings)

        succeeded = not report.children or any(c.status != STATUS_FAILED for c in report.children)
        report.status = derive_status(report.errors, succeeded=succeeded)
        report.duration_seconds = time.time() - started
        await self.recorder.seal_run(run, report.status, report.counts(), report.errors)

        logger.info(f"Fleet sync {report.status}: {report.added} added, {report.updated} updated, "
                    f"{report.removed} removed across {len(report.children)} buildings")
        return report

    # ------------------------------------------------------------------
    # Shared pipeline
    # ------------------------------------------------------------------

    async def _sync_scope(
        self,
        scope_type: str,
        scope_id: str,
        mode: str,
        property_type: str,
        triggered_by: str,
        parent_run_id: Optional[str],
        prepare: Callable[[], Awaitable[Dict]],
        build_filter: Callable[..., str],
        scope_column: str,
        assign: Callable[..., Awaitable[None]],
        recount: Callable[..., Awaitable[Any]],
        narrow: Optional[Callable[..., List[ListingRecord]]] = None,
        scope_name: Optional[str] = None,
    ) -> SyncReport:
        started = time.time()
        property_types = self.config.reconciliation.resolve_property_types(property_type)

        since = None
        if mode == MODE_INCREMENTAL:
            since = await self.recorder.last_successful_start(scope_type, scope_id, property_type)
            if since is None:
                logger.info(f"No completed run for {scope_type} {scope_id}; falling back to full sync")
                mode = MODE_FULL

        report = SyncReport(scope_type=scope_type, scope_id=scope_id, mode=mode, scope_name=scope_name)
        try:
            run = await self.recorder.start_run(
                scope_type, scope_id, mode, triggered_by, property_type=property_type,
                scope_name=scope_name, parent_run_id=parent_run_id,
            )
            report.run_id = run['id']
        except Exception as e:
            report.errors.append(f"Could not record sync run: {e}")
            report.duration_seconds = time.time() - started
            return report

        try:
            target = await prepare()
            report.scope_name = report.scope_name or target.get('canonical_address') or target.get('name')

            fetch = await self.fetcher.fetch_all(
                build_filter(target, property_types, since), should_stop=self.is_cancelled,
            )
            if fetch.error:
                report.errors.append(fetch.error)
            if fetch.cancelled:
                report.errors.append("Cancelled before the fetch completed; nothing applied")
                report.status = STATUS_PARTIAL
                report.found = fetch.total
                return await self._finish(run, report, started)

            records, skipped = self.engine.parse_records(fetch.records)
            if narrow is not None:
                in_scope = narrow(target, records)
                if len(in_scope) != len(records):
                    logger.info(f"{len(records) - len(in_scope)} fetched listings belong to other buildings")
                records = in_scope
            report.found = len(records)
            report.skipped = len(skipped)

            scope_rows = None
            if mode == MODE_FULL:
                scope_rows = await self.store.get_scope_listings(scope_column, scope_id, property_types)

            plan = await self.engine.plan(records, mode, scope_rows, fetch_complete=fetch.complete)

            enrichment = await self.enricher.enrich(plan.writes)
            report.errors.extend(_summarize(enrichment.errors, 'sub-resource lookups failed'))

            await assign(target, await self.engine.listings_needing_building(plan), report.errors)

            result = await self.engine.apply(plan)
            report.added = result.added
            report.updated = result.updated
            report.removed = result.removed
            report.unchanged = result.unchanged
            report.failed = result.failed
            report.media_saved = result.media_saved
            report.rooms_saved = result.rooms_saved
            report.open_houses_saved = result.open_houses_saved
            report.errors.extend(_summarize(result.errors, 'write errors'))

            aggregation = await recount(target, set(result.touched_building_ids))
            report.errors.extend(aggregation.errors)

            report.status = derive_status(report.errors)
        except Exception as e:
            logger.error(f"Sync of {scope_type} {scope_id} failed: {e}")
            report.errors.append(str(e))
            report.status = STATUS_PARTIAL if (report.added or report.updated or report.removed) else STATUS_FAILED

        return await self._finish(run, report, started)

    async def _finish(self, run: Dict, report: SyncReport, started: float) -> SyncReport:
        report.duration_seconds = time.time() - started
        await self.recorder.seal_run(run, report.status, report.counts(), report.errors)
        logger.info(f"{report.scope_type} {report.scope_name or report.scope_id} {report.status}: "
                    f"{report.added} added, {report.updated} updated, {report.removed} removed, "
                    f"{report.unchanged} unchanged in {report.duration_seconds:.1f}s")
        return report

    @staticmethod
    def _street_parts(building: Dict):
        """Street number and a lower-case street name fragment for a building filter"""
        street_number = building.get('street_number')
        street_name = building.get('street_name')
        tokens = (building.get('canonical_address') or '').split()
        if not street_number and tokens and tokens[0].isdigit():
            street_number = tokens[0]
        if not street_name and len(tokens) > 1:
            street_name = tokens[1]
        street_key = street_name.split()[0].lower() if street_name else None
        return street_number, street_key
