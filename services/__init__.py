"""
PropTx Listing Sync Services

This package implements the listing synchronization and reconciliation
pipeline: provider fetch, sub-resource enrichment, media deduplication,
building resolution, reconciliation, hierarchy rollups and the sync run
audit trail.
"""

from .errors import (
    SyncError,
    ProviderError,
    ProviderAuthError,
    ProviderRequestError,
    DataShapeError,
    ScopeNotFoundError,
)
from .listing_models import ListingRecord, RoomRecord, OpenHouseRecord, MediaAsset
from .retry_policy import RetryPolicy
from .provider_client import ProviderClient
from .listing_fetcher import ListingFetcher, FetchResult
from .enrichment_batcher import EnrichmentBatcher, EnrichmentStats
from .media_deduplicator import dedupe_media
from .listing_store import ListingStore
from .building_resolver import BuildingResolver
from .reconciliation_engine import ReconciliationEngine, ReconciliationPlan, ReconciliationResult
from .hierarchy_aggregator import HierarchyAggregator, AggregationResult
from .sync_run_recorder import SyncRunRecorder
from .sync_orchestrator import ListingSyncOrchestrator, SyncRequest, SyncReport
from .geography_sync_service import GeographySyncService, GeographySyncResult
from .nightly_sync_service import NightlySyncService, NightlyResult

__all__ = [
    # Errors
    'SyncError',
    'ProviderError',
    'ProviderAuthError',
    'ProviderRequestError',
    'DataShapeError',
    'ScopeNotFoundError',

    # Records
    'ListingRecord',
    'RoomRecord',
    'OpenHouseRecord',
    'MediaAsset',

    # Provider access
    'RetryPolicy',
    'ProviderClient',
    'ListingFetcher',
    'FetchResult',
    'EnrichmentBatcher',
    'EnrichmentStats',
    'dedupe_media',

    # Persistence and reconciliation
    'ListingStore',
    'BuildingResolver',
    'ReconciliationEngine',
    'ReconciliationPlan',
    'ReconciliationResult',
    'HierarchyAggregator',
    'AggregationResult',
    'SyncRunRecorder',

    # Orchestration
    'ListingSyncOrchestrator',
    'SyncRequest',
    'SyncReport',
    'GeographySyncService',
    'GeographySyncResult',
    'NightlySyncService',
    'NightlyResult',
]

__version__ = '1.0.0'
