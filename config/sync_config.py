"""
Sync Configuration for the PropTx Listing Sync Pipeline

This module loads configuration from sync_config.yaml, applies environment
variable overrides and provides typed access to every pipeline setting.

Sections:
- provider: RESO/OData endpoint, credentials, page sizes, request timeout
- retry: the single retry/backoff policy shared by fetcher and enrichment
- enrichment: batch size for concurrent sub-resource lookups
- reconciliation: write batch sizes and property type filters
- fleet: delay between buildings in an "all buildings" run
- runs: stale running-row threshold and history defaults

A SyncConfig is built once by the caller (see load_config) and passed into
each component explicitly.
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"

# Provider property types by the short names used on the command line
DEFAULT_PROPERTY_TYPES = {
    'condo': ['Residential Condo & Other'],
    'freehold': ['Residential Freehold'],
    'all': ['Residential Condo & Other', 'Residential Freehold'],
}


@dataclass
class ProviderSettings:
    """Connection settings for the RESO/OData listing provider"""
    base_url: str = "https://query.ampre.ca/odata/"
    token: Optional[str] = None
    request_timeout: float = 60.0  # seconds
    page_size: int = 5000
    rooms_page_size: int = 50
    media_page_size: int = 500
    open_house_page_size: int = 20
    user_agent: str = "proptx-listing-sync/1.0"

    def __post_init__(self):
        """Validate settings after initialization"""
        assert self.page_size > 0, f"Page size must be positive: {self.page_size}"
        assert self.request_timeout > 0, f"Timeout must be positive: {self.request_timeout}"
        if not self.base_url.endswith('/'):
            self.base_url = self.base_url + '/'


@dataclass
class RetryPolicySettings:
    """Bounded retry/backoff settings for provider calls"""
    max_attempts: int = 3
    backoff_seconds: float = 30.0  # multiplied by attempt number on 5xx
    timeout_wait_seconds: float = 10.0
    network_wait_seconds: float = 5.0
    max_retry_after_seconds: float = 120.0

    def __post_init__(self):
        assert self.max_attempts >= 1, f"Max attempts must be at least 1: {self.max_attempts}"


@dataclass
class EnrichmentSettings:
    """Sub-resource enrichment settings"""
    batch_size: int = 25
    max_attempts: int = 2

    def __post_init__(self):
        assert 10 <= self.batch_size <= 30, f"Enrichment batch size must be 10-30: {self.batch_size}"
        assert self.max_attempts >= 1, f"Max attempts must be at least 1: {self.max_attempts}"


@dataclass
class ReconciliationSettings:
    """Persistence settings for the reconciliation engine"""
    upsert_batch_size: int = 100
    query_batch_size: int = 200  # Keys per IN(...) lookup
    property_types: Dict[str, List[str]] = field(default_factory=lambda: dict(DEFAULT_PROPERTY_TYPES))

    def resolve_property_types(self, name: Optional[str]) -> List[str]:
        """Map a property type filter name to provider PropertyType values"""
        if not name:
            return list(self.property_types['all'])
        if name in self.property_types:
            return list(self.property_types[name])
        raise ValueError(f"Unknown property type filter: {name}. "
                         f"Expected one of {sorted(self.property_types)}")


@dataclass
class FleetSettings:
    """Settings for fleet ("all buildings") runs"""
    delay_between_buildings: float = 1.0  # seconds
    max_buildings: int = 0  # 0 = no limit


@dataclass
class RunSettings:
    """Audit trail settings"""
    stale_after_minutes: int = 60
    history_limit: int = 10
    summary_days: int = 7


@dataclass
class SyncConfig:
    """Main configuration class for the listing sync pipeline"""
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    retry: RetryPolicySettings = field(default_factory=RetryPolicySettings)
    enrichment: EnrichmentSettings = field(default_factory=EnrichmentSettings)
    reconciliation: ReconciliationSettings = field(default_factory=ReconciliationSettings)
    fleet: FleetSettings = field(default_factory=FleetSettings)
    runs: RunSettings = field(default_factory=RunSettings)

    # Store client
    store_timeout: float = 30.0  # seconds
    store_page_size: int = 1000  # rows per read; not above the server max-rows

    # Logging
    log_file: str = "listing_sync.log"
    log_level: str = "INFO"

    def __post_init__(self):
        assert self.store_page_size > 0, f"Store page size must be positive: {self.store_page_size}"


def _load_yaml_config(config_path: Optional[Path] = None) -> Dict:
    """Load configuration from YAML file"""
    config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    if not config_path.exists():
        logger.warning(f"Config file not found at {config_path}, using defaults")
        return {}

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f)
            logger.info(f"Loaded configuration from {config_path}")
            return config or {}
    except Exception as e:
        logger.error(f"Error loading config from {config_path}: {e}")
        return {}


def _provider_token() -> Optional[str]:
    """First configured provider token, in order of preference"""
    for key in ('PROPTX_VOW_TOKEN', 'PROPTX_DLA_TOKEN', 'PROPTX_BEARER_TOKEN'):
        value = os.getenv(key)
        if value:
            return value
    return None


def build_config(yaml_config: Dict) -> SyncConfig:
    """Build SyncConfig from YAML configuration with environment variable overrides"""
    provider = yaml_config.get('provider', {}) or {}
    retry = yaml_config.get('retry', {}) or {}
    enrichment = yaml_config.get('enrichment', {}) or {}
    reconciliation = yaml_config.get('reconciliation', {}) or {}
    fleet = yaml_config.get('fleet', {}) or {}
    runs = yaml_config.get('runs', {}) or {}
    store = yaml_config.get('store', {}) or {}
    logging_config = yaml_config.get('logging', {}) or {}

    property_types = dict(DEFAULT_PROPERTY_TYPES)
    property_types.update(reconciliation.get('property_types', {}) or {})

    return SyncConfig(
        provider=ProviderSettings(
            base_url=os.getenv('PROPTX_RESO_API_URL', provider.get('base_url', "https://query.ampre.ca/odata/")),
            token=_provider_token() or provider.get('token'),
            request_timeout=float(os.getenv('PROPTX_REQUEST_TIMEOUT', provider.get('request_timeout', 60.0))),
            page_size=int(provider.get('page_size', 5000)),
            rooms_page_size=int(provider.get('rooms_page_size', 50)),
            media_page_size=int(provider.get('media_page_size', 500)),
            open_house_page_size=int(provider.get('open_house_page_size', 20)),
            user_agent=provider.get('user_agent', "proptx-listing-sync/1.0"),
        ),
        retry=RetryPolicySettings(
            max_attempts=int(retry.get('max_attempts', 3)),
            backoff_seconds=float(retry.get('backoff_seconds', 30.0)),
            timeout_wait_seconds=float(retry.get('timeout_wait_seconds', 10.0)),
            network_wait_seconds=float(retry.get('network_wait_seconds', 5.0)),
            max_retry_after_seconds=float(retry.get('max_retry_after_seconds', 120.0)),
        ),
        enrichment=EnrichmentSettings(
            batch_size=int(os.getenv('SYNC_ENRICHMENT_BATCH_SIZE', enrichment.get('batch_size', 25))),
            max_attempts=int(enrichment.get('max_attempts', 2)),
        ),
        reconciliation=ReconciliationSettings(
            upsert_batch_size=int(reconciliation.get('upsert_batch_size', 100)),
            query_batch_size=int(reconciliation.get('query_batch_size', 200)),
            property_types=property_types,
        ),
        fleet=FleetSettings(
            delay_between_buildings=float(fleet.get('delay_between_buildings', 1.0)),
            max_buildings=int(fleet.get('max_buildings', 0)),
        ),
        runs=RunSettings(
            stale_after_minutes=int(runs.get('stale_after_minutes', 60)),
            history_limit=int(runs.get('history_limit', 10)),
            summary_days=int(runs.get('summary_days', 7)),
        ),
        store_timeout=float(store.get('timeout', 30.0)),
        store_page_size=int(store.get('page_size', 1000)),
        log_file=logging_config.get('log_file', "listing_sync.log"),
        log_level=os.getenv("SYNC_LOG_LEVEL", logging_config.get('log_level', "INFO")),
    )


def load_config(config_path: Optional[Path] = None) -> SyncConfig:
    """
    Load a configuration instance from YAML plus environment.

    Args:
        config_path: Optional path to a YAML file (defaults to sync_config.yaml
            next to this module)

    Returns:
        SyncConfig instance
    """
    return build_config(_load_yaml_config(config_path))
