"""
Configuration module for the PropTx listing sync pipeline.
"""

from .sync_config import (
    SyncConfig,
    ProviderSettings,
    RetryPolicySettings,
    EnrichmentSettings,
    ReconciliationSettings,
    FleetSettings,
    RunSettings,
    build_config,
    load_config,
)

__all__ = [
    'SyncConfig',
    'ProviderSettings',
    'RetryPolicySettings',
    'EnrichmentSettings',
    'ReconciliationSettings',
    'FleetSettings',
    'RunSettings',
    'build_config',
    'load_config',
]
