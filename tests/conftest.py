import pytest

from config.sync_config import build_config
from services.listing_store import ListingStore
from services.provider_client import ProviderClient
from services.sync_orchestrator import ListingSyncOrchestrator

from fake_provider import FakeProviderSession
from fake_supabase import FakeSupabase

ENV_OVERRIDES = (
    'PROPTX_RESO_API_URL',
    'PROPTX_VOW_TOKEN',
    'PROPTX_DLA_TOKEN',
    'PROPTX_BEARER_TOKEN',
    'PROPTX_REQUEST_TIMEOUT',
    'SYNC_ENRICHMENT_BATCH_SIZE',
    'SYNC_LOG_LEVEL',
)


def make_config(**sections):
    """Test configuration: tiny pages, no waits between retries or buildings"""
    yaml_config = {
        'provider': {'base_url': 'https://provider.test/odata/', 'token': 'test-token', 'page_size': 2},
        'retry': {'max_attempts': 3, 'backoff_seconds': 0, 'timeout_wait_seconds': 0,
                  'network_wait_seconds': 0},
        'enrichment': {'batch_size': 10, 'max_attempts': 2},
        'fleet': {'delay_between_buildings': 0},
    }
    for name, values in sections.items():
        yaml_config.setdefault(name, {}).update(values)
    return build_config(yaml_config)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_OVERRIDES:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def db():
    return FakeSupabase()


@pytest.fixture
def store(db, config):
    return ListingStore(db, config)


@pytest.fixture
def session():
    return FakeProviderSession()


@pytest.fixture
def provider(config, session):
    return ProviderClient(config.provider, session=session)


@pytest.fixture
def orchestrator(db, config, provider, store):
    return ListingSyncOrchestrator(db, config, provider, store)


@pytest.fixture
def geography(db):
    """One area, municipality and community for Toronto"""
    db.seed('treb_areas', [{'id': 'a1', 'name': 'Toronto', 'listing_count': 0}])
    db.seed('municipalities', [{'id': 'm1', 'name': 'Toronto', 'code': None, 'area_id': 'a1', 'listing_count': 0}])
    db.seed('communities', [{'id': 'c1', 'name': 'Waterfront Communities C1', 'municipality_id': 'm1',
                             'listing_count': 0}])
    return db
