import pytest
import requests

from config.sync_config import ProviderSettings
from services.errors import ProviderAuthError, ProviderError, ProviderRequestError
from services.provider_client import ProviderClient

from fake_provider import FakeHTTPResponse, property_payload


def test_requires_token():
    with pytest.raises(ValueError):
        ProviderClient(ProviderSettings(token=None))


def test_session_headers(provider, session):
    assert session.headers['Authorization'] == 'Bearer test-token'
    assert session.headers['Accept'] == 'application/json'


def test_build_url_keeps_odata_syntax_readable(provider):
    url = provider.build_url('Property', {
        '$filter': "PropertyType eq 'Residential Condo & Other'",
        '$top': 10,
        '$skip': None,
    })

    assert url == ("https://provider.test/odata/Property?"
                   "$filter=PropertyType%20eq%20'Residential%20Condo%20%26%20Other'&$top=10")


def test_query_omits_zero_skip(provider, session):
    session.properties = [property_payload('A')]

    body = provider.query('Property', filter="City eq 'Toronto'", top=5, skip=0, count=True)

    params = session.requests[-1]['params']
    assert '$skip' not in params
    assert params['$top'] == '5'
    assert params['$count'] == 'true'
    assert body['@odata.count'] == 1
    assert session.requests[-1]['timeout'] == 60.0


@pytest.mark.parametrize("status", [401, 403])
def test_auth_failures(provider, session, status):
    session.failures['Property'] = [status]

    with pytest.raises(ProviderAuthError) as excinfo:
        provider.query('Property', top=1)
    assert excinfo.value.status_code == status


def test_rate_limit_carries_retry_after(provider, session):
    session.failures['Property'] = [FakeHTTPResponse(429, {}, headers={'Retry-After': '3'})]

    with pytest.raises(ProviderError) as excinfo:
        provider.query('Property', top=1)
    assert excinfo.value.status_code == 429
    assert excinfo.value.retry_after == 3.0


def test_server_error(provider, session):
    session.failures['Property'] = [502]

    with pytest.raises(ProviderError) as excinfo:
        provider.query('Property', top=1)
    assert excinfo.value.status_code == 502


def test_client_error_is_not_transient(provider, session):
    session.failures['Property'] = [400]

    with pytest.raises(ProviderRequestError):
        provider.query('Property', top=1)


def test_timeout_and_connection_errors(provider, session):
    session.failures['Property'] = [requests.exceptions.Timeout(), requests.exceptions.ConnectionError()]

    with pytest.raises(ProviderError) as timeout:
        provider.query('Property', top=1)
    with pytest.raises(ProviderError) as network:
        provider.query('Property', top=1)

    assert timeout.value.kind == 'timeout'
    assert network.value.kind == 'network'


def test_invalid_json(provider, session):
    session.failures['Property'] = [FakeHTTPResponse(200, ValueError("not json"))]

    with pytest.raises(ProviderError):
        provider.query('Property', top=1)


def test_test_connection(provider, session):
    session.properties = [property_payload('A')]

    assert provider.test_connection() is True
    assert session.requests[-1]['params']['$top'] == '1'


def test_close(provider, session):
    provider.close()
    assert session.closed
