import asyncio
from datetime import datetime, timezone

import pytest

from services.errors import ProviderAuthError
from services.listing_fetcher import ListingFetcher, odata_quote

from fake_provider import property_payload


@pytest.fixture
def fetcher(provider, config):
    return ListingFetcher(provider, config)


def property_requests(session):
    return [r for r in session.requests if r['resource'] == 'Property']


def test_pages_until_short_page(fetcher, session):
    session.properties = [property_payload(str(i)) for i in range(5)]

    result = asyncio.run(fetcher.fetch_all(None))

    assert result.complete
    assert result.pages == 3
    assert result.total == 5
    assert [r['params'].get('$skip') for r in property_requests(session)] == [None, '2', '4']


def test_exact_multiple_stops_on_empty_page(fetcher, session):
    session.properties = [property_payload(str(i)) for i in range(4)]

    result = asyncio.run(fetcher.fetch_all(None))

    assert result.complete
    assert result.pages == 2
    assert result.total == 4
    assert len(property_requests(session)) == 3


def test_transient_failure_is_retried(fetcher, session):
    session.properties = [property_payload('A')]
    session.failures['Property'] = [503]

    result = asyncio.run(fetcher.fetch_all(None))

    assert result.complete
    assert result.total == 1


def test_failed_page_returns_partial_result(fetcher, session):
    session.properties = [property_payload(str(i)) for i in range(5)]
    session.failures['Property'] = [None, 500, 500, 500]

    result = asyncio.run(fetcher.fetch_all(None))

    assert not result.complete
    assert result.total == 2
    assert 'offset 2' in result.error


def test_rejected_filter_returns_partial_result(fetcher, session):
    session.failures['Property'] = [400]

    result = asyncio.run(fetcher.fetch_all("City eq 'Nowhere'"))

    assert not result.complete
    assert result.total == 0
    assert len(property_requests(session)) == 1


def test_auth_failure_is_raised(fetcher, session):
    session.failures['Property'] = [401]

    with pytest.raises(ProviderAuthError):
        asyncio.run(fetcher.fetch_all(None))


def test_should_stop_ends_fetch_between_pages(fetcher, session):
    session.properties = [property_payload(str(i)) for i in range(5)]
    checks = []

    def should_stop():
        checks.append(True)
        return len(checks) > 1

    result = asyncio.run(fetcher.fetch_all(None, should_stop=should_stop))

    assert result.cancelled
    assert not result.complete
    assert result.total == 2


def test_fetch_select(fetcher, session):
    session.properties = [property_payload('A'), property_payload('B', City='Mississauga')]

    result = asyncio.run(fetcher.fetch_select('City,CityRegion'))

    assert result.records == [
        {'City': 'Toronto', 'CityRegion': 'Waterfront Communities C1'},
        {'City': 'Mississauga', 'CityRegion': 'Waterfront Communities C1'},
    ]


def test_count(fetcher, session):
    session.properties = [property_payload(str(i)) for i in range(7)]

    assert asyncio.run(fetcher.count("City eq 'Toronto'")) == 7


def test_build_filter():
    expr = ListingFetcher.build_filter(
        property_types=['Residential Condo & Other', 'Residential Freehold'],
        modified_since=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        city="O'Connor",
    )

    assert expr == ("(PropertyType eq 'Residential Condo & Other' or PropertyType eq 'Residential Freehold') "
                    "and City eq 'O''Connor' and ModificationTimestamp gt 2024-01-02T03:04:05Z")


def test_build_filter_for_building_street():
    expr = ListingFetcher.build_filter(
        property_types=['Residential Condo & Other'], street_number='100', street_key='Queen',
    )

    assert expr == ("PropertyType eq 'Residential Condo & Other' and StreetNumber eq '100' "
                    "and contains(tolower(StreetName),'queen')")


def test_build_filter_empty():
    assert ListingFetcher.build_filter() == ''


def test_odata_quote():
    assert odata_quote("St. Mary's") == "'St. Mary''s'"
