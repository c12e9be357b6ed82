import asyncio

import pytest

from services.geography_sync_service import GeographySyncService, municipality_code
from services.listing_fetcher import ListingFetcher


@pytest.fixture
def service(store, provider, config):
    return GeographySyncService(store, ListingFetcher(provider, config))


def geo(county, city, region):
    return {'ListingKey': f"{city}-{region}", 'CountyOrParish': county, 'City': city, 'CityRegion': region}


def test_inserts_missing_hierarchy(db, session, service):
    session.properties = [
        geo('Toronto', 'Toronto C01', 'Bay Street Corridor'),
        geo('Toronto', 'Toronto C01', 'Church-Yonge Corridor'),
        geo('Peel', 'Mississauga', 'Cooksville'),
        geo('Peel', 'Mississauga', None),
        geo(None, 'Nowhere', 'Lost'),
    ]

    result = asyncio.run(service.sync_geography())

    assert result.complete
    assert result.records_scanned == 5
    assert (result.inserted.areas, result.inserted.municipalities, result.inserted.communities) == (2, 2, 3)
    assert (result.after.areas, result.after.municipalities, result.after.communities) == (2, 2, 3)
    assert result.errors == []

    municipalities = {m['name']: m for m in db.rows('municipalities')}
    areas = {a['name']: a['id'] for a in db.rows('treb_areas')}
    assert municipalities['Toronto C01']['code'] == 'C01'
    assert municipalities['Toronto C01']['area_id'] == areas['Toronto']
    assert municipalities['Mississauga']['code'] is None
    assert all(row['is_active'] for row in db.rows('communities'))

    select = session.requests[0]['params']
    assert select['$select'] == 'CountyOrParish,City,CityRegion'
    assert select['$top'] == '500'


def test_existing_rows_are_left_alone(db, session, service):
    db.seed('treb_areas', [{'id': 'a1', 'name': 'Toronto', 'is_active': False}])
    db.seed('municipalities', [{'id': 'm1', 'name': 'Toronto C01', 'code': 'C01', 'area_id': 'a1'}])
    db.seed('communities', [{'id': 'c1', 'name': 'Bay Street Corridor', 'municipality_id': 'm1'}])
    session.properties = [
        geo('Toronto', 'Toronto C01', 'Bay Street Corridor'),
        geo('Toronto', 'Toronto C01', 'Moss Park'),
    ]

    result = asyncio.run(service.sync_geography())

    assert (result.inserted.areas, result.inserted.municipalities, result.inserted.communities) == (0, 0, 1)
    assert (result.before.communities, result.after.communities) == (1, 2)
    assert db.get('treb_areas', 'a1')['is_active'] is False
    moss_park = next(c for c in db.rows('communities') if c['name'] == 'Moss Park')
    assert moss_park['municipality_id'] == 'm1'


def test_second_pass_inserts_nothing(session, service):
    session.properties = [geo('Toronto', 'Toronto C01', 'Bay Street Corridor')]

    asyncio.run(service.sync_geography())
    again = asyncio.run(service.sync_geography())

    assert (again.inserted.areas, again.inserted.municipalities, again.inserted.communities) == (0, 0, 0)


def test_failed_insert_is_reported(db, session, service):
    session.properties = [geo('Toronto', 'Toronto C01', 'Bay Street Corridor')]
    db.fail('municipalities', 'insert', RuntimeError("permission denied"))

    result = asyncio.run(service.sync_geography())

    assert result.inserted.areas == 1
    assert result.inserted.municipalities == 0
    assert any('Municipality insert Toronto C01' in e for e in result.errors)
    assert any('municipality not found' in e for e in result.errors)


def test_municipality_code():
    assert municipality_code('Toronto E08') == 'E08'
    assert municipality_code('Toronto') is None
