import asyncio

import pytest

from services.building_resolver import BuildingResolver
from services.listing_models import ListingRecord

from fake_provider import property_payload


@pytest.fixture
def resolver(store, geography):
    return BuildingResolver(store)


def listing(key, address, **fields):
    return ListingRecord.from_provider(property_payload(key, address=address, **fields))


def test_creates_building_with_hierarchy(db, resolver):
    record = listing('A', 'Unit 1205 - 100 Queen Street West, Toronto, ON')

    building_id = asyncio.run(resolver.resolve(record))

    building = db.get('buildings', building_id)
    assert building['canonical_address'] == '100 QUEEN ST W'
    assert building['slug'] == '100-queen-st-w-toronto'
    assert (building['community_id'], building['municipality_id'], building['area_id']) == ('c1', 'm1', 'a1')
    assert (record.building_id, record.community_id, record.municipality_id, record.area_id) == \
        (building_id, 'c1', 'm1', 'a1')
    assert resolver.created == 1


def test_units_of_one_building_share_a_row(db, resolver):
    first = listing('A', '100 Queen St W 1205, Toronto, ON')
    second = listing('B', '808 - 100 Queen Street West, Toronto')

    async def scenario():
        return await resolver.resolve(first), await resolver.resolve(second)

    first_id, second_id = asyncio.run(scenario())

    assert first_id == second_id
    assert len(db.rows('buildings')) == 1
    assert resolver.created == 1


def test_registry_avoids_repeat_lookups(db, resolver):
    records = [listing(k, '100 Queen St W, Toronto') for k in ('A', 'B', 'C')]

    async def scenario():
        for record in records:
            await resolver.resolve(record)

    asyncio.run(scenario())

    building_selects = [c for c in db.calls if c == ('buildings', 'select')]
    assert len(building_selects) == 1
    assert '100 QUEEN ST W' in resolver.registry


def test_matches_existing_building_by_variation(db, resolver):
    db.seed('buildings', [{'id': 'b-long', 'canonical_address': '100 QUEEN STREET W', 'city': 'Toronto',
                           'community_id': 'c1', 'municipality_id': 'm1', 'area_id': 'a1'}])
    record = listing('A', '100 Queen St W, Toronto')

    assert asyncio.run(resolver.resolve(record)) == 'b-long'
    assert resolver.matched == 1
    assert resolver.created == 0


def test_concurrent_creation_reads_back_winner(db, store, resolver, monkeypatch):
    db.seed('buildings', [{'id': 'b-winner', 'canonical_address': '100 QUEEN ST W', 'community_id': 'c1',
                           'municipality_id': 'm1', 'area_id': 'a1'}])
    real_find = store.find_buildings_by_addresses
    lookups = []

    async def miss_first(addresses):
        lookups.append(addresses)
        if len(lookups) == 1:
            return []
        return await real_find(addresses)

    monkeypatch.setattr(store, 'find_buildings_by_addresses', miss_first)
    record = listing('A', '100 Queen St W, Toronto')

    building_id = asyncio.run(resolver.resolve(record))

    assert building_id == 'b-winner'
    assert len(db.rows('buildings')) == 1
    assert lookups[-1] == ['100 QUEEN ST W']
    assert resolver.created == 0


def test_listing_without_address_gets_hierarchy_only(resolver):
    record = listing('A', None, StreetNumber=None, StreetName=None, StreetSuffix=None, StreetDirSuffix=None)

    assert asyncio.run(resolver.resolve(record)) is None
    assert record.building_id is None
    assert (record.community_id, record.municipality_id, record.area_id) == ('c1', 'm1', 'a1')
    assert resolver.unmatched == 1


def test_unknown_city_leaves_hierarchy_empty(db, resolver):
    record = listing('A', '5 Main St, Nowhere', City='Nowhere', CityRegion=None)

    building_id = asyncio.run(resolver.resolve(record))

    building = db.get('buildings', building_id)
    assert building['municipality_id'] is None
    assert record.community_id is None


def test_marketing_name_is_stored(db, resolver):
    record = listing('A', 'Aura - 388 Yonge St, Toronto', StreetNumber='388', StreetName='Yonge')

    building = db.get('buildings', asyncio.run(resolver.resolve(record)))

    assert building['building_name'] == 'Aura'
    assert building['slug'] == 'aura-toronto'
    assert building['street_number'] == '388'
