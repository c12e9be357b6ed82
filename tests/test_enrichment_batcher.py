import asyncio

import pytest

from services.enrichment_batcher import EnrichmentBatcher
from services.listing_models import ListingRecord

from conftest import make_config
from fake_provider import property_payload


@pytest.fixture
def batcher(provider, config):
    return EnrichmentBatcher(provider, config)


def listing(key):
    return ListingRecord.from_provider(property_payload(key))


def photo(stem, size, order):
    return {'MediaKey': f"{stem}-{size}", 'MediaURL': f"https://cdn.test/rs:fit:{size}:{size}/{stem}.jpg",
            'Order': order}


def test_attaches_sub_resources(batcher, session):
    session.rooms = {'A': [{'RoomKey': 'r1', 'RoomType': 'Kitchen', 'RoomLevel': 'Main'},
                           {'RoomKey': 'r2', 'RoomType': 'Bedroom', 'RoomArea': '12.5'}]}
    session.media = {'A': [photo('p1', 240, 1), photo('p1', 960, 1), photo('p1', 1920, 1)]}
    session.open_houses = {'A': [{'OpenHouseKey': 'o1', 'OpenHouseDate': '2024-02-03T00:00:00Z',
                                  'OpenHouseStartTime': '14:00'}]}
    record = listing('A')

    stats = asyncio.run(batcher.enrich([record]))

    assert [r.room_type for r in record.rooms] == ['Kitchen', 'Bedroom']
    assert record.rooms[1].room_area == 12.5
    assert [m.variant_type for m in record.media] == ['thumbnail', 'large']
    assert record.open_houses[0].open_house_date == '2024-02-03'
    assert stats.rooms == 2
    assert stats.media_raw == 3
    assert stats.media_kept == 2
    assert stats.open_houses == 1
    assert stats.failed_lookups == 0


def test_sub_resource_queries(batcher, session):
    asyncio.run(batcher.enrich([listing("O'K")]))

    by_resource = {r['resource']: r['params'] for r in session.requests}
    assert by_resource['PropertyRooms'] == {'$filter': "ListingKey eq 'O''K'", '$top': '50'}
    assert by_resource['Media'] == {'$filter': "ResourceRecordKey eq 'O''K'", '$top': '500'}
    assert by_resource['OpenHouse'] == {'$filter': "ListingKey eq 'O''K'", '$top': '20'}


def test_failed_lookup_leaves_only_that_resource_empty(batcher, session):
    session.rooms = {'A': [{'RoomKey': 'r1', 'RoomType': 'Kitchen'}]}
    session.media = {'A': [photo('p1', 240, 1)]}
    session.failures['PropertyRooms'] = [500, 500]
    record = listing('A')

    stats = asyncio.run(batcher.enrich([record]))

    assert record.rooms == []
    assert len(record.media) == 1
    assert stats.failed_lookups == 1
    assert 'PropertyRooms lookup failed for A' in stats.errors[0]


def test_runs_in_bounded_batches(provider, session):
    batcher = EnrichmentBatcher(provider, make_config(enrichment={'batch_size': 10}))
    records = [listing(f"K{i}") for i in range(25)]

    stats = asyncio.run(batcher.enrich(records))

    assert stats.listings == 25
    assert stats.batches == 3
    assert len(session.requests) == 75


def test_malformed_sub_records_are_skipped(batcher, session):
    session.rooms = {'A': ['garbage', {'RoomKey': 'r1', 'RoomType': 'Den'}]}
    record = listing('A')

    stats = asyncio.run(batcher.enrich([record]))

    assert [r.room_type for r in record.rooms] == ['Den']
    assert stats.skipped_records == 1


def test_empty_input(batcher, session):
    stats = asyncio.run(batcher.enrich([]))

    assert stats.batches == 0
    assert session.requests == []
