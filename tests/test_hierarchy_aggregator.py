import asyncio

import pytest

from services.hierarchy_aggregator import HierarchyAggregator


@pytest.fixture
def aggregator(store):
    return HierarchyAggregator(store)


@pytest.fixture
def hierarchy(db):
    db.seed('treb_areas', [{'id': 'a1', 'listing_count': 0}])
    db.seed('municipalities', [{'id': 'm1', 'area_id': 'a1', 'listing_count': 0}])
    db.seed('communities', [
        {'id': 'c1', 'municipality_id': 'm1', 'listing_count': 0},
        {'id': 'c2', 'municipality_id': 'm1', 'listing_count': 0},
    ])
    db.seed('buildings', [
        {'id': 'b1', 'canonical_address': '100 QUEEN ST W', 'community_id': 'c1', 'municipality_id': 'm1',
         'area_id': 'a1', 'listing_count': 0},
        {'id': 'b2', 'canonical_address': '25 BAY ST', 'community_id': 'c1', 'municipality_id': 'm1',
         'area_id': 'a1', 'listing_count': 0},
        {'id': 'b3', 'canonical_address': '1 KING ST W', 'community_id': 'c2', 'municipality_id': 'm1',
         'area_id': 'a1', 'listing_count': 0},
    ])

    def listing(key, building_id, community_id, status='active'):
        return {'listing_key': key, 'building_id': building_id, 'community_id': community_id,
                'municipality_id': 'm1', 'area_id': 'a1', 'feed_status': status}

    db.seed('mls_listings', [
        listing('1', 'b1', 'c1'),
        listing('2', 'b1', 'c1'),
        listing('3', 'b1', 'c1', status='removed_from_feed'),
        listing('4', 'b2', 'c1'),
        listing('5', 'b3', 'c2'),
        listing('6', None, 'c1'),
    ])
    return db


def counts(db, table):
    return {row['id']: row['listing_count'] for row in db.rows(table)}


def test_counts_roll_up_bottom_up(hierarchy, aggregator):
    result = asyncio.run(aggregator.recompute(['b1', 'b2', 'b3']))

    assert counts(hierarchy, 'buildings') == {'b1': 2, 'b2': 1, 'b3': 1}
    assert counts(hierarchy, 'communities') == {'c1': 3, 'c2': 1}
    assert counts(hierarchy, 'municipalities') == {'m1': 4}
    assert counts(hierarchy, 'treb_areas') == {'a1': 4}
    assert (result.buildings, result.communities, result.municipalities, result.areas) == (3, 2, 1, 1)
    assert result.errors == []


def test_parent_counts_equal_sum_of_children(hierarchy, aggregator):
    asyncio.run(aggregator.recompute(['b1', 'b2', 'b3']))

    buildings = counts(hierarchy, 'buildings')
    communities = counts(hierarchy, 'communities')
    assert communities['c1'] == buildings['b1'] + buildings['b2']
    assert counts(hierarchy, 'municipalities')['m1'] == sum(communities.values())


def test_recompute_is_idempotent(hierarchy, aggregator):
    asyncio.run(aggregator.recompute(['b1', 'b2', 'b3']))
    first = counts(hierarchy, 'communities'), counts(hierarchy, 'municipalities')

    asyncio.run(aggregator.recompute(['b1', 'b2', 'b3']))

    assert (counts(hierarchy, 'communities'), counts(hierarchy, 'municipalities')) == first


def test_only_touched_branch_is_recounted(hierarchy, aggregator):
    result = asyncio.run(aggregator.recompute(['b3']))

    assert counts(hierarchy, 'buildings') == {'b1': 0, 'b2': 0, 'b3': 1}
    assert counts(hierarchy, 'communities') == {'c1': 0, 'c2': 1}
    assert result.municipalities == 1
    assert hierarchy.get('buildings', 'b3')['listing_count_updated_at'] is not None


def test_recompute_municipality(hierarchy, aggregator):
    result = asyncio.run(aggregator.recompute_municipality('m1', area_id='a1'))

    assert result.buildings == 3
    assert counts(hierarchy, 'municipalities') == {'m1': 4}


def test_failed_count_is_reported(hierarchy, aggregator):
    hierarchy.fail('communities', 'update', RuntimeError("timeout"))

    result = asyncio.run(aggregator.recompute(['b1']))

    assert result.communities == 0
    assert result.municipalities == 1
    assert 'Failed to recount communities c1' in result.errors[0]
