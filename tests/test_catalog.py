"""
Tests for the tile cache and the local GeoTIFF catalog.

Author: Diego Bengochea
"""

import threading

import pytest

from raster_pipeline.core.catalog import LocalRasterCatalog, TileCache, cache_key, describe_collection
from raster_pipeline.core.collection_filter import date_range, metadata_equals, metadata_less_than
from raster_pipeline.core.errors import EmptyResultWarning, ExternalServiceError, InputSchemaError, PipelineCancelled
from raster_pipeline.core.raster_io import grid_at_scale

# One 8x8 float64 band plus its mask
BAND_BYTES = 8 * 8 * 8 + 8 * 8


def test_cache_evicts_least_recently_used(make_raster):
    cache = TileCache(max_bytes=2 * BAND_BYTES)
    first, second, third = (make_raster({'x': float(i)}) for i in range(3))

    cache.put('first', first)
    cache.put('second', second)
    assert cache.get('first') is first
    cache.put('third', third)

    assert 'second' not in cache
    assert 'first' in cache and 'third' in cache
    assert cache.current_bytes == 2 * BAND_BYTES


def test_cache_skips_oversized_entries(make_raster):
    cache = TileCache(max_bytes=BAND_BYTES)

    cache.put('large', make_raster({'a': 1.0, 'b': 2.0}))

    assert len(cache) == 0
    with pytest.raises(ValueError):
        TileCache(max_bytes=0)


def test_get_or_load_loads_once(make_raster):
    cache = TileCache()
    calls = []

    def loader():
        calls.append(1)
        return make_raster({'x': 1.0})

    first = cache.get_or_load('key', loader)
    second = cache.get_or_load('key', loader)

    assert first is second
    assert len(calls) == 1
    assert cache.stats()['hits'] == 1


def test_cache_key_includes_resampling(grid):
    coarse = grid_at_scale(grid, 20)

    assert cache_key('a.tif', ['red']) == cache_key('a.tif', ('red',))
    assert cache_key('a.tif', ['red'], coarse, 'nearest') != cache_key('a.tif', ['red'], coarse, 'average')
    assert cache_key('a.tif', ['red']) != cache_key('a.tif', ['red', 'nir'])
    assert cache_key('a.tif', ['red', 'qa'], coarse, 'bilinear') != \
        cache_key('a.tif', ['red', 'qa'], coarse, 'bilinear', {'qa': 'nearest'})


def test_catalog_lists_collections_and_scenes(scene_catalog):
    catalog = LocalRasterCatalog(scene_catalog)

    headers = catalog.list_scenes('sensor_a')

    assert catalog.collections() == ['sensor_a', 'sensor_b']
    assert [h.metadata.scene_id for h in headers] == ['a_20200115', 'a_20200215', 'a_20200715']
    summary = describe_collection(headers)
    assert summary['scenes'] == 3
    assert summary['bands'] == ['SR_B4', 'SR_B5', 'QA_PIXEL']


def test_load_applies_predicates_on_headers(scene_catalog):
    catalog = LocalRasterCatalog(scene_catalog, cache=TileCache())

    collection = catalog.load('sensor_a', bands=['SR_B4', 'QA_PIXEL'],
                              predicates=[date_range('2020-01-01', '2020-07-01'),
                                          metadata_less_than('cloud_percentage', 30)])

    assert len(collection) == 1
    assert collection.band_names == ('SR_B4', 'QA_PIXEL')
    scene = collection.first()
    assert scene.metadata.scene_id == 'a_20200115'
    assert int(scene.band('SR_B4')[1, 1]) == 1000
    assert len(catalog.cache) == 1


def test_load_is_sorted_and_cached(scene_catalog):
    catalog = LocalRasterCatalog(scene_catalog, cache=TileCache())

    first = catalog.load('sensor_b')
    second = catalog.load('sensor_b')

    assert [r.metadata.scene_id for r in first] == ['b_20200310', 'b_20200820']
    assert first[0] is second[0]
    assert catalog.cache.stats()['hits'] == 2


def test_load_with_no_matching_scene_keeps_schema(scene_catalog):
    catalog = LocalRasterCatalog(scene_catalog)

    with pytest.warns(EmptyResultWarning):
        collection = catalog.load('sensor_b', bands=['B3'], predicates=[metadata_equals('platform', 'A')])

    assert collection.is_empty
    assert collection.band_names == ('B3',)
    assert collection.grid is not None


def test_missing_collection_and_band(scene_catalog):
    catalog = LocalRasterCatalog(scene_catalog)

    with pytest.raises(ExternalServiceError) as excinfo:
        catalog.load('sentinel2')
    assert excinfo.value.operation == 'catalog.list_scenes'

    with pytest.raises(InputSchemaError):
        catalog.load('sensor_a', bands=['B8'])


def test_load_honours_cancellation(scene_catalog):
    catalog = LocalRasterCatalog(scene_catalog)
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(PipelineCancelled):
        catalog.load('sensor_a', cancel_event=cancel)


def test_load_resamples_to_target_grid(scene_catalog, grid):
    catalog = LocalRasterCatalog(scene_catalog)
    coarse = grid_at_scale(grid, 20)

    collection = catalog.load('sensor_b', bands=['B3'], grid=coarse)

    assert collection.grid == coarse
    assert all(scene.shape == (4, 4) for scene in collection)
