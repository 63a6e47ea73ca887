"""
Tests for temporal reducers, reducer parsing and period composites.

Author: Diego Bengochea
"""

import numpy as np
import pytest
from rasterio.transform import Affine

from raster_pipeline.core.errors import EmptyResultWarning, InputSchemaError
from raster_pipeline.core.raster import GridSpec, Raster, RasterCollection
from raster_pipeline.core.temporal_reducer import (
    Reducer, parse_reducers, period_composite, reduce_bands, reduce_collection
)


@pytest.mark.parametrize('reducer, expected', [
    ('median', 20.0),
    ('p50', 20.0),
    ('max', 30.0),
    ('min', 10.0),
    ('mean', 20.0),
    ('sum', 60.0),
    ('count', 3.0),
])
def test_reducers_over_three_scenes(time_series, reducer, expected):
    composite = reduce_collection(time_series, reducer)

    assert composite.band_names == ('red', 'nir')
    np.testing.assert_allclose(composite.band('red').filled(np.nan), expected)


def test_std_dev_is_population(time_series):
    composite = reduce_collection(time_series, 'stdDev')

    assert composite.band('red')[0, 0] == pytest.approx(np.std([10.0, 20.0, 30.0]))


def test_median_of_single_scene_is_identity(make_raster, grid):
    values = np.arange(64, dtype=np.float64).reshape(8, 8)
    scene = make_raster({'ndvi': values}, acquired='2020-05-01')

    composite = reduce_collection(RasterCollection([scene]), 'median')

    np.testing.assert_array_equal(composite.band('ndvi').filled(np.nan), values)


def test_reduction_ignores_nodata_samples(make_raster, grid):
    masked = np.ma.MaskedArray(np.full((8, 8), 100.0), mask=np.zeros((8, 8), dtype=bool))
    masked.mask[0, 0] = True
    scenes = [make_raster({'red': masked}, acquired='2020-01-01'),
              make_raster({'red': 10.0}, acquired='2020-02-01')]

    composite = reduce_collection(RasterCollection(scenes), 'mean')

    assert composite.band('red')[0, 0] == pytest.approx(10.0)
    assert composite.band('red')[1, 1] == pytest.approx(55.0)


def test_pixel_without_valid_samples_is_nodata(make_raster):
    masked = np.ma.MaskedArray(np.ones((8, 8)), mask=np.zeros((8, 8), dtype=bool))
    masked.mask[3, 3] = True
    scenes = [make_raster({'red': masked}, acquired='2020-01-01'),
              make_raster({'red': masked}, acquired='2020-02-01')]

    for kind in ('count', 'median', 'p90'):
        composite = reduce_collection(RasterCollection(scenes), kind)
        assert np.ma.getmaskarray(composite.band('red'))[3, 3]
        assert composite.valid_count() == 63


def test_empty_collection_reduces_to_nodata(grid):
    empty = RasterCollection([], ['red', 'nir'], grid, 'sensor')

    with pytest.warns(EmptyResultWarning):
        composite = reduce_collection(empty, 'median')

    assert composite.band_names == ('red', 'nir')
    assert composite.shape == grid.shape
    assert composite.valid_count() == 0


def test_empty_collection_without_grid_raises():
    with pytest.raises(InputSchemaError):
        reduce_collection(RasterCollection([], ['red']), 'median')


def test_chunked_reduction_matches_in_memory(make_raster):
    rng = np.random.default_rng(0)
    scenes = [make_raster({'ndvi': rng.random((8, 8))}, acquired=f'2020-0{month}-01') for month in range(1, 6)]
    collection = RasterCollection(scenes)

    in_memory = reduce_collection(collection, 'p90')
    chunked = reduce_collection(collection, 'p90', chunk_size=3)

    np.testing.assert_allclose(chunked.band('ndvi').filled(np.nan), in_memory.band('ndvi').filled(np.nan))


def test_suffix_and_metadata(time_series):
    composite = reduce_collection(time_series, 'max', suffix=True)

    assert composite.band_names == ('red_max', 'nir_max')
    assert composite.metadata.get('scene_count') == 3
    assert composite.metadata.get('first_acquired').startswith('2020-01-10')


def test_misaligned_scenes_raise(make_raster, grid):
    shifted = GridSpec(grid.crs, grid.transform * Affine.translation(1, 0), grid.width, grid.height)
    scenes = [make_raster({'red': 1.0}, acquired='2020-01-01'),
              Raster({'red': np.ones((8, 8))}, shifted)]

    with pytest.raises(InputSchemaError):
        reduce_collection(RasterCollection(scenes, grid=grid), 'mean')


@pytest.mark.parametrize('text, kind, percentile', [
    ('median', 'median', None),
    ('stdDev', 'stdDev', None),
    ('std', 'stdDev', None),
    ('p98', 'percentile', 98.0),
    ('percentile98', 'percentile', 98.0),
    ('percentile(2.5)', 'percentile', 2.5),
    ('AVG', 'mean', None),
])
def test_reducer_parsing(text, kind, percentile):
    reducer = Reducer.parse(text)

    assert reducer.kind == kind
    assert reducer.percentile == percentile


def test_reducer_names_and_mapping_form():
    assert Reducer.parse('p98').name == 'p98'
    assert Reducer.parse({'kind': 'percentile', 'percentile': 90}).name == 'p90'
    assert [r.name for r in parse_reducers(['mean', 'p10'])] == ['mean', 'p10']


@pytest.mark.parametrize('text', ['mode', 'p101', 'percentile', ''])
def test_unknown_reducers_raise(text):
    with pytest.raises(InputSchemaError):
        Reducer.parse(text)


def test_reduce_samples_empty_is_nan():
    assert np.isnan(Reducer('mean').reduce_samples([]))
    assert np.isnan(Reducer('count').reduce_samples([np.nan]))
    assert Reducer('percentile', 50).reduce_samples([1.0, 2.0, 3.0, np.nan]) == pytest.approx(2.0)


def test_reduce_bands_across_seasons(make_raster):
    scene = make_raster({'ndvi_spring': 0.2, 'ndvi_summer': 0.6, 'ndvi_autumn': 0.4})

    annual = reduce_bands(scene, 'mean', name='ndvi_annual')

    assert annual.band_names == ('ndvi_annual',)
    assert annual.band('ndvi_annual')[0, 0] == pytest.approx(0.4)


def test_period_composite_bands(time_series):
    periods = {
        'winter': {'months': [12, 1, 2]},
        'spring': {'start': '2020-03-01', 'end': '2020-06-01'},
        'autumn': {'months': [9, 10, 11]},
    }

    with pytest.warns(EmptyResultWarning):
        composite = period_composite(time_series, periods, 'max', grid=time_series.grid)

    assert composite.band_names == ('red_winter', 'nir_winter', 'red_spring', 'nir_spring',
                                    'red_autumn', 'nir_autumn')
    assert composite.band('red_winter')[0, 0] == pytest.approx(10.0)
    assert composite.band('nir_spring')[0, 0] == pytest.approx(40.0)
    assert np.ma.getmaskarray(composite.band("red_autumn")).all()
    assert composite.metadata.get('periods') == 'winter,spring,autumn'
