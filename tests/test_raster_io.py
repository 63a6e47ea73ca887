"""
Tests for GeoTIFF and CSV input/output and resampling.

Author: Diego Bengochea
"""

import numpy as np
import pandas as pd
import pytest
import rasterio

from raster_pipeline.core.errors import InputSchemaError
from raster_pipeline.core.raster import GridSpec, Raster
from raster_pipeline.core.raster_io import (
    grid_at_scale, grid_for_region, read_header, read_raster, resample_raster, write_raster, write_table_csv
)

from conftest import ORIGIN_X, ORIGIN_Y, UTM_CRS


def test_geotiff_keeps_names_metadata_and_nodata(tmp_path, make_raster):
    ndvi = np.ma.MaskedArray(np.full((8, 8), 0.5), mask=np.zeros((8, 8), dtype=bool))
    ndvi.mask[2, 2] = True
    raster = make_raster({'ndvi': ndvi, 'evi': 0.3}, acquired='2020-06-01', cloud=12.5,
                         scene_id='S2_20200601', platform='A')

    path = write_raster(raster, tmp_path / 'out' / 'scene.tif')
    loaded = read_raster(path)

    assert loaded.band_names == ('ndvi', 'evi')
    assert loaded.grid.aligned_with(raster.grid)
    assert np.ma.getmaskarray(loaded.band('ndvi'))[2, 2]
    assert loaded.valid_count() == 63
    assert loaded.metadata.scene_id == 'S2_20200601'
    assert loaded.metadata.acquired == pd.Timestamp('2020-06-01')
    assert loaded.metadata.cloud_percentage == pytest.approx(12.5)
    assert loaded.metadata.get('platform') == 'A'


def test_read_selected_bands(tmp_path, make_raster):
    path = write_raster(make_raster({'red': 0.1, 'nir': 0.4}), tmp_path / 'scene.tif')

    nir = read_raster(path, bands=['nir'])

    assert nir.band_names == ('nir',)
    assert nir.band('nir')[0, 0] == pytest.approx(0.4)
    with pytest.raises(InputSchemaError):
        read_raster(path, bands=['swir1'])


def test_header_without_pixels(tmp_path, make_raster):
    path = write_raster(make_raster({'red': 0.1}, acquired='2019-12-31'), tmp_path / 'scene.tif')

    header = read_header(path)

    assert header.band_names == ('red',)
    assert header.grid.shape == (8, 8)
    assert header.metadata.acquired.year == 2019


def test_boolean_bands_are_written_as_uint8(tmp_path, make_raster):
    flags = np.zeros((8, 8), dtype=bool)
    flags[0, :] = True

    path = write_raster(make_raster({'mask': flags}), tmp_path / 'mask.tif')

    with rasterio.open(path) as src:
        assert src.dtypes[0] == 'uint8'
        assert src.nodata == 255
    assert int(read_raster(path).band('mask').sum()) == 8


def test_integer_sentinel_collision_raises(tmp_path, make_raster):
    values = np.zeros((8, 8), dtype=np.uint16)
    values[0, 0] = np.iinfo(np.uint16).max

    with pytest.raises(InputSchemaError):
        write_raster(make_raster({'qa': values}), tmp_path / 'qa.tif')

    sparse = np.ma.MaskedArray(values, mask=values == 0)
    path = write_raster(make_raster({'qa': sparse}), tmp_path / 'qa.tif', nodata=0)
    assert read_raster(path).valid_count() == 1


def test_resample_to_coarser_grid(make_raster, grid):
    values = np.tile(np.arange(8, dtype=np.float64), (8, 1))
    raster = make_raster({'x': values})

    coarse = resample_raster(raster, grid_at_scale(grid, 20), 'average')

    assert coarse.shape == (4, 4)
    np.testing.assert_allclose(coarse.band('x')[0].filled(np.nan), [0.5, 2.5, 4.5, 6.5])


def test_resample_keeps_integer_dtype_for_nearest(make_raster, grid):
    qa = np.full((8, 8), 8, dtype=np.uint16)

    coarse = resample_raster(make_raster({'qa': qa}), grid_at_scale(grid, 20), 'nearest')

    assert coarse.band('qa').dtype == np.uint16
    assert int(coarse.band('qa')[0, 0]) == 8


def test_band_resampling_overrides_method_per_band(make_raster, grid):
    qa = np.full((8, 8), 8, dtype=np.uint16)
    raster = make_raster({'red': np.full((8, 8), 1000, dtype=np.int16), 'qa': qa})

    coarse = resample_raster(raster, grid_at_scale(grid, 20), 'bilinear', band_resampling={'qa': 'nearest'})

    assert coarse.band('qa').dtype == np.uint16
    assert coarse.band('red').dtype == np.float64
    assert int(coarse.band('qa')[1, 1]) == 8
    with pytest.raises(InputSchemaError):
        resample_raster(raster, grid_at_scale(grid, 20), 'bilinear', band_resampling={'qa': 'lanczos3'})


def test_resample_outside_source_is_nodata(make_raster, grid):
    shifted = GridSpec.from_bounds((ORIGIN_X + 40, ORIGIN_Y - 80, ORIGIN_X + 120, ORIGIN_Y), 10, UTM_CRS)

    moved = resample_raster(make_raster({'x': 1.0}), shifted)

    assert moved.valid_count() == 32


def test_unknown_resampling_raises(make_raster, grid):
    with pytest.raises(InputSchemaError):
        resample_raster(make_raster({'x': 1.0}), grid_at_scale(grid, 20), 'lanczos3')


def test_aligned_resample_is_identity(make_raster, grid):
    raster = make_raster({'x': 1.0})

    assert resample_raster(raster, grid) is raster


def test_grid_for_region_reprojects_bounds():
    grid = grid_for_region((-3.9, 40.3, -3.5, 40.6), 'EPSG:4326', 'EPSG:25830', 1000)

    left, bottom, right, top = grid.bounds
    assert grid.crs == rasterio.crs.CRS.from_epsg(25830)
    assert 400000 < left < right < 470000
    assert 4450000 < bottom < top < 4500000
    assert grid.resolution == (1000, 1000)


def test_csv_writes_empty_fields_for_nodata(tmp_path):
    table = pd.DataFrame({'name': ['west', 'east'], 'ndvi_mean': [0.5, np.nan]})

    path = write_table_csv(table, tmp_path / 'tables' / 'stats.csv')

    lines = path.read_text().splitlines()
    assert lines == ['name,ndvi_mean', 'west,0.5', 'east,']


def test_rasters_reject_non_2d_bands(grid):
    with pytest.raises(InputSchemaError):
        Raster({'x': np.zeros((2, 8, 8))}, grid)
