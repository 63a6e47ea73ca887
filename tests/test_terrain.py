"""
Tests for slope, aspect, hillshade and pixel area.

Author: Diego Bengochea
"""

import numpy as np
import pytest
from rasterio.transform import Affine

from raster_pipeline.core.errors import InputSchemaError
from raster_pipeline.core.raster import GridSpec, Raster
from raster_pipeline.core.terrain import aspect, hillshade, pixel_area, slope, terrain_products


@pytest.fixture
def eastward_ramp(make_raster):
    """Elevation rising 10 m per 10 m pixel towards the east."""
    return make_raster({'elevation': np.tile(np.arange(8, dtype=np.float64) * 10.0, (8, 1))})


def test_slope_of_unit_ramp(eastward_ramp):
    result = slope(eastward_ramp)

    values = result.band('slope')
    assert values[3, 3] == pytest.approx(45.0)
    assert np.ma.getmaskarray(values)[0, :].all()
    assert np.ma.getmaskarray(values)[:, 7].all()
    assert result.valid_count() == 36


def test_aspect_faces_downslope(eastward_ramp, make_raster):
    west_facing = aspect(eastward_ramp).band('aspect')
    north_rising = make_raster({'elevation': np.repeat((7 - np.arange(8, dtype=np.float64))[:, None] * 10.0, 8,
                                                      axis=1)})
    south_facing = aspect(north_rising).band('aspect')

    assert west_facing[4, 4] == pytest.approx(270.0)
    assert south_facing[4, 4] == pytest.approx(180.0)


def test_flat_ground(make_raster):
    flat = make_raster({'elevation': 500.0})

    assert slope(flat).band('slope')[4, 4] == pytest.approx(0.0)
    assert aspect(flat).valid_count() == 0
    assert hillshade(flat).band('hillshade')[4, 4] == pytest.approx(255.0 * np.cos(np.radians(45.0)))


def test_nodata_spreads_to_neighbours(make_raster):
    elevation = np.ma.MaskedArray(np.full((8, 8), 100.0), mask=np.zeros((8, 8), dtype=bool))
    elevation.mask[4, 4] = True

    result = slope(make_raster({'elevation': elevation}))

    mask = np.ma.getmaskarray(result.band('slope'))
    assert mask[3:6, 3:6].all()
    assert not mask[2, 2]


def test_terrain_products_bands(eastward_ramp):
    products = terrain_products(eastward_ramp)

    assert products.band_names == ('elevation', 'slope', 'aspect', 'hillshade')
    with pytest.raises(InputSchemaError):
        terrain_products(eastward_ramp, band='dem')


def test_pixel_area_projected(eastward_ramp):
    area = pixel_area(eastward_ramp).band('area')

    np.testing.assert_allclose(area.filled(np.nan), 100.0)


def test_pixel_area_geographic_shrinks_poleward():
    grid = GridSpec('EPSG:4326', Affine(1.0, 0.0, 0.0, 0.0, -1.0, 61.0), width=2, height=2)
    raster = Raster({'x': np.ones((2, 2))}, grid)

    area = pixel_area(raster).band('area')

    assert area[0, 0] < area[1, 0]
    assert area[1, 0] == pytest.approx(111195.0 ** 2 * np.cos(np.radians(59.5)), rel=1e-3)
