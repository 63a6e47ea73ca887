"""
Shared fixtures: small synthetic grids, rasters and temporary GeoTIFF catalogs.

Author: Diego Bengochea
"""

import numpy as np
import pandas as pd
import pytest
from rasterio.transform import Affine
from shapely.geometry import box

from raster_pipeline.core.raster import GridSpec, Raster, RasterCollection, SceneMetadata
from raster_pipeline.core.raster_io import write_raster
from raster_pipeline.core.zones import ZoneCollection

UTM_CRS = 'EPSG:32630'
ORIGIN_X = 500000.0
ORIGIN_Y = 4500000.0
PIXEL_SIZE = 10.0


@pytest.fixture
def grid():
    """8x8 grid of 10 m pixels in UTM zone 30N."""
    return GridSpec(crs=UTM_CRS, transform=Affine(PIXEL_SIZE, 0.0, ORIGIN_X, 0.0, -PIXEL_SIZE, ORIGIN_Y),
                    width=8, height=8)


@pytest.fixture
def make_raster(grid):
    """Factory building rasters on the shared grid from constants or arrays."""
    def _make(bands, acquired=None, cloud=None, scene_id=None, sensor=None, dtype=np.float64, **properties):
        arrays = {}
        for name, value in bands.items():
            if np.isscalar(value):
                arrays[name] = np.full(grid.shape, value, dtype=dtype)
            else:
                arrays[name] = value
        metadata = SceneMetadata(scene_id=scene_id, acquired=acquired, cloud_percentage=cloud,
                                 sensor=sensor, properties=properties)
        return Raster(arrays, grid, metadata=metadata)
    return _make


@pytest.fixture
def time_series(make_raster, grid):
    """Three scenes with constant red/nir values 10, 20 and 30 at increasing dates."""
    scenes = [
        make_raster({'red': value, 'nir': value * 2}, acquired=date, cloud=cloud, scene_id=f"scene_{i}")
        for i, (value, date, cloud) in enumerate([
            (30.0, '2020-07-10', 5.0),
            (10.0, '2020-01-10', 40.0),
            (20.0, '2020-03-10', 15.0),
        ])
    ]
    return RasterCollection(scenes, grid=grid, collection_id='sensor')


def half_zones(crs=UTM_CRS):
    """West and east halves of the shared grid as polygon zones."""
    west = box(ORIGIN_X, ORIGIN_Y - 80, ORIGIN_X + 40, ORIGIN_Y)
    east = box(ORIGIN_X + 40, ORIGIN_Y - 80, ORIGIN_X + 80, ORIGIN_Y)
    return ZoneCollection.from_records([west, east], [{'name': 'west', 'code': 1}, {'name': 'east', 'code': 2}],
                                       crs=crs)


@pytest.fixture
def zones():
    return half_zones()


def write_scene(directory, grid, name, bands, acquired, cloud, **properties):
    """Write one int16 scene with a uint16 QA_PIXEL band into a catalog collection directory."""
    arrays = {}
    for band, value in bands.items():
        dtype = np.uint16 if band == 'QA_PIXEL' else np.int16
        arrays[band] = value if not np.isscalar(value) else np.full(grid.shape, value, dtype=dtype)
    metadata = SceneMetadata(scene_id=name, acquired=pd.Timestamp(acquired), cloud_percentage=cloud,
                             properties=properties)
    return write_raster(Raster(arrays, grid, metadata=metadata), directory / f"{name}.tif")


@pytest.fixture
def scene_catalog(tmp_path, grid):
    """
    Catalog root with two collections of the same surface but different band names.

    Every scene has red 1000 and nir 3000 (NDVI 0.5 after scaling) and the
    cloud bit (3) set in QA_PIXEL at pixel (0, 0).
    """
    root = tmp_path / 'collections'
    qa = np.zeros(grid.shape, dtype=np.uint16)
    qa[0, 0] = 1 << 3

    sensor_a = root / 'sensor_a'
    sensor_a.mkdir(parents=True)
    for name, acquired, cloud in [('a_20200115', '2020-01-15', 10.0),
                                  ('a_20200215', '2020-02-15', 50.0),
                                  ('a_20200715', '2020-07-15', 5.0)]:
        write_scene(sensor_a, grid, name, {'SR_B4': 1000, 'SR_B5': 3000, 'QA_PIXEL': qa}, acquired, cloud,
                    platform='A')

    sensor_b = root / 'sensor_b'
    sensor_b.mkdir(parents=True)
    for name, acquired, cloud in [('b_20200310', '2020-03-10', 20.0),
                                  ('b_20200820', '2020-08-20', 0.0)]:
        write_scene(sensor_b, grid, name, {'B3': 1000, 'B4': 3000, 'QA_PIXEL': qa}, acquired, cloud,
                    platform='B')
    return root


@pytest.fixture
def pipeline_config(tmp_path, scene_catalog):
    """Configuration dictionary running the composite pipeline on scene_catalog."""
    return {
        'logging': {'level': 'DEBUG'},
        'catalog': {'root': str(scene_catalog), 'cache_mb': 16},
        'collections': [
            {'id': 'sensor_a', 'bands': {'SR_B4': 'red', 'SR_B5': 'nir'}, 'scale': 0.0001,
             'max_cloud_percentage': 30, 'cloud_mask': {'band': 'QA_PIXEL', 'bits': [3, 4]}},
            {'id': 'sensor_b', 'bands': {'B3': 'red', 'B4': 'nir'}, 'scale': 0.0001,
             'cloud_mask': {'band': 'QA_PIXEL', 'bits': [3, 4]}},
        ],
        'filter': {
            'start_date': '2020-01-01',
            'end_date': '2021-01-01',
            'bounds': [ORIGIN_X, ORIGIN_Y - 80, ORIGIN_X + 80, ORIGIN_Y],
            'bounds_crs': UTM_CRS,
        },
        'indices': {'ndvi': {'normalized_difference': ['nir', 'red']}},
        'composite': {
            'reducer': 'median',
            'periods': {
                'h1': {'start': '2020-01-01', 'end': '2020-07-01'},
                'h2': {'start': '2020-07-01', 'end': '2021-01-01'},
            },
        },
        'mask': {'band': 'ndvi', 'op': '>', 'value': 0.3},
        'output': {
            'crs': UTM_CRS,
            'scale': PIXEL_SIZE,
            'directory': str(tmp_path / 'composites'),
            'tables_directory': str(tmp_path / 'tables'),
            'prefix': 'composite',
        },
    }
