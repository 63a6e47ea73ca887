"""
End-to-end tests for the composite and classification pipelines.

Author: Diego Bengochea
"""

import copy

import numpy as np
import pandas as pd
import pytest
from shapely.geometry import box

from raster_pipeline.core.errors import ConfigurationError, GeometryError
from raster_pipeline.core.pipeline import ClassificationPipeline, CompositePipeline, PipelineConfig
from raster_pipeline.core.raster_io import read_raster, write_raster
from raster_pipeline.core.zones import ZoneCollection

from conftest import ORIGIN_X, ORIGIN_Y, UTM_CRS


def _with(config, section, **values):
    updated = copy.deepcopy(config)
    updated[section] = dict(updated.get(section) or {}, **values)
    return updated


def test_config_is_validated(pipeline_config):
    settings = PipelineConfig.from_dict(pipeline_config)

    assert settings.band_names == ['red', 'nir', 'ndvi']
    assert settings.reducer.name == 'median'
    assert list(settings.period_definitions()) == ['h1', 'h2']
    assert settings.target_grid().shape == (8, 8)


@pytest.mark.parametrize('section, values', [
    ('filter', {'start_date': '2021-01-01'}),
    ('filter', {'start_date': None}),
    ('filter', {'months': [0]}),
    ('output', {'scale': -10}),
    ('output', {'crs': 'EPSG:999999'}),
    ('output', {'resampling': 'cubic_magic'}),
    ('composite', {'reducer': 'mode'}),
    ('composite', {'periods': {'bad': {'start': '2020-06-01', 'end': '2020-01-01'}}}),
    ('mask', {'op': '=~'}),
    ('compute', {'chunk_size': 0}),
])
def test_invalid_values_raise_configuration_error(pipeline_config, section, values):
    with pytest.raises(ConfigurationError):
        PipelineConfig.from_dict(_with(pipeline_config, section, **values))


def test_collections_must_share_common_bands(pipeline_config):
    config = copy.deepcopy(pipeline_config)
    config['collections'][1]['bands'] = {'B3': 'red', 'B4': 'nir08'}

    with pytest.raises(ConfigurationError):
        PipelineConfig.from_dict(config)


def test_region_must_be_known_and_valid(pipeline_config):
    config = copy.deepcopy(pipeline_config)
    config['filter'].pop('bounds')
    config['filter']['region'] = 'nowhere'
    with pytest.raises(ConfigurationError):
        PipelineConfig.from_dict(config)

    config['filter']['bounds'] = [0, 0, 0, 0]
    with pytest.raises(GeometryError):
        PipelineConfig.from_dict(config)


def test_missing_sections_are_rejected(pipeline_config):
    config = copy.deepcopy(pipeline_config)
    del config['collections']

    with pytest.raises(ConfigurationError):
        CompositePipeline(config=config)


def test_composite_pipeline_end_to_end(tmp_path, pipeline_config, zones):
    zones_file = tmp_path / 'zones.gpkg'
    zones.to_frame().to_file(zones_file, driver='GPKG')
    config = _with(pipeline_config, 'zonal_statistics', zones_file=str(zones_file), reducers=['mean'],
                   masked_area=True)

    pipeline = CompositePipeline(config=config)
    assert pipeline.validate_configuration()
    assert pipeline.run_full_pipeline()

    # The February sensor_a scene is above the cloud limit
    assert pipeline.scene_count == 4
    composites = tmp_path / 'composites'
    for period in ('h1', 'h2'):
        composite = read_raster(composites / f"composite_{period}_median.tif")
        assert composite.band_names == ('red', 'nir', 'ndvi')
        assert composite.band('ndvi')[4, 4] == pytest.approx(0.5)
        assert np.ma.getmaskarray(composite.band('ndvi'))[0, 0]
        assert (composites / f"composite_{period}_median_masked.tif").exists()

    table = pd.read_csv(tmp_path / 'tables' / 'composite_h1_median_masked.csv')
    assert list(table.columns) == ['name', 'code', 'red_mean', 'nir_mean', 'ndvi_mean', 'masked_area_sum']
    assert table['ndvi_mean'].tolist() == pytest.approx([0.5, 0.5])
    assert table['masked_area_sum'].tolist() == pytest.approx([3100.0, 3200.0])

    summary = pipeline.get_processing_summary()
    assert summary['zonal_tables'] == {'h1': 2, 'h2': 2}
    assert summary['config_summary']['collections'] == ['sensor_a', 'sensor_b']


def test_composite_bands_subset(pipeline_config):
    config = _with(pipeline_config, 'composite', bands=['ndvi'], reducer='max')
    config.pop('mask')

    pipeline = CompositePipeline(config=config)
    assert pipeline.run_full_pipeline()

    assert pipeline.composites['h2'].band_names == ('ndvi',)
    assert not pipeline.output_path('h2', masked=True).exists()
    assert pipeline.output_path('h2').name == 'composite_h2_max.tif'


def test_bilinear_output_keeps_qa_bits_for_cloud_mask(pipeline_config):
    config = _with(pipeline_config, 'output', resampling='bilinear', scale=20.0)

    pipeline = CompositePipeline(config=config)
    assert pipeline.run_full_pipeline()

    composite = pipeline.composites['h1']
    assert composite.shape == (4, 4)
    assert composite.valid_count() >= 15
    np.testing.assert_allclose(np.ma.compressed(composite.band('ndvi')), 0.5)


@pytest.mark.parametrize('section, values', [
    ('mask', {'band': 'no_such_band'}),
    ('indices', {'ndvi': {'normalized_difference': ['nir', 'rd']}}),
    ('indices', {'ratio': 'nir / swir1'}),
    ('indices', {'red': 'nir * 2'}),
    ('composite', {'bands': ['ndvi', 'evi']}),
    ('composite', {'bands': ['red', 'nir']}),
    ('composite', {'bands': []}),
    ('zonal_statistics', {'bands': ['evi']}),
])
def test_unknown_band_references_fail_at_construction(pipeline_config, section, values):
    with pytest.raises(ConfigurationError):
        CompositePipeline(config=_with(pipeline_config, section, **values))


def test_indices_may_reference_earlier_indices(pipeline_config):
    config = _with(pipeline_config, 'indices', scaled='ndvi * 100')
    config = _with(config, 'zonal_statistics', bands=['scaled'])

    settings = PipelineConfig.from_dict(config)

    assert settings.band_names == ['red', 'nir', 'ndvi', 'scaled']


def test_cancelled_pipeline_returns_false(pipeline_config):
    pipeline = CompositePipeline(config=pipeline_config)
    pipeline.cancel()

    assert pipeline.run_full_pipeline() is False
    assert pipeline.composites == {}


def test_validation_reports_missing_collection(pipeline_config):
    config = copy.deepcopy(pipeline_config)
    config['collections'][1]['id'] = 'sensor_c'

    assert CompositePipeline(config=config).validate_configuration() is False


@pytest.fixture
def classification_config(tmp_path, make_raster):
    a = np.full((8, 8), 0.2)
    a[:, 4:] = 0.8
    composite_file = write_raster(make_raster({'a': a, 'b': 0.5}), tmp_path / 'composite.tif')

    west = box(ORIGIN_X, ORIGIN_Y - 80, ORIGIN_X + 40, ORIGIN_Y)
    east = box(ORIGIN_X + 40, ORIGIN_Y - 80, ORIGIN_X + 80, ORIGIN_Y)
    training_file = tmp_path / 'training.gpkg'
    regions = ZoneCollection.from_records([west, east], [{'landcover': 1}, {'landcover': 2}], crs=UTM_CRS)
    regions.to_frame().to_file(training_file, driver='GPKG')

    return {
        'logging': {'level': 'INFO'},
        'classification': {
            'composite_file': str(composite_file),
            'training_file': str(training_file),
            'label_column': 'landcover',
            'features': ['a', 'b'],
            'split_ratio': 0.5,
            'seed': 0,
            'classifier': {'kind': 'cart', 'params': {'random_state': 0}},
            'output_directory': str(tmp_path / 'classification'),
            'accuracy_directory': str(tmp_path / 'accuracy'),
        },
    }


def test_classification_pipeline(tmp_path, classification_config):
    pipeline = ClassificationPipeline(config=classification_config)

    assert pipeline.run_full_pipeline()

    assert pipeline.confusion_matrix.overall_accuracy() == pytest.approx(1.0)
    classified = read_raster(tmp_path / 'classification' / 'composite_classified.tif')
    assert int(classified.band('classification')[0, 0]) == 1
    assert int(classified.band('classification')[0, 7]) == 2
    assert (tmp_path / 'accuracy' / 'composite_confusion_matrix.csv').exists()
    accuracy = pd.read_csv(tmp_path / 'accuracy' / 'composite_accuracy.csv')
    assert accuracy['class'].astype(str).tolist() == ['1', '2', 'overall', 'kappa']


def test_classification_config_errors(classification_config):
    config = copy.deepcopy(classification_config)
    config['classification']['split_ratio'] = 1.5
    with pytest.raises(ConfigurationError):
        ClassificationPipeline(config=config)

    config = copy.deepcopy(classification_config)
    del config['classification']['features']
    with pytest.raises(ConfigurationError):
        ClassificationPipeline(config=config)

    config = copy.deepcopy(classification_config)
    config['classification']['classifier'] = {'kind': 'boosting'}
    with pytest.raises(ConfigurationError):
        ClassificationPipeline(config=config)
