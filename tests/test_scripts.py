"""
Tests for the command-line entry points.

Author: Diego Bengochea
"""

import argparse
import importlib
import json
import sys

import pandas as pd
import yaml

from raster_pipeline.core.raster_io import write_raster

# The package namespace re-exports each script's main under the module name
run_composite_pipeline = importlib.import_module('raster_pipeline.scripts.run_composite_pipeline')
run_zonal_statistics = importlib.import_module('raster_pipeline.scripts.run_zonal_statistics')


def _namespace(**values):
    defaults = dict(start_date=None, end_date=None, region=None, reducer=None, scale=None, chunk_size=None,
                    catalog_root=None, output_dir=None, zones=None, log_level=None)
    defaults.update(values)
    return argparse.Namespace(**defaults)


def test_apply_overrides_leaves_input_untouched(pipeline_config):
    args = _namespace(start_date='2020-03-01', region='madrid', reducer='p90', scale=20.0, log_level='WARNING')

    config = run_composite_pipeline.apply_overrides(pipeline_config, args)

    assert config['filter']['start_date'] == '2020-03-01'
    assert config['filter']['region'] == 'madrid'
    assert 'bounds' not in config['filter']
    assert config['composite']['reducer'] == 'p90'
    assert config['output']['scale'] == 20.0
    assert config['logging']['level'] == 'WARNING'
    assert 'bounds' in pipeline_config['filter']
    assert pipeline_config['composite']['reducer'] == 'median'


def test_composite_script_runs_and_writes_summary(tmp_path, pipeline_config, monkeypatch):
    config_file = tmp_path / 'config.yaml'
    config_file.write_text(yaml.safe_dump(pipeline_config))
    summary_file = tmp_path / 'summary.json'
    monkeypatch.setattr(sys, 'argv', ['run_composite_pipeline', '--config', str(config_file),
                                      '--reducer', 'max', '--output-summary', str(summary_file)])

    assert run_composite_pipeline.main()

    summary = json.loads(summary_file.read_text())
    assert summary['config_summary']['reducer'] == 'max'
    assert (tmp_path / 'composites' / 'run_config.yaml').exists()
    assert (tmp_path / 'composites' / 'composite_h1_max.tif').exists()


def test_composite_script_missing_config(tmp_path, monkeypatch):
    monkeypatch.setattr(sys, 'argv', ['run_composite_pipeline', '--config', str(tmp_path / 'absent.yaml')])

    assert run_composite_pipeline.main() is False


def test_zonal_statistics_script(tmp_path, make_raster, zones, monkeypatch):
    raster_file = write_raster(make_raster({'ndvi': 0.4}), tmp_path / 'ndvi.tif')
    zones_file = tmp_path / 'zones.gpkg'
    zones.to_frame().to_file(zones_file, driver='GPKG')
    output = tmp_path / 'stats.csv'
    monkeypatch.setattr(sys, 'argv', ['run_zonal_statistics', '--raster', str(raster_file), '--zones',
                                      str(zones_file), '--output', str(output), '--reducers', 'mean', 'count',
                                      '--filter-field', 'name', '--filter-values', 'east'])

    assert run_zonal_statistics.main()

    table = pd.read_csv(output)
    assert table['name'].tolist() == ['east']
    assert table['ndvi_mean'].tolist() == [0.4]
    assert table['ndvi_count'].tolist() == [32]
