"""
Tests for configuration, path and logging helpers.

Author: Diego Bengochea
"""

import logging

import pytest
import yaml

from shared_utils import (
    ensure_directory, find_files, get_config_value, get_logger, load_config, save_config, setup_logging,
    validate_config, validate_directory_exists, validate_file_exists
)
from shared_utils.config_utils import CONFIG_ENV_VAR


def test_load_config_adds_meta(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text(yaml.safe_dump({'output': {'scale': 30}}))

    config = load_config(path)

    assert config['output']['scale'] == 30
    assert config['_meta']['config_file'] == str(path.absolute())


def test_load_config_from_environment(tmp_path, monkeypatch):
    path = tmp_path / 'env.yaml'
    path.write_text(yaml.safe_dump({'compute': {'chunk_size': 256}}))
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv(CONFIG_ENV_VAR, str(path))

    config = load_config(default_config_name='missing.yaml')

    assert config['compute']['chunk_size'] == 256


def test_load_config_errors(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    with pytest.raises(FileNotFoundError):
        load_config(default_config_name='missing.yaml')

    listing = tmp_path / 'list.yaml'
    listing.write_text('- a\n- b\n')
    with pytest.raises(ValueError):
        load_config(listing)


def test_save_config_drops_meta(tmp_path):
    path = tmp_path / 'runs' / 'run_config.yaml'

    save_config({'output': {'scale': 10}, '_meta': {'config_file': 'x'}}, path)

    assert yaml.safe_load(path.read_text()) == {'output': {'scale': 10}}


def test_get_config_value():
    config = {'output': {'scale': 30}, 'compute': None}

    assert get_config_value(config, 'output.scale') == 30
    assert get_config_value(config, 'output.crs', 'EPSG:4326') == 'EPSG:4326'
    assert get_config_value(config, 'compute.chunk_size', 512) == 512


def test_validate_config():
    assert validate_config({'filter': {}, 'output': {}}, ['filter', 'output'])
    with pytest.raises(ValueError, match='collections'):
        validate_config({'filter': {}}, ['filter', 'collections'])
    with pytest.raises(ValueError):
        validate_config([], None)


def test_path_helpers(tmp_path):
    scenes = ensure_directory(tmp_path / 'collections' / 'sensor')
    (scenes / 'b.tif').write_bytes(b'')
    (scenes / 'a.TIF').write_bytes(b'')
    (scenes / 'notes.txt').write_text('')

    assert [p.name for p in find_files(tmp_path, file_types=['.tif'])] == ['a.TIF', 'b.tif']
    assert find_files(tmp_path / 'absent') == []
    assert validate_directory_exists(scenes) == scenes
    assert validate_file_exists(scenes / 'b.tif').name == 'b.tif'
    with pytest.raises(FileNotFoundError):
        validate_directory_exists(tmp_path / 'absent')
    with pytest.raises(ValueError):
        validate_directory_exists(scenes / 'b.tif')
    with pytest.raises(FileNotFoundError):
        validate_file_exists(scenes / 'c.tif', 'Scene')


def test_component_loggers_share_hierarchy(tmp_path):
    log_file = tmp_path / 'logs' / 'run.log'
    logger = setup_logging('DEBUG', 'composite', log_file)

    get_logger('catalog').debug('indexed scenes')

    assert logger.name == 'raster_pipeline.composite'
    assert logging.getLogger().level == logging.DEBUG
    for handler in logging.getLogger().handlers:
        handler.flush()
    assert 'indexed scenes' in log_file.read_text()
