"""
YAML configuration handling for the raster pipeline.

Configurations are plain nested dictionaries. ``load_config`` finds the file,
parses it and attaches a ``_meta`` block describing where it came from;
underscore-prefixed keys are run-time annotations and are never written back
by ``save_config``.

Author: Diego Bengochea
"""

import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml

from .logging_utils import get_logger

CONFIG_ENV_VAR = 'RASTER_PIPELINE_CONFIG'

logger = get_logger('config')


def _candidate_paths(config_path: Optional[Union[str, Path]], component_name: Optional[str],
                     default_config_name: str) -> List[Path]:
    candidates = []
    if config_path:
        candidates.append(Path(config_path))
    if component_name:
        candidates.append(Path(component_name) / default_config_name)
        # Default configuration installed with the component package
        candidates.append(Path(__file__).resolve().parent.parent / component_name / default_config_name)
    candidates.append(Path(default_config_name))
    if os.environ.get(CONFIG_ENV_VAR):
        candidates.append(Path(os.environ[CONFIG_ENV_VAR]))
    return candidates


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    component_name: Optional[str] = None,
    default_config_name: str = "config.yaml"
) -> Dict[str, Any]:
    """
    Load a YAML configuration.

    The first existing file wins, in this order: config_path, the component
    directory relative to the working directory, the installed component
    package, the working directory and finally the file named by the
    RASTER_PIPELINE_CONFIG environment variable.

    Args:
        config_path: Explicit configuration file
        component_name: Component package name used for discovery
        default_config_name: File name looked up during discovery

    Returns:
        Dict[str, Any]: Configuration with a '_meta' entry

    Raises:
        FileNotFoundError: If none of the candidate files exists
        ValueError: If the file is not valid YAML or not a mapping

    Examples:
        >>> config = load_config('runs/madrid_2020.yaml')
        >>> config = load_config(component_name='raster_pipeline')
    """
    candidates = _candidate_paths(config_path, component_name, default_config_name)
    config_file = next((path for path in candidates if path.is_file()), None)
    if config_file is None:
        raise FileNotFoundError(f"No configuration file found, tried: {[str(p) for p in candidates]}")

    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {config_file}: {e}")

    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise ValueError(f"Configuration in {config_file} must be a mapping, got {type(config).__name__}")

    config['_meta'] = {
        'config_file': str(config_file.absolute()),
        'component_name': component_name,
        'working_directory': str(Path.cwd()),
    }
    logger.info(f"Loaded configuration from {config_file}")
    return config


def validate_config(config: Dict[str, Any], required_sections: Optional[Iterable[str]] = None) -> bool:
    """
    Check that config is a mapping holding every required top-level section.

    Raises:
        ValueError: Naming the missing sections
    """
    if not isinstance(config, dict):
        raise ValueError(f"Configuration must be a mapping, got {type(config).__name__}")

    missing = [section for section in (required_sections or ()) if section not in config]
    if missing:
        raise ValueError(f"Missing required configuration sections: {missing}")
    return True


def get_config_value(config: Dict[str, Any], key_path: str, default: Any = None) -> Any:
    """
    Nested lookup with a dotted key, e.g. 'compute.chunk_size'.

    Returns default when any level is missing or not a mapping.
    """
    value = config
    for key in key_path.split('.'):
        if not isinstance(value, dict) or key not in value:
            return default
        value = value[key]
    return value


def save_config(config: Dict[str, Any], output_path: Union[str, Path]) -> Path:
    """
    Write a configuration as YAML, leaving out run-time keys starting with '_'.

    Args:
        config: Configuration dictionary
        output_path: Destination file, parent directories are created

    Returns:
        Path: The written file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    persisted = {key: value for key, value in config.items() if not str(key).startswith('_')}
    with open(output_path, 'w', encoding='utf-8') as f:
        yaml.safe_dump(persisted, f, default_flow_style=False, sort_keys=False)

    logger.info(f"Configuration saved to {output_path}")
    return output_path
