"""
Logging, configuration and filesystem helpers used by every raster_pipeline
module and script.

Author: Diego Bengochea
"""

from .logging_utils import setup_logging, get_logger, log_pipeline_start, log_pipeline_end, log_section
from .config_utils import load_config, validate_config, get_config_value, save_config
from .path_utils import ensure_directory, find_files, validate_file_exists, validate_directory_exists

__version__ = "1.0.0"

__all__ = [
    "setup_logging",
    "get_logger",
    "log_pipeline_start",
    "log_pipeline_end",
    "log_section",
    "load_config",
    "validate_config",
    "get_config_value",
    "save_config",
    "ensure_directory",
    "find_files",
    "validate_file_exists",
    "validate_directory_exists",
]
