"""
Logging helpers shared by the raster pipeline components.

Component loggers live below one ``raster_pipeline`` parent logger; a single
``setup_logging`` call per run installs the console and optional file
handlers on the root logger so that library modules only need ``get_logger``.

Author: Diego Bengochea
"""

import logging
import sys
from pathlib import Path
from typing import Any, Mapping, Optional, Union

ROOT_LOGGER_NAME = 'raster_pipeline'

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
BANNER_WIDTH = 80


def _resolve_level(level: Union[str, int]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown logging level '{level}'")
    return resolved


def setup_logging(
    level: Union[str, int] = 'INFO',
    component_name: Optional[str] = None,
    log_file: Optional[Union[str, Path]] = None
) -> logging.Logger:
    """
    Configure run-wide logging and return the component logger.

    Previously installed root handlers are replaced, so calling this again
    (e.g. from a second pipeline in the same process) does not duplicate
    output.

    Args:
        level: Level name or number applied to the root logger and handlers
        component_name: Component name, the logger becomes raster_pipeline.<name>
        log_file: Optional file receiving the same records as the console

    Returns:
        logging.Logger: Component logger

    Examples:
        >>> logger = setup_logging('INFO', 'composite')
        >>> logger = setup_logging('DEBUG', 'classification', 'logs/classification.log')
    """
    level = _resolve_level(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding='utf-8'))

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(level)

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    return get_logger(component_name) if component_name else logging.getLogger(ROOT_LOGGER_NAME)


def get_logger(component_name: str) -> logging.Logger:
    """
    Logger of a pipeline module, e.g. get_logger('zonal_statistics').
    """
    return logging.getLogger(f'{ROOT_LOGGER_NAME}.{component_name}')


def log_pipeline_start(logger: logging.Logger, pipeline_name: str,
                       config: Optional[Mapping[str, Any]] = None) -> None:
    """
    Log the run banner and the top-level configuration entries.

    Args:
        logger: Component logger
        pipeline_name: Pipeline name shown in the banner
        config: Configuration; nested sections are summarised by size
    """
    logger.info("=" * BANNER_WIDTH)
    logger.info(f"STARTING {pipeline_name.upper()} PIPELINE")
    logger.info("=" * BANNER_WIDTH)

    for key, value in (config or {}).items():
        if str(key).startswith('_'):
            continue
        if isinstance(value, Mapping):
            logger.info(f"  {key}: {len(value)} settings")
        elif isinstance(value, (list, tuple)) and value and isinstance(value[0], Mapping):
            logger.info(f"  {key}: {len(value)} entries")
        else:
            logger.info(f"  {key}: {value}")


def log_pipeline_end(logger: logging.Logger, pipeline_name: str, success: bool = True,
                     elapsed_time: Optional[float] = None) -> None:
    """Log the closing banner with the outcome and wall-clock time."""
    outcome = 'COMPLETED' if success else 'FAILED'
    logger.info("=" * BANNER_WIDTH)
    logger.info(f"{pipeline_name.upper()} PIPELINE {outcome}")
    if elapsed_time is not None:
        minutes, seconds = divmod(int(elapsed_time), 60)
        hours, minutes = divmod(minutes, 60)
        logger.info(f"Elapsed: {hours:02d}:{minutes:02d}:{seconds:02d}")
    logger.info("=" * BANNER_WIDTH)


def log_section(logger: logging.Logger, section_name: str) -> None:
    logger.info(f"--- {section_name} ---")
