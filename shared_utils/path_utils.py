"""
Filesystem helpers for catalogs, inputs and output directories.

Author: Diego Bengochea
"""

from pathlib import Path
from typing import Iterable, List, Optional, Union

from .logging_utils import get_logger

logger = get_logger('paths')


def ensure_directory(path: Union[str, Path]) -> Path:
    """Create path (and parents) if needed and return it."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def find_files(
    directory: Union[str, Path],
    pattern: str = "*",
    recursive: bool = True,
    file_types: Optional[Iterable[str]] = None
) -> List[Path]:
    """
    List files below directory in sorted order.

    Args:
        directory: Directory to scan; a missing directory yields no files
        pattern: Glob pattern
        recursive: Descend into sub-directories
        file_types: Accepted suffixes, compared case-insensitively

    Returns:
        List[Path]: Matching files

    Examples:
        >>> scenes = find_files('data/raw/collections/landsat8', recursive=False, file_types=['.tif', '.tiff'])
    """
    directory = Path(directory)
    if not directory.is_dir():
        logger.warning(f"Directory does not exist: {directory}")
        return []

    matches = directory.rglob(pattern) if recursive else directory.glob(pattern)
    suffixes = {suffix.lower() for suffix in file_types} if file_types else None
    return sorted(
        path for path in matches
        if path.is_file() and (suffixes is None or path.suffix.lower() in suffixes)
    )


def _existing(path: Union[str, Path], kind: str, description: str) -> Path:
    path = Path(path)
    label = f"{description} {kind}" if description else kind.capitalize()
    if not path.exists():
        raise FileNotFoundError(f"{label} not found: {path}")
    is_kind = path.is_file() if kind == 'file' else path.is_dir()
    if not is_kind:
        raise ValueError(f"{label} is not a {kind}: {path}")
    return path


def validate_file_exists(path: Union[str, Path], description: str = "") -> Path:
    """
    Return path as a Path if it is an existing file.

    Raises:
        FileNotFoundError: If nothing exists at path
        ValueError: If path is not a regular file
    """
    return _existing(path, 'file', description)


def validate_directory_exists(path: Union[str, Path], description: str = "") -> Path:
    """
    Return path as a Path if it is an existing directory.

    Raises:
        FileNotFoundError: If nothing exists at path
        ValueError: If path is not a directory
    """
    return _existing(path, 'directory', description)
