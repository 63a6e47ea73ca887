"""
Raster and table input/output.

GeoTIFF (via rasterio) is the on-disk raster format: CRS and transform live
in the georeferencing header, band names in the band descriptions, scene
metadata in dataset tags and no-data in the nodata sentinel (NaN for float
outputs). Tables are written as CSV with no-data as empty fields.

Author: Diego Bengochea
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd
import rasterio
from rasterio.crs import CRS
from rasterio.enums import Resampling
from rasterio.errors import RasterioError
from rasterio.warp import reproject, transform_bounds

from shared_utils import ensure_directory, get_logger

from .errors import ExternalServiceError, InputSchemaError
from .raster import GridSpec, Raster, SceneMetadata

logger = get_logger('raster_io')

# Dataset tags holding the named SceneMetadata fields
METADATA_TAGS = {
    'scene_id': 'SCENE_ID',
    'acquired': 'ACQUIRED',
    'cloud_percentage': 'CLOUD_PERCENTAGE',
    'sensor': 'SENSOR',
}


@dataclass(frozen=True)
class SceneHeader:
    """Georeferencing, band names and metadata of a GeoTIFF, read without pixels."""
    path: Path
    grid: GridSpec
    band_names: Tuple[str, ...]
    metadata: SceneMetadata
    nodata: Optional[float] = None

    @property
    def crs(self):
        return self.grid.crs

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        return self.grid.bounds


def _tag_value(value: Any) -> str:
    if isinstance(value, (list, tuple, set)):
        return ','.join(str(v) for v in value)
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    return str(value)


def metadata_to_tags(metadata: SceneMetadata) -> Dict[str, str]:
    tags = {}
    for field_name, tag in METADATA_TAGS.items():
        value = getattr(metadata, field_name)
        if value is not None:
            tags[tag] = _tag_value(value)
    for key, value in metadata.properties.items():
        if value is not None:
            tags[str(key)] = _tag_value(value)
    return tags


def metadata_from_tags(tags: Dict[str, str]) -> SceneMetadata:
    tags = dict(tags)
    tags.pop('AREA_OR_POINT', None)
    named = {field_name: tags.pop(tag, None) for field_name, tag in METADATA_TAGS.items()}
    cloud = named['cloud_percentage']
    return SceneMetadata(
        scene_id=named['scene_id'],
        acquired=named['acquired'],
        cloud_percentage=float(cloud) if cloud not in (None, '') else None,
        sensor=named['sensor'],
        properties=tags,
    )


def _output_dtype(raster: Raster) -> np.dtype:
    dtypes = [np.ma.getdata(band).dtype for band in raster.bands().values()]
    dtype = np.result_type(*dtypes)
    if dtype.kind == 'b':
        return np.dtype('uint8')
    if dtype == np.dtype('int8'):
        return np.dtype('int16')
    return dtype


def _default_nodata(dtype: np.dtype) -> float:
    if dtype.kind == 'f':
        return float('nan')
    info = np.iinfo(dtype)
    return info.max if dtype.kind == 'u' else info.min


def write_raster(raster: Raster, path: Union[str, Path], nodata: Optional[float] = None,
                 dtype: Optional[Any] = None, compress: str = 'lzw') -> Path:
    """
    Write a raster to a multi-band GeoTIFF.

    Args:
        raster: Raster to write
        path: Output file path
        nodata: No-data sentinel (default NaN for float, dtype max/min for integers)
        dtype: Output dtype (default: common dtype of the bands)
        compress: GeoTIFF compression

    Returns:
        Path of the written file

    Raises:
        InputSchemaError: If a valid pixel equals the no-data sentinel
        ExternalServiceError: On I/O failure
    """
    path = Path(path)
    ensure_directory(path.parent)
    dtype = np.dtype(dtype) if dtype is not None else _output_dtype(raster)
    if nodata is None:
        nodata = _default_nodata(dtype)

    arrays = []
    for name, band in raster.bands().items():
        data = np.ma.getdata(band).astype(dtype)
        valid = ~np.ma.getmaskarray(band)
        if not np.isnan(nodata) and np.any(data[valid] == nodata):
            raise InputSchemaError(f"Band '{name}' has valid pixels equal to the no-data value {nodata}")
        arrays.append(np.where(valid, data, np.asarray(nodata).astype(dtype)))

    height, width = raster.shape
    profile = dict(
        driver='GTiff',
        height=height,
        width=width,
        count=len(arrays),
        dtype=dtype.name,
        crs=raster.crs,
        transform=raster.transform,
        nodata=nodata,
        compress=compress,
    )
    if height >= 256 and width >= 256:
        profile.update(tiled=True, blockxsize=256, blockysize=256)

    try:
        with rasterio.open(path, mode='w', **profile) as dst:
            for index, (name, data) in enumerate(zip(raster.band_names, arrays), start=1):
                dst.write(data, index)
                dst.set_band_description(index, name)
            dst.update_tags(**metadata_to_tags(raster.metadata))
    except RasterioError as e:
        raise ExternalServiceError('write_raster', {'path': str(path)}, str(e)) from e

    logger.debug(f"Wrote {len(arrays)} bands ({dtype.name}) to {path}")
    return path


def read_header(path: Union[str, Path]) -> SceneHeader:
    """Read georeferencing, band names and tags of a GeoTIFF."""
    path = Path(path)
    try:
        with rasterio.open(path) as src:
            grid = GridSpec(crs=src.crs, transform=src.transform, width=src.width, height=src.height)
            names = tuple(desc or f"band_{i}" for i, desc in enumerate(src.descriptions, start=1))
            metadata = metadata_from_tags(src.tags())
            nodata = src.nodata
    except RasterioError as e:
        raise ExternalServiceError('read_header', {'path': str(path)}, str(e)) from e
    return SceneHeader(path=path, grid=grid, band_names=names, metadata=metadata, nodata=nodata)


def read_raster(path: Union[str, Path], bands: Optional[Iterable[str]] = None) -> Raster:
    """
    Read a GeoTIFF written by write_raster (or any GeoTIFF) into a Raster.

    Args:
        path: Input file
        bands: Band names to read (default: all)

    Returns:
        Raster with no-data pixels masked

    Raises:
        InputSchemaError: If a requested band is absent
        ExternalServiceError: On I/O failure
    """
    header = read_header(path)
    names = list(bands) if bands is not None else list(header.band_names)
    missing = [name for name in names if name not in header.band_names]
    if missing:
        raise InputSchemaError(f"Bands {missing} not found in {path} with bands {list(header.band_names)}")

    indexes = [header.band_names.index(name) + 1 for name in names]
    try:
        with rasterio.open(header.path) as src:
            data = src.read(indexes, masked=True)
    except RasterioError as e:
        raise ExternalServiceError('read_raster', {'path': str(path), 'bands': names}, str(e)) from e

    band_arrays = {}
    for name, values in zip(names, data):
        if values.dtype.kind == 'f':
            values = np.ma.masked_invalid(values)
        band_arrays[name] = values
    return Raster(band_arrays, header.grid, metadata=header.metadata)


def _resampling_method(name: str) -> Resampling:
    try:
        return Resampling[name]
    except KeyError:
        raise InputSchemaError(f"Unknown resampling method '{name}'")


def resample_raster(raster: Raster, grid: GridSpec, resampling: str = 'nearest',
                    band_resampling: Optional[Mapping[str, str]] = None) -> Raster:
    """
    Warp every band of a raster onto a target grid.

    Integer bands keep their dtype for value-preserving methods (nearest, mode,
    min, max); other combinations are returned as float64.

    Args:
        raster: Input raster
        grid: Target grid
        resampling: rasterio Resampling name
        band_resampling: Per-band methods overriding resampling, e.g. nearest for QA bands

    Returns:
        Raster on the target grid; pixels with no source coverage are no-data
    """
    band_resampling = dict(band_resampling or {})
    for band_method in [resampling, *band_resampling.values()]:
        _resampling_method(band_method)
    if raster.grid.aligned_with(grid):
        return raster

    bands = {}
    for name, band in raster.bands().items():
        band_method = band_resampling.get(name, resampling)
        method = _resampling_method(band_method)
        keeps_values = band_method in ('nearest', 'mode', 'min', 'max')
        destination = np.full(grid.shape, np.nan, dtype=np.float64)
        reproject(
            source=raster.filled(name),
            destination=destination,
            src_transform=raster.transform,
            src_crs=raster.crs,
            src_nodata=np.nan,
            dst_transform=grid.transform,
            dst_crs=grid.crs,
            dst_nodata=np.nan,
            resampling=method,
        )
        invalid = np.isnan(destination)
        source_dtype = np.ma.getdata(band).dtype
        if source_dtype.kind in 'biu' and keeps_values:
            destination = np.where(invalid, 0, destination).astype(source_dtype)
        bands[name] = np.ma.MaskedArray(destination, mask=invalid)

    return Raster(bands, grid, metadata=raster.metadata)


def grid_at_scale(grid: GridSpec, scale: float) -> GridSpec:
    """Grid covering the same bounds in the same CRS with square pixels of size scale."""
    return GridSpec.from_bounds(grid.bounds, scale, grid.crs)


def grid_for_region(bounds: Tuple[float, float, float, float], bounds_crs: Any, crs: Any,
                    scale: float) -> GridSpec:
    """Output grid covering bounds (given in bounds_crs) in crs at resolution scale."""
    if CRS.from_user_input(bounds_crs) != CRS.from_user_input(crs):
        bounds = transform_bounds(bounds_crs, crs, *bounds, densify_pts=21)
    return GridSpec.from_bounds(bounds, scale, crs)


def write_table_csv(table: pd.DataFrame, path: Union[str, Path], columns: Optional[List[str]] = None) -> Path:
    """
    Write a table as CSV with a header row and empty fields for no-data.

    Args:
        table: Zonal statistics, samples or accuracy table
        path: Output CSV path
        columns: Optional column order

    Returns:
        Path of the written file
    """
    path = Path(path)
    ensure_directory(path.parent)
    table.to_csv(path, index=False, na_rep='', columns=columns)
    logger.info(f"Wrote table with {len(table)} rows to {path}")
    return path
