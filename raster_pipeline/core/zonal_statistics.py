"""
Spatial Reducer (Zonal Statistics)

Aggregates raster values over vector zones into tables and samples pixel
values at points for training-set construction.

Pixel assignment rule: a pixel belongs to a polygon zone when its centre lies
inside the polygon (``rasterio.features.geometry_mask`` with
``all_touched=False``). Point zones use the pixel that contains the point,
which is the pixel with the nearest centre. The rule depends only on the
geometry and the grid, so results do not depend on zone evaluation order.

Output tables keep the zone order and carry the zone attribute fields
unchanged, followed by one ``<band>_<reducer>`` column per band and reducer.

Author: Diego Bengochea
"""

import math
from typing import Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from rasterio.features import geometry_mask
from rasterio.transform import Affine
from shapely.geometry.base import BaseGeometry

from shared_utils import get_logger

from .errors import GeometryError, InputSchemaError, report_empty_result
from .raster import GridSpec, Raster
from .raster_io import grid_at_scale, resample_raster
from .temporal_reducer import Reducer, parse_reducers
from .zones import POINT_TYPES, ZoneCollection

logger = get_logger('zonal_statistics')


def _prepare(raster: Raster, zones: ZoneCollection, scale: Optional[float], bands: Optional[Iterable[str]],
             resampling: str) -> Tuple[Raster, ZoneCollection, List[str]]:
    bands = list(bands) if bands is not None else list(raster.band_names)
    raster.require_bands(bands)
    raster = raster.select(bands)

    if scale is not None:
        if scale <= 0:
            raise InputSchemaError(f"Scale must be positive, got {scale}")
        if not np.allclose(raster.grid.resolution, (scale, scale)):
            logger.debug(f"Resampling raster from {raster.grid.resolution} to scale {scale} ({resampling})")
            raster = resample_raster(raster, grid_at_scale(raster.grid, scale), resampling)

    return raster, zones.to_crs(raster.crs), bands


def _check_collisions(fields: Sequence[str], columns: Sequence[str]) -> None:
    collisions = sorted(set(fields) & set(columns))
    if collisions:
        raise InputSchemaError(f"Computed columns {collisions} collide with zone attribute fields")


def _point_pixels(geometry: BaseGeometry, grid: GridSpec) -> Tuple[np.ndarray, np.ndarray]:
    """(rows, cols) of the pixels containing each point that lies on the grid."""
    points = getattr(geometry, 'geoms', [geometry])
    inverse = ~grid.transform
    rows, cols = [], []
    for point in points:
        col, row = inverse * (point.x, point.y)
        row, col = int(math.floor(row)), int(math.floor(col))
        if 0 <= row < grid.height and 0 <= col < grid.width:
            rows.append(row)
            cols.append(col)
    return np.asarray(rows, dtype=int), np.asarray(cols, dtype=int)


def _polygon_pixels(geometry: BaseGeometry, grid: GridSpec) -> Tuple[np.ndarray, np.ndarray]:
    """(rows, cols) of the pixels whose centre falls inside the polygon."""
    inverse = ~grid.transform
    minx, miny, maxx, maxy = geometry.bounds
    corners = [inverse * (x, y) for x in (minx, maxx) for y in (miny, maxy)]
    cols = [c for c, _ in corners]
    rows = [r for _, r in corners]

    row_start = max(0, int(math.floor(min(rows))))
    row_stop = min(grid.height, int(math.ceil(max(rows))))
    col_start = max(0, int(math.floor(min(cols))))
    col_stop = min(grid.width, int(math.ceil(max(cols))))
    if row_start >= row_stop or col_start >= col_stop:
        return np.empty(0, dtype=int), np.empty(0, dtype=int)

    window_transform = grid.transform * Affine.translation(col_start, row_start)
    inside = geometry_mask(
        [geometry],
        out_shape=(row_stop - row_start, col_stop - col_start),
        transform=window_transform,
        all_touched=False,
        invert=True,
    )
    rows, cols = np.nonzero(inside)
    return rows + row_start, cols + col_start


def zone_pixels(geometry: BaseGeometry, grid: GridSpec) -> Tuple[np.ndarray, np.ndarray]:
    """Pixel indices assigned to a zone geometry on a grid."""
    if geometry.geom_type in POINT_TYPES:
        return _point_pixels(geometry, grid)
    return _polygon_pixels(geometry, grid)


def reduce_to_zones(raster: Raster, zones: ZoneCollection,
                    reducers: Union[str, Reducer, Sequence[Union[str, Reducer]]] = 'mean',
                    scale: Optional[float] = None, bands: Optional[Iterable[str]] = None,
                    resampling: str = 'nearest') -> pd.DataFrame:
    """
    Aggregate raster values within each zone.

    Args:
        raster: Input raster
        zones: Polygon or point zones, reprojected to the raster CRS if needed
        reducers: Reducer(s) or reducer name(s)
        scale: Nominal sampling resolution in raster CRS units; the raster is
            resampled to this pixel size first when it differs
        bands: Bands to reduce (default: all)
        resampling: Resampling method used when scale differs

    Returns:
        DataFrame with one row per zone, zone attributes first and then one
        column per (band, reducer); zones without valid pixels get NaN columns

    Raises:
        InputSchemaError: On missing bands or attribute/column name collisions
    """
    reducers = parse_reducers(reducers)
    raster, zones, bands = _prepare(raster, zones, scale, bands, resampling)

    columns = [f"{band}_{reducer.name}" for band in bands for reducer in reducers]
    _check_collisions(zones.fields, columns)

    band_data = {band: raster.filled(band) for band in bands}
    rows = []
    empty_zones = 0
    for position, geometry, _ in zones.iter_zones():
        pixel_rows, pixel_cols = zone_pixels(geometry, raster.grid)
        record = {}
        zone_valid = 0
        for band in bands:
            samples = band_data[band][pixel_rows, pixel_cols]
            samples = samples[~np.isnan(samples)]
            zone_valid += samples.size
            for reducer in reducers:
                record[f"{band}_{reducer.name}"] = reducer.reduce_samples(samples)
        if zone_valid == 0:
            empty_zones += 1
        rows.append(record)

    if empty_zones:
        report_empty_result(logger, f"{empty_zones} of {len(zones)} zones have no valid pixels; "
                                    f"their statistics are no-data")

    table = pd.concat([zones.attributes(), pd.DataFrame(rows, columns=columns)], axis=1)
    logger.info(f"Reduced {len(bands)} bands over {len(zones)} zones with "
                f"{', '.join(r.name for r in reducers)}")
    return table


def _select_properties(zones: ZoneCollection, properties: Optional[Iterable[str]]) -> List[str]:
    if properties is None:
        return list(zones.fields)
    properties = list(properties)
    missing = [name for name in properties if name not in zones.fields]
    if missing:
        raise InputSchemaError(f"Properties {missing} not found in zone fields {zones.fields}")
    return properties


def sample_at_points(raster: Raster, points: ZoneCollection, scale: Optional[float] = None,
                     properties: Optional[Iterable[str]] = None, bands: Optional[Iterable[str]] = None,
                     resampling: str = 'nearest') -> pd.DataFrame:
    """
    Extract the pixel value of each band at each point.

    Args:
        raster: Input raster
        points: Point zones
        scale: Optional resampling resolution
        properties: Point attribute fields to carry (default: all), e.g. a class label
        bands: Bands to sample (default: all)
        resampling: Resampling method used when scale differs

    Returns:
        DataFrame with one row per point in point order; points off the grid or
        on no-data pixels get NaN band values

    Raises:
        GeometryError: If a zone is not a single point
    """
    for position, geometry in enumerate(points.geometries):
        if geometry.geom_type != 'Point':
            raise GeometryError(f"sample_at_points expects Point geometries, zone {position} is {geometry.geom_type}")

    properties = _select_properties(points, properties)
    raster, points, bands = _prepare(raster, points, scale, bands, resampling)
    _check_collisions(properties, bands)

    band_data = {band: raster.filled(band) for band in bands}
    records = []
    for _, geometry, attributes in points.iter_zones():
        rows, cols = _point_pixels(geometry, raster.grid)
        record = {name: attributes[name] for name in properties}
        for band in bands:
            record[band] = float(band_data[band][rows[0], cols[0]]) if rows.size else np.nan
        records.append(record)

    table = pd.DataFrame(records, columns=properties + bands)
    missing = int(table[bands].isna().any(axis=1).sum()) if len(table) else 0
    if missing:
        logger.warning(f"{missing} of {len(table)} points fall outside the raster or on no-data pixels")
    return table


def sample_regions(raster: Raster, zones: ZoneCollection, properties: Optional[Iterable[str]] = None,
                   scale: Optional[float] = None, bands: Optional[Iterable[str]] = None,
                   resampling: str = 'nearest') -> pd.DataFrame:
    """
    One row per valid pixel assigned to each zone, tagged with the zone's properties.

    Pixels with no-data in any sampled band are dropped.

    Returns:
        DataFrame of properties and band values, rows grouped by zone in zone order
    """
    properties = _select_properties(zones, properties)
    raster, zones, bands = _prepare(raster, zones, scale, bands, resampling)
    _check_collisions(properties, bands)

    band_data = {band: raster.filled(band) for band in bands}
    frames = []
    for _, geometry, attributes in zones.iter_zones():
        rows, cols = zone_pixels(geometry, raster.grid)
        values = {band: band_data[band][rows, cols] for band in bands}
        frame = pd.DataFrame(values, columns=bands)
        frame = frame[frame.notna().all(axis=1)]
        for name in properties:
            frame[name] = attributes[name]
        frames.append(frame)

    if not frames:
        return pd.DataFrame(columns=properties + bands)

    table = pd.concat(frames, ignore_index=True)[properties + bands]
    if table.empty:
        report_empty_result(logger, "no valid pixel samples inside the sampling regions")
    logger.info(f"Sampled {len(table)} pixels from {len(zones)} regions")
    return table
