"""
Terrain derivatives and pixel area.

Slope, aspect and hillshade are computed from an elevation band (metres)
with Horn's 3x3 finite-difference kernel. Pixel sizes of geographic grids are
converted to metres at each row's latitude. Edge pixels and pixels whose 3x3
neighbourhood touches no-data are no-data.

Author: Diego Bengochea
"""

from typing import Optional, Tuple

import numpy as np
from scipy import ndimage

from shared_utils import get_logger

from .errors import InputSchemaError
from .raster import GridSpec, Raster

logger = get_logger('terrain')

EARTH_RADIUS_M = 6371008.8

_DX_KERNEL = np.array([[-1, 0, 1], [-2, 0, 2], [-1, 0, 1]], dtype=np.float64)
_DY_KERNEL = np.array([[-1, -2, -1], [0, 0, 0], [1, 2, 1]], dtype=np.float64)


def _row_centres(grid: GridSpec) -> np.ndarray:
    rows = np.arange(grid.height, dtype=np.float64) + 0.5
    return grid.transform.f + grid.transform.e * rows


def _pixel_sizes_m(grid: GridSpec) -> Tuple[np.ndarray, np.ndarray]:
    """Per-row (x, y) pixel sizes in metres as (height, 1) arrays."""
    xres, yres = grid.resolution
    if grid.crs.is_geographic:
        latitudes = np.radians(_row_centres(grid))
        metres_per_degree = np.pi / 180.0 * EARTH_RADIUS_M
        x_m = xres * metres_per_degree * np.cos(latitudes)
        y_m = np.full(grid.height, yres * metres_per_degree)
    else:
        x_m = np.full(grid.height, xres)
        y_m = np.full(grid.height, yres)
    return x_m[:, None], y_m[:, None]


def _gradients(raster: Raster, band: Optional[str]) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Horn gradients (dz/dx eastward, dz/dy southward) and the invalid-pixel mask."""
    if band is None:
        if len(raster.band_names) != 1:
            raise InputSchemaError(f"Raster has bands {list(raster.band_names)}; specify the elevation band")
        band = raster.band_names[0]
    raster.require_bands([band])

    elevation = raster.band(band)
    invalid = np.ma.getmaskarray(elevation)
    data = np.where(invalid, 0.0, np.ma.getdata(elevation).astype(np.float64))

    x_m, y_m = _pixel_sizes_m(raster.grid)
    dz_dx = ndimage.correlate(data, _DX_KERNEL, mode='nearest') / (8.0 * x_m)
    dz_dy = ndimage.correlate(data, _DY_KERNEL, mode='nearest') / (8.0 * y_m)

    nodata = ndimage.binary_dilation(invalid, structure=np.ones((3, 3), dtype=bool))
    nodata[0, :] = nodata[-1, :] = True
    nodata[:, 0] = nodata[:, -1] = True
    return dz_dx, dz_dy, nodata


def _slope_radians(dz_dx: np.ndarray, dz_dy: np.ndarray) -> np.ndarray:
    return np.arctan(np.hypot(dz_dx, dz_dy))


def _aspect_math(dz_dx: np.ndarray, dz_dy: np.ndarray) -> np.ndarray:
    return np.arctan2(dz_dy, -dz_dx)


def _compass_aspect(dz_dx: np.ndarray, dz_dy: np.ndarray) -> np.ndarray:
    """Downslope direction in degrees clockwise from north, NaN on flat ground."""
    math_deg = np.degrees(_aspect_math(dz_dx, dz_dy))
    aspect = np.where(math_deg > 90.0, 450.0 - math_deg, 90.0 - math_deg)
    aspect = np.mod(aspect, 360.0)
    return np.where((dz_dx == 0) & (dz_dy == 0), np.nan, aspect)


def _band(raster: Raster, name: str, values: np.ndarray, nodata: np.ndarray) -> Raster:
    values = np.asarray(values, dtype=np.float64)
    return Raster({name: np.ma.MaskedArray(values, mask=nodata | ~np.isfinite(values))},
                  raster.grid, metadata=raster.metadata)


def slope(raster: Raster, band: Optional[str] = None, name: str = 'slope') -> Raster:
    """Slope in degrees (0 flat, 90 vertical)."""
    dz_dx, dz_dy, nodata = _gradients(raster, band)
    return _band(raster, name, np.degrees(_slope_radians(dz_dx, dz_dy)), nodata)


def aspect(raster: Raster, band: Optional[str] = None, name: str = 'aspect') -> Raster:
    """Aspect in degrees clockwise from north; flat pixels are no-data."""
    dz_dx, dz_dy, nodata = _gradients(raster, band)
    return _band(raster, name, _compass_aspect(dz_dx, dz_dy), nodata)


def hillshade(raster: Raster, band: Optional[str] = None, azimuth: float = 315.0,
              elevation: float = 45.0, name: str = 'hillshade') -> Raster:
    """
    Illumination in [0, 255] for a sun at the given azimuth and elevation (degrees).

    Args:
        raster: Raster holding an elevation band
        band: Elevation band name
        azimuth: Sun azimuth, degrees clockwise from north
        elevation: Sun elevation above the horizon, degrees
        name: Output band name
    """
    dz_dx, dz_dy, nodata = _gradients(raster, band)
    slope_rad = _slope_radians(dz_dx, dz_dy)
    aspect_rad = _aspect_math(dz_dx, dz_dy)
    zenith = np.radians(90.0 - elevation)
    azimuth_math = np.radians(np.mod(450.0 - azimuth, 360.0))

    shade = (np.cos(zenith) * np.cos(slope_rad)
             + np.sin(zenith) * np.sin(slope_rad) * np.cos(azimuth_math - aspect_rad))
    return _band(raster, name, np.clip(shade, 0.0, 1.0) * 255.0, nodata)


def terrain_products(raster: Raster, band: str = 'elevation') -> Raster:
    """Elevation band plus slope, aspect and hillshade bands."""
    raster.require_bands([band])
    logger.debug(f"Computing terrain products from band '{band}' on {raster.shape[1]}x{raster.shape[0]} grid")
    products = raster.select([band])
    for derived in (slope(raster, band), aspect(raster, band), hillshade(raster, band)):
        products = products.add_bands(derived)
    return products


def pixel_area(raster: Raster, name: str = 'area') -> Raster:
    """
    Area of every pixel in square metres.

    Geographic grids use the spherical cell area between the row's bounding
    parallels; projected grids use the constant affine cell area.
    """
    grid = raster.grid
    if grid.crs.is_geographic:
        xres, yres = grid.resolution
        centres = _row_centres(grid)
        north = np.radians(np.clip(centres + yres / 2.0, -90.0, 90.0))
        south = np.radians(np.clip(centres - yres / 2.0, -90.0, 90.0))
        rows = EARTH_RADIUS_M ** 2 * np.radians(xres) * np.abs(np.sin(north) - np.sin(south))
        area = np.repeat(rows[:, None], grid.width, axis=1)
    else:
        t = grid.transform
        area = np.full(grid.shape, abs(t.a * t.e - t.b * t.d), dtype=np.float64)
    return Raster({name: area}, grid, metadata=raster.metadata)
