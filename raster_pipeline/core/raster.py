"""
Raster data model.

Defines the closed set of value types that flow through the pipeline:

- GridSpec: CRS, affine transform and pixel dimensions of a raster grid
- SceneMetadata: acquisition timestamp, cloud percentage, sensor and free-form
  scene properties (orbit pass, polarisations, ...)
- Raster: ordered named bands on one grid, each band a 2-D masked array whose
  mask marks no-data pixels
- RasterCollection: ordered sequence of rasters sharing one band schema

Band arrays are copied on construction and flagged read-only. Every operation
in the pipeline returns a new Raster or RasterCollection.

Author: Diego Bengochea
"""

import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd
from rasterio.crs import CRS
from rasterio.transform import Affine, array_bounds
from shapely.geometry import box

from .errors import InputSchemaError


def to_timestamp(value: Any) -> Optional[pd.Timestamp]:
    """
    Normalize a date-like value to a timezone-naive pandas Timestamp.

    Args:
        value: ISO 8601 string, datetime, date, Timestamp or None

    Returns:
        Timestamp or None when value is None/empty
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    timestamp = pd.Timestamp(value)
    if timestamp.tzinfo is not None:
        timestamp = timestamp.tz_convert('UTC').tz_localize(None)
    return timestamp


@dataclass(frozen=True)
class GridSpec:
    """Georeferenced pixel grid shared by all bands of a raster."""
    crs: CRS
    transform: Affine
    width: int
    height: int

    def __post_init__(self):
        object.__setattr__(self, 'crs', CRS.from_user_input(self.crs))
        if not isinstance(self.transform, Affine):
            object.__setattr__(self, 'transform', Affine(*tuple(self.transform)[:6]))
        if int(self.width) <= 0 or int(self.height) <= 0:
            raise InputSchemaError(f"Grid dimensions must be positive, got {self.width}x{self.height}")
        object.__setattr__(self, 'width', int(self.width))
        object.__setattr__(self, 'height', int(self.height))

    @classmethod
    def from_bounds(cls, bounds: Tuple[float, float, float, float], resolution: float,
                    crs: Union[str, CRS]) -> 'GridSpec':
        """
        Build a north-up grid covering bounds at the given pixel size.

        Args:
            bounds: (left, bottom, right, top) in CRS units
            resolution: Pixel size in CRS units
            crs: Target coordinate reference system

        Returns:
            GridSpec whose origin is the top-left corner of bounds
        """
        left, bottom, right, top = bounds
        if resolution <= 0:
            raise InputSchemaError(f"Resolution must be positive, got {resolution}")
        width = max(1, int(math.ceil((right - left) / resolution - 1e-9)))
        height = max(1, int(math.ceil((top - bottom) / resolution - 1e-9)))
        transform = Affine(resolution, 0.0, left, 0.0, -resolution, top)
        return cls(crs=crs, transform=transform, width=width, height=height)

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.height, self.width)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """(left, bottom, right, top) of the grid."""
        return array_bounds(self.height, self.width, self.transform)

    @property
    def resolution(self) -> Tuple[float, float]:
        return (abs(self.transform.a), abs(self.transform.e))

    def footprint(self):
        """Grid extent as a shapely polygon in the grid CRS."""
        return box(*self.bounds)

    def aligned_with(self, other: 'GridSpec', precision: float = 1e-9) -> bool:
        """True when both grids share CRS, dimensions and transform."""
        return (
            self.shape == other.shape
            and self.crs == other.crs
            and self.transform.almost_equals(other.transform, precision)
        )


@dataclass(frozen=True)
class SceneMetadata:
    """Scene-level metadata of a raster."""
    scene_id: Optional[str] = None
    acquired: Optional[pd.Timestamp] = None
    cloud_percentage: Optional[float] = None
    sensor: Optional[str] = None
    properties: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        object.__setattr__(self, 'acquired', to_timestamp(self.acquired))
        if self.cloud_percentage is not None:
            object.__setattr__(self, 'cloud_percentage', float(self.cloud_percentage))
        object.__setattr__(self, 'properties', dict(self.properties or {}))

    def get(self, name: str, default: Any = None) -> Any:
        """Look up a named metadata field, falling back to free-form properties."""
        if name in ('scene_id', 'acquired', 'cloud_percentage', 'sensor'):
            value = getattr(self, name)
            return default if value is None else value
        return self.properties.get(name, default)

    def with_properties(self, **properties) -> 'SceneMetadata':
        merged = dict(self.properties)
        merged.update(properties)
        return SceneMetadata(self.scene_id, self.acquired, self.cloud_percentage, self.sensor, merged)


def _as_masked_band(name: str, values: Any, nodata: Optional[float]) -> np.ma.MaskedArray:
    """Copy values into a read-only 2-D masked array, masking nodata and non-finite samples."""
    if (nodata is None and isinstance(values, np.ma.MaskedArray) and values.ndim == 2
            and not values.flags.writeable and not np.ma.getmaskarray(values).flags.writeable):
        # Already a frozen band of another raster
        return values

    if isinstance(values, np.ma.MaskedArray):
        data = np.array(np.ma.getdata(values), copy=True)
        mask = np.array(np.ma.getmaskarray(values), copy=True)
    else:
        data = np.array(values, copy=True)
        mask = np.zeros(data.shape, dtype=bool)

    if data.ndim != 2:
        raise InputSchemaError(f"Band '{name}' must be 2-D, got shape {data.shape}")

    if data.dtype.kind not in 'biuf':
        raise InputSchemaError(f"Band '{name}' has unsupported dtype {data.dtype}")

    if nodata is not None:
        if isinstance(nodata, float) and math.isnan(nodata):
            if data.dtype.kind == 'f':
                mask = mask | np.isnan(data)
        else:
            mask = mask | (data == nodata)

    if data.dtype.kind == 'f':
        mask = mask | ~np.isfinite(data)

    data.setflags(write=False)
    mask.setflags(write=False)
    return np.ma.MaskedArray(data, mask=mask, copy=False)


class Raster:
    """
    Multi-band raster on a single georeferenced grid.

    Bands are stored as masked arrays: masked pixels are no-data. All bands
    share the grid dimensions; this is validated on construction.
    """

    def __init__(
        self,
        bands: Mapping[str, Any],
        grid: Optional[GridSpec] = None,
        *,
        crs: Optional[Union[str, CRS]] = None,
        transform: Optional[Affine] = None,
        metadata: Optional[SceneMetadata] = None,
        nodata: Optional[float] = None
    ):
        """
        Initialize a raster.

        Args:
            bands: Mapping of band name to 2-D array (plain or masked)
            grid: Grid specification; alternatively pass crs and transform
            crs: CRS used when grid is not given
            transform: Affine transform used when grid is not given
            metadata: Scene metadata
            nodata: Optional sentinel value marking no-data in plain arrays
        """
        if not bands:
            raise InputSchemaError("A raster needs at least one band")

        normalized: Dict[str, np.ma.MaskedArray] = {}
        for name, values in bands.items():
            if not isinstance(name, str) or not name:
                raise InputSchemaError(f"Band names must be non-empty strings, got {name!r}")
            normalized[name] = _as_masked_band(name, values, nodata)

        shapes = {band.shape for band in normalized.values()}
        if len(shapes) != 1:
            raise InputSchemaError(f"All bands must share one grid shape, got {sorted(shapes)}")
        height, width = shapes.pop()

        if grid is None:
            if crs is None or transform is None:
                raise InputSchemaError("Either grid or both crs and transform are required")
            grid = GridSpec(crs=crs, transform=transform, width=width, height=height)
        elif grid.shape != (height, width):
            raise InputSchemaError(f"Band shape {(height, width)} does not match grid shape {grid.shape}")

        self._bands = normalized
        self._grid = grid
        self._metadata = metadata or SceneMetadata()

    @classmethod
    def empty(cls, grid: GridSpec, band_names: Iterable[str],
              metadata: Optional[SceneMetadata] = None, dtype: Any = np.float64) -> 'Raster':
        """All-no-data raster with the given band schema."""
        bands = {
            name: np.ma.MaskedArray(np.zeros(grid.shape, dtype=dtype), mask=np.ones(grid.shape, dtype=bool))
            for name in band_names
        }
        return cls(bands, grid, metadata=metadata)

    # Geometry ---------------------------------------------------------------

    @property
    def grid(self) -> GridSpec:
        return self._grid

    @property
    def crs(self) -> CRS:
        return self._grid.crs

    @property
    def transform(self) -> Affine:
        return self._grid.transform

    @property
    def shape(self) -> Tuple[int, int]:
        return self._grid.shape

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        return self._grid.bounds

    @property
    def metadata(self) -> SceneMetadata:
        return self._metadata

    # Bands -----------------------------------------------------------------

    @property
    def band_names(self) -> Tuple[str, ...]:
        return tuple(self._bands)

    @property
    def nbytes(self) -> int:
        return sum(band.data.nbytes + np.ma.getmaskarray(band).nbytes for band in self._bands.values())

    def __contains__(self, name: str) -> bool:
        return name in self._bands

    def __repr__(self) -> str:
        return (f"Raster(bands={list(self.band_names)}, shape={self.shape}, "
                f"crs={self.crs.to_string()}, acquired={self._metadata.acquired})")

    def require_bands(self, names: Iterable[str]) -> None:
        """Raise InputSchemaError listing every requested band absent from the raster."""
        missing = [name for name in names if name not in self._bands]
        if missing:
            raise InputSchemaError(
                f"Bands {missing} not found in raster with bands {list(self.band_names)}"
            )

    def band(self, name: str) -> np.ma.MaskedArray:
        self.require_bands([name])
        return self._bands[name]

    def bands(self) -> Dict[str, np.ma.MaskedArray]:
        return dict(self._bands)

    def select(self, names: Iterable[str], new_names: Optional[Iterable[str]] = None) -> 'Raster':
        """
        Select bands, optionally renaming them positionally.

        Args:
            names: Band names to keep, in output order
            new_names: Optional replacement names of the same length

        Returns:
            Raster with the selected bands
        """
        names = list(names)
        self.require_bands(names)
        if new_names is None:
            new_names = names
        new_names = list(new_names)
        if len(new_names) != len(names):
            raise InputSchemaError(f"Cannot rename {len(names)} bands to {len(new_names)} names")
        if len(set(new_names)) != len(new_names):
            raise InputSchemaError(f"Duplicate band names in {new_names}")
        return Raster({new: self._bands[old] for old, new in zip(names, new_names)},
                      self._grid, metadata=self._metadata)

    def rename(self, mapping: Union[Mapping[str, str], Iterable[str]]) -> 'Raster':
        """Rename bands with a mapping (unmapped names kept) or a full list of names."""
        if isinstance(mapping, Mapping):
            unknown = [name for name in mapping if name not in self._bands]
            if unknown:
                raise InputSchemaError(f"Cannot rename missing bands {unknown}")
            new_names = [mapping.get(name, name) for name in self.band_names]
        else:
            new_names = list(mapping)
        return self.select(self.band_names, new_names)

    def with_bands(self, bands: Mapping[str, Any]) -> 'Raster':
        """New raster on the same grid and metadata holding exactly the given bands."""
        return Raster(bands, self._grid, metadata=self._metadata)

    def with_metadata(self, metadata: SceneMetadata) -> 'Raster':
        return Raster(self._bands, self._grid, metadata=metadata)

    def add_bands(self, other: Union['Raster', Mapping[str, Any]], overwrite: bool = False) -> 'Raster':
        """
        Append bands from another raster on the same grid.

        Args:
            other: Raster (grid-aligned) or mapping of band arrays
            overwrite: Replace bands with the same name instead of failing

        Returns:
            Raster with the combined band set
        """
        if isinstance(other, Raster):
            if not self._grid.aligned_with(other.grid):
                raise InputSchemaError("Cannot add bands from a raster on a different grid")
            incoming = other.bands()
        else:
            incoming = dict(other)

        duplicated = [name for name in incoming if name in self._bands]
        if duplicated and not overwrite:
            raise InputSchemaError(f"Bands {duplicated} already exist")

        combined = dict(self._bands)
        combined.update(incoming)
        return Raster(combined, self._grid, metadata=self._metadata)

    def map_bands(self, func: Callable[[np.ma.MaskedArray], Any]) -> 'Raster':
        """Apply a pixel-wise function to every band."""
        return self.with_bands({name: func(band) for name, band in self._bands.items()})

    # Validity ---------------------------------------------------------------

    def valid_mask(self, names: Optional[Iterable[str]] = None) -> np.ndarray:
        """Boolean array, True where every selected band holds a valid sample."""
        names = list(names) if names is not None else list(self.band_names)
        self.require_bands(names)
        valid = np.ones(self.shape, dtype=bool)
        for name in names:
            valid &= ~np.ma.getmaskarray(self._bands[name])
        return valid

    def valid_count(self) -> int:
        return int(self.valid_mask().sum())

    def filled(self, name: str, fill_value: float = np.nan) -> np.ndarray:
        """Float64 copy of a band with no-data replaced by fill_value."""
        return np.ma.filled(self.band(name).astype(np.float64), fill_value)


class RasterCollection(Sequence):
    """
    Ordered sequence of rasters sharing one band schema.

    The band schema is validated on construction. An empty collection keeps a
    declared band schema and grid so downstream reducers can still produce a
    correctly shaped no-data raster.
    """

    def __init__(
        self,
        rasters: Iterable[Raster] = (),
        band_names: Optional[Iterable[str]] = None,
        grid: Optional[GridSpec] = None,
        collection_id: Optional[str] = None
    ):
        rasters = tuple(rasters)
        if band_names is None and rasters:
            band_names = rasters[0].band_names
        band_names = tuple(band_names) if band_names is not None else ()

        for index, raster in enumerate(rasters):
            if not isinstance(raster, Raster):
                raise InputSchemaError(f"Collection item {index} is not a Raster")
            if set(raster.band_names) != set(band_names):
                raise InputSchemaError(
                    f"Scene {raster.metadata.scene_id or index} has bands {list(raster.band_names)}, "
                    f"expected {list(band_names)}; reconcile band names before building the collection"
                )

        if grid is None and rasters:
            grid = rasters[0].grid

        self._rasters = rasters
        self._band_names = band_names
        self._grid = grid
        self._collection_id = collection_id

    def __len__(self) -> int:
        return len(self._rasters)

    def __getitem__(self, index):
        if isinstance(index, slice):
            return self._derive(self._rasters[index])
        return self._rasters[index]

    def __iter__(self) -> Iterator[Raster]:
        return iter(self._rasters)

    def __repr__(self) -> str:
        return (f"RasterCollection(id={self._collection_id!r}, size={len(self)}, "
                f"bands={list(self._band_names)})")

    @property
    def band_names(self) -> Tuple[str, ...]:
        return self._band_names

    @property
    def grid(self) -> Optional[GridSpec]:
        return self._grid

    @property
    def collection_id(self) -> Optional[str]:
        return self._collection_id

    @property
    def is_empty(self) -> bool:
        return len(self._rasters) == 0

    @property
    def nbytes(self) -> int:
        return sum(raster.nbytes for raster in self._rasters)

    def _derive(self, rasters: Iterable[Raster]) -> 'RasterCollection':
        return RasterCollection(rasters, self._band_names, self._grid, self._collection_id)

    def timestamps(self) -> List[Optional[pd.Timestamp]]:
        return [raster.metadata.acquired for raster in self._rasters]

    def first(self) -> Optional[Raster]:
        return self._rasters[0] if self._rasters else None

    def at(self, timestamp: Any) -> Raster:
        """Raster acquired at the given timestamp."""
        target = to_timestamp(timestamp)
        for raster in self._rasters:
            if raster.metadata.acquired == target:
                return raster
        raise KeyError(f"No scene acquired at {target}")

    def sort(self, key: str = 'acquired', ascending: bool = True) -> 'RasterCollection':
        """
        Sort scenes by a metadata field; scenes missing the field go last.

        Sorting is stable, so scenes with equal keys keep their relative order.
        """
        present = [r for r in self._rasters if r.metadata.get(key) is not None]
        missing = [r for r in self._rasters if r.metadata.get(key) is None]
        present = sorted(present, key=lambda r: r.metadata.get(key), reverse=not ascending)
        return self._derive(present + missing)

    def filter(self, predicate: Callable[[Raster], bool]) -> 'RasterCollection':
        """New collection with the scenes accepted by predicate; originals untouched."""
        return self._derive([raster for raster in self._rasters if predicate(raster)])

    def map(self, func: Callable[[Raster], Raster]) -> 'RasterCollection':
        """
        Apply a pure per-scene function.

        The output schema of an empty collection is derived by applying func to
        an all-no-data template on the declared grid.
        """
        mapped = [func(raster) for raster in self._rasters]
        if mapped:
            return RasterCollection(mapped, collection_id=self._collection_id)
        if self._grid is None or not self._band_names:
            return RasterCollection([], self._band_names, self._grid, self._collection_id)
        template = func(Raster.empty(self._grid, self._band_names))
        return RasterCollection([], template.band_names, template.grid, self._collection_id)
