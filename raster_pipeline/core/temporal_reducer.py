"""
Temporal Reducer

Aggregates a RasterCollection along its time axis into a single Raster, one
output band per input band, computed independently at each pixel over the
valid observations of that pixel only. Pixels without any valid observation
are no-data, and an empty collection reduces to an all-no-data raster on the
declared grid.

The per-band (y, x, time) stack is wrapped in an xarray DataArray and reduced
with ``xarray.apply_ufunc``. When a chunk size is given the stack is chunked
spatially with dask while the time axis stays in one chunk, so exact reducers
(median, percentiles) always see every sample of a pixel.

The same Reducer objects are used by the zonal statistics module to aggregate
the pixel sets of zones.

Author: Diego Bengochea
"""

import re
import warnings
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import numpy as np
import xarray as xr

from shared_utils import get_logger

from .collection_filter import calendar_months, date_range, filter_collection
from .errors import InputSchemaError, report_empty_result
from .raster import GridSpec, Raster, RasterCollection, SceneMetadata

logger = get_logger('temporal_reducer')

REDUCER_KINDS = ('mean', 'median', 'min', 'max', 'sum', 'count', 'stdDev', 'percentile')

_ALIASES = {
    'mean': 'mean', 'avg': 'mean', 'average': 'mean',
    'median': 'median',
    'min': 'min', 'minimum': 'min',
    'max': 'max', 'maximum': 'max',
    'sum': 'sum', 'total': 'sum',
    'count': 'count',
    'stddev': 'stdDev', 'std_dev': 'stdDev', 'std': 'stdDev',
}

_PERCENTILE_PATTERN = re.compile(r'^(?:p|percentile)[_(]?\s*(\d+(?:\.\d+)?)\s*\)?$', re.IGNORECASE)


@dataclass(frozen=True)
class Reducer:
    """
    Named order-independent aggregation over a 1-D set of samples.

    Attributes:
        kind: One of REDUCER_KINDS
        percentile: Percentile in [0, 100] for kind 'percentile'
    """
    kind: str
    percentile: Optional[float] = None

    def __post_init__(self):
        if self.kind not in REDUCER_KINDS:
            raise InputSchemaError(f"Unknown reducer kind '{self.kind}', expected one of {REDUCER_KINDS}")
        if self.kind == 'percentile':
            if self.percentile is None or not 0 <= float(self.percentile) <= 100:
                raise InputSchemaError(f"Percentile must be in [0, 100], got {self.percentile}")
            object.__setattr__(self, 'percentile', float(self.percentile))
        elif self.percentile is not None:
            raise InputSchemaError(f"Reducer '{self.kind}' does not take a percentile")

    @classmethod
    def parse(cls, value: Union[str, 'Reducer', Mapping[str, Any]]) -> 'Reducer':
        """
        Build a reducer from a name such as 'median', 'stdDev', 'p98' or 'percentile98'.

        Mappings of the form {'kind': 'percentile', 'percentile': 90} are accepted too.
        """
        if isinstance(value, Reducer):
            return value
        if isinstance(value, Mapping):
            kind = str(value.get('kind'))
            return cls(_ALIASES.get(kind.lower(), kind), value.get('percentile'))
        if not isinstance(value, str):
            raise InputSchemaError(f"Cannot interpret {value!r} as a reducer")

        text = value.strip()
        kind = _ALIASES.get(text.lower())
        if kind:
            return cls(kind)
        match = _PERCENTILE_PATTERN.match(text)
        if match:
            return cls('percentile', float(match.group(1)))
        raise InputSchemaError(f"Unknown reducer '{value}'")

    @property
    def name(self) -> str:
        """Column/band suffix, e.g. 'median' or 'p98'."""
        if self.kind == 'percentile':
            return f"p{self.percentile:g}"
        return self.kind

    def reduce_stack(self, stack: np.ndarray, axis: int = -1) -> np.ndarray:
        """
        Reduce along axis ignoring NaN samples.

        Args:
            stack: Float array with NaN marking no-data samples
            axis: Axis to reduce

        Returns:
            Float64 array, NaN where no valid sample exists
        """
        stack = np.asarray(stack, dtype=np.float64)
        valid = ~np.isnan(stack)
        count = valid.sum(axis=axis)
        result_shape = count.shape

        if stack.shape[axis] == 0:
            return np.full(result_shape, np.nan)

        with warnings.catch_warnings():
            # All-NaN slices are resolved below through count
            warnings.simplefilter('ignore', RuntimeWarning)
            with np.errstate(all='ignore'):
                if self.kind == 'mean':
                    result = np.nansum(stack, axis=axis) / count
                elif self.kind == 'median':
                    result = np.nanmedian(stack, axis=axis)
                elif self.kind == 'min':
                    result = np.nanmin(stack, axis=axis)
                elif self.kind == 'max':
                    result = np.nanmax(stack, axis=axis)
                elif self.kind == 'sum':
                    result = np.nansum(stack, axis=axis)
                elif self.kind == 'count':
                    result = count.astype(np.float64)
                elif self.kind == 'stdDev':
                    result = np.nanstd(stack, axis=axis, ddof=0)
                else:
                    result = np.nanpercentile(stack, self.percentile, axis=axis, method='linear')

        result = np.asarray(result, dtype=np.float64)
        return np.where(count > 0, result, np.nan)

    def reduce_samples(self, samples: Iterable[float]) -> float:
        """Reduce a flat set of samples (NaN ignored) to a scalar, NaN when empty."""
        values = np.asarray(list(samples) if not isinstance(samples, np.ndarray) else samples, dtype=np.float64)
        return float(self.reduce_stack(values.reshape(-1), axis=0))


def parse_reducers(values: Union[str, Reducer, Iterable[Any]]) -> List[Reducer]:
    if isinstance(values, (str, Reducer, Mapping)):
        return [Reducer.parse(values)]
    return [Reducer.parse(value) for value in values]


def _check_alignment(collection: RasterCollection, grid: GridSpec) -> None:
    for index, raster in enumerate(collection):
        if not raster.grid.aligned_with(grid):
            raise InputSchemaError(
                f"Scene {raster.metadata.scene_id or index} is not aligned with the reduction grid; "
                f"resample scenes to a common grid first"
            )


def _collection_metadata(collection: RasterCollection, reducer: Reducer) -> SceneMetadata:
    timestamps = [t for t in collection.timestamps() if t is not None]
    properties: Dict[str, Any] = {'reducer': reducer.name, 'scene_count': len(collection)}
    if timestamps:
        properties['first_acquired'] = min(timestamps).isoformat()
        properties['last_acquired'] = max(timestamps).isoformat()
    scene_id = f"{collection.collection_id}_{reducer.name}" if collection.collection_id else reducer.name
    return SceneMetadata(scene_id=scene_id, acquired=min(timestamps) if timestamps else None,
                         properties=properties)


def _reduce_band_stack(stack: np.ndarray, reducer: Reducer, chunk_size: Optional[int]) -> np.ndarray:
    array = xr.DataArray(stack, dims=('y', 'x', 'time'))
    if chunk_size:
        array = array.chunk({'y': chunk_size, 'x': chunk_size, 'time': -1})
    reduced = xr.apply_ufunc(
        reducer.reduce_stack,
        array,
        input_core_dims=[['time']],
        dask='parallelized',
        output_dtypes=[np.float64],
    )
    return np.asarray(reduced.values, dtype=np.float64)


def reduce_collection(collection: RasterCollection, reducer: Union[str, Reducer],
                      chunk_size: Optional[int] = None, grid: Optional[GridSpec] = None,
                      suffix: bool = False) -> Raster:
    """
    Reduce a collection over time, band by band.

    Args:
        collection: Scenes on a common grid
        reducer: Reducer or reducer name
        chunk_size: Spatial dask chunk size; None computes in memory
        grid: Output grid override, required to reduce an empty collection
            without a declared grid
        suffix: Append the reducer name to output band names ('ndvi_median')

    Returns:
        Raster with one float64 band per input band

    Raises:
        InputSchemaError: If scenes are not aligned with the output grid, or an
            empty collection has no grid or band schema to reduce onto
    """
    reducer = Reducer.parse(reducer)
    band_names = list(collection.band_names)
    out_names = [f"{name}_{reducer.name}" if suffix else name for name in band_names]
    target_grid = grid or collection.grid

    if not band_names:
        raise InputSchemaError("Cannot reduce a collection without a band schema")
    if target_grid is None:
        raise InputSchemaError("Cannot reduce an empty collection without a declared grid")

    metadata = _collection_metadata(collection, reducer)

    if collection.is_empty:
        report_empty_result(logger, f"reducing empty collection {collection.collection_id or ''} "
                                    f"with {reducer.name}; output is all no-data")
        return Raster.empty(target_grid, out_names, metadata=metadata)

    _check_alignment(collection, target_grid)
    logger.debug(f"Reducing {len(collection)} scenes x {len(band_names)} bands with {reducer.name}"
                 + (f" (chunks of {chunk_size} px)" if chunk_size else ""))

    bands = {}
    for name, out_name in zip(band_names, out_names):
        stack = np.stack([raster.filled(name) for raster in collection], axis=-1)
        reduced = _reduce_band_stack(stack, reducer, chunk_size)
        bands[out_name] = np.ma.masked_invalid(reduced)

    result = Raster(bands, target_grid, metadata=metadata)
    if result.valid_count() == 0:
        report_empty_result(logger, f"{reducer.name} composite of {collection.collection_id or 'collection'} "
                                    f"has no valid pixels")
    return result


def reduce_bands(raster: Raster, reducer: Union[str, Reducer], bands: Optional[Iterable[str]] = None,
                 name: Optional[str] = None) -> Raster:
    """
    Reduce across bands at each pixel, e.g. the annual mean of seasonal bands.

    Args:
        raster: Input raster
        reducer: Reducer or reducer name
        bands: Bands to reduce (default: all)
        name: Output band name (default: the reducer name)

    Returns:
        Single-band float64 Raster
    """
    reducer = Reducer.parse(reducer)
    bands = list(bands) if bands is not None else list(raster.band_names)
    raster.require_bands(bands)
    stack = np.stack([raster.filled(band) for band in bands], axis=-1)
    reduced = reducer.reduce_stack(stack)
    return Raster({name or reducer.name: np.ma.masked_invalid(reduced)}, raster.grid, metadata=raster.metadata)


def period_predicate(period: Any):
    """Date range or calendar months predicate from a period definition."""
    if isinstance(period, Mapping):
        if 'months' in period:
            return calendar_months(period['months'])
        if 'start' in period and 'end' in period:
            return date_range(period['start'], period['end'])
    elif isinstance(period, (list, tuple)) and len(period) == 2:
        return date_range(*period)
    raise InputSchemaError(f"Period must define start/end or months, got {period!r}")


def period_composite(collection: RasterCollection, periods: Mapping[str, Any],
                     reducer: Union[str, Reducer], band_template: str = '{band}_{period}',
                     chunk_size: Optional[int] = None, grid: Optional[GridSpec] = None) -> Raster:
    """
    One band per (band x period), e.g. seasonal NDVI maxima or decadal MNDWI percentiles.

    Args:
        collection: Source scenes
        periods: Mapping of period name to {'start', 'end'} or {'months': [...]}
        reducer: Reducer applied within each period
        band_template: Output band name pattern using {band}, {period} and {reducer}
        chunk_size: Spatial dask chunk size
        grid: Output grid override

    Returns:
        Multi-band Raster; periods without scenes yield no-data bands
    """
    reducer = Reducer.parse(reducer)
    if not periods:
        raise InputSchemaError("period_composite needs at least one period")

    composite = None
    for period_name, period in periods.items():
        subset = filter_collection(collection, period_predicate(period))
        reduced = reduce_collection(subset, reducer, chunk_size=chunk_size, grid=grid)
        renamed = reduced.rename({
            band: band_template.format(band=band, period=period_name, reducer=reducer.name)
            for band in reduced.band_names
        })
        logger.info(f"Period {period_name}: {len(subset)} scenes reduced with {reducer.name}")
        composite = renamed if composite is None else composite.add_bands(renamed)

    return composite.with_metadata(_collection_metadata(collection, reducer).with_properties(
        periods=','.join(periods)))
