"""
Collection filtering, schema reconciliation and merging.

Predicates are small callables over scenes (anything exposing ``metadata``,
``crs`` and ``bounds``, so catalog headers can be filtered before pixels are
read). Combining predicates is conjunctive. Filtering never mutates the input
collection and an empty result is a valid collection that keeps the band
schema and grid of its source.

Author: Diego Bengochea
"""

from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence

from rasterio.crs import CRS
from rasterio.warp import transform_geom
from shapely.geometry import box, mapping, shape
from shapely.geometry.base import BaseGeometry

from shared_utils import get_logger

from .errors import InputSchemaError, report_empty_result
from .raster import Raster, RasterCollection, to_timestamp
from .zones import validate_geometry

logger = get_logger('collection_filter')


class ScenePredicate:
    """Named boolean test over a scene; combine with ``&``."""

    def __init__(self, name: str, test: Callable[[Any], bool]):
        self.name = name
        self._test = test

    def __call__(self, scene: Any) -> bool:
        return bool(self._test(scene))

    def __and__(self, other: 'ScenePredicate') -> 'ScenePredicate':
        return all_of(self, other)

    def __repr__(self) -> str:
        return f"ScenePredicate({self.name})"


def all_of(*predicates: ScenePredicate) -> ScenePredicate:
    """Conjunction of predicates; an empty conjunction accepts every scene."""
    name = ' AND '.join(p.name for p in predicates) or 'always'
    return ScenePredicate(name, lambda scene: all(p(scene) for p in predicates))


def intersects_bounds(geometry: BaseGeometry, crs: Any = 'EPSG:4326') -> ScenePredicate:
    """
    Scene footprint intersects the given geometry.

    Args:
        geometry: Region of interest (polygon or point)
        crs: CRS of the geometry

    Returns:
        ScenePredicate evaluated in each scene's own CRS
    """
    validate_geometry(geometry, 'filter bounds')
    source_crs = CRS.from_user_input(crs)
    geojson = mapping(geometry)

    def test(scene):
        footprint = box(*scene.bounds)
        if scene.crs == source_crs:
            region = geometry
        else:
            region = shape(transform_geom(source_crs, scene.crs, geojson))
        return footprint.intersects(region)

    return ScenePredicate(f"intersects({geometry.geom_type})", test)


def date_range(start: Any, end: Any) -> ScenePredicate:
    """Acquisition timestamp within [start, end); scenes without a timestamp fail."""
    start_ts, end_ts = to_timestamp(start), to_timestamp(end)
    if start_ts is None or end_ts is None or start_ts >= end_ts:
        raise InputSchemaError(f"Invalid date range [{start}, {end})")

    def test(scene):
        acquired = scene.metadata.acquired
        return acquired is not None and start_ts <= acquired < end_ts

    return ScenePredicate(f"date in [{start_ts.date()}, {end_ts.date()})", test)


def calendar_months(months: Iterable[int]) -> ScenePredicate:
    """Acquisition month (1-12) is one of months, in any year."""
    months = sorted({int(m) for m in months})
    invalid = [m for m in months if not 1 <= m <= 12]
    if invalid or not months:
        raise InputSchemaError(f"Months must be in 1..12, got {invalid or months}")

    def test(scene):
        acquired = scene.metadata.acquired
        return acquired is not None and acquired.month in months

    return ScenePredicate(f"month in {months}", test)


def metadata_less_than(name: str, threshold: float) -> ScenePredicate:
    """Numeric metadata field strictly below threshold (e.g. cloud_percentage < 20)."""
    def test(scene):
        value = scene.metadata.get(name)
        return value is not None and float(value) < threshold

    return ScenePredicate(f"{name} < {threshold}", test)


def metadata_equals(name: str, value: Any) -> ScenePredicate:
    return ScenePredicate(f"{name} == {value!r}", lambda scene: scene.metadata.get(name) == value)


def metadata_in(name: str, values: Iterable[Any]) -> ScenePredicate:
    """Categorical membership of a metadata field in a set of values."""
    allowed = set(values)
    return ScenePredicate(f"{name} in {sorted(map(str, allowed))}",
                          lambda scene: scene.metadata.get(name) in allowed)


def metadata_contains(name: str, value: Any) -> ScenePredicate:
    """List-valued metadata field contains value (e.g. polarisations contain 'VH')."""
    def test(scene):
        values = scene.metadata.get(name)
        if values is None:
            return False
        if isinstance(values, str):
            values = [v.strip() for v in values.split(',')]
        return value in values

    return ScenePredicate(f"{value!r} in {name}", test)


def filter_collection(collection: RasterCollection, *predicates: ScenePredicate) -> RasterCollection:
    """
    Select the scenes accepted by every predicate.

    Args:
        collection: Source collection, left untouched
        *predicates: Predicates combined with AND

    Returns:
        New RasterCollection, possibly empty, with the source schema and grid
    """
    predicate = all_of(*predicates)
    result = collection.filter(predicate)
    logger.debug(f"Filter [{predicate.name}] kept {len(result)}/{len(collection)} scenes "
                 f"of {collection.collection_id or 'collection'}")
    if result.is_empty and not collection.is_empty:
        report_empty_result(logger, f"no scene of {collection.collection_id or 'collection'} "
                                    f"passed [{predicate.name}]")
    return result


def sort_and_first(collection: RasterCollection, key: str = 'cloud_percentage') -> Optional[Raster]:
    """Scene with the lowest value of key (least cloudy scene by default)."""
    return collection.sort(key).first()


def rename_bands(raster: Raster, mapping: Mapping[str, str], keep_only_mapped: bool = True) -> Raster:
    """
    Rename a scene's bands to a common naming convention.

    Args:
        raster: Input scene
        mapping: Source band name -> common band name
        keep_only_mapped: Drop bands absent from mapping

    Returns:
        Raster with renamed (and optionally selected) bands
    """
    raster.require_bands(mapping)
    if keep_only_mapped:
        return raster.select(list(mapping), [mapping[name] for name in mapping])
    return raster.rename(mapping)


def reconcile_schema(collection: RasterCollection, mapping: Mapping[str, str],
                     keep_only_mapped: bool = True) -> RasterCollection:
    """Rename bands of every scene in a collection; the empty case keeps a renamed schema."""
    if collection.is_empty:
        missing = [name for name in mapping if name not in collection.band_names]
        if missing:
            raise InputSchemaError(f"Bands {missing} not found in collection schema "
                                   f"{list(collection.band_names)}")
        if keep_only_mapped:
            names = [mapping[name] for name in mapping]
        else:
            names = [mapping.get(name, name) for name in collection.band_names]
        return RasterCollection([], names, collection.grid, collection.collection_id)
    return collection.map(lambda raster: rename_bands(raster, mapping, keep_only_mapped))


def merge_collections(*collections: RasterCollection, collection_id: Optional[str] = None) -> RasterCollection:
    """
    Splice collections into one series sorted by acquisition timestamp.

    Band schemas must be identical as sets once reconciled; scenes of later
    collections are reordered to the band order of the first one.

    Raises:
        InputSchemaError: If the band schemas differ
    """
    if not collections:
        raise InputSchemaError("merge_collections needs at least one collection")

    reference = collections[0].band_names
    for collection in collections[1:]:
        if set(collection.band_names) != set(reference):
            raise InputSchemaError(
                f"Cannot merge {collection.collection_id or 'collection'} with bands "
                f"{list(collection.band_names)} into schema {list(reference)}; "
                f"reconcile band names first"
            )

    rasters: List[Raster] = []
    for collection in collections:
        for raster in collection:
            rasters.append(raster if raster.band_names == reference else raster.select(reference))

    grid = next((c.grid for c in collections if c.grid is not None), None)
    merged_id = collection_id or '+'.join(c.collection_id or '?' for c in collections)
    merged = RasterCollection(rasters, reference, grid, merged_id).sort('acquired')
    logger.info(f"Merged {len(collections)} collections into {len(merged)} scenes ({merged_id})")
    return merged


def build_predicates(start: Any = None, end: Any = None, bounds: Optional[BaseGeometry] = None,
                     bounds_crs: Any = 'EPSG:4326', max_cloud_percentage: Optional[float] = None,
                     months: Optional[Sequence[int]] = None,
                     properties: Optional[Mapping[str, Any]] = None) -> List[ScenePredicate]:
    """
    Translate plain filter settings into predicates.

    ``properties`` maps a metadata field to either a list of accepted values
    (membership) or a ``{'contains': value}`` mapping for list-valued fields.
    """
    predicates: List[ScenePredicate] = []
    if start is not None and end is not None:
        predicates.append(date_range(start, end))
    if bounds is not None:
        predicates.append(intersects_bounds(bounds, bounds_crs))
    if max_cloud_percentage is not None:
        predicates.append(metadata_less_than('cloud_percentage', float(max_cloud_percentage)))
    if months:
        predicates.append(calendar_months(months))
    for name, rule in (properties or {}).items():
        if isinstance(rule, Mapping) and 'contains' in rule:
            predicates.append(metadata_contains(name, rule['contains']))
        elif isinstance(rule, (list, tuple, set)):
            predicates.append(metadata_in(name, rule))
        else:
            predicates.append(metadata_equals(name, rule))
    return predicates
