"""
Vector zones for zonal statistics and point sampling.

A ZoneCollection wraps a GeoDataFrame of polygon or point geometries with an
attribute record per zone. Geometries are validated once at construction and
the collection is then reused read-only across reducer calls.

Author: Diego Bengochea
"""

from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import geopandas as gpd
import pandas as pd
from shapely import wkt
from shapely.errors import ShapelyError
from shapely.geometry import box, shape
from shapely.geometry.base import BaseGeometry
from shapely.validation import explain_validity

from shared_utils import get_logger, validate_file_exists

from .errors import GeometryError, InputSchemaError

POLYGONAL_TYPES = ('Polygon', 'MultiPolygon')
POINT_TYPES = ('Point', 'MultiPoint')


def validate_geometry(geometry: BaseGeometry, label: str = 'geometry') -> BaseGeometry:
    """
    Reject empty, invalid or zero-area geometries.

    Args:
        geometry: Shapely geometry to validate
        label: Description used in error messages

    Returns:
        The geometry, unchanged

    Raises:
        GeometryError: If the geometry cannot be used as a zone or bounds
    """
    if geometry is None or geometry.is_empty:
        raise GeometryError(f"{label} is empty")

    geom_type = geometry.geom_type
    if geom_type not in POLYGONAL_TYPES + POINT_TYPES:
        raise GeometryError(f"{label} has unsupported type {geom_type}")

    if not geometry.is_valid:
        raise GeometryError(f"{label} is invalid: {explain_validity(geometry)}")

    if geom_type in POLYGONAL_TYPES and geometry.area <= 0:
        raise GeometryError(f"{label} has zero area")

    return geometry


def geometry_from_config(value: Any, label: str = 'bounds') -> BaseGeometry:
    """
    Build a validated geometry from a configuration value.

    Accepts [minx, miny, maxx, maxy] lists, GeoJSON-like mappings, WKT strings
    and shapely geometries.
    """
    if isinstance(value, BaseGeometry):
        geometry = value
    elif isinstance(value, Mapping):
        try:
            geometry = shape(value)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise GeometryError(f"{label} is not a valid GeoJSON geometry: {e}")
    elif isinstance(value, str):
        try:
            geometry = wkt.loads(value)
        except ShapelyError as e:
            raise GeometryError(f"{label} is not a valid WKT geometry: {e}")
    elif isinstance(value, (list, tuple)) and len(value) == 4:
        minx, miny, maxx, maxy = (float(v) for v in value)
        if minx >= maxx or miny >= maxy:
            raise GeometryError(f"{label} {list(value)} has zero or negative extent")
        geometry = box(minx, miny, maxx, maxy)
    else:
        raise GeometryError(f"{label} must be a bounding box, a GeoJSON mapping or a WKT string")
    return validate_geometry(geometry, label)


class ZoneCollection:
    """
    Ordered, validated set of vector zones sharing one attribute schema.

    Row order is the zone order; every reducer output keeps it.
    """

    def __init__(self, frame: gpd.GeoDataFrame):
        """
        Initialize the collection from a GeoDataFrame.

        Args:
            frame: GeoDataFrame with a CRS and polygon or point geometries
        """
        if not isinstance(frame, gpd.GeoDataFrame):
            raise InputSchemaError("Zones must be provided as a GeoDataFrame")
        if frame.crs is None:
            raise GeometryError("Zones have no coordinate reference system")

        for position, geometry in enumerate(frame.geometry):
            validate_geometry(geometry, f"zone {position}")

        self._frame = frame.reset_index(drop=True).copy()
        self.logger = get_logger('zones')

    @classmethod
    def from_file(cls, path: Union[str, Path], layer: Optional[str] = None) -> 'ZoneCollection':
        """Load zones from any vector format geopandas can read."""
        path = validate_file_exists(path, "Zones file")
        frame = gpd.read_file(path, layer=layer) if layer else gpd.read_file(path)
        zones = cls(frame)
        zones.logger.info(f"Loaded {len(zones)} zones from {path}")
        return zones

    @classmethod
    def from_records(cls, geometries: Sequence[BaseGeometry], records: Optional[Sequence[Mapping[str, Any]]] = None,
                     crs: Any = 'EPSG:4326') -> 'ZoneCollection':
        """Build zones from geometries and matching attribute records."""
        records = list(records) if records is not None else [{} for _ in geometries]
        if len(records) != len(geometries):
            raise InputSchemaError(f"Got {len(geometries)} geometries but {len(records)} attribute records")
        frame = gpd.GeoDataFrame(pd.DataFrame(records), geometry=list(geometries), crs=crs)
        return cls(frame)

    def __len__(self) -> int:
        return len(self._frame)

    def __repr__(self) -> str:
        return f"ZoneCollection(size={len(self)}, fields={self.fields}, crs={self.crs})"

    @property
    def crs(self):
        return self._frame.crs

    @property
    def fields(self) -> List[str]:
        geometry_name = self._frame.geometry.name
        return [column for column in self._frame.columns if column != geometry_name]

    @property
    def geometries(self) -> List[BaseGeometry]:
        return list(self._frame.geometry)

    @property
    def is_points(self) -> bool:
        return bool(len(self)) and all(g.geom_type in POINT_TYPES for g in self._frame.geometry)

    def attributes(self) -> pd.DataFrame:
        """Attribute table without geometries, one row per zone in zone order."""
        return pd.DataFrame(self._frame[self.fields]).reset_index(drop=True)

    def to_crs(self, crs: Any) -> 'ZoneCollection':
        if self._frame.crs == crs:
            return self
        return ZoneCollection(self._frame.to_crs(crs))

    def to_frame(self) -> gpd.GeoDataFrame:
        return self._frame.copy()

    def iter_zones(self) -> Iterable[Tuple[int, BaseGeometry, Mapping[str, Any]]]:
        """Yield (position, geometry, attribute record) in zone order."""
        attributes = self.attributes()
        for position, geometry in enumerate(self._frame.geometry):
            yield position, geometry, attributes.iloc[position].to_dict()

    def filter_in(self, field: str, values: Iterable[Any]) -> 'ZoneCollection':
        """Zones whose field value is in values (order preserved)."""
        if field not in self.fields:
            raise InputSchemaError(f"Field '{field}' not found in zones with fields {self.fields}")
        values = list(values)
        subset = self._frame[self._frame[field].isin(values)]
        if subset.empty:
            self.logger.warning(f"No zones matched {field} in {values}")
        return ZoneCollection(subset)

    def filter_equals(self, field: str, value: Any) -> 'ZoneCollection':
        return self.filter_in(field, [value])
