"""
Raster catalog and tile cache.

A RasterCatalog resolves a collection identifier, an optional band selection
and filter predicates into a RasterCollection. Predicates run against scene
headers (metadata, CRS and bounds) before any pixel is read.

Scene reads go through a TileCache keyed by source identifier, band list and
resampling parameters. Published scenes never change, so cached entries are
only evicted for space, least recently used first, by byte footprint.

Author: Diego Bengochea
"""

import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from shared_utils import find_files, get_logger

from .collection_filter import ScenePredicate, all_of
from .errors import ExternalServiceError, InputSchemaError, PipelineCancelled, report_empty_result
from .raster import GridSpec, Raster, RasterCollection
from .raster_io import SceneHeader, read_header, read_raster, resample_raster

logger = get_logger('catalog')


class TileCache:
    """
    Thread-safe LRU cache of rasters bounded by total byte footprint.

    Entries larger than the whole budget are never stored.
    """

    def __init__(self, max_bytes: int = 512 * 1024 ** 2):
        if max_bytes <= 0:
            raise ValueError(f"Cache size must be positive, got {max_bytes}")
        self.max_bytes = int(max_bytes)
        self._entries: 'OrderedDict[Hashable, Raster]' = OrderedDict()
        self._bytes = 0
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries

    @property
    def current_bytes(self) -> int:
        with self._lock:
            return self._bytes

    def get(self, key: Hashable) -> Optional[Raster]:
        with self._lock:
            raster = self._entries.get(key)
            if raster is None:
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return raster

    def put(self, key: Hashable, raster: Raster) -> None:
        size = raster.nbytes
        with self._lock:
            if key in self._entries:
                self._bytes -= self._entries.pop(key).nbytes
            if size > self.max_bytes:
                logger.debug(f"Not caching {key}: {size} bytes exceeds cache budget {self.max_bytes}")
                return
            self._entries[key] = raster
            self._bytes += size
            while self._bytes > self.max_bytes:
                evicted_key, evicted = self._entries.popitem(last=False)
                self._bytes -= evicted.nbytes
                logger.debug(f"Evicted {evicted_key} from tile cache")

    def get_or_load(self, key: Hashable, loader: Callable[[], Raster]) -> Raster:
        """Cached raster for key, loading and storing it on a miss."""
        raster = self.get(key)
        if raster is None:
            raster = loader()
            self.put(key, raster)
        return raster

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._bytes = 0

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {'entries': len(self._entries), 'bytes': self._bytes,
                    'hits': self.hits, 'misses': self.misses}


def cache_key(source: str, bands: Sequence[str], grid: Optional[GridSpec] = None,
              resampling: str = 'nearest', band_resampling: Optional[Mapping[str, str]] = None) -> Tuple:
    """Content address of a scene read: source, band list and resampling parameters."""
    if grid is None:
        return (str(source), tuple(bands), None, None)
    grid_key = (grid.crs.to_string(), tuple(grid.transform)[:6], grid.width, grid.height)
    methods = tuple((band, (band_resampling or {}).get(band, resampling)) for band in bands)
    return (str(source), tuple(bands), grid_key, methods)


class RasterCatalog(ABC):
    """Read-only catalog of raster collections."""

    def __init__(self, cache: Optional[TileCache] = None):
        self.cache = cache

    @abstractmethod
    def list_scenes(self, collection_id: str) -> List[SceneHeader]:
        """Headers of every scene in a collection."""

    @abstractmethod
    def read_scene(self, header: SceneHeader, bands: Sequence[str]) -> Raster:
        """Pixels of the selected bands of one scene."""

    def _read(self, header: SceneHeader, bands: Sequence[str], grid: Optional[GridSpec],
              resampling: str, band_resampling: Optional[Mapping[str, str]] = None) -> Raster:
        def loader():
            raster = self.read_scene(header, bands)
            if grid is None:
                return raster
            return resample_raster(raster, grid, resampling, band_resampling)

        if self.cache is None:
            return loader()
        key = cache_key(str(header.path), bands, grid, resampling, band_resampling)
        return self.cache.get_or_load(key, loader)

    def load(
        self,
        collection_id: str,
        bands: Optional[Iterable[str]] = None,
        predicates: Iterable[ScenePredicate] = (),
        grid: Optional[GridSpec] = None,
        resampling: str = 'nearest',
        band_resampling: Optional[Mapping[str, str]] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> RasterCollection:
        """
        Load the scenes of a collection that pass every predicate.

        Args:
            collection_id: Collection identifier
            bands: Band selection (default: every band of the collection)
            predicates: Scene predicates evaluated on headers, combined with AND
            grid: Optional target grid every scene is resampled to
            resampling: Resampling method used with grid
            band_resampling: Per-band methods overriding resampling (nearest for QA bands)
            cancel_event: Checked between scene reads

        Returns:
            RasterCollection sorted by acquisition timestamp

        Raises:
            InputSchemaError: If a scene lacks a requested band
            ExternalServiceError: If the collection or a scene cannot be read
            PipelineCancelled: If cancel_event is set during loading
        """
        headers = self.list_scenes(collection_id)
        if bands is None:
            bands = headers[0].band_names if headers else ()
        bands = tuple(bands)

        for header in headers:
            missing = [band for band in bands if band not in header.band_names]
            if missing:
                raise InputSchemaError(f"Scene {header.path.name} of {collection_id} lacks bands {missing}")

        predicate = all_of(*predicates)
        selected = [header for header in headers if predicate(header)]
        logger.info(f"{collection_id}: {len(selected)}/{len(headers)} scenes pass [{predicate.name}]")

        rasters = []
        for header in selected:
            if cancel_event is not None and cancel_event.is_set():
                raise PipelineCancelled(f"Loading of {collection_id} cancelled after {len(rasters)} scenes")
            rasters.append(self._read(header, bands, grid, resampling, band_resampling))

        declared_grid = grid or (selected[0].grid if selected else headers[0].grid if headers else None)
        collection = RasterCollection(rasters, bands, declared_grid, collection_id).sort('acquired')
        if collection.is_empty:
            report_empty_result(logger, f"no scene of {collection_id} matched the filters")
        return collection


class LocalRasterCatalog(RasterCatalog):
    """
    Catalog of GeoTIFF scenes stored as ``<root>/<collection_id>/*.tif``.

    Scene metadata comes from the dataset tags written by ``write_raster``.
    """

    def __init__(self, root: Union[str, Path], cache: Optional[TileCache] = None):
        super().__init__(cache)
        self.root = Path(root)
        self._headers: Dict[str, List[SceneHeader]] = {}
        self._lock = threading.Lock()

    def collections(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(path.name for path in self.root.iterdir() if path.is_dir())

    def list_scenes(self, collection_id: str) -> List[SceneHeader]:
        with self._lock:
            if collection_id in self._headers:
                return list(self._headers[collection_id])

        directory = self.root / collection_id
        if not directory.is_dir():
            raise ExternalServiceError('catalog.list_scenes', {'collection_id': collection_id, 'root': str(self.root)},
                                       'collection not found')

        files = find_files(directory, '*', recursive=False, file_types=['.tif', '.tiff'])
        headers = [read_header(path) for path in sorted(files)]
        logger.debug(f"Indexed {len(headers)} scenes in {directory}")

        with self._lock:
            self._headers[collection_id] = headers
        return list(headers)

    def read_scene(self, header: SceneHeader, bands: Sequence[str]) -> Raster:
        return read_raster(header.path, bands)


def describe_collection(headers: Iterable[SceneHeader]) -> Dict[str, Any]:
    """Scene count, time span and band schema of a list of headers."""
    headers = list(headers)
    timestamps = sorted(h.metadata.acquired for h in headers if h.metadata.acquired is not None)
    return {
        'scenes': len(headers),
        'first_acquired': timestamps[0].isoformat() if timestamps else None,
        'last_acquired': timestamps[-1].isoformat() if timestamps else None,
        'bands': list(headers[0].band_names) if headers else [],
    }
