"""
Configuration-driven raster pipelines.

CompositePipeline chains the components end to end:

    catalog load (filter by space, time and quality)
      -> per-scene cloud masking, calibration, band renaming and indices
      -> multi-sensor merge
      -> temporal composite per period
      -> threshold mask
      -> zonal statistics tables
      -> GeoTIFF and CSV outputs

ClassificationPipeline samples a composite inside labelled training regions,
trains the configured classifier, classifies the composite and writes the
classification raster and accuracy tables.

All configuration values are validated when a pipeline is constructed
(PipelineConfig.from_dict). Long scene scans check a cancellation event
between scenes.

Author: Diego Bengochea
"""

import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd
from rasterio.crs import CRS
from rasterio.enums import Resampling
from rasterio.errors import CRSError
from shapely.geometry.base import BaseGeometry
from tqdm import tqdm

from shared_utils import (
    get_logger, load_config, setup_logging, log_pipeline_start, log_pipeline_end, log_section,
    validate_config, validate_directory_exists, validate_file_exists
)
from shared_utils.central_data_paths_constants import (
    ACCURACY_DIR, CLASSIFICATION_DIR, COLLECTIONS_DIR, COMPOSITES_DIR, ZONAL_STATISTICS_DIR
)

from .band_algebra import Expression, NormalizedDifference, Band, add_index, parse_expression, rescale
from .catalog import LocalRasterCatalog, RasterCatalog, TileCache
from .classifier import ClassifierAdapter, accuracy_table, split_table
from .collection_filter import build_predicates, filter_collection, merge_collections, rename_bands
from .dask_utils import DaskClusterManager, log_memory_usage
from .errors import (
    ConfigurationError, InputSchemaError, PipelineCancelled, RasterPipelineError
)
from .masking import MASK_BAND, bitmask_clear, mask, threshold
from .raster import GridSpec, Raster, RasterCollection, to_timestamp
from .raster_io import grid_for_region, read_raster, write_raster, write_table_csv
from .temporal_reducer import Reducer, parse_reducers, period_predicate, reduce_collection
from .terrain import pixel_area
from .zonal_statistics import reduce_to_zones, sample_regions
from .zones import ZoneCollection, geometry_from_config

COMPONENT_NAME = 'raster_pipeline'


@dataclass(frozen=True)
class CollectionSettings:
    """One input collection: identifier, band renaming, calibration and quality filters."""
    collection_id: str
    band_mapping: Dict[str, str]
    scale: float = 1.0
    offset: float = 0.0
    max_cloud_percentage: Optional[float] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    qa_band: Optional[str] = None
    qa_bits: Tuple[int, ...] = ()

    @property
    def read_bands(self) -> List[str]:
        bands = list(self.band_mapping)
        if self.qa_band and self.qa_band not in bands:
            bands.append(self.qa_band)
        return bands

    @property
    def band_resampling(self) -> Dict[str, str]:
        """QA bits only survive value-preserving resampling."""
        return {self.qa_band: 'nearest'} if self.qa_band else {}


@dataclass(frozen=True)
class ThresholdSettings:
    band: str
    op: str
    value: float


@dataclass
class PipelineConfig:
    """Validated configuration surface shared by the pipelines."""
    start: pd.Timestamp
    end: pd.Timestamp
    region: BaseGeometry
    region_crs: CRS
    crs: CRS
    scale: float
    reducer: Reducer
    collections: List[CollectionSettings]
    indices: Dict[str, Expression] = field(default_factory=dict)
    periods: Dict[str, Any] = field(default_factory=dict)
    months: Optional[List[int]] = None
    composite_bands: Optional[List[str]] = None
    threshold: Optional[ThresholdSettings] = None
    resampling: str = 'nearest'
    chunk_size: Optional[int] = None
    catalog_root: Path = COLLECTIONS_DIR
    cache_bytes: int = 512 * 1024 ** 2
    output_dir: Path = COMPOSITES_DIR
    tables_dir: Path = ZONAL_STATISTICS_DIR
    output_prefix: str = 'composite'
    zones_file: Optional[Path] = None
    zones_filter: Optional[Tuple[str, List[Any]]] = None
    zonal_reducers: List[Reducer] = field(default_factory=list)
    zonal_bands: Optional[List[str]] = None
    masked_area: bool = False

    @classmethod
    def from_dict(cls, config: Mapping[str, Any]) -> 'PipelineConfig':
        """
        Validate a configuration dictionary.

        Raises:
            ConfigurationError: On any invalid or missing value
            GeometryError: If the region geometry is invalid
        """
        filter_config = config.get('filter') or {}
        output_config = config.get('output') or {}
        composite_config = config.get('composite') or {}
        compute_config = config.get('compute') or {}
        catalog_config = config.get('catalog') or {}
        zonal_config = config.get('zonal_statistics') or {}

        start, end = _parse_dates(filter_config.get('start_date'), filter_config.get('end_date'))
        region, region_crs = _parse_region(filter_config, config.get('regions') or {})

        crs = _parse_crs(output_config.get('crs', 'EPSG:4326'), 'output.crs')
        scale = _positive_number(output_config.get('scale'), 'output.scale')

        try:
            reducer = Reducer.parse(composite_config.get('reducer', 'median'))
            zonal_reducers = parse_reducers(zonal_config.get('reducers', ['mean']))
        except InputSchemaError as e:
            raise ConfigurationError(str(e))

        collections = [_parse_collection(entry) for entry in config.get('collections') or []]
        if not collections:
            raise ConfigurationError("At least one input collection must be configured under 'collections'")
        common = {frozenset(c.band_mapping.values()) for c in collections}
        if len(common) > 1:
            raise ConfigurationError(
                f"Collections map to different band schemas {[sorted(s) for s in common]}; "
                f"rename every collection to the same common band names"
            )

        indices = {name: _parse_index(name, definition) for name, definition in (config.get('indices') or {}).items()}

        periods = dict(composite_config.get('periods') or {})
        for name, period in periods.items():
            try:
                period_predicate(period)
            except InputSchemaError as e:
                raise ConfigurationError(f"Invalid period '{name}': {e}")

        months = filter_config.get('months')
        if months is not None:
            months = [int(m) for m in months]
            if not months or any(not 1 <= m <= 12 for m in months):
                raise ConfigurationError(f"filter.months must be non-empty values in 1..12, got {months}")

        threshold_settings = None
        mask_config = config.get('mask')
        if mask_config:
            threshold_settings = _parse_threshold(mask_config)

        chunk_size = compute_config.get('chunk_size')
        if chunk_size is not None:
            chunk_size = int(_positive_number(chunk_size, 'compute.chunk_size'))

        resampling = output_config.get('resampling', 'nearest')
        if resampling not in Resampling.__members__:
            raise ConfigurationError(f"Unknown output.resampling '{resampling}'")

        composite_bands = composite_config.get('bands')
        zonal_bands = zonal_config.get('bands')
        _check_band_references(
            common_bands=list(collections[0].band_mapping.values()),
            indices=indices,
            composite_bands=composite_bands,
            mask_band=threshold_settings.band if threshold_settings else None,
            zonal_bands=zonal_bands,
        )

        zones_filter = None
        if zonal_config.get('filter'):
            zones_filter = (zonal_config['filter']['field'], list(zonal_config['filter']['values']))

        return cls(
            start=start,
            end=end,
            region=region,
            region_crs=region_crs,
            crs=crs,
            scale=scale,
            reducer=reducer,
            collections=collections,
            indices=indices,
            periods=periods,
            months=months,
            composite_bands=composite_bands,
            threshold=threshold_settings,
            resampling=resampling,
            chunk_size=chunk_size,
            catalog_root=Path(catalog_config.get('root') or COLLECTIONS_DIR),
            cache_bytes=int(_positive_number(catalog_config.get('cache_mb', 512), 'catalog.cache_mb') * 1024 ** 2),
            output_dir=Path(output_config.get('directory') or COMPOSITES_DIR),
            tables_dir=Path(output_config.get('tables_directory') or ZONAL_STATISTICS_DIR),
            output_prefix=output_config.get('prefix', 'composite'),
            zones_file=Path(zonal_config['zones_file']) if zonal_config.get('zones_file') else None,
            zones_filter=zones_filter,
            zonal_reducers=zonal_reducers,
            zonal_bands=zonal_bands,
            masked_area=bool(zonal_config.get('masked_area', False)),
        )

    @property
    def band_names(self) -> List[str]:
        """Band schema of the prepared scenes: common bands followed by indices."""
        return list(self.collections[0].band_mapping.values()) + list(self.indices)

    def period_definitions(self) -> Dict[str, Any]:
        """Configured periods, or the whole filter date range."""
        if self.periods:
            return self.periods
        return {f"{self.start:%Y%m%d}_{self.end:%Y%m%d}": {'start': self.start, 'end': self.end}}

    def target_grid(self) -> GridSpec:
        return grid_for_region(self.region.bounds, self.region_crs, self.crs, self.scale)


def _parse_dates(start: Any, end: Any) -> Tuple[pd.Timestamp, pd.Timestamp]:
    if start is None or end is None:
        raise ConfigurationError("filter.start_date and filter.end_date are required")
    try:
        start_ts, end_ts = to_timestamp(str(start)), to_timestamp(str(end))
    except ValueError as e:
        raise ConfigurationError(f"Dates must be ISO 8601: {e}")
    if start_ts is None or end_ts is None or start_ts >= end_ts:
        raise ConfigurationError(f"filter.start_date ({start}) must be before filter.end_date ({end})")
    return start_ts, end_ts


def _parse_crs(value: Any, label: str) -> CRS:
    try:
        return CRS.from_user_input(value)
    except CRSError as e:
        raise ConfigurationError(f"Invalid {label} '{value}': {e}")


def _positive_number(value: Any, label: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{label} must be a number, got {value!r}")
    if not number > 0:
        raise ConfigurationError(f"{label} must be positive, got {value}")
    return number


def _parse_region(filter_config: Mapping[str, Any], regions: Mapping[str, Any]) -> Tuple[BaseGeometry, CRS]:
    region_crs = _parse_crs(filter_config.get('bounds_crs', 'EPSG:4326'), 'filter.bounds_crs')
    value = filter_config.get('bounds')
    label = 'filter.bounds'
    if value is None:
        name = filter_config.get('region')
        if name is None:
            raise ConfigurationError("Either filter.bounds or filter.region is required")
        if name not in regions:
            raise ConfigurationError(f"Unknown region '{name}', known regions: {sorted(regions)}")
        value, label = regions[name], f"region '{name}'"
    return geometry_from_config(value, label), region_crs


def _parse_collection(entry: Mapping[str, Any]) -> CollectionSettings:
    if not isinstance(entry, Mapping) or not entry.get('id'):
        raise ConfigurationError(f"Every collection needs an 'id', got {entry!r}")
    mapping = entry.get('bands')
    if not isinstance(mapping, Mapping) or not mapping:
        raise ConfigurationError(f"Collection '{entry['id']}' needs a 'bands' mapping of source to common names")
    cloud = entry.get('max_cloud_percentage')
    cloud_mask = entry.get('cloud_mask') or {}
    try:
        return CollectionSettings(
            collection_id=str(entry['id']),
            band_mapping={str(k): str(v) for k, v in mapping.items()},
            scale=float(entry.get('scale', 1.0)),
            offset=float(entry.get('offset', 0.0)),
            max_cloud_percentage=float(cloud) if cloud is not None else None,
            properties=dict(entry.get('properties') or {}),
            qa_band=cloud_mask.get('band'),
            qa_bits=tuple(int(b) for b in cloud_mask.get('bits', ())),
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid settings for collection '{entry['id']}': {e}")


def _parse_index(name: str, definition: Any) -> Expression:
    try:
        if isinstance(definition, str):
            return parse_expression(definition)
        if isinstance(definition, Mapping) and 'normalized_difference' in definition:
            first, second = definition['normalized_difference']
            return NormalizedDifference(Band(first), Band(second))
        if isinstance(definition, Mapping) and 'expression' in definition:
            return parse_expression(definition['expression'], definition.get('operands'))
    except (InputSchemaError, ValueError, TypeError) as e:
        raise ConfigurationError(f"Invalid index '{name}': {e}")
    raise ConfigurationError(f"Index '{name}' needs an expression or a normalized_difference band pair")


def _parse_threshold(mask_config: Mapping[str, Any]) -> ThresholdSettings:
    try:
        settings = ThresholdSettings(str(mask_config['band']), str(mask_config['op']), float(mask_config['value']))
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"mask needs band, op and a numeric value: {e}")
    if settings.op not in ('<', '<=', '>', '>=', '==', '!=', 'lt', 'lte', 'gt', 'gte', 'eq', 'neq'):
        raise ConfigurationError(f"Unknown mask operator '{settings.op}'")
    return settings


def _check_band_references(common_bands: List[str], indices: Mapping[str, Expression],
                           composite_bands: Optional[List[str]], mask_band: Optional[str],
                           zonal_bands: Optional[List[str]]) -> None:
    """
    Check every configured band name against the bands available at its step.

    Indices are added in order, so each may use the common bands and the
    indices defined before it. The mask and zonal statistics run on the
    composite, which holds composite.bands when given.
    """
    available = list(common_bands)
    for name, expression in indices.items():
        missing = sorted(expression.band_names() - set(available))
        if missing:
            raise ConfigurationError(f"Index '{name}' references unknown bands {missing}, available: {available}")
        if name in available:
            raise ConfigurationError(f"Index '{name}' collides with an existing band name")
        available.append(name)

    if composite_bands is not None:
        if isinstance(composite_bands, str) or not composite_bands:
            raise ConfigurationError(f"composite.bands must be a non-empty list, got {composite_bands!r}")
        missing = [band for band in composite_bands if band not in available]
        if missing:
            raise ConfigurationError(f"composite.bands {missing} not among prepared bands {available}")
        available = list(composite_bands)

    if mask_band is not None and mask_band not in available:
        raise ConfigurationError(f"mask.band '{mask_band}' not among composite bands {available}")

    if zonal_bands is not None:
        if isinstance(zonal_bands, str) or not zonal_bands:
            raise ConfigurationError(f"zonal_statistics.bands must be a non-empty list, got {zonal_bands!r}")
        missing = [band for band in zonal_bands if band not in available]
        if missing:
            raise ConfigurationError(f"zonal_statistics.bands {missing} not among composite bands {available}")


class CompositePipeline:
    """
    Multi-period composite and zonal statistics pipeline.

    Loads the configured collections, prepares every scene on the output grid,
    merges sensors into one series, builds one composite per period, applies
    the threshold mask and reduces the results over vector zones.
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        catalog: Optional[RasterCatalog] = None,
        cancel_event: Optional[threading.Event] = None
    ):
        """
        Initialize the composite pipeline.

        Args:
            config_path: Path to configuration file, uses the component default if None
            config: Configuration dictionary used instead of a file
            catalog: Raster catalog, defaults to a LocalRasterCatalog on catalog.root
            cancel_event: Event observed between per-scene steps

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        self.config = config if config is not None else load_config(config_path, component_name=COMPONENT_NAME)

        logging_config = self.config.get('logging') or {}
        self.logger = setup_logging(
            level=logging_config.get('level', 'INFO'),
            component_name='composite',
            log_file=logging_config.get('log_file')
        )

        try:
            validate_config(self.config, ['collections', 'filter', 'output'])
        except ValueError as e:
            raise ConfigurationError(str(e))

        self.settings = PipelineConfig.from_dict(self.config)
        self.catalog = catalog or LocalRasterCatalog(self.settings.catalog_root, TileCache(self.settings.cache_bytes))
        self.cancel_event = cancel_event or threading.Event()
        self.dask_manager = DaskClusterManager(self.config)

        # Pipeline state
        self.start_time = None
        self.grid = None
        self.scene_count = 0
        self.composites: Dict[str, Raster] = {}
        self.zonal_tables: Dict[str, pd.DataFrame] = {}
        self.outputs: List[Path] = []

        self.logger.info("CompositePipeline initialized")

    def cancel(self) -> None:
        """Request cancellation; observed before the next scene is processed."""
        self.cancel_event.set()

    def _check_cancelled(self, step: str) -> None:
        if self.cancel_event.is_set():
            raise PipelineCancelled(f"Pipeline cancelled during {step}")

    def run_full_pipeline(self) -> bool:
        """
        Execute the complete composite pipeline.

        Returns:
            bool: True on success, False if the run was cancelled

        Examples:
            >>> pipeline = CompositePipeline('config.yaml')
            >>> success = pipeline.run_full_pipeline()
        """
        self.start_time = time.time()
        log_pipeline_start(self.logger, 'Composite', self.config)
        success = False

        try:
            self.grid = self.settings.target_grid()
            self.logger.info(f"Output grid: {self.grid.width}x{self.grid.height} px at {self.settings.scale} "
                             f"({self.settings.crs.to_string()})")

            with self.dask_manager.cluster():
                log_section(self.logger, 'Loading collections')
                collection = self.load_collection()

                log_section(self.logger, 'Building composites')
                self.composites = self.build_composites(collection)

            log_section(self.logger, 'Writing outputs')
            self.save_composites()

            if self.settings.zones_file is not None:
                log_section(self.logger, 'Zonal statistics')
                self.compute_zonal_statistics()

            success = True
            self.logger.info(f"Processing summary: {self.get_processing_summary()}")
            return True

        except PipelineCancelled as e:
            self.logger.warning(str(e))
            return False

        except Exception as e:
            self.logger.error(f"Composite pipeline failed: {str(e)}")
            raise

        finally:
            log_pipeline_end(self.logger, 'Composite', success, time.time() - self.start_time)

    def prepare_scene(self, raster: Raster, settings: CollectionSettings) -> Raster:
        """
        Cloud-mask, calibrate, rename and add indices to one scene.

        Args:
            raster: Scene with the source bands of its collection
            settings: Collection settings

        Returns:
            Scene with the common band names followed by the configured indices
        """
        if settings.qa_band and settings.qa_bits:
            clear = bitmask_clear(raster, settings.qa_bits, settings.qa_band)
            raster = mask(raster, clear)

        raster = rescale(raster, {band: settings.scale for band in settings.band_mapping},
                         {band: settings.offset for band in settings.band_mapping})
        raster = rename_bands(raster, settings.band_mapping)

        for name, expression in self.settings.indices.items():
            raster = add_index(raster, expression, name)
        return raster

    def load_collection(self) -> RasterCollection:
        """
        Load, prepare and merge every configured collection.

        Returns:
            Merged collection on the output grid sorted by acquisition time
        """
        prepared = []
        for settings in self.settings.collections:
            self._check_cancelled(f"loading {settings.collection_id}")
            predicates = build_predicates(
                start=self.settings.start,
                end=self.settings.end,
                bounds=self.settings.region,
                bounds_crs=self.settings.region_crs,
                max_cloud_percentage=settings.max_cloud_percentage,
                months=self.settings.months,
                properties=settings.properties,
            )
            raw = self.catalog.load(
                settings.collection_id,
                bands=settings.read_bands,
                predicates=predicates,
                grid=self.grid,
                resampling=self.settings.resampling,
                band_resampling=settings.band_resampling,
                cancel_event=self.cancel_event,
            )

            scenes = []
            for raster in tqdm(raw, desc=f"Preparing {settings.collection_id}", leave=False):
                self._check_cancelled(f"preparing {settings.collection_id}")
                scenes.append(self.prepare_scene(raster, settings))
            self.scene_count += len(scenes)

            prepared.append(RasterCollection(scenes, self.settings.band_names, self.grid, settings.collection_id))
            self.logger.info(f"Prepared {len(scenes)} scenes of {settings.collection_id}")
            log_memory_usage(self.logger, settings.collection_id)

        return merge_collections(*prepared, collection_id='+'.join(c.collection_id for c in self.settings.collections))

    def build_composites(self, collection: RasterCollection) -> Dict[str, Raster]:
        """
        One composite per configured period.

        Args:
            collection: Prepared, merged collection

        Returns:
            Mapping of period name to composite raster
        """
        bands = self.settings.composite_bands
        if bands:
            missing = [band for band in bands if band not in collection.band_names]
            if missing:
                raise InputSchemaError(f"Composite bands {missing} not in prepared bands {list(collection.band_names)}")
            collection = collection.map(lambda raster: raster.select(bands))

        composites = {}
        for period_name, period in self.settings.period_definitions().items():
            self._check_cancelled(f"compositing {period_name}")
            subset = filter_collection(collection, period_predicate(period))
            composite = reduce_collection(subset, self.settings.reducer, chunk_size=self.settings.chunk_size,
                                          grid=self.grid)
            composites[period_name] = composite.with_metadata(
                composite.metadata.with_properties(period=period_name))
            self.logger.info(f"Composite {period_name}: {len(subset)} scenes, "
                             f"{composite.valid_count()} valid pixels")
        return composites

    def threshold_mask(self, composite: Raster) -> Optional[Raster]:
        """Configured threshold mask of a composite, or None when no mask is configured."""
        settings = self.settings.threshold
        if settings is None:
            return None
        return threshold(composite, settings.op, settings.value, settings.band)

    def output_path(self, period: str, masked: bool = False, suffix: str = '.tif') -> Path:
        name = f"{self.settings.output_prefix}_{period}_{self.settings.reducer.name}"
        if masked:
            name += '_masked'
        return self.settings.output_dir / f"{name}{suffix}"

    def save_composites(self) -> List[Path]:
        """Write every composite and, with a threshold configured, its masked version."""
        for period, composite in self.composites.items():
            self.outputs.append(write_raster(composite, self.output_path(period)))
            mask_raster = self.threshold_mask(composite)
            if mask_raster is not None:
                self.outputs.append(write_raster(mask(composite, mask_raster), self.output_path(period, masked=True)))
            self.logger.info(f"Saved composite for period {period}")
        return self.outputs

    def masked_area(self, mask_raster: Raster) -> Raster:
        """Pixel area (m2) where the mask is True, 0 where False, no-data where unknown."""
        area = pixel_area(mask_raster).filled('area')
        values = mask_raster.band(MASK_BAND)
        data = np.where(np.ma.getdata(values), area, 0.0)
        return mask_raster.with_bands({'masked_area': np.ma.MaskedArray(data, mask=np.ma.getmaskarray(values))})

    def load_zones(self) -> ZoneCollection:
        zones = ZoneCollection.from_file(self.settings.zones_file)
        if self.settings.zones_filter:
            field_name, values = self.settings.zones_filter
            zones = zones.filter_in(field_name, values)
        return zones

    def compute_zonal_statistics(self) -> Dict[str, pd.DataFrame]:
        """Reduce every (masked) composite over the configured zones and write one CSV per period."""
        zones = self.load_zones()
        for period, composite in self.composites.items():
            self._check_cancelled(f"zonal statistics of {period}")
            mask_raster = self.threshold_mask(composite)
            source = mask(composite, mask_raster) if mask_raster is not None else composite

            table = reduce_to_zones(source, zones, self.settings.zonal_reducers,
                                    scale=self.settings.scale, bands=self.settings.zonal_bands)

            if self.settings.masked_area and mask_raster is not None:
                area = reduce_to_zones(self.masked_area(mask_raster), zones, 'sum', scale=self.settings.scale)
                table['masked_area_sum'] = area['masked_area_sum']

            self.zonal_tables[period] = table
            path = self.output_path(period, masked=mask_raster is not None, suffix='.csv')
            self.outputs.append(write_table_csv(table, self.settings.tables_dir / path.name))
        return self.zonal_tables

    def get_processing_summary(self) -> Dict[str, Any]:
        """
        Get processing summary and statistics.

        Returns:
            dict: Processing summary with timing and statistics
        """
        end_time = time.time()
        duration = end_time - (self.start_time or end_time)
        cache = getattr(self.catalog, 'cache', None)

        return {
            'scenes_processed': self.scene_count,
            'composites': {period: composite.valid_count() for period, composite in self.composites.items()},
            'zonal_tables': {period: len(table) for period, table in self.zonal_tables.items()},
            'outputs': [str(path) for path in self.outputs],
            'duration_seconds': duration,
            'cache': cache.stats() if cache is not None else None,
            'config_summary': {
                'start': self.settings.start.date().isoformat(),
                'end': self.settings.end.date().isoformat(),
                'reducer': self.settings.reducer.name,
                'scale': self.settings.scale,
                'crs': self.settings.crs.to_string(),
                'collections': [c.collection_id for c in self.settings.collections],
            }
        }

    def validate_configuration(self) -> bool:
        """
        Check that configured inputs exist.

        Returns:
            bool: True if the catalog collections and zones file are available
        """
        valid = True
        if isinstance(self.catalog, LocalRasterCatalog):
            try:
                validate_directory_exists(self.catalog.root, "Catalog root")
            except (FileNotFoundError, ValueError) as e:
                self.logger.error(str(e))
                return False
            available = set(self.catalog.collections())
            for settings in self.settings.collections:
                if settings.collection_id not in available:
                    self.logger.error(f"Collection '{settings.collection_id}' not found under {self.catalog.root}")
                    valid = False

        if self.settings.zones_file is not None and not self.settings.zones_file.exists():
            self.logger.error(f"Zones file not found: {self.settings.zones_file}")
            valid = False

        if valid:
            self.logger.info("Configuration validation successful")
        return valid


class ClassificationPipeline:
    """
    Supervised classification of a composite from labelled training regions.

    Uses the 'classification' configuration section: composite_file,
    training_file, label_column, features, split_ratio, seed, scale,
    classifier (kind and params) and output_directory.
    """

    def __init__(self, config_path: Optional[str] = None, config: Optional[Dict[str, Any]] = None):
        self.config = config if config is not None else load_config(config_path, component_name=COMPONENT_NAME)

        logging_config = self.config.get('logging') or {}
        self.logger = setup_logging(
            level=logging_config.get('level', 'INFO'),
            component_name='classification',
            log_file=logging_config.get('log_file')
        )

        section = self.config.get('classification')
        if not section:
            raise ConfigurationError("Missing 'classification' configuration section")
        for key in ('composite_file', 'training_file', 'label_column', 'features'):
            if not section.get(key):
                raise ConfigurationError(f"classification.{key} is required")

        self.composite_file = Path(section['composite_file'])
        self.training_file = Path(section['training_file'])
        self.label_column = section['label_column']
        self.features = list(section['features'])
        self.split_ratio = float(section.get('split_ratio', 0.7))
        if not 0 < self.split_ratio < 1:
            raise ConfigurationError(f"classification.split_ratio must be in (0, 1), got {self.split_ratio}")
        self.seed = section.get('seed')
        self.scale = section.get('scale')
        self.output_dir = Path(section.get('output_directory') or CLASSIFICATION_DIR)
        self.accuracy_dir = Path(section.get('accuracy_directory') or ACCURACY_DIR)

        try:
            self.adapter = ClassifierAdapter.from_config(section.get('classifier') or {})
        except (InputSchemaError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid classification.classifier: {e}")

        self.start_time = None
        self.model = None
        self.confusion_matrix = None
        self.outputs: List[Path] = []

        self.logger.info("ClassificationPipeline initialized")

    def run_full_pipeline(self) -> bool:
        """
        Sample, train, classify and evaluate.

        Returns:
            bool: True on success
        """
        self.start_time = time.time()
        log_pipeline_start(self.logger, 'Classification', self.config.get('classification'))
        success = False

        try:
            composite = read_raster(validate_file_exists(self.composite_file, "Composite raster"))
            regions = ZoneCollection.from_file(self.training_file)

            log_section(self.logger, 'Sampling training regions')
            samples = sample_regions(composite, regions, properties=[self.label_column],
                                     scale=self.scale, bands=self.features)
            training, validation = split_table(samples, self.split_ratio, self.seed)
            self.logger.info(f"{len(training)} training and {len(validation)} validation samples")

            log_section(self.logger, 'Training')
            self.model = self.adapter.train(training, self.features, self.label_column)

            log_section(self.logger, 'Classifying')
            classified = self.adapter.classify(composite, self.model)
            stem = self.composite_file.stem
            self.outputs.append(write_raster(classified, self.output_dir / f"{stem}_classified.tif"))

            log_section(self.logger, 'Accuracy assessment')
            self.confusion_matrix = self.adapter.evaluate(self.model, validation)
            self.outputs.append(write_table_csv(self.confusion_matrix.to_frame().reset_index(),
                                                self.accuracy_dir / f"{stem}_confusion_matrix.csv"))
            self.outputs.append(write_table_csv(accuracy_table(self.confusion_matrix),
                                                self.accuracy_dir / f"{stem}_accuracy.csv"))

            success = True
            return True

        except RasterPipelineError as e:
            self.logger.error(f"Classification pipeline failed: {str(e)}")
            raise

        finally:
            log_pipeline_end(self.logger, 'Classification', success, time.time() - self.start_time)
