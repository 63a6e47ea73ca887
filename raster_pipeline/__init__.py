"""
Raster Pipeline Component

Configuration-driven pipeline for multi-period, multi-sensor satellite image
composites and zonal statistics over vector zones.

This component provides:
- Scene catalog access with spatial, temporal and quality filters
- Quality-bit cloud masking and affine calibration of reflectance bands
- Band harmonization and merging of collections from several sensors
- Spectral indices from band algebra expressions (NDVI, MNDWI, SAVI, ...)
- Temporal composites per period (median, percentiles, maxima, ...)
- Threshold and categorical rule masks
- Terrain derivatives and pixel areas
- Zonal statistics tables and training samples from vector zones
- Supervised classification with accuracy assessment

Key Features:
- Masked-array rasters where no-data propagates through every operation
- Dask-chunked temporal reductions for large grids
- LRU tile cache bounded by memory footprint
- Cancellation between per-scene steps
- GeoTIFF outputs with band names and scene metadata, CSV tables

Author: Diego Bengochea
"""

# Import core pipelines
from .core.pipeline import PipelineConfig, CompositePipeline, ClassificationPipeline

# Import data model and catalog
from .core.raster import GridSpec, SceneMetadata, Raster, RasterCollection
from .core.zones import ZoneCollection
from .core.catalog import RasterCatalog, LocalRasterCatalog, TileCache

# Import processing functions
from .core.band_algebra import parse_expression, evaluate, normalized_difference, add_index, rescale
from .core.temporal_reducer import Reducer, reduce_collection, period_composite
from .core.masking import threshold, bitmask_clear, mask, classify_by_rules
from .core.zonal_statistics import reduce_to_zones, sample_at_points, sample_regions
from .core.classifier import ClassifierAdapter, ConfusionMatrix
from .core.raster_io import read_raster, write_raster

# Import script entry points
from .scripts.run_composite_pipeline import main as run_composite_pipeline
from .scripts.run_zonal_statistics import main as run_zonal_statistics
from .scripts.run_classification import main as run_classification

__version__ = "1.0.0"
__component__ = "raster_pipeline"

__all__ = [
    # Pipelines
    "PipelineConfig",
    "CompositePipeline",
    "ClassificationPipeline",

    # Data model and catalog
    "GridSpec",
    "SceneMetadata",
    "Raster",
    "RasterCollection",
    "ZoneCollection",
    "RasterCatalog",
    "LocalRasterCatalog",
    "TileCache",

    # Processing functions
    "parse_expression",
    "evaluate",
    "normalized_difference",
    "add_index",
    "rescale",
    "Reducer",
    "reduce_collection",
    "period_composite",
    "threshold",
    "bitmask_clear",
    "mask",
    "classify_by_rules",
    "reduce_to_zones",
    "sample_at_points",
    "sample_regions",
    "ClassifierAdapter",
    "ConfusionMatrix",
    "read_raster",
    "write_raster",

    # Script entry points
    "run_composite_pipeline",
    "run_zonal_statistics",
    "run_classification",

    # Component metadata
    "__version__",
    "__component__"
]

# Component configuration
DEFAULT_CONFIG_PATH = "config.yaml"
COMPONENT_NAME = "raster_pipeline"

# Supported data formats
SUPPORTED_INPUT_FORMATS = ['.tif', '.tiff']           # GeoTIFF scenes
SUPPORTED_OUTPUT_FORMATS = ['.tif', '.csv']           # Composites and tables
SUPPORTED_REDUCERS = ['mean', 'median', 'min', 'max', 'sum', 'count', 'stdDev', 'percentile']
SUPPORTED_CLASSIFIERS = ['cart', 'random_forest', 'svm']

# Data requirements
REQUIRED_EXTERNAL_DEPENDENCIES = [
    'numpy',                # Band arrays
    'pandas',               # Tables and timestamps
    'xarray',               # Labelled stacks for temporal reductions
    'dask[distributed]',    # Chunked and distributed computing
    'rasterio',             # Geospatial raster I/O and warping
    'geopandas',            # Geospatial vector data
    'shapely',              # Geometries
    'scipy',                # Terrain kernels
    'scikit-learn',         # Classifiers
    'pyyaml',               # Configuration files
    'tqdm',                 # Progress bars
    'psutil'                # System monitoring
]
