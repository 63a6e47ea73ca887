"""
Raster Pipeline Core Modules

Core functionality for multi-period raster compositing and zonal statistics:
the raster data model, collection filtering, band algebra, temporal and
spatial reducers, masking, terrain derivatives, the classifier seam, raster
I/O and the configuration-driven pipelines.

Modules:
    errors: Error taxonomy and empty-result reporting
    raster: GridSpec, SceneMetadata, Raster and RasterCollection
    zones: Validated vector zones
    collection_filter: Scene predicates, filtering, schema reconciliation and merging
    band_algebra: Expression trees, textual formulas and calibration
    temporal_reducer: Reducers over time and across bands, period composites
    masking: Threshold, quality-bit and categorical rule masks
    terrain: Slope, aspect, hillshade and pixel area
    zonal_statistics: Zonal reductions and point/region sampling
    classifier: scikit-learn classifier adapter and accuracy assessment
    raster_io: GeoTIFF round trip, resampling and CSV tables
    catalog: Raster catalog interface, local GeoTIFF catalog and tile cache
    dask_utils: Local Dask cluster management
    pipeline: Composite and classification pipelines

Author: Diego Bengochea
"""

from .errors import (
    RasterPipelineError,
    InputSchemaError,
    GeometryError,
    ConfigurationError,
    PipelineCancelled,
    ExternalServiceError,
    EmptyResultWarning
)

from .raster import GridSpec, SceneMetadata, Raster, RasterCollection
from .zones import ZoneCollection, validate_geometry

from .collection_filter import (
    ScenePredicate,
    intersects_bounds,
    date_range,
    calendar_months,
    metadata_less_than,
    metadata_equals,
    metadata_in,
    metadata_contains,
    filter_collection,
    sort_and_first,
    rename_bands,
    reconcile_schema,
    merge_collections
)

from .band_algebra import (
    Expression,
    Band,
    Constant,
    NormalizedDifference,
    parse_expression,
    evaluate,
    normalized_difference,
    add_index,
    rescale
)

from .temporal_reducer import Reducer, reduce_collection, reduce_bands, period_composite

from .masking import (
    threshold,
    bit_is_set,
    bitmask_clear,
    mask,
    self_mask,
    invert_mask,
    combine_masks,
    classify_by_rules
)

from .terrain import slope, aspect, hillshade, terrain_products, pixel_area

from .zonal_statistics import reduce_to_zones, sample_at_points, sample_regions

from .classifier import ClassifierAdapter, ConfusionMatrix, TrainedModel, split_table

from .raster_io import write_raster, read_raster, resample_raster, write_table_csv

from .catalog import RasterCatalog, LocalRasterCatalog, TileCache

from .dask_utils import DaskClusterManager

from .pipeline import PipelineConfig, CompositePipeline, ClassificationPipeline

__all__ = [
    # Errors
    "RasterPipelineError",
    "InputSchemaError",
    "GeometryError",
    "ConfigurationError",
    "PipelineCancelled",
    "ExternalServiceError",
    "EmptyResultWarning",

    # Data model
    "GridSpec",
    "SceneMetadata",
    "Raster",
    "RasterCollection",
    "ZoneCollection",
    "validate_geometry",

    # Collection filter
    "ScenePredicate",
    "intersects_bounds",
    "date_range",
    "calendar_months",
    "metadata_less_than",
    "metadata_equals",
    "metadata_in",
    "metadata_contains",
    "filter_collection",
    "sort_and_first",
    "rename_bands",
    "reconcile_schema",
    "merge_collections",

    # Band algebra
    "Expression",
    "Band",
    "Constant",
    "NormalizedDifference",
    "parse_expression",
    "evaluate",
    "normalized_difference",
    "add_index",
    "rescale",

    # Reducers
    "Reducer",
    "reduce_collection",
    "reduce_bands",
    "period_composite",
    "reduce_to_zones",
    "sample_at_points",
    "sample_regions",

    # Masking and terrain
    "threshold",
    "bit_is_set",
    "bitmask_clear",
    "mask",
    "self_mask",
    "invert_mask",
    "combine_masks",
    "classify_by_rules",
    "slope",
    "aspect",
    "hillshade",
    "terrain_products",
    "pixel_area",

    # Classification
    "ClassifierAdapter",
    "ConfusionMatrix",
    "TrainedModel",
    "split_table",

    # I/O and catalog
    "write_raster",
    "read_raster",
    "resample_raster",
    "write_table_csv",
    "RasterCatalog",
    "LocalRasterCatalog",
    "TileCache",
    "DaskClusterManager",

    # Pipelines
    "PipelineConfig",
    "CompositePipeline",
    "ClassificationPipeline"
]
