"""
Default data layout of the raster pipeline.

Inputs live under data/raw, intermediate rasters under data/processed and
tables under data/results. Every directory here is only a default: the
catalog, output and classification sections of the configuration override
them per run.

    data/raw/collections/<collection_id>/*.tif   scene catalog
    data/raw/zones/                              vector zones
    data/raw/training_samples/                   labelled regions
    data/processed/composites/                   period composites
    data/processed/classification/               classified rasters
    data/results/zonal_statistics/               per-zone CSV tables
    data/results/accuracy/                       confusion matrices

Author: Diego Bengochea
"""

from pathlib import Path

DATA_ROOT = Path("data")

RAW_DIR = DATA_ROOT / "raw"
PROCESSED_DIR = DATA_ROOT / "processed"
RESULTS_DIR = DATA_ROOT / "results"

COLLECTIONS_DIR = RAW_DIR / "collections"

COMPOSITES_DIR = PROCESSED_DIR / "composites"
CLASSIFICATION_DIR = PROCESSED_DIR / "classification"

ZONAL_STATISTICS_DIR = RESULTS_DIR / "zonal_statistics"
ACCURACY_DIR = RESULTS_DIR / "accuracy"
