"""
Raster Pipeline Executable Scripts

Command-line entry points for the raster pipeline workflows.

Scripts:
    run_composite_pipeline.py: Multi-period composites with optional zonal statistics
    run_zonal_statistics.py: Zonal statistics or point sampling of an existing raster
    run_classification.py: Supervised classification and accuracy assessment

Usage Examples:
    # Composites for the configured periods
    python scripts/run_composite_pipeline.py --config config.yaml

    # Statistics of a composite over municipalities
    python scripts/run_zonal_statistics.py --raster composite.tif --zones municipalities.gpkg --output stats.csv

    # Classification with a random forest
    python scripts/run_classification.py --classifier random_forest

Author: Diego Bengochea
"""

from .run_composite_pipeline import main as run_composite_pipeline
from .run_zonal_statistics import main as run_zonal_statistics
from .run_classification import main as run_classification

__all__ = [
    "run_composite_pipeline",
    "run_zonal_statistics",
    "run_classification"
]
