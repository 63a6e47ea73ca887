#!/usr/bin/env python3
"""
Zonal Statistics Script

Reduces an existing raster (e.g. a composite written by the composite
pipeline) over a vector file of zones and writes one CSV row per zone.

Usage Examples:
    # Mean of every band per municipality
    python run_zonal_statistics.py --raster composite.tif --zones municipalities.gpkg --output stats.csv

    # Several reducers on selected bands at 100 m
    python run_zonal_statistics.py --raster composite.tif --zones zones.shp \\
        --reducers mean p90 count --bands ndvi mndwi --scale 100 --output stats.csv

    # Only zones whose NAME is one of the listed values
    python run_zonal_statistics.py --raster composite.tif --zones zones.shp \\
        --filter-field NAME --filter-values Madrid Toledo --output stats.csv

Author: Diego Bengochea
"""

import argparse
import sys
import time
from pathlib import Path

from shared_utils import setup_logging, log_pipeline_start, log_pipeline_end

from raster_pipeline.core.errors import RasterPipelineError
from raster_pipeline.core.raster_io import read_raster, write_table_csv
from raster_pipeline.core.zonal_statistics import reduce_to_zones, sample_at_points
from raster_pipeline.core.zones import ZoneCollection


def parse_arguments() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Zonal statistics of a raster over vector zones",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument('--raster', type=str, required=True, help='Input GeoTIFF')
    parser.add_argument('--zones', type=str, required=True, help='Vector file of polygon or point zones')
    parser.add_argument('--output', type=str, required=True, help='Output CSV path')

    parser.add_argument(
        '--reducers',
        type=str,
        nargs='+',
        default=['mean'],
        help="Reducers such as mean, median, min, max, sum, count, stdDev, p90 (default: mean)"
    )

    parser.add_argument('--bands', type=str, nargs='+', help='Bands to reduce (default: all)')
    parser.add_argument('--scale', type=float, help='Sampling resolution in raster CRS units')
    parser.add_argument('--resampling', type=str, default='nearest', help='Resampling used with --scale')

    parser.add_argument(
        '--sample-points',
        action='store_true',
        help='Extract pixel values at point zones instead of reducing'
    )

    parser.add_argument('--filter-field', type=str, help='Zone attribute used to select zones')
    parser.add_argument('--filter-values', type=str, nargs='+', help='Accepted values of --filter-field')

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default='INFO',
        help='Logging level'
    )

    return parser.parse_args()


def main() -> bool:
    """
    Main entry point for the zonal statistics script.

    Returns:
        bool: True on success
    """
    args = parse_arguments()
    logger = setup_logging(level=args.log_level, component_name='zonal_statistics')

    if bool(args.filter_field) != bool(args.filter_values):
        logger.error("--filter-field and --filter-values must be given together")
        return False

    start_time = time.time()
    log_pipeline_start(logger, 'Zonal statistics', vars(args))
    success = False

    try:
        raster = read_raster(args.raster, args.bands)
        zones = ZoneCollection.from_file(args.zones)
        if args.filter_field:
            zones = zones.filter_in(args.filter_field, args.filter_values)

        if args.sample_points:
            table = sample_at_points(raster, zones, scale=args.scale, resampling=args.resampling)
        else:
            table = reduce_to_zones(raster, zones, args.reducers, scale=args.scale, resampling=args.resampling)

        write_table_csv(table, Path(args.output))
        success = True

    except (RasterPipelineError, FileNotFoundError) as e:
        logger.error(f"Zonal statistics failed: {str(e)}")

    finally:
        log_pipeline_end(logger, 'Zonal statistics', success, time.time() - start_time)

    return success


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
