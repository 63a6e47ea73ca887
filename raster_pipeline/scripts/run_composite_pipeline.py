#!/usr/bin/env python3
"""
Composite Pipeline Script

Command-line entry point for the multi-period composite pipeline: loads the
configured collections from the scene catalog, masks clouds, harmonizes band
names across sensors, adds spectral indices, reduces each period to a
composite and optionally computes zonal statistics over vector zones.

Usage Examples:
    # Run with default configuration
    python run_composite_pipeline.py

    # Custom configuration and date range
    python run_composite_pipeline.py --config custom.yaml --start-date 2020-01-01 --end-date 2021-01-01

    # Override reducer and output resolution
    python run_composite_pipeline.py --reducer p90 --scale 60

    # Only check that collections and zones exist
    python run_composite_pipeline.py --validate-only

Author: Diego Bengochea
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict

from shared_utils import load_config, save_config

from raster_pipeline.core.errors import RasterPipelineError
from raster_pipeline.core.pipeline import COMPONENT_NAME, CompositePipeline


def parse_arguments() -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        argparse.Namespace: Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="Multi-period Raster Composite Pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                                    # Run with default settings
  %(prog)s --config custom.yaml              # Custom configuration
  %(prog)s --reducer median --scale 30       # Override compositing
  %(prog)s --zones municipalities.gpkg       # Zonal statistics over zones
        """
    )

    parser.add_argument(
        '--config',
        type=str,
        help='Path to configuration file (default: config.yaml)'
    )

    # Filter overrides
    parser.add_argument(
        '--start-date',
        type=str,
        help='Start of the acquisition date range, ISO 8601 (overrides config)'
    )

    parser.add_argument(
        '--end-date',
        type=str,
        help='End of the acquisition date range, exclusive (overrides config)'
    )

    parser.add_argument(
        '--region',
        type=str,
        help='Named region from the regions section (overrides config)'
    )

    # Compositing overrides
    parser.add_argument(
        '--reducer',
        type=str,
        help="Temporal reducer, e.g. 'median', 'max' or 'p90' (overrides config)"
    )

    parser.add_argument(
        '--scale',
        type=float,
        help='Output pixel size in output CRS units (overrides config)'
    )

    parser.add_argument(
        '--chunk-size',
        type=int,
        help='Spatial dask chunk size for temporal reductions (overrides config)'
    )

    # Paths
    parser.add_argument(
        '--catalog-root',
        type=str,
        help='Root directory of the scene catalog (overrides config)'
    )

    parser.add_argument(
        '--output-dir',
        type=str,
        help='Directory for composite GeoTIFFs (overrides config)'
    )

    parser.add_argument(
        '--zones',
        type=str,
        help='Vector file of zones for zonal statistics (overrides config)'
    )

    # Pipeline control
    parser.add_argument(
        '--validate-only',
        action='store_true',
        help='Validate configuration and inputs without processing'
    )

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level (overrides config)'
    )

    parser.add_argument(
        '--output-summary',
        type=str,
        help='Path to save the processing summary as JSON'
    )

    return parser.parse_args()


def apply_overrides(config: Dict[str, Any], args: argparse.Namespace) -> Dict[str, Any]:
    """Apply command-line overrides to the loaded configuration."""
    sections = {name: dict(config.get(name) or {}) for name in
                ('filter', 'composite', 'output', 'compute', 'catalog', 'zonal_statistics', 'logging')}

    if args.start_date:
        sections['filter']['start_date'] = args.start_date
    if args.end_date:
        sections['filter']['end_date'] = args.end_date
    if args.region:
        sections['filter'].pop('bounds', None)
        sections['filter']['region'] = args.region
    if args.reducer:
        sections['composite']['reducer'] = args.reducer
    if args.scale:
        sections['output']['scale'] = args.scale
    if args.chunk_size:
        sections['compute']['chunk_size'] = args.chunk_size
    if args.catalog_root:
        sections['catalog']['root'] = args.catalog_root
    if args.output_dir:
        sections['output']['directory'] = args.output_dir
    if args.zones:
        sections['zonal_statistics']['zones_file'] = args.zones
    if args.log_level:
        sections['logging']['level'] = args.log_level

    config = dict(config)
    config.update(sections)
    return config


def main() -> bool:
    """
    Main entry point for the composite pipeline script.

    Returns:
        bool: True on success
    """
    args = parse_arguments()

    if args.config and not Path(args.config).exists():
        print(f"Error: Config file not found: {args.config}")
        return False

    try:
        config = apply_overrides(load_config(args.config, component_name=COMPONENT_NAME), args)
        pipeline = CompositePipeline(config=config)
    except RasterPipelineError as e:
        print(f"Error: Invalid configuration: {e}")
        return False

    if not pipeline.validate_configuration():
        return False
    if args.validate_only:
        return True

    success = pipeline.run_full_pipeline()
    if success:
        save_config(config, pipeline.settings.output_dir / "run_config.yaml")

    if args.output_summary:
        summary_path = Path(args.output_summary)
        summary_path.parent.mkdir(parents=True, exist_ok=True)
        with open(summary_path, 'w') as f:
            json.dump(pipeline.get_processing_summary(), f, indent=2, default=str)
        pipeline.logger.info(f"Processing summary saved to {summary_path}")

    return success


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
