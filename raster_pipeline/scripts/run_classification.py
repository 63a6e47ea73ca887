#!/usr/bin/env python3
"""
Classification Script

Command-line entry point for supervised classification of a composite from
labelled training regions, with a train/validation split and accuracy
assessment.

Usage Examples:
    # Run with the classification section of the default configuration
    python run_classification.py

    # Custom composite, training regions and classifier
    python run_classification.py --composite composite_2020_median.tif \\
        --training training_regions.gpkg --classifier random_forest

Author: Diego Bengochea
"""

import argparse
import sys
from pathlib import Path

from shared_utils import load_config

from raster_pipeline.core.errors import RasterPipelineError
from raster_pipeline.core.pipeline import COMPONENT_NAME, ClassificationPipeline


def parse_arguments() -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        argparse.Namespace: Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="Supervised classification of a raster composite",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument('--config', type=str, help='Path to configuration file (default: config.yaml)')
    parser.add_argument('--composite', type=str, help='Composite GeoTIFF to classify (overrides config)')
    parser.add_argument('--training', type=str, help='Labelled training regions (overrides config)')
    parser.add_argument('--label-column', type=str, help='Class label attribute (overrides config)')
    parser.add_argument('--features', type=str, nargs='+', help='Feature bands (overrides config)')

    parser.add_argument(
        '--classifier',
        choices=['cart', 'random_forest', 'svm'],
        help='Classifier kind (overrides config)'
    )

    parser.add_argument('--split-ratio', type=float, help='Training fraction of the samples (overrides config)')
    parser.add_argument('--seed', type=int, help='Random seed of the split (overrides config)')
    parser.add_argument('--output-dir', type=str, help='Directory for the classified raster (overrides config)')

    return parser.parse_args()


def main() -> bool:
    """
    Main entry point for the classification script.

    Returns:
        bool: True on success
    """
    args = parse_arguments()

    if args.config and not Path(args.config).exists():
        print(f"Error: Config file not found: {args.config}")
        return False

    config = load_config(args.config, component_name=COMPONENT_NAME)
    section = dict(config.get('classification') or {})

    overrides = {
        'composite_file': args.composite,
        'training_file': args.training,
        'label_column': args.label_column,
        'features': args.features,
        'split_ratio': args.split_ratio,
        'seed': args.seed,
        'output_directory': args.output_dir,
    }
    section.update({key: value for key, value in overrides.items() if value is not None})
    if args.classifier:
        section['classifier'] = {'kind': args.classifier}
    config['classification'] = section

    try:
        pipeline = ClassificationPipeline(config=config)
        return pipeline.run_full_pipeline()
    except (RasterPipelineError, FileNotFoundError) as e:
        print(f"Error: {e}")
        return False


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
