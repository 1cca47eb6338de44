#!/usr/bin/env python3
"""
April 1 SWE projection comparison.

Summarizes a climate-model ensemble for each configured time window,
expresses the future window as percent of each reference window, and
compares the result with snow station normals per station and per basin.

Outputs (under --output-dir):
1. swe_summary_<window>.tif - five-band ensemble summary per window
2. pct_of_normal_<future>_vs_<ref>.tif - percent-of-normal raster
3. stations_/basins_stations_/basins_raster_<tag>.csv - comparison tables
4. PNG maps of the percent raster and station basin means

Usage:
    # Default Pacific Northwest run
    python examples/swe_projection_comparison.py

    # Run from a JSON configuration
    python examples/swe_projection_comparison.py --config run.json

    # Restrict to basins under HUC4 1709 with HUC10 reporting units
    python examples/swe_projection_comparison.py --huc-filter 1709 --huc-level 10

    # Inspect or clear the download cache
    python examples/swe_projection_comparison.py --cache-stats
    python examples/swe_projection_comparison.py --clear-cache
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.config import DEFAULT_LOG_LEVEL, PipelineConfig
from src.grids.cache import GridCache
from src.snow.pipeline import run_pipeline
from src.utils.helpers import setup_logging


def build_config(args) -> PipelineConfig:
    """Configuration from --config, with command-line overrides applied."""
    if args.config:
        data = PipelineConfig.from_json(args.config).to_dict()
    else:
        data = PipelineConfig().to_dict()

    if args.bbox:
        data["bbox"] = args.bbox
    if args.huc_level:
        data["huc_level"] = args.huc_level
    if args.huc_filter:
        data["huc_filter"] = args.huc_filter
    if args.models:
        data["models"] = args.models
    if args.output_dir:
        data["output_dir"] = args.output_dir
    if args.cache_dir:
        data["cache_dir"] = args.cache_dir
    if args.workers:
        data["max_workers"] = args.workers
    if args.no_maps:
        data["render_maps"] = False
    return PipelineConfig.from_dict(data)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Compare ensemble April 1 SWE projections with station normals",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", type=Path, help="JSON configuration file")
    parser.add_argument(
        "--bbox", type=float, nargs=4, metavar=("MINX", "MINY", "MAXX", "MAXY"),
        help="Study area in the configured bbox CRS",
    )
    parser.add_argument("--huc-level", type=int, choices=[2, 4, 6, 8, 10, 12], help="Reporting basin level")
    parser.add_argument("--huc-filter", nargs="+", help="Keep basins whose HUC starts with these codes")
    parser.add_argument("--models", nargs="+", help="Ensemble members to request")
    parser.add_argument("--output-dir", type=Path, help="Directory for tables and maps")
    parser.add_argument("--cache-dir", type=Path, help="Grid download cache directory")
    parser.add_argument("--workers", type=int, help="Parallel member downloads")
    parser.add_argument("--no-maps", action="store_true", help="Skip PNG maps")
    parser.add_argument("--cache-stats", action="store_true", help="Print cache statistics and exit")
    parser.add_argument("--clear-cache", action="store_true", help="Delete cached grids and exit")
    parser.add_argument("--log-file", type=Path, help="Also log (at DEBUG) to this file")
    parser.add_argument("--log-level", default=DEFAULT_LOG_LEVEL, help="Console log level")

    args = parser.parse_args()
    logger = setup_logging(log_file=args.log_file, level=args.log_level)

    try:
        config = build_config(args)
    except (ValueError, OSError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    if args.cache_stats or args.clear_cache:
        cache = GridCache(cache_dir=config.cache_dir)
        if args.clear_cache:
            cache.clear_cache()
        stats = cache.get_cache_stats()
        print(f"Cache: {stats['cache_dir']}")
        print(f"  Files: {stats['cache_files']}")
        print(f"  Size:  {stats['total_size_mb']:.1f} MB")
        return 0

    logger.info("=" * 70)
    logger.info(f"SWE projection comparison: {config.future_window} vs {config.reference_windows}")
    logger.info(f"Study area: {config.bbox} ({config.bbox_crs}), {len(config.models)} models")
    logger.info("=" * 70)

    try:
        report = run_pipeline(config)
    except RuntimeError as e:
        logger.error(f"Pipeline failed: {e}")
        return 1

    for name, table in report.basin_station_tables.items():
        logger.info(f"{config.future_window} vs {name}: {len(table)} basins reported from stations")
    logger.info(f"Wrote {len(report.outputs)} files to {config.output_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
