"""
Snow station comparison and reporting.

This module compares ensemble SWE projections with station observations:
- Station inventory and normals from NRCS AWDB
- Watershed basins from USGS WBD and station-to-basin membership
- Station and basin percent-of-normal tables
- GeoTIFF, CSV and PNG outputs
- The end-to-end pipeline
"""

from .stations import (
    AWDBClient,
    StationRecord,
    StationServiceError,
    attach_normals,
    station_normals,
    stations_to_geodataframe,
)
from .basins import BasinPolygon, WBDClient, assign_basins, basins_to_geodataframe
from .comparison import (
    basin_raster_summary,
    basin_station_summary,
    group_by_basin,
    station_comparison,
)
from .pipeline import ComparisonReport, SnowComparisonPipeline, run_pipeline

__all__ = [
    "AWDBClient",
    "StationRecord",
    "StationServiceError",
    "attach_normals",
    "station_normals",
    "stations_to_geodataframe",
    "BasinPolygon",
    "WBDClient",
    "assign_basins",
    "basins_to_geodataframe",
    "basin_raster_summary",
    "basin_station_summary",
    "group_by_basin",
    "station_comparison",
    "ComparisonReport",
    "SnowComparisonPipeline",
    "run_pipeline",
]
