"""
Gridded climate-model data processing.

This package provides the raster side of the SWE comparison:
- Grid acquisition from THREDDS NCSS with a local download cache
- Annual snapshot selection and unit conversion
- Two-stage ensemble aggregation into summary rasters
- Percent-of-normal, point sampling and polygon means
"""

from .series import (
    CHANNELS,
    EnsembleMember,
    GriddedSeries,
    RasterLayer,
    ShapeMismatch,
    SummaryRaster,
    check_alignment,
)
from .cache import GridCache
from .acquisition import (
    GridFetchError,
    MemberNotFound,
    NCSSGridSource,
    fetch_ensemble,
    fetch_series,
    read_series,
)
from .temporal import annual_snapshots, convert_units, select_month
from .ensemble import (
    cross_model_quantiles,
    cross_year_median,
    pooled_quantiles,
    summarize_ensemble,
)
from .extraction import (
    percent_of_normal,
    percent_ratio,
    polygon_means,
    sample_points,
)

__all__ = [
    "CHANNELS",
    "EnsembleMember",
    "GriddedSeries",
    "RasterLayer",
    "ShapeMismatch",
    "SummaryRaster",
    "check_alignment",
    "GridCache",
    "GridFetchError",
    "MemberNotFound",
    "NCSSGridSource",
    "fetch_ensemble",
    "fetch_series",
    "read_series",
    "annual_snapshots",
    "convert_units",
    "select_month",
    "cross_model_quantiles",
    "cross_year_median",
    "pooled_quantiles",
    "summarize_ensemble",
    "percent_of_normal",
    "percent_ratio",
    "polygon_means",
    "sample_points",
]
