"""
Ensemble aggregation of annual snapshot grids.

Two-stage reduction, in this order:

Stage A (cross-model, per year): for every year and cell, the minimum,
25th percentile, median, 75th percentile and maximum across members
(linear interpolation between order statistics, NaN ignored).

Stage B (cross-year, per channel): for every channel and cell, the median
across the years of the window (NaN ignored).

After Stage B the five channels are medians of per-year quantiles. They
describe a central estimate and a spread band of the ensemble, but they are
NOT percentiles of the pooled member-year distribution. pooled_quantiles()
computes those exact quantiles in a single pass when they are needed.
"""

import logging
import warnings
from typing import List, Sequence, Tuple

import numpy as np

from src.grids.series import CHANNELS, EnsembleMember, GriddedSeries, ShapeMismatch, SummaryRaster, check_alignment

logger = logging.getLogger(__name__)

QUANTILES = (0.0, 0.25, 0.5, 0.75, 1.0)


def stack_members(members: Sequence[EnsembleMember]) -> Tuple[np.ndarray, np.ndarray]:
    """
    Stack annual snapshots of all members into one cube.

    Only years present in every member are kept.

    Args:
        members: Members holding one grid per year

    Returns:
        (years, cube) with cube shape (member, year, rows, cols)

    Raises:
        ValueError: If members is empty
        ShapeMismatch: If members are not on the same grid
    """
    if not members:
        raise ValueError("Cannot aggregate an empty ensemble")

    first = members[0].series
    for member in members[1:]:
        try:
            check_alignment(first, member.series)
        except ShapeMismatch as e:
            raise ShapeMismatch(f"Member {member.model} is not aligned with {members[0].model}: {e}") from e

    year_sets = [set(_unique_years(m.series, m.model)) for m in members]
    common = sorted(set.intersection(*year_sets))
    all_years = set.union(*year_sets)
    if len(common) < len(all_years):
        logger.warning(
            f"Dropping years not shared by all members: {sorted(all_years - set(common))}"
        )
    if not common:
        raise ValueError("Ensemble members share no years")

    cube = np.empty((len(members), len(common)) + first.grid_shape, dtype=np.float64)
    for i, member in enumerate(members):
        years = member.series.years
        for j, year in enumerate(common):
            cube[i, j] = member.series.data[np.flatnonzero(years == year)[0]]

    return np.asarray(common), cube


def _unique_years(series: GriddedSeries, model: str) -> List[int]:
    years = list(series.years)
    if len(set(years)) != len(years):
        raise ValueError(f"Member {model} has more than one grid per year; select a month first")
    return years


def cross_model_quantiles(cube: np.ndarray) -> np.ndarray:
    """
    Stage A: quantiles across members for every year and cell.

    Args:
        cube: Array of shape (member, year, rows, cols)

    Returns:
        Array of shape (5, year, rows, cols) ordered min, p25, median, p75, max
    """
    with warnings.catch_warnings():
        # all-NaN cells (e.g. ocean) stay NaN
        warnings.simplefilter("ignore", category=RuntimeWarning)
        return np.nanquantile(cube, QUANTILES, axis=0, method="linear")


def cross_year_median(per_year: np.ndarray) -> np.ndarray:
    """
    Stage B: median across years for every channel and cell.

    Args:
        per_year: Array of shape (5, year, rows, cols)

    Returns:
        Array of shape (5, rows, cols)
    """
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        return np.nanmedian(per_year, axis=1)


def summarize_ensemble(
    members: Sequence[EnsembleMember], name: str = None
) -> SummaryRaster:
    """
    Reduce an ensemble of annual snapshots to one SummaryRaster.

    Runs Stage A then Stage B (see module docstring). The resulting channels
    are a robust central estimate and spread band, not exact percentiles.

    Args:
        members: Members of one (variable family, time window)
        name: Raster name (default: the members' window)

    Returns:
        SummaryRaster on the members' grid
    """
    years, cube = stack_members(members)
    per_year = cross_model_quantiles(cube)
    summary = cross_year_median(per_year)

    first = members[0].series
    name = name or members[0].window
    logger.info(f"Summarized {len(members)} members x {len(years)} years for {name}")
    if np.isfinite(summary[2]).any():
        logger.debug(
            f"{name} median range={float(np.nanmin(summary[2])):.2f}-"
            f"{float(np.nanmax(summary[2])):.2f} {first.units}"
        )
    return SummaryRaster(
        name=name,
        channel_data=dict(zip(CHANNELS, summary)),
        transform=first.transform,
        crs=first.crs,
        units=first.units,
        attrs={
            "method": "median across years of per-year cross-model quantiles",
            "members": ",".join(m.model for m in members),
            "years": f"{years.min()}-{years.max()}",
        },
    )


def pooled_quantiles(
    members: Sequence[EnsembleMember], name: str = None
) -> SummaryRaster:
    """
    Exact quantiles over all member-years in a single pass.

    Alternative to summarize_ensemble() when the channels must be true
    order statistics of the ensemble.
    """
    years, cube = stack_members(members)
    flat = cube.reshape((-1,) + cube.shape[2:])
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        quantiles = np.nanquantile(flat, QUANTILES, axis=0, method="linear")

    first = members[0].series
    return SummaryRaster(
        name=name or members[0].window,
        channel_data=dict(zip(CHANNELS, quantiles)),
        transform=first.transform,
        crs=first.crs,
        units=first.units,
        attrs={
            "method": "pooled quantiles over member-years",
            "members": ",".join(m.model for m in members),
            "years": f"{years.min()}-{years.max()}",
        },
    )
