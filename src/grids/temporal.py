"""
Temporal filtering and unit conversion of monthly series.

Reduces a monthly GriddedSeries to one snapshot per year (e.g. April SWE)
and applies a fixed linear unit conversion.
"""

import logging

import numpy as np

from src.config import MM_TO_INCHES
from src.grids.series import GriddedSeries

logger = logging.getLogger(__name__)


def select_month(series: GriddedSeries, month: int) -> GriddedSeries:
    """
    Keep only the grids whose timestamp falls in a calendar month.

    If a year has several timestamps in that month (sub-monthly input) the
    first one is kept, so the result always holds one grid per year.

    Args:
        series: Monthly series spanning several years
        month: Calendar month, 1-12

    Returns:
        Series with one grid per year, ordered by year
    """
    if not 1 <= month <= 12:
        raise ValueError(f"month must be 1-12, got {month}")

    in_month = np.asarray(series.times.month == month)
    years = series.times.year.values
    first_of_year = np.zeros(len(series), dtype=bool)
    seen = set()
    for i in np.flatnonzero(in_month):
        if years[i] not in seen:
            seen.add(years[i])
            first_of_year[i] = True

    if in_month.sum() > first_of_year.sum():
        logger.warning(
            f"{series.variable}: {in_month.sum()} timestamps in month {month} "
            f"for {len(seen)} years, keeping the first of each year"
        )
    if not seen:
        logger.warning(f"{series.variable}: no timestamps in month {month}")

    return series.subset(first_of_year)


def convert_units(
    series: GriddedSeries, factor: float = MM_TO_INCHES, units: str = "in"
) -> GriddedSeries:
    """Multiply every grid by a fixed factor (default: millimeters -> inches)."""
    return GriddedSeries(
        variable=series.variable,
        data=series.data * factor,
        times=series.times,
        transform=series.transform,
        crs=series.crs,
        units=units,
    )


def annual_snapshots(
    series: GriddedSeries,
    month: int = 4,
    factor: float = MM_TO_INCHES,
    units: str = "in",
) -> GriddedSeries:
    """
    Annual snapshot month of a monthly series, converted to the target units.

    Args:
        series: Monthly series in source units
        month: Snapshot month (default: April)
        factor: Unit conversion factor (default: mm -> inches)
        units: Units label after conversion

    Returns:
        One grid per year in the target units
    """
    snapshots = convert_units(select_month(series, month), factor=factor, units=units)
    logger.debug(
        f"{series.variable}: {len(snapshots)} annual snapshots "
        f"({snapshots.years.min() if len(snapshots) else '-'}"
        f"-{snapshots.years.max() if len(snapshots) else '-'})"
    )
    return snapshots
