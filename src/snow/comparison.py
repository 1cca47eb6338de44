"""
Station- and basin-level comparison of modeled SWE against station normals.

Station table (per reference period):
- station normal (observed)
- modeled reference and future values sampled at the station
- model_pct_of_station: modeled reference as percent of the station normal
- projected_pct: future as percent of reference, sampled from the
  percent-of-normal raster
- projected_swe: station normal scaled by projected_pct

Basin tables:
- from stations: mean of member stations' ratios, reported only when at
  least min_stations stations contribute
- from the raster: mean of cells inside each basin, basins without valid
  cells dropped
"""

import logging
from typing import Dict, Iterable, Sequence, Set

import geopandas as gpd
import numpy as np
import pandas as pd

from src.grids.extraction import percent_ratio, polygon_means, sample_points
from src.grids.series import Raster, SummaryRaster
from src.snow.stations import StationRecord, stations_to_geodataframe

logger = logging.getLogger(__name__)

DEFAULT_MIN_STATIONS = 3


def station_comparison(
    stations: Sequence[StationRecord],
    period: str,
    reference: SummaryRaster,
    future: SummaryRaster,
    percent: SummaryRaster,
    channel: str = "median",
) -> pd.DataFrame:
    """
    Compare modeled rasters with station normals for one reference period.

    Stations without a normal for the period are left out of this table.

    Args:
        stations: Stations with normals and basin memberships
        period: Reference period name (key of StationRecord.normals)
        reference: Summary raster of the reference period
        future: Summary raster of the future period
        percent: percent_of_normal(future, reference)
        channel: Summary channel to compare (default: median)

    Returns:
        DataFrame with one row per station holding a normal
    """
    with_normal = [s for s in stations if s.normal(period) is not None]
    skipped = len(stations) - len(with_normal)
    if skipped:
        logger.info(f"{skipped} stations without a {period} normal excluded from the {period} comparison")

    columns = [
        "station_id", "name", "basin_ids", "station_normal",
        "modeled_reference", "modeled_future",
        "model_pct_of_station", "projected_pct", "projected_swe",
    ]
    if not with_normal:
        return pd.DataFrame(columns=columns)

    points = stations_to_geodataframe(with_normal)
    ref_values = sample_points(reference, points)[channel].values
    fut_values = sample_points(future, points)[channel].values
    pct_values = sample_points(percent, points)[channel].values
    normals = np.array([s.normal(period) for s in with_normal], dtype=np.float64)

    table = pd.DataFrame({
        "station_id": [s.station_id for s in with_normal],
        "name": [s.name for s in with_normal],
        "basin_ids": [sorted(s.basin_ids) for s in with_normal],
        "station_normal": normals,
        "modeled_reference": ref_values,
        "modeled_future": fut_values,
        "model_pct_of_station": percent_ratio(ref_values, normals),
        "projected_pct": pct_values,
    })
    table["projected_swe"] = table["station_normal"] * table["projected_pct"] / 100.0
    return table[columns]


def group_by_basin(
    values: pd.DataFrame,
    memberships: Dict[str, Set[str]],
    value_column: str,
    min_stations: int = DEFAULT_MIN_STATIONS,
    id_column: str = "station_id",
) -> pd.DataFrame:
    """
    Mean of station values per basin.

    A station counts toward every basin it belongs to. Missing values are
    dropped before grouping, and basins with fewer than min_stations
    contributing stations are excluded.

    Args:
        values: Table with id_column and value_column
        memberships: Station id -> basin ids
        value_column: Column to average
        min_stations: Minimum contributing stations per basin

    Returns:
        DataFrame with basin_id, mean_<value_column> and n_stations
    """
    valid = values.loc[values[value_column].notna(), [id_column, value_column]]
    rows = [
        (basin_id, value)
        for station_id, value in zip(valid[id_column], valid[value_column])
        for basin_id in memberships.get(station_id, ())
    ]
    mean_column = f"mean_{value_column}"
    if not rows:
        return pd.DataFrame(columns=["basin_id", mean_column, "n_stations"])

    long = pd.DataFrame(rows, columns=["basin_id", value_column])
    grouped = (
        long.groupby("basin_id")[value_column]
        .agg(["mean", "count"])
        .rename(columns={"mean": mean_column, "count": "n_stations"})
        .reset_index()
    )
    too_few = grouped["n_stations"] < min_stations
    if too_few.any():
        logger.info(f"{int(too_few.sum())} basins with fewer than {min_stations} stations excluded")
    return grouped.loc[~too_few].sort_values("basin_id").reset_index(drop=True)


def basin_station_summary(
    table: pd.DataFrame,
    stations: Iterable[StationRecord],
    basins: gpd.GeoDataFrame,
    min_stations: int = DEFAULT_MIN_STATIONS,
) -> pd.DataFrame:
    """
    Basin means of station projected_pct and model_pct_of_station.

    Returns:
        DataFrame keyed by basin_id with basin name and HUC
    """
    memberships = {s.station_id: set(s.basin_ids) for s in stations}
    projected = group_by_basin(table, memberships, "projected_pct", min_stations)
    bias = group_by_basin(table, memberships, "model_pct_of_station", min_stations)
    merged = projected.merge(
        bias.rename(columns={"n_stations": "n_stations_model"}), on="basin_id", how="outer"
    )
    attrs = pd.DataFrame(basins[["basin_id", "name", "huc"]])
    return attrs.merge(merged, on="basin_id", how="inner").sort_values("basin_id").reset_index(drop=True)


def basin_raster_summary(raster: Raster, basins: gpd.GeoDataFrame) -> pd.DataFrame:
    """
    Polygon means of a raster per basin, without basins lacking valid cells.

    Returns:
        DataFrame with basin_id, name, huc, n_cells and one column per channel
    """
    means = polygon_means(raster, basins, id_column="basin_id")
    empty = means["n_cells"] == 0
    if empty.any():
        logger.info(f"{int(empty.sum())} basins have no valid cells in {raster.name} and are not reported")
    means = means.loc[~empty]
    attrs = pd.DataFrame(basins[["basin_id", "name", "huc"]])
    return attrs.merge(means, on="basin_id", how="inner").reset_index(drop=True)
