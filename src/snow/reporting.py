"""
Report outputs: comparison tables and map layers.

- write_raster_geotiff: summary or percent raster as multi-band GeoTIFF
- write_table: CSV table (list columns joined with ';')
- plot_percent_map: percent-of-normal raster with basins and stations
- plot_basin_map: basin choropleth of a reported value
"""

import logging
from pathlib import Path
from typing import Optional

import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio

from src.grids.series import Raster, SummaryRaster, grid_bounds

logger = logging.getLogger(__name__)


def write_raster_geotiff(raster: Raster, path) -> Path:
    """
    Write every channel of a raster to a GeoTIFF, one band per channel.

    Band descriptions hold the channel names; NaN is the nodata value.

    Args:
        raster: SummaryRaster or RasterLayer
        path: Output file path

    Returns:
        Path to the written file
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    bands = raster.bands().astype(np.float32)
    count, height, width = bands.shape

    with rasterio.open(
        path,
        "w",
        driver="GTiff",
        height=height,
        width=width,
        count=count,
        dtype="float32",
        crs=raster.crs,
        transform=raster.transform,
        nodata=np.nan,
        compress="lzw",
    ) as dst:
        dst.write(bands)
        for index, channel in enumerate(raster.channels, start=1):
            dst.set_band_description(index, channel)
        dst.update_tags(name=raster.name, units=raster.units)

    logger.info(f"Wrote {raster.name} to {path}")
    return path


def write_table(table: pd.DataFrame, path) -> Path:
    """Write a report table to CSV."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    out = table.copy()
    for column in out.columns:
        if out[column].map(lambda v: isinstance(v, (list, set, tuple))).any():
            out[column] = out[column].map(
                lambda v: ";".join(sorted(map(str, v))) if isinstance(v, (list, set, tuple)) else v
            )
    out.to_csv(path, index=False, float_format="%.2f")
    logger.info(f"Wrote {len(out)} rows to {path}")
    return path


def plot_percent_map(
    raster: Raster,
    output_path,
    channel: str = "median",
    basins: Optional[gpd.GeoDataFrame] = None,
    stations: Optional[gpd.GeoDataFrame] = None,
    station_values: Optional[pd.DataFrame] = None,
    title: Optional[str] = None,
    vmin: float = 0.0,
    vmax: float = 200.0,
    cmap: str = "RdBu",
) -> Path:
    """
    Plot a percent-of-normal channel centred on 100%.

    Args:
        raster: Percent raster
        output_path: PNG path
        channel: Channel to draw (ignored for single-channel layers)
        basins: Optional basin outlines
        stations: Optional station points
        station_values: Optional station_id/projected_pct table to colour stations

    Returns:
        Path to saved plot
    """
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt
    from matplotlib.colors import TwoSlopeNorm

    data = raster[channel] if isinstance(raster, SummaryRaster) else raster.data
    minx, miny, maxx, maxy = grid_bounds(raster.transform, raster.grid_shape)
    norm = TwoSlopeNorm(vmin=vmin, vcenter=100.0, vmax=vmax)
    crs = raster.crs.to_wkt()

    fig, ax = plt.subplots(figsize=(10, 8))
    im = ax.imshow(
        np.ma.masked_invalid(data),
        extent=(minx, maxx, miny, maxy),
        origin="upper",
        cmap=cmap,
        norm=norm,
    )
    fig.colorbar(im, ax=ax, label="Percent of normal (%)", shrink=0.8)

    if basins is not None and len(basins):
        basins.to_crs(crs).boundary.plot(ax=ax, color="black", linewidth=0.6)
    if stations is not None and len(stations):
        points = stations.to_crs(crs)
        if station_values is not None:
            points = points.merge(station_values[["station_id", "projected_pct"]], on="station_id", how="inner")
            points = points[points["projected_pct"].notna()]
            points.plot(
                ax=ax, column="projected_pct", cmap=cmap, norm=norm,
                edgecolor="black", markersize=30,
            )
        else:
            points.plot(ax=ax, color="black", markersize=10)

    ax.set_xlim(minx, maxx)
    ax.set_ylim(miny, maxy)
    ax.set_title(title or f"{raster.name} ({channel})")

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=150, bbox_inches="tight")
    plt.close(fig)

    logger.info(f"Saved map to {output_path}")
    return output_path


def plot_basin_map(
    basins: gpd.GeoDataFrame,
    table: pd.DataFrame,
    value_column: str,
    output_path,
    title: Optional[str] = None,
    cmap: str = "RdBu",
) -> Path:
    """
    Choropleth of a basin table column; unreported basins drawn hollow.

    Returns:
        Path to saved plot
    """
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt
    from matplotlib.colors import TwoSlopeNorm

    reported = basins.merge(table[["basin_id", value_column]], on="basin_id", how="inner")
    reported = reported[reported[value_column].notna()]

    fig, ax = plt.subplots(figsize=(10, 8))
    basins.boundary.plot(ax=ax, color="grey", linewidth=0.5)
    if len(reported):
        values = reported[value_column].astype(float)
        norm = TwoSlopeNorm(vmin=min(values.min(), 99.0), vcenter=100.0, vmax=max(values.max(), 101.0))
        reported.plot(
            ax=ax, column=value_column, cmap=cmap, norm=norm,
            edgecolor="black", linewidth=0.6, legend=True,
        )
    ax.set_title(title or value_column)

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=150, bbox_inches="tight")
    plt.close(fig)

    logger.info(f"Saved basin map to {output_path}")
    return output_path
