"""
Comparison and extraction on summary rasters.

- percent_of_normal: cell-wise 100 * future / reference, per channel
- sample_points: nearest-cell values at point locations
- polygon_means: mean of cells whose centre lies inside each polygon

Features are reprojected to the raster CRS before sampling. Features with
no valid data get NaN instead of raising.
"""

import logging
import warnings

import geopandas as gpd
import numpy as np
import pandas as pd
from rasterio.features import geometry_mask
from rasterio.transform import rowcol

from src.grids.series import Raster, RasterLayer, SummaryRaster, check_alignment

logger = logging.getLogger(__name__)


def percent_ratio(future, reference) -> np.ndarray:
    """
    100 * future / reference, NaN where reference is zero or either is missing.

    Works on scalars or arrays of any matching shape.
    """
    future = np.asarray(future, dtype=np.float64)
    reference = np.asarray(reference, dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = 100.0 * (future / reference)
    return np.where(np.isfinite(ratio) & (reference != 0), ratio, np.nan)


def percent_of_normal(future: Raster, reference: Raster, name: str = None) -> Raster:
    """
    Cell-wise percent of normal between two aligned rasters.

    Args:
        future: Projection raster
        reference: Reference-period raster on the same grid
        name: Name of the result (default: "<future>_pct_<reference>")

    Returns:
        Raster of the same kind as the inputs, in percent

    Raises:
        ShapeMismatch: If the rasters do not share a grid
    """
    check_alignment(future, reference)
    name = name or f"{future.name}_pct_{reference.name}"

    if isinstance(future, SummaryRaster) and isinstance(reference, SummaryRaster):
        return SummaryRaster(
            name=name,
            channel_data={c: percent_ratio(future[c], reference[c]) for c in future.channels},
            transform=future.transform,
            crs=future.crs,
            units="%",
            attrs={"future": future.name, "reference": reference.name},
        )
    if isinstance(future, RasterLayer) and isinstance(reference, RasterLayer):
        return RasterLayer(
            name=name,
            data=percent_ratio(future.data, reference.data),
            transform=future.transform,
            crs=future.crs,
            units="%",
        )
    raise TypeError(
        f"Cannot compare {type(future).__name__} with {type(reference).__name__}"
    )


def _require_crs(frame: gpd.GeoDataFrame, what: str) -> None:
    if frame.crs is None:
        raise ValueError(f"{what} have no CRS; set one before extraction")


def sample_points(
    raster: Raster, points: gpd.GeoDataFrame, id_column: str = "station_id"
) -> pd.DataFrame:
    """
    Sample raster values at point locations (nearest cell, no interpolation).

    Args:
        raster: Single- or multi-channel raster
        points: Point features with a CRS
        id_column: Identifier column carried into the result

    Returns:
        DataFrame with id_column and one column per channel; points outside
        the raster extent get NaN
    """
    _require_crs(points, "Points")
    projected = points.to_crs(raster.crs.to_wkt())
    bands = raster.bands()
    height, width = raster.grid_shape

    result = pd.DataFrame({id_column: points[id_column].values})
    if len(projected) == 0:
        for channel in raster.channels:
            result[channel] = np.array([], dtype=np.float64)
        return result

    xs = projected.geometry.x.values
    ys = projected.geometry.y.values
    rows, cols = rowcol(raster.transform, xs, ys)
    rows = np.asarray(rows)
    cols = np.asarray(cols)
    inside = (rows >= 0) & (rows < height) & (cols >= 0) & (cols < width)
    if not inside.all():
        logger.debug(f"{int((~inside).sum())} of {len(inside)} points outside {raster.name}")

    safe_rows = np.where(inside, rows, 0)
    safe_cols = np.where(inside, cols, 0)
    for band, channel in zip(bands, raster.channels):
        result[channel] = np.where(inside, band[safe_rows, safe_cols], np.nan)
    return result


def polygon_means(
    raster: Raster, polygons: gpd.GeoDataFrame, id_column: str = "basin_id"
) -> pd.DataFrame:
    """
    Mean raster value inside each polygon.

    A cell counts when its centre falls inside the polygon. Missing cells are
    ignored; a polygon with no valid cells gets NaN and a zero cell count.

    Args:
        raster: Single- or multi-channel raster
        polygons: Polygon features with a CRS
        id_column: Identifier column carried into the result

    Returns:
        DataFrame with id_column, n_cells and one column per channel
    """
    _require_crs(polygons, "Polygons")
    projected = polygons.to_crs(raster.crs.to_wkt())
    bands = raster.bands()
    valid_any = np.isfinite(bands)

    records = []
    for basin_id, geom in zip(polygons[id_column].values, projected.geometry.values):
        record = {id_column: basin_id}
        if geom is None or geom.is_empty:
            inside = np.zeros(raster.grid_shape, dtype=bool)
        else:
            inside = geometry_mask(
                [geom],
                out_shape=raster.grid_shape,
                transform=raster.transform,
                all_touched=False,
                invert=True,
            )
        record["n_cells"] = int((inside & valid_any.any(axis=0)).sum())
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", category=RuntimeWarning)
            for band, channel in zip(bands, raster.channels):
                values = band[inside]
                record[channel] = float(np.nanmean(values)) if np.isfinite(values).any() else np.nan
        records.append(record)

    columns = [id_column, "n_cells", *raster.channels]
    return pd.DataFrame.from_records(records, columns=columns)
