"""Pytest configuration and fixtures for SWE comparison tests."""
import sys
from pathlib import Path

# Add project root to Python path for imports
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

import numpy as np
import pandas as pd
import pytest
from rasterio.transform import from_origin

from src.grids.series import CHANNELS, EnsembleMember, GriddedSeries, SummaryRaster


# 4 rows x 5 cols of 0.5 degree cells, west -122, north 45
GRID_TRANSFORM = from_origin(-122.0, 45.0, 0.5, 0.5)
GRID_SHAPE = (4, 5)


def make_series(values, years, month=4, variable="SWE_test", units="mm"):
    """Series with one grid per year, every cell of year i set to values[i]."""
    times = pd.DatetimeIndex([pd.Timestamp(y, month, 1) for y in years])
    data = np.stack([np.full(GRID_SHAPE, v, dtype=np.float64) for v in values])
    return GriddedSeries(
        variable=variable, data=data, times=times,
        transform=GRID_TRANSFORM, crs="EPSG:4326", units=units,
    )


def make_member(model, values, years, window="1981-2010"):
    return EnsembleMember(
        model=model,
        variable=f"SWE_{model}",
        scenario="historical",
        window=window,
        series=make_series(values, years, variable=f"SWE_{model}"),
    )


def make_summary(name, channel_values, units="in"):
    """SummaryRaster whose channels are constant grids (scalar) or given arrays."""
    data = {}
    for channel, value in zip(CHANNELS, channel_values):
        arr = np.asarray(value, dtype=np.float64)
        data[channel] = np.full(GRID_SHAPE, arr) if arr.ndim == 0 else arr
    return SummaryRaster(
        name=name, channel_data=data, transform=GRID_TRANSFORM,
        crs="EPSG:4326", units=units,
    )


@pytest.fixture
def cache_dir(tmp_path):
    """Temporary cache directory for tests."""
    cache = tmp_path / "cache"
    cache.mkdir()
    return cache


@pytest.fixture
def grid_transform():
    return GRID_TRANSFORM


@pytest.fixture
def reference_summary():
    """Reference-period summary: 10/15/20/25/30 inches everywhere."""
    return make_summary("1981-2010", [10.0, 15.0, 20.0, 25.0, 30.0])


@pytest.fixture
def future_summary():
    """Future-period summary: exactly half of reference_summary."""
    return make_summary("2040-2069", [5.0, 7.5, 10.0, 12.5, 15.0])


@pytest.fixture
def monthly_netcdf(tmp_path):
    """
    Write a small monthly SWE NetCDF shaped like an NCSS response.

    Latitudes ascend (south first) and longitudes use 0-360 as many climate
    grids do. Value of cell (row from north, col) in month m of year y is
    1000*(y-2000) + 10*m + col.
    """
    import xarray as xr

    def _write(variable="SWE_test", years=(2001, 2002), path=None):
        times = pd.date_range(f"{years[0]}-01-01", f"{years[-1]}-12-01", freq="MS")
        lats = np.array([43.25, 43.75, 44.25, 44.75])
        lons = np.array([238.25, 238.75, 239.25, 239.75, 240.25])
        values = np.empty((len(times), len(lats), len(lons)))
        for i, t in enumerate(times):
            for col in range(len(lons)):
                values[i, :, col] = 1000 * (t.year - 2000) + 10 * t.month + col
        ds = xr.Dataset(
            {variable: (("time", "lat", "lon"), values)},
            coords={"time": times, "lat": lats, "lon": lons},
        )
        path = path or tmp_path / f"{variable}.nc"
        ds.to_netcdf(path)
        return path

    return _write
