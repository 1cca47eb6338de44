"""
Grid acquisition for climate-model ensembles.

Requests spatially and temporally subset NetCDF grids from a THREDDS NetCDF
Subset Service (NCSS) endpoint, caches the raw responses, and parses them
into GriddedSeries.

Pipeline steps:
- fetch_series: One variable for one time range (cache first, then network)
- fetch_ensemble: All models of one time window; absent members are dropped
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import requests
import xarray as xr
from rasterio.transform import from_origin
from rasterio.warp import transform_bounds
from tqdm.auto import tqdm

from src.config import DEFAULT_CRS, DEFAULT_GRID_DATASET, DEFAULT_GRID_URL, TimeWindow
from src.grids.cache import GridCache
from src.grids.series import EnsembleMember, GriddedSeries

logger = logging.getLogger(__name__)

X_NAMES = ("lon", "longitude", "x")
Y_NAMES = ("lat", "latitude", "y")

# Phrases THREDDS uses when a requested variable is not in the dataset
_MISSING_VARIABLE_HINTS = ("not contained", "no such variable", "variable not found", "not found")


class MemberNotFound(LookupError):
    """Raised when the grid source has no such variable/scenario combination."""

    pass


class GridFetchError(RuntimeError):
    """Raised when a grid request fails; the caller may retry."""

    pass


class NCSSGridSource:
    """
    Client for a THREDDS NetCDF Subset Service.

    Args:
        base_url: NCSS root, e.g. https://host/thredds/ncss
        dataset_template: Dataset path under base_url, formatted with scenario
        timeout: Seconds before a request is abandoned
    """

    def __init__(
        self,
        base_url: str = DEFAULT_GRID_URL,
        dataset_template: str = DEFAULT_GRID_DATASET,
        timeout: float = 600.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.dataset_template = dataset_template
        self.timeout = timeout

    def dataset_url(self, scenario: str) -> str:
        return f"{self.base_url}/{self.dataset_template.format(scenario=scenario)}"

    def build_params(
        self,
        variable: str,
        bbox: Tuple[float, float, float, float],
        time_range: Tuple[str, str],
    ) -> Dict[str, object]:
        """NCSS query parameters; bbox is (west, south, east, north) in WGS84."""
        west, south, east, north = bbox
        start, end = time_range
        return {
            "var": variable,
            "north": north,
            "south": south,
            "west": west,
            "east": east,
            "horizStride": 1,
            "time_start": f"{start}T00:00:00Z",
            "time_end": f"{end}T23:59:59Z",
            "accept": "netcdf",
        }

    def request(
        self,
        variable: str,
        scenario: str,
        bbox: Tuple[float, float, float, float],
        time_range: Tuple[str, str],
    ) -> requests.Response:
        """
        Issue the subset request and return the streaming response.

        Raises:
            MemberNotFound: If the service reports the variable is absent
            GridFetchError: On network errors or any other failed status
        """
        url = self.dataset_url(scenario)
        params = self.build_params(variable, bbox, time_range)
        logger.debug(f"NCSS request {url} var={variable} {time_range}")
        try:
            response = requests.get(url, params=params, stream=True, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise GridFetchError(f"Network error requesting {variable}: {e}") from e

        if response.status_code == 200:
            return response

        body = response.text[:500]
        response.close()
        if response.status_code == 404 or (
            response.status_code == 400
            and any(hint in body.lower() for hint in _MISSING_VARIABLE_HINTS)
        ):
            raise MemberNotFound(f"{variable} ({scenario}) not available: {body}")
        raise GridFetchError(
            f"NCSS request failed with status {response.status_code} for {variable}: {body}"
        )


def _pick_name(candidates: Sequence[str], available) -> str:
    for name in candidates:
        if name in available:
            return name
    raise ValueError(f"None of {list(candidates)} found in dataset coordinates {list(available)}")


def _decode_times(index) -> pd.DatetimeIndex:
    """Convert a time index to pandas, collapsing non-standard calendars to month starts."""
    if isinstance(index, pd.DatetimeIndex):
        return index
    # cftime calendars (noleap, 360_day): monthly data only needs year and month
    return pd.DatetimeIndex([pd.Timestamp(t.year, t.month, 1) for t in index])


def read_series(path, variable: str, crs=DEFAULT_CRS, units: str = "mm") -> GriddedSeries:
    """
    Parse a NetCDF grid into a north-up GriddedSeries.

    Args:
        path: NetCDF file
        variable: Data variable to read
        crs: CRS of the grid coordinates
        units: Units of the stored values

    Returns:
        GriddedSeries with NaN for missing cells
    """
    path = Path(path)
    with xr.open_dataset(path) as ds:
        if variable not in ds.data_vars:
            raise MemberNotFound(f"{variable} not present in {path.name}")
        da = ds[variable]
        x_name = _pick_name(X_NAMES, da.coords)
        y_name = _pick_name(Y_NAMES, da.coords)
        da = da.sortby("time").transpose("time", y_name, x_name).load()
        times = _decode_times(da.indexes["time"])

    xs = da[x_name].values.astype(np.float64)
    ys = da[y_name].values.astype(np.float64)
    if len(xs) < 2 or len(ys) < 2:
        raise ValueError(f"Grid in {path.name} needs at least 2 cells per axis, got {len(ys)}x{len(xs)}")

    values = da.values.astype(np.float64)
    if x_name in ("lon", "longitude") and xs.max() > 180:
        xs = np.where(xs > 180, xs - 360.0, xs)
        order = np.argsort(xs)
        xs = xs[order]
        values = values[:, :, order]
    if ys[0] < ys[-1]:
        ys = ys[::-1]
        values = values[:, ::-1, :]

    res_x = float(np.median(np.diff(xs)))
    res_y = float(np.median(np.abs(np.diff(ys))))
    transform = from_origin(xs[0] - res_x / 2, ys[0] + res_y / 2, res_x, res_y)

    return GriddedSeries(
        variable=variable,
        data=values,
        times=times,
        transform=transform,
        crs=crs,
        units=units,
    )


def fetch_series(
    variable: str,
    scenario: str,
    bbox: Tuple[float, float, float, float],
    time_range: Tuple[str, str],
    source: Optional[NCSSGridSource] = None,
    cache: Optional[GridCache] = None,
    bbox_crs=DEFAULT_CRS,
    grid_crs=DEFAULT_CRS,
) -> GriddedSeries:
    """
    Fetch one variable for one time range, from cache when possible.

    Args:
        variable: Variable name at the source
        scenario: Scenario token selecting the dataset
        bbox: (minx, miny, maxx, maxy) in bbox_crs
        time_range: (start, end) ISO dates
        source: Grid source (default: NCSSGridSource())
        cache: Download cache (default: GridCache())
        bbox_crs: CRS of bbox
        grid_crs: CRS of the returned grid

    Returns:
        GriddedSeries in the source units (mm SWE)

    Raises:
        MemberNotFound: If the source has no such variable
        GridFetchError: If the download fails
    """
    cache = cache if cache is not None else GridCache()

    cached = cache.lookup(variable, time_range)
    if cached is not None:
        try:
            return read_series(cached, variable, crs=grid_crs)
        except MemberNotFound:
            raise
        except Exception as e:
            logger.warning(f"Failed to read cached {cached.name}: {e}")
            logger.debug("Cache entry will be downloaded again")
            cache.invalidate(variable, time_range)

    source = source if source is not None else NCSSGridSource()
    request_bbox = bbox
    if str(bbox_crs) != "EPSG:4326":
        request_bbox = transform_bounds(bbox_crs, "EPSG:4326", *bbox)

    response = source.request(variable, scenario, request_bbox, time_range)
    try:
        path = cache.write(variable, time_range, response.iter_content(chunk_size=1024 * 1024))
    except requests.exceptions.RequestException as e:
        raise GridFetchError(f"Download of {variable} interrupted: {e}") from e
    finally:
        response.close()

    try:
        return read_series(path, variable, crs=grid_crs)
    except MemberNotFound:
        raise
    except Exception as e:
        # unreadable body (e.g. an HTML error page served with status 200)
        cache.invalidate(variable, time_range)
        raise GridFetchError(f"Downloaded {variable} could not be read: {e}") from e


def fetch_ensemble(
    models: Sequence[str],
    variable_template: str,
    window: TimeWindow,
    bbox: Tuple[float, float, float, float],
    source: Optional[NCSSGridSource] = None,
    cache: Optional[GridCache] = None,
    bbox_crs=DEFAULT_CRS,
    grid_crs=DEFAULT_CRS,
    max_workers: int = 1,
) -> List[EnsembleMember]:
    """
    Fetch every model for one time window, tolerating absent members.

    Members the source does not have, and members whose download fails, are
    logged and dropped; the ensemble proceeds with whatever remains.

    Args:
        models: Model names
        variable_template: Format string with {model} and {scenario}
        window: Time window (its scenario selects the dataset)
        bbox: Study area in bbox_crs
        max_workers: Parallel downloads (1 = sequential)

    Returns:
        Members in the order of models
    """
    cache = cache if cache is not None else GridCache()
    source = source if source is not None else NCSSGridSource()

    def _fetch(model: str) -> EnsembleMember:
        variable = variable_template.format(model=model, scenario=window.scenario)
        series = fetch_series(
            variable,
            window.scenario,
            bbox,
            window.time_range,
            source=source,
            cache=cache,
            bbox_crs=bbox_crs,
            grid_crs=grid_crs,
        )
        return EnsembleMember(
            model=model,
            variable=variable,
            scenario=window.scenario,
            window=window.name,
            series=series,
        )

    fetched: Dict[str, EnsembleMember] = {}
    dropped: List[str] = []

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        future_map = {executor.submit(_fetch, model): model for model in models}
        with tqdm(total=len(future_map), desc=f"Fetching {window.name}") as pbar:
            for future in as_completed(future_map):
                model = future_map[future]
                try:
                    fetched[model] = future.result()
                except MemberNotFound as e:
                    logger.warning(f"Dropping {model} for {window.name}: {e}")
                    dropped.append(model)
                except GridFetchError as e:
                    logger.error(f"Fetch failed for {model} ({window.name}): {e}")
                    dropped.append(model)
                finally:
                    pbar.update(1)

    members = [fetched[m] for m in models if m in fetched]
    logger.info(
        f"Window {window.name}: {len(members)} of {len(models)} members available"
        + (f", dropped {sorted(dropped)}" if dropped else "")
    )
    return members
