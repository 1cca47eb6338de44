"""
Gridded data model for ensemble SWE processing.

- GriddedSeries: one variable on one grid, ordered monthly timestamps
- EnsembleMember: a GriddedSeries tagged with model, scenario and time window
- RasterLayer: a single aligned 2D grid (e.g. one summary channel)
- SummaryRaster: the five-channel ensemble summary of one time window

Every grid carries its own affine transform and CRS; nothing is inferred
from call order.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Tuple, Union

import numpy as np
import pandas as pd
import rasterio.crs as rcrs
from affine import Affine

logger = logging.getLogger(__name__)

CHANNELS = ("min", "p25", "median", "p75", "max")


class ShapeMismatch(ValueError):
    """Raised when two grids that must share a cell grid do not."""

    pass


def _as_crs(crs) -> rcrs.CRS:
    if isinstance(crs, rcrs.CRS):
        return crs
    return rcrs.CRS.from_user_input(crs)


def _read_only(arr: np.ndarray) -> np.ndarray:
    arr = np.array(arr, dtype=np.float64, copy=True)
    arr.setflags(write=False)
    return arr


def grid_bounds(transform: Affine, shape: Tuple[int, int]) -> Tuple[float, float, float, float]:
    """(minx, miny, maxx, maxy) of a north-up grid."""
    height, width = shape
    x0, y0 = transform * (0, 0)
    x1, y1 = transform * (width, height)
    return (min(x0, x1), min(y0, y1), max(x0, x1), max(y0, y1))


def check_alignment(a, b, precision: float = 1e-9) -> None:
    """
    Validate that two grids share shape, transform and CRS.

    Args:
        a, b: Objects exposing grid_shape, transform and crs
        precision: Tolerance for transform coefficients

    Raises:
        ShapeMismatch: If any of the three differ
    """
    if a.grid_shape != b.grid_shape:
        raise ShapeMismatch(f"Grid shape mismatch: {a.grid_shape} vs {b.grid_shape}")
    if not a.transform.almost_equals(b.transform, precision=precision):
        raise ShapeMismatch(f"Grid transform mismatch: {a.transform} vs {b.transform}")
    if a.crs != b.crs:
        raise ShapeMismatch(f"CRS mismatch: {a.crs} vs {b.crs}")


@dataclass
class GriddedSeries:
    """A time series of 2D grids for one variable."""

    variable: str
    data: np.ndarray
    """Values with shape (time, rows, cols); missing cells are NaN."""

    times: pd.DatetimeIndex
    transform: Affine
    crs: rcrs.CRS
    units: str = "mm"

    def __post_init__(self):
        self.data = np.asarray(self.data, dtype=np.float64)
        self.times = pd.DatetimeIndex(self.times)
        self.crs = _as_crs(self.crs)
        if self.data.ndim != 3:
            raise ValueError(f"Series data must be 3D (time, rows, cols), got {self.data.ndim}D")
        if len(self.times) != self.data.shape[0]:
            raise ValueError(
                f"Series {self.variable} has {len(self.times)} timestamps "
                f"but {self.data.shape[0]} grids"
            )
        if len(self.times) > 1 and not (np.diff(self.times.asi8) > 0).all():
            raise ValueError(f"Series {self.variable} timestamps must be strictly increasing")

    @property
    def grid_shape(self) -> Tuple[int, int]:
        return self.data.shape[1:]

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        return grid_bounds(self.transform, self.grid_shape)

    @property
    def years(self) -> np.ndarray:
        return self.times.year.values

    def __len__(self):
        return len(self.times)

    def subset(self, mask) -> "GriddedSeries":
        """Return a new series holding only the timestamps selected by mask."""
        mask = np.asarray(mask)
        return GriddedSeries(
            variable=self.variable,
            data=self.data[mask],
            times=self.times[mask],
            transform=self.transform,
            crs=self.crs,
            units=self.units,
        )


@dataclass
class EnsembleMember:
    """One model's series for a (variable, scenario, time window) triple."""

    model: str
    variable: str
    scenario: str
    window: str
    series: GriddedSeries

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.variable, self.scenario, self.window)


@dataclass(frozen=True)
class RasterLayer:
    """A single 2D grid with its georeferencing."""

    name: str
    data: np.ndarray
    transform: Affine
    crs: rcrs.CRS
    units: str = ""

    def __post_init__(self):
        object.__setattr__(self, "data", _read_only(self.data))
        object.__setattr__(self, "crs", _as_crs(self.crs))
        if self.data.ndim != 2:
            raise ValueError(f"Layer {self.name} must be 2D, got {self.data.ndim}D")

    @property
    def grid_shape(self) -> Tuple[int, int]:
        return self.data.shape

    @property
    def channels(self) -> Tuple[str, ...]:
        return (self.name,)

    def bands(self) -> np.ndarray:
        return self.data[np.newaxis, ...]


@dataclass(frozen=True)
class SummaryRaster:
    """
    Five-channel ensemble summary (min, p25, median, p75, max) of one window.

    Arrays are read-only after construction.
    """

    name: str
    channel_data: Dict[str, np.ndarray]
    transform: Affine
    crs: rcrs.CRS
    units: str = ""
    attrs: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        missing = [c for c in CHANNELS if c not in self.channel_data]
        if missing:
            raise ValueError(f"Summary raster {self.name} missing channels: {missing}")
        data = {c: _read_only(self.channel_data[c]) for c in CHANNELS}
        shapes = {arr.shape for arr in data.values()}
        if len(shapes) != 1:
            raise ShapeMismatch(f"Summary raster {self.name} channels differ in shape: {shapes}")
        if len(next(iter(shapes))) != 2:
            raise ValueError(f"Summary raster {self.name} channels must be 2D")
        object.__setattr__(self, "channel_data", data)
        object.__setattr__(self, "crs", _as_crs(self.crs))

    @property
    def channels(self) -> Tuple[str, ...]:
        return CHANNELS

    @property
    def grid_shape(self) -> Tuple[int, int]:
        return self.channel_data[CHANNELS[0]].shape

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        return grid_bounds(self.transform, self.grid_shape)

    def __getitem__(self, channel: str) -> np.ndarray:
        return self.channel_data[channel]

    def bands(self) -> np.ndarray:
        """Channels stacked to shape (5, rows, cols)."""
        return np.stack([self.channel_data[c] for c in CHANNELS])

    def layer(self, channel: str) -> RasterLayer:
        return RasterLayer(
            name=f"{self.name}_{channel}",
            data=self.channel_data[channel],
            transform=self.transform,
            crs=self.crs,
            units=self.units,
        )


Raster = Union[SummaryRaster, RasterLayer]
