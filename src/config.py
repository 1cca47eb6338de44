"""Configuration module for the SWE projection comparison project.

Centralizes data paths and the explicit pipeline configuration object.
"""
import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Data directories
DATA_DIR = PROJECT_ROOT / "data"
CACHE_DIR = DATA_DIR / "cache"
GRID_CACHE = CACHE_DIR / "grids"
OUTPUT_DIR = PROJECT_ROOT / "output"

# Default settings
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_CRS = "EPSG:4326"
MM_TO_INCHES = 0.0393701

# Remote services
DEFAULT_GRID_URL = "https://cida.usgs.gov/thredds/ncss"
DEFAULT_GRID_DATASET = "loca_{scenario}"
DEFAULT_AWDB_URL = "https://wcc.sc.egov.usda.gov/awdbRestApi/services/v1"
DEFAULT_WBD_URL = "https://hydro.nationalmap.gov/arcgis/rest/services/wbd/MapServer"

# LOCA ensemble used for SWE projections
DEFAULT_MODELS = [
    "ACCESS1-0", "ACCESS1-3", "CCSM4", "CESM1-BGC", "CESM1-CAM5",
    "CMCC-CM", "CMCC-CMS", "CNRM-CM5", "CSIRO-Mk3-6-0", "CanESM2",
    "EC-EARTH", "FGOALS-g2", "GFDL-CM3", "GFDL-ESM2G", "GFDL-ESM2M",
    "GISS-E2-H", "GISS-E2-R", "HadGEM2-AO", "HadGEM2-CC", "HadGEM2-ES",
    "IPSL-CM5A-LR", "IPSL-CM5A-MR", "MIROC-ESM", "MIROC-ESM-CHEM", "MIROC5",
    "MPI-ESM-LR", "MPI-ESM-MR", "MRI-CGCM3", "NorESM1-M", "bcc-csm1-1",
    "inmcm4",
]


@dataclass(frozen=True)
class TimeWindow:
    """A named span of whole years served from one scenario."""

    name: str
    start_year: int
    end_year: int
    scenario: str = "historical"

    def __post_init__(self):
        if self.end_year < self.start_year:
            raise ValueError(
                f"Invalid time window {self.name}: end year {self.end_year} "
                f"before start year {self.start_year}"
            )

    @property
    def time_range(self) -> Tuple[str, str]:
        """(start, end) ISO dates covering the whole window."""
        return (f"{self.start_year:04d}-01-01", f"{self.end_year:04d}-12-31")

    @property
    def years(self) -> List[int]:
        return list(range(self.start_year, self.end_year + 1))


DEFAULT_WINDOWS = [
    TimeWindow("1971-2000", 1971, 2000, "historical"),
    TimeWindow("1981-2010", 1981, 2010, "historical"),
    TimeWindow("2040-2069", 2040, 2069, "rcp45"),
]


@dataclass
class PipelineConfig:
    """Configuration for one run of the SWE comparison pipeline."""

    bbox: Tuple[float, float, float, float] = (-124.8, 41.9, -116.4, 46.3)
    """Study area (minx, miny, maxx, maxy) expressed in bbox_crs."""

    bbox_crs: str = DEFAULT_CRS
    """CRS of bbox (default: WGS84 geographic)."""

    grid_crs: str = DEFAULT_CRS
    """CRS of the downloaded grids."""

    models: List[str] = field(default_factory=lambda: list(DEFAULT_MODELS))
    """Ensemble members to request."""

    variable_template: str = "SWE_{model}_r1i1p1_{scenario}"
    """Per-member variable name at the grid source."""

    windows: List[TimeWindow] = field(default_factory=lambda: list(DEFAULT_WINDOWS))
    """Time windows to summarize."""

    reference_windows: List[str] = field(default_factory=lambda: ["1971-2000", "1981-2010"])
    """Windows compared against the future window (one comparison each)."""

    future_window: str = "2040-2069"
    """Window holding the projection."""

    snapshot_month: int = 4
    """Calendar month of the annual snapshot (default: April)."""

    unit_factor: float = MM_TO_INCHES
    """Linear factor applied to grid values (default: mm -> inches)."""

    units: str = "in"
    """Units after conversion."""

    huc_level: int = 8
    """Hydrologic unit level of the reporting basins."""

    huc_filter: Optional[List[str]] = None
    """Keep only basins whose HUC starts with one of these codes."""

    min_stations: int = 3
    """Minimum contributing stations for a basin to be reported."""

    min_normal_years: int = 10
    """Minimum years of station observations to form a normal."""

    station_network: str = "SNTL"
    """AWDB network code for stations."""

    station_element: str = "WTEQ"
    """AWDB element code for SWE."""

    cache_dir: Path = GRID_CACHE
    """Directory of the raw grid download cache."""

    output_dir: Path = OUTPUT_DIR
    """Directory for tables and map layers."""

    max_workers: int = 4
    """Parallel member downloads (1 = sequential)."""

    grid_url: str = DEFAULT_GRID_URL
    grid_dataset: str = DEFAULT_GRID_DATASET
    awdb_url: str = DEFAULT_AWDB_URL
    wbd_url: str = DEFAULT_WBD_URL

    timeout: float = 600.0
    """Seconds before a grid request is abandoned."""

    render_maps: bool = True
    """Write PNG maps next to the tables."""

    def __post_init__(self):
        self.cache_dir = Path(self.cache_dir)
        self.output_dir = Path(self.output_dir)
        self.bbox = tuple(self.bbox)
        self.windows = [
            w if isinstance(w, TimeWindow) else TimeWindow(**w) for w in self.windows
        ]
        if len(self.bbox) != 4:
            raise ValueError("bbox must be a tuple/list with 4 values (minx, miny, maxx, maxy)")
        minx, miny, maxx, maxy = self.bbox
        if minx >= maxx or miny >= maxy:
            raise ValueError(
                f"Invalid bbox: coordinates must be (minx, miny, maxx, maxy). "
                f"Got ({minx}, {miny}, {maxx}, {maxy})"
            )
        if not 1 <= self.snapshot_month <= 12:
            raise ValueError(f"snapshot_month must be 1-12, got {self.snapshot_month}")
        if self.min_stations < 1:
            raise ValueError(f"min_stations must be >= 1, got {self.min_stations}")
        names = [w.name for w in self.windows]
        for name in [*self.reference_windows, self.future_window]:
            if name not in names:
                raise ValueError(f"Unknown time window '{name}'. Available: {names}")

    def window(self, name: str) -> TimeWindow:
        for w in self.windows:
            if w.name == name:
                return w
        raise KeyError(name)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["cache_dir"] = str(self.cache_dir)
        data["output_dir"] = str(self.output_dir)
        data["bbox"] = list(self.bbox)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        unknown = set(data) - set(cls.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")
        return cls(**data)

    @classmethod
    def from_json(cls, path) -> "PipelineConfig":
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))
