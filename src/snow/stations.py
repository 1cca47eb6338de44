"""
Snow station inventory and normals.

Station data comes from the NRCS Air and Water Database (AWDB) REST API:
- /stations: inventory with location and HUC code
- /data: observed values per station for a date

A station normal for a time window is the mean of its snapshot-date
observations over the window's years.

Data Sources:
- AWDB: https://wcc.sc.egov.usda.gov/awdbRestApi/swagger-ui/index.html
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
import requests
from tqdm.auto import tqdm

from src.config import DEFAULT_AWDB_URL, DEFAULT_CRS, TimeWindow

logger = logging.getLogger(__name__)


class StationServiceError(RuntimeError):
    """Raised when a station or basin service request fails."""

    pass


@dataclass
class StationRecord:
    """A snow station with its basins and per-period normals."""

    station_id: str
    name: str
    x: float
    y: float
    crs: str = DEFAULT_CRS
    huc: Optional[str] = None
    elevation: Optional[float] = None
    basin_ids: Set[str] = field(default_factory=set)
    normals: Dict[str, float] = field(default_factory=dict)
    """Normal value per time-window name; absent when unavailable."""

    def __post_init__(self):
        for period, value in self.normals.items():
            if value is None or not np.isfinite(value) or value < 0:
                raise ValueError(
                    f"Station {self.station_id} normal for {period} must be non-negative, got {value}"
                )

    def normal(self, period: str) -> Optional[float]:
        return self.normals.get(period)


class AWDBClient:
    """
    Minimal client for the AWDB REST API.

    Args:
        base_url: API root (default: NRCS AWDB v1)
        timeout: Seconds per request
        batch_size: Stations per data request
    """

    def __init__(self, base_url: str = DEFAULT_AWDB_URL, timeout: float = 60.0, batch_size: int = 100):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.batch_size = batch_size

    def _get(self, endpoint: str, params: Dict[str, object]):
        url = f"{self.base_url}/{endpoint}"
        try:
            response = requests.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise StationServiceError(f"Network error querying AWDB {endpoint}: {e}") from e
        return response.json()

    def get_stations(
        self,
        bbox: Tuple[float, float, float, float],
        network: str = "SNTL",
        element: str = "WTEQ",
    ) -> List[StationRecord]:
        """
        Active stations of a network reporting an element inside a WGS84 bbox.

        Args:
            bbox: (west, south, east, north) in degrees
            network: AWDB network code (default: SNOTEL)
            element: Element the stations must report (default: SWE)

        Returns:
            StationRecords in EPSG:4326 without basins or normals
        """
        west, south, east, north = bbox
        params = {
            "stationTriplets": f"*:*:{network}",
            "elements": element,
            "activeOnly": "true",
            "returnStationElements": "false",
        }
        payload = self._get("stations", params)

        stations = []
        for item in payload:
            lat = item.get("latitude")
            lon = item.get("longitude")
            if lat is None or lon is None:
                logger.debug(f"Skipping {item.get('stationTriplet')}: no location")
                continue
            if not (west <= lon <= east and south <= lat <= north):
                continue
            stations.append(
                StationRecord(
                    station_id=item["stationTriplet"],
                    name=item.get("name", ""),
                    x=float(lon),
                    y=float(lat),
                    crs="EPSG:4326",
                    huc=item.get("huc") or None,
                    elevation=item.get("elevation"),
                )
            )

        logger.info(f"Found {len(stations)} {network} stations in bbox")
        return stations

    def get_values(
        self, station_ids: Sequence[str], element: str, on_date: date
    ) -> Dict[str, float]:
        """
        Observed value per station on one date.

        Stations without a value on that date are absent from the result.
        """
        values: Dict[str, float] = {}
        day = on_date.isoformat()
        for start in range(0, len(station_ids), self.batch_size):
            batch = station_ids[start:start + self.batch_size]
            params = {
                "stationTriplets": ",".join(batch),
                "elements": element,
                "duration": "DAILY",
                "beginDate": day,
                "endDate": day,
            }
            for station in self._get("data", params):
                triplet = station.get("stationTriplet")
                for series in station.get("data", []):
                    for point in series.get("values", []):
                        value = point.get("value")
                        if value is not None and point.get("date", "")[:10] == day:
                            values[triplet] = float(value)
        return values


def station_normals(
    client: AWDBClient,
    station_ids: Sequence[str],
    window: TimeWindow,
    month: int = 4,
    day: int = 1,
    element: str = "WTEQ",
    min_years: int = 10,
) -> Dict[str, float]:
    """
    Mean snapshot-date value per station over a time window.

    Negative observations are discarded. Stations with fewer than min_years
    valid observations get no normal for the window.

    Returns:
        Mapping of station id to normal value
    """
    observations: Dict[str, List[float]] = {sid: [] for sid in station_ids}
    for year in tqdm(window.years, desc=f"Station normals {window.name}", leave=False):
        for sid, value in client.get_values(list(station_ids), element, date(year, month, day)).items():
            if sid not in observations:
                continue
            if value < 0:
                logger.debug(f"Discarding negative {element} {value} at {sid} in {year}")
                continue
            observations[sid].append(value)

    normals = {
        sid: float(np.mean(values))
        for sid, values in observations.items()
        if len(values) >= min_years
    }
    missing = len(station_ids) - len(normals)
    if missing:
        logger.warning(
            f"{missing} of {len(station_ids)} stations lack a {window.name} normal "
            f"(< {min_years} years of data)"
        )
    return normals


def attach_normals(
    stations: Iterable[StationRecord], period: str, normals: Dict[str, float]
) -> List[StationRecord]:
    """Return copies of stations with the period's normal set where available."""
    updated = []
    for station in stations:
        merged = dict(station.normals)
        if station.station_id in normals:
            merged[period] = normals[station.station_id]
        updated.append(replace(station, normals=merged, basin_ids=set(station.basin_ids)))
    return updated


def stations_to_geodataframe(
    stations: Sequence[StationRecord], crs: Optional[str] = None
) -> gpd.GeoDataFrame:
    """
    Point GeoDataFrame of stations, one column per normal period.

    Each station is built in its own CRS and reprojected to crs (default:
    the first station's CRS).
    """
    periods = sorted({p for s in stations for p in s.normals})
    target_crs = crs or (stations[0].crs if stations else DEFAULT_CRS)

    frames = []
    for station_crs in dict.fromkeys(s.crs for s in stations):
        group = [s for s in stations if s.crs == station_crs]
        df = pd.DataFrame.from_records([
            {
                "station_id": s.station_id,
                "name": s.name,
                "huc": s.huc,
                "elevation": s.elevation,
                "basin_ids": sorted(s.basin_ids),
                **{f"normal_{p}": s.normals.get(p, np.nan) for p in periods},
                "x": s.x,
                "y": s.y,
            }
            for s in group
        ])
        gdf = gpd.GeoDataFrame(
            df.drop(columns=["x", "y"]),
            geometry=gpd.points_from_xy(df["x"], df["y"]),
            crs=station_crs,
        )
        frames.append(gdf.to_crs(target_crs))

    if not frames:
        columns = ["station_id", "name", "huc", "elevation", "basin_ids"]
        return gpd.GeoDataFrame({c: [] for c in columns}, geometry=[], crs=target_crs)

    return gpd.GeoDataFrame(pd.concat(frames, ignore_index=True), crs=target_crs)
