"""
Watershed basin polygons and station-to-basin membership.

Basins come from the USGS Watershed Boundary Dataset (WBD) ArcGIS REST
service, one layer per hydrologic unit level.

Data Sources:
- WBD: https://hydro.nationalmap.gov/arcgis/rest/services/wbd/MapServer
"""

import logging
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Set, Tuple

import geopandas as gpd
import pandas as pd
import requests

from src.config import DEFAULT_CRS, DEFAULT_WBD_URL
from src.snow.stations import StationRecord, StationServiceError, stations_to_geodataframe

logger = logging.getLogger(__name__)

# WBD MapServer layer IDs (from service metadata)
HUC_LAYERS = {2: 1, 4: 2, 6: 3, 8: 4, 10: 5, 12: 6}


@dataclass(frozen=True)
class BasinPolygon:
    """A watershed basin keyed by its hydrologic unit code."""

    basin_id: str
    name: str
    huc: str
    geometry: object
    crs: str = DEFAULT_CRS


class WBDClient:
    """
    Client for the WBD ArcGIS REST query endpoint.

    Args:
        base_url: MapServer root
        timeout: Seconds per request
    """

    def __init__(self, base_url: str = DEFAULT_WBD_URL, timeout: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def get_basins(
        self,
        bbox: Tuple[float, float, float, float],
        huc_level: int = 8,
        huc_filter: Optional[Sequence[str]] = None,
    ) -> List[BasinPolygon]:
        """
        Basins of one HUC level intersecting a WGS84 bbox.

        Args:
            bbox: (west, south, east, north) in degrees
            huc_level: 2, 4, 6, 8, 10 or 12
            huc_filter: Keep only basins whose code starts with one of these

        Returns:
            BasinPolygons in EPSG:4326
        """
        if huc_level not in HUC_LAYERS:
            raise ValueError(f"Unknown HUC level: {huc_level}. Available: {sorted(HUC_LAYERS)}")

        west, south, east, north = bbox
        huc_field = f"huc{huc_level}"
        params = {
            "geometry": f"{west},{south},{east},{north}",
            "geometryType": "esriGeometryEnvelope",
            "inSR": "4326",
            "outSR": "4326",
            "spatialRel": "esriSpatialRelIntersects",
            "outFields": f"{huc_field},name",
            "f": "geojson",
        }
        url = f"{self.base_url}/{HUC_LAYERS[huc_level]}/query"
        try:
            response = requests.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise StationServiceError(f"Network error downloading WBD basins: {e}") from e

        geojson = response.json()
        if geojson.get("exceededTransferLimit") or geojson.get("properties", {}).get("exceededTransferLimit"):
            logger.warning("WBD query hit the service record limit; some basins may be missing")

        basins = basins_from_geojson(geojson, huc_field)
        if huc_filter:
            prefixes = tuple(str(code) for code in huc_filter)
            basins = [b for b in basins if b.huc.startswith(prefixes)]

        logger.info(f"Loaded {len(basins)} HUC{huc_level} basins")
        return basins


def basins_from_geojson(geojson: Dict, huc_field: str) -> List[BasinPolygon]:
    """Convert a GeoJSON FeatureCollection of WBD units to BasinPolygons."""
    features = geojson.get("features", [])
    if not features:
        return []
    gdf = gpd.GeoDataFrame.from_features(features, crs=DEFAULT_CRS)
    basins = []
    for _, row in gdf.iterrows():
        huc = row.get(huc_field)
        if huc is None or row.geometry is None:
            continue
        huc = str(huc)
        basins.append(
            BasinPolygon(
                basin_id=huc,
                name=str(row.get("name") or huc),
                huc=huc,
                geometry=row.geometry,
                crs=DEFAULT_CRS,
            )
        )
    return basins


def basins_to_geodataframe(
    basins: Sequence[BasinPolygon], crs: Optional[str] = None
) -> gpd.GeoDataFrame:
    """Polygon GeoDataFrame of basins, reprojected to crs (default: first basin's CRS)."""
    target_crs = crs or (basins[0].crs if basins else DEFAULT_CRS)
    frames = []
    for basin_crs in dict.fromkeys(b.crs for b in basins):
        group = [b for b in basins if b.crs == basin_crs]
        gdf = gpd.GeoDataFrame(
            {
                "basin_id": [b.basin_id for b in group],
                "name": [b.name for b in group],
                "huc": [b.huc for b in group],
            },
            geometry=[b.geometry for b in group],
            crs=basin_crs,
        )
        frames.append(gdf.to_crs(target_crs))

    if not frames:
        return gpd.GeoDataFrame({"basin_id": [], "name": [], "huc": []}, geometry=[], crs=target_crs)
    if len(frames) == 1:
        return frames[0]
    return gpd.GeoDataFrame(pd.concat(frames, ignore_index=True), crs=target_crs)


def assign_basins(
    stations: Sequence[StationRecord], basins: Sequence[BasinPolygon]
) -> List[StationRecord]:
    """
    Attach basin memberships to stations.

    A station with a HUC code belongs to every basin whose code is a prefix
    of it, so one station can belong to several nested or listed basins.
    Stations without a HUC code are placed by point-in-polygon.

    Returns:
        Copies of stations with basin_ids set
    """
    memberships: Dict[str, Set[str]] = {s.station_id: set() for s in stations}

    for station in stations:
        if station.huc:
            memberships[station.station_id].update(
                b.basin_id for b in basins if station.huc.startswith(b.huc)
            )

    unplaced = [s for s in stations if not s.huc]
    if unplaced and basins:
        points = stations_to_geodataframe(unplaced)[["station_id", "geometry"]]
        polygons = basins_to_geodataframe(basins, crs=points.crs)[["basin_id", "geometry"]]
        joined = gpd.sjoin(points, polygons, how="inner", predicate="within")
        for station_id, basin_id in zip(joined["station_id"], joined["basin_id"]):
            memberships[station_id].add(basin_id)

    outside = sum(1 for ids in memberships.values() if not ids)
    if outside:
        logger.info(f"{outside} of {len(stations)} stations fall outside every basin")

    return [replace(s, basin_ids=memberships[s.station_id]) for s in stations]
