"""
End-to-end SWE projection comparison pipeline.

Example:
    from src.config import PipelineConfig
    from src.snow.pipeline import run_pipeline

    config = PipelineConfig(bbox=(-122.0, 44.0, -121.0, 45.0), huc_filter=["1709"])
    report = run_pipeline(config)
    print(report.basin_station_tables["1981-2010"])

Tasks in pipeline:
1. summarize_window: fetch ensemble, annual snapshots, two-stage aggregation
2. load_basins: WBD basins for the study area
3. load_stations: AWDB stations, basin membership, per-period normals
4. compare: percent-of-normal raster, station table, basin tables
5. write_outputs: GeoTIFF layers, CSV tables, PNG maps
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import geopandas as gpd
import pandas as pd
from rasterio.warp import transform_bounds

from src.config import PipelineConfig, TimeWindow
from src.grids.acquisition import NCSSGridSource, fetch_ensemble
from src.grids.cache import GridCache
from src.grids.ensemble import summarize_ensemble
from src.grids.extraction import percent_of_normal
from src.grids.series import EnsembleMember, SummaryRaster
from src.grids.temporal import annual_snapshots
from src.snow.basins import BasinPolygon, WBDClient, assign_basins, basins_to_geodataframe
from src.snow.comparison import (
    basin_raster_summary,
    basin_station_summary,
    station_comparison,
)
from src.snow.reporting import (
    plot_basin_map,
    plot_percent_map,
    write_raster_geotiff,
    write_table,
)
from src.snow.stations import (
    AWDBClient,
    StationRecord,
    attach_normals,
    station_normals,
    stations_to_geodataframe,
)

logger = logging.getLogger(__name__)


@dataclass
class ComparisonReport:
    """Everything one pipeline run derives. Nothing here is cached."""

    summaries: Dict[str, SummaryRaster] = field(default_factory=dict)
    percent: Dict[str, SummaryRaster] = field(default_factory=dict)
    station_tables: Dict[str, pd.DataFrame] = field(default_factory=dict)
    basin_station_tables: Dict[str, pd.DataFrame] = field(default_factory=dict)
    basin_raster_tables: Dict[str, pd.DataFrame] = field(default_factory=dict)
    stations: List[StationRecord] = field(default_factory=list)
    basins: Optional[gpd.GeoDataFrame] = None
    outputs: List[Path] = field(default_factory=list)


class SnowComparisonPipeline:
    """
    Runs the comparison for one PipelineConfig.

    External services are injected so they can be replaced in tests; the
    defaults talk to THREDDS NCSS, NRCS AWDB and USGS WBD.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        grid_source: Optional[NCSSGridSource] = None,
        station_client: Optional[AWDBClient] = None,
        basin_client: Optional[WBDClient] = None,
        cache: Optional[GridCache] = None,
        verbose: bool = True,
    ):
        self.config = config
        self.grid_source = grid_source or NCSSGridSource(
            base_url=config.grid_url,
            dataset_template=config.grid_dataset,
            timeout=config.timeout,
        )
        self.station_client = station_client or AWDBClient(base_url=config.awdb_url)
        self.basin_client = basin_client or WBDClient(base_url=config.wbd_url)
        self.cache = cache or GridCache(cache_dir=config.cache_dir)
        self.verbose = verbose

    def _log(self, msg: str, *args, level: str = "info"):
        """Log message if verbose with lazy formatting."""
        if self.verbose:
            if level == "info":
                logger.info(msg, *args)
            elif level == "debug":
                logger.debug(msg, *args)
            elif level == "warn":
                logger.warning(msg, *args)

    @property
    def geographic_bbox(self):
        """Study area in WGS84 degrees (west, south, east, north)."""
        if str(self.config.bbox_crs) == "EPSG:4326":
            return self.config.bbox
        return transform_bounds(self.config.bbox_crs, "EPSG:4326", *self.config.bbox)

    # ===== Tasks =====

    def fetch_members(self, window: TimeWindow) -> List[EnsembleMember]:
        """Task: fetch every available member of a window."""
        members = fetch_ensemble(
            self.config.models,
            self.config.variable_template,
            window,
            self.config.bbox,
            source=self.grid_source,
            cache=self.cache,
            bbox_crs=self.config.bbox_crs,
            grid_crs=self.config.grid_crs,
            max_workers=self.config.max_workers,
        )
        if not members:
            raise RuntimeError(f"No ensemble members available for {window.name}")
        return members

    def summarize_window(self, window: TimeWindow) -> SummaryRaster:
        """Task: ensemble summary raster of one window in the configured units."""
        self._log("Summarizing window %s (%s)", window.name, window.scenario)
        members = self.fetch_members(window)
        snapshots = [
            EnsembleMember(
                model=m.model,
                variable=m.variable,
                scenario=m.scenario,
                window=m.window,
                series=annual_snapshots(
                    m.series,
                    month=self.config.snapshot_month,
                    factor=self.config.unit_factor,
                    units=self.config.units,
                ),
            )
            for m in members
        ]
        return summarize_ensemble(snapshots, name=window.name)

    def load_basins(self) -> List[BasinPolygon]:
        """Task: reporting basins in EPSG:4326."""
        return self.basin_client.get_basins(
            self.geographic_bbox,
            huc_level=self.config.huc_level,
            huc_filter=self.config.huc_filter,
        )

    def load_stations(self, basins: Optional[List[BasinPolygon]] = None) -> List[StationRecord]:
        """Task: stations with basin membership and reference-period normals."""
        stations = self.station_client.get_stations(
            self.geographic_bbox,
            network=self.config.station_network,
            element=self.config.station_element,
        )
        if basins is not None:
            stations = assign_basins(stations, basins)
            if self.config.huc_filter:
                stations = [s for s in stations if s.basin_ids]
                self._log("%d stations inside the selected basins", len(stations))

        station_ids = [s.station_id for s in stations]
        for name in self.config.reference_windows:
            window = self.config.window(name)
            normals = station_normals(
                self.station_client,
                station_ids,
                window,
                month=self.config.snapshot_month,
                element=self.config.station_element,
                min_years=self.config.min_normal_years,
            )
            stations = attach_normals(stations, window.name, normals)
        return stations

    def compare(
        self,
        reference: SummaryRaster,
        future: SummaryRaster,
        stations: List[StationRecord],
        basins: gpd.GeoDataFrame,
        report: ComparisonReport,
    ) -> None:
        """Task: percent-of-normal raster plus station and basin tables."""
        pct = percent_of_normal(future, reference, name=f"{future.name}_pct_{reference.name}")
        report.percent[reference.name] = pct

        table = station_comparison(stations, reference.name, reference, future, pct)
        report.station_tables[reference.name] = table
        report.basin_station_tables[reference.name] = basin_station_summary(
            table, stations, basins, min_stations=self.config.min_stations
        )
        report.basin_raster_tables[reference.name] = basin_raster_summary(pct, basins)
        self._log(
            "%s vs %s: %d stations, %d basins from stations, %d basins from raster",
            future.name,
            reference.name,
            len(table),
            len(report.basin_station_tables[reference.name]),
            len(report.basin_raster_tables[reference.name]),
        )

    def write_outputs(self, report: ComparisonReport) -> List[Path]:
        """Task: write rasters, tables and maps under config.output_dir."""
        out_dir = self.config.output_dir
        outputs = []
        for name, summary in report.summaries.items():
            outputs.append(write_raster_geotiff(summary, out_dir / f"swe_summary_{name}.tif"))

        station_gdf = stations_to_geodataframe(report.stations) if report.stations else None
        for name, pct in report.percent.items():
            tag = f"{self.config.future_window}_vs_{name}"
            outputs.append(write_raster_geotiff(pct, out_dir / f"pct_of_normal_{tag}.tif"))
            outputs.append(write_table(report.station_tables[name], out_dir / f"stations_{tag}.csv"))
            outputs.append(write_table(report.basin_station_tables[name], out_dir / f"basins_stations_{tag}.csv"))
            outputs.append(write_table(report.basin_raster_tables[name], out_dir / f"basins_raster_{tag}.csv"))
            if self.config.render_maps:
                outputs.append(
                    plot_percent_map(
                        pct,
                        out_dir / f"pct_of_normal_{tag}.png",
                        basins=report.basins,
                        stations=station_gdf,
                        station_values=report.station_tables[name],
                        title=f"April 1 SWE {self.config.future_window} as % of {name}",
                    )
                )
                outputs.append(
                    plot_basin_map(
                        report.basins,
                        report.basin_station_tables[name],
                        "mean_projected_pct",
                        out_dir / f"basins_stations_{tag}.png",
                        title=f"Basin mean station projection, % of {name}",
                    )
                )
        return outputs

    def run(self, write: bool = True) -> ComparisonReport:
        """Run every task in order and return the report."""
        report = ComparisonReport()
        config = self.config

        self._log("[1/5] Summarizing %d windows", len(config.windows))
        needed = [*config.reference_windows, config.future_window]
        for window in config.windows:
            if window.name in needed:
                report.summaries[window.name] = self.summarize_window(window)

        self._log("[2/5] Loading basins")
        basin_records = self.load_basins()
        report.basins = basins_to_geodataframe(basin_records)

        self._log("[3/5] Loading stations")
        report.stations = self.load_stations(basin_records)

        self._log("[4/5] Comparing %s against references", config.future_window)
        future = report.summaries[config.future_window]
        for name in config.reference_windows:
            self.compare(report.summaries[name], future, report.stations, report.basins, report)

        if write:
            self._log("[5/5] Writing outputs to %s", config.output_dir)
            report.outputs = self.write_outputs(report)
        return report


def run_pipeline(config: PipelineConfig, **kwargs) -> ComparisonReport:
    """
    Run the comparison pipeline for a configuration.

    Args:
        config: Explicit run configuration
        **kwargs: Service overrides passed to SnowComparisonPipeline
            (grid_source, station_client, basin_client, cache)

    Returns:
        ComparisonReport with rasters, tables and written paths
    """
    write = kwargs.pop("write", True)
    return SnowComparisonPipeline(config, **kwargs).run(write=write)
