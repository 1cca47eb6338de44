"""
Tests for percent-of-normal rasters, point sampling and polygon means.
"""

import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import Point, box

from conftest import GRID_SHAPE, GRID_TRANSFORM, make_summary
from src.grids.extraction import percent_of_normal, percent_ratio, polygon_means, sample_points
from src.grids.series import RasterLayer, ShapeMismatch, SummaryRaster


def gradient_layer():
    """Layer whose value is 10*row + col."""
    rows, cols = np.indices(GRID_SHAPE)
    return RasterLayer("gradient", 10.0 * rows + cols, GRID_TRANSFORM, "EPSG:4326", "in")


class TestPercentRatio:
    """Test the scalar/array ratio."""

    def test_basic_ratio(self):
        assert percent_ratio(10.0, 20.0) == 50.0

    def test_zero_reference_is_nan(self):
        assert np.isnan(percent_ratio(5.0, 0.0))

    def test_zero_over_zero_is_nan(self):
        assert np.isnan(percent_ratio(0.0, 0.0))

    def test_missing_values_are_nan(self):
        result = percent_ratio([np.nan, 4.0], [2.0, np.nan])
        assert np.isnan(result).all()

    def test_zero_future_is_zero(self):
        assert percent_ratio(0.0, 8.0) == 0.0

    def test_self_ratio_exactly_100_for_arbitrary_values(self):
        """x / x is exact, so a grid compared with itself is 100 in every cell."""
        rng = np.random.default_rng(7)
        data = rng.uniform(0.01, 50.0, size=(200, 200))
        result = percent_ratio(data, data)
        assert int((result != 100.0).sum()) == 0


class TestPercentOfNormal:
    """Test cell-wise percent of normal."""

    def test_future_half_of_reference(self, reference_summary, future_summary):
        pct = percent_of_normal(future_summary, reference_summary)
        assert isinstance(pct, SummaryRaster)
        assert pct.units == "%"
        for channel in pct.channels:
            assert np.all(pct[channel] == 50.0)
        assert pct.attrs == {"future": "2040-2069", "reference": "1981-2010"}

    def test_self_comparison_is_100(self, reference_summary):
        pct = percent_of_normal(reference_summary, reference_summary, name="self")
        assert pct.name == "self"
        assert np.all(pct.bands() == 100.0)

    def test_zero_reference_cells_are_nan(self):
        ref_median = np.full(GRID_SHAPE, 10.0)
        ref_median[0, 0] = 0.0
        reference = make_summary("ref", [5.0, 7.0, ref_median, 12.0, 15.0])
        future = make_summary("fut", [5.0, 7.0, 5.0, 12.0, 15.0])

        pct = percent_of_normal(future, reference)

        assert np.isnan(pct["median"][0, 0])
        assert pct["median"][1, 1] == 50.0

    def test_layers(self):
        ref = RasterLayer("ref", np.full(GRID_SHAPE, 4.0), GRID_TRANSFORM, "EPSG:4326")
        fut = RasterLayer("fut", np.full(GRID_SHAPE, 5.0), GRID_TRANSFORM, "EPSG:4326")
        pct = percent_of_normal(fut, ref)
        assert isinstance(pct, RasterLayer)
        assert np.all(pct.data == 125.0)

    def test_misaligned_grids_raise(self, reference_summary):
        layer = RasterLayer("small", np.ones((2, 2)), GRID_TRANSFORM, "EPSG:4326")
        with pytest.raises(ShapeMismatch):
            percent_of_normal(layer, reference_summary)

    def test_mixed_kinds_raise(self, reference_summary):
        layer = reference_summary.layer("median")
        with pytest.raises(TypeError):
            percent_of_normal(layer, reference_summary)


class TestSamplePoints:
    """Test nearest-cell point sampling."""

    def test_samples_containing_cell(self):
        points = gpd.GeoDataFrame(
            {"station_id": ["a", "b"]},
            geometry=[Point(-121.8, 44.9), Point(-119.6, 43.1)],
            crs="EPSG:4326",
        )
        result = sample_points(gradient_layer(), points)
        assert result["station_id"].tolist() == ["a", "b"]
        assert result["gradient"].tolist() == [0.0, 34.0]

    def test_point_outside_grid_is_nan(self, reference_summary):
        points = gpd.GeoDataFrame(
            {"station_id": ["in", "out"]},
            geometry=[Point(-121.0, 44.0), Point(-100.0, 44.0)],
            crs="EPSG:4326",
        )
        result = sample_points(reference_summary, points)
        assert list(result.columns) == ["station_id", "min", "p25", "median", "p75", "max"]
        assert result.loc[0, "median"] == 20.0
        assert result.loc[1, ["min", "p25", "median", "p75", "max"]].isna().all()

    def test_points_reprojected_to_raster_crs(self):
        points = gpd.GeoDataFrame(
            {"station_id": ["a"]}, geometry=[Point(-121.8, 44.9)], crs="EPSG:4326"
        ).to_crs("EPSG:5070")
        result = sample_points(gradient_layer(), points)
        assert result["gradient"].iloc[0] == 0.0

    def test_empty_points(self, reference_summary):
        points = gpd.GeoDataFrame({"station_id": []}, geometry=[], crs="EPSG:4326")
        result = sample_points(reference_summary, points)
        assert len(result) == 0
        assert "median" in result.columns

    def test_points_without_crs_raise(self, reference_summary):
        points = gpd.GeoDataFrame({"station_id": ["a"]}, geometry=[Point(-121.8, 44.9)])
        with pytest.raises(ValueError, match="CRS"):
            sample_points(reference_summary, points)


class TestPolygonMeans:
    """Test polygon means by cell centre."""

    def test_mean_of_cells_inside(self):
        basins = gpd.GeoDataFrame(
            {"basin_id": ["nw"]}, geometry=[box(-122.0, 44.0, -121.0, 45.0)], crs="EPSG:4326"
        )
        result = polygon_means(gradient_layer(), basins)
        # rows 0-1, cols 0-1: values 0, 1, 10, 11
        assert result.loc[0, "n_cells"] == 4
        assert result.loc[0, "gradient"] == pytest.approx(5.5)

    def test_nan_cells_ignored(self):
        data = np.full(GRID_SHAPE, 6.0)
        data[0, 0] = np.nan
        layer = RasterLayer("partial", data, GRID_TRANSFORM, "EPSG:4326")
        basins = gpd.GeoDataFrame(
            {"basin_id": ["nw"]}, geometry=[box(-122.0, 44.0, -121.0, 45.0)], crs="EPSG:4326"
        )
        result = polygon_means(layer, basins)
        assert result.loc[0, "n_cells"] == 3
        assert result.loc[0, "partial"] == 6.0

    def test_polygon_outside_grid_is_nan(self, reference_summary):
        basins = gpd.GeoDataFrame(
            {"basin_id": ["in", "far"]},
            geometry=[box(-122.0, 43.0, -119.5, 45.0), box(-90.0, 30.0, -89.0, 31.0)],
            crs="EPSG:4326",
        )
        result = polygon_means(reference_summary, basins)
        assert result.loc[0, "median"] == 20.0
        assert result.loc[0, "n_cells"] == GRID_SHAPE[0] * GRID_SHAPE[1]
        assert result.loc[1, "n_cells"] == 0
        assert np.isnan(result.loc[1, "median"])

    def test_polygon_between_cell_centres_is_nan(self):
        # sliver containing no cell centre
        basins = gpd.GeoDataFrame(
            {"basin_id": ["sliver"]}, geometry=[box(-122.0, 44.9, -121.9, 45.0)], crs="EPSG:4326"
        )
        result = polygon_means(gradient_layer(), basins)
        assert result.loc[0, "n_cells"] == 0
        assert np.isnan(result.loc[0, "gradient"])
