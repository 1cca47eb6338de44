"""
Tests for grid acquisition.

Network calls are mocked; NetCDF responses are small files written with
xarray.
"""

import numpy as np
import pytest
import requests
from unittest.mock import Mock, patch

from src.config import TimeWindow
from src.grids.acquisition import (
    GridFetchError,
    MemberNotFound,
    NCSSGridSource,
    fetch_ensemble,
    fetch_series,
    read_series,
)
from src.grids.cache import GridCache

BBOX = (-122.0, 43.0, -119.5, 45.0)
WINDOW = TimeWindow("2001-2002", 2001, 2002)


def _response(status=200, content=b"", text=""):
    response = Mock()
    response.status_code = status
    response.text = text
    response.iter_content.return_value = iter([content])
    return response


class TestNCSSGridSource:
    """Test request building and status handling."""

    def test_build_params(self):
        source = NCSSGridSource(base_url="https://example.org/thredds/ncss/")
        params = source.build_params("SWE_CCSM4", (-122.0, 43.0, -119.5, 45.0), ("2001-01-01", "2002-12-31"))

        assert params["var"] == "SWE_CCSM4"
        assert (params["west"], params["south"], params["east"], params["north"]) == (-122.0, 43.0, -119.5, 45.0)
        assert params["time_start"] == "2001-01-01T00:00:00Z"
        assert params["time_end"] == "2002-12-31T23:59:59Z"
        assert params["accept"] == "netcdf"

    def test_dataset_url_uses_scenario(self):
        source = NCSSGridSource(base_url="https://example.org/ncss/", dataset_template="loca_{scenario}")
        assert source.dataset_url("rcp45") == "https://example.org/ncss/loca_rcp45"

    def test_404_is_member_not_found(self):
        source = NCSSGridSource()
        with patch("src.grids.acquisition.requests.get", return_value=_response(404, text="Not Found")):
            with pytest.raises(MemberNotFound):
                source.request("SWE_X", "rcp45", BBOX, WINDOW.time_range)

    def test_400_missing_variable_is_member_not_found(self):
        source = NCSSGridSource()
        body = "Variable SWE_X is not contained in the requested dataset"
        with patch("src.grids.acquisition.requests.get", return_value=_response(400, text=body)):
            with pytest.raises(MemberNotFound):
                source.request("SWE_X", "rcp45", BBOX, WINDOW.time_range)

    def test_server_error_is_fetch_error(self):
        source = NCSSGridSource()
        with patch("src.grids.acquisition.requests.get", return_value=_response(503, text="busy")):
            with pytest.raises(GridFetchError, match="503"):
                source.request("SWE_X", "rcp45", BBOX, WINDOW.time_range)

    def test_network_error_is_fetch_error(self):
        source = NCSSGridSource()
        with patch(
            "src.grids.acquisition.requests.get",
            side_effect=requests.exceptions.ConnectionError("refused"),
        ):
            with pytest.raises(GridFetchError, match="Network error"):
                source.request("SWE_X", "rcp45", BBOX, WINDOW.time_range)


class TestReadSeries:
    """Test NetCDF parsing into north-up series."""

    def test_read_orients_grid_north_up(self, monthly_netcdf):
        path = monthly_netcdf()
        series = read_series(path, "SWE_test")

        assert series.grid_shape == (4, 5)
        assert len(series) == 24
        # 0-360 longitudes wrapped, ascending latitudes flipped
        assert series.transform.c == pytest.approx(-122.0)
        assert series.transform.f == pytest.approx(45.0)
        assert series.transform.a == pytest.approx(0.5)
        assert series.transform.e == pytest.approx(-0.5)
        assert series.bounds == pytest.approx((-122.0, 43.0, -119.5, 45.0))

    def test_read_values_follow_columns(self, monthly_netcdf):
        series = read_series(monthly_netcdf(), "SWE_test")
        april_2002 = int(np.flatnonzero((series.times.year == 2002) & (series.times.month == 4))[0])
        assert list(series.data[april_2002, 0]) == [2040, 2041, 2042, 2043, 2044]

    def test_missing_variable_raises(self, monthly_netcdf):
        path = monthly_netcdf(variable="SWE_other")
        with pytest.raises(MemberNotFound):
            read_series(path, "SWE_test")


class TestFetchSeries:
    """Test cache-first fetching."""

    def test_download_then_cache_hit(self, monthly_netcdf, cache_dir):
        content = monthly_netcdf().read_bytes()
        cache = GridCache(cache_dir=cache_dir)
        source = Mock(spec=NCSSGridSource)
        source.request.return_value = _response(content=content)

        first = fetch_series("SWE_test", "historical", BBOX, WINDOW.time_range, source=source, cache=cache)
        second = fetch_series("SWE_test", "historical", BBOX, WINDOW.time_range, source=source, cache=cache)

        assert source.request.call_count == 1
        np.testing.assert_array_equal(first.data, second.data)

    def test_corrupt_cache_entry_is_refetched(self, monthly_netcdf, cache_dir):
        content = monthly_netcdf().read_bytes()
        cache = GridCache(cache_dir=cache_dir)
        cache.write("SWE_test", WINDOW.time_range, [b"not a netcdf file"])
        source = Mock(spec=NCSSGridSource)
        source.request.return_value = _response(content=content)

        series = fetch_series("SWE_test", "historical", BBOX, WINDOW.time_range, source=source, cache=cache)

        assert source.request.call_count == 1
        assert len(series) == 24

    def test_unreadable_download_raises_fetch_error(self, cache_dir):
        cache = GridCache(cache_dir=cache_dir)
        source = Mock(spec=NCSSGridSource)
        source.request.return_value = _response(content=b"<html>proxy error page</html>")

        with pytest.raises(GridFetchError, match="could not be read"):
            fetch_series("SWE_test", "historical", BBOX, WINDOW.time_range, source=source, cache=cache)

        assert cache.lookup("SWE_test", WINDOW.time_range) is None

    def test_interrupted_download_raises_fetch_error(self, cache_dir):
        cache = GridCache(cache_dir=cache_dir)
        response = _response()
        response.iter_content.side_effect = requests.exceptions.ChunkedEncodingError("reset")
        source = Mock(spec=NCSSGridSource)
        source.request.return_value = response

        with pytest.raises(GridFetchError, match="interrupted"):
            fetch_series("SWE_test", "historical", BBOX, WINDOW.time_range, source=source, cache=cache)

        response.close.assert_called_once()
        assert cache.lookup("SWE_test", WINDOW.time_range) is None


class TestFetchEnsemble:
    """Test ensemble fetching with absent members."""

    def test_missing_member_is_dropped(self, monthly_netcdf, cache_dir, tmp_path):
        contents = {
            model: monthly_netcdf(variable=f"SWE_{model}", path=tmp_path / f"{model}.nc").read_bytes()
            for model in ("A", "C")
        }

        def fake_request(variable, scenario, bbox, time_range):
            model = variable.split("_")[1]
            if model not in contents:
                raise MemberNotFound(f"{variable} not available")
            return _response(content=contents[model])

        source = Mock(spec=NCSSGridSource)
        source.request.side_effect = fake_request

        members = fetch_ensemble(
            ["A", "B", "C"], "SWE_{model}", WINDOW, BBOX,
            source=source, cache=GridCache(cache_dir=cache_dir),
        )

        assert [m.model for m in members] == ["A", "C"]
        assert all(m.window == "2001-2002" and m.scenario == "historical" for m in members)

    def test_failed_download_is_dropped(self, monthly_netcdf, cache_dir, tmp_path):
        content = monthly_netcdf(variable="SWE_A", path=tmp_path / "A.nc").read_bytes()

        def fake_request(variable, scenario, bbox, time_range):
            if variable == "SWE_B":
                raise GridFetchError("status 500")
            return _response(content=content)

        source = Mock(spec=NCSSGridSource)
        source.request.side_effect = fake_request

        members = fetch_ensemble(
            ["A", "B"], "SWE_{model}", WINDOW, BBOX,
            source=source, cache=GridCache(cache_dir=cache_dir), max_workers=2,
        )

        assert [m.model for m in members] == ["A"]

    def test_unreadable_download_is_dropped(self, monthly_netcdf, cache_dir, tmp_path):
        """An error page served with status 200 drops that member only."""
        content = monthly_netcdf(variable="SWE_A", path=tmp_path / "A.nc").read_bytes()

        def fake_request(variable, scenario, bbox, time_range):
            if variable == "SWE_B":
                return _response(content=b"<html>proxy error page</html>")
            return _response(content=content)

        source = Mock(spec=NCSSGridSource)
        source.request.side_effect = fake_request
        cache = GridCache(cache_dir=cache_dir)

        members = fetch_ensemble(["A", "B"], "SWE_{model}", WINDOW, BBOX, source=source, cache=cache)

        assert [m.model for m in members] == ["A"]
        assert cache.lookup("SWE_B", WINDOW.time_range) is None
        assert cache.lookup("SWE_A", WINDOW.time_range) is not None

    def test_variable_template_uses_scenario(self, cache_dir):
        source = Mock(spec=NCSSGridSource)
        source.request.side_effect = MemberNotFound("absent")
        window = TimeWindow("2040-2069", 2040, 2069, "rcp45")

        members = fetch_ensemble(
            ["CCSM4"], "SWE_{model}_r1i1p1_{scenario}", window, BBOX,
            source=source, cache=GridCache(cache_dir=cache_dir),
        )

        assert members == []
        variable, scenario = source.request.call_args[0][:2]
        assert variable == "SWE_CCSM4_r1i1p1_rcp45"
        assert scenario == "rcp45"
