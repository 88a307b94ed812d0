"""Tests for basin records, outlet lists and grid exports."""

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
import rasterio
from rasterio import Affine

from chi_basins import BasinExtractor, Outlet, Raster
from chi_basins.basin_io import (
    list_basin_files,
    load_basin,
    read_grid,
    read_outlets,
    save_basin,
    segments_frame,
    summary_table,
    write_arc_files,
    write_grid,
    write_outlets,
    write_summary,
)


@pytest.fixture
def basin(valley):
    extractor = BasinExtractor(valley["dem"], valley["flow"], valley["accumulation"], valley["options"])
    return extractor.extract(valley["outlet"])


class TestRecords:
    def test_save_and_load(self, basin, tmp_path):
        """A saved record loads back with the same results."""
        path = save_basin(basin, tmp_path)
        assert path.name == "Basin_1_Data.pkl.gz"
        loaded = load_basin(path)
        assert loaded.id == 1
        assert loaded.drainage_area == basin.drainage_area
        assert loaded.chi_profile.mn == basin.chi_profile.mn
        assert np.array_equal(loaded.network.ix, basin.network.ix)

    def test_custom_stem(self, basin, tmp_path):
        """Sub-basin records use their own stem."""
        path = save_basin(basin, tmp_path / "SubBasins", "Basin_1_DataSubset_2")
        assert path.name == "Basin_1_DataSubset_2.pkl.gz"
        assert path.exists()

    def test_load_rejects_other_objects(self, tmp_path):
        """Only basin records are accepted."""
        path = tmp_path / "Basin_3_Data.pkl.gz"
        pd.to_pickle({"id": 3}, path, compression="gzip")
        with pytest.raises(TypeError):
            load_basin(path)

    def test_list_ordered_by_id(self, tmp_path):
        """Records are listed numerically; subsets only on request."""
        for name in ["Basin_10_Data.pkl.gz", "Basin_2_Data.pkl.gz", "Basin_2_DataSubset_1.pkl.gz", "notes.txt"]:
            (tmp_path / name).touch()
        assert [p.name for p in list_basin_files(tmp_path)] == ["Basin_2_Data.pkl.gz", "Basin_10_Data.pkl.gz"]
        assert [p.name for p in list_basin_files(tmp_path, subsets=True)] == [
            "Basin_2_Data.pkl.gz",
            "Basin_2_DataSubset_1.pkl.gz",
            "Basin_10_Data.pkl.gz",
        ]


class TestTables:
    def test_summary(self, basin, tmp_path):
        """The summary CSV holds one row per basin."""
        df = write_summary([basin], tmp_path / "out" / "summary.csv")
        assert len(df) == 1
        read = pd.read_csv(tmp_path / "out" / "summary.csv")
        assert read["basin_id"].tolist() == [1]
        assert read["drainage_area_km2"].iloc[0] == pytest.approx(0.084)

    def test_empty_summary(self):
        """No basins give an empty table."""
        assert summary_table([]).empty

    def test_segments_frame(self, basin):
        """Segments are line features with their attributes."""
        gdf = segments_frame(basin)
        assert len(gdf) == len(basin.steepness_ref)
        assert (gdf.geom_type == "LineString").all()
        assert np.allclose(gdf["ksn"], [s.ksn for s in basin.steepness_ref], equal_nan=True)
        assert gdf.geometry.iloc[0].coords[0] == (basin.steepness_ref[0].x[0], basin.steepness_ref[0].y[0])



class TestOutletFiles:
    def test_headers(self, tmp_path):
        """Columns are matched by name regardless of case and order."""
        path = tmp_path / "mouths.csv"
        path.write_text("ID,X,Y\n7,1.5,2.5\n8,3.0,4.0\n")
        assert read_outlets(path) == [Outlet(7, 1.5, 2.5), Outlet(8, 3.0, 4.0)]

    def test_no_headers(self, tmp_path):
        """Headerless files are read as x, y, id."""
        path = tmp_path / "mouths.csv"
        path.write_text("1.5,2.5,7\n3.0,4.0,8\n")
        assert read_outlets(path) == [Outlet(7, 1.5, 2.5), Outlet(8, 3.0, 4.0)]

    def test_too_few_columns(self, tmp_path):
        """x, y and id are all required."""
        path = tmp_path / "mouths.csv"
        path.write_text("1.5,2.5\n3.0,4.0\n")
        with pytest.raises(ValueError):
            read_outlets(path)

    def test_write_then_read(self, tmp_path):
        """Written outlet lists read back unchanged."""
        outlets = [Outlet(1, 10.0, 20.0), Outlet(5, 30.0, 40.0)]
        path = write_outlets(outlets, tmp_path / "sub" / "mouths.csv")
        assert read_outlets(path) == outlets


class TestExports:
    def test_grid_nodata_masked(self, tmp_path):
        """NaN cells are masked in the GeoTIFF and read back as NaN."""
        r = Raster(np.array([[1.0, np.nan], [3.0, 4.5]]), 10.0, xmin=105.0, ymax=215.0, name="grid")
        path = write_grid(r, tmp_path / "grid.tif")
        with rasterio.open(path) as ds:
            assert ds.transform == Affine(10.0, 0.0, 100.0, 0.0, -10.0, 220.0)
            assert ds.dtypes == ("float32",)
        back = read_grid(path)
        assert back.name == "grid"
        assert np.isnan(back.z[0, 1])
        assert back.z[1, 1] == 4.5
        assert back.is_aligned(r)

    def test_arc_files(self, basin, tmp_path):
        """Grids and segments of a basin are exported side by side."""
        written = write_arc_files(basin, tmp_path)
        names = sorted(p.name for p in written)
        assert names == ["Basin_1_CHI.tif", "Basin_1_DEM.tif", "Basin_1_MS.gpkg"]
        dem = read_grid(tmp_path / "Basin_1_DEM.tif")
        assert dem.shape == basin.dem.shape
        segments = gpd.read_file(tmp_path / "Basin_1_MS.gpkg")
        assert len(segments) == len(basin.steepness_ref)
        assert {"ksn", "uparea", "population"} <= set(segments.columns)
