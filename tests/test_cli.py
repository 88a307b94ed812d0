"""Tests for the command-line interface."""

import logging

import pytest

from chi_basins import config
from chi_basins.basin_io import list_basin_files, write_grid, write_outlets
from chi_basins.cli import _load_aux, _processing_options, build_parser, main
from chi_basins.logging_config import setup_logging


@pytest.fixture(autouse=True)
def quiet_logging():
    """Undo the console handler and warning capture that main() installs."""
    yield
    logging.captureWarnings(False)
    setup_logging(console=False, capture_warnings=False)


class TestParser:
    def test_process_arguments(self):
        """Processing options map onto ProcessingOptions."""
        args = build_parser().parse_args(
            [
                "process", "dem.tif", "-o", "out", "--outlets", "mouths.csv",
                "--threshold-area", "5e5", "--ksn-method", "trunk", "--workers", "4",
            ]
        )
        opts = _processing_options(args)
        assert args.command == "process"
        assert opts.threshold_area == 5e5
        assert opts.ksn_method == "trunk"
        assert opts.n_workers == 4

    def test_outlet_source_required(self):
        """Either an outlet file or an outlet elevation is needed."""
        with pytest.raises(SystemExit):
            build_parser().parse_args(["process", "dem.tif", "-o", "out"])

    def test_outlet_sources_exclusive(self):
        """Outlet file and outlet elevation cannot be combined."""
        with pytest.raises(SystemExit):
            build_parser().parse_args(
                ["process", "dem.tif", "-o", "out", "--outlets", "m.csv", "--outlet-elevation", "1200"]
            )

    def test_subdivide_arguments(self):
        """Subdivision flags are parsed."""
        args = build_parser().parse_args(
            ["subdivide", "basins", "--max-size", "250", "--method", "filtered_trunk", "--no-recursive"]
        )
        assert args.max_size == 250.0
        assert args.method == "filtered_trunk"
        assert args.no_recursive

    def test_unknown_subdivision_method(self):
        """Only the known subdivision methods are accepted."""
        with pytest.raises(SystemExit):
            build_parser().parse_args(["subdivide", "basins", "--max-size", "250", "--method", "halves"])

    def test_aux_spec_needs_name_and_path(self):
        """--aux expects NAME=PATH."""
        with pytest.raises(ValueError):
            _load_aux(["precip.tif"])


class TestMain:
    def test_missing_dem(self, tmp_path):
        """A missing DEM file exits with status 1."""
        code = main(["process", str(tmp_path / "missing.tif"), "-o", str(tmp_path), "--outlet-elevation", "100"])
        assert code == 1

    def test_subdivide_empty_directory(self, tmp_path):
        """Nothing to subdivide exits with status 2."""
        code = main(["subdivide", str(tmp_path), "--max-size", "10", "--method", "trunk"])
        assert code == 2

    def test_subdivide_needs_a_directory(self):
        """Without a basin directory or a study area there is nothing to read."""
        assert main(["subdivide", "--max-size", "10", "--method", "trunk"]) == 1


class TestStudyArea:
    @pytest.fixture
    def data_dir(self, tmp_path, monkeypatch):
        """Point the project data layout at a temporary directory."""
        monkeypatch.setattr(config, "DEMS_DIR", tmp_path / "dems")
        monkeypatch.setattr(config, "BASINS_DIR", tmp_path / "basins")
        monkeypatch.setattr(config, "OUTPUTS_DIR", tmp_path / "outputs")
        return tmp_path

    def test_parsed(self):
        """--study-area stands in for the output directory."""
        args = build_parser().parse_args(["process", "dem.tif", "--study-area", "andes", "--outlet-elevation", "1200"])
        assert args.study_area == "andes"
        assert args.output is None

    def test_output_and_study_area_exclusive(self):
        """A record directory is given one way or the other."""
        with pytest.raises(SystemExit):
            build_parser().parse_args(
                ["process", "dem.tif", "-o", "out", "--study-area", "andes", "--outlet-elevation", "1200"]
            )

    def test_output_destination_required(self):
        """process needs somewhere to write its records."""
        with pytest.raises(SystemExit):
            build_parser().parse_args(["process", "dem.tif", "--outlet-elevation", "1200"])

    def test_dem_name_not_in_dems_dir(self, data_dir):
        """A bare DEM name missing from data/dems exits with status 1."""
        code = main(["process", "absent.tif", "--study-area", "andes", "--outlet-elevation", "100"])
        assert code == 1

    def test_subdivide_empty_study_area(self, data_dir):
        """An empty study area has nothing to subdivide."""
        code = main(["subdivide", "--study-area", "andes", "--max-size", "10", "--method", "trunk"])
        assert code == 2
        assert (data_dir / "basins" / "andes").is_dir()

    def test_process_study_area(self, data_dir, valley):
        """A DEM named by file inside data/dems is processed into the study area folders."""
        write_grid(valley["dem"], data_dir / "dems" / "valley.tif")
        mouths = write_outlets([valley["outlet"]], data_dir / "mouths.csv")
        code = main(
            [
                "process", "valley.tif", "--study-area", "andes", "--outlets", str(mouths),
                "--threshold-area", "2000", "--segment-length", "100", "--workers", "1",
            ]
        )
        assert code == 0
        records = list_basin_files(data_dir / "basins" / "andes")
        assert [p.name for p in records] == ["Basin_1_Data.pkl.gz"]
        assert (data_dir / "outputs" / "andes" / "basin_summary.csv").exists()
