"""Tests for hydrologic conditioning of channel elevations."""

import numpy as np
import pytest

from chi_basins import AlignmentError, Raster, carve, condition, fill
from chi_basins.conditioning import conditioned_raster

# Node 4 dams a pit at node 3
PIT_PROFILE = np.array([100.0, 90.0, 80.0, 70.0, 75.0, 60.0, 50.0, 40.0, 30.0, 20.0])


@pytest.fixture
def pit_dem(line_network):
    return Raster(PIT_PROFILE.reshape(10, 1), 10.0)


class TestCarveFill:
    def test_carve_cuts_obstacle(self, line_network):
        """Carving lowers the dam to the pit elevation."""
        zc = carve(line_network["network"], PIT_PROFILE)
        expected = PIT_PROFILE.copy()
        expected[4] = 70.0
        assert zc.tolist() == expected.tolist()

    def test_fill_raises_pit(self, line_network):
        """Filling raises the pit to the dam elevation."""
        zf = fill(line_network["network"], PIT_PROFILE)
        expected = PIT_PROFILE.copy()
        expected[3] = 75.0
        assert zf.tolist() == expected.tolist()

    def test_carve_keeps_monotonic_profile(self, line_network):
        """A profile already falling downstream is unchanged."""
        z = np.linspace(100.0, 10.0, 10)
        assert np.array_equal(carve(line_network["network"], z), z)


class TestCondition:
    def test_zero_interp_is_carve(self, line_network, pit_dem):
        """With interp_value 0 the carved profile is returned."""
        net = line_network["network"]
        out = condition(net, pit_dem, interp_value=0.0)
        assert out.tolist() == carve(net, PIT_PROFILE).tolist()

    def test_full_interp_is_linear_across_depression(self, line_network, pit_dem):
        """With interp_value 1 the depression is bridged by a straight line."""
        out = condition(line_network["network"], pit_dem, interp_value=1.0)
        # bounds: node 2 (80 m, 70 m from the outlet) and node 5 (60 m, 40 m)
        assert out[3] == pytest.approx(60.0 + 20.0 * 2.0 / 3.0)
        assert out[4] == pytest.approx(60.0 + 20.0 * 1.0 / 3.0)
        assert out[[0, 1, 2, 5, 6, 7, 8, 9]].tolist() == PIT_PROFILE[[0, 1, 2, 5, 6, 7, 8, 9]].tolist()

    @pytest.mark.parametrize("interp_value", [0.1, 0.5, 0.9])
    def test_never_rises_downstream(self, y_network, interp_value):
        """Conditioned elevations never rise along an edge."""
        net = y_network["network"]
        rng = np.random.default_rng(42)
        z = y_network["elevation"] + rng.normal(0.0, 5.0, net.n_nodes)
        dem = Raster(net.to_grid(z), 10.0)
        out = condition(net, dem, interp_value)
        assert np.all(out[net.source] >= out[net.target])

    def test_invalid_interp_value(self, line_network, pit_dem):
        """interp_value outside [0, 1] is rejected."""
        with pytest.raises(ValueError):
            condition(line_network["network"], pit_dem, interp_value=1.5)

    def test_missing_elevation(self, line_network):
        """A stream node without an elevation is an error."""
        z = PIT_PROFILE.copy()
        z[6] = np.nan
        with pytest.raises(ValueError):
            condition(line_network["network"], Raster(z.reshape(10, 1), 10.0))

    def test_external_conditioned_dem(self, line_network, pit_dem):
        """A supplied conditioned DEM is sampled as-is."""
        external = pit_dem.with_data(np.full((10, 1), 5.0))
        out = condition(line_network["network"], pit_dem, conditioned_dem=external)
        assert np.all(out == 5.0)

    def test_external_conditioned_dem_misaligned(self, line_network, pit_dem):
        """The supplied conditioned DEM must be aligned with the DEM."""
        with pytest.raises(AlignmentError):
            condition(line_network["network"], pit_dem, conditioned_dem=Raster(np.ones((10, 1)), 5.0))

    def test_conditioned_raster(self, y_network):
        """Conditioned elevations are written to the stream cells only."""
        net = y_network["network"]
        dem = Raster(np.zeros((6, 5)), 10.0)
        r = conditioned_raster(net, dem, np.arange(net.n_nodes, dtype=float))
        assert r.z[5, 2] == 5.0
        assert np.isnan(r.z[5, 0])
