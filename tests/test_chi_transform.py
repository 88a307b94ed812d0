"""Tests for the chi transform, concavity fit and steepness regressions."""

import numpy as np
import pytest

from chi_basins import (
    FlowNetwork,
    GridSpec,
    InsufficientDataError,
    InvalidAreaError,
    MultipleOutletsError,
    chi_values,
    chi_z_spline,
    compute_chi,
    fit_concavity,
    fit_segment,
    net_cumtrapz,
)


@pytest.fixture
def steady_state(line_network):
    """Elevations exactly linear in chi (m/n = 0.45, ksn = 3)."""
    net, area = line_network["network"], line_network["area"]
    chi = chi_values(net, area, 0.45)
    return {"network": net, "area": area, "chi": chi, "z": 20.0 + 3.0 * chi}


class TestIntegration:
    def test_net_cumtrapz_constant_integrand(self):
        """A constant integrand of one integrates to flow distance."""
        out = net_cumtrapz([20.0, 10.0, 0.0], [1.0, 1.0, 1.0], [0, 1], [1, 2])
        assert out.tolist() == [20.0, 10.0, 0.0]

    def test_net_cumtrapz_trapezoid(self):
        """Each edge adds the mean integrand times its length."""
        out = net_cumtrapz([20.0, 10.0, 0.0], [3.0, 2.0, 1.0], [0, 1], [1, 2])
        assert out.tolist() == [40.0, 15.0, 0.0]

    def test_chi_values_unit_area(self, y_network):
        """With A = A0 everywhere chi equals flow distance."""
        net = y_network["network"]
        chi = chi_values(net, np.ones(net.n_nodes), 0.5)
        assert np.allclose(chi, net.distance())

    def test_chi_zero_at_outlet_and_increasing_upstream(self, y_network):
        """Chi starts at zero at the outlet and grows upstream."""
        net = y_network["network"]
        chi = chi_values(net, y_network["area"], 0.5)
        assert chi[y_network["outlet"]] == 0.0
        assert np.all(chi[net.source] > chi[net.target])

    def test_chi_values_bad_ref_area(self, y_network):
        """The reference area must be positive."""
        with pytest.raises(ValueError):
            chi_values(y_network["network"], y_network["area"], 0.5, ref_area=0.0)


class TestSplineFit:
    def test_linear_series(self):
        """A straight chi-elevation line is recovered exactly."""
        chi = np.array([0.0, 0.5, 1.5, 3.0, 4.0])
        fit = chi_z_spline(chi, 100.0 + 2.5 * chi)
        assert fit.ksn == pytest.approx(2.5)
        assert fit.r_squared == pytest.approx(1.0)
        assert fit.n == 5
        assert fit.ksn_lower <= fit.ksn <= fit.ksn_upper

    def test_two_nodes_fail(self):
        """At least three nodes are needed."""
        with pytest.raises(InsufficientDataError):
            chi_z_spline([0.0, 1.0], [0.0, 1.0])

    def test_no_chi_spread(self):
        """All nodes at the same chi cannot be fitted."""
        with pytest.raises(InsufficientDataError):
            chi_z_spline([1.0, 1.0, 1.0], [0.0, 1.0, 2.0])

    def test_flat_elevations_give_nan_r2(self):
        """Constant elevations have no variance to explain."""
        fit = chi_z_spline([0.0, 1.0, 2.0], [5.0, 5.0, 5.0])
        assert fit.ksn == pytest.approx(0.0)
        assert np.isnan(fit.r_squared)

    def test_noisy_bounds_bracket_estimate(self):
        """Confidence bounds widen with scatter and bracket ksn."""
        rng = np.random.default_rng(0)
        chi = np.linspace(0.0, 10.0, 50)
        fit = chi_z_spline(chi, 4.0 * chi + rng.normal(0.0, 1.0, chi.size))
        assert fit.ksn_lower < fit.ksn < fit.ksn_upper
        assert fit.ksn == pytest.approx(4.0, rel=0.15)


class TestComputeChi:
    def test_straight_profile(self, steady_state):
        """ksn and R^2 of a steady-state profile at its own concavity."""
        profile = compute_chi(steady_state["network"], steady_state["z"], steady_state["area"], mn=0.45)
        assert profile.ks == pytest.approx(3.0, rel=1e-6)
        assert profile.r_squared == pytest.approx(1.0, abs=1e-9)
        assert profile.mn == 0.45
        assert np.allclose(profile.residual, 0.0, atol=1e-6)
        assert profile.outlet_elevation == pytest.approx(20.0)

    def test_repeatable(self, steady_state):
        """Two runs with the same inputs and concavity give identical profiles."""
        args = (steady_state["network"], steady_state["z"], steady_state["area"])
        a = compute_chi(*args, mn=0.45)
        b = compute_chi(*args, mn=0.45)
        for name in ("chi", "elevation", "predicted_elevation", "residual"):
            assert np.array_equal(getattr(a, name), getattr(b, name))
        assert (a.ks, a.r_squared, a.ks_lower) == (b.ks, b.r_squared, b.ks_lower)

    def test_concavity_recovered(self, steady_state):
        """The fitted concavity is within 1% of the generating one."""
        profile = compute_chi(steady_state["network"], steady_state["z"], steady_state["area"])
        assert profile.mn == pytest.approx(0.45, rel=0.01)
        assert profile.ks == pytest.approx(3.0, rel=0.05)

    def test_fit_concavity_directly(self, steady_state):
        """fit_concavity agrees with the concavity used to build the profile."""
        mn = fit_concavity(steady_state["network"], steady_state["z"], steady_state["area"])
        assert mn == pytest.approx(0.45, rel=0.01)

    def test_fit_concavity_unknown_method(self, steady_state):
        """Only the ls and lad objectives exist."""
        with pytest.raises(ValueError):
            fit_concavity(steady_state["network"], steady_state["z"], steady_state["area"], method="l1")

    def test_fit_concavity_flat(self, steady_state):
        """A profile without relief has no concavity."""
        net = steady_state["network"]
        with pytest.raises(InsufficientDataError):
            fit_concavity(net, np.full(net.n_nodes, 50.0), steady_state["area"])

    def test_two_nodes_fail_three_succeed(self):
        """Chi regression needs three nodes."""
        grid = GridSpec((3, 1), 10.0)
        two = FlowNetwork.from_paths([[(0, 0), (1, 0)]], grid)
        three = FlowNetwork.from_paths([[(0, 0), (1, 0), (2, 0)]], grid)
        with pytest.raises(InsufficientDataError):
            compute_chi(two, [2.0, 1.0], [1.0, 2.0], mn=0.5)
        profile = compute_chi(three, [3.0, 2.0, 1.0], [1.0, 2.0, 3.0], mn=0.5)
        assert profile.n_nodes == 3

    def test_multiple_outlets(self):
        """Networks with more than one outlet are rejected."""
        grid = GridSpec((3, 3), 10.0)
        net = FlowNetwork.from_paths([[(0, 0), (1, 0), (2, 0)], [(0, 2), (1, 2), (2, 2)]], grid)
        with pytest.raises(MultipleOutletsError):
            compute_chi(net, np.arange(6.0)[::-1], np.ones(6), mn=0.5)

    def test_invalid_area(self, steady_state):
        """Zero drainage area is rejected."""
        area = steady_state["area"].copy()
        area[2] = 0.0
        with pytest.raises(InvalidAreaError):
            compute_chi(steady_state["network"], steady_state["z"], area, mn=0.5)

    def test_to_frame_sorted_by_chi(self, steady_state):
        """The per-node table starts at the outlet."""
        profile = compute_chi(steady_state["network"], steady_state["z"], steady_state["area"], mn=0.45)
        df = profile.to_frame()
        assert len(df) == 10
        assert df["chi"].iloc[0] == 0.0
        assert df["chi"].is_monotonic_increasing


class TestSegmentFit:
    def test_exact_line(self):
        """Slope and intercept of an exact line."""
        chi = np.arange(5.0)
        fit = fit_segment(chi, 2.0 * chi + 5.0)
        assert fit.slope == pytest.approx(2.0)
        assert fit.intercept == pytest.approx(5.0)
        assert fit.r_squared == pytest.approx(1.0)
        assert fit.n == 5

    def test_confidence_intervals(self):
        """Intervals bracket the estimates and the projection envelope."""
        rng = np.random.default_rng(1)
        chi = np.linspace(1.0, 6.0, 30)
        fit = fit_segment(chi, 3.0 * chi + 10.0 + rng.normal(0.0, 0.5, chi.size))
        assert fit.slope_ci[0] < fit.slope < fit.slope_ci[1]
        assert fit.intercept_ci[0] < fit.intercept < fit.intercept_ci[1]
        pred, lower, upper = fit.project([2.0, 4.0])
        assert np.all(lower < pred) and np.all(pred < upper)

    def test_too_few_points(self):
        """A segment fit needs three points."""
        with pytest.raises(InsufficientDataError):
            fit_segment([0.0, 1.0], [0.0, 1.0])
