"""Chi transform, concavity fitting and channel steepness regression.

Chi is the upstream integral of ``(A0 / A) ** mn`` over flow distance,
starting at zero at the outlet. On a steady-state channel elevation grows
linearly with chi and the slope of that line is the normalized channel
steepness ksn.

Main API
--------
- net_cumtrapz(distance, integrand, source, target) -> ndarray
- chi_values(network, drainage_area, mn, ref_area=1.0) -> ndarray
- fit_concavity(network, elevation, drainage_area, ...) -> float
- chi_z_spline(chi, z) -> SplineFit
- compute_chi(network, elevation, drainage_area, ...) -> ChiProfile
- fit_segment(chi, z, confidence=0.95) -> SegmentFit

The spline step resamples elevation onto evenly spaced chi before the
through-origin regression. Nodes cluster at large chi (small drainage area),
so a regression on the raw nodes would be dominated by the headwaters.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

import numpy as np
import numpy.typing as npt
import pandas as pd
from scipy import optimize, stats
from scipy.interpolate import CubicSpline

from .config import MN_METHODS
from .errors import InsufficientDataError, InvalidAreaError, MultipleOutletsError
from .flow_network import FlowNetwork
from .logging_config import get_logger
from .raster import Raster

logger = get_logger(__name__)

FloatArray = npt.NDArray[np.float64]
NodeSource = Union[Raster, npt.ArrayLike]

MIN_NODES = 3


@dataclass(slots=True)
class SplineFit:
    """Through-origin steepness fit of a spline-resampled chi-elevation series.

    Attributes
    ----------
    ksn : float
        Slope of elevation against chi.
    r_squared : float
        Coefficient of determination of ``ksn * chi`` against the original
        (not resampled) elevations. NaN when the elevations are constant.
    ksn_lower, ksn_upper : float
        Student-t confidence bounds of ``ksn``.
    n : int
        Number of nodes used.
    """

    ksn: float
    r_squared: float
    ksn_lower: float
    ksn_upper: float
    n: int


@dataclass(slots=True)
class SegmentFit:
    """Ordinary least-squares line ``z = slope * chi + intercept`` with confidence intervals.

    Attributes
    ----------
    slope : float
        Steepness of the segment (ksn).
    intercept : float
        Elevation at chi = 0 of the fitted line.
    slope_ci, intercept_ci : tuple of float
        (lower, upper) Student-t confidence bounds.
    r_squared : float
    n : int
    confidence : float
    """

    slope: float
    intercept: float
    slope_ci: tuple[float, float]
    intercept_ci: tuple[float, float]
    r_squared: float
    n: int
    confidence: float

    def project(self, chi: npt.ArrayLike) -> tuple[FloatArray, FloatArray, FloatArray]:
        """Projected elevation along ``chi`` with its lower and upper envelopes."""
        chi = np.asarray(chi, dtype=float)
        pred = self.slope * chi + self.intercept
        lower = self.slope_ci[0] * chi + self.intercept_ci[0]
        upper = self.slope_ci[1] * chi + self.intercept_ci[1]
        return pred, lower, upper


@dataclass(frozen=True, eq=False)
class ChiProfile:
    """Chi transform of a single-outlet network.

    All arrays are per node, in the node order of ``network``.

    Attributes
    ----------
    network : FlowNetwork
        Network the profile was computed on.
    x, y : ndarray
        Node coordinates.
    chi : ndarray
        Chi, zero at the outlet.
    elevation : ndarray
        Node elevations.
    elevation_above_baselevel : ndarray
        ``elevation - outlet elevation``.
    distance : ndarray
        Flow distance from the outlet.
    drainage_area : ndarray
        Upstream area (map units squared).
    predicted_elevation : ndarray
        ``ks * chi``.
    residual : ndarray
        ``elevation_above_baselevel - predicted_elevation``.
    mn : float
        Concavity used for chi.
    ks : float
        Steepness (slope of elevation on chi).
    r_squared : float
    ks_lower, ks_upper : float
        Confidence bounds of ``ks``.
    ref_area : float
        Reference drainage area A0.
    outlet : int
        Outlet node ID.
    """

    network: FlowNetwork
    x: FloatArray
    y: FloatArray
    chi: FloatArray
    elevation: FloatArray
    elevation_above_baselevel: FloatArray
    distance: FloatArray
    drainage_area: FloatArray
    predicted_elevation: FloatArray
    residual: FloatArray
    mn: float
    ks: float
    r_squared: float
    ks_lower: float
    ks_upper: float
    ref_area: float
    outlet: int

    @property
    def n_nodes(self) -> int:
        return int(self.chi.size)

    @property
    def outlet_elevation(self) -> float:
        return float(self.elevation[self.outlet])

    def to_frame(self) -> pd.DataFrame:
        """Per-node table sorted by chi."""
        df = pd.DataFrame(
            {
                "x": self.x,
                "y": self.y,
                "chi": self.chi,
                "elevation": self.elevation,
                "elevation_above_baselevel": self.elevation_above_baselevel,
                "distance": self.distance,
                "drainage_area": self.drainage_area,
                "predicted_elevation": self.predicted_elevation,
                "residual": self.residual,
            }
        )
        return df.sort_values("chi", kind="stable", ignore_index=True)


# ------------------------------ helpers ------------------------------


def _single_outlet(network: FlowNetwork) -> int:
    if network.n_nodes < MIN_NODES:
        raise InsufficientDataError(
            f"chi regression needs at least {MIN_NODES} nodes, network has {network.n_nodes}"
        )
    outlets = network.outlets()
    if outlets.size > 1:
        raise MultipleOutletsError(
            f"network has {outlets.size} outlets; split it into connected components first"
        )
    if outlets.size == 0:
        raise InsufficientDataError("network has no connected channel to regress")
    return int(outlets[0])


def _positive_area(network: FlowNetwork, drainage_area: NodeSource) -> FloatArray:
    area = network.node_values(drainage_area, "drainage_area")
    bad = ~np.isfinite(area) | (area <= 0)
    if np.any(bad):
        raise InvalidAreaError(
            f"drainage area must be strictly positive, {int(bad.sum())} node(s) are not"
        )
    return area


def _elevation(network: FlowNetwork, elevation: NodeSource) -> FloatArray:
    z = network.node_values(elevation, "elevation")
    if not np.all(np.isfinite(z)):
        raise ValueError("elevation has no value at one or more stream nodes")
    return z


# ------------------------------ core ------------------------------


def net_cumtrapz(
    distance: npt.ArrayLike,
    integrand: npt.ArrayLike,
    source: npt.ArrayLike,
    target: npt.ArrayLike,
) -> FloatArray:
    """Cumulative trapezoidal integration upstream along a network.

    Edges must be in topological order (upstream to downstream). They are
    walked backwards so that each node's receiver is final before the node
    itself: ``out[s] = out[t] + mean(integrand[s], integrand[t]) * |d[t] - d[s]|``.
    Outlets stay at zero.
    """
    x = np.asarray(distance, dtype=float)
    y = np.asarray(integrand, dtype=float)
    out = np.zeros(x.size)
    src = np.asarray(source, dtype=np.int64).tolist()
    tgt = np.asarray(target, dtype=np.int64).tolist()
    for s, t in zip(reversed(src), reversed(tgt)):
        out[s] = out[t] + (y[t] + (y[s] - y[t]) / 2.0) * abs(x[t] - x[s])
    return out


def chi_values(
    network: FlowNetwork,
    drainage_area: NodeSource,
    mn: float,
    ref_area: float = 1.0,
) -> FloatArray:
    """Chi of every node; each connected component starts at zero at its outlet."""
    if ref_area <= 0:
        raise ValueError("ref_area must be positive")
    area = _positive_area(network, drainage_area)
    integrand = (ref_area / area) ** mn
    return net_cumtrapz(network.distance(), integrand, network.source, network.target)


def fit_concavity(
    network: FlowNetwork,
    elevation: NodeSource,
    drainage_area: NodeSource,
    ref_area: float = 1.0,
    method: str = "ls",
    mn0: float = 0.5,
) -> float:
    """Best-fit concavity by Nelder-Mead minimisation.

    Chi and elevation above base level are both scaled to a maximum of one and
    compared node by node: ``ls`` minimises the sum of squared differences,
    ``lad`` the sum of square roots of absolute differences.

    Raises
    ------
    MultipleOutletsError, InsufficientDataError, InvalidAreaError
        As for :func:`compute_chi`.
    """
    if method not in MN_METHODS:
        raise ValueError(f"method must be one of {MN_METHODS}, got {method!r}")
    outlet = _single_outlet(network)
    area = _positive_area(network, drainage_area)
    z = _elevation(network, elevation)

    relief = z - z[outlet]
    top = np.max(relief)
    if top <= 0:
        raise InsufficientDataError("no relief above base level to fit a concavity")
    zn = relief / top

    d = network.distance()
    src, tgt = network.source, network.target
    log_ratio = np.log(ref_area / area)

    def objective(params: FloatArray) -> float:
        chi = net_cumtrapz(d, np.exp(params[0] * log_ratio), src, tgt)
        chi_max = np.max(chi)
        if not np.isfinite(chi_max) or chi_max <= 0:
            return np.inf
        resid = chi / chi_max - zn
        if method == "ls":
            return float(np.sum(resid**2))
        return float(np.sum(np.sqrt(np.abs(resid))))

    res = optimize.minimize(
        objective, x0=np.array([mn0]), method="Nelder-Mead", options={"xatol": 1e-6, "fatol": 1e-12}
    )
    mn = float(res.x[0])
    logger.debug("Best-fit concavity %.4f (%s, %d iterations)", mn, method, res.nit)
    return mn


def chi_z_spline(chi: npt.ArrayLike, z: npt.ArrayLike, confidence: float = 0.95) -> SplineFit:
    """Steepness from a cubic-spline resampling of elevation onto uniform chi.

    Both series are shifted to start at zero. Nodes sharing a chi value are
    averaged before the spline is built. The spline is evaluated on as many
    evenly spaced chi values as there are nodes and ksn is the least-squares
    slope through the origin.

    Raises
    ------
    InsufficientDataError
        With fewer than 3 nodes or fewer than 2 distinct chi values.
    """
    c = np.asarray(chi, dtype=float).ravel()
    z = np.asarray(z, dtype=float).ravel()
    if c.size != z.size:
        raise ValueError("chi and z must have the same length")
    n = c.size
    if n < MIN_NODES:
        raise InsufficientDataError(f"spline fit needs at least {MIN_NODES} nodes, got {n}")

    chi_f = c - np.min(c)
    z_f = z - np.min(z)

    uc, inverse = np.unique(chi_f, return_inverse=True)
    if uc.size < 2:
        raise InsufficientDataError("spline fit needs at least two distinct chi values")
    uz = np.bincount(inverse, weights=z_f) / np.bincount(inverse)

    chi_s = np.linspace(0.0, uc[-1], n)
    z_s = CubicSpline(uc, uz, bc_type="not-a-knot")(chi_s)

    sxx = float(np.sum(chi_s**2))
    ksn = float(np.sum(chi_s * z_s) / sxx)

    z_pred = chi_f * ksn
    ss_tot = float(np.sum((z_f - np.mean(z_f)) ** 2))
    ss_res = float(np.sum((z_f - z_pred) ** 2))
    r2 = 1.0 - ss_res / ss_tot if ss_tot > 0 else float("nan")

    dof = n - 1
    s2 = float(np.sum((z_s - ksn * chi_s) ** 2)) / dof
    half = float(stats.t.ppf(0.5 + confidence / 2.0, dof)) * np.sqrt(s2 / sxx)
    return SplineFit(ksn, r2, ksn - half, ksn + half, n)


def compute_chi(
    network: FlowNetwork,
    elevation: NodeSource,
    drainage_area: NodeSource,
    ref_area: float = 1.0,
    mn: float | None = None,
    mn_method: str = "ls",
    confidence: float = 0.95,
) -> ChiProfile:
    """Chi profile and steepness of a single-outlet network.

    Parameters
    ----------
    network : FlowNetwork
        Network with exactly one outlet and at least 3 nodes.
    elevation : Raster or array_like
        Elevations, as a raster aligned with the network grid or one value
        per node. Conditioned elevations are expected.
    drainage_area : Raster or array_like
        Upstream area in map units squared, raster or per node.
    ref_area : float
        Reference area A0.
    mn : float, optional
        Concavity. Fitted with :func:`fit_concavity` when omitted.
    mn_method : {'ls', 'lad'}
        Objective of the concavity fit.
    confidence : float
        Confidence level of the steepness bounds.

    Returns
    -------
    ChiProfile

    Raises
    ------
    MultipleOutletsError
        If the network has more than one outlet.
    InsufficientDataError
        If the network has fewer than 3 nodes.
    InvalidAreaError
        If any drainage area is zero or negative.

    Example
    -------
    >>> profile = compute_chi(net, conditioned, area, mn=0.45)
    >>> profile.ks, profile.r_squared
    """
    outlet = _single_outlet(network)
    area = _positive_area(network, drainage_area)
    z = _elevation(network, elevation)

    if mn is None:
        mn = fit_concavity(network, z, area, ref_area=ref_area, method=mn_method)

    chi = chi_values(network, area, mn, ref_area=ref_area)
    fit = chi_z_spline(chi, z, confidence=confidence)

    elev_bl = z - z[outlet]
    predicted = fit.ksn * chi
    return ChiProfile(
        network=network,
        x=network.x.copy(),
        y=network.y.copy(),
        chi=chi,
        elevation=z,
        elevation_above_baselevel=elev_bl,
        distance=network.distance(),
        drainage_area=area,
        predicted_elevation=predicted,
        residual=elev_bl - predicted,
        mn=float(mn),
        ks=fit.ksn,
        r_squared=fit.r_squared,
        ks_lower=fit.ksn_lower,
        ks_upper=fit.ksn_upper,
        ref_area=float(ref_area),
        outlet=outlet,
    )


def fit_segment(chi: npt.ArrayLike, z: npt.ArrayLike, confidence: float = 0.95) -> SegmentFit:
    """Least-squares line with intercept through a chi-elevation segment.

    Raises
    ------
    InsufficientDataError
        With fewer than 3 points or no spread in chi.
    """
    c = np.asarray(chi, dtype=float).ravel()
    z = np.asarray(z, dtype=float).ravel()
    if c.size != z.size:
        raise ValueError("chi and z must have the same length")
    if c.size < MIN_NODES:
        raise InsufficientDataError(f"segment fit needs at least {MIN_NODES} points, got {c.size}")
    if np.ptp(c) == 0:
        raise InsufficientDataError("segment has no spread in chi")

    res = stats.linregress(c, z)
    t = float(stats.t.ppf(0.5 + confidence / 2.0, c.size - 2))
    slope_half = t * float(res.stderr)
    icpt_half = t * float(res.intercept_stderr)
    return SegmentFit(
        slope=float(res.slope),
        intercept=float(res.intercept),
        slope_ci=(float(res.slope) - slope_half, float(res.slope) + slope_half),
        intercept_ci=(float(res.intercept) - icpt_half, float(res.intercept) + icpt_half),
        r_squared=float(res.rvalue) ** 2,
        n=int(c.size),
        confidence=float(confidence),
    )
