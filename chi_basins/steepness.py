"""Channel steepness maps.

A steepness map splits a basin's network into short reaches and reports the
mean normalized steepness (ksn) of each as a :class:`SteepnessSegment`. Three
policies are available:

``quick``
    Fixed-length windows along every channel, cut by along-stream distance.
    Windows end on the junction a channel drains into, so they may mix trunk
    and tributary signal.
``trunk``
    The network is split into trunk streams (Strahler order >= ``min_order``)
    and tributaries first; each part is windowed like ``quick``.
``trib``
    Every elementary reach between channel heads, confluences and outlets is
    binned on its own and each bin gets a chi-spline ksn and R^2.

Windows with fewer than 3 valid nodes are skipped.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np
import numpy.typing as npt
from scipy import ndimage, signal
from shapely.geometry import LineString

from .chi_transform import chi_values, chi_z_spline
from .config import KSN_METHODS
from .errors import InsufficientDataError
from .flow_network import FlowNetwork
from .logging_config import get_logger
from .raster import Raster

logger = get_logger(__name__)

FloatArray = npt.NDArray[np.float64]
IntArray = npt.NDArray[np.int64]

MIN_WINDOW_NODES = 3


@dataclass(frozen=True, eq=False)
class SteepnessSegment:
    """Window-averaged channel attributes along one reach.

    Attributes
    ----------
    x, y : ndarray
        Node coordinates, upstream first.
    ksn : float
        Normalized channel steepness.
    drainage_area : float
        Mean upstream area (map units squared).
    gradient : float
        Mean channel gradient.
    cut_fill : float
        Mean elevation change applied by conditioning (conditioned - raw).
    segment_length : float
        Flow-distance span of the window.
    population : str
        'all', 'trunk' or 'tributary'.
    chi_r2 : float
        R^2 of the chi-spline fit (``trib`` only, NaN otherwise).
    """

    x: FloatArray
    y: FloatArray
    ksn: float
    drainage_area: float
    gradient: float
    cut_fill: float
    segment_length: float
    population: str = "all"
    chi_r2: float = float("nan")

    @property
    def elevation_change(self) -> float:
        return self.cut_fill

    @property
    def position(self) -> tuple[float, float]:
        """Mean coordinate of the window's nodes."""
        return float(np.mean(self.x)), float(np.mean(self.y))

    @property
    def n_nodes(self) -> int:
        return int(self.x.size)

    @property
    def geometry(self) -> LineString:
        """Window nodes as a line, upstream first."""
        return LineString(np.column_stack([self.x, self.y]))

    def to_record(self) -> dict[str, object]:
        """Attributes of the segment, without its geometry."""
        cx, cy = self.position
        return {
            "ksn": self.ksn,
            "uparea": self.drainage_area,
            "gradient": self.gradient,
            "cut_fill": self.cut_fill,
            "seg_dist": self.segment_length,
            "population": self.population,
            "chi_r2": self.chi_r2,
            "x": cx,
            "y": cy,
            "n_nodes": self.n_nodes,
        }


@dataclass(frozen=True, eq=False)
class NodeAttributes:
    """Per-node inputs shared by all policies."""

    ksn: FloatArray
    drainage_area: FloatArray
    gradient: FloatArray
    cut_fill: FloatArray
    elevation: FloatArray

    def take(self, idx: IntArray) -> "NodeAttributes":
        return NodeAttributes(
            self.ksn[idx], self.drainage_area[idx], self.gradient[idx], self.cut_fill[idx], self.elevation[idx]
        )


def node_attributes(
    network: FlowNetwork,
    dem: Raster,
    conditioned_z: FloatArray,
    drainage_area: FloatArray,
    mn: float,
) -> NodeAttributes:
    """Gradient, cut/fill and ``ksn = gradient / area**(-mn)`` at every node."""
    z_raw = network.sample(dem)
    z = np.asarray(conditioned_z, dtype=float)
    area = np.asarray(drainage_area, dtype=float)
    g = network.gradient(z)
    return NodeAttributes(
        ksn=g / area ** (-mn),
        drainage_area=area,
        gradient=g,
        cut_fill=z - z_raw,
        elevation=z,
    )


# ---------- policies ----------


def _window_bins(offset: FloatArray, segment_length: float) -> IntArray:
    n_bins = max(1, math.ceil(float(np.max(offset)) / segment_length))
    return np.minimum(np.floor(offset / segment_length).astype(np.int64), n_bins - 1)


def _windowed(
    network: FlowNetwork,
    attrs: NodeAttributes,
    segment_length: float,
    population: str,
) -> list[SteepnessSegment]:
    if network.is_empty:
        return []
    d = network.distance()
    segments: list[SteepnessSegment] = []
    for reach in network.reaches(include_junction=True):
        offset = d[reach] - d[reach[-1]]
        bins = _window_bins(offset, segment_length)
        for b in np.unique(bins):
            nodes = reach[bins == b]
            ok = np.isfinite(attrs.ksn[nodes]) & np.isfinite(attrs.drainage_area[nodes])
            nodes = nodes[ok]
            if nodes.size < MIN_WINDOW_NODES:
                continue
            segments.append(
                SteepnessSegment(
                    x=network.x[nodes].copy(),
                    y=network.y[nodes].copy(),
                    ksn=float(np.mean(attrs.ksn[nodes])),
                    drainage_area=float(np.mean(attrs.drainage_area[nodes])),
                    gradient=float(np.mean(attrs.gradient[nodes])),
                    cut_fill=float(np.mean(attrs.cut_fill[nodes])),
                    segment_length=float(np.max(d[nodes]) - np.min(d[nodes])),
                    population=population,
                )
            )
    return segments


def ksn_quick(network: FlowNetwork, attrs: NodeAttributes, segment_length: float) -> list[SteepnessSegment]:
    """Fixed-length windows along every channel of the network."""
    return _windowed(network, attrs, segment_length, "all")


def ksn_trunk(
    network: FlowNetwork,
    attrs: NodeAttributes,
    segment_length: float,
    min_order: int,
) -> list[SteepnessSegment]:
    """Window trunk streams (order >= ``min_order``) and tributaries separately."""
    is_trunk = network.stream_order() >= min_order
    segments: list[SteepnessSegment] = []
    for mask, population in ((~is_trunk, "tributary"), (is_trunk, "trunk")):
        idx = np.flatnonzero(mask)
        if idx.size == 0:
            continue
        segments.extend(_windowed(network.subnetwork(mask), attrs.take(idx), segment_length, population))
    return segments


def ksn_trib(
    network: FlowNetwork,
    attrs: NodeAttributes,
    segment_length: float,
    mn: float,
    min_reach_length: float,
) -> list[SteepnessSegment]:
    """Chi-spline ksn in distance bins of every elementary reach.

    Bins are half-open ``(lo, hi]`` in distance from the reach's downstream
    end. Reaches shorter than ``min_reach_length`` are skipped.
    """
    if network.is_empty:
        return []
    d = network.distance()
    chi = chi_values(network, attrs.drainage_area, mn)
    segments: list[SteepnessSegment] = []
    for reach in network.reaches(min_length=min_reach_length):
        offset = d[reach] - np.min(d[reach])
        n_bins = math.ceil(float(np.max(offset)) / segment_length)
        for k in range(n_bins):
            lo, hi = k * segment_length, (k + 1) * segment_length
            nodes = reach[(offset > lo) & (offset <= hi)]
            if nodes.size < MIN_WINDOW_NODES:
                continue
            try:
                fit = chi_z_spline(chi[nodes], attrs.elevation[nodes])
            except InsufficientDataError:
                continue
            segments.append(
                SteepnessSegment(
                    x=network.x[nodes].copy(),
                    y=network.y[nodes].copy(),
                    ksn=fit.ksn,
                    drainage_area=float(np.mean(attrs.drainage_area[nodes])),
                    gradient=float(np.mean(attrs.gradient[nodes])),
                    cut_fill=float(np.mean(attrs.cut_fill[nodes])),
                    segment_length=float(np.max(d[nodes]) - np.min(d[nodes])),
                    population="all",
                    chi_r2=fit.r_squared,
                )
            )
    return segments


def steepness_map(
    method: str,
    network: FlowNetwork,
    attrs: NodeAttributes,
    segment_length: float,
    mn: float,
    min_order: int = 4,
    min_reach_length: float = 0.0,
) -> list[SteepnessSegment]:
    """Dispatch to one of the steepness-map policies."""
    if method not in KSN_METHODS:
        raise ValueError(f"method must be one of {KSN_METHODS}, got {method!r}")
    if segment_length <= 0:
        raise ValueError("segment_length must be positive")
    if method == "quick":
        return ksn_quick(network, attrs, segment_length)
    if method == "trunk":
        return ksn_trunk(network, attrs, segment_length, min_order)
    return ksn_trib(network, attrs, segment_length, mn, min_reach_length)


def disk_kernel(radius_px: int) -> FloatArray:
    """Normalized circular averaging kernel."""
    yy, xx = np.mgrid[-radius_px : radius_px + 1, -radius_px : radius_px + 1]
    disk = (xx**2 + yy**2 <= radius_px**2).astype(float)
    return disk / disk.sum()


def ksn_grid(dem: Raster, segments: list[SteepnessSegment], radius: float) -> Raster:
    """Interpolated steepness raster.

    Segment ksn values are burnt into their cells, every other cell takes the
    value of the nearest burnt cell, and the result is averaged over a disk
    of ``ceil(radius / cellsize)`` cells (reflected at the edges). Cells that
    are NaN in ``dem`` stay NaN.
    """
    if radius <= 0:
        raise ValueError("radius must be positive")
    grid = np.full(dem.shape, np.nan)
    for seg in segments:
        for x, y in zip(seg.x, seg.y):
            r, c = dem.xy_to_rc(x, y)
            grid[r, c] = seg.ksn

    missing = ~np.isfinite(grid)
    if missing.all():
        logger.warning("No steepness values to interpolate")
        return dem.with_data(grid, name="ksn_grid")

    _, (ri, ci) = ndimage.distance_transform_edt(missing, return_indices=True)
    filled = grid[ri, ci]
    radius_px = max(1, math.ceil(radius / dem.cellsize))
    padded = np.pad(filled, radius_px, mode="symmetric")
    smoothed = signal.fftconvolve(padded, disk_kernel(radius_px), mode="valid")
    smoothed[~dem.valid] = np.nan
    return dem.with_data(smoothed, name="ksn_grid")
