"""Figures for chi profiles, longitudinal profiles and steepness maps.

All functions build a new figure and return ``(fig, ax)``; nothing is shown
or saved, so they work with any backend (use ``fig.savefig`` in batch runs).
"""

from __future__ import annotations

from typing import Any, List, Optional, Tuple

import numpy as np
import numpy.typing as npt
import matplotlib.pyplot as plt
from matplotlib.axes import Axes
from matplotlib.collections import LineCollection
from matplotlib.colors import Normalize
from matplotlib.figure import Figure

from .basin_extraction import Basin
from .chi_transform import ChiProfile, SegmentFit
from .raster import Raster
from .steepness import SteepnessSegment

# ---------------------------------------------------------------------
# Internal utilities
# ---------------------------------------------------------------------


def _edge_lines(profile: ChiProfile, xs: npt.NDArray, ys: npt.NDArray) -> List[npt.NDArray]:
    """One two-point line per network edge, in the given coordinates."""
    src, tgt = profile.network.source, profile.network.target
    return [np.array([[xs[s], ys[s]], [xs[t], ys[t]]]) for s, t in zip(src.tolist(), tgt.tolist())]


def _show_raster(ax: Axes, raster: Raster, **kwargs: Any) -> Any:
    """Draw a raster with cell-edge extent."""
    half = raster.cellsize / 2
    xmin, xmax, ymin, ymax = raster.extent
    return ax.imshow(
        raster.z,
        extent=(xmin - half, xmax + half, ymin - half, ymax + half),
        origin="upper",
        **({"cmap": "gray", "alpha": 0.8} | kwargs),
    )


def _segment_lines(segments: List[SteepnessSegment]) -> List[npt.NDArray]:
    return [np.column_stack((s.x, s.y)) for s in segments if s.n_nodes > 1]


# ---------------------------------------------------------------------
# 1. Chi - elevation
# ---------------------------------------------------------------------


def plot_chi_profile(profile: ChiProfile, ax: Optional[Axes] = None) -> Tuple[Figure, Axes]:
    """Elevation against chi with the through-origin steepness line.

    Parameters
    ----------
    profile : ChiProfile
        Profile to draw; network edges are drawn as line pieces.
    ax : Axes, optional
        Axes to draw into; a new figure is created when omitted.

    Returns
    -------
    Tuple[Figure, Axes]
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=(7, 5))
    else:
        fig = ax.figure
    lc = LineCollection(
        _edge_lines(profile, profile.chi, profile.elevation), color="0.4", linewidth=0.8
    )
    ax.add_collection(lc)
    ax.scatter(profile.chi, profile.elevation, s=6, c="k", zorder=3)

    chi_line = np.array([0.0, float(np.max(profile.chi))])
    ax.plot(
        chi_line,
        profile.outlet_elevation + profile.ks * chi_line,
        color="crimson",
        linestyle="--",
        label=f"ks = {profile.ks:.1f}, R² = {profile.r_squared:.3f}",
    )
    ax.autoscale_view()
    ax.set_xlabel("χ")
    ax.set_ylabel("Elevation")
    ax.set_title(f"Chi profile (m/n = {profile.mn:.3f})")
    ax.legend(loc="upper left")
    fig.tight_layout()
    return fig, ax


# ---------------------------------------------------------------------
# 2. Longitudinal profile
# ---------------------------------------------------------------------


def plot_longitudinal_profile(profile: ChiProfile, ax: Optional[Axes] = None) -> Tuple[Figure, Axes]:
    """Elevation against flow distance from the outlet."""
    if ax is None:
        fig, ax = plt.subplots(figsize=(8, 4))
    else:
        fig = ax.figure
    lc = LineCollection(
        _edge_lines(profile, profile.distance, profile.elevation), color="steelblue", linewidth=1.0
    )
    ax.add_collection(lc)
    ax.autoscale_view()
    ax.set_xlabel("Distance from outlet")
    ax.set_ylabel("Elevation")
    ax.set_title("Longitudinal profile")
    fig.tight_layout()
    return fig, ax


# ---------------------------------------------------------------------
# 3. Steepness map
# ---------------------------------------------------------------------


def plot_steepness_map(
    basin: Basin,
    reference: bool = True,
    cmap: str = "viridis",
    vmax: Optional[float] = None,
) -> Tuple[Figure, Axes]:
    """Steepness segments coloured by ksn over the basin DEM.

    Parameters
    ----------
    basin : Basin
    reference : bool
        Draw the reference-concavity segments (default) or the best-fit ones.
    cmap : str
        Colormap of the segments.
    vmax : float, optional
        Upper colour limit; defaults to the 98th percentile of ksn.
    """
    segments = basin.steepness_ref if reference else basin.steepness
    fig, ax = plt.subplots(figsize=(8, 7))
    _show_raster(ax, basin.dem)

    ksn = np.array([s.ksn for s in segments if s.n_nodes > 1])
    if ksn.size:
        top = vmax if vmax is not None else float(np.nanpercentile(ksn, 98))
        lc = LineCollection(
            _segment_lines(segments), cmap=cmap, norm=Normalize(vmin=0.0, vmax=max(top, 1e-9)), linewidth=2.0
        )
        lc.set_array(ksn)
        ax.add_collection(lc)
        fig.colorbar(lc, ax=ax, label="ksn")

    ax.scatter(basin.outlet.x, basin.outlet.y, marker="*", s=160, edgecolor="k", facecolor="gold", zorder=5)
    ax.set_aspect("equal", "box")
    mn = basin.ref_concavity if reference else basin.mn
    ax.set_title(f"Basin {basin.id}: ksn ({basin.ksn_method}, m/n = {mn:.2f})")
    fig.tight_layout()
    return fig, ax


# ---------------------------------------------------------------------
# 4. Segment projection
# ---------------------------------------------------------------------


def plot_segment_projection(
    profile: ChiProfile,
    fit: SegmentFit,
    segment: Optional[ChiProfile] = None,
) -> Tuple[Figure, Axes]:
    """Full chi profile with a fitted segment projected over all chi.

    Parameters
    ----------
    profile : ChiProfile
        Profile the segment was picked from.
    fit : SegmentFit
        Line fitted to the segment (see :func:`~chi_basins.segments.regress`).
    segment : ChiProfile, optional
        Picked nodes, highlighted when given.
    """
    fig, ax = plt.subplots(figsize=(7, 5))
    ax.scatter(profile.chi, profile.elevation, s=6, c="0.5", label="profile")
    if segment is not None:
        ax.scatter(segment.chi, segment.elevation, s=10, c="tab:orange", zorder=3, label="segment")

    chi = np.linspace(0.0, float(np.max(profile.chi)), 200)
    pred, lower, upper = fit.project(chi)
    ax.plot(chi, pred, color="crimson", label=f"ksn = {fit.slope:.1f}")
    ax.fill_between(chi, lower, upper, color="crimson", alpha=0.2, linewidth=0)
    ax.set_xlabel("χ")
    ax.set_ylabel("Elevation")
    ax.set_title(f"Segment projection ({fit.confidence:.0%} bounds)")
    ax.legend(loc="upper left")
    fig.tight_layout()
    return fig, ax
