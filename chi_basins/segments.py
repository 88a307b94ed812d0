"""Selecting parts of a chi profile for separate regression.

The selectors cut a :class:`~chi_basins.chi_transform.ChiProfile` down to the
nodes between two chi or distance bounds, or upstream / downstream of a
point. Chi and distance keep their values from the full profile; the
steepness is refitted on the selected nodes. :func:`extract_stream` is the
non-interactive way of picking one channel from a network, either from a
channel head down to the outlet or everything upstream of a pour point.

Usage:
    upper = select_chi_range(profile, 2.0, 8.0)
    fit = fit_segment(upper.chi, upper.elevation)   # slope, intercept and CIs

    sel = extract_stream(net, x, y, elevation=zc, drainage_area=area, mn=0.45, max_area=5e7)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
import numpy.typing as npt

from .chi_transform import ChiProfile, NodeSource, SegmentFit, chi_z_spline, compute_chi, fit_segment
from .errors import InsufficientDataError, NoChannelNearbyError
from .flow_network import FlowNetwork

BoolMask = npt.NDArray[np.bool_]

DIRECTIONS = ("down", "up")


@dataclass(frozen=True, eq=False)
class StreamSelection:
    """A channel picked from a network.

    Attributes
    ----------
    network : FlowNetwork
        The selected nodes as their own network.
    profile : ChiProfile
        Chi profile of the selection.
    anchor : tuple of float
        Coordinates of the channel head (``down``) or pour point (``up``)
        the point was snapped to.
    direction : str
    """

    network: FlowNetwork
    profile: ChiProfile
    anchor: tuple[float, float]
    direction: str


def subset_profile(profile: ChiProfile, mask: BoolMask) -> ChiProfile:
    """Profile of the nodes in ``mask`` with the steepness refitted on them.

    Raises
    ------
    InsufficientDataError
        If fewer than 3 nodes are selected.
    """
    mask = np.asarray(mask, dtype=bool)
    idx = np.flatnonzero(mask)
    if idx.size < 3:
        raise InsufficientDataError(f"selection holds {idx.size} nodes, at least 3 are needed")

    chi = profile.chi[idx]
    elev_bl = profile.elevation_above_baselevel[idx]
    fit = chi_z_spline(chi, profile.elevation[idx])
    low = int(np.argmin(chi))
    predicted = elev_bl[low] + fit.ksn * (chi - chi[low])
    return ChiProfile(
        network=profile.network.subnetwork(mask),
        x=profile.x[idx],
        y=profile.y[idx],
        chi=chi,
        elevation=profile.elevation[idx],
        elevation_above_baselevel=elev_bl,
        distance=profile.distance[idx],
        drainage_area=profile.drainage_area[idx],
        predicted_elevation=predicted,
        residual=elev_bl - predicted,
        mn=profile.mn,
        ks=fit.ksn,
        r_squared=fit.r_squared,
        ks_lower=fit.ksn_lower,
        ks_upper=fit.ksn_upper,
        ref_area=profile.ref_area,
        outlet=low,
    )


def _between(values: np.ndarray, lo: float, hi: float) -> BoolMask:
    lo, hi = min(lo, hi), max(lo, hi)
    return (values >= lo) & (values <= hi)


def select_chi_range(profile: ChiProfile, chi_min: float, chi_max: float) -> ChiProfile:
    """Nodes with ``chi_min <= chi <= chi_max``."""
    return subset_profile(profile, _between(profile.chi, chi_min, chi_max))


def select_distance_range(profile: ChiProfile, d_min: float, d_max: float) -> ChiProfile:
    """Nodes whose flow distance from the outlet lies in ``[d_min, d_max]``."""
    return subset_profile(profile, _between(profile.distance, d_min, d_max))


def select_upstream(profile: ChiProfile, x: float, y: float, tolerance: Optional[float] = None) -> ChiProfile:
    """Nodes draining to the node nearest (x, y), that node included."""
    node = profile.network.nearest_node(x, y, tolerance)
    return subset_profile(profile, profile.network.upstream_of(node))


def select_downstream(profile: ChiProfile, x: float, y: float, tolerance: Optional[float] = None) -> ChiProfile:
    """Nodes on the flow path from the node nearest (x, y) to the outlet."""
    node = profile.network.nearest_node(x, y, tolerance)
    return subset_profile(profile, profile.network.downstream_of(node))


def regress(profile: ChiProfile, confidence: float = 0.95) -> SegmentFit:
    """Line with intercept through the chi-elevation pairs of a profile."""
    return fit_segment(profile.chi, profile.elevation, confidence=confidence)


def _nearest_head(network: FlowNetwork, x: float, y: float, tolerance: Optional[float]) -> int:
    heads = network.channel_heads()
    if heads.size == 0:
        raise NoChannelNearbyError("network has no channel heads")
    dist = np.hypot(network.x[heads] - x, network.y[heads] - y)
    k = int(np.argmin(dist))
    if tolerance is not None and dist[k] > tolerance:
        raise NoChannelNearbyError(
            f"nearest channel head to ({x}, {y}) is {dist[k]:.1f} away (tolerance {tolerance:.1f})"
        )
    return int(heads[k])


def extract_stream(
    network: FlowNetwork,
    x: float,
    y: float,
    elevation: NodeSource,
    drainage_area: NodeSource,
    mn: Optional[float] = None,
    direction: str = "down",
    min_elevation: Optional[float] = None,
    max_area: Optional[float] = None,
    recalc: bool = False,
    ref_area: float = 1.0,
    tolerance: Optional[float] = None,
) -> StreamSelection:
    """Pick a single channel from a network.

    Parameters
    ----------
    network : FlowNetwork
    x, y : float
        Picked point.
    elevation, drainage_area : Raster or array_like
        Conditioned elevations and upstream areas (raster or per node).
    mn : float, optional
        Concavity; fitted on the picked channel when omitted.
    direction : {'down', 'up'}
        ``down`` snaps to the nearest channel head and follows it to the
        outlet; ``up`` snaps to the nearest node and keeps everything
        draining to it.
    min_elevation, max_area : float, optional
        ``down`` only: stop the channel below this elevation or once the
        drainage area exceeds this value. Mutually exclusive.
    recalc : bool
        ``down`` only: recompute chi and distance from the new stopping point
        instead of keeping them tied to the full channel's outlet.
    ref_area : float
        Reference area A0 for chi.
    tolerance : float, optional
        Maximum snapping distance.

    Returns
    -------
    StreamSelection
    """
    if direction not in DIRECTIONS:
        raise ValueError(f"direction must be one of {DIRECTIONS}, got {direction!r}")
    if min_elevation is not None and max_area is not None:
        raise ValueError("min_elevation and max_area cannot be combined")

    z_all = network.node_values(elevation, "elevation")
    a_all = network.node_values(drainage_area, "drainage_area")

    if direction == "up":
        node = network.nearest_node(x, y, tolerance)
        mask = network.upstream_of(node)
        idx = np.flatnonzero(mask)
        sub = network.subnetwork(mask).klargest_components(1)
        profile = compute_chi(sub, z_all[idx], a_all[idx], ref_area=ref_area, mn=mn)
        return StreamSelection(sub, profile, (float(network.x[node]), float(network.y[node])), direction)

    head = _nearest_head(network, x, y, tolerance)
    path = network.downstream_path(head)
    full_mask = np.zeros(network.n_nodes, dtype=bool)
    full_mask[path] = True
    full_idx = np.flatnonzero(full_mask)
    full = network.subnetwork(full_mask)

    # path runs downstream; keep it up to the first node past the stop criterion
    keep = path.size
    if min_elevation is not None:
        below = np.flatnonzero(z_all[path] < min_elevation)
        keep = int(below[0]) if below.size else keep
    elif max_area is not None:
        above = np.flatnonzero(a_all[path] > max_area)
        keep = int(above[0]) if above.size else keep
    if keep < 3:
        raise InsufficientDataError(f"picked channel holds {keep} nodes after stopping, at least 3 are needed")

    cut = np.zeros(network.n_nodes, dtype=bool)
    cut[path[:keep]] = True
    anchor = (float(network.x[head]), float(network.y[head]))

    if recalc:
        idx = np.flatnonzero(cut)
        sub = network.subnetwork(cut)
        profile = compute_chi(sub, z_all[idx], a_all[idx], ref_area=ref_area, mn=mn)
        return StreamSelection(sub, profile, anchor, direction)

    full_profile = compute_chi(full, z_all[full_idx], a_all[full_idx], ref_area=ref_area, mn=mn)
    profile = subset_profile(full_profile, cut[full_idx])
    return StreamSelection(profile.network, profile, anchor, direction)
