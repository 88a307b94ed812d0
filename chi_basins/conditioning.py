"""Hydrologic conditioning of stream-node elevations.

Raw DEM elevations along a channel contain pits and flats that make the
longitudinal profile climb when walked downstream. :func:`condition` removes
them by blending two corrections of every depression:

* the *carved* profile, a running minimum walked downstream, which cuts
  through the obstacles that dam each pit, and
* the *interpolated* profile, a straight line (by flow distance) between the
  undisturbed nodes bounding the depression.

``interp_value`` weights the interpolated profile; 0 gives the pure carved
profile. The blend is finished with one more downstream running minimum so
that the result never rises in the downstream direction.
"""

from __future__ import annotations

import numpy as np
import numpy.typing as npt
import topotoolbox as tt3

from .flow_network import FlowNetwork
from .logging_config import get_logger
from .raster import Raster

logger = get_logger(__name__)

FloatArray = npt.NDArray[np.float64]


def carve(network: FlowNetwork, z: FloatArray) -> FloatArray:
    """Running minimum walked downstream: no node is higher than any node upstream of it.

    Minima imposition is TopoToolbox's and works in single precision.
    """
    if network.is_empty:
        return np.zeros(0)
    return np.asarray(tt3.imposemin(network.streamobject, np.asarray(z, dtype=float)), dtype=float)


def fill(network: FlowNetwork, z: FloatArray) -> FloatArray:
    """Running maximum walked upstream: no node is lower than any node downstream of it."""
    zf = np.array(z, dtype=float)
    for level in reversed(network.levels):
        sel = level[network.receiver[level] >= 0]
        zf[sel] = np.maximum(zf[sel], zf[network.receiver[sel]])
    return zf


def _interpolate_depressions(
    network: FlowNetwork, z: FloatArray, zc: FloatArray, zf: FloatArray
) -> FloatArray:
    """Linear profile across every depression run, by flow distance.

    Nodes where carving and filling agree are undisturbed. For a disturbed node
    the downstream bound is the first undisturbed node below it (or the
    outlet, at its carved elevation) and the upstream bound the first
    undisturbed node above it along the longest tributary.
    """
    n = network.n_nodes
    receiver = network.receiver
    undisturbed = zc == zf
    d = network.distance()

    # downstream bounds
    down = np.where(undisturbed, np.arange(n), -1)
    outlets = network.outlets()
    down[outlets] = outlets
    for level in reversed(network.levels):
        sel = level[(receiver[level] >= 0) & ~undisturbed[level]]
        down[sel] = down[receiver[sel]]

    # upstream bounds, following the donor with the longest upstream path
    reach = network.upstream_length() + network.step_length
    best_donor = np.full(n, -1, dtype=np.int64)
    best_len = np.full(n, -np.inf)
    for s, t in zip(network.source.tolist(), network.target.tolist()):
        if reach[s] > best_len[t]:
            best_len[t] = reach[s]
            best_donor[t] = s
    up = np.where(undisturbed, np.arange(n), -1)
    for v in network.order.tolist():
        if not undisturbed[v] and best_donor[v] >= 0:
            up[v] = up[best_donor[v]]

    zi = zc.copy()
    run = ~undisturbed & (up >= 0)
    idx = np.flatnonzero(run)
    if idx.size:
        z_up = z[up[idx]]
        z_dn = zc[down[idx]]
        d_up = d[up[idx]]
        d_dn = d[down[idx]]
        span = d_up - d_dn
        frac = np.divide(d[idx] - d_dn, span, out=np.zeros(idx.size), where=span > 0)
        zi[idx] = z_dn + (z_up - z_dn) * frac
    zi[undisturbed] = z[undisturbed]
    return zi


def condition(
    network: FlowNetwork,
    dem: Raster,
    interp_value: float = 0.1,
    conditioned_dem: Raster | None = None,
) -> FloatArray:
    """Hydrologically conditioned elevation of every network node.

    Parameters
    ----------
    network : FlowNetwork
        Stream network on the grid of ``dem``.
    dem : Raster
        Raw elevations.
    interp_value : float
        Weight of the interpolated profile, in [0, 1]. 0 returns the carved
        profile.
    conditioned_dem : Raster, optional
        A DEM conditioned elsewhere. Its node values are returned as-is; it
        must be aligned with ``dem``.

    Returns
    -------
    ndarray
        One elevation per node, non-increasing along every downstream path
        (unless taken from ``conditioned_dem``).

    Raises
    ------
    ValueError
        If ``interp_value`` lies outside [0, 1] or the DEM has no value at a
        stream node.
    AlignmentError
        If ``conditioned_dem`` or ``dem`` does not match the network grid.
    """
    if not 0.0 <= interp_value <= 1.0:
        raise ValueError(f"interp_value must be in [0, 1], got {interp_value}")

    if conditioned_dem is not None:
        dem.validate_alignment(conditioned_dem, "conditioned DEM")
        return network.sample(conditioned_dem)

    z = network.sample(dem)
    if not np.all(np.isfinite(z)):
        raise ValueError("DEM has no value at one or more stream nodes")
    # same precision as the carved profile, so that untouched nodes compare equal
    z = z.astype(np.float32).astype(float)

    zc = carve(network, z)
    if interp_value == 0.0:
        return zc

    zf = fill(network, z)
    zi = _interpolate_depressions(network, z, zc, zf)
    blended = (1.0 - interp_value) * zc + interp_value * zi
    out = carve(network, blended)
    logger.debug(
        "Conditioned %d nodes: %d in depressions, max cut %.2f",
        network.n_nodes,
        int(np.count_nonzero(zc != zf)),
        float(np.max(z - out)) if out.size else 0.0,
    )
    return out


def conditioned_raster(network: FlowNetwork, dem: Raster, z: FloatArray) -> Raster:
    """Raster holding conditioned elevations on stream nodes and NaN elsewhere."""
    dem.validate_alignment(network.grid, "stream network grid")
    return dem.with_data(network.to_grid(z), name="conditioned_dem")
