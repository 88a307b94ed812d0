"""Whole-basin topographic metrics.

Summary statistics, hypsometry, centroid, gradient and local relief grids,
and summaries of categorical grids, all computed on rasters cropped to a
single basin (cells outside the basin are NaN and ignored).
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Mapping, Optional

import numpy as np
import numpy.typing as npt
from scipy import integrate, ndimage

from .config import GRADIENT_METHODS
from .raster import Raster

FloatArray = npt.NDArray[np.float64]


@dataclass(slots=True)
class SummaryStats:
    """Mean, standard error, standard deviation, minimum and maximum.

    ``se`` is ``std / sqrt(n)``. For steepness ``n`` is the number of
    steepness segments, for grids the number of finite cells.
    """

    mean: float
    se: float
    std: float
    min: float
    max: float

    @classmethod
    def from_values(cls, values: npt.ArrayLike, n: Optional[int] = None) -> "SummaryStats":
        v = np.asarray(values, dtype=float).ravel()
        v = v[np.isfinite(v)]
        if v.size == 0:
            nan = float("nan")
            return cls(nan, nan, nan, nan, nan)
        std = float(np.std(v, ddof=1)) if v.size > 1 else 0.0
        count = v.size if n is None else n
        se = std / math.sqrt(count) if count > 0 else float("nan")
        return cls(float(np.mean(v)), se, std, float(np.min(v)), float(np.max(v)))

    def as_dict(self, prefix: str = "") -> dict[str, float]:
        return {f"{prefix}{k}": v for k, v in asdict(self).items()}


@dataclass(frozen=True, eq=False)
class Hypsometry:
    """Hypsometric curve.

    Attributes
    ----------
    relative_area : ndarray
        Fraction of the basin above each elevation, ascending in (0, 1].
    relative_relief : ndarray
        ``(elevation - min) / (max - min)``, non-increasing.
    elevation : ndarray
        Elevation bin centres, descending.
    """

    relative_area: FloatArray
    relative_relief: FloatArray
    elevation: FloatArray

    @property
    def integral(self) -> float:
        """Hypsometric integral (area under relative relief vs relative area)."""
        return float(integrate.trapezoid(self.relative_relief, self.relative_area))


@dataclass(slots=True)
class CategoricalStats:
    """Composition of a categorical grid inside a basin.

    Attributes
    ----------
    majority : float
        Most frequent category code (lowest code on ties), NaN when empty.
    counts : dict
        Cell count per category code.
    percent : dict
        Share of the finite cells per category code, in percent.
    labels : dict
        Category code to name, when names were supplied.
    """

    majority: float
    counts: dict[int, int]
    percent: dict[int, float]
    labels: dict[int, str]


def grid_stats(raster: Raster) -> SummaryStats:
    """Statistics over the finite cells of a raster."""
    return SummaryStats.from_values(raster.z)


def hypsometry(dem: Raster, bins: int = 100) -> Hypsometry:
    """Relative area against relative relief from a histogram of elevations."""
    z = dem.z[np.isfinite(dem.z)]
    if z.size == 0:
        raise ValueError("DEM has no finite cells")
    counts, edges = np.histogram(z, bins=bins)
    centres = 0.5 * (edges[:-1] + edges[1:])
    counts = counts[::-1]
    centres = centres[::-1]
    rel_area = np.cumsum(counts) / counts.sum()
    zmin, zmax = float(z.min()), float(z.max())
    if zmax > zmin:
        rel_relief = np.clip((centres - zmin) / (zmax - zmin), 0.0, 1.0)
    else:
        rel_relief = np.zeros_like(centres)
    return Hypsometry(rel_area, rel_relief, centres)


def centroid(dem: Raster) -> tuple[float, float]:
    """Elevation-weighted planform centroid of the finite cells.

    Elevations are shifted so the lowest cell weighs zero; a flat basin falls
    back to the plain centroid.
    """
    X, Y = dem.coordinates()
    ok = np.isfinite(dem.z)
    if not ok.any():
        raise ValueError("DEM has no finite cells")
    w = dem.z[ok] - np.min(dem.z[ok])
    if w.sum() <= 0:
        w = np.ones_like(w)
    return float(np.average(X[ok], weights=w)), float(np.average(Y[ok], weights=w))


def gradient_grid(dem: Raster, method: str = "arcslope") -> Raster:
    """Gradient (tangent of slope) of every cell.

    ``arcslope`` fits a plane to the 3x3 neighbourhood (Horn's method);
    ``gradient8`` takes the steepest descent to one of the 8 neighbours.
    Cells next to NaN cells are NaN for ``arcslope``.
    """
    if method not in GRADIENT_METHODS:
        raise ValueError(f"method must be one of {GRADIENT_METHODS}, got {method!r}")
    z = np.pad(dem.z, 1, mode="edge")
    cs = dem.cellsize
    rows, cols = dem.shape

    def nb(dr: int, dc: int) -> FloatArray:
        return z[1 + dr : 1 + dr + rows, 1 + dc : 1 + dc + cols]

    if method == "arcslope":
        dzdx = ((nb(-1, 1) + 2 * nb(0, 1) + nb(1, 1)) - (nb(-1, -1) + 2 * nb(0, -1) + nb(1, -1))) / (8 * cs)
        dzdy = ((nb(1, -1) + 2 * nb(1, 0) + nb(1, 1)) - (nb(-1, -1) + 2 * nb(-1, 0) + nb(-1, 1))) / (8 * cs)
        g = np.hypot(dzdx, dzdy)
    else:
        centre = nb(0, 0)
        g = np.zeros(dem.shape)
        with np.errstate(invalid="ignore"):
            for dr in (-1, 0, 1):
                for dc in (-1, 0, 1):
                    if dr == 0 and dc == 0:
                        continue
                    drop = (centre - nb(dr, dc)) / (cs * math.hypot(dr, dc))
                    g = np.fmax(g, drop)
    g[~dem.valid] = np.nan
    return dem.with_data(g, name=f"gradient_{method}")


def local_relief(dem: Raster, radius: float) -> Raster:
    """Maximum minus minimum elevation within a disk of ``ceil(radius / cellsize)`` cells."""
    if radius <= 0:
        raise ValueError("radius must be positive")
    r = max(1, math.ceil(radius / dem.cellsize))
    yy, xx = np.mgrid[-r : r + 1, -r : r + 1]
    footprint = xx**2 + yy**2 <= r**2
    valid = dem.valid
    hi = ndimage.maximum_filter(np.where(valid, dem.z, -np.inf), footprint=footprint, mode="constant", cval=-np.inf)
    lo = ndimage.minimum_filter(np.where(valid, dem.z, np.inf), footprint=footprint, mode="constant", cval=np.inf)
    relief = hi - lo
    relief[~valid] = np.nan
    return dem.with_data(relief, name=f"relief_{radius:g}")


def categorical_stats(grid: Raster, categories: Optional[Mapping[int, str]] = None) -> CategoricalStats:
    """Cell counts, shares and majority class of a categorical grid."""
    v = grid.z[np.isfinite(grid.z)].astype(np.int64)
    codes, counts = np.unique(v, return_counts=True)
    labels = {int(k): str(n) for k, n in (categories or {}).items()}
    if categories:
        # report every known category, even when absent from the basin
        all_codes = sorted(set(labels) | set(codes.tolist()))
        count_map = {c: 0 for c in all_codes}
    else:
        count_map = {}
    count_map.update({int(c): int(n) for c, n in zip(codes, counts)})
    total = int(counts.sum())
    percent = {c: (100.0 * n / total if total else 0.0) for c, n in count_map.items()}
    majority = float(codes[np.argmax(counts)]) if codes.size else float("nan")
    return CategoricalStats(majority, count_map, percent, labels)
