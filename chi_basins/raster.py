"""Immutable raster value type.

A :class:`Raster` couples a read-only 2-D float array with the georeference of
its cells (:class:`GridSpec`). Nodata cells are stored as NaN. Rasters that are
combined must be co-registered; :meth:`Raster.validate_alignment` enforces this
and never resamples on its own. Explicit resampling is available through
:meth:`Raster.resample_to` for auxiliary grids.

Coordinates refer to cell centres: ``xmin`` is the x coordinate of column 0
and ``ymax`` the y coordinate of row 0, rows increase southwards.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Union

import numpy as np
import numpy.typing as npt
import topotoolbox as tt3
from rasterio import Affine
from rasterio.coords import BoundingBox
from scipy import ndimage

from .errors import AlignmentError, OutOfBoundsError

FloatArray = npt.NDArray[np.float64]
BoolMask = npt.NDArray[np.bool_]
Offset = tuple[int, int]

_RESAMPLE_ORDER = {"nearest": 0, "bilinear": 1, "bicubic": 3}


@dataclass(frozen=True)
class GridSpec:
    """Shape and georeference of a regular grid.

    Attributes
    ----------
    shape : tuple of int
        (rows, cols).
    cellsize : float
        Cell edge length in map units.
    xmin : float
        x coordinate of the centre of column 0.
    ymax : float
        y coordinate of the centre of row 0.
    """

    shape: tuple[int, int]
    cellsize: float
    xmin: float = 0.0
    ymax: float = 0.0

    @property
    def size(self) -> int:
        return int(self.shape[0] * self.shape[1])

    @property
    def extent(self) -> tuple[float, float, float, float]:
        """(xmin, xmax, ymin, ymax) of the cell centres."""
        rows, cols = self.shape
        return (
            self.xmin,
            self.xmin + (cols - 1) * self.cellsize,
            self.ymax - (rows - 1) * self.cellsize,
            self.ymax,
        )

    @property
    def transform(self) -> Affine:
        """Affine transform of the outer corner of the first cell."""
        half = 0.5 * self.cellsize
        return Affine(self.cellsize, 0.0, self.xmin - half, 0.0, -self.cellsize, self.ymax + half)

    @property
    def bounds(self) -> BoundingBox:
        xmin, xmax, ymin, ymax = self.extent
        half = 0.5 * self.cellsize
        return BoundingBox(xmin - half, ymin - half, xmax + half, ymax + half)

    def is_aligned(self, other: "GridSpec") -> bool:
        tol = 1e-6 * self.cellsize
        return (
            tuple(self.shape) == tuple(other.shape)
            and math.isclose(self.cellsize, other.cellsize, rel_tol=1e-9)
            and abs(self.xmin - other.xmin) <= tol
            and abs(self.ymax - other.ymax) <= tol
        )

    def rc_to_xy(self, rows, cols) -> tuple[Any, Any]:
        x = self.xmin + np.asarray(cols, dtype=float) * self.cellsize
        y = self.ymax - np.asarray(rows, dtype=float) * self.cellsize
        if np.ndim(x) == 0:
            return float(x), float(y)
        return x, y

    def contains_xy(self, x: float, y: float) -> bool:
        """True if (x, y) falls inside a cell of the grid."""
        half = 0.5 * self.cellsize
        xmin, xmax, ymin, ymax = self.extent
        return (xmin - half) <= x <= (xmax + half) and (ymin - half) <= y <= (ymax + half)

    def xy_to_rc(self, x: float, y: float) -> tuple[int, int]:
        """Row and column of the cell containing (x, y).

        Raises
        ------
        OutOfBoundsError
            If the point lies outside the grid.
        """
        if not (np.isfinite(x) and np.isfinite(y)) or not self.contains_xy(x, y):
            raise OutOfBoundsError(f"point ({x}, {y}) lies outside the raster extent {self.extent}")
        col = int(np.floor((x - self.xmin) / self.cellsize + 0.5))
        row = int(np.floor((self.ymax - y) / self.cellsize + 0.5))
        # points on the outer edge round past the last cell
        row = min(max(row, 0), self.shape[0] - 1)
        col = min(max(col, 0), self.shape[1] - 1)
        return row, col

    def ravel(self, rows, cols):
        return np.ravel_multi_index((rows, cols), self.shape)

    def unravel(self, ix):
        return np.unravel_index(ix, self.shape)

    def window(self, r0: int, c0: int, shape: tuple[int, int]) -> "GridSpec":
        """Grid of a sub-window whose first cell is (r0, c0)."""
        x, y = self.rc_to_xy(r0, c0)
        return GridSpec((int(shape[0]), int(shape[1])), self.cellsize, x, y)


def mask_bounding_box(mask: BoolMask) -> tuple[slice, slice]:
    """Row and column slices of the bounding box of ``mask``."""
    rows = np.flatnonzero(mask.any(axis=1))
    cols = np.flatnonzero(mask.any(axis=0))
    if rows.size == 0:
        raise ValueError("cannot crop to an empty mask")
    return slice(int(rows[0]), int(rows[-1]) + 1), slice(int(cols[0]), int(cols[-1]) + 1)


@dataclass(frozen=True, eq=False)
class Raster:
    """Read-only 2-D grid of scalar values with a georeference.

    Parameters
    ----------
    z : array_like
        2-D values. Copied and converted to float64; ``nodata`` becomes NaN.
    cellsize : float
        Cell edge length in map units.
    xmin, ymax : float
        Cell-centre coordinates of the first column and first row.
    nodata : float, optional
        Sentinel value in ``z`` treated as missing.
    name : str
        Free-form label, used in error messages and exports.

    Example
    -------
    >>> dem = Raster(np.array([[3.0, 2.0], [2.0, 1.0]]), cellsize=30.0)
    >>> dem.xy_to_rc(30.0, -30.0)
    (1, 1)
    """

    z: FloatArray
    cellsize: float
    xmin: float = 0.0
    ymax: float = 0.0
    nodata: float | None = None
    name: str = ""

    def __post_init__(self) -> None:
        z = np.array(self.z, dtype=float, copy=True)
        if z.ndim != 2:
            raise ValueError(f"raster data must be 2-D, got shape {z.shape}")
        if self.cellsize <= 0:
            raise ValueError("cellsize must be positive")
        if self.nodata is not None and not np.isnan(self.nodata):
            z[z == self.nodata] = np.nan
        z.flags.writeable = False
        object.__setattr__(self, "z", z)
        object.__setattr__(self, "cellsize", float(self.cellsize))
        object.__setattr__(self, "nodata", None)

    # ---------- georeference ----------

    @property
    def grid(self) -> GridSpec:
        return GridSpec(self.z.shape, self.cellsize, self.xmin, self.ymax)

    @property
    def shape(self) -> tuple[int, int]:
        return self.z.shape

    @property
    def extent(self) -> tuple[float, float, float, float]:
        return self.grid.extent

    def rc_to_xy(self, rows, cols):
        return self.grid.rc_to_xy(rows, cols)

    def xy_to_rc(self, x: float, y: float) -> tuple[int, int]:
        return self.grid.xy_to_rc(x, y)

    def coordinates(self) -> tuple[FloatArray, FloatArray]:
        """Cell-centre coordinate grids (X, Y)."""
        rows, cols = self.shape
        x = self.xmin + np.arange(cols) * self.cellsize
        y = self.ymax - np.arange(rows) * self.cellsize
        return np.meshgrid(x, y)

    def is_aligned(self, other: Union["Raster", GridSpec]) -> bool:
        other_grid = other if isinstance(other, GridSpec) else other.grid
        return self.grid.is_aligned(other_grid)

    def validate_alignment(self, other: Union["Raster", GridSpec], name: str = "grid") -> None:
        """Raise :class:`AlignmentError` unless ``other`` is co-registered with this raster."""
        other_grid = other if isinstance(other, GridSpec) else other.grid
        if not self.grid.is_aligned(other_grid):
            raise AlignmentError(
                f"{name} is not aligned with {self.name or 'the reference raster'}: "
                f"{other_grid} vs {self.grid}"
            )

    # ---------- values ----------

    @property
    def valid(self) -> BoolMask:
        return np.isfinite(self.z)

    def with_data(self, z: npt.ArrayLike, name: str | None = None) -> "Raster":
        """New raster with the same georeference and different values."""
        z = np.asarray(z)
        if z.shape != self.shape:
            raise AlignmentError(f"data shape {z.shape} does not match raster shape {self.shape}")
        return Raster(z, self.cellsize, self.xmin, self.ymax, name=self.name if name is None else name)

    def crop(self, mask: BoolMask) -> tuple["Raster", Offset]:
        """Crop to the bounding box of ``mask``; cells outside the mask become NaN.

        Returns
        -------
        raster : Raster
            The cropped raster.
        offset : tuple of int
            (row, col) of the cropped raster's first cell in this raster.
        """
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != self.shape:
            raise AlignmentError(f"mask shape {mask.shape} does not match raster shape {self.shape}")
        rs, cs = mask_bounding_box(mask)
        z = np.where(mask[rs, cs], self.z[rs, cs], np.nan)
        window = self.grid.window(rs.start, cs.start, z.shape)
        cropped = Raster(z, self.cellsize, window.xmin, window.ymax, name=self.name)
        return cropped, (rs.start, cs.start)

    def resample_to(self, reference: Union["Raster", GridSpec], method: str = "nearest") -> "Raster":
        """Resample onto the grid of ``reference``.

        Cells of ``reference`` falling outside this raster, or whose nearest
        source cell is NaN, are NaN in the result.
        """
        if method not in _RESAMPLE_ORDER:
            raise ValueError(f"method must be one of {tuple(_RESAMPLE_ORDER)}, got {method!r}")
        ref = reference if isinstance(reference, GridSpec) else reference.grid
        if self.grid.is_aligned(ref):
            return self

        rows, cols = np.indices(ref.shape)
        x, y = ref.rc_to_xy(rows, cols)
        fr = (self.ymax - y) / self.cellsize
        fc = (x - self.xmin) / self.cellsize

        nan_src = ~np.isfinite(self.z)
        nearest_nan = ndimage.map_coordinates(
            nan_src.astype(float), [fr, fc], order=0, mode="constant", cval=1.0
        ).astype(bool)
        order = _RESAMPLE_ORDER[method]
        src = np.where(nan_src, np.nanmean(self.z) if (~nan_src).any() else 0.0, self.z)
        out = ndimage.map_coordinates(src, [fr, fc], order=order, mode="nearest")
        out[nearest_nan] = np.nan
        return Raster(out, ref.cellsize, ref.xmin, ref.ymax, name=self.name)

    # ---------- adapters ----------

    @classmethod
    def from_gridobject(cls, grid: Any, name: str | None = None) -> "Raster":
        """Build a Raster from a TopoToolbox ``GridObject``.

        The affine ``transform`` (a, b, c, d, e, f) gives the outer corner of
        the first cell; it is shifted by half a cell to the cell centre.
        """
        z = np.asarray(grid.z, dtype=float)
        t = grid.transform
        cellsize = float(getattr(grid, "cellsize", abs(t[0])))
        xmin = float(t[2]) + 0.5 * cellsize
        ymax = float(t[5]) - 0.5 * cellsize
        label = name if name is not None else str(getattr(grid, "name", "") or "")
        return cls(z, cellsize, xmin, ymax, name=label)

    def to_gridobject(self) -> tt3.GridObject:
        """TopoToolbox ``GridObject`` holding this raster as single precision."""
        grid = tt3.GridObject()
        grid.name = self.name
        grid.z = np.ascontiguousarray(self.z, dtype=np.float32)
        grid.cellsize = self.cellsize
        grid.transform = self.grid.transform
        grid.bounds = self.grid.bounds
        return grid
