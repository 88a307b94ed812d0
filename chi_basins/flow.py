"""Single-direction flow routing over a raster grid.

:class:`FlowDirection` pairs a TopoToolbox ``FlowObject`` with the cell-centre
georeference of its grid and the mask of analysed (finite DEM) cells. Routing
queries go straight to the FlowObject: upstream dependence masks, flow
accumulation and flow distance. Cropping to a basin and extraction of a
stream network at an area threshold return new TopoToolbox objects wrapped
in :class:`FlowDirection` and :class:`FlowNetwork`.

Usage:
    import topotoolbox as tt3

    grid = tt3.read_tif("dem.tif")
    dem = Raster.from_gridobject(grid)
    flow = FlowDirection.from_flowobject(tt3.FlowObject(grid), dem)
    acc = flow.accumulation()
    net = flow.extract_network(threshold_area=1e6, accumulation=acc)
"""

from __future__ import annotations

import copy
from typing import Any

import numpy as np
import numpy.typing as npt
import topotoolbox as tt3

from .errors import AlignmentError
from .flow_network import FlowNetwork, flowobject_from_receivers
from .raster import GridSpec, Raster, mask_bounding_box

IntArray = npt.NDArray[np.int64]
BoolMask = npt.NDArray[np.bool_]


class FlowDirection:
    """Receiver graph over the cells of a grid.

    Parameters
    ----------
    receiver : array_like of int
        Linear (row-major) index of the downstream cell of every cell, -1 for
        none. Either flat or shaped like the grid.
    grid : GridSpec
        Grid the indices refer to.
    valid : array_like of bool, optional
        Cells that belong to the analysed area (finite DEM cells). Defaults to
        all cells.

    Raises
    ------
    ValueError
        If receivers are out of range, point to non-neighbours, or form a cycle.
    """

    def __init__(self, receiver: Any, grid: GridSpec, valid: Any = None) -> None:
        self._attach(flowobject_from_receivers(receiver, grid), grid, valid)

    def _attach(self, fd: tt3.FlowObject, grid: GridSpec, valid: Any) -> None:
        if tuple(fd.shape) != tuple(grid.shape):
            raise AlignmentError(f"grid shape {grid.shape} != FlowObject shape {tuple(fd.shape)}")
        if valid is None:
            valid = np.ones(grid.shape, dtype=bool)
        valid = np.array(valid, dtype=bool)
        if valid.shape != grid.shape:
            raise AlignmentError(f"valid mask shape {valid.shape} != grid shape {grid.shape}")
        valid.flags.writeable = False
        self.fd = fd
        self.grid = grid
        self.valid = valid

    @property
    def shape(self) -> tuple[int, int]:
        return self.grid.shape

    @property
    def cellsize(self) -> float:
        return self.grid.cellsize

    @property
    def receiver(self) -> IntArray:
        """Row-major linear index of the downstream cell of every cell, -1 for none."""
        receiver = np.full(self.grid.size, -1, dtype=np.int64)
        src = self.grid.ravel(*self.fd.unravel_index(self.fd.source))
        receiver[src] = self.grid.ravel(*self.fd.unravel_index(self.fd.target))
        return receiver

    def validate_alignment(self, raster: Raster, name: str = "raster") -> None:
        if not raster.grid.is_aligned(self.grid):
            raise AlignmentError(f"{name} is not aligned with the flow grid: {raster.grid} vs {self.grid}")

    def _grid_array(self, a: npt.ArrayLike, dtype: Any) -> np.ndarray:
        """``a`` in the FlowObject's storage order, as TopoToolbox's traversals expect."""
        return np.array(a, dtype=dtype, order=self.fd.order)

    def _raster(self, values: Any, name: str) -> Raster:
        z = np.asarray(values, dtype=float)
        z = np.where(self.valid, z, np.nan)
        return Raster(z, self.cellsize, self.grid.xmin, self.grid.ymax, name=name)

    # ---------- queries ----------

    def dependence_map(self, rows: Any, cols: Any) -> BoolMask:
        """Mask of all cells draining to the seed cell(s), seeds included."""
        seed = np.zeros(self.shape, dtype=np.uint8, order=self.fd.order)
        seed[np.atleast_1d(rows), np.atleast_1d(cols)] = 1
        return np.asarray(self.fd.dependencemap(seed).z, dtype=bool)

    def accumulation(self) -> Raster:
        """Number of valid cells draining through each cell, itself included."""
        weights = self._grid_array(self.valid, np.float32)
        return self._raster(self.fd.flow_accumulation(weights).z, "accumulation")

    def distance(self) -> Raster:
        """Flow distance from each cell to the end of its flow path."""
        return self._raster(self.fd.upstream_distance().z, "flow_distance")

    # ---------- derived objects ----------

    def crop(self, mask: BoolMask) -> tuple["FlowDirection", tuple[int, int]]:
        """Restrict the graph to ``mask`` and its bounding box.

        Edges leaving the mask are cut; cells outside the mask become invalid.
        The offset matches :meth:`Raster.crop` for the same mask.
        """
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != self.shape:
            raise AlignmentError(f"mask shape {mask.shape} != flow grid shape {self.shape}")
        rs, cs = mask_bounding_box(mask)
        sub_mask = mask[rs, cs]
        window = self.grid.window(rs.start, cs.start, sub_mask.shape)

        fd = self.fd
        src_r, src_c = fd.unravel_index(fd.source)
        tgt_r, tgt_c = fd.unravel_index(fd.target)
        keep = mask[src_r, src_c] & mask[tgt_r, tgt_c]

        def reindex(r, c):
            return np.ravel_multi_index((r[keep] - rs.start, c[keep] - cs.start), sub_mask.shape, order=fd.order)

        sub = copy.copy(fd)
        sub.shape = sub_mask.shape
        sub.strides = (sub_mask.shape[1], 1) if fd.order == "C" else (1, sub_mask.shape[0])
        sub.bounds = window.bounds
        sub.transform = window.transform
        sub.source = reindex(src_r, src_c)
        sub.target = reindex(tgt_r, tgt_c)
        sub.fraction = np.ones(sub.source.size, dtype=np.float32)
        sub.direction = self._grid_array(fd.direction[rs, cs], np.uint8)
        stream_r, stream_c = fd.unravel_index(fd.stream)
        inside = mask[stream_r, stream_c]
        sub.stream = np.ravel_multi_index(
            (stream_r[inside] - rs.start, stream_c[inside] - cs.start), sub_mask.shape, order=fd.order
        )

        cropped = FlowDirection.__new__(FlowDirection)
        cropped._attach(sub, window, sub_mask & self.valid[rs, cs])
        return cropped, (rs.start, cs.start)

    def extract_network(self, threshold_area: float, accumulation: Raster | None = None) -> FlowNetwork:
        """Stream network of the valid cells whose upstream area reaches ``threshold_area``.

        Parameters
        ----------
        threshold_area : float
            Minimum upstream area in map units squared.
        accumulation : Raster, optional
            Upstream cell counts aligned with this grid. Computed when omitted.

        Returns
        -------
        FlowNetwork
            Possibly empty network.
        """
        if threshold_area <= 0:
            raise ValueError("threshold_area must be positive")
        if accumulation is None:
            accumulation = self.accumulation()
        else:
            self.validate_alignment(accumulation, "accumulation")

        with np.errstate(invalid="ignore"):
            stream = self.valid & (accumulation.z * self.cellsize**2 >= threshold_area)
        s = tt3.StreamObject(self.fd, stream_pixels=self._grid_array(stream, bool))
        return FlowNetwork(s, self.grid)

    # ---------- constructors ----------

    @classmethod
    def from_flowobject(cls, fd: tt3.FlowObject, dem: Raster) -> "FlowDirection":
        """Adopt a TopoToolbox ``FlowObject`` computed on ``dem``.

        NaN cells of ``dem`` are excluded from accumulation and networks.
        """
        if tuple(fd.shape) != tuple(dem.shape):
            raise AlignmentError(f"DEM shape {dem.shape} != FlowObject shape {tuple(fd.shape)}")
        flow = cls.__new__(cls)
        flow._attach(fd, dem.grid, dem.valid)
        return flow
