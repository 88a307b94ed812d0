"""
Basin extraction: everything known about the catchment of one outlet.

:class:`BasinExtractor` holds the shared, read-only inputs of a study area
(DEM, flow directions, accumulation and optional extra grids) and turns an
:class:`Outlet` into a :class:`Basin` record: cropped grids, stream network,
conditioned elevations, chi profile with best-fit concavity, steepness maps
and whole-basin statistics.

Usage:
    extractor = BasinExtractor(dem, flow, acc, ProcessingOptions(threshold_area=5e5))
    basin = extractor.extract(Outlet(id=7, x=512_300.0, y=4_301_150.0))
    print(basin.chi_profile.mn, basin.ksn_stats.mean)

``extract`` has no side effects and can be called from several threads at
once on the same extractor.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

import numpy as np

from .chi_transform import ChiProfile, chi_values, compute_chi
from .conditioning import condition, conditioned_raster
from .config import ProcessingOptions
from .errors import AlignmentError, EmptyNetworkError, OutOfBoundsError
from .flow import FlowDirection
from .flow_network import FlowNetwork
from .logging_config import basin_logger, get_logger
from .metrics import (
    CategoricalStats,
    Hypsometry,
    SummaryStats,
    categorical_stats,
    centroid,
    gradient_grid,
    grid_stats,
    hypsometry,
    local_relief,
)
from .raster import Raster
from .steepness import SteepnessSegment, ksn_grid, node_attributes, steepness_map

logger = get_logger(__name__)

CategoricalInput = tuple[Raster, Optional[Mapping[int, str]]]


@dataclass(frozen=True)
class Outlet:
    """Pour point of a basin.

    Attributes
    ----------
    id : int
        Basin identifier; drives file names and child IDs.
    x, y : float
        Map coordinates, snapped onto the stream network.
    """

    id: int
    x: float
    y: float


@dataclass(eq=False)
class Basin:
    """Analysis record of a single drainage basin.

    Grids are cropped to the bounding box of the basin and NaN outside it;
    ``offset`` is the (row, col) of the first cropped cell in the grid the
    basin was extracted from.
    """

    outlet: Outlet
    dem: Raster
    conditioned_dem: Raster
    accumulation: Raster
    flow: FlowDirection
    network: FlowNetwork
    chi_profile: ChiProfile
    chi_grid: Raster
    gradient: Raster
    steepness: list[SteepnessSegment]
    steepness_ref: list[SteepnessSegment]
    ksn_stats: SummaryStats
    gradient_stats: SummaryStats
    elevation_stats: SummaryStats
    hypsometry: Hypsometry
    centroid: tuple[float, float]
    drainage_area: float
    outlet_elevation: float
    ksn_method: str
    gradient_method: str
    ref_concavity: float
    min_order: int
    threshold_area: float
    segment_length: float
    offset: tuple[int, int] = (0, 0)
    parent_id: Optional[int] = None
    aux_grids: dict[str, Raster] = field(default_factory=dict)
    aux_stats: dict[str, SummaryStats] = field(default_factory=dict)
    cat_grids: dict[str, Raster] = field(default_factory=dict)
    cat_stats: dict[str, CategoricalStats] = field(default_factory=dict)
    relief: dict[float, Raster] = field(default_factory=dict)
    relief_stats: dict[float, SummaryStats] = field(default_factory=dict)
    ksn_grid: Optional[Raster] = None
    ksn_radius: Optional[float] = None

    @property
    def id(self) -> int:
        return self.outlet.id

    @property
    def mn(self) -> float:
        """Best-fit concavity of the main stream network."""
        return self.chi_profile.mn

    def summary(self) -> dict[str, Any]:
        """One flat row of scalars, used for the summary table."""
        row: dict[str, Any] = {
            "basin_id": self.outlet.id,
            "parent_id": self.parent_id,
            "outlet_x": self.outlet.x,
            "outlet_y": self.outlet.y,
            "centroid_x": self.centroid[0],
            "centroid_y": self.centroid[1],
            "drainage_area_km2": self.drainage_area,
            "outlet_elevation": self.outlet_elevation,
            "mn": self.chi_profile.mn,
            "ks_chi": self.chi_profile.ks,
            "ks_chi_lower": self.chi_profile.ks_lower,
            "ks_chi_upper": self.chi_profile.ks_upper,
            "r2_chi": self.chi_profile.r_squared,
            "ref_concavity": self.ref_concavity,
            "threshold_area": self.threshold_area,
            "ksn_method": self.ksn_method,
            "n_segments": len(self.steepness_ref),
            "hypsometric_integral": self.hypsometry.integral,
        }
        row.update(self.ksn_stats.as_dict("ksn_"))
        row.update(self.gradient_stats.as_dict("gradient_"))
        row.update(self.elevation_stats.as_dict("elevation_"))
        for name, st in self.aux_stats.items():
            row.update(st.as_dict(f"{name}_"))
        for name, cs in self.cat_stats.items():
            row[f"{name}_majority"] = cs.labels.get(int(cs.majority), cs.majority) if np.isfinite(cs.majority) else None
        for radius, st in self.relief_stats.items():
            row.update(st.as_dict(f"relief_{radius:g}_"))
        return row


class BasinExtractor:
    """Extracts :class:`Basin` records from shared study-area grids.

    Parameters
    ----------
    dem : Raster
        Raw elevations.
    flow : FlowDirection
        Flow directions on the grid of ``dem``.
    accumulation : Raster, optional
        Upstream cell counts; computed from ``flow`` when omitted.
    options : ProcessingOptions, optional
    conditioned_dem : Raster, optional
        DEM conditioned elsewhere; replaces the built-in conditioning.
    aux_grids : mapping of str to Raster, optional
        Continuous grids summarized per basin. Grids that are not aligned
        with ``dem`` are resampled with ``options.resample_method``.
    cat_grids : mapping of str to (Raster, labels), optional
        Categorical grids with optional code-to-name labels. Must be aligned.
    network : FlowNetwork, optional
        Channels that outlets are snapped to. Extracted from ``flow`` at
        ``options.threshold_area`` on first use when omitted.

    Raises
    ------
    AlignmentError
        If ``flow``, ``accumulation``, ``conditioned_dem`` or a categorical
        grid is not aligned with ``dem``.
    """

    def __init__(
        self,
        dem: Raster,
        flow: FlowDirection,
        accumulation: Raster | None = None,
        options: ProcessingOptions | None = None,
        conditioned_dem: Raster | None = None,
        aux_grids: Mapping[str, Raster] | None = None,
        cat_grids: Mapping[str, CategoricalInput] | None = None,
        network: FlowNetwork | None = None,
    ) -> None:
        self.options = options or ProcessingOptions()
        flow.validate_alignment(dem, "DEM")
        if accumulation is None:
            accumulation = flow.accumulation()
        dem.validate_alignment(accumulation, "accumulation")
        if conditioned_dem is not None:
            dem.validate_alignment(conditioned_dem, "conditioned DEM")
        if network is not None and not network.grid.is_aligned(dem.grid):
            raise AlignmentError(f"network is not aligned with the DEM: {network.grid} vs {dem.grid}")

        self.dem = dem
        self.flow = flow
        self.accumulation = accumulation
        self.conditioned_dem = conditioned_dem
        self._network = network
        self._network_lock = threading.Lock()

        self.aux_grids: dict[str, Raster] = {}
        for name, grid in (aux_grids or {}).items():
            if not dem.is_aligned(grid):
                logger.info("Resampling %s onto the DEM grid (%s)", name, self.options.resample_method)
                grid = grid.resample_to(dem, self.options.resample_method)
            self.aux_grids[name] = grid

        self.cat_grids: dict[str, CategoricalInput] = {}
        for name, (grid, labels) in (cat_grids or {}).items():
            dem.validate_alignment(grid, f"categorical grid {name}")
            self.cat_grids[name] = (grid, labels)

        cs = dem.cellsize
        self.segment_length = self.options.segment_length
        if self.segment_length < 3 * cs:
            logger.warning(
                "segment_length %.1f is shorter than 3 cells; using %.1f", self.segment_length, 3 * cs
            )
            self.segment_length = 3 * cs

    # ---------- extraction ----------

    @property
    def network(self) -> FlowNetwork:
        """Channels of the whole study area that outlets are snapped to."""
        with self._network_lock:
            if self._network is None:
                self._network, _ = self._extract_network(self.flow, self.accumulation, logger)
            return self._network

    def snap(self, outlet: Outlet) -> Outlet:
        """Move ``outlet`` onto the nearest channel cell.

        Raises
        ------
        OutOfBoundsError
            If the outlet lies outside the DEM.
        NoChannelNearbyError
            If no channel lies within ``options.snap_tolerance`` (default 10
            cells) of the outlet.
        """
        self.dem.xy_to_rc(outlet.x, outlet.y)
        tolerance = self.options.snap_tolerance
        if tolerance is None:
            tolerance = 10 * self.dem.cellsize
        net = self.network
        node = net.nearest_node(outlet.x, outlet.y, tolerance)
        x, y = float(net.x[node]), float(net.y[node])
        if (x, y) != (outlet.x, outlet.y):
            logger.debug("Outlet %d snapped from (%g, %g) to (%g, %g)", outlet.id, outlet.x, outlet.y, x, y)
        return Outlet(outlet.id, x, y)

    def extract(self, outlet: Outlet, parent_id: Optional[int] = None) -> Basin:
        """Build the record of the basin draining to ``outlet``.

        The outlet is snapped onto the channel network first (see
        :meth:`snap`); the record keeps the snapped coordinates.

        Raises
        ------
        OutOfBoundsError
            If the outlet lies outside the DEM or on a nodata cell.
        NoChannelNearbyError
            If no channel lies within the snap tolerance of the outlet.
        EmptyNetworkError
            If no channel remains after halving the threshold area.
        InsufficientDataError
            If the main stream is too short for a chi regression.
        """
        opts = self.options
        log = basin_logger(logger, outlet.id)
        dem = self.dem
        cs = dem.cellsize

        outlet = self.snap(outlet)
        r, c = dem.xy_to_rc(outlet.x, outlet.y)
        if not np.isfinite(dem.z[r, c]):
            raise OutOfBoundsError(f"outlet ({outlet.x}, {outlet.y}) falls on a nodata cell")

        mask = self.flow.dependence_map(r, c)
        dem_c, offset = dem.crop(mask)
        flow_c, _ = self.flow.crop(mask)
        acc_c, _ = self.accumulation.crop(mask)
        cond_c = self.conditioned_dem.crop(mask)[0] if self.conditioned_dem is not None else None

        n_px = int(np.count_nonzero(mask & dem.valid))
        drainage_area = n_px * cs**2 / 1e6
        acc_out = float(self.accumulation.z[r, c])
        if np.isfinite(acc_out) and abs(acc_out - n_px) > 1:
            log.warning("accumulation at outlet is %d cells, dependence map holds %d", int(acc_out), n_px)
        log.info("Drainage area %.2f km2 (%d cells)", drainage_area, n_px)

        hyps = hypsometry(dem_c, opts.hypsometry_bins)
        cen = centroid(dem_c)

        network, threshold = self._extract_network(flow_c, acc_c, log)
        area = network.sample(acc_c) * cs**2

        chi_grid = dem_c.with_data(network.to_grid(chi_values(network, area, opts.ref_concavity)), name="chi")
        grad = gradient_grid(dem_c, opts.gradient_method)
        zc = condition(network, dem_c, opts.interp_value, cond_c)
        cond_raster = conditioned_raster(network, dem_c, zc)

        main = network.largest_components_mask(1)
        idx = np.flatnonzero(main)
        profile = compute_chi(
            network.subnetwork(main), zc[idx], area[idx], mn=None, mn_method=opts.mn_method
        )
        log.info("Best-fit concavity %.3f, ks %.2f (R2 %.3f)", profile.mn, profile.ks, profile.r_squared)

        method = opts.ksn_method
        if method == "trib" and drainage_area < opts.trib_min_area:
            log.info("Basin smaller than %.1f km2, using quick steepness map", opts.trib_min_area)
            method = "quick"
        min_reach = opts.min_reach_cells * cs
        steep = steepness_map(
            method,
            network,
            node_attributes(network, dem_c, zc, area, profile.mn),
            self.segment_length,
            profile.mn,
            opts.min_order,
            min_reach,
        )
        steep_ref = steepness_map(
            method,
            network,
            node_attributes(network, dem_c, zc, area, opts.ref_concavity),
            self.segment_length,
            opts.ref_concavity,
            opts.min_order,
            min_reach,
        )

        ksn_stats = SummaryStats.from_values([s.ksn for s in steep_ref], n=len(steep_ref))
        basin = Basin(
            outlet=outlet,
            dem=dem_c,
            conditioned_dem=cond_raster,
            accumulation=acc_c,
            flow=flow_c,
            network=network,
            chi_profile=profile,
            chi_grid=chi_grid,
            gradient=grad,
            steepness=steep,
            steepness_ref=steep_ref,
            ksn_stats=ksn_stats,
            gradient_stats=grid_stats(grad),
            elevation_stats=grid_stats(dem_c),
            hypsometry=hyps,
            centroid=cen,
            drainage_area=drainage_area,
            outlet_elevation=float(dem.z[r, c]),
            ksn_method=method,
            gradient_method=opts.gradient_method,
            ref_concavity=opts.ref_concavity,
            min_order=opts.min_order,
            threshold_area=threshold,
            segment_length=self.segment_length,
            offset=offset,
            parent_id=parent_id,
        )
        self._optional_products(basin, mask, log)
        return basin

    def _extract_network(self, flow: FlowDirection, acc: Raster, log) -> tuple[FlowNetwork, float]:
        threshold = self.options.threshold_area
        for halvings in range(self.options.max_threshold_halvings + 1):
            network = flow.extract_network(threshold, acc)
            if not network.is_empty:
                return network, threshold
            if halvings == self.options.max_threshold_halvings:
                break
            threshold /= 2.0
            log.warning("No channels above threshold area; halving it to %g", threshold)
        raise EmptyNetworkError(
            f"no channels after halving the threshold area {self.options.max_threshold_halvings} times"
        )

    def _optional_products(self, basin: Basin, mask: np.ndarray, log) -> None:
        opts = self.options
        if opts.ksn_radius is not None:
            basin.ksn_grid = ksn_grid(basin.dem, basin.steepness_ref, opts.ksn_radius)
            basin.ksn_radius = opts.ksn_radius

        for name, grid in self.aux_grids.items():
            cropped, _ = grid.crop(mask)
            basin.aux_grids[name] = cropped
            basin.aux_stats[name] = grid_stats(cropped)

        for name, (grid, labels) in self.cat_grids.items():
            cropped, _ = grid.crop(mask)
            basin.cat_grids[name] = cropped
            basin.cat_stats[name] = categorical_stats(cropped, labels)

        if opts.calc_relief:
            for radius in opts.relief_radii:
                relief = local_relief(basin.dem, radius)
                basin.relief[radius] = relief
                basin.relief_stats[radius] = grid_stats(relief)
            log.debug("Computed local relief at radii %s", opts.relief_radii)

    # ---------- children ----------

    @classmethod
    def from_basin(cls, basin: Basin, options: ProcessingOptions | None = None) -> "BasinExtractor":
        """Extractor over the cropped grids of an existing basin.

        Used to extract sub-basins: flow, accumulation and the extra grids of
        the parent are reused as-is.
        """
        cat = {name: (grid, basin.cat_stats[name].labels or None) for name, grid in basin.cat_grids.items()}
        opts = options or ProcessingOptions()
        return cls(
            basin.dem,
            basin.flow,
            basin.accumulation,
            opts,
            aux_grids=dict(basin.aux_grids),
            cat_grids=cat,
            network=basin.network,
        )
