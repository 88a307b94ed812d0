"""
Subdividing oversized basins into child basins.

Candidate pour points are found on the parent's stream network with one of
eight methods (see ``SUBDIVISION_METHODS``):

``order``
    Downstream ends of streams of Strahler order ``s_order``.
``confluences`` / ``up_confluences``
    Confluence nodes, or the nodes just upstream of them, after pruning
    short streams.
``filtered_confluences`` / ``p_filtered_confluences``
    Confluences draining at least ``min_basin_size`` km^2 (or that percentage
    of the parent area).
``trunk`` / ``filtered_trunk`` / ``p_filtered_trunk``
    Tributary outlets on the trunk stream of the main network plus the
    trunk's most headward junction point.

Candidates that are still at least ``max_size`` are either dropped or, when
``recursive`` is set, replaced by candidates discovered upstream of them.
Each remaining candidate is extracted from the parent's cropped grids under
ID ``int(f"{parent_id}{seq:03d}")``.

Usage:
    result = subdivide(basin, max_size=250.0, method="trunk")
    for child in result.basins:
        save_basin(child, out_dir)
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from typing import Callable, Optional

import numpy as np
import numpy.typing as npt

from .basin_extraction import Basin, BasinExtractor, Outlet
from .config import SUBDIVISION_METHODS, ProcessingOptions, SubdivisionOptions
from .errors import FATAL_ERRORS, ChiBasinsError, RecursionLimitWarning
from .flow_network import FlowNetwork
from .logging_config import basin_logger, get_logger

logger = get_logger(__name__)

IntArray = npt.NDArray[np.int64]
ExtractorFactory = Callable[[Basin, ProcessingOptions], BasinExtractor]

TRUNK_METHODS = ("trunk", "filtered_trunk", "p_filtered_trunk")
CONFLUENCE_METHODS = ("confluences", "up_confluences", "filtered_confluences", "p_filtered_confluences")
MAX_CHILDREN = 999


@dataclass(slots=True)
class Candidate:
    """A pour point proposed for a child basin."""

    node: int
    x: float
    y: float
    drainage_area: float
    round: int = 0


@dataclass(slots=True)
class SubdivisionResult:
    """Outcome of subdividing one basin.

    Attributes
    ----------
    parent_id : int
    basins : list of Basin
        Successfully extracted children, in candidate order.
    candidates : list of Candidate
        Accepted pour points, including those whose extraction failed.
    rounds : int
        Recursive discovery rounds that were run.
    capped : bool
        True when discovery stopped at ``max_rounds`` with oversized
        candidates left.
    failures : dict
        Child ID to error message.
    diagnostics : list of str
        Notes on dropped candidates and fallbacks.
    """

    parent_id: int
    basins: list[Basin] = field(default_factory=list)
    candidates: list[Candidate] = field(default_factory=list)
    rounds: int = 0
    capped: bool = False
    failures: dict[int, str] = field(default_factory=dict)
    diagnostics: list[str] = field(default_factory=list)


def child_id(parent_id: int, seq: int) -> int:
    """ID of the ``seq``-th child (1-based) of ``parent_id``.

    The sequence number takes the last three digits, so a basin has at most
    ``MAX_CHILDREN`` children.
    """
    if not 1 <= seq <= MAX_CHILDREN:
        raise ValueError(f"child sequence number must be in [1, {MAX_CHILDREN}], got {seq}")
    return int(f"{parent_id}{seq:03d}")


def validate_method(method: str, options: SubdivisionOptions) -> None:
    if method not in SUBDIVISION_METHODS:
        raise ValueError(f"method must be one of {SUBDIVISION_METHODS}, got {method!r}")
    if method.startswith("p_") and not 0 < options.min_basin_size <= 100:
        raise ValueError(
            f"min_basin_size is a percentage for {method} and must be in (0, 100], got {options.min_basin_size}"
        )


# ---------- candidate discovery ----------


def _clamped_order(max_order: int, s_order: int) -> int:
    if s_order < 1:
        raise ValueError(f"s_order must be >= 1, got {s_order}")
    if s_order >= max_order:
        return max_order - 1 if max_order > 1 else 1
    return s_order


def _order_outlets(net: FlowNetwork, s_order: int) -> IntArray:
    so = net.stream_order()
    k = _clamped_order(int(so.max()), s_order)
    is_k = so == k
    rcv = net.receiver
    downstream_end = np.ones(net.n_nodes, dtype=bool)
    has = rcv >= 0
    downstream_end[has] = so[rcv[has]] != k
    return np.flatnonzero(is_k & downstream_end)


def _trunk_points(net: FlowNetwork) -> IntArray:
    """Tributary outlets on the trunk of the largest component plus the headward junction point."""
    if net.is_empty:
        return np.empty(0, dtype=np.int64)
    main_mask = net.largest_components_mask(1)
    main = net.subnetwork(main_mask)
    main_ids = np.flatnonzero(main_mask)

    trunk = main.trunk()
    tribs = main.tributary_junctions(trunk)
    on_trunk = np.intersect1d(main.bconfluences(), np.flatnonzero(trunk))
    points = tribs
    if on_trunk.size:
        d = main.distance()
        points = np.append(tribs, on_trunk[np.argmax(d[on_trunk])])
    return main_ids[points]


class _CandidateSearch:
    """Finds candidate nodes on a network and on the parts upstream of a node."""

    def __init__(self, basin: Basin, method: str, options: SubdivisionOptions) -> None:
        self.net = basin.network
        self.method = method
        self.options = options
        cs = basin.dem.cellsize
        self.min_length = options.min_segment_cells * cs
        self.area = self.net.sample(basin.accumulation) * cs**2 / 1e6
        if method.startswith("p_"):
            self.min_area = basin.drainage_area * options.min_basin_size / 100.0
        elif method.startswith("filtered_"):
            self.min_area = options.min_basin_size
        else:
            self.min_area = 0.0

    def initial(self) -> IntArray:
        if self.method == "order":
            return _order_outlets(self.net, self.options.s_order)
        return self._points(self.net, np.arange(self.net.n_nodes))

    def upstream_of(self, node: int) -> IntArray:
        """Candidates inside the network draining to ``node``, ``node`` excluded."""
        mask = self.net.upstream_of(node)
        ids = np.flatnonzero(mask)
        found = self._points(self.net.subnetwork(mask), ids)
        return found[found != node]

    def _points(self, net: FlowNetwork, ids: IntArray) -> IntArray:
        """Candidate node IDs of ``net``, mapped back through ``ids`` to the parent network."""
        method = self.method
        if method in TRUNK_METHODS:
            pruned, kept = self._pruned(net)
            found = kept[_trunk_points(pruned)]
        elif method in ("confluences", "up_confluences"):
            pruned, kept = self._pruned(net)
            local = pruned.confluences() if method == "confluences" else pruned.bconfluences()
            found = kept[local]
        elif self.options.no_nested:
            found = net.bconfluences()
        else:
            found = net.confluences()
        found = ids[found]
        if self.min_area > 0:
            found = found[self.area[found] >= self.min_area]
        return found

    def _pruned(self, net: FlowNetwork) -> tuple[FlowNetwork, IntArray]:
        """Network without short streams and the IDs of its nodes in ``net``."""
        pruned = net.remove_short_streams(self.min_length)
        return pruned, net.index_of(pruned.ix)

    def outermost(self, nodes: list[int]) -> list[int]:
        """Drop nodes that have another node of the list downstream of them."""
        chosen = set(nodes)
        keep = []
        for node in nodes:
            path = self.net.downstream_path(node)[1:]
            if not chosen.intersection(path.tolist()):
                keep.append(node)
        return keep


def _discover(
    basin: Basin,
    method: str,
    max_size: float,
    options: SubdivisionOptions,
) -> tuple[list[Candidate], int, bool, list[str]]:
    log = basin_logger(logger, basin.id)
    search = _CandidateSearch(basin, method, options)
    net = search.net
    recursive = options.recursive and method != "order"
    if options.recursive and method == "order":
        log.debug("recursive subdivision is not available for the order method")

    diagnostics: list[str] = []
    accepted: list[tuple[int, int]] = []
    visited: set[int] = set()
    frontier = search.initial().tolist()
    rounds = 0
    capped = False

    while True:
        oversized = []
        for node in frontier:
            if node in visited:
                continue
            visited.add(node)
            if search.area[node] >= max_size:
                oversized.append(node)
            else:
                accepted.append((node, rounds))
        if not oversized:
            break
        if not recursive:
            diagnostics.append(f"dropped {len(oversized)} candidate(s) of at least {max_size:g} km2")
            break
        if rounds >= options.max_rounds:
            capped = True
            msg = (
                f"Subdivision of basin {basin.id} stopped after {rounds} rounds "
                f"with {len(oversized)} oversized candidate(s) left"
            )
            log.warning("stopped after %d rounds with %d oversized candidate(s) left", rounds, len(oversized))
            warnings.warn(msg, RecursionLimitWarning, stacklevel=3)
            diagnostics.append(msg)
            break
        rounds += 1
        frontier = [int(n) for node in oversized for n in search.upstream_of(node)]

    nodes = [n for n, _ in accepted]
    if options.no_nested and method in ("filtered_confluences", "p_filtered_confluences"):
        keep = set(search.outermost(nodes))
        if len(keep) < len(nodes):
            diagnostics.append(f"removed {len(nodes) - len(keep)} nested candidate(s)")
        accepted = [(n, r) for n, r in accepted if n in keep]

    candidates = [
        Candidate(int(n), float(net.x[n]), float(net.y[n]), float(search.area[n]), r) for n, r in accepted
    ]
    log.info("%d candidate(s) from %s after %d recursive round(s)", len(candidates), method, rounds)
    return candidates, rounds, capped, diagnostics


def select_candidates(
    basin: Basin,
    method: str,
    max_size: float,
    options: SubdivisionOptions | None = None,
) -> list[Candidate]:
    """Pour points of the child basins of ``basin``.

    Raises
    ------
    ValueError
        For an unknown method, a percentage ``min_basin_size`` outside
        (0, 100], or ``s_order < 1``.
    """
    options = options or SubdivisionOptions()
    validate_method(method, options)
    return _discover(basin, method, max_size, options)[0]


# ---------- extraction ----------


def subdivide(
    basin: Basin,
    max_size: float,
    method: str,
    options: SubdivisionOptions | None = None,
    extractor_factory: Optional[ExtractorFactory] = None,
) -> SubdivisionResult:
    """Split ``basin`` into child basins when it drains at least ``max_size`` km^2.

    Parameters
    ----------
    basin : Basin
    max_size : float
        Drainage area (km^2) from which a basin is subdivided.
    method : str
        One of ``SUBDIVISION_METHODS``.
    options : SubdivisionOptions, optional
    extractor_factory : callable, optional
        ``(basin, processing_options) -> BasinExtractor``; defaults to
        :meth:`BasinExtractor.from_basin`.

    Returns
    -------
    SubdivisionResult
        Children that failed to extract are listed in ``failures``; their
        siblings are still returned.

    Raises
    ------
    ValueError
        If more than ``MAX_CHILDREN`` candidates are found, since child IDs
        hold a three-digit sequence number.
    """
    options = options or SubdivisionOptions()
    validate_method(method, options)
    result = SubdivisionResult(parent_id=basin.id)
    log = basin_logger(logger, basin.id)

    if basin.drainage_area < max_size:
        log.debug("%.2f km2 is below %.2f km2, not subdivided", basin.drainage_area, max_size)
        return result

    candidates, rounds, capped, diagnostics = _discover(basin, method, max_size, options)
    result.candidates = candidates
    result.rounds = rounds
    result.capped = capped
    result.diagnostics = diagnostics
    if not candidates:
        log.warning("no sub-basins found with method %s", method)
        return result
    if len(candidates) > MAX_CHILDREN:
        raise ValueError(
            f"{len(candidates)} sub-basins found, at most {MAX_CHILDREN} can be numbered; "
            "raise max_size or min_basin_size"
        )

    factory = extractor_factory or BasinExtractor.from_basin
    extractor = factory(basin, options.processing)
    for seq, cand in enumerate(candidates, start=1):
        cid = child_id(basin.id, seq)
        try:
            child = extractor.extract(Outlet(cid, cand.x, cand.y), parent_id=basin.id)
        except FATAL_ERRORS:
            raise
        except (ChiBasinsError, ValueError) as e:
            log.warning("sub-basin %d failed: %s", cid, e)
            result.failures[cid] = str(e)
            continue
        result.basins.append(child)

    log.info("Extracted %d of %d sub-basin(s)", len(result.basins), len(candidates))
    return result
