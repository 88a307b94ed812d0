"""
Batch processing of many outlets and of a directory of basin records.

Usage:
    outlets, skipped = prepare_outlets(read_outlets("mouths.csv"), dem, net, basin_dir)
    summary = process_basins(dem, flow, acc, net, outlets, basin_dir, ProcessingOptions(), n_workers=8)
    summary.log()

    subdivide_basins(basin_dir, max_size=250.0, method="trunk")

Basins are processed in a thread pool, one task per outlet. The shared grids
are read-only, so the tasks need no locking; records are written by the
calling thread as results come in. A per-basin error skips that basin only,
while an alignment or multiple-outlet error stops the whole batch.
"""

from __future__ import annotations

import logging
import os
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional, TypeVar

import numpy as np

from .basin_extraction import Basin, BasinExtractor, CategoricalInput, Outlet
from .basin_io import (
    PathLike,
    list_basin_files,
    load_basin,
    save_basin,
    subset_stem,
    write_arc_files,
    write_outlets,
)
from .config import ProcessingOptions, SubdivisionOptions
from .errors import (
    FATAL_ERRORS,
    ChiBasinsError,
    DuplicateIdError,
    NoChannelNearbyError,
    OutOfBoundsError,
)
from .flow import FlowDirection
from .flow_network import FlowNetwork
from .logging_config import get_logger
from .raster import Raster
from .subdivision import subdivide, validate_method

logger = get_logger(__name__)

T = TypeVar("T")

UPDATED_OUTLETS_FILE = "river_mouths_updated.csv"
GENERATED_OUTLETS_FILE = "river_mouths.csv"


@dataclass(slots=True)
class BatchSummary:
    """What happened to every basin of a batch.

    Attributes
    ----------
    succeeded : list of int
        IDs of the basins that were extracted and saved, ascending.
    skipped : dict
        Basin ID to the reason it was skipped.
    fatal : str or None
        Error that stopped the batch.
    basins : dict
        Basin ID to record, for the succeeded basins.
    files : dict
        Basin ID to the saved record file.
    """

    succeeded: list[int] = field(default_factory=list)
    skipped: dict[int, str] = field(default_factory=dict)
    fatal: Optional[str] = None
    basins: dict[int, Basin] = field(default_factory=dict)
    files: dict[int, Path] = field(default_factory=dict)

    @property
    def n_processed(self) -> int:
        return len(self.succeeded)

    def log(self, log: Optional[logging.Logger] = None) -> None:
        log = log or logger
        log.info("%d basin(s) succeeded, %d skipped", len(self.succeeded), len(self.skipped))
        for basin_id, reason in sorted(self.skipped.items()):
            log.warning("Basin %d skipped: %s", basin_id, reason)
        if self.fatal:
            log.error("Batch stopped: %s", self.fatal)


def _reason(err: BaseException) -> str:
    return f"{type(err).__name__}: {err}"


# ---------- outlets ----------


def prepare_outlets(
    outlets: Iterable[Outlet],
    dem: Raster,
    network: FlowNetwork,
    basin_dir: Optional[PathLike] = None,
    snap_tolerance: Optional[float] = None,
    reassign_ids: bool = True,
) -> tuple[list[Outlet], dict[int, str]]:
    """Check outlet IDs and snap outlets onto the stream network.

    Duplicate IDs are replaced by 1..n; zero IDs by ``max(id) + k``. Either
    change is logged and the corrected list is written to
    ``river_mouths_updated.csv`` in ``basin_dir``. Outlets outside the DEM
    or farther than ``snap_tolerance`` (default 10 cells) from a channel are
    skipped. With ``reassign_ids=False`` duplicate IDs raise
    :class:`DuplicateIdError` instead.

    Returns
    -------
    outlets : list of Outlet
        Snapped outlets.
    skipped : dict
        Outlet ID to the reason it was skipped.
    """
    outlets = list(outlets)
    changed = False
    ids = [o.id for o in outlets]
    if len(set(ids)) != len(ids):
        dupes = sorted(k for k, n in Counter(ids).items() if n > 1)
        if not reassign_ids:
            raise DuplicateIdError(f"duplicate outlet IDs: {dupes}")
        logger.warning("Duplicate outlet IDs %s; all IDs have been reassigned to 1..%d", dupes, len(ids))
        outlets = [Outlet(i, o.x, o.y) for i, o in enumerate(outlets, start=1)]
        changed = True
    elif 0 in ids:
        top = max(ids)
        n_zero = 0
        fixed = []
        for o in outlets:
            if o.id == 0:
                n_zero += 1
                o = Outlet(top + n_zero, o.x, o.y)
            fixed.append(o)
        logger.warning("%d outlet(s) with ID 0 have been reassigned from %d", n_zero, top + 1)
        outlets = fixed
        changed = True

    if changed and basin_dir is not None:
        path = write_outlets(outlets, Path(basin_dir) / UPDATED_OUTLETS_FILE)
        logger.info("Updated outlet list written to %s", path)

    tolerance = 10 * dem.cellsize if snap_tolerance is None else snap_tolerance
    snapped: list[Outlet] = []
    skipped: dict[int, str] = {}
    for o in outlets:
        try:
            dem.xy_to_rc(o.x, o.y)
            node = network.nearest_node(o.x, o.y, tolerance)
        except (OutOfBoundsError, NoChannelNearbyError) as e:
            logger.warning("Outlet %d skipped: %s", o.id, e)
            skipped[o.id] = _reason(e)
            continue
        snapped.append(Outlet(o.id, float(network.x[node]), float(network.y[node])))
    return snapped, skipped


def outlets_from_elevation(
    network: FlowNetwork,
    dem: Raster,
    elevation: float,
    basin_dir: Optional[PathLike] = None,
) -> list[Outlet]:
    """Outlets where channels drop below ``elevation``, numbered 1..n.

    Keeps the stream nodes at or above ``elevation`` and returns the outlets
    of the resulting network, ordered by node.
    """
    z = network.sample(dem)
    with np.errstate(invalid="ignore"):
        above = z >= elevation
    if not above.any():
        raise ValueError(f"no stream nodes at or above elevation {elevation}")
    sub = network.subnetwork(above)
    ends = sub.outlets()
    outlets = [Outlet(i, float(sub.x[n]), float(sub.y[n])) for i, n in enumerate(ends.tolist(), start=1)]
    logger.info("Generated %d outlet(s) at elevation %g", len(outlets), elevation)
    if basin_dir is not None:
        write_outlets(outlets, Path(basin_dir) / GENERATED_OUTLETS_FILE)
    return outlets


# ---------- execution ----------


def _run(
    func: Callable[[T], object],
    items: list[tuple[int, T]],
    n_workers: Optional[int],
    on_result: Callable[[int, object], None],
    summary: BatchSummary,
) -> None:
    """Run ``func`` over keyed items, recording per-item failures in ``summary``.

    Fatal errors cancel the remaining work and are re-raised. Any other error
    raised by ``func`` or ``on_result`` skips that item only; unexpected ones
    are logged with their traceback.
    """
    workers = n_workers or os.cpu_count() or 1

    def handle(key: int, call: Callable[[], object]) -> None:
        try:
            result = call()
        except FATAL_ERRORS as e:
            summary.fatal = f"basin {key}: {_reason(e)}"
            raise
        except (ChiBasinsError, ValueError) as e:
            logger.warning("Basin %d failed: %s", key, e)
            summary.skipped[key] = _reason(e)
            return
        except Exception as e:
            logger.exception("Basin %d failed unexpectedly", key)
            summary.skipped[key] = _reason(e)
            return
        try:
            on_result(key, result)
        except Exception as e:
            logger.exception("Basin %d could not be saved", key)
            summary.skipped[key] = _reason(e)

    if workers == 1 or len(items) <= 1:
        for key, item in items:
            handle(key, lambda: func(item))
        return

    executor = ThreadPoolExecutor(max_workers=workers)
    try:
        futures = {executor.submit(func, item): key for key, item in items}
        for future in as_completed(futures):
            handle(futures[future], future.result)
    finally:
        executor.shutdown(wait=True, cancel_futures=True)


def process_basins(
    dem: Raster,
    flow: FlowDirection,
    accumulation: Raster | None,
    network: FlowNetwork,
    outlets: Iterable[Outlet],
    basin_dir: PathLike,
    options: ProcessingOptions | None = None,
    n_workers: Optional[int] = None,
    conditioned_dem: Raster | None = None,
    aux_grids: Mapping[str, Raster] | None = None,
    cat_grids: Mapping[str, CategoricalInput] | None = None,
) -> BatchSummary:
    """Extract, save and optionally export one basin per outlet.

    Outlets are snapped to ``network`` first (see :func:`prepare_outlets`).
    Records are saved as ``Basin_{id}_Data.pkl.gz`` in ``basin_dir``.

    Raises
    ------
    AlignmentError, MultipleOutletsError
        Stop the batch; basins already saved are kept.
    """
    options = options or ProcessingOptions()
    basin_dir = Path(basin_dir)
    basin_dir.mkdir(parents=True, exist_ok=True)
    extractor = BasinExtractor(
        dem, flow, accumulation, options, conditioned_dem, aux_grids, cat_grids, network=network
    )

    ready, skipped = prepare_outlets(outlets, dem, network, basin_dir, options.snap_tolerance)
    summary = BatchSummary(skipped=dict(skipped))
    logger.info("Processing %d basin(s)", len(ready))

    def store(basin_id: int, basin: Basin) -> None:
        path = save_basin(basin, basin_dir)
        if options.write_arc_files:
            write_arc_files(basin, basin_dir)
        summary.files[basin_id] = path
        summary.basins[basin_id] = basin
        summary.succeeded.append(basin_id)
        logger.info("Basin %d done (%.2f km2)", basin_id, basin.drainage_area)

    try:
        _run(extractor.extract, [(o.id, o) for o in ready], n_workers or options.n_workers, store, summary)
    except FATAL_ERRORS:
        summary.log()
        raise
    summary.succeeded.sort()
    return summary


def _child_seq(parent_id: int, cid: int) -> int:
    return int(str(cid)[len(str(parent_id)) :])


def subdivide_basins(
    basin_dir: PathLike,
    max_size: float,
    method: str,
    options: SubdivisionOptions | None = None,
    n_workers: Optional[int] = None,
) -> BatchSummary:
    """Subdivide every saved basin of at least ``max_size`` km^2.

    Children are saved to ``basin_dir / options.subbasin_dir`` as
    ``Basin_{parent}_DataSubset_{seq}.pkl.gz``. The summary is keyed by child
    ID; children that failed to extract are listed as skipped.
    """
    options = options or SubdivisionOptions()
    validate_method(method, options)
    basin_dir = Path(basin_dir)
    out_dir = basin_dir / options.subbasin_dir
    files = list_basin_files(basin_dir)
    if not files:
        logger.warning("No basin records found in %s", basin_dir)

    parents = [load_basin(p) for p in files]
    big = [(b.id, b) for b in parents if b.drainage_area >= max_size]
    logger.info("%d of %d basin(s) are at least %g km2", len(big), len(parents), max_size)

    summary = BatchSummary()

    def store(parent_id: int, result) -> None:
        for child in result.basins:
            stem = subset_stem(parent_id, _child_seq(parent_id, child.id))
            summary.files[child.id] = save_basin(child, out_dir, stem)
            if options.processing.write_arc_files:
                write_arc_files(child, out_dir, stem)
            summary.basins[child.id] = child
            summary.succeeded.append(child.id)
        summary.skipped.update(result.failures)

    def work(basin: Basin):
        return subdivide(basin, max_size, method, options)

    try:
        _run(work, big, n_workers or options.processing.n_workers, store, summary)
    except FATAL_ERRORS:
        summary.log()
        raise
    summary.succeeded.sort()
    return summary
