"""
Reading and writing basin records and their exports.

Records are stored one per file as gzip-compressed pickles
(``Basin_{id}_Data.pkl.gz``; sub-basins ``Basin_{parent}_DataSubset_{seq}.pkl.gz``).
Summary tables and outlet lists are CSV via pandas. Grids are exported as
GeoTIFF through TopoToolbox and steepness segments as a GeoPackage of line
features through geopandas.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable, Optional, Union

import geopandas as gpd
import pandas as pd
import topotoolbox as tt3

from .basin_extraction import Basin, Outlet
from .logging_config import get_logger
from .raster import Raster

logger = get_logger(__name__)

PathLike = Union[str, Path]

RECORD_SUFFIX = ".pkl.gz"
_RECORD_RE = re.compile(r"^Basin_(\d+)_Data(?:Subset_(\d+))?\.pkl\.gz$")


def basin_stem(basin_id: int) -> str:
    return f"Basin_{basin_id}_Data"


def subset_stem(parent_id: int, seq: int) -> str:
    return f"Basin_{parent_id}_DataSubset_{seq}"


# ---------- records ----------


def save_basin(basin: Basin, directory: PathLike, stem: Optional[str] = None) -> Path:
    """Write a basin record and return its path."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{stem or basin_stem(basin.id)}{RECORD_SUFFIX}"
    pd.to_pickle(basin, path, compression="gzip")
    logger.debug("Saved basin %d to %s", basin.id, path)
    return path


def load_basin(path: PathLike) -> Basin:
    basin = pd.read_pickle(Path(path), compression="gzip")
    if not isinstance(basin, Basin):
        raise TypeError(f"{path} does not hold a basin record")
    return basin


def list_basin_files(directory: PathLike, subsets: bool = False) -> list[Path]:
    """Basin record files in ``directory`` ordered by basin ID.

    Sub-basin records (``DataSubset``) are only listed when ``subsets`` is set.
    """
    found = []
    for path in Path(directory).glob(f"Basin_*{RECORD_SUFFIX}"):
        m = _RECORD_RE.match(path.name)
        if m is None or (m.group(2) is not None and not subsets):
            continue
        found.append(((int(m.group(1)), int(m.group(2) or 0)), path))
    return [p for _, p in sorted(found)]


def summary_table(basins: Iterable[Basin]) -> pd.DataFrame:
    rows = [b.summary() for b in basins]
    df = pd.DataFrame(rows)
    if not df.empty:
        df = df.sort_values("basin_id", ignore_index=True)
    return df


def write_summary(basins: Iterable[Basin], path: PathLike) -> pd.DataFrame:
    """Write one row per basin to a CSV file and return the table."""
    df = summary_table(basins)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
    logger.info("Wrote summary of %d basin(s) to %s", len(df), path)
    return df


# ---------- outlets ----------


def read_outlets(path: PathLike) -> list[Outlet]:
    """Outlets from a CSV with ``x``, ``y`` and ``id`` columns.

    Files without those headers are read as three unnamed columns in the
    order x, y, id.
    """
    df = pd.read_csv(path)
    cols = {c.lower().strip(): c for c in df.columns}
    if {"x", "y", "id"} <= set(cols):
        x, y, ids = df[cols["x"]], df[cols["y"]], df[cols["id"]]
    else:
        df = pd.read_csv(path, header=None)
        if df.shape[1] < 3:
            raise ValueError(f"{path} must have x, y and id columns")
        x, y, ids = df[0], df[1], df[2]
    return [Outlet(int(i), float(a), float(b)) for a, b, i in zip(x, y, ids)]


def write_outlets(outlets: Iterable[Outlet], path: PathLike) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df = pd.DataFrame([{"x": o.x, "y": o.y, "id": o.id} for o in outlets], columns=["x", "y", "id"])
    df.to_csv(path, index=False)
    return path


# ---------- exports ----------


def write_grid(raster: Raster, path: PathLike) -> Path:
    """Write a raster as a single-precision GeoTIFF with NaN cells masked."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tt3.write_tif(raster.to_gridobject(), str(path))
    return path


def read_grid(path: PathLike, name: str = "") -> Raster:
    """Read a GeoTIFF written by :func:`write_grid` or a GIS."""
    return Raster.from_gridobject(tt3.read_tif(str(path)), name=name or Path(path).stem)


def segments_frame(basin: Basin, reference: bool = True) -> gpd.GeoDataFrame:
    """Steepness segments as ``LineString`` features, one row per segment."""
    segments = basin.steepness_ref if reference else basin.steepness
    return gpd.GeoDataFrame(
        [s.to_record() for s in segments],
        geometry=[s.geometry for s in segments],
    )


def write_arc_files(basin: Basin, directory: PathLike, stem: Optional[str] = None) -> list[Path]:
    """Export the grids and steepness segments of a basin.

    Writes ``{stem}_DEM.tif``, ``{stem}_CHI.tif``, ``{stem}_KSN.tif`` (when
    a ksn grid exists), one file per relief radius and auxiliary grid, and
    ``{stem}_MS.gpkg`` with the reference-concavity steepness segments.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    stem = stem or f"Basin_{basin.id}"

    grids: dict[str, Raster] = {"DEM": basin.dem, "CHI": basin.chi_grid}
    if basin.ksn_grid is not None:
        grids["KSN"] = basin.ksn_grid
    for radius, relief in basin.relief.items():
        grids[f"RLF_{radius:g}"] = relief
    for name, grid in basin.aux_grids.items():
        grids[name] = grid

    written = [write_grid(grid, directory / f"{stem}_{suffix}.tif") for suffix, grid in grids.items()]
    segments = segments_frame(basin)
    if segments.empty:
        logger.debug("Basin %d has no steepness segments to export", basin.id)
    else:
        seg_path = directory / f"{stem}_MS.gpkg"
        segments.to_file(seg_path)
        written.append(seg_path)
    logger.debug("Wrote %d export file(s) for basin %d", len(written), basin.id)
    return written
