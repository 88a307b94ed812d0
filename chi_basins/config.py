"""Project paths and processing options.

Paths follow the usual project layout (``data/`` with DEMs, basin records and
outputs) and can be overridden through environment variables. Processing and
subdivision options are plain dataclasses whose defaults match the values the
basin workflow has always used; every tolerance that guards against degenerate
geometry is exposed here instead of being hard-coded in the algorithms.

Usage:
    from chi_basins.config import ProcessingOptions, SubdivisionOptions

    opts = ProcessingOptions(threshold_area=5e5, ksn_method="trib")
    sub = SubdivisionOptions(processing=opts, min_basin_size=25.0)

Environment Variables:
    CHI_BASINS_ROOT: Override the auto-detected project root directory.
    CHI_BASINS_DATA: Override the data directory location.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

KSN_METHODS = ("quick", "trunk", "trib")
GRADIENT_METHODS = ("arcslope", "gradient8")
RESAMPLE_METHODS = ("nearest", "bilinear", "bicubic")
MN_METHODS = ("ls", "lad")
SUBDIVISION_METHODS = (
    "order",
    "confluences",
    "up_confluences",
    "filtered_confluences",
    "p_filtered_confluences",
    "trunk",
    "filtered_trunk",
    "p_filtered_trunk",
)


def _find_project_root() -> Path:
    """Find the project root directory.

    Searches upward from this file for a directory containing pyproject.toml
    or .git.
    """
    if os.getenv("CHI_BASINS_ROOT"):
        return Path(os.getenv("CHI_BASINS_ROOT"))

    current = Path(__file__).resolve().parent
    markers = ["pyproject.toml", ".git"]

    for _ in range(5):
        for marker in markers:
            if (current / marker).exists():
                return current
        parent = current.parent
        if parent == current:
            break
        current = parent

    return Path.cwd()


def _get_data_dir() -> Path:
    if os.getenv("CHI_BASINS_DATA"):
        return Path(os.getenv("CHI_BASINS_DATA"))
    return PROJECT_ROOT / "data"


PROJECT_ROOT: Path = _find_project_root()
"""Project root directory."""

DATA_DIR: Path = _get_data_dir()
"""Main data directory."""

DEMS_DIR: Path = DATA_DIR / "dems"
"""Input DEMs (GeoTIFF)."""

BASINS_DIR: Path = DATA_DIR / "basins"
"""Per-basin records written by ``process_basins``."""

OUTPUTS_DIR: Path = DATA_DIR / "outputs"
"""Summary tables, figures and exported grids."""


def get_output_dir(study_area: str, create: bool = True) -> Path:
    """Get output directory for a specific study area.

    Parameters
    ----------
    study_area : str
        Name of the study area.
    create : bool
        If True, create the directory if it doesn't exist.

    Returns
    -------
    Path
    """
    output_dir = OUTPUTS_DIR / study_area
    if create:
        output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


def get_basin_dir(study_area: str, create: bool = True) -> Path:
    """Directory holding the basin records of a study area."""
    basin_dir = BASINS_DIR / study_area
    if create:
        basin_dir.mkdir(parents=True, exist_ok=True)
    return basin_dir


def resolve_dem_path(dem_ref: str) -> Path | None:
    """Resolve a DEM reference to an existing path.

    Accepts an absolute path, a path relative to the project root, or a bare
    file name inside ``DEMS_DIR``. Returns None when nothing matches.
    """
    path = Path(dem_ref)

    if path.is_absolute():
        return path if path.exists() else None

    if path.exists():
        return path.resolve()

    project_path = PROJECT_ROOT / path
    if project_path.exists():
        return project_path

    dem_path = DEMS_DIR / path.name
    if dem_path.exists():
        return dem_path

    return None


# ------------------------------ options ------------------------------


@dataclass(frozen=True)
class ProcessingOptions:
    """Options controlling the extraction and analysis of a single basin.

    Attributes
    ----------
    threshold_area : float
        Minimum upstream area (map units squared) for a cell to be a channel.
    segment_length : float
        Window length (map units) for averaging steepness along channels.
        Raised to ``3 * cellsize`` when shorter.
    ref_concavity : float
        Reference concavity used for the normalized steepness map and chi grid.
    ksn_method : {'quick', 'trunk', 'trib'}
        Steepness-map policy.
    min_order : int
        Minimum Strahler order of trunk streams for ``ksn_method='trunk'``.
    interp_value : float
        Carve/interpolate balance of hydrologic conditioning, in [0, 1].
    gradient_method : {'arcslope', 'gradient8'}
        Gradient grid algorithm.
    resample_method : {'nearest', 'bilinear', 'bicubic'}
        Method used to bring misaligned auxiliary grids onto the DEM grid.
    calc_relief : bool
        Compute local relief grids at ``relief_radii``.
    relief_radii : tuple of float
        Radii (map units) of the local relief neighbourhoods.
    ksn_radius : float or None
        Radius of the moving disk used to build the interpolated ksn grid;
        None disables the grid.
    write_arc_files : bool
        Export GeoTIFF grids and a GeoPackage of steepness segments next to
        each record.
    max_threshold_halvings : int
        How often the channel threshold may be halved before a basin is
        declared empty.
    snap_tolerance : float or None
        Maximum snapping distance (map units) of outlets to the network.
        Defaults to 10 cellsizes.
    trib_min_area : float
        Basins smaller than this (km^2) use ``quick`` instead of ``trib``.
    min_reach_cells : float
        Minimum length, in cellsizes, of an elementary reach in ``trib``.
    mn_method : {'ls', 'lad'}
        Objective of the best-fit concavity search.
    hypsometry_bins : int
        Number of elevation bins of the hypsometric curve.
    n_workers : int or None
        Worker threads for batch processing; None uses ``os.cpu_count()``.
    """

    threshold_area: float = 1e6
    segment_length: float = 1000.0
    ref_concavity: float = 0.5
    ksn_method: str = "quick"
    min_order: int = 4
    interp_value: float = 0.1
    gradient_method: str = "arcslope"
    resample_method: str = "nearest"
    calc_relief: bool = False
    relief_radii: tuple[float, ...] = (2500.0,)
    ksn_radius: Optional[float] = 5000.0
    write_arc_files: bool = False
    max_threshold_halvings: int = 20
    snap_tolerance: Optional[float] = None
    trib_min_area: float = 2.5
    min_reach_cells: float = 2.0
    mn_method: str = "ls"
    hypsometry_bins: int = 100
    n_workers: Optional[int] = None

    def __post_init__(self) -> None:
        if self.threshold_area <= 0:
            raise ValueError("threshold_area must be positive")
        if self.segment_length <= 0:
            raise ValueError("segment_length must be positive")
        if self.ref_concavity <= 0:
            raise ValueError("ref_concavity must be positive")
        if self.ksn_method not in KSN_METHODS:
            raise ValueError(f"ksn_method must be one of {KSN_METHODS}, got {self.ksn_method!r}")
        if self.gradient_method not in GRADIENT_METHODS:
            raise ValueError(
                f"gradient_method must be one of {GRADIENT_METHODS}, got {self.gradient_method!r}"
            )
        if self.resample_method not in RESAMPLE_METHODS:
            raise ValueError(
                f"resample_method must be one of {RESAMPLE_METHODS}, got {self.resample_method!r}"
            )
        if self.mn_method not in MN_METHODS:
            raise ValueError(f"mn_method must be one of {MN_METHODS}, got {self.mn_method!r}")
        if not 0.0 <= self.interp_value <= 1.0:
            raise ValueError("interp_value must be in [0, 1]")
        if self.min_order < 1:
            raise ValueError("min_order must be >= 1")
        if self.max_threshold_halvings < 0:
            raise ValueError("max_threshold_halvings must be >= 0")
        if self.hypsometry_bins < 2:
            raise ValueError("hypsometry_bins must be >= 2")
        if any(r <= 0 for r in self.relief_radii):
            raise ValueError("relief_radii must be positive")
        if self.ksn_radius is not None and self.ksn_radius <= 0:
            raise ValueError("ksn_radius must be positive or None")
        if self.n_workers is not None and self.n_workers < 1:
            raise ValueError("n_workers must be >= 1")
        # tuples keep the frozen instance hashable
        object.__setattr__(self, "relief_radii", tuple(float(r) for r in self.relief_radii))

    def replace(self, **changes) -> "ProcessingOptions":
        return replace(self, **changes)


@dataclass(frozen=True)
class SubdivisionOptions:
    """Options controlling the subdivision of oversized basins.

    Attributes
    ----------
    recursive : bool
        Replace oversized candidates by candidates found upstream of them
        (trunk and confluence families). When False they are dropped.
    s_order : int
        Strahler order whose stream outlets become candidates for ``order``.
    min_basin_size : float
        Area threshold of the filtered methods: km^2 for ``filtered_*``,
        percent of the parent area for ``p_filtered_*``.
    no_nested : bool
        Keep only the most downstream qualifying confluence along each path.
    min_segment_cells : float
        Streams shorter than this many cellsizes are pruned before
        confluence or trunk discovery.
    max_rounds : int
        Cap on recursive candidate-discovery rounds.
    subbasin_dir : str
        Directory name (inside the basin directory) for child records.
    processing : ProcessingOptions
        Options used to extract each child basin.
    """

    recursive: bool = True
    s_order: int = 3
    min_basin_size: float = 10.0
    no_nested: bool = False
    min_segment_cells: float = 10.0
    max_rounds: int = 10
    subbasin_dir: str = "SubBasins"
    processing: ProcessingOptions = field(default_factory=ProcessingOptions)

    def __post_init__(self) -> None:
        if self.min_basin_size <= 0:
            raise ValueError("min_basin_size must be positive")
        if self.min_segment_cells < 0:
            raise ValueError("min_segment_cells must be >= 0")
        if self.max_rounds < 1:
            raise ValueError("max_rounds must be >= 1")

    def replace(self, **changes) -> "SubdivisionOptions":
        return replace(self, **changes)
