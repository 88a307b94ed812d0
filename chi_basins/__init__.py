"""Chi analysis and drainage-basin extraction package.

This package turns a DEM, its flow directions and a stream network into
per-basin records: the chi transform of the channels with a best-fit
concavity, normalized channel steepness maps, hydrologically conditioned
channel elevations and whole-basin topographic statistics. Oversized basins
can be split into sub-basins with several pour-point selection methods.

Main components:
- Raster, FlowDirection, FlowNetwork: immutable grid and graph value types
- condition: carve / fill / interpolate hydrologic conditioning of channels
- compute_chi, fit_concavity, chi_z_spline: chi transform and steepness fits
- steepness_map: quick, trunk and trib ksn policies
- BasinExtractor: everything known about the catchment of one outlet
- subdivide: split oversized basins into child basins
- process_basins, subdivide_basins: thread-pool batch drivers

Example:
    >>> import topotoolbox as tt3
    >>> from chi_basins import Raster, FlowDirection, BasinExtractor, Outlet
    >>>
    >>> grid = tt3.read_tif("path/to/dem.tif")
    >>> dem = Raster.from_gridobject(grid)
    >>> flow = FlowDirection.from_flowobject(tt3.FlowObject(grid), dem)
    >>>
    >>> extractor = BasinExtractor(dem, flow)
    >>> basin = extractor.extract(Outlet(id=1, x=512_300.0, y=4_301_150.0))
    >>> basin.chi_profile.mn, basin.ksn_stats.mean
"""

__version__ = "0.1.0"
__license__ = "MIT"

from .basin_extraction import Basin, BasinExtractor, Outlet
from .basin_io import (
    list_basin_files,
    load_basin,
    read_grid,
    read_outlets,
    save_basin,
    write_arc_files,
    write_grid,
    write_summary,
)
from .batch import (
    BatchSummary,
    outlets_from_elevation,
    prepare_outlets,
    process_basins,
    subdivide_basins,
)
from .chi_transform import (
    ChiProfile,
    SegmentFit,
    SplineFit,
    chi_values,
    chi_z_spline,
    compute_chi,
    fit_concavity,
    fit_segment,
    net_cumtrapz,
)
from .conditioning import carve, condition, fill
from .config import (
    BASINS_DIR,
    DATA_DIR,
    OUTPUTS_DIR,
    PROJECT_ROOT,
    ProcessingOptions,
    SubdivisionOptions,
    get_basin_dir,
    get_output_dir,
    resolve_dem_path,
)
from .errors import (
    AlignmentError,
    ChiBasinsError,
    DuplicateIdError,
    EmptyNetworkError,
    InsufficientDataError,
    InvalidAreaError,
    MultipleOutletsError,
    NoChannelNearbyError,
    OutOfBoundsError,
    RecursionLimitWarning,
)
from .flow import FlowDirection
from .flow_network import FlowNetwork, flowobject_from_receivers, topological_levels
from .logging_config import get_logger, setup_logging
from .metrics import (
    CategoricalStats,
    Hypsometry,
    SummaryStats,
    categorical_stats,
    centroid,
    gradient_grid,
    hypsometry,
    local_relief,
)
from .raster import GridSpec, Raster
from .segments import (
    StreamSelection,
    extract_stream,
    regress,
    select_chi_range,
    select_distance_range,
    select_downstream,
    select_upstream,
)
from .steepness import SteepnessSegment, ksn_grid, steepness_map
from .subdivision import Candidate, SubdivisionResult, select_candidates, subdivide

__all__ = [
    # Value types
    "Raster",
    "GridSpec",
    "FlowDirection",
    "FlowNetwork",
    "topological_levels",
    "flowobject_from_receivers",
    # Conditioning
    "carve",
    "fill",
    "condition",
    # Chi transform
    "ChiProfile",
    "SplineFit",
    "SegmentFit",
    "net_cumtrapz",
    "chi_values",
    "fit_concavity",
    "chi_z_spline",
    "compute_chi",
    "fit_segment",
    # Segment selection
    "StreamSelection",
    "extract_stream",
    "regress",
    "select_chi_range",
    "select_distance_range",
    "select_upstream",
    "select_downstream",
    # Steepness
    "SteepnessSegment",
    "steepness_map",
    "ksn_grid",
    # Metrics
    "SummaryStats",
    "Hypsometry",
    "CategoricalStats",
    "hypsometry",
    "centroid",
    "gradient_grid",
    "local_relief",
    "categorical_stats",
    # Basins
    "Outlet",
    "Basin",
    "BasinExtractor",
    "Candidate",
    "SubdivisionResult",
    "select_candidates",
    "subdivide",
    # Batch and persistence
    "BatchSummary",
    "prepare_outlets",
    "outlets_from_elevation",
    "process_basins",
    "subdivide_basins",
    "save_basin",
    "load_basin",
    "list_basin_files",
    "write_summary",
    "write_arc_files",
    "write_grid",
    "read_grid",
    "read_outlets",
    # Configuration
    "ProcessingOptions",
    "SubdivisionOptions",
    "PROJECT_ROOT",
    "DATA_DIR",
    "BASINS_DIR",
    "OUTPUTS_DIR",
    "get_output_dir",
    "get_basin_dir",
    "resolve_dem_path",
    # Errors
    "ChiBasinsError",
    "AlignmentError",
    "MultipleOutletsError",
    "InsufficientDataError",
    "EmptyNetworkError",
    "InvalidAreaError",
    "OutOfBoundsError",
    "NoChannelNearbyError",
    "DuplicateIdError",
    "RecursionLimitWarning",
    # Logging
    "get_logger",
    "setup_logging",
    # Metadata
    "__version__",
]
