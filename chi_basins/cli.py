"""Command-line interface for basin extraction and subdivision."""

import argparse
import sys
from pathlib import Path

import topotoolbox as tt3

from .basin_io import read_outlets, write_summary
from .batch import outlets_from_elevation, process_basins, subdivide_basins
from .config import (
    KSN_METHODS,
    SUBDIVISION_METHODS,
    ProcessingOptions,
    SubdivisionOptions,
    get_basin_dir,
    get_output_dir,
    resolve_dem_path,
)
from .flow import FlowDirection
from .flow_network import FlowNetwork
from .logging_config import SIMPLE_FORMAT, get_logger, set_verbose, setup_logging
from .raster import Raster

logger = get_logger(__name__)

SUMMARY_FILE = "basin_summary.csv"
SUBBASIN_SUMMARY_FILE = "subbasin_summary.csv"


def _add_processing_args(parser: argparse.ArgumentParser) -> None:
    defaults = ProcessingOptions()
    parser.add_argument(
        "--threshold-area",
        type=float,
        default=defaults.threshold_area,
        help=f"Minimum upstream area of channels in map units^2 (default: {defaults.threshold_area:g})",
    )
    parser.add_argument(
        "--segment-length",
        type=float,
        default=defaults.segment_length,
        help=f"Steepness averaging window in map units (default: {defaults.segment_length:g})",
    )
    parser.add_argument(
        "--ref-concavity",
        type=float,
        default=defaults.ref_concavity,
        help=f"Reference concavity for ksn (default: {defaults.ref_concavity})",
    )
    parser.add_argument(
        "--ksn-method",
        choices=KSN_METHODS,
        default=defaults.ksn_method,
        help=f"Steepness map policy (default: {defaults.ksn_method})",
    )
    parser.add_argument(
        "--min-order",
        type=int,
        default=defaults.min_order,
        help=f"Minimum trunk stream order for --ksn-method trunk (default: {defaults.min_order})",
    )
    parser.add_argument(
        "--interp-value",
        type=float,
        default=defaults.interp_value,
        help=f"Carve/interpolate balance of conditioning, 0-1 (default: {defaults.interp_value})",
    )
    parser.add_argument(
        "--calc-relief", action="store_true", help="Compute local relief grids and statistics"
    )
    parser.add_argument(
        "--workers", type=int, metavar="N", help="Worker threads (default: number of CPUs)"
    )
    parser.add_argument(
        "--write-arc-files", action="store_true", help="Export GeoTIFF grids and steepness segment layers"
    )


def _processing_options(args: argparse.Namespace) -> ProcessingOptions:
    return ProcessingOptions(
        threshold_area=args.threshold_area,
        segment_length=args.segment_length,
        ref_concavity=args.ref_concavity,
        ksn_method=args.ksn_method,
        min_order=args.min_order,
        interp_value=args.interp_value,
        calc_relief=args.calc_relief,
        write_arc_files=args.write_arc_files,
        n_workers=args.workers,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chi-basins",
        description="Extract drainage basins and analyse their chi profiles and channel steepness",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Process basins above the outlets listed in a CSV (x, y, id)
  chi-basins process data/dems/range.tif -o results/basins --outlets mouths.csv

  # Generate outlets where channels drop below 1200 m and use the trunk ksn policy
  chi-basins process dem.tif -o basins --outlet-elevation 1200 --ksn-method trunk --workers 8

  # Split basins larger than 250 km2 at tributary junctions of their trunk streams
  chi-basins subdivide basins --max-size 250 --method trunk

  # Use the project data layout: data/dems/range.tif in, data/basins/andes out
  chi-basins process range.tif --study-area andes --outlets mouths.csv
        """,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-v", "--verbose", action="store_true", help="Print detailed progress information"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    proc = sub.add_parser("process", parents=[common], help="Extract and analyse one basin per outlet")
    proc.add_argument(
        "dem", help="Path to DEM file (GeoTIFF), or its file name inside data/dems"
    )
    dest = proc.add_mutually_exclusive_group(required=True)
    dest.add_argument("-o", "--output", type=Path, help="Directory for basin records")
    dest.add_argument(
        "--study-area",
        metavar="NAME",
        help="Write records to data/basins/NAME and the summary to data/outputs/NAME",
    )
    where = proc.add_mutually_exclusive_group(required=True)
    where.add_argument("--outlets", type=Path, metavar="CSV", help="CSV of outlets (x, y, id)")
    where.add_argument(
        "--outlet-elevation",
        type=float,
        metavar="Z",
        help="Generate outlets where channels drop below this elevation",
    )
    proc.add_argument(
        "--aux",
        action="append",
        default=[],
        metavar="NAME=PATH",
        help="Extra continuous grid to summarise per basin (repeatable)",
    )
    _add_processing_args(proc)

    div = sub.add_parser("subdivide", parents=[common], help="Split saved basins larger than a size limit")
    div.add_argument(
        "basin_dir", type=Path, nargs="?", help="Directory holding Basin_*_Data records"
    )
    div.add_argument(
        "--study-area", metavar="NAME", help="Subdivide the records in data/basins/NAME instead"
    )
    div.add_argument(
        "--max-size", type=float, required=True, metavar="KM2", help="Subdivide basins at least this large"
    )
    div.add_argument("--method", choices=SUBDIVISION_METHODS, required=True, help="Subdivision method")
    div.add_argument("--s-order", type=int, default=3, help="Stream order for --method order (default: 3)")
    div.add_argument(
        "--min-basin-size",
        type=float,
        default=10.0,
        help="Minimum child size in km2, or percent for p_filtered_* methods (default: 10)",
    )
    div.add_argument("--no-nested", action="store_true", help="Drop nested filtered confluences")
    div.add_argument(
        "--no-recursive", action="store_true", help="Drop oversized candidates instead of recursing"
    )
    div.add_argument("--max-rounds", type=int, default=10, help="Cap on recursive rounds (default: 10)")
    _add_processing_args(div)
    return parser


def _load_aux(specs: list[str]) -> dict[str, Raster]:
    grids = {}
    for spec in specs:
        name, sep, path = spec.partition("=")
        if not sep or not name or not path:
            raise ValueError(f"--aux expects NAME=PATH, got {spec!r}")
        logger.info("Loading auxiliary grid %s: %s", name, path)
        grids[name] = Raster.from_gridobject(tt3.read_tif(path), name=name)
    return grids


def _record_dir(args: argparse.Namespace) -> Path | None:
    """Directory of the basin records: given explicitly, or that of the study area."""
    if args.study_area:
        return get_basin_dir(args.study_area)
    return args.output if args.command == "process" else args.basin_dir


def _summary_path(args: argparse.Namespace, default_dir: Path, name: str) -> Path:
    if args.study_area:
        return get_output_dir(args.study_area) / name
    return default_dir / name


def _run_process(args: argparse.Namespace) -> int:
    dem_path = resolve_dem_path(args.dem)
    if dem_path is None:
        logger.error("DEM file not found: %s", args.dem)
        return 1
    options = _processing_options(args)
    output = _record_dir(args)

    logger.info("Loading DEM: %s", dem_path)
    grid = tt3.read_tif(str(dem_path))
    dem = Raster.from_gridobject(grid, name="dem")

    logger.info("Deriving flow direction...")
    fd = tt3.FlowObject(grid)
    flow = FlowDirection.from_flowobject(fd, dem)
    acc = flow.accumulation()

    threshold_px = max(1, int(round(options.threshold_area / dem.cellsize**2)))
    logger.info("Deriving stream network (threshold=%d cells)...", threshold_px)
    s = tt3.StreamObject(fd, threshold=threshold_px)
    network = FlowNetwork.from_streamobject(s, dem.grid)

    if args.outlets is not None:
        outlets = read_outlets(args.outlets)
    else:
        outlets = outlets_from_elevation(network, dem, args.outlet_elevation, output)
    logger.info("%d outlet(s) to process", len(outlets))

    summary = process_basins(
        dem,
        flow,
        acc,
        network,
        outlets,
        output,
        options,
        aux_grids=_load_aux(args.aux),
    )
    summary.log()
    if not summary.succeeded:
        logger.warning("No basins processed")
        return 2
    path = _summary_path(args, output, SUMMARY_FILE)
    write_summary(summary.basins.values(), path)
    return 0


def _run_subdivide(args: argparse.Namespace) -> int:
    basin_dir = _record_dir(args)
    if basin_dir is None:
        logger.error("Give a basin directory or --study-area")
        return 1
    options = SubdivisionOptions(
        recursive=not args.no_recursive,
        s_order=args.s_order,
        min_basin_size=args.min_basin_size,
        no_nested=args.no_nested,
        max_rounds=args.max_rounds,
        processing=_processing_options(args),
    )
    summary = subdivide_basins(basin_dir, args.max_size, args.method, options, args.workers)
    summary.log()
    if not summary.succeeded:
        logger.warning("No sub-basins extracted")
        return 2
    path = _summary_path(args, basin_dir / options.subbasin_dir, SUBBASIN_SUMMARY_FILE)
    write_summary(summary.basins.values(), path)
    return 0


def main(argv=None):
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    setup_logging(format_string=None if args.verbose else SIMPLE_FORMAT, console=True)
    set_verbose(args.verbose)

    try:
        if args.command == "process":
            return _run_process(args)
        return _run_subdivide(args)
    except Exception as e:
        logger.error("Error: %s", e)
        if args.verbose:
            logger.exception("Full traceback:")
        return 1


if __name__ == "__main__":
    sys.exit(main())
