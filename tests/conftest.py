"""Pytest fixtures for chi_basins tests.

This module provides a mock TopoToolbox GridObject, a stand-in for basin
records, and small synthetic landscapes whose flow routing and drainage areas
can be worked out by hand. Flow routing itself always goes through real
TopoToolbox FlowObjects and StreamObjects.
"""

import numpy as np
import pytest
import topotoolbox as tt3

from chi_basins import FlowDirection, FlowNetwork, GridSpec, Outlet, ProcessingOptions, Raster

# ============================================================================
# Mock GridObject
# ============================================================================


class MockGridObject:
    """Mock TopoToolbox GridObject for testing.

    Attributes
    ----------
    z : np.ndarray
        Elevation data (2D array).
    cellsize : float
        Cell edge length.
    transform : tuple
        Affine transform (a, b, c, d, e, f) of the outer corner of the first cell.
    """

    def __init__(self, z: np.ndarray, cellsize: float = 1.0, xmin: float = 0.0):
        self.z = np.asarray(z, dtype=float)
        self.shape = self.z.shape
        self.cellsize = cellsize
        self.name = "mock_dem"
        self.transform = (cellsize, 0.0, xmin, 0.0, -cellsize, self.z.shape[0] * cellsize)


# ============================================================================
# Mock basin record
# ============================================================================


class MockBasin:
    """The parts of a Basin record that candidate discovery reads."""

    def __init__(self, basin_id, network, accumulation, dem, drainage_area):
        self.outlet = Outlet(basin_id, 0.0, 0.0)
        self.network = network
        self.accumulation = accumulation
        self.dem = dem
        self.drainage_area = drainage_area

    @property
    def id(self):
        return self.outlet.id


class FakeExtractor:
    """Records the outlets it is asked for and fails on chosen IDs."""

    def __init__(self, fail_ids=(), error=None):
        self.fail_ids = set(fail_ids)
        self.error = error
        self.calls = []

    def extract(self, outlet, parent_id=None):
        self.calls.append((outlet, parent_id))
        if outlet.id in self.fail_ids:
            raise self.error
        return MockBasin(outlet.id, None, None, None, 0.0)


# ============================================================================
# Helpers
# ============================================================================


def upstream_counts(network: FlowNetwork) -> np.ndarray:
    """Number of network nodes draining through each node, itself included."""
    counts = np.ones(network.n_nodes)
    for level in network.levels:
        sel = level[network.receiver[level] >= 0]
        np.add.at(counts, network.receiver[sel], counts[sel])
    return counts


# ============================================================================
# Mock fixtures
# ============================================================================


@pytest.fixture
def mock_grid_object():
    """3 x 4 GridObject with cellsize 2 whose outer corner is at x = 100, y = 6."""
    return MockGridObject(np.zeros((3, 4)), cellsize=2.0, xmin=100.0)


@pytest.fixture
def tilted_plane():
    """4 x 3 DEM routed by TopoToolbox.

    Elevation drops 10 m per row to the south and 1 m per column towards the
    middle column, so every cell drains south and the two bottom corners drain
    sideways into the outlet (3, 1), which collects all 12 cells::

        31 30 31
        21 20 21
        11 10 11
         1  0  1
    """
    z = 10.0 * (3 - np.arange(4))[:, None] + np.abs(np.arange(3) - 1)[None, :]
    dem = Raster(z, 10.0, name="plane")
    grid = dem.to_gridobject()
    return {"dem": dem, "grid_object": grid, "flow_object": tt3.FlowObject(grid)}


@pytest.fixture
def fake_extractor():
    """Factory for extractors that fail on chosen outlet IDs."""
    return FakeExtractor


# ============================================================================
# Network fixtures
# ============================================================================


@pytest.fixture
def line_network():
    """Ten nodes in one column flowing south; node i sits in row i, node 9 is the outlet.

    Drainage area grows by one 100 m^2 cell per node downstream.
    """
    grid = GridSpec((10, 1), cellsize=10.0)
    network = FlowNetwork.from_paths([[(r, 0) for r in range(10)]], grid)
    return {
        "network": network,
        "grid": grid,
        "area": 100.0 * (np.arange(10) + 1),
        "outlet": 9,
    }


@pytest.fixture
def y_network():
    """Two channels joining at a confluence.

    Grid layout (6 rows x 5 cols, cellsize 10), node IDs::

        . . 0 . 1
        . . 2 . 3
        . . 4 5 .
        . . 6 . .      <- confluence (node 6)
        . . 7 . .
        . . 8 . .      <- outlet

    The spine runs down column 2 from node 0, the tributary joins from the
    east from node 1. Node IDs follow the row-major order of the cells.
    """
    grid = GridSpec((6, 5), cellsize=10.0)
    spine = [(r, 2) for r in range(6)]
    trib = [(0, 4), (1, 4), (2, 3), (3, 2)]
    network = FlowNetwork.from_paths([spine, trib], grid)
    counts = upstream_counts(network)
    return {
        "network": network,
        "grid": grid,
        "confluence": 6,
        "outlet": 8,
        "heads": [0, 1],
        "area": counts * 100.0,
        "elevation": 10.0 + 0.5 * network.distance(),
    }


@pytest.fixture
def nested_network():
    """A tributary with its own tributary, on a 1 km grid.

    Spine: column 10, rows 0-19, flowing south.
    T1: row 12, columns 16 -> 11, joining the spine at (12, 10).
    T2: column 14, rows 5 -> 11, joining T1 at (12, 14).

    Every node stands for 1 km^2, so drainage areas in km^2 equal upstream
    node counts: the outlet drains 33, the T1 mouth (12, 11) 13, the spine
    just above the junction (11, 10) 12, the T2 mouth (11, 14) 7 and
    (12, 15) 2.
    """
    grid = GridSpec((20, 17), cellsize=1000.0)
    spine = [(r, 10) for r in range(20)]
    t1 = [(12, c) for c in range(16, 9, -1)]
    t2 = [(r, 14) for r in range(5, 13)]
    network = FlowNetwork.from_paths([spine, t1, t2], grid)
    counts = upstream_counts(network)

    accumulation = Raster(network.to_grid(counts, fill=0.0), 1000.0, name="accumulation")
    dem = Raster(np.zeros(grid.shape), 1000.0, name="dem")
    node_at = {(int(r), int(c)): i for i, (r, c) in enumerate(zip(network.rows, network.cols))}
    return {
        "network": network,
        "basin": MockBasin(7, network, accumulation, dem, float(counts.max())),
        "node_at": node_at,
        "counts": counts,
    }


# ============================================================================
# Landscape fixtures
# ============================================================================


@pytest.fixture
def valley():
    """A V-shaped valley draining south, with flow routed by TopoToolbox D8.

    The channel runs down the middle column with a concave profile; hillslopes
    drop 5 m per cell towards it. Every hillslope cell drains straight to the
    channel cell of its own row, so the channel cell of row r drains
    ``cols * (r + 1)`` cells and the outlet drains the whole grid.
    """
    rows, cols, cellsize = 40, 21, 10.0
    c0 = cols // 2
    m = (rows - 1 - np.arange(rows))[:, None].astype(float)
    z = 100.0 + 0.5 * m + 0.015 * m**2 + 5.0 * np.abs(np.arange(cols) - c0)[None, :]

    dem = Raster(z, cellsize, xmin=500_000.0, ymax=4_000_000.0, name="dem")
    flow = FlowDirection.from_flowobject(tt3.FlowObject(dem.to_gridobject()), dem)
    x, y = dem.rc_to_xy(rows - 1, c0)
    return {
        "dem": dem,
        "flow": flow,
        "accumulation": flow.accumulation(),
        "rows": rows,
        "cols": cols,
        "channel_col": c0,
        "cellsize": cellsize,
        "outlet": Outlet(1, x, y),
        "options": ProcessingOptions(threshold_area=2000.0, segment_length=100.0, ksn_radius=None),
    }


@pytest.fixture
def tributary_valley():
    """A main valley with one tributary valley joining from the east.

    Grid 40 x 21, cellsize 10, main channel in column 10 flowing south.
    West of the channel every cell drains east. East of it, cells above
    row 12 drain south into row 12, which drains west into the main channel
    at (12, 10); cells below row 12 drain west.

    With a 1500 m^2 (15 cell) channel threshold the network holds the main
    channel (rows 1-39) and the tributary (row 12, columns 11-19). Drainage
    areas: tributary mouth (12, 11) 130 cells, main channel just above the
    junction (11, 10) 132 cells, outlet 840 cells. Elevation rises 0.05 m
    per metre of flow distance.
    """
    rows, cols, cellsize, c0, t_row = 40, 21, 10.0, 10, 12
    grid = GridSpec((rows, cols), cellsize, xmin=300_000.0, ymax=5_000_000.0)

    def ix(r, c):
        return r * cols + c

    receiver = np.full(rows * cols, -1, dtype=np.int64)
    for r in range(rows):
        for c in range(cols):
            if c == c0:
                target = (r + 1, c) if r < rows - 1 else None
            elif c < c0:
                target = (r, c + 1)
            elif r < t_row:
                target = (r + 1, c)
            else:
                target = (r, c - 1)
            if target is not None:
                receiver[ix(r, c)] = ix(*target)

    flow = FlowDirection(receiver, grid)
    z = 100.0 + 0.05 * flow.distance().z
    dem = Raster(z, cellsize, grid.xmin, grid.ymax, name="dem")
    accumulation = flow.accumulation()
    network = flow.extract_network(1500.0, accumulation)

    def outlet(basin_id, r, c=c0):
        x, y = dem.rc_to_xy(r, c)
        return Outlet(basin_id, x, y)

    return {
        "dem": dem,
        "flow": flow,
        "accumulation": accumulation,
        "network": network,
        "rows": rows,
        "cols": cols,
        "channel_col": c0,
        "tributary_row": t_row,
        "cellsize": cellsize,
        "outlet": outlet,
        "options": ProcessingOptions(threshold_area=1500.0, segment_length=100.0, ksn_radius=None),
    }
