"""Tests for FlowNetwork graph queries and filters."""

import numpy as np
import pytest
import topotoolbox as tt3

from chi_basins import (
    AlignmentError,
    FlowNetwork,
    GridSpec,
    NoChannelNearbyError,
    Raster,
    flowobject_from_receivers,
    topological_levels,
)

D2 = np.hypot(10.0, 10.0)


class TestConstruction:
    def test_topological_levels(self):
        """Every node comes after all of its donors."""
        levels = topological_levels(np.array([1, 2, -1, 2]))
        assert [lvl.tolist() for lvl in levels] == [[0, 3], [1], [2]]

    def test_cycle_raises(self):
        """A receiver graph with a cycle is rejected."""
        with pytest.raises(ValueError, match="cycle"):
            flowobject_from_receivers([1, 0], GridSpec((1, 2), 1.0))

    def test_shared_cell_keeps_first_receiver(self):
        """A cell on two paths drains where the first path sends it."""
        grid = GridSpec((2, 3), 1.0)
        net = FlowNetwork.from_paths([[(0, 0), (0, 1), (0, 2)], [(0, 0), (1, 1)]], grid)
        assert net.receiver.tolist() == [1, 2, -1, -1]
        # (1, 1) has no edge, so it is neither a channel head nor an outlet
        assert net.outlets().tolist() == [2]
        assert net.channel_heads().tolist() == [0]

    def test_edges_are_topologically_sorted(self, y_network):
        """Each edge's source comes before any edge leaving its target."""
        net = y_network["network"]
        position = {s: i for i, s in enumerate(net.source.tolist())}
        for i, t in enumerate(net.target.tolist()):
            if t in position:
                assert position[t] > i

    def test_from_streamobject(self, tilted_plane):
        """A StreamObject of a routed DEM is adopted with its node numbering."""
        dem = tilted_plane["dem"]
        s = tt3.StreamObject(tilted_plane["flow_object"], threshold=3)
        net = FlowNetwork.from_streamobject(s, dem.grid)
        assert net.n_nodes == 6
        assert net.outlets().tolist() == [4]
        assert net.channel_heads().tolist() == [0, 1, 2]
        assert net.ix.tolist() == [6, 7, 8, 9, 10, 11]
        assert net.distance()[0] == pytest.approx(20.0)

    def test_from_streamobject_misaligned(self, tilted_plane):
        """The StreamObject must come from a grid of the same shape."""
        s = tt3.StreamObject(tilted_plane["flow_object"], threshold=3)
        with pytest.raises(AlignmentError):
            FlowNetwork.from_streamobject(s, GridSpec((5, 3), 10.0))

    def test_arrays_are_read_only(self, y_network):
        """Networks cannot be modified in place."""
        with pytest.raises(ValueError):
            y_network["network"].receiver[0] = 4


class TestPointsOfInterest:
    def test_outlets_heads_confluences(self, y_network):
        """Outlets, channel heads and confluences of a Y-shaped network."""
        net = y_network["network"]
        assert net.outlets().tolist() == [8]
        assert net.channel_heads().tolist() == [0, 1]
        assert net.confluences().tolist() == [6]
        assert net.bconfluences().tolist() == [4, 5]
        assert sorted(net.donors(6)) == [4, 5]

    def test_streampoi_mask(self, y_network):
        """Points of interest can be returned as a node mask."""
        mask = y_network["network"].streampoi("confluences", as_mask=True)
        assert mask.dtype == bool
        assert np.flatnonzero(mask).tolist() == [6]

    def test_streampoi_unknown_kind(self, y_network):
        """Unknown point-of-interest names raise ValueError."""
        with pytest.raises(ValueError):
            y_network["network"].streampoi("knickpoints")


class TestAttributes:
    def test_distance(self, y_network):
        """Flow distance to the outlet, with diagonal steps of sqrt(2) cells."""
        d = y_network["network"].distance()
        assert d[8] == 0.0
        assert d[0] == pytest.approx(50.0)
        assert d[5] == pytest.approx(20.0 + D2)
        assert d[1] == pytest.approx(30.0 + 2 * D2)

    def test_upstream_length(self, y_network):
        """Longest path upstream of the confluence follows the tributary."""
        length = y_network["network"].upstream_length()
        assert length[6] == pytest.approx(10.0 + 2 * D2)
        assert length[1] == 0.0

    def test_stream_order(self, y_network):
        """Two first-order streams make a second-order stream."""
        order = y_network["network"].stream_order()
        assert order[[0, 1, 2, 3, 4, 5]].tolist() == [1] * 6
        assert order[[6, 7, 8]].tolist() == [2, 2, 2]

    def test_component_labels(self):
        """Components are numbered from one; nodes without edges get zero."""
        grid = GridSpec((3, 4), 10.0)
        net = FlowNetwork.from_paths([[(0, 0), (1, 0), (2, 0)], [(0, 3), (1, 3)], [(2, 2)]], grid)
        labels = net.component_labels()
        assert labels[net.index_of(grid.ravel(2, 2))[0]] == 0
        assert len(set(labels[labels > 0].tolist())) == 2

    def test_gradient(self, line_network):
        """Downstream slope, zero at the outlet."""
        net = line_network["network"]
        z = 2.0 * net.distance()
        g = net.gradient(z)
        assert np.allclose(g[:-1], 2.0)
        assert g[line_network["outlet"]] == 0.0


class TestTraversal:
    def test_upstream_of_confluence(self, y_network):
        """Everything above the confluence drains to it."""
        mask = y_network["network"].upstream_of(6)
        assert np.flatnonzero(mask).tolist() == [0, 1, 2, 3, 4, 5, 6]

    def test_downstream_path(self, y_network):
        """Path from the tributary head to the outlet."""
        assert y_network["network"].downstream_path(1).tolist() == [1, 3, 5, 6, 7, 8]

    def test_invalid_node(self, y_network):
        """Node IDs outside the network raise IndexError."""
        with pytest.raises(IndexError):
            y_network["network"].upstream_of(42)

    def test_reaches(self, y_network):
        """Reaches run from heads and confluences down to the next confluence."""
        net = y_network["network"]
        assert [r.tolist() for r in net.reaches()] == [[0, 2, 4], [1, 3, 5], [6, 7, 8]]
        with_junction = [r.tolist() for r in net.reaches(include_junction=True)]
        assert with_junction == [[0, 2, 4, 6], [1, 3, 5, 6], [6, 7, 8]]

    def test_trunk_follows_longest_path(self, y_network):
        """The trunk runs from the farthest channel head to the outlet."""
        net = y_network["network"]
        trunk = net.trunk()
        assert np.flatnonzero(trunk).tolist() == [1, 3, 5, 6, 7, 8]
        assert net.tributary_junctions(trunk).tolist() == [4]

    def test_trunk_skips_short_first_node(self):
        """A short tributary whose head is node 0 stays off the trunk."""
        grid = GridSpec((4, 5), 10.0)
        spine = [(0, 4), (0, 3), (0, 2), (1, 1), (2, 1), (3, 1)]
        net = FlowNetwork.from_paths([spine, [(0, 0), (1, 1)]], grid)
        assert np.flatnonzero(net.trunk()).tolist() == [1, 2, 3, 4, 5, 6]

    def test_nearest_node(self, y_network):
        """Points snap to the closest node within the tolerance."""
        net = y_network["network"]
        assert net.nearest_node(41.0, -2.0) == 1
        with pytest.raises(NoChannelNearbyError):
            net.nearest_node(0.0, -200.0, tolerance=15.0)


class TestFilters:
    def test_subnetwork_renumbers(self, y_network):
        """Sub-networks renumber their nodes in the order they are kept."""
        net = y_network["network"]
        sub = net.subnetwork(net.upstream_of(6))
        assert sub.n_nodes == 7
        assert sub.outlets().size == 1
        assert sub.ix.tolist() == net.ix[[0, 1, 2, 3, 4, 5, 6]].tolist()

    def test_subnetwork_mask_length(self, y_network):
        """The node mask must have one entry per node."""
        with pytest.raises(ValueError):
            y_network["network"].subnetwork(np.ones(3, dtype=bool))

    def test_klargest_components(self):
        """Only the component with most nodes is kept."""
        grid = GridSpec((3, 4), 10.0)
        net = FlowNetwork.from_paths([[(0, 0), (1, 0), (2, 0)], [(0, 3), (1, 3)]], grid)
        main = net.klargest_components(1)
        assert main.n_nodes == 3
        assert main.outlets().size == 1
        assert set(main.cols.tolist()) == {0}
        assert net.largest_components_mask(1).sum() == 3

    def test_remove_short_streams(self, y_network):
        """First-order streams shorter than the limit are dropped."""
        net = y_network["network"]
        pruned = net.remove_short_streams(35.0)
        assert pruned.n_nodes == 6
        assert pruned.confluences().size == 0
        assert set(pruned.ix.tolist()) == set(net.ix[[1, 3, 5, 6, 7, 8]].tolist())

    def test_remove_short_streams_drops_isolated_nodes(self):
        """Nodes without any edge have no length and are removed."""
        grid = GridSpec((3, 4), 10.0)
        net = FlowNetwork.from_paths([[(0, 0), (1, 0), (2, 0)], [(2, 3)]], grid)
        pruned = net.remove_short_streams(5.0)
        assert pruned.n_nodes == 3

    def test_remove_short_streams_noop(self, y_network):
        """A zero length keeps the network unchanged."""
        net = y_network["network"]
        assert net.remove_short_streams(0.0) is net

    def test_index_of(self, y_network):
        """Grid indices map back to node IDs, -1 for non-stream cells."""
        net = y_network["network"]
        assert net.index_of([net.ix[4], 1]).tolist() == [4, -1]


class TestGridInteraction:
    def test_sample_and_to_grid(self, y_network):
        """Values written to a grid are read back at the same nodes."""
        net = y_network["network"]
        values = np.arange(net.n_nodes, dtype=float)
        grid = net.to_grid(values)
        assert np.isnan(grid[0, 0])
        raster = Raster(grid, 10.0)
        assert net.sample(raster).tolist() == values.tolist()

    def test_sample_misaligned(self, y_network):
        """Sampling a raster on another grid raises AlignmentError."""
        with pytest.raises(AlignmentError):
            y_network["network"].sample(Raster(np.zeros((6, 5)), 20.0))

    def test_node_values_length(self, y_network):
        """Per-node arrays must hold one value per node."""
        with pytest.raises(ValueError):
            y_network["network"].node_values([1.0, 2.0])
