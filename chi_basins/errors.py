"""Exception types raised by chi-basins.

Structural errors (``AlignmentError``, ``MultipleOutletsError``) indicate
mismatched inputs and abort a whole batch. Every other error is specific to a
single basin: batch entry points catch it, log it with the outlet ID, and
carry on with the remaining basins.
"""

from __future__ import annotations


class ChiBasinsError(Exception):
    """Base class for all chi-basins errors."""


class AlignmentError(ChiBasinsError, ValueError):
    """Rasters or flow grids do not share shape, cellsize and origin."""


class MultipleOutletsError(ChiBasinsError, ValueError):
    """A chi computation was requested on a network with more than one outlet."""


class InsufficientDataError(ChiBasinsError, ValueError):
    """Too few nodes for spline resampling or regression."""


class EmptyNetworkError(InsufficientDataError):
    """No channel could be extracted, even after relaxing the area threshold."""


class InvalidAreaError(ChiBasinsError, ValueError):
    """Drainage area is zero or negative at one or more nodes."""


class OutOfBoundsError(ChiBasinsError, IndexError):
    """A coordinate lies outside the raster extent."""


class NoChannelNearbyError(ChiBasinsError, LookupError):
    """No stream node lies within the snapping tolerance of a point."""


class DuplicateIdError(ChiBasinsError, ValueError):
    """Two outlets share an ID and automatic reassignment is disabled."""


class RecursionLimitWarning(UserWarning):
    """Basin subdivision stopped at the round cap and returned partial results."""


# Errors that abort a batch instead of skipping a single basin
FATAL_ERRORS: tuple[type[Exception], ...] = (AlignmentError, MultipleOutletsError)
