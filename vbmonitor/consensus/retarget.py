"""
Difficulty Retarget Boundaries
===============================

Bitcoin recalculates its proof-of-work target every 2016 blocks (roughly two
weeks at ten minutes per block). The adjustment happens at every block whose
height is a multiple of the interval: 2016, 4032, 6048, ...

Soft-fork deployments are evaluated on the same grid. Under BIP9 a
deployment's state can only change at a period boundary, so a monitor that
reports signalling adoption also wants to know when the next boundary is and
how many blocks remain until it.

Window Size:
------------
The default tally window spans four retarget periods (8064 blocks), the
signalling window used by Litecoin-style deployments whose retarget interval
is also 2016 blocks.
"""

from __future__ import annotations


DIFFICULTY_ADJUSTMENT_INTERVAL = 2016
"""Number of blocks between difficulty adjustments.
2016 blocks at 10 minutes each is approximately 2 weeks."""

VERSIONBITS_WINDOW = DIFFICULTY_ADJUSTMENT_INTERVAL * 4
"""Default number of trailing blocks tallied for signalling (8064)."""


def _check_arguments(height: int, interval: int) -> None:
    if height < 0:
        raise ValueError(f"Block height cannot be negative: {height}")
    if interval <= 0:
        raise ValueError(f"Retarget interval must be positive, got {interval}")


def next_retarget_height(height: int, interval: int = DIFFICULTY_ADJUSTMENT_INTERVAL) -> int:
    """
    Return the height of the next retarget boundary after *height*.

    The result is the smallest multiple of *interval* strictly greater than
    *height*. A height that is itself a boundary has already been retargeted,
    so its next boundary is one full interval later.

    Args:
        height: The current chain height.
        interval: The retarget interval (default: 2016).

    Returns:
        ``(height // interval + 1) * interval``

    Raises:
        ValueError: If *height* is negative or *interval* is not positive.

    Examples:
        >>> next_retarget_height(0)
        2016
        >>> next_retarget_height(2015)
        2016
        >>> next_retarget_height(2016)
        4032
    """
    _check_arguments(height, interval)
    return (height // interval + 1) * interval


def blocks_until_retarget(height: int, interval: int = DIFFICULTY_ADJUSTMENT_INTERVAL) -> int:
    """
    Number of blocks still to be mined before the next retarget boundary.

    Always between 1 and *interval* inclusive.

    Examples:
        >>> blocks_until_retarget(2015)
        1
        >>> blocks_until_retarget(2016)
        2016
    """
    return next_retarget_height(height, interval) - height


def retarget_period_start(height: int, interval: int = DIFFICULTY_ADJUSTMENT_INTERVAL) -> int:
    """
    Height of the first block of the retarget period containing *height*.

    Examples:
        >>> retarget_period_start(2015)
        0
        >>> retarget_period_start(4040)
        4032
    """
    _check_arguments(height, interval)
    return (height // interval) * interval


def is_retarget_boundary(height: int, interval: int = DIFFICULTY_ADJUSTMENT_INTERVAL) -> bool:
    """
    Determine whether a difficulty adjustment occurs at the given height.

    The genesis block (height 0) is never an adjustment point.

    Examples:
        >>> is_retarget_boundary(0)
        False
        >>> is_retarget_boundary(2016)
        True
        >>> is_retarget_boundary(2017)
        False
    """
    if height <= 0:
        return False
    return height % interval == 0
