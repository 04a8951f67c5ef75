"""
BIP9 version bits.

Since BIP9 the block header version doubles as a set of signalling flags.
A version takes part in the scheme when its top three bits are ``001``; the
remaining 29 bits each stand for one proposed deployment, and a miner sets
the bit of every deployment it supports.

The node reports the version as a signed 32-bit integer, so all helpers
first normalise it to its unsigned form.
"""

from __future__ import annotations

from typing import Mapping


VERSIONBITS_TOP_MASK = 0xE0000000
"""Mask selecting the three bits that identify a version-bits version."""

VERSIONBITS_TOP_BITS = 0x20000000
"""Required value of the masked top bits (``001``)."""

VERSIONBITS_NUM_BITS = 29
"""Number of deployment bits available for signalling."""


def to_uint32(version: int) -> int:
    """Return *version* as an unsigned 32-bit value."""
    return version & 0xFFFFFFFF


def format_version(version: int) -> str:
    """
    Format a version the way it is usually quoted, e.g. ``0x20000004``.

    Example:
        >>> format_version(536870916)
        '0x20000004'
    """
    return f"0x{to_uint32(version):08x}"


def uses_version_bits(version: int) -> bool:
    """
    Check whether *version* follows the BIP9 top-bits convention.

    Examples:
        >>> uses_version_bits(0x20000000)
        True
        >>> uses_version_bits(4)
        False
    """
    return (to_uint32(version) & VERSIONBITS_TOP_MASK) == VERSIONBITS_TOP_BITS


def signalled_bits(version: int) -> list[int]:
    """
    Return the deployment bits set in *version*, lowest first.

    Versions outside the version-bits scheme signal nothing.

    Example:
        >>> signalled_bits(0x20000005)
        [0, 2]
    """
    if not uses_version_bits(version):
        return []
    value = to_uint32(version)
    return [bit for bit in range(VERSIONBITS_NUM_BITS) if value & (1 << bit)]


def bit_support(histogram: Mapping[int, int]) -> dict[int, int]:
    """
    Count how many blocks of a version histogram signal each deployment bit.

    Args:
        histogram: Mapping of raw version -> block count.

    Returns:
        Mapping of bit number -> number of signalling blocks. Bits nobody
        signals are omitted.
    """
    support: dict[int, int] = {}
    for version, count in histogram.items():
        for bit in signalled_bits(version):
            support[bit] = support.get(bit, 0) + count
    return dict(sorted(support.items()))
