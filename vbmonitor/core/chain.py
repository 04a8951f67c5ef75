"""
Chain Reader capability.

The tally engine never talks to a node directly. It is handed something that
can answer two questions -- "how tall is the chain?" and "what version does
the block at height N carry?" -- and everything else (HTTP, authentication,
JSON decoding) lives behind that boundary.

Any object with the two methods of ``ChainReader`` qualifies; the engine
itself only needs the bound ``block_version_at`` callable.
"""

from __future__ import annotations

from typing import Callable, Protocol


BlockVersionFetcher = Callable[[int], int]
"""Signature of the fetch capability: height in, raw block version out."""


class TransportError(Exception):
    """
    Raised by a chain reader when a query cannot be answered.

    Covers connectivity failures, timeouts, protocol errors, malformed
    responses and blocks that the node does not know about.
    """
    pass


class ChainReader(Protocol):
    """Read-only view of a node's best chain."""

    def current_height(self) -> int:
        """Return the height of the node's best chain tip."""
        ...

    def block_version_at(self, height: int) -> int:
        """Return the raw header version of the block at *height*."""
        ...
