"""
Simulated Chain Reader
=======================

An in-memory ``ChainReader`` used by the example scripts to demonstrate the
tally engine without a running node.

Usage:
    from examples.helpers.simulated_chain import SimulatedChain

    # 100 blocks of version 0x20000000
    chain = SimulatedChain([0x20000000] * 100)

    # Miners start signalling bit 1 for the next 50 blocks
    chain.extend([0x20000002] * 50)
"""

from __future__ import annotations

import os
import random
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from vbmonitor.core.chain import TransportError


class SimulatedChain:
    """
    A chain whose block versions are held in a list, indexed by height.

    Attributes:
        versions: Version of the block at each height (index 0 is genesis).
        queries: Number of ``block_version_at`` calls answered so far.
    """

    def __init__(self, versions: list[int] | None = None) -> None:
        self.versions: list[int] = list(versions or [])
        self.queries = 0

    def current_height(self) -> int:
        if not self.versions:
            raise TransportError("Chain is empty")
        return len(self.versions) - 1

    def block_version_at(self, height: int) -> int:
        if not 0 <= height < len(self.versions):
            raise TransportError(f"Block height out of range: {height}")
        self.queries += 1
        return self.versions[height]

    def extend(self, versions: list[int]) -> None:
        """Append new blocks on top of the tip."""
        self.versions.extend(versions)

    @staticmethod
    def rollout(
        num_blocks: int,
        old_version: int,
        new_version: int,
        adoption_start: float = 0.0,
        adoption_end: float = 1.0,
        seed: int = 0,
    ) -> list[int]:
        """
        Generate versions for a deployment whose adoption rises linearly.

        Each block independently carries *new_version* with a probability
        growing from *adoption_start* to *adoption_end* across the range.
        """
        rng = random.Random(seed)
        versions = []
        for i in range(num_blocks):
            progress = i / max(num_blocks - 1, 1)
            adoption = adoption_start + (adoption_end - adoption_start) * progress
            versions.append(new_version if rng.random() < adoption else old_version)
        return versions
