"""
Rolling Window Version Tally
=============================

Soft-fork deployments are tracked by counting which block versions appear in
the most recent ``W`` blocks of the chain. Rescanning ``W`` blocks on every
new tip would cost thousands of node queries per block, so the tally is
maintained incrementally instead.

The Window
----------
At height ``h`` the window covers the ``W`` heights::

    [h - W + 1, h]

When the tip moves from ``h`` to ``h + d`` the window slides forward by
``d`` positions. Exactly ``d`` heights enter on the high end::

    h + 1, ..., h + d

and exactly ``d`` heights leave on the low end, starting at the old window's
first height ``s = h - W + 1``::

    s, ..., s + d - 1

Each entering block's version is counted once and each leaving block's
version is uncounted once, so the sum of all counts stays ``W``.

If ``d >= W`` no block of the old window survives and the incremental path
would just replay a full scan with extra removals; the engine rebuilds the
window from scratch instead.

Atomicity
---------
Every version needed for an update is fetched before the histogram is
touched. The new histogram is computed on a copy and swapped in only after
it passes the sum and non-negativity checks, so a failed fetch (or a failed
check) leaves the engine exactly as it was and the same update can simply
be retried.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping

from vbmonitor.core.chain import BlockVersionFetcher, TransportError

logger = logging.getLogger(__name__)


VersionHistogram = dict[int, int]
"""Raw block version -> number of blocks in the window carrying it."""


class FetchError(Exception):
    """
    Raised when the version of a block in or entering the window could not
    be fetched.

    The engine state is unchanged when this is raised. The underlying
    ``TransportError`` is available as ``__cause__``.

    Attributes:
        height: The block height whose fetch failed.
    """

    def __init__(self, height: int, reason: str = "") -> None:
        self.height = height
        message = f"Failed to fetch version of block at height {height}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class InvariantViolation(Exception):
    """
    Raised when an update would break the window invariants, e.g. a height
    that moves backwards (a reorg, or a caller bug) or a count that would
    drop below zero. The engine state is unchanged when this is raised.
    """
    pass


@dataclass(frozen=True)
class WindowState:
    """
    Read-only snapshot of the window.

    Attributes:
        current_height: Height of the newest block in the window.
        window_size: Number of blocks in the window (``W``).
        histogram: Read-only mapping of version -> block count.
    """

    current_height: int
    window_size: int
    histogram: Mapping[int, int]

    @property
    def window_start(self) -> int:
        """Height of the oldest block in the window."""
        return self.current_height - self.window_size + 1

    @property
    def total(self) -> int:
        """Sum of all counts; equal to ``window_size`` for a valid window."""
        return sum(self.histogram.values())

    def to_dict(self) -> dict:
        return {
            "current_height": self.current_height,
            "window_size": self.window_size,
            "window_start": self.window_start,
            "histogram": dict(self.histogram),
        }


class WindowTallyEngine:
    """
    Maintains a version histogram over the trailing ``window_size`` blocks.

    The engine is the only writer of its state. ``initialize`` performs the
    one full scan; afterwards ``advance`` slides the window forward and
    ``snapshot`` hands out immutable copies for reporting.

    ``advance`` must not run concurrently with itself or with
    ``initialize``. ``snapshot`` is safe to call from other threads.

    Attributes:
        window_size: Number of blocks in the window.
    """

    def __init__(
        self,
        window_size: int,
        block_version_at: BlockVersionFetcher,
        max_workers: int = 1,
    ) -> None:
        """
        Args:
            window_size: Number of trailing blocks to tally (``W``).
            block_version_at: Callable returning the raw version of the block
                at a given height. It signals failure by raising
                ``TransportError``.
            max_workers: Number of threads used to fetch versions. ``1``
                fetches sequentially.

        Raises:
            ValueError: If *window_size* or *max_workers* is less than 1.
        """
        if window_size < 1:
            raise ValueError(f"Window size must be at least 1, got {window_size}")
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")

        self._window_size = window_size
        self._block_version_at = block_version_at
        self._max_workers = max_workers
        self._current_height: int | None = None
        self._histogram: VersionHistogram = {}
        self._lock = threading.Lock()

    @property
    def window_size(self) -> int:
        return self._window_size

    @property
    def current_height(self) -> int | None:
        """Height of the window's newest block, or None before initialization."""
        return self._current_height

    @property
    def is_initialized(self) -> bool:
        return self._current_height is not None

    # ------------------------------------------------------------------
    # Full build
    # ------------------------------------------------------------------

    def initialize(self, current_height: int) -> WindowState:
        """
        Build the histogram from scratch for the window ending at
        *current_height*.

        Can be called again on an initialized engine to rebuild; the
        previous state is replaced only if the whole scan succeeds.

        Args:
            current_height: Height of the newest block in the window.

        Returns:
            A snapshot of the freshly built window.

        Raises:
            ValueError: If the chain is too short to fill the window.
            FetchError: If any block version could not be fetched.
        """
        window_start = current_height - self._window_size + 1
        if window_start < 0:
            raise ValueError(
                f"Chain height {current_height} is too low for a window of "
                f"{self._window_size} blocks"
            )

        logger.info(
            "Scanning %d blocks (heights %d to %d)",
            self._window_size, window_start, current_height,
        )
        versions = self._fetch_versions(range(window_start, current_height + 1))

        histogram: VersionHistogram = {}
        for version in versions:
            histogram[version] = histogram.get(version, 0) + 1

        self._commit(current_height, histogram)
        return self.snapshot()

    # ------------------------------------------------------------------
    # Incremental update
    # ------------------------------------------------------------------

    def advance(self, new_height: int) -> WindowState:
        """
        Slide the window forward so that it ends at *new_height*.

        Args:
            new_height: The new chain height. Must not be below the current
                height.

        Returns:
            A snapshot of the updated window.

        Raises:
            RuntimeError: If the engine has not been initialized.
            InvariantViolation: If *new_height* is below the current height.
            FetchError: If any entering or leaving block version could not be
                fetched. The state is unchanged.
        """
        old_height = self._current_height
        if old_height is None:
            raise RuntimeError("Window has not been initialized")

        if new_height < old_height:
            raise InvariantViolation(
                f"Chain height moved backwards from {old_height} to {new_height}"
            )

        if new_height == old_height:
            logger.debug("No new blocks at height %d", old_height)
            return self.snapshot()

        delta = new_height - old_height
        if delta >= self._window_size:
            logger.info(
                "Height advanced by %d blocks, window of %d fully rotated; rebuilding at %d",
                delta, self._window_size, new_height,
            )
            return self.initialize(new_height)

        old_start = old_height - self._window_size + 1
        added_heights = range(old_height + 1, new_height + 1)
        removed_heights = range(old_start, old_start + delta)

        # Stage every fetch before touching the histogram.
        added = self._fetch_versions(added_heights)
        removed = self._fetch_versions(removed_heights)

        with self._lock:
            histogram = dict(self._histogram)

        for height, version in zip(added_heights, added):
            logger.debug("Adding block %d (version 0x%08x)", height, version & 0xFFFFFFFF)
            histogram[version] = histogram.get(version, 0) + 1

        for height, version in zip(removed_heights, removed):
            logger.debug("Removing block %d (version 0x%08x)", height, version & 0xFFFFFFFF)
            histogram[version] = histogram.get(version, 0) - 1

        negative = sorted(v for v, count in histogram.items() if count < 0)
        if negative:
            raise InvariantViolation(
                "Removing heights %d..%d would leave negative counts for versions %s"
                % (
                    removed_heights[0],
                    removed_heights[-1],
                    ", ".join(f"0x{v & 0xFFFFFFFF:08x}" for v in negative),
                )
            )

        self._commit(new_height, {v: c for v, c in histogram.items() if c > 0})
        logger.info("Window advanced from %d to %d (%d blocks)", old_height, new_height, delta)
        return self.snapshot()

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def snapshot(self) -> WindowState:
        """
        Return an immutable copy of the current window.

        Raises:
            RuntimeError: If the engine has not been initialized.
        """
        with self._lock:
            if self._current_height is None:
                raise RuntimeError("Window has not been initialized")
            return WindowState(
                current_height=self._current_height,
                window_size=self._window_size,
                histogram=MappingProxyType(dict(self._histogram)),
            )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _commit(self, height: int, histogram: VersionHistogram) -> None:
        """Swap in a new state after checking the sum invariant."""
        total = sum(histogram.values())
        if total != self._window_size:
            raise InvariantViolation(
                f"Histogram at height {height} sums to {total}, "
                f"expected {self._window_size}"
            )
        with self._lock:
            self._histogram = histogram
            self._current_height = height

    def _fetch_one(self, height: int) -> int:
        try:
            return self._block_version_at(height)
        except TransportError as e:
            raise FetchError(height, str(e)) from e

    def _fetch_versions(self, heights: Iterable[int]) -> list[int]:
        """
        Fetch the versions of *heights*, returned in the same order.

        With more than one worker the fetches run in a thread pool. If
        several fail, the error for the lowest height is raised.
        """
        heights = list(heights)
        if self._max_workers == 1 or len(heights) < 2:
            return [self._fetch_one(height) for height in heights]

        workers = min(self._max_workers, len(heights))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self._fetch_one, height) for height in heights]
            versions = []
            for future in futures:
                try:
                    versions.append(future.result())
                except FetchError:
                    for pending in futures:
                        pending.cancel()
                    raise
        return versions
