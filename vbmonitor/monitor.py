"""
Version Monitor Loop
=====================

Drives the tally engine from a live node:

1. Read the chain height and build the window once (the only full scan).
2. Poll the height every ``poll_interval`` seconds.
3. When it changes, advance the engine by exactly the new blocks and report
   the updated histogram together with the next retarget boundary.

Retry Policy
------------
The engine never retries; this loop does. A failed poll or a failed advance
leaves the engine untouched, so the next poll simply tries to reach the
(possibly newer) tip again. After ``max_consecutive_failures`` failures in a
row the last error is re-raised to the caller.

Height Decreases
----------------
The engine refuses to move backwards. If the node reports a lower height
(a reorganisation that shortened the chain), or an advance would produce an
impossible histogram, the loop discards the engine and builds a fresh window
at the node's current height.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Callable

from vbmonitor.consensus.retarget import next_retarget_height
from vbmonitor.core.chain import TransportError
from vbmonitor.core.tally import FetchError, InvariantViolation, WindowTallyEngine
from vbmonitor.utils.reporter import VersionReporter

if TYPE_CHECKING:
    from vbmonitor.core.chain import ChainReader
    from vbmonitor.core.tally import WindowState
    from vbmonitor.utils.config import MonitorConfig

logger = logging.getLogger(__name__)


class VersionMonitor:
    """
    Polls a chain reader and keeps a window tally up to date.

    Attributes:
        reader: The chain reader queried for heights and versions.
        config: Monitor settings.
        reporter: Receives a snapshot after every change.
        engine: The current tally engine, None until ``start`` succeeds.
    """

    def __init__(
        self,
        reader: "ChainReader",
        config: "MonitorConfig",
        reporter: VersionReporter | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.reader = reader
        self.config = config
        self.reporter = reporter if reporter is not None else VersionReporter(
            threshold=config.threshold
        )
        self.engine: WindowTallyEngine | None = None
        self._sleep = sleep
        self._failures = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> "WindowState":
        """
        Build the initial window at the node's current height and report it.

        The whole initialization is retried after a failure, up to
        ``max_consecutive_failures`` attempts.

        Returns:
            The initial snapshot.

        Raises:
            TransportError: If the height could not be read too many times.
            FetchError: If the window could not be built too many times.
        """
        while True:
            try:
                height = self.reader.current_height()
                logger.info("Current block height: %d", height)
                logger.info(
                    "Next block retarget %d",
                    next_retarget_height(height, self.config.retarget_interval),
                )
                engine = self._new_engine()
                state = engine.initialize(height)
            except (TransportError, FetchError) as e:
                self._record_failure(e)
                self._sleep(self.config.poll_interval)
                continue

            self._failures = 0
            self.engine = engine
            self._report(state)
            return state

    def poll_once(self) -> bool:
        """
        Check the node once and advance the window if the height changed.

        Returns:
            True if the window moved, False if there were no new blocks.

        Raises:
            RuntimeError: If ``start`` has not been called.
            TransportError: If the height could not be read.
            FetchError: If a block version could not be fetched.
        """
        if self.engine is None:
            raise RuntimeError("Monitor has not been started")

        new_height = self.reader.current_height()
        old_height = self.engine.current_height
        if new_height == old_height:
            return False

        logger.info(
            "New height: %d Old height: %d Diff: %d",
            new_height, old_height, new_height - old_height,
        )

        try:
            state = self.engine.advance(new_height)
        except InvariantViolation as e:
            logger.warning("%s; rebuilding window at height %d", e, new_height)
            engine = self._new_engine()
            state = engine.initialize(new_height)
            self.engine = engine

        if new_height > old_height:
            self._log_retarget_crossings(old_height, new_height)

        self._report(state)
        return True

    def run(self, max_polls: int | None = None) -> None:
        """
        Start the monitor and poll until interrupted.

        Args:
            max_polls: Stop after this many polls. None polls forever.

        Raises:
            TransportError: After too many consecutive height failures.
            FetchError: After too many consecutive fetch failures.
        """
        try:
            self.start()
            polls = 0
            while max_polls is None or polls < max_polls:
                polls += 1
                try:
                    changed = self.poll_once()
                except (TransportError, FetchError) as e:
                    self._record_failure(e)
                    self._sleep(self.config.poll_interval)
                    continue

                self._failures = 0
                if not changed:
                    self._sleep(self.config.poll_interval)
        except KeyboardInterrupt:
            logger.info("Monitor stopped")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _new_engine(self) -> WindowTallyEngine:
        return WindowTallyEngine(
            self.config.window_size,
            self.reader.block_version_at,
            max_workers=self.config.fetch_workers,
        )

    def _report(self, state: "WindowState") -> None:
        self.reporter.report(
            state,
            next_retarget_height(state.current_height, self.config.retarget_interval),
        )

    def _record_failure(self, error: Exception) -> None:
        """Count a failure; re-raise *error* once the limit is reached."""
        self._failures += 1
        limit = self.config.max_consecutive_failures
        if self._failures >= limit:
            logger.error("Giving up after %d consecutive failures: %s", self._failures, error)
            raise error
        logger.warning("Attempt failed (%d/%d): %s", self._failures, limit, error)

    def _log_retarget_crossings(self, old_height: int, new_height: int) -> None:
        interval = self.config.retarget_interval
        boundary = next_retarget_height(old_height, interval)
        while boundary <= new_height:
            logger.info("Retarget boundary reached at height %d", boundary)
            boundary += interval
