"""
Tests for the Rolling Window Tally Engine
==========================================

Tests cover:
- Initial full scan
- Single and multi-block advances
- Full window rotation
- Failure atomicity and retry
- Invariant checks (backwards heights, negative counts)
- Equivalence of incremental updates and full rescans
- Concurrent fetching
"""

import os
import random
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from vbmonitor.core.chain import TransportError
from vbmonitor.core.tally import (
    FetchError,
    InvariantViolation,
    WindowState,
    WindowTallyEngine,
)


class FakeChain:
    """Block versions keyed by height, with switchable fetch failures."""

    def __init__(self, versions: dict[int, int]) -> None:
        self.versions = dict(versions)
        self.failing: set[int] = set()
        self.calls: list[int] = []

    def block_version_at(self, height: int) -> int:
        self.calls.append(height)
        if height in self.failing:
            raise TransportError(f"connection reset while fetching {height}")
        if height not in self.versions:
            raise TransportError(f"Block height out of range: {height}")
        return self.versions[height]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def chain():
    """Heights 0-9 at version 5, heights 10-13 at versions [1, 1, 2, 1]."""
    versions = {height: 5 for height in range(10)}
    versions.update({10: 1, 11: 1, 12: 2, 13: 1})
    return FakeChain(versions)


@pytest.fixture
def engine(chain):
    """A window of 4 blocks built at height 13."""
    engine = WindowTallyEngine(4, chain.block_version_at)
    engine.initialize(13)
    chain.calls.clear()
    return engine


def rescan(chain: FakeChain, window_size: int, height: int) -> dict[int, int]:
    """Histogram of a fresh engine built at *height*."""
    fresh = WindowTallyEngine(window_size, chain.block_version_at)
    return dict(fresh.initialize(height).histogram)


# ---------------------------------------------------------------------------
# Construction and initialization
# ---------------------------------------------------------------------------

class TestInitialize:
    """Tests for the one-off full scan."""

    def test_initial_histogram(self, engine):
        """Heights 10-13 with versions [1, 1, 2, 1] give {1: 3, 2: 1}."""
        state = engine.snapshot()
        assert dict(state.histogram) == {1: 3, 2: 1}
        assert state.current_height == 13
        assert state.window_size == 4

    def test_scans_exactly_the_window(self, chain):
        """Initialization fetches each height of the window once, in order."""
        engine = WindowTallyEngine(4, chain.block_version_at)
        engine.initialize(13)
        assert chain.calls == [10, 11, 12, 13]

    def test_sum_equals_window_size(self, engine):
        state = engine.snapshot()
        assert state.total == 4
        assert state.window_start == 10

    def test_window_starting_at_genesis(self, chain):
        """A window may start at height 0."""
        engine = WindowTallyEngine(4, chain.block_version_at)
        state = engine.initialize(3)
        assert dict(state.histogram) == {5: 4}
        assert state.window_start == 0

    def test_chain_too_short_raises(self, chain):
        """The window must lie entirely on the chain."""
        engine = WindowTallyEngine(4, chain.block_version_at)
        with pytest.raises(ValueError):
            engine.initialize(2)
        assert not engine.is_initialized

    def test_fetch_failure_raises_with_height(self, chain):
        """A failed fetch aborts the scan and names the failing height."""
        chain.failing.add(12)
        engine = WindowTallyEngine(4, chain.block_version_at)
        with pytest.raises(FetchError) as excinfo:
            engine.initialize(13)
        assert excinfo.value.height == 12
        assert isinstance(excinfo.value.__cause__, TransportError)
        assert not engine.is_initialized
        assert engine.current_height is None

    def test_failed_rebuild_keeps_previous_state(self, engine, chain):
        """Re-initializing is all-or-nothing too."""
        chain.versions.update({14: 2, 15: 2, 16: 2, 17: 2})
        chain.failing.add(16)
        with pytest.raises(FetchError):
            engine.initialize(17)
        assert engine.current_height == 13
        assert dict(engine.snapshot().histogram) == {1: 3, 2: 1}

    def test_invalid_window_size(self, chain):
        with pytest.raises(ValueError):
            WindowTallyEngine(0, chain.block_version_at)

    def test_invalid_worker_count(self, chain):
        with pytest.raises(ValueError):
            WindowTallyEngine(4, chain.block_version_at, max_workers=0)

    def test_uninitialized_engine(self, chain):
        """Snapshot and advance require a built window."""
        engine = WindowTallyEngine(4, chain.block_version_at)
        assert engine.current_height is None
        with pytest.raises(RuntimeError):
            engine.snapshot()
        with pytest.raises(RuntimeError):
            engine.advance(14)


# ---------------------------------------------------------------------------
# Incremental advance
# ---------------------------------------------------------------------------

class TestAdvance:
    """Tests for sliding the window forward."""

    def test_single_block(self, engine, chain):
        """Block 14 (version 2) enters, block 10 (version 1) leaves."""
        chain.versions[14] = 2
        state = engine.advance(14)
        assert dict(state.histogram) == {1: 2, 2: 2}
        assert state.total == 4
        assert state.current_height == 14

    def test_single_block_fetches_one_in_one_out(self, engine, chain):
        chain.versions[14] = 2
        engine.advance(14)
        assert sorted(chain.calls) == [10, 14]

    def test_multi_block_jump_after_single_advance(self, engine, chain):
        """From 14 to 16, blocks 15-16 enter and blocks 11-12 leave."""
        chain.versions.update({14: 2, 15: 2, 16: 1})
        engine.advance(14)
        chain.calls.clear()

        state = engine.advance(16)
        assert sorted(chain.calls) == [11, 12, 15, 16]
        assert dict(state.histogram) == rescan(chain, 4, 16)
        assert dict(state.histogram) == {1: 2, 2: 2}

    def test_multi_block_jump(self, engine, chain):
        """From 13 to 16, blocks 14-16 enter and blocks 10-12 leave."""
        chain.versions.update({14: 2, 15: 2, 16: 1})
        state = engine.advance(16)
        assert sorted(chain.calls) == [10, 11, 12, 14, 15, 16]
        assert dict(state.histogram) == rescan(chain, 4, 16)

    def test_no_new_block_is_noop(self, engine, chain):
        """Advancing to the current height changes nothing and fetches nothing."""
        before = engine.snapshot()
        state = engine.advance(13)
        assert chain.calls == []
        assert state == before
        assert dict(state.histogram) == {1: 3, 2: 1}

    def test_version_leaving_window_is_dropped(self, engine, chain):
        """A version whose count falls to zero disappears from the histogram."""
        chain.versions.update({14: 1, 15: 1, 16: 1})
        state = engine.advance(16)
        assert dict(state.histogram) == {1: 4}
        assert 2 not in state.histogram

    def test_new_version_appears(self, engine, chain):
        chain.versions[14] = 0x20000002
        state = engine.advance(14)
        assert state.histogram[0x20000002] == 1

    def test_backwards_height_raises(self, engine, chain):
        """A lower height signals a reorg or caller bug and is refused."""
        with pytest.raises(InvariantViolation):
            engine.advance(12)
        assert engine.current_height == 13
        assert chain.calls == []

    def test_negative_count_refused(self, engine, chain):
        """
        If a leaving block reports a version never counted (the chain changed
        under the engine), the update is refused and the state kept.
        """
        chain.versions[10] = 7
        chain.versions[14] = 2
        with pytest.raises(InvariantViolation):
            engine.advance(14)
        assert engine.current_height == 13
        assert dict(engine.snapshot().histogram) == {1: 3, 2: 1}


# ---------------------------------------------------------------------------
# Full window rotation
# ---------------------------------------------------------------------------

class TestFullRotation:
    """Tests for jumps of at least a whole window."""

    def test_jump_larger_than_window_rebuilds(self, engine, chain):
        """A jump of 5 with W=4 rescans the new window without removals."""
        chain.versions.update({14: 2, 15: 2, 16: 1, 17: 2, 18: 3})
        state = engine.advance(18)
        assert chain.calls == [15, 16, 17, 18]
        assert dict(state.histogram) == {1: 1, 2: 2, 3: 1}
        assert dict(state.histogram) == rescan(chain, 4, 18)

    def test_jump_equal_to_window_rebuilds(self, engine, chain):
        chain.versions.update({14: 2, 15: 2, 16: 1, 17: 2})
        state = engine.advance(17)
        assert chain.calls == [14, 15, 16, 17]
        assert dict(state.histogram) == {1: 1, 2: 3}

    def test_jump_one_short_of_window_is_incremental(self, engine, chain):
        chain.versions.update({14: 2, 15: 2, 16: 1})
        engine.advance(16)
        assert len(chain.calls) == 6


# ---------------------------------------------------------------------------
# Failure atomicity
# ---------------------------------------------------------------------------

class TestFailureAtomicity:
    """A failed advance leaves the engine untouched and can be retried."""

    def test_failed_added_fetch_keeps_state(self, engine, chain):
        chain.versions.update({14: 2, 15: 2, 16: 1})
        chain.failing.add(15)

        with pytest.raises(FetchError) as excinfo:
            engine.advance(16)
        assert excinfo.value.height == 15
        assert engine.current_height == 13
        assert dict(engine.snapshot().histogram) == {1: 3, 2: 1}

    def test_retry_after_failure_succeeds(self, engine, chain):
        chain.versions.update({14: 2, 15: 2, 16: 1})
        chain.failing.add(15)
        with pytest.raises(FetchError):
            engine.advance(16)

        chain.failing.clear()
        state = engine.advance(16)
        assert state.current_height == 16
        assert dict(state.histogram) == rescan(chain, 4, 16)

    def test_failed_removed_fetch_keeps_state(self, engine, chain):
        """Failures on the leaving side are atomic as well."""
        chain.versions[14] = 2
        chain.failing.add(10)

        with pytest.raises(FetchError) as excinfo:
            engine.advance(14)
        assert excinfo.value.height == 10
        assert engine.current_height == 13
        assert dict(engine.snapshot().histogram) == {1: 3, 2: 1}

    def test_missing_block_is_fetch_error(self, engine):
        """A height the node does not have yet fails like any transport error."""
        with pytest.raises(FetchError) as excinfo:
            engine.advance(14)
        assert excinfo.value.height == 14
        assert engine.current_height == 13


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

class TestSnapshot:
    """Tests for read-only snapshots."""

    def test_snapshot_is_read_only(self, engine):
        state = engine.snapshot()
        with pytest.raises(TypeError):
            state.histogram[1] = 10

    def test_snapshot_is_isolated_from_later_updates(self, engine, chain):
        """A snapshot taken earlier does not change when the window moves."""
        before = engine.snapshot()
        chain.versions[14] = 2
        engine.advance(14)
        assert dict(before.histogram) == {1: 3, 2: 1}
        assert before.current_height == 13

    def test_to_dict(self, engine):
        data = engine.snapshot().to_dict()
        assert data == {
            "current_height": 13,
            "window_size": 4,
            "window_start": 10,
            "histogram": {1: 3, 2: 1},
        }

    def test_window_state_properties(self):
        state = WindowState(current_height=100, window_size=10, histogram={1: 6, 2: 4})
        assert state.window_start == 91
        assert state.total == 10


# ---------------------------------------------------------------------------
# Incremental vs. full rescan
# ---------------------------------------------------------------------------

class TestRescanEquivalence:
    """Random walks of advances always agree with a from-scratch scan."""

    @pytest.mark.parametrize("workers", [1, 4])
    @pytest.mark.parametrize("seed", [1, 2, 3])
    def test_random_walk(self, seed, workers):
        rng = random.Random(seed)
        window = 12
        versions = {h: rng.choice([1, 2, 0x20000000, 0x20000002]) for h in range(400)}
        chain = FakeChain(versions)

        engine = WindowTallyEngine(window, chain.block_version_at, max_workers=workers)
        height = 20
        engine.initialize(height)

        while True:
            height += rng.choice([0, 1, 1, 2, 3, 7, 11, 12, 15])
            if height >= 400:
                break
            state = engine.advance(height)

            assert state.current_height == height
            assert state.total == window
            assert all(count > 0 for count in state.histogram.values())
            assert dict(state.histogram) == rescan(chain, window, height)


# ---------------------------------------------------------------------------
# Concurrent fetching
# ---------------------------------------------------------------------------

class TestConcurrentFetch:
    """Tests for fetching versions with a thread pool."""

    def test_parallel_initialize_matches_sequential(self, chain):
        sequential = WindowTallyEngine(4, chain.block_version_at).initialize(13)
        parallel = WindowTallyEngine(4, chain.block_version_at, max_workers=3).initialize(13)
        assert dict(parallel.histogram) == dict(sequential.histogram)

    def test_lowest_failing_height_reported(self, chain):
        chain.failing.update({11, 13})
        engine = WindowTallyEngine(4, chain.block_version_at, max_workers=4)
        with pytest.raises(FetchError) as excinfo:
            engine.initialize(13)
        assert excinfo.value.height == 11
        assert not engine.is_initialized
