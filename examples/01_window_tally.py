"""
Example 01: Rolling Window Tally
=================================

This example demonstrates how the tally engine follows a growing chain:
1. Build the version histogram for the last 16 blocks of a simulated chain.
2. Mine single blocks and watch the window slide one height at a time.
3. Jump several blocks at once, then more than a whole window.
4. Compare the incremental result with a from-scratch rescan.

The engine only queries the blocks that enter and leave the window, so a
one-block advance costs two version lookups regardless of the window size.

Usage:
    python -m examples.01_window_tally
"""

import os
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from examples.helpers.simulated_chain import SimulatedChain
from vbmonitor.consensus.retarget import next_retarget_height
from vbmonitor.consensus.versionbits import format_version
from vbmonitor.core.tally import WindowTallyEngine
from vbmonitor.utils.reporter import summary_lines

WINDOW = 16
RETARGET_INTERVAL = 8


def print_state(state) -> None:
    for line in summary_lines(state, next_retarget_height(state.current_height, RETARGET_INTERVAL)):
        print(f"  {line}")


def main():
    print("=" * 60)
    print("Version Bits Monitor - Rolling Window Example")
    print("=" * 60)

    # Step 1: A chain of 40 blocks, all still on the legacy version.
    chain = SimulatedChain([0x20000000] * 40)
    engine = WindowTallyEngine(WINDOW, chain.block_version_at)

    print(f"\n[Step 1] Initial scan of {WINDOW} blocks...")
    state = engine.initialize(chain.current_height())
    print_state(state)
    print(f"  Version queries so far: {chain.queries}")

    # Step 2: Miners begin signalling bit 1, one block at a time.
    print("\n[Step 2] Mining 3 signalling blocks one by one...")
    for _ in range(3):
        before = chain.queries
        chain.extend([0x20000002])
        state = engine.advance(chain.current_height())
        print(f"  Height {state.current_height}: {chain.queries - before} queries, "
              f"{format_version(0x20000002)} now {state.histogram.get(0x20000002, 0)} blocks")

    # Step 3: A multi-block jump, then a jump larger than the window.
    print("\n[Step 3] Jumping 5 blocks, then 20 blocks...")
    chain.extend(SimulatedChain.rollout(5, 0x20000000, 0x20000002, 0.5, 0.8, seed=1))
    state = engine.advance(chain.current_height())
    print_state(state)

    chain.extend(SimulatedChain.rollout(20, 0x20000000, 0x20000002, 0.8, 1.0, seed=2))
    state = engine.advance(chain.current_height())
    print_state(state)

    # Step 4: Incremental and from-scratch computation agree.
    print("\n[Step 4] Checking against a full rescan...")
    fresh = WindowTallyEngine(WINDOW, chain.block_version_at).initialize(chain.current_height())
    agrees = dict(fresh.histogram) == dict(state.histogram)
    print(f"  Incremental histogram matches rescan: {agrees}")

    print("\n" + "=" * 60)


if __name__ == "__main__":
    main()
