"""
Version Histogram Reporter
===========================

Renders window snapshots for humans. Two outputs are produced for every
report:

- **Log summary**: the plain-text lines a headless monitor writes to its log
  (current height, the window's block range, one line per version with its
  share of the window, and the total).

- **Rich tables**: a colourful console view built with the ``rich`` library,
  showing the version breakdown and, for BIP9 versions, how many blocks of
  the window signal each deployment bit and whether the activation
  threshold is met.

The reporter only reads ``WindowState`` snapshots; it never touches the
engine.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from vbmonitor.consensus.versionbits import bit_support, format_version, signalled_bits

if TYPE_CHECKING:
    from vbmonitor.core.tally import WindowState

logger = logging.getLogger(__name__)


DEFAULT_THRESHOLD = 0.75
"""Share of the window that must signal a bit for it to count as locked in
(6048 of 8064 blocks)."""


def _ordered_versions(state: "WindowState") -> list[tuple[int, int]]:
    """Versions by descending count, ties broken by version."""
    return sorted(state.histogram.items(), key=lambda item: (-item[1], item[0]))


def version_percentages(state: "WindowState") -> dict[int, float]:
    """
    Share of the window held by each version, in percent.

    Args:
        state: A window snapshot.

    Returns:
        Mapping of raw version -> percentage of ``window_size``.
    """
    return {
        version: count / state.window_size * 100
        for version, count in _ordered_versions(state)
    }


def summary_lines(state: "WindowState", next_retarget: int | None = None) -> list[str]:
    """
    Build the plain-text summary of a snapshot.

    Args:
        state: A window snapshot.
        next_retarget: Height of the next retarget boundary, if known.

    Returns:
        The summary, one log line per entry.
    """
    lines = [
        f"Current block height: {state.current_height}",
        f"Block range: {state.window_start} to {state.current_height}",
    ]
    percentages = version_percentages(state)
    for version, count in _ordered_versions(state):
        lines.append(
            f"{count} version {format_version(version)} blocks ({percentages[version]:.2f}%)."
        )
    lines.append(f"Total blocks: {state.total}")
    if next_retarget is not None:
        lines.append(
            f"Next block retarget: {next_retarget} "
            f"({next_retarget - state.current_height} blocks away)"
        )
    return lines


class VersionReporter:
    """
    Reports window snapshots to the log and to a ``rich`` console.

    Attributes:
        console: The ``rich.console.Console`` used for table output.
        threshold: Fraction of the window a bit needs for activation.
        log_summary: Whether summaries are also written to the log.
        show_tables: Whether rich tables are printed.
    """

    def __init__(
        self,
        console: Console | None = None,
        threshold: float = DEFAULT_THRESHOLD,
        log_summary: bool = True,
        show_tables: bool = True,
    ) -> None:
        if not 0 < threshold <= 1:
            raise ValueError(f"Threshold must be in (0, 1], got {threshold}")
        self.console = console if console is not None else Console()
        self.threshold = threshold
        self.log_summary = log_summary
        self.show_tables = show_tables

    def report(self, state: "WindowState", next_retarget: int | None = None) -> None:
        """
        Report a snapshot.

        Args:
            state: A window snapshot.
            next_retarget: Height of the next retarget boundary, if known.
        """
        if self.log_summary:
            for line in summary_lines(state, next_retarget):
                logger.info(line)

        if self.show_tables:
            self.print_overview(state, next_retarget)
            self.print_versions(state)
            self.print_bit_support(state)

    # ------------------------------------------------------------------
    # Rich views
    # ------------------------------------------------------------------

    def print_overview(self, state: "WindowState", next_retarget: int | None = None) -> None:
        """Print the window position and retarget information as a panel."""
        info = (
            f"[bold]Chain Height:[/bold]   {state.current_height:,}\n"
            f"[bold]Window:[/bold]         {state.window_start:,} to {state.current_height:,}\n"
            f"[bold]Window Size:[/bold]    {state.window_size:,} blocks"
        )
        if next_retarget is not None:
            info += (
                f"\n[bold]Next Retarget:[/bold]  {next_retarget:,} "
                f"({next_retarget - state.current_height:,} blocks away)"
            )
        self.console.print(Panel(info, title="Version Window", border_style="cyan"))

    def print_versions(self, state: "WindowState") -> None:
        """Print one row per block version in the window."""
        table = Table(
            title="Block Versions",
            show_header=True,
            header_style="bold cyan",
            border_style="blue",
        )
        table.add_column("Version", style="green")
        table.add_column("Blocks", justify="right", style="bold white")
        table.add_column("Share", justify="right", style="yellow")
        table.add_column("Signalled Bits", style="magenta")

        percentages = version_percentages(state)
        for version, count in _ordered_versions(state):
            bits = signalled_bits(version)
            table.add_row(
                format_version(version),
                f"{count:,}",
                f"{percentages[version]:.2f}%",
                ", ".join(str(bit) for bit in bits) if bits else "-",
            )

        self.console.print(table)

    def print_bit_support(self, state: "WindowState") -> None:
        """Print signalling support for every deployment bit seen in the window."""
        support = bit_support(state.histogram)
        if not support:
            self.console.print("[yellow]No version-bits signalling in window.[/yellow]")
            return

        table = Table(
            title=f"Deployment Signalling (threshold {self.threshold:.0%})",
            show_header=True,
            header_style="bold magenta",
            border_style="magenta",
        )
        table.add_column("Bit", justify="right", style="dim")
        table.add_column("Blocks", justify="right", style="bold white")
        table.add_column("Share", justify="right", style="yellow")
        table.add_column("Threshold", style="green")

        for bit, count in support.items():
            share = count / state.window_size
            reached = share >= self.threshold
            table.add_row(
                str(bit),
                f"{count:,}",
                f"{share * 100:.2f}%",
                "[green]reached[/green]" if reached else "[red]not reached[/red]",
            )

        self.console.print(table)
