"""
Tests for the Version Reporter
===============================

Tests cover:
- Percentage calculation
- Plain-text log summary
- Rich table output
"""

import io
import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from rich.console import Console

from vbmonitor.core.tally import WindowState
from vbmonitor.utils.reporter import VersionReporter, summary_lines, version_percentages


@pytest.fixture
def state():
    """A window of 8 blocks: 6 signalling bit 1, 2 without signalling."""
    return WindowState(
        current_height=4039,
        window_size=8,
        histogram={0x20000000: 2, 0x20000002: 6},
    )


@pytest.fixture
def output():
    return io.StringIO()


@pytest.fixture
def reporter(output):
    console = Console(file=output, width=120, color_system=None)
    return VersionReporter(console=console, threshold=0.75)


class TestSummary:
    """Tests for the plain-text summary."""

    def test_percentages(self, state):
        percentages = version_percentages(state)
        assert percentages == {0x20000002: 75.0, 0x20000000: 25.0}

    def test_percentages_ordered_by_count(self, state):
        assert list(version_percentages(state)) == [0x20000002, 0x20000000]

    def test_summary_lines(self, state):
        lines = summary_lines(state, next_retarget=4048)
        assert lines == [
            "Current block height: 4039",
            "Block range: 4032 to 4039",
            "6 version 0x20000002 blocks (75.00%).",
            "2 version 0x20000000 blocks (25.00%).",
            "Total blocks: 8",
            "Next block retarget: 4048 (9 blocks away)",
        ]

    def test_summary_without_retarget(self, state):
        lines = summary_lines(state)
        assert lines[-1] == "Total blocks: 8"


class TestVersionReporter:
    """Tests for report output."""

    def test_report_logs_summary(self, reporter, state, caplog):
        caplog.set_level(logging.INFO, logger="vbmonitor.utils.reporter")
        reporter.report(state, next_retarget=4048)
        assert "Current block height: 4039" in caplog.text
        assert "6 version 0x20000002 blocks (75.00%)." in caplog.text

    def test_report_without_log_summary(self, output, state, caplog):
        caplog.set_level(logging.INFO, logger="vbmonitor.utils.reporter")
        console = Console(file=output, width=120, color_system=None)
        VersionReporter(console=console, log_summary=False).report(state)
        assert caplog.text == ""

    def test_report_prints_tables(self, reporter, output, state):
        reporter.report(state, next_retarget=4048)
        text = output.getvalue()
        assert "Version Window" in text
        assert "0x20000002" in text
        assert "75.00%" in text
        assert "4,048" in text

    def test_threshold_reached(self, reporter, output, state):
        reporter.print_bit_support(state)
        text = output.getvalue()
        assert "reached" in text
        assert "not reached" not in text

    def test_threshold_not_reached(self, output, state):
        console = Console(file=output, width=120, color_system=None)
        VersionReporter(console=console, threshold=0.95).print_bit_support(state)
        assert "not reached" in output.getvalue()

    def test_no_signalling(self, reporter, output):
        legacy = WindowState(current_height=10, window_size=4, histogram={4: 4})
        reporter.print_bit_support(legacy)
        assert "No version-bits signalling" in output.getvalue()

    def test_tables_can_be_disabled(self, output, state):
        console = Console(file=output, width=120, color_system=None)
        VersionReporter(console=console, show_tables=False).report(state)
        assert output.getvalue() == ""

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            VersionReporter(threshold=0)
        with pytest.raises(ValueError):
            VersionReporter(threshold=1.2)
