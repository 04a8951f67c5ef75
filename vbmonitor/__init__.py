"""Live block-version histogram over a trailing window of the chain."""

__version__ = "0.1.0"
