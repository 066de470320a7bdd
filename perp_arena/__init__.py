"""Perpetual futures battle arena simulation core."""

__version__ = "1.0.0"
