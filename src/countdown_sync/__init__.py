"""Countdown timer kept consistent across independent contexts."""

__version__ = "0.1.0"
