"""Claimgate - free token distribution gated by evaluated observations."""

__version__ = "1.0.0"
