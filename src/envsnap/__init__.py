"""Snapshot and restore the state of a developer machine."""

__version__ = "0.1.0"
