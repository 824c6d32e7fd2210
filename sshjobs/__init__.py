"""Run job files over SSH on many hosts in parallel."""

__version__ = "0.1.0"
