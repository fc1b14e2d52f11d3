"""Fetch crates and run commands on them, on the host or in a Docker sandbox."""

__version__ = "0.1.0"