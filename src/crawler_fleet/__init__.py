"""Coordinator for a fleet of data-collection crawler workers."""

__version__ = "0.1.0"
