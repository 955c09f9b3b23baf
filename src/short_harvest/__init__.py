"""Harvester of disclosed short positions published by the CNMV."""

__version__ = "0.3.0"
