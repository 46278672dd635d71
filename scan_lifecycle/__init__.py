"""Scan lifecycle management: state machine, stuck-scan sweeps and schema-cache recovery."""

__version__ = "0.1.0"
