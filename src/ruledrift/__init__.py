"""Drift detection and reconciliation for Sentinel scheduled detection rules."""

__version__ = "0.1.0"
