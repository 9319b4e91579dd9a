"""Drift detection across the fleet."""

from fleetplane.drift.detector import DriftDetector, LiveConfigProbe, live_fingerprint

__all__ = ["DriftDetector", "LiveConfigProbe", "live_fingerprint"]
