"""API route modules."""

from . import analysis, calibration, health, outcomes

__all__ = ["analysis", "calibration", "health", "outcomes"]
