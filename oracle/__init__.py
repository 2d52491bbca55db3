"""Market oracle: multi-backend prediction consensus with outcome calibration."""

__version__ = "1.0.0"
