"""Copy trading - signal-to-execution pipeline for crypto copy trading."""

__version__ = "0.1.0"
