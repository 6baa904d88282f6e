"""Acoustic echo cancellation with a multidelay block frequency-domain adaptive filter."""

__version__ = "0.1.0"
__all__ = ["spectral", "filters", "canceller", "buffered"]