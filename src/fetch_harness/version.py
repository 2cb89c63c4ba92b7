"""Version information for fetch-harness."""

__version__ = "0.3.0"
