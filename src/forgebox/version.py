"""Version information for Forgebox."""

__version__ = "0.4.0"
