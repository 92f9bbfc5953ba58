"""Version information for the taskcache package."""

__version__ = "0.1.0"
