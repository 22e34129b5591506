"""healthsync: multi-provider health and fitness data synchronization."""

__version__ = "0.1.0"
