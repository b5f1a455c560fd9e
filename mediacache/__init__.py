"""Media cache - symlink-based acceleration cache for NAS media libraries."""

__version__ = "1.0.0"
