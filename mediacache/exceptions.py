"""
Exception types for media-cache.

Only failures that must change the process exit code get their own type.
Per-item filesystem problems stay as plain OSError and are handled where
they happen.
"""


class MediaCacheError(Exception):
    """Base class for media-cache errors."""


class PreconditionError(MediaCacheError):
    """A required condition for running a job is not met.

    Raised before any mutation (library not mounted, cache root not
    writable, required external command missing). Always fatal.
    """


class LockNotAcquired(MediaCacheError):
    """Another instance of the same job already holds its lock."""

    def __init__(self, job_name: str):
        super().__init__(f"Another instance of '{job_name}' is already running")
        self.job_name = job_name


class ProviderUnavailable(MediaCacheError):
    """The popularity provider could not deliver a ranking."""
