"""
System utilities for media-cache.
Handles job locking, atomic file writes, mount checks and size formatting.
"""

import atexit
import fcntl
import json
import logging
import os
import shutil
import stat
import tempfile
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional, Tuple

from mediacache.exceptions import PreconditionError

LOCK_FILE_PREFIX = "media-cache-"


class JobLock:
    """
    Prevent two instances of the same job from running simultaneously.

    Uses flock so the lock belongs to the open file description: it is
    released by the kernel when the process exits or crashes, and a dead
    job never leaves the system wedged. The lock file itself is left in
    place on release; unlinking it would let a third process lock a fresh
    inode while a second one still waits on the old one.
    """

    def __init__(self, lock_file: str):
        self.lock_file = lock_file
        self.lock_fd = None
        self.locked = False

    def acquire(self, blocking: bool = False) -> bool:
        """
        Acquire the lock.

        Args:
            blocking: Wait for the lock instead of failing immediately.

        Returns:
            True if lock acquired successfully, False if another instance holds it.
        """
        if self.locked:
            return True

        try:
            self.lock_fd = open(self.lock_file, 'a+')
            flags = fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
            fcntl.flock(self.lock_fd, flags)

            # Write PID for debugging
            self.lock_fd.seek(0)
            self.lock_fd.truncate()
            self.lock_fd.write(str(os.getpid()))
            self.lock_fd.flush()
            self.locked = True
            return True

        except (IOError, OSError):
            # Lock is held by another process
            if self.lock_fd:
                self.lock_fd.close()
                self.lock_fd = None
            return False

    def release(self) -> None:
        """Release the lock."""
        if not self.locked:
            return

        try:
            fcntl.flock(self.lock_fd, fcntl.LOCK_UN)
        except (IOError, OSError) as e:
            logging.debug(f"Could not unlock {self.lock_file}: {e}")
        finally:
            self.lock_fd.close()
            self.lock_fd = None
            self.locked = False


class ConcurrencyGuard:
    """Per-job exclusive locks plus short-lived resource locks.

    Job locks (acquire) are non-blocking and are held until the process
    exits. Resource locks (hold) block and wrap a single read-modify-write
    of a shared document such as the manifest.
    """

    def __init__(self, lock_dir: str):
        self.lock_dir = lock_dir
        self._held: Dict[str, JobLock] = {}
        atexit.register(self.release_all)

    def lock_path(self, name: str) -> str:
        safe_name = name.replace(os.sep, "_")
        return os.path.join(self.lock_dir, f"{LOCK_FILE_PREFIX}{safe_name}.lock")

    def acquire(self, job_name: str) -> bool:
        """Try to take the exclusive lock for a job without waiting.

        Returns:
            True if this process now holds the job lock.
        """
        if job_name in self._held:
            return True

        os.makedirs(self.lock_dir, exist_ok=True)
        lock = JobLock(self.lock_path(job_name))
        if not lock.acquire():
            logging.debug(f"Lock for job '{job_name}' is held by another process")
            return False

        self._held[job_name] = lock
        logging.debug(f"Acquired job lock: {lock.lock_file}")
        return True

    def release(self, job_name: str) -> None:
        lock = self._held.pop(job_name, None)
        if lock:
            lock.release()

    def release_all(self) -> None:
        for job_name in list(self._held):
            self.release(job_name)

    @contextmanager
    def hold(self, resource: str) -> Iterator[None]:
        """Hold a blocking lock on a shared resource for the duration of a block."""
        os.makedirs(self.lock_dir, exist_ok=True)
        lock = JobLock(self.lock_path(f"resource-{resource}"))
        lock.acquire(blocking=True)
        try:
            yield
        finally:
            lock.release()


def atomic_write_json(path: str, data: Any) -> None:
    """Write JSON so readers only ever see the old or the new document.

    The temp file lives in the destination directory so the final rename
    never crosses a filesystem boundary.
    """
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=directory)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def format_bytes(bytes_value: int) -> str:
    """Format bytes into human-readable string (e.g., '1.50 GB').

    Args:
        bytes_value: Size in bytes to format.

    Returns:
        Human-readable string with appropriate unit.
    """
    if bytes_value < 1024:
        return f"{bytes_value} B"
    elif bytes_value < 1024 ** 2:
        return f"{bytes_value / 1024:.2f} KB"
    elif bytes_value < 1024 ** 3:
        return f"{bytes_value / (1024 ** 2):.2f} MB"
    elif bytes_value < 1024 ** 4:
        return f"{bytes_value / (1024 ** 3):.2f} GB"
    else:
        return f"{bytes_value / (1024 ** 4):.2f} TB"


def is_mountpoint(path: str) -> bool:
    """Check whether a path is an active mount point."""
    return os.path.ismount(path)


def check_path_exists(path: str, writable: bool = False) -> None:
    """Check that a path exists, is a directory, and optionally is writable.

    Raises:
        PreconditionError: If any check fails.
    """
    logging.debug(f"Checking path: {path}")

    if not os.path.exists(path):
        raise PreconditionError(f"Path {path} does not exist.")

    if not os.path.isdir(path):
        raise PreconditionError(f"Path {path} is not a directory.")

    if writable and not os.access(path, os.W_OK):
        raise PreconditionError(f"Path {path} is not writable.")

    logging.debug(f"Path validation successful: {path}")


def require_command(command: str) -> str:
    """Return the absolute path of an external command or fail the precondition."""
    resolved = shutil.which(command)
    if not resolved:
        raise PreconditionError(f"Required command not found: {command}")
    return resolved


def get_disk_usage(path: str) -> Tuple[int, int, int]:
    """Get (total, used, free) bytes for the filesystem holding path."""
    usage = shutil.disk_usage(path)
    return usage.total, usage.used, usage.free


def file_size(path: str) -> Optional[int]:
    """Size of the regular file a path resolves to, or None if it cannot be statted."""
    try:
        st = os.stat(path)
    except OSError:
        return None
    if not stat.S_ISREG(st.st_mode):
        return None
    return st.st_size


def file_mtime(path: str) -> Optional[float]:
    """Modification time of the file a path resolves to, or None if it cannot be statted."""
    try:
        return os.stat(path).st_mtime
    except OSError:
        return None
