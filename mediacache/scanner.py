"""
Source scanner for media-cache.

Walks library roots lazily and yields media files that pass the extension,
age and size filters. The scan has no side effects and can be restarted at
any time; it never follows symbolic links and never descends into the
cache's own directories.
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Sequence

from mediacache.config import CategoryConfig

SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class MediaFile:
    """A regular file found on the backing library."""
    path: str
    size: int
    mtime: float


def _normalize_extensions(extensions: Iterable[str]) -> frozenset:
    return frozenset(ext.lower() if ext.startswith('.') else f".{ext.lower()}" for ext in extensions)


def _is_excluded(path: str, excluded: Sequence[str]) -> bool:
    return any(path == root or path.startswith(root + os.sep) for root in excluded)


def scan_media(root: str, extensions: Iterable[str], max_age_days: Optional[float] = None,
               min_size: Optional[int] = None, exclude: Sequence[str] = (),
               now: Optional[float] = None) -> Iterator[MediaFile]:
    """Yield media files under root matching every filter.

    Args:
        root: Directory to walk.
        extensions: Allowed file extensions (case-insensitive, with or without dot).
        max_age_days: Skip files modified more than this many days ago.
        min_size: Skip files smaller than this many bytes.
        exclude: Directory trees never descended into (the cache root).
        now: Reference time for age filtering (defaults to current time).

    Yields:
        MediaFile records with absolute paths.
    """
    allowed = _normalize_extensions(extensions)
    excluded = [os.path.abspath(p) for p in exclude]
    reference = time.time() if now is None else now
    min_mtime = reference - max_age_days * SECONDS_PER_DAY if max_age_days else None

    root = os.path.abspath(root)
    if os.path.islink(root) or _is_excluded(root, excluded):
        logging.debug(f"Skipping scan root (symlink or excluded): {root}")
        return
    if not os.path.isdir(root):
        logging.debug(f"Scan root does not exist: {root}")
        return

    pending: List[str] = [root]
    while pending:
        directory = pending.pop()
        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            logging.warning(f"Skipping unreadable directory {directory}: {type(e).__name__}: {e}")
            continue

        subdirs = []
        for entry in entries:
            try:
                if entry.is_symlink():
                    continue
                if entry.is_dir(follow_symlinks=False):
                    if not _is_excluded(entry.path, excluded):
                        subdirs.append(entry.path)
                    continue
                if not entry.is_file(follow_symlinks=False):
                    continue
                if os.path.splitext(entry.name)[1].lower() not in allowed:
                    continue
                st = entry.stat(follow_symlinks=False)
            except OSError as e:
                logging.debug(f"Skipping unreadable entry {entry.path}: {e}")
                continue

            if min_mtime is not None and st.st_mtime < min_mtime:
                continue
            if min_size and st.st_size < min_size:
                continue
            yield MediaFile(path=entry.path, size=st.st_size, mtime=st.st_mtime)

        # Depth-first, alphabetical order
        pending.extend(reversed(subdirs))


def collect_candidates(library_root: str, category: CategoryConfig, extensions: Iterable[str],
                       exclude: Sequence[str] = (), now: Optional[float] = None) -> List[MediaFile]:
    """Scan every source folder of a category and return the matching files.

    A file reachable from two source folders is returned once.
    """
    seen = set()
    results: List[MediaFile] = []
    for folder in category.source_folders:
        root = os.path.join(library_root, folder)
        for media in scan_media(root, extensions, max_age_days=category.max_age_days,
                                min_size=category.min_file_size_bytes, exclude=exclude, now=now):
            if media.path in seen:
                continue
            seen.add(media.path)
            results.append(media)

    logging.debug(f"Scanner found {len(results)} candidates for category '{category.name}'")
    return results
