"""
Cache directory management for media-cache.

The cache root holds one subdirectory per category. Every entry is a symbolic
link to a file on the backing library; source files are never opened for
writing, moved or deleted here.
"""

import logging
import os
from typing import Iterable, Iterator, List, Optional, Tuple

from mediacache.engine import CacheEntry

# Links under construction; never treated as cache entries
TMP_LINK_PREFIX = ".mc-tmp-"


class CacheDirectory:
    """Creates and removes symlink entries under the cache root.

    Every operation is safe to retry: admitting a link that already points at
    the right target and evicting a link that is already gone are no-ops.
    """

    def __init__(self, cache_dir: str, library_root: str, dry_run: bool = False):
        self.cache_dir = os.path.normpath(cache_dir)
        self.library_root = os.path.normpath(library_root)
        self.dry_run = dry_run

    def category_dir(self, category: str) -> str:
        return os.path.join(self.cache_dir, category)

    def ensure_layout(self, categories: Iterable[str]) -> None:
        """Create the cache root and one directory per category."""
        for category in categories:
            path = self.category_dir(category)
            if os.path.isdir(path):
                continue
            if self.dry_run:
                logging.info(f"[DRY RUN] Would create directory: {path}")
                continue
            os.makedirs(path, exist_ok=True)
            logging.debug(f"Created category directory: {path}")

    def link_path_for(self, category: str, source_path: str) -> str:
        """Link location for a source file.

        The source's path below the library root is mirrored under the
        category directory, so one source always maps to one link.
        """
        source = os.path.normpath(source_path)
        if source.startswith(self.library_root + os.sep):
            relative = os.path.relpath(source, self.library_root)
        else:
            relative = os.path.basename(source)
        return os.path.join(self.category_dir(category), relative)

    def admit(self, entry: CacheEntry) -> bool:
        """Create or re-point the link for an entry.

        The new link is built next to the final path and renamed over it, so
        a concurrent reader sees either the old link or the new one.

        Returns:
            True if the filesystem was (or in dry-run would be) changed.

        Raises:
            FileExistsError: If a real file or directory occupies the link path.
            OSError: If the link cannot be created.
        """
        link = entry.cache_link
        if os.path.islink(link):
            if os.readlink(link) == entry.source_path:
                return False
        elif os.path.lexists(link):
            raise FileExistsError(f"Refusing to replace non-symlink at {link}")

        if self.dry_run:
            logging.info(f"[DRY RUN] Would link {link} -> {entry.source_path}")
            return True

        os.makedirs(os.path.dirname(link), exist_ok=True)
        tmp_link = os.path.join(os.path.dirname(link), f"{TMP_LINK_PREFIX}{os.getpid()}-{os.path.basename(link)}")
        if os.path.lexists(tmp_link):
            os.unlink(tmp_link)
        os.symlink(entry.source_path, tmp_link)
        try:
            os.replace(tmp_link, link)
        except OSError:
            os.unlink(tmp_link)
            raise
        logging.debug(f"Linked {link} -> {entry.source_path}")
        return True

    def evict(self, entry: CacheEntry) -> bool:
        """Remove an entry's link. Never touches the source file.

        Returns:
            True if a link was (or in dry-run would be) removed.
        """
        return self._remove_link(entry.cache_link, entry.category)

    def _remove_link(self, link: str, category: str) -> bool:
        if not os.path.islink(link):
            if os.path.lexists(link):
                logging.warning(f"Not removing non-symlink in cache: {link}")
            return False

        if self.dry_run:
            logging.info(f"[DRY RUN] Would remove link: {link}")
            return True

        try:
            os.unlink(link)
        except FileNotFoundError:
            return False
        logging.debug(f"Removed link: {link}")
        self._cleanup_empty_parent_folders(link, self.category_dir(category))
        return True

    def iter_links(self, category: Optional[str] = None) -> Iterator[Tuple[str, str]]:
        """Yield (category, link_path) for every symlink under the cache root."""
        if category:
            categories = [category]
        elif os.path.isdir(self.cache_dir):
            categories = sorted(
                name for name in os.listdir(self.cache_dir)
                if os.path.isdir(os.path.join(self.cache_dir, name))
                and not os.path.islink(os.path.join(self.cache_dir, name))
            )
        else:
            categories = []

        for name in categories:
            for dirpath, dirnames, filenames in os.walk(self.category_dir(name)):
                dirnames.sort()
                # Symlinks to directories show up in dirnames; os.walk won't follow them
                for item in sorted(filenames + [d for d in dirnames if os.path.islink(os.path.join(dirpath, d))]):
                    path = os.path.join(dirpath, item)
                    if item.startswith(TMP_LINK_PREFIX):
                        continue
                    if os.path.islink(path):
                        yield name, path

    @staticmethod
    def resolve(link: str) -> Optional[str]:
        """Target of a link if it resolves to an existing regular file, else None."""
        try:
            target = os.path.realpath(link)
        except OSError:
            return None
        return target if os.path.isfile(target) else None

    def sweep_broken(self, category: Optional[str] = None) -> List[str]:
        """Remove every symlink whose target does not resolve.

        Works from the filesystem alone, independent of entry bookkeeping.

        Returns:
            The removed (or in dry-run, removable) link paths.
        """
        removed = []
        for name, link in list(self.iter_links(category)):
            if self.resolve(link) is not None:
                continue
            try:
                if self._remove_link(link, name):
                    removed.append(link)
            except OSError as e:
                logging.error(f"Could not remove broken link {link}: {type(e).__name__}: {e}")
        if removed:
            logging.info(f"Removed {len(removed)} broken link(s)")
        return removed

    def purge_temp_links(self, category: str) -> int:
        """Remove links left under construction by an interrupted admit.

        Only safe while holding the lock of the job owning the category.

        Returns:
            Number of leftovers removed (or in dry-run, removable).
        """
        purged = 0
        for dirpath, _, filenames in os.walk(self.category_dir(category)):
            for name in filenames:
                path = os.path.join(dirpath, name)
                if not name.startswith(TMP_LINK_PREFIX) or not os.path.islink(path):
                    continue
                if self.dry_run:
                    logging.info(f"[DRY RUN] Would remove unfinished link: {path}")
                else:
                    os.unlink(path)
                    logging.debug(f"Removed unfinished link: {path}")
                purged += 1
        if purged:
            logging.info(f"Removed {purged} unfinished link(s) in category '{category}'")
        return purged

    def clear_category(self, category: str) -> int:
        """Remove every link in one category. Returns the number removed."""
        self.purge_temp_links(category)
        removed = 0
        for name, link in list(self.iter_links(category)):
            try:
                if self._remove_link(link, name):
                    removed += 1
            except OSError as e:
                logging.error(f"Could not remove link {link}: {type(e).__name__}: {e}")
        logging.info(f"Cleared {removed} link(s) from category '{category}'")
        return removed

    def clear_all(self) -> int:
        if not os.path.isdir(self.cache_dir):
            return 0
        return sum(
            self.clear_category(name) for name in sorted(os.listdir(self.cache_dir))
            if os.path.isdir(self.category_dir(name))
        )

    def _cleanup_empty_parent_folders(self, file_path: str, boundary: str) -> int:
        """Remove folders emptied by a link removal, up to (not including) boundary.

        Returns:
            Number of folders removed
        """
        folders_removed = 0
        current_dir = os.path.dirname(file_path)
        boundary = os.path.normpath(boundary)

        while current_dir:
            normalized_current = os.path.normpath(current_dir)
            if normalized_current == boundary or not normalized_current.startswith(boundary + os.sep):
                break

            try:
                if os.listdir(current_dir):
                    break
                os.rmdir(current_dir)
                logging.debug(f"Removed empty folder: {current_dir}")
                folders_removed += 1
                current_dir = os.path.dirname(current_dir)
            except OSError as e:
                logging.debug(f"Could not remove folder {current_dir}: {type(e).__name__}: {e}")
                break

        return folders_removed
