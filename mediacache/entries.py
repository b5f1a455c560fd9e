"""
Per-category entry index for media-cache.

Each category keeps its CacheEntry records in data/entries/<category>.json.
The index remembers admission times and sizes between runs; the symlinks
under the cache root remain the ground truth, and reconcile() brings the two
back in line at the start of every sweep.
"""

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from mediacache.cache_dir import CacheDirectory
from mediacache.engine import CacheEntry
from mediacache.system_utils import ConcurrencyGuard, atomic_write_json, file_mtime, file_size

INDEX_VERSION = 1


class EntryIndex:
    """Loads, reconciles and saves the entry records of each category."""

    def __init__(self, entries_folder: str, guard: ConcurrencyGuard, cache: CacheDirectory):
        self.entries_folder = Path(entries_folder)
        self.guard = guard
        self.cache = cache

    def path(self, category: str) -> Path:
        return self.entries_folder / f"{category}.json"

    def _read(self, category: str) -> Dict[str, Any]:
        index_file = self.path(category)
        if not index_file.exists():
            return {}

        try:
            with open(index_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, ValueError) as e:
            # Links on disk get re-adopted by reconcile()
            logging.warning(f"Ignoring unreadable entry index {index_file}: {type(e).__name__}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def load(self, category: str) -> List[CacheEntry]:
        records = self._read(category).get("entries", [])
        try:
            return [CacheEntry.from_dict(record) for record in records]
        except (KeyError, TypeError, ValueError) as e:
            logging.warning(f"Ignoring malformed entries for category '{category}': {type(e).__name__}: {e}")
            return []

    def load_expired(self, category: str) -> Dict[str, float]:
        """Sources evicted for age that must not be admitted again.

        An exclusion lapses once its source is gone or its mtime differs from
        the one recorded at eviction, i.e. the file was replaced or rewritten.
        """
        recorded = self._read(category).get("expired", {})
        if not isinstance(recorded, dict):
            return {}

        expired = {}
        for source, mtime in recorded.items():
            current = file_mtime(source)
            if current is None or not isinstance(mtime, (int, float)) or current != mtime:
                logging.debug(f"Retention exclusion lapsed: {source}")
                continue
            expired[source] = current
        return expired

    def save(self, category: str, entries: List[CacheEntry],
             expired: Optional[Dict[str, float]] = None) -> None:
        document = {
            "version": INDEX_VERSION,
            "category": category,
            "entries": [entry.to_dict() for entry in sorted(entries, key=lambda e: e.cache_link)],
            "expired": dict(sorted((expired or {}).items())),
        }
        with self.guard.hold(f"entries-{category}"):
            atomic_write_json(str(self.path(category)), document)
        logging.debug(f"Saved {len(entries)} entries for category '{category}'")

    def reconcile(self, category: str, entries: List[CacheEntry],
                  now: Optional[datetime] = None) -> List[CacheEntry]:
        """Merge recorded entries with the links actually present on disk.

        Records whose link is gone or points somewhere else are forgotten.
        Links with no record are adopted, dated by the link's own mtime, so
        retention still applies to them. Broken links are adopted too; the
        engine evicts them.
        """
        now = now or datetime.now()
        on_disk: Dict[str, str] = {}
        for _, link in self.cache.iter_links(category):
            try:
                on_disk[link] = os.path.normpath(os.path.join(os.path.dirname(link), os.readlink(link)))
            except OSError as e:
                logging.debug(f"Could not read link {link}: {e}")

        reconciled: Dict[str, CacheEntry] = {}
        for entry in entries:
            target = on_disk.get(entry.cache_link)
            if target is None or target != os.path.normpath(entry.source_path):
                logging.debug(f"Forgetting entry with missing or re-pointed link: {entry.cache_link}")
                continue
            reconciled.setdefault(entry.cache_link, entry)

        adopted = 0
        for link, target in on_disk.items():
            if link in reconciled:
                continue
            try:
                added_at = datetime.fromtimestamp(os.lstat(link).st_mtime)
            except OSError:
                added_at = now
            reconciled[link] = CacheEntry(
                source_path=target,
                cache_link=link,
                category=category,
                size_bytes=file_size(target) or 0,
                added_at=added_at,
                last_seen_at=now,
            )
            adopted += 1

        if adopted:
            logging.info(f"Adopted {adopted} untracked link(s) in category '{category}'")
        return sorted(reconciled.values(), key=lambda e: e.cache_link)
