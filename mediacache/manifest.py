"""
Manifest store for media-cache.

The manifest is a single JSON document holding the cache status, the last
statistics the monitor computed and per-job run records. It is advisory for
statistics (the filesystem is ground truth) but authoritative for status:
jobs must not mutate the cache while it reads "disabled".

Storage format (schema version 2):
{
    "version": 2,
    "status": "active",
    "created": "2025-09-03T03:00:00",
    "last_update": "2025-09-03T03:05:12",
    "stats": {"valid_links": 120, "broken_links": 0, "total_size_bytes": ..., "categories": {...}},
    "jobs": {"popular-sweep": {"last_run": "...", "result": "success", "admitted": 3, ...}},
    "monitoring": {"last_check": "...", "last_report": "..."}
}
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from mediacache.system_utils import ConcurrencyGuard, atomic_write_json

MANIFEST_VERSION = 2


class CacheStatus(str, Enum):
    NOT_INITIALIZED = "not_initialized"
    ACTIVE = "active"
    INACTIVE = "inactive"
    DISABLED = "disabled"

    @classmethod
    def parse(cls, value: Any) -> 'CacheStatus':
        try:
            return cls(value)
        except ValueError:
            logging.warning(f"Unknown manifest status '{value}', treating as {cls.NOT_INITIALIZED.value}")
            return cls.NOT_INITIALIZED


@dataclass
class CategoryStats:
    entries: int = 0
    broken: int = 0
    size_bytes: int = 0


@dataclass
class ManifestStats:
    """Last statistics written by the monitor."""
    valid_links: int = 0
    broken_links: int = 0
    total_size_bytes: int = 0
    checked_at: Optional[str] = None
    categories: Dict[str, CategoryStats] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ManifestStats':
        categories = {
            name: CategoryStats(**{k: v for k, v in values.items() if k in CategoryStats.__dataclass_fields__})
            for name, values in data.get("categories", {}).items()
            if isinstance(values, dict)
        }
        return cls(
            valid_links=int(data.get("valid_links", 0)),
            broken_links=int(data.get("broken_links", 0)),
            total_size_bytes=int(data.get("total_size_bytes", 0)),
            checked_at=data.get("checked_at"),
            categories=categories,
        )


@dataclass
class JobRecord:
    """Outcome of the last run of one job."""
    last_run: Optional[str] = None
    result: str = ""
    admitted: int = 0
    evicted: int = 0
    refreshed: int = 0
    errors: int = 0
    duration_seconds: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JobRecord':
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class Manifest:
    version: int = MANIFEST_VERSION
    status: CacheStatus = CacheStatus.NOT_INITIALIZED
    created: Optional[str] = None
    last_update: Optional[str] = None
    stats: ManifestStats = field(default_factory=ManifestStats)
    jobs: Dict[str, JobRecord] = field(default_factory=dict)
    monitoring: Dict[str, Optional[str]] = field(default_factory=dict)

    @property
    def is_disabled(self) -> bool:
        return self.status == CacheStatus.DISABLED

    def job(self, name: str) -> JobRecord:
        """Get (creating if needed) the run record for a job."""
        return self.jobs.setdefault(name, JobRecord())

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Manifest':
        data = migrate_manifest(data)
        return cls(
            version=MANIFEST_VERSION,
            status=CacheStatus.parse(data.get("status", CacheStatus.NOT_INITIALIZED.value)),
            created=data.get("created"),
            last_update=data.get("last_update"),
            stats=ManifestStats.from_dict(data.get("stats", {})),
            jobs={
                name: JobRecord.from_dict(record)
                for name, record in data.get("jobs", {}).items()
                if isinstance(record, dict)
            },
            monitoring=dict(data.get("monitoring", {})),
        )


def migrate_manifest(data: Dict[str, Any]) -> Dict[str, Any]:
    """Bring an older or hand-edited manifest document up to the current schema.

    Version 1 documents were free-form: link counts lived under
    stats.total_symlinks / stats.cache_size_bytes and job timestamps were
    scattered across top-level keys.
    """
    if data.get("version") == MANIFEST_VERSION:
        return data

    migrated = dict(data)
    stats = dict(migrated.get("stats") or {})
    if "total_symlinks" in stats:
        stats.setdefault("valid_links", stats.pop("total_symlinks"))
    if "cache_size_bytes" in stats:
        stats.setdefault("total_size_bytes", stats.pop("cache_size_bytes"))
    migrated["stats"] = stats

    jobs = dict(migrated.get("jobs") or {})
    if "last_recent_update" in migrated:
        jobs.setdefault("recent-sweep", {"last_run": migrated.pop("last_recent_update"), "result": "success"})
    sync = migrated.pop("overseerr_sync", None)
    if isinstance(sync, dict) and sync.get("last_run"):
        jobs.setdefault("download-sync", {"last_run": sync["last_run"], "result": "success"})
    migrated["jobs"] = jobs

    migrated["version"] = MANIFEST_VERSION
    logging.debug(f"Migrated manifest document to schema version {MANIFEST_VERSION}")
    return migrated


class ManifestStore:
    """Reads and atomically replaces the manifest document.

    Nothing is cached between calls: every read goes to disk, and every
    update re-reads under the manifest lock before writing.
    """

    LOCK_NAME = "manifest"

    def __init__(self, manifest_file: str, guard: ConcurrencyGuard):
        self.manifest_file = manifest_file
        self.guard = guard

    def read(self) -> Manifest:
        """Return the current manifest, or a not_initialized default if none exists."""
        if not os.path.exists(self.manifest_file):
            return Manifest()

        try:
            with open(self.manifest_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logging.warning(f"Could not parse manifest {self.manifest_file}: {type(e).__name__}: {e}")
            return Manifest()

        if not isinstance(data, dict):
            logging.warning(f"Manifest {self.manifest_file} is not a JSON object, ignoring it")
            return Manifest()
        return Manifest.from_dict(data)

    def update(self, mutator: Callable[[Manifest], None]) -> Manifest:
        """Read-modify-write the manifest under the cross-process manifest lock.

        Args:
            mutator: Called with the freshly read manifest; mutates it in place.

        Returns:
            The manifest as written.
        """
        with self.guard.hold(self.LOCK_NAME):
            manifest = self.read()
            mutator(manifest)
            now = datetime.now().isoformat(timespec='seconds')
            if not manifest.created:
                manifest.created = now
            manifest.last_update = now
            atomic_write_json(self.manifest_file, manifest.to_dict())
            return manifest

    def set_status(self, status: CacheStatus) -> Manifest:
        def _apply(manifest: Manifest) -> None:
            if manifest.status != status:
                logging.info(f"Status changed: {manifest.status.value} -> {status.value}")
            manifest.status = status

        return self.update(_apply)
