"""
Rollback controller for media-cache.

Unwinds all cache state in a fixed order:
stopping-schedule -> clearing-entries -> detaching-mount (optional) -> removed.
Every step is idempotent, so a rollback interrupted halfway can simply be
run again. Source files on the library are never touched.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Tuple

from mediacache.cache_dir import CacheDirectory
from mediacache.config import CATEGORY_NAMES, SWEEP_JOBS
from mediacache.consumer import ConsumerMount
from mediacache.entries import EntryIndex
from mediacache.exceptions import LockNotAcquired
from mediacache.manifest import CacheStatus, Manifest, ManifestStore
from mediacache.schedule import CronSchedule
from mediacache.system_utils import ConcurrencyGuard, require_command


class RollbackStep(str, Enum):
    STOPPING_SCHEDULE = "stopping-schedule"
    CLEARING_ENTRIES = "clearing-entries"
    DETACHING_MOUNT = "detaching-mount"
    REMOVED = "removed"


@dataclass
class RollbackResult:
    steps: List[Tuple[RollbackStep, str]] = field(default_factory=list)
    schedules_removed: int = 0
    links_removed: int = 0
    mount_detached: Optional[bool] = None

    def record(self, step: RollbackStep, outcome: str) -> None:
        logging.info(f"[{step.value}] {outcome}")
        self.steps.append((step, outcome))

    @property
    def completed(self) -> bool:
        return bool(self.steps) and self.steps[-1][0] == RollbackStep.REMOVED


class RollbackController:
    """Runs the rollback steps in order."""

    def __init__(self, store: ManifestStore, guard: ConcurrencyGuard, schedule: CronSchedule,
                 cache: CacheDirectory, index: EntryIndex, consumer: ConsumerMount):
        self.store = store
        self.guard = guard
        self.schedule = schedule
        self.cache = cache
        self.index = index
        self.consumer = consumer

    def run(self, detach_mount: bool = False,
            confirm: Optional[Callable[[str], bool]] = None) -> RollbackResult:
        """Roll the cache back.

        Args:
            detach_mount: Also detach the cache mount from the media server.
            confirm: Asked before detaching; without it the detach is skipped.

        Raises:
            PreconditionError: crontab is not available.
            LockNotAcquired: A sweep is currently running.
        """
        require_command("crontab")
        held = []
        try:
            # Sweeps must not be re-adding links while they are cleared
            for job_name in SWEEP_JOBS:
                if not self.guard.acquire(job_name):
                    raise LockNotAcquired(job_name)
                held.append(job_name)

            result = RollbackResult()
            self.store.set_status(CacheStatus.DISABLED)

            result.schedules_removed = self.schedule.remove()
            result.record(RollbackStep.STOPPING_SCHEDULE, f"removed {result.schedules_removed} crontab line(s)")

            result.links_removed = self.cache.clear_all()
            for category in CATEGORY_NAMES:
                index_file = self.index.path(category)
                if index_file.exists():
                    os.remove(index_file)
            result.record(RollbackStep.CLEARING_ENTRIES, f"removed {result.links_removed} link(s)")

            if detach_mount:
                result.mount_detached = self.consumer.detach(confirm or (lambda prompt: False))
                outcome = "detached" if result.mount_detached else "left in place"
                result.record(RollbackStep.DETACHING_MOUNT, f"mount {outcome}")

            self.store.update(self._mark_removed)
            result.record(RollbackStep.REMOVED, "cache state removed; library untouched")
            return result
        finally:
            for job_name in held:
                self.guard.release(job_name)

    @staticmethod
    def _mark_removed(manifest: Manifest) -> None:
        record = manifest.job("rollback")
        record.last_run = datetime.now().isoformat(timespec='seconds')
        record.result = "success"
        manifest.stats.valid_links = 0
        manifest.stats.broken_links = 0
        manifest.stats.total_size_bytes = 0
        manifest.stats.categories = {}
