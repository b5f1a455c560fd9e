"""
Operator commands for media-cache.

Each method performs one command and returns the plain text to print.
Commands that mutate the cache take the lock of the job that owns the
affected categories, and report a conflict instead of waiting for it.
"""

import logging
import os
from typing import Callable, List, Optional

from mediacache.cache_dir import CacheDirectory
from mediacache.config import CATEGORY_NAMES, SWEEP_JOBS, ConfigManager
from mediacache.consumer import ConsumerMount
from mediacache.entries import EntryIndex
from mediacache.exceptions import LockNotAcquired, PreconditionError
from mediacache.manifest import CacheStatus, ManifestStore
from mediacache.monitor import Monitor, MonitorReport, run_monitor
from mediacache.popularity import PopularityProvider, create_provider
from mediacache.rollback import RollbackController, RollbackResult
from mediacache.schedule import CronSchedule
from mediacache.sweep import SweepJob, SweepResult
from mediacache.system_utils import (
    ConcurrencyGuard, format_bytes, get_disk_usage, is_mountpoint, require_command
)

HEALTH_LIST_LIMIT = 10


def confirm_prompt(prompt: str) -> bool:
    """Ask a yes/no question on the terminal; anything but yes means no."""
    response = input(f"{prompt} (y/N): ")
    return response.strip().lower() in ("y", "yes")


class CacheControl:
    """Entry point for every operator command."""

    def __init__(self, config: ConfigManager, guard: ConcurrencyGuard, dry_run: bool = False,
                 confirm: Callable[[str], bool] = confirm_prompt):
        self.config = config
        self.guard = guard
        self.dry_run = dry_run or config.dry_run
        self.confirm = confirm
        self.cache = CacheDirectory(config.paths.cache_dir, config.paths.library_root, dry_run=self.dry_run)
        self.store = ManifestStore(str(config.get_manifest_file()), guard)
        self.index = EntryIndex(str(config.get_entries_folder()), guard, self.cache)
        self.consumer = ConsumerMount(config.consumer, config.paths.cache_dir)
        self.schedule = CronSchedule(config.schedule)

    def status(self) -> str:
        manifest = self.store.read()
        lines = ["=== Media Cache Status ===", f"Cache status: {manifest.status.value.upper()}", "", "Cache contents:"]

        total = 0
        for category in CATEGORY_NAMES:
            count = sum(1 for _ in self.cache.iter_links(category)) \
                if os.path.isdir(self.cache.category_dir(category)) else 0
            total += count
            lines.append(f"  {category:<10} {count} items")
        lines.append(f"  {'total':<10} {total} cached items")

        attached = self.consumer.is_attached()
        lines.append("")
        if attached:
            lines.append("Cache mount is active in the media server")
        elif attached is False:
            lines.append("Cache mount not active in the media server (run: activate-mount)")
        else:
            lines.append("Cache mount status unknown")

        try:
            scheduled = self.schedule.installed_jobs()
            lines.append(f"Scheduled jobs: {', '.join(sorted(scheduled)) or 'none'}")
        except PreconditionError as e:
            lines.append(f"Scheduled jobs: unknown ({e})")

        if manifest.jobs:
            lines.append("")
            lines.append("Last runs:")
            for name, record in sorted(manifest.jobs.items()):
                lines.append(f"  {name:<14} {record.last_run or 'never'}  {record.result}"
                             f"  +{record.admitted} -{record.evicted}")
        return "\n".join(lines)

    def enable(self) -> str:
        require_command("crontab")
        if self.dry_run:
            return "[DRY RUN] Would set status to active and install schedules"
        self.store.set_status(CacheStatus.ACTIVE)
        self.schedule.install()
        return "Cache system enabled; automatic caching scheduled"

    def disable(self) -> str:
        require_command("crontab")
        if self.dry_run:
            return "[DRY RUN] Would set status to disabled and remove schedules"
        self.store.set_status(CacheStatus.DISABLED)
        self.schedule.remove()
        return "Cache system disabled; existing cache preserved, automatic updates stopped"

    def sweep(self, job_name: str, provider: Optional[PopularityProvider] = None,
              manual: bool = True) -> SweepResult:
        if job_name not in SWEEP_JOBS:
            raise ValueError(f"Unknown job '{job_name}'. Choose from: {', '.join(SWEEP_JOBS)}")
        job = SweepJob(self.config, job_name, self.guard,
                       provider=provider or create_provider(self.config.popularity),
                       dry_run=self.dry_run, manual=manual)
        return job.run()

    def _jobs_owning(self, categories: List[str]) -> List[str]:
        return sorted({self.config.categories[c].job for c in categories})

    def clear(self, target: str) -> str:
        """Remove every link of one category, or of all categories."""
        categories = list(CATEGORY_NAMES) if target == "all" else [target]
        if target != "all" and target not in CATEGORY_NAMES:
            raise ValueError(f"Unknown category '{target}'. Choose from: all, {', '.join(CATEGORY_NAMES)}")

        held = []
        try:
            for job_name in self._jobs_owning(categories):
                if not self.guard.acquire(job_name):
                    raise LockNotAcquired(job_name)
                held.append(job_name)

            lines = []
            total = 0
            for category in categories:
                if not os.path.isdir(self.cache.category_dir(category)):
                    continue
                removed = self.cache.clear_category(category)
                if not self.dry_run:
                    self.index.save(category, [])
                total += removed
                lines.append(f"  Removed {removed} items from {category}/")
            lines.append(f"Cleared {total} cached items")
            return "\n".join(lines)
        finally:
            for job_name in held:
                self.guard.release(job_name)

    def clean(self) -> str:
        removed = self.cache.sweep_broken()
        prefix = "[DRY RUN] Would remove" if self.dry_run else "Removed"
        return f"{prefix} {len(removed)} broken symlinks"

    def space(self) -> str:
        lines = ["=== Cache Space Usage ==="]
        if os.path.isdir(self.cache.cache_dir):
            total, used, free = get_disk_usage(self.cache.cache_dir)
            lines.append(f"Cache filesystem: Total {format_bytes(total)}  Used {format_bytes(used)}  "
                         f"Available {format_bytes(free)}  Usage {used * 100 / total:.0f}%")

        stats = Monitor(self.config, self.store, self.cache).quick_stats(write=False)
        lines.append("")
        lines.append("Categories (effective size of linked files):")
        for name in CATEGORY_NAMES:
            category = stats.categories.get(name)
            size = category.size_bytes if category else 0
            lines.append(f"  {name:<10} {format_bytes(size):>12} of {format_bytes(self.config.categories[name].budget_bytes)}")
        lines.append(f"Effective cache size: {format_bytes(stats.total_size_bytes)}")
        return "\n".join(lines)

    def health(self) -> str:
        lines = ["=== Cache Health Check ==="]
        links = [link for _, link in self.cache.iter_links()]
        broken = [link for link in links if self.cache.resolve(link) is None]
        valid = len(links) - len(broken)

        if broken:
            lines.append(f"Found {len(broken)} broken symlinks")
            lines.extend(f"  Broken link: {link}" for link in broken[:HEALTH_LIST_LIMIT])
            if len(broken) > HEALTH_LIST_LIMIT:
                lines.append(f"  ... and {len(broken) - HEALTH_LIST_LIMIT} more")
        else:
            lines.append("No broken symlinks found")
        lines.append(f"Valid symlinks: {valid}")

        writable = os.path.isdir(self.cache.cache_dir) and os.access(self.cache.cache_dir, os.W_OK)
        lines.append(f"Cache directory writable: {'yes' if writable else 'NO'}")
        lines.append(f"Library mounted: {'yes' if is_mountpoint(self.config.paths.library_root) else 'NO'}")
        attached = self.consumer.is_attached()
        lines.append(f"Attached to media server: {({True: 'yes', False: 'NO', None: 'unknown'})[attached]}")

        if broken:
            lines.append("")
            lines.append("Run 'clean' to remove broken symlinks")
        return "\n".join(lines)

    def top(self, count: int = 10) -> str:
        sized = []
        for _, link in self.cache.iter_links():
            target = self.cache.resolve(link)
            if target:
                try:
                    sized.append((os.path.getsize(target), os.path.basename(link)))
                except OSError as e:
                    logging.debug(f"Could not stat {target}: {e}")
        sized.sort(key=lambda item: (-item[0], item[1]))

        lines = [f"=== Top {count} Cached Items (by size) ==="]
        lines.extend(f"  {name:<60} {format_bytes(size):>10}" for size, name in sized[:count])
        return "\n".join(lines)

    def monitor(self, quick: bool = False) -> Optional[MonitorReport]:
        monitor = Monitor(self.config, self.store, self.cache, consumer=None if quick else self.consumer)
        return run_monitor(monitor, self.guard, quick=quick)

    def activate_mount(self) -> str:
        if self.consumer.is_attached():
            return "Cache mount already active"
        return self.consumer.attach_instructions()

    def rollback(self, detach_mount: bool = False, assume_yes: bool = False) -> RollbackResult:
        if self.dry_run:
            raise PreconditionError("Rollback cannot run in dry-run mode")
        controller = RollbackController(self.store, self.guard, self.schedule, self.cache,
                                        self.index, self.consumer)
        confirm = (lambda prompt: True) if assume_yes else self.confirm
        return controller.run(detach_mount=detach_mount, confirm=confirm)
