"""
Sweep jobs for media-cache.

A sweep owns a fixed set of categories. For each one it reconciles the entry
index with the links on disk, gathers candidates (popularity ranking or the
filesystem scanner), plans admissions and evictions, applies them link by
link and saves the index. A failure on one link is logged and counted; it
never undoes earlier links of the same run, and the next run repairs any
inconsistency left behind by an interrupted one.
"""

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from mediacache.cache_dir import CacheDirectory
from mediacache.config import RANKING_POPULARITY, CategoryConfig, ConfigManager
from mediacache.engine import Action, Budget, Candidate, CacheEntry, SweepPlan, plan_category, rank_candidates
from mediacache.entries import EntryIndex
from mediacache.exceptions import LockNotAcquired, PreconditionError, ProviderUnavailable
from mediacache.manifest import CacheStatus, Manifest, ManifestStore
from mediacache.monitor import Monitor
from mediacache.popularity import NullProvider, PopularItem, PopularityProvider, resolve_popular_candidates
from mediacache.scanner import collect_candidates
from mediacache.system_utils import (
    ConcurrencyGuard, check_path_exists, file_mtime, file_size, format_bytes, is_mountpoint
)


@dataclass
class CategoryOutcome:
    name: str
    source: str = "scanner"
    admitted: int = 0
    evicted: int = 0
    refreshed: int = 0
    skipped: int = 0
    broken_removed: int = 0
    errors: int = 0
    total_bytes: int = 0
    budget_bytes: int = 0


@dataclass
class SweepResult:
    job_name: str
    dry_run: bool = False
    lock_skipped: bool = False
    disabled: bool = False
    categories: Dict[str, CategoryOutcome] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def admitted(self) -> int:
        return sum(c.admitted for c in self.categories.values())

    @property
    def evicted(self) -> int:
        return sum(c.evicted + c.broken_removed for c in self.categories.values())

    @property
    def refreshed(self) -> int:
        return sum(c.refreshed for c in self.categories.values())

    @property
    def errors(self) -> int:
        return sum(c.errors for c in self.categories.values())

    @property
    def result(self) -> str:
        return "partial" if self.errors else "success"

    def summary_lines(self) -> List[str]:
        """Lines for the run summary; empty when the run did nothing."""
        if self.disabled or self.lock_skipped:
            return []
        prefix = "[DRY RUN] " if self.dry_run else ""
        lines = [f"{prefix}{self.job_name}: {self.admitted} admitted, {self.evicted} evicted, "
                 f"{self.refreshed} refreshed, {self.errors} errors in {self.duration_seconds:.1f}s"]
        for outcome in self.categories.values():
            lines.append(f"{outcome.name}: {format_bytes(outcome.total_bytes)} of "
                         f"{format_bytes(outcome.budget_bytes)} ({outcome.source})")
        return lines


class SweepJob:
    """One run of a sweep job over the categories it owns."""

    def __init__(self, config: ConfigManager, job_name: str, guard: ConcurrencyGuard,
                 provider: Optional[PopularityProvider] = None, dry_run: bool = False,
                 manual: bool = False, now: Optional[datetime] = None):
        self.config = config
        self.job_name = job_name
        self.guard = guard
        self.provider = provider or NullProvider()
        self.dry_run = dry_run or config.dry_run
        self.manual = manual
        self.now = now
        self.cache = CacheDirectory(config.paths.cache_dir, config.paths.library_root, dry_run=self.dry_run)
        self.store = ManifestStore(str(config.get_manifest_file()), guard)
        self.index = EntryIndex(str(config.get_entries_folder()), guard, self.cache)
        self._popular: Optional[List[PopularItem]] = None

    def run(self) -> SweepResult:
        """Run the sweep.

        Raises:
            LockNotAcquired: Another instance is running and this run is manual.
            PreconditionError: The library or cache root is unusable.
        """
        result = SweepResult(job_name=self.job_name, dry_run=self.dry_run)

        if not self.guard.acquire(self.job_name):
            if self.manual:
                raise LockNotAcquired(self.job_name)
            logging.info(f"{self.job_name} already running, skipping this run")
            result.lock_skipped = True
            return result

        try:
            manifest = self.store.read()
            if manifest.is_disabled:
                logging.info("Cache system is disabled, no changes made")
                result.disabled = True
                return result

            self.check_preconditions()
            start = time.time()
            categories = self.config.categories_for_job(self.job_name)
            self.cache.ensure_layout(c.name for c in categories)

            for category in categories:
                result.categories[category.name] = self.sweep_category(category)

            result.duration_seconds = time.time() - start
            if not self.dry_run:
                self._record(result)
                Monitor(self.config, self.store, self.cache).quick_stats()
            return result
        finally:
            self.guard.release(self.job_name)

    def check_preconditions(self) -> None:
        """Abort before any mutation if the library or cache root is unusable."""
        paths = self.config.paths
        check_path_exists(paths.library_root)
        if paths.require_mountpoint and not is_mountpoint(paths.library_root):
            raise PreconditionError(f"Library root {paths.library_root} is not mounted")

        if os.path.isdir(paths.cache_dir):
            check_path_exists(paths.cache_dir, writable=True)
        else:
            check_path_exists(os.path.dirname(os.path.abspath(paths.cache_dir)), writable=True)

    def _popular_items(self) -> List[PopularItem]:
        """Query the provider once per run; failures mean no ranking."""
        if self._popular is None:
            try:
                self._popular = self.provider.get_popular()
                logging.debug(f"Popularity provider '{self.provider.name}' returned {len(self._popular)} items")
            except ProviderUnavailable as e:
                logging.warning(f"Popularity data unavailable, falling back to scanner: {e}")
                self._popular = []
        return self._popular

    def gather_candidates(self, category: CategoryConfig) -> Tuple[List[Candidate], str]:
        """Candidates in preference order, and where they came from.

        Popularity ranking is used when it yields at least one file for the
        category; otherwise the scanner's output is used. The two are never
        mixed in one run.
        """
        if category.ranking == RANKING_POPULARITY:
            popular = resolve_popular_candidates(
                self._popular_items(), category.name, self.config.paths.library_root,
                category.source_folders, self.config.popularity.path_mappings,
                min_size=category.min_file_size_bytes,
            )
            if popular:
                return rank_candidates(popular), "popularity"

        scanned = collect_candidates(
            self.config.paths.library_root, category, self.config.extensions,
            exclude=[self.config.paths.cache_dir],
            now=self.now.timestamp() if self.now else None,
        )
        candidates = [Candidate(source_path=m.path, size=m.size, mtime=m.mtime) for m in scanned]
        return rank_candidates(candidates), "scanner"

    def sweep_category(self, category: CategoryConfig) -> CategoryOutcome:
        now = self.now or datetime.now()
        outcome = CategoryOutcome(name=category.name, budget_bytes=category.budget_bytes)
        self.cache.purge_temp_links(category.name)

        entries = self.index.reconcile(category.name, self.index.load(category.name), now=now)
        expired = self.index.load_expired(category.name)
        candidates, outcome.source = self.gather_candidates(category)
        plan = plan_category(
            category.name, entries, candidates, Budget.from_category(category),
            link_for=lambda source: self.cache.link_path_for(category.name, source),
            probe=file_size, now=now, expired=expired,
        )
        for source in plan.expired:
            mtime = file_mtime(source)
            if mtime is not None:
                expired[source] = mtime
        final_entries = self.apply(plan, outcome)
        outcome.broken_removed = len(self.cache.sweep_broken(category.name))

        outcome.refreshed = len(plan.refreshed)
        outcome.skipped = plan.count(Action.SKIP)
        outcome.total_bytes = sum(e.size_bytes for e in final_entries)
        if not self.dry_run:
            self.index.save(category.name, final_entries, expired=expired)

        logging.info(f"Category '{category.name}': +{outcome.admitted} -{outcome.evicted} "
                     f"({format_bytes(outcome.total_bytes)} / {format_bytes(category.budget_bytes)}, "
                     f"{outcome.source})")
        return outcome

    def apply(self, plan: SweepPlan, outcome: CategoryOutcome) -> List[CacheEntry]:
        """Apply a plan link by link; return the entries that actually exist afterwards."""
        for decision in plan.audit:
            logging.debug(f"  {decision.describe()}")

        failed_links = set()
        for entry in plan.evict:
            try:
                if self.cache.evict(entry):
                    outcome.evicted += 1
            except OSError as e:
                logging.error(f"Could not evict {entry.cache_link}: {type(e).__name__}: {e}")
                outcome.errors += 1

        for entry in plan.admit:
            try:
                if self.cache.admit(entry):
                    outcome.admitted += 1
                    logging.info(f"  Cached {os.path.basename(entry.source_path)} "
                                 f"({format_bytes(entry.size_bytes)})")
            except OSError as e:
                logging.error(f"Could not link {entry.cache_link}: {type(e).__name__}: {e}")
                outcome.errors += 1
                failed_links.add(entry.cache_link)

        # Entries whose links failed are re-adopted from disk if anything is there
        return [e for e in plan.entries if e.cache_link not in failed_links]

    def _record(self, result: SweepResult) -> None:
        def _apply(manifest: Manifest) -> None:
            record = manifest.job(self.job_name)
            record.last_run = datetime.now().isoformat(timespec='seconds')
            record.result = result.result
            record.admitted = result.admitted
            record.evicted = result.evicted
            record.refreshed = result.refreshed
            record.errors = result.errors
            record.duration_seconds = round(result.duration_seconds, 2)
            if manifest.status == CacheStatus.NOT_INITIALIZED:
                logging.info("First successful sweep, cache is now active")
                manifest.status = CacheStatus.ACTIVE

        self.store.update(_apply)
