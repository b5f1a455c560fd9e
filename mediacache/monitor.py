"""
Monitor for media-cache.

Computes point-in-time statistics from the links under the cache root (the
filesystem is ground truth) and records them in the manifest. The quick mode
only counts and sizes links and is cheap enough to run every few minutes;
the full report adds per-category breakdowns, recent access and
recommendations.
"""

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from mediacache.cache_dir import CacheDirectory
from mediacache.config import JOB_MONITOR, ConfigManager
from mediacache.consumer import ConsumerMount
from mediacache.exceptions import LockNotAcquired
from mediacache.manifest import CategoryStats, Manifest, ManifestStats, ManifestStore
from mediacache.system_utils import ConcurrencyGuard, format_bytes, get_disk_usage

RECENT_ACCESS_TOP = 5
NEAR_BUDGET_RATIO = 0.9


@dataclass
class LinkInfo:
    category: str
    link: str
    target: Optional[str]
    size: int = 0
    atime: float = 0.0


@dataclass
class MonitorReport:
    stats: ManifestStats
    budgets: Dict[str, int] = field(default_factory=dict)
    recent_access: List[Tuple[str, float]] = field(default_factory=list)
    recent_access_count: int = 0
    attached: Optional[bool] = None
    disk_usage: Optional[Tuple[int, int, int]] = None
    recommendations: List[str] = field(default_factory=list)

    def render(self) -> str:
        lines = [
            "=== Media Cache Report ===",
            f"Generated: {self.stats.checked_at}",
            f"Valid links: {self.stats.valid_links}",
            f"Broken links: {self.stats.broken_links}",
            f"Effective size: {format_bytes(self.stats.total_size_bytes)}",
        ]
        if self.disk_usage:
            total, used, free = self.disk_usage
            lines.append(f"Cache filesystem: {format_bytes(used)} used, {format_bytes(free)} free "
                         f"of {format_bytes(total)}")

        lines.append("")
        lines.append("Categories:")
        for name, stats in sorted(self.stats.categories.items()):
            budget = self.budgets.get(name, 0)
            usage = f" ({stats.size_bytes * 100 / budget:.0f}% of {format_bytes(budget)})" if budget else ""
            lines.append(f"  {name}: {stats.entries} links, {format_bytes(stats.size_bytes)}{usage}"
                         + (f", {stats.broken} broken" if stats.broken else ""))

        lines.append("")
        lines.append(f"Accessed recently: {self.recent_access_count}")
        for link, atime in self.recent_access:
            lines.append(f"  {datetime.fromtimestamp(atime).strftime('%Y-%m-%d %H:%M')}  {os.path.basename(link)}")

        attached = {True: "yes", False: "no", None: "unknown"}[self.attached]
        lines.append(f"Attached to media server: {attached}")

        if self.recommendations:
            lines.append("")
            lines.append("Recommendations:")
            lines.extend(f"  - {r}" for r in self.recommendations)
        return "\n".join(lines)


class Monitor:
    """Collects cache statistics and writes them to the manifest."""

    def __init__(self, config: ConfigManager, store: ManifestStore, cache: CacheDirectory,
                 consumer: Optional[ConsumerMount] = None):
        self.config = config
        self.store = store
        self.cache = cache
        self.consumer = consumer

    def scan_links(self, with_atime: bool = False) -> List[LinkInfo]:
        """One pass over the cache root; cost grows with link count, not library size."""
        infos = []
        for category, link in self.cache.iter_links():
            target = self.cache.resolve(link)
            info = LinkInfo(category=category, link=link, target=target)
            if target:
                try:
                    st = os.stat(target)
                    info.size = st.st_size
                    info.atime = st.st_atime if with_atime else 0.0
                except OSError:
                    info.target = None
            infos.append(info)
        return infos

    @staticmethod
    def _aggregate(infos: List[LinkInfo]) -> ManifestStats:
        stats = ManifestStats(checked_at=datetime.now().isoformat(timespec='seconds'))
        for info in infos:
            category = stats.categories.setdefault(info.category, CategoryStats())
            if info.target:
                stats.valid_links += 1
                stats.total_size_bytes += info.size
                category.entries += 1
                category.size_bytes += info.size
            else:
                stats.broken_links += 1
                category.broken += 1
        return stats

    def _write(self, stats: ManifestStats, report: bool = False) -> None:
        def _apply(manifest: Manifest) -> None:
            manifest.stats = stats
            manifest.monitoring["last_check"] = stats.checked_at
            if report:
                manifest.monitoring["last_report"] = stats.checked_at

        self.store.update(_apply)

    def quick_stats(self, write: bool = True) -> ManifestStats:
        stats = self._aggregate(self.scan_links())
        if write:
            self._write(stats)
        logging.info(f"Cache stats: {stats.valid_links} valid, {stats.broken_links} broken, "
                     f"{format_bytes(stats.total_size_bytes)}")
        return stats

    def full_report(self, write: bool = True) -> MonitorReport:
        infos = self.scan_links(with_atime=True)
        stats = self._aggregate(infos)
        report = MonitorReport(
            stats=stats,
            budgets={name: c.budget_bytes for name, c in self.config.categories.items()},
        )

        cutoff = time.time() - self.config.monitor.recent_access_hours * 3600
        accessed = sorted(((i.link, i.atime) for i in infos if i.target and i.atime >= cutoff),
                          key=lambda item: item[1], reverse=True)
        report.recent_access_count = len(accessed)
        report.recent_access = accessed[:RECENT_ACCESS_TOP]

        if self.consumer:
            report.attached = self.consumer.is_attached()
        if os.path.isdir(self.cache.cache_dir):
            report.disk_usage = get_disk_usage(self.cache.cache_dir)

        report.recommendations = self.recommend(report)
        if write:
            self._write(stats, report=True)
        return report

    def recommend(self, report: MonitorReport) -> List[str]:
        thresholds = self.config.monitor
        stats = report.stats
        recommendations = []
        if stats.valid_links < thresholds.underutilized_links:
            recommendations.append(
                f"Cache underutilized ({stats.valid_links} links); run a popular-sweep or raise budgets"
            )
        if stats.broken_links > thresholds.broken_links_warning:
            recommendations.append(f"Many broken links ({stats.broken_links}); run 'clean'")
        if report.attached is False:
            recommendations.append("Cache not attached to the media server; run 'activate-mount'")
        for name, category in sorted(stats.categories.items()):
            budget = report.budgets.get(name, 0)
            if budget and category.size_bytes >= budget * NEAR_BUDGET_RATIO:
                recommendations.append(f"Category '{name}' is at {category.size_bytes * 100 / budget:.0f}% "
                                       f"of its budget")
        return recommendations


def run_monitor(monitor: Monitor, guard: ConcurrencyGuard, quick: bool = False) -> Optional[MonitorReport]:
    """Run the monitor job under its lock.

    A quick run that finds another monitor already running returns silently;
    a full run raises LockNotAcquired. Nothing is written while the cache is
    disabled; a full run still returns its report.

    Returns:
        The full report, or None for quick runs and skipped runs.
    """
    if not guard.acquire(JOB_MONITOR):
        if quick:
            logging.debug("Monitor already running, skipping quick stats")
            return None
        raise LockNotAcquired(JOB_MONITOR)

    try:
        if monitor.store.read().is_disabled:
            logging.info("Cache is disabled, monitor not recording stats")
            return None if quick else monitor.full_report(write=False)
        if quick:
            monitor.quick_stats()
            return None
        return monitor.full_report()
    finally:
        guard.release(JOB_MONITOR)
