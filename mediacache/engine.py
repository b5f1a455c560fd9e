"""
Admission and eviction engine for media-cache.

Turns the current entry set of one category plus an ordered candidate list
into the resulting entry set, the links to create and remove, and an
ordered audit log of every decision. The engine itself never touches the
filesystem except through the probe callable it is given.

Policy, in order:
1. Evict entries whose target is gone or cannot be statted, and entries
   older (by admission time) than the retention window.
2. Evict oldest entries while the survivors exceed the byte budget or the
   entry limit.
3. Walk candidates most-preferred first. Known sources are refreshed;
   unknown ones are admitted only if they fit under the per-file cap and
   the remaining budget. A candidate that does not fit is skipped and the
   walk continues with smaller ones.
"""

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from mediacache.config import CategoryConfig

SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class Budget:
    """Per-category limits.

    Attributes:
        max_bytes: Hard ceiling on the aggregate size of the category's entries.
        retention_days: Maximum age of an entry, measured from admission.
        max_file_size: Files larger than this are never admitted (0 = no cap).
        max_entries: Maximum number of entries (0 = unlimited).
    """
    max_bytes: int
    retention_days: float
    max_file_size: int = 0
    max_entries: int = 0

    @classmethod
    def from_category(cls, category: CategoryConfig) -> 'Budget':
        return cls(
            max_bytes=category.budget_bytes,
            retention_days=category.retention_days,
            max_file_size=category.max_file_size_bytes,
            max_entries=category.max_entries,
        )


@dataclass
class CacheEntry:
    """One active symlink in the cache."""
    source_path: str
    cache_link: str
    category: str
    size_bytes: int
    added_at: datetime
    last_seen_at: datetime

    def age_days(self, now: datetime) -> float:
        return (now - self.added_at).total_seconds() / SECONDS_PER_DAY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_path": self.source_path,
            "cache_link": self.cache_link,
            "category": self.category,
            "size_bytes": self.size_bytes,
            "added_at": self.added_at.isoformat(),
            "last_seen_at": self.last_seen_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CacheEntry':
        added_at = datetime.fromisoformat(data["added_at"])
        return cls(
            source_path=data["source_path"],
            cache_link=data["cache_link"],
            category=data["category"],
            size_bytes=int(data["size_bytes"]),
            added_at=added_at,
            last_seen_at=datetime.fromisoformat(data.get("last_seen_at") or data["added_at"]),
        )


@dataclass(frozen=True)
class Candidate:
    """A file proposed for admission.

    size is None when the file could not be statted; such candidates are
    treated as absent for this cycle.
    """
    source_path: str
    size: Optional[int]
    mtime: float = 0.0
    rank: Optional[int] = None
    title: str = ""


class Action(str, Enum):
    ADMIT = "admit"
    EVICT = "evict"
    REFRESH = "refresh"
    REPOINT = "repoint"
    SKIP = "skip"


@dataclass(frozen=True)
class Decision:
    """One line of the audit log."""
    action: Action
    source_path: str
    cache_link: str
    reason: str
    size_bytes: int = 0

    def describe(self) -> str:
        return f"{self.action.value}: {self.cache_link} ({self.reason})"


@dataclass
class SweepPlan:
    """Result of planning one category.

    entries is the complete entry set after the plan is applied. admit holds
    entries whose links must be created (including re-pointed ones), evict
    holds entries whose links must be removed. expired lists the sources
    evicted for age in this plan.
    """
    category: str
    budget: Budget
    entries: List[CacheEntry] = field(default_factory=list)
    admit: List[CacheEntry] = field(default_factory=list)
    evict: List[CacheEntry] = field(default_factory=list)
    refreshed: List[CacheEntry] = field(default_factory=list)
    expired: List[str] = field(default_factory=list)
    audit: List[Decision] = field(default_factory=list)

    @property
    def total_bytes(self) -> int:
        return sum(e.size_bytes for e in self.entries)

    @property
    def has_mutations(self) -> bool:
        return bool(self.admit or self.evict)

    def count(self, action: Action) -> int:
        return sum(1 for d in self.audit if d.action == action)


def candidate_sort_key(candidate: Candidate) -> Tuple[float, float, float, str]:
    """Preference order for candidates, most preferred first.

    Popularity rank wins when present. Otherwise smaller files come first so
    a fixed byte budget holds as many titles as possible; equal sizes prefer
    the most recently modified file, then the path for a stable order.
    """
    rank = candidate.rank if candidate.rank is not None else math.inf
    size = candidate.size if candidate.size is not None else math.inf
    return (rank, size, -candidate.mtime, candidate.source_path)


def rank_candidates(candidates: Iterable[Candidate]) -> List[Candidate]:
    return sorted(candidates, key=candidate_sort_key)


def _evict_stale(entries: Iterable[CacheEntry], budget: Budget, now: datetime,
                 probe: Callable[[str], Optional[int]],
                 plan: SweepPlan) -> List[CacheEntry]:
    """Drop broken and expired entries; return the survivors oldest first."""
    kept: List[CacheEntry] = []
    seen_links = set()

    for entry in sorted(entries, key=lambda e: (e.added_at, e.cache_link)):
        if entry.cache_link in seen_links:
            # Two records for one link: the older one owns it
            plan.audit.append(Decision(Action.EVICT, entry.source_path, entry.cache_link,
                                       "duplicate link record", entry.size_bytes))
            continue
        seen_links.add(entry.cache_link)

        if probe(entry.source_path) is None:
            reason = "target missing or unreadable"
        elif entry.age_days(now) > budget.retention_days:
            reason = f"expired after {entry.age_days(now):.1f} days"
            plan.expired.append(entry.source_path)
        else:
            kept.append(entry)
            continue

        plan.evict.append(entry)
        plan.audit.append(Decision(Action.EVICT, entry.source_path, entry.cache_link,
                                   reason, entry.size_bytes))
    return kept


def _evict_over_budget(kept: List[CacheEntry], budget: Budget, plan: SweepPlan) -> List[CacheEntry]:
    """Evict oldest entries until the survivors fit the budget and entry limit."""
    total = sum(e.size_bytes for e in kept)
    while kept and (total > budget.max_bytes or
                    (budget.max_entries and len(kept) > budget.max_entries)):
        oldest = kept.pop(0)
        total -= oldest.size_bytes
        plan.evict.append(oldest)
        plan.audit.append(Decision(Action.EVICT, oldest.source_path, oldest.cache_link,
                                   "budget pressure", oldest.size_bytes))
    return kept


def plan_category(category: str, entries: Iterable[CacheEntry], candidates: Iterable[Candidate],
                  budget: Budget, link_for: Callable[[str], str],
                  probe: Callable[[str], Optional[int]],
                  now: Optional[datetime] = None,
                  expired: Iterable[str] = ()) -> SweepPlan:
    """Compute the admit/evict delta for one category.

    Args:
        category: Category name stamped on new entries.
        entries: Current entries of the category.
        candidates: Candidates in preference order (see rank_candidates).
        budget: The category's limits.
        link_for: Maps a source path to its cache link path.
        probe: Returns the size of a source file, or None if it is gone or unreadable.
        now: Reference time for retention and timestamps.
        expired: Sources evicted for age in an earlier sweep whose files have
            not changed since; they are not admitted again.

    Returns:
        The SweepPlan describing the resulting entry set.
    """
    now = now or datetime.now()
    plan = SweepPlan(category=category, budget=budget)

    kept = _evict_stale(entries, budget, now, probe, plan)
    kept = _evict_over_budget(kept, budget, plan)

    by_source: Dict[str, CacheEntry] = {e.source_path: e for e in kept}
    by_link: Dict[str, CacheEntry] = {e.cache_link: e for e in kept}
    total = sum(e.size_bytes for e in kept)
    seen_sources = set()
    excluded = set(expired) | set(plan.expired)

    for candidate in candidates:
        source = candidate.source_path
        if source in seen_sources:
            continue
        seen_sources.add(source)

        existing = by_source.get(source)
        if existing:
            refreshed = replace(existing, last_seen_at=now)
            by_source[source] = refreshed
            by_link[refreshed.cache_link] = refreshed
            plan.refreshed.append(refreshed)
            plan.audit.append(Decision(Action.REFRESH, source, existing.cache_link,
                                       "still a candidate", existing.size_bytes))
            continue

        link = link_for(source)
        size = candidate.size
        if source in excluded:
            plan.audit.append(Decision(Action.SKIP, source, link, "retention expired", size or 0))
            continue
        if size is None:
            plan.audit.append(Decision(Action.SKIP, source, link, "size unavailable"))
            continue
        if budget.max_file_size and size > budget.max_file_size:
            plan.audit.append(Decision(Action.SKIP, source, link, "exceeds per-file cap", size))
            continue

        displaced = by_link.get(link)
        freed = displaced.size_bytes if displaced else 0
        if budget.max_entries and not displaced and len(by_link) >= budget.max_entries:
            plan.audit.append(Decision(Action.SKIP, source, link, "entry limit reached", size))
            continue
        if total - freed + size > budget.max_bytes:
            plan.audit.append(Decision(Action.SKIP, source, link, "over budget", size))
            continue

        entry = CacheEntry(source_path=source, cache_link=link, category=category,
                           size_bytes=size, added_at=now, last_seen_at=now)
        if displaced:
            # Same link, new source: the link is re-pointed in place
            del by_source[displaced.source_path]
            plan.audit.append(Decision(Action.REPOINT, source, link,
                                       f"replaces {displaced.source_path}", size))
        else:
            plan.audit.append(Decision(Action.ADMIT, source, link, candidate.title or "candidate", size))

        total = total - freed + size
        by_source[source] = entry
        by_link[link] = entry
        plan.admit.append(entry)

    plan.entries = sorted(by_link.values(), key=lambda e: e.cache_link)
    logging.debug(
        f"Planned category '{category}': {len(plan.admit)} admit, {len(plan.evict)} evict, "
        f"{len(plan.refreshed)} refresh, {plan.total_bytes} / {budget.max_bytes} bytes"
    )
    return plan
