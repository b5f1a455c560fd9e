"""Tests for the admission and eviction engine.

Tests mediacache/engine.py: candidate ordering, eviction phases,
budget walk, refresh and re-point handling.
"""

import random
from datetime import datetime, timedelta

from mediacache.config import CategoryConfig
from mediacache.engine import (
    Action, Budget, CacheEntry, Candidate, candidate_sort_key, plan_category, rank_candidates,
)

NOW = datetime(2025, 9, 3, 3, 0, 0)


def _link_for(source):
    return "/cache/tv/" + source.rsplit("/", 1)[1]


def _entry(name, size, added_days_ago=1, category="tv"):
    added = NOW - timedelta(days=added_days_ago)
    source = f"/nas/tv/{name}.mkv"
    return CacheEntry(source_path=source, cache_link=_link_for(source), category=category,
                      size_bytes=size, added_at=added, last_seen_at=added)


def _candidate(name, size, rank=None, mtime=0.0):
    return Candidate(source_path=f"/nas/tv/{name}.mkv", size=size, rank=rank, mtime=mtime)


def _probe_all(path):
    return 1


def _plan(entries, candidates, budget, probe=_probe_all):
    return plan_category("tv", entries, candidates, budget, link_for=_link_for, probe=probe, now=NOW)


def _names(entries):
    return sorted(e.source_path.rsplit("/", 1)[1][:-4] for e in entries)


# ============================================================================
# TestBudgetWalk
# ============================================================================

class TestBudgetWalk:
    """Tests for the candidate walk against the byte budget."""

    def test_scenario_skips_candidate_that_does_not_fit(self):
        """A:40 B:30 C:40 D:10 under 100 admits A, B and D for 80."""
        candidates = [_candidate("A", 40, 1), _candidate("B", 30, 2),
                      _candidate("C", 40, 3), _candidate("D", 10, 4)]
        plan = _plan([], candidates, Budget(max_bytes=100, retention_days=30))

        assert _names(plan.entries) == ["A", "B", "D"]
        assert plan.total_bytes == 80
        skipped = [d for d in plan.audit if d.action == Action.SKIP]
        assert len(skipped) == 1
        assert skipped[0].source_path.endswith("C.mkv")
        assert skipped[0].reason == "over budget"

    def test_budget_is_never_exceeded(self):
        """Aggregate size stays within the budget for arbitrary candidate lists."""
        for seed in range(25):
            rng = random.Random(seed)
            candidates = [_candidate(f"f{i}", rng.randint(1, 60)) for i in range(40)]
            existing = [_entry(f"e{i}", rng.randint(1, 60), added_days_ago=rng.randint(0, 20))
                        for i in range(rng.randint(0, 6))]
            budget = Budget(max_bytes=rng.randint(0, 200), retention_days=30)

            plan = _plan(existing, rank_candidates(candidates), budget)

            assert plan.total_bytes <= budget.max_bytes

    def test_per_file_cap_skips_large_candidate(self):
        """Files above the per-file cap are skipped even with headroom."""
        plan = _plan([], [_candidate("big", 50), _candidate("small", 5)],
                     Budget(max_bytes=1000, retention_days=30, max_file_size=20))

        assert _names(plan.entries) == ["small"]
        assert any(d.reason == "exceeds per-file cap" for d in plan.audit)

    def test_unstattable_candidate_is_skipped(self):
        """A candidate without a size is treated as absent."""
        plan = _plan([], [_candidate("gone", None), _candidate("ok", 5)],
                     Budget(max_bytes=100, retention_days=30))

        assert _names(plan.entries) == ["ok"]
        assert plan.audit[0].action == Action.SKIP
        assert plan.audit[0].reason == "size unavailable"

    def test_entry_limit(self):
        """No more than max_entries entries are admitted."""
        candidates = [_candidate(f"f{i}", 1) for i in range(5)]
        plan = _plan([], candidates, Budget(max_bytes=100, retention_days=30, max_entries=3))

        assert len(plan.entries) == 3
        assert plan.count(Action.SKIP) == 2

    def test_duplicate_candidates_admitted_once(self):
        """The same source listed twice produces one entry."""
        plan = _plan([], [_candidate("A", 10), _candidate("A", 10)],
                     Budget(max_bytes=100, retention_days=30))

        assert len(plan.entries) == 1
        assert len(plan.admit) == 1

    def test_zero_budget_admits_nothing(self):
        plan = _plan([], [_candidate("A", 1)], Budget(max_bytes=0, retention_days=30))
        assert plan.entries == []


# ============================================================================
# TestEviction
# ============================================================================

class TestEviction:
    """Tests for the eviction phases that run before admission."""

    def test_retention_expiry_with_headroom(self):
        """Entries older than the retention window go even with budget to spare."""
        old = _entry("old", 10, added_days_ago=31)
        fresh = _entry("fresh", 10, added_days_ago=5)

        plan = _plan([old, fresh], [], Budget(max_bytes=10_000, retention_days=30))

        assert _names(plan.evict) == ["old"]
        assert _names(plan.entries) == ["fresh"]
        assert plan.audit[0].reason.startswith("expired")

    def test_expired_source_not_readmitted(self):
        """A source evicted for age stays out even while it is still a candidate."""
        old = _entry("old", 10, added_days_ago=31)

        plan = _plan([old], [_candidate("old", 10)], Budget(max_bytes=10_000, retention_days=30))

        assert _names(plan.evict) == ["old"]
        assert plan.entries == []
        assert plan.admit == []
        assert plan.expired == [old.source_path]
        assert plan.audit[-1].action == Action.SKIP
        assert plan.audit[-1].reason == "retention expired"

    def test_earlier_expiry_skipped(self):
        """Sources excluded by an earlier sweep are skipped; others still fit."""
        excluded = _candidate("A", 10)

        plan = plan_category("tv", [], [excluded, _candidate("B", 10)],
                             Budget(max_bytes=100, retention_days=30),
                             link_for=_link_for, probe=lambda path: 10, now=NOW,
                             expired=[excluded.source_path])

        assert _names(plan.entries) == ["B"]
        assert plan.expired == []

    def test_missing_target_is_evicted(self):
        """Entries whose target cannot be statted are evicted."""
        gone = _entry("gone", 10)
        kept = _entry("kept", 10)

        def probe(path):
            return None if "gone" in path else 10

        plan = _plan([gone, kept], [], Budget(max_bytes=100, retention_days=30), probe=probe)

        assert _names(plan.evict) == ["gone"]
        assert plan.audit[0].reason == "target missing or unreadable"

    def test_budget_pressure_evicts_oldest_first(self):
        """When existing entries exceed a lowered budget, the oldest go first."""
        entries = [_entry("a", 40, added_days_ago=10), _entry("b", 40, added_days_ago=5),
                   _entry("c", 40, added_days_ago=1)]

        plan = _plan(entries, [], Budget(max_bytes=80, retention_days=30))

        assert _names(plan.evict) == ["a"]
        assert _names(plan.entries) == ["b", "c"]
        assert plan.total_bytes == 80

    def test_eviction_precedes_admission(self):
        """Space freed by an expired entry is available to new candidates."""
        old = _entry("old", 60, added_days_ago=40)

        plan = _plan([old], [_candidate("new", 60)], Budget(max_bytes=100, retention_days=30))

        assert [d.action for d in plan.audit] == [Action.EVICT, Action.ADMIT]
        assert _names(plan.entries) == ["new"]

    def test_duplicate_link_records_collapse(self):
        """Two records for one link keep only the older one."""
        first = _entry("x", 10, added_days_ago=3)
        second = CacheEntry(source_path="/nas/other/x.mkv", cache_link=first.cache_link, category="tv",
                            size_bytes=10, added_at=NOW - timedelta(days=1),
                            last_seen_at=NOW - timedelta(days=1))

        plan = _plan([second, first], [], Budget(max_bytes=100, retention_days=30))

        assert len(plan.entries) == 1
        assert plan.entries[0].source_path == first.source_path


# ============================================================================
# TestRefreshAndRepoint
# ============================================================================

class TestRefreshAndRepoint:
    """Tests for candidates that match existing entries."""

    def test_existing_source_is_refreshed_not_readmitted(self):
        entry = _entry("A", 40, added_days_ago=3)

        plan = _plan([entry], [_candidate("A", 40)], Budget(max_bytes=100, retention_days=30))

        assert plan.admit == []
        assert plan.evict == []
        assert plan.entries[0].last_seen_at == NOW
        assert plan.entries[0].added_at == entry.added_at
        assert not plan.has_mutations

    def test_same_link_new_source_is_repointed(self):
        """A different source mapping to an occupied link replaces it in place."""
        entry = _entry("A", 40)

        def link_for(source):
            return entry.cache_link

        plan = plan_category("tv", [entry], [Candidate("/nas/tv-new/A.mkv", 45)],
                             Budget(max_bytes=100, retention_days=30),
                             link_for=link_for, probe=_probe_all, now=NOW)

        assert plan.evict == []
        assert len(plan.entries) == 1
        assert plan.entries[0].source_path == "/nas/tv-new/A.mkv"
        assert plan.audit[-1].action == Action.REPOINT
        assert plan.total_bytes == 45

    def test_second_plan_is_identical(self):
        """Planning again over the result changes nothing."""
        candidates = rank_candidates([_candidate(n, s) for n, s in
                                      [("A", 40), ("B", 30), ("C", 40), ("D", 10)]])
        budget = Budget(max_bytes=100, retention_days=30)
        first = _plan([], candidates, budget)

        second = _plan(first.entries, candidates, budget)

        assert not second.has_mutations
        assert [e.cache_link for e in second.entries] == [e.cache_link for e in first.entries]


# ============================================================================
# TestCandidateOrder
# ============================================================================

class TestCandidateOrder:
    """Tests for candidate_sort_key() preference order."""

    def test_rank_wins_over_size(self):
        ranked = rank_candidates([_candidate("big", 90, rank=1), _candidate("small", 1, rank=2)])
        assert [c.source_path for c in ranked] == ["/nas/tv/big.mkv", "/nas/tv/small.mkv"]

    def test_smaller_first_without_rank(self):
        ranked = rank_candidates([_candidate("b", 30), _candidate("a", 10), _candidate("c", 20)])
        assert [c.size for c in ranked] == [10, 20, 30]

    def test_newer_first_on_equal_size(self):
        ranked = rank_candidates([_candidate("old", 10, mtime=100.0), _candidate("new", 10, mtime=200.0)])
        assert ranked[0].source_path.endswith("new.mkv")

    def test_path_breaks_remaining_ties(self):
        assert candidate_sort_key(_candidate("a", 10)) < candidate_sort_key(_candidate("b", 10))

    def test_ranked_before_unranked(self):
        ranked = rank_candidates([_candidate("unranked", 1), _candidate("ranked", 50, rank=7)])
        assert ranked[0].source_path.endswith("ranked.mkv")


# ============================================================================
# TestCacheEntry
# ============================================================================

class TestCacheEntry:

    def test_dict_round_trip(self):
        entry = _entry("A", 40)
        assert CacheEntry.from_dict(entry.to_dict()) == entry

    def test_missing_last_seen_defaults_to_added(self):
        data = _entry("A", 40).to_dict()
        del data["last_seen_at"]
        entry = CacheEntry.from_dict(data)
        assert entry.last_seen_at == entry.added_at

    def test_budget_from_category(self):
        category = CategoryConfig(name="tv", budget_bytes=100, retention_days=30,
                                  max_file_size_bytes=10, max_entries=5)
        assert Budget.from_category(category) == Budget(100, 30, 10, 5)
