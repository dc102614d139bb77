"""
Tests for the load-balancing allocator and the assignment ledger.
"""
import random
import threading
from collections import Counter

import pytest

from validation_db import Allocator, AssignmentLedger, DuplicateAssignmentError, DuplicateKeyError, SliceStore
from validation_db.allocator import rank_slices, select_batch


class StaleReadLedger(AssignmentLedger):
    """Ledger whose pre-check never sees existing rows, as in a lost race."""

    def assignments_for_participant(self, participant_id):
        return []


class TestRanking:
    """Tests for rank_slices / select_batch."""

    def test_least_assigned_first(self):
        counts = {"a": 3, "b": 0, "c": 1}
        ranked = rank_slices(["a", "b", "c", "d"], counts, random.Random(1))
        # d is unassigned (implicit 0) and ties with b
        assert set(ranked[:2]) == {"b", "d"}
        assert ranked[2:] == ["c", "a"]

    def test_ties_are_shuffled(self):
        ids = [f"s{i:02d}" for i in range(30)]
        first = rank_slices(ids, {}, random.Random(1))
        second = rank_slices(ids, {}, random.Random(2))
        assert sorted(first) == ids
        assert first != second

    def test_batch_truncates_to_size(self):
        ids = [f"s{i}" for i in range(20)]
        assert len(select_batch(ids, {}, 15)) == 15
        assert sorted(select_batch(ids[:4], {}, 15)) == sorted(ids[:4])

    def test_batch_size_must_be_positive(self, slice_store, ledger):
        with pytest.raises(ValueError):
            Allocator(slice_store, ledger, batch_size=0)


class TestAllocator:
    """Tests for Allocator.get_assignment_for_participant."""

    def test_idempotent(self, seed_slices, slice_store, ledger):
        seed_slices(40)
        allocator = Allocator(slice_store, ledger, batch_size=15)
        first = allocator.get_assignment_for_participant("p1")
        second = allocator.get_assignment_for_participant("p1")
        assert [s["id"] for s in first["slices"]] == [s["id"] for s in second["slices"]]
        assert ledger.total() == 15

    def test_fairness_bound(self, seed_slices, slice_store, ledger):
        """Per-slice counts never drift more than one apart."""
        ids = seed_slices(40)
        allocator = Allocator(slice_store, ledger, batch_size=15)
        for n in range(1, 21):
            allocator.get_assignment_for_participant(f"p{n}")
            counts = ledger.counts_by_slice()
            values = [counts.get(slice_id, 0) for slice_id in ids]
            assert max(values) - min(values) <= 1
        assert sum(ledger.counts_by_slice().values()) == 20 * 15

    def test_empty_participant_rejected(self, slice_store, ledger):
        with pytest.raises(ValueError):
            Allocator(slice_store, ledger).get_assignment_for_participant("")

    def test_lost_race_adopts_committed_batch(self, seed_slices, slice_store, db):
        """A request that missed the existing batch on its pre-check still returns it."""
        seed_slices(40)
        winner = Allocator(slice_store, AssignmentLedger(db), batch_size=15)
        loser = Allocator(slice_store, StaleReadLedger(db), batch_size=15, rng=random.Random(7))

        committed = winner.get_assignment_for_participant("p1")
        late = loser.get_assignment_for_participant("p1")

        assert [s["id"] for s in late["slices"]] == [s["id"] for s in committed["slices"]]
        assert AssignmentLedger(db).total() == 15

    def test_concurrent_first_requests_commit_one_batch(self, seed_slices, db):
        """Two simultaneous first requests for one participant yield a single batch."""
        seed_slices(40)
        barrier = threading.Barrier(2)
        results = {}
        errors = []

        def request(name):
            allocator = Allocator(SliceStore(db), StaleReadLedger(db), batch_size=15)
            barrier.wait()
            try:
                results[name] = [s["id"] for s in allocator.get_assignment_for_participant("p1")["slices"]]
            except Exception as e:  # surfaced below
                errors.append(e)

        threads = [threading.Thread(target=request, args=(name,)) for name in ("a", "b")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert not errors
        assert sorted(results["a"]) == sorted(results["b"])
        ledger = AssignmentLedger(db)
        assert ledger.total() == 15
        assert sorted(ledger.assignments_for_participant("p1")) == sorted(results["a"])

    def test_missing_catalog_rows_are_skipped(self, seed_slices, slice_store, ledger, db):
        seed_slices(3)
        allocator = Allocator(slice_store, ledger, batch_size=15)
        allocator.get_assignment_for_participant("p1")
        with db.connection() as conn:
            conn.execute("DELETE FROM slices WHERE id = ?", ("slice_000",))
        result = allocator.get_assignment_for_participant("p1")
        assert result["total"] == 2
        assert "slice_000" not in [s["id"] for s in result["slices"]]


class TestLedger:
    """Tests for AssignmentLedger."""

    def test_counts_only_include_assigned(self, seed_slices, ledger):
        seed_slices(3)
        ledger.insert("p1", "slice_000")
        ledger.insert("p2", "slice_000")
        ledger.insert("p2", "slice_001")
        assert ledger.counts_by_slice() == {"slice_000": 2, "slice_001": 1}

    def test_duplicate_insert_rejected(self, ledger):
        ledger.insert("p1", "s1")
        with pytest.raises(DuplicateAssignmentError):
            ledger.insert("p1", "s1")

    def test_batch_insert_is_all_or_nothing(self, ledger):
        """A batch that violates uniqueness part-way leaves no rows behind and is an error."""
        with pytest.raises(DuplicateKeyError):
            ledger.insert_batch("p1", ["s1", "s2", "s1"])
        assert ledger.total() == 0

    def test_failed_batch_is_server_error(self, fresh_client, seed_slices, db, monkeypatch):
        """A batch that could not be committed is never served as an empty batch."""
        seed_slices(5)
        monkeypatch.setattr("validation_db.allocator.select_batch", lambda ids, counts, size, rng=None: ["slice_000", "slice_000"])
        response = fresh_client.get("/api/participant/p1/slices")
        assert response.status_code == 500
        assert AssignmentLedger(db).total() == 0

    def test_batch_insert_keeps_order(self, ledger):
        slice_ids, created = ledger.insert_batch("p1", ["s3", "s1", "s2"])
        assert created is True
        assert ledger.assignments_for_participant("p1") == ["s3", "s1", "s2"]

    def test_counts_are_not_cached(self, ledger):
        assert ledger.counts_by_slice() == {}
        ledger.insert("p1", "s1")
        assert Counter(ledger.counts_by_slice()) == Counter({"s1": 1})
