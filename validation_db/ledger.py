"""
Assignment ledger: which participant was given which slice.

The ledger is append-only and is the single source of truth for per-slice
assignment counts; counts are always aggregated from it, never cached.
"""

import logging
from typing import Sequence

from .database import Database, DuplicateKeyError

logger = logging.getLogger(__name__)


class DuplicateAssignmentError(DuplicateKeyError):
    """The (participant, slice) pair is already in the ledger."""


class AssignmentLedger:

    def __init__(self, db: Database):
        self.db = db

    def counts_by_slice(self) -> dict[str, int]:
        """Assignment count per slice. Slices never assigned are absent (count 0)."""
        with self.db.connection() as conn:
            rows = conn.execute("""
                SELECT slice_id, COUNT(*) AS n
                FROM assignments
                GROUP BY slice_id
            """).fetchall()
        return {row["slice_id"]: row["n"] for row in rows}

    def assignments_for_participant(self, participant_id: str) -> list[str]:
        with self.db.connection() as conn:
            return self._assignments(conn, participant_id)

    @staticmethod
    def _assignments(conn, participant_id: str) -> list[str]:
        rows = conn.execute("""
            SELECT slice_id FROM assignments
            WHERE participant_id = ?
            ORDER BY position, slice_id
        """, (participant_id,)).fetchall()
        return [row["slice_id"] for row in rows]

    def insert(self, participant_id: str, slice_id: str, position: int = 0):
        """Record a single assignment. Raises DuplicateAssignmentError if it exists."""
        try:
            with self.db.connection() as conn:
                conn.execute("""
                    INSERT INTO assignments (participant_id, slice_id, position)
                    VALUES (?, ?, ?)
                """, (participant_id, slice_id, position))
        except DuplicateKeyError as e:
            raise DuplicateAssignmentError(
                f"{participant_id!r} already has slice {slice_id!r}"
            ) from e

    def insert_batch(self, participant_id: str, slice_ids: Sequence[str]) -> tuple[list[str], bool]:
        """
        Commit a participant's whole batch atomically, or adopt the one already there.

        The transaction holds the per-participant write lock, re-checks for an
        existing batch and only then inserts every row. A concurrent request
        that got there first wins: its batch is returned and nothing is written.
        A uniqueness violation (a writer that bypassed the lock) rolls the
        whole insert back and falls through to the same re-read; if nothing
        was committed by anyone, the original error is re-raised.

        Returns ``(slice_ids, created)``.
        """
        try:
            with self.db.transaction(lock_key=participant_id) as conn:
                existing = self._assignments(conn, participant_id)
                if existing:
                    return existing, False
                conn.executemany("""
                    INSERT INTO assignments (participant_id, slice_id, position)
                    VALUES (?, ?, ?)
                """, [(participant_id, slice_id, i) for i, slice_id in enumerate(slice_ids)])
            return list(slice_ids), True
        except DuplicateKeyError:
            logger.info("Batch insert for %s conflicted; re-reading committed batch", participant_id)
            existing = self.assignments_for_participant(participant_id)
            if not existing:
                raise
            return existing, False

    def total(self) -> int:
        with self.db.connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM assignments").fetchone()
        return row["n"]
