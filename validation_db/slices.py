"""
Slice catalog storage.

Slices are loaded in bulk by the setup script and read by the allocator.
``focus_turns`` and ``hybrid_predictions`` are stored as JSON text and decoded
on the way out; a row with a damaged payload still comes back, with an empty
default in place of the bad field.
"""

import json
import logging
from typing import Iterable, Optional

from .database import Database

logger = logging.getLogger(__name__)


def decode_json_field(raw: Optional[str], default, slice_id: str = "", field: str = ""):
    """Decode a stored JSON payload, falling back to ``default`` if it is missing or malformed."""
    if raw is None or raw == "":
        return default
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Malformed %s payload on slice %s; using empty default", field, slice_id)
        return default
    if not isinstance(value, type(default)):
        logger.warning(
            "Unexpected %s type on slice %s (%s); using empty default",
            field, slice_id, type(value).__name__,
        )
        return default
    return value


def row_to_slice(row) -> dict:
    """Convert a ``slices`` row to the record returned to clients."""
    slice_id = row["id"]
    return {
        "id": slice_id,
        "conversation_id": row["conversation_id"],
        "context": row["context"],
        "focus_turns": decode_json_field(row["focus_turns"], [], slice_id, "focus_turns"),
        "hybrid_predictions": decode_json_field(row["hybrid_predictions"], {}, slice_id, "hybrid_predictions"),
    }


class SliceStore:
    """Read access to the slice catalog, plus the full-reset bulk loader."""

    def __init__(self, db: Database):
        self.db = db

    def list_all_ids(self) -> list[str]:
        with self.db.connection() as conn:
            rows = conn.execute("SELECT id FROM slices ORDER BY id").fetchall()
        return [row["id"] for row in rows]

    def get_by_ids(self, ids: Iterable[str]) -> dict[str, dict]:
        """Fetch records keyed by id. Unknown ids are simply absent from the result."""
        ids = list(dict.fromkeys(ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self.db.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM slices WHERE id IN ({placeholders})", ids
            ).fetchall()
        return {row["id"]: row_to_slice(row) for row in rows}

    def count(self) -> int:
        with self.db.connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM slices").fetchone()
        return row["n"]

    def bulk_replace(self, records: list[dict]) -> int:
        """
        Replace the whole catalog.

        Clears annotations, assignments and slices (in dependency order) and
        inserts ``records`` in the same transaction, so readers see either the
        old catalog or the new one. This resets every participant's batch.
        """
        rows = [
            (
                record["id"],
                record.get("conversation_id"),
                record.get("context"),
                json.dumps(record.get("focus_turns") or []),
                json.dumps(record.get("hybrid_predictions") or {}),
            )
            for record in records
        ]
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM annotations")
            conn.execute("DELETE FROM assignments")
            conn.execute("DELETE FROM slices")
            if rows:
                conn.executemany("""
                    INSERT INTO slices (id, conversation_id, context, focus_turns, hybrid_predictions)
                    VALUES (?, ?, ?, ?, ?)
                """, rows)
        logger.info("Slice catalog replaced: %d slices", len(rows))
        return len(rows)
