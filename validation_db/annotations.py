"""
Annotation log and the joined export query.
"""

import json
import logging

from .database import Database

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    "participant_id",
    "slice_id",
    "conversation_id",
    "interaction_types",
    "curiosity_types",
    "routing_validation",
    "annotation_time_seconds",
    "submitted_at",
]


def _timestamp(value) -> str:
    # sqlite hands back text; psycopg2 hands back datetime
    if value is None:
        return ""
    if hasattr(value, "isoformat"):
        return value.isoformat(sep=" ")
    return str(value)


class AnnotationLog:
    """Append-only store of submitted annotations."""

    def __init__(self, db: Database):
        self.db = db

    def append(self, record: dict) -> int:
        """
        Store one annotation and return its id.

        No check is made that the participant was actually assigned the slice;
        unmatched rows are dropped later by the export join.
        """
        curiosity_types = record.get("curiosity_types")
        routing_validation = record.get("routing_validation")
        with self.db.connection() as conn:
            annotation_id = conn.insert_returning_id("""
                INSERT INTO annotations
                (participant_id, slice_id, interaction_types, curiosity_types,
                 routing_validation, annotation_time_seconds)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                record["participant_id"],
                record["slice_id"],
                json.dumps(list(record["interaction_types"])),
                json.dumps(list(curiosity_types) if curiosity_types is not None else []),
                json.dumps(routing_validation if routing_validation is not None else {}),
                int(record.get("annotation_time_seconds") or 0),
            ))
        return annotation_id

    # Primary sink interface for the fan-out
    def save(self, record: dict) -> int:
        return self.append(record)

    def count(self) -> int:
        with self.db.connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM annotations").fetchone()
        return row["n"]

    def export_joined(self) -> list[dict]:
        """
        Annotations joined with their assignment and slice, flattened for CSV.

        Inner joins: an annotation with no matching assignment or slice is left
        out. Structured fields stay as the stored JSON text.
        """
        with self.db.connection() as conn:
            rows = conn.execute("""
                SELECT
                    a.participant_id,
                    a.slice_id,
                    s.conversation_id,
                    a.interaction_types,
                    a.curiosity_types,
                    a.routing_validation,
                    a.annotation_time_seconds,
                    a.submitted_at
                FROM annotations a
                JOIN assignments asg
                    ON a.participant_id = asg.participant_id AND a.slice_id = asg.slice_id
                JOIN slices s ON a.slice_id = s.id
                ORDER BY a.participant_id, a.submitted_at, a.id
            """).fetchall()

        return [
            {
                "participant_id": row["participant_id"],
                "slice_id": row["slice_id"],
                "conversation_id": row["conversation_id"],
                "interaction_types": row["interaction_types"],
                "curiosity_types": row["curiosity_types"],
                "routing_validation": row["routing_validation"],
                "annotation_time_seconds": row["annotation_time_seconds"],
                "submitted_at": _timestamp(row["submitted_at"]),
            }
            for row in rows
        ]
