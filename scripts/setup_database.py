#!/usr/bin/env python3
"""
Load the slice catalog into the validation database.

WARNING: this is a full reset. Existing annotations and assignments are
deleted along with the old slices.

Reads slices from a JSON file (``{"slices": [...]}`` or a plain list), or
from a content file merged with an assessments file, or generates sample
slices for local testing.

Usage:
    python scripts/setup_database.py --slices Conv_slices_rebuilt_updated.json
    python scripts/setup_database.py --slices validation_slices_content.json \\
        --assessments validation_slices_assessments.json
    python scripts/setup_database.py --sample 40

    # Against PostgreSQL instead of the local SQLite file
    DATABASE_URL=postgresql://... python scripts/setup_database.py --slices slices.json
"""

import argparse
import os
import sys
from pathlib import Path
from typing import Optional

sys.path.insert(0, str(Path(__file__).parent.parent))

from validation_db import Database, SliceStore, StorageError
from validation_db.catalog import (
    DEFAULT_ID_PREFIX,
    create_sample_slices,
    load_slices_from_file,
    merge_assessments,
    normalize_slices,
)

DB_PATH = Path(os.environ.get("VALIDATION_DB_PATH", Path(__file__).parent.parent / "validation.db"))  # Must match app.py DB_PATH
DEFAULT_SAMPLE_SIZE = 40


def run_setup(
    db: Database,
    slices_file: Optional[Path] = None,
    assessments_file: Optional[Path] = None,
    sample: Optional[int] = None,
    id_prefix: str = DEFAULT_ID_PREFIX,
) -> int:
    """Initialize tables and replace the catalog. Returns the slice count afterwards."""
    db.init_schema()

    if slices_file is not None:
        print(f"Loading slices from {slices_file}...")
        raw_slices = load_slices_from_file(slices_file)
        if assessments_file is not None:
            print(f"Merging assessments from {assessments_file}...")
            raw_slices = merge_assessments(raw_slices, assessments_file)
    else:
        count = sample if sample is not None else DEFAULT_SAMPLE_SIZE
        print(f"No slice file given. Creating {count} sample slices...")
        raw_slices = create_sample_slices(count)

    print(f"Loaded {len(raw_slices)} slices")
    records = normalize_slices(raw_slices, id_prefix=id_prefix)

    store = SliceStore(db)
    inserted = store.bulk_replace(records)
    print(f"Inserted {inserted} slices into database")

    total = store.count()
    print(f"Database now contains {total} slices")
    return total


def main():
    parser = argparse.ArgumentParser(description="Load slices into the validation database (full reset)")
    parser.add_argument(
        "--slices",
        type=Path,
        default=None,
        help="JSON file with {\"slices\": [...]} or a list of slices",
    )
    parser.add_argument(
        "--assessments",
        type=Path,
        default=None,
        help="Assessments file to merge into --slices by id (supplies hybrid_predictions)",
    )
    parser.add_argument(
        "--sample",
        nargs="?",
        const=DEFAULT_SAMPLE_SIZE,
        type=int,
        metavar="N",
        help=f"Generate N sample slices instead of reading a file (default: {DEFAULT_SAMPLE_SIZE})",
    )
    parser.add_argument(
        "--id-prefix",
        default=DEFAULT_ID_PREFIX,
        help=f"Prefix prepended to every slice id (default: {DEFAULT_ID_PREFIX!r})",
    )
    args = parser.parse_args()

    if args.assessments and not args.slices:
        print("Error: --assessments requires --slices")
        sys.exit(1)
    if args.sample is not None and args.sample < 1:
        print("Error: --sample must be at least 1")
        sys.exit(1)
    if args.slices and args.sample is not None:
        print("Error: use either --slices or --sample, not both")
        sys.exit(1)

    db = Database(url=os.environ.get("DATABASE_URL") or None, path=DB_PATH)
    print(f"Setting up validation database ({db.describe()})...")

    try:
        run_setup(db, args.slices, args.assessments, args.sample, args.id_prefix)
    except (OSError, ValueError, StorageError) as e:
        print(f"Setup failed: {e}")
        sys.exit(1)

    print("Database setup complete!")


if __name__ == "__main__":
    main()
