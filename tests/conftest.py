"""
Pytest configuration and fixtures for Slice Validation Platform tests.
"""
import os
import sys
from pathlib import Path
from typing import Callable, Generator

import pytest
from fastapi.testclient import TestClient

# Add app directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Set test environment before importing app
os.environ.pop("DATABASE_URL", None)
os.environ["GOOGLE_SHEET_ID"] = ""
os.environ["GOOGLE_SERVICE_ACCOUNT_KEY"] = ""

from validation_db import AnnotationLog, AssignmentLedger, Database, SliceStore


def make_slice(slice_id: str, conversation_id: str = "c1", **extra) -> dict:
    """Build a catalog record with sensible defaults."""
    record = {
        "id": slice_id,
        "conversation_id": conversation_id,
        "context": None,
        "focus_turns": [{"speaker": "A", "text": f"turn for {slice_id}"}],
        "hybrid_predictions": {"routing_reason": "high_confidence_pattern"},
    }
    record.update(extra)
    return record


@pytest.fixture
def db(tmp_path: Path) -> Database:
    """A fresh SQLite database with tables created."""
    database = Database(path=tmp_path / "validation.db")
    database.init_schema()
    return database


@pytest.fixture
def slice_store(db: Database) -> SliceStore:
    return SliceStore(db)


@pytest.fixture
def ledger(db: Database) -> AssignmentLedger:
    return AssignmentLedger(db)


@pytest.fixture
def annotation_log(db: Database) -> AnnotationLog:
    return AnnotationLog(db)


@pytest.fixture
def seed_slices(slice_store: SliceStore) -> Callable[[int], list[str]]:
    """Load ``n`` generated slices into the catalog and return their ids."""
    def _seed(n: int) -> list[str]:
        records = [make_slice(f"slice_{i:03d}", conversation_id=f"conv_{i // 3}") for i in range(n)]
        slice_store.bulk_replace(records)
        return [r["id"] for r in records]
    return _seed


@pytest.fixture
def fresh_client(db: Database) -> Generator[TestClient, None, None]:
    """Create a fresh test client backed by the per-test database."""
    import app as app_module

    app_module.DB_PATH = db.path
    app_module._db = db
    app_module._mirror = None

    with TestClient(app_module.app) as c:
        yield c

    app_module._db = None
    app_module._mirror = None


@pytest.fixture
def client_with_slices(fresh_client: TestClient, seed_slices) -> tuple[TestClient, list[str]]:
    """Test client with a 40-slice catalog loaded."""
    ids = seed_slices(40)
    return fresh_client, ids
