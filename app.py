#!/usr/bin/env python3
"""
Slice Validation Platform - a web backend for collecting human labels on conversation slices.

Features:
- Fixed-size batches of slices assigned per participant
- Load balancing: least-assigned slices go out first, ties broken at random
- Stable batches: a returning participant always gets the same slices
- Race-safe first assignment (one committed batch per participant)
- Annotation submission with optional Google Sheets mirroring
- CSV export of annotations joined with assignments and slices
- SQLite persistence locally, PostgreSQL when DATABASE_URL is set

Usage:
    cd slice-validation
    python scripts/setup_database.py --sample 40
    uvicorn app:app --reload --port 8080
    # Then open http://localhost:8080

Environment Variables:
    DATABASE_URL=postgresql://...  - Use PostgreSQL instead of the local SQLite file
    VALIDATION_DB_PATH=validation.db  - SQLite database file (default: validation.db next to app.py)
    SLICES_PER_PARTICIPANT=15  - Batch size per participant (default: 15)
    GOOGLE_SHEET_ID=...  - Spreadsheet to mirror annotations into (optional)
    GOOGLE_SERVICE_ACCOUNT_KEY='{...}'  - Service account JSON for the spreadsheet (optional)
    STATIC_DIR=public  - Directory holding index.html and frontend assets
    LOG_LEVEL=INFO  - Logging level
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Response
from fastapi.staticfiles import StaticFiles
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field

from validation_db import (
    Allocator,
    AnnotationFanOut,
    AnnotationLog,
    AssignmentLedger,
    Database,
    GoogleSheetsMirror,
    SliceStore,
    StorageError,
)
from validation_db.export import export_to_csv

# Paths - relative to this file's directory
APP_DIR = Path(__file__).parent.resolve()
DB_PATH = Path(os.environ.get("VALIDATION_DB_PATH", APP_DIR / "validation.db"))
STATIC_DIR = Path(os.environ.get("STATIC_DIR", APP_DIR / "public"))

# Configuration
DATABASE_URL = os.environ.get("DATABASE_URL", "")
SLICES_PER_PARTICIPANT = int(os.environ.get("SLICES_PER_PARTICIPANT", "15"))
GOOGLE_SHEET_ID = os.environ.get("GOOGLE_SHEET_ID", "")
GOOGLE_SERVICE_ACCOUNT_KEY = os.environ.get("GOOGLE_SERVICE_ACCOUNT_KEY", "")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("validation")

# Storage and mirror - created on first use so tests can point DB_PATH elsewhere
_db = None
_mirror = None

# ============================================================================
# API Documentation
# ============================================================================

API_DESCRIPTION = """
# Slice Validation Platform API

Participants label short conversation excerpts ("slices") with interaction and
curiosity categories, and correct the pre-computed model predictions shown
alongside each slice.

## Assignment

`GET /api/participant/{id}/slices` returns the participant's batch. The first
call picks the least-assigned slices across all participants (random among
ties) and records them; every later call returns the same batch. Two
simultaneous first calls for one participant still produce a single batch.

## Annotations

`POST /api/annotations` stores one annotation. `participant_id`, `slice_id` and
`interaction_types` are required (`interaction_types` may be an empty list).
When a Google Sheet is configured the annotation is also appended there;
`saved_to_sheets` reports whether that worked. The sheet never decides
whether the submission succeeded.

## Export

`GET /api/export` streams every annotation that matches an assignment and a
slice as CSV:

```
participant_id,slice_id,conversation_id,interaction_types,curiosity_types,routing_validation,annotation_time_seconds,submitted_at
```
"""

TAGS_METADATA = [
    {
        "name": "Assignment",
        "description": "Per-participant slice batches with load balancing across slices.",
    },
    {
        "name": "Annotation",
        "description": "Submit labels for an assigned slice.",
    },
    {
        "name": "Export",
        "description": "Download collected annotations.",
    },
    {
        "name": "System",
        "description": "Health check.",
    },
]

app = FastAPI(
    title="Slice Validation Platform API",
    description=API_DESCRIPTION,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=TAGS_METADATA,
    license_info={
        "name": "MIT",
        "url": "https://opensource.org/licenses/MIT",
    },
)

# Mount static files (frontend is deployed separately, so the directory may be absent)
app.mount("/static", StaticFiles(directory=STATIC_DIR, check_dir=False), name="static")


# ============================================================================
# Storage Setup
# ============================================================================

def get_db() -> Database:
    """Get the global database, selecting the engine on first use."""
    global _db
    if _db is None:
        _db = Database(url=DATABASE_URL or None, path=DB_PATH)
        logger.info("Using %s database", _db.describe())
    return _db


def init_db():
    """Create tables if they don't exist."""
    get_db().init_schema()


def get_mirror() -> GoogleSheetsMirror:
    """Get the global Google Sheets mirror (disabled unless configured)."""
    global _mirror
    if _mirror is None:
        _mirror = GoogleSheetsMirror(GOOGLE_SHEET_ID, GOOGLE_SERVICE_ACCOUNT_KEY)
    return _mirror


def get_allocator() -> Allocator:
    db = get_db()
    return Allocator(SliceStore(db), AssignmentLedger(db), batch_size=SLICES_PER_PARTICIPANT)


def get_annotation_sink() -> AnnotationFanOut:
    return AnnotationFanOut(AnnotationLog(get_db()), get_mirror())


# ============================================================================
# Pydantic Models
# ============================================================================

class SliceRecord(BaseModel):
    """A slice as shown to a participant."""
    id: str = Field(..., description="Unique slice identifier", example="validation_07")
    conversation_id: Optional[str] = Field(None, description="Conversation the slice was cut from", example="conv_3")
    context: Optional[str] = Field(None, description="Preceding conversation text, null at the start of a conversation")
    focus_turns: list[Any] = Field(..., description="Ordered turns to label, each with speaker and text")
    hybrid_predictions: dict = Field(..., description="Pre-computed model predictions, passed through unchanged")


class ParticipantSlicesResponse(BaseModel):
    """A participant's batch of slices."""
    participant_id: str = Field(..., description="Participant identifier")
    slices: list[SliceRecord] = Field(..., description="Assigned slices in assignment order")
    total: int = Field(..., description="Number of slices in the batch")


class AnnotationSubmission(BaseModel):
    """Labels submitted for one slice.

    Required fields are checked in the endpoint so a missing one is a 400
    with no side effects rather than a schema error.
    """
    participant_id: Optional[str] = Field(None, description="Participant identifier", example="p_1024")
    slice_id: Optional[str] = Field(None, description="Slice being annotated", example="validation_07")
    interaction_types: Optional[list[str]] = Field(
        None, description="Interaction categories (may be empty)", example=["questioning", "explaining"]
    )
    curiosity_types: Optional[list[str]] = Field(None, description="Curiosity categories", example=["specific"])
    routing_validation: Optional[Any] = Field(
        None, description="Participant's correction of the pre-computed routing prediction"
    )
    annotation_time_seconds: Optional[int] = Field(None, description="Time spent on the slice, seconds", example=42)


class AnnotationResponse(BaseModel):
    """Result of an annotation submission."""
    success: bool = Field(..., description="True once the annotation is stored")
    message: str = Field(..., description="Human-readable status")
    id: int = Field(..., description="Annotation id")
    saved_to_sheets: bool = Field(False, description="Whether the Google Sheets mirror also stored it")


# ============================================================================
# API Endpoints - Root
# ============================================================================

@app.on_event("startup")
async def startup():
    """Initialize database and spreadsheet headers on startup."""
    init_db()
    mirror = get_mirror()
    if mirror.enabled:
        mirror.setup_headers()


@app.get("/", include_in_schema=False)
async def root():
    """Serve the participant-facing interface."""
    index = STATIC_DIR / "index.html"
    if not index.exists():
        raise HTTPException(404, "Frontend not installed")
    return FileResponse(index)


@app.get(
    "/api/health",
    tags=["System"],
    summary="Health check",
)
async def health():
    """Report liveness and which database backend is in use."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": get_db().backend,
    }


# ============================================================================
# API Endpoints - Assignment
# ============================================================================

@app.get(
    "/api/participant/{participant_id}/slices",
    tags=["Assignment"],
    summary="Get a participant's slices",
    description="""Return the participant's batch, assigning one on the first call.

**Load balancing:** a new batch takes the slices with the fewest assignments so far,
random among ties, up to SLICES_PER_PARTICIPANT (the whole catalog if smaller).

**Stability:** the batch is recorded and returned unchanged on every later call.
""",
    response_model=ParticipantSlicesResponse,
)
def get_participant_slices(participant_id: str):
    """Get (or allocate) the participant's slice batch."""
    if not participant_id:
        raise HTTPException(400, "participant_id must not be empty")

    try:
        return get_allocator().get_assignment_for_participant(participant_id)
    except StorageError:
        logger.exception("Error fetching slices for participant %s", participant_id)
        raise HTTPException(500, "Error fetching slices")


# ============================================================================
# API Endpoints - Annotation
# ============================================================================

@app.post(
    "/api/annotations",
    tags=["Annotation"],
    summary="Submit annotation",
    description="Store labels for one slice. Mirrors to Google Sheets when configured; the mirror's result is reported in `saved_to_sheets` and never fails the request.",
    response_model=AnnotationResponse,
)
def submit_annotation(submission: AnnotationSubmission):
    """Submit an annotation for a slice."""
    missing = [
        name for name in ("participant_id", "slice_id")
        if not getattr(submission, name)
    ]
    if submission.interaction_types is None:
        missing.append("interaction_types")
    if missing:
        raise HTTPException(400, f"Missing required fields: {', '.join(missing)}")

    if submission.annotation_time_seconds is not None and submission.annotation_time_seconds < 0:
        raise HTTPException(400, "annotation_time_seconds must be >= 0")

    record = submission.model_dump()
    try:
        annotation_id, mirrored = get_annotation_sink().save(record)
    except StorageError:
        logger.exception("Error inserting annotation for %s/%s", submission.participant_id, submission.slice_id)
        raise HTTPException(500, "Database error")

    return AnnotationResponse(
        success=True,
        message="Annotation saved",
        id=annotation_id,
        saved_to_sheets=mirrored,
    )


# ============================================================================
# API Endpoint - Export
# ============================================================================

@app.get(
    "/api/export",
    tags=["Export"],
    summary="Export annotations as CSV",
    description="All annotations that match an assignment and a slice, ordered by participant then submission time.",
)
def export_annotations():
    """Export annotation data as CSV."""
    try:
        rows = AnnotationLog(get_db()).export_joined()
    except StorageError:
        logger.exception("Export failed")
        raise HTTPException(500, "Export failed")

    return Response(
        content=export_to_csv(rows),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=annotations.csv"},
    )
