"""Storage and assignment logic for the conversation slice validation platform."""

from .allocator import Allocator, DEFAULT_BATCH_SIZE
from .annotations import AnnotationLog
from .database import Database, DuplicateKeyError, StorageError
from .ledger import AssignmentLedger, DuplicateAssignmentError
from .mirror import AnnotationFanOut, GoogleSheetsMirror
from .slices import SliceStore

__all__ = [
    "Allocator",
    "AnnotationFanOut",
    "AnnotationLog",
    "AssignmentLedger",
    "DEFAULT_BATCH_SIZE",
    "Database",
    "DuplicateAssignmentError",
    "DuplicateKeyError",
    "GoogleSheetsMirror",
    "SliceStore",
    "StorageError",
]
