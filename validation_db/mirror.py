"""
Best-effort mirroring of annotations to a Google Sheet.

The annotation log is the record of truth; the sheet is a convenience copy
for the research team. ``AnnotationFanOut`` writes to both, and only a
failure of the primary write fails the submission.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional, Protocol

from google.oauth2 import service_account
from googleapiclient.discovery import build

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]
SHEET_RANGE = "Sheet1!A:G"
HEADER_RANGE = "Sheet1!A1:G1"
SHEET_HEADERS = [
    "participant_id",
    "slice_id",
    "timestamp",
    "interaction_types",
    "curiosity_types",
    "annotation_time_seconds",
    "routing_validation",
]


class AnnotationSink(Protocol):
    def save(self, record: dict):
        ...


def annotation_to_row(record: dict, timestamp: Optional[str] = None) -> list:
    """Flatten an annotation into the sheet's column order."""
    return [
        record["participant_id"],
        record["slice_id"],
        timestamp or datetime.now(timezone.utc).isoformat(),
        json.dumps(record.get("interaction_types") or []),
        json.dumps(record.get("curiosity_types") or []),
        int(record.get("annotation_time_seconds") or 0),
        json.dumps(record.get("routing_validation") or {}),
    ]


class GoogleSheetsMirror:
    """
    Appends annotations to ``Sheet1`` of a spreadsheet.

    Disabled (``enabled`` is False) when no sheet id or service-account key is
    configured, or when the credentials cannot be loaded. ``save`` returns
    whether the row was written and never raises.
    """

    def __init__(self, spreadsheet_id: Optional[str], service_account_key: Optional[str] = None, service=None):
        self.spreadsheet_id = spreadsheet_id or None
        self._service = service
        if self._service is None and self.spreadsheet_id and service_account_key:
            self._service = self._build_service(service_account_key)

    @staticmethod
    def _build_service(service_account_key: str):
        try:
            info = json.loads(service_account_key)
            credentials = service_account.Credentials.from_service_account_info(info, scopes=SCOPES)
            service = build("sheets", "v4", credentials=credentials, cache_discovery=False)
        except Exception as e:
            logger.error("Failed to initialize Google Sheets: %s", e)
            return None
        logger.info("Google Sheets API initialized")
        return service

    @property
    def enabled(self) -> bool:
        return self._service is not None and self.spreadsheet_id is not None

    def save(self, record: dict) -> bool:
        if not self.enabled:
            logger.debug("Google Sheets not configured, skipping mirror")
            return False
        try:
            self._service.spreadsheets().values().append(
                spreadsheetId=self.spreadsheet_id,
                range=SHEET_RANGE,
                valueInputOption="RAW",
                body={"values": [annotation_to_row(record)]},
            ).execute()
        except Exception as e:
            logger.warning("Error saving annotation to Google Sheets: %s", e)
            return False
        return True

    def setup_headers(self) -> bool:
        """Write the header row if the sheet is empty."""
        if not self.enabled:
            return False
        try:
            values = self._service.spreadsheets().values()
            existing = values.get(spreadsheetId=self.spreadsheet_id, range=HEADER_RANGE).execute()
            if not existing.get("values"):
                values.update(
                    spreadsheetId=self.spreadsheet_id,
                    range=HEADER_RANGE,
                    valueInputOption="RAW",
                    body={"values": [SHEET_HEADERS]},
                ).execute()
                logger.info("Headers added to Google Sheet")
        except Exception as e:
            logger.warning("Error setting up Google Sheet headers: %s", e)
            return False
        return True


class AnnotationFanOut:
    """
    Write an annotation to the primary sink, then to an optional mirror.

    Primary errors propagate. Mirror errors are logged and reported through
    the returned ``mirrored`` flag.
    """

    def __init__(self, primary: AnnotationSink, mirror: Optional[AnnotationSink] = None):
        self.primary = primary
        self.mirror = mirror

    def save(self, record: dict) -> tuple[int, bool]:
        annotation_id = self.primary.save(record)
        mirrored = False
        if self.mirror is not None:
            try:
                mirrored = bool(self.mirror.save(record))
            except Exception as e:
                logger.warning("Annotation mirror failed for %s/%s: %s",
                               record.get("participant_id"), record.get("slice_id"), e)
        return annotation_id, mirrored
