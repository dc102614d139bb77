"""
Tests for the Google Sheets mirror and the annotation fan-out.
"""
import json
from unittest.mock import MagicMock

import pytest

from validation_db import AnnotationFanOut, GoogleSheetsMirror, StorageError
from validation_db.mirror import SHEET_HEADERS, annotation_to_row

RECORD = {
    "participant_id": "p1",
    "slice_id": "s1",
    "interaction_types": ["questioning"],
    "curiosity_types": ["specific"],
    "routing_validation": {"agree": True},
    "annotation_time_seconds": 12,
}


class TestGoogleSheetsMirror:

    def test_disabled_without_configuration(self):
        mirror = GoogleSheetsMirror("", "")
        assert mirror.enabled is False
        assert mirror.save(RECORD) is False
        assert mirror.setup_headers() is False

    def test_bad_credentials_disable_mirror(self):
        mirror = GoogleSheetsMirror("sheet123", "{not json")
        assert mirror.enabled is False

    def test_save_appends_row(self):
        service = MagicMock()
        mirror = GoogleSheetsMirror("sheet123", service=service)
        assert mirror.save(RECORD) is True

        append = service.spreadsheets.return_value.values.return_value.append
        kwargs = append.call_args.kwargs
        assert kwargs["spreadsheetId"] == "sheet123"
        assert kwargs["range"] == "Sheet1!A:G"
        assert kwargs["valueInputOption"] == "RAW"
        row = kwargs["body"]["values"][0]
        assert row[:2] == ["p1", "s1"]
        assert row[3] == json.dumps(["questioning"])
        assert row[5] == 12

    def test_save_failure_returns_false(self):
        service = MagicMock()
        service.spreadsheets.return_value.values.return_value.append.return_value.execute.side_effect = (
            RuntimeError("quota exceeded")
        )
        mirror = GoogleSheetsMirror("sheet123", service=service)
        assert mirror.save(RECORD) is False

    def test_setup_headers_on_empty_sheet(self):
        service = MagicMock()
        values = service.spreadsheets.return_value.values.return_value
        values.get.return_value.execute.return_value = {}
        mirror = GoogleSheetsMirror("sheet123", service=service)

        assert mirror.setup_headers() is True
        assert values.update.call_args.kwargs["body"] == {"values": [SHEET_HEADERS]}

    def test_setup_headers_leaves_existing(self):
        service = MagicMock()
        values = service.spreadsheets.return_value.values.return_value
        values.get.return_value.execute.return_value = {"values": [SHEET_HEADERS]}
        mirror = GoogleSheetsMirror("sheet123", service=service)

        assert mirror.setup_headers() is True
        values.update.assert_not_called()

    def test_row_layout(self):
        row = annotation_to_row(RECORD, timestamp="2024-01-01T00:00:00+00:00")
        assert row == [
            "p1", "s1", "2024-01-01T00:00:00+00:00",
            '["questioning"]', '["specific"]', 12, '{"agree": true}',
        ]


class TestAnnotationFanOut:

    def test_primary_then_mirror(self):
        primary, mirror = MagicMock(), MagicMock()
        primary.save.return_value = 5
        mirror.save.return_value = True
        assert AnnotationFanOut(primary, mirror).save(RECORD) == (5, True)

    def test_mirror_exception_is_contained(self):
        primary, mirror = MagicMock(), MagicMock()
        primary.save.return_value = 5
        mirror.save.side_effect = RuntimeError("boom")
        assert AnnotationFanOut(primary, mirror).save(RECORD) == (5, False)

    def test_primary_failure_propagates_and_skips_mirror(self):
        primary, mirror = MagicMock(), MagicMock()
        primary.save.side_effect = StorageError("disk full")
        with pytest.raises(StorageError):
            AnnotationFanOut(primary, mirror).save(RECORD)
        mirror.save.assert_not_called()

    def test_no_mirror(self):
        primary = MagicMock()
        primary.save.return_value = 1
        assert AnnotationFanOut(primary).save(RECORD) == (1, False)
