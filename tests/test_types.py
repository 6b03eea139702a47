"""Tests for shared helpers and records."""

import re
from datetime import timezone

import pytest

from pwms.types import (
    ChangeRecord,
    SyncResult,
    new_change_id,
    parse_datetime,
    utc_now,
    validate_partition,
)


def test_utc_now_is_z_suffixed_iso():
    now = utc_now()
    assert now.endswith("Z")
    assert parse_datetime(now).tzinfo == timezone.utc


def test_parse_datetime_naive_taken_as_utc():
    parsed = parse_datetime("2026-03-01T10:00:00")
    assert parsed.tzinfo == timezone.utc


@pytest.mark.parametrize("value", [None, "", "not a date"])
def test_parse_datetime_invalid(value):
    assert parse_datetime(value) is None


def test_change_ids_are_unique_and_time_prefixed():
    ids = {new_change_id() for _ in range(100)}
    assert len(ids) == 100
    assert all(re.fullmatch(r"\d{13}-[0-9a-f]{9}", change_id) for change_id in ids)


def test_validate_partition():
    assert validate_partition("changelog") == "changelog"
    with pytest.raises(ValueError):
        validate_partition("recipes")


def test_change_record_from_wire_defaults():
    record = ChangeRecord.from_dict({"id": "c-1", "type": "quality", "batchNumber": "B-1"})
    assert record.origin == "unknown"
    assert record.payload is None
    assert record.occurred_at_dt is not None


def test_sync_result_wire_shape():
    result = SyncResult(synced=2, failed=1, dead_lettered=1, message="Synced 2, failed 1")
    result.errors.append({"table": "materials", "id": "m-1", "error": "boom"})

    assert result.to_dict() == {
        "success": True,
        "synced": 2,
        "failed": 1,
        "deadLettered": 1,
        "errors": [{"table": "materials", "id": "m-1", "error": "boom"}],
        "message": "Synced 2, failed 1",
    }
    assert SyncResult(skipped=True).success is False
