"""Tests for broadcast change events and their parser."""

from __future__ import annotations

import logging

import pytest

from dispatch_sync.dto.broadcast import (
    ChangeEvent,
    ChangeOperation,
    MalformedEventError,
    strip_metadata,
)
from dispatch_sync.realtime.parser import BroadcastEventParser


def _payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "table": "tasks",
        "type": "UPDATE",
        "record": {
            "id": "t-1",
            "title": "Order sign",
            "updated_at": "2026-01-15T10:00:00+00:00",
            "_origin_user_id": "u-1",
            "_event_version": 1,
        },
        "old_record": None,
    }
    payload.update(overrides)
    return payload


class TestChangeEvent:
    def test_from_payload_strips_metadata(self) -> None:
        event = ChangeEvent.from_payload(_payload())
        assert event.table == "tasks"
        assert event.operation == ChangeOperation.UPDATE
        assert event.origin_user_id == "u-1"
        assert event.record is not None
        assert "_origin_user_id" not in event.record
        assert "_event_version" not in event.record
        assert event.record_id == "t-1"

    def test_lowercase_operation_accepted(self) -> None:
        event = ChangeEvent.from_payload(_payload(type="insert"))
        assert event.operation == ChangeOperation.INSERT

    def test_delete_reads_old_record(self) -> None:
        event = ChangeEvent.from_payload(
            _payload(
                type="DELETE",
                record=None,
                old_record={"id": "t-2", "_origin_user_id": "u-2"},
            )
        )
        assert event.is_delete
        assert event.record_id == "t-2"
        assert event.origin_user_id == "u-2"

    def test_missing_origin_is_system_origin(self) -> None:
        event = ChangeEvent.from_payload(_payload(record={"id": "t-1"}))
        assert event.origin_user_id is None
        assert event.is_system_origin

    def test_blank_origin_is_system_origin(self) -> None:
        event = ChangeEvent.from_payload(_payload(record={"id": "t-1", "_origin_user_id": " "}))
        assert event.is_system_origin

    def test_invalid_version_treated_as_current(self) -> None:
        event = ChangeEvent.from_payload(_payload(record={"id": "t-1", "_event_version": "x"}))
        assert event.event_version == 1

    def test_updated_at_parsed(self) -> None:
        event = ChangeEvent.from_payload(_payload())
        assert event.updated_at is not None
        assert event.updated_at.year == 2026

    @pytest.mark.parametrize(
        "payload",
        [
            {"type": "UPDATE", "record": {"id": "x"}},
            {"table": "", "type": "UPDATE", "record": {"id": "x"}},
            {"table": "tasks", "type": "TRUNCATE", "record": {"id": "x"}},
            {"table": "tasks", "type": "UPDATE"},
        ],
    )
    def test_malformed_payloads_raise(self, payload: dict[str, object]) -> None:
        with pytest.raises(MalformedEventError):
            ChangeEvent.from_payload(payload)

    def test_strip_metadata_none(self) -> None:
        assert strip_metadata(None) is None


class TestBroadcastEventParser:
    def test_parses_bare_payload(self) -> None:
        event = BroadcastEventParser().parse(_payload())
        assert event is not None
        assert event.record_id == "t-1"

    def test_unwraps_channel_envelope(self) -> None:
        message = {"event": "tasks_changed", "type": "broadcast", "payload": _payload()}
        event = BroadcastEventParser().parse(message)
        assert event is not None
        assert event.table == "tasks"

    def test_unwraps_double_envelope(self) -> None:
        message = {"payload": {"payload": _payload()}}
        assert BroadcastEventParser().parse(message) is not None

    def test_malformed_returns_none_and_counts(self) -> None:
        parser = BroadcastEventParser()
        assert parser.parse({"event": "x"}) is None
        assert parser.parse({"payload": "not a dict"}) is None
        assert parser.parse(_payload(type="MERGE")) is None
        assert parser.malformed_count == 3

    def test_newer_version_processed_and_warned_once(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        parser = BroadcastEventParser()
        payload = _payload(record={"id": "t-1", "_event_version": 2})
        with caplog.at_level(logging.WARNING, logger="dispatch_sync.realtime.parser"):
            first = parser.parse(payload)
            second = parser.parse(payload)
        assert first is not None
        assert second is not None
        assert first.event_version == 2
        warnings = [r for r in caplog.records if "newer than supported" in r.getMessage()]
        assert len(warnings) == 1
