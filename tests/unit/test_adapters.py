"""Unit tests for the source adapters and the intake listener."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from signalflow.events import EventHub, HubEvent, Topic
from signalflow.intake.adapters import (
    MAX_BODY_LENGTH,
    PayloadError,
    SignalIntake,
    describe_sheet_change,
    extract_email,
    gmail_to_signal,
    sheets_to_signal,
    slack_to_signal,
)
from signalflow.intake.gate import AdmissionGate
from signalflow.models import Priority

# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------


def _gmail_payload(**overrides) -> dict:
    payload = {
        "messageId": "m-1",
        "subject": "Quarterly report",
        "body": "Please review the attached report.",
        "from": "Alice <alice@acme.com>",
        "timestamp": "2026-03-02T09:30:00Z",
    }
    payload.update(overrides)
    return payload


# -------------------------------------------------------------------
# Converters
# -------------------------------------------------------------------


class TestExtractEmail:
    """Tests for extract_email."""

    def test_name_and_address(self) -> None:
        assert extract_email("Alice <alice@acme.com>") == "alice@acme.com"

    def test_bare_address(self) -> None:
        assert extract_email("bob@example.org") == "bob@example.org"

    def test_empty(self) -> None:
        assert extract_email(None) == ""

    def test_no_address_returns_stripped_input(self) -> None:
        assert extract_email("  system  ") == "system"


class TestGmailToSignal:
    """Tests for gmail_to_signal."""

    def test_basic_fields(self) -> None:
        signal = gmail_to_signal(_gmail_payload())
        assert signal.id == "gmail-m-1"
        assert signal.source == "email"
        assert signal.subject == "Quarterly report"
        assert signal.sender == "Alice <alice@acme.com>"
        assert signal.timestamp == datetime(2026, 3, 2, 9, 30, tzinfo=UTC)

    def test_naive_timestamp_is_utc(self) -> None:
        signal = gmail_to_signal(_gmail_payload(timestamp="2026-03-02T09:05:00"))
        assert signal.timestamp == datetime(2026, 3, 2, 9, 5, tzinfo=UTC)

    def test_falls_back_to_snippet(self) -> None:
        signal = gmail_to_signal(_gmail_payload(body=None, snippet="short"))
        assert signal.body == "short"

    def test_long_body_is_truncated(self) -> None:
        signal = gmail_to_signal(_gmail_payload(body="x" * (MAX_BODY_LENGTH + 50)))
        assert len(signal.body) == MAX_BODY_LENGTH + 3
        assert signal.body.endswith("...")

    def test_missing_message_id(self) -> None:
        with pytest.raises(PayloadError, match="messageId"):
            gmail_to_signal(_gmail_payload(messageId=""))


class TestSlackToSignal:
    """Tests for slack_to_signal."""

    def test_channel_name_in_subject(self) -> None:
        signal = slack_to_signal(
            {"messageId": "t1", "channelName": "ops", "text": "deploy done", "username": "carol"}
        )
        assert signal.id == "slack-t1"
        assert signal.source == "slack"
        assert signal.subject == "Message in #ops"
        assert signal.sender == "carol"

    def test_channel_id_fallback(self) -> None:
        signal = slack_to_signal({"messageId": "t1", "channelId": "C123", "text": "hi"})
        assert signal.subject == "Message in #C123"

    def test_epoch_millis_timestamp(self) -> None:
        signal = slack_to_signal(
            {"messageId": "t1", "channelId": "C1", "text": "", "timestamp": 1772443800000}
        )
        assert signal.timestamp.timestamp() == pytest.approx(1772443800)
        assert signal.timestamp.tzinfo is UTC

    def test_requires_channel(self) -> None:
        with pytest.raises(PayloadError):
            slack_to_signal({"messageId": "t1", "text": "hi"})


class TestSheetsToSignal:
    """Tests for sheets_to_signal and describe_sheet_change."""

    def test_describe_change(self) -> None:
        text = describe_sheet_change(
            {
                "sheetName": "Budget",
                "range": "A1:C3",
                "changeType": "edit",
                "newValues": [[1, 2, 3], [4, 5, 6]],
                "user": "dave@acme.com",
            }
        )
        assert text == (
            "Sheet: Budget | Range: A1:C3 | Change: edit | "
            "Affected: 2 rows, 3 columns | By: dave@acme.com"
        )

    def test_signal_fields(self) -> None:
        fixed = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)
        signal = sheets_to_signal(
            {"spreadsheetId": "sp1", "spreadsheetName": "Budget 2026", "changeType": "insert"},
            now=lambda: fixed,
        )
        assert signal.id == f"sheet-sp1-{int(fixed.timestamp() * 1000)}"
        assert signal.subject == "insert in Budget 2026"
        assert signal.sender == "system"

    def test_requires_spreadsheet_id(self) -> None:
        with pytest.raises(PayloadError):
            sheets_to_signal({"sheetName": "x"})


# -------------------------------------------------------------------
# Intake
# -------------------------------------------------------------------


class TestSignalIntake:
    """Tests for SignalIntake."""

    def test_handle_admits_with_priority(self) -> None:
        gate = AdmissionGate()
        intake = SignalIntake(EventHub(), gate)

        signal = intake.handle(
            HubEvent(
                topic=Topic.GMAIL_NEW_MESSAGE,
                payload={"data": _gmail_payload(), "priority": "high"},
            )
        )

        assert signal is not None
        queued = gate.dequeue()
        assert queued.signal.id == "gmail-m-1"
        assert queued.priority is Priority.HIGH
        assert intake.stats()["admitted"] == 1
        assert intake.stats()["email"] == 1

    def test_handle_invalid_payload_counts_error(self) -> None:
        intake = SignalIntake(EventHub(), AdmissionGate())
        result = intake.handle(HubEvent(topic=Topic.GMAIL_NEW_MESSAGE, payload={}))
        assert result is None
        assert intake.stats()["errors"] == 1

    def test_handle_invalid_priority_counts_error(self) -> None:
        intake = SignalIntake(EventHub(), AdmissionGate())
        result = intake.handle(
            HubEvent(
                topic=Topic.GMAIL_NEW_MESSAGE,
                payload={"data": _gmail_payload(), "priority": "extreme"},
            )
        )
        assert result is None
        assert intake.stats()["errors"] == 1

    def test_handle_counts_drops(self) -> None:
        gate = AdmissionGate(max_queue_size=1)
        intake = SignalIntake(EventHub(), gate)
        intake.handle(HubEvent(topic=Topic.GMAIL_NEW_MESSAGE, payload=_gmail_payload()))
        intake.handle(
            HubEvent(topic=Topic.GMAIL_NEW_MESSAGE, payload=_gmail_payload(messageId="m-2"))
        )
        assert intake.stats()["dropped"] == 1

    def test_outbound_topics_ignored(self) -> None:
        intake = SignalIntake(EventHub(), AdmissionGate())
        assert intake.handle(HubEvent(topic=Topic.ACTION_READY, payload={})) is None
        assert intake.stats()["received"] == 0

    async def test_listens_on_hub(self) -> None:
        hub = EventHub()
        gate = AdmissionGate()
        intake = SignalIntake(hub, gate)
        intake.start()
        assert intake.listening

        await hub.emit(Topic.SLACK_NEW_MESSAGE, {"messageId": "t1", "channelId": "C1", "text": "x"})
        for _ in range(20):
            if gate.size:
                break
            await asyncio.sleep(0.01)
        await intake.stop()

        assert gate.size == 1
        assert not intake.listening
        assert hub.subscriber_count == 0
