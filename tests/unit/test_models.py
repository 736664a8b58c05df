"""Unit tests for the core data models."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from signalflow.models import (
    TASK_CREATING_ACTIONS,
    ActionDecision,
    ActionType,
    Classification,
    Priority,
    Signal,
)


class TestPriority:
    """Tests for Priority ranking."""

    def test_rank_order(self) -> None:
        assert Priority.HIGH.rank > Priority.NORMAL.rank > Priority.LOW.rank

    def test_from_string(self) -> None:
        assert Priority("high") is Priority.HIGH


class TestSignal:
    """Tests for the Signal dataclass."""

    def test_is_frozen(self) -> None:
        signal = Signal(id="s-1", source="email", body="hello")
        with pytest.raises(AttributeError):
            signal.body = "changed"  # type: ignore[misc]

    def test_text_joins_subject_and_body(self) -> None:
        signal = Signal(id="s-1", source="email", subject="Invoice", body="Please pay")
        assert signal.text == "Invoice Please pay"

    def test_text_without_subject(self) -> None:
        assert Signal(id="s-1", source="slack", body="hi").text == " hi"

    def test_dict_round_trip(self) -> None:
        ts = datetime(2026, 3, 2, 9, 30, tzinfo=UTC)
        signal = Signal(
            id="s-1",
            source="email",
            subject="Hello",
            body="Body",
            sender="alice@acme.com",
            timestamp=ts,
        )
        assert Signal.from_dict(signal.to_dict()) == signal

    def test_from_dict_accepts_z_suffix(self) -> None:
        signal = Signal.from_dict({"id": "s-1", "timestamp": "2026-03-02T09:30:00Z"})
        assert signal.timestamp == datetime(2026, 3, 2, 9, 30, tzinfo=UTC)
        assert signal.source == "unknown"
        assert signal.body == ""

    def test_from_dict_naive_timestamp_is_utc(self) -> None:
        signal = Signal.from_dict({"id": "s-1", "timestamp": "2026-03-02T09:30:00"})
        assert signal.timestamp == datetime(2026, 3, 2, 9, 30, tzinfo=UTC)

    def test_naive_datetime_is_utc(self) -> None:
        signal = Signal(id="s-1", source="slack", body="", timestamp=datetime(2026, 3, 2, 9))
        assert signal.timestamp.tzinfo is UTC


class TestClassification:
    """Tests for the Classification model."""

    def test_defaults(self) -> None:
        c = Classification()
        assert c.urgency == "medium"
        assert c.confidence == 0.0

    def test_rejects_unknown_urgency(self) -> None:
        with pytest.raises(ValidationError):
            Classification(urgency="whenever")

    def test_rejects_confidence_above_one(self) -> None:
        with pytest.raises(ValidationError):
            Classification(confidence=1.2)


class TestActionDecision:
    """Tests for the ActionDecision model."""

    def test_generates_decision_id(self) -> None:
        d = ActionDecision(signal_id="s-1", action=ActionType.IGNORE)
        assert d.decision_id.startswith("decision-")

    def test_reasoning_is_stripped(self) -> None:
        d = ActionDecision(signal_id="s-1", action="clarify", reasoning="  why  ")
        assert d.reasoning == "why"
        assert d.action is ActionType.CLARIFY

    def test_unknown_action_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ActionDecision(signal_id="s-1", action="launch_rocket")

    def test_task_creating_actions(self) -> None:
        assert ActionType.CREATE_TASK in TASK_CREATING_ACTIONS
        assert ActionType.SCHEDULE_MEETING in TASK_CREATING_ACTIONS
        assert ActionType.IGNORE not in TASK_CREATING_ACTIONS
