"""Unit tests for business-rule validation of decisions."""

from __future__ import annotations

from datetime import date

import pytest

from signalflow.models import ActionDecision, ActionType, Classification, Signal
from signalflow.reasoning.validator import (
    DecisionContext,
    DecisionValidator,
    RelatedTask,
    is_vip,
    next_business_day,
    title_similarity,
)

# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------


class _FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _make_signal(
    subject: str = "Weekly sync",
    body: str = "notes attached",
    sender: str | None = "alice@acme.com",
) -> Signal:
    return Signal(id="s-1", source="email", subject=subject, body=body, sender=sender)


def _make_decision(
    action: ActionType = ActionType.CREATE_TASK,
    confidence: float = 0.9,
    **params,
) -> ActionDecision:
    return ActionDecision(
        signal_id="s-1",
        action=action,
        action_params=params,
        reasoning="Track follow-up",
        confidence=confidence,
    )


# -------------------------------------------------------------------
# Helper functions
# -------------------------------------------------------------------


class TestHelpers:
    """Tests for module-level helpers."""

    def test_title_similarity_ignores_short_words(self) -> None:
        assert title_similarity("Fix a login bug", "fix login bug") == 1.0
        assert title_similarity("a b", "c d") == 0.0

    def test_is_vip_exact_and_prefix(self) -> None:
        assert is_vip("CEO@company.com")
        assert is_vip("client@acme.org")
        assert not is_vip("ceo@other.com")

    def test_next_business_day_skips_weekend(self) -> None:
        assert next_business_day(date(2026, 3, 6)) == date(2026, 3, 9)

    def test_next_business_day_skips_holiday(self) -> None:
        # Thursday before the observed Independence Day holiday
        assert next_business_day(date(2026, 7, 2)) == date(2026, 7, 6)

    def test_context_excludes_done_tasks(self) -> None:
        context = DecisionContext(
            related_tasks=[RelatedTask("t1", "Open"), RelatedTask("t2", "Closed", status="done")],
            queue_depth=4,
        )
        assert context.to_dict() == {"related_tasks": ["Open"], "queue_depth": 4}


# -------------------------------------------------------------------
# Rules
# -------------------------------------------------------------------


class TestRules:
    """Tests for the individual business rules."""

    def test_clean_decision_is_valid(self) -> None:
        validation = DecisionValidator().validate(_make_decision(), _make_signal())
        assert validation.valid
        assert validation.warnings == []
        assert validation.adjustments == {}

    def test_duplicate_task_blocks(self) -> None:
        context = DecisionContext(related_tasks=[RelatedTask("t1", "Weekly sync")])
        validation = DecisionValidator().validate(
            _make_decision(), _make_signal(), context=context
        )
        assert not validation.valid
        assert "NO_DUPLICATES" in validation.rules_applied
        assert "100% similar" in validation.blockers[0]

    def test_done_tasks_are_not_duplicates(self) -> None:
        context = DecisionContext(related_tasks=[RelatedTask("t1", "Weekly sync", status="done")])
        validation = DecisionValidator().validate(
            _make_decision(), _make_signal(), context=context
        )
        assert validation.valid

    def test_weekend_due_date_moved(self) -> None:
        validation = DecisionValidator().validate(
            _make_decision(due_date="2026-03-07"), _make_signal()
        )
        assert validation.valid
        assert validation.adjustments["due_date"] == "2026-03-09"
        assert "Saturday" in validation.warnings[0]

    def test_holiday_due_date_moved(self) -> None:
        validation = DecisionValidator().validate(
            _make_decision(due_date="2026-12-25"), _make_signal()
        )
        assert validation.adjustments["due_date"] == "2026-12-28"

    def test_weekend_due_date_kept_when_critical(self) -> None:
        validation = DecisionValidator().validate(
            _make_decision(due_date="2026-03-07"),
            _make_signal(),
            Classification(urgency="critical"),
        )
        assert "due_date" not in validation.adjustments
        assert "critical" in validation.warnings[0]

    def test_high_impact_requires_approval(self) -> None:
        validation = DecisionValidator().validate(
            _make_decision(), _make_signal(body="Process the invoice for the new server")
        )
        assert validation.valid
        assert validation.adjustments["requires_approval"] is True
        assert "financial" in validation.warnings[0]
        assert "system change" in validation.warnings[0]

    def test_high_impact_ignored_for_ignore(self) -> None:
        validation = DecisionValidator().validate(
            _make_decision(ActionType.IGNORE), _make_signal(body="invoice copy, no action")
        )
        assert "HIGH_IMPACT_APPROVAL" not in validation.rules_applied

    def test_urgent_notification_is_high_impact(self) -> None:
        validation = DecisionValidator().validate(
            _make_decision(ActionType.SEND_NOTIFICATION, urgent=True), _make_signal()
        )
        assert "urgent notification" in validation.warnings[0]

    @pytest.mark.parametrize("action", [ActionType.IGNORE, ActionType.DELEGATE])
    def test_vip_sender_cannot_be_ignored(self, action: ActionType) -> None:
        validation = DecisionValidator().validate(
            _make_decision(action), _make_signal(sender="ceo@company.com")
        )
        assert not validation.valid
        assert validation.adjustments["action"] == "create_task"
        assert validation.adjustments["priority"] == "Urgent"
        assert "VIP_PROTECTION" in validation.rules_applied

    def test_task_rate_limit(self) -> None:
        clock = _FakeClock()
        validator = DecisionValidator(max_tasks_per_hour=2, clock=clock)
        validator.record_task_creation("d1")
        validator.record_task_creation("d2")

        validation = validator.validate(_make_decision(), _make_signal())
        assert not validation.valid
        assert validation.adjustments["action"] == "delegate"
        assert "2/2" in validation.blockers[0]

        clock.now += 3601
        assert validator.validate(_make_decision(), _make_signal()).valid

    def test_high_queue_downgrades_priority(self) -> None:
        validation = DecisionValidator().validate(
            _make_decision(priority="High"),
            _make_signal(),
            context=DecisionContext(queue_depth=25),
        )
        assert validation.adjustments["priority"] == "Medium"

    def test_high_queue_leaves_lowest_priority(self) -> None:
        validation = DecisionValidator().validate(
            _make_decision(priority="Low"),
            _make_signal(),
            context=DecisionContext(queue_depth=25),
        )
        assert "priority" not in validation.adjustments

    def test_borderline_confidence_requires_approval(self) -> None:
        validation = DecisionValidator().validate(_make_decision(confidence=0.75), _make_signal())
        assert validation.adjustments["requires_approval"] is True
        assert "75%" in validation.warnings[0]

    def test_complex_task_moves_to_notion(self) -> None:
        validation = DecisionValidator().validate(
            _make_decision(description="x" * 600, platform="trello"), _make_signal()
        )
        assert validation.adjustments["platform"] == "notion"

    def test_simple_task_moves_to_trello(self) -> None:
        validation = DecisionValidator().validate(
            _make_decision(description="short", platform="notion"), _make_signal()
        )
        assert validation.adjustments["platform"] == "trello"


# -------------------------------------------------------------------
# Adjustment
# -------------------------------------------------------------------


class TestApplyAdjustments:
    """Tests for DecisionValidator.apply_adjustments."""

    def test_blockers_force_approval_and_reduce_confidence(self) -> None:
        validator = DecisionValidator()
        decision = _make_decision(ActionType.IGNORE, confidence=0.9)
        validation = validator.validate(decision, _make_signal(sender="ceo@company.com"))

        adjusted = validator.apply_adjustments(decision, validation)

        assert adjusted.action is ActionType.CREATE_TASK
        assert adjusted.action_params["priority"] == "Urgent"
        assert adjusted.requires_approval
        assert adjusted.confidence == pytest.approx(0.81)
        assert adjusted.validation == validation
        assert decision.action is ActionType.IGNORE

    def test_due_date_adjustment_copied_into_params(self) -> None:
        validator = DecisionValidator()
        decision = _make_decision(due_date="2026-03-07")
        adjusted = validator.apply_adjustments(
            decision, validator.validate(decision, _make_signal())
        )
        assert adjusted.action_params["due_date"] == "2026-03-09"
        assert not adjusted.requires_approval
        assert adjusted.confidence == 0.9

    def test_original_approval_flag_kept(self) -> None:
        validator = DecisionValidator()
        decision = _make_decision().model_copy(update={"requires_approval": True})
        validation = validator.validate(decision, _make_signal())
        adjusted = validator.apply_adjustments(decision, validation)
        assert adjusted.requires_approval
