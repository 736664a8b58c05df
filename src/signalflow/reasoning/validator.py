"""Business-rule validation of oracle decisions.

Rules run against the decision, the signal it answers and the surrounding
context (open related tasks, queue depth). Blockers make the decision
invalid; warnings only annotate it. Either may carry adjustments that
``apply_adjustments`` folds back into the decision.
"""

from __future__ import annotations

import re
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Protocol

from signalflow.logging import get_logger
from signalflow.models import (
    TASK_CREATING_ACTIONS,
    ActionDecision,
    ActionType,
    Classification,
    DecisionValidation,
    Signal,
)

log = get_logger("signalflow.reasoning.validator")

# ---------------------------------------------------------------------------
# Thresholds and reference data
# ---------------------------------------------------------------------------

DUPLICATE_SIMILARITY = 0.80
MAX_TASKS_PER_HOUR = 10
TASK_RATE_WINDOW_SECONDS = 3600.0
HIGH_QUEUE_THRESHOLD = 20
BORDERLINE_CONFIDENCE_MIN = 0.70
BORDERLINE_CONFIDENCE_MAX = 0.85
BLOCKER_CONFIDENCE_PENALTY = 0.10

# Exact addresses, or prefixes ending in "@" that match any domain
VIP_SENDERS = (
    "ceo@company.com",
    "founder@company.com",
    "president@company.com",
    "client@",
    "customer@",
    "board@company.com",
    "executive@company.com",
)

HIGH_IMPACT_KEYWORDS: dict[str, tuple[str, ...]] = {
    "financial": (
        "payment", "invoice", "transaction", "refund", "charge", "billing",
        "purchase", "money", "cost", "budget", "expense",
    ),
    "external communication": (
        "client", "customer", "public", "press", "media", "announcement",
        "release", "external", "partner",
    ),
    "destructive operation": (
        "delete", "remove", "drop", "destroy", "wipe", "terminate", "cancel",
    ),
    "system change": (
        "production", "deploy", "release", "migrate", "upgrade", "downgrade",
        "database", "server", "infrastructure",
    ),
}

US_HOLIDAYS = frozenset(
    date.fromisoformat(d)
    for d in (
        "2025-01-01", "2025-01-20", "2025-02-17", "2025-05-26", "2025-07-04",
        "2025-09-01", "2025-10-13", "2025-11-11", "2025-11-27", "2025-12-25",
        "2026-01-01", "2026-01-19", "2026-02-16", "2026-05-25", "2026-06-19",
        "2026-07-03", "2026-09-07", "2026-10-12", "2026-11-11", "2026-11-26",
        "2026-12-25",
    )
)

# Task priority ladder, most to least urgent
PRIORITY_LADDER = ("Urgent", "High", "Medium", "Low")


@dataclass
class RelatedTask:
    """An existing work item that a new decision may duplicate."""

    id: str
    title: str
    status: str = "open"


@dataclass
class DecisionContext:
    """What the validator and strategy selection know beyond the signal."""

    related_tasks: list[RelatedTask] = field(default_factory=list)
    queue_depth: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "related_tasks": [t.title for t in self.related_tasks if t.status != "done"],
            "queue_depth": self.queue_depth,
        }


class ContextProvider(Protocol):
    """Supplies related tasks and system load for a signal."""

    async def context_for(self, signal: Signal) -> DecisionContext: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _title_words(title: str) -> set[str]:
    normalized = re.sub(r"[^a-z0-9\s]", "", title.lower())
    return {w for w in normalized.split() if len(w) > 2}


def title_similarity(a: str, b: str) -> float:
    """Word-level Jaccard similarity of two task titles (words > 2 chars)."""
    wa, wb = _title_words(a), _title_words(b)
    if not wa or not wb:
        return 0.0
    return len(wa & wb) / len(wa | wb)


def is_vip(sender: str) -> bool:
    s = sender.lower()
    return any(vip in s if vip.endswith("@") else s == vip for vip in VIP_SENDERS)


def next_business_day(day: date, holidays: Iterable[date] = US_HOLIDAYS) -> date:
    """First day after ``day`` that is neither a weekend nor a holiday."""
    holidays = frozenset(holidays)
    candidate = day + timedelta(days=1)
    while candidate.weekday() >= 5 or candidate in holidays:
        candidate += timedelta(days=1)
    return candidate


def _parse_due(raw: Any) -> date | None:
    if isinstance(raw, date):
        return raw
    if isinstance(raw, str):
        try:
            return date.fromisoformat(raw[:10])
        except ValueError:
            return None
    return None


def _downgrade(priority: str) -> str:
    try:
        idx = PRIORITY_LADDER.index(priority)
    except ValueError:
        return priority
    return PRIORITY_LADDER[min(idx + 1, len(PRIORITY_LADDER) - 1)]


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class DecisionValidator:
    """Check decisions against business rules and compute adjustments."""

    def __init__(
        self,
        *,
        max_tasks_per_hour: int = MAX_TASKS_PER_HOUR,
        holidays: Iterable[date] = US_HOLIDAYS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_tasks_per_hour = max_tasks_per_hour
        self._holidays = frozenset(holidays)
        self._clock = clock
        self._task_creations: deque[float] = deque()

    # ------------------------------------------------------------------
    # Rate window
    # ------------------------------------------------------------------

    def _recent_task_count(self) -> int:
        cutoff = self._clock() - TASK_RATE_WINDOW_SECONDS
        while self._task_creations and self._task_creations[0] <= cutoff:
            self._task_creations.popleft()
        return len(self._task_creations)

    def record_task_creation(self, decision_id: str) -> None:
        self._task_creations.append(self._clock())
        log.debug(
            "task_creation_recorded",
            decision_id=decision_id,
            recent_count=self._recent_task_count(),
        )

    def clear_history(self) -> None:
        self._task_creations.clear()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(
        self,
        decision: ActionDecision,
        signal: Signal,
        classification: Classification | None = None,
        context: DecisionContext | None = None,
    ) -> DecisionValidation:
        context = context or DecisionContext()
        params = decision.action_params or {}
        urgency = classification.urgency if classification else "medium"
        warnings: list[str] = []
        blockers: list[str] = []
        adjustments: dict[str, Any] = {}
        rules: list[str] = []
        creates_work = decision.action in TASK_CREATING_ACTIONS

        # Duplicate work items
        title = params.get("title") or signal.subject
        if creates_work and title:
            for task in context.related_tasks:
                if task.status == "done":
                    continue
                score = title_similarity(title, task.title)
                if score >= DUPLICATE_SIMILARITY:
                    blockers.append(
                        f'Duplicate task detected: "{task.title}" ({score * 100:.0f}% similar)'
                    )
                    rules.append("NO_DUPLICATES")
                    break

        # Weekend and holiday due dates
        due = _parse_due(params.get("due_date"))
        if creates_work and due is not None:
            reason = None
            if due.weekday() >= 5:
                reason = f"Task scheduled on {due.strftime('%A')}"
            elif due in self._holidays:
                reason = "Task scheduled on a holiday"
            if reason:
                rules.append("NO_WEEKEND_TASKS")
                if urgency == "critical":
                    warnings.append(f"{reason} but urgency is critical")
                else:
                    moved = next_business_day(due, self._holidays)
                    warnings.append(f"{reason}. Moved to next business day.")
                    adjustments["due_date"] = moved.isoformat()

        # High-impact content
        content = f"{signal.text} {decision.reasoning}".lower()
        categories = [
            name
            for name, keywords in HIGH_IMPACT_KEYWORDS.items()
            if any(kw in content for kw in keywords)
        ]
        if decision.action is ActionType.SEND_NOTIFICATION and params.get("urgent"):
            categories.append("urgent notification")
        if categories and decision.action is not ActionType.IGNORE:
            adjustments["requires_approval"] = True
            warnings.append(
                f"High-impact action detected: {', '.join(categories)}. Manual approval required."
            )
            rules.append("HIGH_IMPACT_APPROVAL")

        # VIP senders are never ignored or delegated
        if (
            signal.sender
            and decision.action in (ActionType.IGNORE, ActionType.DELEGATE)
            and is_vip(signal.sender)
        ):
            blockers.append(f"Cannot {decision.action} signal from VIP sender: {signal.sender}")
            adjustments["action"] = str(ActionType.CREATE_TASK)
            adjustments["priority"] = PRIORITY_LADDER[0]
            rules.append("VIP_PROTECTION")

        # Task creation rate
        if decision.action is ActionType.CREATE_TASK:
            count = self._recent_task_count()
            if count >= self._max_tasks_per_hour:
                blockers.append(
                    f"Task creation rate limit exceeded: {count}/"
                    f"{self._max_tasks_per_hour} tasks in last hour"
                )
                adjustments["action"] = str(ActionType.DELEGATE)
                rules.append("RATE_LIMIT")

        self._contextual(decision, context, params, adjustments, warnings)

        result = DecisionValidation(
            valid=not blockers,
            warnings=warnings,
            blockers=blockers,
            rules_applied=rules,
            adjustments=adjustments,
        )
        log.info(
            "decision_validated",
            decision_id=decision.decision_id,
            valid=result.valid,
            warnings=len(warnings),
            blockers=len(blockers),
            rules=rules,
        )
        return result

    def _contextual(
        self,
        decision: ActionDecision,
        context: DecisionContext,
        params: dict[str, Any],
        adjustments: dict[str, Any],
        warnings: list[str],
    ) -> None:
        priority = params.get("priority")
        if (
            context.queue_depth >= HIGH_QUEUE_THRESHOLD
            and isinstance(priority, str)
            and "priority" not in adjustments
            and priority in PRIORITY_LADDER[:-1]
        ):
            adjustments["priority"] = _downgrade(priority)
            warnings.append(
                f"Queue depth is high ({context.queue_depth}). "
                f"Priority downgraded to {adjustments['priority']}."
            )

        if BORDERLINE_CONFIDENCE_MIN <= decision.confidence < BORDERLINE_CONFIDENCE_MAX:
            adjustments["requires_approval"] = True
            warnings.append(
                f"Confidence is borderline ({decision.confidence * 100:.0f}%). "
                "Manual review recommended."
            )

        if decision.action is ActionType.CREATE_TASK:
            description = str(params.get("description") or "")
            many_labels = len(params.get("labels") or []) > 3
            platform = params.get("platform")
            if (len(description) > 500 or many_labels) and platform != "notion":
                adjustments["platform"] = "notion"
                warnings.append("Task complexity suggests Notion over Trello")
            elif len(description) < 100 and not many_labels and platform == "notion":
                adjustments["platform"] = "trello"
                warnings.append("Simple task can use Trello")

    # ------------------------------------------------------------------
    # Adjustment
    # ------------------------------------------------------------------

    @staticmethod
    def apply_adjustments(
        decision: ActionDecision, validation: DecisionValidation
    ) -> ActionDecision:
        """Return a copy of ``decision`` with the validation folded in.

        Any blocker forces approval and lowers confidence by 10% per
        blocker; an ``action`` adjustment overrides the action.
        """
        adjustments = validation.adjustments
        params = dict(decision.action_params or {})
        for key in ("priority", "due_date", "platform"):
            if key in adjustments:
                params[key] = adjustments[key]

        confidence = decision.confidence
        if validation.blockers:
            confidence *= max(0.0, 1.0 - BLOCKER_CONFIDENCE_PENALTY * len(validation.blockers))

        action = decision.action
        if "action" in adjustments:
            action = ActionType(adjustments["action"])
            if action is not decision.action:
                log.info(
                    "decision_action_overridden",
                    decision_id=decision.decision_id,
                    original=str(decision.action),
                    action=str(action),
                )

        return decision.model_copy(
            update={
                "action": action,
                "action_params": params,
                "confidence": min(1.0, max(0.0, confidence)),
                "requires_approval": (
                    decision.requires_approval
                    or bool(validation.blockers)
                    or bool(adjustments.get("requires_approval"))
                ),
                "validation": validation,
            }
        )
