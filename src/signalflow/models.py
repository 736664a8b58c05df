"""Core data models shared across SignalFlow.

Signals and queue records are plain dataclasses with to_dict/from_dict for
serialisation. Oracle-produced judgments (classifications and decisions) are
pydantic models so that untrusted JSON is validated at the boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from signalflow.utils import ensure_utc, new_id, utcnow

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Priority(StrEnum):
    """Admission priority hint carried by inbound events."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Numeric rank; higher is more important."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 3, Priority.NORMAL: 2, Priority.LOW: 1}


class ActionType(StrEnum):
    """Actions the downstream executor understands."""

    CREATE_TASK = "create_task"
    SCHEDULE_MEETING = "schedule_meeting"
    SEND_NOTIFICATION = "send_notification"
    UPDATE_DOCUMENT = "update_document"
    DELEGATE = "delegate"
    ESCALATE = "escalate"
    CLARIFY = "clarify"
    IGNORE = "ignore"


# Actions that create work items and therefore need task details extracted
TASK_CREATING_ACTIONS = frozenset({ActionType.CREATE_TASK, ActionType.SCHEDULE_MEETING})


class ProcessingStrategy(StrEnum):
    """How the decision workflow treats a signal before calling the oracle."""

    IMMEDIATE = "immediate"
    CHECK_CONFLICTS = "check_conflicts"
    BATCH = "batch"


Urgency = Literal["low", "medium", "high", "critical"]
Importance = Literal["low", "medium", "high"]


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Signal:
    """A normalized unit of incoming activity. Immutable once created."""

    id: str
    source: str
    body: str
    subject: str | None = None
    sender: str | None = None
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        # Mixed naive and aware timestamps cannot be compared when grouping
        object.__setattr__(self, "timestamp", ensure_utc(self.timestamp))

    @property
    def text(self) -> str:
        """Subject and body joined, for keyword heuristics."""
        return f"{self.subject or ''} {self.body}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "source": self.source,
            "subject": self.subject,
            "body": self.body,
            "sender": self.sender,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Signal:
        """Create from dictionary."""
        raw_ts = data.get("timestamp")
        if isinstance(raw_ts, str):
            timestamp = datetime.fromisoformat(raw_ts.replace("Z", "+00:00"))
        elif isinstance(raw_ts, datetime):
            timestamp = raw_ts
        else:
            timestamp = utcnow()
        return cls(
            id=data["id"],
            source=data.get("source", "unknown"),
            subject=data.get("subject"),
            body=data.get("body", ""),
            sender=data.get("sender"),
            timestamp=timestamp,
        )


@dataclass
class QueuedSignal:
    """A signal owned by the admission gate until it is dequeued."""

    signal: Signal
    priority: Priority
    enqueued_at: datetime = field(default_factory=utcnow)
    retry_count: int = 0
    sequence: int = 0


# ---------------------------------------------------------------------------
# Oracle judgments
# ---------------------------------------------------------------------------


class Classification(BaseModel):
    """Urgency/importance/category judgment for a signal."""

    category: str = Field(default="unknown")
    urgency: Urgency = "medium"
    importance: Importance = "medium"
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = ""
    suggested_actions: list[str] = Field(default_factory=list)
    requires_immediate: bool = False


class DecisionValidation(BaseModel):
    """Outcome of business-rule validation for a decision."""

    valid: bool = True
    warnings: list[str] = Field(default_factory=list)
    blockers: list[str] = Field(default_factory=list)
    rules_applied: list[str] = Field(default_factory=list)
    adjustments: dict[str, Any] = Field(default_factory=dict)
    validated_at: datetime = Field(default_factory=utcnow)


class ActionDecision(BaseModel):
    """A recommended action plus parameters for a signal."""

    decision_id: str = Field(default_factory=lambda: new_id("decision"))
    signal_id: str
    action: ActionType
    action_params: dict[str, Any] | None = Field(default_factory=dict)
    reasoning: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    requires_approval: bool = False
    strategy: ProcessingStrategy | None = None
    validation: DecisionValidation | None = None
    references: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    processing_time_ms: float = 0.0

    @field_validator("reasoning")
    @classmethod
    def strip_reasoning(cls, v: str) -> str:
        return v.strip()
