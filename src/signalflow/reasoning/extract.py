"""Task and meeting detail extraction.

Runs only for actions that create work items. Uses regex/keyword matching
over the cleaned signal text; values the oracle already supplied in the
decision parameters take precedence.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from signalflow.logging import get_logger
from signalflow.models import ActionType, Classification, Signal

log = get_logger("signalflow.reasoning.extract")

MAX_TITLE_LENGTH = 80

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
_MONTHS = ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec")

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

# "by Friday", "due tomorrow", "before 2025-03-14", "until 3/15"
_DUE_PATTERN = re.compile(
    r"\b(?:by|before|until|due)\s+"
    r"(tomorrow|today|tonight|eod|end of (?:day|week)|"
    r"(?:next\s+)?(?:monday|tuesday|wednesday|thursday|friday|saturday|sunday)|"
    r"next\s+week|"
    r"\d{4}-\d{2}-\d{2}|"
    r"\d{1,2}/\d{1,2}(?:/\d{2,4})?)",
    re.IGNORECASE,
)

# "on March 15"
_MONTH_DAY_PATTERN = re.compile(
    r"\bon\s+(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)\w*\s+(\d{1,2})",
    re.IGNORECASE,
)

# "TODO: ...", "ACTION: ..."
_EXPLICIT_TASK = re.compile(r"\b(?:TODO|TASK|ACTION)\s*:\s*(.+)", re.IGNORECASE)

# "please review the deck", "can you send the report"
_REQUEST_PATTERN = re.compile(
    r"\b(?:please|can you|could you|would you|need to|have to|must)\s+"
    r"((?:handle|do|finish|complete|send|prepare|write|create|build|fix|"
    r"review|update|check|look into|work on|follow up|set up|schedule)\b[^.!?\n]*)",
    re.IGNORECASE,
)

_MEETING_PATTERN = re.compile(
    r"\b(?:let'?s\s+(?:meet|schedule|sync|catch\s+up)|"
    r"schedule\s+a\s+(?:meeting|call|sync)|"
    r"meeting\s+(?:at|on|tomorrow|next))",
    re.IGNORECASE,
)

_TIME_PATTERN = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*(am|pm)\b", re.IGNORECASE)
_DURATION_PATTERN = re.compile(r"\b(\d{1,3})\s*(?:min(?:ute)?s?|(hours?|hrs?))\b", re.IGNORECASE)
_EMAIL_PATTERN = re.compile(r"\b[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}\b")
_ASSIGN_PATTERN = re.compile(r"\b(?:assign(?:ed)?\s+to|owner:)\s+@?([\w.+-]+(?:@[\w.-]+)?)", re.I)


@dataclass
class TaskDetails:
    """Extracted work item details."""

    title: str
    description: str = ""
    assignee: str | None = None
    due_date: date | None = None
    priority: str = "Medium"
    labels: list[str] = field(default_factory=list)
    attendees: list[str] = field(default_factory=list)
    meeting_time: str | None = None
    duration_minutes: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "labels": list(self.labels),
        }
        if self.assignee:
            data["assignee"] = self.assignee
        if self.due_date:
            data["due_date"] = self.due_date.isoformat()
        if self.attendees:
            data["attendees"] = list(self.attendees)
        if self.meeting_time:
            data["meeting_time"] = self.meeting_time
        if self.duration_minutes:
            data["duration_minutes"] = self.duration_minutes
        return data


def resolve_due_date(phrase: str, today: date) -> date | None:
    """Resolve a due phrase such as 'friday' or '3/15' against ``today``."""
    p = phrase.strip().lower()
    if p in ("today", "tonight", "eod", "end of day"):
        return today
    if p == "tomorrow":
        return today + timedelta(days=1)
    if p == "end of week":
        return today + timedelta(days=(4 - today.weekday()) % 7)
    if p == "next week":
        return today + timedelta(days=7 - today.weekday())

    next_prefix = p.startswith("next ")
    day_name = p.removeprefix("next ").strip()
    if day_name in _WEEKDAYS:
        ahead = (_WEEKDAYS.index(day_name) - today.weekday()) % 7 or 7
        if next_prefix and ahead < 7:
            ahead += 7
        return today + timedelta(days=ahead)

    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", p):
        try:
            return date.fromisoformat(p)
        except ValueError:
            return None

    m = re.fullmatch(r"(\d{1,2})/(\d{1,2})(?:/(\d{2,4}))?", p)
    if m:
        month, day = int(m.group(1)), int(m.group(2))
        year = int(m.group(3)) if m.group(3) else today.year
        if year < 100:
            year += 2000
        try:
            resolved = date(year, month, day)
        except ValueError:
            return None
        if not m.group(3) and resolved < today:
            resolved = resolved.replace(year=today.year + 1)
        return resolved
    return None


def _find_due_date(text: str, today: date) -> date | None:
    match = _DUE_PATTERN.search(text)
    if match:
        resolved = resolve_due_date(match.group(1), today)
        if resolved:
            return resolved
    match = _MONTH_DAY_PATTERN.search(text)
    if match:
        month = _MONTHS.index(match.group(1).lower()[:3]) + 1
        try:
            resolved = date(today.year, month, int(match.group(2)))
        except ValueError:
            return None
        return resolved if resolved >= today else resolved.replace(year=today.year + 1)
    return None


def _title_for(signal: Signal, text: str) -> str:
    explicit = _EXPLICIT_TASK.search(text)
    if explicit:
        title = explicit.group(1).strip()
    else:
        request = _REQUEST_PATTERN.search(text)
        if request:
            title = request.group(1).strip()
            title = title[0].upper() + title[1:]
        else:
            title = (signal.subject or signal.body.split("\n", 1)[0]).strip()
    title = re.sub(r"^(?:re|fwd?|fw)\s*:\s*", "", title, flags=re.IGNORECASE).strip()
    if len(title) > MAX_TITLE_LENGTH:
        title = title[: MAX_TITLE_LENGTH - 3].rstrip() + "..."
    return title or "Follow up on signal"


def _priority_for(classification: Classification | None) -> str:
    if classification is None:
        return "Medium"
    if classification.urgency in ("critical", "high"):
        return "High"
    if classification.urgency == "low" and classification.importance == "low":
        return "Low"
    return "Medium"


def extract_task_details(
    signal: Signal,
    action: ActionType,
    classification: Classification | None = None,
    params: dict[str, Any] | None = None,
    *,
    today: date | None = None,
) -> TaskDetails:
    """Extract task (or meeting) details for a work-creating action."""
    params = params or {}
    today = today or datetime.now().date()
    text = f"{signal.subject or ''}\n{signal.body}"

    details = TaskDetails(
        title=params.get("title") or _title_for(signal, text),
        description=params.get("description") or signal.body[:1000],
        priority=params.get("priority") or _priority_for(classification),
    )

    raw_due = params.get("due_date")
    if isinstance(raw_due, str):
        try:
            details.due_date = date.fromisoformat(raw_due[:10])
        except ValueError:
            details.due_date = _find_due_date(text, today)
    else:
        details.due_date = _find_due_date(text, today)

    assignee = params.get("assignee")
    if not assignee:
        match = _ASSIGN_PATTERN.search(text)
        assignee = match.group(1) if match else None
    details.assignee = assignee

    if classification is not None and classification.category:
        details.labels.append(classification.category)
    details.labels.append(signal.source)

    if action is ActionType.SCHEDULE_MEETING or _MEETING_PATTERN.search(text):
        addresses = {a.lower() for a in _EMAIL_PATTERN.findall(text)}
        if signal.sender and "@" in signal.sender:
            addresses.add(signal.sender.lower())
        details.attendees = sorted(addresses)
        time_match = _TIME_PATTERN.search(text)
        if time_match:
            details.meeting_time = time_match.group(0).lower()
        duration = _DURATION_PATTERN.search(text)
        if duration:
            amount = int(duration.group(1))
            details.duration_minutes = amount * 60 if duration.group(2) else amount
        elif action is ActionType.SCHEDULE_MEETING:
            details.duration_minutes = 30

    log.debug(
        "task_details_extracted",
        signal_id=signal.id,
        action=str(action),
        has_due_date=details.due_date is not None,
        has_assignee=details.assignee is not None,
    )
    return details
