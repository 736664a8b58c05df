"""Source adapters: convert inbound hub events into Signals.

Each adapter turns one source's payload (Gmail message, Slack message,
Sheets change) into the normalized ``Signal`` and hands it to the
admission gate with the event's priority hint.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from signalflow.events import EventHub, HubEvent, Subscription, Topic
from signalflow.intake.gate import AdmissionGate
from signalflow.logging import get_logger
from signalflow.models import Priority, Signal
from signalflow.utils import ensure_utc, utcnow

log = get_logger("signalflow.intake.adapters")

# Plain address from a "Name <email>" header
EMAIL_PATTERN = re.compile(r"[\w.+-]+@[\w-]+\.[\w.]+")

# Maximum body length admitted into the pipeline
MAX_BODY_LENGTH = 4000


class PayloadError(ValueError):
    """Raised when an inbound payload is missing required fields."""


def _parse_timestamp(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    if isinstance(raw, int | float):
        # Epoch seconds, or milliseconds for large values
        seconds = raw / 1000 if raw > 1e11 else raw
        return datetime.fromtimestamp(seconds, UTC)
    if isinstance(raw, str) and raw:
        try:
            return ensure_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))
        except ValueError:
            log.debug("unparseable_timestamp", raw=raw)
    return utcnow()


def _truncate(body: str) -> str:
    if len(body) > MAX_BODY_LENGTH:
        return body[:MAX_BODY_LENGTH] + "..."
    return body


def _require(data: dict[str, Any], key: str) -> Any:
    value = data.get(key)
    if value in (None, ""):
        raise PayloadError(f"missing '{key}'")
    return value


def extract_email(raw: str | None) -> str:
    """Extract the plain address from a 'Name <email>' string."""
    if not raw:
        return ""
    match = EMAIL_PATTERN.search(raw)
    if match:
        return match.group(0)
    return raw.strip()


# ---------------------------------------------------------------------------
# Converters
# ---------------------------------------------------------------------------


def gmail_to_signal(data: dict[str, Any]) -> Signal:
    """Convert a ``gmail:new_message`` payload."""
    message_id = _require(data, "messageId")
    body = data.get("body") or data.get("snippet") or ""
    return Signal(
        id=f"gmail-{message_id}",
        source="email",
        subject=data.get("subject") or None,
        body=_truncate(body),
        sender=data.get("from") or None,
        timestamp=_parse_timestamp(data.get("timestamp")),
    )


def slack_to_signal(data: dict[str, Any]) -> Signal:
    """Convert a ``slack:new_message`` payload."""
    message_id = _require(data, "messageId")
    channel = data.get("channelName") or _require(data, "channelId")
    return Signal(
        id=f"slack-{message_id}",
        source="slack",
        subject=f"Message in #{channel}",
        body=_truncate(data.get("text") or ""),
        sender=data.get("username") or data.get("userId") or None,
        timestamp=_parse_timestamp(data.get("timestamp")),
    )


def describe_sheet_change(data: dict[str, Any]) -> str:
    """Render a sheet change as ``Sheet: x | Range: y | Change: z ...``."""
    parts = [
        f"Sheet: {data.get('sheetName', '')}",
        f"Range: {data.get('range', '')}",
        f"Change: {data.get('changeType', '')}",
    ]
    new_values = data.get("newValues") or []
    if new_values:
        first_row = new_values[0] or []
        parts.append(f"Affected: {len(new_values)} rows, {len(first_row)} columns")
    if data.get("user"):
        parts.append(f"By: {data['user']}")
    return " | ".join(parts)


def sheets_to_signal(data: dict[str, Any], *, now: Callable[[], datetime] = utcnow) -> Signal:
    """Convert a ``sheets:data_changed`` payload."""
    spreadsheet_id = _require(data, "spreadsheetId")
    change_type = data.get("changeType") or "update"
    name = data.get("spreadsheetName") or spreadsheet_id
    stamp = int(now().timestamp() * 1000)
    return Signal(
        id=f"sheet-{spreadsheet_id}-{stamp}",
        source="sheets",
        subject=f"{change_type} in {name}",
        body=describe_sheet_change(data),
        sender=data.get("user") or "system",
        timestamp=_parse_timestamp(data.get("timestamp")),
    )


CONVERTERS: dict[Topic, Callable[[dict[str, Any]], Signal]] = {
    Topic.GMAIL_NEW_MESSAGE: gmail_to_signal,
    Topic.SLACK_NEW_MESSAGE: slack_to_signal,
    Topic.SHEETS_DATA_CHANGED: sheets_to_signal,
}


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------


class SignalIntake:
    """Subscribes to inbound topics and feeds the admission gate."""

    def __init__(self, hub: EventHub, gate: AdmissionGate) -> None:
        self._hub = hub
        self._gate = gate
        self._subscription: Subscription | None = None
        self._task: asyncio.Task[None] | None = None
        self._stats: dict[str, int] = {
            "received": 0,
            "admitted": 0,
            "dropped": 0,
            "errors": 0,
            "email": 0,
            "slack": 0,
            "sheets": 0,
        }

    @property
    def listening(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.listening:
            log.warning("intake_already_listening")
            return
        self._subscription = self._hub.subscribe(CONVERTERS.keys())
        self._task = asyncio.create_task(self._listen(self._subscription), name="signal-intake")
        log.info("intake_started", topics=[str(t) for t in CONVERTERS])

    async def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        log.info("intake_stopped", **self._stats)

    async def _listen(self, subscription: Subscription) -> None:
        async for event in subscription:
            self.handle(event)

    def handle(self, event: HubEvent) -> Signal | None:
        """Convert one hub event and admit it. Returns the Signal if admitted."""
        converter = CONVERTERS.get(event.topic)
        if converter is None:
            return None

        self._stats["received"] += 1
        payload = event.payload.get("data", event.payload)
        try:
            signal = converter(payload)
            priority = Priority(event.payload.get("priority", Priority.NORMAL))
        except (ValueError, TypeError) as exc:
            self._stats["errors"] += 1
            log.error("inbound_event_invalid", topic=str(event.topic), error=str(exc))
            return None

        self._stats[signal.source] = self._stats.get(signal.source, 0) + 1
        if self._gate.enqueue(signal, priority):
            self._stats["admitted"] += 1
            log.debug(
                "inbound_signal_admitted",
                signal_id=signal.id,
                source=signal.source,
                priority=str(priority),
            )
            return signal

        self._stats["dropped"] += 1
        return None

    def stats(self) -> dict[str, int]:
        return dict(self._stats)
