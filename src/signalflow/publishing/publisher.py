"""Publication auditor.

Validates decisions, records each one in the audit store and emits the
matching outbound event. Failed emissions wait in a bounded retry list that
a periodic timer drains one entry at a time; after ``max_retry_attempts``
failed emissions the record is marked ``failed``.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from signalflow.errors import EmissionError
from signalflow.events import EventHub, Topic
from signalflow.logging import get_logger
from signalflow.models import ActionDecision, Signal
from signalflow.publishing.audit import AuditStore, PublicationStatus, PublishedAction
from signalflow.utils import PeriodicTask, new_id

if TYPE_CHECKING:
    from signalflow.config import Settings
    from signalflow.reasoning.pipeline import PipelineResult

log = get_logger("signalflow.publishing.publisher")

REQUIRED_FIELDS = ("action", "action_params", "confidence")

FailureListener = Callable[[PublishedAction], None]


@dataclass
class _RetryEntry:
    publication_id: str
    topic: Topic


def missing_fields(decision: dict[str, Any]) -> list[str]:
    return [name for name in REQUIRED_FIELDS if decision.get(name) is None]


class PublicationAuditor:
    """Publish decisions with an audit trail and bounded emission retries."""

    def __init__(
        self,
        hub: EventHub,
        store: AuditStore | None = None,
        *,
        max_retry_attempts: int = 3,
        retry_interval: float = 5.0,
        max_retry_queue: int = 100,
    ) -> None:
        self._hub = hub
        self._store = store or AuditStore()
        self._max_retry_attempts = max_retry_attempts
        self._max_retry_queue = max_retry_queue
        self._retries: deque[_RetryEntry] = deque()
        self._lock = asyncio.Lock()
        self._timer = PeriodicTask("publication-retry", retry_interval, self.retry_next)
        self._failure_listeners: list[FailureListener] = []

        self._emitted = 0
        self._emission_failures = 0
        self._retry_overflows = 0

    @classmethod
    def from_settings(cls, settings: Settings, hub: EventHub) -> PublicationAuditor:
        return cls(
            hub,
            AuditStore(max_entries=settings.max_audit_entries),
            max_retry_attempts=settings.max_retry_attempts,
            retry_interval=settings.retry_interval,
            max_retry_queue=settings.max_retry_queue,
        )

    @property
    def store(self) -> AuditStore:
        return self._store

    @property
    def retry_queue_size(self) -> int:
        return len(self._retries)

    def get(self, publication_id: str) -> PublishedAction | None:
        return self._store.get(publication_id)

    def add_failure_listener(self, listener: FailureListener) -> None:
        """Call ``listener`` with each record that fails terminally."""
        self._failure_listeners.append(listener)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(
        self,
        decision: ActionDecision | dict[str, Any],
        signal: Signal,
        result: PipelineResult | None = None,
    ) -> PublishedAction:
        """Audit and emit a decision.

        Invalid decisions are recorded as rejected and announced with
        ``action:rejected``; they are never retried.
        """
        if isinstance(decision, ActionDecision):
            raw = decision.model_dump(mode="json")
        else:
            raw = dict(decision)
        problems = [f"missing {name}" for name in missing_fields(raw)]
        if not problems:
            try:
                raw = ActionDecision.model_validate({"signal_id": signal.id, **raw}).model_dump(
                    mode="json"
                )
            except ValidationError as exc:
                problems = [f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors()]
        if problems:
            return await self.reject(signal, "; ".join(problems), decision=raw)

        if result is not None:
            raw["pipeline"] = {
                "confidence": result.confidence,
                "requires_human_review": result.requires_human_review,
                "warnings": len(result.warnings),
            }
            if result.requires_human_review:
                raw["requires_approval"] = True

        needs_approval = bool(raw.get("requires_approval"))
        topic = Topic.ACTION_REQUIRES_APPROVAL if needs_approval else Topic.ACTION_READY
        status = (
            PublicationStatus.PENDING_APPROVAL if needs_approval else PublicationStatus.PUBLISHED
        )
        record = self._new_record(signal, raw, status, topic)

        async with self._lock:
            self._store.add(record)
            await self._emit(record, topic)
        log.info(
            "action_published",
            publication_id=record.publication_id,
            signal_id=signal.id,
            action=raw.get("action"),
            status=str(record.status),
            delivered=record.delivered,
        )
        return record

    async def reject(
        self,
        signal: Signal,
        reason: str,
        *,
        decision: dict[str, Any] | None = None,
    ) -> PublishedAction:
        """Record a rejection for ``signal`` and emit ``action:rejected`` once."""
        record = self._new_record(
            signal, dict(decision or {}), PublicationStatus.REJECTED, Topic.ACTION_REJECTED,
            note=reason,
        )
        record.last_error = reason
        async with self._lock:
            self._store.add(record)
            try:
                await self._hub.emit(Topic.ACTION_REJECTED, self._payload(record))
                record.delivered = True
                self._emitted += 1
            except EmissionError as exc:
                self._emission_failures += 1
                log.warning(
                    "rejection_emit_failed",
                    publication_id=record.publication_id,
                    error=str(exc),
                )
        log.warning(
            "action_rejected",
            publication_id=record.publication_id,
            signal_id=signal.id,
            reason=reason,
        )
        return record

    async def resolve_approval(
        self,
        publication_id: str,
        approved: bool,
        *,
        reviewer: str,
        reason: str | None = None,
        modifications: dict[str, Any] | None = None,
    ) -> PublishedAction:
        """Apply a review outcome and re-emit the publication.

        Only a ``pending_approval`` record can be resolved; any other record is
        returned unchanged.

        Raises:
            KeyError: If the publication id is unknown.
        """
        async with self._lock:
            record = self._store.get(publication_id)
            if record is None:
                raise KeyError(publication_id)
            if record.status is not PublicationStatus.PENDING_APPROVAL:
                log.warning(
                    "approval_resolution_ignored",
                    publication_id=publication_id,
                    status=str(record.status),
                    reviewer=reviewer,
                )
                return record
            if modifications:
                params = dict(record.decision.get("action_params") or {})
                params.update(modifications)
                record.decision["action_params"] = params
            record.decision["reviewed_by"] = reviewer

            if approved:
                record.transition(PublicationStatus.APPROVED, f"approved by {reviewer}")
                topic = Topic.ACTION_READY
            else:
                note = f"rejected by {reviewer}" + (f": {reason}" if reason else "")
                record.transition(PublicationStatus.REJECTED, note)
                record.last_error = reason
                topic = Topic.ACTION_REJECTED
            # Fresh delivery budget for the re-emission
            record.event_type = str(topic)
            record.retry_count = 0
            record.delivered = False
            self._drop_retries(publication_id)
            await self._emit(record, topic)

        log.info(
            "approval_resolved",
            publication_id=publication_id,
            approved=approved,
            reviewer=reviewer,
            delivered=record.delivered,
        )
        return record

    def mark_executed(self, publication_id: str) -> bool:
        """Record that the executor carried the action out."""
        record = self._store.get(publication_id)
        if record is None:
            return False
        if record.status not in (PublicationStatus.PUBLISHED, PublicationStatus.APPROVED):
            log.warning(
                "mark_executed_invalid_status",
                publication_id=publication_id,
                status=str(record.status),
            )
            return False
        record.transition(PublicationStatus.EXECUTED)
        return True

    # ------------------------------------------------------------------
    # Emission and retry
    # ------------------------------------------------------------------

    async def _emit(self, record: PublishedAction, topic: Topic) -> None:
        """Emit once; on failure queue a retry or fail terminally. Caller holds the lock."""
        try:
            await self._hub.emit(topic, self._payload(record))
        except EmissionError as exc:
            self._emission_failures += 1
            record.retry_count += 1
            record.last_error = str(exc)
            log.warning(
                "action_emit_failed",
                publication_id=record.publication_id,
                topic=str(topic),
                attempt=record.retry_count,
                error=str(exc),
            )
            if record.retry_count >= self._max_retry_attempts:
                self._mark_failed(record, f"emission failed {record.retry_count} times")
                log.error(
                    "action_publication_failed",
                    publication_id=record.publication_id,
                    attempts=record.retry_count,
                )
            elif len(self._retries) >= self._max_retry_queue:
                self._retry_overflows += 1
                log.error("retry_queue_full", publication_id=record.publication_id)
                self._mark_failed(record, "retry queue full")
            else:
                self._retries.append(_RetryEntry(record.publication_id, topic))
            return

        self._emitted += 1
        record.delivered = True
        record.last_error = None

    async def retry_next(self) -> bool:
        """Re-attempt the oldest queued emission. Returns True if one was delivered."""
        async with self._lock:
            if not self._retries:
                return False
            entry = self._retries.popleft()
            record = self._store.get(entry.publication_id)
            if record is None or record.status is PublicationStatus.FAILED:
                return False
            await self._emit(record, entry.topic)
            if record.delivered:
                record.history.append(
                    {
                        "status": str(record.status),
                        "at": record.updated_at.isoformat(),
                        "note": f"delivered after {record.retry_count} failed attempts",
                    }
                )
                log.info(
                    "action_retry_delivered",
                    publication_id=record.publication_id,
                    attempts=record.retry_count,
                )
            return record.delivered

    def _drop_retries(self, publication_id: str) -> None:
        self._retries = deque(e for e in self._retries if e.publication_id != publication_id)

    def _mark_failed(self, record: PublishedAction, note: str) -> None:
        record.transition(PublicationStatus.FAILED, note)
        for listener in self._failure_listeners:
            try:
                listener(record)
            except Exception as exc:
                log.error(
                    "failure_listener_error",
                    publication_id=record.publication_id,
                    error=str(exc),
                )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _new_record(
        signal: Signal,
        decision: dict[str, Any],
        status: PublicationStatus,
        topic: Topic,
        *,
        note: str | None = None,
    ) -> PublishedAction:
        record = PublishedAction(
            publication_id=new_id("pub"),
            correlation_id=str(decision.get("decision_id") or new_id("corr")),
            signal_id=signal.id,
            signal_source=signal.source,
            decision=decision,
            status=status,
            event_type=str(topic),
        )
        record.transition(status, note)
        return record

    @staticmethod
    def _payload(record: PublishedAction) -> dict[str, Any]:
        decision = record.decision
        return {
            "publication_id": record.publication_id,
            "correlation_id": record.correlation_id,
            "signal_id": record.signal_id,
            "source": record.signal_source,
            "status": str(record.status),
            "action": decision.get("action"),
            "action_params": decision.get("action_params"),
            "confidence": decision.get("confidence"),
            "reasoning": decision.get("reasoning"),
            "requires_approval": bool(decision.get("requires_approval")),
            "error": record.last_error,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._timer.start()

    async def stop(self) -> None:
        await self._timer.stop()

    def stats(self) -> dict[str, Any]:
        return {
            "total": len(self._store),
            "by_status": self._store.counts(),
            "emitted": self._emitted,
            "emission_failures": self._emission_failures,
            "retry_queue": len(self._retries),
            "retry_overflows": self._retry_overflows,
        }
