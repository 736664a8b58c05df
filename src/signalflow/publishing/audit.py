"""Audit trail of published actions.

Every decision handed to the publisher produces exactly one
``PublishedAction`` record. Records are updated in place as their status
moves on and are only removed by an explicit ``trim``.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from signalflow.logging import get_logger
from signalflow.utils import utcnow

log = get_logger("signalflow.publishing.audit")


class PublicationStatus(StrEnum):
    PUBLISHED = "published"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    FAILED = "failed"
    EXECUTED = "executed"


def _parse_dt(raw: Any) -> datetime | None:
    if raw is None or isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


@dataclass
class PublishedAction:
    """Audit record for one decision on its way to the executor."""

    publication_id: str
    correlation_id: str
    signal_id: str
    signal_source: str
    decision: dict[str, Any]
    status: PublicationStatus
    event_type: str
    published_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    retry_count: int = 0
    delivered: bool = False
    last_error: str | None = None
    history: list[dict[str, Any]] = field(default_factory=list)

    @property
    def requires_approval(self) -> bool:
        return bool(self.decision.get("requires_approval"))

    def transition(self, status: PublicationStatus, note: str | None = None) -> None:
        """Move to ``status`` and append the change to the history."""
        self.status = status
        self.updated_at = utcnow()
        entry: dict[str, Any] = {"status": str(status), "at": self.updated_at.isoformat()}
        if note:
            entry["note"] = note
        self.history.append(entry)

    def to_dict(self) -> dict[str, Any]:
        return {
            "publication_id": self.publication_id,
            "correlation_id": self.correlation_id,
            "signal_id": self.signal_id,
            "signal_source": self.signal_source,
            "decision": dict(self.decision),
            "status": str(self.status),
            "event_type": self.event_type,
            "published_at": self.published_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "retry_count": self.retry_count,
            "delivered": self.delivered,
            "last_error": self.last_error,
            "history": [dict(h) for h in self.history],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PublishedAction:
        return cls(
            publication_id=data["publication_id"],
            correlation_id=data["correlation_id"],
            signal_id=data["signal_id"],
            signal_source=data.get("signal_source", "unknown"),
            decision=dict(data.get("decision") or {}),
            status=PublicationStatus(data["status"]),
            event_type=data.get("event_type", ""),
            published_at=_parse_dt(data.get("published_at")) or utcnow(),
            updated_at=_parse_dt(data.get("updated_at")) or utcnow(),
            retry_count=int(data.get("retry_count", 0)),
            delivered=bool(data.get("delivered", False)),
            last_error=data.get("last_error"),
            history=[dict(h) for h in data.get("history", [])],
        )


class AuditStore:
    """In-memory audit table keyed by publication id, in insertion order."""

    def __init__(self, *, max_entries: int = 1000) -> None:
        self._records: dict[str, PublishedAction] = {}
        self._max_entries = max_entries

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, publication_id: object) -> bool:
        return publication_id in self._records

    def add(self, record: PublishedAction) -> None:
        self._records[record.publication_id] = record
        if len(self._records) > self._max_entries:
            log.warning(
                "audit_store_over_capacity",
                size=len(self._records),
                max_entries=self._max_entries,
            )

    def get(self, publication_id: str) -> PublishedAction | None:
        return self._records.get(publication_id)

    def query(
        self,
        *,
        status: PublicationStatus | str | None = None,
        source: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[PublishedAction]:
        """Filter records; newest first."""
        wanted = PublicationStatus(status) if status is not None else None
        matches = [
            r
            for r in reversed(self._records.values())
            if (wanted is None or r.status is wanted)
            and (source is None or r.signal_source == source)
            and (since is None or r.published_at >= since)
            and (until is None or r.published_at <= until)
        ]
        return matches[:limit] if limit is not None else matches

    def trim(self, keep: int | None = None) -> int:
        """Keep only the ``keep`` most recent records. Returns how many went."""
        keep = self._max_entries if keep is None else keep
        excess = len(self._records) - max(0, keep)
        if excess <= 0:
            return 0
        for publication_id in list(self._records)[:excess]:
            del self._records[publication_id]
        log.info("audit_store_trimmed", removed=excess, remaining=len(self._records))
        return excess

    def counts(self) -> dict[str, int]:
        return dict(Counter(str(r.status) for r in self._records.values()))
