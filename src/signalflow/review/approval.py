"""Human approval workflow.

A review starts ``pending`` and leaves that state exactly once: to
``approved`` or ``rejected`` on an explicit reviewer action, or to
``timeout`` when its deadline passes. A timed-out review then resolves to
the configured default action. Each resolution is pushed to the linked
publication, which re-emits ``action:ready`` or ``action:rejected``.
A review whose publication fails terminally is closed as rejected.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Literal

from signalflow.errors import EmissionError, ReviewNotFoundError, ReviewStateError
from signalflow.events import EventHub, Topic
from signalflow.logging import get_logger
from signalflow.publishing.audit import PublicationStatus
from signalflow.utils import PeriodicTask, new_id, utcnow

if TYPE_CHECKING:
    from signalflow.config import Settings
    from signalflow.publishing.audit import PublishedAction
    from signalflow.publishing.publisher import PublicationAuditor

log = get_logger("signalflow.review.approval")

TimeoutAction = Literal["approve", "reject"]
TIMEOUT_REVIEWER = "system:timeout"
PUBLICATION_FAILED_REVIEWER = "system:publication_failed"


class ReviewStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMEOUT = "timeout"


_ALLOWED = {
    ReviewStatus.PENDING: {ReviewStatus.APPROVED, ReviewStatus.REJECTED, ReviewStatus.TIMEOUT},
    ReviewStatus.TIMEOUT: {ReviewStatus.APPROVED, ReviewStatus.REJECTED},
}


@dataclass
class PendingReview:
    """A publication waiting for a human decision."""

    review_id: str
    publication_id: str
    decision_ref: str
    signal_id: str
    reason: str
    requested_at: datetime
    timeout_at: datetime
    timeout_action: TimeoutAction
    status: ReviewStatus = ReviewStatus.PENDING
    reviewer: str | None = None
    resolved_at: datetime | None = None
    timed_out: bool = False
    resolution_reason: str | None = None
    modifications: dict[str, Any] | None = None
    history: list[str] = field(default_factory=list)

    @property
    def resolved(self) -> bool:
        return self.status in (ReviewStatus.APPROVED, ReviewStatus.REJECTED)

    def move_to(self, status: ReviewStatus) -> None:
        if status not in _ALLOWED.get(self.status, set()):
            raise ReviewStateError(
                f"Review {self.review_id} cannot go from {self.status} to {status}"
            )
        self.status = status
        self.history.append(str(status))

    def to_dict(self) -> dict[str, Any]:
        return {
            "review_id": self.review_id,
            "publication_id": self.publication_id,
            "decision_ref": self.decision_ref,
            "signal_id": self.signal_id,
            "reason": self.reason,
            "requested_at": self.requested_at.isoformat(),
            "timeout_at": self.timeout_at.isoformat(),
            "timeout_action": self.timeout_action,
            "status": str(self.status),
            "reviewer": self.reviewer,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "timed_out": self.timed_out,
            "resolution_reason": self.resolution_reason,
            "modifications": self.modifications,
        }


class ApprovalManager:
    """Track pending reviews and resolve them explicitly or by timeout."""

    def __init__(
        self,
        publisher: PublicationAuditor,
        hub: EventHub,
        *,
        review_timeout: float = 3600.0,
        default_timeout_action: TimeoutAction = "reject",
        sweep_interval: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._publisher = publisher
        self._hub = hub
        self._review_timeout = review_timeout
        self._default_timeout_action = default_timeout_action
        self._clock = clock
        self._reviews: dict[str, PendingReview] = {}
        self._lock = asyncio.Lock()
        self._sweeper = PeriodicTask("review-timeout-sweep", sweep_interval, self.sweep)
        self._timeouts = 0
        publisher.add_failure_listener(self._close_for_failed_publication)

    @classmethod
    def from_settings(
        cls, settings: Settings, publisher: PublicationAuditor, hub: EventHub
    ) -> ApprovalManager:
        return cls(
            publisher,
            hub,
            review_timeout=settings.review_timeout,
            default_timeout_action=settings.default_timeout_action,
            sweep_interval=settings.review_sweep_interval,
        )

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request_review(
        self,
        action: PublishedAction,
        reason: str,
        *,
        timeout: float | None = None,
        timeout_action: TimeoutAction | None = None,
    ) -> PendingReview:
        now = self._clock()
        review = PendingReview(
            review_id=new_id("review"),
            publication_id=action.publication_id,
            decision_ref=action.correlation_id,
            signal_id=action.signal_id,
            reason=reason,
            requested_at=now,
            timeout_at=now + timedelta(
                seconds=self._review_timeout if timeout is None else timeout
            ),
            timeout_action=timeout_action or self._default_timeout_action,
        )
        async with self._lock:
            self._reviews[review.review_id] = review
        if action.status is PublicationStatus.FAILED:
            self._close_for_failed_publication(action)
            return review
        log.info(
            "review_requested",
            review_id=review.review_id,
            publication_id=review.publication_id,
            reason=reason,
            timeout_at=review.timeout_at.isoformat(),
        )
        try:
            await self._hub.emit(Topic.REVIEW_PENDING, review.to_dict())
        except EmissionError as exc:
            log.warning("review_pending_emit_failed", review_id=review.review_id, error=str(exc))
        return review

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _pending_or_raise(self, review_id: str) -> PendingReview:
        review = self._reviews.get(review_id)
        if review is None:
            raise ReviewNotFoundError(f"Unknown review: {review_id}")
        if review.status is not ReviewStatus.PENDING:
            raise ReviewStateError(f"Review {review_id} is already {review.status}")
        return review

    async def approve_review(
        self,
        review_id: str,
        reviewer: str,
        modifications: dict[str, Any] | None = None,
    ) -> PendingReview:
        """Approve a pending review.

        Raises:
            ReviewNotFoundError: If the id is unknown.
            ReviewStateError: If the review was already resolved.
        """
        async with self._lock:
            review = self._pending_or_raise(review_id)
            await self._resolve(
                review, approved=True, reviewer=reviewer, modifications=modifications
            )
        return review

    async def reject_review(self, review_id: str, reviewer: str, reason: str) -> PendingReview:
        """Reject a pending review.

        Raises:
            ReviewNotFoundError: If the id is unknown.
            ReviewStateError: If the review was already resolved.
        """
        async with self._lock:
            review = self._pending_or_raise(review_id)
            await self._resolve(review, approved=False, reviewer=reviewer, reason=reason)
        return review

    async def sweep(self) -> int:
        """Resolve every pending review past its deadline. Returns the count."""
        now = self._clock()
        resolved = 0
        async with self._lock:
            expired = [
                r
                for r in self._reviews.values()
                if r.status is ReviewStatus.PENDING and r.timeout_at <= now
            ]
            for review in expired:
                # Closed while an earlier review in this sweep was resolving
                if review.status is not ReviewStatus.PENDING:
                    continue
                review.move_to(ReviewStatus.TIMEOUT)
                review.timed_out = True
                self._timeouts += 1
                log.info(
                    "review_timed_out",
                    review_id=review.review_id,
                    timeout_action=review.timeout_action,
                )
                await self._resolve(
                    review,
                    approved=review.timeout_action == "approve",
                    reviewer=TIMEOUT_REVIEWER,
                    reason="Review timed out",
                )
                resolved += 1
        return resolved

    async def _resolve(
        self,
        review: PendingReview,
        *,
        approved: bool,
        reviewer: str,
        reason: str | None = None,
        modifications: dict[str, Any] | None = None,
    ) -> None:
        """Finish a review and push the outcome to its publication. Caller holds the lock."""
        review.move_to(ReviewStatus.APPROVED if approved else ReviewStatus.REJECTED)
        review.reviewer = reviewer
        review.resolved_at = self._clock()
        review.resolution_reason = reason
        review.modifications = modifications
        log.info(
            "review_resolved",
            review_id=review.review_id,
            status=str(review.status),
            reviewer=reviewer,
            timed_out=review.timed_out,
        )
        try:
            await self._publisher.resolve_approval(
                review.publication_id,
                approved,
                reviewer=reviewer,
                reason=reason,
                modifications=modifications,
            )
        except KeyError:
            log.error(
                "review_publication_missing",
                review_id=review.review_id,
                publication_id=review.publication_id,
            )

    def _close_for_failed_publication(self, action: PublishedAction) -> None:
        """Reject open reviews whose publication can no longer be delivered."""
        for review in self._reviews.values():
            if review.publication_id != action.publication_id or review.resolved:
                continue
            review.move_to(ReviewStatus.REJECTED)
            review.reviewer = PUBLICATION_FAILED_REVIEWER
            review.resolved_at = self._clock()
            review.resolution_reason = f"Publication failed: {action.last_error}"
            log.warning(
                "review_closed_publication_failed",
                review_id=review.review_id,
                publication_id=action.publication_id,
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, review_id: str) -> PendingReview | None:
        return self._reviews.get(review_id)

    def pending(self) -> list[PendingReview]:
        """Pending reviews, earliest deadline first."""
        return sorted(
            (r for r in self._reviews.values() if r.status is ReviewStatus.PENDING),
            key=lambda r: r.timeout_at,
        )

    def list_reviews(self, status: ReviewStatus | str | None = None) -> list[PendingReview]:
        if status is None:
            return list(self._reviews.values())
        wanted = ReviewStatus(status)
        return [r for r in self._reviews.values() if r.status is wanted]

    def clear_resolved(self) -> int:
        resolved = [k for k, r in self._reviews.items() if r.resolved]
        for key in resolved:
            del self._reviews[key]
        return len(resolved)

    def stats(self) -> dict[str, Any]:
        counts = Counter(str(r.status) for r in self._reviews.values())
        durations = [
            (r.resolved_at - r.requested_at).total_seconds()
            for r in self._reviews.values()
            if r.resolved_at is not None and not r.timed_out
        ]
        return {
            "total": len(self._reviews),
            "pending": counts.get(str(ReviewStatus.PENDING), 0),
            "approved": counts.get(str(ReviewStatus.APPROVED), 0),
            "rejected": counts.get(str(ReviewStatus.REJECTED), 0),
            "timed_out": self._timeouts,
            "avg_review_seconds": sum(durations) / len(durations) if durations else 0.0,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._sweeper.start()

    async def stop(self) -> None:
        await self._sweeper.stop()
