"""Human review of decisions that need approval."""

from signalflow.review.approval import ApprovalManager, PendingReview, ReviewStatus

__all__ = ["ApprovalManager", "PendingReview", "ReviewStatus"]
