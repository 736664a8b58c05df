"""Publication of decisions to the downstream executor, with audit trail."""

from signalflow.publishing.audit import AuditStore, PublicationStatus, PublishedAction
from signalflow.publishing.publisher import PublicationAuditor

__all__ = ["AuditStore", "PublicationAuditor", "PublicationStatus", "PublishedAction"]
