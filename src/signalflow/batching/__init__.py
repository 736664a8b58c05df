"""Similarity grouping and adaptive batching."""

from signalflow.batching.coordinator import BatchCoordinator, BatchResult
from signalflow.batching.similarity import SignalGroup, SimilarityGrouper

__all__ = ["BatchCoordinator", "BatchResult", "SignalGroup", "SimilarityGrouper"]
