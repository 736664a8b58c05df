"""Reasoning: oracle access, decision making and the per-signal pipeline."""

from signalflow.reasoning.client import HttpReasoningOracle, OracleRequest, ReasoningClient
from signalflow.reasoning.decision import DecisionWorkflow
from signalflow.reasoning.pipeline import PipelineOptions, PipelineOrchestrator, PipelineResult
from signalflow.reasoning.validator import DecisionContext, DecisionValidator, RelatedTask

__all__ = [
    "DecisionContext",
    "DecisionValidator",
    "DecisionWorkflow",
    "HttpReasoningOracle",
    "OracleRequest",
    "PipelineOptions",
    "PipelineOrchestrator",
    "PipelineResult",
    "ReasoningClient",
    "RelatedTask",
]
