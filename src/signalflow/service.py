"""SignalFlow service: wires every component together and owns their lifecycle.

Each component is constructed once here and handed to the components that
need it. ``start()`` brings up the background loops (intake listener, queue
consumer, cache sweeps, publication retry, review timeout sweep);
``shutdown()`` stops them, drains pending batches and writes the cache
snapshots.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any

from signalflow.batching.coordinator import BatchCoordinator
from signalflow.batching.similarity import SimilarityGrouper
from signalflow.cache.classification import ClassificationCache
from signalflow.cache.response import ResponseCache
from signalflow.config import Settings, get_settings
from signalflow.errors import EmissionError
from signalflow.events import EventHub, HttpEventSink, Topic
from signalflow.intake.adapters import SignalIntake
from signalflow.intake.gate import AdmissionGate
from signalflow.logging import get_logger
from signalflow.models import Classification, QueuedSignal, Signal
from signalflow.publishing.audit import PublicationStatus, PublishedAction
from signalflow.publishing.publisher import PublicationAuditor
from signalflow.reasoning.client import HttpReasoningOracle, ReasoningClient, ReasoningOracle
from signalflow.reasoning.decision import DecisionWorkflow
from signalflow.reasoning.pipeline import PipelineOrchestrator, PipelineResult
from signalflow.reasoning.validator import ContextProvider, DecisionContext
from signalflow.review.approval import ApprovalManager

log = get_logger("signalflow.service")


class QueueDepthContext:
    """Default context provider: reports admission queue depth only."""

    def __init__(self, gate: AdmissionGate) -> None:
        self._gate = gate

    async def context_for(self, signal: Signal) -> DecisionContext:
        return DecisionContext(queue_depth=self._gate.size)


def review_reason(result: PipelineResult) -> str:
    decision = result.decision
    if decision.validation is not None and decision.validation.blockers:
        return "; ".join(decision.validation.blockers)
    if decision.validation is not None and decision.validation.warnings:
        return "; ".join(decision.validation.warnings)
    if result.errors:
        return f"Processing errors: {'; '.join(result.errors)}"
    if result.confidence < 0.5:
        return f"Low confidence ({result.confidence:.2f})"
    return decision.reasoning or "Decision requires approval"


class SignalFlowService:
    """The assembled control plane."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        oracle: ReasoningOracle | None = None,
        hub: EventHub | None = None,
        context_provider: ContextProvider | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        s = self.settings

        self.hub = hub or EventHub(emission_timeout=s.emission_timeout)
        self.gate = AdmissionGate.from_settings(s)
        self.intake = SignalIntake(self.hub, self.gate)

        self.classification_cache = ClassificationCache.from_settings(s)
        self.response_cache = ResponseCache.from_settings(s)

        self._owned_oracle: HttpReasoningOracle | None = None
        if oracle is None:
            self._owned_oracle = HttpReasoningOracle(
                s.oracle_url,
                api_key=s.oracle_api_key.get_secret_value() if s.oracle_api_key else None,
                timeout=s.oracle_timeout,
            )
            oracle = self._owned_oracle
        self.client = ReasoningClient.from_settings(s, oracle, self.response_cache)

        self.workflow = DecisionWorkflow.from_settings(
            s, self.client, context_provider=context_provider or QueueDepthContext(self.gate)
        )
        self.pipeline = PipelineOrchestrator(
            self.client, self.workflow, classification_cache=self.classification_cache
        )
        self.coordinator = BatchCoordinator.from_settings(
            s,
            self.client.classify_group,
            grouper=SimilarityGrouper(s.similarity_threshold),
            cache=self.classification_cache,
            sink=self.handle_classified,
        )
        self.publisher = PublicationAuditor.from_settings(s, self.hub)
        self.approvals = ApprovalManager.from_settings(s, self.publisher, self.hub)

        self._executor_sink: HttpEventSink | None = None
        if s.executor_url:
            self._executor_sink = HttpEventSink(s.executor_url, timeout=s.emission_timeout)

        self._consumer: asyncio.Task[None] | None = None
        self._dispatches: set[asyncio.Task[None]] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Signal path
    # ------------------------------------------------------------------

    async def handle_classified(
        self, signal: Signal, classification: Classification | None
    ) -> PublishedAction:
        """Run one batched signal through the pipeline and publish the outcome.

        Always leaves exactly one audit record for the signal.
        """
        if classification is None:
            log.debug("signal_unclassified_in_batch", signal_id=signal.id)
        try:
            result = await self.pipeline.process(signal)
        except Exception as exc:
            log.error("pipeline_crashed", signal_id=signal.id, error=str(exc))
            return await self.publisher.reject(signal, f"Pipeline error: {exc}")

        try:
            await self.hub.emit(Topic.REASONING_COMPLETE, result.to_dict())
        except EmissionError as exc:
            log.warning("reasoning_complete_emit_failed", signal_id=signal.id, error=str(exc))

        record = await self.publisher.publish(result.decision, signal, result)
        if record.status is PublicationStatus.PENDING_APPROVAL:
            await self.approvals.request_review(record, review_reason(result))
        return record

    async def _dispatch(self, queued: QueuedSignal) -> None:
        try:
            await self.coordinator.add_signal(queued.signal)
        except Exception as exc:
            log.error("signal_dispatch_failed", signal_id=queued.signal.id, error=str(exc))
            if not self.gate.requeue(queued):
                await self.publisher.reject(queued.signal, f"Dispatch failed: {exc}")

    async def _consume(self) -> None:
        while True:
            queued = await self.gate.get()
            task = asyncio.create_task(
                self._dispatch(queued), name=f"dispatch-{queued.signal.id}"
            )
            self._dispatches.add(task)
            task.add_done_callback(self._dispatches.discard)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self.classification_cache.load_snapshot()
        self.response_cache.load()
        self.response_cache.warm()
        if self._executor_sink is not None:
            self.hub.add_sink(self._executor_sink)

        self.classification_cache.start()
        self.response_cache.start(self.settings.cache_sweep_interval)
        self.publisher.start()
        self.approvals.start()
        self.intake.start()
        self._consumer = asyncio.create_task(self._consume(), name="signal-consumer")
        self._running = True
        log.info(
            "signalflow_started",
            environment=self.settings.environment,
            executor=bool(self._executor_sink),
        )

    async def shutdown(self) -> None:
        """Stop loops, flush pending batches and persist caches."""
        if not self._running:
            return
        self._running = False
        await self.intake.stop()

        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer
        if self._dispatches:
            await asyncio.gather(*self._dispatches, return_exceptions=True)

        await self.coordinator.shutdown()
        await self.approvals.stop()
        await self.publisher.stop()
        await self.classification_cache.shutdown()
        await self.response_cache.shutdown()

        if self._executor_sink is not None:
            self.hub.remove_sink(self._executor_sink)
            await self._executor_sink.aclose()
        if self._owned_oracle is not None:
            await self._owned_oracle.aclose()
        self.hub.close()
        log.info("signalflow_stopped", **self.publisher.stats()["by_status"])

    async def __aenter__(self) -> SignalFlowService:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.shutdown()

    def stats(self) -> dict[str, Any]:
        return {
            "intake": self.intake.stats(),
            "gate": self.gate.stats(),
            "batching": self.coordinator.stats(),
            "classification_cache": self.classification_cache.stats(),
            "response_cache": self.response_cache.stats(),
            "oracle": self.client.stats(),
            "pipeline": self.pipeline.metrics(),
            "decisions": self.workflow.stats(),
            "publication": self.publisher.stats(),
            "reviews": self.approvals.stats(),
        }
