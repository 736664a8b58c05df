"""Reasoning pipeline orchestrator.

Runs a signal through preprocess -> classify -> decide -> extract ->
build-parameters, timing every stage. Preprocess, extract and parameter
building degrade to a fallback and record a warning. Classify and decide
are fatal: the pipeline stops and returns a conservative escalation that
requires human review.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable, Iterable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from signalflow.constants import (
    ERROR_CONFIDENCE_DECAY,
    LOW_CONFIDENCE_THRESHOLD,
    PROCESSING_TIME_SAMPLES,
)
from signalflow.logging import get_logger
from signalflow.models import (
    TASK_CREATING_ACTIONS,
    ActionDecision,
    ActionType,
    Classification,
    Signal,
)
from signalflow.reasoning.extract import TaskDetails, extract_task_details
from signalflow.reasoning.params import ParameterBuilder
from signalflow.reasoning.preprocess import PreprocessedSignal, preprocess
from signalflow.utils import timed_operation

if TYPE_CHECKING:
    from signalflow.cache.classification import ClassificationCache
    from signalflow.reasoning.client import ReasoningClient
    from signalflow.reasoning.decision import DecisionWorkflow

log = get_logger("signalflow.reasoning.pipeline")

STAGES = ("preprocess", "classify", "decide", "extract", "params")


@dataclass
class PipelineOptions:
    skip_preprocessing: bool = False
    target_platform: str | None = None
    bypass_cache: bool = False


@dataclass
class PipelineResult:
    """Everything the pipeline learned about one signal."""

    signal_id: str
    success: bool
    classification: Classification
    decision: ActionDecision
    confidence: float
    requires_human_review: bool
    preprocessed: PreprocessedSignal | None = None
    task_details: TaskDetails | None = None
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    timings: dict[str, float] = field(default_factory=dict)
    classification_cached: bool = False
    processing_time_ms: float = 0.0

    @property
    def warning_count(self) -> int:
        return len(self.warnings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "signal_id": self.signal_id,
            "success": self.success,
            "classification": self.classification.model_dump(mode="json"),
            "decision": self.decision.model_dump(mode="json"),
            "confidence": self.confidence,
            "requires_human_review": self.requires_human_review,
            "task_details": self.task_details.to_dict() if self.task_details else None,
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "timings": dict(self.timings),
            "classification_cached": self.classification_cached,
            "processing_time_ms": self.processing_time_ms,
        }


@dataclass
class BatchPipelineResult:
    results: list[PipelineResult]
    succeeded: int
    failed: int
    needs_review: int
    processing_time_ms: float

    @property
    def total(self) -> int:
        return len(self.results)


def overall_confidence(
    classification_confidence: float, decision_confidence: float, errors: int
) -> float:
    """``((c + d) / 2) * 0.9 ** errors`` clamped to [0, 1]."""
    value = ((classification_confidence + decision_confidence) / 2) * (
        ERROR_CONFIDENCE_DECAY**errors
    )
    return min(1.0, max(0.0, value))


def safe_classification(reason: str) -> Classification:
    return Classification(
        category="unknown",
        urgency="high",
        importance="high",
        confidence=0.0,
        reasoning=reason,
    )


def safe_decision(signal: Signal, reason: str) -> ActionDecision:
    """Conservative outcome used when a fatal stage fails."""
    return ActionDecision(
        signal_id=signal.id,
        action=ActionType.ESCALATE,
        action_params={"reason": reason},
        reasoning=f"Automatic processing failed; manual review required: {reason}",
        confidence=0.0,
        requires_approval=True,
    )


@dataclass
class _Run:
    """Per-signal bookkeeping while the stages execute."""

    signal: Signal
    start: float = field(default_factory=time.perf_counter)
    stages: dict[str, dict[str, Any]] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def timed(self, stage: str) -> AbstractAsyncContextManager[dict[str, Any]]:
        return timed_operation(f"stage_{stage}", log=log, signal_id=self.signal.id)

    def fallback(self, stage: str, exc: Exception) -> None:
        log.warning(f"{stage}_failed", signal_id=self.signal.id, error=str(exc))
        self.warnings.append(f"{stage} failed: {exc}")
        self.errors.append(f"{stage}: {exc}")

    @property
    def timings(self) -> dict[str, float]:
        return {name: t.get("elapsed_ms", 0.0) for name, t in self.stages.items()}


class PipelineOrchestrator:
    """Run signals through the reasoning stages."""

    def __init__(
        self,
        client: ReasoningClient,
        workflow: DecisionWorkflow,
        *,
        classification_cache: ClassificationCache | None = None,
        params_builder: ParameterBuilder | None = None,
        preprocessor: Callable[[Signal], PreprocessedSignal] = preprocess,
        extractor: Callable[..., TaskDetails] = extract_task_details,
    ) -> None:
        self._client = client
        self._workflow = workflow
        self._cache = classification_cache
        self._params = params_builder or ParameterBuilder()
        self._preprocess = preprocessor
        self._extract = extractor
        self.reset_metrics()

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _run_preprocess(self, run: _Run, options: PipelineOptions) -> PreprocessedSignal:
        signal = run.signal
        if options.skip_preprocessing:
            return PreprocessedSignal(
                original=signal, signal=signal, word_count=len(signal.body.split())
            )
        try:
            return self._preprocess(signal)
        except Exception as exc:
            run.fallback("preprocess", exc)
            return PreprocessedSignal.passthrough(signal)

    async def _run_classify(
        self, original: Signal, working: Signal, options: PipelineOptions
    ) -> tuple[Classification, bool]:
        # Keyed on the original signal so batch-seeded entries are found
        cache = self._cache
        key = cache.key_for(original) if cache is not None else None
        if cache is not None and key is not None and not options.bypass_cache:
            cached = cache.get(key)
            if cached is not None:
                return cached, True
        classification = await self._client.classify(working, bypass_cache=options.bypass_cache)
        if cache is not None and key is not None:
            cache.set(key, classification)
        return classification, False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def process(
        self, signal: Signal, options: PipelineOptions | None = None
    ) -> PipelineResult:
        """Run every stage for ``signal``. Never raises."""
        options = options or PipelineOptions()
        run = _Run(signal)

        async with run.timed("preprocess") as run.stages["preprocess"]:
            prepared = self._run_preprocess(run, options)
        working = prepared.signal

        try:
            async with run.timed("classify") as run.stages["classify"]:
                classification, cached = await self._run_classify(signal, working, options)
        except Exception as exc:
            log.error("classify_failed", signal_id=signal.id, error=str(exc))
            run.errors.append(f"classify: {exc}")
            return self._fail(run, safe_classification(str(exc)), str(exc), prepared)

        try:
            async with run.timed("decide") as run.stages["decide"]:
                decision = await self._workflow.decide(
                    working, classification, bypass_cache=options.bypass_cache
                )
        except Exception as exc:
            log.error("decide_failed", signal_id=signal.id, error=str(exc))
            run.errors.append(f"decide: {exc}")
            return self._fail(run, classification, str(exc), prepared, cached=cached)

        details: TaskDetails | None = None
        if decision.action in TASK_CREATING_ACTIONS:
            async with run.timed("extract") as run.stages["extract"]:
                try:
                    details = self._extract(
                        working, decision.action, classification, decision.action_params
                    )
                except Exception as exc:
                    run.fallback("extract", exc)
                    details = TaskDetails(title=signal.subject or f"Signal {signal.id}")

        async with run.timed("params") as run.stages["params"]:
            try:
                built = self._params.build(
                    decision, signal, details, target_platform=options.target_platform
                )
                params = built.params
                run.warnings.extend(built.warnings)
            except Exception as exc:
                run.fallback("params", exc)
                params = ParameterBuilder.minimal(decision, signal)
        decision = decision.model_copy(update={"action_params": params})

        errors = len(run.errors)
        requires_review = (
            decision.requires_approval
            or classification.confidence < LOW_CONFIDENCE_THRESHOLD
            or decision.confidence < LOW_CONFIDENCE_THRESHOLD
            or errors > 1
        )
        result = PipelineResult(
            signal_id=signal.id,
            success=True,
            classification=classification,
            decision=decision,
            confidence=overall_confidence(classification.confidence, decision.confidence, errors),
            requires_human_review=requires_review,
            preprocessed=prepared,
            task_details=details,
            warnings=run.warnings,
            errors=run.errors,
            classification_cached=cached,
        )
        return self._finish(result, run)

    async def process_many(
        self, signals: Iterable[Signal], options: PipelineOptions | None = None
    ) -> BatchPipelineResult:
        """Process signals one after another."""
        start = time.perf_counter()
        results = [await self.process(signal, options) for signal in signals]
        batch = BatchPipelineResult(
            results=results,
            succeeded=sum(1 for r in results if r.success),
            failed=sum(1 for r in results if not r.success),
            needs_review=sum(1 for r in results if r.requires_human_review),
            processing_time_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        log.info(
            "pipeline_batch_complete",
            total=batch.total,
            succeeded=batch.succeeded,
            failed=batch.failed,
            needs_review=batch.needs_review,
        )
        return batch

    # ------------------------------------------------------------------
    # Result assembly
    # ------------------------------------------------------------------

    def _fail(
        self,
        run: _Run,
        classification: Classification,
        reason: str,
        prepared: PreprocessedSignal,
        *,
        cached: bool = False,
    ) -> PipelineResult:
        decision = safe_decision(run.signal, reason)
        result = PipelineResult(
            signal_id=run.signal.id,
            success=False,
            classification=classification,
            decision=decision,
            confidence=overall_confidence(
                classification.confidence, decision.confidence, len(run.errors)
            ),
            requires_human_review=True,
            preprocessed=prepared,
            warnings=run.warnings,
            errors=run.errors,
            classification_cached=cached,
        )
        return self._finish(result, run)

    def _finish(self, result: PipelineResult, run: _Run) -> PipelineResult:
        result.timings = run.timings
        result.processing_time_ms = round((time.perf_counter() - run.start) * 1000, 2)
        result.decision.processing_time_ms = result.processing_time_ms

        self._processed += 1
        if result.success:
            self._succeeded += 1
        else:
            self._failed += 1
        if result.requires_human_review:
            self._needs_review += 1
        if result.classification_cached:
            self._cache_hits += 1
        self._warnings += len(result.warnings)
        self._errors += len(result.errors)
        self._durations.append(result.processing_time_ms)
        for stage, ms in result.timings.items():
            self._stage_totals[stage] = self._stage_totals.get(stage, 0.0) + ms
            self._stage_counts[stage] = self._stage_counts.get(stage, 0) + 1

        log.info(
            "pipeline_complete",
            signal_id=result.signal_id,
            success=result.success,
            action=str(result.decision.action),
            confidence=round(result.confidence, 3),
            requires_human_review=result.requires_human_review,
            warnings=len(result.warnings),
            errors=len(result.errors),
            duration_ms=result.processing_time_ms,
        )
        return result

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def metrics(self) -> dict[str, Any]:
        avg = sum(self._durations) / len(self._durations) if self._durations else 0.0
        return {
            "processed": self._processed,
            "succeeded": self._succeeded,
            "failed": self._failed,
            "needs_review": self._needs_review,
            "classification_cache_hits": self._cache_hits,
            "warnings": self._warnings,
            "errors": self._errors,
            "avg_processing_time_ms": round(avg, 2),
            "avg_stage_ms": {
                stage: round(self._stage_totals[stage] / self._stage_counts[stage], 2)
                for stage in STAGES
                if self._stage_counts.get(stage)
            },
        }

    def reset_metrics(self) -> None:
        self._processed = 0
        self._succeeded = 0
        self._failed = 0
        self._needs_review = 0
        self._cache_hits = 0
        self._warnings = 0
        self._errors = 0
        self._durations: deque[float] = deque(maxlen=PROCESSING_TIME_SAMPLES)
        self._stage_totals: dict[str, float] = {}
        self._stage_counts: dict[str, int] = {}
