"""Decision workflow.

Turns a classified signal into an ``ActionDecision``. Three cheap checks run
first and short-circuit without calling the oracle:

1. duplicate content seen within the dedup window -> ``ignore``
2. classification confidence below 0.5 -> ``clarify``
3. sensitive topic -> ``escalate`` with approval required

Everything else goes to the oracle with a processing strategy, is checked
against the decision schema, then run through the business-rule validator.
"""

from __future__ import annotations

import re
import time
from collections import Counter
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from signalflow.constants import DEDUP_BODY_CHARS, LOW_CONFIDENCE_THRESHOLD
from signalflow.errors import DecisionSchemaError
from signalflow.logging import get_logger
from signalflow.models import (
    ActionDecision,
    ActionType,
    Classification,
    ProcessingStrategy,
    Signal,
)
from signalflow.reasoning.validator import (
    HIGH_QUEUE_THRESHOLD,
    ContextProvider,
    DecisionContext,
    DecisionValidator,
)
from signalflow.utils import stable_hash

if TYPE_CHECKING:
    from signalflow.config import Settings
    from signalflow.reasoning.client import ReasoningClient

log = get_logger("signalflow.reasoning.decision")

# Open related tasks at which a check_conflicts signal is considered contended
CONTENTION_TASK_COUNT = 5

FINANCIAL_KEYWORDS = (
    "payment", "invoice", "budget", "contract", "salary", "payroll",
    "wire transfer", "refund", "expense", "revenue",
)
LEGAL_KEYWORDS = (
    "legal", "lawsuit", "litigation", "compliance", "regulation", "regulatory",
    "attorney", "lawyer", "subpoena", "gdpr", "nda", "terms of service",
)
EXECUTIVE_MARKERS = ("ceo", "cfo", "cto", "coo", "founder", "president", "board", "executive")

_WORD_BOUNDARY = r"\b{}\b"


class OracleDecision(BaseModel):
    """Shape the oracle must return for a decision."""

    model_config = ConfigDict(extra="ignore")

    action: ActionType
    action_params: dict[str, Any] | None = None
    reasoning: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    requires_approval: bool = False


def _mentions(text: str, keywords: tuple[str, ...]) -> list[str]:
    lowered = text.lower()
    return [kw for kw in keywords if re.search(_WORD_BOUNDARY.format(re.escape(kw)), lowered)]


def is_executive(sender: str | None) -> bool:
    if not sender:
        return False
    local = sender.lower().split("@", 1)[0]
    return any(marker in re.split(r"[._+-]", local) for marker in EXECUTIVE_MARKERS)


def sensitive_reason(signal: Signal, classification: Classification) -> str | None:
    """Return why a signal needs a human, or None."""
    text = signal.text
    if classification.importance == "high" and _mentions(text, FINANCIAL_KEYWORDS):
        return "Financial matter of high importance"
    legal = _mentions(text, LEGAL_KEYWORDS)
    if legal:
        return f"Legal or compliance topic ({', '.join(legal)})"
    if is_executive(signal.sender) and classification.urgency in ("high", "critical"):
        return f"Urgent request from executive sender {signal.sender}"
    return None


def select_strategy(classification: Classification) -> ProcessingStrategy:
    if classification.urgency in ("critical", "high") or classification.importance == "high":
        return ProcessingStrategy.IMMEDIATE
    if classification.urgency == "medium" or classification.importance == "medium":
        return ProcessingStrategy.CHECK_CONFLICTS
    return ProcessingStrategy.BATCH


def dedup_key(signal: Signal) -> str:
    return stable_hash(signal.subject or "", signal.body[:DEDUP_BODY_CHARS])


class DecisionWorkflow:
    """Decide what to do about a classified signal."""

    def __init__(
        self,
        client: ReasoningClient,
        *,
        validator: DecisionValidator | None = None,
        context_provider: ContextProvider | None = None,
        dedup_window: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._validator = validator or DecisionValidator()
        self._context_provider = context_provider
        self._dedup_window = dedup_window
        self._clock = clock
        # dedup key -> (decision_id, recorded at)
        self._seen: dict[str, tuple[str, float]] = {}

        self._by_action: Counter[str] = Counter()
        self._short_circuits: Counter[str] = Counter()
        self._schema_errors = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client: ReasoningClient,
        *,
        validator: DecisionValidator | None = None,
        context_provider: ContextProvider | None = None,
    ) -> DecisionWorkflow:
        return cls(
            client,
            validator=validator,
            context_provider=context_provider,
            dedup_window=settings.dedup_window,
        )

    @property
    def validator(self) -> DecisionValidator:
        return self._validator

    # ------------------------------------------------------------------
    # Duplicate tracking
    # ------------------------------------------------------------------

    def _prune_seen(self, now: float) -> None:
        expired = [k for k, (_, at) in self._seen.items() if now - at > self._dedup_window]
        for key in expired:
            del self._seen[key]

    def _original_for(self, signal: Signal) -> str | None:
        now = self._clock()
        self._prune_seen(now)
        entry = self._seen.get(dedup_key(signal))
        return entry[0] if entry else None

    def _remember(self, signal: Signal, decision: ActionDecision) -> None:
        self._seen[dedup_key(signal)] = (decision.decision_id, self._clock())

    # ------------------------------------------------------------------
    # Decide
    # ------------------------------------------------------------------

    async def decide(
        self,
        signal: Signal,
        classification: Classification,
        *,
        bypass_cache: bool = False,
    ) -> ActionDecision:
        """Produce a decision for ``signal``.

        Raises:
            DecisionSchemaError: If the oracle reply does not match the schema.
            OracleError: If the oracle could not be reached.
        """
        start = time.perf_counter()

        original = self._original_for(signal)
        if original is not None:
            decision = self._fixed(
                signal,
                ActionType.IGNORE,
                f"Duplicate of a signal already decided ({original})",
                confidence=1.0,
                references=original,
                kind="duplicate",
            )
            return self._finish(decision, start, remember=None)

        if classification.confidence < LOW_CONFIDENCE_THRESHOLD:
            decision = self._fixed(
                signal,
                ActionType.CLARIFY,
                f"Classification confidence {classification.confidence:.2f} is too low to act on",
                confidence=classification.confidence,
                kind="low_confidence",
            )
            return self._finish(decision, start, remember=signal)

        reason = sensitive_reason(signal, classification)
        if reason is not None:
            decision = self._fixed(
                signal,
                ActionType.ESCALATE,
                reason,
                confidence=classification.confidence,
                requires_approval=True,
                kind="sensitive",
            )
            return self._finish(decision, start, remember=signal)

        context = await self._context(signal)
        strategy = select_strategy(classification)
        prompt_context = context.to_dict()
        if strategy is ProcessingStrategy.CHECK_CONFLICTS:
            prompt_context["contention"] = self._contended(context)

        request, raw = await self._client.decide(
            signal, classification, strategy, prompt_context, bypass_cache=bypass_cache
        )
        try:
            reply = OracleDecision.model_validate(raw)
        except ValidationError as exc:
            self._schema_errors += 1
            self._client.reject_cached(request)
            log.warning(
                "decision_schema_invalid",
                signal_id=signal.id,
                errors=exc.error_count(),
            )
            raise DecisionSchemaError(
                f"Decision for {signal.id} failed schema validation: {exc.error_count()} errors"
            ) from exc

        decision = ActionDecision(
            signal_id=signal.id,
            action=reply.action,
            action_params=reply.action_params or {},
            reasoning=reply.reasoning,
            confidence=reply.confidence,
            requires_approval=reply.requires_approval,
            strategy=strategy,
        )
        validation = self._validator.validate(decision, signal, classification, context)
        decision = self._validator.apply_adjustments(decision, validation)
        if decision.action is ActionType.CREATE_TASK and validation.valid:
            self._validator.record_task_creation(decision.decision_id)
        return self._finish(decision, start, remember=signal)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _context(self, signal: Signal) -> DecisionContext:
        if self._context_provider is None:
            return DecisionContext()
        try:
            return await self._context_provider.context_for(signal)
        except Exception as exc:
            log.warning("decision_context_failed", signal_id=signal.id, error=str(exc))
            return DecisionContext()

    @staticmethod
    def _contended(context: DecisionContext) -> bool:
        open_tasks = sum(1 for t in context.related_tasks if t.status != "done")
        return context.queue_depth >= HIGH_QUEUE_THRESHOLD or open_tasks >= CONTENTION_TASK_COUNT

    def _fixed(
        self,
        signal: Signal,
        action: ActionType,
        reasoning: str,
        *,
        confidence: float,
        kind: str,
        requires_approval: bool = False,
        references: str | None = None,
    ) -> ActionDecision:
        self._short_circuits[kind] += 1
        log.info("decision_short_circuit", signal_id=signal.id, kind=kind, action=str(action))
        return ActionDecision(
            signal_id=signal.id,
            action=action,
            action_params={},
            reasoning=reasoning,
            confidence=confidence,
            requires_approval=requires_approval,
            references=references,
        )

    def _finish(
        self, decision: ActionDecision, start: float, *, remember: Signal | None
    ) -> ActionDecision:
        if remember is not None:
            self._remember(remember, decision)
        decision.processing_time_ms = round((time.perf_counter() - start) * 1000, 2)
        self._by_action[str(decision.action)] += 1
        log.info(
            "decision_made",
            signal_id=decision.signal_id,
            decision_id=decision.decision_id,
            action=str(decision.action),
            confidence=round(decision.confidence, 3),
            requires_approval=decision.requires_approval,
        )
        return decision

    def stats(self) -> dict[str, Any]:
        return {
            "decisions": sum(self._by_action.values()),
            "by_action": dict(self._by_action),
            "short_circuits": dict(self._short_circuits),
            "schema_errors": self._schema_errors,
            "tracked_signatures": len(self._seen),
        }
