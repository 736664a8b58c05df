"""Prompts sent to the reasoning oracle.

Every prompt asks the oracle to answer with a single JSON object.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from signalflow.models import ActionType, Classification, ProcessingStrategy, Signal

if TYPE_CHECKING:
    from signalflow.batching.similarity import SignalGroup

# Body characters included per signal in a group prompt
GROUP_BODY_CHARS = 200

CLASSIFICATION_PROMPT = """Classify the signal below.

Return a JSON object with:
- "category": short label such as incident, request, information, discussion
- "urgency": one of "low", "medium", "high", "critical"
- "importance": one of "low", "medium", "high"
- "confidence": number between 0 and 1
- "reasoning": one sentence
- "suggested_actions": list of action names
- "requires_immediate": true or false
"""

GROUP_CLASSIFICATION_PROMPT = """Classify each of the related signals below.

Return a JSON object {"results": {"<signal id>": <classification>}} where
each classification has the fields category, urgency, importance,
confidence, reasoning, suggested_actions and requires_immediate.
"""

DECISION_PROMPT = """Decide what to do about the signal below.

Allowed actions: {actions}

Return a JSON object with:
- "action": one of the allowed actions
- "action_params": object with the parameters for the action
- "reasoning": one or two sentences
- "confidence": number between 0 and 1
- "requires_approval": true or false
"""


def _signal_block(signal: Signal, *, body_chars: int | None = None) -> str:
    body = signal.body if body_chars is None else signal.body[:body_chars]
    return (
        f"Source: {signal.source}\n"
        f"From: {signal.sender or '(unknown)'}\n"
        f"Subject: {signal.subject or '(no subject)'}\n"
        f"Timestamp: {signal.timestamp.isoformat()}\n"
        f"Body: {body}"
    )


def classification_prompt(signal: Signal) -> str:
    return f"{CLASSIFICATION_PROMPT}\n---\n{_signal_block(signal)}"


def group_classification_prompt(group: SignalGroup) -> str:
    lines = [GROUP_CLASSIFICATION_PROMPT]
    if group.common_sender:
        lines.append(f"All signals are from: {group.common_sender}")
    if group.common_thread:
        lines.append(f"All signals are part of thread: {group.common_thread}")
    lines.append("---")
    for i, signal in enumerate(group.signals, 1):
        lines.append(f"Signal {i} (ID: {signal.id}):")
        lines.append(_signal_block(signal, body_chars=GROUP_BODY_CHARS))
        lines.append("")
    return "\n".join(lines)


def decision_prompt(
    signal: Signal,
    classification: Classification,
    strategy: ProcessingStrategy,
    context: dict[str, Any],
) -> str:
    actions = ", ".join(a.value for a in ActionType)
    return (
        DECISION_PROMPT.format(actions=actions)
        + f"\nStrategy: {strategy.value}\n"
        + f"Classification: {classification.model_dump_json()}\n"
        + f"Context: {json.dumps(context, default=str, sort_keys=True)}\n"
        + f"---\n{_signal_block(signal)}"
    )
