"""Weighted pairwise similarity and greedy grouping of signals.

Scoring weights:
    same sender          0.30
    same thread key      0.25
    same sender domain   0.15
    time proximity       0.15  (1.0 within an hour, 0.0 at a day or more)
    subject word Jaccard 0.15

Grouping is greedy and seeded by the first ungrouped signal, so each window
costs O(n^2) comparisons. That is fine at batch sizes up to a few dozen; for
larger windows, bucket candidates by sender domain before comparing.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from signalflow.constants import URGENCY_KEYWORDS
from signalflow.logging import get_logger
from signalflow.models import Signal
from signalflow.utils import new_id, utcnow

log = get_logger("signalflow.batching.similarity")

SENDER_WEIGHT = 0.30
THREAD_WEIGHT = 0.25
DOMAIN_WEIGHT = 0.15
TIME_WEIGHT = 0.15
SUBJECT_WEIGHT = 0.15

FULL_PROXIMITY_SECONDS = 3600.0
ZERO_PROXIMITY_SECONDS = 24 * 3600.0

# Leading reply/forward markers, possibly repeated ("Re: Fwd: Re: ...")
_REPLY_MARKER = re.compile(r"^\s*(?:(?:re|fwd?|fw)\s*:\s*)+", re.IGNORECASE)
_WORD_SPLIT = re.compile(r"\s+")


def thread_key(subject: str | None) -> str:
    """Normalize a subject into a thread key by stripping reply markers."""
    if not subject:
        return ""
    return _REPLY_MARKER.sub("", subject).strip().lower()


def sender_domain(sender: str | None) -> str | None:
    if not sender or "@" not in sender:
        return None
    return sender.rsplit("@", 1)[1].strip(" >").lower() or None


def time_proximity(a: datetime, b: datetime) -> float:
    """1.0 when at most an hour apart, linear down to 0.0 at 24 hours."""
    diff = abs((a - b).total_seconds())
    if diff <= FULL_PROXIMITY_SECONDS:
        return 1.0
    if diff >= ZERO_PROXIMITY_SECONDS:
        return 0.0
    span = ZERO_PROXIMITY_SECONDS - FULL_PROXIMITY_SECONDS
    return 1.0 - (diff - FULL_PROXIMITY_SECONDS) / span


def subject_jaccard(a: str | None, b: str | None) -> float:
    words_a = {w for w in _WORD_SPLIT.split((a or "").lower()) if w}
    words_b = {w for w in _WORD_SPLIT.split((b or "").lower()) if w}
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


def has_urgency_keyword(signal: Signal) -> bool:
    text = signal.text.lower()
    return any(keyword in text for keyword in URGENCY_KEYWORDS)


@dataclass
class SignalGroup:
    """Signals that share one reasoning call."""

    signals: list[Signal]
    group_id: str = field(default_factory=lambda: new_id("group"))
    common_sender: str | None = None
    common_thread: str | None = None
    max_urgency: str | None = None
    similarity_score: float = 1.0
    grouped_at: datetime = field(default_factory=utcnow)

    @property
    def size(self) -> int:
        return len(self.signals)

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "signal_ids": [s.id for s in self.signals],
            "common_sender": self.common_sender,
            "common_thread": self.common_thread,
            "max_urgency": self.max_urgency,
            "similarity_score": self.similarity_score,
            "grouped_at": self.grouped_at.isoformat(),
        }


class SimilarityGrouper:
    """Clusters signals whose similarity to a seed meets the threshold."""

    def __init__(self, threshold: float = 0.6) -> None:
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"threshold must be within [0, 1], got: {threshold}")
        self.threshold = threshold

    def similarity(self, a: Signal, b: Signal) -> float:
        score = 0.0
        if a.sender and a.sender == b.sender:
            score += SENDER_WEIGHT
        key_a = thread_key(a.subject)
        if key_a and key_a == thread_key(b.subject):
            score += THREAD_WEIGHT
        domain_a = sender_domain(a.sender)
        if domain_a is not None and domain_a == sender_domain(b.sender):
            score += DOMAIN_WEIGHT
        score += time_proximity(a.timestamp, b.timestamp) * TIME_WEIGHT
        score += subject_jaccard(a.subject, b.subject) * SUBJECT_WEIGHT
        return round(score, 6)

    def group(self, signals: list[Signal]) -> list[SignalGroup]:
        """Greedily partition ``signals``; every signal lands in exactly one group."""
        grouped: set[int] = set()
        groups: list[SignalGroup] = []

        for i, seed in enumerate(signals):
            if i in grouped:
                continue
            grouped.add(i)
            members = [seed]
            for j in range(i + 1, len(signals)):
                if j in grouped:
                    continue
                if self.similarity(seed, signals[j]) >= self.threshold:
                    members.append(signals[j])
                    grouped.add(j)
            groups.append(self._describe(members))

        if signals:
            log.debug(
                "signals_grouped",
                signals=len(signals),
                groups=len(groups),
                avg_group_size=round(len(signals) / len(groups), 2),
            )
        return groups

    def _describe(self, members: list[Signal]) -> SignalGroup:
        senders = {s.sender for s in members}
        common_sender = members[0].sender if len(senders) == 1 else None

        keys = {thread_key(s.subject) for s in members}
        common_thread = keys.pop() if len(keys) == 1 else None

        max_urgency = "high" if any(has_urgency_keyword(s) for s in members) else None

        return SignalGroup(
            signals=members,
            common_sender=common_sender,
            common_thread=common_thread or None,
            max_urgency=max_urgency,
            similarity_score=self.average_similarity(members),
        )

    def average_similarity(self, members: list[Signal]) -> float:
        if len(members) <= 1:
            return 1.0
        total = 0.0
        comparisons = 0
        for i in range(len(members) - 1):
            for j in range(i + 1, len(members)):
                total += self.similarity(members[i], members[j])
                comparisons += 1
        return total / comparisons
