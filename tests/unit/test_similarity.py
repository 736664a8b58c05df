"""Unit tests for signal similarity scoring and grouping."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from signalflow.batching.similarity import (
    SimilarityGrouper,
    has_urgency_keyword,
    sender_domain,
    subject_jaccard,
    thread_key,
    time_proximity,
)
from signalflow.models import Signal

# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------

_BASE = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def _make_signal(
    signal_id: str,
    sender: str | None = "alice@co.com",
    subject: str | None = "Status",
    minutes: float = 0,
    body: str = "update",
) -> Signal:
    return Signal(
        id=signal_id,
        source="email",
        subject=subject,
        body=body,
        sender=sender,
        timestamp=_BASE + timedelta(minutes=minutes),
    )


# -------------------------------------------------------------------
# Scoring components
# -------------------------------------------------------------------


class TestThreadKey:
    """Tests for thread_key."""

    @pytest.mark.parametrize(
        "subject",
        ["Status", "Re: Status", "RE: status", "Fwd: Re: Status", "FW:Status  "],
    )
    def test_strips_reply_markers(self, subject: str) -> None:
        assert thread_key(subject) == "status"

    def test_empty(self) -> None:
        assert thread_key(None) == ""


class TestSenderDomain:
    """Tests for sender_domain."""

    def test_plain_address(self) -> None:
        assert sender_domain("alice@Co.com") == "co.com"

    def test_angle_bracket_address(self) -> None:
        assert sender_domain("Alice <alice@co.com>") == "co.com"

    def test_no_domain(self) -> None:
        assert sender_domain("carol") is None
        assert sender_domain(None) is None


class TestTimeProximity:
    """Tests for time_proximity."""

    def test_within_an_hour(self) -> None:
        assert time_proximity(_BASE, _BASE + timedelta(minutes=59)) == 1.0

    def test_a_day_or_more(self) -> None:
        assert time_proximity(_BASE, _BASE + timedelta(hours=30)) == 0.0

    def test_linear_in_between(self) -> None:
        midpoint = timedelta(hours=12.5)
        assert time_proximity(_BASE, _BASE + midpoint) == pytest.approx(0.5)

    def test_symmetric(self) -> None:
        later = _BASE + timedelta(hours=5)
        assert time_proximity(_BASE, later) == time_proximity(later, _BASE)


class TestSubjectJaccard:
    """Tests for subject_jaccard."""

    def test_identical(self) -> None:
        assert subject_jaccard("Budget review", "budget review") == 1.0

    def test_partial(self) -> None:
        assert subject_jaccard("a b", "b c") == pytest.approx(1 / 3)

    def test_both_empty(self) -> None:
        assert subject_jaccard(None, "") == 0.0


class TestUrgencyKeyword:
    """Tests for has_urgency_keyword."""

    def test_in_subject(self) -> None:
        assert has_urgency_keyword(_make_signal("s", subject="URGENT: server down"))

    def test_in_body(self) -> None:
        assert has_urgency_keyword(_make_signal("s", body="please reply asap"))

    def test_absent(self) -> None:
        assert not has_urgency_keyword(_make_signal("s", subject="Lunch", body="tomorrow?"))


# -------------------------------------------------------------------
# Grouper
# -------------------------------------------------------------------


class TestSimilarityGrouper:
    """Tests for SimilarityGrouper."""

    def test_rejects_threshold_outside_unit_interval(self) -> None:
        with pytest.raises(ValueError, match="threshold"):
            SimilarityGrouper(1.5)

    def test_same_thread_same_sender_groups_together(self) -> None:
        grouper = SimilarityGrouper(0.6)
        first = _make_signal("a1", subject="Status")
        reply = _make_signal("a2", subject="Re: Status", minutes=5)
        stranger = _make_signal("b1", sender="bob@other.com", subject="Invoice", minutes=20 * 60)

        assert grouper.similarity(first, reply) >= 0.6
        groups = grouper.group([first, reply, stranger])

        assert [[s.id for s in g.signals] for g in groups] == [["a1", "a2"], ["b1"]]

    def test_group_description(self) -> None:
        grouper = SimilarityGrouper(0.6)
        groups = grouper.group(
            [
                _make_signal("a1", subject="Status"),
                _make_signal("a2", subject="Re: Status urgent", minutes=5),
            ]
        )

        group = groups[0]
        assert group.size == 2
        assert group.common_sender == "alice@co.com"
        assert group.common_thread is None
        assert group.max_urgency == "high"
        assert 0.6 <= group.similarity_score <= 1.0

    def test_every_signal_in_exactly_one_group(self) -> None:
        grouper = SimilarityGrouper(0.6)
        signals = [
            _make_signal(f"s{i}", sender=f"user{i % 3}@co{i % 2}.com", minutes=i * 90)
            for i in range(12)
        ]

        groups = grouper.group(signals)

        ids = [s.id for g in groups for s in g.signals]
        assert sorted(ids) == sorted(s.id for s in signals)
        assert len(ids) == len(set(ids))

    def test_singleton_similarity_is_one(self) -> None:
        group = SimilarityGrouper().group([_make_signal("only")])[0]
        assert group.similarity_score == 1.0
        assert group.common_thread == "status"

    def test_empty_input(self) -> None:
        assert SimilarityGrouper().group([]) == []

    def test_threshold_zero_groups_everything(self) -> None:
        signals = [
            _make_signal("x", sender=None, subject=None, minutes=3000),
            _make_signal("y", sender="z@q.com", subject="other"),
        ]
        assert len(SimilarityGrouper(0.0).group(signals)) == 1

    def test_to_dict(self) -> None:
        group = SimilarityGrouper().group([_make_signal("a")])[0]
        data = group.to_dict()
        assert data["signal_ids"] == ["a"]
        assert data["group_id"].startswith("group-")
