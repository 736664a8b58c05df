"""Generic action parameter builder.

Platform-specific payload formatting lives with the downstream executor;
this builder produces one flat, platform-tagged parameter dictionary that
every executor can read.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from signalflow.logging import get_logger
from signalflow.models import ActionDecision, Signal
from signalflow.reasoning.extract import TaskDetails

log = get_logger("signalflow.reasoning.params")

DEFAULT_PLATFORM = "generic"
DEFAULT_DUE_DAYS = 7


@dataclass
class ParamsBuildResult:
    params: dict[str, Any]
    warnings: list[str] = field(default_factory=list)


def source_url(signal: Signal) -> str:
    return f"signal://{signal.source}/{signal.id}"


class ParameterBuilder:
    """Merge oracle parameters, extracted task details and defaults."""

    def __init__(self, *, default_platform: str = DEFAULT_PLATFORM) -> None:
        self._default_platform = default_platform

    def build(
        self,
        decision: ActionDecision,
        signal: Signal,
        details: TaskDetails | None = None,
        *,
        target_platform: str | None = None,
        today: date | None = None,
    ) -> ParamsBuildResult:
        warnings: list[str] = []
        params: dict[str, Any] = dict(decision.action_params or {})

        platform = target_platform or params.get("platform") or self._default_platform
        params["platform"] = platform
        params["action"] = str(decision.action)
        params["source_url"] = source_url(signal)
        params.setdefault("signal_id", signal.id)

        if details is not None:
            for key, value in details.to_dict().items():
                params.setdefault(key, value)
            if details.due_date is None and "due_date" not in params:
                due = (today or datetime.now().date()) + timedelta(days=DEFAULT_DUE_DAYS)
                params["due_date"] = due.isoformat()
                warnings.append(f"Due date not specified, using default: {DEFAULT_DUE_DAYS} days")
            if not details.assignee and "assignee" not in params:
                warnings.append("No assignee specified")

        log.debug(
            "action_params_built",
            signal_id=signal.id,
            action=str(decision.action),
            platform=platform,
            warnings=len(warnings),
        )
        return ParamsBuildResult(params=params, warnings=warnings)

    @staticmethod
    def minimal(decision: ActionDecision, signal: Signal) -> dict[str, Any]:
        """Fallback parameters when building fails."""
        return {
            "action": str(decision.action),
            "platform": DEFAULT_PLATFORM,
            "signal_id": signal.id,
            "source_url": source_url(signal),
            "title": signal.subject or f"Signal {signal.id}",
        }
