"""Reasoning oracle protocol and the client that wraps it.

``ReasoningClient`` adds, around any oracle implementation: the response
cache, a per-attempt timeout with true cancellation, and exponential backoff
retries. ``HttpReasoningOracle`` talks to a remote endpoint with httpx.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import httpx
from pydantic import ValidationError

from signalflow.cache.response import EntryType, Feedback, ResponseCache, ResponseKey
from signalflow.errors import OracleError, OracleTimeoutError
from signalflow.logging import get_logger
from signalflow.models import Classification, ProcessingStrategy, Signal
from signalflow.reasoning import prompts

if TYPE_CHECKING:
    from signalflow.batching.similarity import SignalGroup
    from signalflow.config import Settings

log = get_logger("signalflow.reasoning.client")


@dataclass(frozen=True)
class OracleRequest:
    """One call to the oracle."""

    prompt: str
    model: str
    temperature: float
    kind: EntryType = EntryType.OTHER
    context: str | None = None
    signal_id: str | None = None
    source: str | None = None

    @property
    def cache_key(self) -> ResponseKey:
        return ResponseKey(self.prompt, self.model, self.temperature, self.context)


class ReasoningOracle(Protocol):
    """Anything that turns a prompt into raw (JSON) text."""

    async def complete(self, request: OracleRequest) -> str: ...


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse an oracle reply, tolerating a markdown code fence around it."""
    body = text.strip()
    if body.startswith("```"):
        body = body.split("```")[1]
        if body.startswith("json"):
            body = body[4:]
    body = body.strip()
    try:
        data = json.loads(body)
    except json.JSONDecodeError as exc:
        raise OracleError(f"Oracle returned invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise OracleError("Oracle returned JSON that is not an object")
    return data


class ReasoningClient:
    """Cached, time-bounded, retrying access to a ReasoningOracle."""

    def __init__(
        self,
        oracle: ReasoningOracle,
        *,
        cache: ResponseCache | None = None,
        model: str = "default",
        temperature: float = 0.2,
        timeout: float = 30.0,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self._oracle = oracle
        self._cache = cache
        self._model = model
        self._temperature = temperature
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._sleep = sleep

        self.calls = 0
        self.cache_hits = 0
        self.timeouts = 0
        self.failures = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        oracle: ReasoningOracle,
        cache: ResponseCache | None = None,
    ) -> ReasoningClient:
        return cls(
            oracle,
            cache=cache,
            model=settings.oracle_model,
            temperature=settings.oracle_temperature,
            timeout=settings.oracle_timeout,
            max_attempts=settings.oracle_max_attempts,
            backoff_base=settings.oracle_backoff_base,
        )

    def request(self, prompt: str, kind: EntryType, **kwargs: Any) -> OracleRequest:
        return OracleRequest(
            prompt=prompt,
            model=self._model,
            temperature=self._temperature,
            kind=kind,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Core call
    # ------------------------------------------------------------------

    async def complete(self, request: OracleRequest, *, bypass_cache: bool = False) -> str:
        """Return the oracle's raw reply, from cache when possible.

        Raises:
            OracleTimeoutError: If every attempt timed out.
            OracleError: If every attempt failed.
        """
        if self._cache is not None and not bypass_cache:
            cached = self._cache.get(request.cache_key)
            if cached is not None:
                self.cache_hits += 1
                log.debug("oracle_cache_hit", kind=str(request.kind), signal_id=request.signal_id)
                return cached

        last_error: Exception | None = None
        all_timeouts = True
        for attempt in range(self._max_attempts):
            if attempt:
                delay = self._backoff_base * (2 ** (attempt - 1))
                log.info(
                    "oracle_retry_backoff",
                    attempt=attempt + 1,
                    delay_seconds=delay,
                    signal_id=request.signal_id,
                )
                await self._sleep(delay)

            self.calls += 1
            try:
                # wait_for cancels the in-flight call when the timeout fires
                reply = await asyncio.wait_for(self._oracle.complete(request), self._timeout)
            except TimeoutError as exc:
                self.timeouts += 1
                last_error = exc
                log.warning(
                    "oracle_timeout",
                    attempt=attempt + 1,
                    timeout_seconds=self._timeout,
                    signal_id=request.signal_id,
                )
                continue
            except OracleError as exc:
                all_timeouts = False
                last_error = exc
                log.warning(
                    "oracle_call_failed",
                    attempt=attempt + 1,
                    error=str(exc),
                    signal_id=request.signal_id,
                )
                continue

            if self._cache is not None:
                self._cache.put(
                    request.cache_key,
                    reply,
                    entry_type=request.kind,
                    signal_id=request.signal_id,
                    source=request.source,
                )
            return reply

        self.failures += 1
        if all_timeouts:
            raise OracleTimeoutError(
                f"Oracle timed out {self._max_attempts} times"
            ) from last_error
        raise OracleError(f"Oracle failed after {self._max_attempts} attempts") from last_error

    async def complete_json(
        self, request: OracleRequest, *, bypass_cache: bool = False
    ) -> dict[str, Any]:
        """Like ``complete`` but parse the reply; unusable replies are evicted."""
        reply = await self.complete(request, bypass_cache=bypass_cache)
        try:
            return parse_json_object(reply)
        except OracleError:
            self.reject_cached(request)
            raise

    def reject_cached(self, request: OracleRequest) -> None:
        """Drop a cached reply that turned out to be unusable."""
        if self._cache is not None:
            self._cache.mark_feedback(request.cache_key, Feedback.INCORRECT)

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    async def classify(self, signal: Signal, *, bypass_cache: bool = False) -> Classification:
        request = self.request(
            prompts.classification_prompt(signal),
            EntryType.CLASSIFICATION,
            signal_id=signal.id,
            source=signal.source,
        )
        data = await self.complete_json(request, bypass_cache=bypass_cache)
        try:
            return Classification.model_validate(data)
        except ValidationError as exc:
            self.reject_cached(request)
            raise OracleError(f"Invalid classification: {exc.error_count()} errors") from exc

    async def classify_group(self, group: SignalGroup) -> dict[str, Classification]:
        """One oracle call for a whole group, keyed by signal id."""
        request = self.request(
            prompts.group_classification_prompt(group),
            EntryType.CLASSIFICATION,
            context=group.common_thread,
        )
        data = await self.complete_json(request)
        raw = data.get("results", data)
        if isinstance(raw, list):
            raw = {item.get("signal_id"): item for item in raw if isinstance(item, dict)}
        if not isinstance(raw, dict):
            self.reject_cached(request)
            raise OracleError("Group classification has no results")

        wanted = {s.id for s in group.signals}
        results: dict[str, Classification] = {}
        for signal_id, payload in raw.items():
            if signal_id not in wanted or not isinstance(payload, dict):
                continue
            try:
                results[signal_id] = Classification.model_validate(payload)
            except ValidationError as exc:
                log.warning(
                    "group_classification_entry_invalid",
                    signal_id=signal_id,
                    errors=exc.error_count(),
                )
        return results

    async def decide(
        self,
        signal: Signal,
        classification: Classification,
        strategy: ProcessingStrategy,
        context: dict[str, Any],
        *,
        bypass_cache: bool = False,
    ) -> tuple[OracleRequest, dict[str, Any]]:
        """Ask for a decision. Returns the request (for cache feedback) and raw JSON."""
        request = self.request(
            prompts.decision_prompt(signal, classification, strategy, context),
            EntryType.DECISION,
            signal_id=signal.id,
            source=signal.source,
        )
        return request, await self.complete_json(request, bypass_cache=bypass_cache)

    def stats(self) -> dict[str, int]:
        return {
            "calls": self.calls,
            "cache_hits": self.cache_hits,
            "timeouts": self.timeouts,
            "failures": self.failures,
        }


class HttpReasoningOracle:
    """Remote oracle reached over HTTP.

    POSTs ``{prompt, model, temperature, kind, context}`` to
    ``{url}/v1/complete`` and expects ``{"output": "<text>"}`` back.
    """

    def __init__(
        self,
        url: str,
        *,
        api_key: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def complete(self, request: OracleRequest) -> str:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        try:
            resp = await self._client.post(
                f"{self._url}/v1/complete",
                json={
                    "prompt": request.prompt,
                    "model": request.model,
                    "temperature": request.temperature,
                    "kind": str(request.kind),
                    "context": request.context,
                },
                headers=headers,
            )
        except httpx.RequestError as exc:
            raise OracleError(f"Oracle request failed: {exc}") from exc

        if resp.status_code != 200:
            raise OracleError(f"Oracle returned HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            body = resp.json()
        except ValueError:
            return resp.text
        if isinstance(body, dict) and isinstance(body.get("output"), str):
            return body["output"]
        return json.dumps(body)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
