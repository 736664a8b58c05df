"""Signal preprocessing: cleanup and lightweight structured-data extraction.

Strips quoted reply chains (mail only), signatures and disclaimers, then
normalizes whitespace. The result carries the cleaned text plus the
addresses, links, amounts and dates found in it.
"""

from __future__ import annotations

import dataclasses
import re
from dataclasses import dataclass, field
from typing import Any

from signalflow.logging import get_logger
from signalflow.models import Signal

log = get_logger("signalflow.reasoning.preprocess")

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

_EMAIL = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_URL = re.compile(r"https?://[^\s<>\"]+")
_PHONE = re.compile(r"(?:\+?1[-.\s]?)?(?:\(?\d{3}\)?[-.\s]?)?\d{3}[-.\s]\d{4}\b")
_MONEY = re.compile(
    r"[$€£¥]\s?\d+(?:,\d{3})*(?:\.\d{2})?|\d+(?:,\d{3})*(?:\.\d{2})?\s?(?:USD|EUR|GBP|JPY)\b",
    re.IGNORECASE,
)
_ISO_DATE = re.compile(r"\b\d{4}-\d{2}-\d{2}\b")

# Whole quoted lines and header blocks
_QUOTED_LINES = [
    re.compile(r"^On .+ wrote:\s*$", re.MULTILINE),
    re.compile(r"^(?:From|Sent|To|Subject):.+$", re.MULTILINE),
    re.compile(r"^>+.*$", re.MULTILINE),
]

# Everything after one of these markers is the previous message
_QUOTE_STARTS = [
    re.compile(r"\n\s*On .+wrote:\s*\n", re.IGNORECASE),
    re.compile(r"\n-+\s*Original Message\s*-+\n", re.IGNORECASE),
]

_SIGNATURES = [
    re.compile(r"(?:^|\n)--\s*\n.*", re.DOTALL),
    re.compile(r"(?:^|\n)_{3,}\n.*", re.DOTALL),
    re.compile(
        r"(?:^|\n)(?:Best regards|Kind regards|Thanks|Thank you|Regards|Sincerely|Cheers),?\s*\n.*",
        re.DOTALL | re.IGNORECASE,
    ),
    re.compile(
        r"(?:^|\n)Sent from my (?:iPhone|iPad|Android|mobile device).*",
        re.DOTALL | re.IGNORECASE,
    ),
]

_DISCLAIMERS = [
    re.compile(
        r"This email (?:and any attachments )?(?:is|are) confidential.*",
        re.DOTALL | re.IGNORECASE,
    ),
    re.compile(r"(?:^|\n)NOTICE:.*", re.DOTALL),
]

_CURRENCY_SYMBOLS = {"$": "USD", "€": "EUR", "£": "GBP", "¥": "JPY"}


@dataclass
class PreprocessedSignal:
    """A cleaned view of a signal. ``signal`` carries the cleaned text."""

    original: Signal
    signal: Signal
    cleaning_applied: list[str] = field(default_factory=list)
    word_count: int = 0
    sentence_count: int = 0
    emails: list[str] = field(default_factory=list)
    urls: list[str] = field(default_factory=list)
    phone_numbers: list[str] = field(default_factory=list)
    amounts: list[dict[str, Any]] = field(default_factory=list)
    dates: list[str] = field(default_factory=list)

    @classmethod
    def passthrough(cls, signal: Signal) -> PreprocessedSignal:
        """Fallback used when preprocessing fails."""
        return cls(
            original=signal,
            signal=signal,
            cleaning_applied=["error_fallback"],
            word_count=len(signal.body.split()),
        )


def clean_whitespace(text: str) -> str:
    text = text.replace("\r\n", "\n")
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = re.sub(r"[ \t]+", " ", text)
    return text.strip()


def remove_quoted_replies(text: str) -> tuple[str, bool]:
    found = False
    for pattern in _QUOTE_STARTS:
        match = pattern.search(text)
        if match:
            text = text[: match.start()]
            found = True
            break
    for pattern in _QUOTED_LINES:
        text, count = pattern.subn("", text)
        found = found or count > 0
    return text.strip(), found


def remove_signatures(text: str) -> tuple[str, bool, bool]:
    has_signature = False
    has_disclaimer = False
    for pattern in _DISCLAIMERS:
        text, count = pattern.subn("", text)
        has_disclaimer = has_disclaimer or count > 0
    for pattern in _SIGNATURES:
        text, count = pattern.subn("", text)
        has_signature = has_signature or count > 0
    return text.strip(), has_signature, has_disclaimer


def parse_amounts(text: str) -> list[dict[str, Any]]:
    amounts: list[dict[str, Any]] = []
    for match in _MONEY.finditer(text):
        raw = match.group(0)
        currency = next((c for s, c in _CURRENCY_SYMBOLS.items() if s in raw), None)
        if currency is None:
            currency = raw[-3:].upper()
        number = re.sub(r"[^\d.]", "", raw)
        try:
            amounts.append({"amount": float(number), "currency": currency, "original": raw})
        except ValueError:
            continue
    return amounts


def _unique(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def preprocess(signal: Signal) -> PreprocessedSignal:
    """Clean a signal and pull out structured data."""
    applied: list[str] = []
    body = signal.body

    if signal.source == "email":
        body, had_quotes = remove_quoted_replies(body)
        if had_quotes:
            applied.append("quoted_replies_removed")

    body, had_signature, had_disclaimer = remove_signatures(body)
    if had_signature:
        applied.append("signature_removed")
    if had_disclaimer:
        applied.append("disclaimer_removed")

    subject = clean_whitespace(signal.subject) if signal.subject else signal.subject
    body = clean_whitespace(body)
    applied.append("whitespace_cleaned")

    # Never clean a body down to nothing
    if not body:
        body = clean_whitespace(signal.body)

    combined = f"{subject or ''}\n{body}"
    result = PreprocessedSignal(
        original=signal,
        signal=dataclasses.replace(signal, subject=subject, body=body),
        cleaning_applied=applied,
        word_count=len(body.split()),
        sentence_count=len([s for s in re.split(r"[.!?]+", body) if s.strip()]),
        emails=_unique(_EMAIL.findall(combined)),
        urls=_unique(_URL.findall(combined)),
        phone_numbers=_unique(_PHONE.findall(combined)),
        amounts=parse_amounts(combined),
        dates=_unique(_ISO_DATE.findall(combined)),
    )
    log.debug(
        "signal_preprocessed",
        signal_id=signal.id,
        cleaning=",".join(applied),
        word_count=result.word_count,
    )
    return result
