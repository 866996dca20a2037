"""Reversible PII redaction.

Sensitive values are swapped for placeholders of the form ``[CATEGORY_hash]``.
The hash is derived from the value itself, so the same value always gets the
same placeholder and distinct values get distinct ones. The returned map
lets ``restore()`` put the originals back exactly.
"""

from __future__ import annotations

import hashlib
import ipaddress
import re
from typing import Callable, Pattern

import structlog

from hippo.models import RedactionResult

logger = structlog.get_logger(__name__)

HASH_LENGTH = 8

# Priority order. At any position the earliest category in this list wins.
CATEGORIES: list[tuple[str, Pattern[str]]] = [
    ("JWT", re.compile(r"\beyJ[A-Za-z0-9_-]+\.eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+")),
    ("APIKEY", re.compile(r"(?<![A-Za-z0-9_-])[A-Za-z0-9_-]{32,}")),
    ("EMAIL", re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")),
    ("PHONE", re.compile(r"(?:\+?\b1[-.\s]?)?(?:\(\d{3}\)|\b\d{3})[-.\s]?\d{3}[-.\s]?\d{4}\b")),
    ("SSN", re.compile(r"\b\d{3}-\d{2}-\d{4}\b")),
    ("CARD", re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b")),
    ("IP", re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")),
]

PLACEHOLDER_PATTERN = re.compile(
    r"\[(?:" + "|".join(name for name, _ in CATEGORIES) + r")_[0-9a-f]+\]"
)


def _is_api_key(value: str) -> bool:
    # Long plain words and hyphenated prose are not keys
    return any(ch.isdigit() for ch in value)


NON_PUBLIC_NETWORKS = [
    ipaddress.IPv4Network(cidr)
    for cidr in ("127.0.0.0/8", "10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16")
]


def _is_public_ipv4(value: str) -> bool:
    try:
        addr = ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return not any(addr in network for network in NON_PUBLIC_NETWORKS)


VALIDATORS: dict[str, Callable[[str], bool]] = {
    "APIKEY": _is_api_key,
    "IP": _is_public_ipv4,
}


def _search(category: str, pattern: Pattern[str], text: str, pos: int) -> re.Match[str] | None:
    """Find the next match at or after pos that passes the category validator."""
    validator = VALIDATORS.get(category)
    while pos <= len(text):
        match = pattern.search(text, pos)
        if match is None:
            return None
        if validator is None or validator(match.group()):
            return match
        # Any substring of a rejected run would be rejected too
        pos = match.end()
    return None


def find_pii(text: str) -> list[tuple[str, int, int]]:
    """
    Locate PII spans.

    Scans left to right. At each step the leftmost candidate wins, with ties
    broken by category priority. Spans never overlap.

    Returns:
        List of (category, start, end)
    """
    spans: list[tuple[str, int, int]] = []
    pos = 0
    while pos < len(text):
        best: tuple[int, int, str, re.Match[str]] | None = None
        for index, (category, pattern) in enumerate(CATEGORIES):
            match = _search(category, pattern, text, pos)
            if match is None:
                continue
            key = (match.start(), index)
            if best is None or key < (best[0], best[1]):
                best = (match.start(), index, category, match)
        if best is None:
            break
        _, _, category, match = best
        spans.append((category, match.start(), match.end()))
        pos = max(match.end(), match.start() + 1)
    return spans


def _placeholder(category: str, value: str, taken: dict[str, str]) -> str:
    """Build a placeholder, lengthening the hash if it collides with another value."""
    digest = hashlib.sha256(f"{category}:{value}".encode()).hexdigest()
    length = HASH_LENGTH
    while True:
        placeholder = f"[{category}_{digest[:length]}]"
        existing = taken.get(placeholder)
        if existing is None or existing == value or length >= len(digest):
            return placeholder
        length += 4


def redact(text: str) -> RedactionResult:
    """
    Replace PII in text with deterministic placeholders.

    Returns:
        RedactionResult with the redacted text, a placeholder -> original map
        (None when nothing was found), and a had_pii flag
    """
    spans = find_pii(text)
    if not spans:
        return RedactionResult(redacted=text, map=None, had_pii=False)

    mapping: dict[str, str] = {}
    parts: list[str] = []
    cursor = 0
    for category, start, end in spans:
        value = text[start:end]
        placeholder = _placeholder(category, value, mapping)
        mapping[placeholder] = value
        parts.append(text[cursor:start])
        parts.append(placeholder)
        cursor = end
    parts.append(text[cursor:])

    logger.debug(
        "pii_redacted",
        spans=len(spans),
        categories=sorted({category for category, _, _ in spans}),
    )
    return RedactionResult(redacted="".join(parts), map=mapping, had_pii=True)


def restore(text: str, mapping: dict[str, str] | None) -> str:
    """Reverse redact(). Placeholders missing from the map are left as is."""
    if not mapping:
        return text
    return PLACEHOLDER_PATTERN.sub(lambda m: mapping.get(m.group(), m.group()), text)


def is_all_redacted(text: str) -> bool:
    """True when nothing but placeholders, punctuation and whitespace remains."""
    stripped = PLACEHOLDER_PATTERN.sub("", text)
    return not any(ch.isalnum() for ch in stripped)
