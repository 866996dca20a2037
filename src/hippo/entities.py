"""Regex-based entity extraction."""

from __future__ import annotations

import re
from typing import Iterable
from urllib.parse import urlparse

MAX_CONTENT_CHARS = 5000
MAX_ENTITIES = 20

URL_PATTERN = re.compile(r"https?://[^\s]+", re.IGNORECASE)
MENTION_PATTERN = re.compile(r"@\w+")
HASHTAG_PATTERN = re.compile(r"#\w+")
DOMAIN_PATTERN = re.compile(
    r"\b[a-z0-9]+(?:-[a-z0-9]+)*\.(?:com|org|io|net|dev|co|edu|gov)\b",
    re.IGNORECASE,
)
VERSION_PATTERN = re.compile(r"\bv?\d+\.\d+(?:\.\d+)?\b", re.IGNORECASE)
PROPER_NOUN_PATTERN = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b")


def extract_entities(texts: Iterable[str], limit: int = MAX_ENTITIES) -> list[str]:
    """
    Pull entity-like tokens out of text.

    Collects URL hosts, @mentions, #hashtags, bare domains, version numbers,
    and capitalised names. Names are only taken from texts with a handful of
    them, since sentence-initial words would otherwise flood the result.

    Returns:
        Unique entities in first-seen order, at most `limit`
    """
    found: dict[str, None] = {}

    for text in texts:
        content = text[:MAX_CONTENT_CHARS]

        for url in URL_PATTERN.findall(content):
            try:
                host = urlparse(url).hostname
            except ValueError:
                # Unbalanced brackets and similar malformed hosts
                continue
            if host:
                found.setdefault(host, None)

        for pattern in (MENTION_PATTERN, HASHTAG_PATTERN, DOMAIN_PATTERN, VERSION_PATTERN):
            for match in pattern.findall(content):
                found.setdefault(match, None)

        names = PROPER_NOUN_PATTERN.findall(content)
        if len(names) <= 5:
            for name in names:
                if 2 <= len(name) <= 30:
                    found.setdefault(name, None)

    return list(found)[:limit]
