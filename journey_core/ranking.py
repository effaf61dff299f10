"""
Relevance ranking for stop-point search results.

Pure functions, no I/O. TfL returns search matches in its own order; these
helpers push exact and near-exact name matches to the top.
"""

from __future__ import annotations

import math
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Optional

_NON_WORD = re.compile(r"[^a-z0-9]+")
_NUMBER = re.compile(r"\d+")
_CHUNK = re.compile(r"(\d+)")


def normalize(value: str) -> str:
    return re.sub(r"\s+", " ", _NON_WORD.sub(" ", value.lower())).strip()


def tokenize(normalized: str) -> list[str]:
    return normalized.split(" ") if normalized else []


def numeric_tokens(value: str) -> list[int]:
    return [int(token) for token in _NUMBER.findall(value)]


def natural_key(value: str) -> tuple:
    """
    Case- and accent-insensitive sort key that orders embedded numbers by value.

    "Bus 9" sorts before "Bus 10".
    """
    folded = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode()
    parts = []
    for chunk in _CHUNK.split(folded.casefold()):
        if not chunk:
            continue
        if chunk.isdigit():
            parts.append((0, int(chunk), ""))
        else:
            parts.append((1, 0, chunk))
    return tuple(parts)


@dataclass
class _StopMetadata:
    stop: dict
    name: str
    normalized_name: str
    tokens: list[str]
    numbers: list[int]
    normalized_id: str
    line_tokens: set[str] = field(default_factory=set)
    line_numbers: list[int] = field(default_factory=list)


def _build_metadata(stop: dict) -> _StopMetadata:
    name = stop.get("commonName") or ""
    normalized_name = normalize(name)
    meta = _StopMetadata(
        stop=stop,
        name=name,
        normalized_name=normalized_name,
        tokens=tokenize(normalized_name),
        numbers=numeric_tokens(normalized_name),
        normalized_id=normalize(stop.get("id") or stop.get("naptanId") or ""),
    )
    for line in stop.get("lines") or []:
        for raw in (line.get("name"), line.get("id")):
            if raw:
                normalized_line = normalize(raw)
                meta.line_tokens.update(tokenize(normalized_line))
                meta.line_numbers.extend(numeric_tokens(normalized_line))
    return meta


def _priority(meta: _StopMetadata, query: str, query_tokens: list[str], query_lower: str) -> int:
    if not query:
        return 6
    if meta.normalized_name == query or meta.normalized_id == query:
        return 0
    if query in meta.tokens or query in meta.line_tokens:
        return 1
    if len(query_tokens) > 1 and all(token in meta.tokens for token in query_tokens):
        return 2
    if meta.normalized_name.startswith(query):
        return 2
    if any(token.startswith(query) for token in meta.tokens):
        return 3
    if any(token.startswith(query) for token in meta.line_tokens):
        return 3

    lower_name = meta.name.lower()
    if lower_name.startswith(query_lower):
        return 4
    if query_lower in lower_name:
        return 5
    return 6


def _numeric_distance(meta: _StopMetadata, target: int) -> float:
    values = meta.numbers + meta.line_numbers
    if not values:
        return math.inf
    return min(abs(value - target) for value in values)


def rank_stop_points(stops: list[dict], query: str) -> list[dict]:
    """
    Order stop points by relevance to `query`.

    Exact name/id > exact token > all tokens present or name prefix >
    token prefix > raw prefix > substring. Ties break on numeric closeness
    (numeric queries only), then shorter name, then natural name order.
    """
    query_normalized = normalize(query)
    query_lower = query.lower()
    query_tokens = tokenize(query_normalized)
    numeric_query: Optional[int] = (
        int(query_normalized) if query_normalized.isdigit() else None
    )

    def sort_key(meta: _StopMetadata) -> tuple:
        distance = (
            _numeric_distance(meta, numeric_query) if numeric_query is not None else 0
        )
        return (
            _priority(meta, query_normalized, query_tokens, query_lower),
            distance,
            len(meta.name),
            natural_key(meta.name),
        )

    return [meta.stop for meta in sorted(map(_build_metadata, stops), key=sort_key)]


def sort_lines_naturally(lines: Optional[list[dict]]) -> list[dict]:
    """Sort line dicts by name (or id) in natural order."""
    if not lines:
        return []
    return sorted(lines, key=lambda line: natural_key(line.get("name") or line.get("id") or ""))
