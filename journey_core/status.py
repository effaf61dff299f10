"""
Status service: orchestrates the snapshot cache, TfL arrivals and query
matching to produce a StatusResponse.

Lines matching the caller's free-text query are moved to the front; each
line gets its next few arrivals.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from journey_core.dispatch import DispatchError
from journey_core.models import (
    DisruptionSummary,
    LineSummary,
    ModeSummary,
    OverallStatus,
    Pagination,
    RouteSectionSummary,
    StatusResponse,
    UpcomingArrival,
)
from journey_core.snapshots import StatusSnapshotCache
from journey_core.tfl_client import GOOD_SERVICE, TflClient, is_good_service

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
MAX_LIMIT = 50
ARRIVALS_CHUNK_SIZE = 6
ARRIVALS_PER_LINE = 3

STOP_WORDS = (
    "status", "line", "lines", "service", "services",
    "tube", "train", "bus", "dlr", "overground",
)
_STOP_WORDS_RE = re.compile(r"\b(?:" + "|".join(STOP_WORDS) + r")\b")
_SEGMENT_SPLIT_RE = re.compile(r",|&|/|\band\b")
_NON_ALNUM = re.compile(r"[^a-z0-9]")


@dataclass
class ParsedStatusQuery:
    """What a natural-language status question is asking about. Empty means unknown."""

    lines: list[str] = field(default_factory=list)
    mode: Optional[str] = None


QueryParser = Callable[[str], Awaitable[ParsedStatusQuery]]


def clean_query_segment(segment: str) -> str:
    cleaned = _STOP_WORDS_RE.sub(" ", segment.lower())
    cleaned = re.sub(r"[^a-z0-9&\s-]", " ", cleaned)
    return re.sub(r"\s+", " ", cleaned).strip()


def _line_keys(line: dict) -> dict[str, str]:
    line_id = line.get("id", "").lower()
    name = line.get("name", "").lower()
    name_no_line = re.sub(r" line$", "", name)
    return {
        "id": line_id,
        "name": name,
        "name_no_line": name_no_line,
        "norm_id": _NON_ALNUM.sub("", line_id),
        "norm_name": _NON_ALNUM.sub("", name),
        "norm_no_line": _NON_ALNUM.sub("", name_no_line),
    }


def evaluate_match(line: dict, segment: str) -> tuple[bool, bool]:
    """Return (exact, partial) for one cleaned query segment against a line."""
    keys = _line_keys(line)
    no_line = re.sub(r" line$", "", segment)
    normalized = _NON_ALNUM.sub("", segment)
    normalized_no_line = _NON_ALNUM.sub("", no_line)

    exact = (
        segment in (keys["name"], keys["id"])
        or no_line in (keys["name"], keys["name_no_line"])
        or normalized in (keys["norm_name"], keys["norm_id"])
        or normalized_no_line == keys["norm_no_line"]
    )
    partial = not exact and (
        segment in keys["name"]
        or no_line in keys["name"]
        or segment in keys["id"]
        or normalized in keys["norm_name"]
        or normalized in keys["norm_id"]
    )
    return exact, partial


def find_query_matches(lines: list[dict], query: str) -> tuple[list[dict], list[dict]]:
    """Split `lines` into exact and partial matches for a free-text query."""
    lowered = query.lower()
    segments = [s for s in (clean_query_segment(p) for p in _SEGMENT_SPLIT_RE.split(lowered)) if s]
    if not segments:
        segments = [clean_query_segment(lowered)]

    exact: dict[str, dict] = {}
    partial: dict[str, dict] = {}
    for segment in segments:
        if not segment:
            continue
        for line in lines:
            line_id = line.get("id")
            if line_id in exact:
                continue
            is_exact, is_partial = evaluate_match(line, segment)
            if is_exact:
                exact[line_id] = line
                partial.pop(line_id, None)
            elif is_partial and line_id not in partial:
                partial[line_id] = line
    return list(exact.values()), list(partial.values())


def _prioritize(lines: list[dict], matches: list[dict]) -> list[dict]:
    matched = {line["id"] for line in matches}
    return matches + [line for line in lines if line["id"] not in matched]


def summarize_line(line: dict, arrivals: list[dict]) -> LineSummary:
    statuses = line.get("lineStatuses") or []
    first = statuses[0] if statuses else {}
    severity = first.get("statusSeverity")
    upcoming = sorted(arrivals, key=lambda p: p.get("timeToStation", 0))[:ARRIVALS_PER_LINE]
    return LineSummary(
        id=line["id"],
        name=line.get("name", line["id"]),
        mode_name=line.get("modeName", ""),
        severity=GOOD_SERVICE if severity is None else severity,
        severity_description=first.get("statusSeverityDescription") or "Good Service",
        reason=(first.get("disruption") or {}).get("description"),
        is_good_service=is_good_service(line),
        disruptions=[
            DisruptionSummary(
                category=d.get("category"),
                description=d.get("description"),
                additional_info=d.get("additionalInfo"),
                created=d.get("created"),
                last_update=d.get("lastUpdate"),
            )
            for d in line.get("disruptions") or []
        ],
        route_sections=[
            RouteSectionSummary(
                name=rs.get("name"),
                direction=rs.get("direction"),
                origination=rs.get("originationName"),
                destination=rs.get("destinationName"),
            )
            for rs in line.get("routeSections") or []
        ],
        upcoming_arrivals=[
            UpcomingArrival(
                station_name=p.get("stationName"),
                destination_name=p.get("destinationName"),
                expected_arrival=p.get("expectedArrival"),
                time_to_station=p.get("timeToStation"),
            )
            for p in upcoming
        ],
    )


def summarize_modes(grouped: dict[str, list[LineSummary]]) -> list[ModeSummary]:
    summaries = []
    for mode, lines in grouped.items():
        affected = [line.name for line in lines if not line.is_good_service]
        summaries.append(
            ModeSummary(
                mode=mode,
                overall_status=OverallStatus.disrupted if affected else OverallStatus.good,
                severity=min(line.severity for line in lines),
                affected_lines=affected,
                total_lines=len(lines),
            )
        )
    return summaries


class StatusService:
    """Produces StatusResponse from the snapshot cache plus live arrivals."""

    def __init__(
        self,
        snapshots: StatusSnapshotCache,
        tfl_client: TflClient,
        query_parser: Optional[QueryParser] = None,
    ) -> None:
        self._snapshots = snapshots
        self._tfl = tfl_client
        self._query_parser = query_parser

    async def get_status(
        self,
        modes: Optional[list[str]] = None,
        lines: Optional[list[str]] = None,
        query: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> StatusResponse:
        limit = min(limit, MAX_LIMIT) if limit and limit > 0 else DEFAULT_LIMIT
        offset = offset if offset and offset > 0 else 0

        statuses = await self._snapshots.get_line_statuses()

        if modes:
            mode_set = set(modes)
            statuses = [line for line in statuses if line.get("modeName") in mode_set]
        if lines:
            line_set = {line.lower() for line in lines}
            statuses = [
                line
                for line in statuses
                if line.get("id", "").lower() in line_set
                or line.get("name", "").lower() in line_set
            ]

        prioritized, matched_ids = await self._prioritize_for_query(statuses, query)
        arrivals = await self._arrivals_by_line([line["id"] for line in prioritized])

        summaries = [summarize_line(line, arrivals.get(line["id"], [])) for line in prioritized]
        grouped: dict[str, list[LineSummary]] = {}
        for summary in summaries:
            grouped.setdefault(summary.mode_name, []).append(summary)

        total = len(summaries)
        offset = min(offset, total)
        page = summaries[offset : offset + limit]

        return StatusResponse(
            last_updated=datetime.now(timezone.utc),
            query=query or None,
            modes=summarize_modes(grouped),
            lines=page,
            grouped_by_mode=grouped,
            matched_line_ids=matched_ids,
            total_line_count=total,
            pagination=Pagination(offset=offset, limit=limit, returned=len(page)),
        )

    async def _prioritize_for_query(
        self, statuses: list[dict], query: Optional[str]
    ) -> tuple[list[dict], list[str]]:
        if not query:
            return statuses, []

        exact, partial = find_query_matches(statuses, query)
        matches = exact + partial
        if not matches and self._query_parser is not None:
            parsed = await self._query_parser(query)
            wanted = {name.lower() for name in parsed.lines}
            if wanted:
                matches = [
                    line
                    for line in statuses
                    if line.get("id", "").lower() in wanted
                    or line.get("name", "").lower() in wanted
                ]
            elif parsed.mode:
                matches = [line for line in statuses if line.get("modeName") == parsed.mode]

        if not matches:
            return statuses, []
        return _prioritize(statuses, matches), [line["id"] for line in matches]

    async def _arrivals_by_line(self, line_ids: list[str]) -> dict[str, list[dict]]:
        """Arrivals grouped by line id; a failing chunk is logged and skipped."""
        by_line: dict[str, list[dict]] = {}
        for start in range(0, len(line_ids), ARRIVALS_CHUNK_SIZE):
            chunk = line_ids[start : start + ARRIVALS_CHUNK_SIZE]
            try:
                predictions = await self._tfl.get_line_arrivals(chunk)
            except DispatchError as exc:
                logger.error("Arrivals fetch failed for lines %s: %s", ",".join(chunk), exc)
                continue
            for prediction in predictions:
                by_line.setdefault(prediction.get("lineId"), []).append(prediction)
        return by_line
