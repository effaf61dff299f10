"""Station search: ranked TfL stop points flattened for the /v1 API."""

from __future__ import annotations

from typing import Optional

from journey_core.models import LineRef, StationResult, StationSearchResponse
from journey_core.ranking import sort_lines_naturally
from journey_core.tfl_client import TflClient

MIN_QUERY_LENGTH = 2
DEFAULT_LIMIT = 20


def to_station_result(stop: dict) -> StationResult:
    zone = stop.get("zone")
    return StationResult(
        id=stop.get("id"),
        naptan_id=stop.get("naptanId"),
        name=stop.get("commonName"),
        modes=stop.get("modes") or [],
        lat=stop.get("lat"),
        lon=stop.get("lon"),
        zone=str(zone) if zone is not None else None,
        lines=[
            LineRef(id=line.get("id"), name=line.get("name"))
            for line in sort_lines_naturally(stop.get("lines"))
        ],
    )


async def search_stations(
    tfl_client: TflClient,
    query: str,
    modes: Optional[list[str]] = None,
    limit: int = DEFAULT_LIMIT,
) -> StationSearchResponse:
    """
    Search stations by name. Raises ValueError for queries shorter than
    two characters.
    """
    if len(query.strip()) < MIN_QUERY_LENGTH:
        raise ValueError(f"Search query must be at least {MIN_QUERY_LENGTH} characters")
    stops = await tfl_client.search_stop_points(query, modes)
    results = [to_station_result(stop) for stop in stops[: max(limit, 0)]]
    return StationSearchResponse(query=query, results=results, total=len(results))
