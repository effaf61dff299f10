"""
Async TfL unified API client.

Endpoint methods on top of ResilientFetcher: journey planning, stop search,
arrivals, line status and disruptions. Returns TfL JSON as plain dicts.
Raises DispatchError on failures.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Union
from urllib.parse import quote

from journey_core.config import DEFAULT_STATUS_MODES
from journey_core.dispatch import DispatchError, ResilientFetcher
from journey_core.models import JourneyPreferences
from journey_core.ranking import rank_stop_points

logger = logging.getLogger(__name__)

# Upstream complaint when a mode id in the path is not in the expected form.
PATTERN_MISMATCH = "string did not match the expected pattern"

# Extra spellings TfL has accepted for modes whose canonical id it rejects.
MODE_ALIASES: dict[str, list[str]] = {
    "river-bus": ["riverbus"],
    "cable-car": ["cablecar"],
}

NEARBY_STOP_TYPES = [
    "NaptanMetroStation",
    "NaptanRailStation",
    "NaptanBusCoachStation",
    "NaptanFerryPort",
    "NaptanPublicBusCoachTram",
]

SEVERITY_DESCRIPTIONS = {
    0: "Special Service",
    1: "Closed",
    2: "Suspended",
    3: "Part Suspended",
    4: "Planned Closure",
    5: "Part Closure",
    6: "Severe Delays",
    7: "Reduced Service",
    8: "Bus Service",
    9: "Minor Delays",
    10: "Good Service",
    11: "Part Closed",
    12: "Exit Only",
    13: "No Step Free Access",
    14: "Change of frequency",
    15: "Diverted",
    16: "Not Running",
    17: "Issues Reported",
    18: "No Issues",
    19: "Information",
    20: "Service Closed",
}

GOOD_SERVICE = 10


def mode_variants(mode: str) -> list[str]:
    """Spellings to try for `mode`, canonical lower-case form first."""
    normalized = mode.strip().lower()
    variants = [normalized]
    if "-" in normalized:
        variants.append(normalized.replace("-", ""))
    if " " in normalized:
        variants.append("".join(normalized.split()))
    variants.extend(MODE_ALIASES.get(normalized, []))
    return list(dict.fromkeys(variants))


def is_good_service(line: dict) -> bool:
    """True when every status entry on the line is Good Service (10)."""
    return all(
        status.get("statusSeverity") == GOOD_SERVICE
        for status in line.get("lineStatuses") or []
    )


def format_stop_point_for_journey(stop: dict) -> str:
    """Journey endpoint location for a stop: "lat,lon" works for every stop type."""
    return f"{stop['lat']},{stop['lon']}"


def get_severity_description(severity: int) -> str:
    return SEVERITY_DESCRIPTIONS.get(severity, "Unknown")


def _is_pattern_mismatch(exc: DispatchError) -> bool:
    return PATTERN_MISMATCH in exc.message.lower()


def _segment(value: str) -> str:
    return quote(str(value), safe=",:")


class TflClient:
    """Async client for the TfL unified API."""

    def __init__(self, fetcher: ResilientFetcher) -> None:
        self._fetcher = fetcher

    @property
    def fetcher(self) -> ResilientFetcher:
        return self._fetcher

    async def _fetch(self, path: str, params: Optional[dict] = None) -> Any:
        return await self._fetcher.execute(path, params)

    # -- journeys -----------------------------------------------------------

    async def plan_journey(
        self,
        from_location: str,
        to_location: str,
        preferences: Optional[Union[JourneyPreferences, dict]] = None,
    ) -> dict:
        """
        Plan journeys between two locations (stop ids, "lat,lon" or postcodes).

        Returns TfL's JourneyPlannerResult unchanged.
        """
        if isinstance(preferences, JourneyPreferences):
            params = preferences.to_params()
        else:
            params = dict(preferences or {})
        path = f"/Journey/JourneyResults/{_segment(from_location)}/to/{_segment(to_location)}"
        return await self._fetch(path, params)

    # -- stop points --------------------------------------------------------

    async def search_stop_points(
        self, query: str, modes: Optional[list[str]] = None
    ) -> list[dict]:
        """Search stop points by name, best matches first."""
        params: dict[str, Any] = {"query": query, "maxResults": 20}
        if modes:
            params["modes"] = modes
        response = await self._fetch("/StopPoint/Search", params)
        return rank_stop_points(response.get("matches") or [], query)

    async def get_stop_point(self, stop_id: str) -> dict:
        return await self._fetch(f"/StopPoint/{_segment(stop_id)}")

    async def get_nearby_stop_points(
        self,
        lat: float,
        lon: float,
        radius: int = 500,
        modes: Optional[list[str]] = None,
        categories: Optional[list[str]] = None,
    ) -> list[dict]:
        params: dict[str, Any] = {
            "lat": lat,
            "lon": lon,
            "radius": radius,
            "stopTypes": NEARBY_STOP_TYPES,
        }
        if modes:
            params["modes"] = modes
        if categories:
            params["categories"] = categories
        response = await self._fetch("/StopPoint", params)
        return response.get("stopPoints") or []

    # -- arrivals -----------------------------------------------------------

    async def get_arrivals(self, stop_id: str) -> list[dict]:
        return await self._fetch(f"/StopPoint/{_segment(stop_id)}/Arrivals")

    async def get_multiple_arrivals(self, stop_ids: list[str]) -> list[dict]:
        """
        Arrivals for several stops, fetched concurrently.

        A stop whose fetch fails contributes no arrivals instead of failing
        the batch. A single stop is fetched directly and its errors propagate.
        """
        unique_ids = list(
            dict.fromkeys(
                stop_id for stop_id in stop_ids if isinstance(stop_id, str) and stop_id.strip()
            )
        )
        if not unique_ids:
            return []
        if len(unique_ids) == 1:
            return await self.get_arrivals(unique_ids[0])

        async def arrivals_or_empty(stop_id: str) -> list[dict]:
            try:
                return await self.get_arrivals(stop_id)
            except DispatchError as exc:
                logger.warning("Arrivals fetch failed for stop %s: %s", stop_id, exc)
                return []

        per_stop = await asyncio.gather(*(arrivals_or_empty(i) for i in unique_ids))
        return [arrival for arrivals in per_stop for arrival in arrivals]

    async def get_line_arrivals(
        self, line_ids: list[str], stop_id: Optional[str] = None
    ) -> list[dict]:
        if not line_ids:
            return []
        params = {"stopPointId": stop_id} if stop_id else None
        return await self._fetch(f"/Line/{_segment(','.join(line_ids))}/Arrivals", params)

    # -- line status --------------------------------------------------------

    async def get_line_status(self, modes: Optional[list[str]] = None) -> list[dict]:
        """
        Status of every line on the given modes (default: all London modes).

        If TfL rejects the combined mode list as malformed, each mode is
        retried on its own using mode_variants(); modes that still fail are
        skipped. The original error is raised only if no mode succeeds.
        """
        requested = [mode.lower() for mode in (modes or DEFAULT_STATUS_MODES)]
        try:
            return await self._fetch(f"/Line/Mode/{_segment(','.join(requested))}/Status")
        except DispatchError as exc:
            if not _is_pattern_mismatch(exc):
                raise
            bulk_error = exc

        logger.info("Bulk line status rejected, retrying %d modes individually", len(requested))
        aggregated: list[dict] = []
        failed_modes: list[str] = []

        for mode in requested:
            succeeded = False
            for variant in mode_variants(mode):
                try:
                    lines = await self._fetch(f"/Line/Mode/{_segment(variant)}/Status")
                except DispatchError as variant_exc:
                    if _is_pattern_mismatch(variant_exc):
                        continue
                    logger.error(
                        "Line status failed for mode %s (variant %s): %s",
                        mode,
                        variant,
                        variant_exc,
                    )
                    break
                aggregated.extend(lines)
                succeeded = True
                break
            if not succeeded:
                failed_modes.append(mode)

        if len(failed_modes) == len(requested):
            raise bulk_error
        if failed_modes:
            logger.warning("Line status fallback skipped modes: %s", ", ".join(failed_modes))
        return aggregated

    async def get_specific_line_status(self, line_ids: list[str]) -> list[dict]:
        if not line_ids:
            return []
        return await self._fetch(f"/Line/{_segment(','.join(line_ids))}/Status")

    async def get_tube_lines(self) -> list[dict]:
        return await self._fetch("/Line/Mode/tube")

    async def get_disruptions(self, modes: Optional[list[str]] = None) -> list[dict]:
        if modes:
            return await self._fetch(f"/Line/Mode/{_segment(','.join(modes))}/Disruption")
        return await self._fetch("/Line/Disruption")

    # -- places and routes --------------------------------------------------

    async def search_place(self, name: str, types: Optional[list[str]] = None) -> list[dict]:
        params: dict[str, Any] = {"name": name}
        if types:
            params["types"] = types
        response = await self._fetch("/Place/Search", params)
        return response.get("matches") or []

    async def get_place(self, place_id: str) -> Any:
        return await self._fetch(f"/Place/{_segment(place_id)}")

    async def get_route_sequence(self, line_id: str, direction: str) -> dict:
        if direction not in ("inbound", "outbound"):
            raise ValueError(f"direction must be 'inbound' or 'outbound', got {direction!r}")
        return await self._fetch(f"/Line/{_segment(line_id)}/Route/Sequence/{direction}")

    # -- helpers ------------------------------------------------------------

    is_good_service = staticmethod(is_good_service)
    format_stop_point_for_journey = staticmethod(format_stop_point_for_journey)
    get_severity_description = staticmethod(get_severity_description)
