"""
Journey service: resolves both ends of a trip to TfL locations, plans it and
decorates every leg with names, distances, walking directions and the next
departures from the leg's boarding stop.

Natural-language queries need an injected intent parser; without one only
manual station entry is supported.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from journey_core.dispatch import DispatchError
from journey_core.models import (
    AccessibilityPreference,
    JourneyPlanResponse,
    JourneyPreference,
    JourneyPreferences,
    JourneyRequest,
    LegEnhancements,
    NextArrival,
    WalkingSpeed,
)
from journey_core.tfl_client import TflClient, format_stop_point_for_journey

logger = logging.getLogger(__name__)

DEFAULT_JOURNEY_MODES = ["tube", "bus", "dlr", "overground", "walking"]
MAX_JOURNEYS = 3
ARRIVALS_PER_LEG = 3
MIN_INTENT_CONFIDENCE = 0.3

WALKING_DIRECTIONS_URL = (
    "https://www.google.com/maps/dir/?api=1"
    "&origin={from_lat},{from_lon}&destination={to_lat},{to_lon}&travelmode=walking"
)


class JourneyPlanningError(Exception):
    """The request cannot be turned into a journey plan. Maps to HTTP 400."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


@dataclass
class ParsedJourneyIntent:
    """What a natural-language journey request asks for."""

    from_name: Optional[str] = None
    to_name: Optional[str] = None
    use_current_location: bool = False
    is_journey: bool = True
    confidence: float = 1.0


IntentParser = Callable[[str], Awaitable[ParsedJourneyIntent]]


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_walking_leg(leg: dict) -> bool:
    return (leg.get("mode") or {}).get("id") == "walking"


def walking_directions_url(leg: dict) -> Optional[str]:
    """Walking directions link between the leg's end points, if both have coordinates."""
    start = leg.get("departurePoint") or {}
    end = leg.get("arrivalPoint") or {}
    coords = (start.get("lat"), start.get("lon"), end.get("lat"), end.get("lon"))
    if not all(_is_number(c) for c in coords):
        return None
    return WALKING_DIRECTIONS_URL.format(
        from_lat=coords[0], from_lon=coords[1], to_lat=coords[2], to_lon=coords[3]
    )


def format_distance(leg: dict) -> Optional[str]:
    """'850 m' or '1.2 km'; None when the leg has no positive distance."""
    distance = leg.get("distance")
    if not _is_number(distance) or distance <= 0:
        return None
    metres = int(round(distance))
    if metres >= 1000:
        return f"{metres / 1000:.1f} km"
    return f"{metres} m"


def leg_direction(leg: dict) -> Optional[str]:
    route_options = leg.get("routeOptions") or [{}]
    directions = route_options[0].get("directions") or []
    if directions:
        return directions[0]
    return (leg.get("instruction") or {}).get("summary")


def leg_line_id(leg: dict) -> Optional[str]:
    route_options = leg.get("routeOptions") or [{}]
    mode = leg.get("mode") or {}
    line_id = (
        (route_options[0].get("lineIdentifier") or {}).get("id")
        or mode.get("id")
        or mode.get("name")
    )
    return line_id.lower() if line_id else None


def accessibility_preference(values: list[str]) -> AccessibilityPreference:
    if "step-free-vehicle" in values:
        return AccessibilityPreference.step_free_to_vehicle
    if "step-free-platform" in values:
        return AccessibilityPreference.step_free_to_platform
    return AccessibilityPreference.no_requirements


def _time_to_station(prediction: dict) -> int:
    return prediction.get("timeToStation") or 0


def _to_next_arrival(prediction: dict) -> NextArrival:
    return NextArrival(
        id=prediction.get("id"),
        destination_name=prediction.get("destinationName"),
        expected_arrival=prediction.get("expectedArrival"),
        time_to_station=prediction.get("timeToStation"),
        platform_name=prediction.get("platformName"),
        towards=prediction.get("towards") or prediction.get("direction"),
    )


class JourneyService:
    """Plans journeys through the TfL client and enriches the legs."""

    def __init__(
        self,
        tfl_client: TflClient,
        intent_parser: Optional[IntentParser] = None,
    ) -> None:
        self._tfl = tfl_client
        self._intent_parser = intent_parser

    async def plan(self, request: JourneyRequest) -> JourneyPlanResponse:
        """
        Resolve locations, plan and enrich.

        Raises JourneyPlanningError for requests that cannot be planned and
        DispatchError when TfL fails.
        """
        if request.natural_language_query:
            origin, destination = await self._locations_from_query(request)
        else:
            origin, destination = await self._locations_from_fields(request)

        if origin is None or destination is None:
            raise JourneyPlanningError("Both starting point and destination are required")
        from_location, from_name = origin
        to_location, to_name = destination

        preferences = JourneyPreferences(
            mode=request.preferences.modes or list(DEFAULT_JOURNEY_MODES),
            accessibility_preference=[accessibility_preference(request.preferences.accessibility)],
            walking_speed=WalkingSpeed.average,
            journey_preference=JourneyPreference.least_time,
            alternative_route=True,
            national_search=False,
        )
        result = await self._tfl.plan_journey(from_location, to_location, preferences)

        journeys = (result.get("journeys") or [])[:MAX_JOURNEYS]
        enhanced = await asyncio.gather(*(self.enhance_legs(j) for j in journeys))
        return JourneyPlanResponse(
            from_name=from_name,
            to_name=to_name,
            journeys=[{**journey, "legs": legs} for journey, legs in zip(journeys, enhanced)],
        )

    # -- location resolution ------------------------------------------------

    async def _resolve(self, text: str, label: str) -> tuple[str, Optional[str]]:
        """(TfL location, display name). Text containing a comma is taken as "lat,lon"."""
        if "," in text:
            return text, None
        stops = await self._tfl.search_stop_points(text)
        if not stops:
            raise JourneyPlanningError(f"Could not find {label}: {text}")
        best = stops[0]
        if "lat" in best and "lon" in best:
            location = format_stop_point_for_journey(best)
        else:
            location = best.get("naptanId") or best["id"]
        return location, best.get("commonName")

    async def _locations_from_fields(self, request: JourneyRequest):
        if not request.to_location:
            raise JourneyPlanningError("Destination is required")
        if not request.from_location:
            raise JourneyPlanningError("Starting location is required")
        origin = await self._resolve(request.from_location, "starting location")
        destination = await self._resolve(request.to_location, "destination")
        return origin, destination

    async def _locations_from_query(self, request: JourneyRequest):
        if self._intent_parser is None:
            raise JourneyPlanningError(
                "Natural-language queries are not available. Use manual station selection."
            )
        intent = await self._intent_parser(request.natural_language_query)

        if intent.confidence < MIN_INTENT_CONFIDENCE:
            raise JourneyPlanningError(
                "Could not understand your query. Please try rephrasing or use "
                "manual station selection."
            )
        if not intent.is_journey:
            raise JourneyPlanningError(
                "This appears to be a service status query. Please use the status page."
            )

        origin = None
        if intent.use_current_location:
            if not request.from_location:
                raise JourneyPlanningError("Please share your location to use as starting point")
            location, name = await self._resolve(request.from_location, "starting location")
            origin = (location, name or intent.from_name or "Current location")
        elif intent.from_name:
            origin = await self._resolve(intent.from_name, "location")

        if not intent.to_name:
            raise JourneyPlanningError("Destination is required")
        destination = await self._resolve(intent.to_name, "destination")
        return origin, destination

    # -- leg enrichment -----------------------------------------------------

    async def enhance_legs(self, journey: dict) -> list[dict]:
        """
        Legs of `journey`, each with an `enhancements` mapping.

        Arrivals for every boarding stop (and its parent station) are fetched
        in one batch; a failed batch leaves the legs without departures.
        """
        legs = journey.get("legs") or []
        stop_ids: list[str] = []
        for leg in legs:
            if is_walking_leg(leg):
                continue
            point = leg.get("departurePoint") or {}
            stop_ids.extend(
                i for i in (point.get("naptanId") or point.get("id"), point.get("stationNaptan")) if i
            )

        arrivals: list[dict] = []
        if stop_ids:
            try:
                arrivals = await self._tfl.get_multiple_arrivals(stop_ids)
            except DispatchError as exc:
                logger.error("Failed to fetch arrivals for journey legs: %s", exc)
        arrivals = sorted(arrivals, key=_time_to_station)

        return list(await asyncio.gather(*(self._enhance_leg(leg, arrivals) for leg in legs)))

    async def _enhance_leg(self, leg: dict, arrivals: list[dict]) -> dict:
        start = leg.get("departurePoint") or {}
        end = leg.get("arrivalPoint") or {}
        extras = LegEnhancements(
            from_name=start.get("commonName"),
            to_name=end.get("commonName"),
            distance_summary=format_distance(leg),
        )

        if is_walking_leg(leg):
            extras.walking_directions_url = walking_directions_url(leg)
            return {**leg, "enhancements": extras.model_dump(exclude_none=True)}

        stop_id = start.get("naptanId") or start.get("id")
        if stop_id:
            candidates = {i for i in (stop_id, start.get("stationNaptan")) if i}
            line_id = leg_line_id(leg)
            at_stop = [p for p in arrivals if p.get("naptanId") in candidates]

            relevant: list[dict] = []
            if line_id:
                relevant = [p for p in at_stop if (p.get("lineId") or "").lower() == line_id]
            if not relevant:
                relevant = at_stop
            if not relevant and line_id:
                relevant = await self._line_arrivals_at(line_id, stop_id, candidates)

            relevant = relevant[:ARRIVALS_PER_LEG]
            extras.next_arrivals = [_to_next_arrival(p) for p in relevant]
            extras.platform_name = (relevant[0].get("platformName") or None) if relevant else None

        extras.direction = leg_direction(leg)
        return {**leg, "enhancements": extras.model_dump(exclude_none=True)}

    async def _line_arrivals_at(
        self, line_id: str, stop_id: str, candidates: set[str]
    ) -> list[dict]:
        try:
            predictions = await self._tfl.get_line_arrivals([line_id], stop_id)
        except DispatchError as exc:
            logger.warning("Line arrivals for %s at %s unavailable: %s", line_id, stop_id, exc)
            return []
        return sorted(
            (p for p in predictions if p.get("naptanId") in candidates), key=_time_to_station
        )
