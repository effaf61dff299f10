"""
Pydantic models for journey-core: journey request preferences and the
response shapes of the /v1 API.

TfL payloads themselves are passed through as plain dicts.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class AccessibilityPreference(str, Enum):
    no_requirements = "NoRequirements"
    no_solid_stairs = "NoSolidStairs"
    no_escalators = "NoEscalators"
    no_elevators = "NoElevators"
    step_free_to_vehicle = "StepFreeToVehicle"
    step_free_to_platform = "StepFreeToPlatform"


class WalkingSpeed(str, Enum):
    slow = "Slow"
    average = "Average"
    fast = "Fast"


class TimeIs(str, Enum):
    arriving = "Arriving"
    departing = "Departing"


class JourneyPreference(str, Enum):
    least_time = "LeastTime"
    least_interchange = "LeastInterchange"
    least_walking = "LeastWalking"


class JourneyPreferences(BaseModel):
    """Query options for the journey planner. Dumped with TfL's camelCase names."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    mode: Optional[list[str]] = None
    accessibility_preference: Optional[list[AccessibilityPreference]] = Field(
        default=None, alias="accessibilityPreference"
    )
    walking_speed: Optional[WalkingSpeed] = Field(default=None, alias="walkingSpeed")
    date: Optional[str] = Field(default=None, pattern=r"^\d{8}$", description="yyyyMMdd")
    time: Optional[str] = Field(default=None, pattern=r"^\d{4}$", description="HHmm")
    time_is: Optional[TimeIs] = Field(default=None, alias="timeIs")
    via: Optional[str] = None
    national_search: Optional[bool] = Field(default=None, alias="nationalSearch")
    journey_preference: Optional[JourneyPreference] = Field(
        default=None, alias="journeyPreference"
    )
    alternative_route: Optional[bool] = Field(default=None, alias="alternativeRoute")

    def to_params(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# /v1/status
# ---------------------------------------------------------------------------


class OverallStatus(str, Enum):
    good = "good"
    disrupted = "disrupted"


class UpcomingArrival(BaseModel):
    station_name: Optional[str] = None
    destination_name: Optional[str] = None
    expected_arrival: Optional[str] = None
    time_to_station: Optional[int] = None


class DisruptionSummary(BaseModel):
    category: Optional[str] = None
    description: Optional[str] = None
    additional_info: Optional[str] = None
    created: Optional[str] = None
    last_update: Optional[str] = None


class RouteSectionSummary(BaseModel):
    name: Optional[str] = None
    direction: Optional[str] = None
    origination: Optional[str] = None
    destination: Optional[str] = None


class LineSummary(BaseModel):
    """One line's current status, flattened for display."""

    id: str
    name: str
    mode_name: str
    severity: int
    severity_description: str
    reason: Optional[str] = None
    is_good_service: bool
    disruptions: list[DisruptionSummary] = Field(default_factory=list)
    route_sections: list[RouteSectionSummary] = Field(default_factory=list)
    upcoming_arrivals: list[UpcomingArrival] = Field(default_factory=list)


class ModeSummary(BaseModel):
    mode: str
    overall_status: OverallStatus
    severity: int
    affected_lines: list[str] = Field(default_factory=list)
    total_lines: int


class Pagination(BaseModel):
    offset: int = Field(ge=0)
    limit: int = Field(ge=1)
    returned: int = Field(ge=0)


class StatusResponse(BaseModel):
    """Top-level response for GET /v1/status."""

    last_updated: datetime
    query: Optional[str] = None
    modes: list[ModeSummary]
    lines: list[LineSummary]
    grouped_by_mode: dict[str, list[LineSummary]]
    matched_line_ids: list[str] = Field(default_factory=list)
    total_line_count: int
    pagination: Pagination


class SnapshotInfo(BaseModel):
    """Metadata for a stored status snapshot (payload omitted)."""

    source: str
    valid_at: datetime
    line_count: int


# ---------------------------------------------------------------------------
# /v1/stations/search
# ---------------------------------------------------------------------------


class LineRef(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None


class StationResult(BaseModel):
    id: Optional[str] = None
    naptan_id: Optional[str] = None
    name: Optional[str] = None
    modes: list[str] = Field(default_factory=list)
    lat: Optional[float] = None
    lon: Optional[float] = None
    zone: Optional[str] = None
    lines: list[LineRef] = Field(default_factory=list)


class StationSearchResponse(BaseModel):
    query: str
    results: list[StationResult]
    total: int


# ---------------------------------------------------------------------------
# /v1/journeys
# ---------------------------------------------------------------------------


class JourneyRequestPreferences(BaseModel):
    modes: Optional[list[str]] = Field(
        default=None, description="TfL modes to use (default: tube, bus, dlr, overground, walking)"
    )
    accessibility: list[str] = Field(
        default_factory=list,
        description="'step-free-vehicle' and/or 'step-free-platform'",
    )


class JourneyRequest(BaseModel):
    """
    Journey search. Either `from`/`to` (station names or "lat,lon") or a
    natural-language query.
    """

    model_config = ConfigDict(populate_by_name=True)

    from_location: Optional[str] = Field(
        default=None, alias="from", description="Station name or 'lat,lon'"
    )
    to_location: Optional[str] = Field(
        default=None, alias="to", description="Station name or 'lat,lon'"
    )
    natural_language_query: Optional[str] = Field(
        default=None, alias="naturalLanguageQuery"
    )
    preferences: JourneyRequestPreferences = Field(default_factory=JourneyRequestPreferences)


class NextArrival(BaseModel):
    id: Optional[str] = None
    destination_name: Optional[str] = None
    expected_arrival: Optional[str] = None
    time_to_station: Optional[int] = None
    platform_name: Optional[str] = None
    towards: Optional[str] = None


class LegEnhancements(BaseModel):
    """Extras attached to each TfL journey leg under `enhancements`."""

    from_name: Optional[str] = None
    to_name: Optional[str] = None
    platform_name: Optional[str] = None
    direction: Optional[str] = None
    walking_directions_url: Optional[str] = None
    distance_summary: Optional[str] = None
    next_arrivals: Optional[list[NextArrival]] = None


class JourneyPlanResponse(BaseModel):
    """Up to three TfL journeys; each leg carries `enhancements`."""

    from_name: Optional[str] = None
    to_name: Optional[str] = None
    journeys: list[dict[str, Any]]
