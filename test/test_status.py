"""Tests for the status service (snapshot cache and TfL client mocked)."""

from unittest.mock import AsyncMock

import pytest

from _helpers import line_status, prediction

from journey_core.dispatch import DispatchError
from journey_core.models import OverallStatus
from journey_core.snapshots import StatusSnapshotCache
from journey_core.status import (
    ParsedStatusQuery,
    StatusService,
    clean_query_segment,
    find_query_matches,
)
from journey_core.tfl_client import TflClient

LINES = [
    line_status("bakerloo"),
    line_status("central", severities=(9,), reason="Signal failure at Bank"),
    line_status("hammersmith-city", name="Hammersmith & City"),
    line_status("victoria"),
    line_status("dlr", name="DLR", mode="dlr"),
    line_status("25", name="25", mode="bus", severities=(6,)),
    line_status("elizabeth", name="Elizabeth line", mode="elizabeth-line"),
]


def _ids(lines):
    return [line.id for line in lines]


class TestQueryMatching:
    def test_clean_segment_drops_stop_words(self):
        assert clean_query_segment("Victoria Line status?") == "victoria"

    def test_exact_match_on_id(self):
        exact, partial = find_query_matches(LINES, "victoria line status")
        assert [line["id"] for line in exact] == ["victoria"]

    def test_multiple_segments(self):
        exact, _ = find_query_matches(LINES, "victoria and central")
        assert [line["id"] for line in exact] == ["victoria", "central"]

    def test_partial_match(self):
        exact, partial = find_query_matches(LINES, "hammer")
        assert exact == []
        assert [line["id"] for line in partial] == ["hammersmith-city"]

    def test_name_without_line_suffix(self):
        exact, _ = find_query_matches(LINES, "elizabeth")
        assert [line["id"] for line in exact] == ["elizabeth"]

    def test_no_match(self):
        assert find_query_matches(LINES, "jubilee") == ([], [])


class TestStatusService:
    def _make_service(self, lines=None, query_parser=None):
        snapshots = AsyncMock(spec=StatusSnapshotCache)
        snapshots.get_line_statuses.return_value = list(lines if lines is not None else LINES)
        tfl = AsyncMock(spec=TflClient)
        tfl.get_line_arrivals.return_value = []
        service = StatusService(snapshots=snapshots, tfl_client=tfl, query_parser=query_parser)
        return service, snapshots, tfl

    @pytest.mark.asyncio
    async def test_defaults(self):
        service, snapshots, _ = self._make_service()

        result = await service.get_status()

        snapshots.get_line_statuses.assert_awaited_once()
        assert result.total_line_count == len(LINES)
        assert result.pagination.limit == 10
        assert result.pagination.offset == 0
        assert _ids(result.lines) == [line["id"] for line in LINES]
        assert result.matched_line_ids == []

    @pytest.mark.asyncio
    async def test_line_summary_fields(self):
        service, _, _ = self._make_service()

        result = await service.get_status(lines=["central"])

        central = result.lines[0]
        assert central.severity == 9
        assert central.reason == "Signal failure at Bank"
        assert central.is_good_service is False

    @pytest.mark.asyncio
    async def test_mode_and_line_filters(self):
        service, _, _ = self._make_service()

        by_mode = await service.get_status(modes=["dlr", "bus"])
        by_line = await service.get_status(lines=["Hammersmith & City", "VICTORIA"])

        assert _ids(by_mode.lines) == ["dlr", "25"]
        assert _ids(by_line.lines) == ["hammersmith-city", "victoria"]

    @pytest.mark.asyncio
    async def test_query_moves_matches_first(self):
        service, _, _ = self._make_service()

        result = await service.get_status(query="victoria and central")

        assert _ids(result.lines)[:2] == ["victoria", "central"]
        assert result.matched_line_ids == ["victoria", "central"]
        assert result.query == "victoria and central"

    @pytest.mark.asyncio
    async def test_query_parser_used_when_nothing_matches(self):
        parser = AsyncMock(return_value=ParsedStatusQuery(mode="dlr"))
        service, _, _ = self._make_service(query_parser=parser)

        result = await service.get_status(query="trains to canary wharf")

        parser.assert_awaited_once_with("trains to canary wharf")
        assert _ids(result.lines)[0] == "dlr"
        assert result.matched_line_ids == ["dlr"]

    @pytest.mark.asyncio
    async def test_query_parser_lines(self):
        parser = AsyncMock(return_value=ParsedStatusQuery(lines=["Bakerloo"]))
        service, _, _ = self._make_service(query_parser=parser)

        result = await service.get_status(query="the brown one")

        assert result.matched_line_ids == ["bakerloo"]

    @pytest.mark.asyncio
    async def test_unmatched_query_keeps_order(self):
        service, _, _ = self._make_service()

        result = await service.get_status(query="jubilee")

        assert _ids(result.lines) == [line["id"] for line in LINES]
        assert result.matched_line_ids == []

    @pytest.mark.asyncio
    async def test_arrivals_fetched_in_chunks_of_six(self):
        service, _, tfl = self._make_service()

        await service.get_status()

        chunks = [call.args[0] for call in tfl.get_line_arrivals.await_args_list]
        assert [len(chunk) for chunk in chunks] == [6, 1]

    @pytest.mark.asyncio
    async def test_upcoming_arrivals_sorted_and_capped(self):
        service, _, tfl = self._make_service(lines=[line_status("victoria")])
        tfl.get_line_arrivals.return_value = [
            prediction("victoria", 300),
            prediction("victoria", 60),
            prediction("victoria", 600),
            prediction("victoria", 120),
            prediction("central", 30),
        ]

        result = await service.get_status()

        upcoming = result.lines[0].upcoming_arrivals
        assert [a.time_to_station for a in upcoming] == [60, 120, 300]

    @pytest.mark.asyncio
    async def test_failed_arrival_chunk_skipped(self):
        service, _, tfl = self._make_service()
        tfl.get_line_arrivals.side_effect = [
            DispatchError("boom", status_code=500),
            [prediction("elizabeth", 90)],
        ]

        result = await service.get_status(limit=50)

        by_id = {line.id: line for line in result.lines}
        assert by_id["victoria"].upcoming_arrivals == []
        assert by_id["elizabeth"].upcoming_arrivals[0].time_to_station == 90

    @pytest.mark.asyncio
    async def test_pagination(self):
        service, _, _ = self._make_service()

        page = await service.get_status(limit=2, offset=3)
        clamped = await service.get_status(limit=500, offset=100)

        assert _ids(page.lines) == ["victoria", "dlr"]
        assert page.pagination.returned == 2
        assert clamped.pagination.limit == 50
        assert clamped.pagination.offset == len(LINES)
        assert clamped.lines == []

    @pytest.mark.asyncio
    async def test_mode_summaries(self):
        service, _, _ = self._make_service()

        result = await service.get_status()

        modes = {summary.mode: summary for summary in result.modes}
        assert modes["tube"].overall_status == OverallStatus.disrupted
        assert modes["tube"].affected_lines == ["Central"]
        assert modes["tube"].severity == 9
        assert modes["tube"].total_lines == 4
        assert modes["dlr"].overall_status == OverallStatus.good
        assert len(result.grouped_by_mode["tube"]) == 4

    @pytest.mark.asyncio
    async def test_special_service_severity_kept(self):
        service, _, _ = self._make_service(
            lines=[line_status("victoria"), line_status("central", severities=(0,))]
        )

        result = await service.get_status()

        by_id = {line.id: line for line in result.lines}
        assert by_id["central"].severity == 0
        assert result.modes[0].severity == 0
        assert result.modes[0].affected_lines == ["Central"]
