from __future__ import annotations

from unittest.mock import AsyncMock, Mock

import pytest
from bandcal.exceptions import (
    DegradedAggregation,
    StoreConnectionError,
    StoreRequestError,
    TransientFetchError,
)
from bandcal.merger import (
    AvailabilityAggregator,
    available_bands_for_date,
    bandmate_date_status,
    group_calendars_by_band,
    merge_availability,
)
from bandcal.models import Band, BandCalendarEntry, DateStatus, FinalAvailabilityRow
from bandcal.repository import AvailabilityRepository


def _band(band_id: str, leader_id: str = "leader") -> Band:
    return Band(id=band_id, name=f"Band {band_id}", leader_id=leader_id, calendar_submitted=True)


def test_merge_without_bandmates_is_identity():
    band = {"2024-03-01": True, "2024-03-02": False, "2024-03-03": True}

    assert merge_availability(band, []) == band


def test_bandmate_unavailability_overrides_band():
    band = {"2024-03-01": True}

    assert merge_availability(band, [{"2024-03-01": True}]) == {"2024-03-01": False}


def test_any_bandmate_blocks_the_date():
    band = {"2024-03-01": True, "2024-03-02": True, "2024-03-03": False}
    bm1 = {"2024-03-01": True}
    bm2 = {"2024-03-02": True, "2024-03-03": False}

    merged = merge_availability(band, [bm1, bm2])

    assert merged == {"2024-03-01": False, "2024-03-02": False, "2024-03-03": False}


def test_bandmate_marked_available_does_not_block():
    assert merge_availability({"2024-03-01": True}, [{"2024-03-01": False}]) == {"2024-03-01": True}


def test_merge_over_window_uses_default():
    window = ["2024-03-01", "2024-03-02", "2024-03-03"]
    band = {"2024-03-02": False}
    bandmates = [{"2024-03-03": True}]

    assert merge_availability(band, bandmates, window) == {
        "2024-03-01": True,
        "2024-03-02": False,
        "2024-03-03": False,
    }
    assert merge_availability(band, bandmates, window, default_available=False) == {
        "2024-03-01": False,
        "2024-03-02": False,
        "2024-03-03": False,
    }


def test_merge_normalizes_keys_from_mixed_sources():
    band = {"2024-03-01T00:00:00Z": True}
    bandmates = [{"2024-03-01": True}]

    assert merge_availability(band, bandmates) == {"2024-03-01": False}


def test_merge_includes_bandmate_only_dates():
    merged = merge_availability({}, [{"2024-03-05": True}, {"2024-03-06": False}])

    assert merged == {"2024-03-05": False, "2024-03-06": True}


def test_available_bands_for_date_excludes_own_and_untouched():
    bands = [_band("a"), _band("b"), _band("c")]
    calendars = {
        "a": {"2024-03-01": True},
        "b": {"2024-03-01": True},
        "c": {},
    }

    result = available_bands_for_date("2024-03-01T00:00:00Z", bands, calendars, exclude_band_ids=["b"])

    assert [band.id for band in result] == ["a"]


def test_bandmate_date_status():
    band_calendar = {"2024-03-01": False, "2024-03-02": True}
    unavailability = {"2024-03-02": True}

    assert bandmate_date_status("2024-03-01", band_calendar, unavailability) is DateStatus.BAND_UNAVAILABLE
    assert bandmate_date_status("2024-03-02", band_calendar, unavailability) is DateStatus.UNAVAILABLE
    assert bandmate_date_status("2024-03-03", band_calendar, unavailability) is DateStatus.AVAILABLE
    assert DateStatus.UNAVAILABLE.label == "You Unavailable"


def test_group_calendars_by_band_ignores_unknown_bands():
    bands = [_band("a"), _band("b")]
    entries = [
        BandCalendarEntry(band_id="a", date="2024-03-01T00:00:00+00:00", is_available=True),
        BandCalendarEntry(band_id="z", date="2024-03-01", is_available=True),
    ]

    assert group_calendars_by_band(bands, entries) == {"a": {"2024-03-01": True}, "b": {}}


@pytest.fixture
def repository():
    return Mock(spec=AvailabilityRepository)


@pytest.mark.asyncio
async def test_final_availability_uses_aggregate(repository):
    aggregation = Mock()
    aggregation.get_final_availability = AsyncMock(
        return_value=[
            FinalAvailabilityRow(date="2024-03-01T00:00:00Z", is_available=False),
            FinalAvailabilityRow(date="2024-03-02", is_available=True),
        ]
    )
    aggregator = AvailabilityAggregator(aggregation, repository)

    result = await aggregator.final_availability("band-1")

    assert result.degraded is False
    assert result.availability == {"2024-03-01": False, "2024-03-02": True}
    aggregation.get_final_availability.assert_awaited_once_with("band-1")


@pytest.mark.asyncio
async def test_final_availability_falls_back_to_band_calendar(repository):
    aggregation = Mock()
    aggregation.get_final_availability = AsyncMock(side_effect=StoreRequestError("backend_error_500"))
    repository.get_band_calendar_map = AsyncMock(return_value={"2024-03-01": True})
    aggregator = AvailabilityAggregator(aggregation, repository)

    result = await aggregator.final_availability("band-1", window=["2024-03-01", "2024-03-02"])

    assert result.degraded is True
    assert result.source == "band_calendar"
    assert result.availability == {"2024-03-01": True, "2024-03-02": True}


@pytest.mark.asyncio
async def test_final_availability_raises_when_fallback_fails(repository):
    aggregation = Mock()
    aggregation.get_final_availability = AsyncMock(side_effect=StoreConnectionError("down"))
    repository.get_band_calendar_map = AsyncMock(side_effect=StoreConnectionError("down"))
    aggregator = AvailabilityAggregator(aggregation, repository)

    with pytest.raises(TransientFetchError):
        await aggregator.final_availability("band-1")


@pytest.mark.asyncio
async def test_main_calendar_marks_degraded_bands_individually(repository):
    async def final(band_id):
        if band_id == "b":
            raise StoreRequestError("backend_error_500")
        return [FinalAvailabilityRow(date="2024-03-01", is_available=True)]

    aggregation = Mock()
    aggregation.get_final_availability = AsyncMock(side_effect=final)
    repository.get_band_calendar = AsyncMock(
        return_value=[BandCalendarEntry(band_id="b", date="2024-03-01", is_available=False)]
    )
    repository.get_band_calendar_map = AsyncMock()
    aggregator = AvailabilityAggregator(aggregation, repository)

    result = await aggregator.main_calendar([_band("a"), _band("b")])

    assert result["a"].degraded is False
    assert result["b"].degraded is True
    assert result["b"].availability == {"2024-03-01": False}
    repository.get_band_calendar.assert_awaited_once_with(["a", "b"])
    repository.get_band_calendar_map.assert_not_awaited()


@pytest.mark.asyncio
async def test_main_calendar_lists_submitted_bands_when_not_given(repository):
    aggregation = Mock()
    aggregation.get_final_availability = AsyncMock(return_value=[])
    repository.list_submitted_bands = AsyncMock(return_value=[_band("a")])
    repository.get_band_calendar = AsyncMock(return_value=[])
    aggregator = AvailabilityAggregator(aggregation, repository)

    result = await aggregator.main_calendar()

    assert list(result) == ["a"]
    assert result["a"].availability == {}


@pytest.mark.asyncio
async def test_public_calendars_groups_raw_rows(repository):
    repository.list_submitted_bands = AsyncMock(return_value=[_band("a"), _band("b")])
    repository.get_band_calendar = AsyncMock(
        return_value=[BandCalendarEntry(band_id="a", date="2024-03-01", is_available=False)]
    )
    aggregator = AvailabilityAggregator(Mock(), repository)

    result = await aggregator.public_calendars()

    assert result == {"a": {"2024-03-01": False}, "b": {}}
    repository.get_band_calendar.assert_awaited_once_with(["a", "b"])


@pytest.mark.asyncio
async def test_final_availability_falls_back_on_any_aggregation_error(repository):
    aggregation = Mock()
    aggregation.get_final_availability = AsyncMock(side_effect=RuntimeError("driver crashed"))
    repository.get_band_calendar_map = AsyncMock(return_value={"2024-03-01": False})
    aggregator = AvailabilityAggregator(aggregation, repository)

    result = await aggregator.final_availability("band-1")

    assert result.source == "band_calendar"
    assert result.availability == {"2024-03-01": False}


@pytest.mark.asyncio
async def test_final_availability_can_require_merged_result(repository):
    aggregation = Mock()
    aggregation.get_final_availability = AsyncMock(side_effect=StoreRequestError("backend_error_500"))
    repository.get_band_calendar_map = AsyncMock(return_value={"2024-03-01": True})
    aggregator = AvailabilityAggregator(aggregation, repository)

    with pytest.raises(DegradedAggregation) as exc_info:
        await aggregator.final_availability("band-1", require_merged=True)

    assert exc_info.value.details == {"band_id": "band-1"}
    repository.get_band_calendar_map.assert_not_awaited()


@pytest.mark.asyncio
async def test_main_calendar_keeps_other_bands_when_one_fails_completely(repository):
    async def final(band_id):
        if band_id == "b":
            raise StoreConnectionError("down")
        return [FinalAvailabilityRow(date="2024-03-01", is_available=True)]

    aggregation = Mock()
    aggregation.get_final_availability = AsyncMock(side_effect=final)
    repository.get_band_calendar = AsyncMock(side_effect=StoreConnectionError("down"))
    repository.get_band_calendar_map = AsyncMock(side_effect=StoreConnectionError("down"))
    aggregator = AvailabilityAggregator(aggregation, repository)

    result = await aggregator.main_calendar([_band("a"), _band("b")])

    assert list(result) == ["a"]
    assert result["a"].availability == {"2024-03-01": True}
    repository.get_band_calendar_map.assert_awaited_once_with("b")


@pytest.mark.asyncio
async def test_main_calendar_per_band_read_when_bulk_rows_fail(repository):
    aggregation = Mock()
    aggregation.get_final_availability = AsyncMock(side_effect=StoreRequestError("backend_error_500"))
    repository.get_band_calendar = AsyncMock(side_effect=StoreConnectionError("down"))
    repository.get_band_calendar_map = AsyncMock(return_value={"2024-03-02": True})
    aggregator = AvailabilityAggregator(aggregation, repository)

    result = await aggregator.main_calendar([_band("a")])

    assert result["a"].degraded is True
    assert result["a"].availability == {"2024-03-02": True}


@pytest.mark.asyncio
async def test_main_calendar_with_no_bands(repository):
    repository.get_band_calendar = AsyncMock()
    aggregator = AvailabilityAggregator(Mock(), repository)

    assert await aggregator.main_calendar([]) == {}
    repository.get_band_calendar.assert_not_awaited()
