"""
Availability merging for bands and their bandmates.

A band is available on a date only if the band leader marked it
available and no bandmate marked themselves unavailable. The backend
computes this in a stored procedure; :func:`merge_availability` is the
same rule on the client, used when the procedure cannot be reached and
by views that hold raw maps.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from pydantic import ValidationError

from .client import AggregationFunction
from .dates import CalendarDate, DateInput, normalize_date
from .exceptions import BandcalError, DegradedAggregation, StoreError, TransientFetchError
from .models import (
    AggregatedAvailability,
    AvailabilityMap,
    Band,
    BandCalendarEntry,
    DateStatus,
)
from .repository import AvailabilityRepository

logger = logging.getLogger(__name__)

# Band leaders who never touched a date are assumed open.
SELF_SERVICE_DEFAULT = True
# Public and read-only views show untouched dates as closed.
READ_ONLY_DEFAULT = False


def _normalized(mapping: Mapping[DateInput, bool]) -> AvailabilityMap:
    return {normalize_date(key): bool(value) for key, value in mapping.items()}


def merge_availability(
    band_availability: Mapping[DateInput, bool],
    bandmate_unavailabilities: Sequence[Mapping[DateInput, bool]] = (),
    window: Optional[Iterable[DateInput]] = None,
    default_available: bool = SELF_SERVICE_DEFAULT,
) -> AvailabilityMap:
    """
    Combine band availability with bandmate unavailability.

    With a ``window`` the result has exactly one entry per window date;
    without one it covers every date present in any input. Dates the band
    never marked take ``default_available``; callers pick the default that
    suits their surface.
    """
    band = _normalized(band_availability)
    bandmates = [_normalized(unavailability) for unavailability in bandmate_unavailabilities]

    if window is not None:
        dates: List[CalendarDate] = [normalize_date(value) for value in window]
    else:
        dates = list(band)
        seen = set(dates)
        for unavailability in bandmates:
            for key in unavailability:
                if key not in seen:
                    seen.add(key)
                    dates.append(key)

    return {
        key: band.get(key, default_available)
        and not any(unavailability.get(key, False) for unavailability in bandmates)
        for key in dates
    }


def group_calendars_by_band(
    bands: Iterable[Band], entries: Iterable[BandCalendarEntry]
) -> Dict[str, AvailabilityMap]:
    calendars: Dict[str, AvailabilityMap] = {band.id: {} for band in bands}
    for entry in entries:
        if entry.band_id in calendars:
            calendars[entry.band_id][entry.date] = entry.is_available
    return calendars


def available_bands_for_date(
    date: DateInput,
    bands: Iterable[Band],
    calendars_by_band: Mapping[str, Mapping[str, bool]],
    exclude_band_ids: Iterable[str] = (),
) -> List[Band]:
    """Bands explicitly available on ``date``, leaving out the viewer's own."""
    key = normalize_date(date)
    excluded = set(exclude_band_ids)
    return [
        band
        for band in bands
        if band.id not in excluded
        and calendars_by_band.get(band.id, {}).get(key, READ_ONLY_DEFAULT) is True
    ]


def bandmate_date_status(
    date: DateInput,
    band_calendar: Mapping[str, bool],
    unavailability: Mapping[str, bool],
) -> DateStatus:
    key = normalize_date(date)
    if not band_calendar.get(key, SELF_SERVICE_DEFAULT):
        return DateStatus.BAND_UNAVAILABLE
    if unavailability.get(key, False):
        return DateStatus.UNAVAILABLE
    return DateStatus.AVAILABLE


class AvailabilityAggregator:
    """Final availability per band, falling back to raw calendars when the RPC fails."""

    def __init__(
        self,
        aggregation: AggregationFunction,
        repository: AvailabilityRepository,
    ) -> None:
        self.aggregation = aggregation
        self.repository = repository

    async def _merged(self, band_id: str) -> Optional[AvailabilityMap]:
        """Server-side merge for ``band_id``, or None if the RPC failed in any way."""
        try:
            rows = await self.aggregation.get_final_availability(band_id)
            return {row.date: row.is_available for row in rows}
        except Exception as exc:
            logger.warning(
                "final_availability_rpc_failed_fallback_band_calendar",
                extra={"band_id": band_id, "error": str(exc)},
            )
            return None

    async def _band_calendar(self, band_id: str) -> AvailabilityMap:
        try:
            return await self.repository.get_band_calendar_map(band_id)
        except (StoreError, ValidationError) as exc:
            raise TransientFetchError(
                "final_availability_unavailable", details={"band_id": band_id}
            ) from exc

    async def final_availability(
        self,
        band_id: str,
        window: Optional[Iterable[DateInput]] = None,
        default_available: bool = SELF_SERVICE_DEFAULT,
        *,
        require_merged: bool = False,
    ) -> AggregatedAvailability:
        """
        Return the merged availability for ``band_id``.

        If the aggregation RPC fails, the band's own calendar rows are used
        with no bandmate input and the result is tagged degraded. With
        ``require_merged`` a failed RPC raises ``DegradedAggregation``
        instead. If the fallback rows cannot be read either,
        ``TransientFetchError`` is raised.
        """
        window_dates = list(window) if window is not None else None
        merged = await self._merged(band_id)
        if merged is not None:
            return AggregatedAvailability(
                band_id=band_id,
                availability=merge_availability(merged, (), window_dates, default_available),
                source="aggregate",
            )
        if require_merged:
            raise DegradedAggregation("final_availability_degraded", details={"band_id": band_id})

        band_calendar = await self._band_calendar(band_id)
        return AggregatedAvailability(
            band_id=band_id,
            availability=merge_availability(band_calendar, (), window_dates, default_available),
            source="band_calendar",
        )

    async def _main_calendar_band(
        self, band_id: str, calendars: Optional[Mapping[str, AvailabilityMap]]
    ) -> AggregatedAvailability:
        merged = await self._merged(band_id)
        if merged is not None:
            return AggregatedAvailability(
                band_id=band_id,
                availability=merge_availability(merged, (), None, READ_ONLY_DEFAULT),
                source="aggregate",
            )
        if calendars is not None:
            band_calendar = calendars.get(band_id, {})
        else:
            band_calendar = await self._band_calendar(band_id)
        return AggregatedAvailability(
            band_id=band_id,
            availability=merge_availability(band_calendar, (), None, READ_ONLY_DEFAULT),
            source="band_calendar",
        )

    async def main_calendar(
        self, bands: Optional[Sequence[Band]] = None
    ) -> Dict[str, AggregatedAvailability]:
        """
        Final availability for every submitted band, keyed by band id.

        Raw calendar rows for all bands are read once up front and serve as
        each band's fallback. A band whose data cannot be read at all is left
        out of the result and logged; the others are still returned.
        """
        if bands is None:
            try:
                bands = await self.repository.list_submitted_bands()
            except StoreError as exc:
                raise TransientFetchError("submitted_bands_unavailable") from exc
        bands = list(bands)
        if not bands:
            return {}

        calendars: Optional[Dict[str, AvailabilityMap]]
        try:
            entries = await self.repository.get_band_calendar([band.id for band in bands])
        except (StoreError, ValidationError) as exc:
            logger.warning("main_calendar_band_rows_unavailable", extra={"error": str(exc)})
            calendars = None
        else:
            calendars = group_calendars_by_band(bands, entries)

        results = await asyncio.gather(
            *(self._main_calendar_band(band.id, calendars) for band in bands),
            return_exceptions=True,
        )
        availability: Dict[str, AggregatedAvailability] = {}
        failed: List[str] = []
        for band, result in zip(bands, results):
            if isinstance(result, BandcalError):
                failed.append(band.id)
            elif isinstance(result, BaseException):
                raise result
            else:
                availability[band.id] = result

        degraded = [band_id for band_id, result in availability.items() if result.degraded]
        if degraded:
            logger.warning("main_calendar_degraded", extra={"band_ids": degraded})
        if failed:
            logger.warning("main_calendar_bands_unavailable", extra={"band_ids": failed})
        return availability

    async def public_calendars(self) -> Dict[str, AvailabilityMap]:
        """Raw calendars of submitted bands for the public, read-only surface."""
        try:
            bands = await self.repository.list_submitted_bands()
            entries = await self.repository.get_band_calendar([band.id for band in bands])
        except StoreError as exc:
            raise TransientFetchError("public_calendars_unavailable") from exc
        return group_calendars_by_band(bands, entries)
