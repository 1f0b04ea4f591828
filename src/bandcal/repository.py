"""Entity-level data access for band calendars and bandmate availability."""

from __future__ import annotations

from typing import Iterable, List, Optional, Union

from .client import BackendClient
from .dates import normalize_date
from .exceptions import StoreNotFoundError
from .models import (
    AvailabilityMap,
    Band,
    BandCalendarEntry,
    Bandmate,
    BandmateAvailabilityEntry,
)
from .tokens import generate_bandmate_token

BANDS_TABLE = "bands"
BAND_CALENDARS_TABLE = "band_calendars"
BANDMATES_TABLE = "bandmates"

# PostgREST rejects an empty in.() list; this id never matches a row.
_NO_MATCH_ID = "00000000-0000-0000-0000-000000000000"


class AvailabilityRepository:
    """Reads and writes availability rows through the backend client."""

    def __init__(self, client: BackendClient) -> None:
        self.client = client

    async def list_submitted_bands(self) -> List[Band]:
        rows = await self.client.query(
            BANDS_TABLE, {"calendar_submitted": True}, order="name.asc"
        )
        return [Band.model_validate(row) for row in rows]

    async def get_band_calendar(
        self, band_ids: Union[str, Iterable[str]]
    ) -> List[BandCalendarEntry]:
        """Raw calendar rows for one band id or several."""
        if isinstance(band_ids, str):
            band_filter: Union[str, List[str]] = band_ids
        else:
            band_filter = list(band_ids) or [_NO_MATCH_ID]
        rows = await self.client.query(
            BAND_CALENDARS_TABLE, {"band_id": band_filter}, order="date.asc"
        )
        return [BandCalendarEntry.model_validate(row) for row in rows]

    async def get_band_calendar_map(self, band_id: str) -> AvailabilityMap:
        return {entry.date: entry.is_available for entry in await self.get_band_calendar(band_id)}

    async def set_band_availability(
        self, band_id: str, date: str, is_available: bool
    ) -> BandCalendarEntry:
        row = await self.client.upsert(
            BAND_CALENDARS_TABLE,
            {"band_id": band_id, "date": normalize_date(date)},
            {"is_available": is_available},
        )
        return BandCalendarEntry.model_validate(row)

    async def get_bandmate_unavailability(self, token: str) -> AvailabilityMap:
        rows = await self.client.get_bandmate_availability(token)
        entries = [BandmateAvailabilityEntry.model_validate(row) for row in rows]
        return {entry.date: entry.is_unavailable for entry in entries}

    async def set_bandmate_unavailability(
        self, token: str, date: str, is_unavailable: bool
    ) -> None:
        await self.client.update_bandmate_availability(
            token, normalize_date(date), is_unavailable
        )

    async def get_bandmate_by_token(self, token: str) -> Bandmate:
        rows = await self.client.get_bandmate_by_token(token)
        if not rows:
            raise StoreNotFoundError("invalid_bandmate_token")
        return Bandmate.model_validate(rows[0])

    async def get_band_calendar_by_token(self, token: str) -> AvailabilityMap:
        """The band calendar a bandmate token belongs to."""
        rows = await self.client.get_band_calendar_by_token(token)
        entries = [BandCalendarEntry.model_validate(row) for row in rows]
        return {entry.date: entry.is_available for entry in entries}

    async def list_bandmates(self, band_id: str) -> List[Bandmate]:
        rows = await self.client.query(
            BANDMATES_TABLE, {"band_id": band_id}, order="created_at.desc"
        )
        return [Bandmate.model_validate(row) for row in rows]

    async def create_bandmate(self, band_id: str, name: Optional[str] = None) -> Bandmate:
        token = generate_bandmate_token()
        row = await self.client.upsert(
            BANDMATES_TABLE, {"token": token}, {"band_id": band_id, "name": name or None}
        )
        return Bandmate.model_validate(row)
