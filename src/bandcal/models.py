"""Record and result models for band availability."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Mapping, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .dates import CalendarDate, normalize_date

AvailabilityMap = Dict[CalendarDate, bool]


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _DatedRecord(_Record):
    date: CalendarDate

    @field_validator("date", mode="before")
    @classmethod
    def normalize(cls, v: Any) -> CalendarDate:
        return normalize_date(v)


class Band(_Record):
    id: str
    name: str
    leader_id: str
    calendar_submitted: bool = False
    share_token: Optional[str] = None


class Bandmate(_Record):
    id: str
    band_id: str
    name: Optional[str] = None
    token: str


class BandCalendarEntry(_DatedRecord):
    band_id: Optional[str] = None
    is_available: bool = True


class BandmateAvailabilityEntry(_DatedRecord):
    bandmate_id: Optional[str] = None
    is_unavailable: bool = False


class FinalAvailabilityRow(_DatedRecord):
    is_available: bool


class AggregatedAvailability(BaseModel):
    """
    Final availability for one band.

    ``degraded`` is set when the server-side merge failed and the map was
    built from the band's own calendar only, without bandmate input.
    """

    model_config = ConfigDict(frozen=True)

    band_id: str
    availability: AvailabilityMap = Field(default_factory=dict)
    source: Literal["aggregate", "band_calendar"] = "aggregate"

    @property
    def degraded(self) -> bool:
        return self.source != "aggregate"


class DateStatus(str, Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    BAND_UNAVAILABLE = "band-unavailable"

    @property
    def label(self) -> str:
        return _STATUS_LABELS[self]


_STATUS_LABELS = {
    DateStatus.AVAILABLE: "Available",
    DateStatus.UNAVAILABLE: "You Unavailable",
    DateStatus.BAND_UNAVAILABLE: "Band Unavailable",
}


class EditOutcome(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    UNCONFIRMED = "unconfirmed"


class Change(NamedTuple):
    date: CalendarDate
    value: bool


class EditResult(NamedTuple):
    outcome: EditOutcome
    changes: List[Change]
    error: Optional[Exception] = None


def changes_between(current: Mapping[str, bool], saved: Mapping[str, bool], default: bool) -> List[Change]:
    """Dates whose current value differs from the saved one, in date order."""
    changed: List[Change] = []
    for key in sorted(set(current) | set(saved)):
        value = current.get(key, default)
        if value != saved.get(key, default):
            changed.append(Change(key, value))
    return changed
