"""Availability aggregation and calendar windowing for band scheduling."""

from .client import AggregationFunction, BackendClient, RecordStore
from .config import Settings, configure_logging
from .dates import compute_window, normalize_date
from .editing import (
    BandCalendarTarget,
    BandmateTarget,
    OptimisticEditController,
    open_band_calendar_session,
    open_bandmate_session,
)
from .grid import build_month_grids, group_by_month, group_by_weeks
from .merger import AvailabilityAggregator, merge_availability
from .models import AggregatedAvailability, EditOutcome, EditResult
from .polling import PollingRefresher, band_availability_refresher
from .repository import AvailabilityRepository

__version__ = "0.1.0"

__all__ = [
    "AggregatedAvailability",
    "AggregationFunction",
    "AvailabilityAggregator",
    "AvailabilityRepository",
    "BackendClient",
    "BandCalendarTarget",
    "BandmateTarget",
    "EditOutcome",
    "EditResult",
    "OptimisticEditController",
    "PollingRefresher",
    "RecordStore",
    "Settings",
    "band_availability_refresher",
    "build_month_grids",
    "compute_window",
    "configure_logging",
    "group_by_month",
    "group_by_weeks",
    "merge_availability",
    "normalize_date",
    "open_band_calendar_session",
    "open_bandmate_session",
]
