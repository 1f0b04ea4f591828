"""
Optimistic editing of availability calendars.

The controller keeps two immutable snapshots: ``current`` (what the user
sees) and ``saved`` (what the backend last confirmed). Toggles only touch
``current``; the difference between the snapshots is the unsaved change
set. A batched :meth:`OptimisticEditController.submit` persists every
unsaved date concurrently, then reads the calendar back and only clears
the change set once every submitted value is visible on the server.
"""

from __future__ import annotations

import asyncio
import logging
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, NamedTuple, Optional, Protocol

from pydantic import ValidationError

from .config import Settings
from .dates import CalendarDate, DateInput, normalize_date
from .exceptions import (
    BandcalError,
    PersistError,
    StoreNotFoundError,
    TransientFetchError,
    VerificationTimeout,
)
from .models import AvailabilityMap, Change, EditOutcome, EditResult, changes_between
from .repository import AvailabilityRepository

logger = logging.getLogger(__name__)

DEFAULT_VERIFY_RETRIES = 3
DEFAULT_VERIFY_BASE_DELAY = 0.2

_EXPECTED_ERRORS = (BandcalError, ValidationError)


class EditTarget(Protocol):
    """Where one calendar's edits are persisted and read back from."""

    default_value: bool

    async def persist(self, date: CalendarDate, value: bool) -> None: ...

    async def fetch_saved(self) -> Mapping[str, bool]: ...

    def is_locked(self, date: CalendarDate) -> bool: ...


class BandCalendarTarget:
    """A band leader's own calendar; untouched dates count as available."""

    default_value = True

    def __init__(self, repository: AvailabilityRepository, band_id: str) -> None:
        self.repository = repository
        self.band_id = band_id

    async def persist(self, date: CalendarDate, value: bool) -> None:
        await self.repository.set_band_availability(self.band_id, date, value)

    async def fetch_saved(self) -> Mapping[str, bool]:
        return await self.repository.get_band_calendar_map(self.band_id)

    def is_locked(self, date: CalendarDate) -> bool:
        return False


class BandmateTarget:
    """
    A bandmate's unavailability, addressed by their access token.

    Values mean "is unavailable". Dates the band itself has closed are
    locked: a bandmate cannot change them.
    """

    default_value = False

    def __init__(
        self,
        repository: AvailabilityRepository,
        token: str,
        band_calendar: Optional[Mapping[str, bool]] = None,
    ) -> None:
        self.repository = repository
        self.token = token
        self.band_calendar = {normalize_date(k): v for k, v in (band_calendar or {}).items()}

    async def persist(self, date: CalendarDate, value: bool) -> None:
        await self.repository.set_bandmate_unavailability(self.token, date, value)

    async def fetch_saved(self) -> Mapping[str, bool]:
        return await self.repository.get_bandmate_unavailability(self.token)

    def is_locked(self, date: CalendarDate) -> bool:
        return not self.band_calendar.get(date, True)


def _freeze(values: Mapping[Any, Any]) -> Mapping[Any, Any]:
    return MappingProxyType(dict(values))


def _normalized(values: Mapping[Any, bool]) -> AvailabilityMap:
    return {normalize_date(key): bool(value) for key, value in values.items()}


class EditState(NamedTuple):
    current: Mapping[CalendarDate, bool]
    saved: Mapping[CalendarDate, bool]
    outcomes: Mapping[CalendarDate, EditOutcome]
    submitting: bool = False


class OptimisticEditController:
    """Client-side edit session for one calendar view."""

    def __init__(
        self,
        target: EditTarget,
        initial: Optional[Mapping[Any, bool]] = None,
        *,
        max_retries: int = DEFAULT_VERIFY_RETRIES,
        base_delay: float = DEFAULT_VERIFY_BASE_DELAY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.target = target
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep
        saved = _freeze(_normalized(initial or {}))
        self._state = EditState(current=saved, saved=saved, outcomes=_freeze({}))
        # bumped on every user toggle; lets async completions spot newer intent
        self._edit_seq: Dict[CalendarDate, int] = {}
        self._date_locks: Dict[CalendarDate, asyncio.Lock] = {}
        self._lock_holders: Dict[CalendarDate, int] = {}

    @classmethod
    def from_settings(
        cls,
        target: EditTarget,
        settings: Settings,
        initial: Optional[Mapping[Any, bool]] = None,
    ) -> "OptimisticEditController":
        return cls(
            target,
            initial,
            max_retries=settings.verify_max_retries,
            base_delay=settings.verify_base_delay_seconds,
        )

    @property
    def state(self) -> EditState:
        return self._state

    @property
    def current(self) -> Mapping[CalendarDate, bool]:
        return self._state.current

    @property
    def saved(self) -> Mapping[CalendarDate, bool]:
        return self._state.saved

    @property
    def submitting(self) -> bool:
        return self._state.submitting

    @property
    def unsaved_changes(self) -> List[Change]:
        return changes_between(self._state.current, self._state.saved, self.target.default_value)

    @property
    def has_unsaved_changes(self) -> bool:
        return bool(self.unsaved_changes)

    def value(self, date: DateInput) -> bool:
        return self._state.current.get(normalize_date(date), self.target.default_value)

    def outcome(self, date: DateInput) -> Optional[EditOutcome]:
        return self._state.outcomes.get(normalize_date(date))

    # ----- state transitions -----

    def _replace(self, **fields: Any) -> None:
        self._state = self._state._replace(**fields)

    def _set_current(self, key: CalendarDate, value: bool) -> None:
        current = dict(self._state.current)
        current[key] = value
        self._replace(current=_freeze(current))

    def _set_outcomes(self, keys: List[CalendarDate], outcome: EditOutcome) -> None:
        outcomes = dict(self._state.outcomes)
        for key in keys:
            outcomes[key] = outcome
        self._replace(outcomes=_freeze(outcomes))

    def toggle(self, date: DateInput) -> Optional[bool]:
        """
        Flip ``date`` locally and return its new value.

        Returns ``None`` without changing anything when the date is locked.
        """
        key = normalize_date(date)
        if self.target.is_locked(key):
            logger.debug("availability_toggle_locked", extra={"date": key})
            return None
        new_value = not self.value(key)
        self._set_current(key, new_value)
        self._edit_seq[key] = self._edit_seq.get(key, 0) + 1
        self._set_outcomes([key], EditOutcome.PENDING)
        return new_value

    def discard(self) -> None:
        """Drop every unsaved edit."""
        self._replace(current=self._state.saved, outcomes=_freeze({}))

    def _adopt_server_state(
        self, fetched: AvailabilityMap, edits_since: Mapping[CalendarDate, int]
    ) -> None:
        """Make ``fetched`` the saved baseline, keeping edits newer than ``edits_since``."""
        current = dict(fetched)
        for key, seq in self._edit_seq.items():
            if seq != edits_since.get(key, 0):
                current[key] = self._state.current.get(key, self.target.default_value)
        self._replace(current=_freeze(current), saved=_freeze(fetched))

    async def reload(self) -> bool:
        """Adopt fresh server state while keeping unsaved edits on top of it."""
        unsaved = {change.date: change.value for change in self.unsaved_changes}
        try:
            fetched = _normalized(await self.target.fetch_saved())
        except _EXPECTED_ERRORS as exc:
            logger.warning("availability_reload_failed", extra={"error": str(exc)})
            return False
        current = {**fetched, **unsaved}
        self._replace(current=_freeze(current), saved=_freeze(fetched))
        return True

    # ----- batched submission -----

    async def submit(self) -> EditResult:
        """
        Persist every unsaved change and verify it landed.

        ``PENDING`` means another submission is still running, ``FAILED``
        that a write was rejected, ``UNCONFIRMED`` that writes succeeded but
        could not be read back. In all three cases the unsaved changes stay.
        """
        if self._state.submitting:
            return EditResult(EditOutcome.PENDING, [])
        changes = self.unsaved_changes
        if not changes:
            return EditResult(EditOutcome.CONFIRMED, [])

        edits_at_start = dict(self._edit_seq)
        submitted_dates = [change.date for change in changes]
        self._replace(submitting=True)
        try:
            results = await asyncio.gather(
                *(self.target.persist(change.date, change.value) for change in changes),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException) and not isinstance(result, _EXPECTED_ERRORS):
                    raise result

            failed = [
                (change, result)
                for change, result in zip(changes, results)
                if isinstance(result, BaseException)
            ]
            if failed:
                logger.warning(
                    "availability_submit_failed",
                    extra={
                        "failed_dates": [change.date for change, _ in failed],
                        "submitted": len(changes),
                    },
                )
                self._set_outcomes(submitted_dates, EditOutcome.FAILED)
                return EditResult(
                    EditOutcome.FAILED,
                    changes,
                    PersistError(
                        "availability_persist_failed",
                        details={
                            "dates": [change.date for change, _ in failed],
                            "errors": [str(result) for _, result in failed],
                        },
                    ),
                )

            fetched = await self._verify(changes)
            if fetched is None:
                logger.warning(
                    "availability_submit_unconfirmed",
                    extra={"dates": submitted_dates, "retries": self.max_retries},
                )
                self._set_outcomes(submitted_dates, EditOutcome.UNCONFIRMED)
                return EditResult(
                    EditOutcome.UNCONFIRMED,
                    changes,
                    VerificationTimeout(
                        "availability_save_unconfirmed", details={"dates": submitted_dates}
                    ),
                )

            self._adopt_server_state(fetched, edits_at_start)
            still_pending = {change.date for change in self.unsaved_changes}
            self._set_outcomes(
                [key for key in submitted_dates if key not in still_pending],
                EditOutcome.CONFIRMED,
            )
            logger.info("availability_submit_confirmed", extra={"count": len(changes)})
            return EditResult(EditOutcome.CONFIRMED, changes)
        finally:
            self._replace(submitting=False)

    async def _verify(self, changes: List[Change]) -> Optional[AvailabilityMap]:
        """
        Read the calendar back until every change is visible.

        Retries up to ``max_retries`` times with exponential backoff
        (base, 2x base, 4x base). Returns the fetched map, or ``None`` once
        retries run out.
        """
        retry_count = 0
        while True:
            if retry_count > 0:
                delay = self.base_delay * (2 ** (retry_count - 1))
                await self._sleep(delay)
                logger.debug("availability_verify_retry", extra={"retry": retry_count, "delay": delay})

            try:
                fetched = _normalized(await self.target.fetch_saved())
            except _EXPECTED_ERRORS as exc:
                logger.debug("availability_verify_fetch_failed", extra={"error": str(exc)})
            else:
                mismatched = [
                    change.date
                    for change in changes
                    if change.date not in fetched or fetched[change.date] != change.value
                ]
                if not mismatched:
                    return fetched
                logger.debug("availability_verify_mismatch", extra={"dates": mismatched})

            if retry_count >= self.max_retries:
                return None
            retry_count += 1

    # ----- immediate submission -----

    async def toggle_and_save(self, date: DateInput) -> EditResult:
        """
        Toggle ``date`` and persist it right away.

        Saves for the same date run one at a time and always send the
        latest value the user chose. A failed save reverts the date unless
        a newer toggle has already replaced the value it sent.
        """
        key = normalize_date(date)
        if self.toggle(key) is None:
            return EditResult(
                EditOutcome.FAILED, [], BandcalError("date_locked", details={"date": key})
            )

        lock = self._date_locks.get(key)
        if lock is None:
            lock = self._date_locks[key] = asyncio.Lock()
        self._lock_holders[key] = self._lock_holders.get(key, 0) + 1
        try:
            async with lock:
                return await self._save_latest(key)
        finally:
            self._lock_holders[key] -= 1
            if not self._lock_holders[key]:
                del self._lock_holders[key]
                del self._date_locks[key]

    async def _save_latest(self, key: CalendarDate) -> EditResult:
        """Send the current value of ``key``; callers hold that date's lock."""
        value = self.value(key)
        saved_value = self._state.saved.get(key, self.target.default_value)
        seq = self._edit_seq.get(key, 0)
        change = Change(key, value)
        if value == saved_value and key in self._state.saved:
            self._set_outcomes([key], EditOutcome.CONFIRMED)
            return EditResult(EditOutcome.CONFIRMED, [change])

        try:
            await self.target.persist(key, value)
        except _EXPECTED_ERRORS as exc:
            logger.warning(
                "availability_save_failed", extra={"date": key, "error": str(exc)}
            )
            if self._edit_seq.get(key, 0) == seq:
                self._set_current(key, saved_value)
                self._set_outcomes([key], EditOutcome.FAILED)
            return EditResult(
                EditOutcome.FAILED,
                [change],
                PersistError("availability_persist_failed", details={"date": key}),
            )

        saved = dict(self._state.saved)
        saved[key] = value
        self._replace(saved=_freeze(saved))
        if self._edit_seq.get(key, 0) == seq:
            self._set_outcomes([key], EditOutcome.CONFIRMED)
        return EditResult(EditOutcome.CONFIRMED, [change])


def _controller(
    target: EditTarget, initial: Mapping[str, bool], settings: Optional[Settings]
) -> OptimisticEditController:
    if settings is None:
        return OptimisticEditController(target, initial)
    return OptimisticEditController.from_settings(target, settings, initial)


async def open_band_calendar_session(
    repository: AvailabilityRepository,
    band_id: str,
    settings: Optional[Settings] = None,
) -> OptimisticEditController:
    """Load a band leader's calendar into a fresh edit session."""
    try:
        initial = await repository.get_band_calendar_map(band_id)
    except StoreNotFoundError:
        raise
    except _EXPECTED_ERRORS as exc:
        raise TransientFetchError("band_calendar_unavailable", details={"band_id": band_id}) from exc
    return _controller(BandCalendarTarget(repository, band_id), initial, settings)


async def open_bandmate_session(
    repository: AvailabilityRepository,
    token: str,
    settings: Optional[Settings] = None,
) -> OptimisticEditController:
    """
    Load a bandmate's unavailability into a fresh edit session.

    Raises ``StoreNotFoundError`` for an unknown token.
    """
    try:
        bandmate = await repository.get_bandmate_by_token(token)
        band_calendar = await repository.get_band_calendar_by_token(token)
        initial = await repository.get_bandmate_unavailability(token)
    except StoreNotFoundError:
        raise
    except _EXPECTED_ERRORS as exc:
        raise TransientFetchError("bandmate_calendar_unavailable") from exc
    target = BandmateTarget(repository, bandmate.token, band_calendar)
    return _controller(target, initial, settings)
