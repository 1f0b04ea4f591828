"""Visibility-aware periodic refresh of aggregated availability."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from .config import Settings
from .merger import AvailabilityAggregator
from .models import AggregatedAvailability

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_POLL_INTERVAL = 45.0
DEFAULT_STALE_AFTER = 60.0


class PollingRefresher(Generic[T]):
    """
    Re-fetch a value on an interval while its view is visible.

    Only one fetch runs at a time; triggers that arrive meanwhile are
    dropped. A fetch that resolves after a newer value was applied (or
    adopted via :meth:`adopt`) is discarded. Failures are logged and the
    next tick tries again.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[T]],
        on_update: Optional[Callable[[T], Any]] = None,
        *,
        interval: float = DEFAULT_POLL_INTERVAL,
        stale_after: float = DEFAULT_STALE_AFTER,
        visible: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self._on_update = on_update
        self.interval = interval
        self.stale_after = stale_after
        self.visible = visible
        self._clock = clock
        self.value: Optional[T] = None
        self.last_success_at: Optional[float] = None
        self._generation = 0
        self._in_flight = False
        self._task: Optional[asyncio.Task[None]] = None
        self._catch_up: Optional[asyncio.Task[bool]] = None

    @classmethod
    def from_settings(
        cls,
        fetch: Callable[[], Awaitable[T]],
        settings: Settings,
        on_update: Optional[Callable[[T], Any]] = None,
    ) -> "PollingRefresher[T]":
        return cls(
            fetch,
            on_update,
            interval=settings.poll_interval_seconds,
            stale_after=settings.stale_after_seconds,
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def is_stale(self) -> bool:
        if self.last_success_at is None:
            return True
        return self._clock() - self.last_success_at > self.stale_after

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="bandcal-availability-poll")

    async def stop(self) -> None:
        """Cancel the poll loop and any catch-up fetch."""
        tasks = [task for task in (self._task, self._catch_up) if task is not None]
        self._task = None
        self._catch_up = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def __aenter__(self) -> "PollingRefresher[T]":
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if not self.visible:
                continue
            try:
                await self.refresh()
            except Exception:
                logger.exception("availability_poll_tick_failed")

    def set_visible(self, visible: bool) -> None:
        """Record a visibility change; catch up at once if the data went stale while hidden."""
        became_visible = visible and not self.visible
        self.visible = visible
        if not (became_visible and self.running and self.is_stale()):
            return
        if self._catch_up is not None and not self._catch_up.done():
            return
        logger.debug("availability_refresh_catch_up")
        self._catch_up = asyncio.create_task(self.refresh())

    async def refresh(self) -> bool:
        """Fetch now. Returns True if the fetched value was applied."""
        if self._in_flight:
            logger.debug("availability_refresh_dropped_in_flight")
            return False
        self._in_flight = True
        generation = self._generation
        try:
            value = await self._fetch()
        except Exception as exc:
            logger.warning("availability_refresh_failed", extra={"error": str(exc)})
            return False
        finally:
            self._in_flight = False

        if generation != self._generation:
            logger.debug("availability_refresh_stale_discarded")
            return False
        self._apply(value)
        return True

    def adopt(self, value: T) -> None:
        """Apply a value known to be newer than anything currently being fetched."""
        self._apply(value)

    def _apply(self, value: T) -> None:
        self._generation += 1
        self.value = value
        self.last_success_at = self._clock()
        if self._on_update is not None:
            self._on_update(value)


def band_availability_refresher(
    aggregator: AvailabilityAggregator,
    band_id: str,
    on_update: Optional[Callable[[AggregatedAvailability], Any]] = None,
    settings: Optional[Settings] = None,
) -> PollingRefresher[AggregatedAvailability]:
    """Refresher that keeps one band's final availability current."""

    async def fetch() -> AggregatedAvailability:
        return await aggregator.final_availability(band_id)

    if settings is None:
        return PollingRefresher(fetch, on_update)
    return PollingRefresher.from_settings(fetch, settings, on_update)
