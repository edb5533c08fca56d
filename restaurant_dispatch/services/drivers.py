"""
Driver Service

Availability and position of drivers, as reported by the driver app.

Location reporting is owned by a TrackingSession: one per driver, started
when the driver goes online and stopped when they go offline. The session
polls a location provider and writes the fix every
DRIVER_LOCATION_INTERVAL_SECONDS while delivering (4 s) and every
DRIVER_IDLE_INTERVAL_SECONDS while idle (12 s).

Usage:
    async with service.start_tracking(driver_id, provider, delivering=True):
        ...   # positions are reported in the background
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from restaurant_dispatch.core.config import Settings, get_settings
from restaurant_dispatch.core.exceptions import (
    DocumentExistsError,
    DocumentNotFoundError,
    DriverNotFoundError,
    InvalidArgumentError,
)
from restaurant_dispatch.models import Collections, Driver, Location, utc_now
from restaurant_dispatch.services.store.base import (
    BaseDocumentStore,
    DocumentSnapshot,
    FieldFilter,
)

logger = logging.getLogger(__name__)

LocationProvider = Callable[[], Awaitable[Optional[Location]]]


class DriverService:
    def __init__(
        self,
        store: BaseDocumentStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock
        self._sessions: dict[str, "TrackingSession"] = {}

    # =========================================================================
    # RECORDS
    # =========================================================================

    async def register_driver(self, driver_id: str) -> Driver:
        """Create the driver record (offline, no position). Idempotent."""
        if not driver_id:
            raise InvalidArgumentError("driverId required")
        snapshot = await self.store.get(Collections.DRIVERS, driver_id)
        if snapshot is None:
            try:
                snapshot = await self.store.add(
                    Collections.DRIVERS,
                    {"isOnline": False, "updatedAt": self.clock()},
                    doc_id=driver_id,
                )
                logger.info(f"Driver {driver_id} registered")
            except DocumentExistsError:
                # Registered concurrently
                snapshot = await self.store.get(Collections.DRIVERS, driver_id)
        return Driver.from_snapshot(snapshot)

    async def get_driver(self, driver_id: str) -> Driver:
        snapshot = await self.store.get(Collections.DRIVERS, driver_id)
        if snapshot is None:
            raise DriverNotFoundError(driver_id)
        return Driver.from_snapshot(snapshot)

    async def list_drivers(self, online_only: bool = False) -> list[Driver]:
        filters = [FieldFilter("isOnline", "==", True)] if online_only else []
        snapshots = await self.store.query(Collections.DRIVERS, filters)
        return [Driver.from_snapshot(s) for s in snapshots]

    async def _update(self, driver_id: str, fields: dict) -> Driver:
        try:
            snapshot = await self.store.update(Collections.DRIVERS, driver_id, fields)
        except DocumentNotFoundError:
            raise DriverNotFoundError(driver_id)
        return Driver.from_snapshot(snapshot)

    async def set_online(self, driver_id: str, is_online: bool) -> Driver:
        driver = await self._update(driver_id, {"isOnline": is_online, "updatedAt": self.clock()})
        logger.info(f"Driver {driver_id} is now {'online 🟢' if is_online else 'offline 🔴'}")
        if not is_online:
            await self.stop_tracking(driver_id)
        return driver

    async def report_location(self, driver_id: str, location: Location) -> Driver:
        return await self._update(
            driver_id,
            {
                "lat": location.lat,
                "lng": location.lng,
                "heading": location.heading if location.heading is not None else 0,
                "speed": location.speed if location.speed is not None else 0,
                "updatedAt": self.clock(),
            },
        )

    def subscribe(
        self,
        driver_id: str,
        callback: Callable[[Optional[Driver]], None],
    ) -> Callable[[], None]:
        """Call ``callback`` with the driver record after every change to it."""
        def on_change(snapshots: list[DocumentSnapshot]) -> None:
            callback(Driver.from_snapshot(snapshots[0]) if snapshots else None)

        return self.store.subscribe(Collections.DRIVERS, on_change, doc_id=driver_id)

    # =========================================================================
    # TRACKING
    # =========================================================================

    def start_tracking(
        self,
        driver_id: str,
        provider: LocationProvider,
        delivering: bool = False,
    ) -> "TrackingSession":
        """
        Create the driver's tracking session, replacing any previous one.

        The returned session is not running yet: ``await session.start()`` or
        use it as an async context manager.
        """
        previous = self._sessions.pop(driver_id, None)
        if previous is not None:
            previous.cancel()

        session = TrackingSession(self, driver_id, provider, delivering=delivering)
        self._sessions[driver_id] = session
        return session

    def session_for(self, driver_id: str) -> Optional["TrackingSession"]:
        return self._sessions.get(driver_id)

    async def stop_tracking(self, driver_id: str) -> None:
        session = self._sessions.pop(driver_id, None)
        if session is not None:
            await session.stop()

    async def stop_all(self) -> None:
        for driver_id in list(self._sessions):
            await self.stop_tracking(driver_id)


class TrackingSession:
    """Periodic location reporting for one driver."""

    def __init__(
        self,
        service: DriverService,
        driver_id: str,
        provider: LocationProvider,
        delivering: bool = False,
    ):
        self.service = service
        self.driver_id = driver_id
        self.provider = provider
        self.delivering = delivering
        self.reports = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def interval(self) -> float:
        settings = self.service.settings
        if self.delivering:
            return settings.driver_location_interval_seconds
        return settings.driver_idle_interval_seconds

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def set_delivering(self, delivering: bool) -> None:
        """Switch cadence; takes effect after the current wait."""
        self.delivering = delivering

    async def start(self) -> "TrackingSession":
        if not self.running:
            self._task = asyncio.create_task(
                self._run(), name=f"tracking-{self.driver_id}"
            )
            logger.info(
                f"📍 Tracking driver {self.driver_id} every {self.interval:g}s "
                f"({'delivering' if self.delivering else 'idle'})"
            )
        return self

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()

    async def stop(self) -> None:
        if self.service.session_for(self.driver_id) is self:
            self.service._sessions.pop(self.driver_id, None)
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"📍 Stopped tracking driver {self.driver_id} ({self.reports} reports)")

    async def report_once(self) -> bool:
        """Read the provider and write the fix. False when there was nothing to write."""
        location = await self.provider()
        if location is None:
            return False
        await self.service.report_location(self.driver_id, location)
        self.reports += 1
        return True

    async def _run(self) -> None:
        while True:
            try:
                await self.report_once()
            except DriverNotFoundError:
                logger.error(f"Driver {self.driver_id} no longer exists; tracking ended")
                return
            except Exception:
                logger.exception(f"Location report for driver {self.driver_id} failed")
            await asyncio.sleep(self.interval)

    async def __aenter__(self) -> "TrackingSession":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
