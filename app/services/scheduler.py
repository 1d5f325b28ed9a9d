"""Background scheduling of sync runs and token refreshes."""

import asyncio
import logging
from datetime import datetime, time, timedelta
from typing import Any, Awaitable, Callable, List, Optional
from zoneinfo import ZoneInfo

from app.config import settings
from app.database.database import SessionLocal
from app.services.exceptions import AuthError
from app.services.sync_service import SyncService
from app.services.token_provider import TokenProvider

logger = logging.getLogger(__name__)


def local_now() -> datetime:
    """Current naive wall-clock time in the configured local timezone."""
    return datetime.now(ZoneInfo(settings.local_timezone)).replace(tzinfo=None)


def parse_times(value: str) -> List[time]:
    """Parse a comma separated list of HH:MM times.

    Raises:
        ValueError: If an entry is not a valid HH:MM time.
    """
    times = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        hour, minute = part.split(":")
        times.append(time(int(hour), int(minute)))
    return sorted(times)


def seconds_until(time_of_day: time, now: datetime) -> float:
    """Seconds from ``now`` to the next occurrence of ``time_of_day``.

    A time equal to or before ``now`` fires tomorrow.
    """
    target = datetime.combine(now.date(), time_of_day)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class SyncScheduler:
    """Runs the periodic and daily jobs as asyncio tasks.

    Every job catches and logs its own failure so one bad run never stops
    its loop.
    """

    def __init__(
        self,
        sync_service: SyncService,
        token_provider: TokenProvider,
        session_factory: Callable[[], Any] = SessionLocal,
        now: Callable[[], datetime] = local_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.sync_service = sync_service
        self.token_provider = token_provider
        self.session_factory = session_factory
        self._now = now
        self._sleep = sleep
        self._tasks: List[asyncio.Task] = []

        self.attendance_interval_seconds = settings.attendance_sync_interval_minutes * 60
        self.employee_sync_times = parse_times(settings.employee_sync_times)
        self.token_refresh_times = parse_times(settings.token_refresh_times)
        self.employee_startup_delay = settings.employee_sync_startup_delay_seconds

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        """Start all scheduler loops on the running event loop."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        self._tasks = [
            asyncio.create_task(self._startup_token(), name="token-startup"),
            asyncio.create_task(self._attendance_loop(), name="attendance-sync"),
            asyncio.create_task(self._employee_startup(), name="employee-startup"),
            asyncio.create_task(
                self._daily_loop(self.employee_sync_times, self.run_employee_job, "employee sync"),
                name="employee-sync"
            ),
            asyncio.create_task(
                self._daily_loop(self.token_refresh_times, self.run_token_refresh_job, "token refresh"),
                name="token-refresh"
            ),
        ]
        logger.info(
            f"Scheduler started: attendance every {self.attendance_interval_seconds // 60} min, "
            f"employee sync at {settings.employee_sync_times}, token refresh at {settings.token_refresh_times}"
        )

    async def stop(self) -> None:
        """Cancel all scheduler loops and wait for them to finish."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Scheduler stopped")

    async def run_attendance_job(self) -> None:
        db = self.session_factory()
        try:
            record = await self.sync_service.run_attendance_sync(db)
            logger.info(f"Scheduled attendance sync {record.id} finished: {record.status}")
        except RuntimeError as e:
            logger.info(f"Skipping scheduled attendance sync: {e}")
        except Exception as e:
            logger.error(f"Scheduled attendance sync failed: {e}")
        finally:
            db.close()

    async def run_employee_job(self) -> None:
        db = self.session_factory()
        try:
            record = await self.sync_service.run_employee_sync(db)
            logger.info(f"Scheduled employee sync {record.id} finished: {record.status}")
        except RuntimeError as e:
            logger.info(f"Skipping scheduled employee sync: {e}")
        except Exception as e:
            logger.error(f"Scheduled employee sync failed: {e}")
        finally:
            db.close()

    async def run_token_refresh_job(self) -> None:
        try:
            await self.token_provider.refresh_token()
            logger.info("Scheduled Keka token refresh completed")
        except AuthError as e:
            logger.error(f"Scheduled Keka token refresh failed: {e}")

    async def _startup_token(self) -> None:
        try:
            if await self.token_provider.has_cached_token():
                return
        except Exception as e:
            logger.error(f"Could not check cached Keka token: {e}")
            return
        logger.info("No Keka token cached, fetching one at startup")
        await self.run_token_refresh_job()

    async def _attendance_loop(self) -> None:
        while True:
            await self.run_attendance_job()
            await self._sleep(self.attendance_interval_seconds)

    async def _employee_startup(self) -> None:
        await self._sleep(self.employee_startup_delay)
        await self.run_employee_job()

    async def _daily_loop(
        self,
        times: List[time],
        job: Callable[[], Awaitable[None]],
        name: str
    ) -> None:
        if not times:
            return
        while True:
            delay = self.next_delay(times)
            logger.debug(f"Next {name} in {delay:.0f}s")
            await self._sleep(delay)
            await job()

    def next_delay(self, times: List[time], now: Optional[datetime] = None) -> float:
        """Seconds until the earliest upcoming time in ``times``."""
        now = now or self._now()
        return min(seconds_until(time_of_day, now) for time_of_day in times)
