"""Resumable, rate-limited attendance crawler over the Keka attendance API."""

import asyncio
import json
import logging
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional, Tuple
from zoneinfo import ZoneInfo
from sqlalchemy.orm import Session

from app.config import settings
from app.database.cache import CacheBackend
from app.services.attendance_service import AttendanceService
from app.services.exceptions import TransientFetchError, UnauthorizedError
from app.services.keka_client import KekaClient, KekaPage, network_retrying
from app.services.rate_limiter import RateLimiter, SyncCheckpoint
from app.services.token_provider import Credential, TokenProvider

logger = logging.getLogger(__name__)

ATTENDANCE_STATE_KEY = "attendance_rate_limit_state"
EMPLOYEE_IDS_CACHE_KEY = "attendance_employee_ids_cache"


def local_today() -> date:
    """Today's date on the factory's local clock."""
    return datetime.now(ZoneInfo(settings.local_timezone)).date()


class AttendanceSyncResult:
    """Counters for one attendance sync run."""

    def __init__(self):
        self.new_records = 0
        self.updated_records = 0
        self.unchanged_records = 0
        self.skipped_records = 0
        self.pages_fetched = 0
        self.employees_processed = 0
        self.employees_failed = 0
        self.failed_employee_ids: List[str] = []

    def summary(self) -> str:
        """Build a human-readable summary of the run."""
        parts = [
            f"{self.new_records} new records",
            f"{self.updated_records} updated records",
            f"{self.employees_processed} employees processed",
            f"{self.pages_fetched} pages fetched",
        ]
        if self.skipped_records:
            parts.append(f"{self.skipped_records} invalid records skipped")
        if self.failed_employee_ids:
            shown = ", ".join(self.failed_employee_ids[:3])
            parts.append(f"{self.employees_failed} employees failed: {shown}")
            if len(self.failed_employee_ids) > 3:
                parts[-1] += f" and {len(self.failed_employee_ids) - 3} more"
        return "; ".join(parts)


class AttendanceSyncEngine:
    """Crawls attendance pages employee by employee, checkpointing every step.

    Employees and pages are processed strictly in sequence. The checkpoint is
    persisted after every remote call and every completed page, so a killed
    process resumes at the exact employee and page on the next run.
    """

    def __init__(
        self,
        cache: CacheBackend,
        token_provider: TokenProvider,
        attendance_service: Optional[AttendanceService] = None,
        rate_limiter: Optional[RateLimiter] = None,
        client_factory: Callable[[], KekaClient] = KekaClient,
        page_size: Optional[int] = None,
        page_delay_seconds: Optional[float] = None,
        backfill_days: Optional[int] = None,
        today: Callable[[], date] = local_today,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        """Initialize attendance sync engine.

        Args:
            cache: Durable cache (checkpoint and employee-id snapshot).
            token_provider: Source of Keka bearer tokens.
            attendance_service: Storage service (defaults to a new instance).
            rate_limiter: Limiter for this engine (defaults to one on ATTENDANCE_STATE_KEY).
            client_factory: Returns a KekaClient to use as async context manager.
            page_size: Records per page (defaults to settings).
            page_delay_seconds: Pause between page fetches (defaults to settings).
            backfill_days: Trailing window when today's row is missing (defaults to settings).
            today: Returns the current local date.
            sleep: Coroutine used for the inter-page delay.
        """
        self.cache = cache
        self.token_provider = token_provider
        self.attendance_service = attendance_service or AttendanceService()
        self.rate_limiter = rate_limiter or RateLimiter(cache, ATTENDANCE_STATE_KEY)
        self.client_factory = client_factory
        self.page_size = page_size or settings.sync_page_size
        self.page_delay_seconds = (
            page_delay_seconds if page_delay_seconds is not None else settings.sync_page_delay_seconds
        )
        self.backfill_days = backfill_days or settings.attendance_backfill_days
        self._today = today
        self._sleep = sleep
        self._token: Optional[str] = None

    async def run(self, db: Session) -> AttendanceSyncResult:
        """Run (or resume) one attendance sync pass over all employees.

        Args:
            db: Database session.

        Returns:
            AttendanceSyncResult with run counters.

        Raises:
            AuthError: If a token cannot be obtained.
            PersistenceError: On a non-duplicate store failure.
        """
        state = await self.rate_limiter.load_state()
        result = AttendanceSyncResult()

        try:
            await self.rate_limiter.resume_if_paused(state)

            credential = await self.token_provider.get_token()
            if credential.source == Credential.REMOTE:
                await self.rate_limiter.record_call(state)
            self._token = credential.value

            employee_ids = await self._load_employee_ids(db, state)
            if not employee_ids:
                logger.info("No employees found with valid employee_ids")
                await self.rate_limiter.clear()
                return result

            start_index = max(0, state.cursor_entity_index)
            start_page = max(1, state.cursor_page)
            logger.info(
                f"Starting attendance sync from employee {start_index + 1}/{len(employee_ids)}, "
                f"page {start_page} ({state.call_count}/{self.rate_limiter.max_calls} calls used)"
            )

            async with self.client_factory() as client:
                for index in range(start_index, len(employee_ids)):
                    employee_id = employee_ids[index]
                    state.cursor_entity_index = index
                    state.current_entity_id = employee_id
                    await self.rate_limiter.persist(state)

                    first_page = start_page if index == start_index else 1
                    await self._sync_employee(db, client, state, employee_id, first_page, result)

                    state.cursor_entity_index = index + 1
                    state.cursor_page = 1
                    await self.rate_limiter.persist(state)

            await self.rate_limiter.clear()
            logger.info(f"Attendance sync completed: {result.summary()}")
            return result

        except Exception as e:
            logger.error(f"Attendance collection error: {e}")
            await self.rate_limiter.persist(state)
            raise

    async def _load_employee_ids(self, db: Session, state: SyncCheckpoint) -> List[str]:
        """Resolve the ordered employee id list, preferring the checkpoint snapshot."""
        if state.entity_id_snapshot:
            return state.entity_id_snapshot

        cached = await self.cache.get(EMPLOYEE_IDS_CACHE_KEY)
        if cached:
            logger.info("Using cached employee IDs")
            employee_ids = json.loads(cached)
        else:
            employee_ids = self.attendance_service.get_employee_ids(db)
            await self.cache.setex(
                EMPLOYEE_IDS_CACHE_KEY,
                settings.employee_ids_cache_ttl_seconds,
                json.dumps(employee_ids)
            )
            logger.info(f"Cached {len(employee_ids)} employee IDs")

        state.entity_id_snapshot = employee_ids
        state.total_entities = len(employee_ids)
        await self.rate_limiter.persist(state)
        return employee_ids

    def compute_fetch_window(
        self,
        db: Session,
        employee_id: str,
        today: Optional[date] = None
    ) -> Tuple[date, date]:
        """Pick the date range to fetch for one employee.

        An employee who already has a row for today only needs yesterday and
        today refreshed; otherwise a trailing backfill window is pulled.

        Returns:
            (from_date, to_date), both inclusive.
        """
        today = today or self._today()
        if self.attendance_service.has_record_for_date(db, employee_id, today):
            return today - timedelta(days=1), today
        return today - timedelta(days=self.backfill_days), today

    async def _sync_employee(
        self,
        db: Session,
        client: KekaClient,
        state: SyncCheckpoint,
        employee_id: str,
        first_page: int,
        result: AttendanceSyncResult
    ) -> None:
        offdays = self.attendance_service.get_offdays(db, employee_id)
        from_date, to_date = self.compute_fetch_window(db, employee_id)
        page = first_page

        while True:
            logger.debug(f"Processing employee {employee_id}, page {page} ({from_date} to {to_date})")
            try:
                page_data = await self._fetch_page(client, state, employee_id, from_date, to_date, page)
            except (UnauthorizedError, TransientFetchError) as e:
                logger.error(f"Error processing attendance for employee {employee_id}, page {page}: {e}")
                state.cursor_page = page
                state.paused = False
                await self.rate_limiter.persist(state)
                result.employees_failed += 1
                result.failed_employee_ids.append(employee_id)
                return

            upsert = self.attendance_service.upsert_records(db, employee_id, page_data.data, offdays)
            result.pages_fetched += 1
            result.new_records += upsert.new_records
            result.updated_records += upsert.updated_records
            result.unchanged_records += upsert.unchanged_records
            result.skipped_records += upsert.skipped_records

            more_pages = page_data.total_pages > 0 and page < page_data.total_pages
            state.cursor_page = page + 1 if more_pages else page
            state.paused = False
            await self.rate_limiter.persist(state)

            await self._sleep(self.page_delay_seconds)

            if not more_pages:
                result.employees_processed += 1
                logger.debug(f"Completed employee {employee_id} ({page_data.total_pages} pages)")
                return
            page += 1

    async def _fetch_page(
        self,
        client: KekaClient,
        state: SyncCheckpoint,
        employee_id: str,
        from_date: date,
        to_date: date,
        page: int
    ) -> KekaPage:
        """Fetch one page, refreshing the token and retrying once on 401.

        Requests that get no response are retried, each attempt counted as
        a call.
        """
        async def request() -> KekaPage:
            return await client.get_attendance(
                self._token, employee_id, from_date, to_date, page, self.page_size
            )

        try:
            return await self._counted(state, request)
        except UnauthorizedError:
            logger.info("Token expired or invalid, fetching new token...")
            credential = await self.token_provider.refresh_token()
            self._token = credential.value
            await self.rate_limiter.record_call(state)

        return await self._counted(state, request)

    async def _counted(self, state: SyncCheckpoint, request: Callable[[], Awaitable[KekaPage]]) -> KekaPage:
        async for attempt in network_retrying(sleep=self._sleep):
            with attempt:
                await self.rate_limiter.record_call(state)
                return await request()
