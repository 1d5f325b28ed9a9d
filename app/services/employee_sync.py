"""Keka roster crawler and local roster reconciliation."""

import asyncio
import json
import logging
import re
from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from app.config import settings
from app.database.cache import CacheBackend
from app.models.employee import Employee
from app.services.exceptions import UnauthorizedError
from app.services.keka_client import KekaClient, KekaPage, network_retrying
from app.services.name_matching import NameMatcher
from app.services.rate_limiter import RateLimiter, SyncCheckpoint
from app.services.token_provider import Credential, TokenProvider

logger = logging.getLogger(__name__)

EMPLOYEE_STATE_KEY = "employee_rate_limit_state"
ROSTER_CACHE_KEY = "keka_employees_data"
# Filtered employees of the pages fetched so far by an unfinished run
PARTIAL_ROSTER_KEY = "keka_employees_partial"

_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_joining_date(value: Optional[str]) -> Optional[date]:
    """Convert "2014-06-01T00:00:00Z" or "2014-06-01" to a date, else None."""
    if not value:
        return None
    date_str = value.split("T")[0]
    if not _DATE.match(date_str):
        logger.warning(f"Invalid joining date format: {value}")
        return None
    try:
        return date.fromisoformat(date_str)
    except ValueError:
        logger.warning(f"Invalid joining date: {value}")
        return None


class EmployeeSyncResult:
    """Counters for one employee sync run."""

    def __init__(self, source: str = "api"):
        self.source = source
        self.pages_fetched = 0
        self.remote_employees = 0
        self.local_employees = 0
        self.matched = 0
        self.updated = 0
        self.conflicts = 0

    def summary(self) -> str:
        """Build a human-readable summary of the run."""
        parts = [
            f"{self.remote_employees} active employees from Keka ({self.source})",
            f"{self.matched} names matched",
            f"{self.updated} records updated",
            f"{self.local_employees - self.matched} employees not found in Keka",
        ]
        if self.conflicts:
            parts.append(f"{self.conflicts} id conflicts")
        return "; ".join(parts)


class EmployeeSyncEngine:
    """Pages the global Keka roster and fills in ids on the local roster.

    Local rows are only ever updated (employee_id and joining_date); the
    roster itself is managed elsewhere.
    """

    def __init__(
        self,
        cache: CacheBackend,
        token_provider: TokenProvider,
        rate_limiter: Optional[RateLimiter] = None,
        client_factory: Callable[[], KekaClient] = KekaClient,
        name_matcher: Optional[NameMatcher] = None,
        target_group_ids: Optional[List[str]] = None,
        page_size: Optional[int] = None,
        page_delay_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        """Initialize employee sync engine.

        Args:
            cache: Durable cache (checkpoint and roster snapshot).
            token_provider: Source of Keka bearer tokens.
            rate_limiter: Limiter for this engine (defaults to one on EMPLOYEE_STATE_KEY).
            client_factory: Returns a KekaClient to use as async context manager.
            name_matcher: Matcher (defaults to the YAML variant table).
            target_group_ids: Keka group ids to keep (defaults to settings).
            page_size: Records per page (defaults to settings).
            page_delay_seconds: Pause after each roster page (defaults to settings).
            sleep: Coroutine used for the page delay and retry backoff.
        """
        self.cache = cache
        self.token_provider = token_provider
        self.rate_limiter = rate_limiter or RateLimiter(cache, EMPLOYEE_STATE_KEY)
        self.client_factory = client_factory
        self.name_matcher = name_matcher or NameMatcher.from_yaml()
        self.target_group_ids = set(target_group_ids or settings.keka_target_group_ids)
        self.page_size = page_size or settings.sync_page_size
        self.page_delay_seconds = (
            page_delay_seconds if page_delay_seconds is not None else settings.employee_page_delay_seconds
        )
        self._sleep = sleep
        self._token: Optional[str] = None

    async def run(self, db: Session) -> EmployeeSyncResult:
        """Fetch the roster and reconcile it with the local employees table.

        On a fetch failure the last cached roster (if any) is reconciled
        before the error is re-raised.

        Raises:
            AuthError: If a token cannot be obtained.
            UnauthorizedError, TransientFetchError: If a page fails.
        """
        state = await self.rate_limiter.load_state()
        pages_fetched = 0

        try:
            await self.rate_limiter.resume_if_paused(state)

            credential = await self.token_provider.get_token()
            if credential.source == Credential.REMOTE:
                await self.rate_limiter.record_call(state)
            self._token = credential.value

            async with self.client_factory() as client:
                employees, pages_fetched = await self._fetch_roster(client, state)

            logger.info(f"Total filtered active employees from Keka: {len(employees)}")
            await self.cache.setex(
                ROSTER_CACHE_KEY,
                settings.employee_roster_cache_ttl_seconds,
                json.dumps(employees)
            )
            await self.cache.delete(PARTIAL_ROSTER_KEY)
            await self.rate_limiter.clear()

        except Exception as e:
            logger.error(f"Employee collection error: {e}")
            await self.rate_limiter.persist(state)
            await self._reconcile_from_cache(db)
            raise

        result = self.reconcile(db, employees)
        result.pages_fetched = pages_fetched
        logger.info(f"Employee sync completed: {result.summary()}")
        return result

    async def _reconcile_from_cache(self, db: Session) -> None:
        try:
            cached = await self.cache.get(ROSTER_CACHE_KEY)
            if cached:
                logger.info("Using cached employee data due to API failure")
                result = self.reconcile(db, json.loads(cached), source="cache")
                logger.info(f"Sync completed using cached data: {result.summary()}")
        except Exception as cache_error:
            logger.error(f"Failed to use cached employee data: {cache_error}")

    def is_target_employee(self, employee: Dict[str, Any]) -> bool:
        """Keep members of the target groups who have not resigned."""
        groups = employee.get("groups") or []
        in_group = any(group.get("id") in self.target_group_ids for group in groups)
        return in_group and employee.get("resignationSubmittedDate") is None

    async def _fetch_roster(self, client: KekaClient, state: SyncCheckpoint):
        """Page through the roster from the checkpoint page.

        Returns:
            (filtered employees, pages fetched in this run)
        """
        page = max(1, state.cursor_page)
        collected = await self._load_partial(page)
        pages_fetched = 0

        if page == 1:
            state.cursor_page = 1
        logger.info(f"Fetching Keka employees from page {page}")

        while True:
            page_data = await self._fetch_page(client, state, page)
            pages_fetched += 1

            for employee in page_data.data:
                if self.is_target_employee(employee):
                    collected[employee["id"]] = employee
            await self.cache.set(PARTIAL_ROSTER_KEY, json.dumps(list(collected.values())))

            state.total_pages = page_data.total_pages
            more_pages = page < page_data.total_pages
            state.cursor_page = page + 1 if more_pages else page
            await self.rate_limiter.persist(state)

            logger.debug(f"Page {page}/{page_data.total_pages}: {len(collected)} active employees so far")
            await self._sleep(self.page_delay_seconds)
            if not more_pages:
                break
            page += 1

        return list(collected.values()), pages_fetched

    async def _load_partial(self, page: int) -> Dict[str, Dict[str, Any]]:
        if page <= 1:
            return {}
        cached = await self.cache.get(PARTIAL_ROSTER_KEY)
        if not cached:
            return {}
        return {employee["id"]: employee for employee in json.loads(cached)}

    async def _fetch_page(self, client: KekaClient, state: SyncCheckpoint, page: int) -> KekaPage:
        """Fetch one roster page, refreshing the token and retrying once on 401."""
        try:
            return await self._counted(state, client, page)
        except UnauthorizedError:
            logger.info("Token expired or invalid, fetching new token...")
            credential = await self.token_provider.refresh_token()
            self._token = credential.value
            await self.rate_limiter.record_call(state)

        return await self._counted(state, client, page)

    async def _counted(self, state: SyncCheckpoint, client: KekaClient, page: int) -> KekaPage:
        """Request a page, counting every network attempt against the quota."""
        async for attempt in network_retrying(sleep=self._sleep):
            with attempt:
                await self.rate_limiter.record_call(state)
                return await client.list_employees(self._token, page, self.page_size)

    def reconcile(
        self,
        db: Session,
        remote_employees: List[Dict[str, Any]],
        source: str = "api"
    ) -> EmployeeSyncResult:
        """Assign Keka ids and joining dates to matching local roster rows.

        An id held by a different local row is never reassigned. Rows are
        written only when the id or joining date actually changes.
        """
        result = EmployeeSyncResult(source=source)
        result.remote_employees = len(remote_employees)

        local_employees = db.query(Employee).order_by(Employee.id).all()
        result.local_employees = len(local_employees)

        # employee_id -> primary key of the row holding it
        holders: Dict[str, int] = {
            emp.employee_id: emp.id for emp in local_employees if emp.employee_id
        }

        for employee in local_employees:
            conflicts: List[str] = []

            def is_taken(remote_id: str) -> bool:
                holder = holders.get(remote_id)
                taken = holder is not None and holder != employee.id
                if taken:
                    conflicts.append(remote_id)
                return taken

            match = self.name_matcher.find_match(employee.name, remote_employees, is_taken)
            result.conflicts += len(conflicts)
            if not match:
                continue

            result.matched += 1
            remote_id = match["id"]
            joining_date = parse_joining_date(match.get("dateOfJoin")) or employee.joining_date

            if employee.employee_id == remote_id and employee.joining_date == joining_date:
                continue

            previous_id = employee.employee_id
            employee.employee_id = remote_id
            employee.joining_date = joining_date
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.warning(f"Database duplicate key error for \"{employee.name}\" - ID: {remote_id}")
                result.conflicts += 1
                continue

            if previous_id and previous_id != remote_id:
                holders.pop(previous_id, None)
            holders[remote_id] = employee.id
            result.updated += 1
            logger.info(f"Updated \"{employee.name}\" -> ID: {remote_id}, Join Date: {joining_date}")

        return result

    async def get_employees_data(self, db: Session) -> Dict[str, Any]:
        """Get the filtered Keka roster, from cache when possible.

        Returns:
            Dictionary with data, total_records, source, succeeded, message
            and errors.
        """
        try:
            cached = await self.cache.get(ROSTER_CACHE_KEY)
            if cached:
                employees = json.loads(cached)
                return {
                    "data": employees,
                    "total_records": len(employees),
                    "source": "cache",
                    "succeeded": True,
                    "message": "Data from cache",
                    "errors": None
                }

            await self.run(db)
            fresh = await self.cache.get(ROSTER_CACHE_KEY)
            if not fresh:
                raise RuntimeError("Failed to fetch employee data")

            employees = json.loads(fresh)
            return {
                "data": employees,
                "total_records": len(employees),
                "source": "api",
                "succeeded": True,
                "message": "Data freshly fetched from API",
                "errors": None
            }

        except Exception as e:
            logger.error(f"Get employees data error: {e}")
            return {
                "data": [],
                "total_records": 0,
                "source": "error",
                "succeeded": False,
                "message": str(e),
                "errors": [str(e)]
            }
