"""Keka HR API client for attendance and employee roster pages."""

import asyncio
import logging
from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Optional
import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from app.config import settings
from app.services.exceptions import NetworkFetchError, TransientFetchError, UnauthorizedError

logger = logging.getLogger(__name__)

MAX_NETWORK_ATTEMPTS = 3


def network_retrying(sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> AsyncRetrying:
    """Retry policy for page requests that got no HTTP response.

    The caller drives the attempts, so each one can be counted against the
    rate limiter before it is sent.
    """
    return AsyncRetrying(
        stop=stop_after_attempt(MAX_NETWORK_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(NetworkFetchError),
        sleep=sleep,
        reraise=True
    )


class KekaPage:
    """One page of a paginated Keka response."""

    def __init__(self, data: List[Dict[str, Any]], total_pages: int, total_records: int = 0):
        """Initialize page.

        Args:
            data: Records on this page.
            total_pages: Total page count reported by the API (0 when empty).
            total_records: Total record count reported by the API.
        """
        self.data = data
        self.total_pages = total_pages
        self.total_records = total_records

    def __repr__(self) -> str:
        return f"<KekaPage records={len(self.data)} total_pages={self.total_pages}>"


def build_base_url(company: Optional[str], environment: Optional[str]) -> str:
    """Build the tenant API base URL.

    Raises:
        ValueError: If company or environment is not configured.
    """
    if not company or not environment:
        raise ValueError("KEKA_COMPANY or KEKA_ENVIRONMENT environment variables are not set")
    return f"https://{company}.{environment}.com/api/v1"


class KekaClient:
    """Client for the Keka REST API (bearer authenticated)."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """Initialize Keka client.

        Args:
            base_url: API base URL (defaults to one built from settings).
            timeout: Request timeout in seconds.
            transport: Optional httpx transport, mainly for tests.
        """
        self.base_url = (base_url or build_base_url(settings.keka_company, settings.keka_environment)).rstrip('/')
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        """Async context manager entry."""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Accept": "application/json"},
            transport=self._transport
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get HTTP client.

        Raises:
            RuntimeError: If client is not initialized (use async context manager).
        """
        if self._client is None:
            raise RuntimeError("KekaClient must be used as async context manager")
        return self._client

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        token: str,
        params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Make one authenticated request (no retries).

        Args:
            method: HTTP method.
            endpoint: API endpoint path.
            token: Bearer token.
            params: Query parameters (optional).

        Returns:
            Response JSON data.

        Raises:
            UnauthorizedError: If the API answers 401.
            TransientFetchError: On any other HTTP error status.
            httpx.TimeoutException, httpx.NetworkError: If no response arrives.
        """
        client = self._get_client()

        try:
            response = await client.request(
                method=method,
                url=endpoint,
                params=params,
                headers={"Authorization": f"Bearer {token}"}
            )

            if response.status_code == 401:
                logger.warning(f"Unauthorized response for {method} {endpoint}")
                raise UnauthorizedError(f"Keka rejected the access token for {endpoint}")

            response.raise_for_status()
            return response.json()

        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error {e.response.status_code} for {method} {endpoint}: {e.response.text}")
            raise TransientFetchError(f"HTTP {e.response.status_code} for {endpoint}") from e
        except httpx.TimeoutException:
            logger.error(f"Timeout for {method} {endpoint}")
            raise
        except httpx.NetworkError as e:
            logger.error(f"Network error for {method} {endpoint}: {e}")
            raise

    async def _get_page(self, endpoint: str, token: str, params: Dict[str, Any]) -> KekaPage:
        """Fetch one page and normalise the Keka envelope.

        Keka returns {succeeded, message, errors, data, totalPages, totalRecords}.
        An unsuccessful envelope is treated as an empty page.
        """
        try:
            body = await self._make_request("GET", endpoint, token, params=params)
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            raise NetworkFetchError(f"Request to {endpoint} failed: {e}") from e
        except ValueError as e:
            raise TransientFetchError(f"Invalid JSON from {endpoint}: {e}") from e

        if not isinstance(body, dict):
            raise TransientFetchError(f"Unexpected response format from {endpoint}")

        if body.get("succeeded") and body.get("data") is not None:
            return KekaPage(
                data=body["data"],
                total_pages=int(body.get("totalPages") or 0),
                total_records=int(body.get("totalRecords") or 0)
            )

        logger.info(f"No data from {endpoint} page {params.get('pageNumber')}: {body.get('message')}")
        return KekaPage(data=[], total_pages=0)

    async def get_attendance(
        self,
        token: str,
        employee_id: str,
        from_date: date,
        to_date: date,
        page_number: int,
        page_size: int = 100
    ) -> KekaPage:
        """Get one page of attendance records for a single employee.

        Args:
            token: Bearer token.
            employee_id: Keka employee id.
            from_date: First date of the window (inclusive).
            to_date: Last date of the window (inclusive).
            page_number: 1-based page number.
            page_size: Records per page.

        Returns:
            KekaPage of raw attendance dictionaries.
        """
        return await self._get_page(
            "/time/attendance",
            token,
            {
                "employeeIds": employee_id,
                "from": from_date.isoformat(),
                "to": to_date.isoformat(),
                "pageNumber": page_number,
                "pageSize": page_size,
            }
        )

    async def list_employees(self, token: str, page_number: int, page_size: int = 100) -> KekaPage:
        """Get one page of the global employee roster.

        Args:
            token: Bearer token.
            page_number: 1-based page number.
            page_size: Records per page.

        Returns:
            KekaPage of raw employee dictionaries (with nested groups).
        """
        return await self._get_page(
            "/hris/employees",
            token,
            {"pageNumber": page_number, "pageSize": page_size}
        )
