"""Tests for the Keka API client."""

from datetime import date

import httpx
import pytest

from app.services.exceptions import NetworkFetchError, TransientFetchError, UnauthorizedError
from app.services.keka_client import KekaClient, build_base_url

BASE_URL = "https://acme.keka.com/api/v1"


def make_client(handler) -> KekaClient:
    return KekaClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))


class TestBuildBaseUrl:
    """Tests for base URL construction."""

    def test_builds_tenant_url(self):
        assert build_base_url("acme", "keka") == "https://acme.keka.com/api/v1"

    def test_missing_company_raises(self):
        with pytest.raises(ValueError, match="KEKA_COMPANY"):
            build_base_url(None, "keka")


class TestGetAttendance:
    """Tests for attendance page fetching."""

    @pytest.mark.asyncio
    async def test_sends_window_and_paging_params(self):
        """Query string carries employee, window and page parameters."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json={
                "succeeded": True,
                "data": [{"id": "a1"}, {"id": "a2"}],
                "totalPages": 3,
                "totalRecords": 250
            })

        async with make_client(handler) as client:
            page = await client.get_attendance(
                "tok", "emp-1", date(2024, 5, 1), date(2024, 5, 14), 2, 100
            )

        assert seen["path"] == "/api/v1/time/attendance"
        assert seen["params"] == {
            "employeeIds": "emp-1",
            "from": "2024-05-01",
            "to": "2024-05-14",
            "pageNumber": "2",
            "pageSize": "100",
        }
        assert seen["auth"] == "Bearer tok"
        assert len(page.data) == 2
        assert page.total_pages == 3
        assert page.total_records == 250

    @pytest.mark.asyncio
    async def test_unsuccessful_envelope_is_empty_page(self):
        """succeeded=false yields no data and zero pages."""
        def handler(request):
            return httpx.Response(200, json={"succeeded": False, "message": "No records", "data": None})

        async with make_client(handler) as client:
            page = await client.get_attendance("tok", "emp-1", date(2024, 5, 1), date(2024, 5, 2), 1)

        assert page.data == []
        assert page.total_pages == 0

    @pytest.mark.asyncio
    async def test_401_raises_unauthorized(self):
        def handler(request):
            return httpx.Response(401)

        async with make_client(handler) as client:
            with pytest.raises(UnauthorizedError):
                await client.get_attendance("stale", "emp-1", date(2024, 5, 1), date(2024, 5, 2), 1)

    @pytest.mark.asyncio
    async def test_server_error_raises_transient(self):
        def handler(request):
            return httpx.Response(500, text="boom")

        async with make_client(handler) as client:
            with pytest.raises(TransientFetchError):
                await client.get_attendance("tok", "emp-1", date(2024, 5, 1), date(2024, 5, 2), 1)

    @pytest.mark.asyncio
    async def test_invalid_json_raises_transient(self):
        def handler(request):
            return httpx.Response(200, text="<html>maintenance</html>")

        async with make_client(handler) as client:
            with pytest.raises(TransientFetchError):
                await client.get_attendance("tok", "emp-1", date(2024, 5, 1), date(2024, 5, 2), 1)

    @pytest.mark.asyncio
    async def test_network_error_sent_once_and_raised(self):
        """The client itself never retries; callers count each attempt."""
        sent = []

        def handler(request):
            sent.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(handler) as client:
            with pytest.raises(NetworkFetchError):
                await client.get_attendance("tok", "emp-1", date(2024, 5, 1), date(2024, 5, 2), 1)

        assert len(sent) == 1


class TestListEmployees:
    """Tests for roster page fetching."""

    @pytest.mark.asyncio
    async def test_lists_employee_page(self):
        def handler(request):
            assert request.url.path == "/api/v1/hris/employees"
            assert request.url.params["pageNumber"] == "1"
            return httpx.Response(200, json={
                "succeeded": True,
                "data": [{"id": "e1", "firstName": "Asha"}],
                "totalPages": 1
            })

        async with make_client(handler) as client:
            page = await client.list_employees("tok", 1)

        assert page.data[0]["id"] == "e1"
        assert page.total_pages == 1

    @pytest.mark.asyncio
    async def test_requires_context_manager(self):
        client = KekaClient(base_url=BASE_URL)
        with pytest.raises(RuntimeError, match="async context manager"):
            await client.list_employees("tok", 1)
