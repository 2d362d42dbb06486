"""
Unit tests for the paginated LMS and PRM fetchers
"""

import pytest
import httpx
from core.exceptions import (
    APIFetchError,
    AuthenticationError,
    NetworkError,
    RateLimitError,
    ResourceNotFoundError,
)
from sync.fetchers.lms_client import PEOPLE_PATH, UPDATED_SINCE_PARAM
from sync.fetchers.prm_client import OBJECTS_PATH, field_equals_any, updated_since_filter
from fakes import RouteTransport, jsonapi, lms_page, prm_page, paged
from datetime import datetime


def people(*ids):
    return [jsonapi("people", i, email=f"{i}@example.com") for i in ids]


async def collect(iterator):
    pages = []
    async for batch in iterator:
        pages.append(batch)
    return pages


class TestLmsPagination:
    """Test page-numbered walking"""

    @pytest.mark.asyncio
    async def test_walks_until_short_page(self, make_lms):
        fake = RouteTransport({
            PEOPLE_PATH: paged([lms_page(people("u1", "u2"), total=3), lms_page(people("u3"), total=3)]),
        })
        client = make_lms(fake)

        pages = await collect(client.iter_pages(PEOPLE_PATH))
        await client.aclose()

        assert [b.page for b in pages] == [1, 2]
        assert [len(b.items) for b in pages] == [2, 1]
        assert pages[-1].items_so_far == 3
        assert pages[0].total == 3
        assert len(fake.calls(PEOPLE_PATH)) == 2

    @pytest.mark.asyncio
    async def test_exact_multiple_requests_empty_page(self, make_lms):
        fake = RouteTransport({PEOPLE_PATH: paged([lms_page(people("u1", "u2"))])})
        client = make_lms(fake)

        records = await client.fetch_all(PEOPLE_PATH)
        await client.aclose()

        assert len(records) == 2
        assert [r.url.params["page"] for r in fake.requests] == ["1", "2"]

    @pytest.mark.asyncio
    async def test_since_filter_and_auth_header(self, make_lms):
        fake = RouteTransport({PEOPLE_PATH: paged([lms_page([])])})
        client = make_lms(fake)

        await client.fetch_all(PEOPLE_PATH, since=datetime(2024, 1, 1))
        await client.aclose()

        request = fake.requests[0]
        assert request.url.params[UPDATED_SINCE_PARAM] == "2024-01-01T00:00:00"
        assert request.headers["X-Api-Key"] == "test-key"

    @pytest.mark.asyncio
    async def test_rate_limit_retries_same_page(self, make_lms):
        """A 429 suspends and repeats the same page request"""
        responses = [
            httpx.Response(429),
            httpx.Response(200, json=lms_page(people("u1"))),
        ]
        fake = RouteTransport({PEOPLE_PATH: lambda request: responses.pop(0)})
        client = make_lms(fake)

        records = await client.fetch_all(PEOPLE_PATH)
        await client.aclose()

        assert len(records) == 1
        assert [r.url.params["page"] for r in fake.requests] == ["1", "1"]

    @pytest.mark.asyncio
    async def test_rate_limit_budget_exhausted(self, make_lms):
        fake = RouteTransport({PEOPLE_PATH: lambda request: httpx.Response(429)})
        client = make_lms(fake, max_rate_limit_waits=2)

        with pytest.raises(RateLimitError):
            await client.fetch_all(PEOPLE_PATH)
        await client.aclose()

        assert len(fake.requests) == 3

    @pytest.mark.asyncio
    async def test_failure_reports_progress(self, make_lms):
        """A failing page raises with the pages and items already retrieved"""

        def handler(request):
            if request.url.params["page"] == "1":
                return httpx.Response(200, json=lms_page(people("u1", "u2")))
            return httpx.Response(400, text="bad request")

        fake = RouteTransport({PEOPLE_PATH: handler})
        client = make_lms(fake)

        seen = []
        with pytest.raises(APIFetchError) as exc_info:
            async for batch in client.iter_pages(PEOPLE_PATH):
                seen.extend(batch.items)
        await client.aclose()

        assert len(seen) == 2
        assert exc_info.value.pages_retrieved == 1
        assert exc_info.value.items_retrieved == 2
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_server_errors_retried_then_raised(self, make_lms):
        fake = RouteTransport({PEOPLE_PATH: lambda request: httpx.Response(503)})
        client = make_lms(fake, max_retries=2)

        with pytest.raises(NetworkError):
            await client.fetch_all(PEOPLE_PATH)
        await client.aclose()

        assert len(fake.requests) == 2

    @pytest.mark.asyncio
    async def test_server_error_recovers(self, make_lms):
        responses = [httpx.Response(502), httpx.Response(200, json=lms_page(people("u1")))]
        fake = RouteTransport({PEOPLE_PATH: lambda request: responses.pop(0)})
        client = make_lms(fake, max_retries=2)

        records = await client.fetch_all(PEOPLE_PATH)
        await client.aclose()

        assert len(records) == 1

    @pytest.mark.asyncio
    async def test_not_found(self, make_lms):
        client = make_lms(RouteTransport({}))

        with pytest.raises(ResourceNotFoundError):
            await collect(client.iter_transcripts("missing"))
        await client.aclose()

    @pytest.mark.asyncio
    async def test_authentication_failure_not_retried(self, make_lms):
        fake = RouteTransport({PEOPLE_PATH: lambda request: httpx.Response(401)})
        client = make_lms(fake)

        with pytest.raises(AuthenticationError):
            await client.fetch_all(PEOPLE_PATH)
        await client.aclose()

        assert len(fake.requests) == 1

    @pytest.mark.asyncio
    async def test_invalid_json(self, make_lms):
        fake = RouteTransport({PEOPLE_PATH: lambda request: httpx.Response(200, text="<html>")})
        client = make_lms(fake)

        with pytest.raises(APIFetchError):
            await client.fetch_all(PEOPLE_PATH)
        await client.aclose()


class TestPrmPagination:
    """Test skip/take walking and response unwrapping"""

    ACCOUNT_PATH = f"{OBJECTS_PATH}/Account"

    @pytest.mark.asyncio
    async def test_skip_take(self, make_prm):
        fake = RouteTransport({
            self.ACCOUNT_PATH: paged([
                prm_page([{"Id": 1}, {"Id": 2}], count=3),
                prm_page([{"Id": 3}], count=3),
            ]),
        })
        client = make_prm(fake)

        records = await client.fetch_all("Account", ["Id", "Name"], filter_expr="(Name eq 'x')")
        await client.aclose()

        assert [r["Id"] for r in records] == [1, 2, 3]
        assert [r.url.params["skip"] for r in fake.requests] == ["0", "2"]
        first = fake.requests[0]
        assert first.url.params["fields"] == "Id,Name"
        assert first.url.params["filter"] == "(Name eq 'x')"
        assert first.headers["Authorization"] == "prm-key test-key"

    @pytest.mark.asyncio
    async def test_unsuccessful_envelope_raises(self, make_prm):
        fake = RouteTransport({
            self.ACCOUNT_PATH: lambda request: httpx.Response(
                200, json={"success": False, "message": "bad filter"}
            ),
        })
        client = make_prm(fake)

        with pytest.raises(APIFetchError) as exc_info:
            await client.fetch_all("Account", ["Id"])
        await client.aclose()

        assert "bad filter" in exc_info.value.message
        assert exc_info.value.pages_retrieved == 0

    @pytest.mark.asyncio
    async def test_patch_per_record_results(self, make_prm):
        fake = RouteTransport({
            self.ACCOUNT_PATH: lambda request: httpx.Response(
                200, json={"success": True, "results": [{"id": 1, "success": True}, {"id": 2, "success": False}]}
            ),
        })
        client = make_prm(fake)

        results = await client.patch("Account", [{"Id": 1}, {"Id": 2}])
        await client.aclose()

        assert [r["success"] for r in results] == [True, False]
        assert fake.requests[0].method == "PATCH"

    @pytest.mark.asyncio
    async def test_patch_without_results_counts_all_successful(self, make_prm):
        fake = RouteTransport({
            self.ACCOUNT_PATH: lambda request: httpx.Response(200, json={"success": True}),
        })
        client = make_prm(fake)

        results = await client.patch("Account", [{"Id": 1}, {"Id": 2}])
        await client.aclose()

        assert results == [{"success": True, "id": 1}, {"success": True, "id": 2}]


class TestFilterDsl:

    def test_field_equals_any(self):
        assert field_equals_any("CrmId", ["a", "b"]) == "CrmId eq 'a' or CrmId eq 'b'"

    def test_quotes_escaped(self):
        assert field_equals_any("Name", ["O'Neil"]) == "Name eq 'O''Neil'"

    def test_updated_since(self):
        assert updated_since_filter(datetime(2024, 1, 1)) == "(Updated > '2024-01-01T00:00:00')"
