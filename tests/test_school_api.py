import httpx
import pytest

from app.clients.school_api import SchoolApiClient
from app.core.config import settings
from app.core.exceptions import SchoolApiError

from conftest import TOKEN, FakeSchoolApi


@pytest.mark.asyncio
async def test_requests_carry_bearer_token_and_quote_names() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"strands": [{"_id": "s1", "strandName": "Home Economics"}]})

    async with SchoolApiClient(token=TOKEN, base_url="http://school.test", transport=httpx.MockTransport(handler)) as client:
        strands = await client.list_strands_by_track("TVL / Home")

    assert seen[0].headers["Authorization"] == f"Bearer {TOKEN}"
    assert seen[0].url.raw_path == b"/api/strands/track/TVL%20%2F%20Home"
    assert strands[0].id == "s1" and strands[0].strand_name == "Home Economics"


@pytest.mark.asyncio
async def test_malformed_list_items_are_ignored() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"_id": "t1", "trackName": "Academic"}, {"trackName": "no id"}])

    async with SchoolApiClient(base_url="http://school.test", transport=httpx.MockTransport(handler)) as client:
        tracks = await client.list_tracks_by_term_id("term-1")
    assert [t.id for t in tracks] == ["t1"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "upstream, message, status_code, duplicate",
    [
        (409, "Conflict", 409, True),
        (400, "Strand already exists in this track", 400, True),
        (400, "Track name is required", 400, False),
        (503, "Service unavailable", 502, False),
    ],
)
async def test_non_ok_responses_raise_school_api_error(upstream: int, message: str, status_code: int, duplicate: bool) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(upstream, json={"message": message})

    async with SchoolApiClient(base_url="http://school.test", transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(SchoolApiError) as exc:
            await client.create_track({"trackName": "Academic"})

    assert exc.value.message == message
    assert exc.value.status_code == status_code
    assert exc.value.upstream_status == upstream
    assert exc.value.is_duplicate is duplicate


@pytest.mark.asyncio
async def test_audit_failures_are_swallowed(school_api: FakeSchoolApi, api_client: SchoolApiClient) -> None:
    school_api.fail("POST", "/audit-log", 500)
    await api_client.record_audit("Create Track", "Imported track Academic", "admin")
    assert school_api.audits == []


@pytest.mark.asyncio
async def test_delete_sends_cascade_flag() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    async with SchoolApiClient(base_url="http://school.test", transport=httpx.MockTransport(handler)) as client:
        assert await client.delete_track("t1", confirm_cascade=True) is None
    assert seen[0].method == "DELETE"
    assert seen[0].url.params["confirmCascade"] == "true"


@pytest.mark.asyncio
async def test_non_json_success_reply_raises_school_api_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>ok</html>", headers={"Content-Type": "text/html"})

    async with SchoolApiClient(base_url="http://school.test", transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(SchoolApiError) as exc:
            await client.create_track({"trackName": "Academic"})

    assert exc.value.message == "School API returned a non-JSON response"
    assert exc.value.status_code == 502
    assert exc.value.upstream_status == 200
    assert exc.value.is_duplicate is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "call, method, path",
    [
        (lambda c: c.list_tracks_by_term_name("Term 1"), "GET", "/api/tracks/term/Term%201"),
        (lambda c: c.bulk_create_tracks([{"trackName": "TVL"}]), "POST", "/api/tracks/bulk"),
        (lambda c: c.update_track("t1", {"trackName": "TVL"}), "PATCH", "/api/tracks/t1"),
        (lambda c: c.track_dependencies("t1"), "GET", "/api/tracks/t1/dependencies"),
        (lambda c: c.list_sections_by_strand("TVL", "ICT"), "GET", "/api/sections/track/TVL/strand/ICT"),
        (lambda c: c.create_strand({}), "POST", "/api/strands"),
        (lambda c: c.update_strand("s1", {}), "PATCH", "/api/strands/s1"),
        (lambda c: c.delete_strand("s1"), "DELETE", "/api/strands/s1"),
        (lambda c: c.strand_dependencies("s1"), "GET", "/api/strands/s1/dependencies"),
        (lambda c: c.create_section({}), "POST", "/api/sections"),
        (lambda c: c.update_section("sec1", {}), "PATCH", "/api/sections/sec1"),
        (lambda c: c.delete_section("sec1"), "DELETE", "/api/sections/sec1"),
        (lambda c: c.section_dependencies("sec1"), "GET", "/api/sections/sec1/dependencies"),
        (lambda c: c.list_subjects_by_term_id("term-1"), "GET", "/api/subjects/termId/term-1"),
        (lambda c: c.create_subject({}), "POST", "/api/subjects"),
        (lambda c: c.update_subject("sub1", {}), "PATCH", "/api/subjects/sub1"),
        (lambda c: c.delete_subject("sub1"), "DELETE", "/api/subjects/sub1"),
        (lambda c: c.subject_dependencies("sub1"), "GET", "/api/subjects/sub1/dependencies"),
        (lambda c: c.list_faculty_assignments("term-1"), "GET", "/api/faculty-assignments"),
        (lambda c: c.create_faculty_assignment({}), "POST", "/api/faculty-assignments"),
        (lambda c: c.update_faculty_assignment("fa1", {}), "PATCH", "/api/faculty-assignments/fa1"),
        (lambda c: c.delete_faculty_assignment("fa1"), "DELETE", "/api/faculty-assignments/fa1"),
        (lambda c: c.unarchive_faculty_assignment("fa1"), "PATCH", "/api/faculty-assignments/fa1/unarchive"),
        (lambda c: c.list_student_assignments("term-1", "Quarter 1"), "GET", "/api/student-assignments"),
        (lambda c: c.create_student_assignment({}), "POST", "/api/student-assignments"),
        (lambda c: c.update_student_assignment("sa1", {}), "PATCH", "/api/student-assignments/sa1"),
        (lambda c: c.delete_student_assignment("sa1"), "DELETE", "/api/student-assignments/sa1"),
        (lambda c: c.unarchive_student_assignment("sa1"), "PATCH", "/api/student-assignments/sa1/unarchive"),
        (lambda c: c.list_active_users(), "GET", "/users/active"),
        (lambda c: c.search_users("reyes"), "GET", "/users/search"),
        (lambda c: c.list_registrants(50), "GET", "/api/registrants"),
    ],
)
async def test_endpoint_methods_and_paths(call, method: str, path: str) -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={})

    async with SchoolApiClient(base_url="http://school.test", transport=httpx.MockTransport(handler)) as client:
        await call(client)

    assert seen[0].method == method
    assert seen[0].url.raw_path.split(b"?")[0] == path.encode()


@pytest.mark.asyncio
async def test_list_query_parameters() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[])

    async with SchoolApiClient(base_url="http://school.test", transport=httpx.MockTransport(handler)) as client:
        await client.list_student_assignments("term-1", "Quarter 1")
        await client.list_student_assignments("term-1")
        await client.search_users("reyes")
        await client.list_registrants(50)
        await client.delete_faculty_assignment("fa1")

    assert dict(seen[0].url.params) == {"termId": "term-1", "quarterName": "Quarter 1"}
    assert dict(seen[1].url.params) == {"termId": "term-1"}
    assert seen[2].url.params["q"] == "reyes"
    assert seen[3].url.params["limit"] == "50"
    assert "confirmCascade" not in seen[4].url.params


@pytest.mark.asyncio
async def test_audit_request_has_its_own_timeout() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"ok": True})

    async with SchoolApiClient(base_url="http://school.test", transport=httpx.MockTransport(handler)) as client:
        await client.record_audit("Create Track", "Imported track TVL", "admin")
        await client.create_track({"trackName": "TVL"})

    assert seen[0].extensions["timeout"]["read"] == settings.audit_timeout_seconds
    assert seen[1].extensions["timeout"]["read"] is None


@pytest.mark.asyncio
async def test_audit_timeout_is_swallowed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    async with SchoolApiClient(base_url="http://school.test", transport=httpx.MockTransport(handler)) as client:
        await client.record_audit("Create Track", "Imported track TVL", "admin")
