import io
import json
import re
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple
from urllib.parse import unquote

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from openpyxl import Workbook

from app.api.v1.imports.schemas import TermContext
from app.clients.school_api import SchoolApiClient, get_school_api
from app.main import app


TERM = TermContext(term_id="term-1", term_name="Term 1", school_year="2025-2026", quarter_name="Quarter 1")
TOKEN = jwt.encode({"userId": "admin-1", "role": "admin"}, "not-verified-here", algorithm="HS256")

RESOURCES = {
    "tracks": "tracks",
    "strands": "strands",
    "sections": "sections",
    "subjects": "subjects",
    "faculty-assignments": "faculty_assignments",
    "student-assignments": "student_assignments",
}


def make_workbook(sheets: Dict[str, List[List[Any]]]) -> bytes:
    """In-memory .xlsx with the given sheets, in order."""
    wb = Workbook()
    wb.remove(wb.active)
    for title, rows in sheets.items():
        ws = wb.create_sheet(title)
        for row in rows:
            ws.append(row)
    bio = io.BytesIO()
    wb.save(bio)
    return bio.getvalue()


class FakeSchoolApi:
    """In-memory school API served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.tracks: List[Dict[str, Any]] = []
        self.strands: List[Dict[str, Any]] = []
        self.sections: List[Dict[str, Any]] = []
        self.subjects: List[Dict[str, Any]] = []
        self.users: List[Dict[str, Any]] = []
        self.faculty_assignments: List[Dict[str, Any]] = []
        self.student_assignments: List[Dict[str, Any]] = []
        self.registrants: List[Dict[str, Any]] = []

        self.created: List[Tuple[str, Dict[str, Any]]] = []
        self.audits: List[Dict[str, Any]] = []
        self.requests: List[Tuple[str, str]] = []
        # (method, path prefix) -> (status, message) answered instead of the normal response
        self.failures: Dict[Tuple[str, str], Tuple[int, str]] = {}
        # (method, path prefix) whose requests fail at the transport level
        self.unreachable: List[Tuple[str, str]] = []
        # (method, path, body fields, status, text) answered with a non-JSON body
        self.raw_replies: List[Tuple[str, str, Dict[str, Any], int, str]] = []
        self._seq = 0

    # ----- seeding -----
    def _id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}{self._seq}"

    def _scoped(self, prefix: str, **fields: Any) -> Dict[str, Any]:
        item = {"_id": self._id(prefix), "schoolYear": TERM.school_year, "termName": TERM.term_name, "status": "active"}
        item.update(fields)
        return item

    def add_track(self, name: str, **extra: Any) -> Dict[str, Any]:
        item = self._scoped("t", trackName=name, **extra)
        self.tracks.append(item)
        return item

    def add_strand(self, track: str, name: str, **extra: Any) -> Dict[str, Any]:
        item = self._scoped("s", trackName=track, strandName=name, **extra)
        self.strands.append(item)
        return item

    def add_section(self, track: str, strand: str, name: str, grade: str = "Grade 11", **extra: Any) -> Dict[str, Any]:
        item = self._scoped("sec", trackName=track, strandName=strand, sectionName=name, gradeLevel=grade, **extra)
        self.sections.append(item)
        return item

    def add_subject(self, name: str, track: str = "", strand: str = "", grade: str = "Grade 11") -> Dict[str, Any]:
        item = self._scoped("sub", subjectName=name, trackName=track, strandName=strand, gradeLevel=grade)
        self.subjects.append(item)
        return item

    def add_user(self, role: str, school_id: str, first: str, last: str, archived: bool = False) -> Dict[str, Any]:
        item = {
            "_id": self._id("u"),
            "firstname": first,
            "lastname": last,
            "role": role,
            "schoolID": school_id,
            "isArchived": archived,
        }
        self.users.append(item)
        return item

    def add_faculty_assignment(self, faculty_id: str, track: str, strand: str, section: str, subject: str) -> Dict[str, Any]:
        item = {
            "_id": self._id("fa"),
            "facultyId": faculty_id,
            "trackName": track,
            "strandName": strand,
            "sectionName": section,
            "subjectName": subject,
            "termId": TERM.term_id,
            "status": "active",
        }
        self.faculty_assignments.append(item)
        return item

    def add_student_assignment(self, student_id: str, school_id: str, track: str, strand: str, section: str) -> Dict[str, Any]:
        item = {
            "_id": self._id("sa"),
            "studentId": student_id,
            "studentSchoolID": school_id,
            "trackName": track,
            "strandName": strand,
            "sectionName": section,
            "termId": TERM.term_id,
            "status": "active",
        }
        self.student_assignments.append(item)
        return item

    def add_registrant(self, school_id: str, status: str = "approved") -> Dict[str, Any]:
        item = {
            "_id": self._id("r"),
            "schoolID": school_id,
            "status": status,
            "termName": TERM.term_name,
            "schoolYear": TERM.school_year,
        }
        self.registrants.append(item)
        return item

    def fail(self, method: str, path_prefix: str, status_code: int = 500, message: str = "Internal error") -> None:
        self.failures[(method, path_prefix)] = (status_code, message)

    def reply_raw(self, method: str, path: str, text: str, when: Optional[Dict[str, Any]] = None, status_code: int = 200) -> None:
        self.raw_replies.append((method, path, when or {}, status_code, text))

    # ----- transport -----
    def handler(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, unquote(request.url.path)
        self.requests.append((method, path))
        if any(m == method and path.startswith(p) for m, p in self.unreachable):
            raise httpx.ConnectError("Connection refused", request=request)
        for (m, prefix), (code, message) in self.failures.items():
            if m == method and path.startswith(prefix):
                return httpx.Response(code, json={"message": message})
        body = json.loads(request.content or b"{}")
        for m, p, when, code, text in self.raw_replies:
            if m == method and p == path and all(body.get(k) == v for k, v in when.items()):
                return httpx.Response(code, text=text, headers={"Content-Type": "text/html"})

        if method == "GET":
            return httpx.Response(200, json=self._list(path))
        if method == "POST" and path == "/audit-log":
            self.audits.append(body)
            return httpx.Response(201, json={"ok": True})
        if method == "POST" and path.startswith("/api/"):
            return self._create(path[len("/api/"):], body)
        return httpx.Response(404, json={"message": f"No route for {method} {path}"})

    def _list(self, path: str) -> Any:
        m = re.match(r"^/api/strands/track/(.+)$", path)
        if m:
            return [s for s in self.strands if s["trackName"] == m.group(1)]
        m = re.match(r"^/api/sections/track/(.+)/strand/(.+)$", path)
        if m:
            return [s for s in self.sections if s["trackName"] == m.group(1) and s["strandName"] == m.group(2)]
        if path.startswith("/api/tracks/termId/"):
            return self.tracks
        if path.startswith("/api/subjects/termId/"):
            return self.subjects
        if path == "/users/active":
            return self.users
        if path == "/api/faculty-assignments":
            return {"assignments": self.faculty_assignments}
        if path == "/api/student-assignments":
            return self.student_assignments
        if path == "/api/registrants":
            return {"registrants": self.registrants}
        return []

    def _create(self, resource: str, body: Dict[str, Any]) -> httpx.Response:
        if resource not in RESOURCES:
            return httpx.Response(404, json={"message": "Not found"})
        items = getattr(self, RESOURCES[resource])
        if resource == "tracks" and any(t["trackName"] == body.get("trackName") for t in items):
            return httpx.Response(409, json={"message": "Track already exists"})
        item = dict(body, _id=self._id("new"), status="active")
        items.append(item)
        self.created.append((resource, body))
        return httpx.Response(201, json=item)

    def created_of(self, resource: str) -> List[Dict[str, Any]]:
        return [body for r, body in self.created if r == resource]


@pytest.fixture()
def school_api() -> FakeSchoolApi:
    return FakeSchoolApi()


@pytest.fixture()
async def api_client(school_api: FakeSchoolApi) -> AsyncGenerator[SchoolApiClient, None]:
    """SchoolApiClient whose requests are answered by the fake school API."""
    async with SchoolApiClient(
        token=TOKEN,
        base_url="http://school.test",
        transport=httpx.MockTransport(school_api.handler),
    ) as client:
        yield client


@pytest.fixture()
async def client(api_client: SchoolApiClient) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the FastAPI app, authenticated as an admin."""

    async def override_get_school_api() -> AsyncGenerator[SchoolApiClient, None]:
        yield api_client

    app.dependency_overrides[get_school_api] = override_get_school_api
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"Authorization": f"Bearer {TOKEN}"},
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


def term_params(term: Optional[TermContext] = None) -> Dict[str, str]:
    term = term or TERM
    params = {"termId": term.term_id, "termName": term.term_name, "schoolYear": term.school_year}
    if term.quarter_name:
        params["quarterName"] = term.quarter_name
    return params
