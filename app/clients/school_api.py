"""
Typed gateway to the school system REST API.

All persistence and authorization belong to that API; this client only
forwards requests with the caller's bearer token and turns non-OK responses
into SchoolApiError.
"""

import logging
from typing import Any, AsyncGenerator, Dict, List, Optional, Type, TypeVar
from urllib.parse import quote

import httpx
from fastapi import Depends, status
from pydantic import BaseModel, ValidationError

from app.auth.dependencies import get_current_user
from app.auth.schemas import CurrentUser
from app.core.config import settings
from app.core.exceptions import SchoolApiError

from app.api.v1.imports.schemas import (
    FacultyAssignment,
    Registrant,
    SchoolUser,
    Section,
    Strand,
    StudentAssignment,
    Subject,
    Track,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def _seg(value: str) -> str:
    """Quote a name used as a path segment (names may contain spaces or slashes)."""
    return quote(str(value), safe="")


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            if body.get(key):
                return str(body[key])
    return f"School API returned {response.status_code} for {response.request.method} {response.request.url.path}"


def _items(payload: Any, *keys: str) -> List[Any]:
    """List endpoints answer either a bare list or an envelope object."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in keys + ("data", "items", "results"):
            if isinstance(payload.get(key), list):
                return payload[key]
    return []


def _parse_list(model: Type[M], payload: Any, *keys: str) -> List[M]:
    parsed: List[M] = []
    for item in _items(payload, *keys):
        try:
            parsed.append(model.model_validate(item))
        except ValidationError as e:
            logger.warning("Ignoring malformed %s from school API: %s", model.__name__, e.errors()[:1])
    return parsed


class SchoolApiClient:
    """Async client for the school API. One instance per request; close it when done."""

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.token = token
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.school_api_base_url,
            transport=transport,
            timeout=settings.school_api_timeout_seconds,
        )

    async def __aenter__(self) -> "SchoolApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        timeout: Optional[float] = None,
    ) -> Any:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        extra: Dict[str, Any] = {}
        if timeout is not None:
            extra["timeout"] = timeout
        response = await self._client.request(method, path, params=params, json=json, headers=headers, **extra)
        if response.is_error:
            upstream = response.status_code
            code = upstream if 400 <= upstream < 500 else status.HTTP_502_BAD_GATEWAY
            raise SchoolApiError(_error_message(response), status_code=code, upstream_status=upstream)
        if response.status_code == status.HTTP_204_NO_CONTENT or not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning("Non-JSON %s reply from %s %s", response.status_code, method, path)
            raise SchoolApiError(
                "School API returned a non-JSON response",
                status_code=status.HTTP_502_BAD_GATEWAY,
                upstream_status=response.status_code,
            )

    # ----- Tracks -----
    async def list_tracks_by_term_id(self, term_id: str) -> List[Track]:
        return _parse_list(Track, await self._request("GET", f"/api/tracks/termId/{_seg(term_id)}"), "tracks")

    async def list_tracks_by_term_name(self, term_name: str) -> List[Track]:
        return _parse_list(Track, await self._request("GET", f"/api/tracks/term/{_seg(term_name)}"), "tracks")

    async def create_track(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/api/tracks", json=payload)

    async def bulk_create_tracks(self, tracks: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return _items(await self._request("POST", "/api/tracks/bulk", json={"tracks": tracks}), "tracks")

    async def update_track(self, track_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._update("tracks", track_id, payload)

    async def delete_track(self, track_id: str, confirm_cascade: bool = False) -> Any:
        return await self._delete("tracks", track_id, confirm_cascade)

    async def track_dependencies(self, track_id: str) -> Dict[str, Any]:
        return await self._dependencies("tracks", track_id)

    # ----- Strands -----
    async def list_strands_by_track(self, track_name: str) -> List[Strand]:
        return _parse_list(Strand, await self._request("GET", f"/api/strands/track/{_seg(track_name)}"), "strands")

    async def create_strand(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/api/strands", json=payload)

    async def update_strand(self, strand_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._update("strands", strand_id, payload)

    async def delete_strand(self, strand_id: str, confirm_cascade: bool = False) -> Any:
        return await self._delete("strands", strand_id, confirm_cascade)

    async def strand_dependencies(self, strand_id: str) -> Dict[str, Any]:
        return await self._dependencies("strands", strand_id)

    # ----- Sections -----
    async def list_sections_by_strand(self, track_name: str, strand_name: str) -> List[Section]:
        path = f"/api/sections/track/{_seg(track_name)}/strand/{_seg(strand_name)}"
        return _parse_list(Section, await self._request("GET", path), "sections")

    async def create_section(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/api/sections", json=payload)

    async def update_section(self, section_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._update("sections", section_id, payload)

    async def delete_section(self, section_id: str, confirm_cascade: bool = False) -> Any:
        return await self._delete("sections", section_id, confirm_cascade)

    async def section_dependencies(self, section_id: str) -> Dict[str, Any]:
        return await self._dependencies("sections", section_id)

    # ----- Subjects -----
    async def list_subjects_by_term_id(self, term_id: str) -> List[Subject]:
        return _parse_list(Subject, await self._request("GET", f"/api/subjects/termId/{_seg(term_id)}"), "subjects")

    async def create_subject(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/api/subjects", json=payload)

    async def update_subject(self, subject_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._update("subjects", subject_id, payload)

    async def delete_subject(self, subject_id: str, confirm_cascade: bool = False) -> Any:
        return await self._delete("subjects", subject_id, confirm_cascade)

    async def subject_dependencies(self, subject_id: str) -> Dict[str, Any]:
        return await self._dependencies("subjects", subject_id)

    # ----- Faculty assignments -----
    async def list_faculty_assignments(self, term_id: str) -> List[FacultyAssignment]:
        payload = await self._request("GET", "/api/faculty-assignments", params={"termId": term_id})
        return _parse_list(FacultyAssignment, payload, "assignments")

    async def create_faculty_assignment(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/api/faculty-assignments", json=payload)

    async def update_faculty_assignment(self, assignment_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._update("faculty-assignments", assignment_id, payload)

    async def delete_faculty_assignment(self, assignment_id: str) -> Any:
        return await self._delete("faculty-assignments", assignment_id)

    async def unarchive_faculty_assignment(self, assignment_id: str) -> Dict[str, Any]:
        return await self._request("PATCH", f"/api/faculty-assignments/{_seg(assignment_id)}/unarchive")

    # ----- Student assignments -----
    async def list_student_assignments(self, term_id: str, quarter_name: Optional[str] = None) -> List[StudentAssignment]:
        payload = await self._request(
            "GET", "/api/student-assignments", params={"termId": term_id, "quarterName": quarter_name}
        )
        return _parse_list(StudentAssignment, payload, "assignments")

    async def create_student_assignment(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/api/student-assignments", json=payload)

    async def update_student_assignment(self, assignment_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._update("student-assignments", assignment_id, payload)

    async def delete_student_assignment(self, assignment_id: str) -> Any:
        return await self._delete("student-assignments", assignment_id)

    async def unarchive_student_assignment(self, assignment_id: str) -> Dict[str, Any]:
        return await self._request("PATCH", f"/api/student-assignments/{_seg(assignment_id)}/unarchive")

    # ----- Users and registrants -----
    async def list_active_users(self) -> List[SchoolUser]:
        return _parse_list(SchoolUser, await self._request("GET", "/users/active"), "users")

    async def search_users(self, q: str) -> List[SchoolUser]:
        return _parse_list(SchoolUser, await self._request("GET", "/users/search", params={"q": q}), "users")

    async def list_registrants(self, limit: Optional[int] = None) -> List[Registrant]:
        payload = await self._request(
            "GET", "/api/registrants", params={"limit": limit or settings.registrant_fetch_limit}
        )
        return _parse_list(Registrant, payload, "registrants")

    # ----- Audit -----
    async def record_audit(self, action: str, details: str, user_role: str) -> None:
        """Fire-and-forget audit entry with its own short timeout; failures never reach the caller."""
        try:
            await self._request(
                "POST",
                "/audit-log",
                json={"action": action, "details": details, "userRole": user_role},
                timeout=settings.audit_timeout_seconds,
            )
        except (httpx.HTTPError, SchoolApiError) as e:
            logger.debug("Audit log write failed (%s): %s", action, e)

    # ----- shared CRUD -----
    async def _update(self, resource: str, item_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("PATCH", f"/api/{resource}/{_seg(item_id)}", json=payload)

    async def _delete(self, resource: str, item_id: str, confirm_cascade: Optional[bool] = None) -> Any:
        params = None
        if confirm_cascade is not None:
            params = {"confirmCascade": "true" if confirm_cascade else "false"}
        return await self._request("DELETE", f"/api/{resource}/{_seg(item_id)}", params=params)

    async def _dependencies(self, resource: str, item_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/api/{resource}/{_seg(item_id)}/dependencies")


async def get_school_api(
    current_user: CurrentUser = Depends(get_current_user),
) -> AsyncGenerator[SchoolApiClient, None]:
    """FastAPI dependency: a client bound to the caller's token, closed after the request."""
    async with SchoolApiClient(token=current_user.token) as client:
        yield client
