"""
Import orchestration: turn a confirmed preview into create calls on the school API.

Planning is pure. Execution is the only stage with side effects: phases run in
dependency order, rows one at a time, and a failed row never stops the rest.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from app.auth.schemas import CurrentUser
from app.clients.school_api import SchoolApiClient
from app.core.enums import IMPORT_PHASES, EntityType, RowErrorKind
from app.core.exceptions import SchoolApiError

from .schemas import (
    CreatedRow,
    ImportPreview,
    ImportRecord,
    ImportResult,
    RowStatus,
    SkippedRow,
    TermContext,
)
from .snapshot import ReferenceSnapshot, key

logger = logging.getLogger(__name__)

ALREADY_EXISTS = "already exists"

PlannedRow = Tuple[ImportRecord, RowStatus]

NOUNS = {
    EntityType.TRACK: "track",
    EntityType.STRAND: "strand",
    EntityType.SECTION: "section",
    EntityType.SUBJECT: "subject",
    EntityType.FACULTY_ASSIGNMENT: "faculty assignment",
    EntityType.STUDENT_ASSIGNMENT: "student assignment",
}

_CREATORS: Dict[EntityType, Callable[[SchoolApiClient, Dict[str, Any]], Awaitable[Any]]] = {
    EntityType.TRACK: SchoolApiClient.create_track,
    EntityType.STRAND: SchoolApiClient.create_strand,
    EntityType.SECTION: SchoolApiClient.create_section,
    EntityType.SUBJECT: SchoolApiClient.create_subject,
    EntityType.FACULTY_ASSIGNMENT: SchoolApiClient.create_faculty_assignment,
    EntityType.STUDENT_ASSIGNMENT: SchoolApiClient.create_student_assignment,
}


@dataclass
class ImportPlan:
    phases: Dict[EntityType, List[PlannedRow]] = field(default_factory=dict)
    skipped: List[SkippedRow] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return sum(len(rows) for rows in self.phases.values())


def row_label(entity_type: EntityType, record: Any) -> str:
    if entity_type == EntityType.TRACK:
        return record.track_name
    if entity_type == EntityType.STRAND:
        return f"{record.track_name} / {record.strand_name}"
    if entity_type == EntityType.SECTION:
        return f"{record.track_name} / {record.strand_name} / {record.section_name}"
    if entity_type == EntityType.SUBJECT:
        return record.subject_name
    if entity_type == EntityType.FACULTY_ASSIGNMENT:
        return f"{record.faculty_school_id or record.faculty_name}: {record.subject_name} in {record.section_name}"
    return f"{record.student_school_id or record.full_name} in {record.section_name}"


def _skipped(entity_type: EntityType, record: Any, reason: str, kind: Optional[RowErrorKind]) -> SkippedRow:
    return SkippedRow(
        entity_type=entity_type,
        row_number=record.row_number,
        label=row_label(entity_type, record),
        reason=reason,
        kind=kind,
    )


def plan_import(
    preview: ImportPreview,
    rechecked: Optional[Dict[EntityType, List[RowStatus]]] = None,
) -> ImportPlan:
    """Keep valid rows grouped by phase; term-flow rows that already exist are counted as skipped.

    With ``rechecked`` statuses, only rows valid in the preview are considered and
    the fresh status decides: a row that no longer passes is reported as skipped.
    """
    plan = ImportPlan()
    for sheet in preview.sheets:
        statuses = sheet.statuses
        if rechecked is not None:
            statuses = rechecked.get(sheet.entity_type, [])
        for record, previewed, status in zip(sheet.typed_records(), sheet.statuses, statuses):
            if not previewed.valid:
                continue
            if not status.valid:
                reason = ALREADY_EXISTS if status.kind == RowErrorKind.ALREADY_EXISTS else status.message
                plan.skipped.append(_skipped(sheet.entity_type, record, reason, status.kind))
                continue
            if status.skip:
                plan.skipped.append(_skipped(sheet.entity_type, record, ALREADY_EXISTS, RowErrorKind.ALREADY_EXISTS))
                continue
            plan.phases.setdefault(sheet.entity_type, []).append((record, status))
    return plan


# ----- payloads -----
def _scope(term: TermContext) -> Dict[str, Any]:
    return {
        "termId": term.term_id,
        "schoolYear": term.school_year,
        "termName": term.term_name,
        "quarterName": term.quarter_name,
    }


def build_payload(entity_type: EntityType, record: ImportRecord, term: TermContext, **ids: Optional[str]) -> Dict[str, Any]:
    """camelCase create payload; the term scope always comes from the previewed term, never the sheet."""
    payload = record.model_dump(by_alias=True, exclude={"row_number", "school_year", "term_name", "quarter_name"})
    payload.update(_scope(term))
    if entity_type == EntityType.FACULTY_ASSIGNMENT:
        payload["facultyId"] = ids.get("faculty_id")
    elif entity_type == EntityType.STUDENT_ASSIGNMENT:
        payload["studentId"] = ids.get("student_id")
        payload["studentName"] = record.full_name
    return {k: v for k, v in payload.items() if v not in (None, "")}


def _created_id(response: Any) -> Optional[str]:
    if not isinstance(response, dict):
        return None
    for k in ("_id", "id"):
        if response.get(k):
            return str(response[k])
    # {"track": {...}} / {"data": {...}}
    for value in response.values():
        if isinstance(value, dict) and (value.get("_id") or value.get("id")):
            return str(value.get("_id") or value.get("id"))
    return None


def _missing_parent(entity_type: EntityType, record: Any, snapshot: ReferenceSnapshot) -> Optional[str]:
    """Parents must exist (with a real id) in the snapshot merged with this run's creates."""
    if entity_type == EntityType.TRACK:
        return None
    if snapshot.track_ids.get(key(record.track_name)) is None:
        return f'Track "{record.track_name}" does not exist'
    if snapshot.strand_ids.get(key(record.track_name, record.strand_name)) is None:
        return f'Strand "{record.strand_name}" for Track "{record.track_name}" does not exist'
    if entity_type in (EntityType.STRAND, EntityType.SECTION, EntityType.SUBJECT):
        return None
    if snapshot.section_ids.get(key(record.track_name, record.strand_name, record.section_name)) is None:
        return f'Section "{record.section_name}" does not exist'
    if entity_type == EntityType.FACULTY_ASSIGNMENT and snapshot.subject_ids.get(key(record.subject_name)) is None:
        return f'Subject "{record.subject_name}" does not exist'
    return None


def _person_ids(entity_type: EntityType, record: Any, status: RowStatus, snapshot: ReferenceSnapshot) -> Dict[str, Optional[str]]:
    if entity_type == EntityType.FACULTY_ASSIGNMENT:
        faculty = snapshot.find_faculty(record.faculty_school_id, record.faculty_name)
        return {"faculty_id": faculty.id if faculty else status.faculty_id}
    if entity_type == EntityType.STUDENT_ASSIGNMENT:
        student = snapshot.find_student(record.student_school_id, record.full_name)
        return {"student_id": student.id if student else status.student_id}
    return {}


async def _create_row(
    client: SchoolApiClient,
    entity_type: EntityType,
    record: Any,
    status: RowStatus,
    snapshot: ReferenceSnapshot,
    term: TermContext,
) -> Tuple[Optional[str], Optional[SkippedRow], Dict[str, Optional[str]]]:
    """Returns (created_id, skipped, person_ids); skipped is None when the row was created."""

    def skip(reason: str, kind: Optional[RowErrorKind]) -> SkippedRow:
        return _skipped(entity_type, record, reason, kind)

    reason = _missing_parent(entity_type, record, snapshot)
    if reason:
        return None, skip(reason, RowErrorKind.REFERENCE_NOT_FOUND), {}
    ids = _person_ids(entity_type, record, status, snapshot)
    if entity_type == EntityType.FACULTY_ASSIGNMENT and not ids.get("faculty_id"):
        label = record.faculty_school_id or record.faculty_name
        return None, skip(f'Faculty "{label}" does not exist', RowErrorKind.REFERENCE_NOT_FOUND), ids
    payload = build_payload(entity_type, record, term, **ids)
    try:
        response = await _CREATORS[entity_type](client, payload)
    except SchoolApiError as e:
        if e.is_duplicate:
            return None, skip(ALREADY_EXISTS, RowErrorKind.ALREADY_EXISTS), ids
        return None, skip(e.message, None), ids
    except httpx.HTTPError as e:
        return None, skip(f"Network error: {e}", RowErrorKind.NETWORK_ERROR), ids
    return _created_id(response), None, ids


async def execute_import(
    client: SchoolApiClient,
    plan: ImportPlan,
    snapshot: ReferenceSnapshot,
    term: TermContext,
    user: Optional[CurrentUser] = None,
) -> ImportResult:
    result = ImportResult(skipped=list(plan.skipped))
    user_role = user.role if user else "admin"

    for entity_type in IMPORT_PHASES:
        rows = plan.phases.get(entity_type, [])
        if rows:
            logger.info("Importing %d %s row(s) for %s %s", len(rows), NOUNS[entity_type], term.school_year, term.term_name)
        for record, status in rows:
            label = row_label(entity_type, record)
            created_id, skipped, ids = await _create_row(client, entity_type, record, status, snapshot, term)
            if skipped is not None:
                logger.info("Skipped %s row %d (%s): %s", NOUNS[entity_type], record.row_number, label, skipped.reason)
                result.skipped.append(skipped)
                continue
            # Some endpoints answer without the new id; the label still marks the parent as created.
            snapshot.register_created(entity_type, record, created_id or label, **ids)
            result.created.append(
                CreatedRow(entity_type=entity_type, row_number=record.row_number, id=created_id, label=label)
            )
            await client.record_audit(
                f"Create {NOUNS[entity_type].title()}",
                f"Imported {NOUNS[entity_type]} {label} for {term.school_year} {term.term_name}",
                user_role,
            )

    result.imported_count = len(result.created)
    result.skipped_count = len(result.skipped)
    result.skipped_messages = [f"Row {s.row_number} ({s.label}): {s.reason}" for s in result.skipped]
    logger.info("Import finished: %d created, %d skipped", result.imported_count, result.skipped_count)
    return result
