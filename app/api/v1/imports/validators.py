"""
Per-entity validation of normalized upload records against a reference snapshot.

Validation never raises: every record gets a RowStatus, in input order. Checks
run in a fixed order and stop at the first failure:

1. required fields
2. formats (school IDs, grade level)
3. referenced track -> strand -> section -> subject/faculty/student exist
4. duplicate of an earlier row in the same upload (later rows lose)
5. already in the system (rejected in STANDALONE, skipped in TERM)
6. business rules (faculty subject/section conflict, registrant approval)
"""

import re
from typing import Callable, Dict, List, Optional, Sequence, Set

from app.core.enums import GradeLevel, IMPORT_PHASES, EntityType, ImportFlow, RegistrantStatus, RowErrorKind

from .schemas import (
    FacultyAssignmentRecord,
    ImportRecord,
    Registrant,
    RowStatus,
    SectionRecord,
    StrandRecord,
    StudentAssignmentRecord,
    SubjectRecord,
    TermContext,
    TrackRecord,
)
from .snapshot import Key, ReferenceSnapshot, key

STUDENT_SCHOOL_ID_RE = re.compile(r"^\d{2}-\d{5}$")
FACULTY_SCHOOL_ID_RE = re.compile(r"^F\d{3}$")
GRADE_LEVELS = tuple(g.value for g in GradeLevel)

VALID_MESSAGE = "Valid"
SKIP_SUFFIX = ", will be skipped"

Validator = Callable[[Sequence[ImportRecord], ReferenceSnapshot, ImportFlow], List[RowStatus]]


def is_valid_student_school_id(value: str) -> bool:
    return bool(STUDENT_SCHOOL_ID_RE.match(value or ""))


def is_valid_faculty_school_id(value: str) -> bool:
    return bool(FACULTY_SCHOOL_ID_RE.match(value or ""))


def is_valid_grade_level(value: str) -> bool:
    return value in GRADE_LEVELS


# ----- status builders -----
def _ok(**ids: Optional[str]) -> RowStatus:
    return RowStatus(valid=True, message=VALID_MESSAGE, **ids)


def _fail(kind: RowErrorKind, message: str, **ids: Optional[str]) -> RowStatus:
    return RowStatus(valid=False, message=message, kind=kind, **ids)


def _exists(flow: ImportFlow, message: str, **ids: Optional[str]) -> RowStatus:
    if flow == ImportFlow.TERM:
        return RowStatus(valid=True, skip=True, kind=RowErrorKind.ALREADY_EXISTS, message=message + SKIP_SUFFIX, **ids)
    return _fail(RowErrorKind.ALREADY_EXISTS, message, **ids)


def _join(items: List[str]) -> str:
    if len(items) <= 2:
        return " and ".join(items)
    return ", ".join(items[:-1]) + ", and " + items[-1]


def _missing(record: ImportRecord, labels: Dict[str, str], extra: Optional[List[str]] = None) -> Optional[RowStatus]:
    missing = list(extra or [])
    missing += [label for name, label in labels.items() if not getattr(record, name)]
    if missing:
        return _fail(RowErrorKind.MISSING_FIELD, f"Missing {_join(missing)}")
    return None


def _grade(value: str) -> Optional[RowStatus]:
    if is_valid_grade_level(value):
        return None
    return _fail(RowErrorKind.FORMAT_ERROR, f'Invalid Grade Level "{value}" (must be {" or ".join(GRADE_LEVELS)})')


def _parents(snapshot: ReferenceSnapshot, record, depth: int) -> Optional[RowStatus]:
    """Check track (depth 1), strand (2) and section (3) in dependency order."""
    track, strand = record.track_name, getattr(record, "strand_name", "")
    if not snapshot.has_track(track):
        return _fail(RowErrorKind.REFERENCE_NOT_FOUND, f'Track "{track}" does not exist or is not active')
    if depth >= 2 and not snapshot.has_strand(track, strand):
        return _fail(
            RowErrorKind.REFERENCE_NOT_FOUND,
            f'Strand "{strand}" for Track "{track}" does not exist or is not active',
        )
    if depth >= 3 and not snapshot.has_section(track, strand, record.section_name):
        return _fail(
            RowErrorKind.REFERENCE_NOT_FOUND,
            f'Section "{record.section_name}" for Track "{track}" and Strand "{strand}" does not exist or is not active',
        )
    return None


def _parent_ids(snapshot: ReferenceSnapshot, record, depth: int) -> Dict[str, Optional[str]]:
    ids = {"track_id": snapshot.track_ids.get(key(record.track_name))}
    if depth >= 2:
        ids["strand_id"] = snapshot.strand_ids.get(key(record.track_name, record.strand_name))
    if depth >= 3:
        ids["section_id"] = snapshot.section_ids.get(key(record.track_name, record.strand_name, record.section_name))
    return ids


# ----- tracks -----
def _track(r: TrackRecord, snapshot: ReferenceSnapshot, flow: ImportFlow, seen: Set[Key]) -> RowStatus:
    err = _missing(r, {"track_name": "Track Name"})
    if err:
        return err
    k = key(r.track_name)
    if k in seen:
        return _fail(RowErrorKind.DUPLICATE_IN_BATCH, "Duplicate track name in upload")
    seen.add(k)
    if snapshot.has_track(r.track_name):
        return _exists(flow, "Track already exists in system", track_id=snapshot.track_ids[k])
    return _ok()


def validate_tracks(records: Sequence[TrackRecord], snapshot: ReferenceSnapshot, flow: ImportFlow = ImportFlow.STANDALONE) -> List[RowStatus]:
    seen: Set[Key] = set()
    return [_track(r, snapshot, flow, seen) for r in records]


# ----- strands -----
def _strand(r: StrandRecord, snapshot: ReferenceSnapshot, flow: ImportFlow, seen: Set[Key]) -> RowStatus:
    err = _missing(r, {"track_name": "Track Name", "strand_name": "Strand Name"}) or _parents(snapshot, r, 1)
    if err:
        return err
    ids = _parent_ids(snapshot, r, 1)
    k = key(r.track_name, r.strand_name)
    if k in seen:
        return _fail(RowErrorKind.DUPLICATE_IN_BATCH, "Duplicate strand name in uploaded file for this track", **ids)
    seen.add(k)
    if snapshot.has_strand(r.track_name, r.strand_name):
        return _exists(flow, "Strand already exists in this track", strand_id=snapshot.strand_ids[k], **ids)
    return _ok(**ids)


def validate_strands(records: Sequence[StrandRecord], snapshot: ReferenceSnapshot, flow: ImportFlow = ImportFlow.STANDALONE) -> List[RowStatus]:
    seen: Set[Key] = set()
    return [_strand(r, snapshot, flow, seen) for r in records]


# ----- sections -----
def _section(r: SectionRecord, snapshot: ReferenceSnapshot, flow: ImportFlow, seen: Set[Key]) -> RowStatus:
    err = (
        _missing(
            r,
            {"track_name": "Track Name", "strand_name": "Strand Name", "section_name": "Section Name", "grade_level": "Grade Level"},
        )
        or _grade(r.grade_level)
        or _parents(snapshot, r, 2)
    )
    if err:
        return err
    ids = _parent_ids(snapshot, r, 2)
    k = key(r.track_name, r.strand_name, r.section_name, r.grade_level)
    if k in seen:
        return _fail(
            RowErrorKind.DUPLICATE_IN_BATCH,
            "Duplicate section in uploaded file for this track-strand-grade combination",
            **ids,
        )
    seen.add(k)
    if k in snapshot.section_keys:
        section_id = snapshot.section_ids.get(key(r.track_name, r.strand_name, r.section_name))
        return _exists(flow, "Section already exists in this track-strand combination", section_id=section_id, **ids)
    return _ok(**ids)


def validate_sections(records: Sequence[SectionRecord], snapshot: ReferenceSnapshot, flow: ImportFlow = ImportFlow.STANDALONE) -> List[RowStatus]:
    seen: Set[Key] = set()
    return [_section(r, snapshot, flow, seen) for r in records]


# ----- subjects -----
def _subject(r: SubjectRecord, snapshot: ReferenceSnapshot, flow: ImportFlow, seen: Set[Key]) -> RowStatus:
    err = (
        _missing(
            r,
            {"track_name": "Track Name", "strand_name": "Strand Name", "grade_level": "Grade Level", "subject_name": "Subject Name"},
        )
        or _grade(r.grade_level)
        or _parents(snapshot, r, 2)
    )
    if err:
        return err
    ids = _parent_ids(snapshot, r, 2)
    # Subject names are unique system-wide, not per strand.
    k = key(r.subject_name)
    if k in seen:
        return _fail(RowErrorKind.DUPLICATE_IN_BATCH, "Duplicate subject name in uploaded file", **ids)
    seen.add(k)
    if snapshot.has_subject(r.subject_name):
        return _exists(flow, "Subject already exists in system", **ids)
    return _ok(**ids)


def validate_subjects(records: Sequence[SubjectRecord], snapshot: ReferenceSnapshot, flow: ImportFlow = ImportFlow.STANDALONE) -> List[RowStatus]:
    seen: Set[Key] = set()
    return [_subject(r, snapshot, flow, seen) for r in records]


# ----- faculty assignments -----
def _faculty_assignment(
    r: FacultyAssignmentRecord,
    snapshot: ReferenceSnapshot,
    flow: ImportFlow,
    seen: Set[Key],
    batch_claims: Dict[Key, str],
) -> RowStatus:
    identity = [] if (r.faculty_school_id or r.faculty_name) else ["Faculty School ID or Faculty Name"]
    err = _missing(
        r,
        {
            "track_name": "Track Name",
            "strand_name": "Strand Name",
            "section_name": "Section Name",
            "grade_level": "Grade Level",
            "subject_name": "Subject Name",
        },
        extra=identity,
    )
    if err:
        return err
    if r.faculty_school_id and not is_valid_faculty_school_id(r.faculty_school_id):
        return _fail(
            RowErrorKind.FORMAT_ERROR,
            f'Invalid Faculty School ID "{r.faculty_school_id}" (expected format F###, e.g. F001)',
        )
    err = _grade(r.grade_level) or _parents(snapshot, r, 3)
    if err:
        return err
    ids = _parent_ids(snapshot, r, 3)
    if not snapshot.has_subject(r.subject_name):
        return _fail(RowErrorKind.REFERENCE_NOT_FOUND, f'Subject "{r.subject_name}" does not exist or is not active', **ids)
    faculty = snapshot.find_faculty(r.faculty_school_id, r.faculty_name)
    if faculty is None:
        label = r.faculty_school_id or r.faculty_name
        return _fail(RowErrorKind.REFERENCE_NOT_FOUND, f'Faculty "{label}" does not exist or is not active', **ids)
    ids["faculty_id"] = faculty.id

    k = key(faculty.id, r.track_name, r.strand_name, r.section_name, r.subject_name)
    if k in seen:
        return _fail(RowErrorKind.DUPLICATE_IN_BATCH, "Duplicate faculty assignment in uploaded file", **ids)
    seen.add(k)

    if k in snapshot.faculty_assignment_keys:
        return _exists(flow, "Faculty assignment already exists in the system", **ids)

    claim = key(r.subject_name, r.section_name)
    owner = snapshot.subject_section_claims.get(claim)
    if owner and owner != faculty.id:
        return _fail(
            RowErrorKind.CONFLICT,
            f'Subject "{r.subject_name}" in section "{r.section_name}" is already assigned to {snapshot.faculty_name(owner)}',
            **ids,
        )
    batch_owner = batch_claims.setdefault(claim, faculty.id)
    if batch_owner != faculty.id:
        return _fail(
            RowErrorKind.CONFLICT,
            f'Subject "{r.subject_name}" in section "{r.section_name}" is assigned to another faculty earlier in this upload',
            **ids,
        )
    return _ok(**ids)


def validate_faculty_assignments(
    records: Sequence[FacultyAssignmentRecord],
    snapshot: ReferenceSnapshot,
    flow: ImportFlow = ImportFlow.STANDALONE,
) -> List[RowStatus]:
    seen: Set[Key] = set()
    batch_claims: Dict[Key, str] = {}
    return [_faculty_assignment(r, snapshot, flow, seen, batch_claims) for r in records]


# ----- student assignments -----
def approved_for_term(registrant: Optional[Registrant], term: TermContext) -> bool:
    if registrant is None or registrant.status != RegistrantStatus.approved.value:
        return False
    if registrant.term_name and registrant.term_name != term.term_name:
        return False
    if registrant.school_year and registrant.school_year != term.school_year:
        return False
    return True


def _student_assignment(
    r: StudentAssignmentRecord,
    snapshot: ReferenceSnapshot,
    flow: ImportFlow,
    seen: Set[Key],
) -> RowStatus:
    identity = [] if (r.student_school_id or (r.first_name and r.last_name)) else ["Student School ID or Student Name"]
    err = _missing(
        r,
        {"track_name": "Track Name", "strand_name": "Strand Name", "section_name": "Section Name", "grade_level": "Grade Level"},
        extra=identity,
    )
    if err:
        return err
    if r.student_school_id and not is_valid_student_school_id(r.student_school_id):
        return _fail(
            RowErrorKind.FORMAT_ERROR,
            f'Invalid Student School ID "{r.student_school_id}" (expected format 00-00000, e.g. 25-00017)',
        )
    err = _grade(r.grade_level) or _parents(snapshot, r, 3)
    if err:
        return err
    ids = _parent_ids(snapshot, r, 3)

    # Rows with a school ID may name a student who has no account yet.
    student = snapshot.find_student(r.student_school_id, r.full_name)
    if student is None and not r.student_school_id:
        return _fail(RowErrorKind.REFERENCE_NOT_FOUND, f'Student "{r.full_name}" does not exist or is not active', **ids)
    school_id = r.student_school_id or (student.school_id if student else "") or ""
    if student is not None:
        ids["student_id"] = student.id

    idents = [i for i in (ids.get("student_id"), school_id) if i]
    keys = [key(i, r.track_name, r.strand_name, r.section_name) for i in idents]
    if any(k in seen for k in keys):
        return _fail(RowErrorKind.DUPLICATE_IN_BATCH, "Duplicate student assignment in uploaded file", **ids)
    seen.update(keys)
    if any(k in snapshot.student_assignment_keys for k in keys):
        return _exists(flow, "Student assignment already exists in the system", **ids)

    # Term import seeds a new roster, so registration approval is not required there.
    if flow == ImportFlow.STANDALONE:
        label = school_id or r.full_name
        registrant = snapshot.registrant_for(school_id)
        if registrant is None:
            return _fail(
                RowErrorKind.NOT_APPROVED,
                f'Student "{label}" is not a registrant for {snapshot.term.term_name} {snapshot.term.school_year}',
                **ids,
            )
        if not approved_for_term(registrant, snapshot.term):
            return _fail(
                RowErrorKind.NOT_APPROVED,
                f'Student "{label}" registration is {registrant.status}, not approved for this term',
                **ids,
            )
    return _ok(**ids)


def validate_student_assignments(
    records: Sequence[StudentAssignmentRecord],
    snapshot: ReferenceSnapshot,
    flow: ImportFlow = ImportFlow.STANDALONE,
) -> List[RowStatus]:
    seen: Set[Key] = set()
    return [_student_assignment(r, snapshot, flow, seen) for r in records]


VALIDATORS: Dict[EntityType, Validator] = {
    EntityType.TRACK: validate_tracks,
    EntityType.STRAND: validate_strands,
    EntityType.SECTION: validate_sections,
    EntityType.SUBJECT: validate_subjects,
    EntityType.FACULTY_ASSIGNMENT: validate_faculty_assignments,
    EntityType.STUDENT_ASSIGNMENT: validate_student_assignments,
}


def validate(
    entity_type: EntityType,
    records: Sequence[ImportRecord],
    snapshot: ReferenceSnapshot,
    flow: ImportFlow = ImportFlow.STANDALONE,
) -> List[RowStatus]:
    return VALIDATORS[entity_type](records, snapshot, flow)


def validate_term_workbook(
    records_by_type: Dict[EntityType, Sequence[ImportRecord]],
    snapshot: ReferenceSnapshot,
) -> Dict[EntityType, List[RowStatus]]:
    """Validate a whole-term workbook sheet by sheet in creation order.

    Rows that will be created are registered in the snapshot as planned, so a
    strand may reference a track that only exists further up the same workbook.
    """
    results: Dict[EntityType, List[RowStatus]] = {}
    for entity_type in IMPORT_PHASES:
        records = records_by_type.get(entity_type)
        if records is None:
            continue
        statuses = validate(entity_type, records, snapshot, ImportFlow.TERM)
        for record, status in zip(records, statuses):
            if status.valid and not status.skip:
                snapshot.register_created(
                    entity_type, record, None, faculty_id=status.faculty_id, student_id=status.student_id
                )
        results[entity_type] = statuses
    return results
