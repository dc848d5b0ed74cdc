"""
Reference data snapshot: the live system state an import is validated against.

A snapshot is fetched fresh for every preview and every confirm. Names from
the spreadsheet are resolved to ids through keyed indexes built once per
snapshot; records created (or planned) during a run are merged into the same
indexes so later phases can see them.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

import httpx

from app.clients.school_api import SchoolApiClient
from app.core.enums import EntityType, RegistrantStatus
from app.core.exceptions import SchoolApiError

from .schemas import (
    FacultyAssignment,
    ImportRecord,
    Registrant,
    SchoolUser,
    Section,
    Strand,
    StudentAssignment,
    Subject,
    TermContext,
    Track,
)

logger = logging.getLogger(__name__)

Key = Tuple[str, ...]


def key(*parts: Optional[str]) -> Key:
    """Case- and whitespace-insensitive lookup key."""
    return tuple(" ".join((p or "").lower().split()) for p in parts)


def in_scope(entity: Any, term: TermContext) -> bool:
    """Entities without scope fields are taken as already scoped by the endpoint that returned them."""
    if entity.school_year and entity.school_year != term.school_year:
        return False
    if entity.term_name and entity.term_name != term.term_name:
        return False
    if entity.quarter_name and term.quarter_name and entity.quarter_name != term.quarter_name:
        return False
    return True


@dataclass
class ReferenceSnapshot:
    term: TermContext
    tracks: List[Track] = field(default_factory=list)
    strands: List[Strand] = field(default_factory=list)
    sections: List[Section] = field(default_factory=list)
    subjects: List[Subject] = field(default_factory=list)
    faculty: List[SchoolUser] = field(default_factory=list)
    students: List[SchoolUser] = field(default_factory=list)
    faculty_assignments: List[FacultyAssignment] = field(default_factory=list)
    student_assignments: List[StudentAssignment] = field(default_factory=list)
    registrants: List[Registrant] = field(default_factory=list)
    degraded: List[str] = field(default_factory=list)

    # name -> id indexes; a value of None marks a record planned but not yet created
    track_ids: Dict[Key, Optional[str]] = field(default_factory=dict, repr=False)
    strand_ids: Dict[Key, Optional[str]] = field(default_factory=dict, repr=False)
    section_ids: Dict[Key, Optional[str]] = field(default_factory=dict, repr=False)
    section_keys: Set[Key] = field(default_factory=set, repr=False)
    subject_ids: Dict[Key, Optional[str]] = field(default_factory=dict, repr=False)
    faculty_by_school_id: Dict[Key, SchoolUser] = field(default_factory=dict, repr=False)
    faculty_by_name: Dict[Key, SchoolUser] = field(default_factory=dict, repr=False)
    students_by_school_id: Dict[Key, SchoolUser] = field(default_factory=dict, repr=False)
    students_by_name: Dict[Key, SchoolUser] = field(default_factory=dict, repr=False)
    faculty_assignment_keys: Set[Key] = field(default_factory=set, repr=False)
    subject_section_claims: Dict[Key, str] = field(default_factory=dict, repr=False)
    student_assignment_keys: Set[Key] = field(default_factory=set, repr=False)
    registrants_by_school_id: Dict[Key, Registrant] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        self.build_index()

    def build_index(self) -> None:
        self.track_ids = {key(t.track_name): t.id for t in self.tracks}
        self.strand_ids = {key(s.track_name, s.strand_name): s.id for s in self.strands}
        self.section_ids = {key(s.track_name, s.strand_name, s.section_name): s.id for s in self.sections}
        self.section_keys = {
            key(s.track_name, s.strand_name, s.section_name, s.grade_level) for s in self.sections
        }
        self.subject_ids = {key(s.subject_name): s.id for s in self.subjects}

        self.faculty_by_school_id = {key(u.school_id): u for u in self.faculty if u.school_id}
        self.faculty_by_name = {key(u.full_name): u for u in self.faculty}
        self.students_by_school_id = {key(u.school_id): u for u in self.students if u.school_id}
        self.students_by_name = {key(u.full_name): u for u in self.students}

        self.faculty_assignment_keys = set()
        self.subject_section_claims = {}
        for a in self.faculty_assignments:
            self._add_faculty_assignment(a.faculty_id, a.track_name, a.strand_name, a.section_name, a.subject_name)

        self.student_assignment_keys = set()
        for a in self.student_assignments:
            for ident in (a.student_id, a.student_school_id):
                if ident:
                    self.student_assignment_keys.add(key(ident, a.track_name, a.strand_name, a.section_name))

        self.registrants_by_school_id = {}
        for r in self.registrants:
            if not r.school_id:
                continue
            k = key(r.school_id)
            current = self.registrants_by_school_id.get(k)
            # Prefer the record for this term, then an approved one.
            if current is None or self._registrant_rank(r) > self._registrant_rank(current):
                self.registrants_by_school_id[k] = r

    def _registrant_rank(self, r: Registrant) -> int:
        rank = 0
        if r.term_name == self.term.term_name and (not r.school_year or r.school_year == self.term.school_year):
            rank += 2
        if r.status == RegistrantStatus.approved.value:
            rank += 1
        return rank

    def _add_faculty_assignment(self, faculty_id, track, strand, section, subject) -> None:
        self.faculty_assignment_keys.add(key(faculty_id, track, strand, section, subject))
        if subject and faculty_id:
            self.subject_section_claims.setdefault(key(subject, section), faculty_id)

    # ----- lookups -----
    def has_track(self, track_name: str) -> bool:
        return key(track_name) in self.track_ids

    def has_strand(self, track_name: str, strand_name: str) -> bool:
        return key(track_name, strand_name) in self.strand_ids

    def has_section(self, track_name: str, strand_name: str, section_name: str) -> bool:
        return key(track_name, strand_name, section_name) in self.section_ids

    def has_subject(self, subject_name: str) -> bool:
        return key(subject_name) in self.subject_ids

    def find_faculty(self, school_id: str = "", name: str = "") -> Optional[SchoolUser]:
        if school_id:
            return self.faculty_by_school_id.get(key(school_id))
        return self.faculty_by_name.get(key(name)) if name else None

    def find_student(self, school_id: str = "", name: str = "") -> Optional[SchoolUser]:
        if school_id:
            return self.students_by_school_id.get(key(school_id))
        return self.students_by_name.get(key(name)) if name else None

    def faculty_name(self, faculty_id: str) -> str:
        for u in self.faculty:
            if u.id == faculty_id:
                return u.full_name
        return "another faculty"

    def registrant_for(self, school_id: str) -> Optional[Registrant]:
        return self.registrants_by_school_id.get(key(school_id)) if school_id else None

    # ----- merging this run's records -----
    def register_created(self, entity_type: EntityType, record: ImportRecord, created_id: Optional[str] = None, **ids: Optional[str]) -> None:
        """Merge a record created (or, with created_id=None, planned) in the current run."""
        if entity_type == EntityType.TRACK:
            self.track_ids[key(record.track_name)] = created_id
        elif entity_type == EntityType.STRAND:
            self.strand_ids[key(record.track_name, record.strand_name)] = created_id
        elif entity_type == EntityType.SECTION:
            self.section_ids[key(record.track_name, record.strand_name, record.section_name)] = created_id
            self.section_keys.add(key(record.track_name, record.strand_name, record.section_name, record.grade_level))
        elif entity_type == EntityType.SUBJECT:
            self.subject_ids[key(record.subject_name)] = created_id
        elif entity_type == EntityType.FACULTY_ASSIGNMENT:
            self._add_faculty_assignment(
                ids.get("faculty_id"), record.track_name, record.strand_name, record.section_name, record.subject_name
            )
        elif entity_type == EntityType.STUDENT_ASSIGNMENT:
            for ident in (ids.get("student_id"), record.student_school_id):
                if ident:
                    self.student_assignment_keys.add(
                        key(ident, record.track_name, record.strand_name, record.section_name)
                    )


# ----- fetching -----
_STRAND_DEPENDENTS = set(EntityType) - {EntityType.TRACK}
_SECTION_DEPENDENTS = {
    EntityType.SECTION,
    EntityType.FACULTY_ASSIGNMENT,
    EntityType.STUDENT_ASSIGNMENT,
}


async def _safe(snapshot: ReferenceSnapshot, name: str, call: Callable[..., Awaitable[list]], *args: Any) -> list:
    """A failed reference fetch degrades to an empty collection; the import goes on."""
    try:
        return await call(*args)
    except (httpx.HTTPError, SchoolApiError) as e:
        logger.warning("Could not fetch %s for import validation: %s", name, e)
        if name not in snapshot.degraded:
            snapshot.degraded.append(name)
        return []


async def fetch_snapshot(
    client: SchoolApiClient,
    term: TermContext,
    needs: Iterable[EntityType],
) -> ReferenceSnapshot:
    """Fetch the reference collections the given entity types are validated against.

    Requests are issued one after another; strands are listed per active track
    and sections per active strand, as the school API exposes them.
    """
    needs = set(needs)
    snap = ReferenceSnapshot(term=term)

    tracks = await _safe(snap, "tracks", client.list_tracks_by_term_id, term.term_id)
    snap.tracks = [t for t in tracks if t.is_active and in_scope(t, term)]

    if needs & _STRAND_DEPENDENTS:
        for track in snap.tracks:
            for strand in await _safe(snap, "strands", client.list_strands_by_track, track.track_name):
                if not strand.track_name:
                    strand.track_name = track.track_name
                if strand.is_active and in_scope(strand, term):
                    snap.strands.append(strand)

    if needs & _SECTION_DEPENDENTS:
        for strand in snap.strands:
            sections = await _safe(snap, "sections", client.list_sections_by_strand, strand.track_name, strand.strand_name)
            for section in sections:
                section.track_name = section.track_name or strand.track_name
                section.strand_name = section.strand_name or strand.strand_name
                if section.is_active and in_scope(section, term):
                    snap.sections.append(section)

    if needs & {EntityType.SUBJECT, EntityType.FACULTY_ASSIGNMENT}:
        subjects = await _safe(snap, "subjects", client.list_subjects_by_term_id, term.term_id)
        snap.subjects = [s for s in subjects if s.is_active and in_scope(s, term)]

    if needs & {EntityType.FACULTY_ASSIGNMENT, EntityType.STUDENT_ASSIGNMENT}:
        users = [u for u in await _safe(snap, "users", client.list_active_users) if not u.is_archived]
        snap.faculty = [u for u in users if u.is_faculty]
        snap.students = [u for u in users if u.is_student]

    if EntityType.FACULTY_ASSIGNMENT in needs:
        assignments = await _safe(snap, "faculty assignments", client.list_faculty_assignments, term.term_id)
        snap.faculty_assignments = [a for a in assignments if a.is_active]

    if EntityType.STUDENT_ASSIGNMENT in needs:
        assignments = await _safe(
            snap, "student assignments", client.list_student_assignments, term.term_id, term.quarter_name
        )
        snap.student_assignments = [a for a in assignments if a.is_active]
        snap.registrants = await _safe(snap, "registrants", client.list_registrants)

    snap.build_index()
    logger.info(
        "Reference snapshot for %s %s: %d tracks, %d strands, %d sections, %d subjects%s",
        term.school_year,
        term.term_name,
        len(snap.tracks),
        len(snap.strands),
        len(snap.sections),
        len(snap.subjects),
        f" (degraded: {', '.join(snap.degraded)})" if snap.degraded else "",
    )
    return snap
