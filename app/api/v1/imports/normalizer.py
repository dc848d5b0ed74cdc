"""
Row normalization: header-indexed rows -> canonical records per entity type.

Each canonical field lists the header names it has been published under by
past templates; the first alias is the current template header.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from app.core.enums import EntityType

from .parser import HeaderMatch, data_rows, fuzzy_match
from .schemas import RECORD_MODELS, ImportRecord, ScopedRecord, TermContext


@dataclass(frozen=True)
class FieldSpec:
    name: str
    aliases: tuple
    required: bool = True
    identifying: bool = True


TRACK_NAME = FieldSpec("track_name", ("Track Name", "Track Name to Add", "Track"))
STRAND_NAME = FieldSpec("strand_name", ("Strand Name", "Strand Name to Add", "Strand"))
SECTION_NAME = FieldSpec("section_name", ("Section Name", "Section Name to Add", "Section"))
GRADE_LEVEL = FieldSpec("grade_level", ("Grade Level", "Grade"), identifying=False)
SUBJECT_NAME = FieldSpec("subject_name", ("Subject Name", "Subject Name to Add", "Subject"))

FIELD_SPECS: Dict[EntityType, List[FieldSpec]] = {
    EntityType.TRACK: [TRACK_NAME],
    EntityType.STRAND: [
        FieldSpec("track_name", ("Track Name", "Track"), identifying=False),
        STRAND_NAME,
    ],
    EntityType.SECTION: [
        FieldSpec("track_name", ("Track Name", "Track"), identifying=False),
        FieldSpec("strand_name", ("Strand Name", "Strand"), identifying=False),
        SECTION_NAME,
        FieldSpec("section_code", ("Section Code", "Code"), required=False, identifying=False),
        GRADE_LEVEL,
    ],
    EntityType.SUBJECT: [
        FieldSpec("track_name", ("Track Name", "Track"), identifying=False),
        FieldSpec("strand_name", ("Strand Name", "Strand"), identifying=False),
        GRADE_LEVEL,
        SUBJECT_NAME,
    ],
    EntityType.FACULTY_ASSIGNMENT: [
        FieldSpec("faculty_school_id", ("Faculty School ID", "Faculty ID", "School ID"), required=False),
        FieldSpec("faculty_name", ("Faculty Name", "Faculty"), required=False),
        FieldSpec("track_name", ("Track Name", "Track"), identifying=False),
        FieldSpec("strand_name", ("Strand Name", "Strand"), identifying=False),
        FieldSpec("section_name", ("Section Name", "Section"), identifying=False),
        GRADE_LEVEL,
        FieldSpec("subject_name", ("Subject Name", "Subject"), identifying=False),
    ],
    EntityType.STUDENT_ASSIGNMENT: [
        FieldSpec("enrollment_no", ("Enrollment No", "Enrollment No.", "Enrollment Number"), required=False, identifying=False),
        FieldSpec("enrollment_date", ("Enrollment Date", "Date Enrolled"), required=False, identifying=False),
        FieldSpec("student_school_id", ("Student School ID", "School ID", "Student No", "Student ID"), required=False),
        FieldSpec("last_name", ("Last Name", "Surname"), required=False),
        FieldSpec("first_name", ("First Name", "Given Name"), required=False),
        FieldSpec("track_name", ("Track Name", "Track"), identifying=False),
        FieldSpec("strand_name", ("Strand Name", "Strand"), identifying=False),
        FieldSpec("section_name", ("Section Name", "Section"), identifying=False),
        GRADE_LEVEL,
    ],
}


def expected_headers(entity_type: EntityType) -> List[str]:
    """Current template headers for an entity type, in column order."""
    return [f.aliases[0] for f in FIELD_SPECS[entity_type]]


@dataclass
class NormalizedSheet:
    entity_type: EntityType
    header_row_index: int
    headers: List[str]
    records: List[ImportRecord] = field(default_factory=list)
    missing_columns: List[str] = field(default_factory=list)


def resolve_columns(entity_type: EntityType, headers: Sequence[str]) -> Dict[str, int]:
    """Map canonical field name -> column index.

    Exact (case-insensitive) alias matches are claimed first so that a fuzzy
    match can never steal a column that names another field exactly.
    """
    lowered = [h.strip().lower() for h in headers]
    columns: Dict[str, int] = {}
    claimed = set()

    for spec in FIELD_SPECS[entity_type]:
        for alias in spec.aliases:
            a = alias.lower()
            if a in lowered and lowered.index(a) not in claimed:
                idx = lowered.index(a)
                columns[spec.name] = idx
                claimed.add(idx)
                break

    for spec in FIELD_SPECS[entity_type]:
        if spec.name in columns:
            continue
        idx = _fuzzy_column(spec, headers, claimed)
        if idx is not None:
            columns[spec.name] = idx
            claimed.add(idx)
    return columns


def _fuzzy_column(spec: FieldSpec, headers: Sequence[str], claimed: set) -> Optional[int]:
    for alias in spec.aliases:
        for idx, h in enumerate(headers):
            if idx not in claimed and fuzzy_match(alias, h):
                return idx
    return None


def normalize_rows(
    entity_type: EntityType,
    rows: Sequence[Sequence[str]],
    match: HeaderMatch,
    term: Optional[TermContext] = None,
) -> NormalizedSheet:
    """Build one canonical record per data row; rows with no identifying value are dropped."""
    specs = FIELD_SPECS[entity_type]
    model = RECORD_MODELS[entity_type]
    columns = resolve_columns(entity_type, match.headers)
    sheet = NormalizedSheet(
        entity_type=entity_type,
        header_row_index=match.header_row_index,
        headers=list(match.headers),
        missing_columns=[s.aliases[0] for s in specs if s.required and s.name not in columns],
    )

    first_data_row = match.header_row_index + 2
    for offset, row in enumerate(data_rows(rows, match)):
        values = {}
        for spec in specs:
            idx = columns.get(spec.name)
            values[spec.name] = row[idx].strip() if idx is not None and idx < len(row) else ""
        if not any(values[s.name] for s in specs if s.identifying):
            continue
        record = model(row_number=first_data_row + offset, **values)
        if term is not None and isinstance(record, ScopedRecord):
            record.school_year = term.school_year
            record.term_name = term.term_name
            record.quarter_name = term.quarter_name
        sheet.records.append(record)
    return sheet
