from enum import Enum


class EntityType(str, Enum):
    """Importable entity types, in creation (dependency) order."""

    TRACK = "tracks"
    STRAND = "strands"
    SECTION = "sections"
    SUBJECT = "subjects"
    FACULTY_ASSIGNMENT = "faculty-assignments"
    STUDENT_ASSIGNMENT = "student-assignments"


IMPORT_PHASES = (
    EntityType.TRACK,
    EntityType.STRAND,
    EntityType.SECTION,
    EntityType.SUBJECT,
    EntityType.FACULTY_ASSIGNMENT,
    EntityType.STUDENT_ASSIGNMENT,
)


class RecordStatus(str, Enum):
    active = "active"
    archived = "archived"


class GradeLevel(str, Enum):
    GRADE_11 = "Grade 11"
    GRADE_12 = "Grade 12"


class RegistrantStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class ImportFlow(str, Enum):
    # Single-entity bulk upload: additive only, "already exists" is rejected.
    STANDALONE = "standalone"
    # Whole-term workbook: re-runnable, "already exists" is skipped.
    TERM = "term"


class RowErrorKind(str, Enum):
    MISSING_FIELD = "MISSING_FIELD"
    FORMAT_ERROR = "FORMAT_ERROR"
    REFERENCE_NOT_FOUND = "REFERENCE_NOT_FOUND"
    DUPLICATE_IN_BATCH = "DUPLICATE_IN_BATCH"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    CONFLICT = "CONFLICT"
    NOT_APPROVED = "NOT_APPROVED"
    NETWORK_ERROR = "NETWORK_ERROR"
