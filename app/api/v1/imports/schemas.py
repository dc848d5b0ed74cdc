from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

from app.core.enums import EntityType, ImportFlow, RowErrorKind

_ID = AliasChoices("_id", "id")


class ApiModel(BaseModel):
    """camelCase on the wire (the school API and the admin UI), snake_case in Python."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True


def _ref_id(value: Any) -> Any:
    """Populated references come back as objects; keep only their id."""
    if isinstance(value, dict):
        return value.get("_id") or value.get("id")
    return value


# ----- Term scope -----
class TermContext(ApiModel):
    term_id: str
    term_name: str
    school_year: str
    quarter_name: Optional[str] = None


# ----- Normalized upload records -----
class ImportRecord(ApiModel):
    row_number: int = Field(0, description="1-based row in the uploaded sheet")


class ScopedRecord(ImportRecord):
    school_year: str = ""
    term_name: str = ""
    quarter_name: Optional[str] = None


class TrackRecord(ScopedRecord):
    track_name: str = ""


class StrandRecord(ScopedRecord):
    track_name: str = ""
    strand_name: str = ""


class SectionRecord(ScopedRecord):
    track_name: str = ""
    strand_name: str = ""
    section_name: str = ""
    section_code: str = ""
    grade_level: str = ""


class SubjectRecord(ScopedRecord):
    track_name: str = ""
    strand_name: str = ""
    grade_level: str = ""
    subject_name: str = ""


class FacultyAssignmentRecord(ImportRecord):
    faculty_school_id: str = Field("", alias="facultySchoolID")
    faculty_name: str = ""
    track_name: str = ""
    strand_name: str = ""
    section_name: str = ""
    grade_level: str = ""
    subject_name: str = ""


class StudentAssignmentRecord(ImportRecord):
    student_school_id: str = Field("", alias="studentSchoolID")
    first_name: str = ""
    last_name: str = ""
    track_name: str = ""
    strand_name: str = ""
    section_name: str = ""
    grade_level: str = ""
    enrollment_no: str = ""
    enrollment_date: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


RECORD_MODELS = {
    EntityType.TRACK: TrackRecord,
    EntityType.STRAND: StrandRecord,
    EntityType.SECTION: SectionRecord,
    EntityType.SUBJECT: SubjectRecord,
    EntityType.FACULTY_ASSIGNMENT: FacultyAssignmentRecord,
    EntityType.STUDENT_ASSIGNMENT: StudentAssignmentRecord,
}


# ----- Reference data as returned by the school API -----
class ReferenceEntity(ApiModel):
    id: str = Field(..., validation_alias=_ID)
    status: str = "active"

    @property
    def is_active(self) -> bool:
        return (self.status or "").lower() == "active"


class ScopedEntity(ReferenceEntity):
    school_year: Optional[str] = None
    term_name: Optional[str] = None
    quarter_name: Optional[str] = None


class Track(ScopedEntity):
    track_name: str


class Strand(ScopedEntity):
    track_name: str = ""
    strand_name: str


class Section(ScopedEntity):
    track_name: str = ""
    strand_name: str = ""
    section_name: str
    section_code: Optional[str] = None
    grade_level: Optional[str] = None


class Subject(ScopedEntity):
    track_name: Optional[str] = None
    strand_name: Optional[str] = None
    grade_level: Optional[str] = None
    subject_name: str


class SchoolUser(ApiModel):
    id: str = Field(..., validation_alias=_ID)
    firstname: str = ""
    lastname: str = ""
    email: Optional[str] = None
    role: str = ""
    school_id: Optional[str] = Field(None, validation_alias=AliasChoices("schoolID", "schoolId", "school_id"))
    is_archived: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.firstname} {self.lastname}".strip()

    @property
    def is_faculty(self) -> bool:
        return self.role.lower() == "faculty"

    @property
    def is_student(self) -> bool:
        return self.role.lower() in ("student", "students")


class FacultyAssignment(ReferenceEntity):
    faculty_id: Optional[str] = None
    faculty_name: Optional[str] = None
    faculty_school_id: Optional[str] = Field(None, validation_alias=AliasChoices("facultySchoolID", "facultySchoolId"))
    track_name: str
    strand_name: str
    section_name: str
    subject_name: Optional[str] = None
    grade_level: Optional[str] = None
    term_id: Optional[str] = None

    @field_validator("faculty_id", "term_id", mode="before")
    @classmethod
    def coerce_ref_ids(cls, value: Any) -> Any:
        return _ref_id(value)


class StudentAssignment(ReferenceEntity):
    student_id: Optional[str] = None
    student_school_id: Optional[str] = Field(None, validation_alias=AliasChoices("studentSchoolID", "studentSchoolId"))
    student_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    track_name: str
    strand_name: str
    section_name: str
    grade_level: Optional[str] = None
    term_id: Optional[str] = None
    quarter_name: Optional[str] = None

    @field_validator("student_id", "term_id", mode="before")
    @classmethod
    def coerce_ref_ids(cls, value: Any) -> Any:
        return _ref_id(value)


class Registrant(ApiModel):
    id: Optional[str] = Field(None, validation_alias=_ID)
    school_id: Optional[str] = Field(None, validation_alias=AliasChoices("schoolID", "schoolId", "school_id"))
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    status: str = "pending"
    term_name: Optional[str] = None
    school_year: Optional[str] = None


# ----- Validation results and previews -----
class RowStatus(ApiModel):
    valid: bool
    message: str
    kind: Optional[RowErrorKind] = None
    skip: bool = False
    track_id: Optional[str] = None
    strand_id: Optional[str] = None
    section_id: Optional[str] = None
    faculty_id: Optional[str] = None
    student_id: Optional[str] = None


class SheetPreview(ApiModel):
    entity_type: EntityType
    sheet_name: Optional[str] = None
    header_row_index: int = 0
    headers: List[str] = []
    missing_columns: List[str] = []
    records: List[Dict[str, Any]] = []
    statuses: List[RowStatus] = []
    message: Optional[str] = None

    def typed_records(self) -> List[ImportRecord]:
        model = RECORD_MODELS[self.entity_type]
        return [model.model_validate(r) for r in self.records]

    @property
    def valid_count(self) -> int:
        return sum(1 for s in self.statuses if s.valid and not s.skip)

    @property
    def invalid_count(self) -> int:
        return sum(1 for s in self.statuses if not s.valid)

    @property
    def skip_count(self) -> int:
        return sum(1 for s in self.statuses if s.valid and s.skip)


class ImportPreview(ApiModel):
    flow: ImportFlow
    term: TermContext
    sheets: List[SheetPreview]
    valid_count: int = 0
    invalid_count: int = 0
    skip_count: int = 0
    degraded: List[str] = Field([], description="Reference collections that could not be fetched")
    message: Optional[str] = None


# ----- Import results -----
class CreatedRow(ApiModel):
    entity_type: EntityType
    row_number: int
    id: Optional[str] = None
    label: str


class SkippedRow(ApiModel):
    entity_type: EntityType
    row_number: int
    label: str
    reason: str
    kind: Optional[RowErrorKind] = None


class ImportResult(ApiModel):
    imported_count: int = 0
    skipped_count: int = 0
    created: List[CreatedRow] = []
    skipped: List[SkippedRow] = []
    skipped_messages: List[str] = []
