"""
Downloadable workbooks: upload templates, current-data listings and error reports.
"""

import io
from typing import Any, Callable, Dict, List, Sequence, Tuple

from openpyxl import Workbook
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.datavalidation import DataValidation
from openpyxl.worksheet.worksheet import Worksheet

from app.core.config import settings
from app.core.enums import IMPORT_PHASES, EntityType, GradeLevel

from .normalizer import FIELD_SPECS, expected_headers
from .schemas import ImportPreview
from .snapshot import ReferenceSnapshot

TITLES = {
    EntityType.TRACK: "Tracks",
    EntityType.STRAND: "Strands",
    EntityType.SECTION: "Sections",
    EntityType.SUBJECT: "Subjects",
    EntityType.FACULTY_ASSIGNMENT: "Faculty Assignments",
    EntityType.STUDENT_ASSIGNMENT: "Student Assignments",
}
# Sheet names of the combined term workbook, in creation order.
TERM_SHEET_NAMES = {et: TITLES[et] for et in IMPORT_PHASES}

ERRORS_SHEET_NAME = "Upload errors"
REASON_HEADER = "Reason"

ID_WIDTH = 30
NAME_WIDTH = 20
STATUS_WIDTH = 10

Column = Tuple[str, int, Callable[[Any], Any]]


def _attr(name: str) -> Callable[[Any], Any]:
    return lambda item: getattr(item, name, None) or ""


OBJECT_ID: Column = ("Object ID", ID_WIDTH, _attr("id"))
STATUS: Column = ("Status", STATUS_WIDTH, _attr("status"))
TRACK_NAME: Column = ("Track Name", NAME_WIDTH, _attr("track_name"))
STRAND_NAME: Column = ("Strand Name", NAME_WIDTH, _attr("strand_name"))
SECTION_NAME: Column = ("Section Name", NAME_WIDTH, _attr("section_name"))
GRADE_LEVEL: Column = ("Grade Level", 12, _attr("grade_level"))

CURRENT_COLUMNS: Dict[EntityType, List[Column]] = {
    EntityType.TRACK: [
        OBJECT_ID,
        TRACK_NAME,
        ("School Year", 15, _attr("school_year")),
        ("Term Name", 15, _attr("term_name")),
        STATUS,
    ],
    EntityType.STRAND: [OBJECT_ID, TRACK_NAME, STRAND_NAME, STATUS],
    EntityType.SECTION: [OBJECT_ID, TRACK_NAME, STRAND_NAME, SECTION_NAME, GRADE_LEVEL, STATUS],
    EntityType.SUBJECT: [
        OBJECT_ID,
        ("Subject Name", 25, _attr("subject_name")),
        TRACK_NAME,
        STRAND_NAME,
        GRADE_LEVEL,
        STATUS,
    ],
    EntityType.FACULTY_ASSIGNMENT: [
        OBJECT_ID,
        ("Faculty Name", 25, _attr("faculty_name")),
        TRACK_NAME,
        STRAND_NAME,
        SECTION_NAME,
        ("Subject Name", 25, _attr("subject_name")),
        STATUS,
    ],
    EntityType.STUDENT_ASSIGNMENT: [
        OBJECT_ID,
        ("Student Name", 25, lambda a: a.student_name or f"{a.first_name or ''} {a.last_name or ''}".strip()),
        TRACK_NAME,
        STRAND_NAME,
        SECTION_NAME,
        STATUS,
    ],
}

PEOPLE_COLUMNS: List[Column] = [
    OBJECT_ID,
    ("Name", 25, lambda u: u.full_name),
    ("School ID", ID_WIDTH, _attr("school_id")),
    ("Status", STATUS_WIDTH, lambda u: "archived" if u.is_archived else "active"),
]

# Reference sheets listed after "Current ...", as the admin page has always shipped them.
AVAILABLE_SHEETS: Dict[EntityType, List[str]] = {
    EntityType.TRACK: [],
    EntityType.STRAND: ["Tracks"],
    EntityType.SECTION: ["Strands"],
    EntityType.SUBJECT: ["Strands"],
    EntityType.FACULTY_ASSIGNMENT: ["Faculty", "Tracks", "Strands", "Sections", "Subjects"],
    EntityType.STUDENT_ASSIGNMENT: ["Students", "Tracks", "Strands", "Sections"],
}


def _current_items(entity_type: EntityType, snapshot: ReferenceSnapshot) -> Sequence[Any]:
    return {
        EntityType.TRACK: snapshot.tracks,
        EntityType.STRAND: snapshot.strands,
        EntityType.SECTION: snapshot.sections,
        EntityType.SUBJECT: snapshot.subjects,
        EntityType.FACULTY_ASSIGNMENT: snapshot.faculty_assignments,
        EntityType.STUDENT_ASSIGNMENT: snapshot.student_assignments,
    }[entity_type]


def _available(name: str, snapshot: ReferenceSnapshot) -> Tuple[List[Column], Sequence[Any]]:
    return {
        "Faculty": (PEOPLE_COLUMNS, snapshot.faculty),
        "Students": (PEOPLE_COLUMNS, snapshot.students),
        "Tracks": ([TRACK_NAME, STATUS], snapshot.tracks),
        "Strands": ([TRACK_NAME, STRAND_NAME, STATUS], snapshot.strands),
        "Sections": ([TRACK_NAME, STRAND_NAME, SECTION_NAME, STATUS], snapshot.sections),
        "Subjects": ([("Subject Name", 25, _attr("subject_name")), GRADE_LEVEL, STATUS], snapshot.subjects),
    }[name]


def _set_widths(ws: Worksheet, widths: Sequence[int]) -> None:
    for idx, width in enumerate(widths, start=1):
        ws.column_dimensions[get_column_letter(idx)].width = width


def _write_table(ws: Worksheet, columns: Sequence[Column], items: Sequence[Any]) -> None:
    ws.append([c[0] for c in columns])
    for item in items:
        ws.append([c[2](item) for c in columns])
    _set_widths(ws, [c[1] for c in columns])


def _write_entry_sheet(ws: Worksheet, entity_type: EntityType, track_list_rows: int = 0) -> None:
    """Header row of an upload sheet, with dropdowns for grade level and (when listed) track."""
    headers = expected_headers(entity_type)
    ws.append(headers)
    _set_widths(ws, [ID_WIDTH if "ID" in h else 25 if "Name" in h else NAME_WIDTH for h in headers])
    last_row = settings.excel_max_rows + 1

    if "Grade Level" in headers:
        col = get_column_letter(headers.index("Grade Level") + 1)
        dv_grade = DataValidation(type="list", formula1='"' + ",".join(g.value for g in GradeLevel) + '"', allow_blank=True)
        dv_grade.error = "Select a value from the Grade Level dropdown"
        ws.add_data_validation(dv_grade)
        dv_grade.add(f"{col}2:{col}{last_row}")

    if track_list_rows and entity_type != EntityType.TRACK and "Track Name" in headers:
        col = get_column_letter(headers.index("Track Name") + 1)
        dv_track = DataValidation(
            type="list",
            formula1=f"'Available Tracks'!$A$2:$A${1 + track_list_rows}",
            allow_blank=True,
        )
        dv_track.error = "Select a value from the Track dropdown"
        ws.add_data_validation(dv_track)
        dv_track.add(f"{col}2:{col}{last_row}")


def _to_bytes(wb: Workbook) -> bytes:
    bio = io.BytesIO()
    wb.save(bio)
    return bio.getvalue()


def build_template(entity_type: EntityType, snapshot: ReferenceSnapshot) -> bytes:
    """Upload template: "Add New <X>", then "Current <X>", then the "Available ..." reference sheets."""
    title = TITLES[entity_type]
    wb = Workbook()
    ws_new = wb.active
    ws_new.title = f"Add New {title}"

    _write_table(wb.create_sheet(f"Current {title}"), CURRENT_COLUMNS[entity_type], _current_items(entity_type, snapshot))
    available = AVAILABLE_SHEETS[entity_type]
    for name in available:
        columns, items = _available(name, snapshot)
        _write_table(wb.create_sheet(f"Available {name}"), columns, items)

    _write_entry_sheet(ws_new, entity_type, len(snapshot.tracks) if "Tracks" in available else 0)
    return _to_bytes(wb)


def build_term_template(snapshot: ReferenceSnapshot) -> bytes:
    """Combined term workbook: one upload sheet per entity in creation order, plus people lists."""
    wb = Workbook()
    wb.remove(wb.active)
    for entity_type, sheet_name in TERM_SHEET_NAMES.items():
        _write_entry_sheet(wb.create_sheet(sheet_name), entity_type)
    _write_table(wb.create_sheet("Available Faculty"), PEOPLE_COLUMNS, snapshot.faculty)
    _write_table(wb.create_sheet("Available Students"), PEOPLE_COLUMNS, snapshot.students)
    return _to_bytes(wb)


def build_error_report(preview: ImportPreview) -> bytes:
    """Invalid rows per sheet with the row number and a reason column."""
    wb = Workbook()
    wb.remove(wb.active)
    failing = [s for s in preview.sheets if s.invalid_count]
    for sheet in failing:
        title = ERRORS_SHEET_NAME if len(failing) == 1 else f"{TITLES[sheet.entity_type]} errors"
        ws = wb.create_sheet(title)
        specs = FIELD_SPECS[sheet.entity_type]
        ws.append(["Row"] + [s.aliases[0] for s in specs] + [REASON_HEADER])
        for record, status in zip(sheet.typed_records(), sheet.statuses):
            if status.valid:
                continue
            ws.append([record.row_number] + [getattr(record, s.name) for s in specs] + [status.message])
        _set_widths(ws, [8] + [NAME_WIDTH] * len(specs) + [60])
    if not failing:
        wb.create_sheet(ERRORS_SHEET_NAME).append(["No failed rows"])
    return _to_bytes(wb)
