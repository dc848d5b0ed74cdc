"""
Import pipeline per flow: parse -> normalize -> validate (preview), then plan -> execute (confirm).

Previews are read-only against the school API; only confirm creates records.
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from fastapi import UploadFile, status

from app.auth.schemas import CurrentUser
from app.clients.school_api import SchoolApiClient
from app.core.enums import IMPORT_PHASES, EntityType, ImportFlow
from app.core.exceptions import ImportFileError, ServiceError

from .normalizer import expected_headers, normalize_rows
from .orchestrator import execute_import, plan_import
from .parser import Matrix, find_header_row, find_sheet, read_workbook
from .schemas import ImportPreview, ImportRecord, ImportResult, RowStatus, SheetPreview, TermContext
from .snapshot import ReferenceSnapshot, fetch_snapshot
from .templates import TERM_SHEET_NAMES, TITLES, build_error_report, build_template, build_term_template
from .validators import validate, validate_term_workbook

logger = logging.getLogger(__name__)

NO_DATA_MESSAGE = "No data rows found"
DEGRADED_MESSAGE = "Some reference data could not be loaded; rows referring to it may show as not found"


async def _read_upload(file: UploadFile) -> Dict[str, Matrix]:
    content = await file.read()
    return read_workbook(content, file.filename)


def _read_sheet(
    entity_type: EntityType,
    sheet_name: str,
    rows: Matrix,
    term: TermContext,
) -> Tuple[SheetPreview, List[ImportRecord]]:
    match = find_header_row(rows, expected_headers(entity_type))
    normalized = normalize_rows(entity_type, rows, match, term)
    message = None
    if not normalized.records:
        message = NO_DATA_MESSAGE
    elif normalized.missing_columns:
        message = f"Missing column(s): {', '.join(normalized.missing_columns)}"
    preview = SheetPreview(
        entity_type=entity_type,
        sheet_name=sheet_name,
        header_row_index=normalized.header_row_index,
        headers=normalized.headers,
        missing_columns=normalized.missing_columns,
        message=message,
    )
    return preview, normalized.records


def _attach(preview: SheetPreview, records: Sequence[ImportRecord], statuses: List[RowStatus]) -> SheetPreview:
    preview.records = [r.model_dump(by_alias=True) for r in records]
    preview.statuses = statuses
    return preview


def _summarize(flow: ImportFlow, term: TermContext, sheets: List[SheetPreview], snapshot: ReferenceSnapshot) -> ImportPreview:
    preview = ImportPreview(
        flow=flow,
        term=term,
        sheets=sheets,
        valid_count=sum(s.valid_count for s in sheets),
        invalid_count=sum(s.invalid_count for s in sheets),
        skip_count=sum(s.skip_count for s in sheets),
        degraded=list(snapshot.degraded),
    )
    if snapshot.degraded:
        preview.message = DEGRADED_MESSAGE
    elif not any(s.statuses for s in sheets):
        preview.message = NO_DATA_MESSAGE
    logger.info(
        "%s preview for %s %s: %d valid, %d invalid, %d to skip",
        flow.value,
        term.school_year,
        term.term_name,
        preview.valid_count,
        preview.invalid_count,
        preview.skip_count,
    )
    return preview


# ----- standalone (single entity) -----
async def preview_entity_upload(
    client: SchoolApiClient,
    entity_type: EntityType,
    file: UploadFile,
    term: TermContext,
) -> ImportPreview:
    sheets = await _read_upload(file)
    if not sheets:
        raise ImportFileError("Workbook has no sheets")
    title = TITLES[entity_type]
    sheet_name = find_sheet(sheets, f"Add New {title}", title) or next(iter(sheets))

    sheet, records = _read_sheet(entity_type, sheet_name, sheets[sheet_name], term)
    snapshot = await fetch_snapshot(client, term, [entity_type])
    statuses = validate(entity_type, records, snapshot, ImportFlow.STANDALONE)
    return _summarize(ImportFlow.STANDALONE, term, [_attach(sheet, records, statuses)], snapshot)


# ----- whole term workbook -----
async def preview_term_import(client: SchoolApiClient, file: UploadFile, term: TermContext) -> ImportPreview:
    sheets = await _read_upload(file)
    found: Dict[EntityType, Tuple[SheetPreview, List[ImportRecord]]] = {}
    for entity_type in IMPORT_PHASES:
        sheet_name = find_sheet(sheets, TERM_SHEET_NAMES[entity_type])
        if sheet_name is not None:
            found[entity_type] = _read_sheet(entity_type, sheet_name, sheets[sheet_name], term)
    if not found:
        raise ImportFileError(f"Workbook has none of the expected sheets: {', '.join(TERM_SHEET_NAMES.values())}")

    snapshot = await fetch_snapshot(client, term, found)
    results = validate_term_workbook({et: records for et, (_, records) in found.items()}, snapshot)
    sheet_previews = [_attach(sheet, records, results[et]) for et, (sheet, records) in found.items()]
    return _summarize(ImportFlow.TERM, term, sheet_previews, snapshot)


# ----- confirm -----
def check_confirmable(preview: ImportPreview, flow: ImportFlow, entity_type: Optional[EntityType] = None) -> None:
    if preview.flow != flow:
        raise ServiceError(f"Preview was made for the {preview.flow.value} import", status.HTTP_400_BAD_REQUEST)
    if entity_type is not None and any(s.entity_type != entity_type for s in preview.sheets):
        raise ServiceError(f"Preview does not contain {entity_type.value} only", status.HTTP_400_BAD_REQUEST)
    if len({s.entity_type for s in preview.sheets}) != len(preview.sheets):
        raise ServiceError("Preview lists the same sheet more than once", status.HTTP_400_BAD_REQUEST)
    for sheet in preview.sheets:
        if len(sheet.records) != len(sheet.statuses):
            raise ServiceError("Preview rows and statuses do not line up", status.HTTP_400_BAD_REQUEST)


def recheck_preview(preview: ImportPreview, snapshot: ReferenceSnapshot) -> Dict[EntityType, List[RowStatus]]:
    """Validate the posted rows again; statuses sent back by the browser are not trusted."""
    records = {sheet.entity_type: sheet.typed_records() for sheet in preview.sheets}
    if preview.flow == ImportFlow.TERM:
        return validate_term_workbook(records, snapshot)
    return {et: validate(et, rows, snapshot, ImportFlow.STANDALONE) for et, rows in records.items()}


async def confirm_import(
    client: SchoolApiClient,
    preview: ImportPreview,
    user: Optional[CurrentUser] = None,
) -> ImportResult:
    """Re-validate a confirmed preview against a freshly fetched snapshot and create what still passes."""
    if any(sheet.records for sheet in preview.sheets):
        snapshot = await fetch_snapshot(client, preview.term, [s.entity_type for s in preview.sheets])
    else:
        snapshot = ReferenceSnapshot(term=preview.term)
    plan = plan_import(preview, recheck_preview(preview, snapshot))
    return await execute_import(client, plan, snapshot, preview.term, user)


# ----- downloads -----
async def entity_template(client: SchoolApiClient, entity_type: EntityType, term: TermContext) -> bytes:
    snapshot = await fetch_snapshot(client, term, [entity_type])
    return build_template(entity_type, snapshot)


async def term_template(client: SchoolApiClient, term: TermContext) -> bytes:
    snapshot = await fetch_snapshot(client, term, [EntityType.FACULTY_ASSIGNMENT, EntityType.STUDENT_ASSIGNMENT])
    return build_term_template(snapshot)


async def entity_error_report(
    client: SchoolApiClient,
    entity_type: EntityType,
    file: UploadFile,
    term: TermContext,
) -> bytes:
    preview = await preview_entity_upload(client, entity_type, file, term)
    return build_error_report(preview)
