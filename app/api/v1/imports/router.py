from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from fastapi.responses import Response

from app.auth.dependencies import get_current_user
from app.auth.schemas import CurrentUser
from app.clients.school_api import SchoolApiClient, get_school_api
from app.core.enums import EntityType, ImportFlow
from app.core.exceptions import ServiceError

from .schemas import ImportPreview, ImportResult, TermContext
from . import service

router = APIRouter(prefix="/api/v1/imports", tags=["imports"])

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def term_context(
    term_id: str = Query(..., alias="termId"),
    term_name: str = Query(..., alias="termName"),
    school_year: str = Query(..., alias="schoolYear"),
    quarter_name: Optional[str] = Query(None, alias="quarterName"),
) -> TermContext:
    return TermContext(term_id=term_id, term_name=term_name, school_year=school_year, quarter_name=quarter_name)


def _xlsx(content: bytes, filename: str) -> Response:
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


def _file_slug(term: TermContext) -> str:
    return "_".join(p.replace(" ", "_") for p in (term.term_name, term.school_year) if p)


# ----- whole term workbook (declared before /{entity} so "term" is never read as an entity) -----
@router.get("/term/template")
async def download_term_template(
    term: TermContext = Depends(term_context),
    client: SchoolApiClient = Depends(get_school_api),
) -> Response:
    """Workbook with one sheet per entity (Tracks ... Student Assignments), filled in creation order."""
    try:
        content = await service.term_template(client, term)
        return _xlsx(content, f"term_import_template_{_file_slug(term)}.xlsx")
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/term/preview", response_model=ImportPreview)
async def preview_term_import(
    file: UploadFile = File(..., description="Term workbook from GET /term/template"),
    term: TermContext = Depends(term_context),
    client: SchoolApiClient = Depends(get_school_api),
) -> ImportPreview:
    """
    Validate every sheet of a term workbook. Rows already in the system are marked
    to be skipped, so the same workbook can be imported again safely.
    """
    try:
        return await service.preview_term_import(client, file, term)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/term/confirm", response_model=ImportResult)
async def confirm_term_import(
    preview: ImportPreview,
    client: SchoolApiClient = Depends(get_school_api),
    current_user: CurrentUser = Depends(get_current_user),
) -> ImportResult:
    try:
        service.check_confirmable(preview, ImportFlow.TERM)
        return await service.confirm_import(client, preview, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


# ----- single entity -----
@router.get("/{entity}/template")
async def download_entity_template(
    entity: EntityType,
    term: TermContext = Depends(term_context),
    client: SchoolApiClient = Depends(get_school_api),
) -> Response:
    """Download the upload template with current records and the reference lists needed to fill it."""
    try:
        content = await service.entity_template(client, entity, term)
        return _xlsx(content, f"{entity.value}_template_{_file_slug(term)}.xlsx")
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/{entity}/preview", response_model=ImportPreview)
async def preview_entity_upload(
    entity: EntityType,
    file: UploadFile = File(..., description="Excel file (.xlsx or .xls); the header row may sit below title rows"),
    term: TermContext = Depends(term_context),
    client: SchoolApiClient = Depends(get_school_api),
) -> ImportPreview:
    """Parse and validate an upload without creating anything."""
    try:
        return await service.preview_entity_upload(client, entity, file, term)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/{entity}/preview/errors")
async def download_entity_errors(
    entity: EntityType,
    file: UploadFile = File(...),
    term: TermContext = Depends(term_context),
    client: SchoolApiClient = Depends(get_school_api),
) -> Response:
    """Same validation as /preview, returned as an Excel file of the invalid rows with a Reason column."""
    try:
        content = await service.entity_error_report(client, entity, file, term)
        return _xlsx(content, f"{entity.value}_upload_errors.xlsx")
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/{entity}/confirm", response_model=ImportResult)
async def confirm_entity_upload(
    entity: EntityType,
    preview: ImportPreview,
    client: SchoolApiClient = Depends(get_school_api),
    current_user: CurrentUser = Depends(get_current_user),
) -> ImportResult:
    """Create the valid rows of a preview. Rows that fail on the server are reported, not raised."""
    try:
        service.check_confirmable(preview, ImportFlow.STANDALONE, entity)
        return await service.confirm_import(client, preview, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
