import io

import pytest
from httpx import AsyncClient
from openpyxl import load_workbook

from conftest import FakeSchoolApi, make_workbook, term_params

XLSX = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _files(sheets, filename: str = "upload.xlsx"):
    return {"file": (filename, make_workbook(sheets), XLSX)}


@pytest.mark.asyncio
async def test_preview_then_confirm_tracks(client: AsyncClient, school_api: FakeSchoolApi) -> None:
    school_api.add_track("Academic")

    response = await client.post(
        "/api/v1/imports/tracks/preview",
        params=term_params(),
        files=_files({"Add New Tracks": [["Track Name to Add"], ["TVL"], ["Academic"], ["tvl"]]}),
    )
    assert response.status_code == 200
    preview = response.json()
    assert preview["flow"] == "standalone"
    assert (preview["validCount"], preview["invalidCount"]) == (1, 2)
    statuses = preview["sheets"][0]["statuses"]
    assert statuses[1]["kind"] == "ALREADY_EXISTS"
    assert statuses[2]["kind"] == "DUPLICATE_IN_BATCH"

    response = await client.post("/api/v1/imports/tracks/confirm", json=preview)
    assert response.status_code == 200
    result = response.json()
    assert result["importedCount"] == 1
    assert result["created"][0]["label"] == "TVL"
    assert [b["trackName"] for b in school_api.created_of("tracks")] == ["TVL"]


@pytest.mark.asyncio
async def test_empty_sheet_is_a_preview_not_an_error(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/imports/strands/preview",
        params=term_params(),
        files=_files({"Strands": [["Track Name", "Strand Name"]]}),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "No data rows found"
    assert body["sheets"][0]["message"] == "No data rows found"


@pytest.mark.asyncio
async def test_non_excel_upload_is_rejected(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/imports/tracks/preview",
        params=term_params(),
        files={"file": ("tracks.csv", b"Track Name\nTVL\n", "text/csv")},
    )
    assert response.status_code == 400
    assert "Excel" in response.json()["detail"]


@pytest.mark.asyncio
async def test_unknown_entity_and_missing_term_are_rejected(client: AsyncClient) -> None:
    response = await client.get("/api/v1/imports/teachers/template", params=term_params())
    assert response.status_code == 422
    response = await client.get("/api/v1/imports/tracks/template")
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_confirm_rejects_preview_of_another_flow(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/imports/term/preview",
        params=term_params(),
        files=_files({"Tracks": [["Track Name"], ["TVL"]]}),
    )
    assert response.status_code == 200

    response = await client.post("/api/v1/imports/tracks/confirm", json=response.json())
    assert response.status_code == 400
    assert "term" in response.json()["detail"]


@pytest.mark.asyncio
async def test_term_workbook_round_trip(client: AsyncClient, school_api: FakeSchoolApi) -> None:
    sheets = {
        "Tracks": [["Track Name"], ["TVL"]],
        "Strands": [["Track Name", "Strand Name"], ["TVL", "ICT"], ["Ghost", "X"]],
    }
    response = await client.post("/api/v1/imports/term/preview", params=term_params(), files=_files(sheets))
    preview = response.json()
    assert (preview["validCount"], preview["invalidCount"]) == (2, 1)

    response = await client.post("/api/v1/imports/term/confirm", json=preview)
    result = response.json()
    assert result["importedCount"] == 2
    assert result["skippedCount"] == 0
    assert [r for r, _ in school_api.created] == ["tracks", "strands"]


@pytest.mark.asyncio
async def test_template_download(client: AsyncClient, school_api: FakeSchoolApi) -> None:
    school_api.add_track("Academic")
    response = await client.get("/api/v1/imports/strands/template", params=term_params())

    assert response.status_code == 200
    assert response.headers["content-type"] == XLSX
    assert "attachment; filename=strands_template_Term_1_2025-2026.xlsx" == response.headers["content-disposition"]
    wb = load_workbook(io.BytesIO(response.content))
    assert wb.sheetnames == ["Add New Strands", "Current Strands", "Available Tracks"]
    assert wb["Available Tracks"]["A2"].value == "Academic"


@pytest.mark.asyncio
async def test_term_template_download(client: AsyncClient) -> None:
    response = await client.get("/api/v1/imports/term/template", params=term_params())
    assert response.status_code == 200
    assert load_workbook(io.BytesIO(response.content)).sheetnames[0] == "Tracks"


@pytest.mark.asyncio
async def test_error_report_download(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/imports/strands/preview/errors",
        params=term_params(),
        files=_files({"Strands": [["Track Name", "Strand Name"], ["Ghost", "ICT"]]}),
    )
    assert response.status_code == 200
    ws = load_workbook(io.BytesIO(response.content))["Upload errors"]
    assert ws["A2"].value == 2
    assert ws["D2"].value == 'Track "Ghost" does not exist or is not active'


@pytest.mark.asyncio
async def test_confirm_with_malformed_token_is_unauthorized(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/imports/tracks/confirm",
        json={},
        headers={"Authorization": "Bearer not-a-jwt"},
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_confirm_does_not_trust_posted_statuses(client: AsyncClient, school_api: FakeSchoolApi) -> None:
    response = await client.post(
        "/api/v1/imports/tracks/preview",
        params=term_params(),
        files=_files({"Tracks": [["Track Name"], ["Academic2"], ["academic2"]]}),
    )
    preview = response.json()
    for row_status in preview["sheets"][0]["statuses"]:
        row_status.update(valid=True, message="Valid", kind=None)

    response = await client.post("/api/v1/imports/tracks/confirm", json=preview)

    assert response.status_code == 200
    assert response.json()["importedCount"] == 1
    assert [b["trackName"] for b in school_api.created_of("tracks")] == ["Academic2"]


@pytest.mark.asyncio
async def test_confirm_rejects_repeated_sheets(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/imports/term/preview",
        params=term_params(),
        files=_files({"Tracks": [["Track Name"], ["TVL"]]}),
    )
    preview = response.json()
    preview["sheets"].append(preview["sheets"][0])

    response = await client.post("/api/v1/imports/term/confirm", json=preview)
    assert response.status_code == 400
