"""
Spreadsheet parsing: workbook bytes -> text matrices, and header-row discovery.

Uploaded templates often carry institution letterhead or title rows above the
real header, so the header row is located by fuzzy-matching the expected
header names instead of assuming row 0.
"""

import io
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional, Sequence

from openpyxl import load_workbook

from app.core.config import settings
from app.core.exceptions import ImportFileError

logger = logging.getLogger(__name__)

EXCEL_EXTENSIONS = (".xlsx", ".xlsm", ".xls")

Matrix = List[List[str]]


@dataclass
class HeaderMatch:
    header_row_index: int
    headers: List[str] = field(default_factory=list)


def cell_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def read_workbook(content: bytes, filename: Optional[str], max_rows: Optional[int] = None) -> Dict[str, Matrix]:
    """Read every sheet into a matrix of trimmed cell text, keyed by sheet title (in workbook order).

    Raises ImportFileError when the upload cannot be treated as a workbook at all.
    """
    if not filename or not filename.lower().endswith(EXCEL_EXTENSIONS):
        raise ImportFileError("Please upload an Excel file (.xlsx or .xls)")
    if not content:
        raise ImportFileError("File is empty")

    limit = max_rows or settings.excel_max_rows
    try:
        wb = load_workbook(filename=io.BytesIO(content), read_only=True, data_only=True)
    except Exception as e:
        raise ImportFileError(f"Error processing Excel file: {e}") from e

    sheets: Dict[str, Matrix] = {}
    try:
        for ws in wb.worksheets:
            matrix: Matrix = []
            for row in ws.iter_rows(values_only=True):
                if len(matrix) >= limit:
                    logger.warning("Sheet %r truncated at %d rows", ws.title, limit)
                    break
                matrix.append([cell_text(c) for c in row])
            sheets[ws.title] = _trim_trailing_empty(matrix)
    finally:
        wb.close()
    return sheets


def _trim_trailing_empty(matrix: Matrix) -> Matrix:
    """read_only worksheets report their used range, which often ends in blank rows."""
    end = len(matrix)
    while end and not any(matrix[end - 1]):
        end -= 1
    return matrix[:end]


def _norm(s: str) -> str:
    return " ".join(s.lower().split())


def fuzzy_match(expected: str, cell: str) -> bool:
    """Case-insensitive substring match in either direction. Empty text never matches."""
    a, b = _norm(expected), _norm(cell)
    if not a or not b:
        return False
    return a in b or b in a


def _non_empty(row: Sequence[str]) -> int:
    return sum(1 for c in row if c and c.strip())


def find_header_row(rows: Sequence[Sequence[str]], expected_headers: Sequence[str], threshold: Optional[float] = None) -> HeaderMatch:
    """Locate the header row among decorative rows.

    The first row whose cells fuzzy-match at least ``threshold`` of the expected
    headers, and which has at least half as many non-empty cells as there are
    expected headers, wins. Otherwise the first row with enough non-empty cells
    is used, and failing that row 0.
    """
    if not rows:
        return HeaderMatch(0, [])
    if threshold is None:
        threshold = settings.header_match_threshold

    expected = [h for h in expected_headers if h]
    # Single-column sheets (tracks) can never show two filled header cells.
    min_cells = min(2, len(expected)) if expected else 2
    fallback: Optional[int] = None

    for idx, row in enumerate(rows):
        filled = _non_empty(row)
        if filled < min_cells:
            continue
        if fallback is None:
            fallback = idx
        if not expected:
            break
        matched = sum(1 for h in expected if any(fuzzy_match(h, c) for c in row))
        if matched / len(expected) >= threshold and filled >= len(expected) / 2:
            return HeaderMatch(idx, [c.strip() for c in rows[idx]])

    idx = fallback if fallback is not None else 0
    logger.debug("No header row matched %s; falling back to row %d", list(expected), idx)
    return HeaderMatch(idx, [c.strip() for c in rows[idx]])


def data_rows(rows: Sequence[Sequence[str]], match: HeaderMatch) -> List[List[str]]:
    """Rows below the header row. No header means no data."""
    if not match.headers:
        return []
    return [list(r) for r in rows[match.header_row_index + 1:]]


def find_sheet(sheets: Dict[str, Matrix], *names: str) -> Optional[str]:
    """Sheet title matching any of ``names`` (case-insensitive, fuzzy)."""
    for title in sheets:
        if any(_norm(title) == _norm(n) for n in names):
            return title
    for title in sheets:
        if any(fuzzy_match(n, title) for n in names):
            return title
    return None
