from __future__ import annotations

import logging
import re
from pathlib import Path

import openpyxl
from sqlalchemy import select
from sqlalchemy.orm import Session

from supplyscan.models import Company
from supplyscan.schemas import ImportResult

log = logging.getLogger(__name__)

_ID_RE = re.compile(r"[^a-z0-9-]+")

# Column order used when the sheet has no recognizable header
_DEFAULT_COLS = {"id": 0, "ticker": 1, "name": 2}


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _col(row: tuple, idx: int) -> object:
    """Safely get a column value from a row tuple."""
    return row[idx] if idx < len(row) else None


def slugify(value: str) -> str:
    """Stable company id from a ticker or name: lowercase, dash-separated."""
    return _ID_RE.sub("-", value.strip().lower()).strip("-")


def _header_map(header: tuple) -> dict[str, int] | None:
    names = [_s(h).casefold() for h in header]
    if "ticker" not in names:
        return None
    cols = {"ticker": names.index("ticker")}
    for key in ("id", "name"):
        if key in names:
            cols[key] = names.index(key)
    return cols


def parse_roster(ws) -> list[dict[str, str]]:
    """Rows of ``{id, ticker, name}``; ids fall back to the slugified ticker."""
    rows = list(ws.iter_rows(values_only=True))
    if not rows:
        return []
    cols = _header_map(rows[0])
    if cols is None:
        cols = _DEFAULT_COLS
    else:
        rows = rows[1:]

    out: list[dict[str, str]] = []
    for row in rows:
        if not row:
            continue
        ticker = _s(_col(row, cols["ticker"])).upper()
        if not ticker:
            continue
        company_id = _s(_col(row, cols["id"])) if "id" in cols else ""
        name = _s(_col(row, cols["name"])) if "name" in cols else ""
        out.append({
            "id": slugify(company_id or ticker),
            "ticker": ticker,
            "name": name or ticker,
        })
    return out


def import_roster_xlsx(file_path: str | Path, session: Session) -> ImportResult:
    """Import the company roster from the first sheet of an XLSX. Upserts by id."""
    wb = openpyxl.load_workbook(Path(file_path), read_only=True, data_only=True)
    try:
        entries = parse_roster(wb[wb.sheetnames[0]])
    finally:
        wb.close()

    existing = {c.id: c for c in session.execute(select(Company)).scalars().all()}
    imported = updated = 0
    for data in entries:
        company = existing.get(data["id"])
        if company is None:
            company = Company(**data)
            session.add(company)
            existing[company.id] = company
            imported += 1
        else:
            company.ticker = data["ticker"]
            company.name = data["name"]
            updated += 1
    session.commit()
    log.info("Roster import: %d new, %d updated", imported, updated)
    return ImportResult(imported=imported, updated=updated)
