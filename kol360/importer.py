"""Bulk XLSX import of HCPs, aliases, and objective segment scores.

The first sheet is read; the first row holds the headers. Bad rows are
collected into ``errors`` with their spreadsheet row number and never abort
the import.
"""
from __future__ import annotations

import logging
from pathlib import Path

import openpyxl
from sqlalchemy.orm import Session

from kol360.errors import KolError, NotFoundError, ValidationError
from kol360.models import Hcp
from kol360.repositories import HcpRepository
from kol360.schemas import ImportResult
from kol360.segments import upsert_segment_scores
from kol360.validation import validate_npi, validate_person_name, validate_state_code

log = logging.getLogger(__name__)


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def _f(value: object) -> float | None:
    """Safely coerce cell value to float, None if blank or unparseable."""
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        return None


def _get(row: dict[str, object], *headers: str) -> object:
    """First non-empty value among alternative header spellings."""
    for h in headers:
        val = row.get(h)
        if val not in (None, ""):
            return val
    return None


def _read_rows(file_path: str | Path) -> list[dict[str, object]]:
    wb = openpyxl.load_workbook(Path(file_path), read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        rows = ws.iter_rows(values_only=True)
        header_row = next(rows, None)
        if not header_row:
            return []
        headers = [_s(h) for h in header_row]
        out: list[dict[str, object]] = []
        for row in rows:
            out.append({h: v for h, v in zip(headers, row) if h})
        return out
    finally:
        wb.close()


# Spreadsheet header -> segment name
SEGMENT_COLUMNS = {
    "Research & Publications": "publications",
    "Clinical Trials": "clinical_trials",
    "Trade Pubs": "trade_pubs",
    "Org Leadership": "org_leadership",
    "Org Awareness": "org_awareness",
    "Conference": "conference",
    "Social Media": "social_media",
    "Media/Podcasts": "media_podcasts",
}


def import_hcps(file_path: str | Path, session: Session, created_by: str = "") -> ImportResult:
    """Create or update HCPs keyed by NPI. Blank cells never overwrite stored values."""
    repo = HcpRepository(session)
    result = ImportResult()
    for idx, row in enumerate(_read_rows(file_path), start=2):
        if not any(v not in (None, "") for v in row.values()):
            continue
        result.total += 1
        try:
            npi = validate_npi(_s(_get(row, "NPI", "npi")))
            first = validate_person_name(_s(_get(row, "First Name", "first_name")), "First name")
            last = validate_person_name(_s(_get(row, "Last Name", "last_name")), "Last name")
            data = {
                "email": _s(_get(row, "Email", "email")) or None,
                "specialty": _s(_get(row, "Specialty", "specialty")) or None,
                "city": _s(_get(row, "City", "city")) or None,
                "state": validate_state_code(_s(_get(row, "State", "state"))),
            }
            existing = repo.get_by_npi(npi)
            if existing is not None:
                existing.first_name = first
                existing.last_name = last
                for field, val in data.items():
                    if val:
                        setattr(existing, field, val)
                result.updated += 1
            else:
                repo.add(Hcp(npi=npi, first_name=first, last_name=last, created_by=created_by, **data))
                result.created += 1
        except KolError as exc:
            log.warning("Import row %d skipped: %s", idx, exc.message)
            result.errors.append({"row": idx, "error": exc.message})
    session.flush()
    log.info("HCP import: %d created, %d updated, %d errors", result.created, result.updated, len(result.errors))
    return result


def import_aliases(file_path: str | Path, session: Session, created_by: str = "") -> ImportResult:
    """Add aliases from ``NPI`` / ``Alias`` columns. Existing aliases count as updated."""
    repo = HcpRepository(session)
    result = ImportResult()
    for idx, row in enumerate(_read_rows(file_path), start=2):
        if not any(v not in (None, "") for v in row.values()):
            continue
        result.total += 1
        try:
            npi = validate_npi(_s(_get(row, "NPI", "npi")))
            alias = _s(_get(row, "Alias", "alias"))
            if not alias:
                raise ValidationError("Alias is required")
            hcp = repo.get_by_npi(npi)
            if hcp is None:
                raise NotFoundError(f"HCP not found: {npi}")
            _, created = repo.add_alias(hcp.id, alias, created_by=created_by)
            if created:
                result.created += 1
            else:
                result.updated += 1
        except KolError as exc:
            log.warning("Import row %d skipped: %s", idx, exc.message)
            result.errors.append({"row": idx, "error": exc.message})
    log.info("Alias import: %d created, %d existing, %d errors", result.created, result.updated, len(result.errors))
    return result


def import_segment_scores(
    file_path: str | Path, session: Session, disease_area_id: int, source: str = "xlsx",
) -> ImportResult:
    """Upsert objective segment scores for one disease area, keyed by NPI."""
    repo = HcpRepository(session)
    result = ImportResult()
    for idx, row in enumerate(_read_rows(file_path), start=2):
        if not any(v not in (None, "") for v in row.values()):
            continue
        result.total += 1
        try:
            npi = validate_npi(_s(_get(row, "NPI", "npi")))
            hcp = repo.get_by_npi(npi)
            if hcp is None:
                raise NotFoundError(f"HCP not found: {npi}")
            values = {}
            for header, segment in SEGMENT_COLUMNS.items():
                raw = row.get(header)
                if raw in (None, ""):
                    continue
                value = _f(raw)
                if value is None:
                    raise ValidationError(f"{header} must be a number")
                values[segment] = value
            _, created = upsert_segment_scores(session, hcp.id, disease_area_id, values, source=source)
            if created:
                result.created += 1
            else:
                result.updated += 1
        except KolError as exc:
            log.warning("Import row %d skipped: %s", idx, exc.message)
            result.errors.append({"row": idx, "error": exc.message})
    log.info(
        "Segment score import (disease area %s): %d created, %d updated, %d errors",
        disease_area_id, result.created, result.updated, len(result.errors),
    )
    return result
