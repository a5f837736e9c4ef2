"""Objective segment scores (publications, trials, ...) per HCP and disease area.

These come from outside the survey workflow, usually an XLSX upload (see
``kol360.importer``). The composite engine only reads them.
"""
from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime

from sqlalchemy.orm import Session

from kol360.errors import ValidationError
from kol360.models import SEGMENTS, DiseaseArea, Hcp, HcpSegmentScore
from kol360.repositories import ScoreRepository, require_entity
from kol360.validation import validate_percentage


def upsert_segment_scores(
    session: Session,
    hcp_id: int,
    disease_area_id: int,
    values: Mapping[str, float | None],
    source: str = "",
) -> tuple[HcpSegmentScore, bool]:
    """Store the supplied segments for the pair. Returns ``(row, created)``.

    Only the segments present in *values* are written; the others keep their
    stored value. Caller must commit.
    """
    unknown = set(values) - set(SEGMENTS)
    if unknown:
        raise ValidationError(f"Unknown segments: {', '.join(sorted(unknown))}")
    cleaned = {s: validate_percentage(v, s) for s, v in values.items()}

    require_entity(session, Hcp, hcp_id, "HCP")
    require_entity(session, DiseaseArea, disease_area_id, "Disease area")
    repo = ScoreRepository(session)
    row = repo.get_segment_score(hcp_id, disease_area_id)
    created = row is None
    if row is None:
        row = HcpSegmentScore(hcp_id=hcp_id, disease_area_id=disease_area_id)
        session.add(row)
    for segment, value in cleaned.items():
        setattr(row, f"score_{segment}", value)
    row.source = source or row.source
    row.imported_at = datetime.now(UTC)
    session.flush()
    return row, created


def segment_score_dict(row: HcpSegmentScore | None) -> dict[str, float | None]:
    if row is None:
        return {s: None for s in SEGMENTS}
    return {s: getattr(row, f"score_{s}") for s in SEGMENTS}
