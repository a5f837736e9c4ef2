"""Time-versioned disease-area score snapshots.

Each (HCP, disease area) pair has a history of snapshot rows. Exactly one of
them at most is current (``is_current``, ``effective_to IS NULL``). Publishing
closes the current row and inserts a new one; history rows are never edited
afterwards. The partial unique index ``uq_da_score_current`` backs the
single-current-row rule in the database, so a concurrent publish that loses
the race fails with ``ConflictError`` instead of leaving two current rows.
"""
from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from kol360.errors import ConflictError, ValidationError
from kol360.models import SEGMENTS, HcpDiseaseAreaScore
from kol360.repositories import ScoreRepository

log = logging.getLogger(__name__)

SNAPSHOT_FIELDS = tuple(f"score_{s}" for s in SEGMENTS) + (
    "score_survey", "composite_score", "total_nomination_count", "campaign_count",
)


def _normalized(snapshot: Mapping[str, Any]) -> dict[str, Any]:
    values = {f: snapshot.get(f) for f in SNAPSHOT_FIELDS}
    values["total_nomination_count"] = int(values["total_nomination_count"] or 0)
    values["campaign_count"] = int(values["campaign_count"] or 0)
    return values


def _same_values(row: HcpDiseaseAreaScore, values: Mapping[str, Any]) -> bool:
    for f in SNAPSHOT_FIELDS:
        old, new = getattr(row, f), values[f]
        if old is None or new is None:
            if old is not new:
                return False
        elif not math.isclose(float(old), float(new), abs_tol=1e-9):
            return False
    return True


def publish_snapshot(
    session: Session,
    hcp_id: int,
    disease_area_id: int,
    snapshot: Mapping[str, Any],
    now: datetime | None = None,
) -> tuple[HcpDiseaseAreaScore, bool]:
    """Make *snapshot* the current row for the pair. Returns ``(row, created)``.

    Re-publishing values identical to the current row is a no-op
    (``created`` is False). Nothing is committed here; on an integrity
    violation the session is rolled back and ``ConflictError`` is raised.
    """
    unknown = set(snapshot) - set(SNAPSHOT_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown snapshot fields: {', '.join(sorted(unknown))}")

    values = _normalized(snapshot)
    now = now or datetime.now(UTC)
    repo = ScoreRepository(session)
    current = repo.current_snapshot(hcp_id, disease_area_id)
    if current is not None and _same_values(current, values):
        return current, False

    try:
        if current is not None:
            current.is_current = False
            current.effective_to = now
            session.flush()
        row = HcpDiseaseAreaScore(
            hcp_id=hcp_id, disease_area_id=disease_area_id,
            effective_from=now, effective_to=None, is_current=True, last_calculated_at=now,
            **values,
        )
        session.add(row)
        session.flush()
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError(
            f"Concurrent publish for HCP {hcp_id} in disease area {disease_area_id}; reload and retry"
        ) from exc

    log.info("Published snapshot %s for HCP %s / disease area %s", row.id, hcp_id, disease_area_id)
    return row, True
