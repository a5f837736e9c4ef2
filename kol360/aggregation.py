"""Survey score aggregation for a campaign.

Resolved nominations (MATCHED and NEW_HCP) are counted per nominated HCP and
per nomination type. Counts are normalized against the campaign maximum::

    score_<type> = count_<type> / max(count_<type> over HCPs) * 100
    score_survey = nomination_count / max(nomination_count over HCPs) * 100

so the most-nominated HCP scores 100, scores grow with nomination count, and
everything stays within [0, 100].
"""
from __future__ import annotations

import logging
from collections import Counter, defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy.orm import Session

from kol360.models import NOMINATION_TYPES, HcpCampaignScore
from kol360.repositories import NominationRepository, ScoreRepository

log = logging.getLogger(__name__)


@dataclass
class SurveyAggregate:
    hcp_id: int
    counts: dict[str, int] = field(default_factory=lambda: {t: 0 for t in NOMINATION_TYPES})
    scores: dict[str, float] = field(default_factory=lambda: {t: 0.0 for t in NOMINATION_TYPES})
    nomination_count: int = 0
    score_survey: float = 0.0


def _normalize(count: int, max_count: int) -> float:
    if max_count <= 0:
        return 0.0
    return round(count / max_count * 100.0, 2)


def aggregate_nominations(resolved: Iterable[tuple[int, str]]) -> dict[int, SurveyAggregate]:
    """Aggregate ``(hcp_id, nomination_type)`` pairs into per-HCP survey scores.

    The result is keyed and ordered by HCP id.
    """
    by_hcp: dict[int, Counter[str]] = defaultdict(Counter)
    for hcp_id, nomination_type in resolved:
        by_hcp[hcp_id][nomination_type] += 1

    max_by_type = {t: max((c[t] for c in by_hcp.values()), default=0) for t in NOMINATION_TYPES}
    max_total = max((sum(c.values()) for c in by_hcp.values()), default=0)

    out: dict[int, SurveyAggregate] = {}
    for hcp_id in sorted(by_hcp):
        counts = by_hcp[hcp_id]
        agg = SurveyAggregate(hcp_id=hcp_id)
        for t in NOMINATION_TYPES:
            agg.counts[t] = counts[t]
            agg.scores[t] = _normalize(counts[t], max_by_type[t])
        agg.nomination_count = sum(counts.values())
        agg.score_survey = _normalize(agg.nomination_count, max_total)
        out[hcp_id] = agg
    return out


def _survey_values(row: HcpCampaignScore) -> tuple:
    per_type = tuple(getattr(row, f"score_{t.lower()}") for t in NOMINATION_TYPES)
    return (*per_type, row.nomination_count, row.score_survey)


def _apply(row: HcpCampaignScore, agg: SurveyAggregate, now: datetime) -> None:
    previous = _survey_values(row)
    for t in NOMINATION_TYPES:
        suffix = t.lower()
        setattr(row, f"count_{suffix}", agg.counts[t])
        setattr(row, f"score_{suffix}", agg.scores[t])
    row.nomination_count = agg.nomination_count
    row.score_survey = agg.score_survey
    row.calculated_at = now
    if row.published_at is not None and _survey_values(row) != previous:
        # Changed values wait for the next publish
        row.published_at = None


def calculate_survey_scores(session: Session, campaign_id: int) -> dict[str, int]:
    """Recompute survey scores for a campaign (caller must commit).

    Existing campaign rows for HCPs with no resolved nominations are reset to
    zero rather than left stale.
    """
    scores = ScoreRepository(session)
    scores.require_campaign(campaign_id)
    resolved = NominationRepository(session).resolved_for_campaign(campaign_id)
    aggregates = aggregate_nominations(
        (n.matched_hcp_id, n.question.nomination_type) for n in resolved
    )

    now = datetime.now(UTC)
    existing = {row.hcp_id: row for row in scores.campaign_scores(campaign_id)}
    updated = 0
    for hcp_id, agg in aggregates.items():
        row = existing.pop(hcp_id, None)
        if row is None:
            row = HcpCampaignScore(hcp_id=hcp_id, campaign_id=campaign_id)
            session.add(row)
        _apply(row, agg, now)
        updated += 1
    for row in existing.values():
        _apply(row, SurveyAggregate(hcp_id=row.hcp_id), now)
        updated += 1
    session.flush()

    log.info("Survey scores for campaign %s: %d HCPs, %d rows updated", campaign_id, len(aggregates), updated)
    return {"processed": len(aggregates), "updated": updated}
