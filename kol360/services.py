"""Shared business logic behind the KOL360 API.

Functions here take an open session, validate their input, mutate through
the repositories, and leave committing to the caller (the FastAPI route
handlers, which commit on the session from the ``db_session`` dependency).
"""
from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from kol360.aggregation import calculate_survey_scores
from kol360.errors import ConflictError, InvalidStateError, ValidationError
from kol360.matching import RankedCandidate
from kol360.models import (
    EXCLUDED, NOMINATION_TYPES, RESOLVED_STATUSES, SEGMENTS, UNMATCHED, Campaign, CompositeScoreConfig,
    DiseaseArea, Hcp, HcpAlias, HcpCampaignScore, HcpDiseaseAreaScore, Nomination, NominationQuestion,
)
from kol360.repositories import HcpRepository, NominationRepository, ScoreRepository, require_entity
from kol360.scoring import (
    DEFAULT_MISSING_POLICY, DEFAULT_WEIGHTS, MissingSegmentPolicy, ScoreWeights, compute_composite,
    segment_values,
)
from kol360.validation import (
    validate_nomination_type, validate_npi, validate_person_name, validate_raw_name,
    validate_state_code, validate_weights,
)
from kol360.versioning import publish_snapshot

log = logging.getLogger(__name__)

HCP_UPDATABLE_FIELDS = ("first_name", "last_name", "email", "specialty", "city", "state")

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def alias_dict(alias: HcpAlias) -> dict:
    return {"id": alias.id, "alias_name": alias.alias_name, "created_by": alias.created_by}


def hcp_summary(hcp: Hcp) -> dict:
    return {
        "id": hcp.id, "npi": hcp.npi, "first_name": hcp.first_name, "last_name": hcp.last_name,
        "email": hcp.email, "specialty": hcp.specialty, "city": hcp.city, "state": hcp.state,
        "is_active": hcp.is_active,
        "aliases": [alias_dict(a) for a in hcp.aliases],
    }


def nomination_summary(nom: Nomination) -> dict:
    matched = nom.matched_hcp
    return {
        "id": nom.id, "campaign_id": nom.campaign_id, "question_id": nom.question_id,
        "nomination_type": nom.question.nomination_type if nom.question else None,
        "raw_name_entered": nom.raw_name_entered, "match_status": nom.match_status,
        "matched_hcp_id": nom.matched_hcp_id,
        "matched_hcp": (
            {"id": matched.id, "npi": matched.npi, "first_name": matched.first_name,
             "last_name": matched.last_name}
            if matched else None
        ),
        "match_type": nom.match_type, "match_score": nom.match_score,
        "matched_by": nom.matched_by, "matched_at": _iso(nom.matched_at),
        "exclude_reason": nom.exclude_reason,
    }


def candidate_dict(candidate: RankedCandidate) -> dict:
    return {"hcp": hcp_summary(candidate.hcp), "score": candidate.score, "match_type": candidate.match_type}


def config_dict(config: CompositeScoreConfig) -> dict:
    weights = ScoreWeights(**{f: getattr(config, f) for f in DEFAULT_WEIGHTS.to_dict()})
    return {"id": config.id, "campaign_id": config.campaign_id, **weights.to_dict()}


def campaign_score_dict(row: HcpCampaignScore) -> dict:
    out: dict[str, Any] = {"id": row.id, "hcp_id": row.hcp_id, "campaign_id": row.campaign_id}
    if row.hcp is not None:
        out["hcp_name"] = row.hcp.full_name
        out["npi"] = row.hcp.npi
    for t in NOMINATION_TYPES:
        suffix = t.lower()
        out[f"count_{suffix}"] = getattr(row, f"count_{suffix}")
        out[f"score_{suffix}"] = getattr(row, f"score_{suffix}")
    out.update({
        "score_survey": row.score_survey, "nomination_count": row.nomination_count,
        "composite_score": row.composite_score,
        "calculated_at": _iso(row.calculated_at), "published_at": _iso(row.published_at),
    })
    return out


def snapshot_dict(row: HcpDiseaseAreaScore) -> dict:
    out: dict[str, Any] = {
        "id": row.id, "hcp_id": row.hcp_id, "disease_area_id": row.disease_area_id,
    }
    out.update({f"score_{s}": getattr(row, f"score_{s}") for s in SEGMENTS})
    out.update({
        "score_survey": row.score_survey, "composite_score": row.composite_score,
        "total_nomination_count": row.total_nomination_count, "campaign_count": row.campaign_count,
        "effective_from": _iso(row.effective_from), "effective_to": _iso(row.effective_to),
        "is_current": row.is_current,
    })
    return out


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for field in fields:
        val = updates.get(field)
        if val is not None:
            setattr(obj, field, val)


# ---------------------------------------------------------------------------
# Campaigns and nominations intake
# ---------------------------------------------------------------------------


def create_campaign(
    session: Session, name: str, disease_area_id: int, questions: list[dict[str, str]] | None = None,
) -> Campaign:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Campaign name is required")
    require_entity(session, DiseaseArea, disease_area_id, "Disease area")
    campaign = Campaign(name=name, disease_area_id=disease_area_id, status="ACTIVE")
    for q in questions or []:
        campaign.questions.append(NominationQuestion(
            text=q.get("text", ""), nomination_type=validate_nomination_type(q.get("nomination_type", "")),
        ))
    session.add(campaign)
    session.flush()
    return campaign


def submit_nomination(
    session: Session, campaign_id: int, question_id: int, raw_name: str,
    nominator_hcp_id: int | None = None,
) -> Nomination:
    """Record one free-text nomination from a survey response."""
    raw = validate_raw_name(raw_name)
    campaign = require_entity(session, Campaign, campaign_id, "Campaign")
    question = require_entity(session, NominationQuestion, question_id, "Question")
    if question.campaign_id != campaign.id:
        raise ValidationError(f"Question {question_id} does not belong to campaign {campaign_id}")
    if nominator_hcp_id is not None:
        require_entity(session, Hcp, nominator_hcp_id, "HCP")
    return NominationRepository(session).add(Nomination(
        campaign_id=campaign.id, question_id=question.id, raw_name_entered=raw,
        nominator_hcp_id=nominator_hcp_id, match_status=UNMATCHED,
    ))


# ---------------------------------------------------------------------------
# HCP registry
# ---------------------------------------------------------------------------


def create_hcp(session: Session, fields: dict[str, Any], created_by: str = "") -> Hcp:
    npi = validate_npi(fields.get("npi"))
    repo = HcpRepository(session)
    if repo.get_by_npi(npi) is not None:
        raise ConflictError(f"An HCP with NPI {npi} already exists")
    return repo.add(Hcp(
        npi=npi,
        first_name=validate_person_name(fields.get("first_name"), "First name"),
        last_name=validate_person_name(fields.get("last_name"), "Last name"),
        email=fields.get("email") or None, specialty=fields.get("specialty") or None,
        city=fields.get("city") or None, state=validate_state_code(fields.get("state")),
        created_by=created_by,
    ))


def update_hcp(session: Session, hcp_id: int, updates: dict[str, Any]) -> Hcp:
    hcp = HcpRepository(session).require(hcp_id)
    updates = dict(updates)
    if updates.get("first_name") is not None:
        updates["first_name"] = validate_person_name(updates["first_name"], "First name")
    if updates.get("last_name") is not None:
        updates["last_name"] = validate_person_name(updates["last_name"], "Last name")
    if updates.get("state") is not None:
        updates["state"] = validate_state_code(updates["state"])
    apply_updates(hcp, updates, HCP_UPDATABLE_FIELDS)
    session.flush()
    return hcp


def deactivate_hcp(session: Session, hcp_id: int) -> Hcp:
    hcp = HcpRepository(session).require(hcp_id)
    hcp.is_active = False
    session.flush()
    log.info("HCP %s deactivated", hcp_id)
    return hcp


def add_alias(session: Session, hcp_id: int, alias_name: str, created_by: str = "") -> tuple[HcpAlias, bool]:
    """Explicit operator alias. Adding an alias that already exists is a no-op."""
    alias_name = validate_raw_name(alias_name)
    repo = HcpRepository(session)
    repo.require(hcp_id)
    return repo.add_alias(hcp_id, alias_name, created_by=created_by)


# ---------------------------------------------------------------------------
# Composite score configuration
# ---------------------------------------------------------------------------


def get_config(session: Session, campaign_id: int) -> CompositeScoreConfig:
    """Return the campaign's weight config, creating it with defaults if missing."""
    repo = ScoreRepository(session)
    repo.require_campaign(campaign_id)
    config = repo.get_config(campaign_id)
    if config is None:
        config = repo.save_config(campaign_id, DEFAULT_WEIGHTS.to_dict())
    return config


def update_config(session: Session, campaign_id: int, weights: dict[str, float]) -> CompositeScoreConfig:
    cleaned = validate_weights(weights)
    repo = ScoreRepository(session)
    repo.require_campaign(campaign_id)
    return repo.save_config(campaign_id, cleaned)


def reset_config(session: Session, campaign_id: int) -> CompositeScoreConfig:
    repo = ScoreRepository(session)
    repo.require_campaign(campaign_id)
    return repo.save_config(campaign_id, DEFAULT_WEIGHTS.to_dict())


# ---------------------------------------------------------------------------
# Score calculation
# ---------------------------------------------------------------------------


def calculate_composite_scores(
    session: Session, campaign_id: int, policy: MissingSegmentPolicy = DEFAULT_MISSING_POLICY,
) -> dict[str, int]:
    """Recompute composite scores for every HCP with a campaign score row (caller must commit).

    Survey scores must be calculated first; objective segments come from the
    segment score store for the campaign's disease area.
    """
    repo = ScoreRepository(session)
    campaign = repo.require_campaign(campaign_id)
    weights = ScoreWeights.from_config(get_config(session, campaign_id))
    rows = repo.campaign_scores(campaign_id)
    segments = repo.segment_scores_for((r.hcp_id for r in rows), campaign.disease_area_id)

    now = datetime.now(UTC)
    for row in rows:
        result = compute_composite(
            weights, segment_values(segments.get(row.hcp_id)), row.score_survey, policy,
        )
        if row.published_at is not None and row.composite_score != result.score:
            row.published_at = None
        row.composite_score = result.score
        row.calculated_at = now
    session.flush()
    log.info("Composite scores for campaign %s: %d updated", campaign_id, len(rows))
    return {"processed": len(rows), "updated": len(rows)}


def calculate_all(
    session: Session, campaign_id: int, policy: MissingSegmentPolicy = DEFAULT_MISSING_POLICY,
) -> dict[str, dict[str, int]]:
    survey = calculate_survey_scores(session, campaign_id)
    composite = calculate_composite_scores(session, campaign_id, policy)
    return {"survey": survey, "composite": composite}


def calculation_status(session: Session, campaign_id: int) -> dict[str, Any]:
    repo = ScoreRepository(session)
    repo.require_campaign(campaign_id)
    counts = NominationRepository(session).status_counts(campaign_id)
    rows = repo.campaign_scores(campaign_id)
    resolved = sum(counts[s] for s in RESOLVED_STATUSES)
    with_composite = sum(1 for r in rows if r.composite_score is not None)
    return {
        "total_nominations": sum(counts.values()),
        "resolved_nominations": resolved,
        "unmatched_nominations": counts[UNMATCHED],
        "excluded_nominations": counts[EXCLUDED],
        "hcp_scores_calculated": len(rows),
        "composite_scores_calculated": with_composite,
        "published_scores": sum(1 for r in rows if r.published_at is not None),
        "ready_to_publish": resolved > 0 and bool(rows) and with_composite == len(rows),
    }


def list_campaign_scores(session: Session, campaign_id: int, *, include_unpublished: bool = False) -> list[dict]:
    """Campaign scores, highest composite first. Unpublished rows only on request."""
    repo = ScoreRepository(session)
    repo.require_campaign(campaign_id)
    rows = repo.campaign_scores(campaign_id, published_only=not include_unpublished)
    rows.sort(key=lambda r: (-(r.composite_score if r.composite_score is not None else -1), r.hcp_id))
    return [campaign_score_dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------


def build_snapshot(
    session: Session, row: HcpCampaignScore, campaign: Campaign, weights: ScoreWeights,
    policy: MissingSegmentPolicy = DEFAULT_MISSING_POLICY,
) -> dict[str, Any]:
    """Disease-area snapshot for one HCP as of publishing *campaign*.

    The survey score is the mean over the HCP's published campaigns in the
    disease area (plus this one); nomination and campaign counts are totals.
    """
    repo = ScoreRepository(session)
    da_id = campaign.disease_area_id
    history = repo.campaign_scores_in_disease_area(row.hcp_id, da_id, include_campaign_id=campaign.id)
    surveys = [h.score_survey for h in history if h.score_survey is not None]
    survey = round(sum(surveys) / len(surveys), 2) if surveys else None
    segments = segment_values(repo.get_segment_score(row.hcp_id, da_id))
    composite = compute_composite(weights, segments, survey, policy)
    return {
        **{f"score_{s}": v for s, v in segments.items()},
        "score_survey": survey,
        "composite_score": composite.score,
        "total_nomination_count": sum(h.nomination_count for h in history),
        "campaign_count": len(history),
    }


def publish_campaign(
    session: Session, campaign_id: int, published_by: str = "",
    policy: MissingSegmentPolicy = DEFAULT_MISSING_POLICY,
) -> dict[str, int]:
    """Publish a campaign's scores into the disease-area history (caller must commit).

    All snapshot writes share the caller's transaction: if any of them fails,
    the whole publish is rolled back.
    """
    repo = ScoreRepository(session)
    campaign = repo.require_campaign(campaign_id)
    rows = repo.campaign_scores(campaign_id)
    if not rows or any(r.composite_score is None for r in rows):
        raise InvalidStateError("Calculate composite scores before publishing")
    weights = ScoreWeights.from_config(get_config(session, campaign_id))

    now = datetime.now(UTC)
    created = 0
    for row in rows:
        snapshot = build_snapshot(session, row, campaign, weights, policy)
        _, was_created = publish_snapshot(session, row.hcp_id, campaign.disease_area_id, snapshot, now)
        created += int(was_created)
        if row.published_at is None:
            row.published_at = now
    campaign.status = "PUBLISHED"
    campaign.published_at = campaign.published_at or now
    session.flush()
    log.info(
        "Campaign %s published by %s: %d HCPs, %d new snapshots",
        campaign_id, published_by or "unknown", len(rows), created,
    )
    return {"processed": len(rows), "snapshots_created": created}


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


def compute_stats(session: Session) -> dict:
    def count(stmt) -> int:
        return session.execute(stmt).scalar_one()

    by_status = dict(session.execute(
        select(Nomination.match_status, func.count(Nomination.id)).group_by(Nomination.match_status)
    ).all())
    return {
        "hcps": count(select(func.count(Hcp.id))),
        "active_hcps": count(select(func.count(Hcp.id)).where(Hcp.is_active.is_(True))),
        "aliases": count(select(func.count(HcpAlias.id))),
        "campaigns": count(select(func.count(Campaign.id))),
        "nominations_by_status": by_status,
        "current_snapshots": count(
            select(func.count(HcpDiseaseAreaScore.id)).where(HcpDiseaseAreaScore.is_current.is_(True))
        ),
    }
