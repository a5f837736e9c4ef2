from __future__ import annotations

import logging
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Generator

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from kol360 import services
from kol360.aggregation import calculate_survey_scores
from kol360.db import get_session, init_db
from kol360.errors import KolError, ValidationError
from kol360.importer import import_aliases, import_hcps, import_segment_scores
from kol360.models import MATCH_STATUSES, Campaign, DiseaseArea
from kol360.repositories import HcpRepository, NominationRepository, ScoreRepository, require_entity
from kol360.resolver import SUGGESTION_LIMIT, NominationResolver
from kol360.schemas import (
    AliasAddResult,
    AliasCreate,
    BulkMatchOut,
    CalculationStatus,
    CampaignCreate,
    CampaignOut,
    CandidateOut,
    CreateHcpFromNomination,
    ExcludeRequest,
    HcpCreate,
    HcpListResponse,
    HcpOut,
    HcpUpdate,
    ImportResult,
    MatchOut,
    MatchRequest,
    NominationCreate,
    NominationListResponse,
    NominationOut,
    NominationStats,
    PublishRequest,
    RawNameUpdate,
    ScoreConfigIn,
    ScoreConfigOut,
    SegmentScoresIn,
    StatsOut,
)
from kol360.scoring import DEFAULT_MISSING_POLICY, MissingSegmentPolicy
from kol360.segments import segment_score_dict, upsert_segment_scores

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="KOL360",
    version="0.1.0",
    description=(
        "Key Opinion Leader scoring API. Resolve free-text survey nominations "
        "to canonical HCP records, then combine survey and objective segment "
        "scores into versioned composite rankings per disease area. "
        "All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Nominations", "description": "Review, match, and exclude survey nominations."},
        {"name": "HCPs", "description": "Canonical HCP registry and name aliases."},
        {"name": "Campaigns", "description": "Survey campaigns and their nomination questions."},
        {"name": "Scoring", "description": "Composite weights, score calculation, and publishing."},
        {"name": "Disease Areas", "description": "Published, time-versioned disease-area scores."},
        {"name": "Import", "description": "Bulk import HCPs, aliases, and segment scores from XLSX."},
        {"name": "Stats", "description": "Aggregate statistics."},
    ],
)


@app.exception_handler(KolError)
async def kol_error_handler(request: Request, exc: KolError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _policy(value: str | None) -> MissingSegmentPolicy:
    if not value:
        return DEFAULT_MISSING_POLICY
    try:
        return MissingSegmentPolicy(value.lower())
    except ValueError as exc:
        raise ValidationError(f"Unknown missing-segment policy: {value}") from exc


def _status_filter(value: str | None) -> str | None:
    if not value:
        return None
    status = value.strip().upper()
    if status not in MATCH_STATUSES:
        raise ValidationError(f"Unknown match status: {value}")
    return status


def _campaign_dict(campaign: Campaign) -> dict:
    return {
        "id": campaign.id, "name": campaign.name, "disease_area_id": campaign.disease_area_id,
        "status": campaign.status,
        "published_at": campaign.published_at.isoformat() if campaign.published_at else None,
        "questions": [
            {"id": q.id, "text": q.text, "nomination_type": q.nomination_type} for q in campaign.questions
        ],
    }


async def _run_import(file: UploadFile, importer) -> ImportResult:
    if not file.filename or not file.filename.endswith(".xlsx"):
        raise HTTPException(400, "Only .xlsx files are supported")
    content = await file.read()
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
            tmp_path = Path(f.name)
            f.write(content)
        return importer(tmp_path)
    finally:
        if tmp_path:
            tmp_path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Routes: Campaigns
# ---------------------------------------------------------------------------


@app.post("/api/campaigns", response_model=CampaignOut, status_code=201,
          tags=["Campaigns"], summary="Create a campaign with its nomination questions")
async def create_campaign(body: CampaignCreate, session: Session = Depends(db_session)):
    campaign = services.create_campaign(
        session, body.name, body.disease_area_id, [q.model_dump() for q in body.questions],
    )
    session.commit()
    return _campaign_dict(campaign)


@app.get("/api/campaigns/{campaign_id}", response_model=CampaignOut,
         tags=["Campaigns"], summary="Get a campaign with its questions")
async def get_campaign(campaign_id: int, session: Session = Depends(db_session)):
    return _campaign_dict(ScoreRepository(session).require_campaign(campaign_id))


# ---------------------------------------------------------------------------
# Routes: Nominations (fixed paths before parameterized to avoid shadowing)
# ---------------------------------------------------------------------------


@app.post("/api/campaigns/{campaign_id}/nominations", response_model=NominationOut, status_code=201,
          tags=["Nominations"], summary="Submit a free-text nomination")
async def submit_nomination(campaign_id: int, body: NominationCreate, session: Session = Depends(db_session)):
    nom = services.submit_nomination(
        session, campaign_id, body.question_id, body.raw_name_entered, body.nominator_hcp_id,
    )
    session.commit()
    return services.nomination_summary(nom)


@app.get("/api/campaigns/{campaign_id}/nominations", response_model=NominationListResponse,
         tags=["Nominations"], summary="List a campaign's nominations, optionally filtered by status")
async def list_nominations(
    campaign_id: int,
    status: str | None = Query(None, description="UNMATCHED, MATCHED, NEW_HCP, or EXCLUDED"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    session: Session = Depends(db_session),
):
    ScoreRepository(session).require_campaign(campaign_id)
    items, total = NominationRepository(session).list_for_campaign(
        campaign_id, status=_status_filter(status), page=page, limit=limit,
    )
    return {"items": [services.nomination_summary(n) for n in items], "total": total, "page": page, "limit": limit}


@app.get("/api/campaigns/{campaign_id}/nominations/stats", response_model=NominationStats,
         tags=["Nominations"], summary="Nomination counts per match status")
async def nomination_stats(campaign_id: int, session: Session = Depends(db_session)):
    ScoreRepository(session).require_campaign(campaign_id)
    return NominationResolver(session).stats(campaign_id)


@app.post("/api/campaigns/{campaign_id}/nominations/bulk-auto-match", response_model=BulkMatchOut,
          tags=["Nominations"], summary="Auto-match every unambiguous high-confidence nomination")
async def bulk_auto_match(campaign_id: int, session: Session = Depends(db_session)):
    ScoreRepository(session).require_campaign(campaign_id)
    summary = NominationResolver(session).bulk_auto_match(campaign_id)
    session.commit()
    return summary.to_dict()


@app.get("/api/nominations/{nomination_id}/suggestions", response_model=list[CandidateOut],
         tags=["Nominations"], summary="Ranked HCP candidates for a nomination")
async def nomination_suggestions(
    nomination_id: int,
    limit: int = Query(SUGGESTION_LIMIT, ge=1, le=50),
    session: Session = Depends(db_session),
):
    return [services.candidate_dict(c) for c in NominationResolver(session).suggestions(nomination_id, limit)]


@app.post("/api/nominations/{nomination_id}/match", response_model=MatchOut,
          tags=["Nominations"], summary="Match a nomination to an existing HCP")
async def match_nomination(nomination_id: int, body: MatchRequest, session: Session = Depends(db_session)):
    result = NominationResolver(session).match(
        nomination_id, body.hcp_id, add_alias=body.add_alias, matched_by=body.matched_by,
    )
    session.commit()
    return {"nomination": services.nomination_summary(result.nomination), "alias_added": result.alias_added}


@app.post("/api/nominations/{nomination_id}/create-hcp", response_model=MatchOut, status_code=201,
          tags=["Nominations"], summary="Create a new HCP from a nomination and link it")
async def create_hcp_from_nomination(
    nomination_id: int, body: CreateHcpFromNomination, session: Session = Depends(db_session),
):
    result = NominationResolver(session).create_identity(
        nomination_id, body.model_dump(exclude={"matched_by"}), matched_by=body.matched_by,
    )
    session.commit()
    return {"nomination": services.nomination_summary(result.nomination), "alias_added": result.alias_added}


@app.post("/api/nominations/{nomination_id}/exclude", response_model=NominationOut,
          tags=["Nominations"], summary="Exclude a nomination from scoring")
async def exclude_nomination(nomination_id: int, body: ExcludeRequest, session: Session = Depends(db_session)):
    nom = NominationResolver(session).exclude(nomination_id, matched_by=body.matched_by, reason=body.reason)
    session.commit()
    return services.nomination_summary(nom)


@app.put("/api/nominations/{nomination_id}/raw-name", response_model=NominationOut,
         tags=["Nominations"], summary="Correct the raw text of an unmatched nomination")
async def update_raw_name(nomination_id: int, body: RawNameUpdate, session: Session = Depends(db_session)):
    nom = NominationResolver(session).update_raw_name(nomination_id, body.raw_name_entered)
    session.commit()
    return services.nomination_summary(nom)


# ---------------------------------------------------------------------------
# Routes: HCPs
# ---------------------------------------------------------------------------


@app.get("/api/hcps", response_model=HcpListResponse,
         tags=["HCPs"], summary="Search HCPs by name, NPI, email, or alias")
async def list_hcps(
    search: str | None = Query(None, description="Free-text search across NPI, names, email, and aliases"),
    specialty: str | None = Query(None),
    state: str | None = Query(None, description="2-letter state code"),
    include_inactive: bool = Query(False),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    session: Session = Depends(db_session),
):
    items, total = HcpRepository(session).search(
        query=search, specialty=specialty, state=state,
        include_inactive=include_inactive, page=page, limit=limit,
    )
    return {"items": [services.hcp_summary(h) for h in items], "total": total}


@app.post("/api/hcps", response_model=HcpOut, status_code=201,
          tags=["HCPs"], summary="Register a new HCP")
async def create_hcp(body: HcpCreate, session: Session = Depends(db_session)):
    hcp = services.create_hcp(session, body.model_dump())
    session.commit()
    return services.hcp_summary(hcp)


@app.get("/api/hcps/{hcp_id}", response_model=HcpOut, tags=["HCPs"], summary="Get an HCP with aliases")
async def get_hcp(hcp_id: int, session: Session = Depends(db_session)):
    return services.hcp_summary(HcpRepository(session).require(hcp_id))


@app.put("/api/hcps/{hcp_id}", response_model=HcpOut,
         tags=["HCPs"], summary="Update HCP fields (partial update, null fields ignored)")
async def update_hcp(hcp_id: int, body: HcpUpdate, session: Session = Depends(db_session)):
    hcp = services.update_hcp(session, hcp_id, body.model_dump())
    session.commit()
    return services.hcp_summary(hcp)


@app.delete("/api/hcps/{hcp_id}", response_model=HcpOut,
            tags=["HCPs"], summary="Deactivate an HCP (excluded from matching, history kept)")
async def deactivate_hcp(hcp_id: int, session: Session = Depends(db_session)):
    hcp = services.deactivate_hcp(session, hcp_id)
    session.commit()
    return services.hcp_summary(hcp)


@app.post("/api/hcps/{hcp_id}/aliases", response_model=AliasAddResult,
          tags=["HCPs"], summary="Add a name alias (no-op if it already exists)")
async def add_alias(hcp_id: int, body: AliasCreate, session: Session = Depends(db_session)):
    alias, created = services.add_alias(session, hcp_id, body.alias_name)
    session.commit()
    return {"alias": services.alias_dict(alias), "created": created}


@app.delete("/api/hcps/{hcp_id}/aliases/{alias_id}", tags=["HCPs"], summary="Remove a name alias")
async def remove_alias(hcp_id: int, alias_id: int, session: Session = Depends(db_session)):
    HcpRepository(session).remove_alias(hcp_id, alias_id)
    session.commit()
    return {"ok": True}


@app.get("/api/hcps/{hcp_id}/segment-scores/{disease_area_id}",
         tags=["HCPs"], summary="Objective segment scores for an HCP in a disease area")
async def get_segment_scores(hcp_id: int, disease_area_id: int, session: Session = Depends(db_session)):
    HcpRepository(session).require(hcp_id)
    require_entity(session, DiseaseArea, disease_area_id, "Disease area")
    return segment_score_dict(ScoreRepository(session).get_segment_score(hcp_id, disease_area_id))


@app.put("/api/hcps/{hcp_id}/segment-scores/{disease_area_id}",
         tags=["HCPs"], summary="Set objective segment scores (only supplied segments change)")
async def put_segment_scores(
    hcp_id: int, disease_area_id: int, body: SegmentScoresIn, session: Session = Depends(db_session),
):
    row, _ = upsert_segment_scores(session, hcp_id, disease_area_id, body.segment_values(), source=body.source)
    session.commit()
    return segment_score_dict(row)


# ---------------------------------------------------------------------------
# Routes: Import
# ---------------------------------------------------------------------------


@app.post("/api/import/hcps", response_model=ImportResult,
          tags=["Import"], summary="Import or update HCPs from an XLSX spreadsheet")
async def import_hcps_file(file: UploadFile = File(...), session: Session = Depends(db_session)):
    result = await _run_import(file, lambda path: import_hcps(path, session, created_by="import"))
    session.commit()
    return result


@app.post("/api/import/aliases", response_model=ImportResult,
          tags=["Import"], summary="Import HCP aliases (NPI, Alias) from an XLSX spreadsheet")
async def import_aliases_file(file: UploadFile = File(...), session: Session = Depends(db_session)):
    result = await _run_import(file, lambda path: import_aliases(path, session, created_by="import"))
    session.commit()
    return result


@app.post("/api/import/segment-scores/{disease_area_id}", response_model=ImportResult,
          tags=["Import"], summary="Import objective segment scores for a disease area")
async def import_segment_scores_file(
    disease_area_id: int, file: UploadFile = File(...), session: Session = Depends(db_session),
):
    require_entity(session, DiseaseArea, disease_area_id, "Disease area")
    result = await _run_import(file, lambda path: import_segment_scores(path, session, disease_area_id))
    session.commit()
    return result


# ---------------------------------------------------------------------------
# Routes: Scoring
# ---------------------------------------------------------------------------


@app.get("/api/campaigns/{campaign_id}/score-config", response_model=ScoreConfigOut,
         tags=["Scoring"], summary="Composite weights for a campaign (defaults if never set)")
async def get_score_config(campaign_id: int, session: Session = Depends(db_session)):
    config = services.get_config(session, campaign_id)
    session.commit()
    return services.config_dict(config)


@app.put("/api/campaigns/{campaign_id}/score-config", response_model=ScoreConfigOut,
         tags=["Scoring"], summary="Set composite weights (must sum to 100)")
async def put_score_config(campaign_id: int, body: ScoreConfigIn, session: Session = Depends(db_session)):
    config = services.update_config(session, campaign_id, body.model_dump())
    session.commit()
    return services.config_dict(config)


@app.post("/api/campaigns/{campaign_id}/score-config/reset", response_model=ScoreConfigOut,
          tags=["Scoring"], summary="Reset composite weights to the defaults")
async def reset_score_config(campaign_id: int, session: Session = Depends(db_session)):
    config = services.reset_config(session, campaign_id)
    session.commit()
    return services.config_dict(config)


@app.post("/api/campaigns/{campaign_id}/calculate/survey",
          tags=["Scoring"], summary="Recalculate survey scores from resolved nominations")
async def calculate_survey(campaign_id: int, session: Session = Depends(db_session)):
    result = calculate_survey_scores(session, campaign_id)
    session.commit()
    return result


@app.post("/api/campaigns/{campaign_id}/calculate/composite",
          tags=["Scoring"], summary="Recalculate composite scores")
async def calculate_composite(
    campaign_id: int,
    policy: str | None = Query(None, description="Missing segments: zero or renormalize"),
    session: Session = Depends(db_session),
):
    result = services.calculate_composite_scores(session, campaign_id, _policy(policy))
    session.commit()
    return result


@app.post("/api/campaigns/{campaign_id}/calculate",
          tags=["Scoring"], summary="Recalculate survey then composite scores")
async def calculate_all(
    campaign_id: int,
    policy: str | None = Query(None, description="Missing segments: zero or renormalize"),
    session: Session = Depends(db_session),
):
    result = services.calculate_all(session, campaign_id, _policy(policy))
    session.commit()
    return result


@app.get("/api/campaigns/{campaign_id}/calculate/status", response_model=CalculationStatus,
         tags=["Scoring"], summary="Calculation and publishing progress for a campaign")
async def calculation_status(campaign_id: int, session: Session = Depends(db_session)):
    return services.calculation_status(session, campaign_id)


@app.post("/api/campaigns/{campaign_id}/publish",
          tags=["Scoring"], summary="Publish campaign scores into the disease-area history")
async def publish_campaign(
    campaign_id: int, body: PublishRequest | None = None, session: Session = Depends(db_session),
):
    result = services.publish_campaign(session, campaign_id, (body or PublishRequest()).published_by)
    session.commit()
    return result


@app.get("/api/campaigns/{campaign_id}/scores",
         tags=["Scoring"], summary="Campaign scores, highest composite first")
async def campaign_scores(
    campaign_id: int,
    include_unpublished: bool = Query(False, description="Also return scores not yet published"),
    session: Session = Depends(db_session),
):
    return services.list_campaign_scores(session, campaign_id, include_unpublished=include_unpublished)


# ---------------------------------------------------------------------------
# Routes: Disease Areas
# ---------------------------------------------------------------------------


@app.get("/api/disease-areas", tags=["Disease Areas"], summary="List disease areas")
async def list_disease_areas(session: Session = Depends(db_session)):
    rows = session.execute(select(DiseaseArea).order_by(DiseaseArea.id)).scalars().all()
    return [
        {"id": d.id, "code": d.code, "name": d.name,
         "therapeutic_area": d.therapeutic_area, "is_active": d.is_active}
        for d in rows
    ]


@app.get("/api/disease-areas/{disease_area_id}/leaderboard",
         tags=["Disease Areas"], summary="Current published scores, highest composite first")
async def leaderboard(
    disease_area_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    session: Session = Depends(db_session),
):
    require_entity(session, DiseaseArea, disease_area_id, "Disease area")
    rows, total = ScoreRepository(session).leaderboard(disease_area_id, page=page, limit=limit)
    items = []
    for rank, row in enumerate(rows, start=(page - 1) * limit + 1):
        item = services.snapshot_dict(row)
        item.update({"rank": rank, "hcp_name": row.hcp.full_name, "npi": row.hcp.npi})
        items.append(item)
    return {"items": items, "total": total}


@app.get("/api/disease-areas/{disease_area_id}/hcps/{hcp_id}/history",
         tags=["Disease Areas"], summary="All snapshots for an HCP, newest first")
async def score_history(disease_area_id: int, hcp_id: int, session: Session = Depends(db_session)):
    require_entity(session, DiseaseArea, disease_area_id, "Disease area")
    HcpRepository(session).require(hcp_id)
    return [services.snapshot_dict(r) for r in ScoreRepository(session).snapshot_history(hcp_id, disease_area_id)]


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut, tags=["Stats"], summary="Get aggregate statistics")
async def get_stats(session: Session = Depends(db_session)):
    return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "kol360.app:app",
        host=os.environ.get("KOL360_HOST", "127.0.0.1"),
        port=int(os.environ.get("KOL360_PORT", "8001")),
    )


if __name__ == "__main__":
    main()
