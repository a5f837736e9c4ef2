"""Pydantic request/response schemas for the KOL360 API."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from kol360.validation import (
    RAW_NAME_MAX_LEN, REASON_MAX_LEN, validate_nomination_type, validate_npi,
    validate_person_name, validate_percentage, validate_raw_name, validate_state_code, validate_weights,
)

# ---------------------------------------------------------------------------
# HCPs
# ---------------------------------------------------------------------------


class AliasOut(BaseModel):
    id: int
    alias_name: str
    created_by: str = ""


class HcpOut(BaseModel):
    id: int
    npi: str
    first_name: str
    last_name: str
    email: str | None = None
    specialty: str | None = None
    city: str | None = None
    state: str | None = None
    is_active: bool
    aliases: list[AliasOut] = []


class HcpListResponse(BaseModel):
    items: list[HcpOut]
    total: int


class _HcpFields(BaseModel):
    email: str | None = None
    specialty: str | None = None
    city: str | None = None
    state: str | None = None

    @field_validator("state")
    @classmethod
    def state_code(cls, v: str | None) -> str | None:
        return validate_state_code(v)


class HcpCreate(_HcpFields):
    npi: str
    first_name: str
    last_name: str

    @field_validator("npi")
    @classmethod
    def npi_digits(cls, v: str) -> str:
        return validate_npi(v)

    @field_validator("first_name", "last_name")
    @classmethod
    def person_name(cls, v: str) -> str:
        return validate_person_name(v)


class HcpUpdate(_HcpFields):
    first_name: str | None = None
    last_name: str | None = None

    @field_validator("first_name", "last_name")
    @classmethod
    def person_name(cls, v: str | None) -> str | None:
        return validate_person_name(v) if v is not None else None


class AliasCreate(BaseModel):
    alias_name: str = Field(max_length=RAW_NAME_MAX_LEN)

    @field_validator("alias_name")
    @classmethod
    def not_blank(cls, v: str) -> str:
        return validate_raw_name(v)


class AliasAddResult(BaseModel):
    alias: AliasOut
    created: bool


# ---------------------------------------------------------------------------
# Nominations
# ---------------------------------------------------------------------------


class MatchedHcpRef(BaseModel):
    id: int
    npi: str
    first_name: str
    last_name: str


class NominationOut(BaseModel):
    id: int
    campaign_id: int
    question_id: int
    nomination_type: str | None = None
    raw_name_entered: str
    match_status: str
    matched_hcp_id: int | None = None
    matched_hcp: MatchedHcpRef | None = None
    match_type: str | None = None
    match_score: int | None = None
    matched_by: str | None = None
    matched_at: str | None = None
    exclude_reason: str | None = None


class NominationListResponse(BaseModel):
    items: list[NominationOut]
    total: int
    page: int
    limit: int


class NominationCreate(BaseModel):
    question_id: int
    raw_name_entered: str = Field(max_length=RAW_NAME_MAX_LEN)
    nominator_hcp_id: int | None = None


class CandidateOut(BaseModel):
    hcp: HcpOut
    score: int
    match_type: str


class _Operator(BaseModel):
    matched_by: str = Field("", max_length=100)


class MatchRequest(_Operator):
    hcp_id: int
    add_alias: bool = True


class MatchOut(BaseModel):
    nomination: NominationOut
    alias_added: bool


class CreateHcpFromNomination(HcpCreate, _Operator):
    pass


class ExcludeRequest(_Operator):
    reason: str | None = Field(None, max_length=REASON_MAX_LEN)


class RawNameUpdate(BaseModel):
    raw_name_entered: str

    @field_validator("raw_name_entered")
    @classmethod
    def not_blank(cls, v: str) -> str:
        return validate_raw_name(v)


class NominationStats(BaseModel):
    UNMATCHED: int
    MATCHED: int
    NEW_HCP: int
    EXCLUDED: int


class BulkMatchOut(BaseModel):
    matched: int
    total: int
    skipped_ambiguous: int
    errors: list[str] = []


# ---------------------------------------------------------------------------
# Campaigns and scoring
# ---------------------------------------------------------------------------


class QuestionIn(BaseModel):
    text: str = ""
    nomination_type: str

    @field_validator("nomination_type")
    @classmethod
    def known_type(cls, v: str) -> str:
        return validate_nomination_type(v)


class CampaignCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    disease_area_id: int
    questions: list[QuestionIn] = []


class QuestionOut(BaseModel):
    id: int
    text: str
    nomination_type: str


class CampaignOut(BaseModel):
    id: int
    name: str
    disease_area_id: int
    status: str
    published_at: str | None = None
    questions: list[QuestionOut] = []


class ScoreConfigIn(BaseModel):
    weight_publications: float
    weight_clinical_trials: float
    weight_trade_pubs: float
    weight_org_leadership: float
    weight_org_awareness: float
    weight_conference: float
    weight_social_media: float
    weight_media_podcasts: float
    weight_survey: float

    @model_validator(mode="after")
    def weights_sum_to_100(self) -> ScoreConfigIn:
        validate_weights(self.model_dump())
        return self


class ScoreConfigOut(ScoreConfigIn):
    id: int
    campaign_id: int


class SegmentScoresIn(BaseModel):
    """Partial update: only the segments supplied are written."""

    score_publications: float | None = None
    score_clinical_trials: float | None = None
    score_trade_pubs: float | None = None
    score_org_leadership: float | None = None
    score_org_awareness: float | None = None
    score_conference: float | None = None
    score_social_media: float | None = None
    score_media_podcasts: float | None = None
    source: str = "manual"

    @field_validator(
        "score_publications", "score_clinical_trials", "score_trade_pubs", "score_org_leadership",
        "score_org_awareness", "score_conference", "score_social_media", "score_media_podcasts",
    )
    @classmethod
    def in_range(cls, v: float | None, info) -> float | None:
        return validate_percentage(v, info.field_name)

    def segment_values(self) -> dict[str, float]:
        return {
            name.removeprefix("score_"): value
            for name, value in self.model_dump(exclude={"source"}, exclude_unset=True).items()
        }


class CalculationStatus(BaseModel):
    total_nominations: int
    resolved_nominations: int
    unmatched_nominations: int
    excluded_nominations: int
    hcp_scores_calculated: int
    composite_scores_calculated: int
    published_scores: int
    ready_to_publish: bool


class PublishRequest(BaseModel):
    published_by: str = Field("", max_length=100)


class ImportResult(BaseModel):
    total: int = 0
    created: int = 0
    updated: int = 0
    errors: list[dict[str, Any]] = []


class StatsOut(BaseModel):
    hcps: int
    active_hcps: int
    aliases: int
    campaigns: int
    nominations_by_status: dict[str, int]
    current_snapshots: int

