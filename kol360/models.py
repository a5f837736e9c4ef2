from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func, text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


# Nomination lifecycle
UNMATCHED = "UNMATCHED"
MATCHED = "MATCHED"
NEW_HCP = "NEW_HCP"
EXCLUDED = "EXCLUDED"
MATCH_STATUSES = (UNMATCHED, MATCHED, NEW_HCP, EXCLUDED)
RESOLVED_STATUSES = (MATCHED, NEW_HCP)

NOMINATION_TYPES = (
    "NATIONAL_KOL", "RISING_STAR", "REGIONAL_EXPERT", "DIGITAL_INFLUENCER", "CLINICAL_EXPERT",
)

SEGMENTS = (
    "publications", "clinical_trials", "trade_pubs", "org_leadership",
    "org_awareness", "conference", "social_media", "media_podcasts",
)


class DiseaseArea(Base):
    __tablename__ = "disease_areas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    therapeutic_area: Mapped[str] = mapped_column(String(100), default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class Campaign(Base):
    __tablename__ = "campaigns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    disease_area_id: Mapped[int] = mapped_column(Integer, ForeignKey("disease_areas.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="DRAFT")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    published_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    disease_area: Mapped[DiseaseArea] = relationship("DiseaseArea")
    questions: Mapped[list[NominationQuestion]] = relationship(
        "NominationQuestion", back_populates="campaign", cascade="all, delete-orphan",
    )
    score_config: Mapped[CompositeScoreConfig | None] = relationship(
        "CompositeScoreConfig", back_populates="campaign", uselist=False, cascade="all, delete-orphan",
    )


class NominationQuestion(Base):
    __tablename__ = "nomination_questions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(Integer, ForeignKey("campaigns.id"), nullable=False)
    text: Mapped[str] = mapped_column(Text, default="")
    nomination_type: Mapped[str] = mapped_column(String(30), nullable=False)  # one of NOMINATION_TYPES

    campaign: Mapped[Campaign] = relationship("Campaign", back_populates="questions")


class Hcp(Base):
    __tablename__ = "hcps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    npi: Mapped[str] = mapped_column(String(10), unique=True, nullable=False)
    first_name: Mapped[str] = mapped_column(String(50), nullable=False)
    last_name: Mapped[str] = mapped_column(String(50), nullable=False)
    email: Mapped[str | None] = mapped_column(String(300), nullable=True)
    specialty: Mapped[str | None] = mapped_column(String(200), nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    state: Mapped[str | None] = mapped_column(String(2), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_by: Mapped[str] = mapped_column(String(100), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    aliases: Mapped[list[HcpAlias]] = relationship(
        "HcpAlias", back_populates="hcp", cascade="all, delete-orphan", order_by="HcpAlias.id",
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def alias_names(self) -> list[str]:
        return [a.alias_name for a in self.aliases]


class HcpAlias(Base):
    __tablename__ = "hcp_aliases"
    __table_args__ = (UniqueConstraint("hcp_id", "alias_key", name="uq_hcp_alias"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hcp_id: Mapped[int] = mapped_column(Integer, ForeignKey("hcps.id"), nullable=False)
    alias_name: Mapped[str] = mapped_column(String(255), nullable=False)
    alias_key: Mapped[str] = mapped_column(String(255), nullable=False)  # trimmed + casefolded
    created_by: Mapped[str] = mapped_column(String(100), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    hcp: Mapped[Hcp] = relationship("Hcp", back_populates="aliases")


class Nomination(Base):
    __tablename__ = "nominations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(Integer, ForeignKey("campaigns.id"), nullable=False)
    question_id: Mapped[int] = mapped_column(Integer, ForeignKey("nomination_questions.id"), nullable=False)
    nominator_hcp_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("hcps.id"), nullable=True)
    raw_name_entered: Mapped[str] = mapped_column(String(255), nullable=False)
    match_status: Mapped[str] = mapped_column(String(20), default=UNMATCHED)
    matched_hcp_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("hcps.id"), nullable=True)
    match_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    match_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    matched_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    matched_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    exclude_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    question: Mapped[NominationQuestion] = relationship("NominationQuestion")
    matched_hcp: Mapped[Hcp | None] = relationship("Hcp", foreign_keys=[matched_hcp_id])


class CompositeScoreConfig(Base):
    __tablename__ = "composite_score_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(Integer, ForeignKey("campaigns.id"), unique=True, nullable=False)
    weight_publications: Mapped[float] = mapped_column(Float, default=10.0)
    weight_clinical_trials: Mapped[float] = mapped_column(Float, default=15.0)
    weight_trade_pubs: Mapped[float] = mapped_column(Float, default=10.0)
    weight_org_leadership: Mapped[float] = mapped_column(Float, default=10.0)
    weight_org_awareness: Mapped[float] = mapped_column(Float, default=10.0)
    weight_conference: Mapped[float] = mapped_column(Float, default=10.0)
    weight_social_media: Mapped[float] = mapped_column(Float, default=5.0)
    weight_media_podcasts: Mapped[float] = mapped_column(Float, default=5.0)
    weight_survey: Mapped[float] = mapped_column(Float, default=25.0)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    campaign: Mapped[Campaign] = relationship("Campaign", back_populates="score_config")


class HcpSegmentScore(Base):
    """Objective segment scores imported from outside the survey workflow."""

    __tablename__ = "hcp_segment_scores"
    __table_args__ = (UniqueConstraint("hcp_id", "disease_area_id", name="uq_segment_hcp_da"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hcp_id: Mapped[int] = mapped_column(Integer, ForeignKey("hcps.id"), nullable=False)
    disease_area_id: Mapped[int] = mapped_column(Integer, ForeignKey("disease_areas.id"), nullable=False)
    score_publications: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_clinical_trials: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_trade_pubs: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_org_leadership: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_org_awareness: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_conference: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_social_media: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_media_podcasts: Mapped[float | None] = mapped_column(Float, nullable=True)
    source: Mapped[str] = mapped_column(String(100), default="")
    imported_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class HcpCampaignScore(Base):
    __tablename__ = "hcp_campaign_scores"
    __table_args__ = (UniqueConstraint("hcp_id", "campaign_id", name="uq_campaign_score_hcp"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hcp_id: Mapped[int] = mapped_column(Integer, ForeignKey("hcps.id"), nullable=False)
    campaign_id: Mapped[int] = mapped_column(Integer, ForeignKey("campaigns.id"), nullable=False)
    count_national_kol: Mapped[int] = mapped_column(Integer, default=0)
    count_rising_star: Mapped[int] = mapped_column(Integer, default=0)
    count_regional_expert: Mapped[int] = mapped_column(Integer, default=0)
    count_digital_influencer: Mapped[int] = mapped_column(Integer, default=0)
    count_clinical_expert: Mapped[int] = mapped_column(Integer, default=0)
    score_national_kol: Mapped[float] = mapped_column(Float, default=0.0)
    score_rising_star: Mapped[float] = mapped_column(Float, default=0.0)
    score_regional_expert: Mapped[float] = mapped_column(Float, default=0.0)
    score_digital_influencer: Mapped[float] = mapped_column(Float, default=0.0)
    score_clinical_expert: Mapped[float] = mapped_column(Float, default=0.0)
    score_survey: Mapped[float | None] = mapped_column(Float, nullable=True)
    nomination_count: Mapped[int] = mapped_column(Integer, default=0)
    composite_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    calculated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    hcp: Mapped[Hcp] = relationship("Hcp")


class HcpDiseaseAreaScore(Base):
    __tablename__ = "hcp_disease_area_scores"
    __table_args__ = (
        # At most one current row per (hcp, disease area)
        Index(
            "uq_da_score_current", "hcp_id", "disease_area_id", unique=True,
            sqlite_where=text("is_current = 1"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hcp_id: Mapped[int] = mapped_column(Integer, ForeignKey("hcps.id"), nullable=False)
    disease_area_id: Mapped[int] = mapped_column(Integer, ForeignKey("disease_areas.id"), nullable=False)
    score_publications: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_clinical_trials: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_trade_pubs: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_org_leadership: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_org_awareness: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_conference: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_social_media: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_media_podcasts: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_survey: Mapped[float | None] = mapped_column(Float, nullable=True)
    composite_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_nomination_count: Mapped[int] = mapped_column(Integer, default=0)
    campaign_count: Mapped[int] = mapped_column(Integer, default=0)
    effective_from: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    effective_to: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_current: Mapped[bool] = mapped_column(Boolean, default=True)
    last_calculated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    hcp: Mapped[Hcp] = relationship("Hcp")
