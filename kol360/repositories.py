"""Storage access for the resolver and the scoring services.

The matching and scoring functions never touch the ORM directly; they go
through these repositories, which keep every query in one place. None of the
repositories commit: the caller owns the transaction.
"""
from __future__ import annotations

import os
from collections.abc import Iterable, Iterator
from typing import Any, TypeVar

from sqlalchemy import func, or_, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from kol360.errors import ConflictError, NotFoundError
from kol360.matching import normalize_name
from kol360.models import (
    MATCH_STATUSES, RESOLVED_STATUSES, UNMATCHED, Campaign, CompositeScoreConfig, Hcp, HcpAlias,
    HcpCampaignScore, HcpDiseaseAreaScore, HcpSegmentScore, Nomination,
)

T = TypeVar("T")

HCP_BATCH_SIZE = int(os.environ.get("KOL360_HCP_BATCH_SIZE", "500"))


def get_entity(session: Session, model: type[T], entity_id: int) -> T | None:
    return session.execute(select(model).where(model.id == entity_id)).scalars().first()


def require_entity(session: Session, model: type[T], entity_id: int, label: str = "Entity") -> T:
    obj = get_entity(session, model, entity_id)
    if obj is None:
        raise NotFoundError(f"{label} {entity_id} not found")
    return obj


def alias_key(alias_name: str) -> str:
    return normalize_name(alias_name)


def _paginate(session: Session, query, page: int, limit: int) -> tuple[list, int]:
    total = session.execute(select(func.count()).select_from(query.order_by(None).subquery())).scalar_one()
    items = session.execute(query.offset((page - 1) * limit).limit(limit)).scalars().all()
    return list(items), total


# ---------------------------------------------------------------------------
# HCP registry
# ---------------------------------------------------------------------------


class HcpRepository:
    def __init__(self, session: Session):
        self.session = session

    def require(self, hcp_id: int) -> Hcp:
        return require_entity(self.session, Hcp, hcp_id, "HCP")

    def get_by_npi(self, npi: str) -> Hcp | None:
        return self.session.execute(select(Hcp).where(Hcp.npi == npi)).scalars().first()

    def add(self, hcp: Hcp) -> Hcp:
        """Insert *hcp* inside a savepoint; a duplicate NPI leaves earlier work intact."""
        try:
            with self.session.begin_nested():
                self.session.add(hcp)
        except IntegrityError as exc:
            raise ConflictError(f"An HCP with NPI {hcp.npi} already exists") from exc
        return hcp

    def iter_active_batches(self, batch_size: int = HCP_BATCH_SIZE) -> Iterator[list[Hcp]]:
        """Yield active HCPs (aliases loaded) in id order, *batch_size* at a time."""
        last_id = 0
        while True:
            batch = self.session.execute(
                select(Hcp)
                .options(selectinload(Hcp.aliases))
                .where(Hcp.is_active.is_(True), Hcp.id > last_id)
                .order_by(Hcp.id)
                .limit(batch_size)
            ).scalars().all()
            if not batch:
                return
            yield list(batch)
            last_id = batch[-1].id

    def search(
        self, *, query: str | None = None, specialty: str | None = None, state: str | None = None,
        include_inactive: bool = False, page: int = 1, limit: int = 50,
    ) -> tuple[list[Hcp], int]:
        stmt = select(Hcp).options(selectinload(Hcp.aliases))
        if not include_inactive:
            stmt = stmt.where(Hcp.is_active.is_(True))
        if query:
            like = f"%{query.strip()}%"
            stmt = stmt.where(or_(
                Hcp.npi.contains(query.strip()),
                Hcp.first_name.ilike(like),
                Hcp.last_name.ilike(like),
                Hcp.email.ilike(like),
                Hcp.aliases.any(HcpAlias.alias_name.ilike(like)),
            ))
        if specialty:
            stmt = stmt.where(Hcp.specialty == specialty)
        if state:
            stmt = stmt.where(Hcp.state == state.upper())
        stmt = stmt.order_by(Hcp.last_name, Hcp.first_name, Hcp.id)
        return _paginate(self.session, stmt, page, limit)

    def add_alias(self, hcp_id: int, alias_name: str, created_by: str = "") -> tuple[HcpAlias, bool]:
        """Insert-or-ignore an alias. Returns ``(alias, created)``.

        Uniqueness is on the case-folded text, enforced by ``uq_hcp_alias``,
        so two writers racing on the same alias both end up with one row.
        """
        alias_name = alias_name.strip()
        key = alias_key(alias_name)
        self.session.flush()
        result = self.session.execute(
            sqlite_insert(HcpAlias)
            .values(hcp_id=hcp_id, alias_name=alias_name, alias_key=key, created_by=created_by)
            .on_conflict_do_nothing(index_elements=["hcp_id", "alias_key"])
        )
        created = result.rowcount == 1
        hcp = self.session.get(Hcp, hcp_id)
        if hcp is not None:
            self.session.expire(hcp, ["aliases"])
        alias = self.session.execute(
            select(HcpAlias).where(HcpAlias.hcp_id == hcp_id, HcpAlias.alias_key == key)
        ).scalars().one()
        return alias, created

    def remove_alias(self, hcp_id: int, alias_id: int) -> None:
        alias = self.session.execute(
            select(HcpAlias).where(HcpAlias.id == alias_id, HcpAlias.hcp_id == hcp_id)
        ).scalars().first()
        if alias is None:
            raise NotFoundError(f"Alias {alias_id} not found")
        self.session.delete(alias)
        self.session.flush()
        hcp = self.session.get(Hcp, hcp_id)
        if hcp is not None:
            self.session.expire(hcp, ["aliases"])


# ---------------------------------------------------------------------------
# Nominations
# ---------------------------------------------------------------------------


class NominationRepository:
    def __init__(self, session: Session):
        self.session = session

    def require(self, nomination_id: int) -> Nomination:
        return require_entity(self.session, Nomination, nomination_id, "Nomination")

    def add(self, nomination: Nomination) -> Nomination:
        self.session.add(nomination)
        self.session.flush()
        return nomination

    def list_for_campaign(
        self, campaign_id: int, *, status: str | None = None, page: int = 1, limit: int = 50,
    ) -> tuple[list[Nomination], int]:
        stmt = select(Nomination).where(Nomination.campaign_id == campaign_id)
        if status:
            stmt = stmt.where(Nomination.match_status == status)
        stmt = stmt.order_by(Nomination.match_status, Nomination.raw_name_entered, Nomination.id)
        return _paginate(self.session, stmt, page, limit)

    def unmatched_for_campaign(self, campaign_id: int) -> list[Nomination]:
        return list(self.session.execute(
            select(Nomination)
            .where(Nomination.campaign_id == campaign_id, Nomination.match_status == UNMATCHED)
            .order_by(Nomination.id)
        ).scalars().all())

    def resolved_for_campaign(self, campaign_id: int) -> list[Nomination]:
        """MATCHED and NEW_HCP nominations with their question, in id order."""
        return list(self.session.execute(
            select(Nomination)
            .options(selectinload(Nomination.question))
            .where(
                Nomination.campaign_id == campaign_id,
                Nomination.match_status.in_(RESOLVED_STATUSES),
                Nomination.matched_hcp_id.is_not(None),
            )
            .order_by(Nomination.id)
        ).scalars().all())

    def status_counts(self, campaign_id: int) -> dict[str, int]:
        rows = self.session.execute(
            select(Nomination.match_status, func.count(Nomination.id))
            .where(Nomination.campaign_id == campaign_id)
            .group_by(Nomination.match_status)
        ).all()
        counts = {s: 0 for s in MATCH_STATUSES}
        counts.update({status: n for status, n in rows})
        return counts


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------


class ScoreRepository:
    def __init__(self, session: Session):
        self.session = session

    def require_campaign(self, campaign_id: int) -> Campaign:
        return require_entity(self.session, Campaign, campaign_id, "Campaign")

    # -- composite config ---------------------------------------------------

    def get_config(self, campaign_id: int) -> CompositeScoreConfig | None:
        return self.session.execute(
            select(CompositeScoreConfig).where(CompositeScoreConfig.campaign_id == campaign_id)
        ).scalars().first()

    def save_config(self, campaign_id: int, weights: dict[str, float]) -> CompositeScoreConfig:
        config = self.get_config(campaign_id)
        if config is None:
            config = CompositeScoreConfig(campaign_id=campaign_id)
            self.session.add(config)
        for field, value in weights.items():
            setattr(config, field, value)
        self.session.flush()
        return config

    # -- per-campaign scores ------------------------------------------------

    def campaign_scores(self, campaign_id: int, *, published_only: bool = False) -> list[HcpCampaignScore]:
        stmt = (
            select(HcpCampaignScore)
            .where(HcpCampaignScore.campaign_id == campaign_id)
            .order_by(HcpCampaignScore.hcp_id)
        )
        if published_only:
            stmt = stmt.where(HcpCampaignScore.published_at.is_not(None))
        return list(self.session.execute(stmt).scalars().all())

    def get_campaign_score(self, hcp_id: int, campaign_id: int) -> HcpCampaignScore | None:
        return self.session.execute(
            select(HcpCampaignScore).where(
                HcpCampaignScore.hcp_id == hcp_id, HcpCampaignScore.campaign_id == campaign_id,
            )
        ).scalars().first()

    def campaign_scores_in_disease_area(
        self, hcp_id: int, disease_area_id: int, *, include_campaign_id: int | None = None,
    ) -> list[HcpCampaignScore]:
        """Published campaign scores of one HCP within a disease area.

        *include_campaign_id* also counts that campaign's rows even before they
        are stamped as published (the campaign being published right now).
        """
        published = HcpCampaignScore.published_at.is_not(None)
        if include_campaign_id is not None:
            published = or_(published, HcpCampaignScore.campaign_id == include_campaign_id)
        return list(self.session.execute(
            select(HcpCampaignScore)
            .join(Campaign, Campaign.id == HcpCampaignScore.campaign_id)
            .where(
                HcpCampaignScore.hcp_id == hcp_id,
                Campaign.disease_area_id == disease_area_id,
                published,
            )
            .order_by(HcpCampaignScore.campaign_id)
        ).scalars().all())

    # -- objective segment scores ------------------------------------------

    def get_segment_score(self, hcp_id: int, disease_area_id: int) -> HcpSegmentScore | None:
        return self.session.execute(
            select(HcpSegmentScore).where(
                HcpSegmentScore.hcp_id == hcp_id, HcpSegmentScore.disease_area_id == disease_area_id,
            )
        ).scalars().first()

    def segment_scores_for(self, hcp_ids: Iterable[int], disease_area_id: int) -> dict[int, HcpSegmentScore]:
        ids = list(hcp_ids)
        if not ids:
            return {}
        rows = self.session.execute(
            select(HcpSegmentScore).where(
                HcpSegmentScore.hcp_id.in_(ids), HcpSegmentScore.disease_area_id == disease_area_id,
            )
        ).scalars().all()
        return {r.hcp_id: r for r in rows}

    # -- disease-area snapshots ---------------------------------------------

    def current_snapshot(self, hcp_id: int, disease_area_id: int) -> HcpDiseaseAreaScore | None:
        return self.session.execute(
            select(HcpDiseaseAreaScore).where(
                HcpDiseaseAreaScore.hcp_id == hcp_id,
                HcpDiseaseAreaScore.disease_area_id == disease_area_id,
                HcpDiseaseAreaScore.is_current.is_(True),
            )
        ).scalars().first()

    def snapshot_history(self, hcp_id: int, disease_area_id: int) -> list[HcpDiseaseAreaScore]:
        return list(self.session.execute(
            select(HcpDiseaseAreaScore)
            .where(
                HcpDiseaseAreaScore.hcp_id == hcp_id,
                HcpDiseaseAreaScore.disease_area_id == disease_area_id,
            )
            .order_by(HcpDiseaseAreaScore.effective_from.desc(), HcpDiseaseAreaScore.id.desc())
        ).scalars().all())

    def leaderboard(self, disease_area_id: int, *, page: int = 1, limit: int = 50) -> tuple[list[Any], int]:
        stmt = (
            select(HcpDiseaseAreaScore)
            .options(selectinload(HcpDiseaseAreaScore.hcp))
            .where(
                HcpDiseaseAreaScore.disease_area_id == disease_area_id,
                HcpDiseaseAreaScore.is_current.is_(True),
            )
            .order_by(HcpDiseaseAreaScore.composite_score.desc().nulls_last(), HcpDiseaseAreaScore.hcp_id)
        )
        return _paginate(self.session, stmt, page, limit)
