"""Tests for the nomination resolution workflow against an in-memory database."""
from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from kol360.db import make_engine, seed_disease_areas
from kol360.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from kol360.models import (
    EXCLUDED, MATCHED, NEW_HCP, UNMATCHED, Base, Campaign, DiseaseArea, Hcp, HcpAlias, Nomination,
)
from kol360.repositories import HcpRepository
from kol360.resolver import NominationResolver
from kol360 import services

# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    seed_disease_areas(sess)
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def campaign(session: Session) -> Campaign:
    retina = session.execute(select(DiseaseArea).where(DiseaseArea.code == "RETINA")).scalars().one()
    camp = services.create_campaign(session, "Retina 2025", retina.id, [
        {"text": "Who are the national leaders?", "nomination_type": "NATIONAL_KOL"},
        {"text": "Who is a rising star?", "nomination_type": "RISING_STAR"},
    ])
    session.commit()
    return camp


@pytest.fixture()
def hcps(session: Session) -> dict[str, Hcp]:
    out = {
        "smith": services.create_hcp(session, {"npi": "1000000001", "first_name": "John", "last_name": "Smith"}),
        "jones": services.create_hcp(session, {"npi": "1000000002", "first_name": "Mary", "last_name": "Jones"}),
        "lee": services.create_hcp(session, {"npi": "1000000003", "first_name": "Ann", "last_name": "Lee"}),
    }
    session.commit()
    return out


def _nominate(session: Session, campaign: Campaign, raw: str, question: int = 0) -> Nomination:
    nom = services.submit_nomination(session, campaign.id, campaign.questions[question].id, raw)
    session.commit()
    return nom


def _alias_count(session: Session, hcp_id: int) -> int:
    return session.execute(
        select(func.count(HcpAlias.id)).where(HcpAlias.hcp_id == hcp_id)
    ).scalar_one()


# =========================================================================
# Suggestions
# =========================================================================

class TestSuggestions:
    def test_ranked_best_first(self, session, campaign, hcps):
        nom = _nominate(session, campaign, "John Smith")
        suggestions = NominationResolver(session).suggestions(nom.id)
        assert suggestions[0].hcp.id == hcps["smith"].id
        assert suggestions[0].score == 100
        assert all(s.score > 0 for s in suggestions)

    def test_deactivated_hcps_not_suggested(self, session, campaign, hcps):
        services.deactivate_hcp(session, hcps["smith"].id)
        session.commit()
        nom = _nominate(session, campaign, "John Smith")
        ids = [s.hcp.id for s in NominationResolver(session).suggestions(nom.id)]
        assert hcps["smith"].id not in ids

    def test_unknown_nomination(self, session):
        with pytest.raises(NotFoundError):
            NominationResolver(session).suggestions(999)

    def test_last_name_only_suggests_single_candidate(self, session, campaign, hcps):
        nom = _nominate(session, campaign, "Smith")
        resolver = NominationResolver(session)
        assert [(s.hcp.id, s.score) for s in resolver.suggestions(nom.id)] == [(hcps["smith"].id, 85)]
        assert len(list(resolver.hcps.iter_active_batches(batch_size=1))) == 3


# =========================================================================
# Manual match
# =========================================================================

class TestMatch:
    def test_match_sets_fields_and_adds_alias(self, session, campaign, hcps):
        nom = _nominate(session, campaign, "Dr. J. Smith")
        result = NominationResolver(session).match(nom.id, hcps["smith"].id, matched_by="reviewer")
        session.commit()
        assert result.nomination.match_status == MATCHED
        assert result.nomination.matched_hcp_id == hcps["smith"].id
        assert result.nomination.matched_by == "reviewer"
        assert result.nomination.matched_at is not None
        assert result.alias_added is True
        assert "Dr. J. Smith" in hcps["smith"].alias_names

    def test_match_score_computed_before_alias(self, session, campaign, hcps):
        nom = _nominate(session, campaign, "Johnny S")
        result = NominationResolver(session).match(nom.id, hcps["smith"].id)
        assert result.nomination.match_score == 25
        assert result.nomination.match_type == "partial"

    def test_exact_name_not_added_as_alias(self, session, campaign, hcps):
        nom = _nominate(session, campaign, "john smith")
        result = NominationResolver(session).match(nom.id, hcps["smith"].id)
        assert result.alias_added is False
        assert _alias_count(session, hcps["smith"].id) == 0
        assert result.nomination.match_type == "exact"

    def test_add_alias_false(self, session, campaign, hcps):
        nom = _nominate(session, campaign, "J Smith")
        NominationResolver(session).match(nom.id, hcps["smith"].id, add_alias=False)
        assert _alias_count(session, hcps["smith"].id) == 0

    def test_same_alias_twice_one_record(self, session, campaign, hcps):
        first = _nominate(session, campaign, "Dr Smith")
        second = _nominate(session, campaign, "  DR SMITH ")
        resolver = NominationResolver(session)
        assert resolver.match(first.id, hcps["smith"].id).alias_added is True
        assert resolver.match(second.id, hcps["smith"].id).alias_added is False
        session.commit()
        assert _alias_count(session, hcps["smith"].id) == 1

    def test_alias_dedup_and_scoring_share_normalization(self, session, campaign, hcps):
        repo = HcpRepository(session)
        repo.add_alias(hcps["smith"].id, "Dr. Straße")
        _, created = repo.add_alias(hcps["smith"].id, "DR. STRASSE")
        assert created is False
        nom = _nominate(session, campaign, "DR. STRASSE")
        result = NominationResolver(session).match(nom.id, hcps["smith"].id)
        assert result.alias_added is False
        assert result.nomination.match_score == 95
        assert result.nomination.match_type == "alias"

    def test_terminal_state_cannot_transition(self, session, campaign, hcps):
        nom = _nominate(session, campaign, "John Smith")
        resolver = NominationResolver(session)
        resolver.match(nom.id, hcps["smith"].id)
        session.commit()
        with pytest.raises(InvalidStateError):
            resolver.match(nom.id, hcps["jones"].id)
        with pytest.raises(InvalidStateError):
            resolver.exclude(nom.id, reason="dupe")
        with pytest.raises(InvalidStateError):
            resolver.create_identity(nom.id, {"npi": "2000000001", "first_name": "A", "last_name": "B"})
        session.refresh(nom)
        assert nom.match_status == MATCHED
        assert nom.matched_hcp_id == hcps["smith"].id

    def test_excluded_cannot_be_matched(self, session, campaign, hcps):
        nom = _nominate(session, campaign, "Nobody Known")
        resolver = NominationResolver(session)
        resolver.exclude(nom.id)
        with pytest.raises(InvalidStateError):
            resolver.match(nom.id, hcps["smith"].id)

    def test_unknown_hcp(self, session, campaign, hcps):
        nom = _nominate(session, campaign, "John Smith")
        with pytest.raises(NotFoundError):
            NominationResolver(session).match(nom.id, 999)
        session.refresh(nom)
        assert nom.match_status == UNMATCHED

    def test_deactivated_hcp_rejected(self, session, campaign, hcps):
        services.deactivate_hcp(session, hcps["smith"].id)
        nom = _nominate(session, campaign, "John Smith")
        with pytest.raises(InvalidStateError):
            NominationResolver(session).match(nom.id, hcps["smith"].id)


# =========================================================================
# Create identity
# =========================================================================

class TestCreateIdentity:
    def test_creates_hcp_and_links(self, session, campaign, hcps):
        nom = _nominate(session, campaign, "Dr. Priya Patel")
        result = NominationResolver(session).create_identity(
            nom.id,
            {"npi": "1234567890", "first_name": "Priya", "last_name": "Patel", "state": "ca"},
            matched_by="reviewer",
        )
        session.commit()
        assert result.nomination.match_status == NEW_HCP
        assert result.hcp.npi == "1234567890"
        assert result.hcp.state == "CA"
        assert result.nomination.matched_hcp_id == result.hcp.id
        assert result.hcp.alias_names == ["Dr. Priya Patel"]

    @pytest.mark.parametrize("npi", ["123", "12345678901", "12345abcde", "", None])
    def test_bad_npi_rejected_before_mutation(self, session, campaign, npi):
        nom = _nominate(session, campaign, "Someone")
        with pytest.raises(ValidationError):
            NominationResolver(session).create_identity(
                nom.id, {"npi": npi, "first_name": "Some", "last_name": "One"},
            )
        session.refresh(nom)
        assert nom.match_status == UNMATCHED
        assert session.execute(select(func.count(Hcp.id))).scalar_one() == 0

    def test_name_too_long(self, session, campaign):
        nom = _nominate(session, campaign, "Someone")
        with pytest.raises(ValidationError):
            NominationResolver(session).create_identity(
                nom.id, {"npi": "1234567890", "first_name": "x" * 51, "last_name": "One"},
            )

    def test_duplicate_npi_conflict(self, session, campaign, hcps):
        nom = _nominate(session, campaign, "John Smith")
        with pytest.raises(ConflictError):
            NominationResolver(session).create_identity(
                nom.id, {"npi": "1000000001", "first_name": "John", "last_name": "Smith"},
            )
        session.refresh(nom)
        assert nom.match_status == UNMATCHED


# =========================================================================
# Exclude and raw name edits
# =========================================================================

class TestExclude:
    def test_exclude_with_reason(self, session, campaign):
        nom = _nominate(session, campaign, "asdf")
        excluded = NominationResolver(session).exclude(nom.id, matched_by="reviewer", reason="Not a person")
        assert excluded.match_status == EXCLUDED
        assert excluded.exclude_reason == "Not a person"
        assert excluded.matched_hcp_id is None

    def test_reason_max_length(self, session, campaign):
        nom = _nominate(session, campaign, "asdf")
        resolver = NominationResolver(session)
        with pytest.raises(ValidationError):
            resolver.exclude(nom.id, reason="x" * 501)
        assert resolver.exclude(nom.id, reason="x" * 500).match_status == EXCLUDED


class TestUpdateRawName:
    def test_update(self, session, campaign):
        nom = _nominate(session, campaign, "Jon Smth")
        updated = NominationResolver(session).update_raw_name(nom.id, " John Smith ")
        assert updated.raw_name_entered == "John Smith"

    def test_blank_rejected(self, session, campaign):
        nom = _nominate(session, campaign, "Jon Smth")
        with pytest.raises(ValidationError):
            NominationResolver(session).update_raw_name(nom.id, "   ")

    def test_too_long_rejected(self, session, campaign):
        nom = _nominate(session, campaign, "Jon Smth")
        with pytest.raises(ValidationError):
            NominationResolver(session).update_raw_name(nom.id, "x" * 256)

    def test_resolved_nomination_locked(self, session, campaign, hcps):
        nom = _nominate(session, campaign, "John Smith")
        resolver = NominationResolver(session)
        resolver.match(nom.id, hcps["smith"].id)
        with pytest.raises(InvalidStateError):
            resolver.update_raw_name(nom.id, "Someone Else")


# =========================================================================
# Bulk auto-match and stats
# =========================================================================

class TestBulkAutoMatch:
    def test_matches_only_high_confidence(self, session, campaign, hcps):
        HcpRepository(session).add_alias(hcps["jones"].id, "Dr. M. Jones")
        exact = _nominate(session, campaign, "John Smith")
        alias = _nominate(session, campaign, "dr. m. jones")
        fuzzy = _nominate(session, campaign, "Lee")
        unknown = _nominate(session, campaign, "Zed Zed")

        summary = NominationResolver(session).bulk_auto_match(campaign.id)
        session.commit()

        assert summary.total == 4
        assert summary.matched == 2
        assert summary.errors == []
        for nom in (exact, alias, fuzzy, unknown):
            session.refresh(nom)
        assert exact.matched_hcp_id == hcps["smith"].id
        assert exact.matched_by == "auto-match"
        assert alias.matched_hcp_id == hcps["jones"].id
        assert fuzzy.match_status == UNMATCHED
        assert unknown.match_status == UNMATCHED

    def test_ambiguous_top_score_skipped(self, session, campaign, hcps):
        services.create_hcp(session, {"npi": "1000000009", "first_name": "John", "last_name": "Smith"})
        nom = _nominate(session, campaign, "John Smith")
        summary = NominationResolver(session).bulk_auto_match(campaign.id)
        assert summary.matched == 0
        assert summary.skipped_ambiguous == 1
        session.refresh(nom)
        assert nom.match_status == UNMATCHED

    def test_running_twice_makes_same_decisions(self, session, campaign, hcps):
        noms = [_nominate(session, campaign, raw) for raw in ("John Smith", "Mary Jones", "Lee", "Ann Lee")]
        resolver = NominationResolver(session)
        resolver.bulk_auto_match(campaign.id)
        session.commit()
        first = {n.id: (n.match_status, n.matched_hcp_id) for n in noms}

        second_summary = resolver.bulk_auto_match(campaign.id)
        session.commit()
        for n in noms:
            session.refresh(n)
        second = {n.id: (n.match_status, n.matched_hcp_id) for n in noms}

        assert first == second
        assert second_summary.matched == 0
        assert second_summary.total == 1

    def test_threshold_configurable(self, session, campaign, hcps):
        nom = _nominate(session, campaign, "Smith")
        NominationResolver(session, auto_match_threshold=80).bulk_auto_match(campaign.id)
        session.refresh(nom)
        assert nom.match_status == MATCHED
        assert nom.match_score == 85

    def test_deactivated_hcp_never_auto_matched(self, session, campaign, hcps):
        services.deactivate_hcp(session, hcps["smith"].id)
        nom = _nominate(session, campaign, "John Smith")
        NominationResolver(session).bulk_auto_match(campaign.id)
        session.refresh(nom)
        assert nom.match_status == UNMATCHED


class TestStats:
    def test_counts_all_statuses(self, session, campaign, hcps):
        resolver = NominationResolver(session)
        a = _nominate(session, campaign, "John Smith")
        b = _nominate(session, campaign, "junk")
        _nominate(session, campaign, "Unknown Person")
        resolver.match(a.id, hcps["smith"].id)
        resolver.exclude(b.id)
        assert resolver.stats(campaign.id) == {UNMATCHED: 1, MATCHED: 1, NEW_HCP: 0, EXCLUDED: 1}
