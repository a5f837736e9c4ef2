"""Nomination resolution: turn free-text nominations into canonical HCP links.

A nomination starts ``UNMATCHED`` and ends in exactly one terminal status:

- ``MATCHED``  -- linked to an existing HCP (manually or by bulk auto-match)
- ``NEW_HCP``  -- a new HCP was created from it
- ``EXCLUDED`` -- dropped from scoring, kept for audit

Nothing leaves a terminal status. Every mutating operation validates its
input and checks the status before touching any row, and none of them
commit: the caller owns the transaction.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session

from kol360.errors import ConflictError, InvalidStateError, ValidationError
from kol360.matching import RankedCandidate, match_type, normalize_name, score_match, top_candidates
from kol360.models import EXCLUDED, MATCHED, NEW_HCP, UNMATCHED, Hcp, Nomination
from kol360.repositories import HcpRepository, NominationRepository
from kol360.validation import (
    validate_npi, validate_person_name, validate_raw_name, validate_reason, validate_state_code,
)

log = logging.getLogger(__name__)

# Bulk auto-match accepts the top candidate only at or above this score.
# 90 admits exact name (100) and exact alias (95) hits and nothing fuzzier.
AUTO_MATCH_THRESHOLD = int(os.environ.get("KOL360_AUTO_MATCH_THRESHOLD", "90"))

SUGGESTION_LIMIT = 10


@dataclass
class MatchResult:
    nomination: Nomination
    hcp: Hcp
    alias_added: bool = False


@dataclass
class BulkMatchSummary:
    matched: int = 0
    total: int = 0
    skipped_ambiguous: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "matched": self.matched, "total": self.total,
            "skipped_ambiguous": self.skipped_ambiguous, "errors": list(self.errors),
        }


def _now() -> datetime:
    return datetime.now(UTC)


class NominationResolver:
    def __init__(
        self,
        session: Session,
        *,
        hcps: HcpRepository | None = None,
        nominations: NominationRepository | None = None,
        auto_match_threshold: int = AUTO_MATCH_THRESHOLD,
    ):
        self.session = session
        self.hcps = hcps or HcpRepository(session)
        self.nominations = nominations or NominationRepository(session)
        self.auto_match_threshold = auto_match_threshold

    # -- queries ------------------------------------------------------------

    def suggestions(self, nomination_id: int, limit: int = SUGGESTION_LIMIT) -> list[RankedCandidate]:
        """Best-scoring active HCPs for a nomination's raw name (zero scores omitted)."""
        nomination = self.nominations.require(nomination_id)
        return top_candidates(nomination.raw_name_entered, self.hcps.iter_active_batches(), limit)

    def stats(self, campaign_id: int) -> dict[str, int]:
        return self.nominations.status_counts(campaign_id)

    # -- transitions --------------------------------------------------------

    def _require_unmatched(self, nomination_id: int) -> Nomination:
        nomination = self.nominations.require(nomination_id)
        if nomination.match_status != UNMATCHED:
            raise InvalidStateError(
                f"Nomination {nomination_id} is already {nomination.match_status}"
            )
        return nomination

    def _resolve(
        self, nomination: Nomination, status: str, hcp: Hcp | None, matched_by: str,
        score: int | None = None,
    ) -> None:
        nomination.match_status = status
        nomination.matched_hcp_id = hcp.id if hcp is not None else None
        nomination.matched_hcp = hcp
        nomination.match_score = score
        nomination.match_type = match_type(score) if score is not None else None
        nomination.matched_by = matched_by
        nomination.matched_at = _now()
        self.session.flush()

    def match(
        self, nomination_id: int, hcp_id: int, *, add_alias: bool = True, matched_by: str = "",
    ) -> MatchResult:
        """Link an UNMATCHED nomination to an existing, active HCP.

        With *add_alias*, the raw text becomes an alias of the HCP unless it is
        already one or is the HCP's own full name; repeats are a no-op.
        """
        nomination = self._require_unmatched(nomination_id)
        hcp = self.hcps.require(hcp_id)
        if not hcp.is_active:
            raise InvalidStateError(f"HCP {hcp_id} is deactivated")

        raw = nomination.raw_name_entered.strip()
        score = score_match(hcp, raw)
        alias_added = False
        if add_alias and normalize_name(raw) != normalize_name(hcp.full_name):
            _, alias_added = self.hcps.add_alias(hcp.id, raw, created_by=matched_by)

        self._resolve(nomination, MATCHED, hcp, matched_by, score)
        log.info("Nomination %s matched to HCP %s (alias_added=%s)", nomination.id, hcp.id, alias_added)
        return MatchResult(nomination=nomination, hcp=hcp, alias_added=alias_added)

    def create_identity(
        self, nomination_id: int, fields: dict[str, Any], *, matched_by: str = "",
    ) -> MatchResult:
        """Create a new HCP from an UNMATCHED nomination and link the two."""
        npi = validate_npi(fields.get("npi"))
        first_name = validate_person_name(fields.get("first_name"), "First name")
        last_name = validate_person_name(fields.get("last_name"), "Last name")
        state = validate_state_code(fields.get("state"))
        nomination = self._require_unmatched(nomination_id)
        if self.hcps.get_by_npi(npi) is not None:
            raise ConflictError(f"An HCP with NPI {npi} already exists")

        hcp = self.hcps.add(Hcp(
            npi=npi, first_name=first_name, last_name=last_name,
            email=fields.get("email") or None, specialty=fields.get("specialty") or None,
            city=fields.get("city") or None, state=state, created_by=matched_by,
        ))
        raw = nomination.raw_name_entered.strip()
        alias_added = False
        if normalize_name(raw) != normalize_name(hcp.full_name):
            _, alias_added = self.hcps.add_alias(hcp.id, raw, created_by=matched_by)

        self._resolve(nomination, NEW_HCP, hcp, matched_by)
        log.info("Nomination %s promoted to new HCP %s (NPI %s)", nomination.id, hcp.id, npi)
        return MatchResult(nomination=nomination, hcp=hcp, alias_added=alias_added)

    def exclude(self, nomination_id: int, *, matched_by: str = "", reason: str | None = None) -> Nomination:
        reason = validate_reason(reason)
        nomination = self._require_unmatched(nomination_id)
        nomination.exclude_reason = reason
        self._resolve(nomination, EXCLUDED, None, matched_by)
        log.info("Nomination %s excluded", nomination.id)
        return nomination

    def update_raw_name(self, nomination_id: int, new_raw_name: str) -> Nomination:
        """Correct the raw text of a nomination that has not been resolved yet."""
        raw = validate_raw_name(new_raw_name)
        nomination = self._require_unmatched(nomination_id)
        nomination.raw_name_entered = raw
        self.session.flush()
        return nomination

    # -- bulk ---------------------------------------------------------------

    def bulk_auto_match(self, campaign_id: int, *, matched_by: str = "auto-match") -> BulkMatchSummary:
        """Match every UNMATCHED nomination whose best candidate is unambiguous.

        A nomination is matched when its top candidate scores at least
        ``auto_match_threshold`` and the runner-up scores strictly less.
        Everything else stays UNMATCHED for an operator. Nominations are
        processed in id order, so repeated runs over the same data make the
        same decisions.
        """
        unmatched = self.nominations.unmatched_for_campaign(campaign_id)
        summary = BulkMatchSummary(total=len(unmatched))

        for nomination in unmatched:
            try:
                best = top_candidates(
                    nomination.raw_name_entered, self.hcps.iter_active_batches(), limit=2,
                )
                if not best or best[0].score < self.auto_match_threshold:
                    continue
                if len(best) > 1 and best[1].score == best[0].score:
                    summary.skipped_ambiguous += 1
                    continue
                self.match(nomination.id, best[0].hcp.id, add_alias=True, matched_by=matched_by)
                summary.matched += 1
            except (ValidationError, InvalidStateError, ConflictError) as exc:
                log.warning("Auto-match failed for nomination %s: %s", nomination.id, exc)
                summary.errors.append(f'Failed to auto-match "{nomination.raw_name_entered}": {exc}')

        log.info(
            "Bulk auto-match for campaign %s: %d/%d matched, %d ambiguous",
            campaign_id, summary.matched, summary.total, summary.skipped_ambiguous,
        )
        return summary
