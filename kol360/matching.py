"""Name matching: score a free-text nomination against canonical HCP records.

Rules are evaluated in priority order and the first one that applies wins.
All comparisons are case-insensitive on trimmed strings.

==========================================================  =====
Rule                                                        Score
==========================================================  =====
1. ``first_name + " " + last_name`` equals the raw name      100
2. Raw name equals an alias                                   95
3. Full name contains the raw name, or the reverse            85
4. Last whitespace token of the raw name equals last name     75
5. An alias contains the raw name, or the reverse             70
6. Letters-only raw tokens found in first or last name      25 each, max 60
==========================================================  =====

Candidates are anything exposing ``first_name``, ``last_name`` and
``alias_names`` (the ORM ``Hcp`` does).
"""
from __future__ import annotations

import heapq
import itertools
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

SCORE_EXACT = 100
SCORE_ALIAS_EXACT = 95
SCORE_FULL_NAME_CONTAINS = 85
SCORE_LAST_NAME = 75
SCORE_ALIAS_CONTAINS = 70
SCORE_PER_TOKEN = 25
SCORE_TOKEN_CAP = 60

_NON_LETTERS_RE = re.compile(r"[^a-z\s]")


def normalize_name(value: str | None) -> str:
    """Trimmed, casefolded form used for every name and alias comparison."""
    return (value or "").strip().casefold()


def name_tokens(raw_name: str) -> list[str]:
    """Casefolded letter-only tokens of a raw name, empties dropped."""
    return _NON_LETTERS_RE.sub("", raw_name.casefold()).split()


def score_match(hcp: Any, raw_name: str) -> int:
    """Confidence (0-100) that *raw_name* refers to *hcp*."""
    raw = normalize_name(raw_name)
    if not raw:
        return 0
    first = normalize_name(hcp.first_name)
    last = normalize_name(hcp.last_name)
    full = f"{first} {last}"
    aliases = [a for a in (normalize_name(n) for n in hcp.alias_names) if a]

    if full == raw:
        return SCORE_EXACT
    if raw in aliases:
        return SCORE_ALIAS_EXACT
    if raw in full or full in raw:
        return SCORE_FULL_NAME_CONTAINS
    if raw.split()[-1] == last:
        return SCORE_LAST_NAME
    if any(raw in a or a in raw for a in aliases):
        return SCORE_ALIAS_CONTAINS

    matched = sum(1 for t in name_tokens(raw) if t in first or t in last)
    return min(SCORE_TOKEN_CAP, matched * SCORE_PER_TOKEN)


def match_type(score: int) -> str:
    """Label a score with the kind of rule that produced it."""
    if score == SCORE_EXACT:
        return "exact"
    if score in (SCORE_ALIAS_EXACT, SCORE_ALIAS_CONTAINS):
        return "alias"
    if score in (SCORE_FULL_NAME_CONTAINS, SCORE_LAST_NAME):
        return "primary"
    return "partial"


@dataclass
class RankedCandidate:
    hcp: Any
    score: int

    @property
    def match_type(self) -> str:
        return match_type(self.score)


def rank_candidates(raw_name: str, hcps: Iterable[Any]) -> list[RankedCandidate]:
    """Score every candidate and sort by score, highest first.

    ``sorted`` is stable, so equal scores keep the input order.
    """
    scored = [RankedCandidate(hcp, score_match(hcp, raw_name)) for hcp in hcps]
    return sorted(scored, key=lambda c: c.score, reverse=True)


def top_candidates(
    raw_name: str, batches: Iterable[Iterable[Any]], limit: int, min_score: int = 1,
) -> list[RankedCandidate]:
    """Best *limit* candidates across batches of HCPs, holding at most *limit* at once.

    Ties are broken by position in the concatenated input, same as
    :func:`rank_candidates`.
    """
    candidates = (
        (idx, RankedCandidate(hcp, score_match(hcp, raw_name)))
        for idx, hcp in enumerate(itertools.chain.from_iterable(batches))
    )
    best = heapq.nsmallest(
        limit,
        ((idx, c) for idx, c in candidates if c.score >= min_score),
        key=lambda pair: (-pair[1].score, pair[0]),
    )
    return [c for _, c in best]
