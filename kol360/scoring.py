"""Composite score engine.

The composite is a weighted sum of eight objective segment scores plus the
survey score, with weights expressed as percentages that sum to 100::

    composite = sum(weight_i * score_i for each segment) / 100
              + weight_survey * survey_score / 100

Missing segment scores are handled by a policy:

- ``zero`` (default): a missing segment contributes nothing.
- ``renormalize``: a missing segment's weight is dropped and the remaining
  weights are scaled back up to 100.

The stored value is clamped to [0, 100] and rounded to one decimal place;
the raw sum is kept on the result for ranking.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from kol360.errors import ValidationError
from kol360.models import SEGMENTS
from kol360.validation import WEIGHT_FIELDS, validate_weights

log = logging.getLogger(__name__)


class MissingSegmentPolicy(str, Enum):
    ZERO = "zero"
    RENORMALIZE = "renormalize"


def _policy_from_env() -> MissingSegmentPolicy:
    raw = os.environ.get("KOL360_MISSING_SEGMENT_POLICY", MissingSegmentPolicy.ZERO.value)
    try:
        return MissingSegmentPolicy(raw.strip().lower())
    except ValueError:
        log.warning("Unknown KOL360_MISSING_SEGMENT_POLICY %r, using 'zero'", raw)
        return MissingSegmentPolicy.ZERO


DEFAULT_MISSING_POLICY = _policy_from_env()


@dataclass(frozen=True)
class ScoreWeights:
    """Nine composite weights in percent."""
    weight_publications: float = 10.0
    weight_clinical_trials: float = 15.0
    weight_trade_pubs: float = 10.0
    weight_org_leadership: float = 10.0
    weight_org_awareness: float = 10.0
    weight_conference: float = 10.0
    weight_social_media: float = 5.0
    weight_media_podcasts: float = 5.0
    weight_survey: float = 25.0

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> ScoreWeights:
        """Build validated weights; raises ``ValidationError`` if they don't sum to 100."""
        return cls(**validate_weights(values))

    @classmethod
    def from_config(cls, config: Any) -> ScoreWeights:
        return cls.from_mapping({f: getattr(config, f) for f in WEIGHT_FIELDS})

    def to_dict(self) -> dict[str, float]:
        return asdict(self)

    def segment_weight(self, segment: str) -> float:
        return getattr(self, f"weight_{segment}")


DEFAULT_WEIGHTS = ScoreWeights()


@dataclass(frozen=True)
class CompositeResult:
    raw: float
    score: float


def segment_values(source: Any | None) -> dict[str, float | None]:
    """Read ``score_<segment>`` attributes off a segment/snapshot row (or a dict)."""
    if source is None:
        return {s: None for s in SEGMENTS}
    if isinstance(source, Mapping):
        return {s: source.get(s) for s in SEGMENTS}
    return {s: getattr(source, f"score_{s}", None) for s in SEGMENTS}


def clamp_score(value: float) -> float:
    return round(min(100.0, max(0.0, value)), 1)


def compute_composite(
    weights: ScoreWeights,
    segments: Mapping[str, float | None],
    survey_score: float | None,
    policy: MissingSegmentPolicy = DEFAULT_MISSING_POLICY,
) -> CompositeResult:
    """Weighted composite of objective segments and the survey score.

    *weights* are re-validated here with the same check used when a config
    is saved, so an invalid config can never produce a score.
    """
    validate_weights(weights.to_dict())
    unknown = set(segments) - set(SEGMENTS)
    if unknown:
        raise ValidationError(f"Unknown segments: {', '.join(sorted(unknown))}")

    parts: list[tuple[float, float | None]] = [
        (weights.segment_weight(s), segments.get(s)) for s in SEGMENTS
    ]
    parts.append((weights.weight_survey, survey_score))

    if policy is MissingSegmentPolicy.RENORMALIZE:
        present = sum(w for w, v in parts if v is not None)
        if present <= 0:
            return CompositeResult(raw=0.0, score=0.0)
        raw = sum(w * float(v) for w, v in parts if v is not None) / present
    else:
        raw = sum(w * float(v) for w, v in parts if v is not None) / 100.0

    return CompositeResult(raw=raw, score=clamp_score(raw))
