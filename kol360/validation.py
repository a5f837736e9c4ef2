"""Input bounds shared by the pydantic schemas and the services.

Every function returns the normalized value or raises ``ValidationError``.
"""
from __future__ import annotations

import re
from collections.abc import Mapping

from kol360.errors import ValidationError
from kol360.models import NOMINATION_TYPES, SEGMENTS

NPI_RE = re.compile(r"^[0-9]{10}$")

NAME_MAX_LEN = 50
RAW_NAME_MAX_LEN = 255
REASON_MAX_LEN = 500
WEIGHT_SUM = 100.0
WEIGHT_SUM_TOLERANCE = 0.01

WEIGHT_FIELDS = tuple(f"weight_{s}" for s in SEGMENTS) + ("weight_survey",)


def validate_npi(npi: str | None) -> str:
    npi = (npi or "").strip()
    if not NPI_RE.match(npi):
        raise ValidationError("NPI must be exactly 10 digits")
    return npi


def validate_person_name(value: str | None, label: str = "Name") -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"{label} is required")
    if len(value) > NAME_MAX_LEN:
        raise ValidationError(f"{label} must be at most {NAME_MAX_LEN} characters")
    return value


def validate_raw_name(value: str | None) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError("Nominated name is required")
    if len(value) > RAW_NAME_MAX_LEN:
        raise ValidationError(f"Nominated name must be at most {RAW_NAME_MAX_LEN} characters")
    return value


def validate_reason(reason: str | None) -> str | None:
    if reason is None:
        return None
    reason = reason.strip()
    if len(reason) > REASON_MAX_LEN:
        raise ValidationError(f"Reason must be at most {REASON_MAX_LEN} characters")
    return reason or None


def validate_state_code(state: str | None) -> str | None:
    if not state:
        return None
    state = state.strip().upper()
    if len(state) != 2:
        raise ValidationError("State must be a 2-letter code")
    return state


def validate_nomination_type(value: str) -> str:
    value = (value or "").strip().upper()
    if value not in NOMINATION_TYPES:
        raise ValidationError(f"Unknown nomination type {value!r}")
    return value


def validate_percentage(value: float | None, label: str) -> float | None:
    """A 0-100 score or weight; ``None`` passes through as 'not supplied'."""
    if value is None:
        return None
    try:
        value = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{label} must be a number") from exc
    if value != value or not 0.0 <= value <= 100.0:  # NaN or out of range
        raise ValidationError(f"{label} must be between 0 and 100")
    return value


def validate_weights(weights: Mapping[str, float]) -> dict[str, float]:
    """Check the nine composite weights: each in [0, 100], summing to 100 (+/- 0.01)."""
    missing = [f for f in WEIGHT_FIELDS if weights.get(f) is None]
    if missing:
        raise ValidationError(f"Missing weights: {', '.join(missing)}")
    out = {f: validate_percentage(weights[f], f) for f in WEIGHT_FIELDS}
    total = sum(out.values())
    if abs(total - WEIGHT_SUM) > WEIGHT_SUM_TOLERANCE:
        raise ValidationError(f"Weights must sum to 100% (got {total:g})")
    return out
