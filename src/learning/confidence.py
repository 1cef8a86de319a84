"""Confidence clamping and age-based decay for learning events.

Unapplied events lose confidence as they age so stale insights stop
qualifying for application. Decay never increases confidence: both policies
are monotonic non-increasing in age and floored at a fraction of the original.
"""

import math
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

MIN_CONFIDENCE = 1
MAX_CONFIDENCE = 100
SECONDS_PER_DAY = 86400


def clamp_confidence(value: float | int | None, default: int = 70) -> int:
    """Force a confidence into [1, 100]; None, NaN and infinities become the default."""
    if value is None or not math.isfinite(value):
        value = default
    return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, int(round(value))))


class DecayConfig(BaseModel):
    """Confidence decay policy."""

    policy: Literal["linear", "exponential"] = "linear"
    grace_days: float = Field(default=7.0, ge=0)
    half_life_days: float = Field(default=90.0, gt=0)
    min_confidence_ratio: float = Field(default=0.5, ge=0, le=1)
    max_age_days: float = Field(default=180.0, gt=0)

    @model_validator(mode="after")
    def check_window(self):
        if self.policy == "linear" and self.max_age_days <= self.grace_days:
            raise ValueError("max_age_days must exceed grace_days for linear decay")
        return self


def age_in_days(created_at: datetime, now: datetime | None = None) -> float:
    now = now or datetime.now()
    return max(0.0, (now - created_at).total_seconds() / SECONDS_PER_DAY)


def decay_factor(age_days: float, config: DecayConfig | None = None) -> float:
    config = config or DecayConfig()
    if age_days < config.grace_days:
        return 1.0
    if config.policy == "exponential":
        factor = math.pow(0.5, age_days / config.half_life_days)
    else:
        factor = 1 - (1 - config.min_confidence_ratio) * age_days / config.max_age_days
    return max(config.min_confidence_ratio, factor)


def adjust_confidence_by_age(
    confidence: int,
    created_at: datetime,
    config: DecayConfig | None = None,
    now: datetime | None = None,
) -> int:
    """Return the decayed confidence for an event of the given age."""
    factor = decay_factor(age_in_days(created_at, now), config)
    if factor == 1.0:
        return confidence
    return clamp_confidence(confidence * factor)


def meets_confidence_threshold(
    confidence: int,
    created_at: datetime,
    min_confidence: int,
    config: DecayConfig | None = None,
    now: datetime | None = None,
) -> bool:
    return adjust_confidence_by_age(confidence, created_at, config, now) >= min_confidence


def get_decay_info(
    confidence: int,
    created_at: datetime,
    config: DecayConfig | None = None,
    now: datetime | None = None,
) -> dict:
    """Decay breakdown for logging and skip reasons."""
    adjusted = adjust_confidence_by_age(confidence, created_at, config, now)
    factor = adjusted / confidence if confidence else 1.0
    return {
        "original_confidence": confidence,
        "adjusted_confidence": adjusted,
        "age_days": round(age_in_days(created_at, now), 1),
        "decay_factor": round(factor, 2),
        "decay_percentage": round((1 - factor) * 100, 1),
    }


def decay_skip_reason(info: dict, min_confidence: int) -> str:
    return (
        "confidence below threshold after decay: "
        f"{info['original_confidence']}% -> {info['adjusted_confidence']}% "
        f"after {info['age_days']} days ({info['decay_percentage']}% decay), "
        f"threshold {min_confidence}%"
    )
