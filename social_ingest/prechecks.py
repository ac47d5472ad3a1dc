from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from .config_schema import FiltersConfig


@dataclass(frozen=True)
class PrecheckResult:
    passed: bool
    reasons: Sequence[str]


def run_prechecks(clean_text: str, own_interaction: int, *, filters: FiltersConfig) -> PrecheckResult:
    """
    Cheap, deterministic filters applied before any network call is spent on a candidate.

    A candidate is dropped when it has no usable text left after normalization,
    or when its own favorites + retweets do not exceed the engagement floor.
    """
    reasons: list[str] = []

    if not (clean_text or "").strip():
        reasons.append("empty_clean_text")

    if int(own_interaction) <= int(filters.engagement_floor):
        reasons.append("low_engagement")

    return PrecheckResult(passed=not reasons, reasons=reasons)
