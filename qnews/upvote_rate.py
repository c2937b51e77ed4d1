"""Damped upvote rate: actual upvotes relative to expected upvotes."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from qnews.models import ModelParams


def fatigued_expected_upvotes(expected_upvotes: float, fatigue_factor: float) -> float:
    """Saturating transform of expected upvotes; tends to 1/fatigue_factor."""
    return -math.expm1(-fatigue_factor * expected_upvotes) / fatigue_factor


def upvote_rate(upvotes: float, expected_upvotes: float, params: ModelParams) -> float:
    """
    (upvotes + w) / ((1 - exp(-f * expected)) / f + w)

    The prior weight w pulls items with little exposure towards a rate of 1.
    The fatigue factor f caps the denominator at 1/f + w, so the rate of long
    lived, heavily exposed items stays well defined.
    """
    w = params.prior_weight
    denominator = fatigued_expected_upvotes(expected_upvotes, params.fatigue_factor) + w
    return (upvotes + w) / denominator


def max_denominator(params: ModelParams) -> float:
    return 1 / params.fatigue_factor + params.prior_weight
