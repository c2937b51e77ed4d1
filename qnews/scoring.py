"""
Position scoring.

A position is a bet that an item's upvote rate will move in a direction. An
upvote buys at the entry rate and sells at the exit (or current) rate; a
downvote does the opposite. Formulas turn the two prices, and for the
information-gain variants the upvote counts, into a score.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from typing import TypeAlias

from qnews.constants import DEFAULT_SCORING_FORMULA, SCORE_PAGE_SIZE, SCORE_SCALE
from qnews.errors import NonFiniteScoreError, UnknownFormulaError
from qnews.logging_config import get_logger
from qnews.models import ModelParams, Position, ScoreHistory

logger = get_logger(__name__)

Formula: TypeAlias = Callable[[Position, ModelParams], float]


def _exit_or_current_rate(p: Position) -> float:
    if p.exited and p.exit_upvote_rate is not None:
        return p.exit_upvote_rate
    return p.current_upvote_rate


def buy_price(p: Position) -> float:
    if p.direction == 1:
        return p.entry_upvote_rate
    return _exit_or_current_rate(p)


def sell_price(p: Position) -> float:
    if p.direction == -1:
        return p.entry_upvote_rate
    return _exit_or_current_rate(p)


def _final_counts(p: Position) -> tuple[int, float]:
    if p.exited and p.exit_upvotes is not None and p.exit_expected_upvotes is not None:
        return p.exit_upvotes, p.exit_expected_upvotes
    return p.current_upvotes, p.current_expected_upvotes


def _gain(rate: float, post_entry_price: float, price: float) -> float:
    """Bits gained by moving the estimate from ``price`` to ``post_entry_price``."""
    return (rate * math.log(post_entry_price / price) + (price - post_entry_price)) / math.log(2)


def log_peer_truth_serum(p: Position, m: ModelParams) -> float:
    return math.log2(sell_price(p) / buy_price(p))


def peer_truth_serum(p: Position, m: ModelParams) -> float:
    return sell_price(p) / buy_price(p) - 1


def _observed_gain(
    p: Position, m: ModelParams, smoothing: float = 0.0
) -> tuple[float, float]:
    """Gain against the post-vote upvote rate, and the post-entry expected upvotes.

    Returns (0, 0) when the item gained no exposure since entry.
    """
    final_upvotes, final_expected = _final_counts(p)
    if final_expected == p.entry_expected_upvotes:
        return 0.0, 0.0
    post_entry_price = m.upvote_rate(p.entry_upvotes + 1, p.entry_expected_upvotes)
    exposure = final_expected - p.entry_expected_upvotes
    post_vote_rate = (final_upvotes - p.entry_upvotes + smoothing) / (exposure + smoothing)
    return _gain(post_vote_rate, post_entry_price, buy_price(p)), exposure


def information_gain(p: Position, m: ModelParams) -> float:
    if p.direction == -1:
        return 0.0
    return _observed_gain(p, m)[0]


def information_gain2(p: Position, m: ModelParams) -> float:
    if p.direction == -1:
        return 0.0
    post_entry_rate = m.upvote_rate(p.entry_upvotes + 1, p.entry_expected_upvotes)
    final_upvotes, final_expected = _final_counts(p)
    final_rate = m.upvote_rate(final_upvotes + 1, final_expected)
    return _gain(final_rate, post_entry_rate, buy_price(p))


def information_gain3(p: Position, m: ModelParams) -> float:
    if p.direction == -1:
        return 0.0
    final_upvotes, final_expected = _final_counts(p)
    final_rate = m.upvote_rate(final_upvotes, final_expected)
    return _gain(final_rate, final_rate, buy_price(p))


def information_gain4(p: Position, m: ModelParams) -> float:
    """Like InformationGain, with the post-vote rate smoothed by 4 pseudo-votes."""
    if p.direction == -1:
        return 0.0
    return _observed_gain(p, m, smoothing=4.0)[0]


def information_gain7(p: Position, m: ModelParams) -> float:
    """Like InformationGain4, smoothed by the prior weight instead."""
    if p.direction == -1:
        return 0.0
    return _observed_gain(p, m, smoothing=m.prior_weight)[0]


def information_gain8(p: Position, m: ModelParams) -> float:
    """InformationGain averaged over post-entry exposure plus the prior weight."""
    if p.direction == -1:
        return 0.0
    gain, exposure = _observed_gain(p, m)
    if exposure == 0:
        return 0.0
    return gain / (exposure + m.prior_weight)


FORMULAS: dict[str, Formula] = {
    "LogPeerTruthSerum": log_peer_truth_serum,
    "PeerTruthSerum": peer_truth_serum,
    "InformationGain": information_gain,
    "InformationGain2": information_gain2,
    "InformationGain3": information_gain3,
    "InformationGain4": information_gain4,
    # 5 and 6 differ from 4 and 1 only for downvotes, which score 0 here
    "InformationGain5": information_gain4,
    "InformationGain6": information_gain,
    "InformationGain7": information_gain7,
    "InformationGain8": information_gain8,
}

ALIASES = {"LogPTS": "LogPeerTruthSerum", "PTS": "PeerTruthSerum"}


def get_formula(name: str) -> Formula:
    key = ALIASES.get(name, name) or DEFAULT_SCORING_FORMULA
    try:
        return FORMULAS[key]
    except KeyError:
        raise UnknownFormulaError(name) from None


def user_score(
    p: Position, params: ModelParams, formula: str = DEFAULT_SCORING_FORMULA
) -> float:
    score = get_formula(formula)(p, params) * SCORE_SCALE
    if not math.isfinite(score):
        logger.error(
            "Non-finite score",
            formula=formula,
            position_id=p.position_id,
            item_id=p.item_id,
            fatigue_factor=params.fatigue_factor,
            prior_weight=params.prior_weight,
            value=score,
        )
        raise NonFiniteScoreError(formula, p.position_id, score)
    return score


def alpha_label(i: int) -> str:
    """Bijective base-26: 0 -> A, 25 -> Z, 26 -> AA, 27 -> AB."""
    if i < 0:
        raise ValueError(f"Label index must be non-negative, got {i}")
    letters: list[str] = []
    while True:
        i, digit = divmod(i, 26)
        letters.append(chr(ord("A") + digit))
        if i == 0:
            break
        i -= 1
    return "".join(reversed(letters))


def score_history(
    positions: list[Position],
    params: ModelParams,
    formula: str = DEFAULT_SCORING_FORMULA,
    page_size: int = SCORE_PAGE_SIZE,
) -> ScoreHistory:
    """
    Score every position and attach running totals and labels.

    ``positions`` are sorted newest entry first. Each running score is the
    total as it stood right after that position was taken. The oldest
    position is labelled A. Plot points run oldest first; only the newest
    ``page_size`` positions are returned.
    """
    ordered = sorted(positions, key=lambda p: (p.entry_time, p.position_id), reverse=True)
    get_formula(formula)  # unknown names fail even with no positions

    total = 0.0
    for p in ordered:
        p.user_score = user_score(p, params, formula)
        total += p.user_score
        p.running_score = total

    n = len(ordered)
    for i, p in enumerate(ordered):
        p.running_score = total - p.running_score + p.user_score
        p.label = alpha_label(n - i - 1)

    plot_data = [(p.entry_time, p.running_score, str(p.position_id)) for p in reversed(ordered)]
    return ScoreHistory(positions=ordered[:page_size], score=total, plot_data=plot_data)
