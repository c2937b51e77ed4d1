"""
Rank recompute for one crawl tick.

Runs after the tick's samples are committed, as one write transaction:
carry penalties forward, flag resubmissions, rank by the feed's own formula
to estimate penalties, then rank by quality. Readers see either the previous
ranking or the complete new one.
"""

from __future__ import annotations

import time
from typing import Any

import numpy as np
from numpy.typing import NDArray

from qnews.config import Settings
from qnews.constants import HN_SCORE_POINTS_EXP, HN_SCORE_TIME_OFFSET, PENALTY_SMOOTHING
from qnews.logging_config import get_logger
from qnews.models import FrontPageParams, FrontPageStoryDict, ModelParams, Ranking
from qnews.storage import NewsDatabase

logger = get_logger(__name__)


def descending_ranks(scores: NDArray[np.float64]) -> NDArray[np.int64]:
    """1-based ranks, highest score first. Ties keep input order."""
    order = np.argsort(-scores, kind="stable")
    ranks = np.empty(len(scores), dtype=np.int64)
    ranks[order] = np.arange(1, len(scores) + 1)
    return ranks


def hn_scores(
    score: NDArray[np.float64], age_hours: NDArray[np.float64], gravity: float
) -> NDArray[np.float64]:
    return (score - 1) / np.power(age_hours + HN_SCORE_TIME_OFFSET, gravity / HN_SCORE_POINTS_EXP)


def qn_scores(
    cumulative_upvotes: NDArray[np.float64],
    cumulative_expected_upvotes: NDArray[np.float64],
    age_hours: NDArray[np.float64],
    params: FrontPageParams,
) -> NDArray[np.float64]:
    w = params.overall_prior_weight
    quality = (cumulative_upvotes + w) / (cumulative_expected_upvotes + w)
    return np.power(age_hours, quality) / np.power(
        age_hours + HN_SCORE_TIME_OFFSET, params.gravity / HN_SCORE_POINTS_EXP
    )


def current_penalties(
    top_rank: NDArray[np.int64], raw_rank: NDArray[np.int64]
) -> NDArray[np.float64]:
    """ln(topRank / rawRank) for items the feed ranks below their raw position."""
    on_top = top_rank > 0
    out = np.zeros(len(top_rank), dtype=np.float64)
    out[on_top] = np.maximum(0.0, np.log(top_rank[on_top] / raw_rank[on_top]))
    return out


def upvote_rates(
    cumulative_upvotes: NDArray[np.float64],
    cumulative_expected_upvotes: NDArray[np.float64],
    params: ModelParams,
) -> NDArray[np.float64]:
    """Vectorized ``ModelParams.upvote_rate``."""
    f = params.fatigue_factor
    w = params.prior_weight
    denominator = -np.expm1(-f * cumulative_expected_upvotes) / f + w
    return (cumulative_upvotes + w) / denominator


def compute_rankings(
    rows: list[Any], previous_penalties: dict[int, float], settings: Settings
) -> list[dict[str, Any]]:
    """Derived columns for every sample of one tick, as update parameter dicts."""
    if not rows:
        return []
    params = settings.frontpage_params

    ids = [int(r["id"]) for r in rows]
    score = np.array([r["score"] for r in rows], dtype=np.float64)
    sample_time = np.array([r["sampleTime"] for r in rows], dtype=np.float64)
    submission_time = np.array([r["submissionTime"] for r in rows], dtype=np.float64)
    original_time = np.array([r["originalSubmissionTime"] for r in rows], dtype=np.float64)
    top_rank = np.array([r["topRank"] or 0 for r in rows], dtype=np.int64)
    cu = np.array([r["cumulativeUpvotes"] for r in rows], dtype=np.float64)
    ce = np.array([r["cumulativeExpectedUpvotes"] for r in rows], dtype=np.float64)

    carried = np.array([previous_penalties.get(i, 0.0) for i in ids], dtype=np.float64)
    resubmitted = submission_time > original_time
    age_hours = np.maximum(sample_time - submission_time, 0.0) / 3600.0

    raw_rank = descending_ranks(hn_scores(score, age_hours, params.gravity))
    current_penalty = current_penalties(top_rank, raw_rank)
    penalty = carried + PENALTY_SMOOTHING * (current_penalty - carried)

    qn_rank = descending_ranks(qn_scores(cu, ce, age_hours, params))
    rate = upvote_rates(cu, ce, settings.model_params)

    return [
        {
            "id": ids[i],
            "qnRank": int(qn_rank[i]),
            "rawRank": int(raw_rank[i]),
            "penalty": float(penalty[i]),
            "currentPenalty": float(current_penalty[i]),
            "upvoteRate": float(rate[i]),
            "resubmitted": bool(resubmitted[i]),
        }
        for i in range(len(ids))
    ]


async def recompute_ranks(db: NewsDatabase, settings: Settings, sample_time: int) -> int:
    """Recompute and publish the ranking of one tick. Returns the item count."""
    t0 = time.monotonic()
    async with db.write_transaction() as conn:
        rows = await db.select_tick_samples(conn, sample_time)
        previous = await db.select_previous_penalties(conn, sample_time)
        updates = compute_rankings(rows, previous, settings)
        await db.update_tick_rankings(conn, sample_time, updates)
    logger.info(
        "Recomputed ranks",
        sample_time=sample_time,
        items=len(updates),
        elapsed_ms=round((time.monotonic() - t0) * 1000, 1),
    )
    return len(updates)


async def front_page(
    db: NewsDatabase, params: FrontPageParams, ranking: Ranking = Ranking.QUALITY
) -> list[FrontPageStoryDict]:
    """The latest tick's items in ``ranking`` order."""
    rows = await db.front_page(ranking)
    w = params.prior_weight
    return [
        {
            "id": row["id"],
            "title": row["title"],
            "url": row["url"],
            "by": row["by"],
            "score": row["score"],
            "upvote_rate": row["upvoteRate"],
            "quality": (row["cumulativeUpvotes"] + w) / (row["cumulativeExpectedUpvotes"] + w),
            "qn_rank": row["qnRank"],
            "top_rank": row["topRank"],
            "raw_rank": row["rawRank"],
            "age_hours": (row["sampleTime"] - row["submissionTime"]) / 3600,
        }
        for row in rows
    ]
