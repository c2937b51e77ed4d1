"""
Expected upvote share by category and rank.

Attention decays with position as a power law on each page of 30 items, and
drops again with every page the reader has to click through. The model gives
the share of sitewide upvotes an item at a given position should receive
regardless of its quality.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import TypeAlias

from qnews.constants import CATEGORIES, CATEGORY_COEFFICIENTS, MAX_RANK, PAGE_SIZE
from qnews.errors import ConfigError
from qnews.models import CategoryCoefficients

CoefficientTable: TypeAlias = tuple[CategoryCoefficients, ...]


def default_coefficients() -> CoefficientTable:
    return tuple(
        CategoryCoefficients(
            category_coefficient=c,
            page_coefficient=p,
            rank_coefficients=tuple(r),
        )
        for c, p, r in CATEGORY_COEFFICIENTS
    )


def expected_share(
    category: int, one_based_rank: int, coefficients: CoefficientTable
) -> float:
    if not 0 <= category < len(coefficients):
        raise ValueError(f"Unknown category {category}")
    if not 1 <= one_based_rank <= MAX_RANK:
        raise ValueError(f"Rank {one_based_rank} outside 1..{MAX_RANK}")

    zero_based_page = (one_based_rank - 1) // PAGE_SIZE
    rank_on_page = ((one_based_rank - 1) % PAGE_SIZE) + 1

    cs = coefficients[category]
    log_share = (
        cs.category_coefficient
        + cs.page_coefficient * math.log(zero_based_page + 1)
        + cs.rank_coefficients[zero_based_page] * math.log(rank_on_page)
    )
    return math.exp(log_share)


def delta_expected_upvotes(
    category: int,
    one_based_rank: int,
    sitewide_upvotes: int,
    coefficients: CoefficientTable,
) -> float:
    """Share of this tick's sitewide upvotes attributable to rank exposure."""
    return sitewide_upvotes * expected_share(category, one_based_rank, coefficients)


def validate_coefficients(coefficients: Sequence[CategoryCoefficients]) -> None:
    """Reject tables whose share is not strictly decreasing over ranks 1..90."""
    if len(coefficients) != len(CATEGORIES):
        raise ConfigError(
            f"Expected {len(CATEGORIES)} coefficient rows, got {len(coefficients)}"
        )
    table = tuple(coefficients)
    n_pages = MAX_RANK // PAGE_SIZE
    for category, cs in enumerate(table):
        if len(cs.rank_coefficients) != n_pages:
            raise ConfigError(
                f"{CATEGORIES[category]}: expected {n_pages} rank coefficients"
            )
        previous = math.inf
        for rank in range(1, MAX_RANK + 1):
            share = expected_share(category, rank, table)
            if not share < previous:
                raise ConfigError(
                    f"{CATEGORIES[category]}: expected share not decreasing at rank {rank}"
                )
            previous = share
