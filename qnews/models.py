"""Typed data models for crawling, ranking and scoring."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Optional, TypeAlias

from typing_extensions import TypedDict

from qnews.constants import N_CATEGORIES
from qnews.upvote_rate import upvote_rate

Ranks: TypeAlias = tuple[int, int, int, int, int]

EMPTY_RANKS: Ranks = (0,) * N_CATEGORIES  # type: ignore[assignment]


class Ranking(StrEnum):
    """Orderings the front page can be served in."""

    QUALITY = "quality"
    HNTOP = "hntop"
    RAW = "raw"


@dataclass(frozen=True)
class ScrapedStory:
    """Item details as reported by the story source.

    An ``id`` of 0 marks an item whose details could not be fetched.
    """

    id: int
    by: str = ""
    title: str = ""
    url: str = ""
    score: int = 0
    descendants: int = 0
    submission_time: int = 0

    @property
    def ok(self) -> bool:
        return self.id != 0


@dataclass(frozen=True)
class LastSeen:
    score: int
    cumulative_upvotes: int
    cumulative_expected_upvotes: float


@dataclass(frozen=True)
class Sample:
    """One row of the time series: the state of one item at one crawl."""

    id: int
    sample_time: int
    submission_time: int
    score: int
    descendants: int
    ranks: Ranks
    cumulative_upvotes: int
    cumulative_expected_upvotes: float
    age_approx: int = 0


@dataclass(frozen=True)
class CrawlResult:
    sample_time: int
    items: int
    new_items: int
    sitewide_upvotes: int
    delta_expected_upvotes: float
    skipped: int = 0


@dataclass(frozen=True)
class ModelParams:
    """Damping constants of the upvote rate model."""

    fatigue_factor: float
    prior_weight: float

    def with_overrides(
        self,
        fatigue_factor: Optional[float] = None,
        prior_weight: Optional[float] = None,
    ) -> ModelParams:
        """Return a copy with the given values replaced (None keeps default)."""
        changes: dict[str, float] = {}
        if fatigue_factor is not None:
            changes["fatigue_factor"] = fatigue_factor
        if prior_weight is not None:
            changes["prior_weight"] = prior_weight
        return replace(self, **changes) if changes else self

    def upvote_rate(self, upvotes: float, expected_upvotes: float) -> float:
        return upvote_rate(upvotes, expected_upvotes, self)


@dataclass(frozen=True)
class FrontPageParams:
    prior_weight: float
    overall_prior_weight: float
    gravity: float


@dataclass(frozen=True)
class CategoryCoefficients:
    category_coefficient: float
    page_coefficient: float
    rank_coefficients: tuple[float, ...]


@dataclass
class Position:
    """A user's directional bet on an item, joined with the item's current state."""

    user_id: int
    item_id: int
    position_id: int
    direction: int
    entry_time: int
    entry_upvotes: int
    entry_expected_upvotes: float
    entry_upvote_rate: float
    exit_time: Optional[int] = None
    exit_upvotes: Optional[int] = None
    exit_expected_upvotes: Optional[float] = None
    exit_upvote_rate: Optional[float] = None
    current_upvotes: int = 0
    current_expected_upvotes: float = 0.0
    current_upvote_rate: float = 0.0
    title: str = ""
    url: str = ""
    by: str = ""
    running_score: float = 0.0
    label: str = ""
    user_score: float = 0.0

    @property
    def exited(self) -> bool:
        return self.exit_time is not None


@dataclass(frozen=True)
class VoteResult:
    entry_upvote_rate: float
    entry_time: int
    duplicate: bool


@dataclass
class ScoreHistory:
    positions: list[Position] = field(default_factory=list)
    score: float = 0.0
    plot_data: list[tuple[int, float, str]] = field(default_factory=list)


class StoryDetailsDict(TypedDict):
    """Latest persisted state of one item, as stored in archive blobs."""

    ID: int
    By: str
    Title: str
    URL: str
    SubmissionTime: int
    OriginalSubmissionTime: int
    Score: int
    Comments: int
    CumulativeUpvotes: int
    CumulativeExpectedUpvotes: float


class ArchiveDict(StoryDetailsDict):
    RanksPlotData: list[list[float | int]]
    UpvotesPlotData: list[list[float | int]]
    PenaltyPlotData: list[list[float | int]]
    MaxSampleTime: int


class FrontPageStoryDict(TypedDict):
    id: int
    title: str
    url: str
    by: str
    score: int
    upvote_rate: float
    quality: float
    qn_rank: Optional[int]
    top_rank: Optional[int]
    raw_rank: Optional[int]
    age_hours: float
