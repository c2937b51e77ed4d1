"""Vote intake and position loading."""

from __future__ import annotations

import time
from typing import Optional

from qnews.config import Settings
from qnews.errors import InvalidVoteError
from qnews.logging_config import get_logger
from qnews.models import ModelParams, Position, VoteResult
from qnews.storage import NewsDatabase

logger = get_logger(__name__)

DIRECTIONS = (-1, 0, 1)


def validate_vote(item_id: int, direction: int) -> None:
    if item_id <= 0:
        raise InvalidVoteError(f"Invalid item id {item_id}")
    if direction not in DIRECTIONS:
        raise InvalidVoteError(f"Invalid direction {direction}")


async def record_vote(
    db: NewsDatabase,
    settings: Settings,
    user_id: int,
    item_id: int,
    direction: int,
    now: Optional[int] = None,
) -> VoteResult:
    """
    Apply a vote to the user's position on an item.

    A vote matching the open position's direction (or 0 when nothing is open)
    changes nothing. Otherwise the open position, if any, is closed at the
    item's latest sample, and a non-zero direction opens a new position there.
    Persisted rates always use the default model parameters.
    """
    validate_vote(item_id, direction)
    now = int(time.time()) if now is None else now
    params = settings.model_params

    async with db.write_transaction() as conn:
        sample = await db.latest_sample(conn, item_id)
        upvotes = int(sample["cumulativeUpvotes"])
        expected_upvotes = float(sample["cumulativeExpectedUpvotes"])
        rate = params.upvote_rate(upvotes, expected_upvotes)

        latest = await db.latest_position(conn, user_id, item_id)
        is_open = latest is not None and latest["exitTime"] is None
        open_direction = int(latest["direction"]) if is_open and latest else 0

        if direction == open_direction:
            logger.debug(
                "Duplicate vote", user_id=user_id, item_id=item_id, direction=direction
            )
            if is_open and latest:
                return VoteResult(
                    entry_upvote_rate=float(latest["entryUpvoteRate"]),
                    entry_time=int(latest["entryTime"]),
                    duplicate=True,
                )
            return VoteResult(entry_upvote_rate=rate, entry_time=now, duplicate=True)

        if is_open and latest:
            await db.close_position(
                conn,
                int(latest["positionID"]),
                {
                    "exitTime": now,
                    "exitUpvotes": upvotes,
                    "exitExpectedUpvotes": expected_upvotes,
                    "exitUpvoteRate": rate,
                },
            )

        if direction != 0:
            position_id = await db.insert_position(
                conn,
                {
                    "userID": user_id,
                    "storyID": item_id,
                    "direction": direction,
                    "entryTime": now,
                    "entryUpvotes": upvotes,
                    "entryExpectedUpvotes": expected_upvotes,
                    "entryUpvoteRate": rate,
                },
            )
            logger.info(
                "Opened position",
                user_id=user_id,
                item_id=item_id,
                position_id=position_id,
                direction=direction,
                entry_upvote_rate=round(rate, 4),
            )

    return VoteResult(entry_upvote_rate=rate, entry_time=now, duplicate=False)


async def load_positions(
    db: NewsDatabase, user_id: int, params: ModelParams
) -> list[Position]:
    """A user's positions, newest entry first.

    Entry, exit and current rates are re-derived from the stored upvote
    counts with ``params``, so what-if parameters apply to every price.
    """
    rows = await db.select_positions(user_id)
    out: list[Position] = []
    for row in rows:
        entry_upvotes = int(row["entryUpvotes"])
        entry_expected = float(row["entryExpectedUpvotes"])
        current_upvotes = int(row["cumulativeUpvotes"])
        current_expected = float(row["cumulativeExpectedUpvotes"])
        p = Position(
            user_id=int(row["userID"]),
            item_id=int(row["storyID"]),
            position_id=int(row["positionID"]),
            direction=int(row["direction"]),
            entry_time=int(row["entryTime"]),
            entry_upvotes=entry_upvotes,
            entry_expected_upvotes=entry_expected,
            entry_upvote_rate=params.upvote_rate(entry_upvotes, entry_expected),
            current_upvotes=current_upvotes,
            current_expected_upvotes=current_expected,
            current_upvote_rate=params.upvote_rate(current_upvotes, current_expected),
            title=row["title"],
            url=row["url"],
            by=row["by"],
        )
        if row["exitTime"] is not None:
            p.exit_time = int(row["exitTime"])
            p.exit_upvotes = int(row["exitUpvotes"])
            p.exit_expected_upvotes = float(row["exitExpectedUpvotes"])
            p.exit_upvote_rate = params.upvote_rate(
                p.exit_upvotes, p.exit_expected_upvotes
            )
        out.append(p)
    return out
