import pytest

from conftest import T0, count_positions
from qnews.crawler import ingest_once
from qnews.errors import InvalidVoteError, ItemNotFoundError
from qnews.positions import load_positions, record_vote


@pytest.fixture
async def crawled(db, settings, fake_source):
    await ingest_once(fake_source, db, settings, T0, category_pause=0)
    fake_source.set_score(1, 21)
    await ingest_once(fake_source, db, settings, T0 + 60, category_pause=0)
    return db


@pytest.mark.asyncio
async def test_upvote_opens_position(crawled, settings):
    result = await record_vote(crawled, settings, 100, 1, 1, now=T0 + 90)
    assert not result.duplicate
    assert result.entry_time == T0 + 90

    positions = await load_positions(crawled, 100, settings.model_params)
    assert len(positions) == 1
    p = positions[0]
    assert p.direction == 1
    assert p.entry_upvotes == 20
    assert not p.exited
    assert p.entry_upvote_rate == pytest.approx(result.entry_upvote_rate)
    assert p.title == "Story 1"


@pytest.mark.asyncio
async def test_duplicate_vote_is_a_no_op(crawled, settings, fake_source):
    first = await record_vote(crawled, settings, 100, 1, 1, now=T0 + 90)
    fake_source.set_score(1, 40)
    await ingest_once(fake_source, crawled, settings, T0 + 120, category_pause=0)

    second = await record_vote(crawled, settings, 100, 1, 1, now=T0 + 150)
    assert second.duplicate
    assert second.entry_time == first.entry_time
    assert second.entry_upvote_rate == first.entry_upvote_rate
    assert await count_positions(crawled, 100, 1) == 1


@pytest.mark.asyncio
async def test_opposite_vote_closes_and_reopens(crawled, settings):
    await record_vote(crawled, settings, 100, 1, 1, now=T0 + 90)
    result = await record_vote(crawled, settings, 100, 1, -1, now=T0 + 100)
    assert not result.duplicate

    positions = await load_positions(crawled, 100, settings.model_params)
    assert [p.direction for p in positions] == [-1, 1]
    down, up = positions
    assert up.exited and up.exit_time == T0 + 100
    assert up.exit_upvotes == 20
    assert not down.exited


@pytest.mark.asyncio
async def test_cancel_vote_only_closes(crawled, settings):
    await record_vote(crawled, settings, 100, 1, 1, now=T0 + 90)
    await record_vote(crawled, settings, 100, 1, 0, now=T0 + 100)

    positions = await load_positions(crawled, 100, settings.model_params)
    assert len(positions) == 1
    assert positions[0].exit_time == T0 + 100

    # Nothing open any more, so a second cancel changes nothing.
    again = await record_vote(crawled, settings, 100, 1, 0, now=T0 + 110)
    assert again.duplicate
    assert await count_positions(crawled, 100, 1) == 1


@pytest.mark.asyncio
async def test_vote_after_close_opens_new_position(crawled, settings):
    await record_vote(crawled, settings, 100, 1, 1, now=T0 + 90)
    await record_vote(crawled, settings, 100, 1, 0, now=T0 + 100)
    result = await record_vote(crawled, settings, 100, 1, 1, now=T0 + 110)
    assert not result.duplicate
    assert await count_positions(crawled, 100, 1) == 2


@pytest.mark.asyncio
async def test_users_are_independent(crawled, settings):
    await record_vote(crawled, settings, 100, 1, 1, now=T0 + 90)
    result = await record_vote(crawled, settings, 101, 1, 1, now=T0 + 90)
    assert not result.duplicate


@pytest.mark.asyncio
@pytest.mark.parametrize("item_id,direction", [(0, 1), (-5, 1), (1, 2), (1, -2)])
async def test_invalid_votes(crawled, settings, item_id, direction):
    with pytest.raises(InvalidVoteError):
        await record_vote(crawled, settings, 100, item_id, direction)


@pytest.mark.asyncio
async def test_unknown_item(crawled, settings):
    with pytest.raises(ItemNotFoundError) as exc_info:
        await record_vote(crawled, settings, 100, 999, 1)
    assert exc_info.value.item_id == 999


@pytest.mark.asyncio
async def test_load_positions_applies_param_overrides(crawled, settings, fake_source):
    await record_vote(crawled, settings, 100, 1, 1, now=T0 + 90)
    fake_source.set_score(1, 60)
    await ingest_once(fake_source, crawled, settings, T0 + 120, category_pause=0)

    default = (await load_positions(crawled, 100, settings.model_params))[0]
    params = settings.model_params.with_overrides(prior_weight=50.0)
    changed = (await load_positions(crawled, 100, params))[0]

    assert default.current_upvotes == changed.current_upvotes == 59
    assert changed.entry_upvote_rate == pytest.approx(
        params.upvote_rate(changed.entry_upvotes, changed.entry_expected_upvotes)
    )
    assert changed.current_upvote_rate != pytest.approx(default.current_upvote_rate)
