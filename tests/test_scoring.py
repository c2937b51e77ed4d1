import math

import pytest
from hypothesis import given, strategies as st

from qnews.constants import DEFAULT_FATIGUE_FACTOR, DEFAULT_PRIOR_WEIGHT
from qnews.errors import NonFiniteScoreError, UnknownFormulaError
from qnews.models import ModelParams, Position
from qnews.scoring import (
    FORMULAS,
    alpha_label,
    buy_price,
    get_formula,
    score_history,
    sell_price,
    user_score,
)

PARAMS = ModelParams(DEFAULT_FATIGUE_FACTOR, DEFAULT_PRIOR_WEIGHT)


def make_position(
    position_id=1,
    direction=1,
    entry_time=1000,
    entry_upvotes=10,
    entry_expected=5.0,
    current_upvotes=30,
    current_expected=10.0,
    exit_upvotes=None,
    exit_expected=None,
) -> Position:
    p = Position(
        user_id=100,
        item_id=position_id,
        position_id=position_id,
        direction=direction,
        entry_time=entry_time,
        entry_upvotes=entry_upvotes,
        entry_expected_upvotes=entry_expected,
        entry_upvote_rate=PARAMS.upvote_rate(entry_upvotes, entry_expected),
        current_upvotes=current_upvotes,
        current_expected_upvotes=current_expected,
        current_upvote_rate=PARAMS.upvote_rate(current_upvotes, current_expected),
    )
    if exit_upvotes is not None:
        p.exit_time = entry_time + 60
        p.exit_upvotes = exit_upvotes
        p.exit_expected_upvotes = exit_expected
        p.exit_upvote_rate = PARAMS.upvote_rate(exit_upvotes, exit_expected)
    return p


def test_prices_for_open_upvote():
    p = make_position()
    assert buy_price(p) == p.entry_upvote_rate
    assert sell_price(p) == p.current_upvote_rate


def test_prices_for_closed_downvote():
    p = make_position(direction=-1, exit_upvotes=12, exit_expected=9.0)
    assert buy_price(p) == p.exit_upvote_rate
    assert sell_price(p) == p.entry_upvote_rate


def test_log_peer_truth_serum():
    p = make_position()
    expected = math.log2(p.current_upvote_rate / p.entry_upvote_rate) * 100
    assert user_score(p, PARAMS) == pytest.approx(expected)
    assert user_score(p, PARAMS, "LogPTS") == pytest.approx(expected)


def test_peer_truth_serum():
    p = make_position()
    expected = (p.current_upvote_rate / p.entry_upvote_rate - 1) * 100
    assert user_score(p, PARAMS, "PeerTruthSerum") == pytest.approx(expected)
    assert user_score(p, PARAMS, "PTS") == pytest.approx(expected)


def test_good_upvote_scores_positive_and_downvote_negative():
    rising = make_position()
    assert user_score(rising, PARAMS) > 0
    assert user_score(make_position(direction=-1), PARAMS) < 0


def test_unknown_formula():
    with pytest.raises(UnknownFormulaError):
        user_score(make_position(), PARAMS, "Astrology")
    with pytest.raises(KeyError):
        get_formula("Astrology")


def test_empty_formula_name_uses_default():
    assert get_formula("") is FORMULAS["LogPeerTruthSerum"]


def test_non_finite_score_raises():
    p = make_position()
    p.entry_upvote_rate = math.nan
    with pytest.raises(NonFiniteScoreError) as exc_info:
        user_score(p, PARAMS)
    assert exc_info.value.position_id == p.position_id


@pytest.mark.parametrize("name", [n for n in FORMULAS if n.startswith("InformationGain")])
@given(
    entry_upvotes=st.integers(min_value=0, max_value=500),
    gained=st.integers(min_value=0, max_value=500),
    entry_expected=st.floats(min_value=0.0, max_value=500.0),
    exposure=st.floats(min_value=0.0, max_value=500.0),
)
def test_information_gain_is_zero_for_downvotes(
    name, entry_upvotes, gained, entry_expected, exposure
):
    p = make_position(
        direction=-1,
        entry_upvotes=entry_upvotes,
        entry_expected=entry_expected,
        current_upvotes=entry_upvotes + gained,
        current_expected=entry_expected + exposure,
    )
    assert FORMULAS[name](p, PARAMS) == 0.0


@pytest.mark.parametrize("name", ["InformationGain", "InformationGain4", "InformationGain8"])
def test_information_gain_zero_without_exposure(name):
    p = make_position(current_upvotes=10, current_expected=5.0)
    assert FORMULAS[name](p, PARAMS) == 0.0


@pytest.mark.parametrize("name", sorted(FORMULAS))
def test_every_formula_is_finite_for_typical_positions(name):
    assert math.isfinite(user_score(make_position(), PARAMS, name))


@pytest.mark.parametrize(
    "i,label", [(0, "A"), (1, "B"), (25, "Z"), (26, "AA"), (27, "AB"), (51, "AZ"), (52, "BA"), (701, "ZZ"), (702, "AAA")]
)
def test_alpha_label(i, label):
    assert alpha_label(i) == label


def test_alpha_label_is_a_bijection():
    labels = [alpha_label(i) for i in range(5000)]
    assert len(set(labels)) == len(labels)
    # Shorter labels come first, then alphabetical within a length.
    assert labels == sorted(labels, key=lambda s: (len(s), s))


def test_alpha_label_rejects_negative():
    with pytest.raises(ValueError):
        alpha_label(-1)


def test_score_history():
    older = make_position(position_id=1, entry_time=1000)
    middle = make_position(position_id=2, entry_time=2000, direction=-1)
    newest = make_position(position_id=3, entry_time=3000, current_upvotes=50)

    history = score_history([middle, older, newest], PARAMS)

    assert [p.position_id for p in history.positions] == [3, 2, 1]
    assert [p.label for p in history.positions] == ["C", "B", "A"]
    scores = [p.user_score for p in history.positions]
    assert history.score == pytest.approx(sum(scores))
    # Running score includes the position itself and everything older.
    assert history.positions[0].running_score == pytest.approx(history.score)
    assert history.positions[2].running_score == pytest.approx(scores[2])
    assert history.positions[1].running_score == pytest.approx(scores[1] + scores[2])
    assert [pt[0] for pt in history.plot_data] == [1000, 2000, 3000]
    assert history.plot_data[-1][1] == pytest.approx(history.score)
    assert history.plot_data[0][2] == "1"


def test_score_history_page_size():
    positions = [make_position(position_id=i, entry_time=i) for i in range(1, 6)]
    history = score_history(positions, PARAMS, page_size=2)
    assert [p.position_id for p in history.positions] == [5, 4]
    assert len(history.plot_data) == 5


def test_score_history_unknown_formula_with_no_positions():
    with pytest.raises(UnknownFormulaError):
        score_history([], PARAMS, "Astrology")
