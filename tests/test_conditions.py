from __future__ import annotations

from datetime import datetime, timedelta

import pandas as pd
import pytest

from conditions import (
    AllCondition,
    AnyCondition,
    BuyingPowerIsCondition,
    Comparator,
    ConditionContext,
    EnoughTimePassedCondition,
    MovingAverageCondition,
    Ohlc,
    PortfolioIsProfitableCondition,
    PositionPercentChangeCondition,
    SequenceCondition,
    SimplePriceCondition,
    TimeUnit,
    condition_fields,
    condition_from_dict,
    condition_to_dict,
    describe,
    evaluate,
    have_no_positions,
    have_position,
)
from core.errors import ConfigurationError, ValidationError
from core.models import Asset, Position, PriceSnapshot
from core.price_map import PriceMap

T0 = datetime(2021, 1, 11, 9, 30)

TRUE = SimplePriceCondition(200, Comparator.LESS_THAN)
FALSE = SimplePriceCondition(50, Comparator.LESS_THAN)


@pytest.fixture
def context(portfolio) -> ConditionContext:
    price_map = PriceMap({"COIN": PriceSnapshot(bid=100, mid=101, ask=102)})
    return ConditionContext(
        strategy=portfolio.strategies[0],
        portfolio=portfolio,
        price_map=price_map,
        current_time=T0,
    )


@pytest.mark.parametrize(
    "children, expected",
    [
        ([TRUE, TRUE], True),
        ([TRUE, FALSE], False),
        ([FALSE, TRUE], False),
        ([FALSE, FALSE], False),
        ([], True),
    ],
)
def test_all_truth_table(context, children, expected):
    assert evaluate(AllCondition(list(children)), context) is expected


@pytest.mark.parametrize(
    "children, expected",
    [
        ([TRUE, TRUE], True),
        ([TRUE, FALSE], True),
        ([FALSE, TRUE], True),
        ([FALSE, FALSE], False),
        ([], False),
    ],
)
def test_any_truth_table(context, children, expected):
    assert evaluate(AnyCondition(list(children)), context) is expected


def test_simple_price_uses_requested_side(context):
    assert evaluate(SimplePriceCondition(101.5, Comparator.LESS_THAN), context)
    assert not evaluate(SimplePriceCondition(101.5, Comparator.LESS_THAN, price_field="ask"), context)
    assert evaluate(SimplePriceCondition(100, Comparator.EQUAL, price_field="bid"), context)


def test_sequence_with_only_second_child_true_never_fires(context):
    sequence = SequenceCondition([FALSE, TRUE])
    for day in range(5):
        context.current_time = T0 + timedelta(days=day)
        assert evaluate(sequence, context) is False
        assert sequence.history == []


def test_sequence_children_fire_in_order_across_evaluations(context):
    first = SimplePriceCondition(105, Comparator.LESS_THAN)
    second = BuyingPowerIsCondition(500, Comparator.LESS_THAN)
    sequence = SequenceCondition([first, second])

    # price 101 < 105, buying power 10000
    assert evaluate(sequence, context) is False
    assert sequence.history == [T0]

    # il primo figlio ora è falso ma è già stato soddisfatto
    context.price_map.set_price("COIN", PriceSnapshot(bid=199, mid=200, ask=201))
    context.portfolio.buying_power = 100
    context.current_time = T0 + timedelta(days=1)
    assert evaluate(sequence, context) is True
    assert sequence.history == []


def test_sequence_expires(context):
    first = SimplePriceCondition(105, Comparator.LESS_THAN)
    second = BuyingPowerIsCondition(500, Comparator.LESS_THAN)
    sequence = SequenceCondition([first, second], expiration=2)

    assert evaluate(sequence, context) is False
    assert sequence.history == [T0]

    context.price_map.set_price("COIN", PriceSnapshot(bid=199, mid=200, ask=201))
    context.portfolio.buying_power = 100
    context.current_time = T0 + timedelta(days=2)
    # scaduta: si riparte dal primo figlio, ora falso
    assert evaluate(sequence, context) is False
    assert sequence.history == []


def test_position_conditions(context):
    assert evaluate(have_no_positions(), context)
    assert not evaluate(have_position(), context)

    context.portfolio.positions.append(Position(Asset("COIN"), quantity=2, average_cost=100))
    assert not evaluate(have_no_positions(), context)
    assert evaluate(have_position(), context)
    # (101 - 100) / 100 = 1%
    assert evaluate(PositionPercentChangeCondition(1, Comparator.GREATER_THAN_OR_EQUAL), context)
    assert not evaluate(PositionPercentChangeCondition(3, Comparator.GREATER_THAN_OR_EQUAL), context)


def test_enough_time_passed(context):
    condition = EnoughTimePassedCondition(duration_days=2)
    assert evaluate(condition, context)

    context.portfolio.last_purchase_date = T0 - timedelta(days=1)
    assert not evaluate(condition, context)
    context.current_time = T0 + timedelta(days=1)
    assert evaluate(condition, context)


def test_portfolio_is_profitable(context):
    assert not evaluate(PortfolioIsProfitableCondition(0, Comparator.GREATER_THAN), context)
    context.portfolio.buying_power = 11_000
    assert evaluate(PortfolioIsProfitableCondition(5, Comparator.GREATER_THAN), context)


def test_moving_average_uses_only_closed_candles(context):
    index = pd.bdate_range("2021-01-04", "2021-01-11")
    frame = pd.DataFrame({"close": [100.0] * (len(index) - 1) + [500.0]}, index=index)
    context.history = lambda symbol, start, end: frame

    # all'apertura dell'11 la candela dell'11 (500) non è ancora nota
    below = MovingAverageCondition(duration=-5, ohlc=Ohlc.CLOSE, comparator=Comparator.LESS_THAN_OR_EQUAL)
    above = MovingAverageCondition(duration=-5, ohlc=Ohlc.CLOSE, comparator=Comparator.GREATER_THAN)
    assert not evaluate(below, context)
    assert evaluate(above, context)


def test_moving_average_requires_history(context):
    with pytest.raises(ValidationError):
        evaluate(MovingAverageCondition(), context)


def test_fields_read_and_write_through(context):
    condition = SimplePriceCondition(120, Comparator.GREATER_THAN)
    fields = condition_fields(condition)
    assert [f.name for f in fields] == ["target_price", "comparator", "price_field"]

    fields[0].value = 130
    assert condition.target_price == 130
    assert fields[1].is_categorical
    assert fields[1].value == Comparator.GREATER_THAN


def test_compound_fields_are_prefixed():
    sequence = SequenceCondition([have_no_positions(), SimplePriceCondition(10)], expiration=3)
    names = [f.name for f in condition_fields(sequence)]
    assert names[0] == "conditions[0].amount"
    assert "conditions[1].target_price" in names
    assert names[-1] == "expiration"


def test_serialization_round_trip():
    condition = AnyCondition([
        SequenceCondition(
            [have_no_positions(), MovingAverageCondition(duration=-10, standard_deviation=1.5)],
            expiration=4,
            history=[T0],
        ),
        BuyingPowerIsCondition(2_500, Comparator.GREATER_THAN_OR_EQUAL),
    ])
    data = condition_to_dict(condition)
    assert data["type"] == "any"
    assert condition_from_dict(data) == condition


def test_unknown_condition_type_is_rejected():
    with pytest.raises(ConfigurationError):
        condition_from_dict({"type": "moon_phase"})
    with pytest.raises(ConfigurationError):
        condition_from_dict({"type": "simple_price", "target_price": 1, "color": "red"})


def test_describe_is_readable():
    text = describe(AllCondition([have_no_positions()]))
    assert text.startswith("all(have_position(")


def test_intraday_moving_average_uses_intraday_candles(context):
    index = pd.date_range("2021-01-11 09:30", "2021-01-11 15:45", freq="15min")
    closes = [100.0 if ts.hour < 14 else 90.0 for ts in index]
    frame = pd.DataFrame({"close": closes}, index=index)
    intervals = []

    def intraday(symbol, start, end, interval):
        intervals.append(interval)
        return frame

    context.intraday_history = intraday
    context.current_time = datetime(2021, 1, 11, 16, 0)

    # finestra di 2 ore: solo le candele dalle 14:00 (media 90)
    above = MovingAverageCondition(duration=-2, unit=TimeUnit.HOUR, comparator=Comparator.GREATER_THAN)
    assert evaluate(above, context)
    at_most = MovingAverageCondition(duration=-2, unit=TimeUnit.HOUR, comparator=Comparator.LESS_THAN_OR_EQUAL)
    assert not evaluate(at_most, context)
    assert intervals == ["15min", "15min"]


def test_intraday_moving_average_requires_intraday_history(context):
    condition = MovingAverageCondition(duration=-30, unit=TimeUnit.MINUTE)
    assert condition.interval == "1min"
    assert condition.window_days == 0
    with pytest.raises(ValidationError):
        evaluate(condition, context)


def test_sequence_expiration_in_hours(context):
    first = SimplePriceCondition(105, Comparator.LESS_THAN)
    second = BuyingPowerIsCondition(500, Comparator.LESS_THAN)
    sequence = SequenceCondition([first, second], expiration=2, expiration_unit=TimeUnit.HOUR)

    assert evaluate(sequence, context) is False
    context.current_time = T0 + timedelta(hours=1)
    assert evaluate(sequence, context) is False
    assert sequence.history == [T0]

    context.price_map.set_price("COIN", PriceSnapshot(bid=199, mid=200, ask=201))
    context.current_time = T0 + timedelta(hours=2)
    assert evaluate(sequence, context) is False
    assert sequence.history == []


def test_time_units_are_serialized():
    condition = SequenceCondition(
        [MovingAverageCondition(duration=-3, unit=TimeUnit.MINUTE)],
        expiration=6,
        expiration_unit=TimeUnit.HOUR,
    )
    data = condition_to_dict(condition)
    assert data["expiration_unit"] == "hour"
    assert data["conditions"][0]["unit"] == "minute"
    assert condition_from_dict(data) == condition
