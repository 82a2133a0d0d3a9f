"""
Condition evaluation - una funzione di valutazione per ogni variante

evaluate(condition, context) sceglie la funzione dal tag della variante;
le composte richiamano evaluate() sulle figlie.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

import pandas as pd

import config
from core import allocation
from core.errors import ConfigurationError, ValidationError
from core.models import Asset, FillProbability, Position, Side
from core.price_map import PriceMap
from conditions.types import (
    AllCondition,
    AnyCondition,
    AssetIsShortCondition,
    BuyingPowerIsCondition,
    Condition,
    ConditionType,
    EnoughTimePassedCondition,
    HavePositionCondition,
    MovingAverageCondition,
    PortfolioIsProfitableCondition,
    PortfolioValueIsCondition,
    PositionPercentChangeCondition,
    PositionValueIsCondition,
    PriceField,
    SequenceCondition,
    SimplePriceCondition,
    Statistic,
    TimeUnit,
    TradeEvent,
    compare,
    to_timedelta,
)

if TYPE_CHECKING:
    from core.portfolio import Portfolio, Strategy

_LOG = logging.getLogger(__name__)

# (symbol, start, end) -> DataFrame indicizzato per data con colonne OHLCV
HistoryLookup = Callable[[str, date, date], pd.DataFrame]
# (symbol, start, end, interval) -> candele intraday indicizzate per timestamp
IntradayLookup = Callable[[str, datetime, datetime, str], pd.DataFrame]


@dataclass
class ConditionContext:
    """Stato visibile alle condizioni durante una valutazione"""
    strategy: Strategy
    portfolio: Portfolio
    price_map: PriceMap
    current_time: datetime
    position: Optional[Position] = None
    history: Optional[HistoryLookup] = None
    intraday_history: Optional[IntradayLookup] = None

    def target_positions(self) -> List[Position]:
        symbol = self.strategy.target_asset.symbol
        return [pos for pos in self.portfolio.positions if pos.symbol == symbol]

    def target_position(self) -> Optional[Position]:
        if self.position is not None:
            return self.position
        positions = self.target_positions()
        return positions[0] if positions else None


def evaluate(condition: Condition, context: ConditionContext) -> bool:
    """Valuta una condizione (ricorsivamente per le composte)"""
    try:
        evaluator = _EVALUATORS[condition.type]
    except (AttributeError, KeyError) as e:
        raise ConfigurationError(f"Unknown condition: {condition!r}") from e
    result = evaluator(condition, context)
    _LOG.debug(f"🔎 {condition.type.value} -> {result}")
    return result


def _current_price(context: ConditionContext, price_field: PriceField, symbol: str = None) -> float:
    """bid/mid/ask dell'asset target (o di symbol) tramite il price model"""
    asset = context.strategy.target_asset
    if symbol and symbol != asset.symbol:
        asset = Asset(symbol)
    if price_field == PriceField.BID:
        return context.price_map.resolve_price(asset, Side.SELL, FillProbability.LIKELY)
    if price_field == PriceField.ASK:
        return context.price_map.resolve_price(asset, Side.BUY, FillProbability.LIKELY)
    return context.price_map.resolve_price(asset, Side.BUY, FillProbability.MID)


# ----------------------------------------------------------------------
# Leaf evaluators
# ----------------------------------------------------------------------

def _eval_simple_price(cond: SimplePriceCondition, ctx: ConditionContext) -> bool:
    price = _current_price(ctx, cond.price_field)
    return compare(price, cond.comparator, cond.target_price)


def _moving_average_window(cond: MovingAverageCondition, ctx: ConditionContext, symbol: str) -> pd.Series:
    """Valori OHLC della finestra, solo candele chiuse al momento corrente"""
    if cond.is_intraday:
        if ctx.intraday_history is None:
            raise ValidationError("Intraday moving average condition requires intraday history")
        start = ctx.current_time - cond.window
        history = ctx.intraday_history(symbol, start, ctx.current_time, cond.interval)
        if history is None or history.empty:
            return pd.Series(dtype=float)
        mask = (history.index >= pd.Timestamp(start)) & (history.index < pd.Timestamp(ctx.current_time))
        return history.loc[mask, cond.ohlc.value].dropna()

    if ctx.history is None:
        raise ValidationError("Moving average condition requires market history")

    # Alla chiusura la candela del giorno è nota, all'apertura no
    close_hour, close_minute = config.MARKET_CLOSE_TIME
    today = ctx.current_time.date()
    if (ctx.current_time.hour, ctx.current_time.minute) >= (close_hour, close_minute):
        end = today
    else:
        end = today - timedelta(days=1)
    start = today - timedelta(days=cond.window_days)

    history = ctx.history(symbol, start, end)
    if history is None or history.empty:
        return pd.Series(dtype=float)
    mask = (history.index >= pd.Timestamp(start)) & (history.index <= pd.Timestamp(end))
    return history.loc[mask, cond.ohlc.value].dropna()


def _eval_moving_average(cond: MovingAverageCondition, ctx: ConditionContext) -> bool:
    symbol = cond.target_symbol or ctx.strategy.target_asset.symbol
    values = _moving_average_window(cond, ctx, symbol)
    if values.empty:
        return False

    if cond.statistic == Statistic.MEAN:
        base = values.mean()
    elif cond.statistic == Statistic.LOW:
        base = values.min()
    else:
        base = values.max()
    threshold = base + cond.standard_deviation * values.std(ddof=0)

    price = _current_price(ctx, cond.price_field, symbol)
    return compare(price, cond.comparator, float(threshold))


def _eval_position_percent_change(cond: PositionPercentChangeCondition, ctx: ConditionContext) -> bool:
    position = ctx.target_position()
    if position is None or position.average_cost == 0:
        return False
    worth = ctx.price_map.position_price(position)
    change = (worth - position.average_cost) / position.average_cost
    return compare(change, cond.comparator, cond.percent / 100)


def _eval_enough_time_passed(cond: EnoughTimePassedCondition, ctx: ConditionContext) -> bool:
    if cond.event == TradeEvent.PURCHASE:
        last = ctx.portfolio.last_purchase_date
    else:
        last = ctx.portfolio.last_sale_date
    if last is None:
        return True
    return last + timedelta(days=int(cond.duration_days)) <= ctx.current_time


def _eval_have_position(cond: HavePositionCondition, ctx: ConditionContext) -> bool:
    current = allocation.exposure(
        cond.allocation_type,
        ctx.portfolio.buying_power,
        ctx.target_positions(),
        ctx.price_map,
    )
    return compare(current, cond.comparator, cond.amount)


def _eval_portfolio_value_is(cond: PortfolioValueIsCondition, ctx: ConditionContext) -> bool:
    value = ctx.portfolio.total_value(ctx.price_map)
    return compare(value, cond.comparator, cond.amount)


def _eval_position_value_is(cond: PositionValueIsCondition, ctx: ConditionContext) -> bool:
    value = allocation.position_value(ctx.target_positions(), ctx.price_map)
    return compare(value, cond.comparator, cond.amount)


def _eval_buying_power_is(cond: BuyingPowerIsCondition, ctx: ConditionContext) -> bool:
    return compare(ctx.portfolio.buying_power, cond.comparator, cond.amount)


def _eval_portfolio_is_profitable(cond: PortfolioIsProfitableCondition, ctx: ConditionContext) -> bool:
    initial = ctx.portfolio.initial_value
    if not initial:
        return False
    profit = (ctx.portfolio.total_value(ctx.price_map) - initial) / initial * 100
    return compare(profit, cond.comparator, cond.percent_profit)


def _eval_asset_is_short(cond: AssetIsShortCondition, ctx: ConditionContext) -> bool:
    position = ctx.target_position()
    return position is not None and position.quantity < 0


# ----------------------------------------------------------------------
# Compound evaluators
# ----------------------------------------------------------------------

def _eval_all(cond: AllCondition, ctx: ConditionContext) -> bool:
    for child in cond.conditions:
        if not evaluate(child, ctx):
            return False
    return True


def _eval_any(cond: AnyCondition, ctx: ConditionContext) -> bool:
    for child in cond.conditions:
        if evaluate(child, ctx):
            return True
    return False


def _sequence_expired(cond: SequenceCondition, current_time: datetime) -> bool:
    if not cond.expiration or not cond.history:
        return False
    return current_time >= cond.history[0] + to_timedelta(int(cond.expiration), cond.expiration_unit)


def _eval_sequence(cond: SequenceCondition, ctx: ConditionContext) -> bool:
    if _sequence_expired(cond, ctx.current_time):
        _LOG.debug(f"⏳ Sequence expired after {cond.expiration} {TimeUnit(cond.expiration_unit).value}, resetting")
        cond.history = []

    for child in cond.conditions[len(cond.history):]:
        if not evaluate(child, ctx):
            return False
        cond.history.append(ctx.current_time)

    # Sequenza completata: riparte da zero per il prossimo ciclo
    cond.history = []
    return True


_EVALUATORS: Dict[ConditionType, Callable[[Condition, ConditionContext], bool]] = {
    ConditionType.SIMPLE_PRICE: _eval_simple_price,
    ConditionType.MOVING_AVERAGE: _eval_moving_average,
    ConditionType.POSITION_PERCENT_CHANGE: _eval_position_percent_change,
    ConditionType.ENOUGH_TIME_PASSED: _eval_enough_time_passed,
    ConditionType.HAVE_POSITION: _eval_have_position,
    ConditionType.PORTFOLIO_VALUE_IS: _eval_portfolio_value_is,
    ConditionType.POSITION_VALUE_IS: _eval_position_value_is,
    ConditionType.BUYING_POWER_IS: _eval_buying_power_is,
    ConditionType.PORTFOLIO_IS_PROFITABLE: _eval_portfolio_is_profitable,
    ConditionType.ASSET_IS_SHORT: _eval_asset_is_short,
    ConditionType.ALL: _eval_all,
    ConditionType.ANY: _eval_any,
    ConditionType.SEQUENCE: _eval_sequence,
}
