"""
Condition Engine - alberi di predicati booleani su strategia, portfolio,
prezzi, posizione e tempo.

Componenti:
- types.py: varianti (tagged union), serializzazione, preset
- evaluation.py: ConditionContext e evaluate() (una funzione per variante)
- fields.py: campi ottimizzabili tipizzati con getter/setter
"""

from conditions.types import (
    AllCondition,
    AnyCondition,
    AssetIsShortCondition,
    BuyingPowerIsCondition,
    Comparator,
    Condition,
    ConditionType,
    EnoughTimePassedCondition,
    HavePositionCondition,
    MovingAverageCondition,
    Ohlc,
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
    condition_from_dict,
    condition_to_dict,
    conditions_from_list,
    describe,
    have_no_positions,
    have_position,
    price_is_not_too_high,
    intraday_windows,
    trailing_window_days,
)
from conditions.evaluation import ConditionContext, evaluate
from conditions.fields import Field, condition_fields

__all__ = [
    "AllCondition",
    "AnyCondition",
    "AssetIsShortCondition",
    "BuyingPowerIsCondition",
    "Comparator",
    "Condition",
    "ConditionContext",
    "ConditionType",
    "EnoughTimePassedCondition",
    "Field",
    "HavePositionCondition",
    "MovingAverageCondition",
    "Ohlc",
    "PortfolioIsProfitableCondition",
    "PortfolioValueIsCondition",
    "PositionPercentChangeCondition",
    "PositionValueIsCondition",
    "PriceField",
    "SequenceCondition",
    "SimplePriceCondition",
    "Statistic",
    "TimeUnit",
    "TradeEvent",
    "condition_fields",
    "condition_from_dict",
    "condition_to_dict",
    "conditions_from_list",
    "describe",
    "evaluate",
    "have_no_positions",
    "have_position",
    "intraday_windows",
    "price_is_not_too_high",
    "trailing_window_days",
]
