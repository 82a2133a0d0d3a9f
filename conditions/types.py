"""
Condition variants - tipi chiusi (tagged union) delle condizioni di strategia

Ogni variante è una dataclass con un tag ConditionType; le condizioni
composte (All, Any, Sequence) contengono una lista di varianti figlie.
Valutazione e campi ottimizzabili sono in evaluation.py e fields.py,
una funzione per variante.
"""

from __future__ import annotations

import operator
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, List, Optional, Tuple, Union

from core.allocation import AllocationType
from core.errors import ConfigurationError


class ConditionType(str, Enum):
    SIMPLE_PRICE = "simple_price"
    MOVING_AVERAGE = "moving_average"
    POSITION_PERCENT_CHANGE = "position_percent_change"
    ENOUGH_TIME_PASSED = "enough_time_passed"
    HAVE_POSITION = "have_position"
    PORTFOLIO_VALUE_IS = "portfolio_value_is"
    POSITION_VALUE_IS = "position_value_is"
    BUYING_POWER_IS = "buying_power_is"
    PORTFOLIO_IS_PROFITABLE = "portfolio_is_profitable"
    ASSET_IS_SHORT = "asset_is_short"
    ALL = "all"
    ANY = "any"
    SEQUENCE = "sequence"


class Comparator(str, Enum):
    LESS_THAN = "<"
    GREATER_THAN = ">"
    LESS_THAN_OR_EQUAL = "<="
    GREATER_THAN_OR_EQUAL = ">="
    EQUAL = "=="


_COMPARE_OPS: Dict[Comparator, Callable[[Any, Any], bool]] = {
    Comparator.LESS_THAN: operator.lt,
    Comparator.GREATER_THAN: operator.gt,
    Comparator.LESS_THAN_OR_EQUAL: operator.le,
    Comparator.GREATER_THAN_OR_EQUAL: operator.ge,
    Comparator.EQUAL: operator.eq,
}


def compare(left: float, comparator: Comparator, right: float) -> bool:
    """left <comparator> right"""
    return _COMPARE_OPS[Comparator(comparator)](left, right)


class PriceField(str, Enum):
    BID = "bid"
    MID = "mid"
    ASK = "ask"


class Ohlc(str, Enum):
    OPEN = "open"
    HIGH = "high"
    LOW = "low"
    CLOSE = "close"


class Statistic(str, Enum):
    MEAN = "mean"
    LOW = "low"
    HIGH = "high"


class TradeEvent(str, Enum):
    PURCHASE = "purchase"
    SALE = "sale"


class TimeUnit(str, Enum):
    DAY = "day"
    HOUR = "hour"
    MINUTE = "minute"


# Candele intraday usate dalle finestre sotto il giorno
INTRADAY_INTERVALS: Dict[TimeUnit, str] = {
    TimeUnit.HOUR: "15min",
    TimeUnit.MINUTE: "1min",
}


def to_timedelta(amount: float, unit: TimeUnit) -> timedelta:
    unit = TimeUnit(unit)
    if unit == TimeUnit.HOUR:
        return timedelta(hours=amount)
    if unit == TimeUnit.MINUTE:
        return timedelta(minutes=amount)
    return timedelta(days=amount)


# ----------------------------------------------------------------------
# Leaf variants
# ----------------------------------------------------------------------

@dataclass
class SimplePriceCondition:
    """Prezzo corrente (bid/mid/ask) confrontato con una soglia"""
    target_price: float
    comparator: Comparator = Comparator.LESS_THAN
    price_field: PriceField = PriceField.MID
    type: ClassVar[ConditionType] = ConditionType.SIMPLE_PRICE


@dataclass
class MovingAverageCondition:
    """
    Prezzo corrente vs statistica (media/min/max) di un campo OHLC sulla
    finestra mobile di |duration| unità, spostata di N deviazioni standard.

    Le finestre in giorni usano lo storico daily, quelle in ore e minuti
    le candele intraday (15min e 1min).
    """
    duration: int = -5
    standard_deviation: float = 0.0
    statistic: Statistic = Statistic.MEAN
    ohlc: Ohlc = Ohlc.CLOSE
    comparator: Comparator = Comparator.LESS_THAN_OR_EQUAL
    price_field: PriceField = PriceField.MID
    target_symbol: Optional[str] = None
    unit: TimeUnit = TimeUnit.DAY
    type: ClassVar[ConditionType] = ConditionType.MOVING_AVERAGE

    @property
    def is_intraday(self) -> bool:
        return TimeUnit(self.unit) != TimeUnit.DAY

    @property
    def window(self) -> timedelta:
        return to_timedelta(abs(int(self.duration)), self.unit)

    @property
    def window_days(self) -> int:
        """Giorni di storico daily richiesti (0 per le finestre intraday)"""
        return 0 if self.is_intraday else abs(int(self.duration))

    @property
    def interval(self) -> Optional[str]:
        return INTRADAY_INTERVALS.get(TimeUnit(self.unit))


@dataclass
class PositionPercentChangeCondition:
    """Variazione % della posizione rispetto al costo medio"""
    percent: float
    comparator: Comparator = Comparator.GREATER_THAN_OR_EQUAL
    type: ClassVar[ConditionType] = ConditionType.POSITION_PERCENT_CHANGE


@dataclass
class EnoughTimePassedCondition:
    """Almeno duration_days giorni dall'ultimo acquisto o vendita"""
    duration_days: int = 1
    event: TradeEvent = TradeEvent.PURCHASE
    type: ClassVar[ConditionType] = ConditionType.ENOUGH_TIME_PASSED


@dataclass
class HavePositionCondition:
    """Esposizione sull'asset target (nel tipo di allocazione scelto) vs amount"""
    amount: float = 0.0
    allocation_type: AllocationType = AllocationType.NUM_ASSETS
    comparator: Comparator = Comparator.GREATER_THAN
    type: ClassVar[ConditionType] = ConditionType.HAVE_POSITION


@dataclass
class PortfolioValueIsCondition:
    amount: float
    comparator: Comparator = Comparator.GREATER_THAN
    type: ClassVar[ConditionType] = ConditionType.PORTFOLIO_VALUE_IS


@dataclass
class PositionValueIsCondition:
    amount: float
    comparator: Comparator = Comparator.GREATER_THAN
    type: ClassVar[ConditionType] = ConditionType.POSITION_VALUE_IS


@dataclass
class BuyingPowerIsCondition:
    amount: float
    comparator: Comparator = Comparator.GREATER_THAN
    type: ClassVar[ConditionType] = ConditionType.BUYING_POWER_IS


@dataclass
class PortfolioIsProfitableCondition:
    """Profitto % del portfolio rispetto al valore iniziale"""
    percent_profit: float = 0.0
    comparator: Comparator = Comparator.GREATER_THAN
    type: ClassVar[ConditionType] = ConditionType.PORTFOLIO_IS_PROFITABLE


@dataclass
class AssetIsShortCondition:
    type: ClassVar[ConditionType] = ConditionType.ASSET_IS_SHORT


# ----------------------------------------------------------------------
# Compound variants
# ----------------------------------------------------------------------

@dataclass
class AllCondition:
    """AND: vera se tutte le figlie sono vere"""
    conditions: List[Condition] = field(default_factory=list)
    type: ClassVar[ConditionType] = ConditionType.ALL


@dataclass
class AnyCondition:
    """OR: vera se almeno una figlia è vera"""
    conditions: List[Condition] = field(default_factory=list)
    type: ClassVar[ConditionType] = ConditionType.ANY


@dataclass
class SequenceCondition:
    """
    THEN: le figlie devono diventare vere una volta ciascuna, in ordine,
    anche su più valutazioni. history contiene i timestamp di trigger;
    expiration = 0 disattiva la scadenza (espressa in expiration_unit).
    """
    conditions: List[Condition] = field(default_factory=list)
    expiration: int = 0
    history: List[datetime] = field(default_factory=list)
    expiration_unit: TimeUnit = TimeUnit.DAY
    type: ClassVar[ConditionType] = ConditionType.SEQUENCE


Condition = Union[
    SimplePriceCondition,
    MovingAverageCondition,
    PositionPercentChangeCondition,
    EnoughTimePassedCondition,
    HavePositionCondition,
    PortfolioValueIsCondition,
    PositionValueIsCondition,
    BuyingPowerIsCondition,
    PortfolioIsProfitableCondition,
    AssetIsShortCondition,
    AllCondition,
    AnyCondition,
    SequenceCondition,
]

COMPOUND_TYPES = (AllCondition, AnyCondition, SequenceCondition)

CONDITION_CLASSES: Dict[ConditionType, type] = {
    cls.type: cls
    for cls in (
        SimplePriceCondition,
        MovingAverageCondition,
        PositionPercentChangeCondition,
        EnoughTimePassedCondition,
        HavePositionCondition,
        PortfolioValueIsCondition,
        PositionValueIsCondition,
        BuyingPowerIsCondition,
        PortfolioIsProfitableCondition,
        AssetIsShortCondition,
        AllCondition,
        AnyCondition,
        SequenceCondition,
    )
}

# Campi enum da convertire in (de)serializzazione
_ENUM_FIELDS = {
    "comparator": Comparator,
    "price_field": PriceField,
    "statistic": Statistic,
    "ohlc": Ohlc,
    "event": TradeEvent,
    "allocation_type": AllocationType,
    "unit": TimeUnit,
    "expiration_unit": TimeUnit,
}


# ----------------------------------------------------------------------
# Presets
# ----------------------------------------------------------------------

def have_no_positions() -> HavePositionCondition:
    """Nessuna unità dell'asset target in portafoglio"""
    return HavePositionCondition(0, AllocationType.NUM_ASSETS, Comparator.EQUAL)


def have_position() -> HavePositionCondition:
    return HavePositionCondition(0, AllocationType.NUM_ASSETS, Comparator.GREATER_THAN)


def price_is_not_too_high() -> MovingAverageCondition:
    """Prezzo <= media open a 5 giorni + 2 deviazioni standard"""
    return MovingAverageCondition(
        duration=-5,
        standard_deviation=2,
        statistic=Statistic.MEAN,
        ohlc=Ohlc.OPEN,
        comparator=Comparator.LESS_THAN_OR_EQUAL,
    )


# ----------------------------------------------------------------------
# Serialization
# ----------------------------------------------------------------------

def condition_to_dict(condition: Condition) -> Dict[str, Any]:
    """Serializza una condizione (ricorsivamente) in un dict JSON-friendly"""
    data: Dict[str, Any] = {"type": condition.type.value}
    for name, value in condition.__dict__.items():
        if name == "conditions":
            data[name] = [condition_to_dict(c) for c in value]
        elif name == "history":
            data[name] = [ts.isoformat() for ts in value]
        elif isinstance(value, Enum):
            data[name] = value.value
        else:
            data[name] = value
    return data


def condition_from_dict(data: Dict[str, Any]) -> Condition:
    """Factory: ricostruisce la variante corretta dal tag 'type'"""
    try:
        cls = CONDITION_CLASSES[ConditionType(data["type"])]
    except (KeyError, ValueError) as e:
        raise ConfigurationError(f"Unknown condition type: {data.get('type')}") from e

    kwargs: Dict[str, Any] = {}
    for name, value in data.items():
        if name == "type":
            continue
        if name == "conditions":
            kwargs[name] = [condition_from_dict(c) for c in value]
        elif name == "history":
            kwargs[name] = [
                ts if isinstance(ts, datetime) else datetime.fromisoformat(ts)
                for ts in value
            ]
        elif name in _ENUM_FIELDS and value is not None:
            kwargs[name] = _ENUM_FIELDS[name](value)
        else:
            kwargs[name] = value

    try:
        return cls(**kwargs)
    except TypeError as e:
        raise ConfigurationError(f"Invalid fields for {cls.__name__}: {e}") from e


def conditions_from_list(items: List[Dict[str, Any]]) -> List[Condition]:
    return [condition_from_dict(item) for item in items]


def trailing_window_days(condition: Condition) -> int:
    """Giorni di storico richiesti prima della data corrente (ricorsivo)"""
    if isinstance(condition, MovingAverageCondition):
        return condition.window_days
    if isinstance(condition, COMPOUND_TYPES):
        return max((trailing_window_days(c) for c in condition.conditions), default=0)
    return 0


def intraday_windows(condition: Condition) -> List[Tuple[Optional[str], str, timedelta]]:
    """(simbolo o None per l'asset target, interval, finestra) delle medie intraday (ricorsivo)"""
    if isinstance(condition, MovingAverageCondition):
        if condition.is_intraday:
            return [(condition.target_symbol, condition.interval, condition.window)]
        return []
    if isinstance(condition, COMPOUND_TYPES):
        return [w for c in condition.conditions for w in intraday_windows(c)]
    return []


def describe(condition: Condition) -> str:
    """Rappresentazione breve usata nei log delle azioni"""
    if isinstance(condition, COMPOUND_TYPES):
        inner = ", ".join(describe(c) for c in condition.conditions)
        return f"{condition.type.value}({inner})"
    params = ", ".join(
        f"{k}={v.value if isinstance(v, Enum) else v}"
        for k, v in condition.__dict__.items()
    )
    return f"{condition.type.value}({params})"
