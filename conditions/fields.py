"""
Tunable fields - descrizione tipizzata e limitata dei parametri di ogni condizione

Ogni variante restituisce una lista ordinata di Field con getter/setter
espliciti: la stessa descrizione serve alla configurazione utente e alla
generazione dei geni dell'ottimizzatore, senza parsing di path testuali.
Le composte aggiungono ricorsivamente i campi delle figlie.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from core.allocation import ALLOCATION_TYPES
from core.errors import ConfigurationError
from conditions.types import (
    Comparator,
    Condition,
    ConditionType,
    Ohlc,
    PriceField,
    Statistic,
    TradeEvent,
)

COMPARATORS = list(Comparator)
PRICE_FIELDS = list(PriceField)
STATISTICS = list(Statistic)
OHLC_FIELDS = list(Ohlc)
TRADE_EVENTS = list(TradeEvent)

# Range numerici dei campi
PRICE_RANGE = (0, 10_000)
VALUE_RANGE = (0, 999_999)
DURATION_RANGE = (-365, 365)
ELAPSED_DAYS_RANGE = (0, 365)
STD_DEV_RANGE = (-5, 5)
PERCENT_CHANGE_RANGE = (-100, 200)
PERCENT_PROFIT_RANGE = (-100, 100)
ALLOCATION_AMOUNT_RANGE = (0, 10_000)


@dataclass
class Field:
    """
    Campo ottimizzabile di una condizione

    Per i campi categorici (choices != None) il valore è un membro di
    choices e min/max descrivono l'indice.
    """
    name: str
    getter: Callable[[], Any]
    setter: Callable[[Any], None]
    min: float
    max: float
    is_int: bool = False
    choices: Optional[Sequence[Any]] = None

    @property
    def value(self) -> Any:
        return self.getter()

    @value.setter
    def value(self, new_value: Any):
        self.setter(new_value)

    @property
    def is_categorical(self) -> bool:
        return self.choices is not None

    def prefixed(self, prefix: str) -> Field:
        return Field(
            name=f"{prefix}{self.name}",
            getter=self.getter,
            setter=self.setter,
            min=self.min,
            max=self.max,
            is_int=self.is_int,
            choices=self.choices,
        )


def _number(obj: Any, attr: str, bounds: tuple, is_int: bool = False) -> Field:
    def getter():
        return getattr(obj, attr)

    def setter(value):
        setattr(obj, attr, int(round(value)) if is_int else value)

    return Field(attr, getter, setter, bounds[0], bounds[1], is_int=is_int)


def _choice(obj: Any, attr: str, choices: List[Any]) -> Field:
    def getter():
        return getattr(obj, attr)

    def setter(value):
        setattr(obj, attr, value)

    return Field(attr, getter, setter, 0, len(choices) - 1, is_int=True, choices=choices)


# ----------------------------------------------------------------------
# Per-variant field lists
# ----------------------------------------------------------------------

def _simple_price_fields(cond) -> List[Field]:
    return [
        _number(cond, "target_price", PRICE_RANGE),
        _choice(cond, "comparator", COMPARATORS),
        _choice(cond, "price_field", PRICE_FIELDS),
    ]


def _moving_average_fields(cond) -> List[Field]:
    return [
        _number(cond, "duration", DURATION_RANGE, is_int=True),
        _number(cond, "standard_deviation", STD_DEV_RANGE),
        _choice(cond, "statistic", STATISTICS),
        _choice(cond, "ohlc", OHLC_FIELDS),
        _choice(cond, "comparator", COMPARATORS),
        _choice(cond, "price_field", PRICE_FIELDS),
    ]


def _position_percent_change_fields(cond) -> List[Field]:
    return [
        _number(cond, "percent", PERCENT_CHANGE_RANGE),
        _choice(cond, "comparator", COMPARATORS),
    ]


def _enough_time_passed_fields(cond) -> List[Field]:
    return [
        _number(cond, "duration_days", ELAPSED_DAYS_RANGE, is_int=True),
        _choice(cond, "event", TRADE_EVENTS),
    ]


def _have_position_fields(cond) -> List[Field]:
    return [
        _number(cond, "amount", ALLOCATION_AMOUNT_RANGE),
        _choice(cond, "allocation_type", ALLOCATION_TYPES),
        _choice(cond, "comparator", COMPARATORS),
    ]


def _value_fields(cond) -> List[Field]:
    return [
        _number(cond, "amount", VALUE_RANGE),
        _choice(cond, "comparator", COMPARATORS),
    ]


def _portfolio_is_profitable_fields(cond) -> List[Field]:
    return [
        _number(cond, "percent_profit", PERCENT_PROFIT_RANGE),
        _choice(cond, "comparator", COMPARATORS),
    ]


def _no_fields(cond) -> List[Field]:
    return []


def _children_fields(cond) -> List[Field]:
    result: List[Field] = []
    for i, child in enumerate(cond.conditions):
        result.extend(f.prefixed(f"conditions[{i}].") for f in condition_fields(child))
    return result


def _sequence_fields(cond) -> List[Field]:
    return _children_fields(cond) + [
        _number(cond, "expiration", ELAPSED_DAYS_RANGE, is_int=True),
    ]


_FIELD_BUILDERS: Dict[ConditionType, Callable[[Condition], List[Field]]] = {
    ConditionType.SIMPLE_PRICE: _simple_price_fields,
    ConditionType.MOVING_AVERAGE: _moving_average_fields,
    ConditionType.POSITION_PERCENT_CHANGE: _position_percent_change_fields,
    ConditionType.ENOUGH_TIME_PASSED: _enough_time_passed_fields,
    ConditionType.HAVE_POSITION: _have_position_fields,
    ConditionType.PORTFOLIO_VALUE_IS: _value_fields,
    ConditionType.POSITION_VALUE_IS: _value_fields,
    ConditionType.BUYING_POWER_IS: _value_fields,
    ConditionType.PORTFOLIO_IS_PROFITABLE: _portfolio_is_profitable_fields,
    ConditionType.ASSET_IS_SHORT: _no_fields,
    ConditionType.ALL: _children_fields,
    ConditionType.ANY: _children_fields,
    ConditionType.SEQUENCE: _sequence_fields,
}


def condition_fields(condition: Condition) -> List[Field]:
    """Lista ordinata dei campi ottimizzabili (ricorsiva per le composte)"""
    try:
        builder = _FIELD_BUILDERS[condition.type]
    except (AttributeError, KeyError) as e:
        raise ConfigurationError(f"Unknown condition: {condition!r}") from e
    return builder(condition)
