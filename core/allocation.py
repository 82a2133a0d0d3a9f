"""
Allocator - dalla regola di sizing alla quantità dell'ordine

Converte una regola dichiarativa (percentuale del portfolio, del buying
power, delle posizioni correnti, dollari fissi, unità fisse) in una
quantità concreta, e calcola l'inverso (esposizione corrente) per i
controlli sui limiti di allocazione.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List

import config
from core.errors import ConfigurationError, UnsupportedAllocationError
from core.models import Asset, FillProbability, Position, Side
from core.price_map import PriceMap

_LOG = logging.getLogger(__name__)


class AllocationType(str, Enum):
    PERCENT_OF_PORTFOLIO = "percent_of_portfolio"
    PERCENT_OF_CURRENT_POSITIONS = "percent_of_current_positions"
    PERCENT_OF_BUYING_POWER = "percent_of_buying_power"
    DOLLARS = "dollars"
    NUM_ASSETS = "num_assets"


# Ordine stabile usato anche dall'encoding genetico (indice = valore gene)
ALLOCATION_TYPES: List[AllocationType] = list(AllocationType)


@dataclass
class Allocation:
    """Regola di sizing: amount interpretato secondo type"""
    amount: float
    type: AllocationType = AllocationType.PERCENT_OF_PORTFOLIO

    def __post_init__(self):
        self.type = AllocationType(self.type)

    def to_dict(self) -> Dict[str, Any]:
        return {"amount": self.amount, "type": self.type.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Allocation:
        return cls(amount=data["amount"], type=AllocationType(data["type"]))


def max_allocation_default() -> Allocation:
    return Allocation(config.MAX_ALLOCATION_DEFAULT, AllocationType.PERCENT_OF_PORTFOLIO)


def min_allocation_default() -> Allocation:
    return Allocation(config.MIN_ALLOCATION_DEFAULT, AllocationType.PERCENT_OF_PORTFOLIO)


def position_value(positions: List[Position], price_map: PriceMap) -> float:
    """Valore di mercato delle posizioni (prezzo posizione x quantità)"""
    value = 0.0
    for pos in positions:
        value += pos.quantity * price_map.position_price(pos)
    return round(value, 2)


def calculate_num_shares(
    allocation: Allocation,
    price: float,
    buying_power: float,
    positions_value: float,
) -> float:
    """Quantità grezza (non clampata) per tipo di allocazione"""
    amount = allocation.amount
    kind = allocation.type
    if kind == AllocationType.PERCENT_OF_PORTFOLIO:
        return amount * (positions_value + buying_power) / price / 100
    if kind == AllocationType.PERCENT_OF_CURRENT_POSITIONS:
        return amount * positions_value / price / 100
    if kind == AllocationType.PERCENT_OF_BUYING_POWER:
        return amount * buying_power / price / 100
    if kind == AllocationType.DOLLARS:
        return amount / price
    if kind == AllocationType.NUM_ASSETS:
        return amount
    raise ConfigurationError(f"Unknown allocation type: {kind}")


def size_buy(
    asset: Asset,
    allocation: Allocation,
    buying_power: float,
    positions: List[Position],
    price_map: PriceMap,
    fill_at: FillProbability = FillProbability.MID,
) -> float:
    """
    Quantità da acquistare

    Il costo (quantità x prezzo) non supera mai il buying power: se la
    regola chiede di più la quantità viene ridotta a bp/prezzo con un
    buffer dell'1% per le commissioni.

    Args:
        asset: Asset target
        allocation: Regola di sizing
        buying_power: Liquidità disponibile
        positions: Posizioni correnti del portfolio
        price_map: Price model
        fill_at: Aggressività di fill

    Returns:
        Quantità (intera per opzioni/spread)
    """
    if buying_power <= 0:
        return 0.0
    price = price_map.resolve_price(asset, Side.BUY, fill_at)
    if price <= 0:
        return 0.0

    shares = calculate_num_shares(
        allocation, price, buying_power, position_value(positions, price_map)
    )
    if shares * price > buying_power:
        shares = buying_power / price * config.BUYING_POWER_BUFFER
    if asset.is_whole_units:
        shares = math.floor(shares)
    return shares


def size_sell(
    asset: Asset,
    allocation: Allocation,
    buying_power: float,
    positions: List[Position],
    price_map: PriceMap,
    fill_at: FillProbability = FillProbability.MID,
) -> float:
    """Quantità da vendere, limitata a quanto effettivamente posseduto"""
    held = sum(pos.quantity for pos in positions if pos.symbol == asset.symbol)
    if held <= 0:
        return 0.0
    price = price_map.resolve_price(asset, Side.SELL, fill_at)
    if price <= 0:
        return held

    shares = calculate_num_shares(
        allocation, price, buying_power, position_value(positions, price_map)
    )
    shares = min(shares, held)
    if asset.is_whole_units:
        shares = math.floor(shares)
    return shares


def exposure(
    kind: AllocationType,
    buying_power: float,
    positions: List[Position],
    price_map: PriceMap,
) -> float:
    """Esposizione corrente espressa nell'unità del tipo di allocazione"""
    kind = AllocationType(kind)
    if kind == AllocationType.NUM_ASSETS:
        return sum(pos.quantity for pos in positions if pos.quantity > 0)

    pos_value = position_value(positions, price_map)
    if kind == AllocationType.PERCENT_OF_PORTFOLIO:
        total = pos_value + buying_power
        return pos_value / total * 100 if total else 0.0
    if kind == AllocationType.PERCENT_OF_BUYING_POWER:
        return pos_value / buying_power * 100 if buying_power else math.inf
    if kind == AllocationType.PERCENT_OF_CURRENT_POSITIONS:
        return 100.0
    if kind == AllocationType.DOLLARS:
        return pos_value
    raise ConfigurationError(f"Unknown allocation type: {kind}")


def _check_limit_kind(limit: Allocation):
    if limit.type == AllocationType.PERCENT_OF_BUYING_POWER:
        raise UnsupportedAllocationError(
            "Percent of buying power is not supported for allocation limits"
        )


def buy_limit_reached(
    limit: Allocation,
    buying_power: float,
    positions: List[Position],
    price_map: PriceMap,
) -> bool:
    """True se l'esposizione supera il limite massimo"""
    _check_limit_kind(limit)
    return exposure(limit.type, buying_power, positions, price_map) > limit.amount


def sell_limit_reached(
    limit: Allocation,
    buying_power: float,
    positions: List[Position],
    price_map: PriceMap,
) -> bool:
    """True se l'esposizione è sotto il limite minimo"""
    _check_limit_kind(limit)
    return exposure(limit.type, buying_power, positions, price_map) < limit.amount
