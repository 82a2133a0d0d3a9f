#!/usr/bin/env python3
"""
📦 CORE DATA STRUCTURES

Dataclasses condivise da price model, allocator, portfolio e simulatore:
asset, snapshot prezzi, posizioni e ordini.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional

import config
from core.errors import ValidationError


class AssetType(str, Enum):
    STOCK = "stock"
    CRYPTO = "crypto"
    OPTION = "option"
    DEBIT_SPREAD = "debit_spread"
    NONE = "none"


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"


class FillProbability(str, Enum):
    """Aggressività di fill: quanto dentro lo spread bid/ask si esegue"""
    LIKELY = "likely"
    NEAR_LIKELY = "near_likely"
    MID = "mid"
    NEAR_UNLIKELY = "near_unlikely"
    UNLIKELY = "unlikely"

    def flip(self) -> FillProbability:
        """Aggressività complementare (likely <-> unlikely, mid resta mid)"""
        return _FLIPPED[self]


_FLIPPED = {
    FillProbability.LIKELY: FillProbability.UNLIKELY,
    FillProbability.UNLIKELY: FillProbability.LIKELY,
    FillProbability.NEAR_LIKELY: FillProbability.NEAR_UNLIKELY,
    FillProbability.NEAR_UNLIKELY: FillProbability.NEAR_LIKELY,
    FillProbability.MID: FillProbability.MID,
}


class OrderStatus(str, Enum):
    PENDING = "pending"
    FILLED = "filled"
    CANCELED = "canceled"


def _parse_date(value) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


def _parse_datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class Asset:
    """Asset negoziabile; i debit spread hanno una gamba long e una short"""
    symbol: str
    type: AssetType = AssetType.STOCK
    expiration: Optional[date] = None
    long_leg: Optional[Asset] = None
    short_leg: Optional[Asset] = None

    def __post_init__(self):
        self.type = AssetType(self.type)
        if self.type == AssetType.DEBIT_SPREAD and (self.long_leg is None or self.short_leg is None):
            raise ValidationError(f"Debit spread {self.symbol} requires both legs")

    @property
    def is_whole_units(self) -> bool:
        """Opzioni e spread si negoziano solo a contratti interi"""
        return self.type in (AssetType.OPTION, AssetType.DEBIT_SPREAD)

    @property
    def multiplier(self) -> int:
        return config.OPTION_CONTRACT_MULTIPLIER if self.type == AssetType.OPTION else 1

    def to_dict(self) -> Dict[str, Any]:
        data = {"symbol": self.symbol, "type": self.type.value}
        if self.expiration is not None:
            data["expiration"] = self.expiration.isoformat()
        if self.long_leg is not None:
            data["long_leg"] = self.long_leg.to_dict()
        if self.short_leg is not None:
            data["short_leg"] = self.short_leg.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Asset:
        return cls(
            symbol=data["symbol"],
            type=AssetType(data.get("type", AssetType.STOCK.value)),
            expiration=_parse_date(data.get("expiration")),
            long_leg=cls.from_dict(data["long_leg"]) if data.get("long_leg") else None,
            short_leg=cls.from_dict(data["short_leg"]) if data.get("short_leg") else None,
        )


@dataclass
class PriceSnapshot:
    """Bid/mid/ask di un simbolo più OHLCV opzionale"""
    bid: Optional[float] = None
    mid: Optional[float] = None
    ask: Optional[float] = None
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: Optional[float] = None
    volume: Optional[float] = None

    @property
    def is_complete(self) -> bool:
        return self.bid is not None and self.mid is not None and self.ask is not None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PriceSnapshot:
        return cls(**data)


@dataclass
class Position:
    """Posizione aperta; quantity con segno (negativa = short)"""
    asset: Asset
    quantity: float
    average_cost: float
    last_price: float = 0.0

    @property
    def symbol(self) -> str:
        return self.asset.symbol

    @property
    def asset_type(self) -> AssetType:
        return self.asset.type

    def add(self, quantity: float, price: float):
        """Aggiunge quantità aggiornando il costo medio"""
        total = self.quantity + quantity
        if total == 0:
            self.quantity = 0.0
            return
        self.average_cost = (self.average_cost * self.quantity + price * quantity) / total
        self.quantity = total

    def subtract(self, quantity: float):
        self.quantity -= quantity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset": self.asset.to_dict(),
            "quantity": self.quantity,
            "average_cost": self.average_cost,
            "last_price": self.last_price,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Position:
        return cls(
            asset=Asset.from_dict(data["asset"]),
            quantity=data["quantity"],
            average_cost=data["average_cost"],
            last_price=data.get("last_price", 0.0),
        )


@dataclass
class Order:
    """Ordine simulato; immutabile una volta eseguito"""
    asset: Asset
    side: Side
    quantity: float
    price: float
    status: OrderStatus = OrderStatus.PENDING
    order_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    strategy_id: Optional[str] = None
    portfolio_id: Optional[str] = None
    fill_price: Optional[float] = None
    fill_time: Optional[datetime] = None

    def __post_init__(self):
        self.side = Side(self.side)
        self.status = OrderStatus(self.status)
        if self.quantity < 0:
            raise ValidationError(f"Order quantity must be positive, got {self.quantity}")

    @property
    def is_filled(self) -> bool:
        return self.status == OrderStatus.FILLED

    @property
    def notional(self) -> float:
        price = self.fill_price if self.fill_price is not None else self.price
        return price * self.quantity

    def fill(self, when: datetime, price: Optional[float] = None):
        if self.status != OrderStatus.PENDING:
            raise ValidationError(f"Order {self.order_id} is {self.status.value}, cannot fill")
        self.fill_price = self.price if price is None else price
        self.fill_time = when
        self.status = OrderStatus.FILLED

    def cancel(self):
        if self.status != OrderStatus.PENDING:
            raise ValidationError(f"Order {self.order_id} is {self.status.value}, cannot cancel")
        self.status = OrderStatus.CANCELED

    @classmethod
    def create_filled(
        cls,
        asset: Asset,
        side: Side,
        quantity: float,
        price: float,
        when: datetime,
        strategy_id: str = None,
        portfolio_id: str = None,
    ) -> Order:
        """Ordine simulato già eseguito al prezzo richiesto"""
        order = cls(
            asset=asset,
            side=side,
            quantity=quantity,
            price=price,
            strategy_id=strategy_id,
            portfolio_id=portfolio_id,
        )
        order.fill(when)
        return order

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "asset": self.asset.to_dict(),
            "side": self.side.value,
            "quantity": self.quantity,
            "price": self.price,
            "status": self.status.value,
            "strategy_id": self.strategy_id,
            "portfolio_id": self.portfolio_id,
            "fill_price": self.fill_price,
            "fill_time": self.fill_time.isoformat() if self.fill_time else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Order:
        return cls(
            asset=Asset.from_dict(data["asset"]),
            side=Side(data["side"]),
            quantity=data["quantity"],
            price=data["price"],
            status=OrderStatus(data.get("status", OrderStatus.PENDING.value)),
            order_id=data.get("order_id") or uuid.uuid4().hex,
            strategy_id=data.get("strategy_id"),
            portfolio_id=data.get("portfolio_id"),
            fill_price=data.get("fill_price"),
            fill_time=_parse_datetime(data.get("fill_time")),
        )
