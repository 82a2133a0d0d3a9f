"""
Portfolio & Strategy - stato mutabile del backtest

Strategy: asset target, regole di sizing buy/sell e alberi di condizioni.
Portfolio: buying power, posizioni, strategie, commissioni e limiti di
allocazione. L'unico modo di modificare un Portfolio è apply_order().
"""

from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

import config
from core.allocation import (
    Allocation,
    max_allocation_default,
    min_allocation_default,
    position_value,
)
from core.errors import ValidationError
from core.models import Asset, AssetType, FillProbability, Order, Position, Side
from core.price_map import PriceMap
from conditions.types import (
    Condition,
    MovingAverageCondition,
    COMPOUND_TYPES,
    condition_to_dict,
    conditions_from_list,
    intraday_windows,
    trailing_window_days,
)

_LOG = logging.getLogger(__name__)

_EPSILON = 1e-9


@dataclass
class Strategy:
    """Asset target + sizing + condizioni di ingresso/uscita"""
    target_asset: Asset
    buy_amount: Allocation
    sell_amount: Allocation
    buying_conditions: List[Condition] = field(default_factory=list)
    selling_conditions: List[Condition] = field(default_factory=list)
    name: str = ""
    strategy_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def copy(self) -> Strategy:
        return copy.deepcopy(self)

    def all_conditions(self) -> List[Condition]:
        return list(self.buying_conditions) + list(self.selling_conditions)

    def referenced_symbols(self) -> List[str]:
        """Asset target + eventuali asset di riferimento delle condizioni"""
        symbols = [self.target_asset.symbol]

        def visit(condition: Condition):
            if isinstance(condition, MovingAverageCondition) and condition.target_symbol:
                if condition.target_symbol not in symbols:
                    symbols.append(condition.target_symbol)
            if isinstance(condition, COMPOUND_TYPES):
                for child in condition.conditions:
                    visit(child)

        for cond in self.all_conditions():
            visit(cond)
        return symbols

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy_id": self.strategy_id,
            "name": self.name,
            "target_asset": self.target_asset.to_dict(),
            "buy_amount": self.buy_amount.to_dict(),
            "sell_amount": self.sell_amount.to_dict(),
            "buying_conditions": [condition_to_dict(c) for c in self.buying_conditions],
            "selling_conditions": [condition_to_dict(c) for c in self.selling_conditions],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Strategy:
        return cls(
            target_asset=Asset.from_dict(data["target_asset"]),
            buy_amount=Allocation.from_dict(data["buy_amount"]),
            sell_amount=Allocation.from_dict(data["sell_amount"]),
            buying_conditions=conditions_from_list(data.get("buying_conditions", [])),
            selling_conditions=conditions_from_list(data.get("selling_conditions", [])),
            name=data.get("name", ""),
            strategy_id=data.get("strategy_id") or uuid.uuid4().hex,
        )


@dataclass
class Commission:
    """Commissione per tipo di asset: percent (% del nozionale) o dollars (per unità)"""
    kind: str = "percent"
    amount: float = 0.0

    def calculate(self, quantity: float, price: float) -> float:
        if self.kind == "percent":
            return abs(quantity * price) * self.amount / 100
        if self.kind == "dollars":
            return abs(quantity) * self.amount
        raise ValidationError(f"Unknown commission kind: {self.kind}")

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "amount": self.amount}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Commission:
        return cls(kind=data["kind"], amount=data["amount"])


def default_commissions() -> Dict[AssetType, Commission]:
    return {
        AssetType(kind): Commission.from_dict(values)
        for kind, values in config.BACKTEST_COMMISSIONS.items()
    }


@dataclass
class Portfolio:
    """
    Portfolio simulato

    Mutato esclusivamente da apply_order(); tiene la storia del valore
    (valore totale e delta per tick) usata per le statistiche finali.
    """
    initial_value: float = config.DEFAULT_INITIAL_VALUE
    buying_power: Optional[float] = None
    positions: List[Position] = field(default_factory=list)
    strategies: List[Strategy] = field(default_factory=list)
    commissions: Dict[AssetType, Commission] = field(default_factory=default_commissions)
    fill_at: FillProbability = FillProbability(config.DEFAULT_FILL_AT)
    maximum_allocation: Allocation = field(default_factory=max_allocation_default)
    minimum_allocation: Allocation = field(default_factory=min_allocation_default)
    name: str = ""
    portfolio_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    last_purchase_date: Optional[datetime] = None
    last_sale_date: Optional[datetime] = None
    commission_paid: float = 0.0
    value_history: List[Dict[str, Any]] = field(default_factory=list)
    delta_value_history: List[Dict[str, Any]] = field(default_factory=list)
    applied_order_ids: Set[str] = field(default_factory=set)

    def __post_init__(self):
        if self.buying_power is None:
            self.buying_power = self.initial_value
        self.fill_at = FillProbability(self.fill_at)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find_position(self, symbol: str) -> Optional[Position]:
        for pos in self.positions:
            if pos.symbol == symbol:
                return pos
        return None

    def contains_position(self, symbol: str) -> bool:
        return self.find_position(symbol) is not None

    def total_value(self, price_map: PriceMap) -> float:
        return position_value(self.positions, price_map) + self.buying_power

    def earliest_date_offset(self) -> int:
        """Giorni (<= 0) prima dello start per cui deve esistere storico"""
        window = 0
        for strategy in self.strategies:
            for cond in strategy.all_conditions():
                window = max(window, trailing_window_days(cond))
        return -window

    def intraday_windows(self) -> Dict[Tuple[str, str], timedelta]:
        """(simbolo, interval) -> finestra intraday più lunga richiesta dalle condizioni"""
        windows: Dict[Tuple[str, str], timedelta] = {}
        for strategy in self.strategies:
            for cond in strategy.all_conditions():
                for symbol, interval, window in intraday_windows(cond):
                    key = (symbol or strategy.target_asset.symbol, interval)
                    windows[key] = max(windows.get(key, timedelta(0)), window)
        return windows

    def referenced_assets(self) -> List[Asset]:
        assets: Dict[str, Asset] = {}
        for strategy in self.strategies:
            for symbol in strategy.referenced_symbols():
                if symbol == strategy.target_asset.symbol:
                    assets.setdefault(symbol, strategy.target_asset)
                else:
                    assets.setdefault(symbol, Asset(symbol))
        return list(assets.values())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def commission_for(self, order: Order) -> float:
        commission = self.commissions.get(order.asset.type)
        if commission is None:
            return 0.0
        return commission.calculate(order.quantity, order.fill_price)

    def apply_order(self, order: Order) -> float:
        """
        Applica un ordine eseguito (una sola volta)

        Returns:
            Commissione addebitata
        """
        if not order.is_filled:
            raise ValidationError(f"Order {order.order_id} is not filled")
        if order.order_id in self.applied_order_ids:
            raise ValidationError(f"Order {order.order_id} already applied")

        if order.side == Side.BUY:
            self._apply_buy(order)
        else:
            self._apply_sell(order)

        commission = self.commission_for(order)
        self.buying_power -= commission
        self.commission_paid += commission
        self.applied_order_ids.add(order.order_id)

        _LOG.info(
            f"💰 {order.side.value.upper()} {order.quantity:.4f} {order.asset.symbol} "
            f"@ {order.fill_price:.2f} | commission {commission:.2f} | bp {self.buying_power:.2f}"
        )
        return commission

    def _apply_buy(self, order: Order):
        position = self.find_position(order.asset.symbol)
        if position is not None and position.quantity < 0:
            raise ValidationError(f"Buy on short position {order.asset.symbol} not supported")

        self.buying_power -= order.fill_price * order.quantity
        if position is None:
            self.positions.append(
                Position(
                    asset=order.asset,
                    quantity=order.quantity,
                    average_cost=order.fill_price,
                    last_price=order.fill_price,
                )
            )
        else:
            position.add(order.quantity, order.fill_price)
            position.last_price = order.fill_price
        self.last_purchase_date = order.fill_time

    def _apply_sell(self, order: Order):
        position = self.find_position(order.asset.symbol)
        if position is None:
            raise ValidationError(f"No position in {order.asset.symbol} to sell")
        if order.quantity > position.quantity + _EPSILON:
            raise ValidationError(
                f"Sell of {order.quantity} {order.asset.symbol} exceeds held {position.quantity}"
            )

        self.buying_power += order.fill_price * order.quantity
        position.subtract(order.quantity)
        position.last_price = order.fill_price
        if abs(position.quantity) < _EPSILON:
            self.positions.remove(position)
        self.last_sale_date = order.fill_time

    def update_history(self, price_map: PriceMap, when: datetime):
        """Aggiorna last price delle posizioni e registra valore/delta"""
        for pos in self.positions:
            if pos.symbol in price_map:
                pos.last_price = price_map.position_price(pos)

        current = self.total_value(price_map)
        last = self.value_history[-1]["value"] if self.value_history else self.initial_value
        self.value_history.append({"time": when, "value": current})
        self.delta_value_history.append({"time": when, "value": current - last})

    def copy(self) -> Portfolio:
        return copy.deepcopy(self)

    def reset_for_backtest(self):
        """Stato pulito prima di un run (strategie e limiti invariati)"""
        self.buying_power = self.initial_value
        self.positions = []
        self.last_purchase_date = None
        self.last_sale_date = None
        self.commission_paid = 0.0
        self.value_history = []
        self.delta_value_history = []
        self.applied_order_ids = set()

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "portfolio_id": self.portfolio_id,
            "name": self.name,
            "initial_value": self.initial_value,
            "buying_power": self.buying_power,
            "positions": [p.to_dict() for p in self.positions],
            "strategies": [s.to_dict() for s in self.strategies],
            "commissions": {k.value: v.to_dict() for k, v in self.commissions.items()},
            "fill_at": self.fill_at.value,
            "maximum_allocation": self.maximum_allocation.to_dict(),
            "minimum_allocation": self.minimum_allocation.to_dict(),
            "last_purchase_date": self.last_purchase_date.isoformat() if self.last_purchase_date else None,
            "last_sale_date": self.last_sale_date.isoformat() if self.last_sale_date else None,
            "commission_paid": self.commission_paid,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Portfolio:
        commissions = default_commissions()
        for kind, values in (data.get("commissions") or {}).items():
            commissions[AssetType(kind)] = Commission.from_dict(values)

        def parse_dt(value):
            return datetime.fromisoformat(value) if value else None

        return cls(
            initial_value=data.get("initial_value", config.DEFAULT_INITIAL_VALUE),
            buying_power=data.get("buying_power"),
            positions=[Position.from_dict(p) for p in data.get("positions", [])],
            strategies=[Strategy.from_dict(s) for s in data.get("strategies", [])],
            commissions=commissions,
            fill_at=FillProbability(data.get("fill_at", config.DEFAULT_FILL_AT)),
            maximum_allocation=Allocation.from_dict(data["maximum_allocation"])
            if data.get("maximum_allocation") else max_allocation_default(),
            minimum_allocation=Allocation.from_dict(data["minimum_allocation"])
            if data.get("minimum_allocation") else min_allocation_default(),
            name=data.get("name", ""),
            portfolio_id=data.get("portfolio_id") or uuid.uuid4().hex,
            last_purchase_date=parse_dt(data.get("last_purchase_date")),
            last_sale_date=parse_dt(data.get("last_sale_date")),
            commission_paid=data.get("commission_paid", 0.0),
        )
