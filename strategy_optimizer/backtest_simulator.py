"""
Backtest Simulator - Simula un Portfolio di strategie su dati storici

Avanza un calendario di tick giornalieri (apertura 09:30, chiusura 16:00):
ad ogni tick aggiorna i prezzi dalla Market Data Cache, valuta le
condizioni di acquisto e vendita di ogni strategia, dimensiona gli ordini
con l'Allocator e li applica al Portfolio.

Stati: CREATED -> RUNNING -> {COMPLETE, ERROR}
"""

from __future__ import annotations

import logging
import time as _time
import traceback
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

import config
from core import allocation
from core.data_cache import MarketDataCache
from core.errors import PriceUnavailableError, ValidationError
from core.models import AssetType, Order, Side
from core.portfolio import Portfolio, Strategy
from core.price_map import PriceMap
from core.repository import BACKTESTS, Repository
from conditions import ConditionContext, describe, evaluate
from strategy_optimizer.fitness_evaluator import FitnessEvaluator, Statistics

_LOG = logging.getLogger(__name__)

SUPPORTED_ASSET_TYPES = (AssetType.STOCK, AssetType.CRYPTO)


class RunStatus(str, Enum):
    PENDING = "pending"
    CREATED = "created"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


def error_message(exc: BaseException) -> str:
    """Messaggio di errore persistito; fuori da production include lo stack"""
    message = f"{exc}"
    if not config.IS_PRODUCTION:
        message += "\n" + "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return message


def as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


@dataclass
class Action:
    """Acquisto o vendita eseguito durante il backtest"""
    date: datetime
    symbol: str
    strategy: str
    condition: str
    quantity: float
    price: float
    buying_power: float
    order: Order

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "symbol": self.symbol,
            "strategy": self.strategy,
            "condition": self.condition,
            "quantity": self.quantity,
            "price": self.price,
            "buying_power": self.buying_power,
            "order": self.order.to_dict(),
        }


class SimulationClock:
    """Tick giornalieri: apertura -> chiusura -> apertura del giorno dopo"""

    def __init__(self, start: date):
        self.current = datetime.combine(start, time(*config.MARKET_OPEN_TIME))

    @property
    def is_open_tick(self) -> bool:
        return (self.current.hour, self.current.minute) < config.MARKET_CLOSE_TIME

    def advance(self) -> datetime:
        if self.is_open_tick:
            self.current = datetime.combine(self.current.date(), time(*config.MARKET_CLOSE_TIME))
        else:
            next_day = self.current.date() + timedelta(days=1)
            self.current = datetime.combine(next_day, time(*config.MARKET_OPEN_TIME))
        return self.current


class BacktestSimulator:
    """
    Simula un Portfolio tick per tick (strettamente sequenziale)

    Usare BacktestSimulator.create() per ottenere un simulatore validato:
    la costruzione fallisce con ValidationError se le date non sono
    ordinate o se lo storico degli asset non copre lo start effettivo.
    """

    def __init__(
        self,
        portfolio: Portfolio,
        start_date,
        end_date,
        cache: MarketDataCache,
        repository: Optional[Repository] = None,
        name: str = "",
        user_id: Optional[str] = None,
        baseline_symbol: str = config.BASELINE_SYMBOL,
        backtest_id: Optional[str] = None,
    ):
        """
        Args:
            portfolio: Portfolio con strategie (copiato, l'originale non viene toccato)
            start_date: Primo giorno simulato
            end_date: Fine simulazione (esclusa)
            cache: Market Data Cache condivisa
            repository: Persistenza (opzionale)
            name: Nome del backtest
            user_id: Proprietario
            baseline_symbol: Asset buy-and-hold di confronto
            backtest_id: Id del record esistente (se già persistito)
        """
        self.start_date = as_date(start_date)
        self.end_date = as_date(end_date)
        if self.end_date <= self.start_date:
            raise ValidationError(
                f"End date {self.end_date} must be after start date {self.start_date}"
            )

        self.portfolio = portfolio.copy()
        self.portfolio.reset_for_backtest()
        self.cache = cache
        self.repository = repository
        self.name = name
        self.user_id = user_id
        self.baseline_symbol = baseline_symbol
        self.backtest_id = backtest_id or uuid.uuid4().hex

        self.status = RunStatus.CREATED
        self.error = ""
        self.price_map = PriceMap()
        self.clock = SimulationClock(self.start_date)
        self.statistics = Statistics()
        self.baseline_statistics: Optional[Statistics] = None
        self.buy_history: List[Action] = []
        self.sell_history: List[Action] = []
        self.time_elapsed = 0.0
        self._persisted = False

    # ------------------------------------------------------------------
    # Construction / validation
    # ------------------------------------------------------------------

    @classmethod
    async def create(
        cls,
        portfolio: Portfolio,
        start_date,
        end_date,
        cache: MarketDataCache,
        **kwargs,
    ) -> BacktestSimulator:
        """Costruisce e valida (storico scaricato nella cache)"""
        simulator = cls(portfolio, start_date, end_date, cache, **kwargs)
        await simulator.validate()
        return simulator

    @property
    def history_start(self) -> date:
        """Primo giorno per cui serve storico (finestre mobili incluse)"""
        return self.start_date + timedelta(days=self.portfolio.earliest_date_offset() - 1)

    async def validate(self):
        """
        Raises:
            ValidationError: asset non supportato o storico che inizia dopo lo start
        """
        for asset in self.portfolio.referenced_assets():
            if asset.type == AssetType.NONE:
                continue
            if asset.type not in SUPPORTED_ASSET_TYPES:
                raise ValidationError(
                    f"Only stocks and crypto are supported in backtests ({asset.symbol} is {asset.type.value})"
                )
            history = await self.cache.get_market_history(asset.symbol, self.history_start, self.end_date)
            if history.empty or history.index[0].date() > self.start_date:
                raise ValidationError(f"No data for {asset.symbol} on {self.start_date}")

        # Medie mobili in ore/minuti: candele intraday in cache prima del run
        first_tick = datetime.combine(self.start_date, time(*config.MARKET_OPEN_TIME))
        for (symbol, interval), window in self.portfolio.intraday_windows().items():
            await self.cache.get_intraday_history(symbol, first_tick - window, self.end_time, interval)
        _LOG.debug(f"✅ Backtest {self.name or self.backtest_id} validated")

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    @property
    def end_time(self) -> datetime:
        return datetime.combine(self.end_date, time.min)

    async def run(self, persist_on_completion: bool = True, compute_baseline: bool = True) -> BacktestSimulator:
        """
        Esegue la simulazione fino a end_date

        Qualsiasi eccezione porta lo stato in ERROR con il messaggio
        registrato; non viene mai propagata al chiamante.
        """
        started = _time.perf_counter()
        self.status = RunStatus.RUNNING
        self.error = ""
        symbols = [asset.symbol for asset in self.portfolio.referenced_assets()]

        try:
            while self.clock.current < self.end_time:
                if self._refresh_prices(symbols):
                    for strategy in self.portfolio.strategies:
                        self._buy_flow(strategy)
                        self._sell_flow(strategy)
                    self.portfolio.update_history(self.price_map, self.clock.current)
                self.clock.advance()

            portfolio = self.portfolio
            self.statistics = Statistics.from_history(
                portfolio.total_value(self.price_map) if portfolio.value_history else portfolio.initial_value,
                portfolio.initial_value,
                [point["value"] for point in portfolio.value_history],
                [point["value"] for point in portfolio.delta_value_history],
            )

            if compute_baseline:
                await self._compute_baseline()

            self.status = RunStatus.COMPLETE
            _LOG.info(
                f"✅ Backtest {self.name or self.backtest_id} complete: "
                f"{self.statistics.percent_change:.2f}% | trades {len(self.buy_history) + len(self.sell_history)}"
            )
        except Exception as e:
            self.status = RunStatus.ERROR
            self.error = error_message(e)
            _LOG.error(f"❌ Backtest {self.name or self.backtest_id} failed: {e}")
        finally:
            self.time_elapsed = _time.perf_counter() - started

        if persist_on_completion and self.repository is not None:
            self.save()
        return self

    def _refresh_prices(self, symbols: List[str]) -> bool:
        """Aggiorna il price map; False se il mercato è chiuso (nessun dato)"""
        try:
            snapshots = self.cache.snapshots_for(self.clock.current, symbols)
        except PriceUnavailableError:
            return False
        self.price_map.set_prices(snapshots)
        return True

    def _context(self, strategy: Strategy, position=None) -> ConditionContext:
        return ConditionContext(
            strategy=strategy,
            portfolio=self.portfolio,
            price_map=self.price_map,
            current_time=self.clock.current,
            position=position,
            history=self.cache.cached_history,
            intraday_history=self.cache.cached_intraday_history,
        )

    def _buy_flow(self, strategy: Strategy):
        portfolio = self.portfolio
        asset = strategy.target_asset
        price = self.price_map.resolve_price(asset, Side.BUY, portfolio.fill_at)
        quantity = allocation.size_buy(
            asset,
            strategy.buy_amount,
            portfolio.buying_power,
            portfolio.positions,
            self.price_map,
            portfolio.fill_at,
        )
        enough_buying_power = portfolio.buying_power > config.MIN_BUYING_POWER_RATIO * portfolio.initial_value
        if not enough_buying_power or quantity <= 0:
            return
        if allocation.buy_limit_reached(
            portfolio.maximum_allocation, portfolio.buying_power, portfolio.positions, self.price_map
        ):
            return

        context = self._context(strategy)
        for condition in strategy.buying_conditions:
            if not evaluate(condition, context):
                continue
            order = Order.create_filled(
                asset=asset,
                side=Side.BUY,
                quantity=quantity,
                price=price,
                when=self.clock.current,
                strategy_id=strategy.strategy_id,
                portfolio_id=portfolio.portfolio_id,
            )
            portfolio.apply_order(order)
            self._record(self.buy_history, strategy, condition, order)
            return

    def _sell_flow(self, strategy: Strategy):
        portfolio = self.portfolio
        symbol = strategy.target_asset.symbol
        for condition in strategy.selling_conditions:
            for position in list(portfolio.positions):
                if position.symbol != symbol or not any(p is position for p in portfolio.positions):
                    continue
                if not evaluate(condition, self._context(strategy, position)):
                    continue
                if allocation.sell_limit_reached(
                    portfolio.minimum_allocation, portfolio.buying_power, portfolio.positions, self.price_map
                ):
                    continue
                quantity = allocation.size_sell(
                    position.asset,
                    strategy.sell_amount,
                    portfolio.buying_power,
                    portfolio.positions,
                    self.price_map,
                    portfolio.fill_at,
                )
                if quantity <= 0:
                    continue
                order = Order.create_filled(
                    asset=position.asset,
                    side=Side.SELL,
                    quantity=quantity,
                    price=self.price_map.position_price(position, portfolio.fill_at),
                    when=self.clock.current,
                    strategy_id=strategy.strategy_id,
                    portfolio_id=portfolio.portfolio_id,
                )
                portfolio.apply_order(order)
                self._record(self.sell_history, strategy, condition, order)

    def _record(self, history: List[Action], strategy: Strategy, condition, order: Order):
        history.append(
            Action(
                date=self.clock.current,
                symbol=order.asset.symbol,
                strategy=strategy.name,
                condition=describe(condition),
                quantity=order.quantity,
                price=order.fill_price,
                buying_power=self.portfolio.buying_power,
                order=order,
            )
        )

    async def _compute_baseline(self):
        """Buy-and-hold del simbolo baseline sullo stesso intervallo"""
        try:
            history = await self.cache.get_market_history(
                self.baseline_symbol, self.start_date, self.end_date - timedelta(days=1)
            )
            closes = history.loc[history.index.date >= self.start_date, "close"].dropna()
            if closes.empty:
                return
            initial = self.portfolio.initial_value
            values = list(initial * closes / closes.iloc[0])
            self.baseline_statistics = FitnessEvaluator().evaluate(initial, values)
        except ValidationError as e:
            _LOG.warning(f"⚠️ Baseline {self.baseline_symbol} skipped: {e}")

    # ------------------------------------------------------------------
    # Results / persistence
    # ------------------------------------------------------------------

    def actions(self) -> List[Action]:
        return sorted(self.buy_history + self.sell_history, key=lambda a: a.date)

    def orders(self) -> List[Order]:
        return [action.order for action in self.actions()]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.backtest_id,
            "name": self.name,
            "user_id": self.user_id,
            "status": self.status.value,
            "error": self.error,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "statistics": self.statistics.to_dict(),
            "baseline_statistics": self.baseline_statistics.to_dict() if self.baseline_statistics else None,
            "buy_history": [a.to_dict() for a in self.buy_history],
            "sell_history": [a.to_dict() for a in self.sell_history],
            "value_history": [
                {"time": p["time"].isoformat(), "value": p["value"]} for p in self.portfolio.value_history
            ],
            "portfolio": self.portfolio.to_dict(),
            "time_elapsed": self.time_elapsed,
        }

    def save(self):
        document = self.to_dict()
        if self._persisted:
            self.repository.update_by_id(BACKTESTS, self.backtest_id, document)
        else:
            self.repository.create(BACKTESTS, document)
            self._persisted = True

    @classmethod
    async def find_and_run(
        cls,
        repository: Repository,
        backtest_id: str,
        cache: MarketDataCache,
        persist_on_completion: bool = True,
        compute_baseline: bool = True,
    ) -> BacktestSimulator:
        """Carica un backtest persistito (CREATED/PENDING), lo valida e lo esegue"""
        document = repository.find_by_id(BACKTESTS, backtest_id)
        if document is None:
            raise ValidationError("Backtest not found")
        simulator = await cls.create(
            Portfolio.from_dict(document["portfolio"]),
            document["start_date"],
            document["end_date"],
            cache,
            repository=repository,
            name=document.get("name", ""),
            user_id=document.get("user_id"),
            backtest_id=backtest_id,
        )
        simulator._persisted = True
        return await simulator.run(persist_on_completion, compute_baseline)
