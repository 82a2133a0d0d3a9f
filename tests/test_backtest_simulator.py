from __future__ import annotations

from datetime import date, datetime

import pytest

from conditions import Comparator, MovingAverageCondition, TimeUnit
from core.allocation import Allocation, AllocationType
from core.data_cache import InMemoryHistoricalSource, MarketDataCache
from core.errors import ValidationError
from core.models import Asset, AssetType, FillProbability, PriceSnapshot
from core.portfolio import Portfolio, Strategy
from core.repository import BACKTESTS, InMemoryRepository
from strategy_optimizer.backtest_simulator import BacktestSimulator, RunStatus, SimulationClock


def test_clock_alternates_open_and_close():
    clock = SimulationClock(date(2021, 1, 4))
    assert clock.current == datetime(2021, 1, 4, 9, 30)
    assert clock.is_open_tick
    assert clock.advance() == datetime(2021, 1, 4, 16, 0)
    assert not clock.is_open_tick
    assert clock.advance() == datetime(2021, 1, 5, 9, 30)


def test_end_must_follow_start(portfolio, cache):
    with pytest.raises(ValidationError):
        BacktestSimulator(portfolio, "2021-01-15", "2021-01-15", cache)
    with pytest.raises(ValidationError):
        BacktestSimulator(portfolio, "2021-01-15", "2021-01-04", cache)


def test_buy_flow_coin_scenario(coin_strategy, cache):
    portfolio = Portfolio(initial_value=10_000, strategies=[coin_strategy], fill_at=FillProbability.LIKELY)
    simulator = BacktestSimulator(portfolio, "2021-01-04", "2021-01-15", cache)
    simulator.price_map.set_prices({"COIN": PriceSnapshot(bid=100, mid=101, ask=102)})

    simulator._buy_flow(simulator.portfolio.strategies[0])

    assert len(simulator.buy_history) == 1
    action = simulator.buy_history[0]
    assert action.price == 102
    assert action.quantity == pytest.approx(19.6078, abs=1e-4)
    assert simulator.portfolio.buying_power == pytest.approx(7990.0)
    # il portfolio originale non viene toccato
    assert portfolio.buying_power == 10_000


def test_buy_flow_respects_conditions(coin_strategy, cache):
    portfolio = Portfolio(initial_value=10_000, strategies=[coin_strategy])
    simulator = BacktestSimulator(portfolio, "2021-01-04", "2021-01-15", cache)
    simulator.price_map.set_prices({"COIN": PriceSnapshot(bid=100, mid=101, ask=102)})
    strategy = simulator.portfolio.strategies[0]

    simulator._buy_flow(strategy)
    # have_no_positions ora è falsa
    simulator._buy_flow(strategy)
    assert len(simulator.buy_history) == 1


@pytest.mark.asyncio
async def test_full_run(portfolio, cache):
    simulator = await BacktestSimulator.create(portfolio, "2021-01-04", "2021-01-15", cache)
    await simulator.run(persist_on_completion=False, compute_baseline=False)

    assert simulator.status == RunStatus.COMPLETE
    # 9 giorni lavorativi x (apertura + chiusura)
    assert len(simulator.portfolio.value_history) == 18
    assert simulator.buy_history[0].date == datetime(2021, 1, 4, 9, 30)
    assert all(action.buying_power >= 0 for action in simulator.actions())
    dates = [action.date for action in simulator.actions()]
    assert dates == sorted(dates)

    final_value = simulator.portfolio.value_history[-1]["value"]
    expected = (final_value - portfolio.initial_value) / portfolio.initial_value * 100
    assert simulator.statistics.percent_change == pytest.approx(expected)


@pytest.mark.asyncio
async def test_history_starting_after_start_date_is_rejected(coin_frame, coin_strategy):
    late = coin_frame[coin_frame.index >= "2021-03-05"]
    cache = MarketDataCache(InMemoryHistoricalSource({"COIN": late}))
    portfolio = Portfolio(strategies=[coin_strategy])
    # storico richiesto dal 28/02: il 05/03 è entro la tolleranza della cache
    with pytest.raises(ValidationError, match="No data for COIN"):
        await BacktestSimulator.create(portfolio, "2021-03-01", "2021-03-20", cache)


@pytest.mark.asyncio
async def test_unsupported_asset_type_is_rejected(coin_strategy, cache):
    coin_strategy.target_asset = Asset("COIN", AssetType.OPTION)
    portfolio = Portfolio(strategies=[coin_strategy])
    with pytest.raises(ValidationError):
        await BacktestSimulator.create(portfolio, "2021-01-04", "2021-01-15", cache)


@pytest.mark.asyncio
async def test_failure_during_run_ends_in_error(portfolio, cache, monkeypatch):
    repository = InMemoryRepository()
    simulator = await BacktestSimulator.create(
        portfolio, "2021-01-04", "2021-01-15", cache, repository=repository
    )

    def boom(strategy):
        raise RuntimeError("boom")

    monkeypatch.setattr(simulator, "_buy_flow", boom)
    await simulator.run(persist_on_completion=True, compute_baseline=False)

    assert simulator.status == RunStatus.ERROR
    assert "boom" in simulator.error
    document = repository.find_by_id(BACKTESTS, simulator.backtest_id)
    assert document["status"] == "error"


@pytest.mark.asyncio
async def test_persisted_backtest_can_be_found_and_run(portfolio, cache):
    repository = InMemoryRepository()
    simulator = BacktestSimulator(portfolio, "2021-01-04", "2021-01-15", cache, repository=repository)
    simulator.save()
    assert repository.find_by_id(BACKTESTS, simulator.backtest_id)["status"] == "created"

    result = await BacktestSimulator.find_and_run(
        repository, simulator.backtest_id, cache, compute_baseline=False
    )
    assert result.status == RunStatus.COMPLETE
    document = repository.find_by_id(BACKTESTS, simulator.backtest_id)
    assert document["status"] == "complete"
    assert len(document["value_history"]) == 18


@pytest.mark.asyncio
async def test_baseline_statistics(portfolio, coin_frame):
    cache = MarketDataCache(InMemoryHistoricalSource({"COIN": coin_frame, "SPY": coin_frame * 4}))
    simulator = await BacktestSimulator.create(portfolio, "2021-01-04", "2021-01-15", cache)
    await simulator.run(persist_on_completion=False, compute_baseline=True)
    assert simulator.status == RunStatus.COMPLETE
    assert simulator.baseline_statistics is not None


@pytest.mark.asyncio
async def test_missing_baseline_is_skipped(portfolio, cache):
    simulator = await BacktestSimulator.create(portfolio, "2021-01-04", "2021-01-15", cache)
    await simulator.run(persist_on_completion=False, compute_baseline=True)
    assert simulator.status == RunStatus.COMPLETE
    assert simulator.baseline_statistics is None


@pytest.mark.asyncio
async def test_shared_cache_serves_a_longer_backtest_in_full(portfolio, coin_frame):
    shared = MarketDataCache(InMemoryHistoricalSource({"COIN": coin_frame}))
    short = await BacktestSimulator.create(portfolio, "2021-01-04", "2021-01-20", shared)
    await short.run(persist_on_completion=False, compute_baseline=False)

    long_run = await BacktestSimulator.create(portfolio, "2021-01-04", "2021-03-20", shared)
    await long_run.run(persist_on_completion=False, compute_baseline=False)

    fresh = MarketDataCache(InMemoryHistoricalSource({"COIN": coin_frame}))
    reference = await BacktestSimulator.create(portfolio, "2021-01-04", "2021-03-20", fresh)
    await reference.run(persist_on_completion=False, compute_baseline=False)

    assert long_run.status == RunStatus.COMPLETE
    assert len(long_run.portfolio.value_history) == len(reference.portfolio.value_history)
    assert long_run.portfolio.value_history[-1]["time"] == datetime(2021, 3, 19, 16, 0)


@pytest.mark.asyncio
async def test_intraday_moving_average_is_served_from_intraday_history(coin_frame, coin_intraday_frame):
    source = InMemoryHistoricalSource({"COIN": coin_frame}, {("COIN", "15min"): coin_intraday_frame})
    cache = MarketDataCache(source)
    strategy = Strategy(
        target_asset=Asset("COIN"),
        buy_amount=Allocation(1000, AllocationType.DOLLARS),
        sell_amount=Allocation(100, AllocationType.PERCENT_OF_CURRENT_POSITIONS),
        buying_conditions=[
            MovingAverageCondition(duration=-3, unit=TimeUnit.HOUR, standard_deviation=5, comparator=Comparator.LESS_THAN_OR_EQUAL),
        ],
    )
    portfolio = Portfolio(initial_value=10_000, strategies=[strategy])

    simulator = await BacktestSimulator.create(portfolio, "2021-01-04", "2021-01-15", cache)
    await simulator.run(persist_on_completion=False, compute_baseline=False)

    assert simulator.status == RunStatus.COMPLETE
    assert ("intraday", "COIN") in source.calls
    # alla chiusura del 4 gennaio la media delle ultime 3 ore è disponibile
    assert simulator.buy_history[0].date == datetime(2021, 1, 4, 16, 0)
