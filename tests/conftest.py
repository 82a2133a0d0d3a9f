import random
import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Root del progetto in sys.path: i test importano i package top-level
ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from conditions import Comparator, PositionPercentChangeCondition, have_no_positions  # noqa: E402
from core.allocation import Allocation, AllocationType  # noqa: E402
from core.data_cache import InMemoryHistoricalSource, MarketDataCache  # noqa: E402
from core.models import Asset  # noqa: E402
from core.portfolio import Portfolio, Strategy  # noqa: E402


def make_daily_frame(start: str, closes, spread: float = 0.5) -> pd.DataFrame:
    """Candele daily sui giorni lavorativi a partire da start (open = close - spread)"""
    index = pd.bdate_range(start, periods=len(closes))
    closes = np.asarray(closes, dtype=float)
    return pd.DataFrame(
        {
            "open": closes - spread,
            "high": closes + 1.0,
            "low": closes - 1.0,
            "close": closes,
            "volume": np.full(len(closes), 1_000.0),
        },
        index=index,
    )


@pytest.fixture(autouse=True)
def seeded_random():
    random.seed(42)
    np.random.seed(42)


@pytest.fixture
def coin_frame() -> pd.DataFrame:
    # 2020-12-31 -> ~fine marzo 2021, trend leggermente rialzista con oscillazioni
    closes = [100 + 0.3 * i + 3 * np.sin(i / 3) for i in range(65)]
    return make_daily_frame("2020-12-31", closes)


@pytest.fixture
def coin_intraday_frame() -> pd.DataFrame:
    # candele 15min 09:30-15:45 dei giorni lavorativi 4-15 gennaio 2021
    index = pd.date_range("2021-01-04 09:30", "2021-01-15 15:45", freq="15min")
    index = index[index.indexer_between_time("09:30", "15:45")]
    index = index[index.dayofweek < 5]
    closes = 100 + 2 * np.sin(np.arange(len(index)) / 5)
    return pd.DataFrame(
        {
            "open": closes - 0.1,
            "high": closes + 0.2,
            "low": closes - 0.2,
            "close": closes,
            "volume": np.full(len(index), 100.0),
        },
        index=index,
    )


@pytest.fixture
def source(coin_frame) -> InMemoryHistoricalSource:
    return InMemoryHistoricalSource({"COIN": coin_frame})


@pytest.fixture
def cache(source) -> MarketDataCache:
    return MarketDataCache(source)


@pytest.fixture
def coin_strategy() -> Strategy:
    return Strategy(
        target_asset=Asset("COIN"),
        buy_amount=Allocation(2000, AllocationType.DOLLARS),
        sell_amount=Allocation(100, AllocationType.PERCENT_OF_CURRENT_POSITIONS),
        buying_conditions=[have_no_positions()],
        selling_conditions=[PositionPercentChangeCondition(3.0, Comparator.GREATER_THAN_OR_EQUAL)],
        name="COIN dip buyer",
    )


@pytest.fixture
def portfolio(coin_strategy) -> Portfolio:
    return Portfolio(initial_value=10_000, strategies=[coin_strategy], name="test portfolio")
