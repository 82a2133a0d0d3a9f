from __future__ import annotations

import pytest

from core.allocation import (
    ALLOCATION_TYPES,
    Allocation,
    AllocationType,
    buy_limit_reached,
    exposure,
    sell_limit_reached,
    size_buy,
    size_sell,
)
from core.errors import UnsupportedAllocationError
from core.models import Asset, AssetType, FillProbability, Position, PriceSnapshot
from core.price_map import PriceMap


@pytest.fixture
def price_map() -> PriceMap:
    return PriceMap({
        "COIN": PriceSnapshot(bid=100, mid=101, ask=102),
        "CALL": PriceSnapshot(bid=1.4, mid=1.5, ask=1.6),
    })


def test_dollar_allocation_at_likely_fill(price_map):
    qty = size_buy(
        Asset("COIN"), Allocation(2000, AllocationType.DOLLARS), 10_000, [], price_map, FillProbability.LIKELY
    )
    assert qty == pytest.approx(2000 / 102)


@pytest.mark.parametrize("kind", ALLOCATION_TYPES)
def test_buy_cost_never_exceeds_buying_power(price_map, kind):
    positions = [Position(Asset("COIN"), quantity=100, average_cost=90)]
    buying_power = 5_000
    qty = size_buy(
        Asset("COIN"), Allocation(1_000, kind), buying_power, positions, price_map, FillProbability.LIKELY
    )
    assert qty >= 0
    assert qty * 102 <= buying_power + 1e-9


def test_oversized_buy_is_reduced_with_buffer(price_map):
    qty = size_buy(Asset("COIN"), Allocation(500, AllocationType.NUM_ASSETS), 1_000, [], price_map)
    assert qty == pytest.approx(1_000 / 101 * 0.99)


def test_no_buying_power_means_no_buy(price_map):
    assert size_buy(Asset("COIN"), Allocation(10, AllocationType.DOLLARS), 0, [], price_map) == 0
    assert size_buy(Asset("COIN"), Allocation(10, AllocationType.DOLLARS), -50, [], price_map) == 0


def test_options_are_bought_in_whole_contracts(price_map):
    option = Asset("CALL", AssetType.OPTION)
    qty = size_buy(option, Allocation(1_000, AllocationType.DOLLARS), 10_000, [], price_map)
    # 1000 / 150 = 6.67 contratti
    assert qty == 6


def test_sell_is_clamped_to_held_quantity(price_map):
    positions = [Position(Asset("COIN"), quantity=5, average_cost=90)]
    qty = size_sell(Asset("COIN"), Allocation(10, AllocationType.NUM_ASSETS), 1_000, positions, price_map)
    assert qty == 5


def test_sell_percent_of_current_positions(price_map):
    positions = [Position(Asset("COIN"), quantity=10, average_cost=90)]
    qty = size_sell(
        Asset("COIN"), Allocation(50, AllocationType.PERCENT_OF_CURRENT_POSITIONS), 1_000, positions, price_map
    )
    assert qty == pytest.approx(5)


def test_sell_without_position_is_zero(price_map):
    assert size_sell(Asset("COIN"), Allocation(100, AllocationType.NUM_ASSETS), 1_000, [], price_map) == 0


def test_exposure_percent_of_portfolio(price_map):
    positions = [Position(Asset("COIN"), quantity=60, average_cost=90)]
    # 6060 / (6060 + 4000)
    assert exposure(AllocationType.PERCENT_OF_PORTFOLIO, 4_000, positions, price_map) == pytest.approx(
        6060 / 10060 * 100
    )
    assert exposure(AllocationType.NUM_ASSETS, 4_000, positions, price_map) == 60


def test_allocation_limits(price_map):
    positions = [Position(Asset("COIN"), quantity=60, average_cost=90)]
    limit = Allocation(50, AllocationType.PERCENT_OF_PORTFOLIO)
    assert buy_limit_reached(limit, 4_000, positions, price_map) is True
    assert sell_limit_reached(limit, 4_000, positions, price_map) is False
    assert sell_limit_reached(Allocation(70, AllocationType.PERCENT_OF_PORTFOLIO), 4_000, positions, price_map)


def test_percent_of_buying_power_limit_is_rejected(price_map):
    limit = Allocation(50, AllocationType.PERCENT_OF_BUYING_POWER)
    with pytest.raises(UnsupportedAllocationError):
        buy_limit_reached(limit, 4_000, [], price_map)
    with pytest.raises(UnsupportedAllocationError):
        sell_limit_reached(limit, 4_000, [], price_map)
