from __future__ import annotations

import pytest

from strategy_optimizer.fitness_evaluator import (
    FitnessEvaluator,
    FitnessKind,
    Statistics,
    average_statistics,
    fitness_of,
    is_minimized,
)


def test_statistics_from_value_history():
    stats = FitnessEvaluator().evaluate(100.0, [110.0, 99.0, 120.0])
    assert stats.percent_change == pytest.approx(20.0)
    assert stats.total_change == pytest.approx(20.0)
    assert stats.average_change == pytest.approx(20.0 / 3)
    assert stats.max_drawdown == pytest.approx(10.0)
    assert stats.sharpe > 0
    assert stats.sortino > 0


def test_flat_history_has_zero_ratios():
    stats = FitnessEvaluator().evaluate(100.0, [100.0, 100.0, 100.0])
    assert stats == Statistics()


def test_empty_history():
    assert FitnessEvaluator().evaluate(100.0, []) == Statistics()


def test_from_history_uses_deltas_for_average_change():
    stats = Statistics.from_history(120.0, 100.0, [110.0, 99.0, 120.0], [10.0, -11.0, 21.0])
    assert stats.average_change == pytest.approx(20.0 / 3)
    assert stats.percent_change == pytest.approx(20.0)


def test_average_and_serialization():
    a = Statistics(sortino=1.0, percent_change=4.0)
    b = Statistics(sortino=3.0, percent_change=-2.0)
    average = average_statistics([a, b])
    assert average.sortino == pytest.approx(2.0)
    assert average.percent_change == pytest.approx(1.0)
    assert Statistics.from_dict(average.to_dict()) == average
    assert average_statistics([]) == Statistics()


def test_fitness_direction():
    assert is_minimized(FitnessKind.MAX_DRAWDOWN)
    assert not is_minimized(FitnessKind.SORTINO)
    assert fitness_of(Statistics(sharpe=1.5), FitnessKind.SHARPE) == 1.5


def test_compare_report():
    report = FitnessEvaluator().compare(Statistics(percent_change=1.0), Statistics(percent_change=3.0))
    assert "+2.00" in report
