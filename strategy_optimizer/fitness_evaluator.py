"""
Fitness Evaluator - Statistiche di rendimento e funzioni di fitness

Riduce la storia del valore di un portfolio (una voce per tick) a
statistiche scalari e, per l'ottimizzatore, a un unico valore di fitness.

Metriche:
- Percent / total / average change
- Sharpe Ratio e Sortino Ratio (annualizzati sui tick)
- Maximum Drawdown (% dal picco)
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List, Sequence

import numpy as np

import config

_LOG = logging.getLogger(__name__)


class FitnessKind(str, Enum):
    PERCENT_CHANGE = "percent_change"
    SHARPE = "sharpe"
    SORTINO = "sortino"
    MAX_DRAWDOWN = "max_drawdown"


def is_minimized(kind: FitnessKind) -> bool:
    """Il max drawdown si minimizza, tutto il resto si massimizza"""
    return FitnessKind(kind) == FitnessKind.MAX_DRAWDOWN


@dataclass
class Statistics:
    """Statistiche terminali di un backtest"""
    sortino: float = 0.0
    sharpe: float = 0.0
    percent_change: float = 0.0
    total_change: float = 0.0
    average_change: float = 0.0
    max_drawdown: float = 0.0

    def add(self, other: Statistics) -> Statistics:
        return Statistics(**{k: v + getattr(other, k) for k, v in asdict(self).items()})

    def divide(self, n: float) -> Statistics:
        return Statistics(**{k: v / n for k, v in asdict(self).items()})

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Statistics:
        return cls(**{k: float(data.get(k, 0.0)) for k in cls.__dataclass_fields__})

    @classmethod
    def from_history(
        cls,
        final_value: float,
        initial_value: float,
        value_history: Sequence[float],
        delta_history: Sequence[float] = (),
    ) -> Statistics:
        """
        Statistiche da storia valore (e delta) di un portfolio

        L'ultimo punto della storia deve coincidere con final_value;
        se la storia è vuota viene usato solo final_value.
        """
        history = list(value_history) or [final_value]
        stats = FitnessEvaluator().evaluate(initial_value, history)
        if delta_history:
            stats.average_change = float(np.mean(delta_history))
        return stats


def fitness_of(statistics: Statistics, kind: FitnessKind) -> float:
    """Valore grezzo della metrica scelta (senza aggiustamento di segno)"""
    return float(getattr(statistics, FitnessKind(kind).value))


def average_statistics(items: Sequence[Statistics]) -> Statistics:
    if not items:
        return Statistics()
    total = Statistics()
    for s in items:
        total = total.add(s)
    return total.divide(len(items))


class FitnessEvaluator:
    """
    Calcola Statistics dalla storia valore di un portfolio

    Usa numpy per equity curve, rendimenti per tick e drawdown.
    """

    def __init__(
        self,
        periods_per_year: int = config.TICKS_PER_YEAR,
        risk_free_rate: float = config.RISK_FREE_RATE_PER_TICK,
    ):
        self.periods_per_year = periods_per_year
        self.risk_free_rate = risk_free_rate

    def evaluate(
        self,
        initial_value: float,
        value_history: List[float],
    ) -> Statistics:
        """
        Args:
            initial_value: Valore del portfolio prima del primo tick
            value_history: Valore totale del portfolio per ogni tick

        Returns:
            Statistics (tutte a zero se la storia è vuota)
        """
        if not value_history or initial_value <= 0:
            return Statistics()

        equity = np.array([initial_value] + list(value_history), dtype=float)
        final_value = equity[-1]
        total_change = final_value - initial_value

        previous = equity[:-1]
        deltas = np.diff(equity)
        returns = np.divide(deltas, previous, out=np.zeros_like(deltas), where=previous != 0)

        stats = Statistics(
            sortino=self._calculate_sortino_ratio(returns),
            sharpe=self._calculate_sharpe_ratio(returns),
            percent_change=total_change / initial_value * 100,
            total_change=total_change,
            average_change=total_change / len(value_history),
            max_drawdown=self._calculate_max_drawdown(equity),
        )
        _LOG.debug(
            f"📊 Statistics: change {stats.percent_change:.2f}% | sharpe {stats.sharpe:.2f} | "
            f"max DD {stats.max_drawdown:.2f}%"
        )
        return stats

    def _calculate_max_drawdown(self, equity_curve: np.ndarray) -> float:
        """Maximum drawdown in % dal picco precedente"""
        if len(equity_curve) == 0:
            return 0.0
        running_max = np.maximum.accumulate(equity_curve)
        drawdown = np.divide(
            running_max - equity_curve,
            running_max,
            out=np.zeros_like(equity_curve),
            where=running_max > 0,
        )
        return float(np.max(drawdown) * 100)

    def _calculate_sharpe_ratio(self, returns: np.ndarray) -> float:
        if len(returns) < 2:
            return 0.0
        std_return = np.std(returns)
        if std_return == 0:
            return 0.0
        sharpe = (np.mean(returns) - self.risk_free_rate) / std_return
        return float(sharpe * np.sqrt(self.periods_per_year))

    def _calculate_sortino_ratio(self, returns: np.ndarray) -> float:
        """Come Sharpe ma solo con la deviazione dei rendimenti negativi"""
        if len(returns) < 2:
            return 0.0
        downside = returns[returns < 0]
        if len(downside) == 0:
            return 0.0
        downside_std = np.sqrt(np.mean(np.square(downside)))
        if downside_std == 0:
            return 0.0
        sortino = (np.mean(returns) - self.risk_free_rate) / downside_std
        return float(sortino * np.sqrt(self.periods_per_year))

    def compare(self, baseline: Statistics, candidate: Statistics) -> str:
        """Confronto formattato (es. strategia vs buy-and-hold)"""
        def delta(val1, val2):
            diff = val2 - val1
            sign = "+" if diff > 0 else ""
            return f"{sign}{diff:.2f}"

        return f"""
=== CONFRONTO PERFORMANCE ===
  Percent change: {baseline.percent_change:.2f}% → {candidate.percent_change:.2f}% ({delta(baseline.percent_change, candidate.percent_change)})
  Sharpe Ratio:   {baseline.sharpe:.2f} → {candidate.sharpe:.2f} ({delta(baseline.sharpe, candidate.sharpe)})
  Sortino Ratio:  {baseline.sortino:.2f} → {candidate.sortino:.2f} ({delta(baseline.sortino, candidate.sortino)})
  Max Drawdown:   {baseline.max_drawdown:.2f}% → {candidate.max_drawdown:.2f}% ({delta(baseline.max_drawdown, candidate.max_drawdown)})
"""
