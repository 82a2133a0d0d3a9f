"""
Strategy Parameters - Cromosoma per Algoritmo Genetico

Appiattisce i campi ottimizzabili di una Strategy in un vettore di geni
(ordine fisso) e li riscrive sulla Strategy:

1. buy_amount.amount, buy_amount.type
2. sell_amount.amount, sell_amount.type
3. buying_conditions[i].<campo> (ricorsivo nelle composte)
4. selling_conditions[i].<campo>

I geni categorici valgono l'indice della scelta. Dopo crossover e
mutazione i geni di allocazione vengono riparati: il range dell'amount
dipende dal tipo di allocazione scelto dal gene accoppiato.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple

import config
from core.allocation import ALLOCATION_TYPES, Allocation, AllocationType
from core.errors import ConfigurationError
from core.portfolio import Portfolio, Strategy
from conditions import Field, condition_fields


@dataclass
class Gene:
    """
    Singolo gene del cromosoma

    getter/setter sono legati alla Strategy da cui il gene è stato
    estratto; value è sempre numerico (indice per i categorici).
    """
    name: str
    value: float
    min: float
    max: float
    is_int: bool = False
    choices: Optional[Sequence[Any]] = None
    getter: Optional[Callable[[], Any]] = None
    setter: Optional[Callable[[Any], None]] = None
    strategy_index: int = 0

    @property
    def is_categorical(self) -> bool:
        return self.choices is not None

    def clamp(self, value: float) -> float:
        value = min(max(value, self.min), self.max)
        return int(round(value)) if self.is_int else value

    def write(self, value: float):
        """Scrive il valore sul campo di origine"""
        if self.setter is None:
            raise ConfigurationError(f"Gene {self.name} is not bound to a strategy")
        value = self.clamp(value)
        if self.is_categorical:
            self.setter(self.choices[int(value)])
        else:
            self.setter(value)
        self.value = value

    def describe(self) -> str:
        if self.is_categorical:
            choice = self.choices[int(self.value)]
            return f"{self.name}={getattr(choice, 'value', choice)}"
        return f"{self.name}={self.value}"


def allocation_amount_max(kind: AllocationType, initial_value: float) -> float:
    """Massimo valido dell'amount per tipo di allocazione"""
    kind = AllocationType(kind)
    if kind == AllocationType.PERCENT_OF_CURRENT_POSITIONS:
        return config.ALLOCATION_AMOUNT_MAX_CURRENT_POSITIONS
    if kind == AllocationType.DOLLARS:
        return config.ALLOCATION_AMOUNT_MAX_DOLLARS_FACTOR * initial_value
    if kind == AllocationType.NUM_ASSETS:
        return config.ALLOCATION_AMOUNT_MAX_UNITS_FACTOR * initial_value
    return config.ALLOCATION_AMOUNT_MAX_PERCENT


def _widened(low: float, high: float, value: float) -> Tuple[float, float]:
    """Range esteso fino a contenere il valore corrente (round trip senza perdite)"""
    return min(low, value), max(high, value)


def _allocation_genes(prefix: str, allocation: Allocation, initial_value: float) -> List[Gene]:
    def set_amount(value):
        allocation.amount = value

    def set_type(value):
        allocation.type = AllocationType(value)

    low, high = _widened(0, allocation_amount_max(allocation.type, initial_value), allocation.amount)
    return [
        Gene(
            name=f"{prefix}.amount",
            value=allocation.amount,
            min=low,
            max=high,
            getter=lambda: allocation.amount,
            setter=set_amount,
        ),
        Gene(
            name=f"{prefix}.type",
            value=ALLOCATION_TYPES.index(allocation.type),
            min=0,
            max=len(ALLOCATION_TYPES) - 1,
            is_int=True,
            choices=ALLOCATION_TYPES,
            getter=lambda: allocation.type,
            setter=set_type,
        ),
    ]


def _field_to_gene(field: Field, prefix: str) -> Gene:
    current = field.value
    low, high = field.min, field.max
    if field.is_categorical:
        try:
            value = list(field.choices).index(current)
        except ValueError as e:
            raise ConfigurationError(f"Invalid value {current!r} for field {prefix}{field.name}") from e
    else:
        value = current
        low, high = _widened(low, high, value)
    return Gene(
        name=f"{prefix}{field.name}",
        value=value,
        min=low,
        max=high,
        is_int=field.is_int,
        choices=field.choices,
        getter=field.getter,
        setter=field.setter,
    )


def _conditions_genes(prefix: str, conditions) -> List[Gene]:
    genes = []
    for i, condition in enumerate(conditions):
        for field in condition_fields(condition):
            genes.append(_field_to_gene(field, f"{prefix}[{i}]."))
    return genes


def encode(strategy: Strategy, initial_value: float = config.DEFAULT_INITIAL_VALUE) -> List[Gene]:
    """
    Appiattisce la Strategy in una lista ordinata di geni

    Args:
        strategy: Strategy da codificare (i geni restano legati ad essa)
        initial_value: Valore iniziale del portfolio (range allocazioni dollars/units)

    Returns:
        Lista di Gene
    """
    return (
        _allocation_genes("buy_amount", strategy.buy_amount, initial_value)
        + _allocation_genes("sell_amount", strategy.sell_amount, initial_value)
        + _conditions_genes("buying_conditions", strategy.buying_conditions)
        + _conditions_genes("selling_conditions", strategy.selling_conditions)
    )


def gene_values(genes: Sequence[Gene]) -> List[float]:
    return [g.value for g in genes]


def _allocation_pairs(genes: Sequence[Gene]) -> List[Tuple[int, int]]:
    """Coppie (indice amount, indice type) dei geni di allocazione"""
    pairs = []
    for i, gene in enumerate(genes):
        if gene.name.endswith("_amount.amount"):
            type_name = gene.name[: -len("amount")] + "type"
            j = next(
                (
                    k for k, other in enumerate(genes)
                    if other.name == type_name and other.strategy_index == gene.strategy_index
                ),
                None,
            )
            if j is None:
                raise ConfigurationError(f"Could not find type gene {type_name}")
            pairs.append((i, j))
    return pairs


def gene_bounds(
    genes: Sequence[Gene],
    values: Sequence[float],
    initial_value: float,
) -> List[Tuple[float, float]]:
    """
    Range (min, max) per gene, con l'amount riallineato al tipo scelto in values

    Finché il tipo resta quello codificato vale il range del gene (già
    esteso al valore originale); con un tipo diverso vale il range statico.
    """
    bounds = [(g.min, g.max) for g in genes]
    for amount_idx, type_idx in _allocation_pairs(genes):
        type_gene = genes[type_idx]
        chosen = int(type_gene.clamp(values[type_idx]))
        if chosen == int(type_gene.value):
            continue
        kind = type_gene.choices[chosen]
        bounds[amount_idx] = (0, allocation_amount_max(kind, initial_value))
    return bounds


def repair(genes: Sequence[Gene], values: Sequence[float], initial_value: float) -> List[float]:
    """Clampa ogni valore nel suo range (allocazioni incluse) e arrotonda gli interi"""
    fixed = []
    for gene, value, (low, high) in zip(genes, values, gene_bounds(genes, values, initial_value)):
        value = min(max(value, low), high)
        fixed.append(int(round(value)) if gene.is_int else value)
    return fixed


def decode(
    strategy: Strategy,
    values: Sequence[float],
    initial_value: float = config.DEFAULT_INITIAL_VALUE,
) -> Strategy:
    """
    Scrive il vettore sui campi della Strategy (in place)

    Raises:
        ConfigurationError: se la lunghezza del vettore non corrisponde al layout
    """
    genes = encode(strategy, initial_value)
    if len(genes) != len(values):
        raise ConfigurationError(
            f"Gene vector length {len(values)} does not match strategy layout ({len(genes)})"
        )
    fixed = repair(genes, values, initial_value)
    # il tipo va scritto prima dell'amount
    for gene, value in zip(genes, fixed):
        if gene.name.endswith("_amount.type"):
            gene.write(value)
    for gene, value in zip(genes, fixed):
        if gene.name.endswith("_amount.amount"):
            gene.setter(value)
            gene.value = value
        elif not gene.name.endswith("_amount.type"):
            gene.write(value)
    return strategy


# ----------------------------------------------------------------------
# Portfolio (più strategie)
# ----------------------------------------------------------------------

def encode_portfolio(portfolio: Portfolio) -> List[Gene]:
    """Concatena i geni di tutte le strategie del portfolio"""
    genes = []
    for idx, strategy in enumerate(portfolio.strategies):
        for gene in encode(strategy, portfolio.initial_value):
            gene.strategy_index = idx
            genes.append(gene)
    return genes


def decode_portfolio(portfolio: Portfolio, values: Sequence[float]) -> Portfolio:
    """Scrive il vettore sulle strategie del portfolio (in place)"""
    offset = 0
    for strategy in portfolio.strategies:
        size = len(encode(strategy, portfolio.initial_value))
        decode(strategy, values[offset:offset + size], portfolio.initial_value)
        offset += size
    if offset != len(values):
        raise ConfigurationError(
            f"Gene vector length {len(values)} does not match portfolio layout ({offset})"
        )
    return portfolio


def describe_genes(genes: Sequence[Gene]) -> str:
    return ", ".join(g.describe() for g in genes)
