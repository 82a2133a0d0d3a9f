"""
Genetic Algorithm Engine - Operatori genetici sui vettori di geni

Implementa gli operatori dell'Algoritmo Genetico usando DEAP:
popolazione iniziale, selezione dei genitori (roulette o pick uniforme),
crossover (n-point o uniforme), mutazione (singolo gene o intervallo),
generazione spontanea, elitismo e ranking.

La valutazione della fitness (backtest) è a carico di ga_orchestrator.
"""

from __future__ import annotations

import copy
import logging
import random
from typing import List, Optional, Sequence, Tuple

import numpy as np
from deap import base, creator, tools

import config
from strategy_optimizer.fitness_evaluator import (
    FitnessKind,
    Statistics,
    average_statistics,
    fitness_of,
    is_minimized,
)
from strategy_optimizer.strategy_params import Gene, gene_bounds, repair

_LOG = logging.getLogger(__name__)


def random_value(
    intensity: float,
    low: float,
    high: float,
    value: float,
    is_int: bool,
) -> float:
    """
    Mescola il valore corrente con un valore casuale nel range

    Args:
        intensity: 0 = valore invariato, 1 = completamente casuale
        low, high: Range del gene
        value: Valore corrente
        is_int: Arrotonda all'intero (i continui restano a piena precisione)

    Returns:
        Nuovo valore clampato in [low, high]
    """
    fresh = random.uniform(low, high)
    blended = value * (1 - intensity) + fresh * intensity
    if is_int:
        blended = int(round(blended))
    return min(max(blended, low), high)


class GeneticAlgorithmEngine:
    """
    Operatori genetici per vettori di geni di una strategia

    Ogni individuo è una lista DEAP (creator.Individual*) di valori numerici
    con layout fisso dato da genes; la fitness è la metrica grezza del
    training (pesi DEAP +1 per massimizzare, -1 per il max drawdown).
    Ogni individuo porta anche .training e .validation (Statistics).
    """

    def __init__(
        self,
        genes: Sequence[Gene],
        initial_value: float,
        fitness_kind: FitnessKind = FitnessKind.SORTINO,
        population_size: int = config.OPTIMIZER_POPULATION_SIZE,
        crossover_probability: float = config.OPTIMIZER_CROSSOVER_PROBABILITY,
        mutation_probability: float = config.OPTIMIZER_MUTATION_PROBABILITY,
        mutation_intensity: float = config.OPTIMIZER_MUTATION_INTENSITY,
        elite_spontaneous_ratio: float = config.OPTIMIZER_ELITE_SPONTANEOUS_RATIO,
        max_crossover_points: int = config.OPTIMIZER_MAX_CROSSOVER_POINTS,
        random_seed: Optional[int] = None,
    ):
        """
        Args:
            genes: Layout dei geni (da strategy_params.encode_portfolio)
            initial_value: Valore iniziale del portfolio (range allocazioni)
            fitness_kind: Metrica usata come fitness
            population_size: Dimensione popolazione
            crossover_probability: Quota di slot generati da crossover (0.7 = 70%)
            mutation_probability: Probabilità di mutare un figlio
            mutation_intensity: Peso del valore casuale nella mutazione
            elite_spontaneous_ratio: Quota di elite negli slot restanti
            max_crossover_points: Punti di taglio massimi (n-point)
            random_seed: Seed per reproducibilità
        """
        self.genes = list(genes)
        self.initial_value = initial_value
        self.fitness_kind = FitnessKind(fitness_kind)
        self.population_size = population_size
        self.crossover_probability = crossover_probability
        self.mutation_probability = mutation_probability
        self.mutation_intensity = mutation_intensity
        self.elite_spontaneous_ratio = elite_spontaneous_ratio
        self.max_crossover_points = max_crossover_points

        if random_seed is not None:
            random.seed(random_seed)
            np.random.seed(random_seed)

        self._setup_deap()

        self.history = {
            'best_fitness': [],
            'avg_fitness': [],
        }

        _LOG.debug(
            f"🧬 GeneticAlgorithm initialized: {len(self.genes)} genes | "
            f"population {population_size} | fitness {self.fitness_kind.value}"
        )

    def _setup_deap(self):
        """Setup DEAP creator e toolbox"""
        if not hasattr(creator, "FitnessMax"):
            creator.create("FitnessMax", base.Fitness, weights=(1.0,))
        if not hasattr(creator, "FitnessMin"):
            creator.create("FitnessMin", base.Fitness, weights=(-1.0,))
        if not hasattr(creator, "IndividualMax"):
            creator.create("IndividualMax", list, fitness=creator.FitnessMax)
        if not hasattr(creator, "IndividualMin"):
            creator.create("IndividualMin", list, fitness=creator.FitnessMin)

        self.individual_class = (
            creator.IndividualMin if is_minimized(self.fitness_kind) else creator.IndividualMax
        )

        self.toolbox = base.Toolbox()
        self.toolbox.register("mate", tools.cxUniform, indpb=0.5)
        self.toolbox.register("select", tools.selBest)
        self.toolbox.register("clone", self._clone_individual)

    # ------------------------------------------------------------------
    # Individui
    # ------------------------------------------------------------------

    def make_individual(
        self,
        values: Sequence[float],
        training: Optional[Statistics] = None,
        validation: Optional[Statistics] = None,
    ):
        individual = self.individual_class(repair(self.genes, values, self.initial_value))
        individual.training = training or Statistics()
        individual.validation = validation or Statistics()
        if training is not None:
            individual.fitness.values = (fitness_of(training, self.fitness_kind),)
        return individual

    def set_training(self, individual, statistics: Statistics):
        individual.training = statistics
        individual.fitness.values = (fitness_of(statistics, self.fitness_kind),)

    def _clone_individual(self, individual):
        clone = self.individual_class(list(individual))
        clone.training = copy.deepcopy(individual.training)
        clone.validation = copy.deepcopy(individual.validation)
        if individual.fitness.valid:
            clone.fitness.values = individual.fitness.values
        return clone

    def randomize(self, values: Sequence[float], intensity: float):
        """Nuovo individuo: ogni gene mescolato col casuale a questa intensità"""
        bounds = gene_bounds(self.genes, values, self.initial_value)
        randomized = [
            random_value(intensity, low, high, value, gene.is_int)
            for gene, value, (low, high) in zip(self.genes, values, bounds)
        ]
        return self.make_individual(randomized)

    def initial_population(self, template: Sequence[float]) -> list:
        """L'individuo i è randomizzato con intensità i / N (il primo è il template)"""
        return [
            self.randomize(template, i / self.population_size)
            for i in range(self.population_size)
        ]

    def num_parents(self) -> Tuple[int, int, int]:
        """
        Returns:
            (num_parents, num_spontaneous, num_elite)
        """
        num_parents = int(self.population_size * self.crossover_probability)
        remaining = self.population_size - num_parents
        num_elite = int(remaining * self.elite_spontaneous_ratio)
        num_spontaneous = remaining - num_elite
        return num_parents, num_spontaneous, num_elite

    # ------------------------------------------------------------------
    # Selezione
    # ------------------------------------------------------------------

    def adjusted_fitness(self, individual) -> float:
        """Fitness con segno: più alto è sempre meglio"""
        raw = fitness_of(individual.training, self.fitness_kind)
        return -raw if is_minimized(self.fitness_kind) else raw

    def _roulette_pick(self, weights: List[float]) -> int:
        total = sum(weights)
        if total <= 0:
            return random.randrange(len(weights))
        pick = random.uniform(0, total)
        running = 0.0
        for i, w in enumerate(weights):
            running += w
            if running >= pick:
                return i
        return len(weights) - 1

    def select_parents(self, population: Sequence, use_roulette: Optional[bool] = None) -> Tuple[int, int]:
        """
        Due indici distinti: roulette sulla fitness o pick uniforme

        Args:
            population: Popolazione corrente
            use_roulette: Metodo scelto per la generazione (None = 50/50 ora)

        Raises:
            ValueError: popolazione con meno di due individui
        """
        if len(population) < 2:
            raise ValueError("Not enough population to select parents")
        if use_roulette is None:
            use_roulette = random.random() < 0.5
        if use_roulette:
            adjusted = [self.adjusted_fitness(ind) for ind in population]
            floor = min(adjusted)
            weights = [a - floor for a in adjusted]
            mother = self._roulette_pick(weights)
            father = self._roulette_pick(weights)
        else:
            mother = random.randrange(len(population))
            father = random.randrange(len(population))
        if father == mother:
            father = father - 1 if father == len(population) - 1 else father + 1
        return mother, father

    # ------------------------------------------------------------------
    # Crossover / mutazione
    # ------------------------------------------------------------------

    def n_point_crossover(self, father, mother):
        """Segmenti alternati tra 1..max_crossover_points punti di taglio"""
        size = len(father)
        num_points = random.randint(1, max(1, self.max_crossover_points))
        points = sorted(set(random.randrange(size) for _ in range(num_points))) if size else []
        child = list(father)
        use_mother = False
        point_idx = 0
        for i in range(size):
            while point_idx < len(points) and i > points[point_idx]:
                point_idx += 1
                use_mother = not use_mother
            if use_mother:
                child[i] = mother[i]
        return self.make_individual(child)

    def uniform_crossover(self, father, mother):
        """Coin flip per gene (tools.cxUniform)"""
        child, _ = self.toolbox.mate(list(father), list(mother))
        return self.make_individual(child)

    def crossover(self, mother, father):
        if random.random() < 0.5:
            return self.n_point_crossover(mother, father)
        return self.uniform_crossover(father, mother)

    def _mutate_gene(self, values: List[float], i: int):
        bounds = gene_bounds(self.genes, values, self.initial_value)
        low, high = bounds[i]
        values[i] = random_value(self.mutation_intensity, low, high, values[i], self.genes[i].is_int)

    def mutate(self, child):
        """Con probabilità mutation_probability: singolo gene o intervallo contiguo"""
        if not child or random.random() >= self.mutation_probability:
            return child
        values = list(child)
        if random.random() < 0.5:
            self._mutate_gene(values, random.randrange(len(values)))
        else:
            i = random.randrange(len(values))
            j = random.randrange(len(values))
            if i > j:
                i, j = j, i
            for k in range(i, j + 1):
                self._mutate_gene(values, k)
        return self.make_individual(values)

    # ------------------------------------------------------------------
    # Generazione
    # ------------------------------------------------------------------

    def generate_children(self, population: Sequence, count: int) -> list:
        """Figli da crossover + mutazione; roulette o pick uniforme scelto una volta (50/50)"""
        use_roulette = random.random() < 0.5
        children = []
        for _ in range(count):
            mother, father = self.select_parents(population, use_roulette)
            child = self.crossover(population[mother], population[father])
            children.append(self.mutate(child))
        return children

    def spontaneous_generation(self, template: Sequence[float], count: int) -> list:
        return [self.randomize(template, 1.0) for _ in range(count)]

    def elitism(self, population: Sequence, count: int) -> list:
        return [self.toolbox.clone(ind) for ind in self.rank(population)[:count]]

    def next_generation(self, population: Sequence, template: Sequence[float]) -> list:
        """Figli (crossover + mutazione), spontanei ed elite, ancora da valutare"""
        num_parents, num_spontaneous, num_elite = self.num_parents()
        children = self.generate_children(population, num_parents)
        children += self.spontaneous_generation(template, num_spontaneous)
        elite = self.elitism(population, num_elite)
        for ind in elite:
            del ind.fitness.values
        return children + elite

    def rank(self, population: Sequence) -> list:
        """Ordina per fitness (segno incluso nei pesi DEAP)"""
        return tools.selBest(list(population), len(population))

    def survivors(self, population: Sequence) -> list:
        """Ordina e tronca alla dimensione della popolazione"""
        return self.toolbox.select(list(population), self.population_size)

    def record_generation(self, population: Sequence) -> Statistics:
        """Aggiorna la history e restituisce le Statistics medie di training"""
        average = average_statistics([ind.training for ind in population])
        fits = [fitness_of(ind.training, self.fitness_kind) for ind in population]
        best = self.rank(population)[0] if population else None
        self.history['best_fitness'].append(fitness_of(best.training, self.fitness_kind) if best else 0.0)
        self.history['avg_fitness'].append(float(np.mean(fits)) if fits else 0.0)
        return average

    def get_history(self) -> dict:
        """Restituisce history dell'ottimizzazione"""
        return self.history
