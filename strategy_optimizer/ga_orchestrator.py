"""
GA Orchestrator - Regista del processo di ottimizzazione

Coordina l'intero flusso di ottimizzazione tramite Algoritmo Genetico:
1. Precondizioni e download dello storico nella Market Data Cache
2. Popolazione iniziale e fitness di training/validazione
3. Loop sulle generazioni (figli, spontanei, elite, mutazione, ranking)
4. Persistenza periodica dello stato (ripresa dall'ultima generazione)
5. Stato terminale COMPLETE o ERROR

Ogni individuo è valutato con un BacktestSimulator indipendente; le
valutazioni di una generazione girano in batch concorrenti limitati.
Un individuo il cui backtest termina in ERROR interrompe l'intero run.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import config
from core.data_cache import MarketDataCache
from core.errors import BacktestFailedError, ValidationError
from core.portfolio import Portfolio, Strategy
from core.repository import OPTIMIZATIONS, Repository
from conditions.fields import DURATION_RANGE
from conditions.types import INTRADAY_INTERVALS, to_timedelta
from strategy_optimizer.backtest_simulator import BacktestSimulator, RunStatus, as_date, error_message
from strategy_optimizer.fitness_evaluator import FitnessKind, Statistics, average_statistics, fitness_of
from strategy_optimizer.genetic_algorithm import GeneticAlgorithmEngine
from strategy_optimizer.strategy_params import decode_portfolio, encode_portfolio, gene_values

_LOG = logging.getLogger(__name__)

KILLED_MESSAGE = "Optimizer was stopped before completion"


class Optimizer:
    """
    Run di ottimizzazione genetica di un Portfolio

    Il run comunica solo tramite il Repository: submit() restituisce l'id
    e chi lo ha lanciato osserva lo stato persistito.
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
        fitness_kind: FitnessKind = FitnessKind.SORTINO,
        population_size: int = config.OPTIMIZER_POPULATION_SIZE,
        num_generations: int = config.OPTIMIZER_GENERATIONS,
        crossover_probability: float = config.OPTIMIZER_CROSSOVER_PROBABILITY,
        mutation_probability: float = config.OPTIMIZER_MUTATION_PROBABILITY,
        mutation_intensity: float = config.OPTIMIZER_MUTATION_INTENSITY,
        elite_spontaneous_ratio: float = config.OPTIMIZER_ELITE_SPONTANEOUS_RATIO,
        save_frequency: int = config.OPTIMIZER_SAVE_FREQUENCY,
        validation_frequency: int = config.OPTIMIZER_VALIDATION_FREQUENCY,
        train_validation_ratio: float = config.OPTIMIZER_TRAIN_VALIDATION_RATIO,
        batch_size: int = config.OPTIMIZER_BATCH_SIZE,
        batch_pause_ms: int = config.OPTIMIZER_BATCH_PAUSE_MS,
        generation_pause_ms: int = config.OPTIMIZER_GENERATION_PAUSE_MS,
        random_seed: Optional[int] = None,
        optimizer_id: Optional[str] = None,
    ):
        """
        Args:
            portfolio: Portfolio template (strategie da ottimizzare)
            start_date: Inizio intervallo (training)
            end_date: Fine intervallo (validazione)
            cache: Market Data Cache condivisa da tutti i backtest
            repository: Persistenza dello stato del run
            fitness_kind: Metrica di fitness
            population_size: Dimensione popolazione (>= 2)
            num_generations: Numero generazioni
            save_frequency: Persiste lo stato ogni N generazioni
            validation_frequency: Ricalcola la validazione ogni N generazioni
            train_validation_ratio: Quota dell'intervallo usata per il training
            batch_size: Backtest concorrenti per batch
            batch_pause_ms: Pausa tra batch
            generation_pause_ms: Pausa tra generazioni
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
        self.fitness_kind = FitnessKind(fitness_kind)
        self.population_size = population_size
        self.num_generations = num_generations
        self.save_frequency = max(1, save_frequency)
        self.validation_frequency = max(1, validation_frequency)
        self.train_validation_ratio = train_validation_ratio
        self.batch_size = max(1, batch_size)
        self.batch_pause_ms = batch_pause_ms
        self.generation_pause_ms = generation_pause_ms
        self.optimizer_id = optimizer_id or uuid.uuid4().hex

        training, validation = training_validation_windows(
            self.start_date, self.end_date, train_validation_ratio
        )
        self.training_start, self.training_end = training
        self.validation_start, self.validation_end = validation

        self.genes = encode_portfolio(self.portfolio)
        self.template = gene_values(self.genes)
        self.engine = GeneticAlgorithmEngine(
            genes=self.genes,
            initial_value=self.portfolio.initial_value,
            fitness_kind=self.fitness_kind,
            population_size=population_size,
            crossover_probability=crossover_probability,
            mutation_probability=mutation_probability,
            mutation_intensity=mutation_intensity,
            elite_spontaneous_ratio=elite_spontaneous_ratio,
            random_seed=random_seed,
        )

        self.status = RunStatus.PENDING
        self.error = ""
        self.population: list = []
        self.current_generation = 0
        self.training_fitness_history: List[Statistics] = []
        self.validation_fitness_history: List[Statistics] = []
        self.start_time: Optional[datetime] = None
        self.finish_time: Optional[datetime] = None
        self.last_updated: Optional[datetime] = None
        self.task: Optional[asyncio.Task] = None
        self._persisted = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run_preconditions(self):
        if self.population_size < 2:
            raise ValidationError("Population size must be at least 2")
        if not self.portfolio.strategies:
            raise ValidationError("Portfolio has no strategies to optimize")
        if self.validation_start >= self.validation_end:
            raise ValidationError("Date range too short for a validation window")

    async def run(self) -> Optimizer:
        """
        Esegue l'ottimizzazione fino a COMPLETE o ERROR

        Le eccezioni non vengono propagate: lo stato terminale e il
        messaggio sono persistiti.
        """
        try:
            _LOG.info(f"🧬 Optimization started {self.name or self.optimizer_id}")
            self.start_time = self.start_time or datetime.now()
            self.run_preconditions()
            await self._initialize_market_data()
            self.status = RunStatus.RUNNING
            self.save()
            await self.run_genetic_algorithm()
            self.status = RunStatus.COMPLETE
            self.finish_time = datetime.now()
            self.save()
            _LOG.info(
                f"✅ Optimization {self.name or self.optimizer_id} complete | "
                f"generation {self.current_generation}"
            )
        except Exception as e:
            _LOG.error(f"❌ Optimization {self.name or self.optimizer_id} failed: {e}")
            self.status = RunStatus.ERROR
            self.finish_time = datetime.now()
            self.error = error_message(e)
            self.save()
        return self

    async def submit(self) -> str:
        """Persiste il run come PENDING e lo avvia in background; restituisce l'id"""
        self.save()
        self.task = asyncio.create_task(self.run())
        return self.optimizer_id

    async def _initialize_market_data(self):
        """Scarica lo storico di tutti gli asset una volta sola per l'intero run"""
        offset = self.portfolio.earliest_date_offset() - 7
        start = self.start_date + timedelta(days=offset)
        for asset in self.portfolio.referenced_assets():
            await self.cache.get_market_history(asset.symbol, start, self.end_date)

        end_time = datetime.combine(self.end_date, datetime.min.time())
        start_time = datetime.combine(self.start_date, datetime.min.time())
        # la mutazione può allargare la finestra fino al massimo del gene duration
        for (symbol, interval), window in self.portfolio.intraday_windows().items():
            unit = next(u for u, i in INTRADAY_INTERVALS.items() if i == interval)
            window = max(window, to_timedelta(max(abs(b) for b in DURATION_RANGE), unit))
            await self.cache.get_intraday_history(symbol, start_time - window, end_time, interval)

    async def run_genetic_algorithm(self):
        engine = self.engine
        resumed = bool(self.population) and self.current_generation > 0

        if not resumed:
            if not self.population:
                self.population = engine.initial_population(self.template)
            await self.calculate_population_fitness(self.population)
            self.population = engine.rank(self.population)
            self.training_fitness_history.append(engine.record_generation(self.population))
            await self.run_validation_test()
            self.save()
        else:
            _LOG.info(f"🧬 Resuming from generation {self.current_generation}")

        while self.current_generation < self.num_generations:
            _LOG.info(f"🧬 Generation {self.current_generation + 1}/{self.num_generations}")
            children = engine.next_generation(self.population, self.template)
            await self.calculate_population_fitness(children)
            self.population = engine.survivors(self.population + children)
            self.training_fitness_history.append(engine.record_generation(self.population))
            self.current_generation += 1

            latest = self.training_fitness_history[-1]
            _LOG.info(
                f"📊 Training fitness ({self.fitness_kind.value}): "
                f"{fitness_of(latest, self.fitness_kind):.4f} | best {engine.history['best_fitness'][-1]:.4f}"
            )

            if self.current_generation % self.validation_frequency == 0:
                await self.run_validation_test()
            if self.current_generation % self.save_frequency == 0:
                self.save()
            if self.generation_pause_ms:
                await asyncio.sleep(self.generation_pause_ms / 1000)

    # ------------------------------------------------------------------
    # Fitness
    # ------------------------------------------------------------------

    async def _run_batched(self, factories: Sequence) -> List[Statistics]:
        """Esegue le coroutine a batch di batch_size con pausa tra un batch e l'altro"""
        results: List[Statistics] = []
        for i in range(0, len(factories), self.batch_size):
            batch = factories[i:i + self.batch_size]
            results.extend(await asyncio.gather(*(factory() for factory in batch)))
            if self.batch_pause_ms and i + self.batch_size < len(factories):
                await asyncio.sleep(self.batch_pause_ms / 1000)
        return results

    async def backtest_statistics(self, values: Sequence[float], start: date, end: date) -> Statistics:
        """
        Backtest isolato di un individuo

        Raises:
            BacktestFailedError: il backtest è terminato in ERROR
        """
        portfolio = decode_portfolio(self.portfolio.copy(), values)
        portfolio.name = uuid.uuid4().hex[:8]
        simulator = await BacktestSimulator.create(
            portfolio,
            start,
            end,
            self.cache,
            name=f"Backtester {portfolio.name}",
            user_id=self.user_id,
        )
        await simulator.run(persist_on_completion=False, compute_baseline=False)
        if simulator.status == RunStatus.ERROR:
            raise BacktestFailedError(simulator.error)
        return simulator.statistics

    async def calculate_population_fitness(self, individuals: Sequence):
        def factory(ind):
            return lambda: self.backtest_statistics(list(ind), self.training_start, self.training_end)

        statistics = await self._run_batched([factory(ind) for ind in individuals])
        for ind, stats in zip(individuals, statistics):
            self.engine.set_training(ind, stats)

    async def run_validation_test(self):
        def factory(ind):
            return lambda: self.backtest_statistics(list(ind), self.validation_start, self.validation_end)

        statistics = await self._run_batched([factory(ind) for ind in self.population])
        for ind, stats in zip(self.population, statistics):
            ind.validation = stats
        average = average_statistics([ind.validation for ind in self.population])
        self.validation_fitness_history.append(average)
        _LOG.info(
            f"📊 Validation fitness ({self.fitness_kind.value}): "
            f"{fitness_of(average, self.fitness_kind):.4f}"
        )

    # ------------------------------------------------------------------
    # Risultati
    # ------------------------------------------------------------------

    def best_portfolio(self) -> Portfolio:
        if not self.population:
            raise ValidationError("Optimizer has no population yet")
        best = self.engine.rank(self.population)[0]
        return decode_portfolio(self.portfolio.copy(), list(best))

    def best_strategy(self) -> Strategy:
        return self.best_portfolio().strategies[0]

    def _state_element(self, individual, with_portfolio: bool = False) -> Dict[str, Any]:
        element = {
            "vector": list(individual),
            "training_fitness": individual.training.to_dict(),
            "validation_fitness": individual.validation.to_dict(),
        }
        if with_portfolio:
            element["portfolio"] = decode_portfolio(self.portfolio.copy(), list(individual)).to_dict()
        return element

    def page(self, page_number: int = 1) -> List[Dict[str, Any]]:
        """Slice (1-based) della popolazione ordinata per fitness, con i portfolio decodificati"""
        size = config.OPTIMIZER_PAGE_SIZE
        start = (max(page_number, 1) - 1) * size
        ranked = self.engine.rank(self.population) if self.population else []
        return [self._state_element(ind, with_portfolio=True) for ind in ranked[start:start + size]]

    def to_dict(self) -> Dict[str, Any]:
        ranked = self.engine.rank(self.population) if self.population else []

        def iso(value):
            return value.isoformat() if value else None

        return {
            "id": self.optimizer_id,
            "name": self.name,
            "user_id": self.user_id,
            "status": self.status.value,
            "error": self.error,
            "portfolio": self.portfolio.to_dict(),
            "portfolio_id": self.portfolio.portfolio_id,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "fitness_function": self.fitness_kind.value,
            "population_size": self.population_size,
            "num_generations": self.num_generations,
            "crossover_probability": self.engine.crossover_probability,
            "mutation_probability": self.engine.mutation_probability,
            "mutation_intensity": self.engine.mutation_intensity,
            "elite_spontaneous_ratio": self.engine.elite_spontaneous_ratio,
            "save_frequency": self.save_frequency,
            "validation_frequency": self.validation_frequency,
            "train_validation_ratio": self.train_validation_ratio,
            "current_generation": self.current_generation,
            "state": [self._state_element(ind) for ind in ranked],
            "training_fitness_history": [s.to_dict() for s in self.training_fitness_history],
            "validation_fitness_history": [s.to_dict() for s in self.validation_fitness_history],
            "start_time": iso(self.start_time),
            "finish_time": iso(self.finish_time),
            "last_updated": iso(self.last_updated),
        }

    def save(self):
        if self.repository is None:
            return
        _LOG.debug(f"💾 Saving optimizer {self.optimizer_id} | generation {self.current_generation}")
        self.last_updated = datetime.now()
        document = self.to_dict()
        if self._persisted:
            self.repository.update_by_id(OPTIMIZATIONS, self.optimizer_id, document)
        else:
            self.repository.create(OPTIMIZATIONS, document)
            self._persisted = True

    def _save_results(self, output_dir: str = config.OPTIMIZER_RESULTS_DIR) -> Path:
        """Esporta best portfolio e storia fitness su file JSON"""
        directory = Path(output_dir)
        directory.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")

        results_file = directory / f"optimization_{self.optimizer_id}_{timestamp}.json"
        results = {
            "id": self.optimizer_id,
            "name": self.name,
            "status": self.status.value,
            "fitness_function": self.fitness_kind.value,
            "best_portfolio": self.best_portfolio().to_dict(),
            "training_fitness_history": [s.to_dict() for s in self.training_fitness_history],
            "validation_fitness_history": [s.to_dict() for s in self.validation_fitness_history],
            "ga_history": self.engine.get_history(),
        }
        with open(results_file, 'w') as f:
            json.dump(results, f, indent=2)
        _LOG.info(f"💾 Saved optimization results: {results_file}")
        return results_file

    # ------------------------------------------------------------------
    # Persistenza / manutenzione
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(
        cls,
        document: Dict[str, Any],
        cache: MarketDataCache,
        repository: Optional[Repository] = None,
        **overrides,
    ) -> Optimizer:
        """Ricostruisce un run persistito (stato e generazione corrente inclusi)"""
        kwargs = dict(
            portfolio=Portfolio.from_dict(document["portfolio"]),
            start_date=document["start_date"],
            end_date=document["end_date"],
            cache=cache,
            repository=repository,
            name=document.get("name", ""),
            user_id=document.get("user_id"),
            fitness_kind=FitnessKind(document.get("fitness_function", FitnessKind.SORTINO.value)),
            population_size=document.get("population_size", config.OPTIMIZER_POPULATION_SIZE),
            num_generations=document.get("num_generations", config.OPTIMIZER_GENERATIONS),
            crossover_probability=document.get("crossover_probability", config.OPTIMIZER_CROSSOVER_PROBABILITY),
            mutation_probability=document.get("mutation_probability", config.OPTIMIZER_MUTATION_PROBABILITY),
            mutation_intensity=document.get("mutation_intensity", config.OPTIMIZER_MUTATION_INTENSITY),
            elite_spontaneous_ratio=document.get(
                "elite_spontaneous_ratio", config.OPTIMIZER_ELITE_SPONTANEOUS_RATIO
            ),
            save_frequency=document.get("save_frequency", config.OPTIMIZER_SAVE_FREQUENCY),
            validation_frequency=document.get("validation_frequency", config.OPTIMIZER_VALIDATION_FREQUENCY),
            train_validation_ratio=document.get(
                "train_validation_ratio", config.OPTIMIZER_TRAIN_VALIDATION_RATIO
            ),
            optimizer_id=document.get("id"),
        )
        kwargs.update(overrides)
        optimizer = cls(**kwargs)
        optimizer._persisted = repository is not None and document.get("id") is not None
        optimizer.status = RunStatus(document.get("status", RunStatus.PENDING.value))
        optimizer.error = document.get("error", "")
        optimizer.current_generation = document.get("current_generation", 0)
        optimizer.population = [
            optimizer.engine.make_individual(
                element["vector"],
                training=Statistics.from_dict(element.get("training_fitness", {})),
                validation=Statistics.from_dict(element.get("validation_fitness", {})),
            )
            for element in document.get("state", [])
        ]
        optimizer.training_fitness_history = [
            Statistics.from_dict(s) for s in document.get("training_fitness_history", [])
        ]
        optimizer.validation_fitness_history = [
            Statistics.from_dict(s) for s in document.get("validation_fitness_history", [])
        ]
        if document.get("start_time"):
            optimizer.start_time = datetime.fromisoformat(document["start_time"])
        return optimizer

    @classmethod
    def find_one(
        cls,
        repository: Repository,
        optimizer_id: str,
        cache: MarketDataCache,
        **overrides,
    ) -> Optimizer:
        document = repository.find_by_id(OPTIMIZATIONS, optimizer_id)
        if document is None:
            raise ValidationError("Optimizer not found")
        return cls.from_dict(document, cache, repository, **overrides)

    @staticmethod
    def load_page(repository: Repository, optimizer_id: str, page_number: int = 1) -> List[Dict[str, Any]]:
        """Pagina dello stato persistito (già ordinato per fitness al salvataggio)"""
        document = repository.find_by_id(OPTIMIZATIONS, optimizer_id)
        if document is None:
            raise ValidationError("Optimizer not found")
        size = config.OPTIMIZER_PAGE_SIZE
        start = (max(page_number, 1) - 1) * size
        return document.get("state", [])[start:start + size]

    @staticmethod
    def kill_all(
        repository: Repository,
        user_id: Optional[str] = None,
        message: str = KILLED_MESSAGE,
    ) -> int:
        """
        Marca ERROR tutti i run PENDING/RUNNING (dell'utente, se indicato)

        Returns:
            Numero di run aggiornati
        """
        filters = {"user_id": user_id} if user_id is not None else {}
        now = datetime.now().isoformat()
        killed = 0
        for status in (RunStatus.PENDING, RunStatus.RUNNING):
            for document in repository.find(OPTIMIZATIONS, status=status.value, **filters):
                repository.update_by_id(
                    OPTIMIZATIONS,
                    document["id"],
                    {"status": RunStatus.ERROR.value, "error": message, "finish_time": now, "last_updated": now},
                )
                killed += 1
        if killed:
            _LOG.warning(f"⚠️ Killed {killed} optimizer run(s)")
        return killed


def training_validation_windows(
    start_date: date,
    end_date: date,
    ratio: float = config.OPTIMIZER_TRAIN_VALIDATION_RATIO,
) -> Tuple[Tuple[date, date], Tuple[date, date]]:
    """((training_start, training_end), (validation_start, validation_end))"""
    days = (end_date - start_date).days
    training_end = start_date + timedelta(days=int(days * ratio))
    return (start_date, training_end), (training_end + timedelta(days=1), end_date)
