"""
📈 Backtest & Ottimizzazione Strategie - Main Script

Legge la descrizione di un portfolio (JSON) e i prezzi storici (CSV, un
file <SYMBOL>.csv per simbolo) ed esegue un backtest o un'ottimizzazione
genetica delle strategie.

Uso:
    python main.py backtest portfolio.json --data-dir data/
    python main.py optimize portfolio.json --data-dir data/ --generations 5

Formato JSON:
    {
      "name": "...",
      "start_date": "2021-01-04",
      "end_date": "2021-06-30",
      "portfolio": { ... Portfolio.to_dict() ... },
      "optimizer": { "population_size": 20, "fitness_function": "sortino", ... }
    }
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path

from termcolor import colored

import config
import logging_config  # noqa: F401  (configura i logger)
from core.data_cache import CsvHistoricalSource, MarketDataCache
from core.errors import ValidationError
from core.portfolio import Portfolio
from core.repository import OPTIMIZATIONS, InMemoryRepository
from strategy_optimizer.backtest_simulator import BacktestSimulator, RunStatus
from strategy_optimizer.fitness_evaluator import FitnessEvaluator, FitnessKind, Statistics
from strategy_optimizer.ga_orchestrator import Optimizer


def print_banner(title: str, description: dict):
    """Stampa banner iniziale"""
    print(colored("\n" + "=" * 60, "cyan", attrs=['bold']))
    print(colored(title, "cyan", attrs=['bold']))
    print(colored("=" * 60, "cyan", attrs=['bold']))
    print(colored(f"⏰ Avvio: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}", "white"))
    print(colored(f"📅 Periodo: {description['start_date']} -> {description['end_date']}", "white"))
    strategies = description["portfolio"].get("strategies", [])
    print(colored(f"🧩 Strategie: {len(strategies)}", "white"))
    print(colored("=" * 60, "cyan", attrs=['bold']))


def print_statistics(label: str, stats: Statistics):
    color = "green" if stats.percent_change >= 0 else "red"
    print(colored(f"\n📊 {label}", "cyan", attrs=['bold']))
    print(colored(f"   Percent change: {stats.percent_change:+.2f}%", color))
    print(f"   Total change:   {stats.total_change:+.2f}")
    print(f"   Sharpe:         {stats.sharpe:.2f}")
    print(f"   Sortino:        {stats.sortino:.2f}")
    print(f"   Max drawdown:   {stats.max_drawdown:.2f}%")


def load_description(path: str) -> dict:
    with open(path, 'r') as f:
        return json.load(f)


async def run_backtest(description: dict, cache: MarketDataCache, repository: InMemoryRepository) -> int:
    try:
        simulator = await BacktestSimulator.create(
            Portfolio.from_dict(description["portfolio"]),
            description["start_date"],
            description["end_date"],
            cache,
            repository=repository,
            name=description.get("name", ""),
        )
    except ValidationError as e:
        print(colored(f"\n❌ Invalid backtest: {e}", "red"))
        return 1
    await simulator.run(persist_on_completion=True, compute_baseline=True)

    if simulator.status == RunStatus.ERROR:
        print(colored(f"\n❌ Backtest failed: {simulator.error}", "red"))
        return 1

    print_statistics("Strategia", simulator.statistics)
    if simulator.baseline_statistics is not None:
        print_statistics(f"Baseline ({simulator.baseline_symbol})", simulator.baseline_statistics)
        print(FitnessEvaluator().compare(simulator.baseline_statistics, simulator.statistics))

    print(colored(f"\n💰 Operazioni: {len(simulator.actions())}", "cyan"))
    for action in simulator.actions():
        side = "BUY " if action in simulator.buy_history else "SELL"
        print(
            f"   {action.date:%Y-%m-%d %H:%M} {side} {action.quantity:.4f} {action.symbol} "
            f"@ {action.price:.2f} | {action.condition}"
        )
    return 0


async def run_optimization(
    description: dict,
    cache: MarketDataCache,
    repository: InMemoryRepository,
    args,
) -> int:
    options = dict(description.get("optimizer", {}))
    if "fitness_function" in options:
        options["fitness_kind"] = FitnessKind(options.pop("fitness_function"))
    if args.generations:
        options["num_generations"] = args.generations
    if args.population:
        options["population_size"] = args.population
    if args.seed is not None:
        options["random_seed"] = args.seed

    optimizer = Optimizer(
        Portfolio.from_dict(description["portfolio"]),
        description["start_date"],
        description["end_date"],
        cache,
        repository=repository,
        name=description.get("name", ""),
        **options,
    )
    optimizer_id = await optimizer.submit()
    await optimizer.task

    document = repository.find_by_id(OPTIMIZATIONS, optimizer_id)
    if document["status"] == RunStatus.ERROR.value:
        print(colored(f"\n❌ Optimization failed: {document['error']}", "red"))
        return 1

    print(colored(f"\n✅ Optimization {optimizer_id} complete", "green", attrs=['bold']))
    for rank, element in enumerate(optimizer.page(1), start=1):
        training = Statistics.from_dict(element["training_fitness"])
        validation = Statistics.from_dict(element["validation_fitness"])
        kind = optimizer.fitness_kind.value
        print(
            f"   #{rank} training {kind}={getattr(training, kind):.4f} | "
            f"validation {kind}={getattr(validation, kind):.4f}"
        )

    results_file = optimizer._save_results(args.output)
    print(colored(f"💾 Risultati: {results_file}", "cyan"))
    return 0


async def main(args) -> int:
    """Funzione principale"""
    description = load_description(args.file)
    data_dir = Path(args.data_dir or description.get("data_dir", "data"))
    cache = MarketDataCache(CsvHistoricalSource(data_dir))
    repository = InMemoryRepository()

    if args.command == "backtest":
        print_banner("📈 BACKTEST", description)
        code = await run_backtest(description, cache, repository)
    else:
        print_banner("🧬 OTTIMIZZAZIONE GENETICA", description)
        code = await run_optimization(description, cache, repository, args)

    stats = cache.get_cache_stats()
    print(colored(f"\n💾 Cache: {stats}", "white"))
    return code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Backtest e ottimizzazione genetica di strategie")
    subparsers = parser.add_subparsers(dest="command", required=True)

    backtest = subparsers.add_parser("backtest", help="Esegue un backtest del portfolio")
    backtest.add_argument("file", help="Descrizione JSON del portfolio")
    backtest.add_argument("--data-dir", help="Directory con i CSV dei prezzi")

    optimize = subparsers.add_parser("optimize", help="Ottimizza le strategie del portfolio")
    optimize.add_argument("file", help="Descrizione JSON del portfolio")
    optimize.add_argument("--data-dir", help="Directory con i CSV dei prezzi")
    optimize.add_argument("--generations", type=int, help="Numero generazioni")
    optimize.add_argument("--population", type=int, help="Dimensione popolazione")
    optimize.add_argument("--seed", type=int, help="Seed per reproducibilità")
    optimize.add_argument("--output", default=config.OPTIMIZER_RESULTS_DIR, help="Directory risultati")
    return parser


if __name__ == "__main__":
    parser = build_parser()
    args = parser.parse_args()
    try:
        sys.exit(asyncio.run(main(args)))
    except KeyboardInterrupt:
        print(colored("\n⚠️ Interrotto dall'utente", "yellow"))
        sys.exit(130)
