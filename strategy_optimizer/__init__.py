"""
Strategy Optimizer Module

Backtest di portfolio di strategie su dati storici e ottimizzazione dei
loro parametri tramite Algoritmo Genetico (GA).

Componenti:
- strategy_params.py: Cromosoma (vettore di geni di una Strategy)
- backtest_simulator.py: Simulazione tick per tick su storico
- fitness_evaluator.py: Statistiche (percent change, Sharpe, Sortino, MaxDD)
- genetic_algorithm.py: Operatori GA (DEAP library)
- ga_orchestrator.py: Run di ottimizzazione (lifecycle, batch, persistenza)
"""

__version__ = "1.0.0"
