"""
Configurazione generale del motore di backtest/ottimizzazione con supporto a file .env.

Ordine di ricerca
-----------------
1. Se esistono variabili d'ambiente (es. LOG_VERBOSITY, APP_ENV),
   usiamo quelle (override).
2. Altrimenti le leggiamo da .env nella root del progetto.
3. In mancanza di entrambe valgono i default qui sotto.
"""

from __future__ import annotations

import os

from dotenv import load_dotenv, find_dotenv

# ----------------------------------------------------------------------
# Carica il file .env se presente
# ----------------------------------------------------------------------
_env_file = find_dotenv(usecwd=True)
if _env_file:
    load_dotenv(_env_file, override=False)  # NON sovrascrive variabili già settate

# ----------------------------------------------------------------------
# Ambiente
# ----------------------------------------------------------------------
APP_ENV = os.getenv("APP_ENV", "development")
IS_PRODUCTION = APP_ENV.lower() == "production"  # fuori da production gli errori includono lo stack

# ----------------------------------------------------------------------
# Logging Mode
# ----------------------------------------------------------------------
# Possible values: "MINIMAL", "NORMAL", "DETAILED"
# MINIMAL: Only milestones (fills, generation summary, run completed)
# NORMAL: Standard operations (backtest steps, optimizer batches)
# DETAILED: Full debug information (cache hits, condition evaluations)
LOG_VERBOSITY = os.getenv("LOG_VERBOSITY", "NORMAL")

# ----------------------------------------------------------------------
# Price model
# ----------------------------------------------------------------------
DEFAULT_FILL_AT = "mid"              # aggressività di fill usata dal simulatore
OPTION_CONTRACT_MULTIPLIER = 100     # 1 contratto = 100 azioni
PRICE_ANOMALY_THRESHOLD = 0.10       # variazione >10% tra snapshot = anomalia
NEAR_FILL_MID_WEIGHT = 2             # near-likely/near-unlikely: (lato + 2*mid) / 3

# ----------------------------------------------------------------------
# Allocazione
# ----------------------------------------------------------------------
BUYING_POWER_BUFFER = 0.99           # riserva 1% per commissioni
MIN_BUYING_POWER_RATIO = 0.01        # niente acquisti sotto l'1% del valore iniziale
MAX_ALLOCATION_DEFAULT = 100.0       # percent of portfolio
MIN_ALLOCATION_DEFAULT = 0.0

# ----------------------------------------------------------------------
# Commissioni backtest (percentuali sul nozionale)
# ----------------------------------------------------------------------
BACKTEST_COMMISSIONS = {
    "stock": {"kind": "percent", "amount": 0.5},
    "crypto": {"kind": "percent", "amount": 1.0},
    "option": {"kind": "percent", "amount": 2.0},
    "debit_spread": {"kind": "percent", "amount": 2.0},
}

# ----------------------------------------------------------------------
# Market data cache
# ----------------------------------------------------------------------
CACHE_REQUESTS_PER_SYMBOL = 5        # budget = 5 x simboli distinti scaricati
CACHE_START_TOLERANCE_DAYS = 5       # primo dato entro 5 giorni dallo start richiesto
DAILY_SPREAD_PCT = 0.01              # bid/ask sintetici = prezzo -/+ 1%

# ----------------------------------------------------------------------
# Backtest
# ----------------------------------------------------------------------
MARKET_OPEN_TIME = (9, 30)
MARKET_CLOSE_TIME = (16, 0)
DEFAULT_INITIAL_VALUE = 10_000.0
BASELINE_SYMBOL = "SPY"
RISK_FREE_RATE_PER_TICK = 0.0
TICKS_PER_YEAR = 504                 # 2 tick (open/close) x 252 giorni

# ----------------------------------------------------------------------
# Genetic Optimizer
# ----------------------------------------------------------------------
OPTIMIZER_POPULATION_SIZE = 20
OPTIMIZER_GENERATIONS = 10
OPTIMIZER_CROSSOVER_PROBABILITY = 0.7
OPTIMIZER_MUTATION_PROBABILITY = 0.15
OPTIMIZER_MUTATION_INTENSITY = 0.2
OPTIMIZER_ELITE_SPONTANEOUS_RATIO = 0.0
OPTIMIZER_SAVE_FREQUENCY = 1
OPTIMIZER_VALIDATION_FREQUENCY = 1
OPTIMIZER_TRAIN_VALIDATION_RATIO = 0.8
OPTIMIZER_MAX_CROSSOVER_POINTS = 5
OPTIMIZER_BATCH_SIZE = int(os.getenv("OPTIMIZER_BATCH_SIZE", "10"))
OPTIMIZER_BATCH_PAUSE_MS = int(os.getenv("OPTIMIZER_BATCH_PAUSE_MS", "200"))
OPTIMIZER_GENERATION_PAUSE_MS = 300
OPTIMIZER_PAGE_SIZE = 8
OPTIMIZER_RESULTS_DIR = os.getenv("OPTIMIZER_RESULTS_DIR", "optimizer_results")

# Range dei geni di allocazione (ricalcolati in base al tipo di allocazione)
ALLOCATION_AMOUNT_MAX_PERCENT = 100.0
ALLOCATION_AMOUNT_MAX_CURRENT_POSITIONS = 200.0
ALLOCATION_AMOUNT_MAX_DOLLARS_FACTOR = 2.0   # x valore iniziale portfolio
ALLOCATION_AMOUNT_MAX_UNITS_FACTOR = 0.2     # x valore iniziale portfolio
