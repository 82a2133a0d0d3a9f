"""
Logging della CLI: emoji + colori termcolor, filtro per verbosità

Importato solo dall'entry point (main.py); i moduli di libreria usano
soltanto logging.getLogger(__name__).
"""

import logging
import sys

from termcolor import colored

import config


class CleanFormatter(logging.Formatter):
    """
    Formatter con emoji e colore per livello
    In MINIMAL niente timestamp
    """
    LEVEL_EMOJI = {
        "DEBUG": "🐛",
        "INFO": "ℹ️",
        "WARNING": "⚠️",
        "ERROR": "❌",
        "CRITICAL": "🚨"
    }
    LEVEL_COLOR = {
        "DEBUG": "blue",
        "INFO": "green",
        "WARNING": "yellow",
        "ERROR": "red",
        "CRITICAL": "magenta"
    }

    def format(self, record):
        emoji = self.LEVEL_EMOJI.get(record.levelname, "")
        color = self.LEVEL_COLOR.get(record.levelname, "white")
        record.msg = f"{colored(emoji, color)} {record.getMessage()}"
        record.args = ()
        return super().format(record)


class VerbosityFilter(logging.Filter):
    """
    Filtro basato su LOG_VERBOSITY

    MINIMAL: milestone (fill, riepilogo generazione, run completato) ed errori
    NORMAL: operazioni standard, senza il rumore per-tick
    DETAILED: tutto
    """

    MILESTONES = [
        "💰 BUY",
        "💰 SELL",
        "Training fitness",
        "Validation fitness",
        "complete",
        "failed",
        "Killed",
    ]

    PER_TICK_CHATTER = [
        "Cache hit",
        "Fetching",
        "🔎",
        "💱",
        "Saving optimizer",
        "validated",
        "Created ",
    ]

    def __init__(self, verbosity_level="MINIMAL"):
        super().__init__()
        self.verbosity = verbosity_level.upper()

    def filter(self, record):
        msg = record.getMessage()

        if self.verbosity == "MINIMAL":
            if record.levelno >= logging.WARNING:
                return True
            return any(keyword in msg for keyword in self.MILESTONES)

        if self.verbosity == "NORMAL":
            return not any(keyword in msg for keyword in self.PER_TICK_CHATTER)

        return True


# Moduli rumorosi (una riga per richiesta / per tick)
NOISY_MODULES = [
    "core.data_cache",
    "core.price_map",
    "core.repository",
    "conditions.evaluation",
]

_NOISY_LEVEL = {
    "MINIMAL": logging.WARNING,
    "NORMAL": logging.INFO,
    "DETAILED": logging.DEBUG,
}


def configure(verbosity: str = config.LOG_VERBOSITY) -> logging.Handler:
    """Installa il console handler sul root logger e livella i moduli rumorosi"""
    verbosity = verbosity.upper()

    console_handler = logging.StreamHandler(sys.stdout)
    if verbosity == "MINIMAL":
        formatter = CleanFormatter("%(message)s")
    else:
        formatter = CleanFormatter("%(asctime)s %(message)s", datefmt="%H:%M:%S")
    console_handler.setFormatter(formatter)
    console_handler.addFilter(VerbosityFilter(verbosity))

    logging.basicConfig(
        level=logging.DEBUG if verbosity == "DETAILED" else logging.INFO,
        handlers=[console_handler],
        format="%(message)s",
        force=True,
    )

    for module in NOISY_MODULES:
        logging.getLogger(module).setLevel(_NOISY_LEVEL.get(verbosity, logging.INFO))

    logging.getLogger(__name__).debug(f"📊 Logging: {verbosity} mode")
    return console_handler


configure()
