"""
Errori del core di backtest/ottimizzazione.

Due famiglie:
- ValidationError e sottoclassi: dati o input non validi (date, storico
  mancante, budget richieste, limiti di allocazione non supportati)
- ConfigurationError: errori di programmazione (tipo condizione sconosciuto,
  campo gene malformato)

Entrambe risalgono fino al run loop più vicino (simulatore o ottimizzatore)
che le converte in stato ERROR.
"""


class ValidationError(ValueError):
    """Input o dati di mercato non validi"""


class DataIntegrityError(ValidationError):
    """Serie storica non allineata con la richiesta"""


class RequestBudgetExceededError(ValidationError):
    """Budget di richieste upstream esaurito"""


class UnsupportedAllocationError(ValidationError):
    """Tipo di allocazione non supportato per il controllo dei limiti"""


class PriceUnavailableError(ValidationError):
    """Nessuno snapshot prezzo disponibile per simbolo/data"""


class ConfigurationError(RuntimeError):
    """Struttura interna non valida (tipo sconosciuto, campo inesistente)"""


class BacktestFailedError(RuntimeError):
    """Un backtest di valutazione fitness è terminato in ERROR"""
