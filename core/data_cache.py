"""
💾 MARKET DATA CACHE

Decoratore rate-limited attorno a una sorgente di dati storici.

- Per simbolo ricorda lo start più vecchio mai richiesto e la serie scaricata
- Una richiesta è servita dalla cache se il range in cache copre lo start
- Su miss: scarica, verifica che la serie inizi entro 5 giorni dallo start
  richiesto e sostituisce la entry
- Budget richieste = 5 x simboli distinti scaricati (si espande col working set)
- Miss concorrenti sullo stesso simbolo sono coalescenti (un solo fetch)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Tuple, Union

import pandas as pd

import config
from core.errors import DataIntegrityError, PriceUnavailableError, RequestBudgetExceededError
from core.models import Asset, PriceSnapshot

_LOG = logging.getLogger(__name__)

DateLike = Union[date, datetime, str, pd.Timestamp]

OHLCV_COLUMNS = ["open", "high", "low", "close", "volume"]


def _to_day(value: DateLike) -> pd.Timestamp:
    return pd.Timestamp(value).normalize()


def empty_frame() -> pd.DataFrame:
    return pd.DataFrame(columns=OHLCV_COLUMNS, index=pd.DatetimeIndex([], name="date"))


def normalize_frame(df: pd.DataFrame) -> pd.DataFrame:
    """DatetimeIndex ordinato, senza duplicati, colonne minuscole"""
    if df is None:
        return empty_frame()
    df = df.copy()
    df.columns = [str(c).lower() for c in df.columns]
    if "date" in df.columns:
        df = df.set_index("date")
    if not isinstance(df.index, pd.DatetimeIndex):
        df.index = pd.to_datetime(df.index)
    df = df.sort_index()
    df = df[~df.index.duplicated(keep="last")]
    return df


class HistoricalDataSource(Protocol):
    """Sorgente dati storici (broker, file, mock deterministico nei test)"""

    async def get_price_snapshots(self, assets: Iterable[Asset]) -> Dict[str, PriceSnapshot]:
        ...

    async def get_market_history(self, symbol: str, start: date, end: date) -> pd.DataFrame:
        ...

    async def get_intraday_history(
        self, symbol: str, start: datetime, end: datetime, interval: str
    ) -> pd.DataFrame:
        ...


class InMemoryHistoricalSource:
    """Sorgente da DataFrame già in memoria (daily per simbolo, intraday opzionale)"""

    def __init__(
        self,
        frames: Dict[str, pd.DataFrame] = None,
        intraday_frames: Dict[Tuple[str, str], pd.DataFrame] = None,
    ):
        self.frames = {s: normalize_frame(df) for s, df in (frames or {}).items()}
        self.intraday_frames = {k: normalize_frame(df) for k, df in (intraday_frames or {}).items()}
        self.calls: List[Tuple[str, str]] = []

    def _frame(self, symbol: str) -> pd.DataFrame:
        return self.frames.get(symbol, empty_frame())

    async def get_price_snapshots(self, assets: Iterable[Asset]) -> Dict[str, PriceSnapshot]:
        result = {}
        for asset in assets:
            df = self._frame(asset.symbol)
            if df.empty:
                continue
            price = float(df["close"].iloc[-1])
            result[asset.symbol] = snapshot_from_price(price, df.iloc[-1])
        return result

    async def get_market_history(self, symbol: str, start: date, end: date) -> pd.DataFrame:
        self.calls.append(("daily", symbol))
        df = self._frame(symbol)
        return df[(df.index >= _to_day(start)) & (df.index <= _to_day(end))].copy()

    async def get_intraday_history(
        self, symbol: str, start: datetime, end: datetime, interval: str
    ) -> pd.DataFrame:
        self.calls.append(("intraday", symbol))
        df = self.intraday_frames.get((symbol, interval), empty_frame())
        return df[(df.index >= pd.Timestamp(start)) & (df.index <= pd.Timestamp(end))].copy()


class CsvHistoricalSource(InMemoryHistoricalSource):
    """Legge <directory>/<SYMBOL>.csv (colonne date,open,high,low,close,volume)"""

    def __init__(self, directory: Union[str, Path]):
        super().__init__()
        self.directory = Path(directory)

    def _frame(self, symbol: str) -> pd.DataFrame:
        if symbol not in self.frames:
            csv_file = self.directory / f"{symbol}.csv"
            if not csv_file.exists():
                _LOG.warning(f"⚠️ No CSV history for {symbol} in {self.directory}")
                return empty_frame()
            self.frames[symbol] = normalize_frame(pd.read_csv(csv_file, parse_dates=["date"]))
        return self.frames[symbol]


def snapshot_from_price(price: float, row: Optional[pd.Series] = None) -> PriceSnapshot:
    """Snapshot sintetico: bid/ask = prezzo -/+ spread configurato"""
    spread = config.DAILY_SPREAD_PCT
    snapshot = PriceSnapshot(bid=price * (1 - spread), mid=price, ask=price * (1 + spread))
    if row is not None:
        for column in OHLCV_COLUMNS:
            if column in row and pd.notna(row[column]):
                setattr(snapshot, column, float(row[column]))
    return snapshot


@dataclass
class _CacheEntry:
    start: pd.Timestamp
    end: pd.Timestamp
    data: pd.DataFrame

    def covers(self, start: pd.Timestamp, end: pd.Timestamp) -> bool:
        return self.start <= start and self.end >= end


class MarketDataCache:
    """Cache rate-limited davanti a un HistoricalDataSource"""

    def __init__(self, source: HistoricalDataSource):
        self.source = source
        self._history: Dict[str, _CacheEntry] = {}
        self._intraday: Dict[Tuple[str, str], _CacheEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self.saved_symbols: set = set()
        self.api_requests = 0

        self.stats = {
            'cache_hits': 0,
            'cache_misses': 0,
            'upstream_requests': 0,
            'coalesced_waits': 0,
        }
        _LOG.debug("💾 Market data cache initialized")

    # ------------------------------------------------------------------
    # Budget
    # ------------------------------------------------------------------

    @property
    def request_limit(self) -> int:
        return config.CACHE_REQUESTS_PER_SYMBOL * len(self.saved_symbols)

    def _count_request(self, symbol: str):
        self.api_requests += 1
        self.saved_symbols.add(symbol)
        self.stats['upstream_requests'] += 1
        if self.api_requests > self.request_limit:
            _LOG.error(
                f"❌ Request budget exceeded: {self.api_requests} > {self.request_limit} "
                f"({len(self.saved_symbols)} symbols)"
            )
            raise RequestBudgetExceededError("Too many API requests")

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # ------------------------------------------------------------------
    # Daily history
    # ------------------------------------------------------------------

    def _is_covered(self, symbol: str, start: pd.Timestamp, end: pd.Timestamp) -> bool:
        entry = self._history.get(symbol)
        return entry is not None and entry.covers(start, end)

    async def get_market_history(self, symbol: str, start: DateLike, end: DateLike) -> pd.DataFrame:
        """
        Storico daily [start - 1 giorno, end] servito dalla cache se possibile

        Su miss la sorgente viene interrogata fino ad oggi (o fino a end se
        nel futuro): la entry conserva il range massimo scaricato.

        Raises:
            RequestBudgetExceededError: budget richieste esaurito
            DataIntegrityError: serie vuota o che inizia a più di 5 giorni dallo start
        """
        start_day = _to_day(start)
        end_day = _to_day(end)

        if self._is_covered(symbol, start_day, end_day):
            self.stats['cache_hits'] += 1
            _LOG.debug(f"💾 Cache hit: {symbol} from {start_day.date()}")
            return self._filter(self._history[symbol].data, start_day, end_day)

        lock = self._lock_for(symbol)
        if lock.locked():
            self.stats['coalesced_waits'] += 1
        async with lock:
            # Un'altra coroutine può aver riempito la cache nel frattempo
            if self._is_covered(symbol, start_day, end_day):
                self.stats['cache_hits'] += 1
                return self._filter(self._history[symbol].data, start_day, end_day)

            self.stats['cache_misses'] += 1
            self._count_request(symbol)
            fetch_end = max(end_day, pd.Timestamp.today().normalize())
            _LOG.debug(f"💾 Fetching {symbol} history {start_day.date()} -> {fetch_end.date()}")
            raw = await self.source.get_market_history(symbol, start_day.date(), fetch_end.date())
            data = normalize_frame(raw)

            if data.empty:
                raise DataIntegrityError(f"Data start date does not match: no data for {symbol}")
            gap_days = abs((data.index[0].normalize() - start_day).days)
            if gap_days > config.CACHE_START_TOLERANCE_DAYS:
                raise DataIntegrityError(
                    f"Data start date does not match for {symbol}: "
                    f"requested {start_day.date()}, first point {data.index[0].date()}"
                )

            self._history[symbol] = _CacheEntry(start=start_day, end=fetch_end, data=data)

        return self._filter(data, start_day, end_day)

    @staticmethod
    def _filter(data: pd.DataFrame, start: pd.Timestamp, end: pd.Timestamp) -> pd.DataFrame:
        lower = start - timedelta(days=1)
        upper = end + timedelta(days=1)
        return data[(data.index >= lower) & (data.index < upper)].copy()

    def cached_history(self, symbol: str, start: DateLike, end: DateLike) -> pd.DataFrame:
        """Lookup sincrono solo-cache (usato dalle condizioni durante il run)"""
        entry = self._history.get(symbol)
        if entry is None:
            raise PriceUnavailableError(f"No cached history for {symbol}")
        return self._filter(entry.data, _to_day(start), _to_day(end))

    def cached_symbols(self) -> List[str]:
        return list(self._history.keys())

    # ------------------------------------------------------------------
    # Intraday history
    # ------------------------------------------------------------------

    async def get_intraday_history(
        self,
        symbol: str,
        start: DateLike,
        end: DateLike,
        interval: str = "15min",
    ) -> pd.DataFrame:
        """
        Storico intraday (candele da interval) con lo stesso budget richieste del daily

        Su miss il range scaricato è l'unione di quello richiesto e di
        quello già in cache.
        """
        key = (symbol, interval)
        start_ts = pd.Timestamp(start)
        end_ts = pd.Timestamp(end)

        async with self._lock_for(f"{symbol}|{interval}"):
            entry = self._intraday.get(key)
            if entry is None or not entry.covers(start_ts, end_ts):
                if entry is not None:
                    start_ts, end_ts = min(start_ts, entry.start), max(end_ts, entry.end)
                self.stats['cache_misses'] += 1
                self._count_request(symbol)
                _LOG.debug(f"💾 Fetching {symbol} {interval} history {start_ts} -> {end_ts}")
                raw = await self.source.get_intraday_history(
                    symbol, start_ts.to_pydatetime(), end_ts.to_pydatetime(), interval
                )
                entry = _CacheEntry(start=start_ts, end=end_ts, data=normalize_frame(raw))
                self._intraday[key] = entry
            else:
                self.stats['cache_hits'] += 1

        return self._slice_intraday(entry.data, pd.Timestamp(start), pd.Timestamp(end))

    @staticmethod
    def _slice_intraday(data: pd.DataFrame, start: pd.Timestamp, end: pd.Timestamp) -> pd.DataFrame:
        return data[(data.index >= start) & (data.index <= end)].copy()

    def cached_intraday_history(
        self,
        symbol: str,
        start: DateLike,
        end: DateLike,
        interval: str,
    ) -> pd.DataFrame:
        """Lookup intraday sincrono solo-cache (usato dalle condizioni durante il run)"""
        entry = self._intraday.get((symbol, interval))
        if entry is None:
            raise PriceUnavailableError(f"No cached {interval} history for {symbol}")
        return self._slice_intraday(entry.data, pd.Timestamp(start), pd.Timestamp(end))

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def daily_snapshot(self, symbol: str, when: datetime) -> PriceSnapshot:
        """Open prima della chiusura, close dopo; bid/ask sintetici"""
        entry = self._history.get(symbol)
        if entry is None:
            raise PriceUnavailableError(f"No cached history for {symbol}")
        day = _to_day(when)
        if day not in entry.data.index:
            raise PriceUnavailableError(f"No data found for date {day.date()}, symbol {symbol}")
        row = entry.data.loc[day]

        column = "open" if (when.hour, when.minute) < config.MARKET_CLOSE_TIME else "close"
        price = row.get(column)
        if price is None or pd.isna(price):
            price = row.get("close")
        if price is None or pd.isna(price):
            raise PriceUnavailableError(f"No {column} price for {symbol} on {day.date()}")
        return snapshot_from_price(float(price), row)

    def snapshots_for(self, when: datetime, symbols: Iterable[str] = None) -> Dict[str, PriceSnapshot]:
        """Snapshot di tutti i simboli in cache (PriceUnavailableError se manca un dato)"""
        symbols = list(symbols) if symbols is not None else self.cached_symbols()
        return {symbol: self.daily_snapshot(symbol, when) for symbol in symbols}

    def get_cache_stats(self) -> Dict:
        total = self.stats['cache_hits'] + self.stats['cache_misses']
        hit_rate = (self.stats['cache_hits'] / total * 100) if total > 0 else 0
        return {
            **self.stats,
            'total_requests': total,
            'hit_rate_pct': hit_rate,
            'request_limit': self.request_limit,
            'symbols': len(self.saved_symbols),
        }
